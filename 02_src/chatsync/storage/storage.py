"""SQLite storage implementation of the relational chat backend."""

import json
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Protocol

import aiosqlite

from ..config import resolve_db_path
from ..errors import QuotaExceededError
from ..feed import IChangeFeed
from ..logging_config import get_logger
from ..models import (
    Attachment,
    AttachmentInserted,
    AttachmentLinked,
    AttachmentStatus,
    AttachmentStatusChanged,
    ChangeEvent,
    Conversation,
    ConversationType,
    FileKind,
    Message,
    MessageInserted,
    ReadPosition,
    Staff,
    TraceEvent,
)
from ..validation import MAX_UPLOADS_PER_HOUR, check_rate_limit

logger = get_logger(__name__)

MAX_MESSAGE_LENGTH = 2000
MAX_REJECTION_REASON_LENGTH = 500
ORPHAN_MAX_AGE = timedelta(hours=24)

_ATTACHMENT_COLUMNS = """
    id, conversation_id, message_id, sender_id, file_name, file_kind,
    file_path, file_size, status, rejected_reason, reviewed_by, reviewed_at,
    created_at
"""


def _to_db(ts: datetime) -> str:
    """Serialize a timestamp as fixed-width UTC ISO text (sortable)."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_db(value: str | None) -> datetime | None:
    if not value:
        return None
    ts = datetime.fromisoformat(value)
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _attachment_from_row(row) -> Attachment:
    return Attachment(
        id=row[0],
        conversation_id=row[1],
        message_id=row[2],
        sender_id=row[3],
        file_name=row[4],
        file_kind=FileKind(row[5]),
        file_path=row[6],
        file_size=row[7],
        status=AttachmentStatus(row[8]),
        rejected_reason=row[9],
        reviewed_by=row[10],
        reviewed_at=_from_db(row[11]),
        created_at=_from_db(row[12]),
    )


class IStorage(Protocol):
    """Relational backend: conversations, messages, attachments, read positions."""

    async def init(self) -> None:
        """Initialize database and create tables."""
        ...

    async def close(self) -> None:
        """Close database connection."""
        ...

    # Staff / Conversations
    async def save_staff(self, staff: Staff) -> None:
        """Save a staff member."""
        ...

    async def get_staff(self, staff_id: str) -> Staff | None:
        """Get a staff member by ID."""
        ...

    async def create_conversation(
        self,
        organization_id: str,
        type: ConversationType,
        participant_ids: list[str],
        creator_id: str,
        name: str | None = None,
    ) -> Conversation:
        """Create a conversation (reusing an identical direct one)."""
        ...

    async def create_support_conversation(
        self, organization_id: str, staff_id: str, name: str | None = None
    ) -> Conversation:
        """Create (or reuse) the staff member's support conversation."""
        ...

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        """Get a conversation with its participants."""
        ...

    async def list_conversations(
        self, viewer_id: str, organization_id: str | None = None
    ) -> list[Conversation]:
        """List a viewer's conversations, most recently active first."""
        ...

    # Messages
    async def insert_message(
        self,
        conversation_id: str,
        sender_id: str | None,
        content: str,
        admin_sender_id: str | None = None,
    ) -> Message:
        """Insert a message and publish MessageInserted."""
        ...

    async def get_messages(
        self, conversation_id: str, limit: int = 100
    ) -> list[Message]:
        """Get the latest messages, oldest first, with linked attachments."""
        ...

    async def get_latest_message_by_author(
        self, conversation_id: str, sender_id: str
    ) -> Message | None:
        """Get the most recent message of an author in a conversation."""
        ...

    # Attachments
    async def create_attachment(
        self,
        conversation_id: str,
        sender_id: str,
        file_name: str,
        file_kind: FileKind,
        file_path: str,
        file_size: int,
        message_id: str | None = None,
    ) -> Attachment:
        """Create a pending attachment record, enforcing the upload quota."""
        ...

    async def get_attachment(self, attachment_id: str) -> Attachment | None:
        """Get an attachment by ID."""
        ...

    async def get_attachments(
        self,
        conversation_id: str | None = None,
        status: AttachmentStatus | None = None,
        unlinked_only: bool = False,
    ) -> list[Attachment]:
        """Get attachments with optional filters, oldest first."""
        ...

    async def link_attachments(
        self, attachment_ids: list[str], message_id: str
    ) -> int:
        """Point attachments at their message. Returns rows updated."""
        ...

    async def update_attachment_status(
        self,
        attachment_id: str,
        status: AttachmentStatus,
        reviewer_id: str,
        rejected_reason: str | None = None,
    ) -> Attachment | None:
        """Record a review decision and publish AttachmentStatusChanged."""
        ...

    async def delete_attachment(self, attachment_id: str) -> Attachment | None:
        """Delete an attachment record. Returns the deleted record, or None."""
        ...

    async def cleanup_orphaned_attachments(
        self, older_than: timedelta = ORPHAN_MAX_AGE
    ) -> list[Attachment]:
        """Delete unlinked attachments older than `older_than`. Returns them."""
        ...

    async def get_upload_times(
        self, sender_id: str, since: datetime | None = None
    ) -> list[datetime]:
        """Get creation times of a sender's attachments, defaulting to the last hour."""
        ...

    # Read positions
    async def get_read_position(
        self, conversation_id: str, viewer_id: str
    ) -> ReadPosition | None:
        """Get a viewer's read position."""
        ...

    async def update_read_position(
        self, conversation_id: str, viewer_id: str, at: datetime
    ) -> ReadPosition:
        """Advance a read position. Never moves it backwards."""
        ...

    async def unread_count(self, conversation_id: str, viewer_id: str) -> int:
        """Count messages from others after the viewer's read position."""
        ...

    # TraceEvents
    async def save_trace_event(self, event: TraceEvent) -> None:
        """Save a trace event."""
        ...

    async def get_trace_events(
        self,
        after: datetime | None = None,
        event_types: list[str] | None = None,
        actor: str | None = None,
        limit: int = 100,
    ) -> list[TraceEvent]:
        """Get trace events with optional filters."""
        ...

    # Lifecycle
    async def clear(self) -> None:
        """Clear all data."""
        ...


class Storage:
    """SQLite storage implementation."""

    def __init__(
        self,
        db_path: str | Path | None = None,
        feed: IChangeFeed | None = None,
        max_uploads_per_hour: int = MAX_UPLOADS_PER_HOUR,
    ):
        if db_path is None:
            self._db_path = resolve_db_path()
        else:
            self._db_path = resolve_db_path(db_path)
        self._feed = feed
        self._max_uploads_per_hour = max_uploads_per_hour
        self._conn: aiosqlite.Connection | None = None

    def attach_feed(self, feed: IChangeFeed | None) -> None:
        """Publish committed row changes to this feed."""
        self._feed = feed

    async def init(self) -> None:
        """Initialize database and create tables."""
        self._conn = await aiosqlite.connect(self._db_path)

        schema_path = Path(__file__).parent / "schema.sql"
        with open(schema_path, "r", encoding="utf-8") as f:
            schema_sql = f.read()
        await self._conn.executescript(schema_sql)
        await self._conn.commit()

    async def close(self) -> None:
        """Close database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    def _require_conn(self) -> aiosqlite.Connection:
        if not self._conn:
            raise RuntimeError("Storage not initialized")
        return self._conn

    async def _publish(self, conversation_id: str, event: ChangeEvent) -> None:
        if self._feed is not None:
            await self._feed.publish(conversation_id, event)

    # Staff / Conversations
    async def save_staff(self, staff: Staff) -> None:
        """Save a staff member."""
        conn = self._require_conn()
        await conn.execute(
            """
            INSERT OR REPLACE INTO staff (id, organization_id, name, color)
            VALUES (?, ?, ?, ?)
            """,
            (staff.id, staff.organization_id, staff.name, staff.color),
        )
        await conn.commit()

    async def get_staff(self, staff_id: str) -> Staff | None:
        """Get a staff member by ID."""
        conn = self._require_conn()
        cursor = await conn.execute(
            "SELECT id, organization_id, name, color FROM staff WHERE id = ?",
            (staff_id,),
        )
        row = await cursor.fetchone()
        if not row:
            return None
        return Staff(id=row[0], organization_id=row[1], name=row[2], color=row[3])

    async def create_conversation(
        self,
        organization_id: str,
        type: ConversationType,
        participant_ids: list[str],
        creator_id: str,
        name: str | None = None,
    ) -> Conversation:
        """Create a conversation (reusing an identical direct one)."""
        conn = self._require_conn()

        participants = list(participant_ids)
        if creator_id not in participants:
            participants.append(creator_id)

        if type == ConversationType.DIRECT and len(participants) == 2:
            existing = await self._find_direct_conversation(
                organization_id, participants
            )
            if existing:
                return existing

        now = _now()
        conversation = Conversation(
            id=str(uuid.uuid4()),
            type=type,
            organization_id=organization_id,
            name=name or None,
            participant_ids=participants,
            created_at=now,
            updated_at=now,
        )

        await conn.execute(
            """
            INSERT INTO conversations (id, organization_id, type, name, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                conversation.id,
                organization_id,
                type.value,
                conversation.name,
                _to_db(now),
                _to_db(now),
            ),
        )
        await conn.executemany(
            """
            INSERT INTO participants (conversation_id, viewer_id, joined_at)
            VALUES (?, ?, ?)
            """,
            [(conversation.id, pid, _to_db(now)) for pid in participants],
        )
        await conn.commit()

        logger.info(
            f"Conversation {conversation.id} created ({type.value}, "
            f"{len(participants)} participants)"
        )
        return conversation

    async def _find_direct_conversation(
        self, organization_id: str, participant_ids: list[str]
    ) -> Conversation | None:
        conn = self._require_conn()
        cursor = await conn.execute(
            """
            SELECT id FROM conversations
            WHERE organization_id = ? AND type = 'direct'
            """,
            (organization_id,),
        )
        wanted = set(participant_ids)
        for row in await cursor.fetchall():
            conversation = await self.get_conversation(row[0])
            if conversation and set(conversation.participant_ids) == wanted:
                return conversation
        return None

    async def create_support_conversation(
        self, organization_id: str, staff_id: str, name: str | None = None
    ) -> Conversation:
        """Create (or reuse) the staff member's support conversation."""
        conn = self._require_conn()
        cursor = await conn.execute(
            """
            SELECT c.id FROM conversations c
            JOIN participants p ON p.conversation_id = c.id
            WHERE c.organization_id = ? AND c.type = 'support' AND p.viewer_id = ?
            ORDER BY c.created_at ASC
            LIMIT 1
            """,
            (organization_id, staff_id),
        )
        row = await cursor.fetchone()
        if row:
            existing = await self.get_conversation(row[0])
            if existing:
                return existing

        return await self.create_conversation(
            organization_id=organization_id,
            type=ConversationType.SUPPORT,
            participant_ids=[staff_id],
            creator_id=staff_id,
            name=name,
        )

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        """Get a conversation with its participants."""
        conn = self._require_conn()
        cursor = await conn.execute(
            """
            SELECT id, organization_id, type, name, created_at, updated_at
            FROM conversations
            WHERE id = ?
            """,
            (conversation_id,),
        )
        row = await cursor.fetchone()
        if not row:
            return None

        p_cursor = await conn.execute(
            """
            SELECT viewer_id FROM participants
            WHERE conversation_id = ?
            ORDER BY joined_at ASC, rowid ASC
            """,
            (conversation_id,),
        )
        participant_ids = [p[0] for p in await p_cursor.fetchall()]

        return Conversation(
            id=row[0],
            organization_id=row[1],
            type=ConversationType(row[2]),
            name=row[3],
            participant_ids=participant_ids,
            created_at=_from_db(row[4]),
            updated_at=_from_db(row[5]),
        )

    async def list_conversations(
        self, viewer_id: str, organization_id: str | None = None
    ) -> list[Conversation]:
        """List a viewer's conversations, most recently active first."""
        conn = self._require_conn()
        query = """
            SELECT c.id FROM conversations c
            JOIN participants p ON p.conversation_id = c.id
            WHERE p.viewer_id = ?
        """
        params: list = [viewer_id]
        if organization_id:
            query += " AND c.organization_id = ?"
            params.append(organization_id)
        query += " ORDER BY c.updated_at DESC"

        cursor = await conn.execute(query, params)
        conversations = []
        for row in await cursor.fetchall():
            conversation = await self.get_conversation(row[0])
            if conversation:
                conversations.append(conversation)
        return conversations

    # Messages
    async def insert_message(
        self,
        conversation_id: str,
        sender_id: str | None,
        content: str,
        admin_sender_id: str | None = None,
    ) -> Message:
        """Insert a message and publish MessageInserted."""
        conn = self._require_conn()

        content = content.strip()
        if not content:
            raise ValueError("Mensagem não pode estar vazia")
        if len(content) > MAX_MESSAGE_LENGTH:
            raise ValueError("Mensagem muito longa")
        if sender_id is None and admin_sender_id is None:
            raise ValueError("Message needs a sender_id or an admin_sender_id")

        message = Message(
            id=str(uuid.uuid4()),
            conversation_id=conversation_id,
            sender_id=sender_id,
            admin_sender_id=admin_sender_id,
            content=content,
            created_at=_now(),
        )

        await conn.execute(
            """
            INSERT INTO messages (id, conversation_id, sender_id, admin_sender_id, content, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                message.id,
                conversation_id,
                sender_id,
                admin_sender_id,
                content,
                _to_db(message.created_at),
            ),
        )
        await conn.execute(
            "UPDATE conversations SET updated_at = ? WHERE id = ?",
            (_to_db(message.created_at), conversation_id),
        )
        await conn.commit()

        await self._publish(conversation_id, MessageInserted(message=message))
        return message

    def _message_from_row(self, row, attachments: list[Attachment]) -> Message:
        return Message(
            id=row[0],
            conversation_id=row[1],
            sender_id=row[2],
            admin_sender_id=row[3],
            content=row[4],
            created_at=_from_db(row[5]),
            attachments=attachments,
        )

    async def get_messages(
        self, conversation_id: str, limit: int = 100
    ) -> list[Message]:
        """Get the latest messages, oldest first, with linked attachments."""
        conn = self._require_conn()
        cursor = await conn.execute(
            """
            SELECT id, conversation_id, sender_id, admin_sender_id, content, created_at
            FROM messages
            WHERE conversation_id = ?
            ORDER BY created_at DESC, rowid DESC
            LIMIT ?
            """,
            (conversation_id, limit),
        )
        rows = list(reversed(await cursor.fetchall()))

        by_message: dict[str, list[Attachment]] = {row[0]: [] for row in rows}
        if by_message:
            placeholders = ",".join("?" * len(by_message))
            att_cursor = await conn.execute(
                f"""
                SELECT {_ATTACHMENT_COLUMNS}
                FROM attachments
                WHERE message_id IN ({placeholders})
                ORDER BY created_at ASC, rowid ASC
                """,
                list(by_message),
            )
            for att_row in await att_cursor.fetchall():
                attachment = _attachment_from_row(att_row)
                by_message[attachment.message_id].append(attachment)

        return [self._message_from_row(row, by_message[row[0]]) for row in rows]

    async def get_latest_message_by_author(
        self, conversation_id: str, sender_id: str
    ) -> Message | None:
        """Get the most recent message of an author in a conversation."""
        conn = self._require_conn()
        cursor = await conn.execute(
            """
            SELECT id, conversation_id, sender_id, admin_sender_id, content, created_at
            FROM messages
            WHERE conversation_id = ? AND (sender_id = ? OR admin_sender_id = ?)
            ORDER BY created_at DESC, rowid DESC
            LIMIT 1
            """,
            (conversation_id, sender_id, sender_id),
        )
        row = await cursor.fetchone()
        if not row:
            return None
        return self._message_from_row(row, [])

    # Attachments
    async def create_attachment(
        self,
        conversation_id: str,
        sender_id: str,
        file_name: str,
        file_kind: FileKind,
        file_path: str,
        file_size: int,
        message_id: str | None = None,
    ) -> Attachment:
        """Create a pending attachment record, enforcing the upload quota."""
        conn = self._require_conn()

        now = _now()
        recent = await self.get_upload_times(sender_id, since=now - timedelta(hours=1))
        quota = check_rate_limit(recent, now=now, limit=self._max_uploads_per_hour)
        if not quota.valid:
            raise QuotaExceededError(self._max_uploads_per_hour, len(recent))

        attachment = Attachment(
            id=str(uuid.uuid4()),
            conversation_id=conversation_id,
            sender_id=sender_id,
            file_name=file_name,
            file_kind=FileKind(file_kind),
            file_path=file_path,
            file_size=file_size,
            message_id=message_id,
            created_at=now,
        )

        await conn.execute(
            """
            INSERT INTO attachments
            (id, conversation_id, message_id, sender_id, file_name, file_kind,
             file_path, file_size, status, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                attachment.id,
                conversation_id,
                message_id,
                sender_id,
                file_name,
                attachment.file_kind.value,
                file_path,
                file_size,
                attachment.status.value,
                _to_db(now),
            ),
        )
        await conn.commit()

        await self._publish(conversation_id, AttachmentInserted(attachment=attachment))
        return attachment

    async def get_attachment(self, attachment_id: str) -> Attachment | None:
        """Get an attachment by ID."""
        conn = self._require_conn()
        cursor = await conn.execute(
            f"SELECT {_ATTACHMENT_COLUMNS} FROM attachments WHERE id = ?",
            (attachment_id,),
        )
        row = await cursor.fetchone()
        return _attachment_from_row(row) if row else None

    async def get_attachments(
        self,
        conversation_id: str | None = None,
        status: AttachmentStatus | None = None,
        unlinked_only: bool = False,
    ) -> list[Attachment]:
        """Get attachments with optional filters, oldest first."""
        conn = self._require_conn()

        conditions = []
        params = []
        if conversation_id:
            conditions.append("conversation_id = ?")
            params.append(conversation_id)
        if status:
            conditions.append("status = ?")
            params.append(AttachmentStatus(status).value)
        if unlinked_only:
            conditions.append("message_id IS NULL")

        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        cursor = await conn.execute(
            f"""
            SELECT {_ATTACHMENT_COLUMNS}
            FROM attachments
            {where_clause}
            ORDER BY created_at ASC, rowid ASC
            """,
            params,
        )
        return [_attachment_from_row(row) for row in await cursor.fetchall()]

    async def link_attachments(
        self, attachment_ids: list[str], message_id: str
    ) -> int:
        """Point attachments at their message. Returns rows updated."""
        conn = self._require_conn()
        if not attachment_ids:
            return 0

        placeholders = ",".join("?" * len(attachment_ids))
        cursor = await conn.execute(
            f"UPDATE attachments SET message_id = ? WHERE id IN ({placeholders})",
            [message_id, *attachment_ids],
        )
        updated = cursor.rowcount
        await conn.commit()

        for attachment_id in attachment_ids:
            attachment = await self.get_attachment(attachment_id)
            if attachment:
                await self._publish(
                    attachment.conversation_id,
                    AttachmentLinked(attachment=attachment),
                )
        return updated

    async def update_attachment_status(
        self,
        attachment_id: str,
        status: AttachmentStatus,
        reviewer_id: str,
        rejected_reason: str | None = None,
    ) -> Attachment | None:
        """Record a review decision and publish AttachmentStatusChanged."""
        conn = self._require_conn()

        status = AttachmentStatus(status)
        if status == AttachmentStatus.PENDING:
            raise ValueError('Status deve ser "accepted" ou "rejected"')
        if status == AttachmentStatus.REJECTED:
            if not rejected_reason or not rejected_reason.strip():
                raise ValueError(
                    "Motivo da rejeição é obrigatório quando o documento é rejeitado"
                )
            if len(rejected_reason) > MAX_REJECTION_REASON_LENGTH:
                raise ValueError("Motivo da rejeição muito longo")
        else:
            rejected_reason = None

        cursor = await conn.execute(
            """
            UPDATE attachments
            SET status = ?, rejected_reason = ?, reviewed_by = ?, reviewed_at = ?
            WHERE id = ?
            """,
            (
                status.value,
                rejected_reason,
                reviewer_id,
                _to_db(_now()),
                attachment_id,
            ),
        )
        await conn.commit()
        if cursor.rowcount == 0:
            return None

        attachment = await self.get_attachment(attachment_id)
        if attachment:
            await self._publish(
                attachment.conversation_id,
                AttachmentStatusChanged(attachment=attachment),
            )
        return attachment

    async def delete_attachment(self, attachment_id: str) -> Attachment | None:
        """
        Delete an attachment record.

        Only the row is removed; the stored object is the caller's to remove.
        Returns the deleted record, or None when it did not exist.
        """
        conn = self._require_conn()
        attachment = await self.get_attachment(attachment_id)
        if attachment is None:
            return None

        await conn.execute("DELETE FROM attachments WHERE id = ?", (attachment_id,))
        await conn.commit()
        logger.info(f"Deleted attachment {attachment_id} ({attachment.file_path})")
        return attachment

    async def cleanup_orphaned_attachments(
        self, older_than: timedelta = ORPHAN_MAX_AGE
    ) -> list[Attachment]:
        """
        Delete attachments never linked to a message.

        Only records created before now - older_than are removed, so uploads
        still waiting for their message survive. Returns the deleted records.
        """
        conn = self._require_conn()
        cutoff = _now() - older_than
        cursor = await conn.execute(
            f"""
            SELECT {_ATTACHMENT_COLUMNS} FROM attachments
            WHERE message_id IS NULL AND created_at < ?
            ORDER BY created_at ASC
            """,
            (_to_db(cutoff),),
        )
        orphans = [_attachment_from_row(row) for row in await cursor.fetchall()]
        if not orphans:
            return []

        placeholders = ",".join("?" * len(orphans))
        await conn.execute(
            f"DELETE FROM attachments WHERE id IN ({placeholders})",
            [a.id for a in orphans],
        )
        await conn.commit()
        logger.info(f"Cleaned up {len(orphans)} orphaned attachments")
        return orphans

    async def get_upload_times(
        self, sender_id: str, since: datetime | None = None
    ) -> list[datetime]:
        """Get creation times of a sender's attachments, defaulting to the last hour."""
        conn = self._require_conn()
        since = since or _now() - timedelta(hours=1)
        cursor = await conn.execute(
            """
            SELECT created_at FROM attachments
            WHERE sender_id = ? AND created_at > ?
            ORDER BY created_at ASC
            """,
            (sender_id, _to_db(since)),
        )
        return [_from_db(row[0]) for row in await cursor.fetchall()]

    # Read positions
    async def get_read_position(
        self, conversation_id: str, viewer_id: str
    ) -> ReadPosition | None:
        """Get a viewer's read position."""
        conn = self._require_conn()
        cursor = await conn.execute(
            """
            SELECT last_read_at FROM participants
            WHERE conversation_id = ? AND viewer_id = ?
            """,
            (conversation_id, viewer_id),
        )
        row = await cursor.fetchone()
        if not row:
            return None
        return ReadPosition(
            conversation_id=conversation_id,
            viewer_id=viewer_id,
            last_read_at=_from_db(row[0]),
        )

    async def update_read_position(
        self, conversation_id: str, viewer_id: str, at: datetime
    ) -> ReadPosition:
        """Advance a read position. Never moves it backwards."""
        conn = self._require_conn()
        stamp = _to_db(at)
        await conn.execute(
            """
            INSERT INTO participants (conversation_id, viewer_id, joined_at, last_read_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (conversation_id, viewer_id) DO UPDATE
            SET last_read_at = excluded.last_read_at
            WHERE participants.last_read_at IS NULL
               OR participants.last_read_at < excluded.last_read_at
            """,
            (conversation_id, viewer_id, stamp, stamp),
        )
        await conn.commit()

        position = await self.get_read_position(conversation_id, viewer_id)
        if position is None:
            raise RuntimeError(
                f"Read position for {viewer_id} in {conversation_id} was not stored"
            )
        return position

    async def unread_count(self, conversation_id: str, viewer_id: str) -> int:
        """Count messages from others after the viewer's read position."""
        conn = self._require_conn()
        position = await self.get_read_position(conversation_id, viewer_id)
        if not position:
            return 0

        # Never read: everything from others counts
        since = _to_db(position.last_read_at) if position.last_read_at else ""
        cursor = await conn.execute(
            """
            SELECT COUNT(*) FROM messages
            WHERE conversation_id = ? AND created_at > ?
              AND COALESCE(sender_id, admin_sender_id) != ?
            """,
            (conversation_id, since, viewer_id),
        )
        row = await cursor.fetchone()
        return row[0] if row else 0

    # TraceEvents
    async def save_trace_event(self, event: TraceEvent) -> None:
        """Save a trace event."""
        conn = self._require_conn()
        await conn.execute(
            """
            INSERT INTO trace_events (id, event_type, actor, data, timestamp)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                event.id or str(uuid.uuid4()),
                event.event_type,
                event.actor,
                json.dumps(event.data, default=str),
                _to_db(event.timestamp),
            ),
        )
        await conn.commit()

    async def get_trace_events(
        self,
        after: datetime | None = None,
        event_types: list[str] | None = None,
        actor: str | None = None,
        limit: int = 100,
    ) -> list[TraceEvent]:
        """Get trace events with optional filters."""
        conn = self._require_conn()

        conditions = []
        params = []

        if after:
            conditions.append("timestamp > ?")
            params.append(_to_db(after))
        if event_types:
            placeholders = ",".join("?" * len(event_types))
            conditions.append(f"event_type IN ({placeholders})")
            params.extend(event_types)
        if actor:
            conditions.append("actor = ?")
            params.append(actor)

        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        query = f"""
            SELECT id, event_type, actor, data, timestamp
            FROM trace_events
            {where_clause}
            ORDER BY timestamp DESC
            LIMIT ?
        """
        params.append(limit)

        cursor = await conn.execute(query, params)
        rows = await cursor.fetchall()

        return [
            TraceEvent(
                id=row[0],
                event_type=row[1],
                actor=row[2],
                data=json.loads(row[3]),
                timestamp=_from_db(row[4]),
            )
            for row in rows
        ]

    # Lifecycle
    async def clear(self) -> None:
        """Clear all data."""
        conn = self._require_conn()

        tables = [
            "attachments",
            "messages",
            "participants",
            "conversations",
            "staff",
            "trace_events",
        ]

        for table in tables:
            await conn.execute(f"DELETE FROM {table}")

        await conn.commit()
