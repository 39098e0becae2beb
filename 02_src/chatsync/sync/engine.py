"""ConversationSyncEngine implementation."""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Protocol

from ..config import SyncSettings
from ..errors import OrganizationResolutionError
from ..logging_config import get_logger
from ..models import (
    AttachmentInserted,
    AttachmentLinked,
    AttachmentStatus,
    AttachmentStatusChanged,
    Conversation,
    FeedEvent,
    LocalFile,
    Message,
    MessageInserted,
    Resynchronized,
    Resynchronizing,
    UploadResult,
    Viewer,
)
from ..storage import IStorage
from ..tracker import ITracker
from .read_position import ReadPositionTracker
from .store import ATTACHMENT_PLACEHOLDER, MessageStore, StoreEntry
from .subscriber import ChangeFeedSubscriber, SubscriptionHandle, load_snapshot
from .uploads import AttachmentUploadPipeline

logger = get_logger(__name__)

SEND_FAILED_MESSAGE = "Não foi possível enviar a mensagem. Tente novamente."
EMPTY_MESSAGE = "Mensagem não pode estar vazia"


def resolve_organization(
    conversation: Conversation | None, viewer: Viewer
) -> str:
    """Organization to attribute uploads to: the conversation's, else the viewer's."""
    organization_id = (
        conversation.organization_id if conversation else None
    ) or viewer.organization_id
    if not organization_id:
        raise OrganizationResolutionError(conversation.id if conversation else None)
    return organization_id


@dataclass
class Notice:
    """User-facing alert raised by the engine."""

    title: str
    body: str
    attachment_id: str | None = None


@dataclass
class SendOutcome:
    """Result of one send() call."""

    sent: bool
    token: str | None = None
    message_id: str | None = None
    uploads: list[UploadResult] = field(default_factory=list)
    linked: bool = True
    error: str | None = None
    restored_text: str | None = None
    restored_files: list[LocalFile] = field(default_factory=list)
    orphaned_attachment_ids: list[str] = field(default_factory=list)

    @property
    def failed_uploads(self) -> list[UploadResult]:
        return [r for r in self.uploads if not r.success]


class ISyncEngine(Protocol):
    """Keeps one open conversation in sync with the backend."""

    async def open(self, conversation_id: str) -> None:
        """Bulk-load a conversation and start following its changes."""
        ...

    async def close(self) -> None:
        """Stop following the conversation and discard its state."""
        ...

    async def send(
        self, text: str, files: list[LocalFile] | None = None
    ) -> SendOutcome:
        """Send a message, optionally with attachments."""
        ...

    async def handle_event(self, event: FeedEvent) -> None:
        """Apply one change-feed event."""
        ...


class ConversationSyncEngine:
    """Synchronizes the open conversation's messages and attachments."""

    def __init__(
        self,
        viewer: Viewer,
        storage: IStorage,
        subscriber: ChangeFeedSubscriber,
        uploads: AttachmentUploadPipeline,
        read_tracker: ReadPositionTracker,
        tracker: ITracker | None = None,
        settings: SyncSettings | None = None,
    ):
        self._viewer = viewer
        self._storage = storage
        self._subscriber = subscriber
        self._uploads = uploads
        self._read_tracker = read_tracker
        self._tracker = tracker
        self._settings = settings or SyncSettings()

        self._conversation: Conversation | None = None
        self._store: MessageStore | None = None
        self._handle: SubscriptionHandle | None = None
        self._generation = 0  # bumped on every open/close
        self._loading = False
        self._backlog: list[FeedEvent] = []
        self._resyncing = False
        self._timeouts: dict[str, asyncio.Task] = {}
        self._notices: list[Notice] = []
        self._noticed: set[tuple[str, str]] = set()
        self._listeners: list[Callable[[], None]] = []

    # Properties

    @property
    def viewer(self) -> Viewer:
        return self._viewer

    @property
    def is_open(self) -> bool:
        return self._store is not None

    @property
    def conversation(self) -> Conversation | None:
        return self._conversation

    @property
    def store(self) -> MessageStore:
        if self._store is None:
            raise RuntimeError("No conversation open")
        return self._store

    @property
    def resyncing(self) -> bool:
        return self._resyncing

    @property
    def notices(self) -> list[Notice]:
        return list(self._notices)

    def drain_notices(self) -> list[Notice]:
        notices, self._notices = self._notices, []
        return notices

    def add_listener(self, listener: Callable[[], None]) -> None:
        """Register a callback fired after every store change."""
        self._listeners.append(listener)

    # Lifecycle

    async def open(self, conversation_id: str) -> None:
        """Bulk-load a conversation and start following its changes."""
        if self._store is not None:
            await self.close()

        conversation = await self._storage.get_conversation(conversation_id)
        if conversation is None:
            raise ValueError(f"Conversation {conversation_id} not found")

        self._generation += 1
        generation = self._generation
        self._conversation = conversation
        self._store = MessageStore(conversation_id, self._settings.grace_window)

        # Subscribe before loading; events seen meanwhile are replayed after.
        self._loading = True
        self._backlog = []
        self._handle = self._subscriber.open(conversation_id, self._on_feed_event)
        try:
            messages, attachments = await load_snapshot(
                self._storage, conversation_id, self._settings.message_limit
            )
        except Exception:
            if generation == self._generation:
                await self.close()
            raise

        if generation != self._generation:
            return

        self._store.bulk_load(messages, attachments)
        self._loading = False
        backlog, self._backlog = self._backlog, []
        for event in backlog:
            await self.handle_event(event)
        self._notify()

        await self._read_tracker.mark_read(conversation_id, self._viewer.id)

        logger.info(
            f"Conversation opened with {len(messages)} messages",
            extra={"conversation_id": conversation_id, "viewer_id": self._viewer.id},
        )
        await self._track(
            "conversation_opened",
            {"conversation_id": conversation_id, "message_count": len(messages)},
        )

    async def close(self) -> None:
        """Stop following the conversation and discard its state."""
        self._generation += 1

        if self._handle is not None:
            self._handle.close()
            self._handle = None

        for task in self._timeouts.values():
            task.cancel()
        self._timeouts.clear()

        if self._conversation is not None:
            self._read_tracker.forget(self._conversation.id)
            logger.info(
                "Conversation closed",
                extra={"conversation_id": self._conversation.id},
            )

        self._conversation = None
        self._store = None
        self._loading = False
        self._backlog = []
        self._resyncing = False

    # Sending

    async def send(
        self, text: str, files: list[LocalFile] | None = None
    ) -> SendOutcome:
        """
        Send a message, optionally with attachments.

        The optimistic entry is shown immediately. Files are uploaded
        concurrently, then the message is inserted, then the successful
        attachments are linked to it. An empty text with files is sent as
        the attachment placeholder.

        Raises:
            RuntimeError: no conversation is open.
            OrganizationResolutionError: files were given but no
                organization can be attributed. Nothing was sent.
        """
        if self._store is None or self._conversation is None:
            raise RuntimeError("No conversation open")

        files = list(files or [])
        content = text.strip()
        if not content and not files:
            return SendOutcome(sent=False, error=EMPTY_MESSAGE)

        conversation_id = self._conversation.id
        organization_id = self._resolve_organization() if files else None

        generation = self._generation
        store = self._store
        body = content or ATTACHMENT_PLACEHOLDER

        local = Message(
            id=f"local-{uuid.uuid4()}",
            conversation_id=conversation_id,
            sender_id=self._viewer.id,
            content=body,
            created_at=datetime.now(timezone.utc),
        )
        token = store.apply_optimistic(local)
        self._schedule_settle_timeout(token, generation)
        self._notify()

        uploads: list[UploadResult] = []
        if files:
            uploads = await self._uploads.upload(
                files, conversation_id, organization_id, self._viewer.id
            )
        attachment_ids = [r.attachment_id for r in uploads if r.success]

        try:
            message = await self._storage.insert_message(
                conversation_id, self._viewer.id, body
            )
        except Exception as e:
            logger.error(
                f"Error sending message: {e}",
                exc_info=True,
                extra={"conversation_id": conversation_id},
            )
            if generation == self._generation:
                store.discard(token)
                self._cancel_timeout(token)
                self._notify()
            await self._track(
                "message_send_failed",
                {"conversation_id": conversation_id, "error": str(e)},
            )
            return SendOutcome(
                sent=False,
                token=token,
                uploads=uploads,
                error=SEND_FAILED_MESSAGE,
                restored_text=text,
                restored_files=[
                    f for f, r in zip(files, uploads) if not r.success
                ] if uploads else files,
                orphaned_attachment_ids=attachment_ids,
            )

        message_id = message.id if message is not None else None
        if message is not None and generation == self._generation:
            entry = store.settle(token, message)
            self._cancel_timeout(token)
            self._cancel_timeout(entry.token)
            self._notify()

        linked = True
        if attachment_ids:
            if message_id is None:
                message_id = await self._uploads.resolve_message_id(
                    conversation_id, self._viewer.id
                )
            if message_id is None:
                linked = False
            else:
                linked = await self._uploads.link_to_message(attachment_ids, message_id)
            if not linked:
                logger.error(
                    f"Attachments left unlinked: {attachment_ids}",
                    extra={"conversation_id": conversation_id},
                )

        await self._read_tracker.mark_read(conversation_id, self._viewer.id)

        await self._track(
            "message_sent",
            {
                "conversation_id": conversation_id,
                "message_id": message_id,
                "attachments": len(attachment_ids),
                "failed_uploads": len(uploads) - len(attachment_ids),
                "linked": linked,
            },
        )
        return SendOutcome(
            sent=True,
            token=token,
            message_id=message_id,
            uploads=uploads,
            linked=linked,
            orphaned_attachment_ids=[] if linked else attachment_ids,
        )

    def _resolve_organization(self) -> str:
        return resolve_organization(self._conversation, self._viewer)

    # Feed events

    async def _on_feed_event(self, event: FeedEvent) -> None:
        if self._loading:
            self._backlog.append(event)
            return
        await self.handle_event(event)

    async def handle_event(self, event: FeedEvent) -> None:
        """Apply one change-feed event."""
        store = self._store
        if store is None:
            return

        if isinstance(event, MessageInserted):
            if event.message.conversation_id != store.conversation_id:
                return
            await self._on_message(event.message)
        elif isinstance(event, AttachmentInserted):
            if event.attachment.conversation_id != store.conversation_id:
                return
            store.apply_attachment(event.attachment)
        elif isinstance(event, AttachmentLinked):
            if event.attachment.conversation_id != store.conversation_id:
                return
            store.update_attachment(event.attachment)
        elif isinstance(event, AttachmentStatusChanged):
            if event.attachment.conversation_id != store.conversation_id:
                return
            store.update_attachment(event.attachment)
            self._notice_review(event)
        elif isinstance(event, Resynchronizing):
            self._resyncing = True
            await self._track(
                "resync_started", {"conversation_id": event.conversation_id}
            )
            return
        elif isinstance(event, Resynchronized):
            if event.conversation_id != store.conversation_id:
                return
            await self._apply_resync(event)
        else:
            logger.warning(f"Unknown feed event: {type(event).__name__}")
            return

        self._notify()

    async def resync(self) -> None:
        """Reload the open conversation from the backend."""
        if self._store is None:
            return
        conversation_id = self._store.conversation_id
        await self.handle_event(Resynchronizing(conversation_id=conversation_id))
        messages, attachments = await load_snapshot(
            self._storage, conversation_id, self._settings.message_limit
        )
        await self.handle_event(
            Resynchronized(
                conversation_id=conversation_id,
                messages=messages,
                attachments=attachments,
            )
        )

    async def _on_message(self, message: Message) -> None:
        store = self.store
        generation = self._generation
        entry = store.reconcile(message)
        self._cancel_timeout(entry.token)

        if message.author_id != self._viewer.id:
            await self._read_tracker.mark_read(store.conversation_id, self._viewer.id)
            if generation != self._generation:
                return

        await self._track(
            "message_settled",
            {
                "conversation_id": message.conversation_id,
                "message_id": message.id,
                "token": entry.token,
            },
        )

    async def _apply_resync(self, event: Resynchronized) -> None:
        store = self.store
        store.bulk_load(event.messages, event.attachments, keep_optimistic=True)
        for token in list(self._timeouts):
            entry = store.get(token)
            if entry is None or entry.is_settled:
                self._cancel_timeout(token)
        self._resyncing = False

        await self._read_tracker.mark_read(store.conversation_id, self._viewer.id)
        await self._track(
            "resync_completed",
            {
                "conversation_id": event.conversation_id,
                "message_count": len(event.messages),
            },
        )

    def _notice_review(self, event: AttachmentStatusChanged) -> None:
        attachment = event.attachment
        if attachment.sender_id != self._viewer.id:
            return

        key = (attachment.id, attachment.status.value)
        if key in self._noticed:
            return

        if attachment.status == AttachmentStatus.ACCEPTED:
            notice = Notice(
                title="Documento Aprovado",
                body=f"{attachment.file_name} foi aprovado",
                attachment_id=attachment.id,
            )
        elif attachment.status == AttachmentStatus.REJECTED:
            notice = Notice(
                title="Documento Rejeitado",
                body=attachment.rejected_reason
                or f"{attachment.file_name} foi rejeitado",
                attachment_id=attachment.id,
            )
        else:
            return

        self._noticed.add(key)
        self._notices.append(notice)

    # Settle timeout

    def _schedule_settle_timeout(self, token: str, generation: int) -> None:
        timeout = self._settings.settle_timeout.total_seconds()

        async def expire() -> None:
            await asyncio.sleep(timeout)
            if generation != self._generation or self._store is None:
                return
            if self._store.mark_failed(token):
                logger.warning(f"Message {token} not confirmed after {timeout}s")
                self._notify()
                await self._track(
                    "message_failed",
                    {"conversation_id": self._store.conversation_id, "token": token},
                )

        task = asyncio.create_task(expire())
        self._timeouts[token] = task
        task.add_done_callback(lambda _: self._timeouts.pop(token, None))

    def _cancel_timeout(self, token: str) -> None:
        task = self._timeouts.pop(token, None)
        if task is not None:
            task.cancel()

    # Helpers

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception as e:
                logger.error(f"Error in store listener: {e}", exc_info=True)

    async def _track(self, event_type: str, data: dict) -> None:
        if self._tracker is None:
            return
        await self._tracker.track(
            event_type=event_type, actor="sync_engine", data=data
        )

    def entries(self) -> list[StoreEntry]:
        return self.store.entries()
