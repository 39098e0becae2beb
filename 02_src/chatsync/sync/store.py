"""MessageStore implementation.

Holds the ordered message list of the conversation that is currently
open. Entries are either optimistic (created locally, waiting for the
server echo), settled (server identity known) or failed (the echo never
came). The exposed list is always sorted by effective timestamp, ties
broken by arrival order.

Known limitation: an incoming server message is correlated with an
optimistic entry by author and time only (closest optimistic entry of
the same author whose local timestamp precedes the server timestamp by
at most the grace window). Two quick sends of the same author can be
paired crosswise when their echoes arrive out of order.
"""

import itertools
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Iterable

from ..models import Attachment, Message, MessageState

ATTACHMENT_PLACEHOLDER = "📎 Anexo enviado"
ORPHAN_PROXIMITY = timedelta(seconds=10)


@dataclass
class StoreEntry:
    """One logical message in the store."""

    token: str
    message: Message
    state: MessageState
    local_timestamp: datetime
    sequence: int

    @property
    def effective_timestamp(self) -> datetime:
        if self.state == MessageState.SETTLED:
            return self.message.created_at
        return self.local_timestamp

    @property
    def is_settled(self) -> bool:
        return self.state == MessageState.SETTLED


def _upsert_attachment(attachments: list[Attachment], attachment: Attachment) -> None:
    for i, existing in enumerate(attachments):
        if existing.id == attachment.id:
            attachments[i] = attachment
            return
    attachments.append(attachment)


def _merge_attachments(
    older: Iterable[Attachment], newer: Iterable[Attachment]
) -> list[Attachment]:
    merged = list(older)
    for attachment in newer:
        _upsert_attachment(merged, attachment)
    return merged


class MessageStore:
    """Ordered, deduplicated message list of one open conversation."""

    def __init__(
        self,
        conversation_id: str,
        grace_window: timedelta = timedelta(seconds=10),
    ):
        self._conversation_id = conversation_id
        self._grace_window = grace_window
        self._entries: list[StoreEntry] = []
        # conversation_id -> attachments whose message is not in the store yet
        self._pending: dict[str, list[Attachment]] = {}
        self._sequence = itertools.count()

    @property
    def conversation_id(self) -> str:
        return self._conversation_id

    # Reading

    def entries(self) -> list[StoreEntry]:
        """All entries, sorted ascending by effective timestamp."""
        return list(self._entries)

    def messages(self) -> list[Message]:
        return [entry.message for entry in self._entries]

    def get(self, token: str) -> StoreEntry | None:
        for entry in self._entries:
            if entry.token == token:
                return entry
        return None

    def find_by_message_id(self, message_id: str) -> StoreEntry | None:
        for entry in self._entries:
            if entry.is_settled and entry.message.id == message_id:
                return entry
        return None

    def outstanding(self) -> list[StoreEntry]:
        """Optimistic entries still waiting for their echo."""
        return [e for e in self._entries if e.state == MessageState.OPTIMISTIC]

    def pending_attachments(self, conversation_id: str | None = None) -> list[Attachment]:
        return list(self._pending.get(conversation_id or self._conversation_id, []))

    # Mutations

    def bulk_load(
        self,
        messages: Iterable[Message],
        attachments: Iterable[Attachment] = (),
        keep_optimistic: bool = False,
    ) -> None:
        """
        Replace the whole collection with a server snapshot.

        Args:
            messages: Settled messages, with their linked attachments.
            attachments: Extra attachments of the conversation. Linked ones
                are merged into their message; unlinked ones are matched to
                a nearby placeholder message of the same sender, else held
                as pending.
            keep_optimistic: Keep outstanding optimistic entries that have
                no counterpart in the snapshot (used on resync).
        """
        outstanding = self.outstanding() if keep_optimistic else []

        self._entries = []
        self._pending = {}
        for message in messages:
            self._entries.append(
                StoreEntry(
                    token=message.id,
                    message=replace(message, attachments=list(message.attachments)),
                    state=MessageState.SETTLED,
                    local_timestamp=message.created_at,
                    sequence=next(self._sequence),
                )
            )

        for attachment in attachments:
            if attachment.message_id:
                self.apply_attachment(attachment)
            elif not self._attach_to_placeholder(attachment):
                self._hold(attachment)

        claimed: set[str] = set()
        for entry in outstanding:
            counterpart = self._snapshot_counterpart(entry, claimed)
            if counterpart is None:
                self._entries.append(entry)
            else:
                claimed.add(counterpart.token)
                counterpart.message.attachments = _merge_attachments(
                    entry.message.attachments, counterpart.message.attachments
                )

        self._sort()

    def apply_optimistic(self, message: Message) -> str:
        """Append a not-yet-settled entry. Returns its correlation token."""
        token = f"local-{uuid.uuid4()}"
        self._entries.append(
            StoreEntry(
                token=token,
                message=replace(message, attachments=list(message.attachments)),
                state=MessageState.OPTIMISTIC,
                local_timestamp=message.created_at,
                sequence=next(self._sequence),
            )
        )
        self._sort()
        return token

    def reconcile(self, server_message: Message) -> StoreEntry:
        """
        Merge a server-confirmed message.

        An entry already holding this server id is updated in place. Else
        the best-matching optimistic entry is settled in place. Else the
        message is appended. Pending attachments of the message are adopted.
        """
        entry = self.find_by_message_id(server_message.id)
        if entry is None:
            entry = self._best_optimistic_match(server_message)

        if entry is not None:
            entry.message = replace(
                server_message,
                attachments=_merge_attachments(
                    entry.message.attachments, server_message.attachments
                ),
            )
            entry.state = MessageState.SETTLED
        else:
            entry = StoreEntry(
                token=server_message.id,
                message=replace(
                    server_message, attachments=list(server_message.attachments)
                ),
                state=MessageState.SETTLED,
                local_timestamp=server_message.created_at,
                sequence=next(self._sequence),
            )
            self._entries.append(entry)

        self._adopt_pending(entry)
        self._sort()
        return entry

    def settle(self, token: str, server_message: Message) -> StoreEntry:
        """
        Settle a specific optimistic entry with the identity returned by send.

        When the echo already landed on another entry (it arrived outside
        the grace window and was appended), the token entry is folded into
        that entry and removed. A token already marked failed by the settle
        timeout is settled as well.
        Falls back to reconcile() when the token is gone or settled.
        """
        entry = self.get(token)
        if entry is None or entry.is_settled:
            return self.reconcile(server_message)

        existing = self.find_by_message_id(server_message.id)
        if existing is not None:
            existing.message = replace(
                server_message,
                attachments=_merge_attachments(
                    _merge_attachments(
                        entry.message.attachments, existing.message.attachments
                    ),
                    server_message.attachments,
                ),
            )
            self._entries.remove(entry)
            self._adopt_pending(existing)
            self._sort()
            return existing

        entry.message = replace(
            server_message,
            attachments=_merge_attachments(
                entry.message.attachments, server_message.attachments
            ),
        )
        entry.state = MessageState.SETTLED
        self._adopt_pending(entry)
        self._sort()
        return entry

    def mark_failed(self, token: str) -> bool:
        """Turn a still-optimistic entry into a failed one."""
        entry = self.get(token)
        if entry is None or entry.state != MessageState.OPTIMISTIC:
            return False
        entry.state = MessageState.FAILED
        return True

    def discard(self, token: str) -> StoreEntry | None:
        """Remove an unsettled entry (rollback of a rejected send)."""
        entry = self.get(token)
        if entry is None or entry.is_settled:
            return None
        self._entries.remove(entry)
        return entry

    def apply_attachment(self, attachment: Attachment) -> bool:
        """
        Attach to the owning settled message, or hold as pending.

        Returns True when the attachment landed on a message.
        """
        if attachment.message_id:
            entry = self.find_by_message_id(attachment.message_id)
            if entry is not None:
                _upsert_attachment(entry.message.attachments, attachment)
                self._release(attachment.id)
                return True

        self._hold(attachment)
        return False

    def update_attachment(self, attachment: Attachment) -> bool:
        """
        Replace a known attachment in place (status, reason, link).

        An attachment whose message reference now resolves elsewhere is
        moved there. An unknown attachment is applied as new. Returns True
        when the attachment is on a message afterwards.
        """
        for entry in self._entries:
            for i, existing in enumerate(entry.message.attachments):
                if existing.id != attachment.id:
                    continue
                target = (
                    self.find_by_message_id(attachment.message_id)
                    if attachment.message_id
                    else None
                )
                if target is None or target is entry:
                    entry.message.attachments[i] = attachment
                    return True
                del entry.message.attachments[i]
                _upsert_attachment(target.message.attachments, attachment)
                return True

        pending = self._pending.get(attachment.conversation_id, [])
        if any(a.id == attachment.id for a in pending):
            _upsert_attachment(pending, attachment)
        return self.apply_attachment(attachment)

    def clear(self) -> None:
        self._entries.clear()
        self._pending.clear()

    # Internals

    def _sort(self) -> None:
        self._entries.sort(key=lambda e: (e.effective_timestamp, e.sequence))

    def _correlates(self, entry: StoreEntry, message: Message) -> timedelta | None:
        """Distance between an optimistic entry and a server message, if they match."""
        if entry.message.author_id != message.author_id:
            return None
        delta = message.created_at - entry.local_timestamp
        if timedelta(0) <= delta <= self._grace_window:
            return delta
        return None

    def _best_optimistic_match(self, message: Message) -> StoreEntry | None:
        best: StoreEntry | None = None
        best_delta: timedelta | None = None
        for entry in self._entries:
            if entry.state != MessageState.OPTIMISTIC:
                continue
            delta = self._correlates(entry, message)
            if delta is None:
                continue
            if best_delta is None or delta < best_delta:
                best, best_delta = entry, delta
        return best

    def _snapshot_counterpart(
        self, entry: StoreEntry, claimed: set[str]
    ) -> StoreEntry | None:
        best: StoreEntry | None = None
        best_delta: timedelta | None = None
        for candidate in self._entries:
            if not candidate.is_settled or candidate.token in claimed:
                continue
            delta = self._correlates(entry, candidate.message)
            if delta is None:
                continue
            if best_delta is None or delta < best_delta:
                best, best_delta = candidate, delta
        return best

    def _attach_to_placeholder(self, attachment: Attachment) -> bool:
        """Recover an unlinked attachment onto its nearby placeholder message."""
        if attachment.created_at is None:
            return False

        best: StoreEntry | None = None
        best_gap: timedelta | None = None
        for entry in self._entries:
            message = entry.message
            if not entry.is_settled or ATTACHMENT_PLACEHOLDER not in message.content:
                continue
            if message.sender_id != attachment.sender_id:
                continue
            gap = abs(attachment.created_at - message.created_at)
            if gap >= ORPHAN_PROXIMITY:
                continue
            if best_gap is None or gap < best_gap:
                best, best_gap = entry, gap

        if best is None:
            return False
        _upsert_attachment(best.message.attachments, attachment)
        return True

    def _hold(self, attachment: Attachment) -> None:
        _upsert_attachment(
            self._pending.setdefault(attachment.conversation_id, []), attachment
        )

    def _release(self, attachment_id: str) -> None:
        for conversation_id, pending in list(self._pending.items()):
            remaining = [a for a in pending if a.id != attachment_id]
            if remaining:
                self._pending[conversation_id] = remaining
            else:
                del self._pending[conversation_id]

    def _adopt_pending(self, entry: StoreEntry) -> None:
        pending = self._pending.get(entry.message.conversation_id, [])
        for attachment in [a for a in pending if a.message_id == entry.message.id]:
            _upsert_attachment(entry.message.attachments, attachment)
            self._release(attachment.id)
