"""Render-ready view of the message store, grouped by day."""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Iterable

from ..models import Attachment, AttachmentStatus, MessageState
from ..validation import format_file_size
from .store import StoreEntry

SUPPORT_LABEL = "Suporte"

MONTHS_PT = [
    "janeiro",
    "fevereiro",
    "março",
    "abril",
    "maio",
    "junho",
    "julho",
    "agosto",
    "setembro",
    "outubro",
    "novembro",
    "dezembro",
]

STATUS_LABELS = {
    AttachmentStatus.PENDING: "Pendente",
    AttachmentStatus.ACCEPTED: "Aprovado",
    AttachmentStatus.REJECTED: "Rejeitado",
}


@dataclass
class AttachmentBadge:
    attachment_id: str
    file_name: str
    status: AttachmentStatus
    label: str
    rejected_reason: str | None = None
    size_label: str | None = None


@dataclass
class MessageItem:
    token: str
    message_id: str | None
    content: str
    time: str
    is_own: bool
    sender_label: str | None
    state: MessageState
    attachments: list[AttachmentBadge] = field(default_factory=list)


@dataclass
class DateSection:
    day: date
    label: str
    items: list[MessageItem] = field(default_factory=list)


def date_label(day: date, today: date) -> str:
    """'Hoje', 'Ontem' or 'dd de <mês>'."""
    if day == today:
        return "Hoje"
    if day == today - timedelta(days=1):
        return "Ontem"
    return f"{day.day:02d} de {MONTHS_PT[day.month - 1]}"


def _badge(attachment: Attachment) -> AttachmentBadge:
    return AttachmentBadge(
        attachment_id=attachment.id,
        file_name=attachment.file_name,
        status=attachment.status,
        label=STATUS_LABELS[attachment.status],
        rejected_reason=attachment.rejected_reason,
        size_label=format_file_size(attachment.file_size),
    )


def _item(
    entry: StoreEntry,
    viewer_id: str,
    names: dict[str, str],
    tz: tzinfo,
) -> MessageItem:
    message = entry.message
    is_own = message.author_id == viewer_id

    if is_own:
        sender_label = None
    elif message.sender_id is None:
        sender_label = SUPPORT_LABEL
    else:
        sender_label = names.get(message.sender_id)

    return MessageItem(
        token=entry.token,
        message_id=message.id if entry.is_settled else None,
        content=message.content,
        time=entry.effective_timestamp.astimezone(tz).strftime("%H:%M"),
        is_own=is_own,
        sender_label=sender_label,
        state=entry.state,
        attachments=[_badge(a) for a in message.attachments],
    )


def group_by_date(
    entries: Iterable[StoreEntry],
    viewer_id: str,
    names: dict[str, str] | None = None,
    today: date | None = None,
    tz: tzinfo = timezone.utc,
) -> list[DateSection]:
    """
    Group store entries into per-day sections.

    Entries must already be in store order; sections and items keep it.

    Args:
        entries: MessageStore.entries()
        viewer_id: Staff id of the viewer, decides is_own.
        names: sender_id -> display name, for other people's messages.
        today: Reference day for the Hoje/Ontem labels.
        tz: Time zone used for days and HH:MM.
    """
    names = names or {}
    today = today or datetime.now(tz).date()

    sections: list[DateSection] = []
    for entry in entries:
        day = entry.effective_timestamp.astimezone(tz).date()
        if not sections or sections[-1].day != day:
            sections.append(DateSection(day=day, label=date_label(day, today)))
        sections[-1].items.append(_item(entry, viewer_id, names, tz))
    return sections
