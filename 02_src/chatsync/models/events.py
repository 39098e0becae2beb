"""Change-feed events delivered to an open conversation."""

from dataclasses import dataclass, field
from typing import Union

from .messages import Attachment, Message


@dataclass(frozen=True)
class MessageInserted:
    """A message row was inserted."""

    message: Message


@dataclass(frozen=True)
class AttachmentInserted:
    """An attachment row was inserted (usually before its message exists)."""

    attachment: Attachment


@dataclass(frozen=True)
class AttachmentLinked:
    """An attachment row was updated to point at its owning message."""

    attachment: Attachment


@dataclass(frozen=True)
class AttachmentStatusChanged:
    """A reviewer accepted or rejected an attachment."""

    attachment: Attachment


@dataclass(frozen=True)
class Resynchronizing:
    """The transport reconnected; a full reload is on its way."""

    conversation_id: str


@dataclass(frozen=True)
class Resynchronized:
    """Full snapshot reloaded after a reconnect."""

    conversation_id: str
    messages: list[Message] = field(default_factory=list)
    attachments: list[Attachment] = field(default_factory=list)


ChangeEvent = Union[
    MessageInserted, AttachmentInserted, AttachmentLinked, AttachmentStatusChanged
]
FeedEvent = Union[ChangeEvent, Resynchronizing, Resynchronized]
