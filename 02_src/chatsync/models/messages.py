"""Message-related data models."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class AttachmentStatus(str, Enum):
    """Review status of an attachment, set by an admin reviewer."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class FileKind(str, Enum):
    """Kind of attached file."""

    IMAGE = "image"
    PDF = "pdf"


class MessageState(str, Enum):
    """Lifecycle state of a message held in the MessageStore."""

    OPTIMISTIC = "optimistic"
    SETTLED = "settled"
    FAILED = "failed"


@dataclass
class Attachment:
    """A document or image uploaded into a conversation."""

    id: str
    conversation_id: str
    sender_id: str
    file_name: str
    file_kind: FileKind
    file_path: str
    file_size: int
    status: AttachmentStatus = AttachmentStatus.PENDING
    message_id: str | None = None
    rejected_reason: str | None = None
    reviewed_by: str | None = None
    reviewed_at: datetime | None = None
    created_at: datetime | None = None


@dataclass
class Message:
    """A single chat message."""

    id: str
    conversation_id: str
    sender_id: str | None  # None for admin-originated messages
    content: str
    created_at: datetime
    attachments: list[Attachment] = field(default_factory=list)
    admin_sender_id: str | None = None

    @property
    def author_id(self) -> str | None:
        return self.sender_id or self.admin_sender_id


@dataclass
class LocalFile:
    """A file picked on the device, not yet uploaded."""

    name: str
    data: bytes
    mime_type: str | None = None

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class UploadResult:
    """Outcome of uploading one LocalFile."""

    file_name: str
    success: bool
    attachment_id: str | None = None
    error: str | None = None
    error_code: str | None = None


@dataclass
class UploadStats:
    """A sender's standing against the hourly upload quota."""

    uploads_in_last_hour: int
    rate_limit: int
    remaining_uploads: int
    reset_at: datetime | None = None

    @property
    def can_upload(self) -> bool:
        return self.remaining_uploads > 0

    def describe(self) -> str:
        return (
            f"{self.uploads_in_last_hour}/{self.rate_limit} uploads "
            f"({self.remaining_uploads} restantes)"
        )
