"""Core data models for the chat sync core."""

from .conversations import Conversation, ConversationType, ReadPosition, Staff, Viewer
from .messages import (
    Attachment,
    AttachmentStatus,
    FileKind,
    LocalFile,
    Message,
    MessageState,
    UploadResult,
    UploadStats,
)
from .events import (
    AttachmentInserted,
    AttachmentLinked,
    AttachmentStatusChanged,
    ChangeEvent,
    FeedEvent,
    MessageInserted,
    Resynchronized,
    Resynchronizing,
)
from .tracing import TraceEvent

__all__ = [
    # Conversations
    "Conversation",
    "ConversationType",
    "ReadPosition",
    "Staff",
    "Viewer",
    # Messages
    "Attachment",
    "AttachmentStatus",
    "FileKind",
    "LocalFile",
    "Message",
    "MessageState",
    "UploadResult",
    "UploadStats",
    # Feed events
    "AttachmentInserted",
    "AttachmentLinked",
    "AttachmentStatusChanged",
    "ChangeEvent",
    "FeedEvent",
    "MessageInserted",
    "Resynchronized",
    "Resynchronizing",
    # Tracing
    "TraceEvent",
]
