"""Core module."""

from .app import Application, IApplication
from .config import SyncSettings
from .errors import (
    ChatSyncError,
    ObjectStorageError,
    OrganizationResolutionError,
    QuotaExceededError,
)
from .feed import ChangeFeed, IChangeFeed
from .models import (
    Attachment,
    AttachmentStatus,
    Conversation,
    ConversationType,
    LocalFile,
    Message,
    MessageState,
    TraceEvent,
    UploadResult,
    UploadStats,
    Viewer,
)
from .notifications import NotificationPayload, Route, resolve_route
from .session import Session
from .storage import IObjectStorage, IStorage, LocalObjectStorage, Storage
from .sync import (
    AttachmentUploadPipeline,
    ChangeFeedSubscriber,
    ConversationSyncEngine,
    ISyncEngine,
    MessageStore,
    ReadPositionTracker,
    SendOutcome,
    group_by_date,
)
from .tracker import ITracker, Tracker

__all__ = [
    # Application
    "Application",
    "IApplication",
    "Session",
    "SyncSettings",
    # Errors
    "ChatSyncError",
    "ObjectStorageError",
    "OrganizationResolutionError",
    "QuotaExceededError",
    # Models
    "Attachment",
    "AttachmentStatus",
    "Conversation",
    "ConversationType",
    "LocalFile",
    "Message",
    "MessageState",
    "TraceEvent",
    "UploadResult",
    "UploadStats",
    "Viewer",
    # Components
    "IStorage",
    "Storage",
    "IObjectStorage",
    "LocalObjectStorage",
    "IChangeFeed",
    "ChangeFeed",
    "ITracker",
    "Tracker",
    "ChangeFeedSubscriber",
    "MessageStore",
    "AttachmentUploadPipeline",
    "ReadPositionTracker",
    "ISyncEngine",
    "ConversationSyncEngine",
    "SendOutcome",
    "group_by_date",
    # Notifications
    "NotificationPayload",
    "Route",
    "resolve_route",
]
