from .engine import (
    ConversationSyncEngine,
    ISyncEngine,
    Notice,
    SendOutcome,
    resolve_organization,
)
from .presentation import (
    AttachmentBadge,
    DateSection,
    MessageItem,
    date_label,
    group_by_date,
)
from .read_position import ReadPositionTracker
from .store import ATTACHMENT_PLACEHOLDER, MessageStore, StoreEntry
from .subscriber import ChangeFeedSubscriber, SubscriptionHandle, load_snapshot
from .uploads import AttachmentUploadPipeline

__all__ = [
    "ATTACHMENT_PLACEHOLDER",
    "AttachmentBadge",
    "AttachmentUploadPipeline",
    "ChangeFeedSubscriber",
    "ConversationSyncEngine",
    "DateSection",
    "ISyncEngine",
    "MessageItem",
    "MessageStore",
    "Notice",
    "ReadPositionTracker",
    "SendOutcome",
    "StoreEntry",
    "SubscriptionHandle",
    "date_label",
    "group_by_date",
    "load_snapshot",
    "resolve_organization",
]
