"""Push notification payloads and the screen they open."""

from dataclasses import dataclass
from enum import Enum
from typing import Any

from .logging_config import get_logger

logger = get_logger(__name__)


class NotificationType(str, Enum):
    """Chat notification types."""

    NEW_MESSAGE = "new_message"
    ATTACHMENT_ACCEPTED = "attachment_accepted"
    ATTACHMENT_REJECTED = "attachment_rejected"


@dataclass
class NotificationPayload:
    type: NotificationType | None
    conversation_id: str | None = None
    attachment_id: str | None = None
    file_name: str | None = None
    rejected_reason: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "NotificationPayload":
        """Parse a raw payload. Unknown types are kept as None."""
        data = data or {}
        raw_type = data.get("type")
        try:
            notification_type = NotificationType(raw_type) if raw_type else None
        except ValueError:
            logger.warning(f"Unknown notification type: {raw_type}")
            notification_type = None

        return cls(
            type=notification_type,
            conversation_id=data.get("conversation_id") or None,
            attachment_id=data.get("attachment_id"),
            file_name=data.get("file_name"),
            rejected_reason=data.get("rejected_reason"),
        )


@dataclass(frozen=True)
class Route:
    screen: str
    conversation_id: str | None = None


def resolve_route(payload: NotificationPayload) -> Route:
    """Screen to open when the user taps a notification."""
    if payload.conversation_id:
        return Route("conversation", payload.conversation_id)
    return Route("conversation_list")
