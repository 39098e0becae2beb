"""Conversation-related data models."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class ConversationType(str, Enum):
    """Kind of conversation."""

    DIRECT = "direct"
    GROUP = "group"
    SUPPORT = "support"  # staff member talking to the organization's admins


@dataclass
class Staff:
    """A medical staff member using the mobile app."""

    id: str
    organization_id: str | None
    name: str
    color: str = "#6B7280"


@dataclass
class Conversation:
    """A chat conversation between staff members (or staff and admins)."""

    id: str
    type: ConversationType
    organization_id: str | None
    name: str | None = None
    participant_ids: list[str] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class ReadPosition:
    """Read-up-to marker of one viewer in one conversation."""

    conversation_id: str
    viewer_id: str
    last_read_at: datetime | None = None


@dataclass(frozen=True)
class Viewer:
    """The signed-in user looking at conversations."""

    id: str
    organization_id: str | None = None
    name: str | None = None
