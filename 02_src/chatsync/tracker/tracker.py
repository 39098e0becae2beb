"""Tracker implementation for creating TraceEvents."""

import uuid
from datetime import datetime, timezone
from typing import Protocol

from ..feed import ChangeFeed
from ..models import ChangeEvent, TraceEvent
from ..storage import IStorage


class ITracker(Protocol):
    """Creating TraceEvents. Two channels: change-feed tap + direct calls."""

    async def track(self, event_type: str, actor: str, data: dict) -> None:
        """Create TraceEvent and save to Storage."""
        ...


class Tracker:
    """Creates TraceEvents via a change-feed tap and direct track() calls."""

    def __init__(self, storage: IStorage, feed: ChangeFeed | None = None):
        self._storage = storage
        self._feed = feed

    async def start(self) -> None:
        """Observe every change published on the feed."""
        if self._feed is not None:
            self._feed.tap(self._handle_change)

    async def _handle_change(self, conversation_id: str, event: ChangeEvent) -> None:
        """Record one published row change."""
        record = getattr(event, "message", None) or getattr(event, "attachment", None)

        await self.track(
            event_type="feed_change_published",
            actor="change_feed",
            data={
                "conversation_id": conversation_id,
                "change": type(event).__name__,
                "record_id": getattr(record, "id", None),
            },
        )

    async def track(self, event_type: str, actor: str, data: dict) -> None:
        """Create TraceEvent and save to Storage."""
        trace_event = TraceEvent(
            id=str(uuid.uuid4()),
            event_type=event_type,
            actor=actor,
            data=data,
            timestamp=datetime.now(timezone.utc),
        )
        await self._storage.save_trace_event(trace_event)
