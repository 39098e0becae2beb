"""Observability API routes."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel
from fastapi import APIRouter, HTTPException, Query

from ...app import Application


class TraceEventResponse(BaseModel):
    """Response model for trace event."""

    id: str
    event_type: str
    actor: str
    data: dict[str, Any]
    timestamp: datetime


class FeedStatusResponse(BaseModel):
    """Response model for change feed status."""

    connected: bool
    channels: int


def create_observability_router(app: Application) -> APIRouter:
    """Create observability router."""
    router = APIRouter(prefix="/api", tags=["observability"])

    @router.get("/trace-events", response_model=list[TraceEventResponse])
    async def get_trace_events(
        after: str | None = Query(None, description="ISO timestamp filter"),
        limit: int = Query(100, ge=1, le=1000),
        event_type: list[str] | None = Query(None, description="Filter by event type"),
        actor: str | None = Query(None, description="Filter by actor"),
    ) -> list[dict]:
        """Get trace events with optional filters."""
        # Parse after timestamp
        after_dt = None
        if after:
            try:
                after_dt = datetime.fromisoformat(after)
            except ValueError:
                raise HTTPException(
                    status_code=400, detail="Invalid after timestamp format"
                )

        # Parse event_types
        event_types = event_type or None

        # Get events
        events = await app.storage.get_trace_events(
            after=after_dt,
            event_types=event_types,
            actor=actor,
            limit=limit,
        )

        # Convert to response format
        return [
            {
                "id": e.id,
                "event_type": e.event_type,
                "actor": e.actor,
                "data": e.data,
                "timestamp": e.timestamp,
            }
            for e in events
        ]

    @router.get("/feed", response_model=FeedStatusResponse)
    async def get_feed_status() -> dict:
        """Change feed connection state and open channels."""
        return {
            "connected": app.feed.connected,
            "channels": app.feed.channel_count(),
        }

    return router
