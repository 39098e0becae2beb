"""ReadPositionTracker implementation."""

from datetime import datetime, timezone

from ..logging_config import get_logger
from ..storage import IStorage

logger = get_logger(__name__)


class ReadPositionTracker:
    """Advances a viewer's read-up-to marker. Never moves it backwards."""

    def __init__(self, storage: IStorage):
        self._storage = storage
        # (conversation_id, viewer_id) -> last value known to be stored
        self._known: dict[tuple[str, str], datetime] = {}

    async def mark_read(
        self,
        conversation_id: str,
        viewer_id: str,
        at: datetime | None = None,
    ) -> datetime | None:
        """Mark the conversation read up to `at` (default: now).

        Returns the stored read timestamp afterwards.
        """
        # Naive values are local time, as storage reads them
        at = (at or datetime.now(timezone.utc)).astimezone(timezone.utc)
        key = (conversation_id, viewer_id)

        known = self._known.get(key)
        if known is not None and at <= known:
            return known

        position = await self._storage.update_read_position(
            conversation_id, viewer_id, at
        )
        if position.last_read_at is not None:
            self._known[key] = position.last_read_at
        return position.last_read_at

    def forget(self, conversation_id: str) -> None:
        """Drop cached positions of a conversation."""
        for key in [k for k in self._known if k[0] == conversation_id]:
            del self._known[key]
