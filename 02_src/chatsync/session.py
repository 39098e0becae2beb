"""Viewer session: identity plus the engines opened on its behalf."""

from .config import SyncSettings
from .feed import IChangeFeed
from .logging_config import get_logger
from .models import UploadStats, Viewer
from .storage import IObjectStorage, IStorage
from .sync import (
    AttachmentUploadPipeline,
    ChangeFeedSubscriber,
    ConversationSyncEngine,
    ReadPositionTracker,
)
from .tracker import ITracker

logger = get_logger(__name__)


class Session:
    """
    Explicit session context for one viewer.

    Engines are created through the session and share its read-position
    tracker. close() tears down every engine and its feed subscription.
    """

    def __init__(
        self,
        viewer: Viewer,
        storage: IStorage,
        feed: IChangeFeed,
        objects: IObjectStorage,
        tracker: ITracker | None = None,
        settings: SyncSettings | None = None,
    ):
        self._viewer = viewer
        self._storage = storage
        self._feed = feed
        self._objects = objects
        self._tracker = tracker
        self._settings = settings or SyncSettings()
        self._read_tracker = ReadPositionTracker(storage)
        self._uploads = AttachmentUploadPipeline(
            storage,
            objects,
            tracker=tracker,
            max_retries=self._settings.upload_retries,
            retry_delay=self._settings.upload_retry_delay,
        )
        self._engines: list[ConversationSyncEngine] = []
        self._closed = False

    @property
    def viewer(self) -> Viewer:
        return self._viewer

    @property
    def engines(self) -> list[ConversationSyncEngine]:
        return list(self._engines)

    @property
    def closed(self) -> bool:
        return self._closed

    def create_engine(self) -> ConversationSyncEngine:
        """Create an engine with its own feed subscription slot."""
        if self._closed:
            raise RuntimeError("Session closed")

        engine = ConversationSyncEngine(
            viewer=self._viewer,
            storage=self._storage,
            subscriber=ChangeFeedSubscriber(
                self._feed, self._storage, self._settings.message_limit
            ),
            uploads=self._uploads,
            read_tracker=self._read_tracker,
            tracker=self._tracker,
            settings=self._settings,
        )
        self._engines.append(engine)
        return engine

    async def open_conversation(self, conversation_id: str) -> ConversationSyncEngine:
        engine = self.create_engine()
        await engine.open(conversation_id)
        return engine

    async def unread_count(self, conversation_id: str) -> int:
        return await self._storage.unread_count(conversation_id, self._viewer.id)

    async def upload_stats(self) -> UploadStats:
        """The viewer's remaining upload quota for the current hour."""
        return await self._uploads.upload_stats(self._viewer.id)

    async def close(self) -> None:
        """Close every engine. Idempotent."""
        if self._closed:
            return
        self._closed = True
        for engine in self._engines:
            await engine.close()
        self._engines.clear()
        logger.info("Session closed", extra={"viewer_id": self._viewer.id})

    async def __aenter__(self) -> "Session":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
