"""Application bootstrap and lifecycle management."""

import os
from typing import Protocol

from .config import SyncSettings, resolve_db_path, resolve_objects_dir
from .feed import ChangeFeed
from .logging_config import get_logger
from .models import Viewer
from .session import Session
from .storage import IObjectStorage, IStorage, LocalObjectStorage, Storage
from .sync import AttachmentUploadPipeline
from .tracker import ITracker, Tracker

logger = get_logger(__name__)


class IApplication(Protocol):
    """Bootstrap and lifecycle."""

    async def start(self) -> None:
        """Initialize components in dependency order."""
        ...

    async def stop(self) -> None:
        """Shutdown in reverse order."""
        ...

    async def reset(self) -> None:
        """Reset data between test runs."""
        ...


class Application:
    """Main application bootstrap."""

    def __init__(
        self,
        db_path: str | None = None,
        objects_dir: str | None = None,
        settings: SyncSettings | None = None,
    ):
        env_db_path = os.getenv("DATABASE_URL") if db_path is None else db_path
        self._db_path = resolve_db_path(env_db_path)
        env_objects_dir = (
            os.getenv("CHAT_OBJECTS_DIR") if objects_dir is None else objects_dir
        )
        self._objects_dir = resolve_objects_dir(env_objects_dir)
        self._settings = settings or SyncSettings.from_env()

        # Components (will be initialized in start())
        self._storage: Storage | None = None
        self._feed: ChangeFeed | None = None
        self._objects: IObjectStorage | None = None
        self._tracker: ITracker | None = None
        self._uploads: AttachmentUploadPipeline | None = None
        self._sessions: list[Session] = []

    async def start(self) -> None:
        """Initialize components in dependency order."""
        logger.info("Starting application")

        # 1. ChangeFeed (no dependencies)
        self._feed = ChangeFeed()
        logger.info("ChangeFeed initialized")

        # 2. Storage (publishes committed changes to the feed)
        self._storage = Storage(self._db_path, feed=self._feed)
        await self._storage.init()
        logger.info("Storage initialized")

        # 3. Object storage (no internal dependencies)
        self._objects = LocalObjectStorage(
            self._objects_dir, secret=self._settings.signing_secret
        )
        logger.info(f"Object storage at {self._objects_dir}")

        # 4. Tracker (depends on Storage + ChangeFeed)
        self._tracker = Tracker(self._storage, self._feed)
        await self._tracker.start()

        # 5. Attachment maintenance (depends on Storage + objects + Tracker)
        self._uploads = AttachmentUploadPipeline(
            self._storage,
            self._objects,
            tracker=self._tracker,
            max_retries=self._settings.upload_retries,
            retry_delay=self._settings.upload_retry_delay,
        )
        logger.info("All components initialized successfully")

    async def stop(self) -> None:
        """Shutdown in reverse order."""
        for session in self._sessions:
            await session.close()
        self._sessions.clear()
        if self._storage:
            await self._storage.close()
            logger.info("Storage closed")

    async def reset(self) -> None:
        """Reset data between test runs."""
        for session in self._sessions:
            await session.close()
        self._sessions.clear()

        if self._storage:
            await self._storage.clear()
            logger.info("Storage cleared")

    def open_session(self, viewer: Viewer) -> Session:
        """Create a session for a signed-in viewer."""
        session = Session(
            viewer=viewer,
            storage=self.storage,
            feed=self.feed,
            objects=self.objects,
            tracker=self._tracker,
            settings=self._settings,
        )
        self._sessions = [s for s in self._sessions if not s.closed]
        self._sessions.append(session)
        return session

    @property
    def settings(self) -> SyncSettings:
        return self._settings

    @property
    def storage(self) -> IStorage:
        """Get storage instance."""
        if not self._storage:
            raise RuntimeError("Application not started")
        return self._storage

    @property
    def feed(self) -> ChangeFeed:
        """Get change feed instance."""
        if not self._feed:
            raise RuntimeError("Application not started")
        return self._feed

    @property
    def objects(self) -> IObjectStorage:
        """Get object storage instance."""
        if not self._objects:
            raise RuntimeError("Application not started")
        return self._objects

    @property
    def tracker(self) -> ITracker:
        """Get tracker instance."""
        if not self._tracker:
            raise RuntimeError("Application not started")
        return self._tracker

    @property
    def uploads(self) -> AttachmentUploadPipeline:
        """Get the attachment pipeline used by admin routes."""
        if not self._uploads:
            raise RuntimeError("Application not started")
        return self._uploads
