"""Pytest configuration and fixtures."""

import sys
from datetime import timedelta
from pathlib import Path

import pytest
import pytest_asyncio

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))


@pytest.fixture
def feed():
    """Create an in-memory change feed."""
    from chatsync.feed import ChangeFeed

    return ChangeFeed()


@pytest_asyncio.fixture
async def storage(feed):
    """Create in-memory storage publishing to the feed."""
    from chatsync.storage import Storage

    st = Storage(":memory:", feed=feed)
    await st.init()
    yield st
    await st.close()


@pytest.fixture
def objects(tmp_path):
    """Create object storage in a temporary directory."""
    from chatsync.storage import LocalObjectStorage

    return LocalObjectStorage(tmp_path / "objects", secret="test-secret")


@pytest_asyncio.fixture
async def tracker(storage, feed):
    """Create Tracker tapping the feed."""
    from chatsync.tracker import Tracker

    tr = Tracker(storage, feed)
    await tr.start()
    return tr


@pytest.fixture
def settings():
    """Sync settings without upload back-off."""
    from chatsync.config import SyncSettings

    return SyncSettings(
        grace_window=timedelta(seconds=10),
        settle_timeout=timedelta(seconds=30),
        upload_retry_delay=0.0,
    )


@pytest.fixture
def viewer():
    """The signed-in staff member."""
    from chatsync.models import Viewer

    return Viewer(id="staff-1", organization_id="org-1", name="Ana")


@pytest.fixture
def other_viewer():
    """Another staff member of the same organization."""
    from chatsync.models import Viewer

    return Viewer(id="staff-2", organization_id="org-1", name="Bruno")


@pytest_asyncio.fixture
async def conversation(storage, viewer, other_viewer):
    """A direct conversation between the two staff members."""
    from chatsync.models import ConversationType

    return await storage.create_conversation(
        organization_id="org-1",
        type=ConversationType.DIRECT,
        participant_ids=[other_viewer.id],
        creator_id=viewer.id,
    )


@pytest_asyncio.fixture
async def session(viewer, storage, feed, objects, tracker, settings):
    """Session of the signed-in viewer."""
    from chatsync.session import Session

    s = Session(viewer, storage, feed, objects, tracker=tracker, settings=settings)
    yield s
    await s.close()


@pytest_asyncio.fixture
async def other_session(other_viewer, storage, feed, objects, tracker, settings):
    """Session of the other staff member."""
    from chatsync.session import Session

    s = Session(other_viewer, storage, feed, objects, tracker=tracker, settings=settings)
    yield s
    await s.close()


@pytest.fixture
def engine(session):
    """Engine of the signed-in viewer, not yet opened."""
    return session.create_engine()


@pytest.fixture
def png_bytes():
    """Minimal bytes standing in for a PNG image."""
    return b"\x89PNG\r\n\x1a\n" + b"\x00" * 64
