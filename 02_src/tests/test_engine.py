"""Tests for ConversationSyncEngine."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from chatsync.config import SyncSettings
from chatsync.errors import OrganizationResolutionError
from chatsync.models import (
    AttachmentStatus,
    ConversationType,
    LocalFile,
    Message,
    MessageState,
    Viewer,
)
from chatsync.session import Session
from chatsync.storage import LocalObjectStorage
from chatsync.sync.engine import SEND_FAILED_MESSAGE
from chatsync.sync.store import ATTACHMENT_PLACEHOLDER
from chatsync.validation import MAX_FILE_SIZE


class TestOpen:
    """Tests for opening and closing a conversation."""

    async def test_open_loads_history(self, engine, storage, conversation, other_viewer):
        """Test that open bulk-loads the existing messages."""
        await storage.insert_message(conversation.id, other_viewer.id, "Bom dia")
        await storage.insert_message(conversation.id, other_viewer.id, "Tudo bem?")

        await engine.open(conversation.id)

        assert [m.content for m in engine.store.messages()] == ["Bom dia", "Tudo bem?"]
        assert all(e.state == MessageState.SETTLED for e in engine.entries())

    async def test_open_marks_read(self, engine, storage, conversation, viewer, other_viewer):
        """Test that open advances the viewer's read position."""
        await storage.insert_message(conversation.id, other_viewer.id, "Oi")
        assert await storage.unread_count(conversation.id, viewer.id) == 1

        await engine.open(conversation.id)

        position = await storage.get_read_position(conversation.id, viewer.id)
        assert position.last_read_at is not None
        assert await storage.unread_count(conversation.id, viewer.id) == 0

    async def test_open_unknown_conversation(self, engine):
        """Test that opening a missing conversation raises."""
        with pytest.raises(ValueError):
            await engine.open("missing")
        assert engine.is_open is False

    async def test_open_subscribes_once(self, engine, feed, conversation):
        """Test that exactly one channel is open for the conversation."""
        await engine.open(conversation.id)
        await engine.open(conversation.id)

        assert feed.channel_count(conversation.id) == 1

    async def test_switching_closes_previous_subscription(
        self, engine, storage, feed, conversation, viewer, other_viewer
    ):
        """Test that opening another conversation closes the first channel."""
        second = await storage.create_conversation(
            organization_id="org-1",
            type=ConversationType.GROUP,
            participant_ids=[other_viewer.id],
            creator_id=viewer.id,
            name="Plantão",
        )
        await engine.open(conversation.id)
        await engine.open(second.id)

        assert feed.channel_count(conversation.id) == 0
        assert feed.channel_count(second.id) == 1

        await storage.insert_message(conversation.id, other_viewer.id, "Vazou?")
        assert engine.store.messages() == []

    async def test_close_discards_state(self, engine, feed, conversation):
        """Test that close drops the store and the subscription."""
        await engine.open(conversation.id)
        await engine.close()

        assert engine.is_open is False
        assert feed.channel_count() == 0
        with pytest.raises(RuntimeError):
            engine.store

    async def test_events_during_load_are_replayed(
        self, engine, storage, conversation, other_viewer, monkeypatch
    ):
        """Test that a message inserted while loading is not lost."""
        original = storage.get_messages

        async def racing(conversation_id, limit=100):
            messages = await original(conversation_id, limit=limit)
            await storage.insert_message(conversation_id, other_viewer.id, "Durante")
            return messages

        monkeypatch.setattr(storage, "get_messages", racing)

        await engine.open(conversation.id)

        assert [m.content for m in engine.store.messages()] == ["Durante"]


class TestSend:
    """Tests for sending messages."""

    async def test_happy_path(self, engine, storage, conversation, viewer):
        """Test that a send settles into exactly one message."""
        await engine.open(conversation.id)
        before = datetime.now(timezone.utc)

        outcome = await engine.send("Oi")

        assert outcome.sent is True
        entries = engine.entries()
        assert len(entries) == 1
        assert entries[0].state == MessageState.SETTLED
        assert entries[0].message.content == "Oi"
        assert entries[0].message.id == outcome.message_id

        position = await storage.get_read_position(conversation.id, viewer.id)
        assert position.last_read_at >= before

    async def test_empty_send_is_refused(self, engine, conversation):
        """Test that empty text without files sends nothing."""
        await engine.open(conversation.id)

        outcome = await engine.send("   ")

        assert outcome.sent is False
        assert outcome.error
        assert engine.entries() == []

    async def test_send_requires_open_conversation(self, engine):
        """Test that send on a closed engine raises."""
        with pytest.raises(RuntimeError):
            await engine.send("Oi")

    async def test_attachment_only_send(self, engine, storage, conversation, png_bytes):
        """Test that an empty text with a file becomes a placeholder with the attachment."""
        await engine.open(conversation.id)

        outcome = await engine.send(
            "", [LocalFile(name="foto.png", data=png_bytes, mime_type="image/png")]
        )

        assert outcome.sent is True
        assert outcome.linked is True
        messages = engine.store.messages()
        assert len(messages) == 1
        assert messages[0].content == ATTACHMENT_PLACEHOLDER
        assert len(messages[0].attachments) == 1
        attachment = messages[0].attachments[0]
        assert attachment.id == outcome.uploads[0].attachment_id
        assert attachment.status == AttachmentStatus.PENDING
        assert engine.store.pending_attachments() == []

        stored = await storage.get_attachment(attachment.id)
        assert stored.message_id == outcome.message_id

    async def test_partial_upload_failure_still_sends(
        self, engine, storage, conversation, png_bytes
    ):
        """Test that one oversized file does not block the others or the message."""
        await engine.open(conversation.id)
        files = [
            LocalFile(name="a.png", data=png_bytes, mime_type="image/png"),
            LocalFile(name="b.pdf", data=b"\0" * (MAX_FILE_SIZE + 1), mime_type="application/pdf"),
            LocalFile(name="c.png", data=png_bytes, mime_type="image/png"),
        ]

        outcome = await engine.send("Documentos", files)

        assert outcome.sent is True
        assert [r.success for r in outcome.uploads] == [True, False, True]
        assert outcome.failed_uploads[0].error_code == "FILE_TOO_LARGE"
        message = engine.store.messages()[0]
        assert sorted(a.file_name for a in message.attachments) == ["a.png", "c.png"]

    async def test_insert_failure_rolls_back(
        self, engine, storage, conversation, png_bytes, monkeypatch
    ):
        """Test that a rejected insert restores the input and drops the entry."""
        await engine.open(conversation.id)

        async def failing(*args, **kwargs):
            raise RuntimeError("backend down")

        monkeypatch.setattr(storage, "insert_message", failing)
        files = [
            LocalFile(name="ok.png", data=png_bytes, mime_type="image/png"),
            LocalFile(name="ruim.exe", data=png_bytes, mime_type="image/png"),
        ]

        outcome = await engine.send("Segue", files)

        assert outcome.sent is False
        assert outcome.error == SEND_FAILED_MESSAGE
        assert outcome.restored_text == "Segue"
        assert [f.name for f in outcome.restored_files] == ["ruim.exe"]
        assert outcome.orphaned_attachment_ids == [outcome.uploads[0].attachment_id]
        assert engine.entries() == []

    async def test_organization_failure_before_any_call(
        self, storage, feed, objects, png_bytes
    ):
        """Test that an unattributable upload fails before touching the backend."""
        orphan_viewer = Viewer(id="staff-9", organization_id=None)
        conversation = await storage.create_conversation(
            organization_id=None,
            type=ConversationType.DIRECT,
            participant_ids=["staff-8"],
            creator_id=orphan_viewer.id,
        )
        async with Session(orphan_viewer, storage, feed, objects) as session:
            engine = await session.open_conversation(conversation.id)

            with pytest.raises(OrganizationResolutionError):
                await engine.send(
                    "", [LocalFile(name="foto.png", data=png_bytes, mime_type="image/png")]
                )

            assert engine.entries() == []
            assert await storage.get_attachments(conversation.id) == []
            assert await storage.get_messages(conversation.id) == []

    async def test_viewer_organization_used_as_fallback(
        self, viewer, storage, feed, objects, png_bytes
    ):
        """Test that a conversation without organization uses the viewer's."""
        conversation = await storage.create_conversation(
            organization_id=None,
            type=ConversationType.DIRECT,
            participant_ids=["staff-8"],
            creator_id=viewer.id,
        )
        async with Session(viewer, storage, feed, objects) as session:
            engine = await session.open_conversation(conversation.id)

            outcome = await engine.send(
                "Foto", [LocalFile(name="foto.png", data=png_bytes, mime_type="image/png")]
            )

        attachment = await storage.get_attachment(outcome.uploads[0].attachment_id)
        assert attachment.file_path.startswith(f"{viewer.organization_id}/")

    async def test_settle_timeout_marks_failed(
        self, viewer, storage, feed, objects, conversation, monkeypatch
    ):
        """Test that an unconfirmed entry turns failed until the send returns."""
        settings = SyncSettings(settle_timeout=timedelta(seconds=0.05))
        original = storage.insert_message

        async def slow(*args, **kwargs):
            await asyncio.sleep(0.3)
            return await original(*args, **kwargs)

        monkeypatch.setattr(storage, "insert_message", slow)

        async with Session(viewer, storage, feed, objects, settings=settings) as session:
            engine = await session.open_conversation(conversation.id)

            task = asyncio.create_task(engine.send("Lento"))
            await asyncio.sleep(0.15)

            entries = engine.entries()
            assert len(entries) == 1
            assert entries[0].state == MessageState.FAILED
            token = entries[0].token

            outcome = await task
            assert outcome.sent is True
            assert engine.store.get(token) is None
            assert [(e.message.content, e.state) for e in engine.entries()] == [
                ("Lento", MessageState.SETTLED)
            ]

    async def test_slow_upload_leaves_single_entry(
        self, viewer, storage, feed, tmp_path, conversation, png_bytes
    ):
        """Test that an echo outside the grace window does not leave a ghost entry."""

        class SlowObjects(LocalObjectStorage):
            async def upload(self, path, data, content_type=None, upsert=False):
                await asyncio.sleep(0.2)
                return await super().upload(path, data, content_type, upsert)

        settings = SyncSettings(
            grace_window=timedelta(milliseconds=50),
            settle_timeout=timedelta(milliseconds=400),
            upload_retry_delay=0.0,
        )
        objects = SlowObjects(tmp_path / "slow", secret="test-secret")

        async with Session(viewer, storage, feed, objects, settings=settings) as session:
            engine = await session.open_conversation(conversation.id)

            outcome = await engine.send(
                "Oi", [LocalFile(name="foto.png", data=png_bytes, mime_type="image/png")]
            )
            await asyncio.sleep(0.6)

            entries = engine.entries()
            assert outcome.sent is True
            assert [(e.message.content, e.state) for e in entries] == [
                ("Oi", MessageState.SETTLED)
            ]
            assert entries[0].message.id == outcome.message_id
            assert len(entries[0].message.attachments) == 1
            assert engine._timeouts == {}

    async def test_confirmed_send_cancels_timeout(
        self, viewer, storage, feed, objects, conversation
    ):
        """Test that a settled entry never turns failed."""
        settings = SyncSettings(settle_timeout=timedelta(seconds=0.05))
        async with Session(viewer, storage, feed, objects, settings=settings) as session:
            engine = await session.open_conversation(conversation.id)
            await engine.send("Rápido")
            await asyncio.sleep(0.1)

            assert engine.entries()[0].state == MessageState.SETTLED

    async def test_close_during_send_discards_results(
        self, engine, storage, conversation, monkeypatch
    ):
        """Test that a send finishing after close does not touch the view."""
        await engine.open(conversation.id)
        original = storage.insert_message

        async def slow(*args, **kwargs):
            await asyncio.sleep(0.1)
            return await original(*args, **kwargs)

        monkeypatch.setattr(storage, "insert_message", slow)

        task = asyncio.create_task(engine.send("Tchau"))
        await asyncio.sleep(0.01)
        await engine.close()

        outcome = await task
        assert outcome.sent is True
        assert engine.is_open is False
        assert len(await storage.get_messages(conversation.id)) == 1


class TestInbound:
    """Tests for events produced by other participants."""

    async def test_inbound_message_appears_and_marks_read(
        self, engine, other_session, storage, conversation, viewer
    ):
        """Test that another participant's message settles and advances the read position."""
        await engine.open(conversation.id)
        other = await other_session.open_conversation(conversation.id)

        await other.send("Olá")

        messages = engine.store.messages()
        assert [m.content for m in messages] == ["Olá"]
        assert engine.entries()[0].state == MessageState.SETTLED
        assert await storage.unread_count(conversation.id, viewer.id) == 0

    async def test_admin_message(self, engine, storage, conversation):
        """Test that an admin-originated message is shown."""
        await engine.open(conversation.id)

        await storage.insert_message(conversation.id, None, "Recebido", admin_sender_id="admin-1")

        message = engine.store.messages()[0]
        assert message.sender_id is None
        assert message.admin_sender_id == "admin-1"


class TestReview:
    """Tests for reviewer decisions arriving through the feed."""

    async def _send_document(self, engine, png_bytes):
        outcome = await engine.send(
            "", [LocalFile(name="rg.png", data=png_bytes, mime_type="image/png")]
        )
        return outcome.uploads[0].attachment_id

    async def test_rejection_updates_in_place(
        self, engine, storage, conversation, png_bytes, other_viewer
    ):
        """Test that a rejection changes the shown attachment only."""
        await engine.open(conversation.id)
        await storage.insert_message(conversation.id, other_viewer.id, "Manda o RG")
        attachment_id = await self._send_document(engine, png_bytes)
        before = [(m.id, m.content) for m in engine.store.messages()]

        await storage.update_attachment_status(
            attachment_id,
            AttachmentStatus.REJECTED,
            reviewer_id="admin-1",
            rejected_reason="Documento ilegível",
        )

        assert [(m.id, m.content) for m in engine.store.messages()] == before
        attachment = engine.store.messages()[-1].attachments[0]
        assert attachment.status == AttachmentStatus.REJECTED
        assert attachment.rejected_reason == "Documento ilegível"

        notices = engine.drain_notices()
        assert [n.title for n in notices] == ["Documento Rejeitado"]
        assert notices[0].body == "Documento ilegível"

    async def test_acceptance_notice_once(self, engine, storage, conversation, png_bytes):
        """Test that the same decision raises a single notice."""
        await engine.open(conversation.id)
        attachment_id = await self._send_document(engine, png_bytes)

        for _ in range(2):
            await storage.update_attachment_status(
                attachment_id, AttachmentStatus.ACCEPTED, reviewer_id="admin-1"
            )

        assert [n.title for n in engine.notices] == ["Documento Aprovado"]

    async def test_no_notice_for_others_attachments(
        self, engine, other_session, storage, conversation, png_bytes
    ):
        """Test that only the sender is notified about a review."""
        await engine.open(conversation.id)
        other = await other_session.open_conversation(conversation.id)
        outcome = await other.send(
            "", [LocalFile(name="crm.png", data=png_bytes, mime_type="image/png")]
        )

        await storage.update_attachment_status(
            outcome.uploads[0].attachment_id,
            AttachmentStatus.ACCEPTED,
            reviewer_id="admin-1",
        )

        assert engine.notices == []
        assert [n.title for n in other.notices] == ["Documento Aprovado"]


class TestResync:
    """Tests for reconnect handling."""

    async def test_reconnect_recovers_missed_messages(
        self, engine, storage, feed, conversation, viewer, other_viewer
    ):
        """Test that messages missed while disconnected appear after reconnect."""
        await engine.open(conversation.id)
        seen = []
        engine.add_listener(lambda: seen.append(engine.resyncing))

        await feed.disconnect()
        await storage.insert_message(conversation.id, other_viewer.id, "Perdida")
        assert engine.store.messages() == []

        local = Message(
            id="local",
            conversation_id=conversation.id,
            sender_id=viewer.id,
            content="Rascunho",
            created_at=datetime.now(timezone.utc) + timedelta(hours=1),
        )
        token = engine.store.apply_optimistic(local)

        await feed.reconnect()

        assert [m.content for m in engine.store.messages()] == ["Perdida", "Rascunho"]
        assert engine.store.get(token).state == MessageState.OPTIMISTIC
        assert engine.resyncing is False
        assert seen

    async def test_manual_resync(self, engine, storage, feed, conversation, other_viewer):
        """Test that resync() reloads from the backend."""
        await engine.open(conversation.id)
        await feed.disconnect()
        await storage.insert_message(conversation.id, other_viewer.id, "Sem feed")
        await feed.reconnect()
        await engine.resync()

        assert [m.content for m in engine.store.messages()] == ["Sem feed"]


class TestTracing:
    """Tests for engine trace events."""

    async def test_send_is_traced(self, engine, storage, conversation):
        """Test that open and send produce trace events."""
        await engine.open(conversation.id)
        await engine.send("Oi")

        events = await storage.get_trace_events(limit=100)
        event_types = {e.event_type for e in events}
        assert "conversation_opened" in event_types
        assert "message_sent" in event_types
        assert "feed_change_published" in event_types
