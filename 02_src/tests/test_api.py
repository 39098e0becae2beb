"""Tests for the admin console API."""

import asyncio

import httpx
import pytest
import pytest_asyncio

from chatsync.api import create_fastapi_app
from chatsync.app import Application
from chatsync.config import SyncSettings
from chatsync.models import ConversationType, FileKind, Viewer


@pytest_asyncio.fixture
async def application(tmp_path):
    app = Application(
        db_path=":memory:",
        objects_dir=str(tmp_path / "objects"),
        settings=SyncSettings(signing_secret="test-secret", upload_retry_delay=0.0),
    )
    await app.start()
    yield app
    await app.stop()


@pytest_asyncio.fixture
async def client(application):
    # Lifespan is not run by the transport; the fixture starts the application
    transport = httpx.ASGITransport(app=create_fastapi_app(application))
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


async def _stored_attachment(application, conversation_id):
    path = f"org-1/{conversation_id}/abc_laudo.pdf"
    await application.objects.upload(path, b"%PDF-1.4", "application/pdf")
    return await application.storage.create_attachment(
        conversation_id=conversation_id,
        sender_id="staff-1",
        file_name="laudo.pdf",
        file_kind=FileKind.PDF,
        file_path=path,
        file_size=8,
    )


class TestConversationRoutes:
    """Tests for /api/conversations."""

    @pytest.mark.asyncio
    async def test_create_and_list(self, client):
        response = await client.post(
            "/api/conversations",
            json={
                "organization_id": "org-1",
                "participant_ids": ["staff-2"],
                "creator_id": "staff-1",
            },
        )
        assert response.status_code == 200
        created = response.json()
        assert created["type"] == "direct"

        listed = await client.get("/api/conversations", params={"viewer_id": "staff-2"})
        assert [c["id"] for c in listed.json()] == [created["id"]]

    @pytest.mark.asyncio
    async def test_support_conversation(self, client):
        payload = {"organization_id": "org-1", "staff_id": "staff-1"}
        first = await client.post("/api/conversations/support", json=payload)
        second = await client.post("/api/conversations/support", json=payload)

        assert first.json()["type"] == "support"
        assert first.json()["id"] == second.json()["id"]

    @pytest.mark.asyncio
    async def test_messages_of_missing_conversation(self, client):
        response = await client.get("/api/conversations/missing/messages")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_admin_reply_reaches_open_engine(self, client, application):
        """Test that an admin reply shows up in a staff engine as support."""
        conversation = await application.storage.create_support_conversation(
            "org-1", "staff-1"
        )
        engine = await application.open_session(
            Viewer(id="staff-1", organization_id="org-1")
        ).open_conversation(conversation.id)

        response = await client.post(
            f"/api/conversations/{conversation.id}/messages",
            json={"admin_id": "admin-1", "content": "Como podemos ajudar?"},
        )

        assert response.status_code == 200
        assert response.json()["sender_id"] is None
        messages = engine.store.messages()
        assert [m.content for m in messages] == ["Como podemos ajudar?"]
        assert messages[0].admin_sender_id == "admin-1"

    @pytest.mark.asyncio
    async def test_admin_reply_rejects_blank(self, client, application):
        conversation = await application.storage.create_support_conversation(
            "org-1", "staff-1"
        )

        response = await client.post(
            f"/api/conversations/{conversation.id}/messages",
            json={"admin_id": "admin-1", "content": "   "},
        )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_history_includes_attachments(self, client, application):
        conversation = await application.storage.create_conversation(
            "org-1", ConversationType.DIRECT, ["staff-2"], "staff-1"
        )
        message = await application.storage.insert_message(conversation.id, "staff-1", "Segue")
        attachment = await _stored_attachment(application, conversation.id)
        await application.storage.link_attachments([attachment.id], message.id)

        response = await client.get(f"/api/conversations/{conversation.id}/messages")

        body = response.json()
        assert body[0]["attachments"][0]["id"] == attachment.id
        assert body[0]["attachments"][0]["status"] == "pending"


class TestAttachmentRoutes:
    """Tests for /api/attachments and signed downloads."""

    @pytest.mark.asyncio
    async def test_review_queue_and_accept(self, client, application):
        attachment = await _stored_attachment(application, "conv-1")

        queue = await client.get("/api/attachments", params={"status": "pending"})
        assert [a["id"] for a in queue.json()] == [attachment.id]

        response = await client.post(
            f"/api/attachments/{attachment.id}/review",
            json={"status": "accepted", "reviewer_id": "admin-1"},
        )
        assert response.status_code == 200
        assert response.json()["status"] == "accepted"
        assert response.json()["reviewed_by"] == "admin-1"

    @pytest.mark.asyncio
    async def test_reject_without_reason(self, client, application):
        attachment = await _stored_attachment(application, "conv-1")

        response = await client.post(
            f"/api/attachments/{attachment.id}/review",
            json={"status": "rejected", "reviewer_id": "admin-1", "rejected_reason": " "},
        )

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_review_missing(self, client):
        response = await client.post(
            "/api/attachments/missing/review",
            json={"status": "accepted", "reviewer_id": "admin-1"},
        )
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_signed_download(self, client, application):
        """Test that the signed URL serves the stored bytes."""
        attachment = await _stored_attachment(application, "conv-1")

        response = await client.get(f"/api/attachments/{attachment.id}/download")
        url = response.json()["url"]
        download = await client.get(url)

        assert download.status_code == 200
        assert download.content == b"%PDF-1.4"
        assert download.headers["content-type"] == "application/pdf"

    @pytest.mark.asyncio
    async def test_tampered_signature(self, client, application):
        attachment = await _stored_attachment(application, "conv-1")
        url = (await client.get(f"/api/attachments/{attachment.id}/download")).json()["url"]

        response = await client.get(url.replace("signature=", "signature=0"))

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_delete_attachment(self, client, application):
        """Test that deleting drops the record and the stored file."""
        attachment = await _stored_attachment(application, "conv-1")
        url = (await client.get(f"/api/attachments/{attachment.id}/download")).json()["url"]

        response = await client.delete(f"/api/attachments/{attachment.id}")

        assert response.status_code == 200
        assert response.json()["id"] == attachment.id
        assert await application.storage.get_attachment(attachment.id) is None
        assert (await client.get(url)).status_code == 404

    @pytest.mark.asyncio
    async def test_delete_missing(self, client):
        response = await client.delete("/api/attachments/missing")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_cleanup_orphans(self, client, application):
        """Test that only unlinked attachments past the age are removed."""
        attachment = await _stored_attachment(application, "conv-1")

        kept = await client.post("/api/attachments/cleanup")
        assert kept.json() == {"deleted": 0, "attachment_ids": []}

        await asyncio.sleep(0.1)
        response = await client.post(
            "/api/attachments/cleanup", params={"age_hours": 0.00001}
        )

        assert response.status_code == 200
        assert response.json() == {"deleted": 1, "attachment_ids": [attachment.id]}
        assert await application.storage.get_attachment(attachment.id) is None

    @pytest.mark.asyncio
    async def test_cleanup_rejects_non_positive_age(self, client):
        response = await client.post("/api/attachments/cleanup", params={"age_hours": 0})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_upload_stats(self, client, application):
        await _stored_attachment(application, "conv-1")

        response = await client.get(
            "/api/attachments/upload-stats", params={"sender_id": "staff-1"}
        )

        assert response.status_code == 200
        body = response.json()
        assert body["uploads_in_last_hour"] == 1
        assert body["remaining_uploads"] == body["rate_limit"] - 1
        assert body["reset_at"] is not None


class TestObservabilityRoutes:
    """Tests for trace events and feed status."""

    @pytest.mark.asyncio
    async def test_trace_events(self, client, application):
        conversation = await application.storage.create_support_conversation(
            "org-1", "staff-1"
        )
        await application.storage.insert_message(conversation.id, "staff-1", "Oi")

        response = await client.get(
            "/api/trace-events", params={"event_type": "feed_change_published"}
        )

        assert response.status_code == 200
        assert len(response.json()) == 1

    @pytest.mark.asyncio
    async def test_trace_events_by_several_types(self, client, application):
        """Test that repeated event_type parameters are combined."""
        conversation = await application.storage.create_support_conversation(
            "org-1", "staff-1"
        )
        await application.storage.insert_message(conversation.id, "staff-1", "Oi")
        await application.tracker.track("orphans_cleaned", "upload_pipeline", {"count": 0})
        await application.tracker.track("attachment_deleted", "upload_pipeline", {})

        response = await client.get(
            "/api/trace-events",
            params=[("event_type", "feed_change_published"), ("event_type", "orphans_cleaned")],
        )

        assert sorted(e["event_type"] for e in response.json()) == [
            "feed_change_published",
            "orphans_cleaned",
        ]

    @pytest.mark.asyncio
    async def test_invalid_after(self, client):
        response = await client.get("/api/trace-events", params={"after": "ontem"})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_feed_status(self, client, application):
        conversation = await application.storage.create_support_conversation(
            "org-1", "staff-1"
        )
        await application.open_session(
            Viewer(id="staff-1", organization_id="org-1")
        ).open_conversation(conversation.id)

        response = await client.get("/api/feed")

        assert response.json() == {"connected": True, "channels": 1}
