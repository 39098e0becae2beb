"""Conversation API routes (admin console)."""

from datetime import datetime

from pydantic import BaseModel, Field
from fastapi import APIRouter, HTTPException, Query

from ...app import Application
from ...logging_config import get_logger
from ...models import Attachment, Conversation, ConversationType, Message
from ...storage.storage import MAX_MESSAGE_LENGTH

logger = get_logger(__name__)


class AttachmentResponse(BaseModel):
    """Response model for attachment."""

    id: str
    conversation_id: str
    message_id: str | None
    sender_id: str
    file_name: str
    file_kind: str
    file_size: int
    status: str
    rejected_reason: str | None
    reviewed_by: str | None
    reviewed_at: datetime | None
    created_at: datetime | None


class MessageResponse(BaseModel):
    """Response model for message."""

    id: str
    conversation_id: str
    sender_id: str | None
    admin_sender_id: str | None
    content: str
    created_at: datetime
    attachments: list[AttachmentResponse]


class ConversationResponse(BaseModel):
    """Response model for conversation."""

    id: str
    type: ConversationType
    organization_id: str | None
    name: str | None
    participant_ids: list[str]
    created_at: datetime | None
    updated_at: datetime | None


class ConversationRequest(BaseModel):
    """Request model for creating a conversation."""

    organization_id: str
    type: ConversationType = ConversationType.DIRECT
    participant_ids: list[str] = Field(min_length=1)
    creator_id: str
    name: str | None = None


class SupportConversationRequest(BaseModel):
    """Request model for opening a support conversation."""

    organization_id: str
    staff_id: str
    name: str | None = None


class AdminMessageRequest(BaseModel):
    """Request model for an admin reply."""

    admin_id: str
    content: str = Field(min_length=1, max_length=MAX_MESSAGE_LENGTH)


def attachment_to_dict(attachment: Attachment) -> dict:
    return {
        "id": attachment.id,
        "conversation_id": attachment.conversation_id,
        "message_id": attachment.message_id,
        "sender_id": attachment.sender_id,
        "file_name": attachment.file_name,
        "file_kind": attachment.file_kind.value,
        "file_size": attachment.file_size,
        "status": attachment.status.value,
        "rejected_reason": attachment.rejected_reason,
        "reviewed_by": attachment.reviewed_by,
        "reviewed_at": attachment.reviewed_at,
        "created_at": attachment.created_at,
    }


def message_to_dict(message: Message) -> dict:
    return {
        "id": message.id,
        "conversation_id": message.conversation_id,
        "sender_id": message.sender_id,
        "admin_sender_id": message.admin_sender_id,
        "content": message.content,
        "created_at": message.created_at,
        "attachments": [attachment_to_dict(a) for a in message.attachments],
    }


def conversation_to_dict(conversation: Conversation) -> dict:
    return {
        "id": conversation.id,
        "type": conversation.type,
        "organization_id": conversation.organization_id,
        "name": conversation.name,
        "participant_ids": conversation.participant_ids,
        "created_at": conversation.created_at,
        "updated_at": conversation.updated_at,
    }


def create_conversations_router(app: Application) -> APIRouter:
    """Create conversations router."""
    router = APIRouter(prefix="/api/conversations", tags=["conversations"])

    @router.get("", response_model=list[ConversationResponse])
    async def list_conversations(
        viewer_id: str = Query(..., description="Participant to list for"),
        organization_id: str | None = Query(None),
    ) -> list[dict]:
        """List a participant's conversations, most recent first."""
        conversations = await app.storage.list_conversations(
            viewer_id, organization_id=organization_id
        )
        return [conversation_to_dict(c) for c in conversations]

    @router.post("", response_model=ConversationResponse)
    async def create_conversation(request: ConversationRequest) -> dict:
        """Create a conversation, reusing an existing direct one."""
        conversation = await app.storage.create_conversation(
            organization_id=request.organization_id,
            type=request.type,
            participant_ids=request.participant_ids,
            creator_id=request.creator_id,
            name=request.name,
        )
        return conversation_to_dict(conversation)

    @router.post("/support", response_model=ConversationResponse)
    async def create_support_conversation(request: SupportConversationRequest) -> dict:
        """Open (or reuse) a staff member's support conversation."""
        conversation = await app.storage.create_support_conversation(
            organization_id=request.organization_id,
            staff_id=request.staff_id,
            name=request.name,
        )
        return conversation_to_dict(conversation)

    @router.get("/{conversation_id}/messages", response_model=list[MessageResponse])
    async def get_messages(
        conversation_id: str,
        limit: int = Query(100, ge=1, le=1000),
    ) -> list[dict]:
        """Message history, oldest first, with linked attachments."""
        conversation = await app.storage.get_conversation(conversation_id)
        if conversation is None:
            raise HTTPException(status_code=404, detail="Conversa não encontrada")
        messages = await app.storage.get_messages(conversation_id, limit=limit)
        return [message_to_dict(m) for m in messages]

    @router.post("/{conversation_id}/messages", response_model=MessageResponse)
    async def send_admin_message(
        conversation_id: str, request: AdminMessageRequest
    ) -> dict:
        """Reply as an admin. Shown to staff as 'Suporte'."""
        conversation = await app.storage.get_conversation(conversation_id)
        if conversation is None:
            raise HTTPException(status_code=404, detail="Conversa não encontrada")
        try:
            message = await app.storage.insert_message(
                conversation_id,
                sender_id=None,
                content=request.content,
                admin_sender_id=request.admin_id,
            )
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return message_to_dict(message)

    return router
