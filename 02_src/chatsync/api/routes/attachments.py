"""Attachment review and download routes."""

import mimetypes
from datetime import datetime, timedelta
from typing import Literal

from pydantic import BaseModel, model_validator
from fastapi import APIRouter, HTTPException, Query, Response

from ...app import Application
from ...errors import ObjectStorageError
from ...logging_config import get_logger
from ...models import AttachmentStatus
from ...storage.storage import MAX_REJECTION_REASON_LENGTH
from .conversations import AttachmentResponse, attachment_to_dict

logger = get_logger(__name__)


class ReviewRequest(BaseModel):
    """Request model for an attachment review decision."""

    status: Literal["accepted", "rejected"]
    reviewer_id: str
    rejected_reason: str | None = None

    @model_validator(mode="after")
    def check_reason(self):
        if self.status == "rejected":
            reason = (self.rejected_reason or "").strip()
            if not reason:
                raise ValueError(
                    "Motivo da rejeição é obrigatório quando o documento é rejeitado"
                )
            if len(reason) > MAX_REJECTION_REASON_LENGTH:
                raise ValueError("Motivo da rejeição muito longo")
            self.rejected_reason = reason
        else:
            self.rejected_reason = None
        return self


class CleanupResponse(BaseModel):
    """Response model for an orphan cleanup run."""

    deleted: int
    attachment_ids: list[str]


class UploadStatsResponse(BaseModel):
    """Response model for a sender's upload quota."""

    sender_id: str
    uploads_in_last_hour: int
    rate_limit: int
    remaining_uploads: int
    reset_at: datetime | None = None


class DownloadResponse(BaseModel):
    """Response model for a signed download URL."""

    url: str
    file_name: str
    expires_in: int


def create_attachments_router(app: Application) -> APIRouter:
    """Create attachments router."""
    router = APIRouter(prefix="/api/attachments", tags=["attachments"])

    @router.get("", response_model=list[AttachmentResponse])
    async def list_attachments(
        conversation_id: str | None = Query(None),
        status: AttachmentStatus | None = Query(None, description="Review status"),
    ) -> list[dict]:
        """Review queue: attachments with optional filters, oldest first."""
        attachments = await app.storage.get_attachments(
            conversation_id=conversation_id, status=status
        )
        return [attachment_to_dict(a) for a in attachments]

    @router.get("/upload-stats", response_model=UploadStatsResponse)
    async def get_upload_stats(sender_id: str = Query(...)) -> dict:
        """A sender's standing against the hourly upload quota."""
        stats = await app.uploads.upload_stats(sender_id)
        return {
            "sender_id": sender_id,
            "uploads_in_last_hour": stats.uploads_in_last_hour,
            "rate_limit": stats.rate_limit,
            "remaining_uploads": stats.remaining_uploads,
            "reset_at": stats.reset_at,
        }

    @router.post("/cleanup", response_model=CleanupResponse)
    async def cleanup_orphans(
        age_hours: float = Query(24, gt=0, description="Minimum age in hours"),
    ) -> dict:
        """Delete attachments never linked to a message, with their files."""
        removed = await app.uploads.cleanup_orphans(timedelta(hours=age_hours))
        return {"deleted": len(removed), "attachment_ids": [a.id for a in removed]}

    @router.post("/{attachment_id}/review", response_model=AttachmentResponse)
    async def review_attachment(attachment_id: str, request: ReviewRequest) -> dict:
        """Accept or reject an attachment."""
        try:
            attachment = await app.storage.update_attachment_status(
                attachment_id,
                AttachmentStatus(request.status),
                reviewer_id=request.reviewer_id,
                rejected_reason=request.rejected_reason,
            )
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

        if attachment is None:
            raise HTTPException(status_code=404, detail="Anexo não encontrado")

        logger.info(
            f"Attachment reviewed: {attachment.status.value}",
            extra={"attachment_id": attachment_id},
        )
        return attachment_to_dict(attachment)

    @router.get("/{attachment_id}/download", response_model=DownloadResponse)
    async def download_attachment(attachment_id: str) -> dict:
        """Signed, time-limited URL of the stored file."""
        attachment = await app.storage.get_attachment(attachment_id)
        if attachment is None:
            raise HTTPException(status_code=404, detail="Anexo não encontrado")

        ttl = app.settings.signed_url_ttl
        return {
            "url": app.objects.create_signed_url(attachment.file_path, expires_in=ttl),
            "file_name": attachment.file_name,
            "expires_in": ttl,
        }

    @router.delete("/{attachment_id}", response_model=AttachmentResponse)
    async def delete_attachment(attachment_id: str) -> dict:
        """Delete an attachment record and its stored file."""
        attachment = await app.uploads.delete_attachment(attachment_id)
        if attachment is None:
            raise HTTPException(status_code=404, detail="Anexo não encontrado")
        return attachment_to_dict(attachment)

    return router


def create_storage_router(app: Application) -> APIRouter:
    """Create router serving signed object URLs."""
    router = APIRouter(prefix="/storage", tags=["storage"])

    @router.get("/{path:path}")
    async def get_object(
        path: str,
        expires: int = Query(...),
        signature: str = Query(...),
    ) -> Response:
        """Serve a stored file behind a valid signed URL."""
        if not app.objects.verify_signed_url(path, expires, signature):
            raise HTTPException(status_code=403, detail="URL inválida ou expirada")
        try:
            data = await app.objects.download(path)
        except ObjectStorageError:
            raise HTTPException(status_code=404, detail="Arquivo não encontrado")

        media_type, _ = mimetypes.guess_type(path)
        return Response(content=data, media_type=media_type or "application/octet-stream")

    return router
