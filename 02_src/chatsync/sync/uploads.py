"""AttachmentUploadPipeline implementation."""

import asyncio
from datetime import timedelta

from ..errors import ObjectStorageError, OrganizationResolutionError, QuotaExceededError
from ..logging_config import get_logger
from ..models import Attachment, LocalFile, UploadResult, UploadStats
from ..storage import ORPHAN_MAX_AGE, IObjectStorage, IStorage
from ..tracker import ITracker
from ..validation import (
    MAX_UPLOADS_PER_HOUR,
    generate_storage_path,
    remaining_uploads,
    validate_attachment_count,
    validate_file,
)

logger = get_logger(__name__)


class AttachmentUploadPipeline:
    """Uploads picked files and links the resulting attachments to a message."""

    def __init__(
        self,
        storage: IStorage,
        objects: IObjectStorage,
        tracker: ITracker | None = None,
        max_retries: int = 2,
        retry_delay: float = 1.0,
        max_uploads_per_hour: int = MAX_UPLOADS_PER_HOUR,
    ):
        self._storage = storage
        self._objects = objects
        self._tracker = tracker
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._max_uploads_per_hour = max_uploads_per_hour

    async def upload(
        self,
        files: list[LocalFile],
        conversation_id: str,
        organization_id: str | None,
        author_id: str,
    ) -> list[UploadResult]:
        """
        Upload files independently and create pending attachment records.

        One file failing never aborts the others; every file gets exactly
        one UploadResult, in input order. Files failing local validation
        never reach the network.

        Raises:
            OrganizationResolutionError: no organization to attribute the
                upload to. Raised before any network call.
        """
        if not organization_id:
            raise OrganizationResolutionError(conversation_id)

        if not files:
            return []

        count = validate_attachment_count(0, len(files))
        if not count.valid:
            return [
                UploadResult(
                    file_name=f.name,
                    success=False,
                    error=count.error,
                    error_code=count.error_code,
                )
                for f in files
            ]

        results = await asyncio.gather(
            *[
                self._upload_one(f, conversation_id, organization_id, author_id)
                for f in files
            ]
        )

        failed = [r for r in results if not r.success]
        if self._tracker:
            await self._tracker.track(
                event_type="attachments_uploaded",
                actor="upload_pipeline",
                data={
                    "conversation_id": conversation_id,
                    "succeeded": len(results) - len(failed),
                    "failed": [
                        {"file_name": r.file_name, "error_code": r.error_code}
                        for r in failed
                    ],
                },
            )
        return list(results)

    async def _upload_one(
        self,
        file: LocalFile,
        conversation_id: str,
        organization_id: str,
        author_id: str,
    ) -> UploadResult:
        check = validate_file(file.name, file.size, file.mime_type)
        if not check.valid:
            logger.info(f"Rejected {file.name} locally: {check.error_code}")
            return UploadResult(
                file_name=file.name,
                success=False,
                error=check.error,
                error_code=check.error_code,
            )

        path = generate_storage_path(organization_id, conversation_id, file.name)
        try:
            await self._store_with_retry(file, path)
        except ObjectStorageError as e:
            logger.error(f"Upload of {file.name} failed: {e}")
            return UploadResult(
                file_name=file.name,
                success=False,
                error="Erro ao fazer upload",
                error_code="UPLOAD_FAILED",
            )

        try:
            attachment = await self._storage.create_attachment(
                conversation_id=conversation_id,
                sender_id=author_id,
                file_name=file.name,
                file_kind=check.file_kind,
                file_path=path,
                file_size=file.size,
            )
        except QuotaExceededError as e:
            logger.warning(f"Upload quota reached for {author_id}: {e}")
            await self._objects.remove([path])
            return UploadResult(
                file_name=file.name,
                success=False,
                error=str(e),
                error_code="RATE_LIMIT_EXCEEDED",
            )
        except Exception as e:
            logger.error(f"Error creating attachment record: {e}", exc_info=True)
            return UploadResult(
                file_name=file.name,
                success=False,
                error="Erro ao salvar anexo",
                error_code="RECORD_FAILED",
            )

        return UploadResult(
            file_name=file.name, success=True, attachment_id=attachment.id
        )

    async def _store_with_retry(self, file: LocalFile, path: str) -> None:
        attempt = 0
        while True:
            try:
                await self._objects.upload(path, file.data, content_type=file.mime_type)
                return
            except ObjectStorageError as e:
                if attempt >= self._max_retries:
                    raise
                attempt += 1
                logger.warning(
                    f"Upload failed for {file.name}, retrying... "
                    f"({attempt}/{self._max_retries}): {e}"
                )
                await asyncio.sleep(self._retry_delay * attempt)

    async def link_to_message(self, attachment_ids: list[str], message_id: str) -> bool:
        """Point uploaded attachments at their message. False on failure."""
        if not attachment_ids:
            return True
        try:
            updated = await self._storage.link_attachments(attachment_ids, message_id)
        except Exception as e:
            logger.error(
                f"Error linking attachments to message: {e}",
                exc_info=True,
                extra={"message_id": message_id},
            )
            return False

        if updated != len(attachment_ids):
            logger.error(
                f"Linked {updated} of {len(attachment_ids)} attachments",
                extra={"message_id": message_id},
            )
            return False
        return True

    async def resolve_message_id(
        self, conversation_id: str, author_id: str
    ) -> str | None:
        """
        Best-effort lookup of the message just sent.

        Returns the author's most recent message in the conversation. Two
        concurrent sends of the same author can resolve to the wrong one.
        """
        latest = await self._storage.get_latest_message_by_author(
            conversation_id, author_id
        )
        return latest.id if latest else None

    async def upload_stats(self, author_id: str) -> UploadStats:
        """Report how many uploads the author has left this hour."""
        times = await self._storage.get_upload_times(author_id)
        remaining = remaining_uploads(times, limit=self._max_uploads_per_hour)
        return UploadStats(
            uploads_in_last_hour=len(times),
            rate_limit=self._max_uploads_per_hour,
            remaining_uploads=remaining,
            reset_at=times[0] + timedelta(hours=1) if times else None,
        )

    async def delete_attachment(self, attachment_id: str) -> Attachment | None:
        """
        Delete an attachment, then its stored file.

        The record goes first. A file that cannot be removed is logged and
        left behind; the deletion still counts.
        """
        attachment = await self._storage.delete_attachment(attachment_id)
        if attachment is None:
            return None

        await self._remove_files([attachment.file_path])
        if self._tracker:
            await self._tracker.track(
                event_type="attachment_deleted",
                actor="upload_pipeline",
                data={
                    "attachment_id": attachment.id,
                    "conversation_id": attachment.conversation_id,
                },
            )
        return attachment

    async def cleanup_orphans(
        self, older_than: timedelta = ORPHAN_MAX_AGE
    ) -> list[Attachment]:
        """Delete attachments never linked to a message, with their files."""
        removed = await self._storage.cleanup_orphaned_attachments(older_than)
        if not removed:
            return []

        await self._remove_files([a.file_path for a in removed])
        if self._tracker:
            await self._tracker.track(
                event_type="orphans_cleaned",
                actor="upload_pipeline",
                data={
                    "count": len(removed),
                    "attachment_ids": [a.id for a in removed],
                },
            )
        return removed

    async def _remove_files(self, paths: list[str]) -> None:
        try:
            await self._objects.remove(paths)
        except (ObjectStorageError, OSError) as e:
            logger.warning(f"Failed to delete stored files {paths}: {e}")
