"""
Attachment Service Module

Orchestrates uploads, deletes and reads of attachments kept in two stores:
the remote object store and the local database backup.

Upload strategy:
1. Try the remote upload
2. Build a backup (normal preview on success, looser fallback copy on failure)
3. Combine both outcomes into one status
4. Save the attachment, its outbox event and an audit record in one transaction
5. Return immediately; the outbox processor verifies or retries later
"""

import asyncio
import logging
import mimetypes
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, List

from sqlalchemy import select, update, func, and_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from hybrid_attachments.core.config import settings
from hybrid_attachments.core.errors import (
    AttachmentNotFound,
    InvalidTransition,
    PayloadTooLarge,
    PreviewUnavailable,
    RemoteUnavailable,
)
from hybrid_attachments.models.attachment import Attachment, AttachmentStatus, BackupKind, can_transition
from hybrid_attachments.models.outbox import OutboxEventType
from hybrid_attachments.schemas.attachment import (
    AttachmentResponse,
    AttachmentUploadResult,
    AttachmentVerifyResponse,
)
from hybrid_attachments.services.audit_service import add_audit_event
from hybrid_attachments.services.blob_store import BlobObject, BlobStore, build_folder
from hybrid_attachments.services.metrics_service import metrics_collector
from hybrid_attachments.services.outbox_service import OutboxService
from hybrid_attachments.services.preview_service import (
    Preview,
    PreviewGenerator,
    PreviewProfile,
    decompress,
    preview_generator,
)


logger = logging.getLogger(__name__)


@dataclass
class RemoteOutcome:
    """Result of the remote upload branch."""
    blob: Optional[BlobObject] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.blob is not None


@dataclass
class BackupOutcome:
    """Result of the local backup branch."""
    preview: Optional[Preview] = None

    @property
    def available(self) -> bool:
        return self.preview is not None and bool(self.preview.data)


def resolve_upload_status(remote: RemoteOutcome, backup: BackupOutcome) -> AttachmentStatus:
    """Combine the two upload branches into the stored status."""
    if remote.succeeded:
        return AttachmentStatus.ACTIVE
    if backup.available:
        return AttachmentStatus.PENDING_UPLOAD
    return AttachmentStatus.FAILED


@dataclass
class PreviewData:
    data: bytes
    mime_type: str
    file_name: str
    kind: BackupKind


class AttachmentService:
    """
    Service for the attachment lifecycle.

    Provides methods for:
    - Uploading with remote/backup fallback
    - Soft deleting with deferred remote cleanup
    - Reading metadata and previews
    - Manually retrying and verifying remote uploads
    """

    def __init__(
        self,
        db: AsyncSession,
        blob_store: BlobStore,
        previews: Optional[PreviewGenerator] = None,
    ):
        """
        Initialize the attachment service.

        Args:
            db: Async database session
            blob_store: Remote object store backend
            previews: Preview generator, the shared instance by default
        """
        self.db = db
        self.blob_store = blob_store
        self.previews = previews or preview_generator
        self.outbox = OutboxService(db)

    # ------------------------------------------------------------------
    # Loading and guarded status changes
    # ------------------------------------------------------------------

    async def get_attachment(self, attachment_id: str) -> Optional[Attachment]:
        """Load an attachment, always re-reading its current row."""
        result = await self.db.execute(
            select(Attachment)
            .where(Attachment.id == attachment_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _require(self, attachment_id: str) -> Attachment:
        attachment = await self.get_attachment(attachment_id)
        if not attachment:
            raise AttachmentNotFound(f"Attachment {attachment_id} not found", attachment_id=attachment_id)
        return attachment

    async def transition(
        self,
        attachment_id: str,
        expected: AttachmentStatus,
        target: AttachmentStatus,
        **values
    ) -> bool:
        """
        Compare-and-set the status of one attachment.

        The row is only changed while it still holds ``expected``, so stale
        or duplicate callers become no-ops.

        Returns:
            True if this call applied the transition
        """
        if not can_transition(expected, target):
            raise InvalidTransition(
                f"Transition {expected.value} -> {target.value} is not allowed",
                attachment_id=attachment_id,
            )
        result = await self.db.execute(
            update(Attachment)
            .where(and_(Attachment.id == attachment_id, Attachment.status == expected))
            .values(status=target, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    async def upload(
        self,
        data: bytes,
        organization_id: str,
        owner_type: str,
        owner_id: str,
        file_name: str,
        mime_type: Optional[str] = None,
        uploaded_by: Optional[str] = None,
    ) -> AttachmentUploadResult:
        """
        Upload a file with remote/backup fallback.

        Args:
            data: Raw file bytes
            organization_id: Owning organization
            owner_type: Kind of owning entity (task, project, ...)
            owner_id: ID of the owning entity
            file_name: Original file name
            mime_type: Declared MIME type, guessed from the name if missing
            uploaded_by: Uploading user

        Returns:
            AttachmentUploadResult with a definite status

        Raises:
            PayloadTooLarge: If the file exceeds MAX_FILE_SIZE
        """
        file_size = len(data)
        if file_size > settings.MAX_FILE_SIZE:
            raise PayloadTooLarge(
                f"File size exceeds {settings.MAX_FILE_SIZE // (1024 * 1024)}MB limit",
                file_size=file_size,
                max_size=settings.MAX_FILE_SIZE,
            )

        mime_type = mime_type or mimetypes.guess_type(file_name)[0] or "application/octet-stream"

        remote = await self._upload_remote(data, organization_id, owner_type, file_name, mime_type)
        backup = await self._build_backup(data, mime_type, fallback=not remote.succeeded)
        status = resolve_upload_status(remote, backup)

        if status == AttachmentStatus.FAILED:
            logger.error(
                f"Upload of {file_name} for {owner_type}/{owner_id} failed: "
                f"remote error ({remote.error}) and no usable backup"
            )

        now = datetime.utcnow()
        attachment = Attachment(
            organization_id=organization_id,
            owner_type=owner_type,
            owner_id=owner_id,
            file_name=file_name,
            mime_type=mime_type,
            file_size=file_size,
            remote_url=remote.blob.url if remote.succeeded else None,
            remote_object_id=remote.blob.object_id if remote.succeeded else None,
            backup_payload=backup.preview.data if backup.available else None,
            backup_kind=backup.preview.kind if backup.available else None,
            backup_available=backup.available,
            status=status,
            upload_attempts=0,
            uploaded_by=uploaded_by,
            uploaded_at=now,
        )
        self.db.add(attachment)
        await self.db.flush()

        if status == AttachmentStatus.ACTIVE:
            self.outbox.enqueue(OutboxEventType.VERIFY_UPLOAD, attachment, now=now)
        elif status == AttachmentStatus.PENDING_UPLOAD:
            self.outbox.enqueue(OutboxEventType.RETRY_UPLOAD, attachment, now=now)

        add_audit_event(
            self.db,
            organization_id=organization_id,
            entity_id=attachment.id,
            action="attachment.uploaded",
            actor_id=uploaded_by,
            changes={
                "file_name": file_name,
                "file_size": file_size,
                "status": status.value,
                "remote_url": attachment.remote_url,
                "backup_available": backup.available,
                "remote_error": remote.error,
            },
        )

        try:
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            if remote.succeeded:
                await self._discard_remote(remote.blob.object_id)
            raise

        metrics_collector.record_upload(status.value)
        logger.info(
            f"Attachment {attachment.id} uploaded: status={status.value}, "
            f"backup={attachment.backup_kind.value if attachment.backup_kind else None}"
        )

        return AttachmentUploadResult.model_validate(attachment)

    async def _upload_remote(
        self,
        data: bytes,
        organization_id: str,
        owner_type: str,
        file_name: str,
        mime_type: str,
    ) -> RemoteOutcome:
        try:
            blob = await self.blob_store.put(data, build_folder(organization_id, owner_type), file_name, mime_type)
            return RemoteOutcome(blob=blob)
        except RemoteUnavailable as e:
            logger.warning(f"Remote upload failed, storing backup only: {e}")
            return RemoteOutcome(error=str(e))
        except Exception as e:
            logger.error(f"Unexpected remote upload error, storing backup only: {e}", exc_info=True)
            return RemoteOutcome(error=str(e))

    async def _build_backup(self, data: bytes, mime_type: str, fallback: bool) -> BackupOutcome:
        profile = PreviewProfile.fallback() if fallback else PreviewProfile.standard()
        try:
            preview = await asyncio.to_thread(self.previews.generate, data, mime_type, profile)
        except Exception as e:
            logger.warning(f"Backup generation failed: {e}")
            preview = None
        return BackupOutcome(preview=preview)

    async def _discard_remote(self, object_id: str) -> None:
        try:
            await self.blob_store.delete(object_id)
        except Exception as e:
            logger.error(f"Could not remove unreferenced remote object {object_id}: {e}")

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    async def delete(self, attachment_id: str, deleted_by: Optional[str] = None) -> bool:
        """
        Soft delete an attachment and defer the remote delete to the outbox.

        Deleting an already deleted attachment is a no-op.

        Raises:
            AttachmentNotFound: If the attachment does not exist
        """
        attachment = await self._require(attachment_id)
        if attachment.status == AttachmentStatus.DELETED:
            return True

        await self._soft_delete(attachment, deleted_by)
        await self.db.commit()
        return True

    async def _soft_delete(self, attachment: Attachment, deleted_by: Optional[str]) -> bool:
        now = datetime.utcnow()
        previous = attachment.status
        applied = await self.transition(attachment.id, previous, AttachmentStatus.DELETED, deleted_at=now)
        if not applied:
            # Someone changed the row since we read it
            attachment = await self._require(attachment.id)
            if attachment.status == AttachmentStatus.DELETED:
                return False
            previous = attachment.status
            applied = await self.transition(attachment.id, previous, AttachmentStatus.DELETED, deleted_at=now)
            if not applied:
                return False

        if attachment.remote_object_id:
            self.outbox.enqueue(OutboxEventType.DELETE_REMOTE, attachment, now=now)

        add_audit_event(
            self.db,
            organization_id=attachment.organization_id,
            entity_id=attachment.id,
            action="attachment.deleted",
            actor_id=deleted_by,
            changes={
                "file_name": attachment.file_name,
                "remote_object_id": attachment.remote_object_id,
                "status": {"old": previous.value, "new": AttachmentStatus.DELETED.value},
            },
        )
        logger.info(f"Attachment {attachment.id} marked deleted")
        return True

    async def delete_by_owner(
        self,
        owner_type: str,
        owner_id: str,
        organization_id: Optional[str] = None,
        deleted_by: Optional[str] = None,
    ) -> int:
        """
        Delete every live attachment of an owner in one transaction.

        Returns:
            Number of attachments deleted by this call
        """
        attachments = await self.list_by_owner(owner_type, owner_id, organization_id)
        deleted = 0
        for attachment in attachments:
            if await self._soft_delete(attachment, deleted_by):
                deleted += 1
        await self.db.commit()

        logger.info(f"Deleted {deleted} attachments of {owner_type}/{owner_id}")
        return deleted

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_metadata(self, attachment_id: str) -> AttachmentResponse:
        """Attachment metadata without the backup payload."""
        attachment = await self._require(attachment_id)
        return AttachmentResponse.model_validate(attachment)

    async def get_preview(self, attachment_id: str) -> PreviewData:
        """
        Get the stored backup, decompressed when needed.

        Raises:
            AttachmentNotFound: If the attachment does not exist
            PreviewUnavailable: If no backup is stored
        """
        attachment = await self._require(attachment_id)
        if not attachment.backup_available or not attachment.backup_payload:
            raise PreviewUnavailable(f"Preview not available for attachment {attachment_id}")

        data = attachment.backup_payload
        if attachment.backup_kind == BackupKind.COMPRESSED:
            data = decompress(data)

        mime_type = "image/jpeg" if attachment.backup_kind == BackupKind.THUMBNAIL else attachment.mime_type
        return PreviewData(
            data=data,
            mime_type=mime_type,
            file_name=attachment.file_name,
            kind=attachment.backup_kind,
        )

    async def list_by_owner(
        self,
        owner_type: str,
        owner_id: str,
        organization_id: Optional[str] = None,
        include_deleted: bool = False,
    ) -> List[Attachment]:
        """Attachments of one owner, newest first."""
        query = select(Attachment).where(
            and_(Attachment.owner_type == owner_type, Attachment.owner_id == owner_id)
        )
        if organization_id:
            query = query.where(Attachment.organization_id == organization_id)
        if not include_deleted:
            query = query.where(Attachment.status != AttachmentStatus.DELETED)

        result = await self.db.execute(
            query.order_by(Attachment.uploaded_at.desc()).execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def get_stats(self, organization_id: str) -> dict:
        """Attachment counts and sizes for one organization."""
        result = await self.db.execute(
            select(Attachment.status, func.count(Attachment.id), func.coalesce(func.sum(Attachment.file_size), 0))
            .where(Attachment.organization_id == organization_id)
            .group_by(Attachment.status)
        )
        by_status = {}
        total = 0
        total_bytes = 0
        for status, count, size in result.all():
            by_status[status.value] = count
            total += count
            total_bytes += int(size or 0)

        backups = await self.db.execute(
            select(func.count(Attachment.id)).where(
                and_(
                    Attachment.organization_id == organization_id,
                    Attachment.backup_available == True,
                    Attachment.status != AttachmentStatus.DELETED,
                )
            )
        )

        return {
            "organization_id": organization_id,
            "total": total,
            "by_status": by_status,
            "backups_available": backups.scalar_one(),
            "total_bytes": total_bytes,
        }

    # ------------------------------------------------------------------
    # Re-upload and verification
    # ------------------------------------------------------------------

    @staticmethod
    def backup_source(attachment: Attachment) -> bytes:
        """Bytes to re-upload from the stored backup."""
        if attachment.backup_kind == BackupKind.COMPRESSED:
            return decompress(attachment.backup_payload)
        return attachment.backup_payload

    async def reupload_from_backup(self, attachment: Attachment) -> BlobObject:
        """
        Push the stored backup to the remote store.

        Raises:
            RemoteUnavailable: If the remote store rejects or times out
        """
        try:
            return await self.blob_store.put(
                self.backup_source(attachment),
                build_folder(attachment.organization_id, attachment.owner_type),
                attachment.file_name,
                attachment.mime_type,
            )
        except RemoteUnavailable:
            raise
        except Exception as e:
            raise RemoteUnavailable(f"Remote upload failed: {e}", attachment_id=attachment.id) from e

    async def promote(self, attachment: Attachment, blob: BlobObject, actor_id: Optional[str] = None) -> bool:
        """
        Move a pending attachment to active after a successful re-upload.

        Stages the status change, resolves outstanding retries and enqueues a
        verification. If the attachment left pending_upload meanwhile, the new
        remote object is removed again.

        Returns:
            True if the attachment was promoted
        """
        now = datetime.utcnow()
        promoted = await self.transition(
            attachment.id,
            AttachmentStatus.PENDING_UPLOAD,
            AttachmentStatus.ACTIVE,
            remote_url=blob.url,
            remote_object_id=blob.object_id,
            last_verified_at=now,
            upload_attempts=0,
        )
        if not promoted:
            logger.info(f"Attachment {attachment.id} left pending_upload during re-upload, discarding remote copy")
            await self._discard_remote(blob.object_id)
            return False

        await self.outbox.resolve_pending(attachment.id, OutboxEventType.RETRY_UPLOAD, now=now)
        attachment = await self._require(attachment.id)
        self.outbox.enqueue(OutboxEventType.VERIFY_UPLOAD, attachment, now=now)

        add_audit_event(
            self.db,
            organization_id=attachment.organization_id,
            entity_id=attachment.id,
            action="attachment.retried",
            actor_id=actor_id,
            changes={
                "status": {"old": AttachmentStatus.PENDING_UPLOAD.value, "new": AttachmentStatus.ACTIVE.value},
                "remote_url": blob.url,
            },
        )
        return True

    async def retry(self, attachment_id: str, actor_id: Optional[str] = None) -> AttachmentUploadResult:
        """
        Manually re-attempt the remote upload from the stored backup.

        Raises:
            AttachmentNotFound: If the attachment does not exist
            InvalidTransition: If the attachment is not pending_upload with a backup
            RemoteUnavailable: If the remote upload fails again
        """
        attachment = await self._require(attachment_id)
        if attachment.status != AttachmentStatus.PENDING_UPLOAD:
            raise InvalidTransition(
                f"Attachment {attachment_id} is {attachment.status.value}, only pending_upload can be retried",
                attachment_id=attachment_id,
            )
        if not attachment.backup_available or not attachment.backup_payload:
            raise InvalidTransition(
                f"Attachment {attachment_id} has no backup to retry from",
                attachment_id=attachment_id,
            )

        blob = await self.reupload_from_backup(attachment)
        if not await self.promote(attachment, blob, actor_id=actor_id):
            await self.db.rollback()
            raise InvalidTransition(f"Attachment {attachment_id} changed status during retry")

        await self.db.commit()
        attachment = await self._require(attachment_id)
        logger.info(f"Manual retry promoted attachment {attachment_id} to active")
        return AttachmentUploadResult.model_validate(attachment)

    async def record_verification(self, attachment: Attachment, exists: bool) -> AttachmentStatus:
        """
        Apply the outcome of a remote existence check.

        Only active attachments change: present objects get a fresh
        last_verified_at, missing ones are demoted to pending_upload (backup
        present, retry enqueued) or failed. Both demotions drop the stale
        remote location.

        Returns:
            Status after the check
        """
        now = datetime.utcnow()
        if attachment.status != AttachmentStatus.ACTIVE:
            return attachment.status

        if exists:
            await self.db.execute(
                update(Attachment)
                .where(and_(Attachment.id == attachment.id, Attachment.status == AttachmentStatus.ACTIVE))
                .values(last_verified_at=now)
                .execution_options(synchronize_session=False)
            )
            return AttachmentStatus.ACTIVE

        if attachment.backup_available and attachment.backup_payload:
            target = AttachmentStatus.PENDING_UPLOAD
            values = {
                "last_verified_at": now,
                "upload_attempts": 0,
                "remote_url": None,
                "remote_object_id": None,
            }
        else:
            target = AttachmentStatus.FAILED
            values = {
                "last_verified_at": now,
                "remote_url": None,
                "remote_object_id": None,
                "backup_available": False,
            }

        if not await self.transition(attachment.id, AttachmentStatus.ACTIVE, target, **values):
            current = await self._require(attachment.id)
            return current.status

        if target == AttachmentStatus.PENDING_UPLOAD:
            self.outbox.enqueue(OutboxEventType.RETRY_UPLOAD, attachment, now=now)

        add_audit_event(
            self.db,
            organization_id=attachment.organization_id,
            entity_id=attachment.id,
            action="attachment.status_changed",
            changes={
                "status": {"old": AttachmentStatus.ACTIVE.value, "new": target.value},
                "reason": "remote object missing",
                "remote_object_id": attachment.remote_object_id,
            },
        )
        logger.warning(f"Remote object for attachment {attachment.id} missing, demoted to {target.value}")
        return target

    async def verify(self, attachment_id: str) -> AttachmentVerifyResponse:
        """
        Check the remote copy of one attachment right now.

        Raises:
            AttachmentNotFound: If the attachment does not exist
            RemoteUnavailable: If the remote store cannot answer
        """
        attachment = await self._require(attachment_id)
        previous = attachment.status

        if not attachment.remote_object_id:
            return AttachmentVerifyResponse(
                id=attachment_id, verified=False, previous_status=previous, status=previous
            )

        exists = await self.blob_store.exists(attachment.remote_object_id)
        status = await self.record_verification(attachment, exists)
        await self.db.commit()

        return AttachmentVerifyResponse(
            id=attachment_id, verified=exists, previous_status=previous, status=status
        )
