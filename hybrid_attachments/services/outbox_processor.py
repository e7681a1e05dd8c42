"""
Outbox Processor

Drains due outbox events and performs the remote follow-up work for
attachments:

- VERIFY_UPLOAD: confirm the remote object still exists, demote if it is gone
- RETRY_UPLOAD: push the stored backup to the remote store
- DELETE_REMOTE: remove the remote object of a deleted attachment

Every event is handled in its own transaction. Handlers re-read their rows and
change attachment status only through compare-and-set updates, so overlapping
runs and duplicate events end up as no-ops.
"""

import logging
import time
from datetime import datetime
from typing import Optional

from pydantic import ValidationError
from sqlalchemy import update, and_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from hybrid_attachments.core.config import settings
from hybrid_attachments.core.errors import RemoteUnavailable, RetryExhausted
from hybrid_attachments.models.attachment import Attachment, AttachmentStatus
from hybrid_attachments.models.outbox import OutboxEvent, OutboxEventType
from hybrid_attachments.schemas.outbox import (
    OutboxBatchResult,
    OutboxEventResult,
    parse_outbox_payload,
)
from hybrid_attachments.services.attachment_service import AttachmentService
from hybrid_attachments.services.audit_service import add_audit_event
from hybrid_attachments.services.blob_store import BlobStore
from hybrid_attachments.services.metrics_service import metrics_collector
from hybrid_attachments.services.outbox_service import OutboxService, backoff_delay_seconds


logger = logging.getLogger(__name__)


class OutboxProcessor:
    """Processes due outbox events in bounded batches."""

    def __init__(self, db: AsyncSession, blob_store: BlobStore):
        self.db = db
        self.blob_store = blob_store
        self.outbox = OutboxService(db)
        self.attachments = AttachmentService(db, blob_store)

    async def process_batch(
        self,
        limit: Optional[int] = None,
        organization_id: Optional[str] = None,
    ) -> OutboxBatchResult:
        """
        Process up to ``limit`` due events, oldest first.

        A failing event is rolled back and reported; it never stops the rest
        of the batch and this method never raises.

        Args:
            limit: Maximum number of events, OUTBOX_BATCH_SIZE by default
            organization_id: Only process events of this organization

        Returns:
            OutboxBatchResult with per-outcome counters
        """
        limit = limit or settings.OUTBOX_BATCH_SIZE
        batch = OutboxBatchResult(started_at=datetime.utcnow())
        start = time.perf_counter()

        try:
            event_ids = await self.outbox.fetch_due_event_ids(limit, organization_id)
        except SQLAlchemyError as e:
            logger.error(f"Could not fetch due outbox events: {e}", exc_info=True)
            await self.db.rollback()
            batch.duration_seconds = time.perf_counter() - start
            return batch

        for event_id in event_ids:
            result = await self.process_event(event_id)
            batch.record(result)
            metrics_collector.record_outbox_event(
                result.event_type.value if result.event_type else "unknown",
                result.outcome,
            )

        batch.duration_seconds = time.perf_counter() - start
        if batch.total:
            logger.info(
                f"Outbox batch: {batch.total} events, {batch.processed} processed, "
                f"{batch.rescheduled} rescheduled, {batch.exhausted} exhausted, "
                f"{batch.orphaned} orphaned, {batch.skipped} skipped, {batch.errors} errors "
                f"in {batch.duration_seconds:.2f}s"
            )
        return batch

    async def process_event(self, event_id: str) -> OutboxEventResult:
        """Handle one event in its own transaction."""
        event_type = None
        entity_id = None
        try:
            event = await self.outbox.get_event(event_id)
            if event is None or event.processed_at is not None or event.orphaned:
                await self.db.rollback()
                return OutboxEventResult(event_id=event_id, outcome="skipped", detail="already handled")

            event_type = event.event_type
            entity_id = event.entity_id

            try:
                outcome, detail = await self._dispatch(event)
            except RetryExhausted as e:
                await self.db.commit()
                logger.error(f"Outbox event {event_id} ({event_type.value}) gave up: {e.message}")
                return OutboxEventResult(
                    event_id=event_id,
                    event_type=event_type,
                    entity_id=entity_id,
                    outcome=e.context.get("outcome", "exhausted"),
                    detail=e.message,
                )

            await self.db.commit()
            return OutboxEventResult(
                event_id=event_id, event_type=event_type, entity_id=entity_id, outcome=outcome, detail=detail
            )

        except Exception as e:
            logger.error(f"Error processing outbox event {event_id}: {e}", exc_info=True)
            await self.db.rollback()
            outcome = await self._record_failure(event_id, str(e))
            return OutboxEventResult(
                event_id=event_id, event_type=event_type, entity_id=entity_id, outcome=outcome, detail=str(e)
            )

    async def _record_failure(self, event_id: str, error: str) -> str:
        """Count an unexpected failure; past the ceiling the event stops blocking the queue."""
        try:
            event = await self.outbox.get_event(event_id)
            if event is None:
                await self.db.rollback()
                return "error"
            outcome = await self.outbox.record_failure(event, error)
            if outcome in ("exhausted", "orphaned"):
                add_audit_event(
                    self.db,
                    organization_id=event.organization_id,
                    entity_id=event.entity_id,
                    action="outbox.processing.failed",
                    changes={
                        "event_id": event.id,
                        "event_type": event.event_type.value,
                        "failures": (event.failure_count or 0) + 1,
                        "error": error,
                        "outcome": outcome,
                    },
                )
                logger.error(
                    f"Outbox event {event_id} ({event.event_type.value}) {outcome} after "
                    f"{settings.OUTBOX_MAX_ATTEMPTS} failures: {error}"
                )
            await self.db.commit()
            return "error" if outcome == "skipped" else outcome
        except SQLAlchemyError as e:
            logger.error(f"Could not record error on outbox event {event_id}: {e}")
            await self.db.rollback()
            return "error"

    async def _dispatch(self, event: OutboxEvent):
        try:
            payload = parse_outbox_payload(event.payload)
        except ValidationError as e:
            await self.outbox.mark_processed(event.id, error=f"Invalid payload: {e}")
            return "error", "invalid payload"

        attachment = await self.attachments.get_attachment(event.entity_id)

        if event.event_type == OutboxEventType.VERIFY_UPLOAD:
            return await self._handle_verify(event, payload, attachment)
        if event.event_type == OutboxEventType.RETRY_UPLOAD:
            return await self._handle_retry(event, payload, attachment)
        if event.event_type == OutboxEventType.DELETE_REMOTE:
            return await self._handle_delete(event, payload, attachment)

        await self.outbox.mark_processed(event.id, error=f"Unknown event type {event.event_type}")
        return "error", "unknown event type"

    def _give_up(self, event: OutboxEvent, payload, error: str, outcome: str = "exhausted"):
        """Stage the failure audit record and raise RetryExhausted."""
        add_audit_event(
            self.db,
            organization_id=event.organization_id,
            entity_id=event.entity_id,
            action="outbox.processing.failed",
            changes={
                "event_id": event.id,
                "event_type": event.event_type.value,
                "attempt": payload.attempt,
                "error": error,
                "outcome": outcome,
            },
        )
        raise RetryExhausted(
            f"{event.event_type.value} for attachment {event.entity_id} failed after "
            f"{payload.attempt} attempts: {error}",
            outcome=outcome,
        )

    async def _reschedule(self, event: OutboxEvent, payload, error: str):
        """Resolve ``event`` and enqueue the next attempt after a backoff delay."""
        if not await self.outbox.mark_processed(event.id, error=error):
            return "skipped", "claimed by another run"
        delay = backoff_delay_seconds(payload.attempt)
        self.outbox.enqueue_followup(event, payload, attempt=payload.attempt + 1, delay_seconds=delay)
        logger.warning(
            f"{event.event_type.value} for attachment {event.entity_id} failed "
            f"(attempt {payload.attempt}), retrying in {delay}s: {error}"
        )
        return "rescheduled", error

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _handle_verify(self, event: OutboxEvent, payload, attachment: Optional[Attachment]):
        if (
            attachment is None
            or attachment.status != AttachmentStatus.ACTIVE
            or attachment.remote_object_id != payload.remote_object_id
        ):
            await self.outbox.mark_processed(event.id)
            return "processed", "attachment no longer active"

        try:
            exists = await self.blob_store.exists(payload.remote_object_id)
        except RemoteUnavailable as e:
            if payload.attempt >= settings.OUTBOX_MAX_ATTEMPTS:
                if await self.outbox.mark_processed(event.id, error=e.message):
                    self._give_up(event, payload, e.message)
                return "skipped", "claimed by another run"
            return await self._reschedule(event, payload, e.message)

        if not await self.outbox.mark_processed(event.id):
            return "skipped", "claimed by another run"

        status = await self.attachments.record_verification(attachment, exists)
        return "processed", f"remote {'present' if exists else 'missing'}, status {status.value}"

    async def _handle_retry(self, event: OutboxEvent, payload, attachment: Optional[Attachment]):
        if attachment is None or attachment.status != AttachmentStatus.PENDING_UPLOAD:
            await self.outbox.mark_processed(event.id)
            return "processed", "attachment no longer pending"

        # Claim before the remote side effect
        if not await self.outbox.mark_processed(event.id):
            return "skipped", "claimed by another run"

        if not attachment.backup_available or not attachment.backup_payload:
            await self.attachments.transition(
                attachment.id,
                AttachmentStatus.PENDING_UPLOAD,
                AttachmentStatus.FAILED,
                remote_url=None,
                remote_object_id=None,
                backup_available=False,
            )
            await self.outbox.record_error(event.id, "no backup to re-upload")
            return "processed", "no backup, marked failed"

        try:
            blob = await self.attachments.reupload_from_backup(attachment)
        except RemoteUnavailable as e:
            return await self._retry_failed(event, payload, attachment, e.message)

        if await self.attachments.promote(attachment, blob):
            logger.info(f"Attachment {attachment.id} re-uploaded from backup")
            return "processed", "uploaded"
        return "processed", "attachment left pending_upload"

    async def _retry_failed(self, event: OutboxEvent, payload, attachment: Attachment, error: str):
        await self.outbox.record_error(event.id, error)
        attempts = attachment.upload_attempts + 1

        if attempts >= settings.OUTBOX_MAX_ATTEMPTS:
            failed = await self.attachments.transition(
                attachment.id,
                AttachmentStatus.PENDING_UPLOAD,
                AttachmentStatus.FAILED,
                upload_attempts=attempts,
                backup_available=False,
                remote_url=None,
                remote_object_id=None,
            )
            if not failed:
                return "processed", "attachment left pending_upload"
            add_audit_event(
                self.db,
                organization_id=attachment.organization_id,
                entity_id=attachment.id,
                action="attachment.status_changed",
                changes={
                    "status": {"old": AttachmentStatus.PENDING_UPLOAD.value, "new": AttachmentStatus.FAILED.value},
                    "reason": "retry attempts exhausted",
                    "upload_attempts": attempts,
                },
            )
            self._give_up(event, payload, error)

        if not await self._bump_attempts(attachment, attempts):
            return "processed", "attachment left pending_upload"

        delay = backoff_delay_seconds(attempts)
        self.outbox.enqueue_followup(event, payload, attempt=attempts + 1, delay_seconds=delay)
        logger.warning(
            f"Re-upload of attachment {attachment.id} failed (attempt {attempts}/"
            f"{settings.OUTBOX_MAX_ATTEMPTS}), retrying in {delay}s: {error}"
        )
        return "rescheduled", error

    async def _bump_attempts(self, attachment: Attachment, attempts: int) -> bool:
        result = await self.db.execute(
            update(Attachment)
            .where(and_(Attachment.id == attachment.id, Attachment.status == AttachmentStatus.PENDING_UPLOAD))
            .values(upload_attempts=attempts)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _handle_delete(self, event: OutboxEvent, payload, attachment: Optional[Attachment]):
        try:
            await self.blob_store.delete(payload.remote_object_id)
        except RemoteUnavailable as e:
            if payload.attempt >= settings.OUTBOX_MAX_ATTEMPTS:
                if await self.outbox.mark_orphaned(event.id, e.message):
                    logger.error(
                        f"Remote object {payload.remote_object_id} of attachment {event.entity_id} "
                        f"could not be deleted, event {event.id} orphaned for manual cleanup"
                    )
                    self._give_up(event, payload, e.message, outcome="orphaned")
                return "skipped", "claimed by another run"
            return await self._reschedule(event, payload, e.message)

        if not await self.outbox.mark_processed(event.id):
            return "skipped", "claimed by another run"
        logger.info(f"Deleted remote object {payload.remote_object_id} of attachment {event.entity_id}")
        return "processed", "remote object deleted"
