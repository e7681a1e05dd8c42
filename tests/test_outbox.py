"""
Tests for the Outbox Processor

Tests cover:
- VERIFY_UPLOAD: confirmation, demotion on missing objects, outage ceiling
- RETRY_UPLOAD: promotion, backoff rescheduling, retry ceiling
- DELETE_REMOTE: remote cleanup, rescheduling, orphaning
- Idempotency with duplicate and concurrent processing
- Batch isolation, organization scoping and limits
- Cleanup and statistics
"""
import pytest
from datetime import datetime, timedelta
from unittest.mock import patch
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from hybrid_attachments.core.config import settings
from hybrid_attachments.models.attachment import AttachmentStatus
from hybrid_attachments.models.audit import AuditLog
from hybrid_attachments.models.outbox import OutboxEvent, OutboxEventType
from hybrid_attachments.services.attachment_service import AttachmentService
from hybrid_attachments.services.outbox_processor import OutboxProcessor
from hybrid_attachments.services.outbox_service import OutboxService
from tests.conftest import (
    AttachmentFactory,
    FlakyBlobStore,
    OutboxEventFactory,
    events_for,
    pending,
    reload_attachment,
)


async def pending_upload(db: AsyncSession, service: AttachmentService, store: FlakyBlobStore, data: bytes):
    """Upload while the remote store is down."""
    store.fail_put = True
    result = await service.upload(
        data, organization_id="org-test", owner_type="task", owner_id="task-1",
        file_name="notes.txt", mime_type="text/plain",
    )
    store.fail_put = False
    return result


# -----------------------------------------------------------------------------
# VERIFY_UPLOAD Tests
# -----------------------------------------------------------------------------

class TestVerifyUpload:
    """Tests for VERIFY_UPLOAD handling."""

    @pytest.mark.asyncio
    async def test_present_object_is_confirmed(
        self,
        db_session: AsyncSession,
        processor: OutboxProcessor,
        blob_store: FlakyBlobStore
    ):
        attachment = await AttachmentFactory.create_remote(db_session, blob_store)
        await OutboxEventFactory.create(db_session, attachment, OutboxEventType.VERIFY_UPLOAD)

        result = await processor.process_batch()

        assert result.total == 1
        assert result.processed == 1
        attachment = await reload_attachment(db_session, attachment.id)
        assert attachment.status == AttachmentStatus.ACTIVE
        assert attachment.last_verified_at is not None
        assert pending(await events_for(db_session, attachment.id)) == []

    @pytest.mark.asyncio
    async def test_missing_object_demotes_to_pending_upload(
        self,
        db_session: AsyncSession,
        processor: OutboxProcessor,
        blob_store: FlakyBlobStore
    ):
        attachment = await AttachmentFactory.create_remote(db_session, blob_store)
        await OutboxEventFactory.create(db_session, attachment, OutboxEventType.VERIFY_UPLOAD)
        # Deleted out of band
        blob_store.objects.pop(attachment.remote_object_id)

        await processor.process_batch()

        attachment = await reload_attachment(db_session, attachment.id)
        assert attachment.status == AttachmentStatus.PENDING_UPLOAD
        assert attachment.backup_available is True
        retries = pending(await events_for(db_session, attachment.id, OutboxEventType.RETRY_UPLOAD))
        assert len(retries) == 1

        logs = (await db_session.execute(
            select(AuditLog).where(AuditLog.action == "attachment.status_changed")
        )).scalars().all()
        assert logs[0].changes["status"] == {"old": "active", "new": "pending_upload"}

    @pytest.mark.asyncio
    async def test_missing_object_without_backup_fails(
        self,
        db_session: AsyncSession,
        processor: OutboxProcessor,
        blob_store: FlakyBlobStore
    ):
        attachment = await AttachmentFactory.create_remote(db_session, blob_store, with_backup=False)
        await OutboxEventFactory.create(db_session, attachment, OutboxEventType.VERIFY_UPLOAD)
        blob_store.objects.clear()

        await processor.process_batch()

        attachment = await reload_attachment(db_session, attachment.id)
        assert attachment.status == AttachmentStatus.FAILED
        assert attachment.remote_object_id is None
        assert attachment.remote_url is None
        assert pending(await events_for(db_session, attachment.id)) == []

    @pytest.mark.asyncio
    async def test_verify_for_deleted_attachment_is_noop(
        self,
        db_session: AsyncSession,
        processor: OutboxProcessor,
        blob_store: FlakyBlobStore
    ):
        attachment = await AttachmentFactory.create_remote(db_session, blob_store)
        await OutboxEventFactory.create(db_session, attachment, OutboxEventType.VERIFY_UPLOAD)
        await AttachmentService(db_session, blob_store).delete(attachment.id)

        await processor.process_batch()

        attachment = await reload_attachment(db_session, attachment.id)
        assert attachment.status == AttachmentStatus.DELETED
        verifies = await events_for(db_session, attachment.id, OutboxEventType.VERIFY_UPLOAD)
        assert verifies[0].processed_at is not None
        assert blob_store.exists_calls == 0

    @pytest.mark.asyncio
    async def test_outage_reschedules_then_gives_up(
        self,
        db_session: AsyncSession,
        processor: OutboxProcessor,
        blob_store: FlakyBlobStore
    ):
        attachment = await AttachmentFactory.create_remote(db_session, blob_store)
        await OutboxEventFactory.create(db_session, attachment, OutboxEventType.VERIFY_UPLOAD)
        blob_store.fail_exists = True

        with patch.object(settings, "OUTBOX_MAX_ATTEMPTS", 2), \
                patch.object(settings, "OUTBOX_BACKOFF_BASE_SECONDS", 0):
            first = await processor.process_batch()
            second = await processor.process_batch()
            third = await processor.process_batch()

        assert first.rescheduled == 1
        assert second.exhausted == 1
        assert third.total == 0

        verifies = await events_for(db_session, attachment.id, OutboxEventType.VERIFY_UPLOAD)
        assert [e.payload["attempt"] for e in verifies] == [1, 2]
        assert all(e.processed_at is not None for e in verifies)
        assert verifies[-1].last_error is not None
        # Last known good state is kept
        assert (await reload_attachment(db_session, attachment.id)).status == AttachmentStatus.ACTIVE


# -----------------------------------------------------------------------------
# RETRY_UPLOAD Tests
# -----------------------------------------------------------------------------

class TestRetryUpload:
    """Tests for RETRY_UPLOAD handling."""

    @pytest.mark.asyncio
    async def test_recovered_remote_promotes_to_active(
        self,
        db_session: AsyncSession,
        attachment_service: AttachmentService,
        processor: OutboxProcessor,
        blob_store: FlakyBlobStore,
        text_bytes: bytes
    ):
        result = await pending_upload(db_session, attachment_service, blob_store, text_bytes)

        batch = await processor.process_batch()

        assert batch.processed == 1
        attachment = await reload_attachment(db_session, result.id)
        assert attachment.status == AttachmentStatus.ACTIVE
        assert attachment.upload_attempts == 0
        assert attachment.backup_available is True
        assert blob_store.objects[attachment.remote_object_id][0] == text_bytes

        verifies = pending(await events_for(db_session, result.id, OutboxEventType.VERIFY_UPLOAD))
        assert len(verifies) == 1
        assert verifies[0].payload["remote_object_id"] == attachment.remote_object_id

    @pytest.mark.asyncio
    async def test_failure_reschedules_with_backoff(
        self,
        db_session: AsyncSession,
        attachment_service: AttachmentService,
        processor: OutboxProcessor,
        blob_store: FlakyBlobStore,
        text_bytes: bytes
    ):
        result = await pending_upload(db_session, attachment_service, blob_store, text_bytes)
        blob_store.fail_put = True
        before = datetime.utcnow()

        batch = await processor.process_batch()

        assert batch.rescheduled == 1
        attachment = await reload_attachment(db_session, result.id)
        assert attachment.status == AttachmentStatus.PENDING_UPLOAD
        assert attachment.upload_attempts == 1

        retries = await events_for(db_session, result.id, OutboxEventType.RETRY_UPLOAD)
        assert len(retries) == 2
        assert retries[0].processed_at is not None
        assert retries[0].last_error is not None
        assert retries[1].payload["attempt"] == 2
        assert retries[1].scheduled_at >= before + timedelta(seconds=settings.OUTBOX_BACKOFF_BASE_SECONDS)

        # Not due yet
        again = await processor.process_batch()
        assert again.total == 0

    @pytest.mark.asyncio
    async def test_retry_ceiling_marks_failed(
        self,
        db_session: AsyncSession,
        attachment_service: AttachmentService,
        processor: OutboxProcessor,
        blob_store: FlakyBlobStore,
        text_bytes: bytes
    ):
        result = await pending_upload(db_session, attachment_service, blob_store, text_bytes)
        blob_store.fail_put = True
        blob_store.put_calls = 0

        with patch.object(settings, "OUTBOX_MAX_ATTEMPTS", 3), \
                patch.object(settings, "OUTBOX_BACKOFF_BASE_SECONDS", 0):
            outcomes = []
            for _ in range(5):
                batch = await processor.process_batch()
                outcomes.extend(e.outcome for e in batch.events)

        assert outcomes == ["rescheduled", "rescheduled", "exhausted"]
        assert blob_store.put_calls == 3

        attachment = await reload_attachment(db_session, result.id)
        assert attachment.status == AttachmentStatus.FAILED
        assert attachment.upload_attempts == 3
        assert attachment.backup_available is False
        assert pending(await events_for(db_session, result.id)) == []

        failures = (await db_session.execute(
            select(AuditLog).where(AuditLog.action == "outbox.processing.failed")
        )).scalars().all()
        assert len(failures) == 1

    @pytest.mark.asyncio
    async def test_demoted_attachment_exhausting_retries_has_no_remote_location(
        self,
        db_session: AsyncSession,
        processor: OutboxProcessor,
        blob_store: FlakyBlobStore
    ):
        attachment = await AttachmentFactory.create_remote(db_session, blob_store)
        await OutboxEventFactory.create(db_session, attachment, OutboxEventType.VERIFY_UPLOAD)
        blob_store.objects.pop(attachment.remote_object_id)

        await processor.process_batch()
        assert (await reload_attachment(db_session, attachment.id)).status == AttachmentStatus.PENDING_UPLOAD

        blob_store.fail_put = True
        with patch.object(settings, "OUTBOX_MAX_ATTEMPTS", 2), \
                patch.object(settings, "OUTBOX_BACKOFF_BASE_SECONDS", 0):
            for _ in range(3):
                await processor.process_batch()

        attachment = await reload_attachment(db_session, attachment.id)
        assert attachment.status == AttachmentStatus.FAILED
        assert attachment.remote_url is None
        assert attachment.remote_object_id is None
        assert attachment.backup_available is False

    @pytest.mark.asyncio
    async def test_retry_without_backup_fails_cleanly(
        self,
        db_session: AsyncSession,
        processor: OutboxProcessor,
        blob_store: FlakyBlobStore
    ):
        attachment = await AttachmentFactory.create(
            db_session, status=AttachmentStatus.PENDING_UPLOAD, remote_object_id="stale/key", with_backup=False
        )
        await OutboxEventFactory.create(db_session, attachment, OutboxEventType.RETRY_UPLOAD)

        batch = await processor.process_batch()

        assert batch.processed == 1
        attachment = await reload_attachment(db_session, attachment.id)
        assert attachment.status == AttachmentStatus.FAILED
        assert attachment.remote_url is None
        assert attachment.remote_object_id is None
        assert blob_store.put_calls == 0

    @pytest.mark.asyncio
    async def test_retry_for_active_attachment_is_noop(
        self,
        db_session: AsyncSession,
        processor: OutboxProcessor,
        blob_store: FlakyBlobStore
    ):
        attachment = await AttachmentFactory.create_remote(db_session, blob_store)
        await OutboxEventFactory.create(db_session, attachment, OutboxEventType.RETRY_UPLOAD)
        blob_store.put_calls = 0

        batch = await processor.process_batch()

        assert batch.processed == 1
        assert blob_store.put_calls == 0
        assert (await reload_attachment(db_session, attachment.id)).status == AttachmentStatus.ACTIVE


# -----------------------------------------------------------------------------
# DELETE_REMOTE Tests
# -----------------------------------------------------------------------------

class TestDeleteRemote:
    """Tests for DELETE_REMOTE handling."""

    @pytest.mark.asyncio
    async def test_remote_object_is_removed(
        self,
        db_session: AsyncSession,
        attachment_service: AttachmentService,
        processor: OutboxProcessor,
        blob_store: FlakyBlobStore
    ):
        attachment = await AttachmentFactory.create_remote(db_session, blob_store)
        await attachment_service.delete(attachment.id)

        batch = await processor.process_batch()

        assert batch.processed == 1
        assert attachment.remote_object_id not in blob_store.objects
        assert pending(await events_for(db_session, attachment.id)) == []

    @pytest.mark.asyncio
    async def test_already_absent_object_counts_as_deleted(
        self,
        db_session: AsyncSession,
        attachment_service: AttachmentService,
        processor: OutboxProcessor,
        blob_store: FlakyBlobStore
    ):
        attachment = await AttachmentFactory.create_remote(db_session, blob_store)
        await attachment_service.delete(attachment.id)
        blob_store.objects.clear()

        batch = await processor.process_batch()

        assert batch.processed == 1

    @pytest.mark.asyncio
    async def test_exhausted_delete_is_orphaned(
        self,
        db_session: AsyncSession,
        attachment_service: AttachmentService,
        processor: OutboxProcessor,
        blob_store: FlakyBlobStore
    ):
        attachment = await AttachmentFactory.create_remote(db_session, blob_store)
        await attachment_service.delete(attachment.id)
        blob_store.fail_delete = True

        with patch.object(settings, "OUTBOX_MAX_ATTEMPTS", 2), \
                patch.object(settings, "OUTBOX_BACKOFF_BASE_SECONDS", 0):
            first = await processor.process_batch()
            second = await processor.process_batch()
            third = await processor.process_batch()

        assert first.rescheduled == 1
        assert second.orphaned == 1
        assert third.total == 0

        deletes = await events_for(db_session, attachment.id, OutboxEventType.DELETE_REMOTE)
        assert deletes[0].processed_at is not None
        orphan = deletes[1]
        assert orphan.orphaned is True
        assert orphan.processed_at is None
        assert orphan.last_error is not None

        orphans = await OutboxService(db_session).list_orphaned()
        assert [e.id for e in orphans] == [orphan.id]
        assert attachment.remote_object_id in blob_store.objects


# -----------------------------------------------------------------------------
# Idempotency Tests
# -----------------------------------------------------------------------------

class TestIdempotency:
    """Tests for duplicate and concurrent processing."""

    @pytest.mark.asyncio
    async def test_processing_an_event_twice_is_a_noop(
        self,
        db_session: AsyncSession,
        attachment_service: AttachmentService,
        processor: OutboxProcessor,
        blob_store: FlakyBlobStore,
        text_bytes: bytes
    ):
        result = await pending_upload(db_session, attachment_service, blob_store, text_bytes)
        event = (await events_for(db_session, result.id, OutboxEventType.RETRY_UPLOAD))[0]
        blob_store.put_calls = 0

        first = await processor.process_event(event.id)
        second = await processor.process_event(event.id)

        assert first.outcome == "processed"
        assert second.outcome == "skipped"
        assert blob_store.put_calls == 1
        assert len(pending(await events_for(db_session, result.id, OutboxEventType.VERIFY_UPLOAD))) == 1

    @pytest.mark.asyncio
    async def test_stale_concurrent_processor_does_nothing(
        self,
        db_session: AsyncSession,
        session_factory,
        attachment_service: AttachmentService,
        blob_store: FlakyBlobStore,
        text_bytes: bytes
    ):
        result = await pending_upload(db_session, attachment_service, blob_store, text_bytes)
        blob_store.put_calls = 0

        async with session_factory() as session_a, session_factory() as session_b:
            # B reads the due events first, then A wins the race
            stale_ids = await OutboxService(session_b).fetch_due_event_ids(10)
            stale_event = await OutboxService(session_b).get_event(stale_ids[0])
            assert stale_event.processed_at is None
            await session_b.commit()

            batch_a = await OutboxProcessor(session_a, blob_store).process_batch()
            assert batch_a.processed == 1

            outcome_b = await OutboxProcessor(session_b, blob_store).process_event(stale_ids[0])

        assert outcome_b.outcome == "skipped"
        assert blob_store.put_calls == 1
        assert len(blob_store.objects) == 1
        attachment = await reload_attachment(db_session, result.id)
        assert attachment.status == AttachmentStatus.ACTIVE
        assert len(pending(await events_for(db_session, result.id, OutboxEventType.VERIFY_UPLOAD))) == 1

    @pytest.mark.asyncio
    async def test_overlapping_batches_process_each_event_once(
        self,
        db_session: AsyncSession,
        session_factory,
        blob_store: FlakyBlobStore
    ):
        attachment = await AttachmentFactory.create_remote(db_session, blob_store)
        await OutboxEventFactory.create(db_session, attachment, OutboxEventType.VERIFY_UPLOAD)

        async with session_factory() as session_a, session_factory() as session_b:
            first = await OutboxProcessor(session_a, blob_store).process_batch()
            second = await OutboxProcessor(session_b, blob_store).process_batch()

        assert first.processed == 1
        assert second.total == 0
        assert blob_store.exists_calls == 1


# -----------------------------------------------------------------------------
# Batch Tests
# -----------------------------------------------------------------------------

class TestBatch:
    """Tests for batch behaviour."""

    @pytest.mark.asyncio
    async def test_failing_event_does_not_block_batch(
        self,
        db_session: AsyncSession,
        processor: OutboxProcessor,
        blob_store: FlakyBlobStore
    ):
        broken = await AttachmentFactory.create_remote(db_session, blob_store)
        healthy = await AttachmentFactory.create_remote(db_session, blob_store)
        broken_event = await OutboxEventFactory.create(db_session, broken, OutboxEventType.VERIFY_UPLOAD)
        await OutboxEventFactory.create(db_session, healthy, OutboxEventType.VERIFY_UPLOAD)
        blob_store.explode_on.add(broken.remote_object_id)

        batch = await processor.process_batch()

        assert batch.total == 2
        assert batch.errors == 1
        assert batch.processed == 1

        event = await OutboxService(db_session).get_event(broken_event.id)
        assert event.processed_at is None
        assert "unexpected failure" in event.last_error
        assert (await reload_attachment(db_session, healthy.id)).last_verified_at is not None

    @pytest.mark.asyncio
    async def test_failing_event_is_pushed_back_behind_later_events(
        self,
        db_session: AsyncSession,
        processor: OutboxProcessor,
        blob_store: FlakyBlobStore
    ):
        broken = await AttachmentFactory.create_remote(db_session, blob_store)
        healthy = await AttachmentFactory.create_remote(db_session, blob_store)
        broken_event = await OutboxEventFactory.create(db_session, broken, OutboxEventType.VERIFY_UPLOAD)
        await OutboxEventFactory.create(db_session, healthy, OutboxEventType.VERIFY_UPLOAD)
        blob_store.explode_on.add(broken.remote_object_id)

        first = await processor.process_batch(limit=1)
        assert first.total == 1
        assert first.errors == 1

        event = await OutboxService(db_session).get_event(broken_event.id)
        assert event.failure_count == 1
        assert event.processed_at is None
        assert event.scheduled_at > datetime.utcnow()

        second = await processor.process_batch(limit=1)
        assert second.total == 1
        assert second.processed == 1
        assert second.events[0].entity_id == healthy.id
        assert (await reload_attachment(db_session, healthy.id)).last_verified_at is not None

    @pytest.mark.asyncio
    async def test_repeatedly_failing_event_is_resolved_at_ceiling(
        self,
        db_session: AsyncSession,
        processor: OutboxProcessor,
        blob_store: FlakyBlobStore
    ):
        attachment = await AttachmentFactory.create_remote(db_session, blob_store)
        event = await OutboxEventFactory.create(db_session, attachment, OutboxEventType.VERIFY_UPLOAD)
        blob_store.explode_on.add(attachment.remote_object_id)

        outcomes = []
        with patch.object(settings, "OUTBOX_MAX_ATTEMPTS", 2), \
                patch.object(settings, "OUTBOX_BACKOFF_BASE_SECONDS", 0):
            for _ in range(3):
                batch = await processor.process_batch()
                outcomes.extend(e.outcome for e in batch.events)

        assert outcomes == ["error", "exhausted"]
        event = await OutboxService(db_session).get_event(event.id)
        assert event.processed_at is not None
        assert event.failure_count == 2
        assert "unexpected failure" in event.last_error

        failures = (await db_session.execute(
            select(AuditLog).where(AuditLog.action == "outbox.processing.failed")
        )).scalars().all()
        assert len(failures) == 1
        assert failures[0].entity_id == attachment.id

    @pytest.mark.asyncio
    async def test_repeatedly_failing_delete_is_orphaned(
        self,
        db_session: AsyncSession,
        processor: OutboxProcessor,
        blob_store: FlakyBlobStore
    ):
        attachment = await AttachmentFactory.create_remote(db_session, blob_store)
        event = await OutboxEventFactory.create(db_session, attachment, OutboxEventType.DELETE_REMOTE)
        blob_store.explode_on.add(attachment.remote_object_id)

        with patch.object(settings, "OUTBOX_MAX_ATTEMPTS", 2), \
                patch.object(settings, "OUTBOX_BACKOFF_BASE_SECONDS", 0):
            first = await processor.process_batch()
            second = await processor.process_batch()
            third = await processor.process_batch()

        assert first.errors == 1
        assert second.orphaned == 1
        assert third.total == 0

        event = await OutboxService(db_session).get_event(event.id)
        assert event.orphaned is True
        assert event.processed_at is None
        orphaned = await OutboxService(db_session).list_orphaned()
        assert [e.id for e in orphaned] == [event.id]

    @pytest.mark.asyncio
    async def test_invalid_payload_is_resolved_with_error(
        self,
        db_session: AsyncSession,
        processor: OutboxProcessor
    ):
        attachment = await AttachmentFactory.create(db_session)
        event = OutboxEvent(
            event_type=OutboxEventType.DELETE_REMOTE,
            entity_id=attachment.id,
            organization_id=attachment.organization_id,
            payload={"event_type": "DELETE_REMOTE"},
        )
        db_session.add(event)
        await db_session.commit()

        batch = await processor.process_batch()

        assert batch.errors == 1
        event = await OutboxService(db_session).get_event(event.id)
        assert event.processed_at is not None
        assert event.last_error.startswith("Invalid payload")

    @pytest.mark.asyncio
    async def test_organization_scope_and_limit(
        self,
        db_session: AsyncSession,
        processor: OutboxProcessor,
        blob_store: FlakyBlobStore
    ):
        for _ in range(3):
            attachment = await AttachmentFactory.create_remote(db_session, blob_store)
            await OutboxEventFactory.create(db_session, attachment, OutboxEventType.VERIFY_UPLOAD)
        other = await AttachmentFactory.create_remote(db_session, blob_store, organization_id="other-org")
        await OutboxEventFactory.create(db_session, other, OutboxEventType.VERIFY_UPLOAD)

        scoped = await processor.process_batch(limit=2, organization_id="org-test")
        assert scoped.total == 2
        assert all(e.entity_id != other.id for e in scoped.events)

        rest = await processor.process_batch(organization_id="org-test")
        assert rest.total == 1

        assert len(pending(await events_for(db_session, other.id))) == 1


# -----------------------------------------------------------------------------
# Maintenance Tests
# -----------------------------------------------------------------------------

class TestMaintenance:
    """Tests for cleanup and statistics."""

    @pytest.mark.asyncio
    async def test_cleanup_removes_only_old_processed_events(
        self,
        db_session: AsyncSession,
        blob_store: FlakyBlobStore
    ):
        attachment = await AttachmentFactory.create_remote(db_session, blob_store)
        old = await OutboxEventFactory.create(db_session, attachment, OutboxEventType.VERIFY_UPLOAD)
        recent = await OutboxEventFactory.create(db_session, attachment, OutboxEventType.VERIFY_UPLOAD)
        open_event = await OutboxEventFactory.create(db_session, attachment, OutboxEventType.VERIFY_UPLOAD)

        outbox = OutboxService(db_session)
        await outbox.mark_processed(old.id, now=datetime.utcnow() - timedelta(days=45))
        await outbox.mark_processed(recent.id, now=datetime.utcnow() - timedelta(days=2))
        await db_session.commit()

        deleted = await outbox.cleanup_processed(retention_days=30)

        assert deleted == 1
        remaining = {e.id for e in await events_for(db_session, attachment.id)}
        assert remaining == {recent.id, open_event.id}

    @pytest.mark.asyncio
    async def test_stats(
        self,
        db_session: AsyncSession,
        blob_store: FlakyBlobStore
    ):
        attachment = await AttachmentFactory.create_remote(db_session, blob_store)
        done = await OutboxEventFactory.create(db_session, attachment, OutboxEventType.VERIFY_UPLOAD)
        orphan = await OutboxEventFactory.create(db_session, attachment, OutboxEventType.DELETE_REMOTE)
        await OutboxEventFactory.create(db_session, attachment, OutboxEventType.VERIFY_UPLOAD)

        outbox = OutboxService(db_session)
        await outbox.mark_processed(done.id)
        await outbox.mark_orphaned(orphan.id, "gave up")
        await db_session.commit()

        stats = await outbox.get_stats()

        assert stats == {"total": 3, "unprocessed": 2, "processed": 1, "orphaned": 1, "due": 1}
