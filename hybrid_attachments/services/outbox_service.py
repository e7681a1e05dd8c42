"""
Outbox Log Service

Append-only log of follow-up actions for attachments. Events are staged in the
caller's session so they commit atomically with the attachment change that
produced them.
"""

from datetime import datetime, timedelta
from typing import List, Optional
import logging

from sqlalchemy import select, update, delete, func, and_
from sqlalchemy.ext.asyncio import AsyncSession

from hybrid_attachments.core.config import settings
from hybrid_attachments.models.attachment import Attachment
from hybrid_attachments.models.outbox import OutboxEvent, OutboxEventType
from hybrid_attachments.schemas.outbox import (
    VerifyUploadPayload,
    RetryUploadPayload,
    DeleteRemotePayload,
)


logger = logging.getLogger(__name__)


def backoff_delay_seconds(attempt: int) -> int:
    """Capped exponential backoff before attempt ``attempt + 1``."""
    delay = settings.OUTBOX_BACKOFF_BASE_SECONDS * (2 ** max(attempt - 1, 0))
    return int(min(delay, settings.OUTBOX_BACKOFF_MAX_SECONDS))


class OutboxService:
    """Reads and writes the outbox_events table."""

    def __init__(self, db: AsyncSession):
        self.db = db

    def build_payload(self, event_type: OutboxEventType, attachment: Attachment, attempt: int = 1):
        context = {
            "organization_id": attachment.organization_id,
            "owner_type": attachment.owner_type,
            "owner_id": attachment.owner_id,
            "attempt": attempt,
        }
        if event_type == OutboxEventType.VERIFY_UPLOAD:
            return VerifyUploadPayload(
                remote_object_id=attachment.remote_object_id,
                remote_url=attachment.remote_url,
                **context
            )
        if event_type == OutboxEventType.RETRY_UPLOAD:
            return RetryUploadPayload(
                file_name=attachment.file_name,
                mime_type=attachment.mime_type,
                **context
            )
        if event_type == OutboxEventType.DELETE_REMOTE:
            return DeleteRemotePayload(
                remote_object_id=attachment.remote_object_id,
                **context
            )
        raise ValueError(f"Unsupported outbox event type: {event_type}")

    def enqueue(
        self,
        event_type: OutboxEventType,
        attachment: Attachment,
        attempt: int = 1,
        delay_seconds: int = 0,
        now: Optional[datetime] = None,
    ) -> OutboxEvent:
        """
        Stage a new event in the current transaction.

        Args:
            event_type: Action to perform later
            attachment: Attachment the action applies to
            attempt: 1-based attempt number carried in the payload
            delay_seconds: Earliest processing time relative to now
            now: Reference time, defaults to utcnow

        Returns:
            The pending OutboxEvent
        """
        now = now or datetime.utcnow()
        payload = self.build_payload(event_type, attachment, attempt)
        event = OutboxEvent(
            event_type=event_type,
            entity_type="attachment",
            entity_id=attachment.id,
            organization_id=attachment.organization_id,
            payload=payload.model_dump(mode="json"),
            created_at=now,
            scheduled_at=now + timedelta(seconds=delay_seconds),
        )
        self.db.add(event)
        logger.debug(
            f"Enqueued {event_type.value} for attachment {attachment.id} "
            f"(attempt {attempt}, delay {delay_seconds}s)"
        )
        return event

    def enqueue_followup(
        self,
        event: OutboxEvent,
        payload,
        attempt: int,
        delay_seconds: int,
        now: Optional[datetime] = None,
    ) -> OutboxEvent:
        """Stage a new event repeating ``event`` with a higher attempt number."""
        now = now or datetime.utcnow()
        next_payload = payload.model_copy(update={"attempt": attempt})
        followup = OutboxEvent(
            event_type=event.event_type,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            organization_id=event.organization_id,
            payload=next_payload.model_dump(mode="json"),
            created_at=now,
            scheduled_at=now + timedelta(seconds=delay_seconds),
        )
        self.db.add(followup)
        logger.debug(
            f"Rescheduled {event.event_type.value} for {event.entity_type} {event.entity_id} "
            f"as attempt {attempt} in {delay_seconds}s"
        )
        return followup

    async def get_event(self, event_id: str) -> Optional[OutboxEvent]:
        """Load an event, always re-reading its current row."""
        result = await self.db.execute(
            select(OutboxEvent)
            .where(OutboxEvent.id == event_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def fetch_due_event_ids(
        self,
        limit: int,
        organization_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[str]:
        """IDs of unprocessed, non-orphaned events whose scheduled time has passed, oldest first."""
        now = now or datetime.utcnow()
        query = select(OutboxEvent.id).where(
            and_(
                OutboxEvent.processed_at.is_(None),
                OutboxEvent.orphaned == False,
                OutboxEvent.scheduled_at <= now,
            )
        )
        if organization_id:
            query = query.where(OutboxEvent.organization_id == organization_id)

        query = query.order_by(OutboxEvent.created_at.asc(), OutboxEvent.id.asc()).limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def mark_processed(self, event_id: str, error: Optional[str] = None, now: Optional[datetime] = None) -> bool:
        """
        Mark an event processed if nobody else did first.

        Returns:
            True if this call resolved the event
        """
        values = {"processed_at": now or datetime.utcnow()}
        if error is not None:
            values["last_error"] = error[:2000]
        result = await self.db.execute(
            update(OutboxEvent)
            .where(and_(OutboxEvent.id == event_id, OutboxEvent.processed_at.is_(None)))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def record_error(self, event_id: str, error: str) -> None:
        await self.db.execute(
            update(OutboxEvent)
            .where(OutboxEvent.id == event_id)
            .values(last_error=error[:2000])
            .execution_options(synchronize_session=False)
        )

    async def record_failure(self, event: OutboxEvent, error: str, now: Optional[datetime] = None) -> str:
        """
        Count an unexpected handler failure against ``event``.

        Below OUTBOX_MAX_ATTEMPTS the event is pushed back by the backoff
        delay so later events are reached. At the ceiling it is resolved with
        ``last_error``; DELETE_REMOTE events are orphaned instead so the remote
        object stays visible for manual cleanup.

        Returns:
            "error" while retries remain, otherwise "exhausted" or "orphaned"
        """
        now = now or datetime.utcnow()
        failures = (event.failure_count or 0) + 1
        values = {"failure_count": failures, "last_error": error[:2000]}

        if failures < settings.OUTBOX_MAX_ATTEMPTS:
            values["scheduled_at"] = now + timedelta(seconds=backoff_delay_seconds(failures))
            outcome = "error"
        elif event.event_type == OutboxEventType.DELETE_REMOTE:
            values["orphaned"] = True
            outcome = "orphaned"
        else:
            values["processed_at"] = now
            outcome = "exhausted"

        result = await self.db.execute(
            update(OutboxEvent)
            .where(and_(OutboxEvent.id == event.id, OutboxEvent.processed_at.is_(None)))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return "skipped"
        return outcome

    async def mark_orphaned(self, event_id: str, error: str) -> bool:
        """Leave the event outstanding but exclude it from further processing."""
        result = await self.db.execute(
            update(OutboxEvent)
            .where(and_(OutboxEvent.id == event_id, OutboxEvent.processed_at.is_(None)))
            .values(orphaned=True, last_error=error[:2000])
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def resolve_pending(self, entity_id: str, event_type: OutboxEventType, now: Optional[datetime] = None) -> int:
        """Mark every outstanding event of one type for an attachment processed."""
        result = await self.db.execute(
            update(OutboxEvent)
            .where(
                and_(
                    OutboxEvent.entity_id == entity_id,
                    OutboxEvent.event_type == event_type,
                    OutboxEvent.processed_at.is_(None),
                    OutboxEvent.orphaned == False,
                )
            )
            .values(processed_at=now or datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def list_for_entity(self, entity_id: str) -> List[OutboxEvent]:
        result = await self.db.execute(
            select(OutboxEvent)
            .where(OutboxEvent.entity_id == entity_id)
            .order_by(OutboxEvent.created_at.asc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def list_orphaned(self, limit: int = 100, organization_id: Optional[str] = None) -> List[OutboxEvent]:
        query = select(OutboxEvent).where(
            and_(OutboxEvent.orphaned == True, OutboxEvent.processed_at.is_(None))
        )
        if organization_id:
            query = query.where(OutboxEvent.organization_id == organization_id)
        result = await self.db.execute(query.order_by(OutboxEvent.created_at.asc()).limit(limit))
        return list(result.scalars().all())

    async def get_stats(self, now: Optional[datetime] = None) -> dict:
        """Counts of events by processing state."""
        now = now or datetime.utcnow()

        async def count(*conditions) -> int:
            query = select(func.count(OutboxEvent.id))
            if conditions:
                query = query.where(and_(*conditions))
            result = await self.db.execute(query)
            return result.scalar_one()

        total = await count()
        unprocessed = await count(OutboxEvent.processed_at.is_(None))
        orphaned = await count(OutboxEvent.processed_at.is_(None), OutboxEvent.orphaned == True)
        due = await count(
            OutboxEvent.processed_at.is_(None),
            OutboxEvent.orphaned == False,
            OutboxEvent.scheduled_at <= now,
        )

        return {
            "total": total,
            "unprocessed": unprocessed,
            "processed": total - unprocessed,
            "orphaned": orphaned,
            "due": due,
        }

    async def cleanup_processed(self, retention_days: Optional[int] = None, now: Optional[datetime] = None) -> int:
        """
        Delete processed events older than the retention window.

        Returns:
            Number of deleted events
        """
        retention_days = retention_days if retention_days is not None else settings.OUTBOX_RETENTION_DAYS
        cutoff = (now or datetime.utcnow()) - timedelta(days=retention_days)
        result = await self.db.execute(
            delete(OutboxEvent)
            .where(and_(OutboxEvent.processed_at.is_not(None), OutboxEvent.processed_at < cutoff))
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        logger.info(f"Cleaned up {result.rowcount} processed outbox events older than {retention_days} days")
        return result.rowcount
