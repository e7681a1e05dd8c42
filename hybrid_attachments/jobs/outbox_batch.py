"""
Outbox Batch Job Module

Runs the outbox processor on a fixed interval in the background.
"""

import asyncio
from datetime import datetime
from typing import Optional, Callable, Awaitable
import logging

from hybrid_attachments.core.config import settings
from hybrid_attachments.core.database import AsyncSessionLocal
from hybrid_attachments.schemas.outbox import OutboxBatchResult
from hybrid_attachments.services.blob_store import BlobStore, get_blob_store
from hybrid_attachments.services.outbox_processor import OutboxProcessor


logger = logging.getLogger(__name__)


async def run_outbox_batch(
    limit: Optional[int] = None,
    organization_id: Optional[str] = None,
    blob_store: Optional[BlobStore] = None,
) -> OutboxBatchResult:
    """
    Process one batch of due outbox events in a fresh session.

    Args:
        limit: Maximum number of events, OUTBOX_BATCH_SIZE by default
        organization_id: Only process events of this organization
        blob_store: Remote store backend, the configured one by default

    Returns:
        OutboxBatchResult for the run
    """
    async with AsyncSessionLocal() as db:
        processor = OutboxProcessor(db, blob_store or get_blob_store())
        return await processor.process_batch(limit=limit, organization_id=organization_id)


class OutboxJobScheduler:
    """
    Scheduler for outbox processing runs.

    Uses asyncio for lightweight background task scheduling.
    Runs every OUTBOX_PROCESS_INTERVAL_SECONDS (5 minutes by default).
    """

    def __init__(
        self,
        interval_seconds: Optional[int] = None,
        batch_size: Optional[int] = None,
        on_complete: Optional[Callable[[OutboxBatchResult], Awaitable[None]]] = None
    ):
        """
        Initialize the outbox job scheduler.

        Args:
            interval_seconds: Time between runs in seconds
            batch_size: Events per run, OUTBOX_BATCH_SIZE by default
            on_complete: Optional async callback to execute after each run
        """
        self.interval_seconds = interval_seconds or settings.OUTBOX_PROCESS_INTERVAL_SECONDS
        self.batch_size = batch_size or settings.OUTBOX_BATCH_SIZE
        self.on_complete = on_complete
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._last_run: Optional[datetime] = None
        self._run_count = 0
        self._error_count = 0

    async def run_once(
        self,
        organization_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> OutboxBatchResult:
        """
        Execute a single outbox run.

        Args:
            organization_id: Only process events of this organization
            limit: Events for this run, the scheduler batch size by default

        Returns:
            Summary of the processing results
        """
        logger.debug("Starting outbox batch run...")

        try:
            result = await run_outbox_batch(
                limit=limit or self.batch_size, organization_id=organization_id
            )

            self._last_run = datetime.utcnow()
            self._run_count += 1

            if self.on_complete:
                try:
                    await self.on_complete(result)
                except Exception as e:
                    logger.error(f"Error in on_complete callback: {e}")

            return result

        except Exception as e:
            self._error_count += 1
            logger.error(f"Outbox batch run failed: {e}")
            raise

    async def _scheduler_loop(self):
        logger.info(
            f"Outbox scheduler started with interval {self.interval_seconds} seconds"
        )

        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Outbox scheduler error: {e}")

            await asyncio.sleep(self.interval_seconds)

        logger.info("Outbox scheduler stopped")

    def start(self):
        """Start the scheduler loop as an asyncio task."""
        if self._running:
            logger.warning("Outbox scheduler is already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._scheduler_loop())
        logger.info("Outbox scheduler task created")

    async def stop(self):
        """Cancel the running task and wait for it to finish."""
        if not self._running:
            logger.warning("Outbox scheduler is not running")
            return

        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.info("Outbox scheduler stopped")

    def get_status(self) -> dict:
        return {
            "running": self._running,
            "interval_seconds": self.interval_seconds,
            "last_run": self._last_run.isoformat() if self._last_run else None,
            "run_count": self._run_count,
            "error_count": self._error_count,
            "next_run_in_seconds": self._calculate_next_run_seconds()
        }

    def _calculate_next_run_seconds(self) -> Optional[int]:
        if not self._running or not self._last_run:
            return None

        elapsed = (datetime.utcnow() - self._last_run).total_seconds()
        remaining = max(0, self.interval_seconds - elapsed)
        return int(remaining)


# Global scheduler instance
_outbox_scheduler: Optional[OutboxJobScheduler] = None


def get_outbox_scheduler() -> OutboxJobScheduler:
    """
    Get the global outbox scheduler instance.

    Creates a new instance if one doesn't exist.
    """
    global _outbox_scheduler
    if _outbox_scheduler is None:
        _outbox_scheduler = OutboxJobScheduler()
    return _outbox_scheduler


async def start_outbox_scheduler():
    """Start the global outbox scheduler. Called during application startup."""
    scheduler = get_outbox_scheduler()
    scheduler.start()
    logger.info("Global outbox scheduler started")


async def stop_outbox_scheduler():
    """Stop the global outbox scheduler. Called during application shutdown."""
    global _outbox_scheduler
    if _outbox_scheduler:
        await _outbox_scheduler.stop()
        _outbox_scheduler = None
    logger.info("Global outbox scheduler stopped")


async def trigger_outbox_processing(
    limit: Optional[int] = None,
    organization_id: Optional[str] = None,
) -> OutboxBatchResult:
    """
    Manually trigger an outbox run outside the interval.

    Goes through the global scheduler so the run shows up in its status.
    """
    return await get_outbox_scheduler().run_once(organization_id=organization_id, limit=limit)
