"""
Outbox Cleanup Batch Job

Daily purge of processed outbox events older than the retention window.
Uses APScheduler for job scheduling with async support.
"""

import logging
from datetime import datetime
from typing import Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from hybrid_attachments.core.config import settings
from hybrid_attachments.core.database import AsyncSessionLocal
from hybrid_attachments.services.outbox_service import OutboxService

logger = logging.getLogger(__name__)

# APScheduler instance (initialized in setup_cleanup_scheduler)
scheduler: Optional[AsyncIOScheduler] = None


async def run_outbox_cleanup_job(retention_days: Optional[int] = None) -> dict:
    """
    Delete processed outbox events older than the retention window.

    Args:
        retention_days: Days to keep processed events, OUTBOX_RETENTION_DAYS by default

    Returns:
        dict: Summary of the job execution
    """
    retention_days = retention_days if retention_days is not None else settings.OUTBOX_RETENTION_DAYS
    logger.info(f"Starting outbox cleanup job (retention {retention_days} days)")

    async with AsyncSessionLocal() as db:
        try:
            deleted = await OutboxService(db).cleanup_processed(retention_days=retention_days)
        except Exception as e:
            logger.error(f"Outbox cleanup job failed: {str(e)}", exc_info=True)
            raise

    return {
        "job_type": "outbox_cleanup",
        "retention_days": retention_days,
        "deleted_count": deleted,
        "completed_at": datetime.utcnow().isoformat()
    }


def setup_cleanup_scheduler() -> AsyncIOScheduler:
    """
    Configure and start the APScheduler for the cleanup job.

    The cleanup runs at 03:00 UTC every day. Must be called from inside a
    running event loop (application startup).
    """
    global scheduler

    jobstores = {
        'default': MemoryJobStore()
    }
    executors = {
        'default': AsyncIOExecutor()
    }
    job_defaults = {
        'coalesce': True,  # Combine multiple missed runs into one
        'max_instances': 1,
        'misfire_grace_time': 3600
    }

    scheduler = AsyncIOScheduler(
        jobstores=jobstores,
        executors=executors,
        job_defaults=job_defaults,
        timezone='UTC'
    )

    scheduler.add_job(
        run_outbox_cleanup_job,
        trigger=CronTrigger(hour=3, minute=0),
        id='outbox_cleanup',
        name='Outbox Event Cleanup',
        replace_existing=True
    )
    scheduler.start()
    logger.info("Scheduled outbox cleanup job for 03:00 UTC")

    return scheduler


def shutdown_cleanup_scheduler() -> None:
    global scheduler

    if scheduler is not None:
        scheduler.shutdown(wait=False)
        scheduler = None
        logger.info("Outbox cleanup scheduler stopped")


def get_cleanup_scheduler_status() -> dict:
    """Get the current status of the scheduler and its jobs."""
    if scheduler is None:
        return {
            "status": "not_initialized",
            "jobs": []
        }

    jobs = []
    for job in scheduler.get_jobs():
        jobs.append({
            "id": job.id,
            "name": job.name,
            "next_run": job.next_run_time.isoformat() if job.next_run_time else None,
            "trigger": str(job.trigger)
        })

    return {
        "status": "running" if scheduler.running else "stopped",
        "jobs": jobs
    }
