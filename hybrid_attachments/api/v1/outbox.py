"""
Outbox API endpoints.

On-demand processing, statistics, per-attachment event history and the list
of orphaned events that need manual cleanup.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional

from hybrid_attachments.api.v1.deps import get_outbox_processor
from hybrid_attachments.core.database import get_db
from hybrid_attachments.jobs.cleanup_batch import get_cleanup_scheduler_status
from hybrid_attachments.jobs.outbox_batch import get_outbox_scheduler, trigger_outbox_processing
from hybrid_attachments.schemas.outbox import (
    OutboxBatchResult,
    OutboxEventResponse,
    OutboxSchedulerStatusResponse,
    OutboxStatsResponse,
)
from hybrid_attachments.services.outbox_processor import OutboxProcessor
from hybrid_attachments.services.outbox_service import OutboxService

router = APIRouter()


@router.post("/process", response_model=OutboxBatchResult)
async def process_outbox(
    limit: Optional[int] = Query(None, ge=1, le=1000),
    organization_id: Optional[str] = None,
    processor: OutboxProcessor = Depends(get_outbox_processor)
):
    """
    Process one batch of due outbox events now.

    Per-event failures are reported in the result; the request itself does
    not fail because of them.
    """
    return await processor.process_batch(limit=limit, organization_id=organization_id)


@router.get("/stats", response_model=OutboxStatsResponse)
async def get_outbox_stats(db: AsyncSession = Depends(get_db)):
    """Outbox event counts by processing state."""
    return await OutboxService(db).get_stats()


@router.get("/orphaned", response_model=List[OutboxEventResponse])
async def list_orphaned_events(
    limit: int = Query(100, ge=1, le=1000),
    organization_id: Optional[str] = None,
    db: AsyncSession = Depends(get_db)
):
    """Events that gave up and need manual cleanup."""
    return await OutboxService(db).list_orphaned(limit=limit, organization_id=organization_id)


@router.get("/scheduler", response_model=OutboxSchedulerStatusResponse)
async def get_outbox_scheduler_status():
    """Status of the background outbox scheduler and the cleanup job."""
    return {**get_outbox_scheduler().get_status(), "cleanup": get_cleanup_scheduler_status()}


@router.post("/scheduler/run", response_model=OutboxBatchResult)
async def run_outbox_scheduler(
    limit: Optional[int] = Query(None, ge=1, le=1000),
    organization_id: Optional[str] = None
):
    """Run the background scheduler once now, in its own session."""
    return await trigger_outbox_processing(limit=limit, organization_id=organization_id)


@router.get("/events/{entity_id}", response_model=List[OutboxEventResponse])
async def list_entity_events(entity_id: str, db: AsyncSession = Depends(get_db)):
    """Every outbox event of one attachment, oldest first."""
    return await OutboxService(db).list_for_entity(entity_id)
