"""
Outbox Schemas Module

Typed payloads stored on outbox events plus API responses for the processor.
Each event type has its own payload schema; the ``event_type`` field is the
discriminator so a stored payload always parses back to the right model.
"""

from pydantic import BaseModel, Field, TypeAdapter
from datetime import datetime
from typing import Optional, List, Dict, Literal, Union, Annotated, Any
from hybrid_attachments.models.outbox import OutboxEventType


# ============================================================================
# Event Payloads
# ============================================================================

class _OutboxPayloadBase(BaseModel):
    organization_id: str
    owner_type: str
    owner_id: str
    attempt: int = Field(1, ge=1, description="1-based attempt number of this action")


class VerifyUploadPayload(_OutboxPayloadBase):
    """Check that the remote object still exists."""
    event_type: Literal["VERIFY_UPLOAD"] = "VERIFY_UPLOAD"
    remote_object_id: str
    remote_url: Optional[str] = None


class RetryUploadPayload(_OutboxPayloadBase):
    """Re-upload the stored backup to the remote store."""
    event_type: Literal["RETRY_UPLOAD"] = "RETRY_UPLOAD"
    file_name: str
    mime_type: str


class DeleteRemotePayload(_OutboxPayloadBase):
    """Remove the remote object of a deleted attachment."""
    event_type: Literal["DELETE_REMOTE"] = "DELETE_REMOTE"
    remote_object_id: str


OutboxPayload = Annotated[
    Union[VerifyUploadPayload, RetryUploadPayload, DeleteRemotePayload],
    Field(discriminator="event_type"),
]

_payload_adapter = TypeAdapter(OutboxPayload)


def parse_outbox_payload(data: Dict[str, Any]) -> Union[VerifyUploadPayload, RetryUploadPayload, DeleteRemotePayload]:
    """Parse a stored JSON payload back into its typed model."""
    return _payload_adapter.validate_python(data)


# ============================================================================
# Processor Results
# ============================================================================

class OutboxEventResult(BaseModel):
    event_id: str
    event_type: Optional[OutboxEventType] = None
    entity_id: Optional[str] = None
    outcome: str  # processed, skipped, rescheduled, exhausted, orphaned, error
    detail: Optional[str] = None


class OutboxBatchResult(BaseModel):
    """Summary of a single processor run."""
    total: int = 0
    processed: int = 0
    skipped: int = 0
    rescheduled: int = 0
    exhausted: int = 0
    orphaned: int = 0
    errors: int = 0
    started_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    events: List[OutboxEventResult] = Field(default_factory=list)

    def record(self, result: OutboxEventResult) -> None:
        self.total += 1
        if result.outcome == "error":
            self.errors += 1
        elif hasattr(self, result.outcome):
            setattr(self, result.outcome, getattr(self, result.outcome) + 1)
        self.events.append(result)


class OutboxEventResponse(BaseModel):
    id: str
    event_type: OutboxEventType
    entity_type: str
    entity_id: str
    organization_id: str
    payload: Dict[str, Any]
    created_at: datetime
    scheduled_at: datetime
    processed_at: Optional[datetime]
    orphaned: bool
    last_error: Optional[str]
    failure_count: int = 0

    class Config:
        from_attributes = True


class OutboxStatsResponse(BaseModel):
    total: int
    unprocessed: int
    processed: int
    orphaned: int
    due: int


class CleanupSchedulerStatus(BaseModel):
    status: str  # not_initialized, running, stopped
    jobs: List[Dict[str, Any]] = Field(default_factory=list)


class OutboxSchedulerStatusResponse(BaseModel):
    running: bool
    interval_seconds: int
    last_run: Optional[str]
    run_count: int
    error_count: int
    next_run_in_seconds: Optional[int]
    cleanup: Optional[CleanupSchedulerStatus] = None
