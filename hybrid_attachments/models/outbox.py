from sqlalchemy import Column, String, Integer, DateTime, Boolean, JSON, Text, Enum as SQLEnum, Index
from datetime import datetime
import uuid
import enum
from hybrid_attachments.core.database import Base


class OutboxEventType(str, enum.Enum):
    VERIFY_UPLOAD = "VERIFY_UPLOAD"
    RETRY_UPLOAD = "RETRY_UPLOAD"
    DELETE_REMOTE = "DELETE_REMOTE"


class OutboxEvent(Base):
    """Pending follow-up action written in the same transaction as the attachment change."""
    __tablename__ = "outbox_events"
    __table_args__ = (
        Index("ix_outbox_events_due", "processed_at", "orphaned", "scheduled_at"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    event_type = Column(SQLEnum(OutboxEventType), nullable=False, index=True)
    entity_type = Column(String, nullable=False, default="attachment")
    entity_id = Column(String, nullable=False, index=True)
    organization_id = Column(String, nullable=False, index=True)

    # Snapshot of what the processor needs to act, see schemas.outbox
    payload = Column(JSON, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    scheduled_at = Column(DateTime, default=datetime.utcnow, nullable=False)  # earliest processing time
    processed_at = Column(DateTime)

    # Set only on DELETE_REMOTE events that exhausted their retries
    orphaned = Column(Boolean, default=False, nullable=False)
    last_error = Column(Text)
    # Unexpected handler errors; pushes scheduled_at back, capped by OUTBOX_MAX_ATTEMPTS
    failure_count = Column(Integer, default=0, nullable=False)
