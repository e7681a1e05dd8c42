from sqlalchemy import Column, String, DateTime, JSON, Text
from datetime import datetime
import uuid
from hybrid_attachments.core.database import Base


class AuditLog(Base):
    """Immutable audit trail for attachment lifecycle actions."""
    __tablename__ = "audit_logs"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id = Column(String, nullable=False, index=True)

    # Actor (None for the outbox processor)
    actor_id = Column(String, index=True)

    # Entity
    entity_type = Column(String, nullable=False, index=True)  # "attachment", "outbox_event"
    entity_id = Column(String, nullable=False, index=True)

    # Action
    action = Column(String, nullable=False, index=True)  # "attachment.uploaded", "attachment.deleted", etc.
    description = Column(Text)  # Human-readable description

    # Example: {"status": {"old": "active", "new": "pending_upload"}}
    changes = Column(JSON)

    # Timestamp (immutable)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
