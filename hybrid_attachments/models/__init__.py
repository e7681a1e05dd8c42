from hybrid_attachments.core.database import Base
from hybrid_attachments.models.attachment import (
    Attachment,
    AttachmentStatus,
    BackupKind,
    ATTACHMENT_STATUS_TRANSITIONS,
    can_transition,
)
from hybrid_attachments.models.outbox import OutboxEvent, OutboxEventType
from hybrid_attachments.models.audit import AuditLog

__all__ = [
    "Base",
    "Attachment",
    "AttachmentStatus",
    "BackupKind",
    "ATTACHMENT_STATUS_TRANSITIONS",
    "can_transition",
    "OutboxEvent",
    "OutboxEventType",
    "AuditLog",
]
