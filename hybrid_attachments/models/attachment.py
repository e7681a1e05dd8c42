from sqlalchemy import Column, String, DateTime, Integer, Boolean, LargeBinary, Enum as SQLEnum, Index
from datetime import datetime
import uuid
import enum
from hybrid_attachments.core.database import Base


class AttachmentStatus(str, enum.Enum):
    PENDING_UPLOAD = "pending_upload"  # Only a local backup exists so far
    ACTIVE = "active"  # Remote object present
    FAILED = "failed"  # Neither remote nor backup; caller must re-upload
    DELETED = "deleted"  # Terminal soft delete


class BackupKind(str, enum.Enum):
    THUMBNAIL = "thumbnail"
    COMPRESSED = "compressed"
    SNIPPET = "snippet"


# Automatic transitions the processor and manager may apply.
# DELETED is reachable from every status and is terminal.
ATTACHMENT_STATUS_TRANSITIONS = {
    AttachmentStatus.PENDING_UPLOAD: {
        AttachmentStatus.ACTIVE,
        AttachmentStatus.FAILED,
        AttachmentStatus.DELETED,
    },
    AttachmentStatus.ACTIVE: {
        AttachmentStatus.PENDING_UPLOAD,
        AttachmentStatus.FAILED,
        AttachmentStatus.DELETED,
    },
    AttachmentStatus.FAILED: {AttachmentStatus.DELETED},
    AttachmentStatus.DELETED: set(),
}


def can_transition(current: AttachmentStatus, target: AttachmentStatus) -> bool:
    """Check whether ``current -> target`` is an edge of the status graph."""
    return target in ATTACHMENT_STATUS_TRANSITIONS.get(current, set())


class Attachment(Base):
    """File attachment tracked across the remote object store and the local backup."""
    __tablename__ = "attachments"
    __table_args__ = (
        Index("ix_attachments_owner", "owner_type", "owner_id"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id = Column(String, nullable=False, index=True)

    # Weak reference to the owning entity (task, project, expense, ...)
    owner_type = Column(String(50), nullable=False)
    owner_id = Column(String, nullable=False)

    # File metadata (immutable)
    file_name = Column(String, nullable=False)
    mime_type = Column(String, nullable=False, default="application/octet-stream")
    file_size = Column(Integer, nullable=False)  # bytes

    # Remote location
    remote_url = Column(String)
    remote_object_id = Column(String, index=True)

    # Local backup / preview
    backup_payload = Column(LargeBinary)
    backup_kind = Column(SQLEnum(BackupKind))
    backup_available = Column(Boolean, default=False, nullable=False)

    # Lifecycle
    status = Column(SQLEnum(AttachmentStatus), nullable=False, default=AttachmentStatus.PENDING_UPLOAD, index=True)
    upload_attempts = Column(Integer, default=0, nullable=False)  # failed processor re-uploads
    uploaded_by = Column(String)
    uploaded_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    last_verified_at = Column(DateTime)
    deleted_at = Column(DateTime)
