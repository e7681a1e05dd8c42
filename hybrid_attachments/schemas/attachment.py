from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, List, Dict
from hybrid_attachments.models.attachment import AttachmentStatus, BackupKind


class AttachmentUploadResult(BaseModel):
    """Immediate answer to an upload; status is always definite."""
    id: str
    file_name: str
    file_size: int
    mime_type: str
    remote_url: Optional[str]
    backup_available: bool
    backup_kind: Optional[BackupKind]
    status: AttachmentStatus

    class Config:
        from_attributes = True


class AttachmentResponse(BaseModel):
    """Attachment metadata. The backup payload is never part of this schema."""
    id: str
    organization_id: str
    owner_type: str
    owner_id: str
    file_name: str
    mime_type: str
    file_size: int
    remote_url: Optional[str]
    remote_object_id: Optional[str]
    backup_available: bool
    backup_kind: Optional[BackupKind]
    status: AttachmentStatus
    upload_attempts: int
    uploaded_by: Optional[str]
    uploaded_at: datetime
    last_verified_at: Optional[datetime]
    deleted_at: Optional[datetime]

    class Config:
        from_attributes = True


class AttachmentListResponse(BaseModel):
    attachments: List[AttachmentResponse]
    total: int


class AttachmentDeleteResponse(BaseModel):
    success: bool = True
    id: Optional[str] = None
    deleted_count: Optional[int] = None


class AttachmentVerifyResponse(BaseModel):
    """Result of a synchronous remote health check."""
    id: str
    verified: bool
    previous_status: AttachmentStatus
    status: AttachmentStatus


class AttachmentStatsResponse(BaseModel):
    organization_id: str
    total: int
    by_status: Dict[str, int] = Field(default_factory=dict)
    backups_available: int
    total_bytes: int
