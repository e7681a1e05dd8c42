from fastapi import APIRouter, Depends, File, Form, Query, Response, UploadFile, status
from typing import Optional
from urllib.parse import quote

from hybrid_attachments.api.v1.deps import get_attachment_service
from hybrid_attachments.core.config import settings
from hybrid_attachments.schemas.attachment import (
    AttachmentDeleteResponse,
    AttachmentListResponse,
    AttachmentResponse,
    AttachmentStatsResponse,
    AttachmentUploadResult,
    AttachmentVerifyResponse,
)
from hybrid_attachments.services.attachment_service import AttachmentService

router = APIRouter()


@router.post("/upload", response_model=AttachmentUploadResult, status_code=status.HTTP_201_CREATED)
async def upload_attachment(
    file: UploadFile = File(...),
    organization_id: str = Form(...),
    owner_type: str = Form(...),
    owner_id: str = Form(...),
    uploaded_by: Optional[str] = Form(None),
    service: AttachmentService = Depends(get_attachment_service)
):
    """
    Upload a file.

    The file goes to the remote store with a local backup. When the remote
    store is unavailable the upload still succeeds with status
    ``pending_upload`` and is retried in the background.
    """
    # One byte past the limit is enough to reject oversize files
    data = await file.read(settings.MAX_FILE_SIZE + 1)

    return await service.upload(
        data,
        organization_id=organization_id,
        owner_type=owner_type,
        owner_id=owner_id,
        file_name=file.filename or "file",
        mime_type=file.content_type,
        uploaded_by=uploaded_by,
    )


@router.get("/stats", response_model=AttachmentStatsResponse)
async def get_attachment_stats(
    organization_id: str = Query(...),
    service: AttachmentService = Depends(get_attachment_service)
):
    """Attachment counts by status for an organization."""
    return await service.get_stats(organization_id)


@router.get("/owner/{owner_type}/{owner_id}", response_model=AttachmentListResponse)
async def list_owner_attachments(
    owner_type: str,
    owner_id: str,
    organization_id: Optional[str] = None,
    include_deleted: bool = False,
    service: AttachmentService = Depends(get_attachment_service)
):
    """List attachments of an owner, newest first."""
    attachments = await service.list_by_owner(owner_type, owner_id, organization_id, include_deleted)
    return {
        "attachments": [AttachmentResponse.model_validate(a) for a in attachments],
        "total": len(attachments),
    }


@router.delete("/owner/{owner_type}/{owner_id}", response_model=AttachmentDeleteResponse)
async def delete_owner_attachments(
    owner_type: str,
    owner_id: str,
    organization_id: Optional[str] = None,
    deleted_by: Optional[str] = None,
    service: AttachmentService = Depends(get_attachment_service)
):
    """Delete every attachment of an owner."""
    deleted = await service.delete_by_owner(owner_type, owner_id, organization_id, deleted_by)
    return {"success": True, "deleted_count": deleted}


@router.get("/{attachment_id}", response_model=AttachmentResponse)
async def get_attachment(
    attachment_id: str,
    service: AttachmentService = Depends(get_attachment_service)
):
    """Get attachment metadata."""
    return await service.get_metadata(attachment_id)


@router.get("/{attachment_id}/preview")
async def get_attachment_preview(
    attachment_id: str,
    service: AttachmentService = Depends(get_attachment_service)
):
    """Serve the locally stored backup of an attachment."""
    preview = await service.get_preview(attachment_id)
    return Response(
        content=preview.data,
        media_type=preview.mime_type,
        headers={
            "Content-Disposition": f"inline; filename*=UTF-8''{quote(preview.file_name)}",
            "X-Backup-Kind": preview.kind.value,
        },
    )


@router.delete("/{attachment_id}", response_model=AttachmentDeleteResponse)
async def delete_attachment(
    attachment_id: str,
    deleted_by: Optional[str] = None,
    service: AttachmentService = Depends(get_attachment_service)
):
    """Soft delete an attachment. The remote object is removed in the background."""
    await service.delete(attachment_id, deleted_by=deleted_by)
    return {"success": True, "id": attachment_id, "deleted_count": 1}


@router.post("/{attachment_id}/retry", response_model=AttachmentUploadResult)
async def retry_attachment_upload(
    attachment_id: str,
    actor_id: Optional[str] = None,
    service: AttachmentService = Depends(get_attachment_service)
):
    """Retry the remote upload of a pending attachment right now."""
    return await service.retry(attachment_id, actor_id=actor_id)


@router.post("/{attachment_id}/verify", response_model=AttachmentVerifyResponse)
async def verify_attachment(
    attachment_id: str,
    service: AttachmentService = Depends(get_attachment_service)
):
    """Check that the remote copy of an attachment still exists."""
    return await service.verify(attachment_id)
