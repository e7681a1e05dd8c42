from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from hybrid_attachments.core.database import get_db
from hybrid_attachments.services.attachment_service import AttachmentService
from hybrid_attachments.services.blob_store import BlobStore, get_blob_store
from hybrid_attachments.services.outbox_processor import OutboxProcessor
from hybrid_attachments.services.preview_service import PreviewGenerator, get_preview_generator


def get_attachment_service(
    db: AsyncSession = Depends(get_db),
    blob_store: BlobStore = Depends(get_blob_store),
    previews: PreviewGenerator = Depends(get_preview_generator),
) -> AttachmentService:
    return AttachmentService(db, blob_store, previews)


def get_outbox_processor(
    db: AsyncSession = Depends(get_db),
    blob_store: BlobStore = Depends(get_blob_store),
) -> OutboxProcessor:
    return OutboxProcessor(db, blob_store)
