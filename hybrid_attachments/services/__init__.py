"""
Attachment Services Module

Contains the storage logic for hybrid attachments.
"""

from hybrid_attachments.services.metrics_service import MetricsCollector, metrics_collector
from hybrid_attachments.services.blob_store import (
    BlobObject,
    BlobStore,
    S3BlobStore,
    InMemoryBlobStore,
    get_blob_store,
)
from hybrid_attachments.services.preview_service import Preview, PreviewGenerator, PreviewProfile
from hybrid_attachments.services.outbox_service import OutboxService
from hybrid_attachments.services.attachment_service import AttachmentService
from hybrid_attachments.services.outbox_processor import OutboxProcessor

__all__ = [
    "MetricsCollector",
    "metrics_collector",
    "BlobObject",
    "BlobStore",
    "S3BlobStore",
    "InMemoryBlobStore",
    "get_blob_store",
    "Preview",
    "PreviewGenerator",
    "PreviewProfile",
    "OutboxService",
    "AttachmentService",
    "OutboxProcessor",
]
