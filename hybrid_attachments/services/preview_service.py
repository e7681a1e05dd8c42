"""
Preview Generator

Builds the degraded local copy kept next to every attachment:

- images are shrunk to a thumbnail and re-encoded as JPEG
- text and document formats keep a bounded prefix, gzip compressed
- everything else keeps a short raw prefix

Generation is best effort. Malformed input yields ``None`` instead of an error
so an upload can still be recorded without a backup.
"""

import gzip
import io
import logging
from dataclasses import dataclass
from typing import Optional

from PIL import Image, UnidentifiedImageError

from hybrid_attachments.core.config import settings
from hybrid_attachments.models.attachment import BackupKind


logger = logging.getLogger(__name__)

DOCUMENT_MIME_TYPES = {
    "application/pdf",
    "application/json",
    "application/xml",
    "application/rtf",
    "application/msword",
    "application/vnd.ms-excel",
    "application/vnd.ms-powerpoint",
}

DOCUMENT_MIME_PREFIXES = (
    "text/",
    "application/vnd.openxmlformats-officedocument.",
    "application/vnd.oasis.opendocument.",
)


@dataclass(frozen=True)
class Preview:
    data: bytes
    kind: BackupKind


@dataclass(frozen=True)
class PreviewProfile:
    """Constraints for one kind of backup."""
    max_dimension: int
    image_quality: int
    text_prefix_bytes: int
    snippet_bytes: int
    max_size: int
    compress_other: bool = False  # compress unknown types instead of a raw snippet

    @classmethod
    def standard(cls) -> "PreviewProfile":
        return cls(
            max_dimension=settings.PREVIEW_MAX_DIMENSION,
            image_quality=settings.PREVIEW_IMAGE_QUALITY,
            text_prefix_bytes=settings.PREVIEW_TEXT_PREFIX_BYTES,
            snippet_bytes=settings.PREVIEW_SNIPPET_BYTES,
            max_size=settings.MAX_BACKUP_SIZE,
        )

    @classmethod
    def fallback(cls) -> "PreviewProfile":
        """Looser profile used when the remote upload failed."""
        return cls(
            max_dimension=settings.PREVIEW_MAX_DIMENSION,
            image_quality=settings.FALLBACK_IMAGE_QUALITY,
            text_prefix_bytes=settings.PREVIEW_TEXT_PREFIX_BYTES,
            snippet_bytes=settings.PREVIEW_SNIPPET_BYTES,
            max_size=settings.FALLBACK_MAX_BACKUP_SIZE,
            compress_other=True,
        )


def is_image(mime_type: str) -> bool:
    return (mime_type or "").lower().startswith("image/")


def is_document(mime_type: str) -> bool:
    mime_type = (mime_type or "").lower()
    return mime_type in DOCUMENT_MIME_TYPES or mime_type.startswith(DOCUMENT_MIME_PREFIXES)


def compress(data: bytes) -> bytes:
    return gzip.compress(data, compresslevel=9)


def decompress(data: bytes) -> bytes:
    return gzip.decompress(data)


class PreviewGenerator:
    """Derives bounded backups from raw file bytes."""

    def generate(self, data: bytes, mime_type: str, profile: Optional[PreviewProfile] = None) -> Optional[Preview]:
        """
        Produce a backup for ``data``.

        Args:
            data: Raw file bytes
            mime_type: Declared MIME type of the file
            profile: Size and quality constraints, standard profile by default

        Returns:
            Preview, or None when nothing usable fits within the profile
        """
        profile = profile or PreviewProfile.standard()
        if not data:
            return None

        try:
            if is_image(mime_type):
                preview = Preview(self.thumbnail(data, profile.max_dimension, profile.image_quality), BackupKind.THUMBNAIL)
            elif is_document(mime_type) or profile.compress_other:
                preview = Preview(compress(data[:profile.text_prefix_bytes]), BackupKind.COMPRESSED)
            else:
                preview = Preview(bytes(data[:profile.snippet_bytes]), BackupKind.SNIPPET)
        except UnidentifiedImageError:
            logger.warning(f"Could not read image data declared as {mime_type}")
            if not profile.compress_other:
                return None
            # Undecodable images still get a raw backup under the fallback profile
            preview = Preview(compress(data[:profile.text_prefix_bytes]), BackupKind.COMPRESSED)
        except Exception as e:
            logger.warning(f"Preview generation failed for {mime_type}: {e}")
            return None

        if not preview.data:
            return None

        if len(preview.data) > profile.max_size:
            logger.warning(
                f"Preview too large ({len(preview.data)} > {profile.max_size} bytes), skipping backup"
            )
            return None

        return preview

    @staticmethod
    def thumbnail(data: bytes, max_dimension: int, quality: int) -> bytes:
        """Shrink an image to fit ``max_dimension`` (never enlarging) and encode as JPEG."""
        with Image.open(io.BytesIO(data)) as image:
            image.thumbnail((max_dimension, max_dimension))
            if image.mode not in ("RGB", "L"):
                image = image.convert("RGB")
            output = io.BytesIO()
            image.save(output, format="JPEG", quality=quality, optimize=True)
            return output.getvalue()


# Global preview generator instance
preview_generator = PreviewGenerator()


def get_preview_generator() -> PreviewGenerator:
    return preview_generator
