"""
Blob Store Client

Narrow capability interface over a remote object store plus two backends:
an S3 backend built on boto3 and an in-process backend for local development.
Every remote failure, including timeouts, surfaces as ``RemoteUnavailable``.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Dict, Optional, Protocol, Tuple, runtime_checkable

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from hybrid_attachments.core.config import settings
from hybrid_attachments.core.errors import RemoteUnavailable
from hybrid_attachments.services.metrics_service import metrics_collector


logger = logging.getLogger(__name__)

# S3 error codes meaning "no such object"
MISSING_OBJECT_CODES = {"404", "NoSuchKey", "NotFound"}


@dataclass(frozen=True)
class BlobObject:
    """Location of an object stored remotely."""
    url: str
    object_id: str


@runtime_checkable
class BlobStore(Protocol):
    """Capability interface every remote backend implements."""

    async def put(self, data: bytes, folder: str, file_name: str, mime_type: str) -> BlobObject:
        ...

    async def exists(self, object_id: str) -> bool:
        ...

    async def delete(self, object_id: str) -> bool:
        ...


def build_folder(organization_id: str, owner_type: str) -> str:
    """Folder layout: ``{root}/{organization_id}/{owner_type}``."""
    return f"{settings.STORAGE_ROOT_FOLDER}/{organization_id}/{owner_type.lower()}"


def build_object_key(folder: str, file_name: str) -> str:
    safe_name = file_name.replace("/", "_").strip() or "file"
    return f"{folder}/{uuid.uuid4()}/{safe_name}"


class S3BlobStore:
    """S3 (or S3-compatible) backend. boto3 calls run in a worker thread."""

    def __init__(
        self,
        bucket: Optional[str] = None,
        client=None,
        public_base_url: Optional[str] = None,
        upload_timeout: Optional[float] = None,
        exists_timeout: Optional[float] = None,
        delete_timeout: Optional[float] = None,
    ):
        self.bucket = bucket or settings.S3_BUCKET_NAME
        self.public_base_url = public_base_url if public_base_url is not None else settings.S3_PUBLIC_BASE_URL
        self.upload_timeout = upload_timeout or settings.REMOTE_UPLOAD_TIMEOUT_SECONDS
        self.exists_timeout = exists_timeout or settings.REMOTE_EXISTS_TIMEOUT_SECONDS
        self.delete_timeout = delete_timeout or settings.REMOTE_DELETE_TIMEOUT_SECONDS
        self._client = client

    def _get_s3_client(self):
        """Get S3 client, creating it on first use."""
        if self._client is None:
            options = {
                "region_name": settings.AWS_REGION,
                "config": Config(
                    signature_version="s3v4",
                    connect_timeout=10,
                    read_timeout=int(self.upload_timeout),
                    retries={"max_attempts": 2, "mode": "standard"},
                ),
            }
            if settings.s3_configured:
                options["aws_access_key_id"] = settings.AWS_ACCESS_KEY_ID
                options["aws_secret_access_key"] = settings.AWS_SECRET_ACCESS_KEY
            if settings.S3_ENDPOINT_URL:
                options["endpoint_url"] = settings.S3_ENDPOINT_URL
            self._client = boto3.client("s3", **options)
        return self._client

    def object_url(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url.rstrip('/')}/{key}"
        if settings.S3_ENDPOINT_URL:
            return f"{settings.S3_ENDPOINT_URL.rstrip('/')}/{self.bucket}/{key}"
        return f"https://{self.bucket}.s3.{settings.AWS_REGION}.amazonaws.com/{key}"

    async def _call(self, operation: str, timeout: float, fn, **kwargs):
        start = time.perf_counter()
        outcome = "error"
        try:
            result = await asyncio.wait_for(asyncio.to_thread(fn, **kwargs), timeout=timeout)
            outcome = "success"
            return result
        except asyncio.TimeoutError:
            outcome = "timeout"
            raise RemoteUnavailable(f"S3 {operation} timed out after {timeout:.0f}s", operation=operation)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code in MISSING_OBJECT_CODES:
                outcome = "missing"
            raise
        finally:
            metrics_collector.record_remote_call(operation, outcome, time.perf_counter() - start)

    async def put(self, data: bytes, folder: str, file_name: str, mime_type: str) -> BlobObject:
        key = build_object_key(folder, file_name)
        try:
            await self._call(
                "put",
                self.upload_timeout,
                self._get_s3_client().put_object,
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=mime_type or "application/octet-stream",
            )
        except (ClientError, BotoCoreError) as e:
            raise RemoteUnavailable(f"S3 upload failed: {e}", operation="put") from e

        logger.debug(f"Uploaded {len(data)} bytes to s3://{self.bucket}/{key}")
        return BlobObject(url=self.object_url(key), object_id=key)

    async def exists(self, object_id: str) -> bool:
        try:
            await self._call(
                "exists",
                self.exists_timeout,
                self._get_s3_client().head_object,
                Bucket=self.bucket,
                Key=object_id,
            )
            return True
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code in MISSING_OBJECT_CODES:
                return False
            raise RemoteUnavailable(f"S3 head_object failed: {e}", operation="exists") from e
        except BotoCoreError as e:
            raise RemoteUnavailable(f"S3 head_object failed: {e}", operation="exists") from e

    async def delete(self, object_id: str) -> bool:
        try:
            await self._call(
                "delete",
                self.delete_timeout,
                self._get_s3_client().delete_object,
                Bucket=self.bucket,
                Key=object_id,
            )
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code in MISSING_OBJECT_CODES:
                return True
            raise RemoteUnavailable(f"S3 delete_object failed: {e}", operation="delete") from e
        except BotoCoreError as e:
            raise RemoteUnavailable(f"S3 delete_object failed: {e}", operation="delete") from e
        return True


class InMemoryBlobStore:
    """Process-local backend for development and tests."""

    def __init__(self, base_url: str = "memory://blobs"):
        self.base_url = base_url
        self.objects: Dict[str, Tuple[bytes, str]] = {}

    async def put(self, data: bytes, folder: str, file_name: str, mime_type: str) -> BlobObject:
        key = build_object_key(folder, file_name)
        self.objects[key] = (bytes(data), mime_type)
        return BlobObject(url=f"{self.base_url}/{key}", object_id=key)

    async def exists(self, object_id: str) -> bool:
        return object_id in self.objects

    async def delete(self, object_id: str) -> bool:
        self.objects.pop(object_id, None)
        return True


# Global blob store instance
_blob_store: Optional[BlobStore] = None


def get_blob_store() -> BlobStore:
    """
    Get the configured blob store backend.

    Creates the instance on first use according to ``STORAGE_BACKEND``.
    """
    global _blob_store
    if _blob_store is None:
        backend = settings.STORAGE_BACKEND.lower()
        if backend == "s3":
            _blob_store = S3BlobStore()
        elif backend == "memory":
            logger.warning("Using in-memory blob store; remote objects are not durable")
            _blob_store = InMemoryBlobStore()
        else:
            raise ValueError(f"Unsupported STORAGE_BACKEND: {settings.STORAGE_BACKEND}")
    return _blob_store
