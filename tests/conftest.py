"""
Hybrid Attachments Test Configuration

Provides shared fixtures for async testing with:
- In-memory SQLite database
- Test client with database and blob store overrides
- A programmable in-memory blob store that can simulate outages
- Sample data factories for attachments and outbox events
"""
import io
from datetime import datetime
from typing import AsyncGenerator, Optional, Set
import uuid

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from PIL import Image
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from hybrid_attachments.core.database import Base, get_db
from hybrid_attachments.core.errors import RemoteUnavailable
from hybrid_attachments.main import app
from hybrid_attachments.models.attachment import Attachment, AttachmentStatus, BackupKind
from hybrid_attachments.models.outbox import OutboxEvent, OutboxEventType
from hybrid_attachments.services.attachment_service import AttachmentService
from hybrid_attachments.services.blob_store import InMemoryBlobStore, get_blob_store
from hybrid_attachments.services.outbox_processor import OutboxProcessor
from hybrid_attachments.services.outbox_service import OutboxService
from hybrid_attachments.services.preview_service import compress


# Test database URL - SQLite in-memory with async support
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

ORG_ID = "org-test"


class FlakyBlobStore(InMemoryBlobStore):
    """In-memory blob store whose operations can be switched to fail."""

    def __init__(self):
        super().__init__()
        self.fail_put = False
        self.fail_exists = False
        self.fail_delete = False
        # Object ids whose exists() and delete() raise an unexpected error
        self.explode_on: Set[str] = set()
        self.put_calls = 0
        self.exists_calls = 0
        self.delete_calls = 0

    async def put(self, data, folder, file_name, mime_type):
        self.put_calls += 1
        if self.fail_put:
            raise RemoteUnavailable("simulated upload outage")
        return await super().put(data, folder, file_name, mime_type)

    async def exists(self, object_id):
        self.exists_calls += 1
        if object_id in self.explode_on:
            raise RuntimeError(f"unexpected failure for {object_id}")
        if self.fail_exists:
            raise RemoteUnavailable("simulated exists outage")
        return await super().exists(object_id)

    async def delete(self, object_id):
        self.delete_calls += 1
        if object_id in self.explode_on:
            raise RuntimeError(f"unexpected failure for {object_id}")
        if self.fail_delete:
            raise RemoteUnavailable("simulated delete outage")
        return await super().delete(object_id)


@pytest_asyncio.fixture(scope="function")
async def async_engine():
    """Create an async engine for testing with in-memory SQLite."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False}
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(async_engine):
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for each test."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def blob_store() -> FlakyBlobStore:
    return FlakyBlobStore()


@pytest.fixture
def attachment_service(db_session: AsyncSession, blob_store: FlakyBlobStore) -> AttachmentService:
    return AttachmentService(db_session, blob_store)


@pytest.fixture
def processor(db_session: AsyncSession, blob_store: FlakyBlobStore) -> OutboxProcessor:
    return OutboxProcessor(db_session, blob_store)


@pytest_asyncio.fixture(scope="function")
async def client(db_session: AsyncSession, blob_store: FlakyBlobStore) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client with database and blob store overrides."""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_blob_store] = lambda: blob_store

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# -----------------------------------------------------------------------------
# Sample files
# -----------------------------------------------------------------------------

def make_image_bytes(width: int = 800, height: int = 600, fmt: str = "PNG") -> bytes:
    image = Image.new("RGB", (width, height), color=(40, 120, 200))
    output = io.BytesIO()
    image.save(output, format=fmt)
    return output.getvalue()


@pytest.fixture
def png_bytes() -> bytes:
    return make_image_bytes()


@pytest.fixture
def text_bytes() -> bytes:
    """Roughly 1 KB of plain text."""
    return ("Meeting notes: ship the attachment service.\n" * 24).encode()


# -----------------------------------------------------------------------------
# Data Factories
# -----------------------------------------------------------------------------

class AttachmentFactory:
    """Factory for creating attachments directly in a given state."""

    @staticmethod
    async def create(
        db: AsyncSession,
        status: AttachmentStatus = AttachmentStatus.ACTIVE,
        organization_id: str = ORG_ID,
        owner_type: str = "task",
        owner_id: str = "task-1",
        file_name: str = "notes.txt",
        mime_type: str = "text/plain",
        content: bytes = b"hello attachment",
        remote_object_id: Optional[str] = None,
        with_backup: bool = True,
        uploaded_at: datetime = None,
        upload_attempts: int = 0
    ) -> Attachment:
        attachment = Attachment(
            id=str(uuid.uuid4()),
            organization_id=organization_id,
            owner_type=owner_type,
            owner_id=owner_id,
            file_name=file_name,
            mime_type=mime_type,
            file_size=len(content),
            remote_object_id=remote_object_id,
            remote_url=f"memory://blobs/{remote_object_id}" if remote_object_id else None,
            backup_payload=compress(content) if with_backup else None,
            backup_kind=BackupKind.COMPRESSED if with_backup else None,
            backup_available=with_backup,
            status=status,
            upload_attempts=upload_attempts,
            uploaded_at=uploaded_at or datetime.utcnow(),
            deleted_at=datetime.utcnow() if status == AttachmentStatus.DELETED else None,
        )
        db.add(attachment)
        await db.commit()
        return attachment

    @staticmethod
    async def create_remote(
        db: AsyncSession,
        store: InMemoryBlobStore,
        content: bytes = b"hello attachment",
        **kwargs
    ) -> Attachment:
        """Active attachment whose object really exists in ``store``."""
        # Bypass call counters of FlakyBlobStore
        blob = await InMemoryBlobStore.put(
            store, content, f"oneflow/{ORG_ID}/task", kwargs.get("file_name", "notes.txt"), "text/plain"
        )
        return await AttachmentFactory.create(db, content=content, remote_object_id=blob.object_id, **kwargs)


class OutboxEventFactory:
    """Factory for enqueueing outbox events for an attachment."""

    @staticmethod
    async def create(
        db: AsyncSession,
        attachment: Attachment,
        event_type: OutboxEventType,
        attempt: int = 1
    ) -> OutboxEvent:
        event = OutboxService(db).enqueue(event_type, attachment, attempt=attempt)
        await db.commit()
        return event


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

async def reload_attachment(db: AsyncSession, attachment_id: str) -> Attachment:
    result = await db.execute(
        select(Attachment)
        .where(Attachment.id == attachment_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def events_for(db: AsyncSession, attachment_id: str, event_type: OutboxEventType = None):
    events = await OutboxService(db).list_for_entity(attachment_id)
    if event_type is not None:
        events = [e for e in events if e.event_type == event_type]
    return events


def pending(events):
    return [e for e in events if e.processed_at is None and not e.orphaned]
