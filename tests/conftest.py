import os
import uuid

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ATTACHMENT_SWEEP_ENABLED", "false")

from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from src.core.attachments.models import Attachment, EntityType
from src.core.attachments.service import AttachmentLifecycle
from src.core.database import get_db
from src.core.database.base import Base
from src.core.storage import get_blob_gateway, quote_key
from src.main import app

TEST_USER_ID = uuid.UUID("6f1c2a3e-8d4b-4c5a-9e7f-0a1b2c3d4e5f")
BUCKET_URL = "https://test-bucket.s3.us-east-1.amazonaws.com"


class FakeClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, start: datetime):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, delta: timedelta) -> None:
        self.current = self.current + delta


class RecordingBlobGateway:
    """Blob gateway that records deleted keys; keys in ``fail_keys`` raise."""

    def __init__(self, fail_keys: set[str] | None = None):
        self.deleted: list[str] = []
        self.fail_keys = fail_keys or set()

    async def delete(self, key: str) -> None:
        if key in self.fail_keys:
            raise ConnectionError(f"blob store refused delete of {key}")
        self.deleted.append(key)

    def public_url(self, key: str) -> str:
        return f"{BUCKET_URL}/{quote_key(key)}"


@pytest.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite so separate sessions see each other's commits."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Get test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def blob_gateway() -> RecordingBlobGateway:
    return RecordingBlobGateway()


@pytest.fixture
def lifecycle(db_session, blob_gateway, clock) -> AttachmentLifecycle:
    return AttachmentLifecycle(db_session, blob_gateway, clock, temp_ttl=timedelta(minutes=60))


@pytest.fixture
def register(lifecycle):
    """Register a TEMP attachment through the lifecycle under test."""
    counter = {"n": 0}

    async def _register(
        entity_type: EntityType = EntityType.BOARD, file_url: str | None = None
    ) -> Attachment:
        counter["n"] += 1
        n = counter["n"]
        return await lifecycle.register_temp(
            entity_type=entity_type,
            file_name=f"file-{n}.jpg",
            file_url=file_url or f"{BUCKET_URL}/{entity_type.value.lower()}/2026/03/file-{n}.jpg",
            file_size=1024 * n,
            content_type="image/jpeg",
            uploaded_by=TEST_USER_ID,
        )

    return _register


@pytest.fixture
async def client(db_session: AsyncSession, blob_gateway) -> AsyncGenerator[AsyncClient, None]:
    """Get test HTTP client with overridden database and storage dependencies."""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_blob_gateway] = lambda: blob_gateway

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client

    app.dependency_overrides.clear()
