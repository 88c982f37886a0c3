"""Shared pytest fixtures for all test suites."""

import asyncio
import os
import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from backend.app.config import Settings
from backend.app.db.context import OrganizationContext
from backend.app.db.models import Base
from backend.app.db.repositories import DeferredRequestRecord
from backend.app.deferred.replay import ReplayResponse
from backend.app.models.common import DeferredStatus, HttpMethod, Priority
from backend.app.utils.clock import utcnow


class FakeReplayer:
    """Replayer double that records calls and returns canned responses."""

    def __init__(
        self,
        status_code: int = 200,
        body: Any = None,
        *,
        delay: float = 0.0,
        error: Exception | None = None,
    ) -> None:
        self.status_code = status_code
        self.body = {"ok": True} if body is None else body
        self.delay = delay
        self.error = error
        self.calls: list[tuple[DeferredRequestRecord, OrganizationContext]] = []

    async def replay(
        self, record: DeferredRequestRecord, ctx: OrganizationContext
    ) -> ReplayResponse:
        self.calls.append((record, ctx))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return ReplayResponse(status_code=self.status_code, body=self.body)


@pytest.fixture
def settings() -> Settings:
    """Settings for tests: in-memory store and lanes, no backoff."""
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        redis_url=None,
        deferred_store_backend="memory",
        deferred_start_workers=False,
        deferred_retry_backoff_seconds=[0.0],
        deferred_rule_cache_ttl_seconds=0,
    )


@pytest.fixture
def org_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def user_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def make_record(
    org_id: uuid.UUID, user_id: uuid.UUID
) -> Callable[..., DeferredRequestRecord]:
    """Factory for pending deferred request records."""

    def _make(**overrides: Any) -> DeferredRequestRecord:
        now: datetime = overrides.pop("now", None) or utcnow()
        fields: dict[str, Any] = {
            "request_id": uuid.uuid4(),
            "org_id": org_id,
            "user_id": user_id,
            "http_method": HttpMethod.POST,
            "endpoint": "api/v1/reports/generate",
            "payload": {"report": "sales"},
            "query_params": {},
            "headers": {"content-type": "application/json"},
            "status": DeferredStatus.pending,
            "priority": Priority.default,
            "timeout_seconds": 300,
            "expires_at": now + timedelta(hours=1),
            "created_at": now,
            "updated_at": now,
        }
        fields.update(overrides)
        return DeferredRequestRecord(**fields)

    return _make


@pytest_asyncio.fixture
async def sqlite_session_factory(
    tmp_path: Path,
) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Session factory over a file-backed SQLite database with all tables."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'deferred.db'}")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(bind=engine, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def postgres_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Create async engine for PostgreSQL integration tests.

    Requires DATABASE_URL to be set to a real PostgreSQL connection string.
    Tests using this fixture should be marked with @pytest.mark.postgres.
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        pytest.skip("DATABASE_URL not set - skipping postgres test")

    if not database_url.startswith(("postgresql://", "postgresql+asyncpg://")):
        pytest.skip(f"DATABASE_URL is not PostgreSQL: {database_url}")

    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)

    engine = create_async_engine(database_url, poolclass=NullPool, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def replayer() -> FakeReplayer:
    """Replayer double returning 200 {"ok": true}; adjust attributes per test."""
    return FakeReplayer()
