"""Shared fixtures for sync engine tests.

Provides:
- A file-backed SQLite engine (aiosqlite, per-test tmp_path) with relay tables created
- A session_factory matching the repositories' async-generator contract
- Repositories, a SyncAuditLog with a controllable clock, and a StageMappingTable
- A BackoffExecutor that records delays instead of sleeping
- AsyncMock CommerceAPI / CRMAPI doubles
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine

from src.relay.clients.base import CRMAPI, CommerceAPI
from src.relay.core.database import Base
from src.relay.sync import models  # noqa: F401
from src.relay.sync.audit import SyncAuditLog
from src.relay.sync.backoff import BackoffExecutor
from src.relay.sync.repository import ConfigurationRepository, SyncLogRepository
from src.relay.sync.stage_mapping import StageMappingTable


class FakeClock:
    """Millisecond-precision clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 15, 10, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now = self.now + timedelta(**delta)


class RecordingSleep:
    """Async sleep replacement that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


# ── Database ─────────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def engine(tmp_path):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'relay.db'}")
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    async def _factory() -> AsyncGenerator[AsyncSession, None]:
        async with AsyncSession(engine, expire_on_commit=False) as session:
            yield session

    return _factory


@pytest.fixture
def sync_log_repository(session_factory) -> SyncLogRepository:
    return SyncLogRepository(session_factory)


@pytest.fixture
def config_repository(session_factory) -> ConfigurationRepository:
    return ConfigurationRepository(session_factory)


# ── Engine Components ────────────────────────────────────────────────────────


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def audit(sync_log_repository, clock) -> SyncAuditLog:
    return SyncAuditLog(sync_log_repository, clock=clock)


@pytest.fixture
def stage_mapping(config_repository) -> StageMappingTable:
    return StageMappingTable(config_repository)


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def executor(recording_sleep) -> BackoffExecutor:
    return BackoffExecutor(max_attempts=3, initial_delay=1.0, sleep=recording_sleep)


# ── Vendor Doubles ───────────────────────────────────────────────────────────


@pytest.fixture
def commerce() -> AsyncMock:
    client = AsyncMock(spec=CommerceAPI)
    client.verify_webhook_signature = MagicMock(return_value=True)
    return client


@pytest.fixture
def crm() -> AsyncMock:
    return AsyncMock(spec=CRMAPI)
