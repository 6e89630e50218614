"""Sync persistence repositories -- async access to sync_logs and configurations.

Provides SyncLogRepository and ConfigurationRepository with the
session_factory callable pattern. Both return Pydantic schemas, never ORM
instances, and raise SQLAlchemy errors unchanged (AuditError when the
session factory yields nothing); containment of storage failures is the
caller's concern (SyncAuditLog, StageMappingTable).

State transitions that must not race (failed -> retrying, retrying ->
pending) are single conditional UPDATE statements keyed on the current
status, so only one caller can win.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, AsyncIterator, Callable
from contextlib import aclosing, asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.relay.sync.errors import AuditError
from src.relay.sync.models import ConfigurationModel, SyncLogModel
from src.relay.sync.schemas import (
    ConfigurationEntry,
    SyncAttempt,
    SyncDirection,
    SyncLogFilter,
    SyncStatus,
    SyncType,
)

logger = structlog.get_logger(__name__)

SessionFactory = Callable[..., AsyncGenerator[AsyncSession, None]]


@asynccontextmanager
async def _session_scope(session_factory: SessionFactory) -> AsyncIterator[AsyncSession]:
    """Take one session from the factory and close the factory on exit.

    The factory generator is finalized before this block returns, so the
    session is closed (and its connection released) deterministically.
    """
    async with aclosing(session_factory()) as sessions:
        async for session in sessions:
            yield session
            return
    raise AuditError("Session factory yielded no session")


# ── Serialization Helpers ───────────────────────────────────────────────────


def _aware(value: datetime | None) -> datetime | None:
    """SQLite returns naive datetimes; everything stored is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _model_to_attempt(model: SyncLogModel) -> SyncAttempt:
    """Convert SyncLogModel to SyncAttempt schema."""
    return SyncAttempt(
        id=model.id,
        sync_type=SyncType(model.sync_type),
        direction=SyncDirection(model.direction),
        entity_type=model.entity_type,
        entity_id=model.entity_id,
        status=SyncStatus(model.status),
        attempts=model.attempts or 0,
        restarts=model.restarts or 0,
        request_data=model.request_data,
        response_data=model.response_data,
        error_message=model.error_message,
        error_type=model.error_type,
        metadata=model.metadata_json or {},
        started_at=_aware(model.started_at),
        completed_at=_aware(model.completed_at),
        duration_ms=model.duration_ms,
        created_at=_aware(model.created_at),
        updated_at=_aware(model.updated_at),
    )


def _model_to_entry(model: ConfigurationModel) -> ConfigurationEntry:
    return ConfigurationEntry(
        key=model.key,
        value=model.value,
        value_type=model.value_type,
        category=model.category,
        description=model.description,
        version=model.version,
        updated_at=_aware(model.updated_at),
    )


# ── Sync Log Repository ─────────────────────────────────────────────────────


class SyncLogRepository:
    """Async CRUD for sync attempt audit rows.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def create(
        self,
        *,
        sync_type: SyncType,
        direction: SyncDirection,
        entity_type: str,
        entity_id: str,
        started_at: datetime,
        request_data: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> SyncAttempt:
        """Insert a pending sync attempt and return it."""
        async with _session_scope(self._session_factory) as session:
            model = SyncLogModel(
                sync_type=sync_type.value,
                direction=direction.value,
                entity_type=entity_type,
                entity_id=entity_id,
                status=SyncStatus.PENDING.value,
                attempts=0,
                restarts=0,
                request_data=request_data,
                metadata_json=metadata or {},
                started_at=started_at,
                created_at=started_at,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_attempt(model)

    async def get(self, sync_log_id: str) -> SyncAttempt | None:
        async with _session_scope(self._session_factory) as session:
            model = await session.get(SyncLogModel, sync_log_id)
            if model is None:
                return None
            return _model_to_attempt(model)

    async def complete(
        self,
        sync_log_id: str,
        *,
        status: SyncStatus,
        completed_at: datetime,
        response_data: dict[str, Any] | None = None,
        error_message: str | None = None,
        error_type: str | None = None,
    ) -> SyncAttempt | None:
        """Move a pending attempt to a terminal status.

        Stamps completed_at and duration_ms (completed_at - started_at in
        whole milliseconds). A failure also increments ``attempts``.

        Returns:
            The updated SyncAttempt, or None if the id is unknown or the
            attempt is not pending.
        """
        async with _session_scope(self._session_factory) as session:
            model = await session.get(SyncLogModel, sync_log_id)
            if model is None or model.status != SyncStatus.PENDING.value:
                return None

            started_at = _aware(model.started_at)
            elapsed = completed_at - started_at
            model.status = status.value
            model.completed_at = completed_at
            model.duration_ms = elapsed // timedelta(milliseconds=1)
            if status == SyncStatus.FAILED:
                model.attempts = (model.attempts or 0) + 1
                model.error_message = error_message
                model.error_type = error_type
            else:
                model.response_data = response_data
                model.error_message = None
                model.error_type = None

            await session.commit()
            await session.refresh(model)
            return _model_to_attempt(model)

    async def list_logs(
        self,
        filters: SyncLogFilter | None = None,
        *,
        limit: int = 100,
        offset: int = 0,
    ) -> list[SyncAttempt]:
        """List attempts newest first, optionally filtered."""
        async with _session_scope(self._session_factory) as session:
            stmt = select(SyncLogModel)
            if filters is not None:
                if filters.status is not None:
                    stmt = stmt.where(SyncLogModel.status == filters.status.value)
                if filters.entity_type is not None:
                    stmt = stmt.where(SyncLogModel.entity_type == filters.entity_type)
                if filters.sync_type is not None:
                    stmt = stmt.where(SyncLogModel.sync_type == filters.sync_type.value)
            stmt = (
                stmt.order_by(SyncLogModel.created_at.desc(), SyncLogModel.id.desc())
                .limit(limit)
                .offset(offset)
            )
            result = await session.execute(stmt)
            return [_model_to_attempt(m) for m in result.scalars().all()]

    async def count_by_status(self, since: datetime) -> dict[str, int]:
        """Count attempts created at or after ``since``, grouped by status."""
        async with _session_scope(self._session_factory) as session:
            stmt = (
                select(SyncLogModel.status, func.count(SyncLogModel.id))
                .where(SyncLogModel.created_at >= since)
                .group_by(SyncLogModel.status)
            )
            result = await session.execute(stmt)
            return {status: count for status, count in result.all()}

    async def transition(
        self,
        sync_log_id: str,
        *,
        from_status: SyncStatus,
        to_status: SyncStatus,
    ) -> bool:
        """Conditionally move an attempt between statuses.

        Returns:
            True if this call performed the transition.
        """
        async with _session_scope(self._session_factory) as session:
            stmt = (
                update(SyncLogModel)
                .where(
                    SyncLogModel.id == sync_log_id,
                    SyncLogModel.status == from_status.value,
                )
                .values(status=to_status.value)
            )
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount == 1

    async def rearm(self, sync_log_id: str, *, started_at: datetime) -> SyncAttempt | None:
        """Re-arm a retrying attempt back to pending for a fresh run.

        Clears completion and error fields, stamps a new started_at and
        increments ``restarts``. The id is unchanged.

        Returns:
            The re-armed SyncAttempt, or None if it was not retrying.
        """
        async with _session_scope(self._session_factory) as session:
            stmt = (
                update(SyncLogModel)
                .where(
                    SyncLogModel.id == sync_log_id,
                    SyncLogModel.status == SyncStatus.RETRYING.value,
                )
                .values(
                    status=SyncStatus.PENDING.value,
                    started_at=started_at,
                    restarts=SyncLogModel.restarts + 1,
                    completed_at=None,
                    duration_ms=None,
                    error_message=None,
                    error_type=None,
                    response_data=None,
                )
            )
            result = await session.execute(stmt)
            await session.commit()
            if result.rowcount != 1:
                return None

            model = await session.get(SyncLogModel, sync_log_id, populate_existing=True)
            return _model_to_attempt(model) if model is not None else None


# ── Configuration Repository ────────────────────────────────────────────────


class ConfigurationRepository:
    """Key/value access to the configurations table.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def get(self, key: str) -> ConfigurationEntry | None:
        async with _session_scope(self._session_factory) as session:
            stmt = select(ConfigurationModel).where(ConfigurationModel.key == key)
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_entry(model)

    async def upsert(
        self,
        key: str,
        value: str,
        *,
        value_type: str = "json",
        category: str | None = None,
        description: str | None = None,
    ) -> ConfigurationEntry:
        """Insert or replace a value, bumping its version on update."""
        async with _session_scope(self._session_factory) as session:
            stmt = select(ConfigurationModel).where(ConfigurationModel.key == key)
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                model = ConfigurationModel(
                    key=key,
                    value=value,
                    value_type=value_type,
                    category=category,
                    description=description,
                    version=1,
                )
                session.add(model)
            else:
                model.value = value
                model.value_type = value_type
                if category is not None:
                    model.category = category
                if description is not None:
                    model.description = description
                model.version = (model.version or 0) + 1

            await session.commit()
            await session.refresh(model)
            logger.info("configuration.upserted", key=key, version=model.version)
            return _model_to_entry(model)
