"""Sync audit log -- the only writer of SyncAttempt records.

SyncAuditLog wraps SyncLogRepository and fails open: any storage error is
logged and swallowed, so an unavailable audit store never aborts the sync
it describes. Writes return None (or no-op) instead of raising; reads
return empty results.

Timestamps are truncated to whole milliseconds before they are stored so
that completed_at - started_at equals duration_ms exactly.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog

from src.relay.core.monitoring import record_sync_outcome
from src.relay.sync.repository import SyncLogRepository
from src.relay.sync.schemas import (
    SyncAttempt,
    SyncDirection,
    SyncLogFilter,
    SyncStats,
    SyncStatus,
    SyncType,
)

logger = structlog.get_logger(__name__)


def utc_now_ms() -> datetime:
    """Current UTC time truncated to millisecond precision."""
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=now.microsecond - now.microsecond % 1000)


class SyncAuditLog:
    """Append-and-update record of every sync attempt.

    Args:
        repository: SyncLogRepository backing the audit table.
        clock: Returns the current time; defaults to millisecond UTC now.
    """

    def __init__(
        self,
        repository: SyncLogRepository,
        clock: Callable[[], datetime] = utc_now_ms,
    ) -> None:
        self._repository = repository
        self._clock = clock

    # ── Writes ──────────────────────────────────────────────────────────────

    async def create_log(
        self,
        sync_type: SyncType,
        direction: SyncDirection,
        entity_type: str,
        entity_id: str,
        *,
        request_data: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> SyncAttempt | None:
        """Create a pending attempt. Returns None if the store is unavailable."""
        try:
            attempt = await self._repository.create(
                sync_type=sync_type,
                direction=direction,
                entity_type=entity_type,
                entity_id=str(entity_id),
                started_at=self._clock(),
                request_data=request_data,
                metadata=metadata,
            )
        except Exception:
            logger.error(
                "audit.create_failed",
                sync_type=sync_type.value,
                entity_type=entity_type,
                entity_id=str(entity_id),
                exc_info=True,
            )
            return None

        logger.debug("audit.created", sync_log_id=attempt.id, sync_type=sync_type.value)
        return attempt

    async def log_success(
        self,
        sync_log_id: str | None,
        response_data: dict[str, Any] | None = None,
    ) -> SyncAttempt | None:
        """Transition pending -> success. No-op for a None or unknown id."""
        if sync_log_id is None:
            return None
        try:
            attempt = await self._repository.complete(
                sync_log_id,
                status=SyncStatus.SUCCESS,
                completed_at=self._clock(),
                response_data=response_data,
            )
        except Exception:
            logger.error("audit.success_write_failed", sync_log_id=sync_log_id, exc_info=True)
            return None

        if attempt is None:
            logger.warning("audit.success_ignored", sync_log_id=sync_log_id)
            return None

        self._record(attempt)
        return attempt

    async def log_failure(
        self,
        sync_log_id: str | None,
        error: BaseException | str,
    ) -> SyncAttempt | None:
        """Transition pending -> failed, storing the error message and type.

        Only the message and the exception class name are stored, never
        the traceback. No-op for a None or unknown id.
        """
        if sync_log_id is None:
            return None

        if isinstance(error, BaseException):
            message = str(error) or type(error).__name__
            error_type = type(error).__name__
        else:
            message, error_type = str(error), None

        try:
            attempt = await self._repository.complete(
                sync_log_id,
                status=SyncStatus.FAILED,
                completed_at=self._clock(),
                error_message=message,
                error_type=error_type,
            )
        except Exception:
            logger.error("audit.failure_write_failed", sync_log_id=sync_log_id, exc_info=True)
            return None

        if attempt is None:
            logger.warning("audit.failure_ignored", sync_log_id=sync_log_id)
            return None

        self._record(attempt)
        return attempt

    async def requeue(self, sync_log_id: str) -> bool:
        """Atomically mark a failed attempt as retrying.

        Returns:
            True if this call won the failed -> retrying transition.
        """
        try:
            return await self._repository.transition(
                sync_log_id,
                from_status=SyncStatus.FAILED,
                to_status=SyncStatus.RETRYING,
            )
        except Exception:
            logger.error("audit.requeue_failed", sync_log_id=sync_log_id, exc_info=True)
            return False

    async def rearm(self, sync_log_id: str | None) -> SyncAttempt | None:
        """Move a retrying attempt back to pending with a fresh started_at."""
        if sync_log_id is None:
            return None
        try:
            attempt = await self._repository.rearm(sync_log_id, started_at=self._clock())
        except Exception:
            logger.error("audit.rearm_failed", sync_log_id=sync_log_id, exc_info=True)
            return None

        if attempt is None:
            logger.warning("audit.rearm_ignored", sync_log_id=sync_log_id)
        return attempt

    async def begin(
        self,
        sync_type: SyncType,
        direction: SyncDirection,
        entity_type: str,
        entity_id: str,
        *,
        request_data: dict[str, Any] | None = None,
        resume_id: str | None = None,
    ) -> str | None:
        """Start auditing a sync run and return the attempt id (or None).

        With ``resume_id`` the existing retrying attempt is re-armed instead
        of allocating a new record.
        """
        if resume_id is not None:
            attempt = await self.rearm(resume_id)
        else:
            attempt = await self.create_log(
                sync_type,
                direction,
                entity_type,
                entity_id,
                request_data=request_data,
            )
        return attempt.id if attempt is not None else None

    # ── Reads ───────────────────────────────────────────────────────────────

    async def get_log(self, sync_log_id: str) -> SyncAttempt | None:
        try:
            return await self._repository.get(sync_log_id)
        except Exception:
            logger.error("audit.read_failed", sync_log_id=sync_log_id, exc_info=True)
            return None

    async def get_logs(
        self,
        filters: SyncLogFilter | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[SyncAttempt]:
        """List attempts newest first. Returns [] if the store is unavailable."""
        try:
            return await self._repository.list_logs(filters, limit=limit, offset=offset)
        except Exception:
            logger.error("audit.list_failed", exc_info=True)
            return []

    async def get_stats(self, window_hours: int = 24) -> SyncStats:
        """Aggregate attempts created within the last ``window_hours``.

        success_rate is successful / total * 100 rounded to 2 decimals,
        or 0 when there are no attempts. ``retrying`` rows count toward
        the total only.
        """
        since = self._clock() - timedelta(hours=window_hours)
        try:
            counts = await self._repository.count_by_status(since)
        except Exception:
            logger.error("audit.stats_failed", window_hours=window_hours, exc_info=True)
            return SyncStats(period_hours=window_hours)

        total = sum(counts.values())
        successful = counts.get(SyncStatus.SUCCESS.value, 0)
        return SyncStats(
            period_hours=window_hours,
            total=total,
            successful=successful,
            failed=counts.get(SyncStatus.FAILED.value, 0),
            pending=counts.get(SyncStatus.PENDING.value, 0),
            success_rate=round(successful / total * 100, 2) if total else 0.0,
        )

    # ── Helpers ─────────────────────────────────────────────────────────────

    @staticmethod
    def _record(attempt: SyncAttempt) -> None:
        duration = attempt.duration_ms / 1000 if attempt.duration_ms is not None else None
        record_sync_outcome(attempt.sync_type.value, attempt.status.value, duration)
