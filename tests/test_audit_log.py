"""Tests for SyncAuditLog and SyncLogRepository on file-backed SQLite.

Verifies the attempt state machine (pending -> success|failed, failed ->
retrying -> pending), exact durations, listing/stats, and that every
audit method fails open when the store is broken.
"""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from src.relay.sync.audit import SyncAuditLog, utc_now_ms
from src.relay.sync.errors import AuditError, UpstreamError
from src.relay.sync.repository import SyncLogRepository
from src.relay.sync.schemas import (
    SyncDirection,
    SyncLogFilter,
    SyncStatus,
    SyncType,
)


async def _create(audit, entity_id="12345", sync_type=SyncType.ORDER):
    return await audit.create_log(
        sync_type,
        SyncDirection.SOURCE_TO_TARGET,
        "order",
        entity_id,
        request_data={"order_id": entity_id},
    )


class TestStateMachine:
    async def test_create_is_pending(self, audit, clock):
        attempt = await _create(audit)

        assert attempt is not None
        assert attempt.status is SyncStatus.PENDING
        assert attempt.attempts == 0
        assert attempt.started_at == clock.now
        assert attempt.completed_at is None
        assert attempt.request_data == {"order_id": "12345"}

    async def test_success_duration_is_exact(self, audit, clock):
        attempt = await _create(audit)
        clock.advance(milliseconds=1234)

        done = await audit.log_success(attempt.id, {"contact_id": "c1", "deal_id": "d1"})

        assert done.status is SyncStatus.SUCCESS
        assert done.duration_ms == 1234
        assert done.completed_at - done.started_at == timedelta(milliseconds=done.duration_ms)
        assert done.response_data == {"contact_id": "c1", "deal_id": "d1"}

    async def test_failure_records_message_and_type(self, audit, clock):
        attempt = await _create(audit)
        clock.advance(seconds=2)
        error = UpstreamError("hubspot create_deal failed with HTTP 502", service="hubspot", operation="create_deal")

        failed = await audit.log_failure(attempt.id, error)

        assert failed.status is SyncStatus.FAILED
        assert failed.attempts == 1
        assert failed.error_message == "hubspot create_deal failed with HTTP 502"
        assert failed.error_type == "UpstreamError"
        assert failed.duration_ms == 2000

    async def test_empty_message_uses_class_name(self, audit):
        attempt = await _create(audit)
        failed = await audit.log_failure(attempt.id, RuntimeError())
        assert failed.error_message == "RuntimeError"

    async def test_terminal_attempt_is_not_overwritten(self, audit):
        attempt = await _create(audit)
        await audit.log_success(attempt.id)

        assert await audit.log_failure(attempt.id, "late failure") is None
        stored = await audit.get_log(attempt.id)
        assert stored.status is SyncStatus.SUCCESS
        assert stored.error_message is None

    async def test_none_and_unknown_ids_are_noops(self, audit):
        assert await audit.log_success(None) is None
        assert await audit.log_failure(None, "x") is None
        assert await audit.log_success("does-not-exist") is None

    async def test_requeue_and_rearm_keep_id(self, audit, clock):
        attempt = await _create(audit)
        await audit.log_failure(attempt.id, "boom")

        assert await audit.requeue(attempt.id) is True
        assert await audit.requeue(attempt.id) is False
        assert (await audit.get_log(attempt.id)).status is SyncStatus.RETRYING

        clock.advance(minutes=5)
        rearmed_id = await audit.begin(
            SyncType.ORDER,
            SyncDirection.SOURCE_TO_TARGET,
            "order",
            "12345",
            resume_id=attempt.id,
        )
        assert rearmed_id == attempt.id

        rearmed = await audit.get_log(attempt.id)
        assert rearmed.status is SyncStatus.PENDING
        assert rearmed.restarts == 1
        assert rearmed.attempts == 1
        assert rearmed.error_message is None
        assert rearmed.completed_at is None
        assert rearmed.started_at == clock.now

        clock.advance(milliseconds=10)
        done = await audit.log_success(attempt.id)
        assert done.duration_ms == 10

    async def test_requeue_requires_failed(self, audit):
        attempt = await _create(audit)
        assert await audit.requeue(attempt.id) is False

    async def test_rearm_requires_retrying(self, audit):
        attempt = await _create(audit)
        assert await audit.rearm(attempt.id) is None


class TestReporting:
    async def test_logs_newest_first_and_filtered(self, audit, clock):
        first = await _create(audit, "1")
        clock.advance(seconds=1)
        second = await _create(audit, "2")
        clock.advance(seconds=1)
        cart = await audit.create_log(
            SyncType.ABANDONED_CART,
            SyncDirection.SOURCE_TO_TARGET,
            "cart",
            "abc",
        )
        await audit.log_failure(second.id, "boom")

        logs = await audit.get_logs()
        assert [log.id for log in logs] == [cart.id, second.id, first.id]

        failed = await audit.get_logs(SyncLogFilter(status=SyncStatus.FAILED))
        assert [log.id for log in failed] == [second.id]

        carts = await audit.get_logs(SyncLogFilter(entity_type="cart"))
        assert [log.id for log in carts] == [cart.id]

        paged = await audit.get_logs(limit=1, offset=1)
        assert [log.id for log in paged] == [second.id]

    async def test_stats(self, audit, clock):
        ok = await _create(audit, "1")
        bad = await _create(audit, "2")
        await _create(audit, "3")
        await audit.log_success(ok.id)
        await audit.log_failure(bad.id, "boom")

        stats = await audit.get_stats(24)

        assert stats.period_hours == 24
        assert stats.total == 3
        assert stats.successful == 1
        assert stats.failed == 1
        assert stats.pending == 1
        assert stats.success_rate == 33.33

    async def test_stats_window_excludes_old_attempts(self, audit, clock):
        await _create(audit, "old")
        clock.advance(hours=30)

        stats = await audit.get_stats(24)
        assert stats.total == 0
        assert stats.success_rate == 0.0


class TestFailOpen:
    def _broken_audit(self) -> SyncAuditLog:
        repo = AsyncMock()
        for name in ("create", "get", "complete", "list_logs", "count_by_status", "transition", "rearm"):
            getattr(repo, name).side_effect = ConnectionError("database unavailable")
        return SyncAuditLog(repo)

    async def test_writes_swallow_storage_errors(self):
        audit = self._broken_audit()

        assert await _create(audit) is None
        assert await audit.log_success("x") is None
        assert await audit.log_failure("x", "boom") is None
        assert await audit.requeue("x") is False
        assert await audit.rearm("x") is None
        assert await audit.begin(
            SyncType.ORDER, SyncDirection.SOURCE_TO_TARGET, "order", "1"
        ) is None

    async def test_reads_return_empty(self):
        audit = self._broken_audit()

        assert await audit.get_log("x") is None
        assert await audit.get_logs() == []
        stats = await audit.get_stats(12)
        assert stats.total == 0
        assert stats.period_hours == 12


class TestRepositoryWithoutSession:
    async def test_create_raises_audit_error(self):
        async def _empty_factory():
            return
            yield

        repo = SyncLogRepository(_empty_factory)
        with pytest.raises(AuditError):
            await repo.create(
                sync_type=SyncType.ORDER,
                direction=SyncDirection.SOURCE_TO_TARGET,
                entity_type="order",
                entity_id="1",
                started_at=utc_now_ms(),
            )

        assert await _create(SyncAuditLog(repo)) is None


class TestSessionLifecycle:
    async def test_session_closed_before_each_call_returns(self, engine):
        events: list[str] = []

        async def _tracking_factory():
            async with AsyncSession(engine, expire_on_commit=False) as session:
                events.append("open")
                try:
                    yield session
                finally:
                    events.append("closed")

        repo = SyncLogRepository(_tracking_factory)
        attempt = await repo.create(
            sync_type=SyncType.ORDER,
            direction=SyncDirection.SOURCE_TO_TARGET,
            entity_type="order",
            entity_id="1",
            started_at=utc_now_ms(),
        )
        assert events == ["open", "closed"]

        await repo.complete(attempt.id, status=SyncStatus.FAILED, completed_at=utc_now_ms())
        assert await repo.transition(
            attempt.id, from_status=SyncStatus.FAILED, to_status=SyncStatus.RETRYING
        )
        assert events == ["open", "closed"] * 3

        assert (await repo.get(attempt.id)).status is SyncStatus.RETRYING

    async def test_error_inside_call_still_closes_session(self):
        events: list[str] = []

        class _BrokenSession:
            async def get(self, *args, **kwargs):
                raise ConnectionError("database unavailable")

        async def _broken_factory():
            try:
                yield _BrokenSession()
            finally:
                events.append("closed")

        repo = SyncLogRepository(_broken_factory)
        with pytest.raises(ConnectionError):
            await repo.get("x")
        assert events == ["closed"]


def test_utc_now_ms_truncates_microseconds():
    now = utc_now_ms()
    assert now.microsecond % 1000 == 0
    assert now.tzinfo is not None
