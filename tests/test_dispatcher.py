"""Tests for SyncDispatcher fire-and-forget dispatch and operator retry."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.relay.sync.dispatcher import SyncDispatcher
from src.relay.sync.forward import ForwardSyncOrchestrator
from src.relay.sync.reverse import ReverseSyncOrchestrator
from src.relay.sync.schemas import (
    SourceEventKind,
    SyncDirection,
    SyncStatus,
    SyncType,
)


@pytest.fixture
def forward() -> AsyncMock:
    return AsyncMock(spec=ForwardSyncOrchestrator)


@pytest.fixture
def reverse() -> AsyncMock:
    mock = AsyncMock(spec=ReverseSyncOrchestrator)
    mock.resolve_conflict = MagicMock()
    return mock


@pytest.fixture
def dispatcher(forward, reverse, audit) -> SyncDispatcher:
    return SyncDispatcher(forward, reverse, audit)


async def _failed_attempt(audit, sync_type, entity_type, entity_id, request_data):
    attempt = await audit.create_log(
        sync_type,
        SyncDirection.SOURCE_TO_TARGET,
        entity_type,
        entity_id,
        request_data=request_data,
    )
    await audit.log_failure(attempt.id, "boom")
    return attempt


class TestInboundEvents:
    async def test_order_event_returns_before_sync_completes(self, dispatcher, forward):
        gate = asyncio.Event()

        async def slow_sync(order_id, **kwargs):
            await gate.wait()

        forward.sync_order.side_effect = slow_sync

        task = dispatcher.handle_source_event("12345", SourceEventKind.ORDER_CREATED)

        assert dispatcher.in_flight == 1
        assert not task.done()
        gate.set()
        await task
        forward.sync_order.assert_awaited_once_with("12345")
        assert dispatcher.in_flight == 0

    async def test_cart_event(self, dispatcher, forward):
        await dispatcher.handle_source_event("abc123", "cart_abandoned")
        forward.sync_abandoned_cart.assert_awaited_once_with("abc123")

    def test_unknown_event_kind(self, dispatcher):
        with pytest.raises(ValueError):
            dispatcher.handle_source_event("1", "order_refunded")

    async def test_background_failure_is_contained(self, dispatcher, forward):
        forward.sync_order.side_effect = RuntimeError("vendor down")

        task = dispatcher.handle_source_event(1, SourceEventKind.ORDER_CREATED)
        await task

        assert task.exception() is None

    async def test_crm_events(self, dispatcher, reverse):
        await dispatcher.handle_contact_change(501)
        await dispatcher.handle_deal_change("901")
        await dispatcher.handle_marketing_preferences("501", 7)

        reverse.sync_contact_to_customer.assert_awaited_once_with("501")
        reverse.sync_deal_to_order_status.assert_awaited_once_with("901")
        reverse.sync_marketing_preferences.assert_awaited_once_with("501", "7")

    async def test_shutdown_waits_for_in_flight(self, dispatcher, forward):
        finished = []

        async def sync(order_id, **kwargs):
            await asyncio.sleep(0)
            finished.append(order_id)

        forward.sync_order.side_effect = sync
        dispatcher.handle_source_event("1", SourceEventKind.ORDER_CREATED)
        dispatcher.handle_source_event("2", SourceEventKind.ORDER_CREATED)

        await dispatcher.shutdown()

        assert sorted(finished) == ["1", "2"]
        assert dispatcher.in_flight == 0


class TestManualRetry:
    async def test_failed_attempt_is_rerun_under_same_id(self, dispatcher, forward, audit):
        attempt = await _failed_attempt(audit, SyncType.ORDER, "order", "12345", {"order_id": "12345"})

        result = await dispatcher.manual_retry(attempt.id)
        await dispatcher.shutdown()

        assert result.requeued is True
        assert result.reason is None
        forward.sync_order.assert_awaited_once_with("12345", sync_log_id=attempt.id)
        assert (await audit.get_log(attempt.id)).status is SyncStatus.RETRYING

    async def test_cart_retry(self, dispatcher, forward, audit):
        attempt = await _failed_attempt(
            audit, SyncType.ABANDONED_CART, "cart", "abc123", {"cart_id": "abc123"}
        )

        await dispatcher.manual_retry(attempt.id)
        await dispatcher.shutdown()

        forward.sync_abandoned_cart.assert_awaited_once_with("abc123", sync_log_id=attempt.id)

    async def test_unknown_id(self, dispatcher):
        result = await dispatcher.manual_retry("missing")
        assert result.requeued is False
        assert result.reason == "not_found"

    async def test_non_failed_attempt_is_rejected(self, dispatcher, forward, audit):
        attempt = await audit.create_log(
            SyncType.ORDER, SyncDirection.SOURCE_TO_TARGET, "order", "1", request_data={"order_id": "1"}
        )

        result = await dispatcher.manual_retry(attempt.id)

        assert result.requeued is False
        assert result.reason == "not_failed"
        assert dispatcher.in_flight == 0

    async def test_second_retry_loses(self, dispatcher, forward, audit):
        attempt = await _failed_attempt(audit, SyncType.ORDER, "order", "1", {"order_id": "1"})

        first = await dispatcher.manual_retry(attempt.id)
        second = await dispatcher.manual_retry(attempt.id)
        await dispatcher.shutdown()

        assert first.requeued is True
        assert second.requeued is False
        assert forward.sync_order.await_count == 1

    async def test_missing_request_data_is_not_replayable(self, dispatcher, audit):
        attempt = await _failed_attempt(audit, SyncType.MARKETING_PREFERENCES, "contact", "501", {"contact_id": "501"})

        result = await dispatcher.manual_retry(attempt.id)

        assert result.reason == "not_replayable"
        assert (await audit.get_log(attempt.id)).status is SyncStatus.FAILED


class TestReporting:
    async def test_delegates_to_audit(self, dispatcher, audit):
        attempt = await _failed_attempt(audit, SyncType.ORDER, "order", "1", {"order_id": "1"})

        assert (await dispatcher.get_log(attempt.id)).id == attempt.id
        assert [log.id for log in await dispatcher.get_logs()] == [attempt.id]
        stats = await dispatcher.get_stats(24)
        assert stats.failed == 1
        assert stats.success_rate == 0.0
