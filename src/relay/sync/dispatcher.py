"""Sync dispatcher -- the engine's entry points for webhooks and operators.

Webhook handlers acknowledge first and hand the event to the dispatcher,
which launches the matching orchestrator run as a background task and
returns immediately. A run's outcome is observable only through the audit
log; background failures are logged here and never surface to the caller.

The dispatcher holds references to in-flight tasks so they are not garbage
collected, and shutdown() waits for them to finish (runs are never
cancelled). Two deliveries for the same entity may run concurrently.
"""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from typing import Any

import structlog

from src.relay.sync.audit import SyncAuditLog
from src.relay.sync.forward import ForwardSyncOrchestrator
from src.relay.sync.reverse import ReverseSyncOrchestrator
from src.relay.sync.schemas import (
    RetryRequestResult,
    SourceEventKind,
    SyncAttempt,
    SyncLogFilter,
    SyncStats,
    SyncStatus,
    SyncType,
)

logger = structlog.get_logger(__name__)

# Parameters each sync type needs from request_data to be re-run
_RERUN_PARAMS: dict[SyncType, tuple[str, ...]] = {
    SyncType.ORDER: ("order_id",),
    SyncType.ABANDONED_CART: ("cart_id",),
    SyncType.CONTACT_TO_CUSTOMER: ("contact_id",),
    SyncType.DEAL_TO_ORDER: ("deal_id",),
    SyncType.MARKETING_PREFERENCES: ("contact_id", "customer_id"),
}


class SyncDispatcher:
    """Launches orchestrator runs as fire-and-forget tasks.

    Args:
        forward: Commerce -> CRM orchestrator.
        reverse: CRM -> commerce orchestrator.
        audit: Audit log, used for retries and reporting.
    """

    def __init__(
        self,
        forward: ForwardSyncOrchestrator,
        reverse: ReverseSyncOrchestrator,
        audit: SyncAuditLog,
    ) -> None:
        self._forward = forward
        self._reverse = reverse
        self._audit = audit
        self._tasks: set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    # ── Task Spawning ───────────────────────────────────────────────────────

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
        task = asyncio.create_task(self._run(coro, name), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @staticmethod
    async def _run(coro: Coroutine[Any, Any, Any], name: str) -> None:
        try:
            await coro
        except Exception as exc:
            # Already recorded as a failed attempt by the orchestrator
            logger.error(
                "dispatch.task_failed",
                task=name,
                error=str(exc),
                error_type=type(exc).__name__,
            )

    # ── Inbound Events ──────────────────────────────────────────────────────

    def handle_source_event(
        self,
        event_id: str | int,
        event_kind: SourceEventKind | str,
    ) -> asyncio.Task:
        """Launch a forward sync for a commerce webhook event.

        Raises:
            ValueError: If ``event_kind`` is not a known SourceEventKind.
        """
        kind = SourceEventKind(event_kind)
        entity_id = str(event_id)
        if kind is SourceEventKind.ORDER_CREATED:
            coro = self._forward.sync_order(entity_id)
        else:
            coro = self._forward.sync_abandoned_cart(entity_id)

        logger.info("dispatch.source_event", event_kind=kind.value, entity_id=entity_id)
        return self._spawn(coro, f"{kind.value}:{entity_id}")

    def handle_contact_change(self, contact_id: str | int) -> asyncio.Task:
        """Launch a contact -> customer sync for a CRM contact change."""
        contact_id = str(contact_id)
        logger.info("dispatch.contact_change", contact_id=contact_id)
        return self._spawn(
            self._reverse.sync_contact_to_customer(contact_id),
            f"contact_to_customer:{contact_id}",
        )

    def handle_deal_change(self, deal_id: str | int) -> asyncio.Task:
        """Launch a deal -> order-status sync for a CRM deal stage change."""
        deal_id = str(deal_id)
        logger.info("dispatch.deal_change", deal_id=deal_id)
        return self._spawn(
            self._reverse.sync_deal_to_order_status(deal_id),
            f"deal_to_order:{deal_id}",
        )

    def handle_marketing_preferences(
        self, contact_id: str | int, customer_id: str | int
    ) -> asyncio.Task:
        contact_id, customer_id = str(contact_id), str(customer_id)
        return self._spawn(
            self._reverse.sync_marketing_preferences(contact_id, customer_id),
            f"marketing_preferences:{contact_id}",
        )

    # ── Operator Retry ──────────────────────────────────────────────────────

    def _rerun(self, attempt: SyncAttempt) -> Coroutine[Any, Any, Any]:
        params = attempt.request_data or {}
        resume = {"sync_log_id": attempt.id}
        if attempt.sync_type is SyncType.ORDER:
            return self._forward.sync_order(params["order_id"], **resume)
        if attempt.sync_type is SyncType.ABANDONED_CART:
            return self._forward.sync_abandoned_cart(params["cart_id"], **resume)
        if attempt.sync_type is SyncType.CONTACT_TO_CUSTOMER:
            return self._reverse.sync_contact_to_customer(params["contact_id"], **resume)
        if attempt.sync_type is SyncType.DEAL_TO_ORDER:
            return self._reverse.sync_deal_to_order_status(params["deal_id"], **resume)
        return self._reverse.sync_marketing_preferences(
            params["contact_id"], params["customer_id"], **resume
        )

    async def manual_retry(self, sync_log_id: str) -> RetryRequestResult:
        """Re-run a failed attempt under its existing id.

        The failed -> retrying transition is a conditional update, so of
        two concurrent retries for the same attempt only one is requeued.

        Returns:
            RetryRequestResult; ``reason`` is ``not_found``, ``not_failed``
            or ``not_replayable`` when nothing was requeued.
        """
        attempt = await self._audit.get_log(sync_log_id)
        if attempt is None:
            return RetryRequestResult(sync_log_id=sync_log_id, requeued=False, reason="not_found")
        if attempt.status is not SyncStatus.FAILED:
            return RetryRequestResult(sync_log_id=sync_log_id, requeued=False, reason="not_failed")

        params = attempt.request_data or {}
        if any(not params.get(key) for key in _RERUN_PARAMS[attempt.sync_type]):
            logger.warning("dispatch.retry_not_replayable", sync_log_id=sync_log_id)
            return RetryRequestResult(
                sync_log_id=sync_log_id, requeued=False, reason="not_replayable"
            )

        if not await self._audit.requeue(sync_log_id):
            return RetryRequestResult(sync_log_id=sync_log_id, requeued=False, reason="not_failed")

        logger.info(
            "dispatch.retry_requeued",
            sync_log_id=sync_log_id,
            sync_type=attempt.sync_type.value,
        )
        self._spawn(self._rerun(attempt), f"retry:{sync_log_id}")
        return RetryRequestResult(sync_log_id=sync_log_id, requeued=True)

    # ── Reporting ───────────────────────────────────────────────────────────

    async def get_stats(self, window_hours: int = 24) -> SyncStats:
        return await self._audit.get_stats(window_hours)

    async def get_logs(
        self,
        filters: SyncLogFilter | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[SyncAttempt]:
        return await self._audit.get_logs(filters, limit=limit, offset=offset)

    async def get_log(self, sync_log_id: str) -> SyncAttempt | None:
        return await self._audit.get_log(sync_log_id)

    # ── Lifecycle ───────────────────────────────────────────────────────────

    async def shutdown(self) -> None:
        """Wait for every in-flight sync to finish."""
        if not self._tasks:
            return
        logger.info("dispatch.draining", in_flight=len(self._tasks))
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
