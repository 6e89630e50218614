"""Tests for ForwardSyncOrchestrator (orders and abandoned carts -> HubSpot).

Vendor clients are AsyncMock doubles; the audit log is real (file-backed
SQLite) so each test can assert the recorded SyncAttempt.
"""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from src.relay.sync.audit import SyncAuditLog
from src.relay.sync.errors import UpstreamError, ValidationError
from src.relay.sync.forward import ForwardSyncOrchestrator
from src.relay.sync.schemas import SyncStatus, SyncType


ORDER = {
    "id": 12345,
    "total_inc_tax": "99.99",
    "status": "Completed",
    "customer_id": 7,
    "billing_address": {
        "first_name": "Billing",
        "email": "billing@example.com",
        "phone": "555-0199",
    },
}
LINE_ITEMS = [
    {"name": "Blue Widget", "quantity": 2, "price_inc_tax": "19.99"},
    {"name": "Red Gadget", "quantity": 1, "price_inc_tax": "60.01"},
]
CUSTOMER = {"id": 7, "email": "alice@example.com", "first_name": "Alice"}
CART = {
    "id": "abc123",
    "cart_amount": 150.00,
    "customer_id": 0,
    "email": "guest@example.com",
    "line_items": {
        "physical_items": [
            {"name": "Desk Lamp", "quantity": 1, "sale_price": 50.0},
            {"name": "Office Chair", "quantity": 1, "sale_price": 100.0},
        ]
    },
}


def _upstream(operation: str) -> UpstreamError:
    return UpstreamError(
        f"hubspot {operation} failed with HTTP 502",
        service="hubspot",
        operation=operation,
        status_code=502,
    )


@pytest.fixture
def orchestrator(commerce, crm, audit, executor) -> ForwardSyncOrchestrator:
    commerce.get_order.return_value = dict(ORDER)
    commerce.get_order_line_items.return_value = list(LINE_ITEMS)
    commerce.get_customer.return_value = dict(CUSTOMER)
    commerce.get_cart.return_value = dict(CART)
    crm.find_contact_by_email.return_value = None
    crm.create_contact.return_value = {"id": "c1"}
    crm.create_deal.return_value = {"id": "d1"}
    crm.associate_deal_with_contact.return_value = None
    return ForwardSyncOrchestrator(
        commerce,
        crm,
        audit,
        executor,
        order_stage="closedwon",
        abandoned_cart_stage="appointmentscheduled",
        pipeline="default",
    )


class TestSyncOrder:
    async def test_creates_contact_and_deal(self, orchestrator, commerce, crm, audit):
        result = await orchestrator.sync_order(12345)

        assert result.contact_id == "c1"
        assert result.deal_id == "d1"
        assert result.order_id == "12345"

        commerce.get_customer.assert_awaited_once_with("7")
        contact_props = crm.create_contact.await_args.args[0]
        assert contact_props["email"] == "alice@example.com"
        assert contact_props["firstname"] == "Alice"
        assert contact_props["phone"] == "555-0199"

        deal_props = crm.create_deal.await_args.args[0]
        assert deal_props["dealname"] == "Order #12345"
        assert Decimal(deal_props["amount"]) == Decimal("99.99")
        assert deal_props["dealstage"] == "closedwon"
        assert deal_props["pipeline"] == "default"
        assert deal_props["order_id"] == "12345"
        crm.associate_deal_with_contact.assert_awaited_once_with("d1", "c1")

        attempt = await audit.get_log(result.sync_log_id)
        assert attempt.sync_type is SyncType.ORDER
        assert attempt.status is SyncStatus.SUCCESS
        assert attempt.entity_id == "12345"
        assert attempt.response_data == {"contact_id": "c1", "deal_id": "d1"}

    async def test_existing_contact_is_updated(self, orchestrator, crm):
        crm.find_contact_by_email.return_value = {"id": "c9", "properties": {}}

        result = await orchestrator.sync_order("12345")

        assert result.contact_id == "c9"
        crm.update_contact.assert_awaited_once()
        assert crm.update_contact.await_args.args[0] == "c9"
        crm.create_contact.assert_not_awaited()

    async def test_customer_lookup_failure_uses_billing_address(
        self, orchestrator, commerce, crm, recording_sleep
    ):
        commerce.get_customer.side_effect = UpstreamError(
            "bigcommerce get_customer failed with HTTP 500",
            service="bigcommerce",
            operation="get_customer",
            status_code=500,
        )

        result = await orchestrator.sync_order(12345)

        assert result.deal_id == "d1"
        assert commerce.get_customer.await_count == 3
        assert recording_sleep.delays == pytest.approx([1.0, 2.0])
        contact_props = crm.create_contact.await_args.args[0]
        assert contact_props["email"] == "billing@example.com"
        assert contact_props["firstname"] == "Billing"

    async def test_guest_order_skips_customer_lookup(self, orchestrator, commerce):
        commerce.get_order.return_value = {**ORDER, "customer_id": 0}

        await orchestrator.sync_order(12345)

        commerce.get_customer.assert_not_awaited()

    async def test_missing_email_fails_without_retry(self, orchestrator, commerce, crm, audit, recording_sleep):
        commerce.get_order.return_value = {**ORDER, "customer_id": 0, "billing_address": {}}

        with pytest.raises(ValidationError):
            await orchestrator.sync_order(12345)

        crm.find_contact_by_email.assert_not_awaited()
        crm.create_deal.assert_not_awaited()
        assert recording_sleep.delays == []

        [attempt] = await audit.get_logs()
        assert attempt.status is SyncStatus.FAILED
        assert attempt.error_type == "ValidationError"
        assert attempt.error_message == "No email found for customer"

    async def test_exhausted_upstream_error_is_recorded_and_raised(self, orchestrator, crm, audit):
        error = _upstream("create_deal")
        crm.create_deal.side_effect = error

        with pytest.raises(UpstreamError) as exc_info:
            await orchestrator.sync_order(12345)

        assert exc_info.value is error
        assert crm.create_deal.await_count == 3
        crm.associate_deal_with_contact.assert_not_awaited()

        [attempt] = await audit.get_logs()
        assert attempt.status is SyncStatus.FAILED
        assert attempt.attempts == 1
        assert attempt.error_type == "UpstreamError"
        assert attempt.error_message == "hubspot create_deal failed with HTTP 502"

    async def test_contact_upsert_retry_searches_again(self, orchestrator, crm):
        crm.find_contact_by_email.side_effect = [None, {"id": "c2"}]
        crm.create_contact.side_effect = _upstream("create_contact")

        result = await orchestrator.sync_order(12345)

        assert result.contact_id == "c2"
        assert crm.create_contact.await_count == 1
        crm.update_contact.assert_awaited_once()

    async def test_resume_reuses_attempt_id(self, orchestrator, crm, audit):
        crm.create_deal.side_effect = _upstream("create_deal")
        with pytest.raises(UpstreamError):
            await orchestrator.sync_order(12345)
        [failed] = await audit.get_logs()
        assert await audit.requeue(failed.id)

        crm.create_deal.side_effect = None
        result = await orchestrator.sync_order(12345, sync_log_id=failed.id)

        assert result.sync_log_id == failed.id
        [attempt] = await audit.get_logs()
        assert attempt.status is SyncStatus.SUCCESS
        assert attempt.restarts == 1

    async def test_audit_outage_does_not_fail_sync(self, commerce, crm, executor):
        repo = AsyncMock()
        repo.create.side_effect = ConnectionError("database unavailable")
        commerce.get_order.return_value = dict(ORDER)
        commerce.get_order_line_items.return_value = []
        commerce.get_customer.return_value = dict(CUSTOMER)
        crm.find_contact_by_email.return_value = None
        crm.create_contact.return_value = {"id": "c1"}
        crm.create_deal.return_value = {"id": "d1"}
        orchestrator = ForwardSyncOrchestrator(commerce, crm, SyncAuditLog(repo), executor)

        result = await orchestrator.sync_order(12345)

        assert result.sync_log_id is None
        assert result.deal_id == "d1"


class TestSyncAbandonedCart:
    async def test_cart_with_guest_email(self, orchestrator, commerce, crm, audit):
        result = await orchestrator.sync_abandoned_cart("abc123")

        assert result.cart_id == "abc123"
        commerce.get_customer.assert_not_awaited()
        assert crm.create_contact.await_args.args[0]["email"] == "guest@example.com"

        deal_props = crm.create_deal.await_args.args[0]
        assert deal_props["dealname"] == "Abandoned Cart #abc123"
        assert Decimal(deal_props["amount"]) == Decimal("150.00")
        assert deal_props["dealstage"] == "appointmentscheduled"
        assert deal_props["cart_id"] == "abc123"

        attempt = await audit.get_log(result.sync_log_id)
        assert attempt.sync_type is SyncType.ABANDONED_CART
        assert attempt.entity_type == "cart"
        assert attempt.status is SyncStatus.SUCCESS

    async def test_cart_embedded_customer_wins(self, orchestrator, commerce, crm):
        commerce.get_cart.return_value = {**CART, "customer": {"email": "member@example.com"}}

        await orchestrator.sync_abandoned_cart("abc123")

        assert crm.create_contact.await_args.args[0]["email"] == "member@example.com"

    async def test_cart_customer_id_is_looked_up(self, orchestrator, commerce, crm):
        commerce.get_cart.return_value = {**CART, "customer_id": 7}

        await orchestrator.sync_abandoned_cart("abc123")

        commerce.get_customer.assert_awaited_once_with("7")
        assert crm.create_contact.await_args.args[0]["email"] == "alice@example.com"
