"""Reverse sync orchestrator -- HubSpot changes back into BigCommerce.

Three audited operations driven by CRM change notifications:
- sync_contact_to_customer: copy contact fields onto the matching customer
- sync_deal_to_order_status: translate the deal stage into an order status
- sync_marketing_preferences: copy the two opt-in flags onto a customer

A missing match (no customer for the email, no order id on the deal, a
stage outside the order lifecycle) is a successful no-op, not a failure.

resolve_conflict() is the last-write-wins resolver used when both systems
modified the same entity: the later timestamp wins the whole entity.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog

from src.relay.clients.base import CRMAPI, CommerceAPI
from src.relay.sync.audit import SyncAuditLog
from src.relay.sync.backoff import BackoffExecutor
from src.relay.sync.errors import ValidationError
from src.relay.sync.mapper import (
    deal_order_id,
    map_contact_to_customer,
    map_marketing_preferences,
    parse_timestamp,
)
from src.relay.sync.schemas import (
    ConflictResolution,
    ReverseSyncResult,
    SyncDirection,
    SyncType,
)
from src.relay.sync.stage_mapping import StageMappingTable

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class ReverseSyncOrchestrator:
    """Drives CRM -> commerce syncs and resolves update conflicts.

    Args:
        commerce: Source commerce API (written to here).
        crm: Target CRM API (read from here).
        audit: Audit log recording each attempt.
        executor: Retry wrapper applied to every vendor call.
        stage_mapping: Deal-stage to order-status lookup.
    """

    def __init__(
        self,
        commerce: CommerceAPI,
        crm: CRMAPI,
        audit: SyncAuditLog,
        executor: BackoffExecutor,
        stage_mapping: StageMappingTable,
    ) -> None:
        self._commerce = commerce
        self._crm = crm
        self._audit = audit
        self._executor = executor
        self._stage_mapping = stage_mapping

    async def _call(self, operation: Callable[[], Awaitable[T]], label: str) -> T:
        outcome = await self._executor.execute(operation, label=label)
        return outcome.unwrap()

    async def _fail(self, attempt_id: str | None, event: str, exc: Exception, **context: Any) -> None:
        logger.error(event, error=str(exc), error_type=type(exc).__name__, **context)
        await self._audit.log_failure(attempt_id, exc)

    # ── Contact -> Customer ─────────────────────────────────────────────────

    async def sync_contact_to_customer(
        self,
        contact_id: str,
        *,
        sync_log_id: str | None = None,
    ) -> ReverseSyncResult:
        """Copy HubSpot contact fields onto the BigCommerce customer with the same email."""
        contact_id = str(contact_id)
        attempt_id = await self._audit.begin(
            SyncType.CONTACT_TO_CUSTOMER,
            SyncDirection.TARGET_TO_SOURCE,
            "contact",
            contact_id,
            request_data={"contact_id": contact_id},
            resume_id=sync_log_id,
        )

        try:
            contact = await self._call(
                lambda: self._crm.get_contact(contact_id), f"hubspot.get_contact:{contact_id}"
            )
            patch = map_contact_to_customer(contact)
            if not patch.email:
                raise ValidationError("HubSpot contact has no email", field="email")

            customers = await self._call(
                lambda: self._commerce.search_customers_by_email(patch.email),
                f"bigcommerce.search_customers:{contact_id}",
            )
            if not customers:
                logger.warning("sync.contact_no_matching_customer", contact_id=contact_id)
                await self._audit.log_success(
                    attempt_id, {"message": "No matching customer found"}
                )
                return ReverseSyncResult(sync_log_id=attempt_id, action="no_match")

            customer_id = str(customers[0]["id"])
            await self._call(
                lambda: self._commerce.update_customer(customer_id, patch.to_payload()),
                f"bigcommerce.update_customer:{customer_id}",
            )
        except Exception as exc:
            await self._fail(attempt_id, "sync.contact_to_customer_failed", exc, contact_id=contact_id)
            raise

        await self._audit.log_success(attempt_id, {"customer_id": customer_id})
        logger.info("sync.contact_to_customer_completed", contact_id=contact_id, customer_id=customer_id)
        return ReverseSyncResult(sync_log_id=attempt_id, action="updated", customer_id=customer_id)

    # ── Deal -> Order Status ────────────────────────────────────────────────

    async def sync_deal_to_order_status(
        self,
        deal_id: str,
        *,
        sync_log_id: str | None = None,
    ) -> ReverseSyncResult:
        """Push a HubSpot deal's stage to its BigCommerce order as a status.

        Deals without an ``order_id`` property and stages without a mapped
        status complete successfully without touching BigCommerce.
        """
        deal_id = str(deal_id)
        attempt_id = await self._audit.begin(
            SyncType.DEAL_TO_ORDER,
            SyncDirection.TARGET_TO_SOURCE,
            "deal",
            deal_id,
            request_data={"deal_id": deal_id},
            resume_id=sync_log_id,
        )

        try:
            deal = await self._call(
                lambda: self._crm.get_deal(deal_id), f"hubspot.get_deal:{deal_id}"
            )
            order_id = deal_order_id(deal)
            if order_id is None:
                logger.warning("sync.deal_without_order_id", deal_id=deal_id)
                await self._audit.log_success(attempt_id, {"message": "No order ID in deal"})
                return ReverseSyncResult(sync_log_id=attempt_id, action="no_order_id")

            stage = (deal.get("properties") or {}).get("dealstage")
            order_status = await self._stage_mapping.get_deal_stage_to_order_status(stage)
            if order_status is None:
                logger.warning("sync.deal_stage_unmapped", deal_id=deal_id, dealstage=stage)
                await self._audit.log_success(
                    attempt_id, {"message": "No status mapping for deal stage", "dealstage": stage}
                )
                return ReverseSyncResult(
                    sync_log_id=attempt_id, action="unmapped_stage", order_id=order_id
                )

            await self._call(
                lambda: self._commerce.update_order_status(order_id, order_status),
                f"bigcommerce.update_order_status:{order_id}",
            )
        except Exception as exc:
            await self._fail(attempt_id, "sync.deal_to_order_failed", exc, deal_id=deal_id)
            raise

        await self._audit.log_success(
            attempt_id, {"order_id": order_id, "order_status": order_status}
        )
        logger.info(
            "sync.deal_to_order_completed",
            deal_id=deal_id,
            order_id=order_id,
            order_status=order_status,
        )
        return ReverseSyncResult(
            sync_log_id=attempt_id,
            action="updated",
            order_id=order_id,
            order_status=order_status,
        )

    # ── Marketing Preferences ───────────────────────────────────────────────

    async def sync_marketing_preferences(
        self,
        contact_id: str,
        customer_id: str,
        *,
        sync_log_id: str | None = None,
    ) -> ReverseSyncResult:
        """Copy the contact's email and SMS opt-in flags onto a customer."""
        contact_id, customer_id = str(contact_id), str(customer_id)
        attempt_id = await self._audit.begin(
            SyncType.MARKETING_PREFERENCES,
            SyncDirection.TARGET_TO_SOURCE,
            "contact",
            contact_id,
            request_data={"contact_id": contact_id, "customer_id": customer_id},
            resume_id=sync_log_id,
        )

        try:
            contact = await self._call(
                lambda: self._crm.get_contact(contact_id), f"hubspot.get_contact:{contact_id}"
            )
            preferences = map_marketing_preferences(contact)
            await self._call(
                lambda: self._commerce.update_customer(customer_id, preferences.to_payload()),
                f"bigcommerce.update_customer:{customer_id}",
            )
        except Exception as exc:
            await self._fail(
                attempt_id,
                "sync.marketing_preferences_failed",
                exc,
                contact_id=contact_id,
                customer_id=customer_id,
            )
            raise

        await self._audit.log_success(
            attempt_id,
            {"customer_id": customer_id, "preferences": preferences.model_dump()},
        )
        logger.info(
            "sync.marketing_preferences_completed",
            contact_id=contact_id,
            customer_id=customer_id,
        )
        return ReverseSyncResult(
            sync_log_id=attempt_id,
            action="updated",
            customer_id=customer_id,
            preferences=preferences,
        )

    # ── Conflict Resolution ─────────────────────────────────────────────────

    def resolve_conflict(
        self,
        entity_type: str,
        entity_id: str,
        source_data: dict[str, Any],
        target_data: dict[str, Any],
    ) -> ConflictResolution:
        """Pick the whole-entity winner by last-modified timestamp.

        The source (BigCommerce) timestamp is ``date_modified`` falling back
        to ``date_created``; the target (HubSpot) timestamp is the
        ``hs_lastmodifieddate`` property. The target wins only when both
        timestamps parse and the target's is strictly later.
        """
        source_ts = parse_timestamp(
            source_data.get("date_modified") or source_data.get("date_created")
        )
        target_ts = parse_timestamp(
            (target_data.get("properties") or {}).get("hs_lastmodifieddate")
        )

        if source_ts is not None and target_ts is not None and target_ts > source_ts:
            winner, data = "target", target_data
        else:
            winner, data = "source", source_data

        logger.info(
            "sync.conflict_resolved",
            entity_type=entity_type,
            entity_id=str(entity_id),
            winner=winner,
            source_ts=source_ts.isoformat() if source_ts else None,
            target_ts=target_ts.isoformat() if target_ts else None,
        )
        return ConflictResolution(winner=winner, data=data)
