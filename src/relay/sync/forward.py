"""Forward sync orchestrator -- BigCommerce orders and carts into HubSpot.

Each run walks the same pipeline, one vendor call at a time:

    audit pending -> fetch source -> map contact -> upsert contact
    -> map deal -> create deal -> associate -> audit success

Every vendor call goes through the BackoffExecutor. Any failure records the
attempt as failed and re-raises to the caller. Only the customer lookup is
tolerated: the contact then falls back to the billing address.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog

from src.relay.clients.base import CRMAPI, CommerceAPI
from src.relay.sync.audit import SyncAuditLog
from src.relay.sync.backoff import BackoffExecutor
from src.relay.sync.errors import UpstreamError, ValidationError
from src.relay.sync.mapper import (
    DEFAULT_ABANDONED_CART_STAGE,
    DEFAULT_ORDER_STAGE,
    map_cart_to_deal,
    map_customer_to_contact,
    map_order_to_deal,
)
from src.relay.sync.schemas import (
    ForwardSyncResult,
    MappedContact,
    MappedDeal,
    SyncDirection,
    SyncType,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def _positive_id(value: Any) -> str | None:
    """Return the id as a string if it is a positive integer (guests use 0)."""
    try:
        return str(int(value)) if int(value) > 0 else None
    except (TypeError, ValueError):
        return None


def _object_id(obj: Any, operation: str) -> str:
    if isinstance(obj, dict) and obj.get("id") is not None:
        return str(obj["id"])
    raise UpstreamError(
        f"hubspot {operation} returned no id",
        service="hubspot",
        operation=operation,
    )


class ForwardSyncOrchestrator:
    """Drives commerce -> CRM syncs for orders and abandoned carts.

    Args:
        commerce: Source commerce API.
        crm: Target CRM API.
        audit: Audit log recording each attempt.
        executor: Retry wrapper applied to every vendor call.
        order_stage: HubSpot stage for order deals.
        abandoned_cart_stage: HubSpot stage for abandoned-cart deals.
        pipeline: HubSpot pipeline stamped on created deals.
    """

    def __init__(
        self,
        commerce: CommerceAPI,
        crm: CRMAPI,
        audit: SyncAuditLog,
        executor: BackoffExecutor,
        *,
        order_stage: str = DEFAULT_ORDER_STAGE,
        abandoned_cart_stage: str = DEFAULT_ABANDONED_CART_STAGE,
        pipeline: str | None = None,
    ) -> None:
        self._commerce = commerce
        self._crm = crm
        self._audit = audit
        self._executor = executor
        self._order_stage = order_stage
        self._cart_stage = abandoned_cart_stage
        self._pipeline = pipeline

    async def _call(self, operation: Callable[[], Awaitable[T]], label: str) -> T:
        outcome = await self._executor.execute(operation, label=label)
        return outcome.unwrap()

    # ── Orders ──────────────────────────────────────────────────────────────

    async def sync_order(
        self,
        order_id: str | int,
        *,
        sync_log_id: str | None = None,
    ) -> ForwardSyncResult:
        """Sync one BigCommerce order into a HubSpot contact + deal.

        Args:
            order_id: BigCommerce order id.
            sync_log_id: Existing retrying attempt to re-run, if any.

        Returns:
            ForwardSyncResult with the contact and deal ids.

        Raises:
            ValidationError: No email could be resolved for the customer.
            UpstreamError: A vendor call failed after exhausting retries.
        """
        order_id = str(order_id)
        logger.info("sync.order_started", order_id=order_id, resumed=sync_log_id is not None)
        attempt_id = await self._audit.begin(
            SyncType.ORDER,
            SyncDirection.SOURCE_TO_TARGET,
            "order",
            order_id,
            request_data={"order_id": order_id},
            resume_id=sync_log_id,
        )

        try:
            order = await self._call(
                lambda: self._commerce.get_order(order_id), f"bigcommerce.get_order:{order_id}"
            )
            line_items = await self._call(
                lambda: self._commerce.get_order_line_items(order_id),
                f"bigcommerce.get_order_line_items:{order_id}",
            )
            customer = await self._lookup_customer(order.get("customer_id"))

            contact = map_customer_to_contact(customer, order.get("billing_address"))
            contact_id = await self._upsert_contact(contact, "order", order_id)

            deal = map_order_to_deal(
                order,
                line_items,
                dealstage=self._order_stage,
                pipeline=self._pipeline,
            )
            deal_id = await self._create_and_associate(deal, contact_id)
        except Exception as exc:
            logger.error(
                "sync.order_failed",
                order_id=order_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            await self._audit.log_failure(attempt_id, exc)
            raise

        await self._audit.log_success(attempt_id, {"contact_id": contact_id, "deal_id": deal_id})
        logger.info(
            "sync.order_completed",
            order_id=order_id,
            contact_id=contact_id,
            deal_id=deal_id,
        )
        return ForwardSyncResult(
            sync_log_id=attempt_id,
            contact_id=contact_id,
            deal_id=deal_id,
            order_id=order_id,
        )

    # ── Abandoned Carts ─────────────────────────────────────────────────────

    async def sync_abandoned_cart(
        self,
        cart_id: str,
        *,
        sync_log_id: str | None = None,
    ) -> ForwardSyncResult:
        """Sync one abandoned BigCommerce cart into a HubSpot contact + deal.

        The email falls back to the cart's own ``email`` when neither the
        customer nor the billing address carries one.
        """
        cart_id = str(cart_id)
        logger.info("sync.cart_started", cart_id=cart_id, resumed=sync_log_id is not None)
        attempt_id = await self._audit.begin(
            SyncType.ABANDONED_CART,
            SyncDirection.SOURCE_TO_TARGET,
            "cart",
            cart_id,
            request_data={"cart_id": cart_id},
            resume_id=sync_log_id,
        )

        try:
            cart = await self._call(
                lambda: self._commerce.get_cart(cart_id), f"bigcommerce.get_cart:{cart_id}"
            )
            customer = cart.get("customer") or await self._lookup_customer(cart.get("customer_id"))

            contact = map_customer_to_contact(customer, cart.get("billing_address"))
            if not contact.email and cart.get("email"):
                contact = contact.model_copy(update={"email": cart["email"]})
            contact_id = await self._upsert_contact(contact, "cart", cart_id)

            deal = map_cart_to_deal(cart, dealstage=self._cart_stage, pipeline=self._pipeline)
            deal_id = await self._create_and_associate(deal, contact_id)
        except Exception as exc:
            logger.error(
                "sync.cart_failed",
                cart_id=cart_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            await self._audit.log_failure(attempt_id, exc)
            raise

        await self._audit.log_success(attempt_id, {"contact_id": contact_id, "deal_id": deal_id})
        logger.info("sync.cart_completed", cart_id=cart_id, contact_id=contact_id, deal_id=deal_id)
        return ForwardSyncResult(
            sync_log_id=attempt_id,
            contact_id=contact_id,
            deal_id=deal_id,
            cart_id=cart_id,
        )

    # ── Pipeline Steps ──────────────────────────────────────────────────────

    async def _lookup_customer(self, customer_id: Any) -> dict[str, Any]:
        """Fetch the customer if referenced. Failure yields an empty customer."""
        resolved = _positive_id(customer_id)
        if resolved is None:
            return {}

        outcome = await self._executor.execute(
            lambda: self._commerce.get_customer(resolved),
            label=f"bigcommerce.get_customer:{resolved}",
        )
        if not outcome.ok:
            logger.warning(
                "sync.customer_lookup_failed",
                customer_id=resolved,
                error=str(outcome.error),
            )
            return {}
        return outcome.value or {}

    async def _upsert_contact(self, contact: MappedContact, entity_type: str, entity_id: str) -> str:
        """Create or update the HubSpot contact keyed by email.

        Search and write run as one retried unit, so a retry re-searches
        before writing and never creates a second contact.
        """
        if not contact.email:
            logger.warning("sync.contact_missing_email", entity_type=entity_type, entity_id=entity_id)
            raise ValidationError("No email found for customer", field="email")

        email = contact.email
        properties = contact.to_properties()

        async def _upsert() -> str:
            existing = await self._crm.find_contact_by_email(email)
            if existing:
                existing_id = _object_id(existing, "find_contact_by_email")
                await self._crm.update_contact(existing_id, properties)
                return existing_id
            created = await self._crm.create_contact(properties)
            return _object_id(created, "create_contact")

        return await self._call(_upsert, f"hubspot.upsert_contact:{entity_type}:{entity_id}")

    async def _create_and_associate(self, deal: MappedDeal, contact_id: str) -> str:
        label = deal.dealname
        created = await self._call(
            lambda: self._crm.create_deal(deal.to_properties()),
            f"hubspot.create_deal:{label}",
        )
        deal_id = _object_id(created, "create_deal")
        await self._call(
            lambda: self._crm.associate_deal_with_contact(deal_id, contact_id),
            f"hubspot.associate:{deal_id}:{contact_id}",
        )
        return deal_id
