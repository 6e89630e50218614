"""Async BigCommerce REST client implementing CommerceAPI.

Orders and customers use the v2 API; carts use v3 (whose responses are
wrapped in a ``data`` envelope). Every method makes exactly one request;
retries happen in the BackoffExecutor around each call.
"""

from __future__ import annotations

import hashlib
import hmac
from typing import Any

import httpx
import structlog

from src.relay.clients.base import CommerceAPI, json_body, send

logger = structlog.get_logger(__name__)

SERVICE = "bigcommerce"

# BigCommerce order status ids by status name
ORDER_STATUS_IDS: dict[str, int] = {
    "Incomplete": 0,
    "Pending": 1,
    "Shipped": 2,
    "Partially Shipped": 3,
    "Refunded": 4,
    "Cancelled": 5,
    "Declined": 6,
    "Awaiting Payment": 7,
    "Awaiting Pickup": 8,
    "Awaiting Shipment": 9,
    "Completed": 10,
    "Awaiting Fulfillment": 11,
    "Manual Verification Required": 12,
    "Disputed": 13,
    "Partially Refunded": 14,
}
DEFAULT_STATUS_ID = ORDER_STATUS_IDS["Pending"]


def status_id_for(status_name: str) -> int:
    """Resolve a status name to its BigCommerce id (Pending if unknown)."""
    return ORDER_STATUS_IDS.get(status_name, DEFAULT_STATUS_ID)


class BigCommerceClient(CommerceAPI):
    """BigCommerce store API client.

    Args:
        store_hash: Store identifier from the API path.
        access_token: API account token sent as X-Auth-Token.
        webhook_secret: Shared HMAC secret for webhook verification.
            Empty disables verification (logged as a warning).
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (tests use httpx.MockTransport).
    """

    BASE_URL = "https://api.bigcommerce.com/stores"

    def __init__(
        self,
        store_hash: str,
        access_token: str,
        webhook_secret: str = "",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._webhook_secret = webhook_secret
        self._client = httpx.AsyncClient(
            base_url=f"{self.BASE_URL}/{store_hash}",
            headers={
                "X-Auth-Token": access_token,
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings) -> BigCommerceClient:
        return cls(
            store_hash=settings.BIGCOMMERCE_STORE_HASH,
            access_token=settings.BIGCOMMERCE_ACCESS_TOKEN,
            webhook_secret=settings.WEBHOOK_SECRET,
            timeout=settings.HTTP_TIMEOUT,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _call(self, operation: str, method: str, url: str, **kwargs: Any) -> Any:
        response = await send(
            self._client,
            service=SERVICE,
            operation=operation,
            method=method,
            url=url,
            **kwargs,
        )
        return json_body(response)

    # ── Orders ──────────────────────────────────────────────────────────────

    async def get_order(self, order_id: str) -> dict[str, Any]:
        logger.info("bigcommerce.get_order", order_id=order_id)
        return await self._call("get_order", "GET", f"/v2/orders/{order_id}") or {}

    async def get_order_line_items(self, order_id: str) -> list[dict[str, Any]]:
        logger.info("bigcommerce.get_order_products", order_id=order_id)
        return await self._call(
            "get_order_line_items", "GET", f"/v2/orders/{order_id}/products"
        ) or []

    async def update_order_status(self, order_id: str, status: str) -> dict[str, Any]:
        """Set the order status by name; unknown names map to Pending."""
        status_id = status_id_for(status)
        logger.info(
            "bigcommerce.update_order_status",
            order_id=order_id,
            status=status,
            status_id=status_id,
        )
        return await self._call(
            "update_order_status",
            "PUT",
            f"/v2/orders/{order_id}",
            json={"status_id": status_id},
        ) or {}

    # ── Customers ───────────────────────────────────────────────────────────

    async def get_customer(self, customer_id: str) -> dict[str, Any]:
        logger.info("bigcommerce.get_customer", customer_id=customer_id)
        return await self._call("get_customer", "GET", f"/v2/customers/{customer_id}") or {}

    async def search_customers_by_email(self, email: str) -> list[dict[str, Any]]:
        logger.info("bigcommerce.search_customers")
        return await self._call(
            "search_customers", "GET", "/v2/customers", params={"email": email}
        ) or []

    async def update_customer(self, customer_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        logger.info(
            "bigcommerce.update_customer",
            customer_id=customer_id,
            fields=sorted(patch),
        )
        return await self._call(
            "update_customer", "PUT", f"/v2/customers/{customer_id}", json=patch
        ) or {}

    # ── Carts ───────────────────────────────────────────────────────────────

    async def get_cart(self, cart_id: str) -> dict[str, Any]:
        logger.info("bigcommerce.get_cart", cart_id=cart_id)
        body = await self._call(
            "get_cart",
            "GET",
            f"/v3/carts/{cart_id}",
            params={"include": "line_items.physical_items.options,line_items.digital_items.options"},
        ) or {}
        return body.get("data", body)

    # ── Webhooks ────────────────────────────────────────────────────────────

    def verify_webhook_signature(self, raw_payload: bytes, signature: str | None) -> bool:
        """Compare the hex HMAC-SHA256 of the raw body with ``signature``.

        Returns True without checking when no secret is configured.
        """
        if not self._webhook_secret:
            logger.warning("bigcommerce.webhook_signature_unchecked", reason="no secret configured")
            return True
        if not signature:
            return False
        expected = hmac.new(
            self._webhook_secret.encode(), raw_payload, hashlib.sha256
        ).hexdigest()
        return hmac.compare_digest(expected, signature)
