"""Capability interfaces for the two vendor systems the sync engine drives.

CommerceAPI is the source storefront (BigCommerce); CRMAPI is the target
CRM (HubSpot). Orchestrators depend only on these ABCs, so tests and
alternative vendors plug in without touching the sync engine.

Implementations make a single HTTP call per method and raise UpstreamError
on any transport or non-2xx failure. Retrying is the BackoffExecutor's job.
Payloads are the vendors' JSON objects as plain dicts.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

import httpx
import structlog

from src.relay.sync.errors import UpstreamError

logger = structlog.get_logger(__name__)


class CommerceAPI(ABC):
    """Source commerce platform operations used by the sync engine."""

    @abstractmethod
    async def get_order(self, order_id: str) -> dict[str, Any]:
        """Fetch an order by id."""
        ...

    @abstractmethod
    async def get_order_line_items(self, order_id: str) -> list[dict[str, Any]]:
        """Fetch the products of an order, in order."""
        ...

    @abstractmethod
    async def get_customer(self, customer_id: str) -> dict[str, Any]:
        """Fetch a customer by id."""
        ...

    @abstractmethod
    async def get_cart(self, cart_id: str) -> dict[str, Any]:
        """Fetch a cart (including line items) by id."""
        ...

    @abstractmethod
    async def search_customers_by_email(self, email: str) -> list[dict[str, Any]]:
        """Return customers whose email matches exactly (possibly empty)."""
        ...

    @abstractmethod
    async def update_customer(self, customer_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        """Apply a partial update to a customer."""
        ...

    @abstractmethod
    async def update_order_status(self, order_id: str, status: str) -> dict[str, Any]:
        """Set an order's status by status name."""
        ...

    @abstractmethod
    def verify_webhook_signature(self, raw_payload: bytes, signature: str | None) -> bool:
        """Check an inbound webhook's HMAC-SHA256 signature."""
        ...


class CRMAPI(ABC):
    """Target CRM operations used by the sync engine."""

    @abstractmethod
    async def find_contact_by_email(self, email: str) -> dict[str, Any] | None:
        """Return the contact with this email, or None."""
        ...

    @abstractmethod
    async def create_contact(self, properties: dict[str, Any]) -> dict[str, Any]:
        """Create a contact, returning it (with ``id``)."""
        ...

    @abstractmethod
    async def update_contact(self, contact_id: str, properties: dict[str, Any]) -> dict[str, Any]:
        """Update contact properties, returning the contact."""
        ...

    @abstractmethod
    async def get_contact(self, contact_id: str) -> dict[str, Any]:
        """Fetch a contact with its properties."""
        ...

    @abstractmethod
    async def create_deal(self, properties: dict[str, Any]) -> dict[str, Any]:
        """Create a deal, returning it (with ``id``)."""
        ...

    @abstractmethod
    async def get_deal(self, deal_id: str) -> dict[str, Any]:
        """Fetch a deal with its properties."""
        ...

    @abstractmethod
    async def update_deal(self, deal_id: str, properties: dict[str, Any]) -> dict[str, Any]:
        """Update deal properties, returning the deal."""
        ...

    @abstractmethod
    async def associate_deal_with_contact(self, deal_id: str, contact_id: str) -> None:
        """Link a deal to a contact. Repeating the call is harmless."""
        ...


# ── Shared HTTP helper ──────────────────────────────────────────────────────


async def send(
    client: httpx.AsyncClient,
    *,
    service: str,
    operation: str,
    method: str,
    url: str,
    **kwargs: Any,
) -> httpx.Response:
    """Issue one request, translating httpx failures into UpstreamError."""
    try:
        response = await client.request(method, url, **kwargs)
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        status = exc.response.status_code
        logger.warning(
            f"{service}.request_failed",
            operation=operation,
            status_code=status,
        )
        raise UpstreamError(
            f"{service} {operation} failed with HTTP {status}",
            service=service,
            operation=operation,
            status_code=status,
            response_text=exc.response.text[:500],
        ) from exc
    except httpx.HTTPError as exc:
        logger.warning(
            f"{service}.transport_error",
            operation=operation,
            error=str(exc),
        )
        raise UpstreamError(
            f"{service} {operation} failed: {exc.__class__.__name__}",
            service=service,
            operation=operation,
        ) from exc
    return response


def json_body(response: httpx.Response) -> Any:
    """Decode a JSON body; empty (204) responses decode to None."""
    if response.status_code == 204 or not response.content:
        return None
    return response.json()
