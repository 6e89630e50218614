"""Async HubSpot CRM client implementing CRMAPI.

Uses the CRM v3 object endpoints for contacts and deals and the v4
default-association endpoint for deal→contact links. Authenticates with a
private-app bearer token, or a legacy ``hapikey`` query parameter when only
an API key is configured.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from src.relay.clients.base import CRMAPI, json_body, send
from src.relay.sync.errors import UpstreamError

logger = structlog.get_logger(__name__)

SERVICE = "hubspot"

CONTACT_PROPERTIES = (
    "email",
    "firstname",
    "lastname",
    "phone",
    "company",
    "marketing_emails_opt_in",
    "sms_opt_in",
    "hs_lastmodifieddate",
)
DEAL_PROPERTIES = (
    "dealname",
    "dealstage",
    "pipeline",
    "amount",
    "order_id",
    "cart_id",
    "hs_lastmodifieddate",
)


class HubSpotClient(CRMAPI):
    """HubSpot CRM API client.

    Args:
        access_token: Private-app token (preferred).
        api_key: Legacy API key, used only when no token is set.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (tests use httpx.MockTransport).
    """

    BASE_URL = "https://api.hubapi.com"

    def __init__(
        self,
        access_token: str = "",
        api_key: str = "",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        params: dict[str, str] = {}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        elif api_key:
            params["hapikey"] = api_key

        self._client = httpx.AsyncClient(
            base_url=self.BASE_URL,
            headers=headers,
            params=params,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings) -> HubSpotClient:
        return cls(
            access_token=settings.HUBSPOT_ACCESS_TOKEN,
            api_key=settings.HUBSPOT_API_KEY,
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

    # ── Contacts ────────────────────────────────────────────────────────────

    async def find_contact_by_email(self, email: str) -> dict[str, Any] | None:
        """Look up a contact using email as the id property; 404 means none."""
        try:
            return await self._call(
                "find_contact_by_email",
                "GET",
                f"/crm/v3/objects/contacts/{email}",
                params={"idProperty": "email", "properties": ",".join(CONTACT_PROPERTIES)},
            )
        except UpstreamError as exc:
            if exc.is_not_found:
                return None
            raise

    async def create_contact(self, properties: dict[str, Any]) -> dict[str, Any]:
        contact = await self._call(
            "create_contact",
            "POST",
            "/crm/v3/objects/contacts",
            json={"properties": properties},
        )
        logger.info("hubspot.contact_created", contact_id=contact.get("id"))
        return contact

    async def update_contact(self, contact_id: str, properties: dict[str, Any]) -> dict[str, Any]:
        contact = await self._call(
            "update_contact",
            "PATCH",
            f"/crm/v3/objects/contacts/{contact_id}",
            json={"properties": properties},
        )
        logger.info("hubspot.contact_updated", contact_id=contact_id)
        return contact or {"id": contact_id}

    async def get_contact(self, contact_id: str) -> dict[str, Any]:
        return await self._call(
            "get_contact",
            "GET",
            f"/crm/v3/objects/contacts/{contact_id}",
            params={"properties": ",".join(CONTACT_PROPERTIES)},
        ) or {}

    # ── Deals ───────────────────────────────────────────────────────────────

    async def create_deal(self, properties: dict[str, Any]) -> dict[str, Any]:
        deal = await self._call(
            "create_deal",
            "POST",
            "/crm/v3/objects/deals",
            json={"properties": properties},
        )
        logger.info(
            "hubspot.deal_created",
            deal_id=deal.get("id"),
            dealname=properties.get("dealname"),
        )
        return deal

    async def get_deal(self, deal_id: str) -> dict[str, Any]:
        return await self._call(
            "get_deal",
            "GET",
            f"/crm/v3/objects/deals/{deal_id}",
            params={"properties": ",".join(DEAL_PROPERTIES)},
        ) or {}

    async def update_deal(self, deal_id: str, properties: dict[str, Any]) -> dict[str, Any]:
        deal = await self._call(
            "update_deal",
            "PATCH",
            f"/crm/v3/objects/deals/{deal_id}",
            json={"properties": properties},
        )
        return deal or {"id": deal_id}

    async def associate_deal_with_contact(self, deal_id: str, contact_id: str) -> None:
        await self._call(
            "associate_deal_with_contact",
            "PUT",
            f"/crm/v4/objects/deals/{deal_id}/associations/default/contacts/{contact_id}",
        )
        logger.info("hubspot.deal_associated", deal_id=deal_id, contact_id=contact_id)
