"""Webhook intake endpoints.

POST /webhooks/bigcommerce verifies the HMAC signature over the raw body,
routes the event scope to an order or abandoned-cart sync, and acknowledges
before the sync runs. POST /webhooks/hubspot accepts a batch of CRM change
notifications and dispatches contact and deal-stage changes.
"""

from __future__ import annotations

import json
from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status

from src.relay.api.deps import get_commerce_client, get_dispatcher
from src.relay.sync.schemas import SourceEventKind

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

SIGNATURE_HEADER = "X-Webhook-Signature"

# BigCommerce scope -> (event kind, fallback id field)
SCOPE_ROUTES: dict[str, tuple[SourceEventKind, str]] = {
    "store/order/created": (SourceEventKind.ORDER_CREATED, "order_id"),
    "store/cart/abandoned": (SourceEventKind.CART_ABANDONED, "cart_id"),
}

CONTACT_SUBSCRIPTIONS = {"contact.propertyChange", "contact.creation"}
DEAL_SUBSCRIPTION = "deal.propertyChange"


def _parse_json(raw: bytes) -> Any:
    try:
        return json.loads(raw or b"null")
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Malformed JSON payload",
        ) from exc


def _event_id(payload: dict[str, Any], fallback_field: str) -> str | None:
    data = payload.get("data")
    entity_id = data.get("id") if isinstance(data, dict) else None
    if entity_id in (None, ""):
        entity_id = payload.get(fallback_field)
    return str(entity_id) if entity_id not in (None, "") else None


@router.post("/bigcommerce")
async def bigcommerce_webhook(
    request: Request,
    commerce: Any = Depends(get_commerce_client),
    dispatcher: Any = Depends(get_dispatcher),
) -> dict[str, Any]:
    """Acknowledge a BigCommerce webhook and launch the matching sync."""
    raw = await request.body()
    if not commerce.verify_webhook_signature(raw, request.headers.get(SIGNATURE_HEADER)):
        logger.warning("webhook.bigcommerce_bad_signature")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook signature",
        )

    payload = _parse_json(raw)
    if not isinstance(payload, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Webhook payload must be a JSON object",
        )

    scope = payload.get("scope")
    route = SCOPE_ROUTES.get(scope)
    if route is None:
        logger.warning("webhook.bigcommerce_scope_unhandled", scope=scope)
        return {"received": True, "message": "Scope not handled"}

    kind, fallback_field = route
    entity_id = _event_id(payload, fallback_field)
    if entity_id is None:
        logger.error("webhook.bigcommerce_missing_id", scope=scope)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"No {fallback_field.replace('_', ' ')} provided",
        )

    logger.info("webhook.bigcommerce_received", scope=scope, entity_id=entity_id)
    dispatcher.handle_source_event(entity_id, kind)
    return {"received": True}


@router.post("/hubspot")
async def hubspot_webhook(
    request: Request,
    dispatcher: Any = Depends(get_dispatcher),
) -> dict[str, Any]:
    """Dispatch HubSpot contact and deal-stage change notifications.

    HubSpot batches notifications as a JSON array; a single object is
    accepted too. Unrelated subscriptions are ignored.
    """
    payload = _parse_json(await request.body())
    events = payload if isinstance(payload, list) else [payload]

    dispatched = 0
    for event in events:
        if not isinstance(event, dict) or event.get("objectId") in (None, ""):
            continue
        subscription = event.get("subscriptionType")
        object_id = str(event["objectId"])

        if subscription in CONTACT_SUBSCRIPTIONS:
            dispatcher.handle_contact_change(object_id)
            dispatched += 1
        elif subscription == DEAL_SUBSCRIPTION and event.get("propertyName") == "dealstage":
            dispatcher.handle_deal_change(object_id)
            dispatched += 1
        else:
            logger.debug("webhook.hubspot_ignored", subscription=subscription)

    logger.info("webhook.hubspot_received", events=len(events), dispatched=dispatched)
    return {"received": True, "dispatched": dispatched}
