"""Entity mapping between BigCommerce and HubSpot payloads.

Vendor JSON arrives with many optional and alternate field names, so each
source entity is parsed once into a typed model with a documented precedence
per field:

- Order amount: total_inc_tax, then total, then 0
- Order line price: price_inc_tax, then price, then 0
- Order line name: name, then product_name, then "Unknown"
- Cart amount: cart_amount, then base_amount, then 0
- Cart line price: sale_price, then list_price, then 0
- Cart close date: updated_time, then created_time

Every mapping function is total: malformed or missing values degrade to
defaults and never raise. Rejecting an unusable result (e.g. a contact
without email) is the orchestrator's job.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from email.utils import parsedate_to_datetime
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError

from src.relay.sync.schemas import (
    CustomerPatch,
    MappedContact,
    MappedDeal,
    MarketingPreferences,
)

logger = structlog.get_logger(__name__)

ORDER_DEAL_SOURCE = "BigCommerce"
CART_DEAL_SOURCE = "BigCommerce - Abandoned Cart"
DEFAULT_ORDER_STAGE = "closedwon"
DEFAULT_ABANDONED_CART_STAGE = "appointmentscheduled"


# ── Source Entity Models ────────────────────────────────────────────────────


class _VendorModel(BaseModel):
    """Lenient base: unknown vendor fields are ignored, numbers read as text."""

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)


class CommerceCustomer(_VendorModel):
    id: int | str | None = None
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    company: str | None = None
    date_created: str | None = None
    date_modified: str | None = None


class CommerceAddress(_VendorModel):
    """Billing or shipping address attached to an order or cart."""

    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    company: str | None = None
    street_1: str | None = None
    street_2: str | None = None
    city: str | None = None
    state: str | None = None
    zip: str | None = None
    country: str | None = None


class OrderLineItem(_VendorModel):
    name: str | None = None
    product_name: str | None = None
    quantity: int | str | None = None
    price_inc_tax: Any = None
    price: Any = None


class CommerceOrder(_VendorModel):
    id: int | str = ""
    status: str | None = None
    total_inc_tax: Any = None
    total: Any = None
    payment_method: str | None = None
    customer_id: int | str | None = None
    date_created: str | None = None
    date_modified: str | None = None
    billing_address: CommerceAddress | None = None


class CartItem(_VendorModel):
    name: str | None = None
    quantity: int | str | None = None
    sale_price: Any = None
    list_price: Any = None


class CartLineItems(_VendorModel):
    physical_items: list[CartItem] = Field(default_factory=list)
    digital_items: list[CartItem] = Field(default_factory=list)


class CommerceCart(_VendorModel):
    id: int | str = ""
    email: str | None = None
    cart_amount: Any = None
    base_amount: Any = None
    customer: CommerceCustomer | None = None
    billing_address: CommerceAddress | None = None
    line_items: CartLineItems | None = None
    created_time: str | None = None
    updated_time: str | None = None


# ── Value Helpers ───────────────────────────────────────────────────────────


def _first_present(*values: Any) -> Any:
    """Return the first value that is neither None nor an empty string."""
    for value in values:
        if value is not None and value != "":
            return value
    return None


def parse_amount(value: Any) -> Decimal:
    """Parse a vendor monetary value into a non-negative Decimal.

    Absent, non-numeric, non-finite and negative values all coerce to 0.
    """
    if value is None or isinstance(value, bool):
        return Decimal("0")
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return Decimal("0")
    if not amount.is_finite() or amount < 0:
        return Decimal("0")
    return amount


def parse_timestamp(value: Any) -> datetime | None:
    """Parse RFC 2822, ISO 8601 or epoch-millisecond timestamps to aware UTC.

    BigCommerce v2 uses RFC 2822 dates, v3 and HubSpot use ISO 8601, and
    HubSpot sometimes sends epoch milliseconds. Unparseable input returns None.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) or (isinstance(value, str) and value.strip().isdigit()):
        try:
            return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        text = value.strip()
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            try:
                parsed = parsedate_to_datetime(text)
            except (TypeError, ValueError):
                return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _epoch_ms(value: Any) -> int | None:
    parsed = parse_timestamp(value)
    if parsed is None:
        return None
    return int(parsed.timestamp() * 1000)


_MAX_REPAIR_PASSES = 5


def _has(container: Any, key: Any) -> bool:
    if isinstance(container, dict):
        return key in container
    if isinstance(container, list):
        return isinstance(key, int) and 0 <= key < len(container)
    return False


def _drop_at(data: Any, loc: tuple[Any, ...]) -> Any:
    """Copy ``data`` without the deepest element of ``loc`` present in it.

    Error locations may end in union member tags ("int", "str") that are
    not keys of the payload; the walk stops at the last real key.
    """
    if not loc or not _has(data, loc[0]):
        return data
    head, rest = loc[0], loc[1:]
    child = data[head]
    replace = bool(rest) and _has(child, rest[0])
    if isinstance(data, dict):
        if replace:
            return {**data, head: _drop_at(child, rest)}
        return {k: v for k, v in data.items() if k != head}
    items = list(data)
    if replace:
        items[head] = _drop_at(child, rest)
    else:
        del items[head]
    return items


def _as_model(model_cls: type[BaseModel], data: Any) -> BaseModel | None:
    """Parse vendor JSON, dropping only the fields that fail validation."""
    if data is None:
        return None
    if isinstance(data, model_cls):
        return data
    if isinstance(data, BaseModel):
        data = data.model_dump()
    if not isinstance(data, dict):
        logger.warning("mapper.unparseable_payload", model=model_cls.__name__)
        return None

    for _ in range(_MAX_REPAIR_PASSES):
        try:
            return model_cls.model_validate(data)
        except PydanticValidationError as exc:
            errors = exc.errors()
            logger.warning(
                "mapper.invalid_fields_dropped",
                model=model_cls.__name__,
                fields=[".".join(str(part) for part in error["loc"]) for error in errors],
            )
            # Reverse order keeps earlier list indexes valid after deletions
            for error in reversed(errors):
                data = _drop_at(data, tuple(error["loc"]))

    logger.warning("mapper.unparseable_payload", model=model_cls.__name__)
    return None


def _line(name: str, quantity: Any, price: Any) -> str:
    qty = quantity if quantity is not None and quantity != "" else 0
    return f"- {name} (Qty: {qty}) - ${parse_amount(price):.2f}"


# ── Commerce → CRM ──────────────────────────────────────────────────────────

# (contact property, source attribute) pairs merged primary-first
_CONTACT_FIELDS: tuple[tuple[str, str], ...] = (
    ("email", "email"),
    ("firstname", "first_name"),
    ("lastname", "last_name"),
    ("phone", "phone"),
    ("company", "company"),
    ("city", "city"),
    ("state", "state"),
    ("zip", "zip"),
    ("country", "country"),
)


def _street(entity: Any) -> str | None:
    street_1 = getattr(entity, "street_1", None)
    if not street_1:
        return None
    street_2 = getattr(entity, "street_2", None)
    return f"{street_1}, {street_2}" if street_2 else street_1


def map_customer_to_contact(primary: Any, fallback: Any = None) -> MappedContact:
    """Merge a customer with a fallback address into HubSpot contact properties.

    Each property comes from ``primary`` when it has a non-empty value there,
    otherwise from ``fallback``. Values are never mixed across entities
    within one property.

    Args:
        primary: CommerceCustomer (or raw dict), usually the order customer.
        fallback: CommerceAddress (or raw dict), usually the billing address.
    """
    customer = _as_model(CommerceCustomer, primary)
    address = _as_model(CommerceAddress, fallback)

    values: dict[str, Any] = {}
    for contact_field, source_attr in _CONTACT_FIELDS:
        values[contact_field] = _first_present(
            getattr(customer, source_attr, None),
            getattr(address, source_attr, None),
        )
    values["address"] = _first_present(_street(customer), _street(address))

    contact = MappedContact(**values)
    logger.debug("mapper.contact_mapped", properties=contact.to_properties())
    return contact


def map_order_to_deal(
    order: Any,
    line_items: list[Any] | None = None,
    *,
    dealstage: str = DEFAULT_ORDER_STAGE,
    pipeline: str | None = None,
) -> MappedDeal:
    """Map a BigCommerce order and its products to a HubSpot deal.

    The description lists header lines (id, status, total, optional payment
    method), then one line per product in input order.
    """
    parsed = _as_model(CommerceOrder, order) or CommerceOrder()
    amount = parse_amount(_first_present(parsed.total_inc_tax, parsed.total))

    parts = [
        f"Order ID: {parsed.id}",
        f"Status: {parsed.status or 'Unknown'}",
        f"Total: ${amount:.2f}",
    ]
    if parsed.payment_method:
        parts.append(f"Payment Method: {parsed.payment_method}")

    items = [i for i in (_as_model(OrderLineItem, raw) for raw in line_items or []) if i]
    if items:
        parts.append("\nProducts:")
        for item in items:
            parts.append(
                _line(
                    _first_present(item.name, item.product_name) or "Unknown",
                    item.quantity,
                    _first_present(item.price_inc_tax, item.price),
                )
            )

    deal = MappedDeal(
        dealname=f"Order #{parsed.id}",
        amount=amount,
        dealstage=dealstage,
        pipeline=pipeline,
        closedate=_epoch_ms(parsed.date_created),
        description="\n".join(parts),
        source=ORDER_DEAL_SOURCE,
        order_id=str(parsed.id),
    )
    logger.debug("mapper.order_mapped", order_id=deal.order_id, amount=str(amount))
    return deal


def map_cart_to_deal(
    cart: Any,
    *,
    dealstage: str = DEFAULT_ABANDONED_CART_STAGE,
    pipeline: str | None = None,
) -> MappedDeal:
    """Map a BigCommerce abandoned cart to a HubSpot deal.

    Physical items are listed before digital items, each in input order.
    """
    parsed = _as_model(CommerceCart, cart) or CommerceCart()
    amount = parse_amount(_first_present(parsed.cart_amount, parsed.base_amount))

    parts = [
        f"Cart ID: {parsed.id}",
        "Status: Abandoned",
        f"Total: ${amount:.2f}",
    ]

    line_items = parsed.line_items or CartLineItems()
    items = [*line_items.physical_items, *line_items.digital_items]
    if items:
        parts.append("\nProducts:")
        for item in items:
            parts.append(
                _line(
                    item.name or "Unknown",
                    item.quantity,
                    _first_present(item.sale_price, item.list_price),
                )
            )

    deal = MappedDeal(
        dealname=f"Abandoned Cart #{parsed.id}",
        amount=amount,
        dealstage=dealstage,
        pipeline=pipeline,
        closedate=_epoch_ms(_first_present(parsed.updated_time, parsed.created_time)),
        description="\n".join(parts),
        source=CART_DEAL_SOURCE,
        cart_id=str(parsed.id),
    )
    logger.debug("mapper.cart_mapped", cart_id=deal.cart_id, amount=str(amount))
    return deal


# ── CRM → Commerce ──────────────────────────────────────────────────────────


def _properties(crm_object: Any) -> dict[str, Any]:
    if not isinstance(crm_object, dict):
        return {}
    return crm_object.get("properties") or {}


def map_contact_to_customer(contact: dict[str, Any]) -> CustomerPatch:
    """Translate HubSpot contact properties into a BigCommerce customer patch."""
    props = _properties(contact)
    patch = CustomerPatch(
        email=_first_present(props.get("email")),
        first_name=_first_present(props.get("firstname")),
        last_name=_first_present(props.get("lastname")),
        phone=_first_present(props.get("phone")),
        company=_first_present(props.get("company")),
    )
    logger.debug("mapper.customer_patch_mapped", fields=sorted(patch.to_payload()))
    return patch


def map_marketing_preferences(contact: dict[str, Any]) -> MarketingPreferences:
    """Read the two opt-in flags; only the literal string "true" opts in."""
    props = _properties(contact)
    return MarketingPreferences(
        accepts_marketing=str(props.get("marketing_emails_opt_in")).lower() == "true",
        accepts_sms=str(props.get("sms_opt_in")).lower() == "true",
    )


def deal_order_id(deal: dict[str, Any]) -> str | None:
    """Return the BigCommerce order id embedded in a deal, if any."""
    value = _first_present(_properties(deal).get("order_id"))
    return str(value) if value is not None else None
