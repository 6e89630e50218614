"""Pydantic schemas for the sync engine -- audit records, mapped entities, results.

Defines all structured types exchanged between sync components:
- Enums: SyncType, SyncDirection, SyncStatus, SourceEventKind
- Audit: SyncAttempt, SyncLogFilter, SyncStats, RetryRequestResult
- Mapped CRM entities: MappedContact, MappedDeal
- Mapped commerce entities: CustomerPatch, MarketingPreferences
- Orchestrator results: ForwardSyncResult, ReverseSyncResult, ConflictResolution
- Stage mapping admin: StageMappingRead, StageMappingUpdate
- Configuration store: ConfigurationEntry
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator


# ── Enums ───────────────────────────────────────────────────────────────────


class SyncType(str, Enum):
    """Which cross-system operation a SyncAttempt audits."""

    ORDER = "order"
    ABANDONED_CART = "abandoned_cart"
    CONTACT_TO_CUSTOMER = "contact_to_customer"
    DEAL_TO_ORDER = "deal_to_order"
    MARKETING_PREFERENCES = "marketing_preferences"


class SyncDirection(str, Enum):
    """Commerce → CRM is source_to_target; CRM → commerce is target_to_source."""

    SOURCE_TO_TARGET = "source_to_target"
    TARGET_TO_SOURCE = "target_to_source"


class SyncStatus(str, Enum):
    """SyncAttempt lifecycle.

    pending -> success | failed. failed -> retrying only through an operator
    retry, and the re-run moves retrying -> pending under the same id.
    """

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    RETRYING = "retrying"


class SourceEventKind(str, Enum):
    """Commerce webhook events the dispatcher accepts."""

    ORDER_CREATED = "order_created"
    CART_ABANDONED = "cart_abandoned"


# ── Audit Records ───────────────────────────────────────────────────────────


class SyncAttempt(BaseModel):
    """One audited execution of a single sync operation."""

    id: str
    sync_type: SyncType
    direction: SyncDirection
    entity_type: str
    entity_id: str
    status: SyncStatus = SyncStatus.PENDING
    attempts: int = 0
    restarts: int = 0
    request_data: dict[str, Any] | None = None
    response_data: dict[str, Any] | None = None
    error_message: str | None = None
    error_type: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    started_at: datetime
    completed_at: datetime | None = None
    duration_ms: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class SyncLogFilter(BaseModel):
    """Optional filters for listing sync attempts (all AND-combined)."""

    status: SyncStatus | None = None
    entity_type: str | None = None
    sync_type: SyncType | None = None


class SyncStats(BaseModel):
    """Aggregate counts over a sliding time window."""

    period_hours: int
    total: int = 0
    successful: int = 0
    failed: int = 0
    pending: int = 0
    success_rate: float = 0.0


class RetryRequestResult(BaseModel):
    """Outcome of an operator-triggered retry."""

    sync_log_id: str
    requeued: bool
    reason: str | None = None


# ── Mapped CRM Entities ─────────────────────────────────────────────────────


class MappedContact(BaseModel):
    """HubSpot contact properties built from a commerce customer.

    ``email`` is optional here so the mapper stays total; the orchestrator
    rejects a contact without one.
    """

    email: str | None = None
    firstname: str | None = None
    lastname: str | None = None
    phone: str | None = None
    company: str | None = None
    address: str | None = None
    city: str | None = None
    state: str | None = None
    zip: str | None = None
    country: str | None = None

    def to_properties(self) -> dict[str, str]:
        return self.model_dump(exclude_none=True)


class MappedDeal(BaseModel):
    """HubSpot deal properties built from an order or abandoned cart."""

    dealname: str
    amount: Decimal = Field(default=Decimal("0"), ge=0)
    dealstage: str
    pipeline: str | None = None
    closedate: int | None = None
    description: str = ""
    source: str
    order_id: str | None = None
    cart_id: str | None = None

    @model_validator(mode="after")
    def _exactly_one_origin(self) -> MappedDeal:
        if (self.order_id is None) == (self.cart_id is None):
            raise ValueError("MappedDeal needs exactly one of order_id or cart_id")
        return self

    def to_properties(self) -> dict[str, Any]:
        """Serialize to HubSpot deal properties (amount as a string decimal)."""
        return self.model_dump(mode="json", exclude_none=True)


# ── Mapped Commerce Entities ────────────────────────────────────────────────


class CustomerPatch(BaseModel):
    """Partial BigCommerce customer update built from a HubSpot contact."""

    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    company: str | None = None

    def to_payload(self) -> dict[str, str]:
        return self.model_dump(exclude_none=True)


class MarketingPreferences(BaseModel):
    """Opt-in flags copied from HubSpot contact properties."""

    accepts_marketing: bool = False
    accepts_sms: bool = False

    def to_payload(self) -> dict[str, bool]:
        return {
            "accepts_marketing": self.accepts_marketing,
            "accepts_sms": self.accepts_sms,
        }


# ── Orchestrator Results ────────────────────────────────────────────────────


class ForwardSyncResult(BaseModel):
    """Ids produced by a successful commerce → CRM sync."""

    sync_log_id: str | None = None
    contact_id: str
    deal_id: str
    order_id: str | None = None
    cart_id: str | None = None


class ReverseSyncResult(BaseModel):
    """Outcome of a CRM → commerce sync.

    ``action`` is ``updated`` when the commerce side was written, or one of
    the successful no-op reasons (``no_match``, ``no_order_id``,
    ``unmapped_stage``).
    """

    sync_log_id: str | None = None
    action: Literal["updated", "no_match", "no_order_id", "unmapped_stage"]
    customer_id: str | None = None
    order_id: str | None = None
    order_status: str | None = None
    preferences: MarketingPreferences | None = None


class ConflictResolution(BaseModel):
    """Winner of a last-write-wins comparison and its data."""

    winner: Literal["source", "target"]
    data: dict[str, Any]


# ── Stage Mapping Admin ─────────────────────────────────────────────────────


class StageMappingRead(BaseModel):
    mapping: dict[str, str]
    overrides: dict[str, str] = Field(default_factory=dict)
    version: int = 0


class StageMappingUpdate(BaseModel):
    mapping: dict[str, str]


# ── Configuration Store ─────────────────────────────────────────────────────


class ConfigurationEntry(BaseModel):
    """One row of the key/value configuration table (value is raw text)."""

    key: str
    value: str
    value_type: str = "json"
    category: str | None = None
    description: str | None = None
    version: int = 1
    updated_at: datetime | None = None
