"""Deal-stage to order-status mapping with persisted overrides.

The effective mapping is DEFAULT_STAGE_MAPPING overlaid key-by-key by the
override set stored in the configurations table under
STAGE_MAPPING_CONFIG_KEY. The table loads once and caches. Loads and
updates go through a single writer (asyncio.Lock) and replace the cached
dict with one reference assignment, so readers never see a half-applied
override set.

Read failures (unreadable store, corrupt JSON) fall back to the defaults
and log a warning. Failures of explicit admin writes raise
ConfigurationError.
"""

from __future__ import annotations

import asyncio
import json
from types import MappingProxyType
from typing import Mapping

import structlog

from src.relay.sync.errors import ConfigurationError
from src.relay.sync.repository import ConfigurationRepository

logger = structlog.get_logger(__name__)

STAGE_MAPPING_CONFIG_KEY = "deal_stage_to_order_status_mapping"

DEFAULT_STAGE_MAPPING: Mapping[str, str] = MappingProxyType(
    {
        "qualifiedtobuy": "Pending",
        "presentationscheduled": "Awaiting Payment",
        "decisionmakerboughtin": "Awaiting Fulfillment",
        "contractsent": "Awaiting Shipment",
        "closedwon": "Shipped",
        "closedlost": "Cancelled",
    }
)


def _parse_overrides(raw: str) -> dict[str, str]:
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Stage mapping is not valid JSON: {exc}") from exc
    if not isinstance(data, dict) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in data.items()
    ):
        raise ConfigurationError("Stage mapping must be an object of string to string")
    return data


def _validate_overrides(overrides: Mapping[str, str]) -> dict[str, str]:
    cleaned: dict[str, str] = {}
    for stage, status in overrides.items():
        if not isinstance(stage, str) or not stage.strip():
            raise ConfigurationError("Deal stage keys must be non-empty strings")
        if not isinstance(status, str) or not status.strip():
            raise ConfigurationError(f"Order status for stage {stage!r} must be a non-empty string")
        cleaned[stage.strip()] = status.strip()
    return cleaned


class StageMappingTable:
    """Cached, versioned lookup from HubSpot deal stage to order status.

    Args:
        repository: ConfigurationRepository holding the override set.
    """

    def __init__(self, repository: ConfigurationRepository) -> None:
        self._repository = repository
        self._write_lock = asyncio.Lock()
        self._overrides: dict[str, str] = {}
        self._effective: dict[str, str] = dict(DEFAULT_STAGE_MAPPING)
        self._version = 0
        self._loaded = False

    @property
    def version(self) -> int:
        return self._version

    @property
    def loaded(self) -> bool:
        return self._loaded

    async def load(self) -> None:
        """Load overrides from the store. Falls back to defaults on failure.

        Runs under the writer lock, so a load never publishes an override
        set older than one an update already published.
        """
        async with self._write_lock:
            await self._load_locked()

    async def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        async with self._write_lock:
            if not self._loaded:
                await self._load_locked()

    async def _load_locked(self) -> None:
        try:
            entry = await self._repository.get(STAGE_MAPPING_CONFIG_KEY)
            overrides = _parse_overrides(entry.value) if entry is not None else {}
        except ConfigurationError as exc:
            logger.warning("stage_mapping.corrupt_using_defaults", error=str(exc))
            return
        except Exception as exc:
            logger.warning("stage_mapping.load_failed_using_defaults", error=str(exc))
            return

        self._swap(overrides, entry.version if entry is not None else 0)
        self._loaded = True
        logger.info(
            "stage_mapping.loaded",
            overrides=len(overrides),
            version=self._version,
        )

    def _swap(self, overrides: dict[str, str], version: int) -> None:
        # Build first, then publish with plain reference assignments
        effective = {**DEFAULT_STAGE_MAPPING, **overrides}
        self._overrides = overrides
        self._effective = effective
        self._version = version

    # ── Reads ───────────────────────────────────────────────────────────────

    async def get_deal_stage_to_order_status(self, stage: str | None) -> str | None:
        """Return the order status for ``stage``, or None if unmapped."""
        await self._ensure_loaded()
        if not stage:
            return None
        return self._effective.get(stage)

    async def get_stage_mapping(self) -> dict[str, str]:
        """Return a copy of the effective mapping."""
        await self._ensure_loaded()
        return dict(self._effective)

    async def get_overrides(self) -> dict[str, str]:
        await self._ensure_loaded()
        return dict(self._overrides)

    # ── Writes ──────────────────────────────────────────────────────────────

    async def update_mapping(self, overrides: Mapping[str, str]) -> dict[str, str]:
        """Persist ``overrides`` as the override set and refresh the cache.

        Overrides win key-by-key over the defaults; stages not named keep
        their default status.

        Returns:
            The new effective mapping.

        Raises:
            ConfigurationError: If the overrides are invalid or cannot be saved.
        """
        cleaned = _validate_overrides(overrides)
        async with self._write_lock:
            entry = await self._persist(cleaned)
            self._swap(cleaned, entry.version)
            self._loaded = True

        logger.info("stage_mapping.updated", overrides=len(cleaned), version=self._version)
        return dict(self._effective)

    async def reset_to_defaults(self) -> dict[str, str]:
        """Clear all overrides. Returns the default mapping."""
        async with self._write_lock:
            entry = await self._persist({})
            self._swap({}, entry.version)
            self._loaded = True

        logger.info("stage_mapping.reset", version=self._version)
        return dict(self._effective)

    async def _persist(self, overrides: dict[str, str]):
        try:
            return await self._repository.upsert(
                STAGE_MAPPING_CONFIG_KEY,
                json.dumps(overrides, sort_keys=True),
                value_type="json",
                category="mapping",
                description="HubSpot deal stage to BigCommerce order status overrides",
            )
        except Exception as exc:
            logger.error("stage_mapping.persist_failed", error=str(exc))
            raise ConfigurationError(f"Failed to save stage mapping: {exc}") from exc
