"""Tests for StageMappingTable defaults, overrides, persistence and fallbacks."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from src.relay.sync.errors import ConfigurationError
from src.relay.sync.stage_mapping import (
    DEFAULT_STAGE_MAPPING,
    STAGE_MAPPING_CONFIG_KEY,
    StageMappingTable,
)


class TestStageMapping:
    async def test_default_then_override_then_reset(self, stage_mapping):
        assert await stage_mapping.get_deal_stage_to_order_status("closedwon") == "Shipped"

        await stage_mapping.update_mapping({"closedwon": "Custom"})
        assert await stage_mapping.get_deal_stage_to_order_status("closedwon") == "Custom"

        await stage_mapping.reset_to_defaults()
        assert await stage_mapping.get_deal_stage_to_order_status("closedwon") == "Shipped"

    async def test_override_wins_key_by_key(self, stage_mapping):
        effective = await stage_mapping.update_mapping(
            {"closedwon": "Completed", "customstage": "Awaiting Pickup"}
        )

        assert effective["closedwon"] == "Completed"
        assert effective["customstage"] == "Awaiting Pickup"
        assert effective["closedlost"] == "Cancelled"
        assert await stage_mapping.get_overrides() == {
            "closedwon": "Completed",
            "customstage": "Awaiting Pickup",
        }

    async def test_update_replaces_previous_override_set(self, stage_mapping):
        await stage_mapping.update_mapping({"closedwon": "Completed"})
        await stage_mapping.update_mapping({"closedlost": "Refunded"})

        mapping = await stage_mapping.get_stage_mapping()
        assert mapping["closedwon"] == "Shipped"
        assert mapping["closedlost"] == "Refunded"

    async def test_unmapped_stage(self, stage_mapping):
        assert await stage_mapping.get_deal_stage_to_order_status("appointmentscheduled") is None
        assert await stage_mapping.get_deal_stage_to_order_status(None) is None
        assert await stage_mapping.get_deal_stage_to_order_status("") is None

    async def test_version_is_monotonic(self, stage_mapping):
        await stage_mapping.load()
        assert stage_mapping.version == 0

        await stage_mapping.update_mapping({"closedwon": "A"})
        await stage_mapping.update_mapping({"closedwon": "B"})
        assert stage_mapping.version == 2

        await stage_mapping.reset_to_defaults()
        assert stage_mapping.version == 3

    async def test_overrides_survive_reload(self, stage_mapping, config_repository):
        await stage_mapping.update_mapping({"closedwon": "Completed"})

        fresh = StageMappingTable(config_repository)
        assert await fresh.get_deal_stage_to_order_status("closedwon") == "Completed"
        assert fresh.version == 1

    async def test_invalid_override_rejected(self, stage_mapping):
        with pytest.raises(ConfigurationError):
            await stage_mapping.update_mapping({"closedwon": "  "})
        assert await stage_mapping.get_deal_stage_to_order_status("closedwon") == "Shipped"


class TestStageMappingFallbacks:
    async def test_corrupt_json_falls_back_to_defaults(self, config_repository):
        await config_repository.upsert(STAGE_MAPPING_CONFIG_KEY, "{not json")

        table = StageMappingTable(config_repository)
        assert await table.get_stage_mapping() == dict(DEFAULT_STAGE_MAPPING)

    async def test_non_object_json_falls_back_to_defaults(self, config_repository):
        await config_repository.upsert(STAGE_MAPPING_CONFIG_KEY, '["closedwon"]')

        table = StageMappingTable(config_repository)
        assert await table.get_deal_stage_to_order_status("closedwon") == "Shipped"

    async def test_unreadable_store_falls_back_to_defaults(self):
        repo = AsyncMock()
        repo.get.side_effect = ConnectionError("database unavailable")

        table = StageMappingTable(repo)
        assert await table.get_deal_stage_to_order_status("contractsent") == "Awaiting Shipment"
        assert table.loaded is False

    async def test_failed_write_raises_configuration_error(self):
        repo = AsyncMock()
        repo.get.return_value = None
        repo.upsert.side_effect = ConnectionError("database unavailable")

        table = StageMappingTable(repo)
        with pytest.raises(ConfigurationError):
            await table.update_mapping({"closedwon": "Completed"})
        assert await table.get_deal_stage_to_order_status("closedwon") == "Shipped"


class GatedRepository:
    """Wraps a ConfigurationRepository; reads complete only once released."""

    def __init__(self, inner) -> None:
        self._inner = inner
        self.release = asyncio.Event()
        self.reading = asyncio.Event()

    async def get(self, key):
        entry = await self._inner.get(key)
        self.reading.set()
        await self.release.wait()
        return entry

    async def upsert(self, *args, **kwargs):
        return await self._inner.upsert(*args, **kwargs)


class TestStageMappingConcurrency:
    async def test_slow_first_load_does_not_undo_update(self, config_repository):
        repo = GatedRepository(config_repository)
        table = StageMappingTable(repo)

        reader = asyncio.create_task(table.get_deal_stage_to_order_status("closedwon"))
        await repo.reading.wait()
        writer = asyncio.create_task(table.update_mapping({"closedwon": "Custom"}))
        await asyncio.sleep(0)
        repo.release.set()

        assert await reader == "Shipped"
        await writer

        assert await table.get_deal_stage_to_order_status("closedwon") == "Custom"
        assert table.version == 1
