"""Admin endpoints for the deal-stage to order-status mapping."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status

from src.relay.api.deps import get_stage_mapping, require_admin_key
from src.relay.sync.errors import ConfigurationError
from src.relay.sync.schemas import StageMappingRead, StageMappingUpdate

router = APIRouter(
    prefix="/mappings",
    tags=["mappings"],
    dependencies=[Depends(require_admin_key)],
)


async def _read(table: Any) -> StageMappingRead:
    return StageMappingRead(
        mapping=await table.get_stage_mapping(),
        overrides=await table.get_overrides(),
        version=table.version,
    )


@router.get("/deal-stages", response_model=StageMappingRead)
async def get_deal_stage_mapping(table: Any = Depends(get_stage_mapping)) -> StageMappingRead:
    """Effective mapping (defaults overlaid by overrides) and its version."""
    return await _read(table)


@router.put("/deal-stages", response_model=StageMappingRead)
async def update_deal_stage_mapping(
    body: StageMappingUpdate,
    table: Any = Depends(get_stage_mapping),
) -> StageMappingRead:
    """Replace the override set. Stages not named keep their defaults."""
    try:
        await table.update_mapping(body.mapping)
    except ConfigurationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    return await _read(table)


@router.delete("/deal-stages", response_model=StageMappingRead)
async def reset_deal_stage_mapping(table: Any = Depends(get_stage_mapping)) -> StageMappingRead:
    """Clear all overrides."""
    try:
        await table.reset_to_defaults()
    except ConfigurationError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(exc),
        ) from exc
    return await _read(table)
