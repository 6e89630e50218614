"""Admin endpoints for inspecting and retrying sync attempts.

All routes require the X-API-Key admin header.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status

from src.relay.api.deps import get_dispatcher, require_admin_key
from src.relay.sync.schemas import (
    SyncAttempt,
    SyncLogFilter,
    SyncStats,
    SyncStatus,
    SyncType,
)

router = APIRouter(
    prefix="/sync-logs",
    tags=["sync-logs"],
    dependencies=[Depends(require_admin_key)],
)


@router.get("")
async def list_sync_logs(
    status_filter: SyncStatus | None = Query(default=None, alias="status"),
    entity_type: str | None = Query(default=None),
    sync_type: SyncType | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    dispatcher: Any = Depends(get_dispatcher),
) -> dict[str, list[SyncAttempt]]:
    """List sync attempts newest first."""
    filters = SyncLogFilter(status=status_filter, entity_type=entity_type, sync_type=sync_type)
    logs = await dispatcher.get_logs(filters, limit=limit, offset=offset)
    return {"logs": logs}


@router.get("/stats")
async def sync_stats(
    hours: int = Query(default=24, ge=1, le=24 * 90),
    dispatcher: Any = Depends(get_dispatcher),
) -> dict[str, SyncStats]:
    """Aggregate counts and success rate over the last ``hours``."""
    return {"stats": await dispatcher.get_stats(hours)}


@router.get("/{sync_log_id}")
async def get_sync_log(
    sync_log_id: str,
    dispatcher: Any = Depends(get_dispatcher),
) -> dict[str, SyncAttempt]:
    log = await dispatcher.get_log(sync_log_id)
    if log is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Sync log not found",
        )
    return {"log": log}


@router.post("/{sync_log_id}/retry", status_code=status.HTTP_202_ACCEPTED)
async def retry_sync_log(
    sync_log_id: str,
    dispatcher: Any = Depends(get_dispatcher),
) -> dict[str, Any]:
    """Re-run a failed sync attempt under its existing id."""
    result = await dispatcher.manual_retry(sync_log_id)
    if result.reason == "not_found":
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Sync log not found",
        )
    if not result.requeued:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=(
                "Can only retry failed syncs"
                if result.reason == "not_failed"
                else "Sync attempt has no replayable request data"
            ),
        )
    return {"message": "Sync queued for retry", "sync_log_id": sync_log_id, "requeued": True}
