"""FastAPI dependencies for app.state services and admin authentication.

Engine components are built once at startup and stored on app.state; the
accessors below fetch them and answer 503 when startup did not wire them.
"""

from __future__ import annotations

import hmac
from typing import Any

from fastapi import Depends, HTTPException, Request, status

from src.relay.config import Settings, get_settings


def _get_state(request: Request, name: str, label: str) -> Any:
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} not initialized",
        )
    return service


def get_dispatcher(request: Request) -> Any:
    """Retrieve SyncDispatcher from app.state, 503 if not available."""
    return _get_state(request, "sync_dispatcher", "Sync engine")


def get_commerce_client(request: Request) -> Any:
    """Retrieve the CommerceAPI client from app.state, 503 if not available."""
    return _get_state(request, "commerce_client", "Commerce client")


def get_stage_mapping(request: Request) -> Any:
    """Retrieve StageMappingTable from app.state, 503 if not available."""
    return _get_state(request, "stage_mapping", "Stage mapping")


async def require_admin_key(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> None:
    """Check the X-API-Key header against ADMIN_API_KEY.

    Raises:
        HTTPException(503): No admin key configured (admin routes disabled).
        HTTPException(401): Missing or wrong key.
    """
    if not settings.ADMIN_API_KEY:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API disabled: ADMIN_API_KEY is not configured",
        )

    provided = request.headers.get("X-API-Key", "")
    if not provided or not hmac.compare_digest(provided, settings.ADMIN_API_KEY):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
        )
