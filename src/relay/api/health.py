"""Health check and metrics endpoints.

Provides liveness (/health), readiness (/health/ready, database
connectivity) and Prometheus exposition (/metrics).
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.relay.config import get_settings
from src.relay.core.database import get_engine
from src.relay.core.monitoring import get_metrics_response

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check. No external dependencies are checked."""
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness check: database connectivity plus in-flight sync count.

    Returns 200 if the database answers, 503 otherwise.
    """
    checks: dict = {"database": "ok"}
    try:
        engine = get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        checks["database"] = "error"
        checks["database_error"] = str(e)

    dispatcher = getattr(request.app.state, "sync_dispatcher", None)
    if dispatcher is not None:
        checks["in_flight_syncs"] = dispatcher.in_flight

    healthy = checks["database"] == "ok"
    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "ready" if healthy else "degraded", "checks": checks},
    )


@router.get("/metrics", include_in_schema=False)
async def metrics():
    """Prometheus exposition format."""
    return get_metrics_response()
