"""Prometheus metrics for HTTP traffic and sync outcomes.

Provides:
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- record_sync_outcome(): Counter/histogram update on terminal SyncAttempt transitions
- record_upstream_retry(): Counter update for every Backoff Executor retry
- get_metrics_response(): Prometheus exposition for the /metrics route
"""

from __future__ import annotations

import time

from prometheus_client import (
    REGISTRY,
    Counter,
    Histogram,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "relay_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

http_request_duration_seconds = Histogram(
    "relay_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Sync Metrics ─────────────────────────────────────────────────────────────

sync_attempts_total = Counter(
    "relay_sync_attempts_total",
    "Sync attempts reaching a terminal status",
    ["sync_type", "status"],
)

sync_duration_seconds = Histogram(
    "relay_sync_duration_seconds",
    "Wall-clock duration of a sync attempt",
    ["sync_type"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

upstream_retries_total = Counter(
    "relay_upstream_retries_total",
    "Retries scheduled by the backoff executor",
    ["operation"],
)


def record_sync_outcome(sync_type: str, status: str, duration_seconds: float | None) -> None:
    """Count a terminal sync transition and observe its duration."""
    sync_attempts_total.labels(sync_type=sync_type, status=status).inc()
    if duration_seconds is not None:
        sync_duration_seconds.labels(sync_type=sync_type).observe(duration_seconds)


def record_upstream_retry(label: str) -> None:
    """Count a scheduled retry. Entity ids after the first ":" are dropped."""
    upstream_retries_total.labels(operation=label.split(":", 1)[0]).inc()


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that records Prometheus metrics for every HTTP request.

    Skips the /metrics endpoint itself to avoid self-referential counting.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        endpoint = request.url.path

        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
        ).inc()

        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint,
        ).observe(duration)

        return response


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
