"""FastAPI application factory.

Creates the app with logging and metrics middleware, the webhook, admin and
health routers, and a lifespan that builds every sync engine component once
and stores it on app.state:

    BackoffExecutor, SyncAuditLog, StageMappingTable,
    BigCommerceClient, HubSpotClient,
    ForwardSyncOrchestrator, ReverseSyncOrchestrator, SyncDispatcher
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from src.relay.api import health, mappings, sync_logs, webhooks
from src.relay.clients.bigcommerce import BigCommerceClient
from src.relay.clients.hubspot import HubSpotClient
from src.relay.config import get_settings
from src.relay.core.database import close_db, get_session, init_db
from src.relay.core.logging import LoggingMiddleware, configure_structlog
from src.relay.core.monitoring import MetricsMiddleware
from src.relay.sync.audit import SyncAuditLog
from src.relay.sync.backoff import BackoffExecutor
from src.relay.sync.dispatcher import SyncDispatcher
from src.relay.sync.forward import ForwardSyncOrchestrator
from src.relay.sync.repository import ConfigurationRepository, SyncLogRepository
from src.relay.sync.reverse import ReverseSyncOrchestrator
from src.relay.sync.stage_mapping import StageMappingTable


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: wire the sync engine on startup, drain on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()

    missing = settings.missing_credentials()
    if missing:
        log.warning("startup.missing_credentials", missing=missing)

    try:
        await init_db()
    except Exception:
        # Audit and config reads fail open; the service still accepts webhooks
        log.error("startup.database_init_failed", exc_info=True)

    executor = BackoffExecutor.from_settings(settings)
    audit = SyncAuditLog(SyncLogRepository(get_session))
    stage_mapping = StageMappingTable(ConfigurationRepository(get_session))
    await stage_mapping.load()

    commerce = BigCommerceClient.from_settings(settings)
    crm = HubSpotClient.from_settings(settings)

    forward = ForwardSyncOrchestrator(
        commerce,
        crm,
        audit,
        executor,
        order_stage=settings.HUBSPOT_ORDER_STAGE_ID,
        abandoned_cart_stage=settings.HUBSPOT_ABANDONED_CART_STAGE_ID,
        pipeline=settings.HUBSPOT_PIPELINE_ID,
    )
    reverse = ReverseSyncOrchestrator(commerce, crm, audit, executor, stage_mapping)
    dispatcher = SyncDispatcher(forward, reverse, audit)

    app.state.commerce_client = commerce
    app.state.crm_client = crm
    app.state.sync_audit_log = audit
    app.state.stage_mapping = stage_mapping
    app.state.sync_dispatcher = dispatcher
    log.info(
        "startup.sync_engine_initialized",
        max_retry_attempts=settings.MAX_RETRY_ATTEMPTS,
        retry_delay_ms=settings.RETRY_DELAY_MS,
        stage_mapping_version=stage_mapping.version,
    )

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    # In-flight syncs run to completion; nothing is cancelled
    await dispatcher.shutdown()
    await commerce.aclose()
    await crm.aclose()
    await close_db()
    log.info("shutdown.complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Commerce CRM Relay",
        version="0.1.0",
        description="BigCommerce to HubSpot sync service",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(MetricsMiddleware)

    app.include_router(health.router)
    app.include_router(webhooks.router)
    app.include_router(sync_logs.router)
    app.include_router(mappings.router)

    return app


# Module-level app for uvicorn
app = create_app()
