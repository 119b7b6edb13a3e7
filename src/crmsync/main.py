"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, Sentry,
lifespan events for database and service initialization, and the v1 API
router.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.crmsync.config import get_settings
from src.crmsync.core.database import close_db, get_session, init_db
from src.crmsync.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.crmsync.core.redis import close_redis, get_redis_pool
from src.crmsync.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.crmsync.api.v1.router import router as v1_router
from src.crmsync.crm.repository import CRMRepository
from src.crmsync.crm.service import CampaignService, ContactService
from src.crmsync.sync.bulk import SyncRegistry
from src.crmsync.sync.channel import InMemoryProgressChannel, RedisProgressChannel
from src.crmsync.sync.reconcile import KeyedLocks


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, Sentry and services on startup, close on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    # Initialize Sentry if DSN is configured
    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    repository = CRMRepository(session_factory=get_session)
    app.state.crm_repository = repository
    app.state.contact_service = ContactService(repository)
    app.state.campaign_service = CampaignService(repository)
    app.state.reconcile_locks = KeyedLocks()
    app.state.sync_registry = SyncRegistry()

    # Progress transport; a Redis failure falls back to the in-process channel
    if settings.PROGRESS_BACKEND == "redis":
        try:
            redis_client = get_redis_pool()
            await redis_client.ping()
            app.state.progress_channel = RedisProgressChannel(redis_client)
            log.info("progress.redis_channel_initialized")
        except Exception:
            log.warning("progress.redis_channel_init_failed", exc_info=True)
            app.state.progress_channel = InMemoryProgressChannel()
    else:
        app.state.progress_channel = InMemoryProgressChannel()

    log.info("app.started", environment=settings.ENVIRONMENT.value)

    yield

    # Stop running syncs before their database and Redis handles go away
    await app.state.sync_registry.shutdown()

    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="CRM Sync API",
        version="0.1.0",
        description="Contact management with Pipedrive reconciliation and bulk sync",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    # CORS middleware
    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    # Include v1 API router (health, auth, contacts, pipedrive, ...)
    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
