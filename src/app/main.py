"""FastAPI application factory.

Creates the app with tenant middleware, logging middleware, metrics middleware,
CORS, Sentry, lifespan events for database initialization and the ledger sync
engine, and the v1 API router.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.app.config import Settings, get_settings
from src.app.core.database import close_db, get_tenant_session, init_db
from src.app.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.app.core.redis import close_redis, get_redis_pool, get_tenant_redis
from src.app.api.middleware.tenant import TenantAuthMiddleware
from src.app.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.app.api.v1.router import router as v1_router


def init_ledger_sync(app: FastAPI, settings: Settings) -> None:
    """Build the ledger sync services and attach them to app.state."""
    from src.app.ledger.bridge_client import BridgeClient
    from src.app.ledger.changes import ClientChangeTracker
    from src.app.ledger.configuration import BridgeConfigService
    from src.app.ledger.conflicts import ConflictResolver
    from src.app.ledger.dispatch import DispatchWorker, PollingTransport
    from src.app.ledger.matcher import IngestionMatcher
    from src.app.ledger.queue import SyncQueue
    from src.app.ledger.repository import LedgerRepository
    from src.app.ledger.usage import UsageNotifier

    repository = LedgerRepository(session_factory=get_tenant_session)
    sync_queue = SyncQueue(
        repository,
        max_attempts=settings.SYNC_MAX_ATTEMPTS,
        default_priority=settings.SYNC_DEFAULT_PRIORITY,
        stale_claim_seconds=settings.SYNC_CLAIM_STALE_SECONDS,
    )
    bridge = BridgeClient(
        base_url=settings.BRIDGE_URL,
        timeout=settings.BRIDGE_TIMEOUT_SECONDS,
        shared_secret=settings.BRIDGE_SHARED_SECRET,
        connect_retries=settings.BRIDGE_CONNECT_RETRIES,
    )

    app.state.ledger_repository = repository
    app.state.sync_queue = sync_queue
    app.state.dispatch_worker = DispatchWorker(
        repository,
        bridge,
        timeout=settings.BRIDGE_TIMEOUT_SECONDS,
        pacing_seconds=settings.DISPATCH_PACING_SECONDS,
        default_batch_size=settings.SYNC_DEFAULT_BATCH_SIZE,
    )
    app.state.polling_transport = PollingTransport(
        repository, default_batch_size=settings.SYNC_DEFAULT_BATCH_SIZE
    )
    app.state.ingestion_matcher = IngestionMatcher(
        repository,
        usage_notifier=UsageNotifier(get_tenant_redis()),
        max_batch_size=settings.INGEST_MAX_BATCH_SIZE,
    )
    app.state.conflict_resolver = ConflictResolver(repository, sync_queue)
    app.state.bridge_config_service = BridgeConfigService(repository)
    app.state.client_change_tracker = ClientChangeTracker(repository, sync_queue)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, Sentry and ledger sync on startup, close on shutdown."""
    import structlog

    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    # Initialize Sentry if DSN is configured
    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    # ── Ledger Sync Initialization ───────────────────────────────────────
    # A failure here leaves the services unset; the ledger routes then
    # answer 503 while health, tenants and auth keep working.
    app.state.auto_sync_scheduler = None
    try:
        init_ledger_sync(app, settings)
        log.info("ledger.sync_initialized")
    except Exception:
        log.warning("ledger.sync_init_failed", exc_info=True)
        for name in (
            "ledger_repository",
            "sync_queue",
            "dispatch_worker",
            "polling_transport",
            "ingestion_matcher",
            "conflict_resolver",
            "bridge_config_service",
            "client_change_tracker",
        ):
            setattr(app.state, name, None)

    if settings.AUTO_SYNC_ENABLED and getattr(app.state, "dispatch_worker", None) is not None:
        try:
            from src.app.ledger.scheduler import AutoSyncScheduler

            scheduler = AutoSyncScheduler(
                app.state.dispatch_worker,
                app.state.bridge_config_service,
                tick_seconds=settings.AUTO_SYNC_TICK_SECONDS,
            )
            scheduler.start()
            app.state.auto_sync_scheduler = scheduler
            log.info("ledger.auto_sync_started", tick_seconds=settings.AUTO_SYNC_TICK_SECONDS)
        except Exception:
            log.warning("ledger.auto_sync_start_failed", exc_info=True)

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    scheduler = getattr(app.state, "auto_sync_scheduler", None)
    if scheduler is not None:
        scheduler.shutdown()
        log.info("ledger.auto_sync_stopped")

    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Ledger Sync API",
        version="0.1.0",
        description="Multi-tenant sync engine between client records and an external bookkeeping ledger",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    # Tenant middleware (inner -- resolves tenant context from JWT/header)
    redis_client = get_redis_pool()
    app.add_middleware(TenantAuthMiddleware, redis_client=redis_client)

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

    # Include v1 API router (health, tenants, auth, bridge, ledger-sync, clients)
    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
