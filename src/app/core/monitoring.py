"""Prometheus metrics, Sentry integration, and bridge call tracking.

Provides:
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- Ledger sync counters (dispatch outcomes, ingested records, conflicts)
- init_sentry(): Initialize Sentry with tenant-aware before_send callback
- track_bridge_call(): Context manager for bridge call metrics
- get_metrics_response(): Prometheus exposition for the /metrics route
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

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
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code", "tenant_id"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint", "tenant_id"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Ledger Sync Metrics ──────────────────────────────────────────────────────

ledger_dispatch_total = Counter(
    "ledger_dispatch_total",
    "Outbound queue item delivery attempts by outcome",
    ["tenant_id", "transport", "outcome"],
)

ledger_ingested_records_total = Counter(
    "ledger_ingested_records_total",
    "External ledger records processed by the ingestion matcher",
    ["tenant_id", "result"],
)

ledger_conflicts_total = Counter(
    "ledger_conflicts_total",
    "Field conflicts reported by the bridge or resolved by operators",
    ["tenant_id", "event"],
)

bridge_request_duration_seconds = Histogram(
    "bridge_request_duration_seconds",
    "Bridge push call duration in seconds",
    ["tenant_id", "status"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that records Prometheus metrics for every HTTP request.

    Extracts tenant_id from the request context (if available) and records
    request count and duration per method/endpoint/tenant.
    Skips the /metrics endpoint itself to avoid self-referential counting.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        tenant_id = "unknown"
        try:
            from src.app.core.tenant import get_current_tenant

            ctx = get_current_tenant()
            tenant_id = ctx.tenant_id
        except (RuntimeError, LookupError):
            pass

        endpoint = request.url.path

        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
            tenant_id=tenant_id,
        ).inc()

        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint,
            tenant_id=tenant_id,
        ).observe(duration)

        return response


# ── Bridge Metrics Helper ────────────────────────────────────────────────────


@asynccontextmanager
async def track_bridge_call(tenant_id: str) -> AsyncGenerator[dict[str, Any], None]:
    """Context manager that tracks bridge push call duration.

    Usage:
        async with track_bridge_call(tenant_id) as tracker:
            result = await bridge.push_update(...)
            tracker["status"] = "success" if result.success else "rejected"

    Exceptions (including timeouts) are recorded with status "error".
    """
    tracker: dict[str, Any] = {"status": "success"}
    start_time = time.perf_counter()

    try:
        yield tracker
    except BaseException:
        tracker["status"] = "error"
        raise
    finally:
        bridge_request_duration_seconds.labels(
            tenant_id=tenant_id,
            status=tracker["status"],
        ).observe(time.perf_counter() - start_time)


# ── Sentry Integration ───────────────────────────────────────────────────────


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry SDK with tenant-aware event tagging.

    Args:
        dsn: Sentry DSN string.
        environment: Deployment environment (development, staging, production).
    """
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.starlette import StarletteIntegration

    traces_sample_rate = 0.1 if environment == "production" else 1.0

    def before_send(event: dict, hint: dict) -> dict:
        """Add tenant context to Sentry events."""
        try:
            from src.app.core.tenant import get_current_tenant

            ctx = get_current_tenant()
            if "tags" not in event:
                event["tags"] = {}
            event["tags"]["tenant_id"] = ctx.tenant_id
            event["tags"]["tenant_slug"] = ctx.tenant_slug
        except (RuntimeError, LookupError):
            pass
        return event

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=traces_sample_rate,
        integrations=[
            StarletteIntegration(),
            FastApiIntegration(),
        ],
        before_send=before_send,
    )


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
