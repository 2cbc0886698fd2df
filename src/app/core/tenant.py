"""Tenant context propagation via Python contextvars.

This module is the foundation of multi-tenant isolation. The TenantContext
is set by middleware at the start of each request (or by the bridge routes
and the auto-sync scheduler, which resolve the tenant themselves) and is
accessible anywhere in the call stack via get_current_tenant(). Every
database session and Redis key is scoped by this context.
"""

from __future__ import annotations

import contextvars
import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)

# ── Tenant Context ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TenantContext:
    """Immutable tenant context for the current request."""

    tenant_id: str
    tenant_slug: str
    schema_name: str  # e.g., "tenant_acme"


_tenant_context: contextvars.ContextVar[TenantContext] = contextvars.ContextVar("tenant_context")


def get_current_tenant() -> TenantContext:
    """Get the tenant context for the current request.

    Raises RuntimeError if no tenant context has been set (i.e., the call
    is not within a tenant-scoped request).
    """
    try:
        return _tenant_context.get()
    except LookupError:
        raise RuntimeError("No tenant context set -- request is not tenant-scoped")


def set_tenant_context(ctx: TenantContext) -> contextvars.Token[TenantContext]:
    """Set the tenant context for the current request. Returns a token for reset."""
    return _tenant_context.set(ctx)


@contextmanager
def tenant_scope(ctx: TenantContext) -> Iterator[TenantContext]:
    """Run a block with ``ctx`` as the current tenant, restoring on exit."""
    token = set_tenant_context(ctx)
    try:
        yield ctx
    finally:
        _tenant_context.reset(token)


# ── Paths that skip tenant resolution ───────────────────────────────────────

# Bridge routes carry the tenant in the request body/query and authenticate
# with the shared bridge secret, so the middleware leaves them alone.
SKIP_TENANT_PATHS = (
    "/health",
    "/docs",
    "/openapi.json",
    "/redoc",
    "/metrics",
    "/api/v1/tenants",
    "/api/v1/bridge",
)


# ── Tenant Lookup ───────────────────────────────────────────────────────────


async def lookup_tenant(
    tenant_id: str, redis_client: aioredis.Redis | None = None
) -> TenantContext | None:
    """Resolve an active tenant by ID, using Redis cache when available."""
    cache_key = f"tenant:lookup:{tenant_id}"
    if redis_client is not None:
        try:
            cached = await redis_client.get(cache_key)
            if cached:
                data = json.loads(cached)
                return TenantContext(
                    tenant_id=data["tenant_id"],
                    tenant_slug=data["tenant_slug"],
                    schema_name=data["schema_name"],
                )
        except Exception:
            logger.warning("Redis cache lookup failed for tenant %s", tenant_id)

    # Imported here to avoid circular imports
    from sqlalchemy import cast, String
    from sqlalchemy.ext.asyncio import AsyncSession

    from src.app.core.database import get_engine
    from src.app.models.shared import Tenant, active_tenants

    async with AsyncSession(get_engine()) as session:
        tenant = await session.scalar(
            active_tenants().where(cast(Tenant.id, String) == tenant_id)
        )
    if tenant is None:
        return None
    ctx = tenant.to_context()

    # Cache in Redis for 5 minutes
    if redis_client is not None:
        try:
            await redis_client.set(
                cache_key,
                json.dumps({"tenant_id": ctx.tenant_id, "tenant_slug": ctx.tenant_slug, "schema_name": ctx.schema_name}),
                ex=300,
            )
        except Exception:
            logger.warning("Redis cache set failed for tenant %s", tenant_id)

    return ctx


async def list_active_tenants() -> list[TenantContext]:
    """Return contexts for every active tenant (used by background jobs)."""
    from sqlalchemy.ext.asyncio import AsyncSession

    from src.app.core.database import get_engine
    from src.app.models.shared import active_tenants

    async with AsyncSession(get_engine()) as session:
        tenants = (await session.scalars(active_tenants())).all()
    return [tenant.to_context() for tenant in tenants]
