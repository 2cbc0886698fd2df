"""Tenant resolution middleware with JWT and header-based modes.

Resolves tenant context from:
1. JWT claims in Authorization header (operator sessions)
2. X-Tenant-ID header (fallback, e.g. for login)

After resolution, sets TenantContext in contextvars for the request scope.
Bridge routes are skipped: they authenticate with the shared bridge secret
and resolve the tenant named in the request themselves.
"""

from __future__ import annotations

import logging

import redis.asyncio as aioredis
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from jose import JWTError, jwt
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.app.config import get_settings
from src.app.core.tenant import (
    SKIP_TENANT_PATHS,
    TenantContext,
    lookup_tenant,
    tenant_scope,
)

logger = logging.getLogger(__name__)


class TenantAuthMiddleware(BaseHTTPMiddleware):
    """Middleware that resolves tenant from JWT claims or X-Tenant-ID header.

    Supports two modes:
    1. JWT mode: Extract tenant_id from JWT claims and verify it is active.
    2. Header mode: Use X-Tenant-ID header.

    Paths in SKIP_TENANT_PATHS are excluded from tenant resolution.
    """

    def __init__(self, app, redis_client: aioredis.Redis | None = None):
        super().__init__(app)
        self._redis = redis_client

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        # Skip tenant resolution for excluded paths
        path = request.url.path
        if any(path.startswith(skip) for skip in SKIP_TENANT_PATHS):
            return await call_next(request)

        tenant_ctx = await self._resolve_from_jwt(request)

        if not tenant_ctx:
            tenant_ctx = await self._resolve_from_header(request)

        if not tenant_ctx:
            return JSONResponse(
                status_code=400,
                content={
                    "detail": "Missing tenant context. Provide Authorization header with JWT or X-Tenant-ID header."
                },
            )

        with tenant_scope(tenant_ctx):
            return await call_next(request)

    async def _resolve_from_jwt(self, request: Request) -> TenantContext | None:
        """Extract tenant context from JWT claims in Authorization header."""
        auth_header = request.headers.get("Authorization")
        if not auth_header or not auth_header.startswith("Bearer "):
            return None

        token_str = auth_header[7:]  # Strip "Bearer "
        settings = get_settings()

        try:
            payload = jwt.decode(
                token_str,
                settings.JWT_SECRET_KEY,
                algorithms=[settings.JWT_ALGORITHM],
            )
        except JWTError:
            return None

        tenant_id = payload.get("tenant_id")
        if not tenant_id:
            return None

        # Verifies the tenant exists and is active
        return await lookup_tenant(tenant_id, self._redis)

    async def _resolve_from_header(self, request: Request) -> TenantContext | None:
        """Resolve tenant from X-Tenant-ID header (fallback for login, etc.)."""
        tenant_id = request.headers.get("X-Tenant-ID")
        if not tenant_id:
            return None

        return await lookup_tenant(tenant_id, self._redis)
