"""FastAPI dependency injection for tenant-scoped resources and authentication.

These dependencies are used in endpoint function signatures to inject
the correct tenant context, database session, Redis client, and
authenticated user. Operator routes authenticate with JWT sessions;
bridge routes authenticate with the shared bridge secret.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Awaitable, Callable
from functools import partial

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.core.database import get_tenant_session
from src.app.core.redis import get_redis_pool
from src.app.core.security import verify_bridge_token, verify_token
from src.app.core.tenant import TenantContext, get_current_tenant, lookup_tenant
from src.app.ledger.exceptions import (
    BridgeNotConfiguredError,
    ClientNotFoundError,
    ConflictAlreadyResolvedError,
    ConflictNotFoundError,
    IngestionBatchTooLargeError,
    IngestionInProgressError,
    InvalidSyncFieldError,
    LedgerSyncError,
    QueueItemNotFoundError,
    QueueItemStateError,
)
from src.app.models.tenant import User

ADMIN_ROLE = "admin"

TenantLookup = Callable[[str], Awaitable[TenantContext | None]]


async def get_tenant() -> TenantContext:
    """Get the current tenant context (set by TenantAuthMiddleware)."""
    return get_current_tenant()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Get a tenant-scoped database session."""
    async for session in get_tenant_session():
        yield session


async def get_current_user(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> User:
    """Extract and validate the current user from the JWT bearer token.

    Returns the User object from the database.

    Raises:
        HTTPException(401): If no valid authentication is provided.
        HTTPException(403): If user's tenant doesn't match the current tenant context.
    """
    tenant = get_current_tenant()

    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = verify_token(auth_header[7:], token_type="access")
    user_id = payload.get("sub")
    token_tenant_id = payload.get("tenant_id")

    # Verify tenant context matches JWT claims
    if token_tenant_id and token_tenant_id != tenant.tenant_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Token tenant does not match request tenant context",
        )

    result = await db.execute(
        select(User).where(
            User.id == user_id,
            User.tenant_id == tenant.tenant_id,
            User.is_active == True,  # noqa: E712
        )
    )
    user = result.scalar_one_or_none()
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found or inactive",
        )
    return user


async def require_admin(user: User = Depends(get_current_user)) -> User:
    """Allow only tenant admins (bridge configuration, retries, resolutions)."""
    if user.role != ADMIN_ROLE:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Tenant admin role required",
        )
    return user


# ── Bridge Authentication ───────────────────────────────────────────────────


async def require_bridge(
    x_bridge_token: str | None = Header(default=None, alias="X-Bridge-Token"),
) -> None:
    """Authenticate a bridge-originated call by its shared secret."""
    verify_bridge_token(x_bridge_token)


async def get_tenant_lookup() -> TenantLookup:
    """Resolver used by bridge routes to turn a tenant id into a TenantContext."""
    return partial(lookup_tenant, redis_client=get_redis_pool())


# ── Ledger Error Translation ────────────────────────────────────────────────

_LEDGER_ERROR_STATUS: dict[type[LedgerSyncError], int] = {
    BridgeNotConfiguredError: status.HTTP_409_CONFLICT,
    IngestionInProgressError: status.HTTP_409_CONFLICT,
    IngestionBatchTooLargeError: status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
    QueueItemNotFoundError: status.HTTP_404_NOT_FOUND,
    QueueItemStateError: status.HTTP_409_CONFLICT,
    ConflictNotFoundError: status.HTTP_404_NOT_FOUND,
    ConflictAlreadyResolvedError: status.HTTP_409_CONFLICT,
    ClientNotFoundError: status.HTTP_404_NOT_FOUND,
    InvalidSyncFieldError: status.HTTP_422_UNPROCESSABLE_ENTITY,
}


def ledger_http_error(exc: LedgerSyncError) -> HTTPException:
    """Translate a ledger domain error into the HTTPException routers raise."""
    code = _LEDGER_ERROR_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST)
    return HTTPException(status_code=code, detail=str(exc))
