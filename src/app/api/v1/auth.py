"""Authentication API endpoints.

Provides operator login and current user info. Operators drive the ledger
sync console with the JWT issued here; the bridge never logs in.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.api.deps import get_current_user, get_db
from src.app.core.security import create_access_token, verify_password
from src.app.core.tenant import get_current_tenant
from src.app.models.tenant import User
from src.app.schemas.auth import LoginRequest, TokenResponse, UserResponse

router = APIRouter(prefix="/api/v1/auth", tags=["auth"])


@router.post("/login", response_model=TokenResponse)
async def login(body: LoginRequest, db: AsyncSession = Depends(get_db)):
    """Authenticate a user and return a JWT access token.

    Requires X-Tenant-ID header (or tenant context from middleware) to scope
    the user lookup to the correct tenant.
    """
    tenant = get_current_tenant()

    result = await db.execute(
        select(User).where(
            func.lower(User.email) == body.email.lower(),
            User.tenant_id == tenant.tenant_id,
            User.is_active == True,  # noqa: E712
        )
    )
    user = result.scalar_one_or_none()

    if not user or not user.hashed_password:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
        )

    if not verify_password(body.password, user.hashed_password):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
        )

    token_data = {
        "sub": str(user.id),
        "tenant_id": str(user.tenant_id),
        "tenant_slug": tenant.tenant_slug,
        "email": user.email,
        "role": user.role,
    }
    return TokenResponse(access_token=create_access_token(token_data))


@router.get("/me", response_model=UserResponse)
async def get_me(current_user: User = Depends(get_current_user)):
    """Return current user info."""
    tenant = get_current_tenant()
    return UserResponse(
        id=str(current_user.id),
        email=current_user.email,
        name=current_user.name,
        role=current_user.role,
        tenant_id=str(current_user.tenant_id),
        tenant_slug=tenant.tenant_slug,
    )
