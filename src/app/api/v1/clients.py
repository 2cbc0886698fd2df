"""Client endpoints with change tracking.

Edits to syncable client fields go through ClientChangeTracker so the
changed fields are marked pending and queued for the external ledger.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field

from src.app.api.deps import get_current_user, get_tenant, ledger_http_error
from src.app.core.tenant import TenantContext
from src.app.ledger.exceptions import LedgerSyncError
from src.app.ledger.schemas import ClientChangeResult, ClientRead
from src.app.models.tenant import User

router = APIRouter(prefix="/api/v1/clients", tags=["clients"])


class UpdateClientRequest(BaseModel):
    """Field changes keyed by syncable field name."""

    changes: dict[str, Any] = Field(default_factory=dict)


def _get_change_tracker(request: Request) -> Any:
    """Retrieve ClientChangeTracker from app.state, 503 if not available."""
    tracker = getattr(request.app.state, "client_change_tracker", None)
    if tracker is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Ledger sync not initialized",
        )
    return tracker


@router.get("/{client_id}", response_model=ClientRead)
async def get_client(
    client_id: str,
    request: Request,
    user: User = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
) -> ClientRead:
    tracker = _get_change_tracker(request)
    try:
        return await tracker.get_client(tenant.tenant_id, client_id)
    except LedgerSyncError as exc:
        raise ledger_http_error(exc)


@router.patch("/{client_id}", response_model=ClientChangeResult)
async def update_client(
    client_id: str,
    body: UpdateClientRequest,
    request: Request,
    user: User = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
) -> ClientChangeResult:
    """Apply field changes and queue them for the external ledger."""
    tracker = _get_change_tracker(request)
    try:
        return await tracker.record_changes(
            tenant.tenant_id, client_id, body.changes, actor=str(user.id)
        )
    except LedgerSyncError as exc:
        raise ledger_http_error(exc)
