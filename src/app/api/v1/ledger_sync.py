"""Operator endpoints for the ledger sync engine.

Read routes need an authenticated tenant user; mutations (manual triggers,
dispatch, retries, conflict resolutions, bridge configuration) need the
tenant admin role. Services are read from app.state and return 503 until
the lifespan has initialized them.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from src.app.api.deps import get_current_user, get_tenant, ledger_http_error, require_admin
from src.app.core.tenant import TenantContext
from src.app.ledger.exceptions import LedgerSyncError
from src.app.ledger.schemas import (
    BridgeConfigRead,
    BridgeConfigUpdate,
    ConflictRead,
    DispatchBatchResult,
    HistoryEntryRead,
    IngestionRunRead,
    QueueItemRead,
    QueueStats,
    QueueStatus,
    ResolutionDecision,
)
from src.app.models.tenant import User

router = APIRouter(prefix="/api/v1/ledger-sync", tags=["ledger-sync"])


# ── Response Schemas ─────────────────────────────────────────────────────────


class TriggerResponse(BaseModel):
    run_id: str
    status: str = "requested"


class ConfigurationResponse(BaseModel):
    """Bridge configuration as shown to operators. The credential is never echoed."""

    configured: bool = False
    external_company_name: str | None = None
    username: str | None = None
    has_credential: bool = False
    auto_sync_enabled: bool = False
    sync_interval_minutes: int = 30
    last_dispatch_at: datetime | None = None
    updated_at: datetime | None = None


# ── Request Schemas ──────────────────────────────────────────────────────────


class ProcessQueueRequest(BaseModel):
    """Request body for a manual dispatch batch."""

    max_items: int | None = Field(default=None, ge=1, le=100)


class ResolveConflictRequest(BaseModel):
    """Operator decision on a pending conflict."""

    decision: ResolutionDecision
    notes: str | None = Field(default=None, max_length=2000)


# ── Dependency Injection Helper ──────────────────────────────────────────────


def _get_service(request: Request, name: str) -> Any:
    """Retrieve a ledger service from app.state, 503 if not available."""
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Ledger sync not initialized",
        )
    return service


def _config_to_response(config: BridgeConfigRead | None) -> ConfigurationResponse:
    if config is None:
        return ConfigurationResponse()
    return ConfigurationResponse(
        configured=config.is_configured,
        external_company_name=config.external_company_name,
        username=config.username,
        has_credential=config.has_credential,
        auto_sync_enabled=config.auto_sync_enabled,
        sync_interval_minutes=config.sync_interval_minutes,
        last_dispatch_at=config.last_dispatch_at,
        updated_at=config.updated_at,
    )


# ── Ingestion Runs ───────────────────────────────────────────────────────────


@router.get("/runs", response_model=list[IngestionRunRead])
async def list_runs(
    request: Request,
    limit: int = Query(default=10, ge=1, le=100),
    user: User = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
) -> list[IngestionRunRead]:
    """Most recent ingestion runs, newest first."""
    matcher = _get_service(request, "ingestion_matcher")
    return await matcher.list_runs(tenant.tenant_id, limit=limit)


@router.get("/runs/latest", response_model=IngestionRunRead | None)
async def latest_run(
    request: Request,
    user: User = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
) -> IngestionRunRead | None:
    """Latest completed ingestion run, or null when none has completed."""
    matcher = _get_service(request, "ingestion_matcher")
    return await matcher.latest_run(tenant.tenant_id)


@router.post("/runs/trigger", response_model=TriggerResponse, status_code=202)
async def trigger_run(
    request: Request,
    user: User = Depends(require_admin),
    tenant: TenantContext = Depends(get_tenant),
) -> TriggerResponse:
    """Request a manual ingestion; the bridge's next upload completes it."""
    matcher = _get_service(request, "ingestion_matcher")
    run_id = await matcher.request_run(tenant.tenant_id)
    return TriggerResponse(run_id=run_id)


# ── Sync Queue ───────────────────────────────────────────────────────────────


@router.get("/queue", response_model=list[QueueItemRead])
async def list_queue(
    request: Request,
    queue_status: QueueStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    user: User = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
) -> list[QueueItemRead]:
    """Queue items, optionally filtered by status."""
    queue = _get_service(request, "sync_queue")
    return await queue.list_items(tenant.tenant_id, status=queue_status, limit=limit, offset=offset)


@router.post("/queue/process", response_model=DispatchBatchResult)
async def process_queue(
    request: Request,
    body: ProcessQueueRequest | None = None,
    user: User = Depends(require_admin),
    tenant: TenantContext = Depends(get_tenant),
) -> DispatchBatchResult:
    """Run one dispatch batch now."""
    worker = _get_service(request, "dispatch_worker")
    max_items = body.max_items if body is not None else None
    try:
        return await worker.process_batch(tenant.tenant_id, max_items)
    except LedgerSyncError as exc:
        raise ledger_http_error(exc)


@router.post("/queue/{item_id}/retry", response_model=QueueItemRead)
async def retry_queue_item(
    item_id: str,
    request: Request,
    user: User = Depends(require_admin),
    tenant: TenantContext = Depends(get_tenant),
) -> QueueItemRead:
    """Reset a failed (or stale processing) item back to pending."""
    queue = _get_service(request, "sync_queue")
    try:
        return await queue.retry(tenant.tenant_id, item_id)
    except LedgerSyncError as exc:
        raise ledger_http_error(exc)


@router.get("/stats", response_model=QueueStats)
async def queue_stats(
    request: Request,
    user: User = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
) -> QueueStats:
    queue = _get_service(request, "sync_queue")
    return await queue.stats(tenant.tenant_id)


@router.get("/history/{client_id}", response_model=list[HistoryEntryRead])
async def client_history(
    client_id: str,
    request: Request,
    limit: int = Query(default=50, ge=1, le=200),
    user: User = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
) -> list[HistoryEntryRead]:
    """Audit trail for one client, newest first."""
    queue = _get_service(request, "sync_queue")
    return await queue.history(tenant.tenant_id, client_id, limit=limit)


# ── Conflicts ────────────────────────────────────────────────────────────────


@router.get("/conflicts", response_model=list[ConflictRead])
async def list_conflicts(
    request: Request,
    limit: int = Query(default=100, ge=1, le=500),
    user: User = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
) -> list[ConflictRead]:
    """Pending conflicts, newest first."""
    resolver = _get_service(request, "conflict_resolver")
    return await resolver.list_pending(tenant.tenant_id, limit=limit)


@router.post("/conflicts/{conflict_id}/resolve", response_model=ConflictRead)
async def resolve_conflict(
    conflict_id: str,
    body: ResolveConflictRequest,
    request: Request,
    user: User = Depends(require_admin),
    tenant: TenantContext = Depends(get_tenant),
) -> ConflictRead:
    """Resolve a pending conflict in favour of this backend or the ledger."""
    resolver = _get_service(request, "conflict_resolver")
    try:
        return await resolver.resolve(
            tenant.tenant_id,
            conflict_id,
            body.decision,
            resolved_by=str(user.id),
            notes=body.notes,
        )
    except LedgerSyncError as exc:
        raise ledger_http_error(exc)


# ── Bridge Configuration ─────────────────────────────────────────────────────


@router.get("/configuration", response_model=ConfigurationResponse)
async def get_configuration(
    request: Request,
    user: User = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
) -> ConfigurationResponse:
    service = _get_service(request, "bridge_config_service")
    config = await service.get(tenant.tenant_id)
    return _config_to_response(config)


@router.post("/configuration", response_model=ConfigurationResponse)
async def update_configuration(
    body: BridgeConfigUpdate,
    request: Request,
    user: User = Depends(require_admin),
    tenant: TenantContext = Depends(get_tenant),
) -> ConfigurationResponse:
    """Create or replace the tenant's bridge configuration."""
    service = _get_service(request, "bridge_config_service")
    config = await service.configure(tenant.tenant_id, body)
    return _config_to_response(config)
