"""Bridge-facing endpoints for the ledger sync engine.

The on-premise bridge is the only caller. It authenticates with the shared
secret in ``X-Bridge-Token`` and names the tenant in each request, so the
tenant middleware skips this prefix and every handler resolves and scopes
the tenant itself.

Routes:
- POST /ledger-records: upload a batch of external ledger records
- GET  /external-ids: identifiers already mapped for the tenant
- GET  /pending: claim queue items for delivery (polling transport)
- POST /queue/{item_id}/outcome: report the delivery outcome of a claimed item
- POST /conflicts: report a field-level conflict
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from src.app.api.deps import TenantLookup, get_tenant_lookup, ledger_http_error, require_bridge
from src.app.core.tenant import TenantContext, tenant_scope
from src.app.ledger.exceptions import LedgerSyncError
from src.app.ledger.schemas import (
    BridgeOutcome,
    ConflictRead,
    ConflictReport,
    ExternalLedgerRecord,
    IngestionSummary,
    PendingDelivery,
    QueueItemRead,
    RunStatus,
)

logger = structlog.get_logger(__name__)

router = APIRouter(
    prefix="/api/v1/bridge",
    tags=["bridge"],
    dependencies=[Depends(require_bridge)],
)


# ── Request Schemas ──────────────────────────────────────────────────────────


class LedgerRecordsRequest(BaseModel):
    """A batch of external ledger records for one tenant."""

    tenant_id: str
    records: list[ExternalLedgerRecord] = Field(default_factory=list)


class OutcomeRequest(BaseModel):
    """Delivery outcome of a claimed queue item."""

    tenant_id: str
    success: bool
    error: str | None = None
    external_response: Any = None
    external_id: str | None = None


class ConflictReportRequest(ConflictReport):
    """Conflict report scoped to a tenant."""

    tenant_id: str


# ── Response Schemas ─────────────────────────────────────────────────────────


class ExternalIdsResponse(BaseModel):
    external_ids: list[dict[str, str]] = Field(default_factory=list)


class PendingResponse(BaseModel):
    items: list[PendingDelivery] = Field(default_factory=list)


# ── Dependency Injection Helpers ─────────────────────────────────────────────


def _get_service(request: Request, name: str) -> Any:
    """Retrieve a ledger service from app.state, 503 if not available."""
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Ledger sync not initialized",
        )
    return service


async def _resolve_tenant(tenant_id: str, lookup: TenantLookup) -> TenantContext:
    ctx = await lookup(tenant_id)
    if ctx is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Tenant not found: {tenant_id}",
        )
    return ctx


# ── Ingestion ────────────────────────────────────────────────────────────────


@router.post("/ledger-records", response_model=IngestionSummary)
async def upload_ledger_records(
    body: LedgerRecordsRequest,
    request: Request,
    lookup: TenantLookup = Depends(get_tenant_lookup),
):
    """Merge a batch of external ledger records into the tenant's clients.

    A batch that fails as a whole is rolled back and returned with status 500
    and the failed run summary.
    """
    matcher = _get_service(request, "ingestion_matcher")
    ctx = await _resolve_tenant(body.tenant_id, lookup)

    with tenant_scope(ctx):
        try:
            summary = await matcher.ingest(ctx.tenant_id, body.records)
        except LedgerSyncError as exc:
            raise ledger_http_error(exc)

    if summary.status == RunStatus.FAILED:
        logger.warning("bridge.ingestion_failed", tenant_id=ctx.tenant_id, run_id=summary.run_id)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=summary.model_dump(mode="json"),
        )
    return summary


@router.get("/external-ids", response_model=ExternalIdsResponse)
async def list_external_ids(
    request: Request,
    tenant_id: str = Query(..., description="Tenant the bridge is syncing"),
    lookup: TenantLookup = Depends(get_tenant_lookup),
) -> ExternalIdsResponse:
    """External identifiers already mapped to clients."""
    matcher = _get_service(request, "ingestion_matcher")
    ctx = await _resolve_tenant(tenant_id, lookup)

    with tenant_scope(ctx):
        external_ids = await matcher.list_external_ids(ctx.tenant_id)
    return ExternalIdsResponse(external_ids=external_ids)


# ── Polling Transport ────────────────────────────────────────────────────────


@router.get("/pending", response_model=PendingResponse)
async def fetch_pending(
    request: Request,
    tenant_id: str = Query(..., description="Tenant the bridge is syncing"),
    batch_size: int | None = Query(default=None, ge=1, le=100),
    lookup: TenantLookup = Depends(get_tenant_lookup),
) -> PendingResponse:
    """Claim pending queue items for the bridge to deliver."""
    transport = _get_service(request, "polling_transport")
    ctx = await _resolve_tenant(tenant_id, lookup)

    with tenant_scope(ctx):
        try:
            items = await transport.fetch_pending(ctx.tenant_id, batch_size)
        except LedgerSyncError as exc:
            raise ledger_http_error(exc)
    return PendingResponse(items=items)


@router.post("/queue/{item_id}/outcome", response_model=QueueItemRead)
async def report_outcome(
    item_id: str,
    body: OutcomeRequest,
    request: Request,
    lookup: TenantLookup = Depends(get_tenant_lookup),
) -> QueueItemRead:
    """Record the outcome of delivering a claimed queue item."""
    transport = _get_service(request, "polling_transport")
    ctx = await _resolve_tenant(body.tenant_id, lookup)
    outcome = BridgeOutcome(
        success=body.success,
        error=body.error,
        external_response=body.external_response,
        external_id=body.external_id,
    )

    with tenant_scope(ctx):
        try:
            return await transport.report_outcome(ctx.tenant_id, item_id, outcome)
        except LedgerSyncError as exc:
            raise ledger_http_error(exc)


# ── Conflicts ────────────────────────────────────────────────────────────────


@router.post("/conflicts", response_model=ConflictRead, status_code=201)
async def report_conflict(
    body: ConflictReportRequest,
    request: Request,
    lookup: TenantLookup = Depends(get_tenant_lookup),
) -> ConflictRead:
    """Record (or refresh) a pending field conflict."""
    resolver = _get_service(request, "conflict_resolver")
    ctx = await _resolve_tenant(body.tenant_id, lookup)
    report = ConflictReport.model_validate(body.model_dump(exclude={"tenant_id"}))

    with tenant_scope(ctx):
        try:
            return await resolver.report(ctx.tenant_id, report)
        except LedgerSyncError as exc:
            raise ledger_http_error(exc)
