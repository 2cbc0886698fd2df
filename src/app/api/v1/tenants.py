"""Tenant onboarding endpoints.

These skip tenant middleware (no X-Tenant-ID needed). Provisioning creates
the tenant schema with its user and ledger sync tables.
"""

from __future__ import annotations

from fastapi import APIRouter, status

from src.app.schemas.tenant import TenantCreate, TenantResponse
from src.app.services.tenant_provisioning import list_tenants, provision_tenant

router = APIRouter(prefix="/api/v1/tenants", tags=["tenants"])


@router.post("", response_model=TenantResponse, status_code=status.HTTP_201_CREATED)
async def create_tenant(body: TenantCreate) -> TenantResponse:
    """Provision a company with an isolated schema and RLS-protected ledger tables."""
    result = await provision_tenant(slug=body.slug, name=body.name)
    return TenantResponse(
        id=result["tenant_id"],
        slug=result["slug"],
        name=result["name"],
        schema_name=result["schema_name"],
    )


@router.get("", response_model=list[TenantResponse])
async def get_tenants() -> list[TenantResponse]:
    return [TenantResponse.model_validate(tenant) for tenant in await list_tenants()]
