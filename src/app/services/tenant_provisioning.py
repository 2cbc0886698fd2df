"""Tenant provisioning service.

Handles creating new tenants with isolated PostgreSQL schemas,
RLS policies, and Redis namespaces. This is the core of the
multi-tenant onboarding flow.
"""

from __future__ import annotations

import logging
import re
import uuid

from fastapi import HTTPException
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.core.database import TenantBase, get_engine
from src.app.core.redis import get_redis_pool
from src.app.models.shared import Tenant, active_tenants

# Registers every tenant table on TenantBase.metadata
import src.app.ledger.models  # noqa: F401
import src.app.models.tenant  # noqa: F401

logger = logging.getLogger(__name__)

# Slug validation: lowercase alphanumeric + hyphens, 3-50 chars
SLUG_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]{1,48}[a-z0-9]$")


def tenant_table_names() -> list[str]:
    """Names of all per-tenant tables, in dependency order."""
    return [table.name for table in TenantBase.metadata.sorted_tables]


async def provision_tenant(slug: str, name: str) -> dict:
    """Provision a new tenant with isolated schema, RLS, and Redis namespace.

    Steps:
    1. Validate slug format
    2. Compute schema_name
    3. Check for duplicate slug
    4. Create PostgreSQL schema
    5. Create users and ledger tables and enable RLS on each
    6. Insert tenant record in shared.tenants
    7. Initialize Redis namespace
    8. Return tenant data

    Raises:
        HTTPException(400): Invalid slug format
        HTTPException(409): Tenant with slug already exists
    """
    # 1. Validate slug
    if not SLUG_PATTERN.match(slug):
        raise HTTPException(
            status_code=400,
            detail="Slug must be 3-50 chars, lowercase alphanumeric and hyphens only, "
                   "must start and end with alphanumeric character.",
        )

    # 2. Compute schema name
    schema_name = f"tenant_{slug.replace('-', '_')}"

    engine = get_engine()
    async with engine.begin() as conn:
        # 3. Check for duplicate
        result = await conn.execute(
            text("SELECT id FROM shared.tenants WHERE slug = :slug"),
            {"slug": slug},
        )
        if result.first():
            raise HTTPException(status_code=409, detail=f"Tenant with slug '{slug}' already exists")

        # 4. Create PostgreSQL schema
        await conn.execute(text(f'CREATE SCHEMA IF NOT EXISTS "{schema_name}"'))

        # 5. Create tenant tables from the models, remapping the placeholder schema
        tenant_conn = await conn.execution_options(
            schema_translate_map={"tenant": schema_name}
        )
        await tenant_conn.run_sync(
            lambda sync_conn: TenantBase.metadata.create_all(sync_conn, checkfirst=False)
        )

        # Enable and FORCE RLS with the isolation policy on every tenant table
        for table in tenant_table_names():
            await conn.execute(text(f'ALTER TABLE "{schema_name}".{table} ENABLE ROW LEVEL SECURITY'))
            await conn.execute(text(f'ALTER TABLE "{schema_name}".{table} FORCE ROW LEVEL SECURITY'))
            await conn.execute(text(f"""
                CREATE POLICY tenant_isolation ON "{schema_name}".{table}
                FOR ALL
                USING (tenant_id::text = current_setting('app.current_tenant_id', true))
                WITH CHECK (tenant_id::text = current_setting('app.current_tenant_id', true))
            """))

        # Case-insensitive login emails
        await conn.execute(text(
            f'CREATE UNIQUE INDEX IF NOT EXISTS idx_users_email_tenant ON "{schema_name}".users(tenant_id, lower(email))'
        ))

        # 6. Insert tenant record
        tenant_id = uuid.uuid4()
        await conn.execute(
            text("""
                INSERT INTO shared.tenants (id, slug, name, schema_name, is_active, created_at)
                VALUES (:id, :slug, :name, :schema_name, true, now())
            """),
            {"id": tenant_id, "slug": slug, "name": name, "schema_name": schema_name},
        )

    # 7. Initialize Redis namespace
    try:
        redis = get_redis_pool()
        await redis.set(f"t:{tenant_id}:initialized", "true")
    except Exception:
        logger.warning("Failed to initialize Redis namespace for tenant %s", slug)

    logger.info("Provisioned tenant %s (%s)", slug, schema_name)

    # 8. Return tenant data
    return {
        "tenant_id": str(tenant_id),
        "slug": slug,
        "name": name,
        "schema_name": schema_name,
    }


async def list_tenants() -> list[Tenant]:
    """List all active tenants, oldest first."""
    async with AsyncSession(get_engine()) as session:
        return list((await session.scalars(active_tenants())).all())
