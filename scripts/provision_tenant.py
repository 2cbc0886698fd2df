#!/usr/bin/env python3
"""CLI script to provision a new tenant.

Usage:
    python scripts/provision_tenant.py --slug acme --name "Acme Plumbing"
    python scripts/provision_tenant.py --slug acme --name "Acme Plumbing" \
        --admin-email admin@acme.com --admin-password changeme \
        --external-company "Acme Plumbing Ltd"

Connects directly to the database using DATABASE_URL from environment or .env file.
Provisions schema, creates user and ledger sync tables with RLS, registers the
tenant in shared.tenants. Optionally creates an initial admin user and seeds
the bridge configuration with the company name used in the external ledger.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
import uuid

# Ensure project root is on sys.path so we can import src.app
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


async def provision(
    slug: str,
    name: str,
    admin_email: str | None,
    admin_password: str | None,
    external_company: str | None,
) -> None:
    """Provision a tenant by calling the provisioning service directly."""
    from sqlalchemy import text

    from src.app.core.database import get_engine, init_db
    from src.app.services.tenant_provisioning import provision_tenant

    # Initialize shared schema if needed
    await init_db()

    print(f"Provisioning tenant: slug={slug}, name={name}")
    result = await provision_tenant(slug=slug, name=name)
    print("Tenant provisioned successfully:")
    print(f"  ID:     {result['tenant_id']}")
    print(f"  Slug:   {result['slug']}")
    print(f"  Schema: {result['schema_name']}")

    engine = get_engine()
    schema_name = result["schema_name"]
    tenant_id = result["tenant_id"]

    # RLS is forced on tenant tables, so inserts run with the tenant set
    async with engine.begin() as conn:
        await conn.execute(
            text("SELECT set_config('app.current_tenant_id', :tid, true)"),
            {"tid": tenant_id},
        )

        if admin_email and admin_password:
            from src.app.core.security import hash_password

            await conn.execute(
                text(f"""
                    INSERT INTO "{schema_name}".users
                        (id, tenant_id, email, name, role, is_active, hashed_password, created_at)
                    VALUES (:id, :tenant_id, :email, :name, 'admin', true, :hashed_password, now())
                """),
                {
                    "id": uuid.uuid4(),
                    "tenant_id": tenant_id,
                    "email": admin_email,
                    "name": f"Admin ({name})",
                    "hashed_password": hash_password(admin_password),
                },
            )
            print(f"  Admin user created: {admin_email}")

        if external_company:
            await conn.execute(
                text(f"""
                    INSERT INTO "{schema_name}".bridge_configs
                        (tenant_id, external_company_name, created_at)
                    VALUES (:tenant_id, :company, now())
                """),
                {"tenant_id": tenant_id, "company": external_company},
            )
            print(f"  Bridge configured for company: {external_company}")

    await engine.dispose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Provision a new tenant")
    parser.add_argument("--slug", required=True, help="Tenant slug (e.g., acme)")
    parser.add_argument("--name", required=True, help="Tenant display name (e.g., 'Acme Plumbing')")
    parser.add_argument("--admin-email", default=None, help="Initial admin user email")
    parser.add_argument("--admin-password", default=None, help="Initial admin user password")
    parser.add_argument("--external-company", default=None, help="Company name in the external ledger")
    args = parser.parse_args()

    if (args.admin_email and not args.admin_password) or (args.admin_password and not args.admin_email):
        parser.error("--admin-email and --admin-password must be provided together")

    asyncio.run(
        provision(args.slug, args.name, args.admin_email, args.admin_password, args.external_company)
    )


if __name__ == "__main__":
    main()
