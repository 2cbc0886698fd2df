"""Shared schema models -- tables that exist once in the 'shared' schema.

Tenant is the only shared table. Request middleware, the bridge routes and
the auto-sync scheduler all resolve a tenant row into a TenantContext
before touching that tenant's ledger schema.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, Select, String, func, select, text
from sqlalchemy.dialects.postgresql import JSON, UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.app.core.database import SharedBase
from src.app.core.tenant import TenantContext


class Tenant(SharedBase):
    """A field-service company using the ledger sync engine.

    Each tenant owns a PostgreSQL schema (schema_name) holding its users,
    clients and ledger sync tables behind RLS.
    """

    __tablename__ = "tenants"
    __table_args__ = (
        Index("idx_tenants_active", "is_active", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    slug: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    schema_name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, server_default=text("true"))
    config: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )

    def to_context(self) -> TenantContext:
        return TenantContext(
            tenant_id=str(self.id),
            tenant_slug=self.slug,
            schema_name=self.schema_name,
        )


def active_tenants() -> Select[tuple[Tenant]]:
    """Active tenants, oldest first (stable order for background sweeps)."""
    return (
        select(Tenant)
        .where(Tenant.is_active == True)  # noqa: E712
        .order_by(Tenant.created_at)
    )
