"""Ledger sync persistence models -- tenant-scoped tables for both sync directions.

Seven SQLAlchemy models using TenantBase for schema_translate_map isolation:
- ClientModel: Local client records with sync bookkeeping columns
- ExternalIdMappingModel: external_id -> client_id mapping per tenant
- IngestionRunModel: Run log for pull-direction ingestion batches
- SyncQueueModel: Durable outbound change queue
- SyncConflictModel: Field-level conflicts reported by the bridge
- SyncHistoryModel: Append-only audit trail of delivery attempts
- BridgeConfigModel: Per-tenant bridge credentials and scheduling

All models use the "tenant" placeholder schema, remapped at runtime to the
actual tenant schema (e.g., "tenant_acme") via schema_translate_map. Rows
reference each other by UUID without FK constraints, matching the rest of
the tenant-schema tables.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import ARRAY, JSON, UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.app.core.database import TenantBase


class ClientModel(TenantBase):
    """Local client (customer/account) record.

    ``pending_fields`` holds the names of fields changed locally and not yet
    confirmed by the external ledger; it is empty whenever ``sync_status``
    is ``synced``.
    """

    __tablename__ = "clients"
    __table_args__ = (
        Index("ix_clients_tenant_external_id", "tenant_id", "external_id"),
        Index("ix_clients_tenant_sync_status", "tenant_id", "sync_status"),
        {"schema": "tenant"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    external_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    postal_code: Mapped[str | None] = mapped_column(String(20), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(50), default="active", server_default=text("'active'")
    )
    source: Mapped[str | None] = mapped_column(String(50), nullable=True)
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    sync_status: Mapped[str] = mapped_column(
        String(20), default="unsynced", server_default=text("'unsynced'")
    )
    pending_fields: Mapped[list[str]] = mapped_column(
        ARRAY(String(50)), default=list, server_default=text("'{}'")
    )
    last_synced_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class ExternalIdMappingModel(TenantBase):
    """Association between an external ledger identifier and a client."""

    __tablename__ = "external_id_mappings"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "external_id",
            name="uq_mapping_tenant_external_id",
        ),
        {"schema": "tenant"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    external_id: Mapped[str] = mapped_column(String(200), nullable=False)
    client_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    sync_status: Mapped[str] = mapped_column(
        String(20), default="synced", server_default=text("'synced'")
    )
    last_synced_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class IngestionRunModel(TenantBase):
    """One ingestion batch (or a manual trigger waiting for one)."""

    __tablename__ = "ingestion_runs"
    __table_args__ = (
        Index("ix_ingestion_runs_tenant_started", "tenant_id", "started_at"),
        {"schema": "tenant"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    triggered_by: Mapped[str] = mapped_column(
        String(20), default="bridge", server_default=text("'bridge'")
    )
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    total_records: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    created_records: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    updated_records: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    failed_records: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    received_with_coordinates: Mapped[int] = mapped_column(
        Integer, default=0, server_default=text("0")
    )
    errors: Mapped[list] = mapped_column(
        JSON, default=list, server_default=text("'[]'::json")
    )


class SyncQueueModel(TenantBase):
    """Outbound change waiting for delivery to the external ledger.

    Dispatch order is (priority ASC, created_at ASC). ``payload`` keys are
    SyncField names; ``old_data`` holds the before-values for auditing.
    """

    __tablename__ = "sync_queue"
    __table_args__ = (
        Index("ix_sync_queue_claim_order", "tenant_id", "status", "priority", "created_at"),
        Index("ix_sync_queue_tenant_client", "tenant_id", "client_id"),
        {"schema": "tenant"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    client_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    external_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    operation: Mapped[str] = mapped_column(String(30), nullable=False)
    payload: Mapped[dict] = mapped_column(
        JSON, default=dict, server_default=text("'{}'::json")
    )
    old_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    priority: Mapped[int] = mapped_column(Integer, default=5, server_default=text("5"))
    status: Mapped[str] = mapped_column(
        String(20), default="pending", server_default=text("'pending'")
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    max_attempts: Mapped[int] = mapped_column(Integer, default=3, server_default=text("3"))
    user_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class SyncConflictModel(TenantBase):
    """Field-level disagreement between this backend and the external ledger.

    At most one pending conflict per (tenant, client, field), enforced by a
    partial unique index.
    """

    __tablename__ = "sync_conflicts"
    __table_args__ = (
        Index(
            "uq_sync_conflicts_pending_field",
            "tenant_id",
            "client_id",
            "field_name",
            unique=True,
            postgresql_where=text("resolution_status = 'pending'"),
        ),
        {"schema": "tenant"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    client_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    external_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    field_name: Mapped[str] = mapped_column(String(50), nullable=False)
    backend_value: Mapped[Any] = mapped_column(JSON, nullable=True)
    external_value: Mapped[Any] = mapped_column(JSON, nullable=True)
    detected_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    resolution_status: Mapped[str] = mapped_column(
        String(30), default="pending", server_default=text("'pending'")
    )
    resolved_by: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)


class SyncHistoryModel(TenantBase):
    """Append-only audit record. Rows are never updated or deleted."""

    __tablename__ = "sync_history"
    __table_args__ = (
        Index("ix_sync_history_tenant_client", "tenant_id", "client_id", "synced_at"),
        {"schema": "tenant"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    queue_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    client_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    external_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    operation: Mapped[str] = mapped_column(String(50), nullable=False)
    old_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    new_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    outcome: Mapped[str] = mapped_column(String(20), nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    external_response: Mapped[Any] = mapped_column(JSON, nullable=True)
    user_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    synced_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class BridgeConfigModel(TenantBase):
    """Per-tenant bridge credentials and auto-sync schedule."""

    __tablename__ = "bridge_configs"
    __table_args__ = (
        UniqueConstraint("tenant_id", name="uq_bridge_config_tenant"),
        {"schema": "tenant"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    external_company_name: Mapped[str | None] = mapped_column(String(300), nullable=True)
    username: Mapped[str | None] = mapped_column(String(200), nullable=True)
    credential: Mapped[str | None] = mapped_column(Text, nullable=True)
    auto_sync_enabled: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("false")
    )
    sync_interval_minutes: Mapped[int] = mapped_column(
        Integer, default=30, server_default=text("30")
    )
    last_dispatch_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )
