"""Add ledger sync tables: clients, mappings, run log, queue, conflicts, history, bridge config.

Revision ID: 003_ledger_sync
Revises: 002_initial_tenant
Create Date: 2026-10-18

Creates seven tables in the tenant schema for syncing client records with
the external ledger:
- clients: Local client records with sync bookkeeping columns
- external_id_mappings: external_id -> client_id per tenant
- ingestion_runs: Pull-direction run log
- sync_queue: Durable outbound change queue
- sync_conflicts: Field-level conflicts (one pending per client/field)
- sync_history: Append-only audit trail
- bridge_configs: Per-tenant bridge credentials and schedule

All tables include RLS policies for tenant isolation. No foreign key
constraints (application-level referential integrity via repository,
consistent with existing pattern).
"""

from typing import Sequence, Union

from alembic import context, op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import ARRAY, UUID

# revision identifiers, used by Alembic.
revision: str = "003_ledger_sync"
down_revision: Union[str, None] = "002_initial_tenant"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

LEDGER_TABLES = (
    "clients",
    "external_id_mappings",
    "ingestion_runs",
    "sync_queue",
    "sync_conflicts",
    "sync_history",
    "bridge_configs",
)


def _id_column() -> sa.Column:
    return sa.Column(
        "id",
        UUID(as_uuid=True),
        primary_key=True,
        server_default=sa.text("gen_random_uuid()"),
    )


def upgrade() -> None:
    # Get the actual schema name from -x args
    cmd_kwargs = context.get_x_argument(as_dictionary=True)
    schema = cmd_kwargs.get("schema", "tenant")

    # ── clients table ───────────────────────────────────────────────────

    op.create_table(
        "clients",
        _id_column(),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column("external_id", sa.String(200), nullable=True),
        sa.Column("name", sa.String(300), nullable=False),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("phone", sa.String(50), nullable=True),
        sa.Column("address", sa.Text(), nullable=True),
        sa.Column("postal_code", sa.String(20), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("status", sa.String(50), server_default=sa.text("'active'"), nullable=False),
        sa.Column("source", sa.String(50), nullable=True),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("sync_status", sa.String(20), server_default=sa.text("'unsynced'"), nullable=False),
        sa.Column(
            "pending_fields",
            ARRAY(sa.String(50)),
            server_default=sa.text("'{}'"),
            nullable=False,
        ),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sync_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        schema="tenant",
    )
    op.execute(f'CREATE INDEX ix_clients_tenant_external_id ON "{schema}".clients(tenant_id, external_id)')
    op.execute(f'CREATE INDEX ix_clients_tenant_sync_status ON "{schema}".clients(tenant_id, sync_status)')
    # Match cascade lookups
    op.execute(f'CREATE INDEX ix_clients_tenant_email ON "{schema}".clients(tenant_id, lower(trim(email)))')

    # ── external_id_mappings table ──────────────────────────────────────

    op.create_table(
        "external_id_mappings",
        _id_column(),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column("external_id", sa.String(200), nullable=False),
        sa.Column("client_id", UUID(as_uuid=True), nullable=False),
        sa.Column("sync_status", sa.String(20), server_default=sa.text("'synced'"), nullable=False),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("tenant_id", "external_id", name="uq_mapping_tenant_external_id"),
        schema="tenant",
    )

    # ── ingestion_runs table ────────────────────────────────────────────

    op.create_table(
        "ingestion_runs",
        _id_column(),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("triggered_by", sa.String(20), server_default=sa.text("'bridge'"), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("total_records", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("created_records", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("updated_records", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("failed_records", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("received_with_coordinates", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("errors", sa.JSON(), server_default=sa.text("'[]'::json"), nullable=False),
        schema="tenant",
    )
    op.execute(f'CREATE INDEX ix_ingestion_runs_tenant_started ON "{schema}".ingestion_runs(tenant_id, started_at)')

    # ── sync_queue table ────────────────────────────────────────────────

    op.create_table(
        "sync_queue",
        _id_column(),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column("client_id", UUID(as_uuid=True), nullable=False),
        sa.Column("external_id", sa.String(200), nullable=True),
        sa.Column("operation", sa.String(30), nullable=False),
        sa.Column("payload", sa.JSON(), server_default=sa.text("'{}'::json"), nullable=False),
        sa.Column("old_data", sa.JSON(), nullable=True),
        sa.Column("priority", sa.Integer(), server_default=sa.text("5"), nullable=False),
        sa.Column("status", sa.String(20), server_default=sa.text("'pending'"), nullable=False),
        sa.Column("attempts", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("max_attempts", sa.Integer(), server_default=sa.text("3"), nullable=False),
        sa.Column("user_id", UUID(as_uuid=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        schema="tenant",
    )
    op.execute(
        f'CREATE INDEX ix_sync_queue_claim_order '
        f'ON "{schema}".sync_queue(tenant_id, status, priority, created_at)'
    )
    op.execute(f'CREATE INDEX ix_sync_queue_tenant_client ON "{schema}".sync_queue(tenant_id, client_id)')

    # ── sync_conflicts table ────────────────────────────────────────────

    op.create_table(
        "sync_conflicts",
        _id_column(),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column("client_id", UUID(as_uuid=True), nullable=False),
        sa.Column("external_id", sa.String(200), nullable=True),
        sa.Column("field_name", sa.String(50), nullable=False),
        sa.Column("backend_value", sa.JSON(), nullable=True),
        sa.Column("external_value", sa.JSON(), nullable=True),
        sa.Column("detected_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("resolution_status", sa.String(30), server_default=sa.text("'pending'"), nullable=False),
        sa.Column("resolved_by", UUID(as_uuid=True), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolution_notes", sa.Text(), nullable=True),
        schema="tenant",
    )
    op.execute(
        f'CREATE UNIQUE INDEX uq_sync_conflicts_pending_field '
        f'ON "{schema}".sync_conflicts(tenant_id, client_id, field_name) '
        f"WHERE resolution_status = 'pending'"
    )

    # ── sync_history table ──────────────────────────────────────────────

    op.create_table(
        "sync_history",
        _id_column(),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column("queue_id", UUID(as_uuid=True), nullable=True),
        sa.Column("client_id", UUID(as_uuid=True), nullable=False),
        sa.Column("external_id", sa.String(200), nullable=True),
        sa.Column("operation", sa.String(50), nullable=False),
        sa.Column("old_data", sa.JSON(), nullable=True),
        sa.Column("new_data", sa.JSON(), nullable=True),
        sa.Column("outcome", sa.String(20), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("external_response", sa.JSON(), nullable=True),
        sa.Column("user_id", UUID(as_uuid=True), nullable=True),
        sa.Column("synced_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        schema="tenant",
    )
    op.execute(
        f'CREATE INDEX ix_sync_history_tenant_client '
        f'ON "{schema}".sync_history(tenant_id, client_id, synced_at)'
    )

    # ── bridge_configs table ────────────────────────────────────────────

    op.create_table(
        "bridge_configs",
        _id_column(),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column("external_company_name", sa.String(300), nullable=True),
        sa.Column("username", sa.String(200), nullable=True),
        sa.Column("credential", sa.Text(), nullable=True),
        sa.Column("auto_sync_enabled", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("sync_interval_minutes", sa.Integer(), server_default=sa.text("30"), nullable=False),
        sa.Column("last_dispatch_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("tenant_id", name="uq_bridge_config_tenant"),
        schema="tenant",
    )

    # ── Row Level Security ──────────────────────────────────────────────

    for table in LEDGER_TABLES:
        op.execute(f'ALTER TABLE "{schema}".{table} ENABLE ROW LEVEL SECURITY')
        op.execute(f'ALTER TABLE "{schema}".{table} FORCE ROW LEVEL SECURITY')
        op.execute(f"""
            CREATE POLICY tenant_isolation ON "{schema}".{table}
            FOR ALL
            USING (tenant_id::text = current_setting('app.current_tenant_id', true))
            WITH CHECK (tenant_id::text = current_setting('app.current_tenant_id', true))
        """)


def downgrade() -> None:
    cmd_kwargs = context.get_x_argument(as_dictionary=True)
    schema = cmd_kwargs.get("schema", "tenant")

    for table in reversed(LEDGER_TABLES):
        op.execute(f'DROP POLICY IF EXISTS tenant_isolation ON "{schema}".{table}')
        op.drop_table(table, schema="tenant")
