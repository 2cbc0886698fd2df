"""Ledger sync repository -- tenant-scoped persistence for both sync directions.

Provides LedgerRepository with the session_factory callable pattern used by
the other repositories. Unlike single-call CRUD repositories, sync work
needs several reads and writes to commit or roll back together (a whole
ingestion batch, or one queue item's transition plus its history entry), so
the repository hands out LedgerTransaction objects:

    async with repository.transaction(tenant_id) as tx:
        client = await tx.get_client(client_id, for_update=True)
        ...

The transaction commits on normal exit and rolls back if the block raises.
Every statement is filtered by the transaction's tenant_id.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import Date, cast, func, or_, select, text, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.ledger.fields import PendingFields
from src.app.ledger.models import (
    BridgeConfigModel,
    ClientModel,
    ExternalIdMappingModel,
    IngestionRunModel,
    SyncConflictModel,
    SyncHistoryModel,
    SyncQueueModel,
)
from src.app.ledger.schemas import (
    BridgeConfigRead,
    ClientRead,
    ConflictRead,
    ConflictStatus,
    HistoryEntryRead,
    IngestionRunRead,
    QueueItemRead,
    QueueStatus,
    RunStatus,
)

logger = structlog.get_logger(__name__)


# ── Serialization Helpers ───────────────────────────────────────────────────


def _parse_uuid(value: str | None) -> uuid.UUID | None:
    """Parse a UUID string; malformed identifiers simply match nothing."""
    if value is None:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _str_or_none(value: uuid.UUID | None) -> str | None:
    return str(value) if value is not None else None


def _model_to_client(model: ClientModel) -> ClientRead:
    """Convert ClientModel to ClientRead schema."""
    return ClientRead(
        id=str(model.id),
        tenant_id=str(model.tenant_id),
        external_id=model.external_id,
        name=model.name,
        email=model.email,
        phone=model.phone,
        address=model.address,
        postal_code=model.postal_code,
        notes=model.notes,
        status=model.status or "active",
        source=model.source,
        latitude=model.latitude,
        longitude=model.longitude,
        sync_status=model.sync_status,
        pending_fields=PendingFields.from_storage(model.pending_fields),
        last_synced_at=model.last_synced_at,
        sync_error=model.sync_error,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_queue_item(model: SyncQueueModel) -> QueueItemRead:
    """Convert SyncQueueModel to QueueItemRead schema."""
    return QueueItemRead(
        id=str(model.id),
        tenant_id=str(model.tenant_id),
        client_id=str(model.client_id),
        external_id=model.external_id,
        operation=model.operation,
        payload=model.payload or {},
        old_data=model.old_data,
        priority=model.priority,
        status=model.status,
        attempts=model.attempts,
        max_attempts=model.max_attempts,
        user_id=_str_or_none(model.user_id),
        last_error=model.last_error,
        created_at=model.created_at,
        processed_at=model.processed_at,
        completed_at=model.completed_at,
    )


def _model_to_conflict(model: SyncConflictModel) -> ConflictRead:
    """Convert SyncConflictModel to ConflictRead schema."""
    return ConflictRead(
        id=str(model.id),
        tenant_id=str(model.tenant_id),
        client_id=str(model.client_id),
        external_id=model.external_id,
        field_name=model.field_name,
        backend_value=model.backend_value,
        external_value=model.external_value,
        detected_at=model.detected_at,
        resolution_status=model.resolution_status,
        resolved_by=_str_or_none(model.resolved_by),
        resolved_at=model.resolved_at,
        resolution_notes=model.resolution_notes,
    )


def _model_to_history(model: SyncHistoryModel) -> HistoryEntryRead:
    """Convert SyncHistoryModel to HistoryEntryRead schema."""
    return HistoryEntryRead(
        id=str(model.id),
        tenant_id=str(model.tenant_id),
        queue_id=_str_or_none(model.queue_id),
        client_id=str(model.client_id),
        external_id=model.external_id,
        operation=model.operation,
        old_data=model.old_data,
        new_data=model.new_data,
        outcome=model.outcome,
        error_message=model.error_message,
        external_response=model.external_response,
        user_id=_str_or_none(model.user_id),
        synced_at=model.synced_at,
    )


def _model_to_run(model: IngestionRunModel) -> IngestionRunRead:
    """Convert IngestionRunModel to IngestionRunRead schema."""
    return IngestionRunRead(
        id=str(model.id),
        tenant_id=str(model.tenant_id),
        status=model.status,
        triggered_by=model.triggered_by,
        started_at=model.started_at,
        completed_at=model.completed_at,
        total_records=model.total_records or 0,
        created_records=model.created_records or 0,
        updated_records=model.updated_records or 0,
        failed_records=model.failed_records or 0,
        received_with_coordinates=model.received_with_coordinates or 0,
        errors=model.errors or [],
    )


def _model_to_config(model: BridgeConfigModel) -> BridgeConfigRead:
    """Convert BridgeConfigModel to BridgeConfigRead schema."""
    return BridgeConfigRead(
        tenant_id=str(model.tenant_id),
        external_company_name=model.external_company_name,
        username=model.username,
        credential=model.credential,
        auto_sync_enabled=bool(model.auto_sync_enabled),
        sync_interval_minutes=model.sync_interval_minutes or 30,
        last_dispatch_at=model.last_dispatch_at,
        updated_at=model.updated_at,
    )


def _uuid_columns(values: dict[str, Any], *names: str) -> dict[str, Any]:
    """Copy ``values`` converting the named string ids to UUIDs."""
    converted = dict(values)
    for name in names:
        if converted.get(name) is not None:
            converted[name] = uuid.UUID(str(converted[name]))
    return converted


# ── Transaction ─────────────────────────────────────────────────────────────


class LedgerTransaction:
    """Tenant-scoped data operations sharing one database transaction.

    Args:
        session: AsyncSession with an open transaction.
        tenant_id: Tenant UUID string applied to every statement.
    """

    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        self._session = session
        self.tenant_id = tenant_id
        self._tid = uuid.UUID(tenant_id)

    # ── Clients ─────────────────────────────────────────────────────────────

    async def get_client(
        self, client_id: str, *, for_update: bool = False
    ) -> ClientRead | None:
        """Get a client by ID, optionally row-locked for the transaction."""
        cid = _parse_uuid(client_id)
        if cid is None:
            return None
        stmt = select(ClientModel).where(
            ClientModel.tenant_id == self._tid,
            ClientModel.id == cid,
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        model = result.scalar_one_or_none()
        return _model_to_client(model) if model is not None else None

    async def find_client_by_external_id(self, external_id: str) -> ClientRead | None:
        """Match on the client's own external_id, then on the mapping table."""
        stmt = (
            select(ClientModel)
            .where(
                ClientModel.tenant_id == self._tid,
                ClientModel.external_id == external_id,
            )
            .order_by(ClientModel.created_at)
            .limit(1)
        )
        result = await self._session.execute(stmt)
        model = result.scalar_one_or_none()
        if model is not None:
            return _model_to_client(model)

        mapped = (
            select(ClientModel)
            .join(
                ExternalIdMappingModel,
                ExternalIdMappingModel.client_id == ClientModel.id,
            )
            .where(
                ExternalIdMappingModel.tenant_id == self._tid,
                ExternalIdMappingModel.external_id == external_id,
                ClientModel.tenant_id == self._tid,
            )
        )
        result = await self._session.execute(mapped)
        model = result.scalar_one_or_none()
        return _model_to_client(model) if model is not None else None

    async def find_client_by_email(self, normalized_email: str) -> ClientRead | None:
        """Case-insensitive, whitespace-trimmed email match."""
        stmt = (
            select(ClientModel)
            .where(
                ClientModel.tenant_id == self._tid,
                func.lower(func.trim(ClientModel.email)) == normalized_email,
            )
            .order_by(ClientModel.created_at)
            .limit(1)
        )
        result = await self._session.execute(stmt)
        model = result.scalar_one_or_none()
        return _model_to_client(model) if model is not None else None

    async def find_client_by_phone_digits(self, digits: str) -> ClientRead | None:
        """Match phone numbers after stripping every non-digit character."""
        stmt = (
            select(ClientModel)
            .where(
                ClientModel.tenant_id == self._tid,
                func.regexp_replace(ClientModel.phone, r"\D", "", "g") == digits,
            )
            .order_by(ClientModel.created_at)
            .limit(1)
        )
        result = await self._session.execute(stmt)
        model = result.scalar_one_or_none()
        return _model_to_client(model) if model is not None else None

    async def insert_client(self, values: dict[str, Any]) -> ClientRead:
        model = ClientModel(tenant_id=self._tid, **values)
        self._session.add(model)
        await self._session.flush()
        await self._session.refresh(model)
        return _model_to_client(model)

    async def update_client(self, client_id: str, values: dict[str, Any]) -> ClientRead:
        stmt = (
            update(ClientModel)
            .where(
                ClientModel.tenant_id == self._tid,
                ClientModel.id == uuid.UUID(client_id),
            )
            .values(**values)
            .returning(ClientModel)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return _model_to_client(result.scalars().one())

    async def count_clients_missing_coordinates(self) -> int:
        stmt = select(func.count()).select_from(ClientModel).where(
            ClientModel.tenant_id == self._tid,
            or_(ClientModel.latitude.is_(None), ClientModel.longitude.is_(None)),
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    # ── External ID Mappings ────────────────────────────────────────────────

    async def upsert_mapping(
        self, external_id: str, client_id: str, synced_at: datetime
    ) -> None:
        """Point ``external_id`` at ``client_id``, inserting or updating."""
        stmt = pg_insert(ExternalIdMappingModel).values(
            tenant_id=self._tid,
            external_id=external_id,
            client_id=uuid.UUID(client_id),
            sync_status="synced",
            last_synced_at=synced_at,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["tenant_id", "external_id"],
            set_={
                "client_id": stmt.excluded.client_id,
                "sync_status": "synced",
                "last_synced_at": stmt.excluded.last_synced_at,
            },
        )
        await self._session.execute(stmt)

    async def list_external_ids(self) -> list[dict[str, str]]:
        stmt = (
            select(ExternalIdMappingModel.external_id, ExternalIdMappingModel.client_id)
            .where(ExternalIdMappingModel.tenant_id == self._tid)
            .order_by(ExternalIdMappingModel.external_id)
        )
        result = await self._session.execute(stmt)
        return [
            {"external_id": row.external_id, "client_id": str(row.client_id)}
            for row in result.all()
        ]

    # ── Ingestion Runs ──────────────────────────────────────────────────────

    async def try_ingestion_lock(self) -> bool:
        """Take the tenant's transaction-scoped ingestion advisory lock.

        Returns False without waiting if another transaction holds it.
        """
        result = await self._session.execute(
            text("SELECT pg_try_advisory_xact_lock(hashtext(:key))"),
            {"key": f"ledger-ingest:{self.tenant_id}"},
        )
        return bool(result.scalar_one())

    async def claim_requested_run(self, started_at: datetime) -> IngestionRunRead | None:
        """Turn the oldest manual trigger row into the running row, if any."""
        stmt = (
            select(IngestionRunModel)
            .where(
                IngestionRunModel.tenant_id == self._tid,
                IngestionRunModel.status == RunStatus.REQUESTED.value,
            )
            .order_by(IngestionRunModel.started_at)
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        result = await self._session.execute(stmt)
        model = result.scalar_one_or_none()
        if model is None:
            return None
        model.status = RunStatus.RUNNING.value
        model.started_at = started_at
        await self._session.flush()
        return _model_to_run(model)

    async def create_run(self, values: dict[str, Any]) -> IngestionRunRead:
        model = IngestionRunModel(tenant_id=self._tid, **values)
        self._session.add(model)
        await self._session.flush()
        await self._session.refresh(model)
        return _model_to_run(model)

    async def update_run(self, run_id: str, values: dict[str, Any]) -> IngestionRunRead:
        stmt = (
            update(IngestionRunModel)
            .where(
                IngestionRunModel.tenant_id == self._tid,
                IngestionRunModel.id == uuid.UUID(run_id),
            )
            .values(**values)
            .returning(IngestionRunModel)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return _model_to_run(result.scalars().one())

    async def list_runs(self, limit: int = 10) -> list[IngestionRunRead]:
        stmt = (
            select(IngestionRunModel)
            .where(IngestionRunModel.tenant_id == self._tid)
            .order_by(IngestionRunModel.started_at.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return [_model_to_run(m) for m in result.scalars().all()]

    async def latest_completed_run(self) -> IngestionRunRead | None:
        stmt = (
            select(IngestionRunModel)
            .where(
                IngestionRunModel.tenant_id == self._tid,
                IngestionRunModel.status == RunStatus.COMPLETED.value,
            )
            .order_by(IngestionRunModel.completed_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        model = result.scalar_one_or_none()
        return _model_to_run(model) if model is not None else None

    # ── Sync Queue ──────────────────────────────────────────────────────────

    async def insert_queue_item(self, values: dict[str, Any]) -> QueueItemRead:
        model = SyncQueueModel(
            tenant_id=self._tid, **_uuid_columns(values, "client_id", "user_id")
        )
        self._session.add(model)
        await self._session.flush()
        await self._session.refresh(model)
        return _model_to_queue_item(model)

    async def get_queue_item(
        self, item_id: str, *, for_update: bool = False
    ) -> QueueItemRead | None:
        qid = _parse_uuid(item_id)
        if qid is None:
            return None
        stmt = select(SyncQueueModel).where(
            SyncQueueModel.tenant_id == self._tid,
            SyncQueueModel.id == qid,
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        model = result.scalar_one_or_none()
        return _model_to_queue_item(model) if model is not None else None

    async def lock_claimable_items(self, limit: int) -> list[QueueItemRead]:
        """Lock up to ``limit`` pending items in dispatch order.

        Rows locked by a concurrent claimer are skipped rather than waited
        on, so two claimers never receive the same item.
        """
        stmt = (
            select(SyncQueueModel)
            .where(
                SyncQueueModel.tenant_id == self._tid,
                SyncQueueModel.status == QueueStatus.PENDING.value,
                SyncQueueModel.attempts < SyncQueueModel.max_attempts,
            )
            .order_by(SyncQueueModel.priority.asc(), SyncQueueModel.created_at.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        result = await self._session.execute(stmt)
        return [_model_to_queue_item(m) for m in result.scalars().all()]

    async def lock_unclaimed_items_for_client(self, client_id: str) -> list[QueueItemRead]:
        """Lock the client's pending (not yet claimed) items, oldest first."""
        stmt = (
            select(SyncQueueModel)
            .where(
                SyncQueueModel.tenant_id == self._tid,
                SyncQueueModel.client_id == uuid.UUID(client_id),
                SyncQueueModel.status == QueueStatus.PENDING.value,
            )
            .order_by(SyncQueueModel.created_at.asc())
            .with_for_update(skip_locked=True)
        )
        result = await self._session.execute(stmt)
        return [_model_to_queue_item(m) for m in result.scalars().all()]

    async def update_queue_item(
        self, item_id: str, values: dict[str, Any]
    ) -> QueueItemRead:
        stmt = (
            update(SyncQueueModel)
            .where(
                SyncQueueModel.tenant_id == self._tid,
                SyncQueueModel.id == uuid.UUID(item_id),
            )
            .values(**values)
            .returning(SyncQueueModel)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return _model_to_queue_item(result.scalars().one())

    async def list_queue_items(
        self,
        status: QueueStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[QueueItemRead]:
        stmt = select(SyncQueueModel).where(SyncQueueModel.tenant_id == self._tid)
        if status is not None:
            stmt = stmt.where(SyncQueueModel.status == status.value)
        stmt = (
            stmt.order_by(SyncQueueModel.priority.asc(), SyncQueueModel.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(stmt)
        return [_model_to_queue_item(m) for m in result.scalars().all()]

    async def queue_status_counts(self) -> dict[str, int]:
        stmt = (
            select(SyncQueueModel.status, func.count())
            .where(SyncQueueModel.tenant_id == self._tid)
            .group_by(SyncQueueModel.status)
        )
        result = await self._session.execute(stmt)
        return {status: int(count) for status, count in result.all()}

    async def average_completion_minutes(self) -> float:
        stmt = select(
            func.avg(
                func.extract(
                    "epoch", SyncQueueModel.completed_at - SyncQueueModel.created_at
                )
                / 60
            )
        ).where(
            SyncQueueModel.tenant_id == self._tid,
            SyncQueueModel.status == QueueStatus.COMPLETED.value,
            SyncQueueModel.completed_at.is_not(None),
        )
        result = await self._session.execute(stmt)
        value = result.scalar_one_or_none()
        return round(float(value), 2) if value is not None else 0.0

    # ── Sync History ────────────────────────────────────────────────────────

    async def append_history(self, values: dict[str, Any]) -> HistoryEntryRead:
        model = SyncHistoryModel(
            tenant_id=self._tid,
            **_uuid_columns(values, "queue_id", "client_id", "user_id"),
        )
        self._session.add(model)
        await self._session.flush()
        await self._session.refresh(model)
        return _model_to_history(model)

    async def list_history(self, client_id: str, limit: int = 50) -> list[HistoryEntryRead]:
        cid = _parse_uuid(client_id)
        if cid is None:
            return []
        stmt = (
            select(SyncHistoryModel)
            .where(
                SyncHistoryModel.tenant_id == self._tid,
                SyncHistoryModel.client_id == cid,
            )
            .order_by(SyncHistoryModel.synced_at.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return [_model_to_history(m) for m in result.scalars().all()]

    async def history_daily_counts(self, since: datetime) -> list[tuple[Any, str, int]]:
        """(day, outcome, count) rows for delivery attempts since ``since``."""
        day = cast(SyncHistoryModel.synced_at, Date)
        stmt = (
            select(day, SyncHistoryModel.outcome, func.count())
            .where(
                SyncHistoryModel.tenant_id == self._tid,
                SyncHistoryModel.synced_at >= since,
            )
            .group_by(day, SyncHistoryModel.outcome)
            .order_by(day.desc())
        )
        result = await self._session.execute(stmt)
        return [(row[0], row[1], int(row[2])) for row in result.all()]

    # ── Sync Conflicts ──────────────────────────────────────────────────────

    async def upsert_pending_conflict(self, values: dict[str, Any]) -> ConflictRead:
        """Insert a pending conflict, or refresh the existing pending one.

        Relies on the partial unique index over pending (client, field).
        """
        row = _uuid_columns(values, "client_id")
        stmt = pg_insert(SyncConflictModel).values(
            tenant_id=self._tid,
            resolution_status=ConflictStatus.PENDING.value,
            **row,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["tenant_id", "client_id", "field_name"],
            index_where=text("resolution_status = 'pending'"),
            set_={
                "external_id": stmt.excluded.external_id,
                "backend_value": stmt.excluded.backend_value,
                "external_value": stmt.excluded.external_value,
                "detected_at": stmt.excluded.detected_at,
            },
        ).returning(SyncConflictModel)
        result = await self._session.execute(
            stmt, execution_options={"populate_existing": True}
        )
        return _model_to_conflict(result.scalars().one())

    async def get_conflict(
        self, conflict_id: str, *, for_update: bool = False
    ) -> ConflictRead | None:
        cid = _parse_uuid(conflict_id)
        if cid is None:
            return None
        stmt = select(SyncConflictModel).where(
            SyncConflictModel.tenant_id == self._tid,
            SyncConflictModel.id == cid,
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        model = result.scalar_one_or_none()
        return _model_to_conflict(model) if model is not None else None

    async def update_conflict(
        self, conflict_id: str, values: dict[str, Any]
    ) -> ConflictRead:
        stmt = (
            update(SyncConflictModel)
            .where(
                SyncConflictModel.tenant_id == self._tid,
                SyncConflictModel.id == uuid.UUID(conflict_id),
            )
            .values(**_uuid_columns(values, "resolved_by"))
            .returning(SyncConflictModel)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return _model_to_conflict(result.scalars().one())

    async def list_conflicts(
        self, status: ConflictStatus | None = ConflictStatus.PENDING, limit: int = 100
    ) -> list[ConflictRead]:
        stmt = select(SyncConflictModel).where(SyncConflictModel.tenant_id == self._tid)
        if status is not None:
            stmt = stmt.where(SyncConflictModel.resolution_status == status.value)
        stmt = stmt.order_by(SyncConflictModel.detected_at.desc()).limit(limit)
        result = await self._session.execute(stmt)
        return [_model_to_conflict(m) for m in result.scalars().all()]

    # ── Bridge Configuration ────────────────────────────────────────────────

    async def get_config(self) -> BridgeConfigRead | None:
        stmt = select(BridgeConfigModel).where(BridgeConfigModel.tenant_id == self._tid)
        result = await self._session.execute(stmt)
        model = result.scalar_one_or_none()
        return _model_to_config(model) if model is not None else None

    async def upsert_config(self, values: dict[str, Any]) -> BridgeConfigRead:
        stmt = pg_insert(BridgeConfigModel).values(tenant_id=self._tid, **values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["tenant_id"],
            set_={**{key: stmt.excluded[key] for key in values}, "updated_at": func.now()},
        ).returning(BridgeConfigModel)
        result = await self._session.execute(
            stmt, execution_options={"populate_existing": True}
        )
        return _model_to_config(result.scalars().one())

    async def touch_last_dispatch(self, at: datetime) -> None:
        stmt = (
            update(BridgeConfigModel)
            .where(BridgeConfigModel.tenant_id == self._tid)
            .values(last_dispatch_at=at)
        )
        await self._session.execute(stmt)


# ── Repository ──────────────────────────────────────────────────────────────


class LedgerRepository:
    """Factory for tenant-scoped ledger transactions.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def transaction(self, tenant_id: str) -> AsyncIterator[LedgerTransaction]:
        """Open a transaction that commits on exit and rolls back on error."""
        sessions = self._session_factory()
        session = await anext(sessions)
        try:
            async with session.begin():
                yield LedgerTransaction(session, tenant_id)
        finally:
            await sessions.aclose()
