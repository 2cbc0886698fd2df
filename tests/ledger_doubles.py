"""In-memory doubles for ledger sync tests.

Provides:
- InMemoryLedgerStore / InMemoryLedgerRepository: a LedgerRepository test
  double with real transaction semantics (serialized transactions, rollback
  on error) so the services run unmodified without PostgreSQL
- FakeBridge: scripted stand-in for BridgeClient.push_update
- Seeding helpers for clients, bridge configs and queue items
"""

from __future__ import annotations

import asyncio
import copy
import re
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any

from src.app.ledger.schemas import (
    BridgeConfigRead,
    BridgeOutcome,
    ClientRead,
    ConflictRead,
    ConflictStatus,
    HistoryEntryRead,
    IngestionRunRead,
    QueueItemRead,
    QueueStatus,
    RunStatus,
)


_NON_DIGITS = re.compile(r"\D")


# ── In-Memory Store ──────────────────────────────────────────────────────────


class InMemoryLedgerStore:
    """Tables as dicts of read models. One transaction runs at a time."""

    def __init__(self) -> None:
        self.clients: dict[str, ClientRead] = {}
        self.mappings: dict[tuple[str, str], dict[str, Any]] = {}
        self.runs: dict[str, IngestionRunRead] = {}
        self.queue: dict[str, QueueItemRead] = {}
        self.conflicts: dict[str, ConflictRead] = {}
        self.history: list[HistoryEntryRead] = []
        self.configs: dict[str, BridgeConfigRead] = {}
        self.ingestion_locks_held: set[str] = set()
        self.faults: dict[str, Exception] = {}
        self.transactions = 0
        self._lock = asyncio.Lock()
        self._seq = 0

    _TABLES = ("clients", "mappings", "runs", "queue", "conflicts", "history", "configs")

    def now(self) -> datetime:
        """Strictly increasing timestamps so ordering by time is deterministic."""
        self._seq += 1
        return datetime.now(timezone.utc) + timedelta(microseconds=self._seq)

    def snapshot(self) -> dict[str, Any]:
        return {name: copy.deepcopy(getattr(self, name)) for name in self._TABLES}

    def restore(self, snapshot: dict[str, Any]) -> None:
        for name, value in snapshot.items():
            setattr(self, name, value)

    def check_fault(self, operation: str) -> None:
        exc = self.faults.get(operation)
        if exc is not None:
            raise exc

    # ── Seeding ──────────────────────────────────────────────────────────

    def seed_client(self, tenant_id: str, **values: Any) -> ClientRead:
        row = {"name": "Client", **values}
        client = ClientRead(
            id=row.pop("id", str(uuid.uuid4())),
            tenant_id=tenant_id,
            created_at=self.now(),
            **row,
        )
        self.clients[client.id] = client
        if client.external_id:
            self.mappings[(tenant_id, client.external_id)] = {
                "external_id": client.external_id,
                "client_id": client.id,
            }
        return client

    def seed_config(self, tenant_id: str, **values: Any) -> BridgeConfigRead:
        row = {"external_company_name": "Acme Plumbing Ltd", **values}
        config = BridgeConfigRead(tenant_id=tenant_id, updated_at=self.now(), **row)
        self.configs[tenant_id] = config
        return config

    def seed_queue_item(
        self, client: ClientRead, payload: dict[str, Any], **values: Any
    ) -> QueueItemRead:
        item = QueueItemRead(
            id=str(uuid.uuid4()),
            tenant_id=client.tenant_id,
            client_id=client.id,
            external_id=client.external_id,
            operation=values.pop("operation", "update_field"),
            payload=payload,
            created_at=self.now(),
            **values,
        )
        self.queue[item.id] = item
        return item

    def history_for(self, client_id: str) -> list[HistoryEntryRead]:
        return [h for h in self.history if h.client_id == client_id]


def _merged(model: Any, values: dict[str, Any]) -> Any:
    return type(model).model_validate({**model.model_dump(), **values})


class InMemoryLedgerTransaction:
    """LedgerTransaction double operating on an InMemoryLedgerStore."""

    def __init__(self, store: InMemoryLedgerStore, tenant_id: str) -> None:
        self._store = store
        self.tenant_id = tenant_id

    def _clients(self) -> list[ClientRead]:
        rows = [c for c in self._store.clients.values() if c.tenant_id == self.tenant_id]
        return sorted(rows, key=lambda c: c.created_at)

    # ── Clients ──────────────────────────────────────────────────────────

    async def get_client(self, client_id: str, *, for_update: bool = False) -> ClientRead | None:
        client = self._store.clients.get(client_id)
        if client is None or client.tenant_id != self.tenant_id:
            return None
        return client

    async def find_client_by_external_id(self, external_id: str) -> ClientRead | None:
        for client in self._clients():
            if client.external_id == external_id:
                return client
        mapping = self._store.mappings.get((self.tenant_id, external_id))
        if mapping is not None:
            return await self.get_client(mapping["client_id"])
        return None

    async def find_client_by_email(self, normalized_email: str) -> ClientRead | None:
        for client in self._clients():
            if client.email and client.email.strip().lower() == normalized_email:
                return client
        return None

    async def find_client_by_phone_digits(self, digits: str) -> ClientRead | None:
        for client in self._clients():
            if client.phone and _NON_DIGITS.sub("", client.phone) == digits:
                return client
        return None

    async def insert_client(self, values: dict[str, Any]) -> ClientRead:
        self._store.check_fault("insert_client")
        client = ClientRead(
            id=str(uuid.uuid4()),
            tenant_id=self.tenant_id,
            created_at=self._store.now(),
            **values,
        )
        self._store.clients[client.id] = client
        return client

    async def update_client(self, client_id: str, values: dict[str, Any]) -> ClientRead:
        self._store.check_fault("update_client")
        client = _merged(self._store.clients[client_id], {**values, "updated_at": self._store.now()})
        self._store.clients[client_id] = client
        return client

    async def count_clients_missing_coordinates(self) -> int:
        return sum(1 for c in self._clients() if not c.has_coordinates)

    # ── External ID Mappings ─────────────────────────────────────────────

    async def upsert_mapping(self, external_id: str, client_id: str, synced_at: datetime) -> None:
        self._store.check_fault("upsert_mapping")
        self._store.mappings[(self.tenant_id, external_id)] = {
            "external_id": external_id,
            "client_id": client_id,
            "last_synced_at": synced_at,
        }

    async def list_external_ids(self) -> list[dict[str, str]]:
        rows = [
            {"external_id": m["external_id"], "client_id": m["client_id"]}
            for (tenant_id, _), m in self._store.mappings.items()
            if tenant_id == self.tenant_id
        ]
        return sorted(rows, key=lambda r: r["external_id"])

    # ── Ingestion Runs ───────────────────────────────────────────────────

    async def try_ingestion_lock(self) -> bool:
        return self.tenant_id not in self._store.ingestion_locks_held

    async def claim_requested_run(self, started_at: datetime) -> IngestionRunRead | None:
        requested = sorted(
            (r for r in self._store.runs.values()
             if r.tenant_id == self.tenant_id and r.status == RunStatus.REQUESTED),
            key=lambda r: r.started_at,
        )
        if not requested:
            return None
        return await self.update_run(
            requested[0].id, {"status": RunStatus.RUNNING.value, "started_at": started_at}
        )

    async def create_run(self, values: dict[str, Any]) -> IngestionRunRead:
        run = IngestionRunRead(id=str(uuid.uuid4()), tenant_id=self.tenant_id, **values)
        self._store.runs[run.id] = run
        return run

    async def update_run(self, run_id: str, values: dict[str, Any]) -> IngestionRunRead:
        run = _merged(self._store.runs[run_id], values)
        self._store.runs[run_id] = run
        return run

    async def list_runs(self, limit: int = 10) -> list[IngestionRunRead]:
        rows = [r for r in self._store.runs.values() if r.tenant_id == self.tenant_id]
        return sorted(rows, key=lambda r: r.started_at, reverse=True)[:limit]

    async def latest_completed_run(self) -> IngestionRunRead | None:
        rows = [
            r for r in self._store.runs.values()
            if r.tenant_id == self.tenant_id and r.status == RunStatus.COMPLETED
        ]
        return max(rows, key=lambda r: r.completed_at, default=None)

    # ── Sync Queue ───────────────────────────────────────────────────────

    def _items(self) -> list[QueueItemRead]:
        return [i for i in self._store.queue.values() if i.tenant_id == self.tenant_id]

    async def insert_queue_item(self, values: dict[str, Any]) -> QueueItemRead:
        item = QueueItemRead(
            id=str(uuid.uuid4()),
            tenant_id=self.tenant_id,
            created_at=self._store.now(),
            **values,
        )
        self._store.queue[item.id] = item
        return item

    async def get_queue_item(self, item_id: str, *, for_update: bool = False) -> QueueItemRead | None:
        item = self._store.queue.get(item_id)
        if item is None or item.tenant_id != self.tenant_id:
            return None
        return item

    async def lock_claimable_items(self, limit: int) -> list[QueueItemRead]:
        rows = [
            i for i in self._items()
            if i.status == QueueStatus.PENDING and i.attempts < i.max_attempts
        ]
        return sorted(rows, key=lambda i: (i.priority, i.created_at))[:limit]

    async def lock_unclaimed_items_for_client(self, client_id: str) -> list[QueueItemRead]:
        rows = [
            i for i in self._items()
            if i.client_id == client_id and i.status == QueueStatus.PENDING
        ]
        return sorted(rows, key=lambda i: i.created_at)

    async def update_queue_item(self, item_id: str, values: dict[str, Any]) -> QueueItemRead:
        self._store.check_fault("update_queue_item")
        item = _merged(self._store.queue[item_id], values)
        self._store.queue[item_id] = item
        return item

    async def list_queue_items(
        self, status: QueueStatus | None = None, limit: int = 50, offset: int = 0
    ) -> list[QueueItemRead]:
        rows = [i for i in self._items() if status is None or i.status == status]
        rows.sort(key=lambda i: i.created_at, reverse=True)
        rows.sort(key=lambda i: i.priority)
        return rows[offset:offset + limit]

    async def queue_status_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for item in self._items():
            counts[item.status.value] = counts.get(item.status.value, 0) + 1
        return counts

    async def average_completion_minutes(self) -> float:
        durations = [
            (i.completed_at - i.created_at).total_seconds() / 60
            for i in self._items()
            if i.status == QueueStatus.COMPLETED and i.completed_at is not None
        ]
        return round(sum(durations) / len(durations), 2) if durations else 0.0

    # ── Sync History ─────────────────────────────────────────────────────

    async def append_history(self, values: dict[str, Any]) -> HistoryEntryRead:
        self._store.check_fault("append_history")
        entry = HistoryEntryRead(id=str(uuid.uuid4()), tenant_id=self.tenant_id, **values)
        self._store.history.append(entry)
        return entry

    async def list_history(self, client_id: str, limit: int = 50) -> list[HistoryEntryRead]:
        rows = [
            h for h in self._store.history
            if h.tenant_id == self.tenant_id and h.client_id == client_id
        ]
        return list(reversed(rows))[:limit]

    async def history_daily_counts(self, since: datetime) -> list[tuple[Any, str, int]]:
        counts: dict[tuple[Any, str], int] = {}
        for h in self._store.history:
            if h.tenant_id != self.tenant_id or h.synced_at is None or h.synced_at < since:
                continue
            key = (h.synced_at.date(), h.outcome.value)
            counts[key] = counts.get(key, 0) + 1
        return [(day, outcome, count) for (day, outcome), count in sorted(counts.items(), reverse=True)]

    # ── Sync Conflicts ───────────────────────────────────────────────────

    async def upsert_pending_conflict(self, values: dict[str, Any]) -> ConflictRead:
        for conflict in self._store.conflicts.values():
            if (
                conflict.tenant_id == self.tenant_id
                and conflict.client_id == values["client_id"]
                and conflict.field_name.value == values["field_name"]
                and conflict.resolution_status == ConflictStatus.PENDING
            ):
                refreshed = _merged(conflict, {
                    key: values[key]
                    for key in ("external_id", "backend_value", "external_value", "detected_at")
                    if key in values
                })
                self._store.conflicts[conflict.id] = refreshed
                return refreshed
        conflict = ConflictRead(id=str(uuid.uuid4()), tenant_id=self.tenant_id, **values)
        self._store.conflicts[conflict.id] = conflict
        return conflict

    async def get_conflict(self, conflict_id: str, *, for_update: bool = False) -> ConflictRead | None:
        conflict = self._store.conflicts.get(conflict_id)
        if conflict is None or conflict.tenant_id != self.tenant_id:
            return None
        return conflict

    async def update_conflict(self, conflict_id: str, values: dict[str, Any]) -> ConflictRead:
        conflict = _merged(self._store.conflicts[conflict_id], values)
        self._store.conflicts[conflict_id] = conflict
        return conflict

    async def list_conflicts(
        self, status: ConflictStatus | None = ConflictStatus.PENDING, limit: int = 100
    ) -> list[ConflictRead]:
        rows = [
            c for c in self._store.conflicts.values()
            if c.tenant_id == self.tenant_id and (status is None or c.resolution_status == status)
        ]
        return rows[:limit]

    # ── Bridge Configuration ─────────────────────────────────────────────

    async def get_config(self) -> BridgeConfigRead | None:
        return self._store.configs.get(self.tenant_id)

    async def upsert_config(self, values: dict[str, Any]) -> BridgeConfigRead:
        existing = self._store.configs.get(self.tenant_id)
        if existing is None:
            config = BridgeConfigRead(tenant_id=self.tenant_id, updated_at=self._store.now(), **values)
        else:
            config = _merged(existing, {**values, "updated_at": self._store.now()})
        self._store.configs[self.tenant_id] = config
        return config

    async def touch_last_dispatch(self, at: datetime) -> None:
        config = self._store.configs.get(self.tenant_id)
        if config is not None:
            self._store.configs[self.tenant_id] = _merged(config, {"last_dispatch_at": at})


class InMemoryLedgerRepository:
    """LedgerRepository double: serialized transactions with rollback."""

    def __init__(self, store: InMemoryLedgerStore) -> None:
        self.store = store

    @asynccontextmanager
    async def transaction(self, tenant_id: str) -> AsyncIterator[InMemoryLedgerTransaction]:
        async with self.store._lock:
            self.store.transactions += 1
            snapshot = self.store.snapshot()
            try:
                yield InMemoryLedgerTransaction(self.store, tenant_id)
            except BaseException:
                self.store.restore(snapshot)
                raise


# ── Fake Bridge ──────────────────────────────────────────────────────────────


class FakeBridge:
    """Scripted BridgeClient stand-in.

    ``outcomes`` are returned in order (the last one repeats). An Exception
    instance in the script is raised instead. ``delay`` makes each call
    sleep first, for timeout tests.
    """

    def __init__(self, *outcomes: BridgeOutcome | Exception, delay: float = 0.0) -> None:
        self._outcomes = list(outcomes) or [BridgeOutcome(success=True)]
        self.delay = delay
        self.calls: list[tuple[QueueItemRead, BridgeConfigRead]] = []

    async def push_update(self, item: QueueItemRead, config: BridgeConfigRead) -> BridgeOutcome:
        self.calls.append((item, config))
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self._outcomes.pop(0) if len(self._outcomes) > 1 else self._outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome
