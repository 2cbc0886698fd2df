"""Conflict detector and resolver.

Conflicts originate at the bridge: it notices that the external ledger's
value for a field differs from what this backend last asserted and reports
it. Each report becomes (or refreshes) the single pending SyncConflict for
that (client, field). An operator then resolves it:

- backend_wins: re-assert the backend value through a new queue item.
- external_wins: write the external value straight onto the client,
  bypassing the queue, withdraw the field from unclaimed queue items so
  the overruled value is never pushed, and record an ad-hoc history entry.

Both resolved states are terminal.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import structlog

from src.app.core.monitoring import ledger_conflicts_total
from src.app.ledger import transitions
from src.app.ledger.exceptions import (
    ClientNotFoundError,
    ConflictAlreadyResolvedError,
    ConflictNotFoundError,
)
from src.app.ledger.fields import PendingFields, SyncField, coerce_field_value
from src.app.ledger.queue import SyncQueue
from src.app.ledger.repository import LedgerRepository, LedgerTransaction
from src.app.ledger.schemas import (
    ClientRead,
    ClientSyncStatus,
    ConflictRead,
    ConflictReport,
    ConflictStatus,
    HistoryOutcome,
    QueueOperation,
    ResolutionDecision,
)

logger = structlog.get_logger(__name__)

EXTERNAL_WINS_OPERATION = "resolve_external_wins"


class ConflictResolver:
    """Persists bridge-reported conflicts and applies operator decisions.

    Args:
        repository: LedgerRepository for tenant-scoped transactions.
        queue: SyncQueue used to re-assert backend values.
    """

    def __init__(self, repository: LedgerRepository, queue: SyncQueue) -> None:
        self._repository = repository
        self._queue = queue

    async def report(self, tenant_id: str, report: ConflictReport) -> ConflictRead:
        """Record a detected conflict, refreshing an existing pending one.

        Raises:
            InvalidSyncFieldError: Unknown field name.
            ClientNotFoundError: Neither client_id nor external_id resolves.
        """
        field = SyncField.parse(report.field_name)
        now = datetime.now(timezone.utc)
        async with self._repository.transaction(tenant_id) as tx:
            client = None
            if report.client_id:
                client = await tx.get_client(report.client_id)
            if client is None and report.external_id:
                client = await tx.find_client_by_external_id(report.external_id)
            if client is None:
                raise ClientNotFoundError(report.client_id or report.external_id or "")

            conflict = await tx.upsert_pending_conflict({
                "client_id": client.id,
                "external_id": report.external_id or client.external_id,
                "field_name": field.value,
                "backend_value": report.backend_value,
                "external_value": report.external_value,
                "detected_at": now,
            })

        ledger_conflicts_total.labels(tenant_id=tenant_id, event="reported").inc()
        logger.info(
            "conflict.reported",
            tenant_id=tenant_id,
            conflict_id=conflict.id,
            client_id=conflict.client_id,
            field=field.value,
        )
        return conflict

    async def list_pending(self, tenant_id: str, limit: int = 100) -> list[ConflictRead]:
        async with self._repository.transaction(tenant_id) as tx:
            return await tx.list_conflicts(ConflictStatus.PENDING, limit=limit)

    async def resolve(
        self,
        tenant_id: str,
        conflict_id: str,
        decision: ResolutionDecision,
        resolved_by: str | None = None,
        notes: str | None = None,
    ) -> ConflictRead:
        """Apply an operator decision to a pending conflict.

        Raises:
            ConflictNotFoundError: No such conflict for the tenant.
            ConflictAlreadyResolvedError: Conflict is already resolved.
            ClientNotFoundError: The conflict's client no longer exists.
        """
        now = datetime.now(timezone.utc)
        async with self._repository.transaction(tenant_id) as tx:
            conflict = await tx.get_conflict(conflict_id, for_update=True)
            if conflict is None:
                raise ConflictNotFoundError(conflict_id)
            if conflict.resolution_status != ConflictStatus.PENDING:
                raise ConflictAlreadyResolvedError(
                    conflict_id, conflict.resolution_status.value
                )
            client = await tx.get_client(conflict.client_id, for_update=True)
            if client is None:
                raise ClientNotFoundError(conflict.client_id)

            field = conflict.field_name
            if decision == ResolutionDecision.BACKEND_WINS:
                backend_value = client.field_value(field)
                await self._queue.enqueue_in(
                    tx,
                    client,
                    QueueOperation.UPDATE_FIELD,
                    {field.value: backend_value},
                    user_id=resolved_by,
                    old_data={field.value: conflict.external_value},
                )
                await tx.update_client(client.id, {
                    "pending_fields": client.pending.union([field]).to_storage(),
                    "sync_status": ClientSyncStatus.PENDING.value,
                })
                status = ConflictStatus.RESOLVED_BACKEND_WINS
            else:
                external_value = coerce_field_value(field, conflict.external_value)
                still_pending = await self._withdraw_field(tx, client, field, external_value, now)
                remaining = client.pending.remove([field]).union(still_pending)
                await tx.update_client(client.id, {
                    field.value: external_value,
                    "pending_fields": remaining.to_storage(),
                    "sync_status": (
                        client.sync_status if remaining else ClientSyncStatus.SYNCED
                    ).value,
                })
                await tx.append_history({
                    "queue_id": None,
                    "client_id": client.id,
                    "external_id": conflict.external_id or client.external_id,
                    "operation": EXTERNAL_WINS_OPERATION,
                    "old_data": {field.value: client.field_value(field)},
                    "new_data": {field.value: external_value},
                    "outcome": HistoryOutcome.SUCCESS.value,
                    "user_id": resolved_by,
                    "synced_at": now,
                })
                status = ConflictStatus.RESOLVED_EXTERNAL_WINS

            resolved = await tx.update_conflict(conflict_id, {
                "resolution_status": status.value,
                "resolved_by": resolved_by,
                "resolved_at": now,
                "resolution_notes": notes,
            })

        ledger_conflicts_total.labels(tenant_id=tenant_id, event=status.value).inc()
        logger.info(
            "conflict.resolved",
            tenant_id=tenant_id,
            conflict_id=conflict_id,
            field=field.value,
            decision=decision.value,
            resolved_by=resolved_by,
        )
        return resolved

    @staticmethod
    async def _withdraw_field(
        tx: LedgerTransaction,
        client: ClientRead,
        field: SyncField,
        external_value: Any,
        now: datetime,
    ) -> PendingFields:
        """Stop unclaimed items from pushing the overruled backend value.

        Field updates drop the field, and an item left with nothing to
        assert is completed unsent. An unclaimed create still has to
        deliver the client, so it carries the external value instead.
        Returns the fields that stay pending because a create carries them.
        """
        carried = PendingFields()
        for item in await tx.lock_unclaimed_items_for_client(client.id):
            if field not in item.fields:
                continue
            if item.operation == QueueOperation.CREATE:
                await tx.update_queue_item(item.id, {
                    "payload": {**item.payload, field.value: external_value},
                })
                carried = carried.union([field])
                continue
            payload = {k: v for k, v in item.payload.items() if k != field.value}
            values: dict[str, Any] = {"payload": payload}
            if not payload:
                values.update(transitions.complete(now))
            await tx.update_queue_item(item.id, values)
            logger.info(
                "conflict.queued_value_withdrawn",
                tenant_id=client.tenant_id,
                queue_item_id=item.id,
                field=field.value,
                completed=not payload,
            )
        return carried
