"""Client change tracker -- entry point for UI/API client mutations.

Applies field changes to a client and feeds them into the push pipeline:
changed fields join the client's pending set, values for fields already
carried by an unclaimed queue item are rewritten in place, and the rest
go out as one new queue item. This keeps at most one unclaimed assertion
per (client, field) in the queue.
"""

from __future__ import annotations

from typing import Any

import structlog

from src.app.ledger.exceptions import ClientNotFoundError
from src.app.ledger.fields import SyncField, coerce_field_value
from src.app.ledger.queue import SyncQueue
from src.app.ledger.repository import LedgerRepository
from src.app.ledger.schemas import (
    ClientChangeResult,
    ClientRead,
    ClientSyncStatus,
    QueueItemRead,
    QueueOperation,
)

logger = structlog.get_logger(__name__)


def create_payload(client: ClientRead) -> dict[str, Any]:
    """Every known syncable value of a client not yet in the ledger."""
    return {
        field.value: client.field_value(field)
        for field in SyncField
        if client.field_value(field) is not None
    }


class ClientChangeTracker:
    """Records tracked client mutations and enqueues coalesced sync items.

    Args:
        repository: LedgerRepository for tenant-scoped transactions.
        queue: SyncQueue used for new items.
    """

    def __init__(self, repository: LedgerRepository, queue: SyncQueue) -> None:
        self._repository = repository
        self._queue = queue

    async def get_client(self, tenant_id: str, client_id: str) -> ClientRead:
        async with self._repository.transaction(tenant_id) as tx:
            client = await tx.get_client(client_id)
        if client is None:
            raise ClientNotFoundError(client_id)
        return client

    async def record_changes(
        self,
        tenant_id: str,
        client_id: str,
        changes: dict[str, Any],
        actor: str | None = None,
    ) -> ClientChangeResult:
        """Apply ``changes`` and make sure every changed field will be pushed.

        Raises:
            ClientNotFoundError: Client does not exist for the tenant.
            InvalidSyncFieldError: A change names an unknown field.
        """
        parsed = {
            field: coerce_field_value(field, value)
            for field, value in (
                (SyncField.parse(name), value) for name, value in changes.items()
            )
        }

        async with self._repository.transaction(tenant_id) as tx:
            client = await tx.get_client(client_id, for_update=True)
            if client is None:
                raise ClientNotFoundError(client_id)

            changed = {
                field: value
                for field, value in parsed.items()
                if client.field_value(field) != value
            }
            if not changed:
                return ClientChangeResult(client=client)

            old_data = {field.value: client.field_value(field) for field in changed}
            updated_client = await tx.update_client(client.id, {
                **{field.value: value for field, value in changed.items()},
                "pending_fields": client.pending.union(changed).to_storage(),
                "sync_status": ClientSyncStatus.PENDING.value,
            })

            remaining = dict(changed)
            coalesced: list[str] = []
            for item in await tx.lock_unclaimed_items_for_client(client.id):
                if not remaining:
                    break
                if item.operation == QueueOperation.CREATE:
                    carried = set(remaining)
                    payload = {**item.payload, **create_payload(updated_client)}
                else:
                    carried = set(item.fields) & set(remaining)
                    payload = {
                        **item.payload,
                        **{field.value: remaining[field] for field in carried},
                    }
                if not carried:
                    continue
                await tx.update_queue_item(item.id, {"payload": payload})
                coalesced.append(item.id)
                for field in carried:
                    remaining.pop(field)

            queue_item: QueueItemRead | None = None
            if remaining:
                if updated_client.external_id:
                    operation = QueueOperation.UPDATE_FIELD
                    payload = {field.value: value for field, value in remaining.items()}
                else:
                    operation = QueueOperation.CREATE
                    payload = create_payload(updated_client)
                queue_item = await self._queue.enqueue_in(
                    tx,
                    updated_client,
                    operation,
                    payload,
                    user_id=actor,
                    old_data={field.value: old_data[field.value] for field in remaining},
                )

        logger.info(
            "client_changes.recorded",
            tenant_id=tenant_id,
            client_id=client_id,
            fields=sorted(field.value for field in changed),
            coalesced=len(coalesced),
            queue_item_id=queue_item.id if queue_item else None,
        )
        return ClientChangeResult(
            client=updated_client,
            changed_fields=sorted(changed, key=lambda f: f.value),
            queue_item=queue_item,
            coalesced_item_ids=coalesced,
        )
