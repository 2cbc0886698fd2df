"""Sync queue -- durable store of outbound field changes.

Enqueueing performs no deduplication; callers coalesce through the
client's pending-field set first (see ClientChangeTracker). Terminally
failed items are never resurrected automatically: only ``retry`` (an
operator action) puts them back in play.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import structlog

from src.app.ledger import transitions
from src.app.ledger.exceptions import (
    ClientNotFoundError,
    QueueItemNotFoundError,
    QueueItemStateError,
)
from src.app.ledger.fields import SyncField, coerce_field_value
from src.app.ledger.repository import LedgerRepository, LedgerTransaction
from src.app.ledger.schemas import (
    ClientRead,
    DailyHistoryCount,
    HistoryEntryRead,
    HistoryOutcome,
    QueueItemRead,
    QueueOperation,
    QueueStats,
    QueueStatus,
)

logger = structlog.get_logger(__name__)

HISTORY_STATS_DAYS = 7


def normalize_payload(payload: dict[str, Any]) -> dict[str, Any]:
    """Validate payload keys as SyncFields and coerce their values."""
    normalized: dict[str, Any] = {}
    for name, value in payload.items():
        field = SyncField.parse(name)
        normalized[field.value] = coerce_field_value(field, value)
    return normalized


class SyncQueue:
    """Enqueue, retry and read operations over the tenant's sync queue.

    Args:
        repository: LedgerRepository for tenant-scoped transactions.
        max_attempts: Retry budget stamped on new items.
        default_priority: Priority used when callers don't pass one.
        stale_claim_seconds: Age after which a processing claim may be
            manually retried (crash recovery).
    """

    def __init__(
        self,
        repository: LedgerRepository,
        max_attempts: int = 3,
        default_priority: int = 5,
        stale_claim_seconds: int = 300,
    ) -> None:
        self._repository = repository
        self._max_attempts = max_attempts
        self._default_priority = default_priority
        self._stale_claim_seconds = stale_claim_seconds

    # ── Enqueue ─────────────────────────────────────────────────────────────

    async def enqueue_in(
        self,
        tx: LedgerTransaction,
        client: ClientRead,
        operation: QueueOperation,
        payload: dict[str, Any],
        *,
        priority: int | None = None,
        user_id: str | None = None,
        old_data: dict[str, Any] | None = None,
    ) -> QueueItemRead:
        """Append an item inside the caller's transaction."""
        item = await tx.insert_queue_item({
            "client_id": client.id,
            "external_id": client.external_id,
            "operation": operation.value,
            "payload": normalize_payload(payload),
            "old_data": old_data,
            "priority": self._default_priority if priority is None else priority,
            "status": QueueStatus.PENDING.value,
            "attempts": 0,
            "max_attempts": self._max_attempts,
            "user_id": user_id,
        })
        logger.info(
            "sync_queue.enqueued",
            tenant_id=tx.tenant_id,
            queue_item_id=item.id,
            client_id=client.id,
            operation=operation.value,
            fields=item.fields.to_storage(),
            priority=item.priority,
        )
        return item

    async def enqueue(
        self,
        tenant_id: str,
        client_id: str,
        operation: QueueOperation,
        payload: dict[str, Any],
        priority: int | None = None,
        user_id: str | None = None,
    ) -> QueueItemRead:
        """Append a new item for ``client_id`` in its own transaction.

        Raises:
            ClientNotFoundError: Client does not exist for the tenant.
            InvalidSyncFieldError: Payload names an unknown field.
        """
        async with self._repository.transaction(tenant_id) as tx:
            client = await tx.get_client(client_id)
            if client is None:
                raise ClientNotFoundError(client_id)
            return await self.enqueue_in(
                tx, client, operation, payload, priority=priority, user_id=user_id
            )

    # ── Manual Retry ────────────────────────────────────────────────────────

    async def retry(self, tenant_id: str, item_id: str) -> QueueItemRead:
        """Give a failed (or abandoned processing) item a fresh attempt budget.

        Raises:
            QueueItemNotFoundError: No such item for the tenant.
            QueueItemStateError: Item is neither failed nor a stale claim.
        """
        now = datetime.now(timezone.utc)
        async with self._repository.transaction(tenant_id) as tx:
            item = await tx.get_queue_item(item_id, for_update=True)
            if item is None:
                raise QueueItemNotFoundError(item_id)
            stale = transitions.is_stale_claim(item, now, self._stale_claim_seconds)
            if item.status != QueueStatus.FAILED and not stale:
                raise QueueItemStateError(item_id, item.status.value, "retry")

            updated = await tx.update_queue_item(item_id, transitions.reset_for_retry())
            client = await tx.get_client(item.client_id, for_update=True)
            if client is not None:
                await tx.update_client(client.id, {
                    **transitions.client_after_retry(),
                    "pending_fields": client.pending.union(item.fields).to_storage(),
                })

        logger.info(
            "sync_queue.retried",
            tenant_id=tenant_id,
            queue_item_id=item_id,
            previous_status=item.status.value,
            previous_attempts=item.attempts,
        )
        return updated

    # ── Read Side ───────────────────────────────────────────────────────────

    async def list_items(
        self,
        tenant_id: str,
        status: QueueStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[QueueItemRead]:
        async with self._repository.transaction(tenant_id) as tx:
            return await tx.list_queue_items(status=status, limit=limit, offset=offset)

    async def history(
        self, tenant_id: str, client_id: str, limit: int = 50
    ) -> list[HistoryEntryRead]:
        async with self._repository.transaction(tenant_id) as tx:
            return await tx.list_history(client_id, limit=limit)

    async def stats(self, tenant_id: str) -> QueueStats:
        """Counts per status, mean completion time and 7-day attempt history."""
        since = datetime.now(timezone.utc) - timedelta(days=HISTORY_STATS_DAYS)
        async with self._repository.transaction(tenant_id) as tx:
            counts = await tx.queue_status_counts()
            avg_minutes = await tx.average_completion_minutes()
            daily_rows = await tx.history_daily_counts(since)

        days: dict[Any, DailyHistoryCount] = {}
        for day, outcome, count in daily_rows:
            entry = days.setdefault(day, DailyHistoryCount(day=day))
            if outcome == HistoryOutcome.SUCCESS.value:
                entry.successful += count
            else:
                entry.failed += count

        return QueueStats(
            pending=counts.get(QueueStatus.PENDING.value, 0),
            processing=counts.get(QueueStatus.PROCESSING.value, 0),
            failed=counts.get(QueueStatus.FAILED.value, 0),
            completed=counts.get(QueueStatus.COMPLETED.value, 0),
            avg_completion_minutes=avg_minutes,
            recent_history=sorted(days.values(), key=lambda d: d.day, reverse=True),
        )

