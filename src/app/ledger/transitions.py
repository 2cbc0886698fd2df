"""State transition rules for sync queue items and their owning clients.

Both dispatch transports (worker push and bridge polling) apply exactly
these functions, so the rules live in one place. Each function is pure: it
takes the current read models and returns the column values to persist.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from src.app.ledger.schemas import (
    ClientRead,
    ClientSyncStatus,
    QueueItemRead,
    QueueStatus,
)

BRIDGE_TIMEOUT_ERROR = "bridge timeout"


def claim(item: QueueItemRead, now: datetime) -> dict[str, Any]:
    """pending -> processing, consuming one attempt."""
    return {
        "status": QueueStatus.PROCESSING.value,
        "attempts": item.attempts + 1,
        "processed_at": now,
    }


def is_claimable(item: QueueItemRead) -> bool:
    return item.status == QueueStatus.PENDING and item.attempts < item.max_attempts


def complete(now: datetime) -> dict[str, Any]:
    """processing -> completed (terminal)."""
    return {
        "status": QueueStatus.COMPLETED.value,
        "completed_at": now,
        "last_error": None,
    }


def fail(item: QueueItemRead, error: str) -> dict[str, Any]:
    """processing -> failed when the retry budget is spent, else back to pending.

    ``item`` is the claimed item, so ``attempts`` already counts this attempt.
    """
    terminal = item.attempts >= item.max_attempts
    return {
        "status": (QueueStatus.FAILED if terminal else QueueStatus.PENDING).value,
        "last_error": error,
    }


def reset_for_retry() -> dict[str, Any]:
    """Operator retry: a fresh attempt budget, eligible for the next batch."""
    return {
        "status": QueueStatus.PENDING.value,
        "attempts": 0,
        "last_error": None,
        "processed_at": None,
    }


def is_stale_claim(item: QueueItemRead, now: datetime, stale_after_seconds: int) -> bool:
    """True when a processing claim is old enough to be presumed abandoned."""
    if item.status != QueueStatus.PROCESSING or item.processed_at is None:
        return False
    return (now - item.processed_at).total_seconds() >= stale_after_seconds


def client_after_success(
    client: ClientRead,
    item: QueueItemRead,
    now: datetime,
    external_id: str | None = None,
) -> dict[str, Any]:
    """Remove exactly the item's fields from the pending set.

    The client is synced only once nothing else is pending; otherwise other
    queued changes still have to land.
    """
    remaining = client.pending.remove(item.fields)
    values: dict[str, Any] = {
        "pending_fields": remaining.to_storage(),
        "sync_status": (
            ClientSyncStatus.SYNCED if not remaining else ClientSyncStatus.PENDING
        ).value,
        "last_synced_at": now,
        "sync_error": None,
    }
    if external_id and not client.external_id:
        values["external_id"] = external_id
    return values


def client_after_failure(item_values: dict[str, Any], error: str) -> dict[str, Any]:
    """Mirror the item's new status onto the client and record the reason."""
    failed = item_values["status"] == QueueStatus.FAILED.value
    return {
        "sync_status": (ClientSyncStatus.FAILED if failed else ClientSyncStatus.PENDING).value,
        "sync_error": error,
    }


def client_after_retry() -> dict[str, Any]:
    return {
        "sync_status": ClientSyncStatus.PENDING.value,
        "sync_error": None,
    }
