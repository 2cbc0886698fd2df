"""Domain exceptions raised by the ledger sync engine.

Routers translate these into HTTP responses; background jobs log them.
"""

from __future__ import annotations


class LedgerSyncError(Exception):
    """Base class for ledger sync domain errors."""


class BridgeNotConfiguredError(LedgerSyncError):
    """Tenant has no bridge configuration; dispatch must not proceed."""

    def __init__(self, tenant_id: str) -> None:
        super().__init__(f"Ledger bridge not configured for tenant {tenant_id}")
        self.tenant_id = tenant_id


class IngestionInProgressError(LedgerSyncError):
    """Another ingestion run holds the tenant's ingestion lock."""

    def __init__(self, tenant_id: str) -> None:
        super().__init__(f"Ingestion already running for tenant {tenant_id}")
        self.tenant_id = tenant_id


class IngestionBatchTooLargeError(LedgerSyncError):
    """Ingestion batch exceeds the configured maximum size."""

    def __init__(self, size: int, limit: int) -> None:
        super().__init__(f"Batch of {size} records exceeds limit of {limit}")
        self.size = size
        self.limit = limit


class QueueItemNotFoundError(LedgerSyncError):
    """Queue item does not exist in the tenant's queue."""

    def __init__(self, item_id: str) -> None:
        super().__init__(f"Queue item not found: {item_id}")
        self.item_id = item_id


class QueueItemStateError(LedgerSyncError):
    """Queue item is not in a state that allows the requested transition."""

    def __init__(self, item_id: str, status: str, action: str) -> None:
        super().__init__(f"Cannot {action} queue item {item_id} in status '{status}'")
        self.item_id = item_id
        self.status = status
        self.action = action


class ConflictNotFoundError(LedgerSyncError):
    """Conflict does not exist for the tenant."""

    def __init__(self, conflict_id: str) -> None:
        super().__init__(f"Conflict not found: {conflict_id}")
        self.conflict_id = conflict_id


class ConflictAlreadyResolvedError(LedgerSyncError):
    """Conflict has already reached a terminal resolution."""

    def __init__(self, conflict_id: str, status: str) -> None:
        super().__init__(f"Conflict {conflict_id} already resolved ({status})")
        self.conflict_id = conflict_id
        self.status = status


class ClientNotFoundError(LedgerSyncError):
    """Client does not exist for the tenant."""

    def __init__(self, client_ref: str) -> None:
        super().__init__(f"Client not found: {client_ref}")
        self.client_ref = client_ref


class InvalidSyncFieldError(LedgerSyncError):
    """Field name is not one of the syncable client fields."""

    def __init__(self, field_name: str) -> None:
        super().__init__(f"Unknown sync field: {field_name}")
        self.field_name = field_name
