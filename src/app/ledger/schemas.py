"""Pydantic schemas for the ledger sync engine.

Defines all structured types exchanged between the engine, the repository
and the HTTP layer:
- Enums: ClientSyncStatus, QueueOperation, QueueStatus, ConflictStatus,
  ResolutionDecision, HistoryOutcome, RunStatus, RunTrigger
- Read models: ClientRead, QueueItemRead, ConflictRead, HistoryEntryRead,
  BridgeConfigRead, IngestionRunRead
- Ingestion: ExternalLedgerRecord, IngestionRecordError, IngestionSummary
- Dispatch: BridgeOutcome, DispatchItemResult, DispatchBatchResult,
  PendingDelivery
- Conflicts: ConflictReport
- Read side: QueueStats, DailyHistoryCount
- Admin and tracked mutations: BridgeConfigUpdate, ClientChangeResult
"""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from src.app.ledger.fields import PendingFields, SyncField


# ── Enums ───────────────────────────────────────────────────────────────────


class ClientSyncStatus(str, Enum):
    """Outbound sync state of a client record."""

    UNSYNCED = "unsynced"
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"


class QueueOperation(str, Enum):
    """Kind of change a queue item asserts to the external ledger."""

    CREATE = "create"
    UPDATE_FIELD = "update_field"


class QueueStatus(str, Enum):
    """Lifecycle of a sync queue item."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ConflictStatus(str, Enum):
    """Resolution state of a field conflict. Both resolved states are terminal."""

    PENDING = "pending"
    RESOLVED_BACKEND_WINS = "resolved_backend_wins"
    RESOLVED_EXTERNAL_WINS = "resolved_external_wins"


class ResolutionDecision(str, Enum):
    """Operator decision when resolving a conflict."""

    BACKEND_WINS = "backend_wins"
    EXTERNAL_WINS = "external_wins"


class HistoryOutcome(str, Enum):
    """Outcome recorded on an audit trail entry."""

    SUCCESS = "success"
    FAILED = "failed"


class RunStatus(str, Enum):
    """Status of an ingestion run log row."""

    REQUESTED = "requested"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class RunTrigger(str, Enum):
    """Who initiated an ingestion run."""

    BRIDGE = "bridge"
    MANUAL = "manual"


EXTERNAL_IMPORT_SOURCE = "external-import"


# ── Read Models ─────────────────────────────────────────────────────────────


class ClientRead(BaseModel):
    """Sync-relevant view of a client record."""

    id: str
    tenant_id: str
    external_id: str | None = None
    name: str
    email: str | None = None
    phone: str | None = None
    address: str | None = None
    postal_code: str | None = None
    notes: str | None = None
    status: str = "active"
    source: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    sync_status: ClientSyncStatus = ClientSyncStatus.UNSYNCED
    pending_fields: frozenset[SyncField] = Field(default_factory=frozenset)
    last_synced_at: datetime | None = None
    sync_error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def pending(self) -> PendingFields:
        return PendingFields(self.pending_fields)

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def field_value(self, field: SyncField) -> Any:
        return getattr(self, field.value)


class QueueItemRead(BaseModel):
    """A durable outbound change waiting for (or done with) delivery."""

    id: str
    tenant_id: str
    client_id: str
    external_id: str | None = None
    operation: QueueOperation
    payload: dict[str, Any] = Field(default_factory=dict)
    old_data: dict[str, Any] | None = None
    priority: int = 5
    status: QueueStatus = QueueStatus.PENDING
    attempts: int = 0
    max_attempts: int = 3
    user_id: str | None = None
    last_error: str | None = None
    created_at: datetime | None = None
    processed_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def fields(self) -> PendingFields:
        """Client fields asserted by this item's payload."""
        return PendingFields(self.payload.keys())

    @property
    def idempotency_key(self) -> str:
        """Deterministic per-attempt key the bridge deduplicates on."""
        return f"{self.id}:{self.attempts}"


class ConflictRead(BaseModel):
    """A field-level disagreement between this backend and the external ledger."""

    id: str
    tenant_id: str
    client_id: str
    external_id: str | None = None
    field_name: SyncField
    backend_value: Any = None
    external_value: Any = None
    detected_at: datetime | None = None
    resolution_status: ConflictStatus = ConflictStatus.PENDING
    resolved_by: str | None = None
    resolved_at: datetime | None = None
    resolution_notes: str | None = None


class HistoryEntryRead(BaseModel):
    """Append-only audit record of one delivery attempt or ad-hoc resolution."""

    id: str
    tenant_id: str
    queue_id: str | None = None
    client_id: str
    external_id: str | None = None
    operation: str
    old_data: dict[str, Any] | None = None
    new_data: dict[str, Any] | None = None
    outcome: HistoryOutcome
    error_message: str | None = None
    external_response: Any = None
    user_id: str | None = None
    synced_at: datetime | None = None


class BridgeConfigRead(BaseModel):
    """Tenant bridge configuration. ``credential`` never leaves the service layer."""

    tenant_id: str
    external_company_name: str | None = None
    username: str | None = None
    credential: str | None = None
    auto_sync_enabled: bool = False
    sync_interval_minutes: int = 30
    last_dispatch_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_configured(self) -> bool:
        return bool(self.external_company_name)

    @property
    def has_credential(self) -> bool:
        return bool(self.credential)


class IngestionRunRead(BaseModel):
    """One row of the ingestion run log."""

    id: str
    tenant_id: str
    status: RunStatus
    triggered_by: RunTrigger
    started_at: datetime | None = None
    completed_at: datetime | None = None
    total_records: int = 0
    created_records: int = 0
    updated_records: int = 0
    failed_records: int = 0
    received_with_coordinates: int = 0
    errors: list[dict[str, Any]] = Field(default_factory=list)


# ── Ingestion ───────────────────────────────────────────────────────────────


class ExternalLedgerRecord(BaseModel):
    """A customer/account entry as uploaded by the bridge.

    ``name`` is optional at the schema level so that a missing name fails
    only that record rather than the whole request.
    """

    external_id: str | None = None
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    address: str | None = None
    postal_code: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    status: str | None = None
    notes: str | None = None
    source: str | None = None

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None


class IngestionRecordError(BaseModel):
    """Per-record failure captured in the run summary."""

    external_id: str | None = None
    name: str | None = None
    error: str


class IngestionSummary(BaseModel):
    """Result of one ingestion batch."""

    run_id: str | None = None
    status: RunStatus
    total: int = 0
    created: int = 0
    updated: int = 0
    failed: int = 0
    received_with_coordinates: int = 0
    clients_missing_coordinates: int | None = None
    errors: list[IngestionRecordError] = Field(default_factory=list)


# ── Dispatch ────────────────────────────────────────────────────────────────


class BridgeOutcome(BaseModel):
    """Result of delivering one queue item, from either transport."""

    success: bool
    error: str | None = None
    external_response: Any = None
    external_id: str | None = None


class DispatchItemResult(BaseModel):
    """Per-item line of a dispatch batch result."""

    id: str
    client_id: str
    operation: QueueOperation
    success: bool
    status: QueueStatus
    error: str | None = None


class DispatchBatchResult(BaseModel):
    """Result of one Dispatch Worker invocation."""

    total: int = 0
    successful: int = 0
    failed: int = 0
    items: list[DispatchItemResult] = Field(default_factory=list)


class PendingDelivery(BaseModel):
    """A claimed queue item handed to the bridge by the polling transport."""

    queue_item_id: str
    client_id: str
    external_id: str | None = None
    operation: QueueOperation
    payload: dict[str, Any] = Field(default_factory=dict)
    attempt: int
    idempotency_key: str
    external_company_name: str
    username: str | None = None
    credential: str | None = None


# ── Conflicts ───────────────────────────────────────────────────────────────


class ConflictReport(BaseModel):
    """A conflict detected by the bridge. One of client_id/external_id is required."""

    client_id: str | None = None
    external_id: str | None = None
    field_name: str
    backend_value: Any = None
    external_value: Any = None


# ── Read Side ───────────────────────────────────────────────────────────────


class DailyHistoryCount(BaseModel):
    """Successful/failed delivery attempts on one day."""

    day: date
    successful: int = 0
    failed: int = 0


class QueueStats(BaseModel):
    """Queue counters for the operator dashboard."""

    pending: int = 0
    processing: int = 0
    failed: int = 0
    completed: int = 0
    avg_completion_minutes: float = 0.0
    recent_history: list[DailyHistoryCount] = Field(default_factory=list)


# ── Mutations ───────────────────────────────────────────────────────────────


class BridgeConfigUpdate(BaseModel):
    """Admin update of the tenant bridge configuration.

    A ``credential`` of None keeps the stored credential.
    """

    external_company_name: str = Field(min_length=1, max_length=300)
    username: str | None = None
    credential: str | None = None
    auto_sync_enabled: bool = False
    sync_interval_minutes: int = Field(default=30, ge=1, le=24 * 60)

    @field_validator("external_company_name")
    @classmethod
    def _strip_company_name(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("external_company_name must not be blank")
        return stripped


class ClientChangeResult(BaseModel):
    """Outcome of a tracked client mutation."""

    client: ClientRead
    changed_fields: list[SyncField] = Field(default_factory=list)
    queue_item: QueueItemRead | None = None
    coalesced_item_ids: list[str] = Field(default_factory=list)
