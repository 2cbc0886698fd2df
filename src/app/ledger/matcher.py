"""Ingestion matcher -- merges external ledger records into client rows.

Pull direction of the sync engine. For each record in a batch:

1. Reject (count as failed, keep going) when the name is missing.
2. Resolve an existing client through the match cascade, stopping at the
   first hit: external_id, then trimmed case-insensitive email, then phone
   digits (only when at least 10 digits remain).
3. Merge into the match, or insert a new client tagged "external-import".
4. Upsert the external_id -> client mapping.

The whole batch is one transaction guarded by a per-tenant advisory lock.
Any unexpected error rolls every row back and the run is logged as failed
with zero counts and the raw error text.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any

import structlog

from src.app.core.monitoring import ledger_ingested_records_total
from src.app.ledger.exceptions import (
    IngestionBatchTooLargeError,
    IngestionInProgressError,
)
from src.app.ledger.repository import LedgerRepository, LedgerTransaction
from src.app.ledger.schemas import (
    EXTERNAL_IMPORT_SOURCE,
    ClientRead,
    ClientSyncStatus,
    ExternalLedgerRecord,
    IngestionRecordError,
    IngestionRunRead,
    IngestionSummary,
    RunStatus,
    RunTrigger,
)
from src.app.ledger.usage import UsageNotifier

logger = structlog.get_logger(__name__)

MIN_PHONE_DIGITS = 10

# Filled only when the existing client has no value.
_FILL_IF_ABSENT = ("email", "phone", "address", "postal_code", "notes")

_COORDINATES = ("latitude", "longitude")

# Client column widths; longer values reject the record.
MAX_LENGTHS = {
    "external_id": 200,
    "name": 300,
    "email": 320,
    "phone": 50,
    "postal_code": 20,
    "status": 50,
    "source": 50,
}

_NON_DIGITS = re.compile(r"\D")


class RecordRejected(ValueError):
    """A single record failed validation; the batch continues."""


def normalize_email(email: str | None) -> str | None:
    if not email:
        return None
    normalized = email.strip().lower()
    return normalized or None


def phone_digits(phone: str | None) -> str | None:
    """Digits of ``phone`` when long enough to be a usable match key."""
    if not phone:
        return None
    digits = _NON_DIGITS.sub("", phone)
    return digits if len(digits) >= MIN_PHONE_DIGITS else None


def _absent(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def check_lengths(record: ExternalLedgerRecord, name: str) -> None:
    """Raise RecordRejected when a value would not fit its client column."""
    for field, limit in MAX_LENGTHS.items():
        value = name if field == "name" else getattr(record, field)
        if value is not None and len(value) > limit:
            raise RecordRejected(f"Field {field} exceeds {limit} characters")


def merge_values(
    existing: ClientRead, record: ExternalLedgerRecord, name: str, now: datetime
) -> dict[str, Any]:
    """Column updates for a matched client.

    name/status/source are always overwritten. Optional fields and each
    coordinate are only filled when the client has no value, so a known
    value is never clobbered by the ledger. Pending fields are left
    untouched.
    """
    values: dict[str, Any] = {
        "name": name,
        "status": record.status or "active",
        "source": record.source or EXTERNAL_IMPORT_SOURCE,
        "last_synced_at": now,
    }
    for field in _FILL_IF_ABSENT:
        incoming = getattr(record, field)
        if _absent(getattr(existing, field)) and not _absent(incoming):
            values[field] = incoming
    for axis in _COORDINATES:
        if getattr(existing, axis) is None and getattr(record, axis) is not None:
            values[axis] = getattr(record, axis)
    if record.external_id and not existing.external_id:
        values["external_id"] = record.external_id
    return values


def new_client_values(
    record: ExternalLedgerRecord, name: str, now: datetime
) -> dict[str, Any]:
    """Column values for a client first seen in the ledger."""
    values: dict[str, Any] = {
        "name": name,
        "external_id": record.external_id,
        "email": record.email,
        "phone": record.phone,
        "address": record.address,
        "postal_code": record.postal_code,
        "notes": record.notes,
        "status": record.status or "active",
        "source": record.source or EXTERNAL_IMPORT_SOURCE,
        "sync_status": ClientSyncStatus.SYNCED.value,
        "pending_fields": [],
        "last_synced_at": now,
    }
    for axis in _COORDINATES:
        if getattr(record, axis) is not None:
            values[axis] = getattr(record, axis)
    return values


class IngestionMatcher:
    """Reconciles batches of external ledger records into tenant client rows.

    Args:
        repository: LedgerRepository for tenant-scoped transactions.
        usage_notifier: Optional notifier told how many clients were created.
        max_batch_size: Largest accepted batch; larger batches are rejected
            before any work is done.
    """

    def __init__(
        self,
        repository: LedgerRepository,
        usage_notifier: UsageNotifier | None = None,
        max_batch_size: int = 5000,
    ) -> None:
        self._repository = repository
        self._usage_notifier = usage_notifier
        self._max_batch_size = max_batch_size

    async def ingest(
        self,
        tenant_id: str,
        records: list[ExternalLedgerRecord],
        triggered_by: RunTrigger = RunTrigger.BRIDGE,
    ) -> IngestionSummary:
        """Merge one batch and persist its run summary.

        Raises:
            IngestionBatchTooLargeError: Batch exceeds max_batch_size.
            IngestionInProgressError: Another run holds the tenant's lock.
        """
        if len(records) > self._max_batch_size:
            raise IngestionBatchTooLargeError(len(records), self._max_batch_size)

        started_at = datetime.now(timezone.utc)
        logger.info(
            "ingestion.started",
            tenant_id=tenant_id,
            records=len(records),
            triggered_by=triggered_by.value,
        )

        try:
            async with self._repository.transaction(tenant_id) as tx:
                if not await tx.try_ingestion_lock():
                    raise IngestionInProgressError(tenant_id)
                run = await tx.claim_requested_run(started_at)
                if run is None:
                    run = await tx.create_run({
                        "status": RunStatus.RUNNING.value,
                        "triggered_by": triggered_by.value,
                        "started_at": started_at,
                    })

                summary = await self._merge_batch(tx, records, started_at)
                summary.run_id = run.id

                await tx.update_run(run.id, {
                    "status": RunStatus.COMPLETED.value,
                    "completed_at": datetime.now(timezone.utc),
                    "total_records": summary.total,
                    "created_records": summary.created,
                    "updated_records": summary.updated,
                    "failed_records": summary.failed,
                    "received_with_coordinates": summary.received_with_coordinates,
                    "errors": [e.model_dump() for e in summary.errors],
                })
        except IngestionInProgressError:
            logger.warning("ingestion.already_running", tenant_id=tenant_id)
            raise
        except Exception as exc:
            logger.exception("ingestion.failed", tenant_id=tenant_id, error=str(exc))
            return await self._record_failed_run(tenant_id, triggered_by, started_at, exc)

        self._count_records(tenant_id, summary)
        summary.clients_missing_coordinates = await self._missing_coordinates(tenant_id)
        if summary.created and self._usage_notifier is not None:
            try:
                await self._usage_notifier.clients_created(tenant_id, summary.created)
            except Exception as exc:
                logger.warning(
                    "ingestion.usage_notify_failed",
                    tenant_id=tenant_id,
                    error=str(exc),
                )

        logger.info(
            "ingestion.completed",
            tenant_id=tenant_id,
            run_id=summary.run_id,
            total=summary.total,
            created=summary.created,
            updated=summary.updated,
            failed=summary.failed,
        )
        return summary

    async def request_run(self, tenant_id: str) -> str:
        """Record a manual trigger; the bridge's next upload completes it."""
        async with self._repository.transaction(tenant_id) as tx:
            run = await tx.create_run({
                "status": RunStatus.REQUESTED.value,
                "triggered_by": RunTrigger.MANUAL.value,
                "started_at": datetime.now(timezone.utc),
            })
        logger.info("ingestion.requested", tenant_id=tenant_id, run_id=run.id)
        return run.id

    async def list_runs(self, tenant_id: str, limit: int = 10) -> list[IngestionRunRead]:
        async with self._repository.transaction(tenant_id) as tx:
            return await tx.list_runs(limit)

    async def latest_run(self, tenant_id: str) -> IngestionRunRead | None:
        async with self._repository.transaction(tenant_id) as tx:
            return await tx.latest_completed_run()

    async def list_external_ids(self, tenant_id: str) -> list[dict[str, str]]:
        """Identifiers already known, so the bridge can skip unchanged records."""
        async with self._repository.transaction(tenant_id) as tx:
            return await tx.list_external_ids()

    # ── Batch Merge ─────────────────────────────────────────────────────────

    async def _merge_batch(
        self,
        tx: LedgerTransaction,
        records: list[ExternalLedgerRecord],
        now: datetime,
    ) -> IngestionSummary:
        summary = IngestionSummary(status=RunStatus.COMPLETED, total=len(records))
        for record in records:
            if record.has_coordinates:
                summary.received_with_coordinates += 1
            try:
                created = await self._merge_record(tx, record, now)
            except RecordRejected as exc:
                summary.failed += 1
                summary.errors.append(
                    IngestionRecordError(
                        external_id=record.external_id,
                        name=record.name,
                        error=str(exc),
                    )
                )
                continue
            if created:
                summary.created += 1
            else:
                summary.updated += 1
        return summary

    async def _merge_record(
        self, tx: LedgerTransaction, record: ExternalLedgerRecord, now: datetime
    ) -> bool:
        """Merge one record. Returns True when a new client was inserted."""
        name = (record.name or "").strip()
        if not name:
            raise RecordRejected("Missing required field: name")
        check_lengths(record, name)

        existing = await self.find_match(tx, record)
        if existing is not None:
            client = await tx.update_client(
                existing.id, merge_values(existing, record, name, now)
            )
            created = False
        else:
            client = await tx.insert_client(new_client_values(record, name, now))
            created = True

        if record.external_id:
            await tx.upsert_mapping(record.external_id, client.id, now)
        return created

    @staticmethod
    async def find_match(
        tx: LedgerTransaction, record: ExternalLedgerRecord
    ) -> ClientRead | None:
        """Resolve an existing client through the ordered match cascade."""
        if record.external_id:
            client = await tx.find_client_by_external_id(record.external_id)
            if client is not None:
                return client

        email = normalize_email(record.email)
        if email:
            client = await tx.find_client_by_email(email)
            if client is not None:
                return client

        digits = phone_digits(record.phone)
        if digits:
            return await tx.find_client_by_phone_digits(digits)
        return None

    # ── Bookkeeping ─────────────────────────────────────────────────────────

    async def _record_failed_run(
        self,
        tenant_id: str,
        triggered_by: RunTrigger,
        started_at: datetime,
        exc: Exception,
    ) -> IngestionSummary:
        """Log the rolled-back batch as a failed run with zero counts."""
        error = IngestionRecordError(error=str(exc) or exc.__class__.__name__)
        summary = IngestionSummary(status=RunStatus.FAILED, errors=[error])
        try:
            async with self._repository.transaction(tenant_id) as tx:
                run = await tx.create_run({
                    "status": RunStatus.FAILED.value,
                    "triggered_by": triggered_by.value,
                    "started_at": started_at,
                    "completed_at": datetime.now(timezone.utc),
                    "errors": [error.model_dump()],
                })
            summary.run_id = run.id
        except Exception:
            logger.exception("ingestion.run_log_failed", tenant_id=tenant_id)
        return summary

    async def _missing_coordinates(self, tenant_id: str) -> int | None:
        try:
            async with self._repository.transaction(tenant_id) as tx:
                return await tx.count_clients_missing_coordinates()
        except Exception as exc:
            logger.warning(
                "ingestion.coordinate_count_failed",
                tenant_id=tenant_id,
                error=str(exc),
            )
            return None

    @staticmethod
    def _count_records(tenant_id: str, summary: IngestionSummary) -> None:
        for result, count in (
            ("created", summary.created),
            ("updated", summary.updated),
            ("failed", summary.failed),
        ):
            if count:
                ledger_ingested_records_total.labels(
                    tenant_id=tenant_id, result=result
                ).inc(count)
