"""Dispatch worker and polling transport -- the push direction.

Two transports deliver queue items to the bridge:

- DispatchWorker: this backend calls the bridge for each claimed item.
- PollingTransport: the bridge fetches claimed items and reports outcomes.

Both claim through ``claim_items`` and finish through ``record_outcome``,
so the state rules in ``transitions`` apply identically. The claim is
committed before any network call and each outcome is committed in its
own transaction together with its history entry, so no transaction is
held across a bridge call and one item's failure never rolls back a
sibling. The ``processing`` status is the claim: a second claimer skips
it, and an outcome is only accepted while the item is still processing.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import structlog

from src.app.core.monitoring import ledger_dispatch_total, track_bridge_call
from src.app.ledger import transitions
from src.app.ledger.bridge_client import BridgeClient
from src.app.ledger.exceptions import (
    BridgeNotConfiguredError,
    QueueItemNotFoundError,
    QueueItemStateError,
)
from src.app.ledger.repository import LedgerRepository, LedgerTransaction
from src.app.ledger.schemas import (
    BridgeConfigRead,
    BridgeOutcome,
    DispatchBatchResult,
    DispatchItemResult,
    HistoryOutcome,
    PendingDelivery,
    QueueItemRead,
    QueueStatus,
)

logger = structlog.get_logger(__name__)


# ── Shared Transition Steps ─────────────────────────────────────────────────


async def require_config(tx: LedgerTransaction) -> BridgeConfigRead:
    """Load the tenant's bridge config or fail before anything is claimed."""
    config = await tx.get_config()
    if config is None or not config.is_configured:
        raise BridgeNotConfiguredError(tx.tenant_id)
    return config


async def claim_items(
    tx: LedgerTransaction, limit: int, now: datetime
) -> list[QueueItemRead]:
    """Move up to ``limit`` pending items to processing, consuming an attempt.

    Items without a denormalized external_id pick up the client's current
    one, which an earlier ``create`` delivery may have filled in.
    """
    claimed: list[QueueItemRead] = []
    for item in await tx.lock_claimable_items(limit):
        values = transitions.claim(item, now)
        if item.external_id is None:
            client = await tx.get_client(item.client_id)
            if client is not None and client.external_id:
                values["external_id"] = client.external_id
        claimed.append(await tx.update_queue_item(item.id, values))
    return claimed


async def record_outcome(
    tx: LedgerTransaction,
    item_id: str,
    outcome: BridgeOutcome,
    *,
    transport: str,
    now: datetime,
) -> QueueItemRead:
    """Apply a delivery outcome to a claimed item, its client and the audit trail.

    Raises:
        QueueItemNotFoundError: No such item for the tenant.
        QueueItemStateError: Item is no longer processing (already reported,
            or reset by an operator retry).
    """
    item = await tx.get_queue_item(item_id, for_update=True)
    if item is None:
        raise QueueItemNotFoundError(item_id)
    if item.status != QueueStatus.PROCESSING:
        raise QueueItemStateError(item_id, item.status.value, "record outcome for")

    client = await tx.get_client(item.client_id, for_update=True)
    if outcome.success:
        item_values = transitions.complete(now)
        if outcome.external_id and not item.external_id:
            item_values["external_id"] = outcome.external_id
        error = None
        if client is not None:
            await tx.update_client(
                client.id,
                transitions.client_after_success(client, item, now, outcome.external_id),
            )
            if outcome.external_id and not client.external_id:
                await tx.upsert_mapping(outcome.external_id, client.id, now)
    else:
        error = outcome.error or "bridge reported failure"
        item_values = transitions.fail(item, error)
        if client is not None:
            await tx.update_client(
                client.id, transitions.client_after_failure(item_values, error)
            )

    updated = await tx.update_queue_item(item.id, item_values)
    await tx.append_history({
        "queue_id": item.id,
        "client_id": item.client_id,
        "external_id": updated.external_id,
        "operation": item.operation.value,
        "old_data": item.old_data,
        "new_data": item.payload,
        "outcome": (HistoryOutcome.SUCCESS if outcome.success else HistoryOutcome.FAILED).value,
        "error_message": error,
        "external_response": outcome.external_response,
        "user_id": item.user_id,
        "synced_at": now,
    })

    ledger_dispatch_total.labels(
        tenant_id=tx.tenant_id,
        transport=transport,
        outcome=updated.status.value,
    ).inc()
    logger.info(
        "dispatch.outcome_recorded",
        tenant_id=tx.tenant_id,
        queue_item_id=item.id,
        transport=transport,
        success=outcome.success,
        status=updated.status.value,
        attempts=updated.attempts,
        error=error,
    )
    return updated


# ── Worker Transport ────────────────────────────────────────────────────────


class DispatchWorker:
    """Drains a tenant's queue by calling the bridge for each claimed item.

    Items are delivered one at a time with a fixed pacing delay between
    calls, each bounded by ``timeout``. A timeout is recorded exactly like
    a failure response ("bridge timeout"); the in-flight call is abandoned.

    Args:
        repository: LedgerRepository for tenant-scoped transactions.
        bridge: BridgeClient used to push items.
        timeout: Upper bound in seconds for one delivery.
        pacing_seconds: Delay between consecutive deliveries in one batch.
        default_batch_size: Items claimed when the caller gives no limit.
    """

    TRANSPORT = "worker"

    def __init__(
        self,
        repository: LedgerRepository,
        bridge: BridgeClient,
        timeout: float = 30.0,
        pacing_seconds: float = 0.5,
        default_batch_size: int = 20,
    ) -> None:
        self._repository = repository
        self._bridge = bridge
        self._timeout = timeout
        self._pacing_seconds = pacing_seconds
        self._default_batch_size = default_batch_size

    async def process_batch(
        self, tenant_id: str, max_items: int | None = None
    ) -> DispatchBatchResult:
        """Claim and deliver up to ``max_items`` pending items.

        Raises:
            BridgeNotConfiguredError: Tenant has no bridge configuration;
                nothing is claimed and no attempt is consumed.
        """
        limit = self._default_batch_size if max_items is None else max_items
        now = datetime.now(timezone.utc)
        async with self._repository.transaction(tenant_id) as tx:
            config = await require_config(tx)
            items = await claim_items(tx, limit, now)
            await tx.touch_last_dispatch(now)

        result = DispatchBatchResult(total=len(items))
        if not items:
            logger.debug("dispatch.queue_empty", tenant_id=tenant_id)
            return result

        logger.info("dispatch.batch_started", tenant_id=tenant_id, claimed=len(items))
        for index, item in enumerate(items):
            if index:
                await asyncio.sleep(self._pacing_seconds)
            line = await self._dispatch_one(tenant_id, item, config)
            result.items.append(line)
            if line.success:
                result.successful += 1
            else:
                result.failed += 1

        logger.info(
            "dispatch.batch_completed",
            tenant_id=tenant_id,
            total=result.total,
            successful=result.successful,
            failed=result.failed,
        )
        return result

    async def _dispatch_one(
        self, tenant_id: str, item: QueueItemRead, config: BridgeConfigRead
    ) -> DispatchItemResult:
        outcome = await self._deliver(tenant_id, item, config)
        try:
            async with self._repository.transaction(tenant_id) as tx:
                updated = await record_outcome(
                    tx,
                    item.id,
                    outcome,
                    transport=self.TRANSPORT,
                    now=datetime.now(timezone.utc),
                )
        except QueueItemStateError as exc:
            logger.warning(
                "dispatch.outcome_discarded",
                tenant_id=tenant_id,
                queue_item_id=item.id,
                status=exc.status,
            )
            return DispatchItemResult(
                id=item.id,
                client_id=item.client_id,
                operation=item.operation,
                success=False,
                status=QueueStatus(exc.status),
                error=str(exc),
            )
        except Exception as exc:
            # Item stays processing; recoverable through manual retry.
            logger.exception(
                "dispatch.outcome_write_failed",
                tenant_id=tenant_id,
                queue_item_id=item.id,
            )
            return DispatchItemResult(
                id=item.id,
                client_id=item.client_id,
                operation=item.operation,
                success=False,
                status=QueueStatus.PROCESSING,
                error=str(exc),
            )

        return DispatchItemResult(
            id=item.id,
            client_id=item.client_id,
            operation=item.operation,
            success=outcome.success,
            status=updated.status,
            error=outcome.error if not outcome.success else None,
        )

    async def _deliver(
        self, tenant_id: str, item: QueueItemRead, config: BridgeConfigRead
    ) -> BridgeOutcome:
        async with track_bridge_call(tenant_id) as tracker:
            try:
                outcome = await asyncio.wait_for(
                    self._bridge.push_update(item, config), timeout=self._timeout
                )
            except asyncio.TimeoutError:
                tracker["status"] = "timeout"
                logger.warning(
                    "dispatch.bridge_timeout",
                    tenant_id=tenant_id,
                    queue_item_id=item.id,
                    timeout=self._timeout,
                )
                return BridgeOutcome(success=False, error=transitions.BRIDGE_TIMEOUT_ERROR)
            except Exception as exc:
                tracker["status"] = "error"
                logger.exception(
                    "dispatch.bridge_call_failed",
                    tenant_id=tenant_id,
                    queue_item_id=item.id,
                )
                return BridgeOutcome(success=False, error=str(exc) or exc.__class__.__name__)
            tracker["status"] = "success" if outcome.success else "rejected"
            return outcome


# ── Polling Transport ───────────────────────────────────────────────────────


class PollingTransport:
    """Bridge-initiated delivery: fetch pending claims, then report outcomes.

    Args:
        repository: LedgerRepository for tenant-scoped transactions.
        default_batch_size: Items handed out when the bridge gives no size.
        max_batch_size: Upper bound on a single fetch.
    """

    TRANSPORT = "polling"

    def __init__(
        self,
        repository: LedgerRepository,
        default_batch_size: int = 20,
        max_batch_size: int = 100,
    ) -> None:
        self._repository = repository
        self._default_batch_size = default_batch_size
        self._max_batch_size = max_batch_size

    async def fetch_pending(
        self, tenant_id: str, batch_size: int | None = None
    ) -> list[PendingDelivery]:
        """Claim up to ``batch_size`` items and hand them out with credentials.

        Raises:
            BridgeNotConfiguredError: Tenant has no bridge configuration.
        """
        limit = min(batch_size or self._default_batch_size, self._max_batch_size)
        now = datetime.now(timezone.utc)
        async with self._repository.transaction(tenant_id) as tx:
            config = await require_config(tx)
            items = await claim_items(tx, limit, now)
            await tx.touch_last_dispatch(now)

        logger.info("polling.fetched", tenant_id=tenant_id, claimed=len(items))
        return [
            PendingDelivery(
                queue_item_id=item.id,
                client_id=item.client_id,
                external_id=item.external_id,
                operation=item.operation,
                payload=item.payload,
                attempt=item.attempts,
                idempotency_key=item.idempotency_key,
                external_company_name=config.external_company_name or "",
                username=config.username,
                credential=config.credential,
            )
            for item in items
        ]

    async def report_outcome(
        self, tenant_id: str, item_id: str, outcome: BridgeOutcome
    ) -> QueueItemRead:
        """Apply the bridge's reported outcome to a claimed item.

        Raises:
            QueueItemNotFoundError: No such item for the tenant.
            QueueItemStateError: Item is not currently processing.
        """
        async with self._repository.transaction(tenant_id) as tx:
            return await record_outcome(
                tx,
                item_id,
                outcome,
                transport=self.TRANSPORT,
                now=datetime.now(timezone.utc),
            )
