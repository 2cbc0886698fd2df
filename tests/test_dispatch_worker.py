"""Tests for DispatchWorker: claiming, outcomes, retries, timeouts and pacing.

Uses the in-memory ledger repository and a scripted FakeBridge from
ledger_doubles so every state transition and audit entry can be inspected.
"""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock, patch

import pytest

from ledger_doubles import FakeBridge
from src.app.ledger.dispatch import DispatchWorker
from src.app.ledger.exceptions import BridgeNotConfiguredError
from src.app.ledger.schemas import (
    BridgeOutcome,
    ClientSyncStatus,
    HistoryOutcome,
    QueueOperation,
    QueueStatus,
)

TENANT_ID = str(uuid.uuid4())


def _make_worker(repository, bridge, **overrides) -> DispatchWorker:
    options = {"timeout": 5.0, "pacing_seconds": 0.0, "default_batch_size": 20}
    options.update(overrides)
    return DispatchWorker(repository, bridge, **options)


@pytest.fixture
def pending_client(store):
    """Configured tenant with one client whose email change is queued."""
    store.seed_config(TENANT_ID, username="bridge-user", credential="s3cret")
    client = store.seed_client(
        TENANT_ID,
        name="Acme Plumbing",
        external_id="ACME-001",
        email="new@acme.example",
        pending_fields=["email"],
        sync_status=ClientSyncStatus.PENDING,
    )
    item = store.seed_queue_item(
        client, {"email": "new@acme.example"}, old_data={"email": "old@acme.example"}
    )
    return client, item


# ── Successful Delivery ──────────────────────────────────────────────────────


class TestSuccessfulDelivery:
    async def test_success_completes_item_and_syncs_client(self, repository, store, pending_client) -> None:
        client, item = pending_client
        bridge = FakeBridge(BridgeOutcome(success=True, external_response={"ref": "INV-1"}))

        result = await _make_worker(repository, bridge).process_batch(TENANT_ID)

        assert (result.total, result.successful, result.failed) == (1, 1, 0)
        assert result.items[0].status == QueueStatus.COMPLETED
        stored_item = store.queue[item.id]
        assert stored_item.status == QueueStatus.COMPLETED
        assert stored_item.attempts == 1
        assert stored_item.completed_at is not None
        stored_client = store.clients[client.id]
        assert stored_client.sync_status == ClientSyncStatus.SYNCED
        assert stored_client.pending_fields == frozenset()
        assert stored_client.last_synced_at is not None

    async def test_success_appends_history(self, repository, store, pending_client) -> None:
        client, item = pending_client
        bridge = FakeBridge(BridgeOutcome(success=True, external_response={"ref": "INV-1"}))

        await _make_worker(repository, bridge).process_batch(TENANT_ID)

        [entry] = store.history_for(client.id)
        assert entry.queue_id == item.id
        assert entry.outcome == HistoryOutcome.SUCCESS
        assert entry.old_data == {"email": "old@acme.example"}
        assert entry.new_data == {"email": "new@acme.example"}
        assert entry.external_response == {"ref": "INV-1"}

    async def test_bridge_receives_tenant_credentials(self, repository, store, pending_client) -> None:
        bridge = FakeBridge()
        await _make_worker(repository, bridge).process_batch(TENANT_ID)

        [(sent_item, config)] = bridge.calls
        assert sent_item.attempts == 1
        assert sent_item.idempotency_key == f"{sent_item.id}:1"
        assert config.credential == "s3cret"
        assert store.configs[TENANT_ID].last_dispatch_at is not None

    async def test_other_pending_fields_keep_client_pending(self, repository, store, pending_client) -> None:
        client, _ = pending_client
        store.clients[client.id] = client.model_copy(
            update={"pending_fields": frozenset(client.pending.union(["phone"]))}
        )

        await _make_worker(repository, FakeBridge()).process_batch(TENANT_ID)

        stored = store.clients[client.id]
        assert stored.pending.to_storage() == ["phone"]
        assert stored.sync_status == ClientSyncStatus.PENDING


# ── Failed Delivery ──────────────────────────────────────────────────────────


class TestFailedDelivery:
    async def test_failure_returns_item_to_pending(self, repository, store, pending_client) -> None:
        client, item = pending_client
        bridge = FakeBridge(BridgeOutcome(success=False, error="ledger locked"))

        result = await _make_worker(repository, bridge).process_batch(TENANT_ID)

        assert (result.successful, result.failed) == (0, 1)
        stored_item = store.queue[item.id]
        assert stored_item.status == QueueStatus.PENDING
        assert stored_item.attempts == 1
        assert stored_item.last_error == "ledger locked"
        stored_client = store.clients[client.id]
        assert stored_client.sync_status == ClientSyncStatus.PENDING
        assert stored_client.sync_error == "ledger locked"
        assert stored_client.pending.to_storage() == ["email"]

    async def test_third_failure_is_terminal(self, repository, store, pending_client) -> None:
        client, item = pending_client
        worker = _make_worker(repository, FakeBridge(BridgeOutcome(success=False, error="rejected")))

        for _ in range(3):
            await worker.process_batch(TENANT_ID)
        fourth = await worker.process_batch(TENANT_ID)

        assert fourth.total == 0
        stored_item = store.queue[item.id]
        assert stored_item.status == QueueStatus.FAILED
        assert stored_item.attempts == 3
        assert store.clients[client.id].sync_status == ClientSyncStatus.FAILED
        outcomes = [h.outcome for h in store.history_for(client.id)]
        assert outcomes == [HistoryOutcome.FAILED] * 3

    async def test_timeout_is_recorded_as_failure(self, repository, store, pending_client) -> None:
        _, item = pending_client
        bridge = FakeBridge(delay=0.5)

        result = await _make_worker(repository, bridge, timeout=0.01).process_batch(TENANT_ID)

        assert result.items[0].error == "bridge timeout"
        stored_item = store.queue[item.id]
        assert stored_item.status == QueueStatus.PENDING
        assert stored_item.last_error == "bridge timeout"

    async def test_bridge_exception_is_recorded_as_failure(self, repository, store, pending_client) -> None:
        _, item = pending_client
        bridge = FakeBridge(RuntimeError("socket closed"))

        result = await _make_worker(repository, bridge).process_batch(TENANT_ID)

        assert result.failed == 1
        assert store.queue[item.id].last_error == "socket closed"

    async def test_one_failure_does_not_affect_sibling(self, repository, store, pending_client) -> None:
        client, first = pending_client
        second = store.seed_queue_item(client, {"phone": "020 7946 0958"})
        bridge = FakeBridge(BridgeOutcome(success=False, error="bad email"), BridgeOutcome(success=True))

        result = await _make_worker(repository, bridge).process_batch(TENANT_ID)

        assert (result.successful, result.failed) == (1, 1)
        assert store.queue[first.id].status == QueueStatus.PENDING
        assert store.queue[second.id].status == QueueStatus.COMPLETED


# ── Claiming ─────────────────────────────────────────────────────────────────


class TestClaiming:
    async def test_unconfigured_tenant_claims_nothing(self, repository, store) -> None:
        client = store.seed_client(TENANT_ID, name="Acme")
        item = store.seed_queue_item(client, {"email": "a@acme.example"})

        with pytest.raises(BridgeNotConfiguredError):
            await _make_worker(repository, FakeBridge()).process_batch(TENANT_ID)

        assert store.queue[item.id].status == QueueStatus.PENDING
        assert store.queue[item.id].attempts == 0

    async def test_blank_company_name_counts_as_unconfigured(self, repository, store) -> None:
        store.seed_config(TENANT_ID, external_company_name="", credential="s3cret")
        with pytest.raises(BridgeNotConfiguredError):
            await _make_worker(repository, FakeBridge()).process_batch(TENANT_ID)

    async def test_priority_then_age_order_with_limit(self, repository, store) -> None:
        store.seed_config(TENANT_ID)
        client = store.seed_client(TENANT_ID, name="Acme", external_id="ACME-001")
        low = store.seed_queue_item(client, {"notes": "low"}, priority=9)
        first_urgent = store.seed_queue_item(client, {"notes": "urgent-1"}, priority=1)
        second_urgent = store.seed_queue_item(client, {"notes": "urgent-2"}, priority=1)
        bridge = FakeBridge()

        result = await _make_worker(repository, bridge).process_batch(TENANT_ID, max_items=2)

        assert [i.id for i in result.items] == [first_urgent.id, second_urgent.id]
        assert store.queue[low.id].status == QueueStatus.PENDING

    async def test_zero_max_items_claims_nothing(self, repository, store, pending_client) -> None:
        _, item = pending_client
        bridge = FakeBridge()

        result = await _make_worker(repository, bridge).process_batch(TENANT_ID, max_items=0)

        assert result.total == 0
        assert bridge.calls == []
        assert store.queue[item.id].attempts == 0

    async def test_pacing_between_items(self, repository, store, pending_client) -> None:
        client, _ = pending_client
        store.seed_queue_item(client, {"notes": "two"})
        store.seed_queue_item(client, {"notes": "three"})

        with patch("src.app.ledger.dispatch.asyncio.sleep", new_callable=AsyncMock) as sleep:
            await _make_worker(repository, FakeBridge(), pacing_seconds=0.5).process_batch(TENANT_ID)

        assert sleep.await_count == 2
        sleep.assert_awaited_with(0.5)


# ── External ID Backfill ─────────────────────────────────────────────────────


class TestExternalIdBackfill:
    async def test_create_success_records_external_id(self, repository, store) -> None:
        store.seed_config(TENANT_ID)
        client = store.seed_client(TENANT_ID, name="New Co", pending_fields=["name"])
        create = store.seed_queue_item(client, {"name": "New Co"}, operation=QueueOperation.CREATE)
        follow_up = store.seed_queue_item(client, {"phone": "020 7946 0958"}, priority=8)
        bridge = FakeBridge(BridgeOutcome(success=True, external_id="EXT-77"))
        worker = _make_worker(repository, bridge)

        await worker.process_batch(TENANT_ID, max_items=1)

        assert store.clients[client.id].external_id == "EXT-77"
        assert store.queue[create.id].external_id == "EXT-77"
        assert store.mappings[(TENANT_ID, "EXT-77")]["client_id"] == client.id

        await worker.process_batch(TENANT_ID, max_items=1)

        sent_follow_up = bridge.calls[1][0]
        assert sent_follow_up.id == follow_up.id
        assert sent_follow_up.external_id == "EXT-77"


# ── Outcome Races ────────────────────────────────────────────────────────────


class _ResettingBridge(FakeBridge):
    """Simulates an operator retry landing while the bridge call is in flight."""

    def __init__(self, store) -> None:
        super().__init__()
        self._store = store

    async def push_update(self, item, config):
        self._store.queue[item.id] = self._store.queue[item.id].model_copy(
            update={"status": QueueStatus.PENDING, "attempts": 0}
        )
        return await super().push_update(item, config)


class TestOutcomeRaces:
    async def test_late_outcome_is_discarded(self, repository, store, pending_client) -> None:
        client, item = pending_client

        result = await _make_worker(repository, _ResettingBridge(store)).process_batch(TENANT_ID)

        assert result.items[0].success is False
        assert result.items[0].status == QueueStatus.PENDING
        assert store.queue[item.id].status == QueueStatus.PENDING
        assert store.history_for(client.id) == []

    async def test_outcome_write_failure_leaves_item_processing(self, repository, store, pending_client) -> None:
        client, item = pending_client
        store.faults["append_history"] = RuntimeError("connection reset")

        result = await _make_worker(repository, FakeBridge()).process_batch(TENANT_ID)

        assert result.items[0].status == QueueStatus.PROCESSING
        assert store.queue[item.id].status == QueueStatus.PROCESSING
        assert store.clients[client.id].sync_status == ClientSyncStatus.PENDING
