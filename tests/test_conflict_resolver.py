"""Tests for ConflictResolver: bridge reports and operator resolutions."""

from __future__ import annotations

import uuid

import pytest

from ledger_doubles import FakeBridge
from src.app.ledger.changes import ClientChangeTracker
from src.app.ledger.conflicts import EXTERNAL_WINS_OPERATION, ConflictResolver
from src.app.ledger.dispatch import DispatchWorker
from src.app.ledger.exceptions import (
    ClientNotFoundError,
    ConflictAlreadyResolvedError,
    ConflictNotFoundError,
    InvalidSyncFieldError,
)
from src.app.ledger.queue import SyncQueue
from src.app.ledger.schemas import (
    ClientSyncStatus,
    ConflictReport,
    ConflictStatus,
    HistoryOutcome,
    QueueOperation,
    QueueStatus,
    ResolutionDecision,
)

TENANT_ID = str(uuid.uuid4())
RESOLVER_USER = str(uuid.uuid4())


@pytest.fixture
def resolver(repository) -> ConflictResolver:
    return ConflictResolver(repository, SyncQueue(repository))


@pytest.fixture
def client(store):
    return store.seed_client(
        TENANT_ID,
        name="Acme Plumbing",
        external_id="ACME-001",
        email="backend@acme.example",
        sync_status=ClientSyncStatus.SYNCED,
    )


def _report(client, **overrides) -> ConflictReport:
    defaults = {
        "client_id": client.id,
        "field_name": "email",
        "backend_value": "backend@acme.example",
        "external_value": "ledger@acme.example",
    }
    defaults.update(overrides)
    return ConflictReport(**defaults)


# ── Reporting ────────────────────────────────────────────────────────────────


class TestReport:
    async def test_report_creates_pending_conflict(self, resolver, client) -> None:
        conflict = await resolver.report(TENANT_ID, _report(client))

        assert conflict.resolution_status == ConflictStatus.PENDING
        assert conflict.external_id == "ACME-001"
        assert conflict.external_value == "ledger@acme.example"

    async def test_repeat_report_refreshes_single_pending_conflict(self, resolver, store, client) -> None:
        first = await resolver.report(TENANT_ID, _report(client))
        second = await resolver.report(TENANT_ID, _report(client, external_value="newer@acme.example"))

        assert second.id == first.id
        assert len(store.conflicts) == 1
        assert store.conflicts[first.id].external_value == "newer@acme.example"

    async def test_report_by_external_id(self, resolver, client) -> None:
        conflict = await resolver.report(TENANT_ID, _report(client, client_id=None, external_id="ACME-001"))
        assert conflict.client_id == client.id

    async def test_unknown_client_rejected(self, resolver, client) -> None:
        with pytest.raises(ClientNotFoundError):
            await resolver.report(TENANT_ID, _report(client, client_id=str(uuid.uuid4())))

    async def test_unknown_field_rejected(self, resolver, client) -> None:
        with pytest.raises(InvalidSyncFieldError):
            await resolver.report(TENANT_ID, _report(client, field_name="credit_limit"))

    async def test_list_pending_excludes_resolved(self, resolver, client) -> None:
        email = await resolver.report(TENANT_ID, _report(client))
        await resolver.report(TENANT_ID, _report(client, field_name="phone", external_value="0207"))
        await resolver.resolve(TENANT_ID, email.id, ResolutionDecision.EXTERNAL_WINS)

        pending = await resolver.list_pending(TENANT_ID)

        assert [c.field_name.value for c in pending] == ["phone"]


# ── Resolution ───────────────────────────────────────────────────────────────


class TestResolve:
    async def test_backend_wins_requeues_current_value(self, resolver, store, client) -> None:
        conflict = await resolver.report(TENANT_ID, _report(client))

        resolved = await resolver.resolve(
            TENANT_ID, conflict.id, ResolutionDecision.BACKEND_WINS,
            resolved_by=RESOLVER_USER, notes="ledger typo",
        )

        assert resolved.resolution_status == ConflictStatus.RESOLVED_BACKEND_WINS
        assert resolved.resolved_by == RESOLVER_USER
        assert resolved.resolution_notes == "ledger typo"
        [item] = store.queue.values()
        assert item.operation == QueueOperation.UPDATE_FIELD
        assert item.payload == {"email": "backend@acme.example"}
        assert item.old_data == {"email": "ledger@acme.example"}
        assert item.user_id == RESOLVER_USER
        assert item.status == QueueStatus.PENDING
        stored_client = store.clients[client.id]
        assert stored_client.pending.to_storage() == ["email"]
        assert stored_client.sync_status == ClientSyncStatus.PENDING

    async def test_external_wins_writes_value_and_audits(self, resolver, store, client) -> None:
        conflict = await resolver.report(TENANT_ID, _report(client))

        resolved = await resolver.resolve(
            TENANT_ID, conflict.id, ResolutionDecision.EXTERNAL_WINS, resolved_by=RESOLVER_USER
        )

        assert resolved.resolution_status == ConflictStatus.RESOLVED_EXTERNAL_WINS
        assert store.clients[client.id].email == "ledger@acme.example"
        assert store.queue == {}
        [entry] = store.history_for(client.id)
        assert entry.queue_id is None
        assert entry.operation == EXTERNAL_WINS_OPERATION
        assert entry.outcome == HistoryOutcome.SUCCESS
        assert entry.old_data == {"email": "backend@acme.example"}
        assert entry.new_data == {"email": "ledger@acme.example"}

    async def test_external_coordinate_is_coerced(self, resolver, store, client) -> None:
        conflict = await resolver.report(
            TENANT_ID, _report(client, field_name="latitude", backend_value=None, external_value="51.5")
        )
        await resolver.resolve(TENANT_ID, conflict.id, ResolutionDecision.EXTERNAL_WINS)
        assert store.clients[client.id].latitude == 51.5

    async def test_external_wins_withdraws_queued_backend_value(self, repository, resolver, store, client) -> None:
        store.seed_config(TENANT_ID)
        tracker = ClientChangeTracker(repository, SyncQueue(repository))
        change = await tracker.record_changes(TENANT_ID, client.id, {"email": "edited@acme.example"})
        conflict = await resolver.report(TENANT_ID, _report(client))

        await resolver.resolve(TENANT_ID, conflict.id, ResolutionDecision.EXTERNAL_WINS)

        stored_client = store.clients[client.id]
        assert stored_client.email == "ledger@acme.example"
        assert stored_client.pending_fields == frozenset()
        assert stored_client.sync_status == ClientSyncStatus.SYNCED
        assert store.queue[change.queue_item.id].status == QueueStatus.COMPLETED

        bridge = FakeBridge()
        result = await DispatchWorker(repository, bridge, pacing_seconds=0.0).process_batch(TENANT_ID)
        assert result.total == 0
        assert bridge.calls == []

    async def test_external_wins_keeps_other_queued_fields(self, repository, resolver, store, client) -> None:
        tracker = ClientChangeTracker(repository, SyncQueue(repository))
        change = await tracker.record_changes(
            TENANT_ID, client.id, {"email": "edited@acme.example", "phone": "020 7946 0958"}
        )
        conflict = await resolver.report(TENANT_ID, _report(client))

        await resolver.resolve(TENANT_ID, conflict.id, ResolutionDecision.EXTERNAL_WINS)

        item = store.queue[change.queue_item.id]
        assert item.status == QueueStatus.PENDING
        assert item.payload == {"phone": "020 7946 0958"}
        stored_client = store.clients[client.id]
        assert stored_client.pending.to_storage() == ["phone"]
        assert stored_client.sync_status == ClientSyncStatus.PENDING

    async def test_external_wins_rewrites_unclaimed_create(self, resolver, store) -> None:
        unlinked = store.seed_client(
            TENANT_ID,
            name="Beta Ltd",
            email="backend@beta.example",
            pending_fields=["email", "name"],
            sync_status=ClientSyncStatus.PENDING,
        )
        item = store.seed_queue_item(
            unlinked,
            {"name": "Beta Ltd", "email": "backend@beta.example"},
            operation=QueueOperation.CREATE.value,
        )
        conflict = await resolver.report(TENANT_ID, _report(unlinked, external_value="ledger@beta.example"))

        await resolver.resolve(TENANT_ID, conflict.id, ResolutionDecision.EXTERNAL_WINS)

        assert store.queue[item.id].payload == {"name": "Beta Ltd", "email": "ledger@beta.example"}
        assert store.queue[item.id].status == QueueStatus.PENDING
        assert store.clients[unlinked.id].pending.to_storage() == ["email", "name"]
        assert store.clients[unlinked.id].sync_status == ClientSyncStatus.PENDING

    async def test_claimed_item_is_left_alone(self, resolver, store, client) -> None:
        item = store.seed_queue_item(
            client, {"email": "edited@acme.example"}, status=QueueStatus.PROCESSING.value, attempts=1
        )
        conflict = await resolver.report(TENANT_ID, _report(client))

        await resolver.resolve(TENANT_ID, conflict.id, ResolutionDecision.EXTERNAL_WINS)

        assert store.queue[item.id].payload == {"email": "edited@acme.example"}
        assert store.queue[item.id].status == QueueStatus.PROCESSING

    @pytest.mark.parametrize("decision", list(ResolutionDecision))
    async def test_resolved_conflict_is_terminal(self, resolver, client, decision) -> None:
        conflict = await resolver.report(TENANT_ID, _report(client))
        await resolver.resolve(TENANT_ID, conflict.id, decision)

        with pytest.raises(ConflictAlreadyResolvedError):
            await resolver.resolve(TENANT_ID, conflict.id, ResolutionDecision.BACKEND_WINS)

    async def test_new_report_after_resolution_opens_new_conflict(self, resolver, store, client) -> None:
        first = await resolver.report(TENANT_ID, _report(client))
        await resolver.resolve(TENANT_ID, first.id, ResolutionDecision.EXTERNAL_WINS)

        second = await resolver.report(TENANT_ID, _report(client, external_value="again@acme.example"))

        assert second.id != first.id
        assert store.conflicts[first.id].resolution_status == ConflictStatus.RESOLVED_EXTERNAL_WINS

    async def test_unknown_conflict(self, resolver) -> None:
        with pytest.raises(ConflictNotFoundError):
            await resolver.resolve(TENANT_ID, str(uuid.uuid4()), ResolutionDecision.BACKEND_WINS)
