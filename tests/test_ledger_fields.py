"""Unit tests for sync field parsing, the pending-field set and queue transitions."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from src.app.ledger import transitions
from src.app.ledger.exceptions import InvalidSyncFieldError
from src.app.ledger.fields import PendingFields, SyncField, coerce_field_value
from src.app.ledger.schemas import (
    ClientRead,
    ClientSyncStatus,
    QueueItemRead,
    QueueOperation,
    QueueStatus,
)

TENANT_ID = str(uuid.uuid4())
NOW = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)


def _make_client(**overrides) -> ClientRead:
    defaults = {
        "id": str(uuid.uuid4()),
        "tenant_id": TENANT_ID,
        "name": "Acme Plumbing",
    }
    defaults.update(overrides)
    return ClientRead(**defaults)


def _make_item(**overrides) -> QueueItemRead:
    defaults = {
        "id": str(uuid.uuid4()),
        "tenant_id": TENANT_ID,
        "client_id": str(uuid.uuid4()),
        "operation": QueueOperation.UPDATE_FIELD,
        "payload": {"email": "new@example.com"},
    }
    defaults.update(overrides)
    return QueueItemRead(**defaults)


# ── SyncField ────────────────────────────────────────────────────────────────


class TestSyncField:
    def test_parse_known_field(self) -> None:
        assert SyncField.parse("postal_code") is SyncField.POSTAL_CODE

    def test_parse_unknown_field_raises(self) -> None:
        with pytest.raises(InvalidSyncFieldError) as exc_info:
            SyncField.parse("favourite_colour")
        assert exc_info.value.field_name == "favourite_colour"

    def test_coordinates_coerce_to_float(self) -> None:
        assert coerce_field_value(SyncField.LATITUDE, "51.5") == 51.5
        assert coerce_field_value(SyncField.LONGITUDE, 0) == 0.0

    def test_text_fields_coerce_to_str(self) -> None:
        assert coerce_field_value(SyncField.PHONE, 7700900123) == "7700900123"

    def test_none_passes_through(self) -> None:
        assert coerce_field_value(SyncField.LATITUDE, None) is None


# ── PendingFields ────────────────────────────────────────────────────────────


class TestPendingFields:
    def test_from_storage_handles_none(self) -> None:
        assert PendingFields.from_storage(None) == PendingFields()

    def test_union_accepts_names_and_members(self) -> None:
        pending = PendingFields(["email"]).union([SyncField.PHONE], ["email"])
        assert pending == {SyncField.EMAIL, SyncField.PHONE}
        assert isinstance(pending, PendingFields)

    def test_remove_ignores_absent_members(self) -> None:
        pending = PendingFields(["email", "phone"]).remove(["phone", "notes"])
        assert pending == {SyncField.EMAIL}

    def test_to_storage_is_sorted(self) -> None:
        assert PendingFields(["phone", "address", "email"]).to_storage() == [
            "address", "email", "phone",
        ]

    def test_unknown_name_rejected(self) -> None:
        with pytest.raises(InvalidSyncFieldError):
            PendingFields(["email", "nickname"])


# ── Queue Item Transitions ───────────────────────────────────────────────────


class TestQueueTransitions:
    def test_claim_consumes_an_attempt(self) -> None:
        values = transitions.claim(_make_item(attempts=1), NOW)
        assert values == {"status": "processing", "attempts": 2, "processed_at": NOW}

    def test_is_claimable_requires_pending_with_budget(self) -> None:
        assert transitions.is_claimable(_make_item())
        assert not transitions.is_claimable(_make_item(attempts=3, max_attempts=3))
        assert not transitions.is_claimable(_make_item(status=QueueStatus.PROCESSING))

    def test_fail_returns_to_pending_while_budget_remains(self) -> None:
        item = _make_item(status=QueueStatus.PROCESSING, attempts=2, max_attempts=3)
        assert transitions.fail(item, "boom") == {"status": "pending", "last_error": "boom"}

    def test_fail_is_terminal_on_last_attempt(self) -> None:
        item = _make_item(status=QueueStatus.PROCESSING, attempts=3, max_attempts=3)
        assert transitions.fail(item, "boom")["status"] == "failed"

    def test_reset_for_retry_gives_fresh_budget(self) -> None:
        values = transitions.reset_for_retry()
        assert values["status"] == "pending"
        assert values["attempts"] == 0
        assert values["last_error"] is None

    def test_stale_claim_detection(self) -> None:
        item = _make_item(status=QueueStatus.PROCESSING, processed_at=NOW - timedelta(minutes=10))
        assert transitions.is_stale_claim(item, NOW, stale_after_seconds=300)
        assert not transitions.is_stale_claim(item, NOW, stale_after_seconds=3600)
        assert not transitions.is_stale_claim(_make_item(processed_at=NOW), NOW, 0)


# ── Client Transitions ───────────────────────────────────────────────────────


class TestClientTransitions:
    def test_success_removes_only_item_fields(self) -> None:
        client = _make_client(
            sync_status=ClientSyncStatus.PENDING,
            pending_fields=[SyncField.EMAIL, SyncField.PHONE],
        )
        item = _make_item(payload={"email": "new@example.com"})

        values = transitions.client_after_success(client, item, NOW)

        assert values["pending_fields"] == ["phone"]
        assert values["sync_status"] == "pending"

    def test_success_with_nothing_left_is_synced(self) -> None:
        client = _make_client(sync_status=ClientSyncStatus.PENDING, pending_fields=[SyncField.EMAIL])
        values = transitions.client_after_success(client, _make_item(), NOW)
        assert values["pending_fields"] == []
        assert values["sync_status"] == "synced"
        assert values["last_synced_at"] == NOW

    def test_success_backfills_external_id_once(self) -> None:
        item = _make_item()
        assert transitions.client_after_success(_make_client(), item, NOW, "EXT-9")["external_id"] == "EXT-9"
        known = _make_client(external_id="EXT-1")
        assert "external_id" not in transitions.client_after_success(known, item, NOW, "EXT-9")

    def test_failure_mirrors_item_status(self) -> None:
        assert transitions.client_after_failure({"status": "failed"}, "x")["sync_status"] == "failed"
        assert transitions.client_after_failure({"status": "pending"}, "x")["sync_status"] == "pending"
