"""Shared fixtures for ledger sync unit tests."""

from __future__ import annotations

import pytest

from ledger_doubles import InMemoryLedgerRepository, InMemoryLedgerStore


@pytest.fixture
def store() -> InMemoryLedgerStore:
    return InMemoryLedgerStore()


@pytest.fixture
def repository(store) -> InMemoryLedgerRepository:
    return InMemoryLedgerRepository(store)
