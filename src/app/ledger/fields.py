"""Typed client field names and the pending-field set.

The set of client fields waiting to be pushed to the external ledger is an
explicit set over ``SyncField`` rather than a free-form JSON blob, so union
and removal have defined semantics and unknown field names are rejected at
the boundary.
"""

from __future__ import annotations

from collections.abc import Iterable
from enum import Enum
from typing import Any

from src.app.ledger.exceptions import InvalidSyncFieldError


class SyncField(str, Enum):
    """Client fields that participate in outbound sync and conflict resolution."""

    NAME = "name"
    EMAIL = "email"
    PHONE = "phone"
    ADDRESS = "address"
    POSTAL_CODE = "postal_code"
    NOTES = "notes"
    STATUS = "status"
    LATITUDE = "latitude"
    LONGITUDE = "longitude"

    @classmethod
    def parse(cls, name: str) -> SyncField:
        """Parse a field name, raising InvalidSyncFieldError for unknown names."""
        try:
            return cls(name)
        except ValueError:
            raise InvalidSyncFieldError(name) from None


COORDINATE_FIELDS = frozenset({SyncField.LATITUDE, SyncField.LONGITUDE})


def coerce_field_value(field: SyncField, value: Any) -> Any:
    """Convert a raw value into the column type of ``field``.

    Coordinates are floats; every other field is text. ``None`` passes
    through unchanged.
    """
    if value is None:
        return None
    if field in COORDINATE_FIELDS:
        return float(value)
    return str(value)


class PendingFields(frozenset):
    """Immutable set of ``SyncField`` members awaiting outbound delivery."""

    def __new__(cls, fields: Iterable[SyncField | str] = ()) -> PendingFields:
        return super().__new__(cls, (SyncField.parse(f) if isinstance(f, str) else f for f in fields))

    @classmethod
    def from_storage(cls, raw: Iterable[str] | None) -> PendingFields:
        """Build from the persisted column value (list of names or None)."""
        return cls(raw or ())

    def union(self, *others: Iterable[SyncField | str]) -> PendingFields:  # type: ignore[override]
        merged = set(self)
        for other in others:
            merged.update(PendingFields(other))
        return PendingFields(merged)

    def remove(self, fields: Iterable[SyncField | str]) -> PendingFields:
        """Return a new set without ``fields``; absent members are ignored."""
        return PendingFields(set(self) - set(PendingFields(fields)))

    def to_storage(self) -> list[str]:
        """Sorted list of names for the array column."""
        return sorted(f.value for f in self)
