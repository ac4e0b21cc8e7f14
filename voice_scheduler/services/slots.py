"""The fixed catalog of bookable slots.

The catalog is defined once and never mutated.  Availability is the
catalog minus whatever the store reports as actively booked.
"""

from __future__ import annotations

from collections.abc import Collection, Iterable
from typing import NamedTuple


class Slot(NamedTuple):
    date: str  # YYYY-MM-DD
    time: str  # "09:00 AM"

    @property
    def key(self) -> str:
        return slot_key(self.date, self.time)


def slot_key(date: str, time: str) -> str:
    """Composite key used for booked-set membership tests."""
    return f"{date}-{time}"


SLOT_CATALOG: tuple[Slot, ...] = (
    Slot("2026-01-28", "09:00 AM"),
    Slot("2026-01-28", "10:00 AM"),
    Slot("2026-01-28", "02:00 PM"),
    Slot("2026-01-28", "03:00 PM"),
    Slot("2026-01-29", "09:00 AM"),
    Slot("2026-01-29", "11:00 AM"),
    Slot("2026-01-29", "01:00 PM"),
    Slot("2026-01-29", "04:00 PM"),
    Slot("2026-01-30", "10:00 AM"),
    Slot("2026-01-30", "02:00 PM"),
    Slot("2026-01-30", "03:30 PM"),
    Slot("2026-01-31", "09:00 AM"),
    Slot("2026-01-31", "11:30 AM"),
    Slot("2026-01-31", "02:00 PM"),
    Slot("2026-02-01", "10:00 AM"),
    Slot("2026-02-01", "01:00 PM"),
    Slot("2026-02-01", "03:00 PM"),
)

_CATALOG_KEYS = frozenset(slot.key for slot in SLOT_CATALOG)


def is_catalog_slot(date: str, time: str) -> bool:
    return slot_key(date, time) in _CATALOG_KEYS


def available_slots(
    booked: Iterable[tuple[str, str]] | Collection[str],
    date_filter: str | None = None,
) -> list[Slot]:
    """Catalog slots not in *booked*, in catalog order.

    *booked* may hold ``(date, time)`` pairs or ``"date-time"`` keys.
    """
    booked_keys = {
        item if isinstance(item, str) else slot_key(*item)
        for item in booked
    }
    return [
        slot
        for slot in SLOT_CATALOG
        if slot.key not in booked_keys and (not date_filter or slot.date == date_filter)
    ]
