"""Check-in progress for one event: counts and the list of who has arrived."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from .models import GuestRecord
from .resolver import normalize_name


@dataclass(frozen=True)
class CheckInSummary:
    total: int
    checked_in: int
    pending: int
    attendance_rate: int  # whole percent


def summarize(guests: Iterable[GuestRecord]) -> CheckInSummary:
    guests = list(guests)
    total = len(guests)
    checked_in = sum(1 for g in guests if g.checked_in)
    # Half-up rounding, 2 of 3 is 67
    rate = (checked_in * 200 + total) // (2 * total) if total else 0
    return CheckInSummary(
        total=total,
        checked_in=checked_in,
        pending=total - checked_in,
        attendance_rate=rate,
    )


def checked_in_guests(guests: Iterable[GuestRecord], name: str = "") -> list[GuestRecord]:
    """Guests already present, most recent arrival first, optionally filtered by name."""
    query = normalize_name(name)
    present = [
        g for g in guests
        if g.checked_in and (not query or query in normalize_name(g.name))
    ]
    return sorted(present, key=lambda g: g.checked_in_at, reverse=True)
