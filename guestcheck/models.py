"""Domain objects for guest identity and check-in.

Guest and event records are owned by the external directory and are
read-only here. Credentials are built by the codec and never mutated.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class FormatVersion(str, Enum):
    LEGACY = "legacy"
    CURRENT = "current"


@dataclass(frozen=True)
class Credential:
    """Decoded content of a guest's QR payload."""

    guest_id: str
    event_id: str | None
    format_version: FormatVersion
    # Timestamp embedded by the issuer (ms since epoch), informational only
    issued_at: int | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if not self.guest_id:
            raise ValueError("Credential requires a guest_id")
        if self.format_version is FormatVersion.CURRENT and not self.event_id:
            raise ValueError("Current-format credential requires an event_id")
        if self.format_version is FormatVersion.LEGACY and self.event_id is not None:
            raise ValueError("Legacy credential cannot carry an event_id")

    @property
    def is_legacy(self) -> bool:
        return self.format_version is FormatVersion.LEGACY


@dataclass(frozen=True)
class EventReference:
    """A scanned link that points at an event rather than a guest."""

    event_id: str


@dataclass(frozen=True)
class EventMeta:
    id: str
    name: str
    starts_at: datetime
    ends_at: datetime | None = None
    location: str | None = None
    admission_opens_at: datetime | None = None
    admission_closes_at: datetime | None = None
    organizer_id: str | None = None


@dataclass(frozen=True)
class GuestRecord:
    id: str
    name: str
    event_id: str
    table_number: int | None = None
    checked_in_at: datetime | None = None
    email: str | None = None

    @property
    def checked_in(self) -> bool:
        return self.checked_in_at is not None


@dataclass(frozen=True)
class GuestMatch:
    """A name-search candidate with enough context to disambiguate."""

    guest: GuestRecord
    event: EventMeta

    @property
    def already_confirmed(self) -> bool:
        return self.guest.checked_in


@dataclass(frozen=True)
class Confirmation:
    """What the guest sees once present. Same payload on every re-confirmation."""

    guest_id: str
    guest_name: str
    event_id: str
    event_name: str | None
    table_number: int | None
    checked_in_at: datetime
    gallery_link: str | None = None
