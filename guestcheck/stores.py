"""Directory interfaces (repository pattern).

The guest and event directories are external. Implementations must be
swappable and return domain models.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from .models import EventMeta, GuestMatch, GuestRecord


class GuestDirectory(ABC):
    """Interface for guest lookup and the check-in write."""

    @abstractmethod
    async def find_by_id(self, guest_id: str, event_id: str | None = None) -> GuestRecord | None:
        """Return a guest by ID, optionally scoped to an event, or None."""
        ...

    @abstractmethod
    async def find_by_name(self, event_id: str, name: str) -> list[GuestRecord]:
        """Return guests of one event whose name matches."""
        ...

    @abstractmethod
    async def list_guests(self, event_id: str) -> list[GuestRecord]:
        """Return every guest of an event."""
        ...

    @abstractmethod
    async def find_by_name_any_event(self, name: str, limit: int = 5) -> list[GuestMatch]:
        """Return matching guests across all events, with their event."""
        ...

    @abstractmethod
    async def mark_checked_in(self, guest_id: str) -> GuestRecord:
        """Atomically set checked_in_at. Idempotent: a second call keeps the first timestamp."""
        ...


class EventDirectory(ABC):
    """Interface for event schedule lookup."""

    @abstractmethod
    async def find_event(self, event_id: str) -> EventMeta | None:
        """Return event metadata, or None if not found."""
        ...
