"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import asyncio
import unicodedata
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from guestcheck.errors import DirectoryUnavailableError
from guestcheck.gate import AdmissionGate, AdmissionPolicy
from guestcheck.models import EventMeta, GuestMatch, GuestRecord
from guestcheck.orchestrator import CheckInOrchestrator
from guestcheck.resolver import GuestResolver
from guestcheck.stores import EventDirectory, GuestDirectory

NOW = datetime(2026, 6, 20, 19, 0, tzinfo=timezone.utc)
LINK_BASE = "https://guests.example.com"
LEGACY_GUEST_ID = "c290-aaaa-guest-1"
UUID_GUEST_ID = "7f1c0a52-3f0e-4b7a-9c1e-2d8f6b4a9e10"


def _loose(value: str) -> str:
    text = unicodedata.normalize("NFKD", value)
    return "".join(ch for ch in text if not unicodedata.combining(ch)).lower()


class FakeDirectory(GuestDirectory, EventDirectory):
    """In-memory guest and event directory that records every call."""

    def __init__(self, now: datetime = NOW):
        self.now = now
        self.guests: dict[str, GuestRecord] = {}
        self.events: dict[str, EventMeta] = {}
        self.calls: list[tuple] = []
        self.writes: list[str] = []
        self.fail_reads: Exception | None = None
        self.fail_writes: Exception | None = None
        # When set, mark_checked_in waits for it before writing
        self.hold_writes: asyncio.Event | None = None

    def add_event(self, event: EventMeta) -> EventMeta:
        self.events[event.id] = event
        return event

    def add_guest(self, guest: GuestRecord) -> GuestRecord:
        self.guests[guest.id] = guest
        return guest

    def _read(self, *call) -> None:
        self.calls.append(call)
        if self.fail_reads is not None:
            raise self.fail_reads

    async def find_by_id(self, guest_id, event_id=None):
        self._read("find_by_id", guest_id, event_id)
        guest = self.guests.get(guest_id)
        if guest is None or (event_id is not None and guest.event_id != event_id):
            return None
        return guest

    async def find_by_name(self, event_id, name):
        self._read("find_by_name", event_id, name)
        tokens = _loose(name).split()
        return [
            g for g in self.guests.values()
            if g.event_id == event_id and any(t in _loose(g.name) for t in tokens)
        ]

    async def list_guests(self, event_id):
        self._read("list_guests", event_id)
        return [g for g in self.guests.values() if g.event_id == event_id]

    async def find_by_name_any_event(self, name, limit=5):
        self._read("find_by_name_any_event", name, limit)
        tokens = _loose(name).split()
        found = [
            GuestMatch(g, self.events[g.event_id]) for g in self.guests.values()
            if any(t in _loose(g.name) for t in tokens)
        ]
        return found[:limit]

    async def mark_checked_in(self, guest_id):
        self.calls.append(("mark_checked_in", guest_id))
        if self.hold_writes is not None:
            await self.hold_writes.wait()
        if self.fail_writes is not None:
            raise self.fail_writes
        guest = self.guests[guest_id]
        if guest.checked_in_at is None:
            guest = replace(guest, checked_in_at=self.now)
            self.guests[guest_id] = guest
        self.writes.append(guest_id)
        return guest

    async def find_event(self, event_id):
        self._read("find_event", event_id)
        return self.events.get(event_id)


@pytest.fixture
def directory() -> FakeDirectory:
    d = FakeDirectory()
    d.add_event(EventMeta(
        id="evt-42", name="Casamento Ana & Rui", starts_at=NOW - timedelta(hours=1),
        location="Quinta do Lago", organizer_id="org-1",
    ))
    d.add_event(EventMeta(
        id="evt-7", name="Gala Dinner", starts_at=NOW + timedelta(days=1), location="Porto",
    ))
    d.add_guest(GuestRecord(id=LEGACY_GUEST_ID, name="João Pereira", event_id="evt-42", table_number=3))
    d.add_guest(GuestRecord(id="maria-1", name="Maria Silva", event_id="evt-42", table_number=5))
    d.add_guest(GuestRecord(id="maria-2", name="Maria Silva", event_id="evt-42", table_number=8))
    d.add_guest(GuestRecord(
        id="ana-1", name="Ana Costa", event_id="evt-42", table_number=2,
        checked_in_at=NOW - timedelta(minutes=30),
    ))
    d.add_guest(GuestRecord(id=UUID_GUEST_ID, name="Beatriz Lima", event_id="evt-42", table_number=4))
    d.add_guest(GuestRecord(id="carlos-1", name="Carlos Souza", event_id="evt-7", table_number=1))
    d.add_guest(GuestRecord(id="maria-3", name="Mária Silva", event_id="evt-7", table_number=6))
    return d


@pytest.fixture
def gate() -> AdmissionGate:
    return AdmissionGate(AdmissionPolicy(), clock=lambda: NOW)


@pytest.fixture
def resolver(directory) -> GuestResolver:
    return GuestResolver(directory, directory)


@pytest.fixture
def confirmations() -> list:
    return []


@pytest.fixture
def make_orchestrator(resolver, gate, confirmations):
    async def record(confirmation):
        confirmations.append(confirmation)

    def build(event_id=None, **kwargs) -> CheckInOrchestrator:
        kwargs.setdefault("hooks", [record])
        kwargs.setdefault("link_base_url", LINK_BASE)
        return CheckInOrchestrator(resolver, gate, event_id=event_id, **kwargs)

    return build


@pytest.fixture
def unavailable() -> DirectoryUnavailableError:
    return DirectoryUnavailableError("connection refused")
