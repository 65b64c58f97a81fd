"""Guest resolution: credentials and typed names to guest records."""

from __future__ import annotations

import logging
import re
import unicodedata
from dataclasses import dataclass
from enum import Enum

from .models import Credential, GuestMatch, GuestRecord
from .stores import EventDirectory, GuestDirectory

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")


def normalize_name(value: str) -> str:
    """Casefold, strip accents and collapse whitespace: "  María  SILVA" -> "maria silva"."""
    text = unicodedata.normalize("NFKD", value)
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    return _WHITESPACE.sub(" ", text).strip().casefold()


def name_matches(query: str, candidate: str) -> bool:
    """True when every token of the query occurs in the candidate's name."""
    tokens = normalize_name(query).split(" ")
    target = normalize_name(candidate)
    return bool(tokens[0]) and all(token in target for token in tokens)


class ResolutionStatus(str, Enum):
    FOUND = "found"
    NEEDS_EVENT_LOOKUP = "needs_event_lookup"
    INVALID = "invalid"


@dataclass(frozen=True)
class Resolution:
    status: ResolutionStatus
    guest: GuestRecord | None = None
    # Set when a legacy credential's event had to be discovered by id alone
    looked_up_event: bool = False

    @property
    def found(self) -> bool:
        return self.status is ResolutionStatus.FOUND


INVALID = Resolution(ResolutionStatus.INVALID)


class GuestResolver:
    """Turns credentials and names into guest records.

    Zero matches are a normal outcome. Directory failures propagate as
    DirectoryUnavailableError so callers can tell them apart from "not found".
    """

    def __init__(self, guests: GuestDirectory, events: EventDirectory) -> None:
        if guests is None or events is None:
            raise TypeError("GuestResolver requires a guest and an event directory")
        self.guests = guests
        self.events = events

    def classify(self, credential: Credential, known_event_id: str | None = None) -> ResolutionStatus:
        """How a credential can be resolved, before touching the directory."""
        if not credential.is_legacy:
            if known_event_id and credential.event_id != known_event_id:
                return ResolutionStatus.INVALID
            return ResolutionStatus.FOUND
        if known_event_id:
            return ResolutionStatus.FOUND
        return ResolutionStatus.NEEDS_EVENT_LOOKUP

    async def resolve_by_credential(
        self, credential: Credential, known_event_id: str | None = None
    ) -> Resolution:
        status = self.classify(credential, known_event_id)

        if status is ResolutionStatus.INVALID:
            logger.info(
                "Credential for event %s rejected in event %s", credential.event_id, known_event_id
            )
            return INVALID

        if status is ResolutionStatus.NEEDS_EVENT_LOOKUP:
            # Old codes carry no event; the guest record knows which one it is
            guest = await self.guests.find_by_id(credential.guest_id)
            if guest is None:
                return INVALID
            logger.info("Legacy credential %s belongs to event %s", guest.id, guest.event_id)
            return Resolution(ResolutionStatus.FOUND, guest, looked_up_event=True)

        event_id = credential.event_id or known_event_id
        guest = await self.guests.find_by_id(credential.guest_id, event_id)
        if guest is None:
            return INVALID
        return Resolution(ResolutionStatus.FOUND, guest)

    async def resolve_by_name(self, name: str, event_id: str) -> list[GuestRecord]:
        query = _WHITESPACE.sub(" ", name or "").strip()
        if not query:
            return []

        candidates = await self.guests.find_by_name(event_id, query)
        return _rank(query, [g for g in candidates if g.event_id == event_id])

    async def resolve_by_name_across_events(self, name: str, limit: int = 5) -> list[GuestMatch]:
        query = _WHITESPACE.sub(" ", name or "").strip()
        if not query:
            return []

        matches = await self.guests.find_by_name_any_event(query, limit)
        seen: set[str] = set()
        result: list[GuestMatch] = []
        for match in matches:
            if match.guest.id in seen or not name_matches(query, match.guest.name):
                continue
            seen.add(match.guest.id)
            result.append(match)
        result.sort(key=lambda m: m.event.starts_at)
        return result[:limit]


def _rank(query: str, guests: list[GuestRecord]) -> list[GuestRecord]:
    """Keep real matches once each, exact names first."""
    wanted = normalize_name(query)
    seen: set[str] = set()
    exact: list[GuestRecord] = []
    partial: list[GuestRecord] = []
    for guest in guests:
        if guest.id in seen or not name_matches(query, guest.name):
            continue
        seen.add(guest.id)
        (exact if normalize_name(guest.name) == wanted else partial).append(guest)
    return exact + partial
