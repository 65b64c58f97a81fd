"""Check-in state machine.

One orchestrator drives one verification attempt at a time:

    IDLE -> SEARCHING -> FOUND | NOT_FOUND | AMBIGUOUS
    FOUND -> CONFIRMED            (gate allows, directory acknowledges the write)
    SEARCHING -> CONFIRMED        (guest already present, no write)
    AMBIGUOUS -> FOUND | CONFIRMED (explicit candidate selection)

Every state but SEARCHING goes back to IDLE through reset(). CONFIRMED is
only entered after the directory acknowledged the write, or when the
guest record already carries checked_in_at.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Sequence

from . import codes
from .errors import (
    AttemptInProgressError,
    DirectoryUnavailableError,
    DomainError,
    InvalidTransitionError,
    WriteConflictError,
)
from .gate import AdmissionGate
from .models import (
    Confirmation,
    Credential,
    EventMeta,
    EventReference,
    GuestMatch,
    GuestRecord,
)
from .resolver import GuestResolver

logger = logging.getLogger(__name__)


class AttemptState(str, Enum):
    IDLE = "idle"
    SEARCHING = "searching"
    FOUND = "found"
    NOT_FOUND = "not_found"
    AMBIGUOUS = "ambiguous"
    CONFIRMED = "confirmed"


ConfirmationHook = Callable[[Confirmation], Awaitable[None]]
StateListener = Callable[[AttemptState], None]


@dataclass(frozen=True)
class AttemptSnapshot:
    state: AttemptState
    event_id: str | None
    guest: GuestRecord | None
    candidates: tuple[GuestMatch, ...]
    confirmation: Confirmation | None
    reason: str | None
    routed_event: EventMeta | None
    retryable: bool


class CheckInOrchestrator:
    """Drives a typed name or a scanned code to a confirmed check-in."""

    def __init__(
        self,
        resolver: GuestResolver,
        gate: AdmissionGate,
        *,
        event_id: str | None = None,
        hooks: Sequence[ConfirmationHook] = (),
        link_base_url: str | None = None,
        match_limit: int = 5,
    ) -> None:
        self.resolver = resolver
        self.gate = gate
        # event_id may be switched by a scanned event link; reset() goes back to this one
        self.home_event_id = event_id
        self.event_id = event_id
        self.hooks = list(hooks)
        self.link_base_url = link_base_url
        self.match_limit = match_limit

        self._state = AttemptState.IDLE
        self._listeners: list[StateListener] = []
        self._generation = 0
        self._confirming: int | None = None
        self.routed_event: EventMeta | None = None
        self._clear()

    def _clear(self) -> None:
        self.guest: GuestRecord | None = None
        self.event: EventMeta | None = None
        self.candidates: tuple[GuestMatch, ...] = ()
        self.credential: Credential | None = None
        self.confirmation: Confirmation | None = None
        self.reason: str | None = None
        self.error: DomainError | None = None

    @property
    def state(self) -> AttemptState:
        return self._state

    @property
    def busy(self) -> bool:
        return self._state is AttemptState.SEARCHING or self._confirming is not None

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Call listener(state) on every transition. Returns an unsubscribe callable."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def snapshot(self) -> AttemptSnapshot:
        return AttemptSnapshot(
            state=self._state,
            event_id=self.event_id,
            guest=self.guest,
            candidates=self.candidates,
            confirmation=self.confirmation,
            reason=self.reason,
            routed_event=self.routed_event,
            retryable=bool(self.error and self.error.retryable),
        )

    def _set_state(self, state: AttemptState) -> None:
        if state is self._state:
            return
        previous, self._state = self._state, state
        logger.info("Check-in attempt %s -> %s", previous.value, state.value)
        for listener in list(self._listeners):
            listener(state)

    def _require_idle(self, operation: str) -> None:
        if self.busy:
            raise AttemptInProgressError()
        if self._state is not AttemptState.IDLE:
            raise InvalidTransitionError(operation, self._state.value)

    def _not_found(self, reason: str) -> AttemptState:
        self.reason = reason
        self._set_state(AttemptState.NOT_FOUND)
        return self._state

    def _directory_failed(self, error: DomainError, restore: AttemptState) -> AttemptState:
        logger.warning("Directory failure during check-in attempt: %s", error)
        self.error = error
        self.reason = error.message
        self._set_state(restore)
        return self._state

    def _abandon(self, restore: AttemptState) -> None:
        """Leave SEARCHING after an unexpected error; the caller re-raises it."""
        logger.warning("Check-in attempt aborted by an unexpected error, back to %s", restore.value)
        if restore is AttemptState.IDLE:
            self._clear()
        self._set_state(restore)

    def _build_confirmation(self, guest: GuestRecord, event: EventMeta | None) -> Confirmation:
        gallery_link = None
        if self.link_base_url:
            gallery_link = codes.build_gallery_link(self.link_base_url, guest.event_id, guest.id)
        return Confirmation(
            guest_id=guest.id,
            guest_name=guest.name,
            event_id=guest.event_id,
            event_name=event.name if event else None,
            table_number=guest.table_number,
            checked_in_at=guest.checked_in_at,
            gallery_link=gallery_link,
        )

    def _land(self, guest: GuestRecord, event: EventMeta | None) -> AttemptState:
        """Single candidate: already present short-circuits, otherwise FOUND."""
        self.guest = guest
        self.event = event
        if guest.checked_in:
            logger.info("Guest %s already checked in at %s", guest.id, guest.checked_in_at)
            self.confirmation = self._build_confirmation(guest, event)
            self._set_state(AttemptState.CONFIRMED)
        else:
            self._set_state(AttemptState.FOUND)
        return self._state

    async def search_by_name(self, name: str) -> AttemptState:
        """Type-your-name flow. Always stops at FOUND; confirm() is a separate step."""
        self._require_idle("search")
        query = (name or "").strip()
        if not query:
            return self._not_found("Enter a name to search")

        self._set_state(AttemptState.SEARCHING)
        try:
            if self.event_id:
                event = await self.resolver.events.find_event(self.event_id)
                if event is None:
                    return self._not_found("Event not found")
                guests = await self.resolver.resolve_by_name(query, self.event_id)
                matches = [GuestMatch(guest, event) for guest in guests]
            else:
                matches = await self.resolver.resolve_by_name_across_events(
                    query, self.match_limit
                )
        except DirectoryUnavailableError as e:
            return self._directory_failed(e, AttemptState.IDLE)
        except Exception:
            self._abandon(AttemptState.IDLE)
            raise

        if not matches:
            return self._not_found("No guest found with that name")
        if len(matches) > 1:
            # Never pick one ourselves: the wrong guest would be checked in
            self.candidates = tuple(matches)
            logger.info("Name search matched %d guests, awaiting selection", len(matches))
            self._set_state(AttemptState.AMBIGUOUS)
            return self._state
        return self._land(matches[0].guest, matches[0].event)

    async def submit_scan(self, raw: str, auto_confirm: bool = True) -> AttemptState:
        """Decode a scanned string and act on it."""
        self._require_idle("scan")
        decoded = codes.decode(raw)
        if decoded is None:
            logger.info("Rejected unreadable code")
            return self._not_found("Invalid code")
        if isinstance(decoded, EventReference):
            return await self._route_to_event(decoded)
        return await self.submit_credential(decoded, auto_confirm)

    async def _route_to_event(self, reference: EventReference) -> AttemptState:
        self._set_state(AttemptState.SEARCHING)
        try:
            event = await self.resolver.events.find_event(reference.event_id)
        except DirectoryUnavailableError as e:
            return self._directory_failed(e, AttemptState.IDLE)
        except Exception:
            self._abandon(AttemptState.IDLE)
            raise
        if event is None:
            return self._not_found("Event not found")

        logger.info("Scanned link routed check-in to event %s", event.id)
        self.event_id = event.id
        self.routed_event = event
        self._set_state(AttemptState.IDLE)
        return self._state

    async def submit_credential(self, credential: Credential, auto_confirm: bool = True) -> AttemptState:
        """Resolve a credential; with auto_confirm a confirmable guest goes straight to confirm()."""
        self._require_idle("scan")
        self.credential = credential
        self._set_state(AttemptState.SEARCHING)
        try:
            resolution = await self.resolver.resolve_by_credential(credential, self.event_id)
            event = None
            if resolution.found:
                event = await self.resolver.events.find_event(resolution.guest.event_id)
        except DirectoryUnavailableError as e:
            return self._directory_failed(e, AttemptState.IDLE)
        except Exception:
            self._abandon(AttemptState.IDLE)
            raise

        if not resolution.found:
            return self._not_found("Invalid code or guest not found")

        state = self._land(resolution.guest, event)
        if state is AttemptState.FOUND and auto_confirm:
            return await self.confirm()
        return state

    async def open_guest(self, guest_id: str) -> AttemptState:
        """Pick a guest straight from a list, e.g. the organizer's manual check-in."""
        self._require_idle("open a guest")
        self._set_state(AttemptState.SEARCHING)
        try:
            guest = await self.resolver.guests.find_by_id(guest_id, self.event_id)
            event = await self.resolver.events.find_event(guest.event_id) if guest else None
        except DirectoryUnavailableError as e:
            return self._directory_failed(e, AttemptState.IDLE)
        except Exception:
            self._abandon(AttemptState.IDLE)
            raise
        if guest is None:
            return self._not_found("Guest not found")
        return self._land(guest, event)

    async def select_candidate(self, guest_id: str) -> AttemptState:
        """Collapse an ambiguous name search to the guest the user picked."""
        if self._state is not AttemptState.AMBIGUOUS:
            raise InvalidTransitionError("select a candidate", self._state.value)
        match = next((m for m in self.candidates if m.guest.id == guest_id), None)
        if match is None:
            raise ValueError(f"Guest {guest_id} is not among the candidates")

        self._set_state(AttemptState.SEARCHING)
        try:
            # The candidate list may be stale; read the record again
            guest = await self.resolver.guests.find_by_id(guest_id, match.guest.event_id)
        except DirectoryUnavailableError as e:
            return self._directory_failed(e, AttemptState.AMBIGUOUS)
        except Exception:
            self._abandon(AttemptState.AMBIGUOUS)
            raise

        self.candidates = ()
        if guest is None:
            return self._not_found("Guest not found")
        return self._land(guest, match.event)

    async def confirm(self) -> AttemptState:
        """Check the gate, write, then transition. Never CONFIRMED before the write is acknowledged."""
        if self._state is AttemptState.CONFIRMED:
            return self._state
        if self.busy:
            raise AttemptInProgressError()
        if self._state is not AttemptState.FOUND:
            raise InvalidTransitionError("confirm", self._state.value)

        guest = self.guest
        generation = self._generation
        self._confirming = generation
        self.reason = None
        self.error = None
        try:
            # Fresh event and fresh clock: the window may have closed since FOUND
            event = await self.resolver.events.find_event(guest.event_id)
            if event is None:
                if generation == self._generation:
                    self.reason = "Event not found"
                return self._state

            decision = self.gate.is_check_in_allowed(event)
            if not decision.allowed:
                logger.info("Check-in of guest %s denied: %s", guest.id, decision.reason)
                if generation == self._generation:
                    self.event = event
                    self.reason = decision.reason
                return self._state

            updated = await self.resolver.guests.mark_checked_in(guest.id)
            if not updated.checked_in:
                raise WriteConflictError(guest.id)
        except (DirectoryUnavailableError, WriteConflictError) as e:
            if generation != self._generation:
                logger.warning("Check-in write for reset attempt failed: %s", e)
                return self._state
            return self._directory_failed(e, AttemptState.FOUND)
        finally:
            if self._confirming == generation:
                self._confirming = None

        confirmation = self._build_confirmation(updated, event)
        if generation != self._generation:
            # Reset while the write was in flight: the record now says present,
            # the next lookup short-circuits on checked_in_at
            logger.info("Guest %s checked in after the attempt was reset", guest.id)
        else:
            self.guest = updated
            self.event = event
            self.confirmation = confirmation
            logger.info("Guest %s checked in for event %s", updated.id, updated.event_id)
            self._set_state(AttemptState.CONFIRMED)

        await self._run_hooks(confirmation)
        return self._state

    async def _run_hooks(self, confirmation: Confirmation) -> None:
        for hook in self.hooks:
            try:
                await hook(confirmation)
            except Exception:
                # Check-in already succeeded; side effects are best effort
                logger.exception("Post check-in hook %r failed", hook)

    def reset(self) -> None:
        """Discard the current attempt and return to IDLE.

        The configured event context is kept; an event routed by a scanned
        link is dropped.
        """
        if self._state is AttemptState.SEARCHING:
            raise AttemptInProgressError()
        self._generation += 1
        self._confirming = None
        self.routed_event = None
        self.event_id = self.home_event_id
        self._clear()
        self._set_state(AttemptState.IDLE)
