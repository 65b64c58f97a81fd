"""Tests for the check-in state machine.

Run with: pytest tests/test_orchestrator.py -v
"""

import asyncio
from datetime import timedelta

import httpx
import pytest

from conftest import LEGACY_GUEST_ID, LINK_BASE, NOW, UUID_GUEST_ID
from guestcheck import codes
from guestcheck.directory import DirectoryClient
from guestcheck.errors import AttemptInProgressError, InvalidTransitionError, WriteConflictError
from guestcheck.gate import AdmissionGate
from guestcheck.orchestrator import AttemptState, CheckInOrchestrator
from guestcheck.resolver import GuestResolver

S = AttemptState


class TestNameSearch:
    """Type-your-name flow."""

    def test_single_match_stops_at_found(self, make_orchestrator, directory):
        orchestrator = make_orchestrator("evt-42")

        state = asyncio.run(orchestrator.search_by_name("beatriz LIMA"))

        assert state is S.FOUND
        assert orchestrator.guest.id == UUID_GUEST_ID
        assert orchestrator.candidates == ()
        assert directory.writes == []

    def test_confirm_writes_once_and_fires_hooks(self, make_orchestrator, directory, confirmations):
        orchestrator = make_orchestrator("evt-42")

        async def scenario():
            await orchestrator.search_by_name("Beatriz Lima")
            return await orchestrator.confirm()

        assert asyncio.run(scenario()) is S.CONFIRMED
        assert directory.writes == [UUID_GUEST_ID]
        assert len(confirmations) == 1
        confirmation = orchestrator.confirmation
        assert confirmation.table_number == 4
        assert confirmation.checked_in_at == NOW
        assert confirmation.event_name == "Casamento Ana & Rui"
        assert confirmation.gallery_link == codes.build_gallery_link(LINK_BASE, "evt-42", UUID_GUEST_ID)

    def test_accent_insensitive_single_match_needs_no_disambiguation(self, make_orchestrator):
        orchestrator = make_orchestrator("evt-42")

        asyncio.run(orchestrator.search_by_name("joao pereira"))

        assert orchestrator.state is S.FOUND
        assert orchestrator.guest.id == LEGACY_GUEST_ID

    def test_empty_name_is_not_found_without_lookup(self, make_orchestrator, directory):
        orchestrator = make_orchestrator("evt-42")

        assert asyncio.run(orchestrator.search_by_name("   ")) is S.NOT_FOUND
        assert orchestrator.reason == "Enter a name to search"
        assert directory.calls == []

    def test_no_match_is_terminal_until_reset(self, make_orchestrator):
        orchestrator = make_orchestrator("evt-42")

        assert asyncio.run(orchestrator.search_by_name("Zé Ninguém")) is S.NOT_FOUND
        with pytest.raises(InvalidTransitionError):
            asyncio.run(orchestrator.search_by_name("Beatriz"))

        orchestrator.reset()
        assert asyncio.run(orchestrator.search_by_name("Beatriz")) is S.FOUND

    def test_unknown_event(self, make_orchestrator):
        orchestrator = make_orchestrator("evt-missing")

        assert asyncio.run(orchestrator.search_by_name("Beatriz")) is S.NOT_FOUND
        assert orchestrator.reason == "Event not found"

    def test_directory_down_returns_to_idle(self, make_orchestrator, directory, unavailable):
        directory.fail_reads = unavailable
        orchestrator = make_orchestrator("evt-42")

        assert asyncio.run(orchestrator.search_by_name("Beatriz")) is S.IDLE
        snapshot = orchestrator.snapshot()
        assert snapshot.retryable
        assert snapshot.reason == unavailable.message


class TestAmbiguousMatches:
    """Multiple candidates are never resolved automatically."""

    def test_shared_name_in_event(self, make_orchestrator, directory):
        orchestrator = make_orchestrator("evt-42")

        assert asyncio.run(orchestrator.search_by_name("Maria Silva")) is S.AMBIGUOUS
        tables = {m.guest.id: m.guest.table_number for m in orchestrator.candidates}
        assert tables == {"maria-1": 5, "maria-2": 8}
        assert directory.writes == []

    def test_confirm_refused_while_ambiguous(self, make_orchestrator, directory):
        orchestrator = make_orchestrator("evt-42")
        asyncio.run(orchestrator.search_by_name("Maria Silva"))

        with pytest.raises(InvalidTransitionError):
            asyncio.run(orchestrator.confirm())
        assert directory.writes == []

    def test_selection_collapses_to_that_guest_only(self, make_orchestrator, directory):
        orchestrator = make_orchestrator("evt-42")

        async def scenario():
            await orchestrator.search_by_name("Maria Silva")
            await orchestrator.select_candidate("maria-2")
            assert orchestrator.state is S.FOUND
            assert orchestrator.candidates == ()
            return await orchestrator.confirm()

        assert asyncio.run(scenario()) is S.CONFIRMED
        assert orchestrator.confirmation.table_number == 8
        assert directory.writes == ["maria-2"]
        assert directory.guests["maria-1"].checked_in_at is None

    def test_selecting_unknown_candidate(self, make_orchestrator):
        orchestrator = make_orchestrator("evt-42")
        asyncio.run(orchestrator.search_by_name("Maria Silva"))

        with pytest.raises(ValueError):
            asyncio.run(orchestrator.select_candidate("carlos-1"))
        assert orchestrator.state is S.AMBIGUOUS

    def test_select_outside_ambiguous_state(self, make_orchestrator):
        with pytest.raises(InvalidTransitionError):
            asyncio.run(make_orchestrator("evt-42").select_candidate("maria-1"))

    def test_across_events_exposes_full_candidate_set(self, make_orchestrator, directory):
        orchestrator = make_orchestrator()

        assert asyncio.run(orchestrator.search_by_name("Maria Silva")) is S.AMBIGUOUS
        assert [m.guest.id for m in orchestrator.candidates] == ["maria-1", "maria-2", "maria-3"]
        assert {m.event.id for m in orchestrator.candidates} == {"evt-42", "evt-7"}
        assert directory.writes == []

    def test_across_events_single_match(self, make_orchestrator):
        orchestrator = make_orchestrator()

        assert asyncio.run(orchestrator.search_by_name("Carlos")) is S.FOUND
        assert orchestrator.event.id == "evt-7"


class TestIdempotence:
    """Re-confirming a present guest never writes again and looks the same."""

    def test_already_present_short_circuits(self, make_orchestrator, directory, confirmations):
        orchestrator = make_orchestrator("evt-42")

        assert asyncio.run(orchestrator.search_by_name("Ana Costa")) is S.CONFIRMED
        assert directory.writes == []
        assert confirmations == []
        assert orchestrator.confirmation.table_number == 2

    def test_confirm_twice_same_attempt(self, make_orchestrator, directory):
        orchestrator = make_orchestrator("evt-42")

        async def scenario():
            await orchestrator.search_by_name("Beatriz")
            await orchestrator.confirm()
            return await orchestrator.confirm()

        assert asyncio.run(scenario()) is S.CONFIRMED
        assert directory.writes == [UUID_GUEST_ID]

    def test_second_scan_identical_result(self, make_orchestrator, directory, confirmations):
        orchestrator = make_orchestrator("evt-42")
        raw = codes.encode(UUID_GUEST_ID, "evt-42")

        async def scenario():
            await orchestrator.submit_scan(raw)
            first = orchestrator.confirmation
            orchestrator.reset()
            await orchestrator.submit_scan(raw)
            return first, orchestrator.confirmation

        first, second = asyncio.run(scenario())

        assert orchestrator.state is S.CONFIRMED
        assert first == second
        assert directory.writes == [UUID_GUEST_ID]
        assert len(confirmations) == 1

    def test_present_guest_scanned_again(self, make_orchestrator, directory):
        """Scenario: current-format code of a guest already checked in."""
        orchestrator = make_orchestrator("evt-42")
        raw = codes.encode("ana-1", "evt-42")

        async def scenario():
            await orchestrator.submit_scan(raw)
            first = orchestrator.confirmation
            orchestrator.reset()
            await orchestrator.submit_scan(raw)
            return first

        first = asyncio.run(scenario())

        assert orchestrator.state is S.CONFIRMED
        assert orchestrator.confirmation == first
        assert first.table_number == 2
        assert not any(call[0] == "mark_checked_in" for call in directory.calls)


class TestAdmission:
    def test_denied_stays_found_with_reason(self, make_orchestrator, directory):
        orchestrator = make_orchestrator("evt-7")

        async def scenario():
            await orchestrator.search_by_name("Carlos")
            return await orchestrator.confirm()

        assert asyncio.run(scenario()) is S.FOUND
        assert orchestrator.reason.startswith("Check-in opens at")
        assert not orchestrator.snapshot().retryable
        assert directory.writes == []

    def test_window_closing_mid_interaction(self, resolver, directory):
        """Found inside the window, confirm after it closed: blocked."""
        now = [NOW]
        orchestrator = CheckInOrchestrator(
            resolver, AdmissionGate(clock=lambda: now[0]), event_id="evt-42"
        )

        async def scenario():
            await orchestrator.search_by_name("Beatriz")
            now[0] = NOW + timedelta(hours=5)
            return await orchestrator.confirm()

        assert asyncio.run(scenario()) is S.FOUND
        assert "closed" in orchestrator.reason
        assert directory.writes == []


class TestWriteFailures:
    @pytest.mark.parametrize("conflict", [False, True])
    def test_failed_write_never_confirms(self, make_orchestrator, directory, confirmations,
                                         unavailable, conflict):
        directory.fail_writes = WriteConflictError(UUID_GUEST_ID) if conflict else unavailable
        orchestrator = make_orchestrator("evt-42")

        async def scenario():
            await orchestrator.search_by_name("Beatriz")
            return await orchestrator.confirm()

        assert asyncio.run(scenario()) is S.FOUND
        assert orchestrator.confirmation is None
        assert orchestrator.snapshot().retryable
        assert confirmations == []

    def test_retry_after_failure(self, make_orchestrator, directory, unavailable):
        directory.fail_writes = unavailable
        orchestrator = make_orchestrator("evt-42")

        async def scenario():
            await orchestrator.search_by_name("Beatriz")
            await orchestrator.confirm()
            directory.fail_writes = None
            return await orchestrator.confirm()

        assert asyncio.run(scenario()) is S.CONFIRMED
        assert orchestrator.reason is None
        assert directory.writes == [UUID_GUEST_ID]

    def test_failing_hook_does_not_undo_check_in(self, resolver, gate, directory):
        async def broken(confirmation):
            raise RuntimeError("mail server down")

        orchestrator = CheckInOrchestrator(resolver, gate, event_id="evt-42", hooks=[broken])

        async def scenario():
            await orchestrator.search_by_name("Beatriz")
            return await orchestrator.confirm()

        assert asyncio.run(scenario()) is S.CONFIRMED
        assert orchestrator.confirmation.gallery_link is None


class TestScan:
    """Scan-to-confirm fast path."""

    def test_current_code_confirms_directly(self, make_orchestrator, directory):
        orchestrator = make_orchestrator("evt-42")

        state = asyncio.run(orchestrator.submit_scan(codes.encode("maria-1", "evt-42")))

        assert state is S.CONFIRMED
        assert directory.writes == ["maria-1"]

    def test_without_auto_confirm_stops_at_found(self, make_orchestrator, directory):
        orchestrator = make_orchestrator("evt-42")

        state = asyncio.run(
            orchestrator.submit_scan(codes.encode("maria-1", "evt-42"), auto_confirm=False)
        )

        assert state is S.FOUND
        assert directory.writes == []

    def test_legacy_code_without_event_context(self, make_orchestrator, directory):
        """Scenario: legacy code, lookup by id alone discovers evt-42."""
        orchestrator = make_orchestrator()

        state = asyncio.run(orchestrator.submit_scan(LEGACY_GUEST_ID, auto_confirm=False))

        assert state is S.FOUND
        assert directory.calls[0] == ("find_by_id", LEGACY_GUEST_ID, None)
        assert orchestrator.guest.event_id == "evt-42"
        assert orchestrator.event.id == "evt-42"

    def test_code_for_another_event(self, make_orchestrator, directory):
        orchestrator = make_orchestrator("evt-42")

        state = asyncio.run(orchestrator.submit_scan(codes.encode("carlos-1", "evt-7")))

        assert state is S.NOT_FOUND
        assert directory.writes == []

    def test_unreadable_code(self, make_orchestrator):
        orchestrator = make_orchestrator("evt-42")

        assert asyncio.run(orchestrator.submit_scan("not a code")) is S.NOT_FOUND
        assert orchestrator.reason == "Invalid code"

    def test_event_link_routes_to_event(self, make_orchestrator):
        orchestrator = make_orchestrator()

        state = asyncio.run(orchestrator.submit_scan(f"{LINK_BASE}/confirm/evt-42"))

        assert state is S.IDLE
        assert orchestrator.event_id == "evt-42"
        assert orchestrator.routed_event.name == "Casamento Ana & Rui"

    def test_event_link_to_unknown_event(self, make_orchestrator):
        orchestrator = make_orchestrator()

        assert asyncio.run(orchestrator.submit_scan(f"{LINK_BASE}/confirm/nope")) is S.NOT_FOUND
        assert orchestrator.event_id is None

    def test_none_is_a_programmer_error(self, make_orchestrator):
        with pytest.raises(TypeError):
            asyncio.run(make_orchestrator().submit_scan(None))


class TestOpenGuest:
    def test_manual_check_in(self, make_orchestrator, directory):
        orchestrator = make_orchestrator("evt-42")

        async def scenario():
            await orchestrator.open_guest(LEGACY_GUEST_ID)
            return await orchestrator.confirm()

        assert asyncio.run(scenario()) is S.CONFIRMED
        assert directory.writes == [LEGACY_GUEST_ID]

    def test_guest_of_other_event(self, make_orchestrator):
        assert asyncio.run(make_orchestrator("evt-42").open_guest("carlos-1")) is S.NOT_FOUND


class TestConcurrencyAndReset:
    def test_input_rejected_while_write_in_flight(self, make_orchestrator, directory):
        orchestrator = make_orchestrator("evt-42")

        async def scenario():
            directory.hold_writes = asyncio.Event()
            await orchestrator.search_by_name("Beatriz")
            task = asyncio.create_task(orchestrator.confirm())
            while ("mark_checked_in", UUID_GUEST_ID) not in directory.calls:
                await asyncio.sleep(0)
            with pytest.raises(AttemptInProgressError):
                await orchestrator.confirm()
            directory.hold_writes.set()
            return await task

        assert asyncio.run(scenario()) is S.CONFIRMED
        assert directory.writes == [UUID_GUEST_ID]

    def test_reset_during_write(self, make_orchestrator, directory, confirmations):
        """The late write is not re-applied; the next lookup sees the guest present."""
        orchestrator = make_orchestrator("evt-42")

        async def scenario():
            directory.hold_writes = asyncio.Event()
            await orchestrator.search_by_name("Beatriz")
            task = asyncio.create_task(orchestrator.confirm())
            while ("mark_checked_in", UUID_GUEST_ID) not in directory.calls:
                await asyncio.sleep(0)
            orchestrator.reset()
            directory.hold_writes.set()
            await task
            assert orchestrator.state is S.IDLE
            assert orchestrator.confirmation is None
            return await orchestrator.search_by_name("Beatriz")

        assert asyncio.run(scenario()) is S.CONFIRMED
        assert directory.writes == [UUID_GUEST_ID]
        assert len(confirmations) == 1

    def test_reset_refused_while_searching(self, make_orchestrator):
        orchestrator = make_orchestrator("evt-42")
        refused = []

        def listener(state):
            if state is S.SEARCHING:
                with pytest.raises(AttemptInProgressError):
                    orchestrator.reset()
                refused.append(state)

        orchestrator.subscribe(listener)
        asyncio.run(orchestrator.search_by_name("Beatriz"))

        assert refused == [S.SEARCHING]
        assert orchestrator.state is S.FOUND

    def test_reset_clears_attempt_but_keeps_event(self, make_orchestrator):
        orchestrator = make_orchestrator("evt-42")
        asyncio.run(orchestrator.search_by_name("Maria Silva"))

        orchestrator.reset()

        assert orchestrator.state is S.IDLE
        assert orchestrator.candidates == ()
        assert orchestrator.guest is None
        assert orchestrator.event_id == "evt-42"

    def test_listeners_see_every_transition(self, make_orchestrator):
        orchestrator = make_orchestrator("evt-42")
        seen = []
        unsubscribe = orchestrator.subscribe(seen.append)

        async def scenario():
            await orchestrator.search_by_name("Beatriz")
            await orchestrator.confirm()
            orchestrator.reset()

        asyncio.run(scenario())
        unsubscribe()
        orchestrator.reset()

        assert seen == [S.SEARCHING, S.FOUND, S.CONFIRMED, S.IDLE]

    def test_reset_returns_to_configured_event(self, make_orchestrator, directory):
        """A scanned event link only lasts until the next reset."""
        orchestrator = make_orchestrator("evt-42")

        async def scenario():
            await orchestrator.submit_scan(f"{LINK_BASE}/confirm/evt-7")
            assert orchestrator.event_id == "evt-7"
            orchestrator.reset()
            assert orchestrator.event_id == "evt-42"
            assert orchestrator.routed_event is None
            return await orchestrator.submit_scan(codes.encode("maria-1", "evt-42"))

        assert asyncio.run(scenario()) is S.CONFIRMED
        assert directory.writes == ["maria-1"]


class TestUnexpectedErrors:
    """Errors that are not directory outages propagate but never leave the attempt SEARCHING."""

    def test_scan_error_returns_to_idle(self, make_orchestrator, directory):
        orchestrator = make_orchestrator("evt-42")
        directory.fail_reads = RuntimeError("boom")

        with pytest.raises(RuntimeError):
            asyncio.run(orchestrator.submit_scan(codes.encode("maria-1", "evt-42")))

        assert orchestrator.state is S.IDLE
        assert orchestrator.credential is None

        directory.fail_reads = None
        assert asyncio.run(orchestrator.submit_scan(codes.encode("maria-1", "evt-42"))) is S.CONFIRMED

    def test_search_error_returns_to_idle(self, make_orchestrator, directory):
        orchestrator = make_orchestrator("evt-42")
        directory.fail_reads = KeyError("guests")

        with pytest.raises(KeyError):
            asyncio.run(orchestrator.search_by_name("Maria Silva"))

        assert orchestrator.state is S.IDLE
        assert not orchestrator.busy

    def test_open_guest_error_returns_to_idle(self, make_orchestrator, directory):
        orchestrator = make_orchestrator("evt-42")
        directory.fail_reads = RuntimeError("boom")

        with pytest.raises(RuntimeError):
            asyncio.run(orchestrator.open_guest("maria-1"))

        assert orchestrator.state is S.IDLE

    def test_event_link_error_returns_to_idle(self, make_orchestrator, directory):
        orchestrator = make_orchestrator("evt-42")
        directory.fail_reads = RuntimeError("boom")

        with pytest.raises(RuntimeError):
            asyncio.run(orchestrator.submit_scan(f"{LINK_BASE}/confirm/evt-7"))

        assert orchestrator.state is S.IDLE
        assert orchestrator.event_id == "evt-42"

    def test_selection_error_keeps_candidates(self, make_orchestrator, directory):
        orchestrator = make_orchestrator("evt-42")
        asyncio.run(orchestrator.search_by_name("Maria Silva"))
        directory.fail_reads = RuntimeError("boom")

        with pytest.raises(RuntimeError):
            asyncio.run(orchestrator.select_candidate("maria-2"))

        assert orchestrator.state is S.AMBIGUOUS
        assert len(orchestrator.candidates) == 2

    def test_rejected_directory_request(self, gate):
        """A 4xx from the directory surfaces as HTTPStatusError; the next scan is still accepted."""
        client = DirectoryClient(
            base_url="https://directory.test", api_key="",
            transport=httpx.MockTransport(lambda request: httpx.Response(400)),
        )
        orchestrator = CheckInOrchestrator(GuestResolver(client, client), gate)

        async def scenario():
            try:
                for _ in range(2):
                    with pytest.raises(httpx.HTTPStatusError):
                        await orchestrator.submit_scan(LEGACY_GUEST_ID)
                    assert orchestrator.state is S.IDLE
                    orchestrator.reset()
            finally:
                await client.close()

        asyncio.run(scenario())
