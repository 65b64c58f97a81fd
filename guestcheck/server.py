from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Response
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from . import codes
from .attendance import checked_in_guests, summarize
from .config import Settings, get_settings
from .directory import DirectoryClient, get_directory_client
from .errors import AttemptInProgressError, DirectoryUnavailableError
from .gate import AdmissionGate, AdmissionPolicy
from .logging_utils import configure_logging
from .models import EventReference, GuestMatch
from .notify import OrganizerNotifier
from .orchestrator import AttemptSnapshot, AttemptState, CheckInOrchestrator
from .qrimage import card_png_bytes
from .resolver import GuestResolver

_notifier: OrganizerNotifier | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(get_settings().log_level)
    yield
    await get_directory_client().close()
    if _notifier is not None:
        await _notifier.close()


app = FastAPI(title="Guest Check-in API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173",
        "http://localhost:4173",
        "http://127.0.0.1:5173",
    ],
    allow_origin_regex=r"^https?://192\.168\.\d+\.\d+:\d+$",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Dependencies ---


def get_gate() -> AdmissionGate:
    return AdmissionGate(AdmissionPolicy.from_settings())


def get_notifier(directory: DirectoryClient = Depends(get_directory_client)) -> OrganizerNotifier:
    global _notifier
    if _notifier is None:
        _notifier = OrganizerNotifier(directory)
    return _notifier


class CheckInService:
    """Builds one orchestrator per request around the shared collaborators."""

    def __init__(self, directory, gate: AdmissionGate, notifier, settings: Settings):
        self.directory = directory
        self.resolver = GuestResolver(directory, directory)
        self.gate = gate
        self.notifier = notifier
        self.settings = settings

    def orchestrator(self, event_id: str | None = None) -> CheckInOrchestrator:
        return CheckInOrchestrator(
            self.resolver,
            self.gate,
            event_id=event_id,
            hooks=[self.notifier],
            link_base_url=self.settings.public_base_url,
            match_limit=self.settings.search_match_limit,
        )


def get_service(
    directory: DirectoryClient = Depends(get_directory_client),
    gate: AdmissionGate = Depends(get_gate),
    notifier: OrganizerNotifier = Depends(get_notifier),
) -> CheckInService:
    return CheckInService(directory, gate, notifier, get_settings())


# --- Models ---


class SearchRequest(BaseModel):
    name: str


class ScanRequest(BaseModel):
    raw: str
    event_id: Optional[str] = None
    auto_confirm: bool = True


class CheckinRequest(BaseModel):
    guest_id: str
    event_id: Optional[str] = None


class CandidateOut(BaseModel):
    guest_id: str
    guest_name: str
    table_number: Optional[int] = None
    already_confirmed: bool
    event_id: str
    event_name: str
    event_date: datetime
    event_location: Optional[str] = None


class ConfirmationOut(BaseModel):
    guest_id: str
    guest_name: str
    event_id: str
    event_name: Optional[str] = None
    table_number: Optional[int] = None
    checked_in_at: datetime
    gallery_link: Optional[str] = None


class AttemptOut(BaseModel):
    state: str
    event_id: Optional[str] = None
    guest_id: Optional[str] = None
    guest_name: Optional[str] = None
    table_number: Optional[int] = None
    candidates: List[CandidateOut] = []
    confirmation: Optional[ConfirmationOut] = None
    reason: Optional[str] = None
    retryable: bool = False


class CheckedInGuestOut(BaseModel):
    guest_id: str
    guest_name: str
    table_number: Optional[int] = None
    checked_in_at: datetime


class CheckInsOut(BaseModel):
    event_id: str
    event_name: str
    total: int
    checked_in: int
    pending: int
    attendance_rate: int
    guests: List[CheckedInGuestOut] = []


def _candidate_out(match: GuestMatch) -> CandidateOut:
    return CandidateOut(
        guest_id=match.guest.id,
        guest_name=match.guest.name,
        table_number=match.guest.table_number,
        already_confirmed=match.already_confirmed,
        event_id=match.event.id,
        event_name=match.event.name,
        event_date=match.event.starts_at,
        event_location=match.event.location,
    )


def _attempt_out(snapshot: AttemptSnapshot) -> AttemptOut:
    confirmation = snapshot.confirmation
    return AttemptOut(
        state=snapshot.state.value,
        event_id=snapshot.event_id,
        guest_id=snapshot.guest.id if snapshot.guest else None,
        guest_name=snapshot.guest.name if snapshot.guest else None,
        table_number=snapshot.guest.table_number if snapshot.guest else None,
        candidates=[_candidate_out(m) for m in snapshot.candidates],
        confirmation=ConfirmationOut(**asdict(confirmation)) if confirmation else None,
        reason=snapshot.reason,
        retryable=snapshot.retryable,
    )


# --- Health ---


@app.get("/health")
async def health():
    return {"status": "ok"}


# --- Codes ---


def _encode_or_400(guest_id: str, event_id: str) -> str:
    try:
        return codes.encode(guest_id.strip(), event_id.strip())
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.get("/codes/generate")
async def generate_code(guest_id: str, event_id: str):
    """Issue the current-format credential for a guest."""
    code = _encode_or_400(guest_id, event_id)
    return {
        "code": code,
        "guest_id": guest_id,
        "event_id": event_id,
        "confirm_link": codes.build_event_link(get_settings().public_base_url, event_id),
    }


@app.get("/codes/image")
async def code_image(guest_id: str, event_id: str, name: str = "", table_number: Optional[int] = None):
    """PNG card with the guest's QR code."""
    png = card_png_bytes(_encode_or_400(guest_id, event_id), name, table_number)
    return Response(content=png, media_type="image/png")


@app.get("/codes/decode")
async def decode_code(raw: str):
    """Decode a scanned string to a guest credential or an event reference."""
    decoded = codes.decode(raw)
    if decoded is None:
        raise HTTPException(status_code=400, detail="Invalid code")
    if isinstance(decoded, EventReference):
        return {"kind": "event", "event_id": decoded.event_id}
    return {
        "kind": "guest",
        "guest_id": decoded.guest_id,
        "event_id": decoded.event_id,
        "format_version": decoded.format_version.value,
    }


# --- Events ---


@app.get("/events/{event_id}/admission")
async def admission(event_id: str, service: CheckInService = Depends(get_service)):
    try:
        event = await service.directory.find_event(event_id)
    except DirectoryUnavailableError as e:
        raise HTTPException(status_code=503, detail=e.message)
    if event is None:
        raise HTTPException(status_code=404, detail="Event not found")

    decision = service.gate.is_check_in_allowed(event)
    return {
        "allowed": decision.allowed,
        "reason": decision.reason,
        "opens_at": decision.opens_at,
        "closes_at": decision.closes_at,
        "retry_after_seconds": decision.retry_after.total_seconds() if decision.retry_after else None,
    }


@app.get("/events/{event_id}/check-ins", response_model=CheckInsOut)
async def event_check_ins(event_id: str, name: str = "", service: CheckInService = Depends(get_service)):
    """Attendance counts and the guests already present, latest first."""
    try:
        event = await service.directory.find_event(event_id)
        if event is None:
            raise HTTPException(status_code=404, detail="Event not found")
        guests = await service.directory.list_guests(event_id)
    except DirectoryUnavailableError as e:
        raise HTTPException(status_code=503, detail=e.message)

    summary = summarize(guests)
    return CheckInsOut(
        event_id=event.id,
        event_name=event.name,
        total=summary.total,
        checked_in=summary.checked_in,
        pending=summary.pending,
        attendance_rate=summary.attendance_rate,
        guests=[
            CheckedInGuestOut(
                guest_id=g.id, guest_name=g.name,
                table_number=g.table_number, checked_in_at=g.checked_in_at,
            )
            for g in checked_in_guests(guests, name)
        ],
    )


@app.post("/events/{event_id}/search", response_model=AttemptOut)
async def search_in_event(event_id: str, request: SearchRequest,
                          service: CheckInService = Depends(get_service)):
    orchestrator = service.orchestrator(event_id)
    await orchestrator.search_by_name(request.name)
    return _attempt_out(orchestrator.snapshot())


# --- Guests ---


@app.get("/guests/search", response_model=List[CandidateOut])
async def search_everywhere(name: str, service: CheckInService = Depends(get_service)):
    try:
        matches = await service.resolver.resolve_by_name_across_events(
            name, service.settings.search_match_limit
        )
    except DirectoryUnavailableError as e:
        raise HTTPException(status_code=503, detail=e.message)
    return [_candidate_out(m) for m in matches]


# --- Check-in ---


@app.post("/scan", response_model=AttemptOut)
async def scan(request: ScanRequest, service: CheckInService = Depends(get_service)):
    """Scan-to-confirm: decode, resolve and, when allowed, check in."""
    orchestrator = service.orchestrator(request.event_id)
    try:
        await orchestrator.submit_scan(request.raw, auto_confirm=request.auto_confirm)
    except AttemptInProgressError as e:
        raise HTTPException(status_code=409, detail=e.message)
    return _attempt_out(orchestrator.snapshot())


@app.post("/checkin", response_model=AttemptOut)
async def checkin(request: CheckinRequest, service: CheckInService = Depends(get_service)):
    """Confirm one guest picked from a list or a disambiguation step."""
    orchestrator = service.orchestrator(request.event_id)
    await orchestrator.open_guest(request.guest_id)
    if orchestrator.state is AttemptState.FOUND:
        await orchestrator.confirm()
    return _attempt_out(orchestrator.snapshot())
