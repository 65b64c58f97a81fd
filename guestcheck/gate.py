"""Admission window: may a guest be checked in right now?"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from .config import Settings, get_settings
from .models import EventMeta

_STAMP = "%Y-%m-%d %H:%M %Z"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime) -> datetime:
    # Naive timestamps from the directory are UTC
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class AdmissionPolicy:
    """How far before the scheduled start check-in opens, and how long after it stays open."""

    opens_before: timedelta = timedelta(0)
    closes_after: timedelta = timedelta(hours=3)

    def __post_init__(self) -> None:
        if self.opens_before < timedelta(0) or self.closes_after < timedelta(0):
            raise ValueError("Admission offsets cannot be negative")

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> AdmissionPolicy:
        settings = settings or get_settings()
        return cls(
            opens_before=timedelta(minutes=settings.admission_opens_before_minutes),
            closes_after=timedelta(minutes=settings.admission_closes_after_minutes),
        )


@dataclass(frozen=True)
class AdmissionDecision:
    allowed: bool
    reason: str | None = None
    opens_at: datetime | None = None
    closes_at: datetime | None = None
    # How long until check-in opens, when it is too early
    retry_after: timedelta | None = None


class AdmissionGate:
    """Decides whether check-in is permitted at a given instant.

    Nothing is cached: every call recomputes the window from the event it
    is given, so a window that closes mid-interaction is honoured.
    """

    def __init__(self, policy: AdmissionPolicy | None = None, clock: Callable[[], datetime] = utc_now):
        self.policy = policy or AdmissionPolicy()
        self.clock = clock

    def window(self, event: EventMeta) -> tuple[datetime, datetime]:
        starts_at = _aware(event.starts_at)

        if event.admission_opens_at is not None:
            opens_at = _aware(event.admission_opens_at)
        else:
            opens_at = starts_at - self.policy.opens_before

        if event.admission_closes_at is not None:
            closes_at = _aware(event.admission_closes_at)
        elif event.ends_at is not None:
            closes_at = _aware(event.ends_at)
        else:
            closes_at = starts_at + self.policy.closes_after

        return opens_at, closes_at

    def is_check_in_allowed(self, event: EventMeta, now: datetime | None = None) -> AdmissionDecision:
        now = _aware(now) if now is not None else _aware(self.clock())
        opens_at, closes_at = self.window(event)

        if now < opens_at:
            return AdmissionDecision(
                allowed=False,
                reason=f"Check-in opens at {opens_at.strftime(_STAMP)}",
                opens_at=opens_at,
                closes_at=closes_at,
                retry_after=opens_at - now,
            )
        if now > closes_at:
            return AdmissionDecision(
                allowed=False,
                reason=f"Check-in for this event closed at {closes_at.strftime(_STAMP)}",
                opens_at=opens_at,
                closes_at=closes_at,
            )
        return AdmissionDecision(allowed=True, opens_at=opens_at, closes_at=closes_at)
