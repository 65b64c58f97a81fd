from __future__ import annotations

"""
Guest credential encoding and decoding.

Encodes guest_id and event_id into a URL-safe string that is printed as a
QR code, and decodes whatever a scanner hands back.

Current format: URL-safe base64 (no padding) of a compact JSON object
    {"v": 2, "guestId": ..., "eventId": ..., "timestamp": ...}

The previous generation issued standard base64 of the same JSON without
"v"; those codes are still in guests' inboxes and must keep decoding.

Legacy format: the bare guest id, no structure. The event has to be
found through the directory.

Scanned links to an event page (e.g. /confirm/<event_id>) decode to an
EventReference instead of a guest credential.
"""

import base64
import binascii
import json
import re
import time
from dataclasses import dataclass
from typing import Callable, Optional, Union
from urllib.parse import parse_qs, quote, urlsplit

from .models import Credential, EventReference, FormatVersion

PAYLOAD_VERSION = 2

# Hyphen-separated alphanumeric segments: UUIDs and slug ids like c290-aaaa-guest-1
_LEGACY_ID = re.compile(r"^[0-9a-z]+(?:-[0-9a-z]+)+$", re.IGNORECASE)
_LEGACY_MAX_LEN = 64

_UUID = re.compile(
    r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", re.IGNORECASE
)

_EVENT_QUERY_KEYS = ("eventId", "event_id", "event")
# Path prefixes whose next segment is the event id
_EVENT_PATH_PREFIXES = ("confirm", "events", "event")


Decoded = Union[Credential, EventReference]


@dataclass(frozen=True)
class Matched:
    """A parser strategy recognized the raw string."""

    value: Decoded


ParseStrategy = Callable[[str], Optional[Matched]]


def _b64decode(raw: str) -> bytes:
    """Decode URL-safe or standard base64, padding optional."""
    text = raw.strip().replace("+", "-").replace("/", "_")
    text += "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text.encode("ascii"))


def encode(guest_id: str, event_id: str, issued_at: int | None = None) -> str:
    """
    Build the current-format payload for a guest of an event.

    Returns a URL-safe string like "eyJ2IjoyLCJndWVzdElkIjoi..."
    """
    if not guest_id or not event_id:
        raise ValueError("guest_id and event_id are required")
    if issued_at is None:
        issued_at = int(time.time() * 1000)

    body = json.dumps(
        {
            "v": PAYLOAD_VERSION,
            "guestId": str(guest_id),
            "eventId": str(event_id),
            "timestamp": issued_at,
        },
        separators=(",", ":"),
    )
    return base64.urlsafe_b64encode(body.encode("utf-8")).decode("ascii").rstrip("=")


def parse_current_payload(raw: str) -> Matched | None:
    """Structured base64 JSON carrying both guestId and eventId."""
    try:
        data = json.loads(_b64decode(raw).decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError):
        return None

    if not isinstance(data, dict):
        return None
    guest_id = data.get("guestId")
    event_id = data.get("eventId")
    # Missing eventId is not a current payload; let the later parsers try
    if not guest_id or not event_id:
        return None

    issued_at = data.get("timestamp")
    return Matched(
        Credential(
            guest_id=str(guest_id),
            event_id=str(event_id),
            format_version=FormatVersion.CURRENT,
            issued_at=issued_at if isinstance(issued_at, int) else None,
        )
    )


def parse_legacy_identifier(raw: str) -> Matched | None:
    """Bare guest id printed on codes issued before event ids were embedded."""
    text = raw.strip()
    if len(text) > _LEGACY_MAX_LEN or not _LEGACY_ID.match(text):
        return None
    return Matched(
        Credential(guest_id=text, event_id=None, format_version=FormatVersion.LEGACY)
    )


def parse_event_link(raw: str) -> Matched | None:
    """Event id from a confirmation/gallery URL or any text embedding a UUID."""
    text = raw.strip()
    parts = urlsplit(text)

    if parts.scheme in ("http", "https") or text.startswith("/"):
        query = parse_qs(parts.query)
        for key in _EVENT_QUERY_KEYS:
            values = query.get(key)
            if values and values[0].strip():
                return Matched(EventReference(values[0].strip()))

        segments = [s for s in parts.path.split("/") if s]
        for index, segment in enumerate(segments[:-1]):
            if segment in _EVENT_PATH_PREFIXES:
                return Matched(EventReference(segments[index + 1]))

    found = _UUID.search(text)
    if found:
        return Matched(EventReference(found.group(0).lower()))
    return None


PARSERS: tuple[ParseStrategy, ...] = (
    parse_current_payload,
    parse_legacy_identifier,
    parse_event_link,
)


def decode(raw: str) -> Decoded | None:
    """
    Decode a scanned or typed string.

    Tries each parser in PARSERS and returns the first match: a Credential
    (current or legacy) or an EventReference. Returns None for anything
    unrecognized; callers treat that as a rejected scan.
    """
    if raw is None:
        raise TypeError("decode() requires a string, got None")
    if not isinstance(raw, str):
        raise TypeError(f"decode() requires a string, got {type(raw).__name__}")
    if not raw.strip():
        return None

    for parser in PARSERS:
        result = parser(raw)
        if result is not None:
            return result.value
    return None


def decode_credential(raw: str) -> Credential | None:
    """Like decode(), but only guest credentials count as a match."""
    decoded = decode(raw)
    return decoded if isinstance(decoded, Credential) else None


def build_event_link(base_url: str, event_id: str) -> str:
    """Public confirmation page for an event."""
    return f"{base_url.rstrip('/')}/confirm/{quote(event_id, safe='')}"


def build_gallery_link(base_url: str, event_id: str, guest_id: str) -> str:
    """Photo gallery access link handed to a guest after check-in."""
    return (
        f"{base_url.rstrip('/')}/event/{quote(event_id, safe='')}/guest-gallery"
        f"?guestId={quote(guest_id, safe='')}"
    )
