from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

import httpx
from pydantic import BaseModel, ValidationError

from .config import get_settings
from .errors import DirectoryUnavailableError, WriteConflictError
from .models import EventMeta, GuestMatch, GuestRecord
from .stores import EventDirectory, GuestDirectory

logger = logging.getLogger(__name__)


class GuestPayload(BaseModel):
    id: str
    name: str
    event_id: str
    table_number: Optional[int] = None
    checked_in_at: Optional[datetime] = None
    email: Optional[str] = None

    def to_record(self) -> GuestRecord:
        return GuestRecord(
            id=self.id,
            name=self.name,
            event_id=self.event_id,
            table_number=self.table_number,
            checked_in_at=self.checked_in_at,
            email=self.email,
        )


class EventPayload(BaseModel):
    id: str
    name: str
    starts_at: datetime
    ends_at: Optional[datetime] = None
    location: Optional[str] = None
    admission_opens_at: Optional[datetime] = None
    admission_closes_at: Optional[datetime] = None
    organizer_id: Optional[str] = None

    def to_meta(self) -> EventMeta:
        return EventMeta(
            id=self.id,
            name=self.name,
            starts_at=self.starts_at,
            ends_at=self.ends_at,
            location=self.location,
            admission_opens_at=self.admission_opens_at,
            admission_closes_at=self.admission_closes_at,
            organizer_id=self.organizer_id,
        )


class MatchPayload(BaseModel):
    guest: GuestPayload
    event: EventPayload

    def to_match(self) -> GuestMatch:
        return GuestMatch(guest=self.guest.to_record(), event=self.event.to_meta())


class DirectoryClient(GuestDirectory, EventDirectory):
    """Guest and event directory over its REST API."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.directory_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.directory_api_key
        self.timeout = timeout if timeout is not None else settings.directory_timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"apikey": self.api_key} if self.api_key else {}
            self._client = httpx.AsyncClient(
                headers=headers,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, endpoint: str, **kwargs) -> Any:
        """Send a request; None on 404, domain errors for everything else that fails."""
        client = await self._get_client()
        url = f"{self.base_url}/{endpoint}"
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            logger.warning("Directory request %s %s failed: %s", method, endpoint, e)
            raise DirectoryUnavailableError(str(e)) from e

        if response.status_code == 404:
            return None
        if response.status_code >= 500:
            logger.warning(
                "Directory request %s %s returned %s", method, endpoint, response.status_code
            )
            raise DirectoryUnavailableError(f"HTTP {response.status_code}")
        response.raise_for_status()
        return response.json()

    async def find_by_id(self, guest_id: str, event_id: str | None = None) -> GuestRecord | None:
        """Get a guest, optionally requiring it to belong to event_id."""
        params = {"event_id": event_id} if event_id else None
        result = await self._request("GET", f"guests/{guest_id}", params=params)
        if result is None:
            return None
        return _parse(GuestPayload, result).to_record()

    async def find_by_name(self, event_id: str, name: str) -> list[GuestRecord]:
        """Search guests of one event by name."""
        result = await self._request(
            "GET", f"events/{event_id}/guests", params={"name": name}
        )
        return [_parse(GuestPayload, item).to_record() for item in result or []]

    async def list_guests(self, event_id: str) -> list[GuestRecord]:
        result = await self._request("GET", f"events/{event_id}/guests")
        return [_parse(GuestPayload, item).to_record() for item in result or []]

    async def find_by_name_any_event(self, name: str, limit: int = 5) -> list[GuestMatch]:
        """Search guests by name across every event."""
        result = await self._request(
            "GET", "guests", params={"name": name, "limit": str(limit)}
        )
        return [_parse(MatchPayload, item).to_match() for item in result or []]

    async def mark_checked_in(self, guest_id: str) -> GuestRecord:
        """Set checked_in_at for a guest. The directory keeps the first timestamp."""
        client = await self._get_client()
        url = f"{self.base_url}/guests/{guest_id}/check-in"
        try:
            response = await client.post(url)
        except httpx.TransportError as e:
            logger.warning("Check-in write for guest %s failed: %s", guest_id, e)
            raise DirectoryUnavailableError(str(e)) from e

        if response.status_code == 409:
            raise WriteConflictError(guest_id)
        if response.status_code >= 500:
            raise DirectoryUnavailableError(f"HTTP {response.status_code}")
        response.raise_for_status()
        return _parse(GuestPayload, response.json()).to_record()

    async def find_event(self, event_id: str) -> EventMeta | None:
        """Get event schedule metadata."""
        result = await self._request("GET", f"events/{event_id}")
        if result is None:
            return None
        return _parse(EventPayload, result).to_meta()


def _parse(model: type[BaseModel], data: Any):
    try:
        return model.model_validate(data)
    except ValidationError as e:
        # A directory answering with the wrong shape is as good as down
        raise DirectoryUnavailableError(f"Malformed directory response: {e}") from e


# Singleton instance
_client: DirectoryClient | None = None


def get_directory_client() -> DirectoryClient:
    global _client
    if _client is None:
        _client = DirectoryClient()
    return _client
