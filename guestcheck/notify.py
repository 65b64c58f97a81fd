from __future__ import annotations

import logging

import httpx

from .config import get_settings
from .models import Confirmation, EventMeta
from .stores import EventDirectory

logger = logging.getLogger(__name__)


class OrganizerNotifier:
    """Tells the event organizer that a guest confirmed presence.

    Used as a post check-in hook. Delivery failures are logged and dropped:
    the check-in itself already succeeded.
    """

    def __init__(
        self,
        events: EventDirectory,
        webhook_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.events = events
        self.webhook_url = webhook_url if webhook_url is not None else get_settings().notify_webhook_url
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=10.0, transport=self._transport)
        return self._client

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __call__(self, confirmation: Confirmation) -> None:
        if not self.webhook_url:
            logger.debug("No notification webhook configured, skipping")
            return

        try:
            event = await self.events.find_event(confirmation.event_id)
            client = await self._get_client()
            response = await client.post(self.webhook_url, json=_payload(confirmation, event))
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Could not notify organizer of guest %s: %s", confirmation.guest_id, e)
            return
        logger.info("Organizer notified of guest %s", confirmation.guest_id)


def _payload(confirmation: Confirmation, event: EventMeta | None) -> dict:
    return {
        "guestName": confirmation.guest_name,
        "tableNumber": confirmation.table_number,
        "eventId": confirmation.event_id,
        "eventName": confirmation.event_name,
        "organizerId": event.organizer_id if event else None,
        "galleryLink": confirmation.gallery_link,
    }
