"""Notification sink — forwards workflow events to an outbound webhook.

Subscribed to the event bus at startup. Delivery is best-effort: a failed POST
raises so the bus retries it; once the retries run out the bus calls
`on_delivery_failed`, which reports a NOTIFICATION_FAILED event. Nothing is
ever raised back into the workflow action that produced the event.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from railshop.config import settings
from railshop.events.bus import emit
from railshop.schemas.events import EventType, SystemEvent

logger = logging.getLogger(__name__)

# Never forwarded: a failing webhook would otherwise report its own failures to itself
_SKIPPED_TYPES: frozenset[EventType] = frozenset({EventType.NOTIFICATION_FAILED})


class NotificationSink:
    """Thin async wrapper around the notification webhook.

    Endpoint: POST {notification_webhook_url}
    Body: {"event_id": ..., "event_type": ..., "payload": {...}}
    """

    def __init__(self) -> None:
        self._url = settings.notifications.notification_webhook_url
        self._timeout = httpx.Timeout(settings.notifications.notification_timeout, connect=5.0)

    @property
    def enabled(self) -> bool:
        return bool(self._url)

    async def on_event(self, event: SystemEvent) -> None:
        """Event bus subscriber: POST the event to the webhook.

        Raises:
            httpx.HTTPError: Delivery failed; the bus retries the call.
        """
        if not self.enabled or event.event_type in _SKIPPED_TYPES:
            return

        body = {
            "event_id": str(event.id),
            "event_type": event.event_type.value,
            "payload": {
                "shopping_event_id": str(event.shopping_event_id) if event.shopping_event_id else None,
                "actor_id": event.actor_id,
                "timestamp": event.timestamp.isoformat(),
                **event.data,
            },
        }
        await self._post(body)
        logger.debug("Notification delivered: %s %s", event.event_type.value, event.id)

    async def on_delivery_failed(self, event: SystemEvent, exc: BaseException) -> None:
        """Bus failure callback: every delivery attempt for `event` failed."""
        logger.warning("Notification delivery failed for %s %s: %r", event.event_type.value, event.id, exc)
        await emit(SystemEvent(
            event_type=EventType.NOTIFICATION_FAILED,
            shopping_event_id=event.shopping_event_id,
            data={
                "failed_event_id": str(event.id),
                "failed_event_type": event.event_type.value,
                "error": type(exc).__name__,
            },
            source_module="integrations.notifications.client",
        ))

    async def send_alert(self, level: str, message: str) -> None:
        """Deliver an alert from the AlertEngine. Raises on failure."""
        if not self.enabled:
            logger.info("Alert [%s] (no webhook configured): %s", level, message)
            return
        await self._post({"event_type": "alert", "payload": {"level": level, "message": message}})

    async def _post(self, body: dict[str, Any]) -> None:
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            response = await client.post(self._url, json=body)
            response.raise_for_status()


# Module-level singleton
notification_sink = NotificationSink()
