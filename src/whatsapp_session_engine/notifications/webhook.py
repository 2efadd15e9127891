"""Webhook notifier telling the dashboard API about session updates."""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from ..models import NotificationEvent
from .base import Notifier

LOGGER = logging.getLogger(__name__)

SESSION_UPDATE_PATH = "/api/notifications/whatsapp-session-update"


class WebhookNotifier(Notifier):
    """POST moderator-scoped events to the dashboard API.

    Events without a moderator id are not forwarded; the dashboard only
    tracks per-moderator sessions.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 5.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self._client = client or httpx.Client(base_url=base_url, timeout=timeout)

    def notify(self, event: NotificationEvent) -> None:
        if event.moderator_id is None:
            return
        payload = {
            "moderatorUserId": event.moderator_id,
            "type": event.type,
            "message": event.message,
            "level": event.level.value,
            "status": event.data.get("status"),
            "isPaused": event.data.get("is_paused"),
            "pauseReason": event.data.get("reason"),
            "timestamp": event.timestamp.isoformat(),
        }
        try:
            response = self._client.post(SESSION_UPDATE_PATH, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            LOGGER.warning(
                "Failed to notify dashboard about %s for moderator %s: %s",
                event.type,
                event.moderator_id,
                exc,
            )
            return
        LOGGER.debug("Notified dashboard about %s for moderator %s", event.type, event.moderator_id)

    def close(self) -> None:
        self._client.close()
