"""Notification channels for session engine events."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Iterable

from rich.console import Console

from ..models import NotificationEvent

LOGGER = logging.getLogger(__name__)


class Notifier(ABC):
    """Interface for publishing session engine events."""

    @abstractmethod
    def notify(self, event: NotificationEvent) -> None:
        """Send a notification event."""

    def close(self) -> None:
        """Release resources held by the channel."""


class NullNotifier(Notifier):
    """Notifier that drops every event."""

    def notify(self, event: NotificationEvent) -> None:  # noqa: D401
        return


class ConsoleNotifier(Notifier):
    """Simple notifier that prints to the console using Rich."""

    def __init__(self, console: Console | None = None) -> None:
        self._console = console or Console(stderr=True)

    def notify(self, event: NotificationEvent) -> None:
        style = {
            "info": "cyan",
            "warning": "yellow",
            "error": "red",
            "success": "green",
        }.get(event.level.value, "white")
        scope = f"[moderator {event.moderator_id}] " if event.moderator_id is not None else ""
        self._console.print(
            f"[{event.level.value.upper()}] {scope}{event.message}",
            style=style,
            markup=False,
        )
        if event.data:
            self._console.print(event.data, style="dim")


class CompositeNotifier(Notifier):
    """Fan-out notifier; a failing channel never blocks the others."""

    def __init__(self, notifiers: Iterable[Notifier]) -> None:
        self._notifiers = list(notifiers)

    def notify(self, event: NotificationEvent) -> None:
        for notifier in self._notifiers:
            try:
                notifier.notify(event)
            except Exception:
                LOGGER.exception("Notifier %s failed for event %s", type(notifier).__name__, event.type)

    def close(self) -> None:
        for notifier in self._notifiers:
            try:
                notifier.close()
            except Exception:
                LOGGER.exception("Failed to close notifier %s", type(notifier).__name__)


def safe_notify(notifier: Notifier, event: NotificationEvent) -> None:
    """Deliver ``event`` and log, rather than raise, any channel failure."""

    try:
        notifier.notify(event)
    except Exception:
        LOGGER.exception("Failed to deliver notification %s", event.type)
