"""Per-request cancellation signal shared by long-running engine waits."""

from __future__ import annotations

import threading
from typing import Optional


class CancellationToken:
    """Thread-safe flag that interrupts waits as soon as it is set."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def sleep(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return ``True`` if cancelled meanwhile."""

        if seconds <= 0:
            return self.cancelled
        return self._event.wait(seconds)


def ensure_token(token: Optional[CancellationToken]) -> CancellationToken:
    return token if token is not None else CancellationToken()
