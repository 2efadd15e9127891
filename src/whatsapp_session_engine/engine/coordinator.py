"""Cooperative pause/resume protocol for operations sharing a moderator session."""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Dict, Iterator, List, Optional

from ..models import NotificationEvent, NotificationLevel, OperationOutcome
from ..notifications.base import NullNotifier, Notifier, safe_notify
from .cancellation import CancellationToken
from .failures import FailureClassifier, FailureKind
from .registry import SessionRegistry

LOGGER = logging.getLogger(__name__)

_WAIT_SLICE = 0.25


class PauseReason:
    """Reasons used by the session operations when pausing a moderator."""

    AUTHENTICATION_CHECK = "authentication check"
    CHECK_NUMBER = "check WhatsApp number"
    SEND_MESSAGE = "send message"
    PENDING_QR = "PendingQR - authentication required"
    PENDING_NET = "PendingNET - network failure"
    BROWSER_CLOSED = "browser closed intentionally"


# Only a successful authentication clears these.
PERSISTENT_REASONS = (
    PauseReason.PENDING_QR,
    PauseReason.PENDING_NET,
    PauseReason.BROWSER_CLOSED,
)


@dataclass
class OperationPauseToken:
    """Single pause slot of one moderator; the last pause request wins."""

    is_paused: bool = False
    reason: Optional[str] = None
    paused_by_user_id: Optional[int] = None
    paused_at: Optional[datetime] = None


class OperationCoordinator:
    """Hint concurrent operations of a moderator to take turns.

    Nothing here is a hard lock. ``wait_for_current_operation_to_finish`` gives
    up after its timeout and callers proceed anyway, so a wedged operation
    can never block a moderator forever.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        *,
        classifier: Optional[FailureClassifier] = None,
        notifier: Optional[Notifier] = None,
        wait_timeout: float = 30.0,
    ) -> None:
        self._registry = registry
        self._classifier = classifier or FailureClassifier()
        self._notifier = notifier or NullNotifier()
        self._wait_timeout = wait_timeout
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._tokens: Dict[int, OperationPauseToken] = {}
        self._in_flight: Dict[int, List[str]] = {}

    # Pause slot --------------------------------------------------------------

    def pause_all(self, moderator_id: int, acting_user_id: Optional[int], reason: str) -> bool:
        """Pause the moderator's tasks under ``reason``, overwriting any pause."""

        try:
            with self._lock:
                previous = self._tokens.get(moderator_id)
                self._tokens[moderator_id] = OperationPauseToken(
                    is_paused=True,
                    reason=reason,
                    paused_by_user_id=acting_user_id,
                    paused_at=datetime.now(timezone.utc),
                )
        except Exception:
            LOGGER.exception("Failed to pause tasks for moderator %s", moderator_id)
            return False
        if previous is not None and previous.is_paused and previous.reason != reason:
            LOGGER.info(
                "Moderator %s pause reason %r replaced by %r (user %s)",
                moderator_id,
                previous.reason,
                reason,
                acting_user_id,
            )
        else:
            LOGGER.info("Paused tasks for moderator %s: %s (user %s)", moderator_id, reason, acting_user_id)
        self._announce(moderator_id, True, reason, acting_user_id)
        return True

    def resume_if_reason(self, moderator_id: int, reason: str) -> bool:
        """Lift the pause only when it was raised for ``reason``."""

        try:
            with self._lock:
                token = self._tokens.get(moderator_id)
                if token is None or not token.is_paused:
                    LOGGER.debug("Moderator %s is not paused; nothing to resume", moderator_id)
                    return False
                if token.reason != reason:
                    LOGGER.info(
                        "Not resuming moderator %s: paused for %r, resume requested for %r",
                        moderator_id,
                        token.reason,
                        reason,
                    )
                    return False
                self._tokens[moderator_id] = OperationPauseToken()
        except Exception:
            LOGGER.exception("Failed to resume tasks for moderator %s", moderator_id)
            return False
        LOGGER.info("Resumed tasks for moderator %s (%s)", moderator_id, reason)
        self._announce(moderator_id, False, reason, None)
        return True

    def resume_persistent(self, moderator_id: int) -> bool:
        """Clear whichever long-lived pause is set; used after authenticating."""

        resumed = False
        for reason in PERSISTENT_REASONS:
            resumed = self.resume_if_reason(moderator_id, reason) or resumed
        return resumed

    def release_pause(
        self,
        moderator_id: int,
        reason: str,
        restore: Optional[OperationPauseToken] = None,
    ) -> bool:
        """End the pause raised for ``reason``, handing the slot back to ``restore``.

        Without a paused ``restore`` token this is :meth:`resume_if_reason`.
        Nothing changes when another pause has replaced ``reason`` meanwhile.
        """

        if restore is None or not restore.is_paused:
            return self.resume_if_reason(moderator_id, reason)
        try:
            with self._lock:
                token = self._tokens.get(moderator_id)
                if token is None or not token.is_paused or token.reason != reason:
                    return False
                self._tokens[moderator_id] = replace(restore)
        except Exception:
            LOGGER.exception("Failed to restore pause for moderator %s", moderator_id)
            return False
        LOGGER.info(
            "Moderator %s stays paused for %r after %r",
            moderator_id,
            restore.reason,
            reason,
        )
        self._announce(moderator_id, True, restore.reason, restore.paused_by_user_id)
        return True

    def get_pause(self, moderator_id: int) -> OperationPauseToken:
        with self._lock:
            token = self._tokens.get(moderator_id)
            return replace(token) if token else OperationPauseToken()

    def is_paused(self, moderator_id: int) -> bool:
        return self.get_pause(moderator_id).is_paused

    # In-flight gate ----------------------------------------------------------

    @contextmanager
    def track_operation(self, moderator_id: int, name: str) -> Iterator[None]:
        """Mark ``name`` as running against the moderator's session."""

        with self._lock:
            self._in_flight.setdefault(moderator_id, []).append(name)
        LOGGER.debug("Operation %s started for moderator %s", name, moderator_id)
        try:
            yield
        finally:
            with self._idle:
                running = self._in_flight.get(moderator_id, [])
                if name in running:
                    running.remove(name)
                if not running:
                    self._in_flight.pop(moderator_id, None)
                self._idle.notify_all()
            LOGGER.debug("Operation %s finished for moderator %s", name, moderator_id)

    def current_operations(self, moderator_id: int) -> list[str]:
        with self._lock:
            return list(self._in_flight.get(moderator_id, []))

    def wait_for_current_operation_to_finish(
        self,
        moderator_id: int,
        timeout: Optional[float] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> bool:
        """Wait for in-flight operations to finish; ``False`` on timeout or cancel.

        Returning ``False`` does not stop the caller; it only tells it that
        it is about to run alongside another operation.
        """

        limit = self._wait_timeout if timeout is None else timeout
        deadline = time.monotonic() + limit
        with self._idle:
            while self._in_flight.get(moderator_id):
                if cancel_token is not None and cancel_token.cancelled:
                    LOGGER.info("Stopped waiting for moderator %s: cancelled", moderator_id)
                    return False
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    LOGGER.warning(
                        "Operations %s still running for moderator %s after %ss; proceeding",
                        self._in_flight.get(moderator_id),
                        moderator_id,
                        limit,
                    )
                    return False
                self._idle.wait(min(remaining, _WAIT_SLICE))
        return True

    # Failure handling --------------------------------------------------------

    def handle_failure(
        self,
        moderator_id: int,
        exc: BaseException,
        acting_user_id: Optional[int] = None,
    ) -> OperationOutcome:
        """React to a driver failure and return the outcome to report."""

        kind = self._classifier.classify(exc)
        outcome = self._classifier.to_outcome(exc)
        if kind is FailureKind.DELIBERATE_CLOSURE:
            LOGGER.info("Browser for moderator %s was closed: %s", moderator_id, exc)
            self.pause_all(moderator_id, acting_user_id, PauseReason.BROWSER_CLOSED)
            self._registry.dispose(moderator_id)
        elif kind is FailureKind.NETWORK_ERROR:
            LOGGER.warning("Network failure for moderator %s: %s", moderator_id, exc)
            self.pause_all(moderator_id, acting_user_id, PauseReason.PENDING_NET)
            self._registry.dispose(moderator_id)
        elif kind is FailureKind.TIMEOUT:
            LOGGER.warning("Timeout for moderator %s: %s", moderator_id, exc)
            self._registry.dispose(moderator_id)
        else:
            LOGGER.error("Unexpected failure for moderator %s: %s", moderator_id, exc, exc_info=exc)
        return outcome

    # Internal helpers --------------------------------------------------------

    def _announce(
        self,
        moderator_id: int,
        is_paused: bool,
        reason: str,
        acting_user_id: Optional[int],
    ) -> None:
        safe_notify(
            self._notifier,
            NotificationEvent(
                type="pause_changed",
                message=f"Tasks {'paused' if is_paused else 'resumed'}: {reason}",
                level=NotificationLevel.WARNING if is_paused else NotificationLevel.INFO,
                moderator_id=moderator_id,
                data={"is_paused": is_paused, "reason": reason, "acting_user_id": acting_user_id},
            ),
        )
