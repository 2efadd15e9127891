"""Registry owning the single live browser session of each moderator."""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterable, Optional

from ..browser.base import BrowserDriver
from ..models import NotificationEvent, NotificationLevel, OperationOutcome, OutcomeCode
from ..notifications.base import NullNotifier, Notifier, safe_notify
from .failures import FailureClassifier, SessionCreationError

LOGGER = logging.getLogger(__name__)

DriverFactory = Callable[[int, Path], BrowserDriver]


def session_directory_name(moderator_id: int) -> str:
    return f"whatsapp-session-{moderator_id}"


@dataclass
class BrowserSession:
    """Live handle to a moderator's automated page."""

    moderator_id: int
    driver: BrowserDriver
    session_dir: Path
    last_known_url: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    provider_session_id: str = field(default_factory=lambda: uuid.uuid4().hex)


class SessionRegistry:
    """Create, look up and dispose browser sessions, one per moderator.

    Sessions are long lived: they are reused across requests and only torn
    down on fatal conditions or before the optimizer touches their profile
    directory.
    """

    def __init__(
        self,
        driver_factory: DriverFactory,
        *,
        sessions_root: Path,
        base_url: str,
        classifier: Optional[FailureClassifier] = None,
        notifier: Optional[Notifier] = None,
        lock_timeout: float = 60.0,
        ready_selectors: Iterable[str] = (),
    ) -> None:
        self._driver_factory = driver_factory
        self._sessions_root = sessions_root
        self._base_url = base_url
        self._classifier = classifier or FailureClassifier()
        self._notifier = notifier or NullNotifier()
        self._lock_timeout = lock_timeout
        self._ready_selectors = list(ready_selectors)
        self._lock = threading.Lock()
        self._sessions: Dict[int, BrowserSession] = {}
        self._moderator_locks: Dict[int, threading.RLock] = {}

    # Public API --------------------------------------------------------------

    def session_dir(self, moderator_id: int) -> Path:
        return self._sessions_root / session_directory_name(moderator_id)

    def get_current(self, moderator_id: int) -> Optional[BrowserSession]:
        with self._lock:
            return self._sessions.get(moderator_id)

    def get_or_create(self, moderator_id: int) -> BrowserSession:
        """Return the healthy live session, constructing a fresh one if needed.

        Raises :class:`SessionCreationError` when the browser cannot be started.
        """

        lock = self._moderator_lock(moderator_id)
        if not lock.acquire(timeout=self._lock_timeout):
            raise SessionCreationError(
                f"Failed to acquire session lock for moderator {moderator_id} "
                f"within {self._lock_timeout:g} seconds"
            )
        try:
            existing = self.get_current(moderator_id)
            if existing is not None:
                if self._is_alive(existing):
                    LOGGER.debug("Reusing session for moderator %s", moderator_id)
                    return existing
                LOGGER.info("Session for moderator %s is closed; recreating", moderator_id)
                self._dispose_locked(moderator_id)
            return self._create(moderator_id)
        finally:
            lock.release()

    def try_get_or_create(self, moderator_id: int) -> OperationOutcome:
        try:
            return OperationOutcome.success(self.get_or_create(moderator_id))
        except SessionCreationError as exc:
            return OperationOutcome.failure(str(exc), code=OutcomeCode.SESSION_CREATION)

    def dispose(self, moderator_id: int) -> bool:
        """Stop and forget the moderator's session; safe when none exists."""

        lock = self._moderator_lock(moderator_id)
        acquired = lock.acquire(timeout=self._lock_timeout)
        if not acquired:
            LOGGER.warning(
                "Disposing session for moderator %s without its lock after %ss",
                moderator_id,
                self._lock_timeout,
            )
        try:
            return self._dispose_locked(moderator_id)
        finally:
            if acquired:
                lock.release()

    def dispose_all(self) -> None:
        with self._lock:
            moderator_ids = list(self._sessions)
        LOGGER.info("Disposing %d browser sessions", len(moderator_ids))
        for moderator_id in moderator_ids:
            self.dispose(moderator_id)

    def active_moderators(self) -> list[int]:
        with self._lock:
            return sorted(self._sessions)

    def provider_session_id(self, moderator_id: int) -> Optional[str]:
        session = self.get_current(moderator_id)
        return session.provider_session_id if session else None

    def is_session_ready(self, moderator_id: int) -> bool:
        """Cheap check for any chat UI element on the live page."""

        session = self.get_current(moderator_id)
        if session is None:
            return False
        for selector in self._ready_selectors:
            try:
                if session.driver.query_selector(selector) is not None:
                    return True
            except Exception as exc:
                LOGGER.debug("Ready check %s failed for moderator %s: %s", selector, moderator_id, exc)
        return False

    # Internal helpers --------------------------------------------------------

    def _moderator_lock(self, moderator_id: int) -> threading.RLock:
        with self._lock:
            lock = self._moderator_locks.get(moderator_id)
            if lock is None:
                lock = threading.RLock()
                self._moderator_locks[moderator_id] = lock
            return lock

    def _is_alive(self, session: BrowserSession) -> bool:
        try:
            return not session.driver.is_closed()
        except Exception as exc:
            LOGGER.debug("Liveness check failed for moderator %s: %s", session.moderator_id, exc)
            return False

    def _create(self, moderator_id: int) -> BrowserSession:
        session_dir = self.session_dir(moderator_id)
        LOGGER.info("Creating browser session for moderator %s in %s", moderator_id, session_dir)
        try:
            driver = self._driver_factory(moderator_id, session_dir)
        except Exception as exc:
            raise SessionCreationError(
                f"Failed to build browser for moderator {moderator_id}: {exc}"
            ) from exc
        session = BrowserSession(moderator_id=moderator_id, driver=driver, session_dir=session_dir)
        try:
            with self._classifier.guard("start browser"):
                driver.start()
            with self._classifier.guard("open WhatsApp Web"):
                driver.navigate_to(self._base_url)
            session.last_known_url = self._base_url
        except Exception as exc:
            LOGGER.error("Failed to initialize session for moderator %s: %s", moderator_id, exc)
            self._stop_driver(moderator_id, driver)
            raise SessionCreationError(
                f"Failed to initialize session for moderator {moderator_id}: {exc}"
            ) from exc
        with self._lock:
            self._sessions[moderator_id] = session
        safe_notify(
            self._notifier,
            NotificationEvent(
                type="session_created",
                message="WhatsApp session initialized",
                moderator_id=moderator_id,
                data={"provider_session_id": session.provider_session_id},
            ),
        )
        return session

    def _dispose_locked(self, moderator_id: int) -> bool:
        with self._lock:
            session = self._sessions.pop(moderator_id, None)
        if session is None:
            return False
        LOGGER.info("Disposing browser session for moderator %s", moderator_id)
        self._stop_driver(moderator_id, session.driver)
        safe_notify(
            self._notifier,
            NotificationEvent(
                type="session_disposed",
                message="WhatsApp session disposed",
                level=NotificationLevel.INFO,
                moderator_id=moderator_id,
            ),
        )
        return True

    @staticmethod
    def _stop_driver(moderator_id: int, driver: BrowserDriver) -> None:
        try:
            driver.stop()
        except Exception:
            LOGGER.exception("Error disposing browser for moderator %s (ignored)", moderator_id)
