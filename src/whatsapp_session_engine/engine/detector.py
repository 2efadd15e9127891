"""DOM polling that classifies a live page into a :class:`SessionState`."""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional, Sequence

from ..config import SelectorSet
from ..models import (
    OperationOutcome,
    OutcomeCode,
    SessionState,
    connection_status_for,
)
from .cancellation import CancellationToken, ensure_token
from .failures import BrowserClosedError, EngineError, FailureClassifier
from .registry import BrowserSession
from .status import ConnectionStatusStore

LOGGER = logging.getLogger(__name__)

StatePredicate = Callable[[SessionState], bool]

PRECEDENCE = (
    SessionState.NETWORK_UNAVAILABLE,
    SessionState.AWAITING_AUTHENTICATION,
    SessionState.CONNECTED,
    SessionState.LOADING,
)


class Probe(ABC):
    """Capability predicate evaluated against a browser driver."""

    @abstractmethod
    def matches(self, driver: Any) -> bool:
        """Return ``True`` when the page shows this probe's signal."""


@dataclass(frozen=True)
class SelectorProbe(Probe):
    selector: str

    def matches(self, driver: Any) -> bool:
        return driver.query_selector(self.selector) is not None

    def __str__(self) -> str:
        return f"selector {self.selector!r}"


@dataclass(frozen=True)
class UrlProbe(Probe):
    fragment: str

    def matches(self, driver: Any) -> bool:
        return self.fragment in (driver.get_current_url() or "")

    def __str__(self) -> str:
        return f"url fragment {self.fragment!r}"


class ProbeSet:
    """Ordered ``(state, probes)`` groups evaluated in fixed precedence."""

    def __init__(self, groups: Iterable[tuple[SessionState, Sequence[Probe]]]) -> None:
        by_state = {state: tuple(probes) for state, probes in groups}
        unknown = set(by_state) - set(PRECEDENCE)
        if unknown:
            raise ValueError(f"Probe groups for non-probed states: {sorted(s.value for s in unknown)}")
        self.groups: tuple[tuple[SessionState, tuple[Probe, ...]], ...] = tuple(
            (state, by_state.get(state, ())) for state in PRECEDENCE
        )

    @classmethod
    def from_selectors(cls, selectors: SelectorSet) -> "ProbeSet":
        return cls(
            [
                (
                    SessionState.NETWORK_UNAVAILABLE,
                    [UrlProbe(marker) for marker in selectors.network_url_markers]
                    + [SelectorProbe(selector) for selector in selectors.network_error],
                ),
                (
                    SessionState.AWAITING_AUTHENTICATION,
                    [UrlProbe(marker) for marker in selectors.logout_url_markers]
                    + [SelectorProbe(selector) for selector in selectors.authentication],
                ),
                (SessionState.CONNECTED, [SelectorProbe(selector) for selector in selectors.chat_ready]),
                (SessionState.LOADING, [SelectorProbe(selector) for selector in selectors.loading]),
            ]
        )

    def probes_for(self, state: SessionState) -> tuple[Probe, ...]:
        for group_state, probes in self.groups:
            if group_state is state:
                return probes
        return ()


def is_connected(state: SessionState) -> bool:
    return state is SessionState.CONNECTED


class StateDetector:
    """Classify pages by polling probes and record the resulting status.

    ``probe`` never raises for a flaky selector: individual probe errors are
    logged and skipped. Only a closed browser escapes, as
    :class:`BrowserClosedError`, because no later probe can succeed.
    """

    def __init__(
        self,
        probes: ProbeSet,
        *,
        classifier: Optional[FailureClassifier] = None,
        status_store: Optional[ConnectionStatusStore] = None,
    ) -> None:
        self._probes = probes
        self._classifier = classifier or FailureClassifier()
        self._status_store = status_store
        self._lock = threading.Lock()
        self._last_states: Dict[int, SessionState] = {}

    @property
    def probe_set(self) -> ProbeSet:
        return self._probes

    def last_state(self, moderator_id: int) -> Optional[SessionState]:
        with self._lock:
            return self._last_states.get(moderator_id)

    def probe(self, session: BrowserSession, probes: Optional[ProbeSet] = None) -> SessionState:
        probe_set = probes or self._probes
        if self._is_closed(session):
            raise BrowserClosedError("Browser has been closed")
        state = SessionState.GENERIC_FAILURE
        for group_state, group in probe_set.groups:
            if self.any_matches(session, group):
                state = group_state
                break
        self._remember_url(session)
        self._record(session.moderator_id, state)
        return state

    def monitor(
        self,
        session: BrowserSession,
        interval: float,
        max_total: float,
        success_predicate: Optional[StatePredicate] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> OperationOutcome:
        """Poll until the predicate holds, the network drops or time runs out.

        The first poll always happens. On a timeout exit a page still showing
        the login code yields ``awaiting_authentication`` if it started there
        and a failure otherwise; any other unresolved page yields
        ``still_waiting``.
        """

        predicate = success_predicate or is_connected
        token = ensure_token(cancel_token)
        started = time.monotonic()
        initial_state: Optional[SessionState] = None
        while True:
            if token.cancelled:
                return _cancelled(session.moderator_id)
            try:
                state = self.probe(session)
            except BrowserClosedError as exc:
                LOGGER.info("Browser closed while monitoring moderator %s", session.moderator_id)
                return OperationOutcome.failure(str(exc), code=OutcomeCode.DELIBERATE_CLOSURE)
            if initial_state is None:
                initial_state = state
            if self._evaluate(predicate, state, session.moderator_id):
                return OperationOutcome.success(True)
            if state is SessionState.NETWORK_UNAVAILABLE:
                return OperationOutcome.network_unavailable()
            elapsed = time.monotonic() - started
            if elapsed >= max_total:
                return _timed_out(session.moderator_id, state, initial_state, max_total)
            if token.sleep(min(interval, max_total - elapsed)):
                return _cancelled(session.moderator_id)

    def any_matches(self, session: BrowserSession, probes: Iterable[Probe]) -> bool:
        """Return ``True`` if any probe matches; flaky probes count as misses."""

        for probe in probes:
            try:
                with self._classifier.guard(f"probe {probe}"):
                    if probe.matches(session.driver):
                        return True
            except BrowserClosedError:
                raise
            except EngineError as exc:
                LOGGER.debug(
                    "Probe %s failed for moderator %s: %s",
                    probe,
                    session.moderator_id,
                    exc,
                )
        return False

    # Internal helpers --------------------------------------------------------

    def _is_closed(self, session: BrowserSession) -> bool:
        try:
            return session.driver.is_closed()
        except Exception as exc:
            LOGGER.debug("Closed check failed for moderator %s: %s", session.moderator_id, exc)
            return False

    def _remember_url(self, session: BrowserSession) -> None:
        try:
            with self._classifier.guard("read current url"):
                session.last_known_url = session.driver.get_current_url()
        except BrowserClosedError:
            raise
        except EngineError as exc:
            LOGGER.debug("Could not read url for moderator %s: %s", session.moderator_id, exc)

    def _record(self, moderator_id: int, state: SessionState) -> None:
        with self._lock:
            previous = self._last_states.get(moderator_id)
            self._last_states[moderator_id] = state
        if previous is not state:
            LOGGER.info(
                "Moderator %s session state %s -> %s",
                moderator_id,
                previous.value if previous else None,
                state.value,
            )
        status = connection_status_for(state)
        if status is not None and self._status_store is not None:
            self._status_store.update(moderator_id, status)

    @staticmethod
    def _evaluate(predicate: StatePredicate, state: SessionState, moderator_id: int) -> bool:
        try:
            return bool(predicate(state))
        except Exception:
            LOGGER.exception("Success predicate failed for moderator %s", moderator_id)
            return False


def _cancelled(moderator_id: int) -> OperationOutcome:
    LOGGER.info("Monitoring cancelled for moderator %s", moderator_id)
    return OperationOutcome.failure("Operation was cancelled", code=OutcomeCode.CANCELLED)


def _timed_out(
    moderator_id: int,
    state: SessionState,
    initial_state: SessionState,
    max_total: float,
) -> OperationOutcome:
    LOGGER.info(
        "Monitoring moderator %s ended after %ss in state %s",
        moderator_id,
        max_total,
        state.value,
    )
    if state is SessionState.AWAITING_AUTHENTICATION:
        if initial_state is SessionState.AWAITING_AUTHENTICATION:
            return OperationOutcome.awaiting_authentication()
        return OperationOutcome.failure(
            "Session fell back to the login screen",
            code=OutcomeCode.TIMEOUT,
        )
    return OperationOutcome.still_waiting(f"Still waiting after {max_total:g} seconds")
