"""Moderator-facing flows built on the registry, detector, coordinator and optimizer."""

from __future__ import annotations

import base64
import logging
import re
import time
from datetime import datetime
from typing import Any, Callable, Optional

from pydantic import BaseModel

from ..config import EngineConfig
from ..models import (
    ConnectionStatus,
    OperationOutcome,
    OutcomeCode,
    OutcomeState,
    SessionState,
)
from .cancellation import CancellationToken, ensure_token
from .connectivity import ConnectivityChecker
from .coordinator import PERSISTENT_REASONS, OperationCoordinator, PauseReason
from .detector import SelectorProbe, StateDetector, is_connected
from .failures import (
    BrowserClosedError,
    DriverError,
    EngineError,
    FailureClassifier,
    FailureKind,
    NetworkFailureError,
    SessionCreationError,
)
from .optimizer import SessionOptimizer
from .registry import BrowserSession, SessionRegistry
from .status import ConnectionStatusStore

LOGGER = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"\D")


class SessionStatusReport(BaseModel):
    """Read-only view of a moderator's session, pause slot and status."""

    moderator_id: int
    has_session: bool
    provider_session_id: Optional[str] = None
    current_url: Optional[str] = None
    state: Optional[SessionState] = None
    last_state: Optional[SessionState] = None
    connection_status: Optional[ConnectionStatus] = None
    last_sync_at: Optional[datetime] = None
    is_paused: bool = False
    pause_reason: Optional[str] = None
    paused_by_user_id: Optional[int] = None
    paused_at: Optional[datetime] = None
    operations_in_flight: list[str] = []


class MessageDelivery(BaseModel):
    """Delivery state of a message read from its status icon."""

    phone_number: str
    icon_type: Optional[str] = None
    sent: bool = False


class LoginCode(BaseModel):
    """Screenshot of the login code currently shown to the moderator."""

    image_base64: str
    content_type: str = "image/png"


def _is_settled(state: SessionState) -> bool:
    return state in (SessionState.CONNECTED, SessionState.AWAITING_AUTHENTICATION)


class SessionOperations:
    """Run caller flows under the pause/resume protocol.

    Each flow waits for the in-flight operation (proceeding anyway after the
    timeout), pauses under its own reason, does its browser work and resumes
    with the same reason. A PendingQR, PendingNET or browser-closed pause that
    was in place comes back afterwards unless the flow saw the moderator
    logged in. Driver failures go through
    :meth:`OperationCoordinator.handle_failure`; nothing raises.
    """

    def __init__(
        self,
        config: EngineConfig,
        registry: SessionRegistry,
        detector: StateDetector,
        coordinator: OperationCoordinator,
        optimizer: SessionOptimizer,
        *,
        classifier: Optional[FailureClassifier] = None,
        status_store: Optional[ConnectionStatusStore] = None,
        connectivity: Optional[ConnectivityChecker] = None,
    ) -> None:
        self._config = config
        self._registry = registry
        self._detector = detector
        self._coordinator = coordinator
        self._optimizer = optimizer
        self._classifier = classifier or FailureClassifier()
        self._status_store = status_store
        self._connectivity = connectivity
        selectors = config.selectors
        self._message_input_probes = [SelectorProbe(s) for s in selectors.message_input]
        self._invalid_number_probes = [SelectorProbe(s) for s in selectors.invalid_number_dialog]

    # Flows -------------------------------------------------------------------

    def check_authentication(
        self,
        moderator_id: int,
        acting_user_id: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> OperationOutcome:
        token = ensure_token(cancel_token)
        self._optimizer.check_and_auto_restore_if_needed(moderator_id)

        def work() -> OperationOutcome:
            session = self._registry.get_or_create(moderator_id)
            outcome = self._detector.monitor(
                session,
                self._config.monitor.poll_interval,
                self._config.monitor.page_load_timeout,
                _is_settled,
                token,
            )
            if not outcome.is_success:
                return self._settle(moderator_id, outcome, acting_user_id)
            if self._detector.last_state(moderator_id) is SessionState.CONNECTED:
                return OperationOutcome.success(True, message="WhatsApp is authenticated and ready")
            self._coordinator.pause_all(moderator_id, acting_user_id, PauseReason.PENDING_QR)
            return OperationOutcome.awaiting_authentication()

        return self._run(
            moderator_id,
            acting_user_id,
            PauseReason.AUTHENTICATION_CHECK,
            token,
            work,
            confirms_login=True,
        )

    def authenticate(
        self,
        moderator_id: int,
        acting_user_id: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> OperationOutcome:
        """Wait for the moderator to scan the login code, then snapshot the session."""

        token = ensure_token(cancel_token)
        self._optimizer.check_and_auto_restore_if_needed(moderator_id)

        def work() -> OperationOutcome:
            session = self._registry.get_or_create(moderator_id)
            self._navigate(session, self._config.browser.base_url)
            outcome = self._detector.monitor(
                session,
                self._config.monitor.poll_interval,
                self._config.monitor.authentication_wait,
                is_connected,
                token,
            )
            if outcome.is_success:
                LOGGER.info("Moderator %s authenticated; creating session backup", moderator_id)
                optimized = self._optimizer.optimize_authenticated_session(moderator_id)
                if not optimized.is_success:
                    LOGGER.warning(
                        "Backup after authentication failed for moderator %s: %s",
                        moderator_id,
                        optimized.message,
                    )
                self._coordinator.resume_persistent(moderator_id)
                return OperationOutcome.success(True, message="WhatsApp authenticated")
            if outcome.state is OutcomeState.AWAITING_AUTHENTICATION:
                self._coordinator.pause_all(moderator_id, acting_user_id, PauseReason.PENDING_QR)
                self._registry.dispose(moderator_id)
                return OperationOutcome.failure(
                    "Authentication failed: still on the login screen after the wait period",
                    code=OutcomeCode.TIMEOUT,
                )
            return self._settle(moderator_id, outcome, acting_user_id)

        try:
            return self._run(
                moderator_id,
                acting_user_id,
                PauseReason.AUTHENTICATION_CHECK,
                token,
                work,
                confirms_login=True,
            )
        finally:
            self._optimizer.check_and_auto_restore_if_needed(moderator_id)

    def check_number(
        self,
        moderator_id: int,
        phone_number: str,
        acting_user_id: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> OperationOutcome:
        """Report whether ``phone_number`` is reachable on WhatsApp."""

        digits = _NON_DIGITS.sub("", phone_number or "")
        if not digits:
            return OperationOutcome.failure(f"Invalid phone number: {phone_number!r}")
        token = ensure_token(cancel_token)
        if self._config.optimizer.restore_before_checks:
            restored = self._optimizer.restore_from_backup(moderator_id)
            if not restored.is_success:
                LOGGER.info("Pre-check restore skipped for moderator %s: %s", moderator_id, restored.message)
        self._optimizer.check_and_auto_restore_if_needed(moderator_id)

        def work() -> OperationOutcome:
            session = self._registry.get_or_create(moderator_id)
            self._open_chat(session, digits, token)
            outcome, has_whatsapp = self._resolve_recipient(session, token)
            if not outcome.is_success:
                return self._settle(moderator_id, outcome, acting_user_id)
            if has_whatsapp is None:
                self._coordinator.pause_all(moderator_id, acting_user_id, PauseReason.PENDING_QR)
                return OperationOutcome.awaiting_authentication(
                    "WhatsApp authentication required to check the number."
                )
            if has_whatsapp:
                return OperationOutcome.success(True, message=f"Number {digits} has WhatsApp")
            return OperationOutcome.success(False, message=f"Number {digits} does not have WhatsApp")

        try:
            return self._run(moderator_id, acting_user_id, PauseReason.CHECK_NUMBER, token, work)
        finally:
            self._optimizer.check_and_auto_restore_if_needed(moderator_id)

    def send_message(
        self,
        moderator_id: int,
        phone_number: str,
        text: str,
        acting_user_id: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> OperationOutcome:
        """Type ``text`` into the chat with ``phone_number`` and wait for the sent tick.

        A message still showing the clock icon when the delivery wait ends is
        reported as ``still_waiting``; WhatsApp keeps retrying it on its own.
        """

        digits = _NON_DIGITS.sub("", phone_number or "")
        if not digits:
            return OperationOutcome.failure(f"Invalid phone number: {phone_number!r}")
        if not text or not text.strip():
            return OperationOutcome.failure("Message text is empty")
        token = ensure_token(cancel_token)
        if self._connectivity is not None:
            online = self._connectivity.check()
            if not online.is_success:
                self._coordinator.pause_all(moderator_id, acting_user_id, PauseReason.PENDING_NET)
                return online
        self._optimizer.check_and_auto_restore_if_needed(moderator_id)

        def work() -> OperationOutcome:
            session = self._registry.get_or_create(moderator_id)
            self._open_chat(session, digits, token)
            outcome, has_whatsapp = self._resolve_recipient(session, token)
            if not outcome.is_success:
                return self._settle(moderator_id, outcome, acting_user_id)
            if has_whatsapp is None:
                self._coordinator.pause_all(moderator_id, acting_user_id, PauseReason.PENDING_QR)
                return OperationOutcome.awaiting_authentication(
                    "WhatsApp authentication required to send messages."
                )
            if not has_whatsapp:
                return OperationOutcome.failure(
                    f"Number {digits} does not have WhatsApp",
                    code=OutcomeCode.INVALID_NUMBER,
                )
            self._type_and_send(session, text)
            return self._await_delivery(session, digits, token)

        try:
            return self._run(moderator_id, acting_user_id, PauseReason.SEND_MESSAGE, token, work)
        finally:
            self._optimizer.check_and_auto_restore_if_needed(moderator_id)

    def check_connectivity(self) -> OperationOutcome:
        if self._connectivity is None:
            return OperationOutcome.success(True, message="Connectivity checks are disabled")
        return self._connectivity.check()

    def session_status(self, moderator_id: int) -> OperationOutcome:
        """Describe the moderator's session without creating one."""

        pause = self._coordinator.get_pause(moderator_id)
        session = self._registry.get_current(moderator_id)
        state: Optional[SessionState] = None
        if session is not None:
            try:
                state = self._detector.probe(session)
            except BrowserClosedError:
                LOGGER.info("Session of moderator %s is closed", moderator_id)
        record = self._status_store.get(moderator_id) if self._status_store else None
        report = SessionStatusReport(
            moderator_id=moderator_id,
            has_session=session is not None,
            provider_session_id=session.provider_session_id if session else None,
            current_url=session.last_known_url if session else None,
            state=state,
            last_state=self._detector.last_state(moderator_id),
            connection_status=record.status if record else None,
            last_sync_at=record.last_sync_at if record else None,
            is_paused=pause.is_paused,
            pause_reason=pause.reason,
            paused_by_user_id=pause.paused_by_user_id,
            paused_at=pause.paused_at,
            operations_in_flight=self._coordinator.current_operations(moderator_id),
        )
        return OperationOutcome.success(report)

    def capture_login_code(self, moderator_id: int) -> OperationOutcome:
        """Screenshot the login code of the moderator's live session."""

        session = self._registry.get_current(moderator_id)
        if session is None:
            return OperationOutcome.failure(
                f"No active session for moderator {moderator_id}; start authentication first"
            )
        try:
            with self._coordinator.track_operation(moderator_id, "capture login code"):
                state = self._detector.probe(session)
                if state is SessionState.CONNECTED:
                    return OperationOutcome.success(None, message="WhatsApp is already authenticated")
                if state is SessionState.NETWORK_UNAVAILABLE:
                    return OperationOutcome.network_unavailable()
                if state is not SessionState.AWAITING_AUTHENTICATION:
                    return OperationOutcome.still_waiting("Login code is not displayed yet")
                image = self._screenshot_login_code(session)
        except EngineError as exc:
            return self._coordinator.handle_failure(moderator_id, exc)
        if image is None:
            return OperationOutcome.still_waiting("Login code is not rendered yet")
        return OperationOutcome.success(
            LoginCode(image_base64=base64.b64encode(image).decode("ascii")),
            message="Please scan the QR code to authenticate.",
        )

    # Internal helpers --------------------------------------------------------

    def _run(
        self,
        moderator_id: int,
        acting_user_id: Optional[int],
        reason: str,
        token: CancellationToken,
        work: Callable[[], OperationOutcome],
        *,
        confirms_login: bool = False,
    ) -> OperationOutcome:
        if not self._coordinator.wait_for_current_operation_to_finish(moderator_id, cancel_token=token):
            LOGGER.warning(
                "Proceeding with %r for moderator %s while another operation may still run",
                reason,
                moderator_id,
            )
        if token.cancelled:
            return OperationOutcome.failure("Operation was cancelled", code=OutcomeCode.CANCELLED)
        prior = self._coordinator.get_pause(moderator_id)
        carried = prior if prior.reason in PERSISTENT_REASONS else None
        self._coordinator.pause_all(moderator_id, acting_user_id, reason)
        outcome: Optional[OperationOutcome] = None
        try:
            with self._coordinator.track_operation(moderator_id, reason):
                outcome = work()
                return outcome
        except SessionCreationError as exc:
            if self._classifier.classify(exc) is FailureKind.UNKNOWN:
                LOGGER.error("Session creation failed for moderator %s: %s", moderator_id, exc)
                return OperationOutcome.failure(str(exc), code=OutcomeCode.SESSION_CREATION)
            return self._coordinator.handle_failure(moderator_id, exc, acting_user_id)
        except EngineError as exc:
            return self._coordinator.handle_failure(moderator_id, exc, acting_user_id)
        except Exception as exc:
            return self._coordinator.handle_failure(
                moderator_id,
                self._classifier.wrap(exc, reason),
                acting_user_id,
            )
        finally:
            # Long-lived pauses survive unless this flow proved the login.
            if confirms_login and outcome is not None and outcome.is_success:
                carried = None
            self._coordinator.release_pause(moderator_id, reason, carried)

    def _navigate(self, session: BrowserSession, url: str) -> None:
        LOGGER.info("Moderator %s navigating to %s", session.moderator_id, url)
        with self._classifier.guard(f"navigate to {url}"):
            session.driver.navigate_to(url)
        session.last_known_url = url

    def _open_chat(self, session: BrowserSession, digits: str, token: CancellationToken) -> None:
        """Navigate to the chat with ``digits``, retrying transient network errors."""

        url = self._config.browser.send_url + digits
        attempts = max(1, self._config.monitor.navigation_attempts)
        for attempt in range(1, attempts + 1):
            try:
                self._navigate(session, url)
                return
            except NetworkFailureError as exc:
                if attempt == attempts or token.cancelled:
                    raise
                LOGGER.warning(
                    "Navigation attempt %d/%d for moderator %s failed: %s",
                    attempt,
                    attempts,
                    session.moderator_id,
                    exc,
                )
                token.sleep(self._config.monitor.navigation_retry_delay)

    def _resolve_recipient(
        self,
        session: BrowserSession,
        token: CancellationToken,
    ) -> tuple[OperationOutcome, Optional[bool]]:
        """Wait for the chat to open or the invalid-number dialog to show.

        The flag is ``None`` when the login code came up instead.
        """

        verdict: dict[str, bool] = {}

        def resolved(state: SessionState) -> bool:
            if state is SessionState.AWAITING_AUTHENTICATION:
                return True
            if self._detector.any_matches(session, self._invalid_number_probes):
                verdict["has_whatsapp"] = False
                return True
            if self._detector.any_matches(session, self._message_input_probes):
                verdict["has_whatsapp"] = True
                return True
            return False

        outcome = self._detector.monitor(
            session,
            self._config.monitor.poll_interval,
            self._config.monitor.number_check_timeout,
            resolved,
            token,
        )
        return outcome, verdict.get("has_whatsapp")

    def _type_and_send(self, session: BrowserSession, text: str) -> None:
        driver = session.driver
        message_input = self._first_element(session, self._config.selectors.message_input)
        if message_input is None:
            raise DriverError("Message input is not available")
        with self._classifier.guard("type message"):
            driver.fill(message_input, text)
        button = self._first_element(session, self._config.selectors.send_button)
        if button is not None:
            with self._classifier.guard("click send"):
                driver.click(button)
        else:
            LOGGER.debug("No send button for moderator %s; pressing Enter", session.moderator_id)
            with self._classifier.guard("press Enter"):
                driver.press(message_input, "Enter")
        LOGGER.info("Moderator %s submitted a message", session.moderator_id)

    def _await_delivery(
        self,
        session: BrowserSession,
        digits: str,
        token: CancellationToken,
    ) -> OperationOutcome:
        selectors = self._config.selectors
        deadline = time.monotonic() + self._config.monitor.delivery_timeout
        icon: Optional[str] = None
        while True:
            if token.cancelled:
                return OperationOutcome.failure("Operation was cancelled", code=OutcomeCode.CANCELLED)
            if session.driver.is_closed():
                raise BrowserClosedError("Browser has been closed while sending a message")
            icon = self._status_icon(session)
            if icon in selectors.sent_status_icons:
                return OperationOutcome.success(
                    MessageDelivery(phone_number=digits, icon_type=icon, sent=True),
                    message=f"Message sent to {digits}",
                )
            if time.monotonic() >= deadline:
                break
            token.sleep(self._config.monitor.poll_interval)
        if icon in selectors.pending_status_icons:
            LOGGER.warning("Message to %s still pending for moderator %s", digits, session.moderator_id)
            return OperationOutcome.still_waiting(f"Message to {digits} is queued and not sent yet")
        return OperationOutcome.failure(
            f"Message to {digits} was not confirmed as sent",
            code=OutcomeCode.NOT_DELIVERED,
        )

    def _status_icon(self, session: BrowserSession) -> Optional[str]:
        element = self._first_element(session, self._config.selectors.message_status_icon)
        if element is None:
            return None
        with self._classifier.guard("read message status"):
            return session.driver.get_attribute(element, "data-icon")

    def _first_element(self, session: BrowserSession, selectors: list[str]) -> Optional[Any]:
        for selector in selectors:
            with self._classifier.guard(f"query {selector!r}"):
                element = session.driver.query_selector(selector)
            if element is not None:
                return element
        return None

    def _settle(
        self,
        moderator_id: int,
        outcome: OperationOutcome,
        acting_user_id: Optional[int],
    ) -> OperationOutcome:
        """React to a monitor outcome that did not resolve successfully."""

        if outcome.code == OutcomeCode.DELIBERATE_CLOSURE:
            return self._coordinator.handle_failure(
                moderator_id,
                BrowserClosedError(outcome.message or "Browser has been closed"),
                acting_user_id,
            )
        if outcome.state is OutcomeState.NETWORK_UNAVAILABLE:
            return self._coordinator.handle_failure(
                moderator_id,
                NetworkFailureError(outcome.message or "Internet connection unavailable"),
                acting_user_id,
            )
        if outcome.state is OutcomeState.AWAITING_AUTHENTICATION:
            self._coordinator.pause_all(moderator_id, acting_user_id, PauseReason.PENDING_QR)
        return outcome

    def _screenshot_login_code(self, session: BrowserSession) -> Optional[bytes]:
        for selector in self._config.selectors.login_code:
            with self._classifier.guard(f"find login code {selector!r}"):
                element = session.driver.query_selector(selector)
            if element is None:
                continue
            with self._classifier.guard("screenshot login code"):
                return session.driver.screenshot_element(element)
        return None
