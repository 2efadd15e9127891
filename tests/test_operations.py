from __future__ import annotations

import base64
import os

from conftest import (
    CHATS,
    COMPOSE,
    INVALID,
    NETWORK,
    PROGRESS,
    QR,
    QR_CANVAS,
    SEND,
    STATUS_ICON,
    DriverPool,
    FakeDriver,
    Uplink,
    write_profile,
)
from whatsapp_session_engine.engine.cancellation import CancellationToken
from whatsapp_session_engine.engine.coordinator import PauseReason
from whatsapp_session_engine.factory import Engine
from whatsapp_session_engine.models import ConnectionStatus, OutcomeCode, OutcomeState, SessionState


def show_on_start(*selectors: str):
    def setup(driver: FakeDriver) -> None:
        driver.show(*selectors)

    return setup


# check_authentication -----------------------------------------------------------


def test_check_authentication_connected(engine: Engine, drivers: DriverPool) -> None:
    drivers.setup = show_on_start(CHATS)

    outcome = engine.operations.check_authentication(1, acting_user_id=7)

    assert outcome.is_success
    assert outcome.data is True
    assert engine.coordinator.is_paused(1) is False
    assert engine.status_store.get(1).status is ConnectionStatus.CONNECTED
    assert engine.registry.get_current(1) is not None


def test_check_authentication_login_code_pauses(engine: Engine, drivers: DriverPool) -> None:
    drivers.setup = show_on_start(QR)

    outcome = engine.operations.check_authentication(1, acting_user_id=7)

    assert outcome.state is OutcomeState.AWAITING_AUTHENTICATION
    token = engine.coordinator.get_pause(1)
    assert token.is_paused
    assert token.reason == PauseReason.PENDING_QR
    assert token.paused_by_user_id == 7
    assert engine.status_store.get(1).status is ConnectionStatus.PENDING


def test_check_authentication_network_failure(engine: Engine, drivers: DriverPool) -> None:
    drivers.setup = show_on_start(NETWORK, QR)

    outcome = engine.operations.check_authentication(1)

    assert outcome.state is OutcomeState.NETWORK_UNAVAILABLE
    assert engine.coordinator.get_pause(1).reason == PauseReason.PENDING_NET
    assert engine.registry.get_current(1) is None
    assert engine.status_store.get(1).status is ConnectionStatus.DISCONNECTED


def test_check_authentication_browser_closed(engine: Engine, drivers: DriverPool) -> None:
    def close_on_poll(driver: FakeDriver) -> None:
        driver.before_poll = lambda d: setattr(d, "closed", True)

    drivers.setup = close_on_poll

    outcome = engine.operations.check_authentication(1, acting_user_id=3)

    assert outcome.state is OutcomeState.WARNING
    assert outcome.code == OutcomeCode.DELIBERATE_CLOSURE
    assert engine.coordinator.get_pause(1).reason == PauseReason.BROWSER_CLOSED
    assert engine.registry.get_current(1) is None
    assert engine.status_store.get(1) is None


def test_check_authentication_session_creation_failure(engine: Engine, drivers: DriverPool) -> None:
    drivers.setup = lambda driver: setattr(driver, "start_error", RuntimeError("chromium missing"))

    outcome = engine.operations.check_authentication(1)

    assert outcome.state is OutcomeState.FAILURE
    assert outcome.code == OutcomeCode.SESSION_CREATION
    assert engine.coordinator.is_paused(1) is False


def test_check_authentication_offline_at_start(engine: Engine, drivers: DriverPool) -> None:
    drivers.setup = lambda driver: setattr(
        driver,
        "navigate_error",
        RuntimeError("Page.goto: net::ERR_INTERNET_DISCONNECTED at https://web.whatsapp.com/"),
    )

    outcome = engine.operations.check_authentication(1)

    assert outcome.state is OutcomeState.NETWORK_UNAVAILABLE
    assert engine.coordinator.get_pause(1).reason == PauseReason.PENDING_NET


def test_check_authentication_proceeds_after_wait_timeout(engine: Engine, drivers: DriverPool) -> None:
    drivers.setup = show_on_start(CHATS)

    with engine.coordinator.track_operation(1, "send message"):
        outcome = engine.operations.check_authentication(1)

    assert outcome.is_success


def test_cancelled_operation_does_not_pause(engine: Engine, drivers: DriverPool) -> None:
    token = CancellationToken()
    token.cancel()

    outcome = engine.operations.check_authentication(1, cancel_token=token)

    assert outcome.code == OutcomeCode.CANCELLED
    assert engine.coordinator.is_paused(1) is False
    assert drivers.created == []


def test_unresolved_check_keeps_network_pause(engine: Engine, drivers: DriverPool) -> None:
    engine.coordinator.pause_all(1, 7, PauseReason.PENDING_NET)
    drivers.setup = show_on_start(PROGRESS)

    outcome = engine.operations.check_authentication(1)

    assert outcome.state is OutcomeState.STILL_WAITING
    token = engine.coordinator.get_pause(1)
    assert token.reason == PauseReason.PENDING_NET
    assert token.paused_by_user_id == 7


def test_session_creation_failure_keeps_login_pause(engine: Engine, drivers: DriverPool) -> None:
    engine.coordinator.pause_all(1, 7, PauseReason.PENDING_QR)
    drivers.setup = lambda driver: setattr(driver, "start_error", RuntimeError("chromium missing"))

    outcome = engine.operations.check_authentication(1)

    assert outcome.code == OutcomeCode.SESSION_CREATION
    assert engine.coordinator.get_pause(1).reason == PauseReason.PENDING_QR


def test_connected_check_lifts_network_pause(engine: Engine, drivers: DriverPool) -> None:
    engine.coordinator.pause_all(1, 7, PauseReason.PENDING_NET)
    drivers.setup = show_on_start(CHATS)

    outcome = engine.operations.check_authentication(1)

    assert outcome.is_success
    assert engine.coordinator.is_paused(1) is False


# authenticate --------------------------------------------------------------------


def test_authenticate_success_creates_one_fresh_backup(engine: Engine, drivers: DriverPool) -> None:
    directory = engine.registry.session_dir(1)
    write_profile(directory)
    previous = engine.optimizer.backups.put(1, directory)
    engine.coordinator.pause_all(1, None, PauseReason.PENDING_QR)

    def scan_after_two_polls(driver: FakeDriver) -> None:
        driver.show(QR)

        def scan(d: FakeDriver) -> None:
            if d.polls == 2:
                d.hide(QR)
                d.show(CHATS)

        driver.before_poll = scan

    drivers.setup = scan_after_two_polls

    outcome = engine.operations.authenticate(1, acting_user_id=8)

    assert outcome.is_success
    record = engine.optimizer.backups.get(1)
    assert record is not None
    assert record.captured_at > previous.captured_at
    assert sorted(p.suffix for p in engine.optimizer.backups.backups_dir.iterdir()) == [".json", ".zip"]
    assert engine.registry.get_current(1) is None
    assert engine.coordinator.is_paused(1) is False
    assert drivers.latest(1).navigations == [
        engine.config.browser.base_url,
        engine.config.browser.base_url,
    ]

    recreated = engine.registry.get_or_create(1)
    assert recreated.driver is not drivers.for_moderator(1)[0]
    assert len(drivers.for_moderator(1)) == 2


def test_authenticate_backs_up_profile_left_by_crashed_browser(engine: Engine, drivers: DriverPool) -> None:
    directory = engine.registry.session_dir(1)
    write_profile(directory)
    os.symlink("host-12345", directory / "SingletonLock")
    drivers.setup = show_on_start(CHATS)

    outcome = engine.operations.authenticate(1)

    assert outcome.is_success
    assert engine.optimizer.backups.get(1) is not None
    assert sorted(p.suffix for p in engine.optimizer.backups.backups_dir.iterdir()) == [".json", ".zip"]


def test_authenticate_still_on_login_code(engine: Engine, drivers: DriverPool) -> None:
    drivers.setup = show_on_start(QR)

    outcome = engine.operations.authenticate(1)

    assert outcome.state is OutcomeState.FAILURE
    assert "login screen" in (outcome.message or "")
    assert engine.coordinator.get_pause(1).reason == PauseReason.PENDING_QR
    assert engine.registry.get_current(1) is None
    assert engine.optimizer.backups.get(1) is None


def test_authenticate_still_loading(engine: Engine, drivers: DriverPool) -> None:
    drivers.setup = show_on_start(PROGRESS)

    outcome = engine.operations.authenticate(1)

    assert outcome.state is OutcomeState.STILL_WAITING
    assert engine.coordinator.is_paused(1) is False
    assert engine.registry.get_current(1) is not None


# check_number ------------------------------------------------------------------------


def test_check_number_reachable(engine: Engine, drivers: DriverPool) -> None:
    drivers.setup = show_on_start(CHATS, COMPOSE)

    outcome = engine.operations.check_number(1, "+20 123-456-7890")

    assert outcome.is_success
    assert outcome.data is True
    assert drivers.latest(1).navigations[-1] == engine.config.browser.send_url + "201234567890"
    assert engine.coordinator.is_paused(1) is False


def test_check_number_invalid(engine: Engine, drivers: DriverPool) -> None:
    drivers.setup = show_on_start(CHATS, INVALID)

    outcome = engine.operations.check_number(1, "0000")

    assert outcome.is_success
    assert outcome.data is False


def test_check_number_requires_authentication(engine: Engine, drivers: DriverPool) -> None:
    drivers.setup = show_on_start(QR)

    outcome = engine.operations.check_number(1, "12345")

    assert outcome.state is OutcomeState.AWAITING_AUTHENTICATION
    assert engine.coordinator.get_pause(1).reason == PauseReason.PENDING_QR


def test_check_number_network_failure(engine: Engine, drivers: DriverPool) -> None:
    drivers.setup = show_on_start(NETWORK)

    outcome = engine.operations.check_number(1, "12345")

    assert outcome.state is OutcomeState.NETWORK_UNAVAILABLE
    assert engine.coordinator.get_pause(1).reason == PauseReason.PENDING_NET


def test_number_check_does_not_lift_login_pause(engine: Engine, drivers: DriverPool) -> None:
    engine.coordinator.pause_all(1, 7, PauseReason.PENDING_QR)
    drivers.setup = show_on_start(CHATS, COMPOSE)

    outcome = engine.operations.check_number(1, "12345")

    assert outcome.data is True
    assert engine.coordinator.get_pause(1).reason == PauseReason.PENDING_QR


def test_check_number_rejects_empty_numbers(engine: Engine, drivers: DriverPool) -> None:
    outcome = engine.operations.check_number(1, "not a number")

    assert outcome.state is OutcomeState.FAILURE
    assert drivers.created == []


def test_check_number_restores_before_checking_when_configured(engine: Engine, drivers: DriverPool) -> None:
    engine.config.optimizer.restore_before_checks = True
    drivers.setup = show_on_start(CHATS, COMPOSE)

    outcome = engine.operations.check_number(1, "12345")

    assert outcome.is_success
    assert outcome.data is True


# send_message ------------------------------------------------------------------------


def status_after_send(icon: str):
    def mark(driver: FakeDriver) -> None:
        driver.show(STATUS_ICON)
        driver.attributes[STATUS_ICON] = {"data-icon": icon}

    return mark


def chat_open(*extra: str, icon: str | None = "msg-check"):
    def setup(driver: FakeDriver) -> None:
        driver.show(CHATS, COMPOSE, *extra)
        if icon is not None:
            driver.after_send = status_after_send(icon)

    return setup


def test_send_message_clicks_send_and_reads_tick(engine: Engine, drivers: DriverPool) -> None:
    drivers.setup = chat_open(SEND, icon="msg-dblcheck")

    outcome = engine.operations.send_message(1, "+20 100 555", "hello", acting_user_id=4)

    assert outcome.is_success
    assert outcome.data.sent is True
    assert outcome.data.icon_type == "msg-dblcheck"
    assert outcome.data.phone_number == "20100555"
    driver = drivers.latest(1)
    assert driver.filled == [(COMPOSE, "hello")]
    assert driver.clicked == [SEND]
    assert driver.navigations[-1] == engine.config.browser.send_url + "20100555"
    assert engine.coordinator.is_paused(1) is False


def test_send_message_presses_enter_without_send_button(engine: Engine, drivers: DriverPool) -> None:
    drivers.setup = chat_open()

    outcome = engine.operations.send_message(1, "12345", "hi")

    assert outcome.is_success
    assert drivers.latest(1).pressed == [(COMPOSE, "Enter")]


def test_send_message_still_pending_on_clock_icon(engine: Engine, drivers: DriverPool) -> None:
    drivers.setup = chat_open(SEND, icon="msg-time")

    outcome = engine.operations.send_message(1, "12345", "hi")

    assert outcome.state is OutcomeState.STILL_WAITING


def test_send_message_without_status_icon_fails(engine: Engine, drivers: DriverPool) -> None:
    drivers.setup = chat_open(SEND, icon=None)

    outcome = engine.operations.send_message(1, "12345", "hi")

    assert outcome.state is OutcomeState.FAILURE
    assert outcome.code == OutcomeCode.NOT_DELIVERED


def test_send_message_to_number_without_whatsapp(engine: Engine, drivers: DriverPool) -> None:
    drivers.setup = show_on_start(CHATS, INVALID)

    outcome = engine.operations.send_message(1, "12345", "hi")

    assert outcome.code == OutcomeCode.INVALID_NUMBER
    assert drivers.latest(1).filled == []


def test_send_message_offline_pauses_before_opening_browser(
    engine: Engine, drivers: DriverPool, uplink: Uplink
) -> None:
    uplink.online = False

    outcome = engine.operations.send_message(1, "12345", "hi", acting_user_id=4)

    assert outcome.state is OutcomeState.NETWORK_UNAVAILABLE
    token = engine.coordinator.get_pause(1)
    assert token.reason == PauseReason.PENDING_NET
    assert token.paused_by_user_id == 4
    assert drivers.created == []


def test_send_message_on_login_screen(engine: Engine, drivers: DriverPool) -> None:
    drivers.setup = show_on_start(QR)

    outcome = engine.operations.send_message(1, "12345", "hi")

    assert outcome.state is OutcomeState.AWAITING_AUTHENTICATION
    assert engine.coordinator.get_pause(1).reason == PauseReason.PENDING_QR


def test_send_message_retries_failed_navigation(engine: Engine, drivers: DriverPool) -> None:
    def flaky(driver: FakeDriver) -> None:
        chat_open(SEND)(driver)
        navigate = driver.navigate_to
        failures = [RuntimeError("Page.goto: net::ERR_NAME_NOT_RESOLVED")]

        def navigate_to(url: str) -> None:
            if "send?phone=" in url and failures:
                raise failures.pop()
            navigate(url)

        driver.navigate_to = navigate_to

    drivers.setup = flaky

    outcome = engine.operations.send_message(1, "12345", "hi")

    assert outcome.is_success
    assert engine.coordinator.is_paused(1) is False


def test_send_message_rejects_empty_text(engine: Engine, drivers: DriverPool, uplink: Uplink) -> None:
    outcome = engine.operations.send_message(1, "12345", "   ")

    assert outcome.state is OutcomeState.FAILURE
    assert uplink.requests == []
    assert drivers.created == []


def test_check_connectivity_reports_transport_errors(engine: Engine, uplink: Uplink) -> None:
    assert engine.operations.check_connectivity().data is True

    uplink.online = False
    outcome = engine.operations.check_connectivity()

    assert outcome.state is OutcomeState.NETWORK_UNAVAILABLE
    assert outcome.code == OutcomeCode.NETWORK_ERROR


# status and login code ---------------------------------------------------------


def test_session_status_does_not_create_sessions(engine: Engine, drivers: DriverPool) -> None:
    engine.coordinator.pause_all(1, 2, PauseReason.PENDING_QR)

    outcome = engine.operations.session_status(1)

    report = outcome.data
    assert outcome.is_success
    assert report.has_session is False
    assert report.state is None
    assert report.is_paused is True
    assert report.pause_reason == PauseReason.PENDING_QR
    assert drivers.created == []


def test_session_status_probes_live_session(engine: Engine, drivers: DriverPool) -> None:
    session = engine.registry.get_or_create(1)
    drivers.latest(1).show(CHATS)

    report = engine.operations.session_status(1).data

    assert report.has_session is True
    assert report.state is SessionState.CONNECTED
    assert report.connection_status is ConnectionStatus.CONNECTED
    assert report.provider_session_id == session.provider_session_id
    assert report.last_sync_at is not None


def test_capture_login_code(engine: Engine, drivers: DriverPool) -> None:
    engine.registry.get_or_create(1)
    drivers.latest(1).show(QR, QR_CANVAS)

    outcome = engine.operations.capture_login_code(1)

    assert outcome.is_success
    assert base64.b64decode(outcome.data.image_base64) == b"png:#qr canvas"
    assert outcome.data.content_type == "image/png"


def test_capture_login_code_without_session(engine: Engine) -> None:
    outcome = engine.operations.capture_login_code(1)

    assert outcome.state is OutcomeState.FAILURE


def test_capture_login_code_when_connected(engine: Engine, drivers: DriverPool) -> None:
    engine.registry.get_or_create(1)
    drivers.latest(1).show(CHATS)

    outcome = engine.operations.capture_login_code(1)

    assert outcome.is_success
    assert outcome.data is None
