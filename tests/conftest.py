from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Optional

import httpx
import pytest

from whatsapp_session_engine.browser.base import BrowserDriver
from whatsapp_session_engine.config import EngineConfig
from whatsapp_session_engine.engine.connectivity import ConnectivityChecker
from whatsapp_session_engine.factory import Engine, build_engine
from whatsapp_session_engine.models import NotificationEvent
from whatsapp_session_engine.notifications.base import Notifier

NETWORK = "#network-error"
QR = "#qr"
QR_CANVAS = "#qr canvas"
CHATS = "#chats"
PROGRESS = "#progress"
COMPOSE = "#compose"
INVALID = "#invalid-number"
SEND = "#send"
STATUS_ICON = "#status-icon"

CLOSED_MESSAGE = "Target page, context or browser has been closed"


class FakeElement:
    def __init__(self, selector: str) -> None:
        self.selector = selector


class FakeDriver(BrowserDriver):
    """In-memory page whose DOM is a set of selectors tests switch on and off."""

    def __init__(self, moderator_id: int, session_dir: Path) -> None:
        self.moderator_id = moderator_id
        self.session_dir = session_dir
        self.present: set[str] = set()
        self.failing: dict[str, Exception] = {}
        self.url = "about:blank"
        self.navigations: list[str] = []
        self.started = False
        self.closed = False
        self.stop_calls = 0
        self.polls = 0
        self.start_error: Optional[Exception] = None
        self.navigate_error: Optional[Exception] = None
        self.before_poll: Optional[Callable[["FakeDriver"], None]] = None
        self.attributes: dict[str, dict[str, str]] = {}
        self.filled: list[tuple[str, str]] = []
        self.clicked: list[str] = []
        self.pressed: list[tuple[str, str]] = []
        self.after_send: Optional[Callable[["FakeDriver"], None]] = None

    def show(self, *selectors: str) -> None:
        self.present.update(selectors)

    def hide(self, *selectors: str) -> None:
        self.present.difference_update(selectors)

    def start(self) -> None:
        if self.start_error is not None:
            raise self.start_error
        self.session_dir.mkdir(parents=True, exist_ok=True)
        self.started = True

    def stop(self) -> None:
        self.stop_calls += 1
        self.closed = True

    def navigate_to(self, url: str) -> None:
        if self.navigate_error is not None:
            raise self.navigate_error
        self.navigations.append(url)
        self.url = url

    def query_selector(self, selector: str) -> Optional[Any]:
        if self.closed:
            raise RuntimeError(CLOSED_MESSAGE)
        if selector in self.failing:
            raise self.failing[selector]
        return FakeElement(selector) if selector in self.present else None

    def get_current_url(self) -> str:
        if self.closed:
            raise RuntimeError(CLOSED_MESSAGE)
        return self.url

    def screenshot_element(self, element: Any) -> bytes:
        return f"png:{element.selector}".encode()

    def fill(self, element: Any, text: str) -> None:
        self.filled.append((element.selector, text))

    def click(self, element: Any) -> None:
        self.clicked.append(element.selector)
        self._sent()

    def press(self, element: Any, key: str) -> None:
        self.pressed.append((element.selector, key))
        if key == "Enter":
            self._sent()

    def get_attribute(self, element: Any, name: str) -> Optional[str]:
        return self.attributes.get(element.selector, {}).get(name)

    def is_closed(self) -> bool:
        self.polls += 1
        if self.before_poll is not None:
            self.before_poll(self)
        return self.closed

    def _sent(self) -> None:
        if self.after_send is not None:
            self.after_send(self)


class DriverPool:
    """Driver factory recording every driver it builds."""

    def __init__(self) -> None:
        self.created: list[FakeDriver] = []
        self.setup: Optional[Callable[[FakeDriver], None]] = None

    def __call__(self, moderator_id: int, session_dir: Path) -> FakeDriver:
        driver = FakeDriver(moderator_id, session_dir)
        if self.setup is not None:
            self.setup(driver)
        self.created.append(driver)
        return driver

    def for_moderator(self, moderator_id: int) -> list[FakeDriver]:
        return [driver for driver in self.created if driver.moderator_id == moderator_id]

    def latest(self, moderator_id: int) -> FakeDriver:
        return self.for_moderator(moderator_id)[-1]


class Uplink:
    """Transport handler standing in for the internet; flip ``online`` to cut it."""

    def __init__(self) -> None:
        self.online = True
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.online:
            raise httpx.ConnectError("Network is unreachable", request=request)
        return httpx.Response(200, text="ok")


class RecordingNotifier(Notifier):
    def __init__(self) -> None:
        self.events: list[NotificationEvent] = []
        self.closed = False

    def notify(self, event: NotificationEvent) -> None:
        self.events.append(event)

    def close(self) -> None:
        self.closed = True

    def of_type(self, event_type: str) -> list[NotificationEvent]:
        return [event for event in self.events if event.type == event_type]


@pytest.fixture
def engine_config(tmp_path: Path) -> EngineConfig:
    return EngineConfig.model_validate(
        {
            "browser": {"headless": True},
            "selectors": {
                "network_error": [NETWORK],
                "authentication": [QR],
                "chat_ready": [CHATS],
                "loading": [PROGRESS],
                "message_input": [COMPOSE],
                "invalid_number_dialog": [INVALID],
                "send_button": [SEND],
                "message_status_icon": [STATUS_ICON],
                "login_code": [QR_CANVAS, QR],
                "logout_url_markers": ["post_logout"],
                "network_url_markers": ["chrome-error://"],
            },
            "monitor": {
                "poll_interval": 0.01,
                "page_load_timeout": 0.2,
                "authentication_wait": 0.2,
                "number_check_timeout": 0.2,
                "max_monitoring_wait": 1.0,
                "delivery_timeout": 0.2,
                "navigation_retry_delay": 0,
            },
            "coordinator": {"wait_for_operation_timeout": 0.2, "session_lock_timeout": 1.0},
            "optimizer": {
                "sessions_root": str(tmp_path / "sessions"),
                "max_session_size_bytes": 1024,
                "file_release_delay": 0,
                "file_lock_retry_delay": 0,
            },
            "notifications": {"channel": "none"},
        }
    )


@pytest.fixture
def drivers() -> DriverPool:
    return DriverPool()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def uplink() -> Uplink:
    return Uplink()


@pytest.fixture
def connectivity(uplink: Uplink) -> ConnectivityChecker:
    client = httpx.Client(transport=httpx.MockTransport(uplink))
    return ConnectivityChecker("https://web.whatsapp.com/", client=client)


@pytest.fixture
def engine(
    engine_config: EngineConfig,
    drivers: DriverPool,
    notifier: RecordingNotifier,
    connectivity: ConnectivityChecker,
) -> Engine:
    built = build_engine(
        engine_config,
        driver_factory=drivers,
        notifier=notifier,
        connectivity=connectivity,
    )
    yield built
    built.shutdown()


def write_profile(session_dir: Path, extra_bytes: int = 0) -> None:
    """Create a minimal Chromium profile with the paths a backup needs."""

    (session_dir / "Default" / "IndexedDB").mkdir(parents=True, exist_ok=True)
    (session_dir / "Default" / "IndexedDB" / "wa.db").write_text("keys")
    (session_dir / "Default" / "Local Storage").mkdir(parents=True, exist_ok=True)
    (session_dir / "Default" / "Local Storage" / "leveldb").write_text("storage")
    if extra_bytes:
        cache = session_dir / "Default" / "Cache"
        cache.mkdir(parents=True, exist_ok=True)
        (cache / "blob").write_bytes(b"x" * extra_bytes)
