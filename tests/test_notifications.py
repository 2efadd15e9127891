from __future__ import annotations

import io
import json

import httpx
import pytest
from rich.console import Console

from conftest import DriverPool, RecordingNotifier
from whatsapp_session_engine.config import EngineConfig, NotificationConfig
from whatsapp_session_engine.engine.connectivity import ConnectivityChecker
from whatsapp_session_engine.factory import build_engine, build_notifier
from whatsapp_session_engine.models import NotificationEvent, NotificationLevel
from whatsapp_session_engine.notifications.base import (
    CompositeNotifier,
    ConsoleNotifier,
    Notifier,
    NullNotifier,
)
from whatsapp_session_engine.notifications.webhook import SESSION_UPDATE_PATH, WebhookNotifier


def _webhook(handler) -> WebhookNotifier:
    client = httpx.Client(base_url="http://dashboard.local", transport=httpx.MockTransport(handler))
    return WebhookNotifier("http://dashboard.local", client=client)


def test_webhook_posts_session_update() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"ok": True})

    notifier = _webhook(handler)
    notifier.notify(
        NotificationEvent(
            type="pause_changed",
            message="Tasks paused",
            level=NotificationLevel.WARNING,
            moderator_id=12,
            data={"is_paused": True, "reason": "PendingQR - authentication required"},
        )
    )

    assert len(requests) == 1
    assert requests[0].url.path == SESSION_UPDATE_PATH
    payload = json.loads(requests[0].content)
    assert payload["moderatorUserId"] == 12
    assert payload["type"] == "pause_changed"
    assert payload["level"] == "warning"
    assert payload["isPaused"] is True
    assert payload["pauseReason"] == "PendingQR - authentication required"
    assert payload["status"] is None


def test_webhook_skips_events_without_moderator() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200)

    _webhook(handler).notify(NotificationEvent(type="startup", message="hello"))

    assert requests == []


def test_webhook_errors_are_logged_not_raised(caplog: pytest.LogCaptureFixture) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503)

    _webhook(handler).notify(
        NotificationEvent(type="connection_status", message="down", moderator_id=1, data={"status": "pending"})
    )

    assert "Failed to notify dashboard" in caplog.text


def test_console_notifier_prints_scoped_message() -> None:
    buffer = io.StringIO()
    notifier = ConsoleNotifier(Console(file=buffer, width=120))

    notifier.notify(NotificationEvent(type="session_created", message="Session [ready]", moderator_id=5))

    output = buffer.getvalue()
    assert "[INFO] [moderator 5] Session [ready]" in output


def test_composite_notifier_isolates_failing_channels() -> None:
    class Exploding(Notifier):
        def notify(self, event: NotificationEvent) -> None:
            raise RuntimeError("channel down")

    recorder = RecordingNotifier()
    composite = CompositeNotifier([Exploding(), recorder])

    composite.notify(NotificationEvent(type="x", message="y"))

    assert len(recorder.events) == 1


def test_build_notifier_channels() -> None:
    assert isinstance(build_notifier(NotificationConfig(channel="none")), NullNotifier)
    assert isinstance(build_notifier(NotificationConfig(channel="console")), ConsoleNotifier)
    assert isinstance(
        build_notifier(NotificationConfig(channel="webhook", webhook_url="http://dashboard.local")),
        WebhookNotifier,
    )
    assert isinstance(
        build_notifier(NotificationConfig(channel="console+webhook", webhook_url="http://dashboard.local")),
        CompositeNotifier,
    )

    with pytest.raises(ValueError):
        build_notifier(NotificationConfig(channel="webhook"))
    with pytest.raises(ValueError):
        build_notifier(NotificationConfig(channel="pager"))


def test_composite_notifier_closes_every_channel() -> None:
    class Stuck(Notifier):
        def notify(self, event: NotificationEvent) -> None:
            return

        def close(self) -> None:
            raise RuntimeError("already gone")

    recorder = RecordingNotifier()

    CompositeNotifier([Stuck(), recorder]).close()

    assert recorder.closed is True


def test_engine_shutdown_closes_http_clients(engine_config: EngineConfig, drivers: DriverPool) -> None:
    webhook_client = httpx.Client(
        base_url="http://dashboard.local",
        transport=httpx.MockTransport(lambda request: httpx.Response(200)),
    )
    uplink_client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(200)))
    engine = build_engine(
        engine_config,
        driver_factory=drivers,
        notifier=CompositeNotifier(
            [
                ConsoleNotifier(Console(file=io.StringIO())),
                WebhookNotifier("http://dashboard.local", client=webhook_client),
            ]
        ),
        connectivity=ConnectivityChecker("https://web.whatsapp.com/", client=uplink_client),
    )
    engine.registry.get_or_create(1)

    engine.shutdown()

    assert webhook_client.is_closed
    assert uplink_client.is_closed
    assert engine.registry.active_moderators() == []
