"""Factories for constructing engine components from configuration."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .browser.playwright_driver import PlaywrightBrowserDriver
from .config import BrowserConfig, ConnectivityConfig, EngineConfig, NotificationConfig
from .engine.backups import SessionBackupStore
from .engine.connectivity import ConnectivityChecker
from .engine.coordinator import OperationCoordinator
from .engine.detector import ProbeSet, StateDetector
from .engine.failures import FailureClassifier
from .engine.operations import SessionOperations
from .engine.optimizer import SessionOptimizer
from .engine.registry import DriverFactory, SessionRegistry
from .engine.status import (
    ConnectionStatusStore,
    InMemoryConnectionStatusStore,
    JsonFileConnectionStatusStore,
)
from .notifications.base import CompositeNotifier, ConsoleNotifier, NullNotifier, Notifier
from .notifications.webhook import WebhookNotifier


def build_driver_factory(config: BrowserConfig) -> DriverFactory:
    def _factory(moderator_id: int, session_dir: Path) -> PlaywrightBrowserDriver:
        return PlaywrightBrowserDriver(session_dir, config)

    return _factory


def build_notifier(config: NotificationConfig) -> Notifier:
    channel = config.channel.lower()
    if channel == "none":
        return NullNotifier()
    if channel == "console":
        return ConsoleNotifier()
    if channel in {"webhook", "console+webhook"}:
        if not config.webhook_url:
            raise ValueError("Webhook notifications require notifications.webhook_url")
        webhook = WebhookNotifier(config.webhook_url, timeout=config.webhook_timeout)
        if channel == "webhook":
            return webhook
        return CompositeNotifier([ConsoleNotifier(), webhook])
    raise ValueError(f"Unsupported notification channel: {config.channel}")


def build_connectivity(config: ConnectivityConfig) -> Optional[ConnectivityChecker]:
    if not config.enabled:
        return None
    return ConnectivityChecker(config.url, timeout=config.timeout)


def build_status_store(config: EngineConfig, notifier: Optional[Notifier] = None) -> ConnectionStatusStore:
    if config.status_file is not None:
        return JsonFileConnectionStatusStore(config.status_file, notifier)
    return InMemoryConnectionStatusStore(notifier)


@dataclass
class Engine:
    """Wired set of engine components sharing one configuration."""

    config: EngineConfig
    notifier: Notifier
    classifier: FailureClassifier
    registry: SessionRegistry
    status_store: ConnectionStatusStore
    detector: StateDetector
    coordinator: OperationCoordinator
    optimizer: SessionOptimizer
    operations: SessionOperations
    connectivity: Optional[ConnectivityChecker] = None

    def shutdown(self) -> None:
        """Dispose every browser session and close the HTTP clients."""

        try:
            self.registry.dispose_all()
        finally:
            self.notifier.close()
            if self.connectivity is not None:
                self.connectivity.close()


def build_engine(
    config: EngineConfig,
    *,
    driver_factory: Optional[DriverFactory] = None,
    notifier: Optional[Notifier] = None,
    connectivity: Optional[ConnectivityChecker] = None,
) -> Engine:
    notifier = notifier or build_notifier(config.notifications)
    if connectivity is None:
        connectivity = build_connectivity(config.connectivity)
    classifier = FailureClassifier()
    registry = SessionRegistry(
        driver_factory or build_driver_factory(config.browser),
        sessions_root=config.optimizer.sessions_root,
        base_url=config.browser.base_url,
        classifier=classifier,
        notifier=notifier,
        lock_timeout=config.coordinator.session_lock_timeout,
        ready_selectors=config.selectors.chat_ready,
    )
    status_store = build_status_store(config, notifier)
    detector = StateDetector(
        ProbeSet.from_selectors(config.selectors),
        classifier=classifier,
        status_store=status_store,
    )
    coordinator = OperationCoordinator(
        registry,
        classifier=classifier,
        notifier=notifier,
        wait_timeout=config.coordinator.wait_for_operation_timeout,
    )
    optimizer = SessionOptimizer(
        registry,
        SessionBackupStore(
            config.optimizer.resolved_backups_dir(),
            config.optimizer.required_backup_paths,
        ),
        config.optimizer,
        notifier=notifier,
    )
    operations = SessionOperations(
        config,
        registry,
        detector,
        coordinator,
        optimizer,
        classifier=classifier,
        status_store=status_store,
        connectivity=connectivity,
    )
    return Engine(
        config=config,
        notifier=notifier,
        classifier=classifier,
        registry=registry,
        status_store=status_store,
        detector=detector,
        coordinator=coordinator,
        optimizer=optimizer,
        operations=operations,
        connectivity=connectivity,
    )
