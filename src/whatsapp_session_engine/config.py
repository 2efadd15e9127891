"""Configuration models for the WhatsApp session engine."""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

WHATSAPP_BASE_URL = "https://web.whatsapp.com/"


class BrowserConfig(BaseModel):
    """Settings for the Chromium instance driven for each moderator."""

    headless: bool = False
    viewport_width: int = 1280
    viewport_height: int = 800
    launch_args: list[str] = Field(
        default_factory=lambda: [
            "--disable-blink-features=AutomationControlled",
            "--window-size=1280,800",
            "--no-sandbox",
            "--disable-dev-shm-usage",
        ]
    )
    base_url: str = WHATSAPP_BASE_URL
    send_url: str = WHATSAPP_BASE_URL + "send?phone="
    navigation_timeout: float = Field(default=60.0, description="Seconds allowed per navigation.")


class SelectorSet(BaseModel):
    """DOM and URL probes grouped by the signal they indicate."""

    network_error: list[str] = Field(
        default_factory=lambda: [
            "#main-frame-error",
            "div[data-testid='alert-computer-offline']",
            "span[data-icon='alert-computer']",
            "text=Computer not connected",
            "text=ERR_INTERNET_DISCONNECTED",
        ]
    )
    authentication: list[str] = Field(
        default_factory=lambda: [
            "div[data-ref]",
            "canvas[aria-label*='scan me' i]",
            "div[aria-label*='QR']",
            "div[data-testid='qr-code']",
            "div[aria-label*='scan me' i]",
            "div[role='button'][data-testid='refresh-large']",
            "div[aria-label*='scan qr code' i]",
            "div[aria-label*='link with qr code' i]",
            "div[aria-label*='to use whatsapp on your computer' i]",
            "div[aria-label*='session expired' i]",
        ]
    )
    chat_ready: list[str] = Field(
        default_factory=lambda: [
            "div[aria-label='Chat list']",
            "div[data-testid='chat-list']",
            "div[role='listbox']",
            "header",
            "footer",
        ]
    )
    loading: list[str] = Field(
        default_factory=lambda: [
            "div[role='progressbar']",
            "progress",
            "div[aria-label^='Loading your chats']",
            "text=Loading your chats",
            "text=Don't close this window",
        ]
    )
    message_input: list[str] = Field(
        default_factory=lambda: [
            "footer div[contenteditable='true']",
            "div[contenteditable='true'][aria-label*='Type a message']",
            "div[contenteditable='true'][data-tab='10']",
        ]
    )
    invalid_number_dialog: list[str] = Field(
        default_factory=lambda: [
            "[aria-label*='Phone number shared via url is invalid']",
            "div[role='dialog'] div:has-text('Phone number shared via url is invalid')",
            "text='Phone number shared via url is invalid.'",
        ]
    )
    login_code: list[str] = Field(
        default_factory=lambda: [
            "div[data-ref] canvas",
            "canvas[aria-label*='scan me' i]",
            "div[data-ref]",
        ]
    )
    send_button: list[str] = Field(
        default_factory=lambda: [
            "span[data-icon='wds-ic-send-filled']",
            "button[aria-label='Send']",
            "span[data-icon='send']",
            "[aria-label*='send' i]",
        ]
    )
    message_status_icon: list[str] = Field(
        default_factory=lambda: [
            "xpath=(//div[contains(@class,'message-out')]//span[@data-icon])[last()]",
            "xpath=(//span[@data-icon='msg-check' or @data-icon='msg-dblcheck' or @data-icon='msg-time'])[last()]",
        ]
    )
    sent_status_icons: list[str] = Field(default_factory=lambda: ["msg-check", "msg-dblcheck"])
    pending_status_icons: list[str] = Field(default_factory=lambda: ["msg-time"])
    logout_url_markers: list[str] = Field(default_factory=lambda: ["post_logout", "logout_reason"])
    network_url_markers: list[str] = Field(default_factory=lambda: ["chrome-error://"])


class MonitorConfig(BaseModel):
    """Polling cadence and caps for the state detector (seconds)."""

    poll_interval: float = 1.0
    page_load_timeout: float = 120.0
    authentication_wait: float = 300.0
    number_check_timeout: float = 60.0
    max_monitoring_wait: float = 900.0
    delivery_timeout: float = 15.0
    navigation_attempts: int = 3
    navigation_retry_delay: float = 2.0


class CoordinatorConfig(BaseModel):
    """Timeouts used by the cooperative operation coordinator (seconds)."""

    wait_for_operation_timeout: float = 30.0
    session_lock_timeout: float = 60.0


class OptimizerConfig(BaseModel):
    """Session directory layout and backup policy."""

    sessions_root: Path = Path("./whatsapp-sessions")
    backups_dir: Optional[Path] = None
    max_session_size_bytes: int = 60 * 1024 * 1024
    cache_folders: list[str] = Field(
        default_factory=lambda: [
            "BrowserMetrics",
            "Cache",
            "Code Cache",
            "DawnGraphiteCache",
            "DawnWebGPUCache",
            "GPUCache",
            "CacheStorage",
            "ScriptCache",
            "GraphiteDawnCache",
            "extensions_crx_cache",
            "GrShaderCache",
            "ShaderCache",
        ]
    )
    required_backup_paths: list[str] = Field(
        default_factory=lambda: ["Default/IndexedDB", "Default/Local Storage"]
    )
    file_release_delay: float = 3.0
    max_file_lock_retries: int = 3
    file_lock_retry_delay: float = 2.0
    restore_before_checks: bool = False

    def resolved_backups_dir(self) -> Path:
        return self.backups_dir or self.sessions_root / "backups"


class NotificationConfig(BaseModel):
    """Notification channel settings."""

    channel: str = Field(default="console")
    webhook_url: Optional[str] = None
    webhook_timeout: float = 5.0


class ConnectivityConfig(BaseModel):
    """Reachability check run before sending messages."""

    url: str = WHATSAPP_BASE_URL
    timeout: float = 5.0
    enabled: bool = True


class ServiceConfig(BaseModel):
    """Binding for the HTTP service."""

    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8100)


class EngineConfig(BaseSettings):
    """Top-level configuration for the session engine."""

    model_config = SettingsConfigDict(
        env_prefix="WHATSAPP_SESSION_ENGINE_",
        env_file=(".env",),
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    browser: BrowserConfig = Field(default_factory=BrowserConfig)
    selectors: SelectorSet = Field(default_factory=SelectorSet)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    coordinator: CoordinatorConfig = Field(default_factory=CoordinatorConfig)
    optimizer: OptimizerConfig = Field(default_factory=OptimizerConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    connectivity: ConnectivityConfig = Field(default_factory=ConnectivityConfig)
    service: ServiceConfig = Field(default_factory=ServiceConfig)
    status_file: Optional[Path] = Field(
        default=None,
        description="Optional JSON file persisting moderator connection statuses.",
    )


def load_config(
    path: Path | None = None,
    *,
    env_file: Path | None = None,
    **overrides: object,
) -> EngineConfig:
    """Load configuration from an optional YAML file, the environment and overrides."""

    data: dict[str, Any] = {}
    if path:
        import yaml

        data = yaml.safe_load(path.read_text()) or {}
    if overrides:
        _deep_update(data, overrides)
    settings_kwargs: dict[str, object] = {}
    if env_file is not None:
        settings_kwargs["_env_file"] = env_file
    config = EngineConfig(**data, **settings_kwargs)
    if not data:
        return config

    merged = config.model_dump(mode="python")
    _deep_update(merged, data)
    return EngineConfig.model_validate(merged)


def _deep_update(target: dict[str, Any], updates: Mapping[str, Any]) -> None:
    """Recursively merge ``updates`` into ``target`` in-place."""

    for key, value in updates.items():
        if (
            isinstance(value, Mapping)
            and isinstance(existing := target.get(key), Mapping)
        ):
            nested: dict[str, Any]
            if isinstance(existing, dict):
                nested = existing
            else:
                nested = dict(existing)
            _deep_update(nested, value)
            target[key] = nested
        else:
            target[key] = value
