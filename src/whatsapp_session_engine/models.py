"""Shared models used across the session engine."""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


class OutcomeState(str, enum.Enum):
    """Result categories every engine operation resolves to."""

    SUCCESS = "success"
    FAILURE = "failure"
    AWAITING_AUTHENTICATION = "awaiting_authentication"
    NETWORK_UNAVAILABLE = "network_unavailable"
    STILL_WAITING = "still_waiting"
    WARNING = "warning"


class OutcomeCode:
    """Machine readable discriminators carried by non-success outcomes."""

    NO_BACKUP = "no_backup"
    BACKUP_INVALID = "backup_invalid"
    CANCELLED = "cancelled"
    BUSY = "busy"
    SESSION_CREATION = "session_creation"
    DELIBERATE_CLOSURE = "deliberate_closure"
    TIMEOUT = "timeout"
    NETWORK_ERROR = "network_error"
    INVALID_NUMBER = "invalid_number"
    NOT_DELIVERED = "not_delivered"
    UNKNOWN = "unknown"


class OperationOutcome(BaseModel, Generic[T]):
    """Tagged result returned by engine operations instead of raising.

    Expected conditions such as a pending login code or a missing network are
    reported through ``state``; ``code`` narrows failures down when callers
    need to tell them apart (for example a missing backup).
    """

    state: OutcomeState
    data: Optional[T] = None
    message: Optional[str] = None
    code: Optional[str] = None

    @classmethod
    def success(cls, data: Any = None, message: Optional[str] = None) -> "OperationOutcome":
        return cls(state=OutcomeState.SUCCESS, data=data, message=message)

    @classmethod
    def failure(cls, message: str, code: Optional[str] = None) -> "OperationOutcome":
        return cls(state=OutcomeState.FAILURE, message=message, code=code)

    @classmethod
    def awaiting_authentication(
        cls,
        message: str = "Please scan the QR code to authenticate.",
    ) -> "OperationOutcome":
        return cls(state=OutcomeState.AWAITING_AUTHENTICATION, message=message)

    @classmethod
    def network_unavailable(
        cls,
        message: str = "Internet connection unavailable",
        code: Optional[str] = None,
    ) -> "OperationOutcome":
        return cls(state=OutcomeState.NETWORK_UNAVAILABLE, message=message, code=code)

    @classmethod
    def still_waiting(cls, message: Optional[str] = None) -> "OperationOutcome":
        return cls(state=OutcomeState.STILL_WAITING, message=message)

    @classmethod
    def warning(cls, message: str, code: Optional[str] = None) -> "OperationOutcome":
        return cls(state=OutcomeState.WARNING, message=message, code=code)

    @property
    def is_success(self) -> bool:
        return self.state is OutcomeState.SUCCESS


class SessionState(str, enum.Enum):
    """Classification of a live page computed at poll time."""

    LOADING = "loading"
    AWAITING_AUTHENTICATION = "awaiting_authentication"
    CONNECTED = "connected"
    NETWORK_UNAVAILABLE = "network_unavailable"
    GENERIC_FAILURE = "generic_failure"


class ConnectionStatus(str, enum.Enum):
    """Moderator connection status surfaced to dashboards."""

    CONNECTED = "connected"
    PENDING = "pending"
    DISCONNECTED = "disconnected"


_STATUS_BY_STATE = {
    SessionState.CONNECTED: ConnectionStatus.CONNECTED,
    SessionState.AWAITING_AUTHENTICATION: ConnectionStatus.PENDING,
    SessionState.NETWORK_UNAVAILABLE: ConnectionStatus.DISCONNECTED,
    SessionState.GENERIC_FAILURE: ConnectionStatus.DISCONNECTED,
}


def connection_status_for(state: SessionState) -> Optional[ConnectionStatus]:
    """Return the status to persist for ``state`` or ``None`` while loading."""

    return _STATUS_BY_STATE.get(state)


class SessionBackupRecord(BaseModel):
    """Latest known-good snapshot of a moderator's session directory."""

    moderator_id: int
    path: Path
    captured_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    size_bytes: int = 0


class SessionHealthMetrics(BaseModel):
    """On-disk footprint and backup information for one moderator."""

    moderator_id: int
    current_size_bytes: int
    backup_size_bytes: int
    backup_exists: bool
    threshold_bytes: int
    last_cleanup: Optional[datetime] = None
    last_backup: Optional[datetime] = None
    is_authenticated: bool = False
    provider_session_id: Optional[str] = None

    @property
    def exceeds_threshold(self) -> bool:
        return self.current_size_bytes > self.threshold_bytes

    @property
    def current_size_mb(self) -> float:
        return round(self.current_size_bytes / (1024 * 1024), 2)

    @property
    def threshold_mb(self) -> float:
        return round(self.threshold_bytes / (1024 * 1024), 2)


class NotificationLevel(str, enum.Enum):
    """Severity of notification events."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    SUCCESS = "success"


class NotificationEvent(BaseModel):
    """Event emitted to notify operators and dashboards."""

    type: str
    message: str
    level: NotificationLevel = NotificationLevel.INFO
    moderator_id: Optional[int] = None
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
