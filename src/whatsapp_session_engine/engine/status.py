"""Moderator connection status records written by the engine."""

from __future__ import annotations

import json
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional

from pydantic import BaseModel, Field, ValidationError

from ..models import ConnectionStatus, NotificationEvent, NotificationLevel
from ..notifications.base import NullNotifier, Notifier, safe_notify

LOGGER = logging.getLogger(__name__)


class ConnectionStatusRecord(BaseModel):
    """Last known connection status of one moderator."""

    moderator_id: int
    status: ConnectionStatus
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    last_sync_at: Optional[datetime] = None


class ConnectionStatusStore(ABC):
    """Persistence for moderator connection statuses."""

    def __init__(self, notifier: Optional[Notifier] = None) -> None:
        self._notifier = notifier or NullNotifier()

    @abstractmethod
    def get(self, moderator_id: int) -> Optional[ConnectionStatusRecord]:
        """Return the stored record or ``None``."""

    @abstractmethod
    def _save(self, record: ConnectionStatusRecord) -> None:
        """Persist ``record``."""

    def update(self, moderator_id: int, status: ConnectionStatus | str) -> Optional[ConnectionStatusRecord]:
        """Store ``status`` for ``moderator_id``; failures are logged, not raised."""

        try:
            normalized = ConnectionStatus(str(getattr(status, "value", status)).lower())
        except ValueError:
            LOGGER.warning("Invalid session status %r; using 'disconnected'", status)
            normalized = ConnectionStatus.DISCONNECTED
        try:
            previous = self.get(moderator_id)
            now = datetime.now(timezone.utc)
            last_sync = previous.last_sync_at if previous else None
            if normalized is ConnectionStatus.CONNECTED:
                last_sync = now
            record = ConnectionStatusRecord(
                moderator_id=moderator_id,
                status=normalized,
                updated_at=now,
                last_sync_at=last_sync,
            )
            self._save(record)
        except Exception:
            LOGGER.exception("Error updating connection status for moderator %s", moderator_id)
            return None
        if previous is None or previous.status is not normalized:
            LOGGER.info(
                "Moderator %s connection status %s -> %s",
                moderator_id,
                previous.status.value if previous else None,
                normalized.value,
            )
            safe_notify(
                self._notifier,
                NotificationEvent(
                    type="connection_status",
                    message=f"Connection status is {normalized.value}",
                    level=_LEVELS[normalized],
                    moderator_id=moderator_id,
                    data={"status": normalized.value},
                ),
            )
        return record


_LEVELS = {
    ConnectionStatus.CONNECTED: NotificationLevel.SUCCESS,
    ConnectionStatus.PENDING: NotificationLevel.WARNING,
    ConnectionStatus.DISCONNECTED: NotificationLevel.ERROR,
}


class InMemoryConnectionStatusStore(ConnectionStatusStore):
    """Status store kept in process memory."""

    def __init__(self, notifier: Optional[Notifier] = None) -> None:
        super().__init__(notifier)
        self._lock = threading.Lock()
        self._records: Dict[int, ConnectionStatusRecord] = {}

    def get(self, moderator_id: int) -> Optional[ConnectionStatusRecord]:
        with self._lock:
            return self._records.get(moderator_id)

    def _save(self, record: ConnectionStatusRecord) -> None:
        with self._lock:
            self._records[record.moderator_id] = record


class JsonFileConnectionStatusStore(ConnectionStatusStore):
    """Status store persisted to a JSON document keyed by moderator id."""

    def __init__(self, path: Path, notifier: Optional[Notifier] = None) -> None:
        super().__init__(notifier)
        self._path = path
        self._lock = threading.Lock()

    def get(self, moderator_id: int) -> Optional[ConnectionStatusRecord]:
        with self._lock:
            return self._load().get(moderator_id)

    def _save(self, record: ConnectionStatusRecord) -> None:
        with self._lock:
            records = self._load()
            records[record.moderator_id] = record
            self._path.parent.mkdir(parents=True, exist_ok=True)
            payload = {str(key): value.model_dump(mode="json") for key, value in records.items()}
            tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
            tmp_path.write_text(json.dumps(payload, indent=2))
            tmp_path.replace(self._path)

    def _load(self) -> Dict[int, ConnectionStatusRecord]:
        if not self._path.exists():
            return {}
        try:
            raw = json.loads(self._path.read_text() or "{}")
            return {
                int(key): ConnectionStatusRecord.model_validate(value)
                for key, value in raw.items()
            }
        except (OSError, ValueError, ValidationError):
            LOGGER.exception("Unreadable status file %s; starting empty", self._path)
            return {}
