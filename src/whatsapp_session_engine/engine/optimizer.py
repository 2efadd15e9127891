"""Bound the on-disk growth of moderator profiles via backup and restore."""

from __future__ import annotations

import logging
import shutil
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional

from ..config import OptimizerConfig
from ..models import (
    NotificationEvent,
    NotificationLevel,
    OperationOutcome,
    OutcomeCode,
    SessionHealthMetrics,
)
from ..notifications.base import NullNotifier, Notifier, safe_notify
from .backups import SessionBackupStore
from .registry import SessionRegistry

LOGGER = logging.getLogger(__name__)

_LOCK_PROBE_FILE = "test_lock.tmp"


class SessionLockedError(RuntimeError):
    """Profile files stayed locked after the configured retries."""


class SessionOptimizer:
    """Treat the profile directory as a cache evicted back to its backup.

    Every public method disposes the live session before touching files and
    reports its result as an :class:`OperationOutcome`; none raises. Runs for
    the same moderator never overlap: a second caller gets ``code="busy"``.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        backups: SessionBackupStore,
        config: Optional[OptimizerConfig] = None,
        *,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self._registry = registry
        self._backups = backups
        self._config = config or OptimizerConfig()
        self._notifier = notifier or NullNotifier()
        self._lock = threading.Lock()
        self._moderator_locks: Dict[int, threading.Lock] = {}
        self._last_cleanup: Dict[int, datetime] = {}

    @property
    def backups(self) -> SessionBackupStore:
        return self._backups

    # Public API --------------------------------------------------------------

    def restore_from_backup(self, moderator_id: int) -> OperationOutcome:
        lock = self._try_lock(moderator_id)
        if lock is None:
            return _busy(moderator_id, "Session restoration already in progress")
        try:
            return self._restore(moderator_id)
        except Exception as exc:
            LOGGER.exception("Restore failed for moderator %s", moderator_id)
            return OperationOutcome.failure(f"Restore failed for moderator {moderator_id}: {exc}")
        finally:
            lock.release()

    def check_and_auto_restore_if_needed(self, moderator_id: int) -> OperationOutcome:
        """Restore from backup when the profile outgrew the size threshold.

        ``success(True)`` means a restore happened, ``success(False)`` that
        nothing was done.
        """

        try:
            current_size = _directory_size(self._registry.session_dir(moderator_id))
            threshold = self._config.max_session_size_bytes
            if current_size <= threshold:
                return OperationOutcome.success(False, message="Session size within threshold")
            if self._backups.get(moderator_id) is None:
                LOGGER.warning(
                    "Session for moderator %s is %d bytes (threshold %d) but has no backup",
                    moderator_id,
                    current_size,
                    threshold,
                )
                return OperationOutcome.success(
                    False,
                    message="Session exceeds threshold but no backup exists to restore",
                )
            self._emit(
                moderator_id,
                "session_auto_restore",
                f"Session size ({_megabytes(current_size)}MB) exceeds threshold "
                f"({_megabytes(threshold)}MB); restoring from backup",
                NotificationLevel.WARNING,
            )
        except Exception as exc:
            LOGGER.exception("Auto-restore check failed for moderator %s", moderator_id)
            return OperationOutcome.failure(f"Auto-restore check failed: {exc}")
        outcome = self.restore_from_backup(moderator_id)
        if not outcome.is_success:
            return outcome
        return OperationOutcome.success(True, message="Session restored from backup")

    def optimize_current_session_only(self, moderator_id: int) -> OperationOutcome:
        """Dispose the session and delete caches; the backup is left alone."""

        lock = self._try_lock(moderator_id)
        if lock is None:
            return _busy(moderator_id, "Optimization already in progress")
        try:
            self._release_session(moderator_id)
            cleaned = self._cleanup_caches(moderator_id)
        except Exception as exc:
            LOGGER.exception("Optimization failed for moderator %s", moderator_id)
            return OperationOutcome.failure(f"Optimization failed for moderator {moderator_id}: {exc}")
        finally:
            lock.release()
        self._emit(
            moderator_id,
            "session_optimized",
            f"Cleaned {cleaned} cache folders (no backup created)",
            NotificationLevel.SUCCESS,
        )
        return OperationOutcome.success(cleaned)

    def optimize_authenticated_session(self, moderator_id: int) -> OperationOutcome:
        """Dispose, trim and snapshot the session as the new known-good backup."""

        lock = self._try_lock(moderator_id)
        if lock is None:
            return _busy(moderator_id, "Optimization already in progress")
        try:
            self._release_session(moderator_id)
            self._cleanup_caches(moderator_id)
            record = self._backups.put(moderator_id, self._registry.session_dir(moderator_id))
        except Exception as exc:
            LOGGER.exception("Optimization failed for moderator %s", moderator_id)
            return OperationOutcome.failure(f"Optimization failed for moderator {moderator_id}: {exc}")
        finally:
            lock.release()
        self._emit(
            moderator_id,
            "session_backup_created",
            f"Session backup created ({_megabytes(record.size_bytes)}MB)",
            NotificationLevel.SUCCESS,
        )
        return OperationOutcome.success(record)

    def health_metrics(self, moderator_id: int) -> SessionHealthMetrics:
        record = self._backups.get(moderator_id)
        return SessionHealthMetrics(
            moderator_id=moderator_id,
            current_size_bytes=_directory_size(self._registry.session_dir(moderator_id)),
            backup_size_bytes=record.size_bytes if record else 0,
            backup_exists=record is not None,
            threshold_bytes=self._config.max_session_size_bytes,
            last_cleanup=self._last_cleanup.get(moderator_id),
            last_backup=record.captured_at if record else None,
            is_authenticated=self._registry.is_session_ready(moderator_id),
            provider_session_id=self._registry.provider_session_id(moderator_id),
        )

    # Internal helpers --------------------------------------------------------

    def _try_lock(self, moderator_id: int) -> Optional[threading.Lock]:
        with self._lock:
            lock = self._moderator_locks.setdefault(moderator_id, threading.Lock())
        if not lock.acquire(blocking=False):
            return None
        return lock

    def _restore(self, moderator_id: int) -> OperationOutcome:
        if self._backups.get(moderator_id) is None:
            LOGGER.info("No backup found for moderator %s", moderator_id)
            return OperationOutcome.failure(
                f"No backup found for moderator {moderator_id}; authenticate from scratch",
                code=OutcomeCode.NO_BACKUP,
            )
        if not self._backups.validate(moderator_id):
            return OperationOutcome.failure(
                f"Backup for moderator {moderator_id} is invalid",
                code=OutcomeCode.BACKUP_INVALID,
            )
        self._release_session(moderator_id)
        record = self._backups.restore_into(moderator_id, self._registry.session_dir(moderator_id))
        self._emit(
            moderator_id,
            "session_restored",
            "Session restored from backup",
            NotificationLevel.SUCCESS,
        )
        return OperationOutcome.success(record)

    def _release_session(self, moderator_id: int) -> None:
        self._registry.dispose(moderator_id)
        if self._config.file_release_delay > 0:
            time.sleep(self._config.file_release_delay)
        self._ensure_no_file_locks(moderator_id)

    def _ensure_no_file_locks(self, moderator_id: int) -> None:
        session_dir = self._registry.session_dir(moderator_id)
        if not session_dir.exists():
            return
        probe = session_dir / _LOCK_PROBE_FILE
        attempts = max(1, self._config.max_file_lock_retries)
        for attempt in range(1, attempts + 1):
            try:
                probe.write_text("test")
                probe.unlink()
                return
            except OSError as exc:
                if attempt == attempts:
                    break
                LOGGER.info(
                    "Waiting for file locks on moderator %s (attempt %d/%d): %s",
                    moderator_id,
                    attempt,
                    attempts,
                    exc,
                )
                time.sleep(self._config.file_lock_retry_delay)
        raise SessionLockedError("Session files are still locked after multiple retries")

    def _cleanup_caches(self, moderator_id: int) -> int:
        session_dir = self._registry.session_dir(moderator_id)
        cleaned = 0
        for folder in self._config.cache_folders:
            for path in (
                session_dir / folder,
                session_dir / "Default" / folder,
                session_dir / "Default" / "Service Worker" / folder,
            ):
                if not path.is_dir():
                    continue
                try:
                    shutil.rmtree(path)
                    cleaned += 1
                except OSError as exc:
                    LOGGER.warning("Failed to clean %s for moderator %s: %s", path, moderator_id, exc)
        self._last_cleanup[moderator_id] = datetime.now(timezone.utc)
        LOGGER.info("Cleaned %d cache folders for moderator %s", cleaned, moderator_id)
        return cleaned

    def _emit(self, moderator_id: int, event_type: str, message: str, level: NotificationLevel) -> None:
        safe_notify(
            self._notifier,
            NotificationEvent(type=event_type, message=message, level=level, moderator_id=moderator_id),
        )


def _busy(moderator_id: int, message: str) -> OperationOutcome:
    LOGGER.info("%s for moderator %s; skipping", message, moderator_id)
    return OperationOutcome.failure(message, code=OutcomeCode.BUSY)


def _directory_size(path: Path) -> int:
    if not path.is_dir():
        return 0
    total = 0
    for item in path.rglob("*"):
        try:
            if item.is_file():
                total += item.stat().st_size
        except OSError:
            continue
    return total


def _megabytes(size: int) -> float:
    return round(size / (1024 * 1024), 2)
