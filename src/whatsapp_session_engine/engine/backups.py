"""Single-entry, per-moderator cache of zipped session snapshots."""

from __future__ import annotations

import logging
import shutil
import zipfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, Optional

from pydantic import ValidationError

from ..models import SessionBackupRecord
from .registry import session_directory_name

LOGGER = logging.getLogger(__name__)

_SINGLETON_PREFIX = "Singleton"
_STAGING_SUFFIX = ".restoring"
_RETIRED_SUFFIX = ".previous"


class SessionBackupStore:
    """Keep the latest known-good snapshot of each moderator's profile.

    ``put`` overwrites, ``evict`` drops and ``get`` reads the record. A JSON
    sidecar next to each archive carries the :class:`SessionBackupRecord`.
    """

    def __init__(
        self,
        backups_dir: Path,
        required_paths: Iterable[str] = ("Default/IndexedDB", "Default/Local Storage"),
    ) -> None:
        self._backups_dir = backups_dir
        self._required_paths = [path.strip("/") for path in required_paths]

    @property
    def backups_dir(self) -> Path:
        return self._backups_dir

    def archive_path(self, moderator_id: int) -> Path:
        return self._backups_dir / f"{session_directory_name(moderator_id)}.zip"

    def record_path(self, moderator_id: int) -> Path:
        return self._backups_dir / f"{session_directory_name(moderator_id)}.json"

    def get(self, moderator_id: int) -> Optional[SessionBackupRecord]:
        archive = self.archive_path(moderator_id)
        if not archive.exists():
            return None
        sidecar = self.record_path(moderator_id)
        if sidecar.exists():
            try:
                return SessionBackupRecord.model_validate_json(sidecar.read_text())
            except (OSError, ValidationError):
                LOGGER.warning("Unreadable backup record %s; rebuilding from archive", sidecar)
        stat = archive.stat()
        return SessionBackupRecord(
            moderator_id=moderator_id,
            path=archive,
            captured_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            size_bytes=stat.st_size,
        )

    def put(self, moderator_id: int, source_dir: Path) -> SessionBackupRecord:
        """Snapshot ``source_dir`` and replace any previous backup."""

        if not source_dir.is_dir():
            raise FileNotFoundError(f"Session directory {source_dir} does not exist")
        previous = self.get(moderator_id)
        archive = self.archive_path(moderator_id)
        self._backups_dir.mkdir(parents=True, exist_ok=True)
        tmp_archive = archive.with_suffix(".zip.tmp")
        try:
            with zipfile.ZipFile(tmp_archive, "w", compression=zipfile.ZIP_DEFLATED) as bundle:
                for path in sorted(source_dir.rglob("*")):
                    if _is_volatile(path):
                        LOGGER.debug("Skipping %s in backup of moderator %s", path, moderator_id)
                        continue
                    bundle.write(path, path.relative_to(source_dir).as_posix())
            tmp_archive.replace(archive)
        except Exception:
            tmp_archive.unlink(missing_ok=True)
            raise

        captured_at = datetime.now(timezone.utc)
        if previous is not None and captured_at <= previous.captured_at:
            captured_at = previous.captured_at + timedelta(microseconds=1)
        record = SessionBackupRecord(
            moderator_id=moderator_id,
            path=archive,
            captured_at=captured_at,
            size_bytes=archive.stat().st_size,
        )
        self.record_path(moderator_id).write_text(record.model_dump_json(indent=2))
        LOGGER.info(
            "Stored backup for moderator %s (%d bytes) at %s",
            moderator_id,
            record.size_bytes,
            archive,
        )
        return record

    def evict(self, moderator_id: int) -> bool:
        removed = False
        for path in (self.archive_path(moderator_id), self.record_path(moderator_id)):
            if path.exists():
                path.unlink()
                removed = True
        if removed:
            LOGGER.info("Evicted backup for moderator %s", moderator_id)
        return removed

    def validate(self, moderator_id: int) -> bool:
        """Return ``True`` when the archive opens and holds every required path."""

        archive = self.archive_path(moderator_id)
        if not archive.exists():
            return False
        try:
            with zipfile.ZipFile(archive) as bundle:
                names = [name.rstrip("/") for name in bundle.namelist()]
                if bundle.testzip() is not None:
                    LOGGER.warning("Backup for moderator %s has corrupt members", moderator_id)
                    return False
        except (OSError, zipfile.BadZipFile) as exc:
            LOGGER.warning("Backup for moderator %s is unreadable: %s", moderator_id, exc)
            return False
        missing = [
            required
            for required in self._required_paths
            if not any(name == required or name.startswith(required + "/") for name in names)
        ]
        if missing:
            LOGGER.warning("Backup for moderator %s is missing %s", moderator_id, ", ".join(missing))
            return False
        return True

    def restore_into(self, moderator_id: int, target_dir: Path) -> SessionBackupRecord:
        """Replace ``target_dir`` with the contents of the latest backup."""

        record = self.get(moderator_id)
        if record is None:
            raise FileNotFoundError(f"No backup found for moderator {moderator_id}")
        staging = target_dir.with_name(target_dir.name + _STAGING_SUFFIX)
        retired = target_dir.with_name(target_dir.name + _RETIRED_SUFFIX)
        for leftover in (staging, retired):
            if leftover.exists():
                shutil.rmtree(leftover)
        # The live profile is only touched once the archive extracted cleanly.
        staging.mkdir(parents=True)
        try:
            with zipfile.ZipFile(record.path) as bundle:
                bundle.extractall(staging)
        except Exception:
            shutil.rmtree(staging, ignore_errors=True)
            raise
        if target_dir.exists():
            target_dir.rename(retired)
        try:
            staging.rename(target_dir)
        except OSError:
            if retired.exists():
                retired.rename(target_dir)
            shutil.rmtree(staging, ignore_errors=True)
            raise
        shutil.rmtree(retired, ignore_errors=True)
        LOGGER.info("Restored backup for moderator %s into %s", moderator_id, target_dir)
        return record


def _is_volatile(path: Path) -> bool:
    """Chromium lock links and sockets that only make sense for a running browser."""

    return path.is_symlink() or path.name.startswith(_SINGLETON_PREFIX)
