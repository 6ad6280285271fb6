"""Backup job runner.

Two entry points share one pipeline (dump each collection to CSV in a fresh
temporary directory, zip the directory, remove the directory):

- :meth:`BackupRunner.run_automatic` backs up every collection. It is
  started by the storage monitor when storage is critical.
- :meth:`BackupRunner.run_manual` is started by an authenticated user. The
  role decides which collections are included, the archive is recorded in
  the backup history and handed back to the caller for download.

Collections are dumped one after another. The temporary directory is removed
on success and on failure.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from pymongo.database import Database

from clinic_backup.archive import DEFAULT_COMPRESSION_LEVEL, archive_directory
from clinic_backup.dumper import csv_filenames, dump_collection_to_csv
from clinic_backup.errors import BackupError, BackupFailedError, BackupForbiddenError
from clinic_backup.retention import DEFAULT_KEEP, prune_backups

logger = logging.getLogger(__name__)

ROLE_ADMIN = "Admin"
ROLE_DOCTOR = "Doctor"
BACKUP_ROLES = (ROLE_ADMIN, ROLE_DOCTOR)

# Patient-care data only; doctors never export system collections
DOCTOR_COLLECTIONS = ("appointments", "labworks", "patients", "billings")


def backup_timestamp(now: Optional[datetime] = None) -> str:
    """UTC ISO-8601 timestamp with ':' and '.' replaced for use in filenames.

    Example: 2026-10-18T09-30-12-345Z
    """
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    text = now.strftime("%Y-%m-%dT%H:%M:%S") + ".%03dZ" % (now.microsecond // 1000)
    return text.replace(":", "-").replace(".", "-")


def manual_backup_filename(role: str, now: Optional[datetime] = None) -> str:
    return f"backup-{role}-{backup_timestamp(now)}.zip"


@dataclass
class BackupResult:
    """Outcome of a finished manual backup."""

    filename: str
    path: Path
    role: str
    size: int
    triggered_by: Any
    backup_date: datetime
    collections: List[str] = field(default_factory=list)
    artifact_id: Any = None


class BackupRunner:
    """Runs automatic and manual backups against one database."""

    def __init__(
        self,
        database_provider: Callable[[], Database],
        backup_root: Path,
        temp_root: Optional[Path] = None,
        retention_count: int = DEFAULT_KEEP,
        compresslevel: int = DEFAULT_COMPRESSION_LEVEL,
        history_repository=None,
        lifecycle_rules: Optional[Dict[str, Tuple[str, int]]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.database_provider = database_provider
        self.backup_root = Path(backup_root)
        self.temp_root = Path(temp_root) if temp_root else self.backup_root.parent / "temp-backup"
        self.retention_count = retention_count
        self.compresslevel = compresslevel
        self.history_repository = history_repository
        self.lifecycle_rules = dict(lifecycle_rules or {})
        self._now = clock or (lambda: datetime.now(timezone.utc))

    @staticmethod
    def collections_for_role(database: Database, role: str) -> List[str]:
        """Names of the collections ``role`` may export, as present right now."""
        if role not in BACKUP_ROLES:
            raise BackupForbiddenError(f"Role {role!r} may not run backups")
        present = sorted(database.list_collection_names())
        if role == ROLE_ADMIN:
            return present
        allowed = [name for name in DOCTOR_COLLECTIONS if name in present]
        missing = sorted(set(DOCTOR_COLLECTIONS) - set(allowed))
        if missing:
            logger.info("Skipping absent collections for %s backup: %s", role, ", ".join(missing))
        return allowed

    def _make_temp_dir(self, stamp: str) -> Path:
        self.temp_root.mkdir(parents=True, exist_ok=True)
        return Path(tempfile.mkdtemp(prefix=f"{stamp}-", dir=self.temp_root))

    @staticmethod
    def _remove_temp_dir(temp_dir: Path) -> None:
        try:
            shutil.rmtree(temp_dir)
            logger.debug("Removed temporary backup folder: %s", temp_dir)
        except FileNotFoundError:
            pass
        except OSError:
            logger.exception("Failed to remove temporary backup folder: %s", temp_dir)

    def _build_archive(
        self, database: Database, names: List[str], archive_path: Path, stamp: str
    ) -> Tuple[Path, int]:
        temp_dir = self._make_temp_dir(stamp)
        logger.info("Created temporary backup folder: %s", temp_dir)
        try:
            filenames = csv_filenames(names)
            for name in names:
                dump_collection_to_csv(database[name], temp_dir, filename=filenames[name])
            return archive_directory(temp_dir, archive_path, compresslevel=self.compresslevel)
        finally:
            self._remove_temp_dir(temp_dir)

    def apply_retention(self, current: Optional[Path] = None) -> List[Path]:
        """Prune old archives and their history rows, never ``current``. Never raises."""
        on_deleted = None
        if self.history_repository is not None:
            def on_deleted(paths: List[Path]) -> None:
                removed = self.history_repository.delete_by_paths([str(p) for p in paths])
                logger.info("Removed %d backup history records for pruned archives", removed)
        try:
            return prune_backups(
                self.backup_root,
                keep=self.retention_count,
                on_deleted=on_deleted,
                protect=[current] if current is not None else (),
            )
        except Exception:
            logger.exception("Backup retention failed")
            return []

    def cleanup_old_data(self, database: Database) -> Dict[str, int]:
        """Delete documents older than the configured per-collection age."""
        deleted: Dict[str, int] = {}
        if not self.lifecycle_rules:
            return deleted
        logger.info("Cleaning up old data to free up space...")
        now = self._now()
        for collection_name, (date_field, max_age_days) in self.lifecycle_rules.items():
            cutoff = now - timedelta(days=max_age_days)
            try:
                result = database[collection_name].delete_many({date_field: {"$lt": cutoff}})
                deleted[collection_name] = result.deleted_count
                logger.info(
                    "Deleted %d documents from %s older than %s",
                    result.deleted_count, collection_name, cutoff.date().isoformat(),
                )
            except Exception:
                logger.exception("Data cleanup failed for collection %s", collection_name)
        return deleted

    def run_automatic(self) -> Path:
        """Back up every collection into ``backup-<timestamp>.zip``.

        Raises:
            Exception: whatever stopped the run, after the temp folder is gone.
        """
        stamp = backup_timestamp(self._now())
        archive_path = self.backup_root / f"backup-{stamp}.zip"
        logger.info("Starting automatic database backup...")

        database = self.database_provider()
        names = sorted(database.list_collection_names())
        logger.info("Found %d collections to backup", len(names))
        try:
            archive_path, _ = self._build_archive(database, names, archive_path, stamp)
        except Exception:
            logger.exception("Automatic backup failed")
            raise

        logger.info("Backup completed successfully: %s", archive_path)
        self.apply_retention(current=archive_path)
        self.cleanup_old_data(database)
        return archive_path

    def run_manual(self, role: str, triggered_by: Any) -> BackupResult:
        """Back up the collections ``role`` may see and record the archive.

        Raises:
            BackupForbiddenError: ``role`` is not Admin or Doctor; nothing was written.
            BackupFailedError: any failure while dumping, archiving or recording.
        """
        if role not in BACKUP_ROLES:
            raise BackupForbiddenError(f"Role {role!r} may not run backups")

        now = self._now()
        stamp = backup_timestamp(now)
        filename = manual_backup_filename(role, now)
        archive_path = self.backup_root / filename
        logger.info("Manual %s backup requested by %s", role, triggered_by)

        try:
            database = self.database_provider()
            names = self.collections_for_role(database, role)
            archive_path, size = self._build_archive(database, names, archive_path, f"{role}-{stamp}")
            filename = archive_path.name
            result = BackupResult(
                filename=filename,
                path=archive_path,
                role=role,
                size=size,
                triggered_by=triggered_by,
                backup_date=now,
                collections=names,
            )
            if self.history_repository is not None:
                try:
                    result.artifact_id = self.history_repository.record(
                        filename=filename,
                        path=str(archive_path),
                        role=role,
                        size=size,
                        triggered_by=triggered_by,
                        backup_date=now,
                    )
                except Exception:
                    archive_path.unlink(missing_ok=True)
                    raise
        except BackupError:
            raise
        except Exception as exc:
            logger.exception("Manual %s backup failed", role)
            raise BackupFailedError("Backup failed") from exc

        logger.info("Manual %s backup completed: %s (%d bytes)", role, archive_path, size)
        self.apply_retention(current=archive_path)
        return result
