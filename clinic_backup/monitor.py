"""Database storage monitor.

Samples ``dbstats`` on a fixed interval, expresses the storage size as a
fraction of a configured ceiling and classifies it:

    < 80%        normal
    80% .. 95%   warning   (needs_backup=True)
    >= 95%       critical  (needs_backup=True, automatic backup runs)

Uses APScheduler's BackgroundScheduler, so checks run on scheduler worker
threads next to request handling. One monitor exists per process
(:func:`get_storage_monitor`); start and stop are idempotent.

Checks are throttled: a call within the cooldown window of the previous
successful sample returns the cached status without querying the database.
A check never raises. Failures become an ``error`` status.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger
from pymongo.database import Database

logger = logging.getLogger(__name__)

WARNING_THRESHOLD = 0.8
CRITICAL_THRESHOLD = 0.95

DEFAULT_MAX_BYTES = 512 * 1024 * 1024
DEFAULT_INTERVAL_MS = 30 * 60 * 1000
DEFAULT_COOLDOWN_SECONDS = 5 * 60
DEFAULT_WARMUP_SECONDS = 5
DEFAULT_RECHECK_DELAY_SECONDS = 10

LEVEL_NORMAL = "normal"
LEVEL_WARNING = "warning"
LEVEL_CRITICAL = "critical"
LEVEL_ERROR = "error"

INTERVAL_JOB_ID = "storage_monitor_interval"
WARMUP_JOB_ID = "storage_monitor_warmup"
RECHECK_JOB_ID = "storage_monitor_recheck"


@dataclass(frozen=True)
class StorageStatus:
    """Result of one storage check. Recomputed on every sample, never persisted."""

    needs_backup: bool
    storage_usage_bytes: int
    storage_percentage: float
    message: str
    timestamp: datetime
    level: str = LEVEL_NORMAL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "needsBackup": self.needs_backup,
            "storageUsageBytes": self.storage_usage_bytes,
            "storagePercentage": self.storage_percentage,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "level": self.level,
        }


def classify_usage(storage_bytes: int, max_bytes: int, now: Optional[datetime] = None) -> StorageStatus:
    """Build a status for ``storage_bytes`` measured against ``max_bytes``."""
    if max_bytes <= 0:
        raise ValueError("Storage ceiling must be positive")
    storage_bytes = max(int(storage_bytes or 0), 0)
    percentage = storage_bytes / max_bytes
    if percentage >= CRITICAL_THRESHOLD:
        level = LEVEL_CRITICAL
        message = f"CRITICAL: Storage usage at {percentage * 100:.1f}%. Backup required immediately."
    elif percentage >= WARNING_THRESHOLD:
        level = LEVEL_WARNING
        message = f"WARNING: Storage usage at {percentage * 100:.1f}%. Consider backup soon."
    else:
        level = LEVEL_NORMAL
        message = "Storage usage normal"
    return StorageStatus(
        needs_backup=level != LEVEL_NORMAL,
        storage_usage_bytes=storage_bytes,
        storage_percentage=percentage,
        message=message,
        timestamp=now or datetime.now(timezone.utc),
        level=level,
    )


def error_status(reason: str, now: Optional[datetime] = None) -> StorageStatus:
    return StorageStatus(
        needs_backup=False,
        storage_usage_bytes=0,
        storage_percentage=0.0,
        message=f"Storage monitoring error: {reason}",
        timestamp=now or datetime.now(timezone.utc),
        level=LEVEL_ERROR,
    )


Listener = Callable[[StorageStatus], None]

SETTINGS = frozenset({
    "database_provider",
    "backup_job",
    "max_bytes",
    "cooldown_seconds",
    "warmup_seconds",
    "recheck_delay_seconds",
})


class StorageMonitor:
    """Periodic storage sampler with listeners and critical-level backups."""

    def __init__(
        self,
        database_provider: Optional[Callable[[], Database]] = None,
        backup_job: Optional[Callable[[], Any]] = None,
        max_bytes: int = DEFAULT_MAX_BYTES,
        cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
        warmup_seconds: float = DEFAULT_WARMUP_SECONDS,
        recheck_delay_seconds: float = DEFAULT_RECHECK_DELAY_SECONDS,
        scheduler_factory: Callable[..., BackgroundScheduler] = BackgroundScheduler,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.database_provider = database_provider
        self.backup_job = backup_job
        self.max_bytes = max_bytes
        self.cooldown_seconds = cooldown_seconds
        self.warmup_seconds = warmup_seconds
        self.recheck_delay_seconds = recheck_delay_seconds
        self._scheduler_factory = scheduler_factory
        self._clock = clock

        self._state_lock = threading.RLock()
        self._check_lock = threading.Lock()
        self._scheduler: Optional[BackgroundScheduler] = None
        self._is_monitoring = False
        self._last_status: Optional[StorageStatus] = None
        self._last_check: Optional[float] = None
        self._listeners: List[Listener] = []

    def configure(self, **settings: Any) -> None:
        """Update collaborators and limits (``database_provider``, ``max_bytes``...)."""
        with self._state_lock:
            for key, value in settings.items():
                if key not in SETTINGS:
                    raise AttributeError(f"Unknown storage monitor setting: {key}")
                setattr(self, key, value)

    # -- lifecycle -----------------------------------------------------

    def start_monitoring(self, interval_ms: int = DEFAULT_INTERVAL_MS) -> None:
        """Check storage every ``interval_ms``; the first check runs after the warm-up delay."""
        with self._state_lock:
            if self._is_monitoring:
                logger.info("Storage monitoring is already running")
                return

            interval_seconds = max(interval_ms / 1000.0, 1.0)
            scheduler = self._scheduler_factory(daemon=True)
            scheduler.add_job(
                func=self._scheduled_check,
                trigger=IntervalTrigger(seconds=interval_seconds),
                id=INTERVAL_JOB_ID,
                name="Storage usage check",
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
            scheduler.add_job(
                func=self._scheduled_check,
                trigger=DateTrigger(run_date=datetime.now(timezone.utc) + timedelta(seconds=self.warmup_seconds)),
                id=WARMUP_JOB_ID,
                name="Initial storage usage check",
                replace_existing=True,
            )
            scheduler.start()
            self._scheduler = scheduler
            self._is_monitoring = True
            logger.info("Storage monitoring started (interval: %.1f minutes)", interval_seconds / 60.0)

    def stop_monitoring(self) -> None:
        with self._state_lock:
            scheduler = self._scheduler
            self._scheduler = None
            was_running = self._is_monitoring
            self._is_monitoring = False
        if scheduler is not None:
            try:
                scheduler.shutdown(wait=False)
            except Exception:
                logger.exception("Error shutting down storage monitor scheduler")
        if was_running:
            logger.info("Storage monitoring stopped")

    def is_monitoring(self) -> bool:
        return self._is_monitoring

    # -- listeners -----------------------------------------------------

    def add_listener(self, listener: Listener) -> None:
        with self._state_lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        with self._state_lock:
            self._listeners = [l for l in self._listeners if l != listener]

    def _notify_listeners(self, status: StorageStatus) -> None:
        with self._state_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(status)
            except Exception:
                logger.exception("Error in storage listener %r", listener)

    # -- checks --------------------------------------------------------

    def get_last_status(self) -> Optional[StorageStatus]:
        return self._last_status

    def _cached_if_fresh(self) -> Optional[StorageStatus]:
        with self._state_lock:
            if (
                self._last_check is not None
                and self._last_status is not None
                and self._clock() - self._last_check < self.cooldown_seconds
            ):
                return self._last_status
        return None

    def _read_storage_bytes(self) -> int:
        if self.database_provider is None:
            raise RuntimeError("No database provider configured")
        database = self.database_provider()
        stats = database.command("dbstats")
        return int(stats.get("storageSize") or 0)

    def _sample(self, allow_backup: bool) -> StorageStatus:
        try:
            logger.info("Checking database storage usage...")
            storage_bytes = self._read_storage_bytes()
            status = classify_usage(storage_bytes, self.max_bytes)
        except Exception as exc:
            logger.error("Storage monitoring failed: %s", exc)
            status = error_status(str(exc) or exc.__class__.__name__)
            with self._state_lock:
                self._last_status = status
            return status

        with self._state_lock:
            self._last_status = status
            self._last_check = self._clock()
        logger.info(
            "Storage check: %d bytes of %d (%.1f%%) - %s",
            status.storage_usage_bytes, self.max_bytes, status.storage_percentage * 100, status.level,
        )

        self._notify_listeners(status)

        if allow_backup and status.level == LEVEL_CRITICAL:
            logger.warning("Critical storage level reached, triggering backup...")
            self._trigger_automatic_backup()
        return status

    def check_storage_usage(self) -> StorageStatus:
        """Sample storage now unless the cooldown window still covers the last sample."""
        cached = self._cached_if_fresh()
        if cached is not None:
            return cached
        # Serialize samples so bursts of callers share one stats query
        with self._check_lock:
            cached = self._cached_if_fresh()
            if cached is not None:
                return cached
            return self._sample(allow_backup=True)

    def _trigger_automatic_backup(self) -> bool:
        if self.backup_job is None:
            logger.warning("No automatic backup job configured; skipping backup")
            return False
        try:
            logger.info("Starting automatic backup due to critical storage levels...")
            self.backup_job()
            logger.info("Automatic backup completed successfully")
        except Exception:
            logger.exception("Automatic backup failed")
            return False
        self._schedule_recheck()
        return True

    def _schedule_recheck(self) -> None:
        with self._state_lock:
            scheduler = self._scheduler
        if scheduler is None:
            return
        try:
            scheduler.add_job(
                func=self._recheck,
                trigger=DateTrigger(
                    run_date=datetime.now(timezone.utc) + timedelta(seconds=self.recheck_delay_seconds)
                ),
                id=RECHECK_JOB_ID,
                name="Post-backup storage check",
                replace_existing=True,
            )
        except Exception:
            logger.exception("Could not schedule post-backup storage check")

    def _recheck(self) -> None:
        # Observational only: a still-critical reading waits for the next regular tick
        with self._check_lock:
            self._sample(allow_backup=False)

    def _scheduled_check(self) -> None:
        try:
            self.check_storage_usage()
        except Exception:
            logger.exception("Periodic storage check failed")

    def reset(self) -> None:
        """Stop monitoring and forget cached state and listeners."""
        self.stop_monitoring()
        with self._state_lock:
            self._last_status = None
            self._last_check = None
            self._listeners = []


_monitor_lock = threading.Lock()
_monitor: Optional[StorageMonitor] = None


def _default_database() -> Database:
    from clinic_backup.connection import get_connection_manager

    return get_connection_manager().get_database(connect=False)


def get_storage_monitor() -> StorageMonitor:
    """Return the process-wide monitor, creating it on first use."""
    global _monitor
    with _monitor_lock:
        if _monitor is None:
            _monitor = StorageMonitor(database_provider=_default_database)
        return _monitor


def get_storage_status() -> Optional[StorageStatus]:
    return get_storage_monitor().get_last_status()


def force_storage_check() -> StorageStatus:
    return get_storage_monitor().check_storage_usage()


def start_storage_monitoring(interval_ms: Optional[int] = None) -> None:
    monitor = get_storage_monitor()
    if interval_ms is None:
        monitor.start_monitoring()
    else:
        monitor.start_monitoring(interval_ms)


def stop_storage_monitoring() -> None:
    get_storage_monitor().stop_monitoring()


def is_storage_monitoring() -> bool:
    return get_storage_monitor().is_monitoring()


def on_storage_status_change(callback: Listener) -> None:
    get_storage_monitor().add_listener(callback)
