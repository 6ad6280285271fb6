"""Database connection and utility functions for MongoDB.

This module exposes the process-wide connection manager to the Flask app:
configuration from ``app.config``, health checks, index creation and the
wiring that starts the storage monitor after the first connection.
"""

from __future__ import annotations

import atexit
import logging
import os
import threading
from typing import Optional

from flask import current_app
from pymongo import ASCENDING, DESCENDING
from pymongo.database import Database

from clinic_backup.connection import get_connection_manager
from clinic_backup.errors import DatabaseError
from clinic_backup.monitor import (
    LEVEL_NORMAL,
    StorageStatus,
    get_storage_monitor,
    is_storage_monitoring,
    on_storage_status_change,
    start_storage_monitoring,
    stop_storage_monitoring,
)

logger = logging.getLogger(__name__)

__all__ = [
    'DatabaseError',
    'get_db',
    'init_app',
    'health_check',
    'ensure_indexes',
]


def get_db() -> Database:
    """Get database instance, connecting on first use.

    Returns:
        Database: MongoDB database instance

    Raises:
        DatabaseError: If database connection fails
    """
    return get_connection_manager().get_database()


def close_db(error: Optional[Exception] = None) -> None:
    """Request teardown hook.

    The client is shared by the whole process, so nothing is closed per
    request; only errors are logged.
    """
    if error:
        logger.warning("Request finished with error: %s", error)


def _should_start_background_work(app) -> bool:
    # The development reloader parent must not start background threads; only
    # the served child process (WERKZEUG_RUN_MAIN == 'true') should.
    if app.debug and os.environ.get('WERKZEUG_RUN_MAIN') != 'true':
        return False
    return True


_process_hooks_lock = threading.Lock()
_process_hooks_registered = False
_last_level: Optional[str] = None


def _log_level_change(status: StorageStatus) -> None:
    global _last_level
    previous, _last_level = _last_level, status.level
    if previous is None or previous == status.level:
        return
    if status.level == LEVEL_NORMAL:
        logger.info("Storage level back to normal (was %s)", previous)
    else:
        logger.warning("Storage level changed from %s to %s: %s", previous, status.level, status.message)


def _register_process_hooks() -> None:
    """Status logging and shutdown on exit, once per process."""
    global _process_hooks_registered
    with _process_hooks_lock:
        if _process_hooks_registered:
            return
        _process_hooks_registered = True
    on_storage_status_change(_log_level_change)
    atexit.register(stop_storage_monitoring)


def _configure_storage_monitor(app) -> None:
    """Wire the storage monitor to this app's settings and backup runner."""
    monitor = get_storage_monitor()
    runner = app.extensions.get('backup_runner')
    monitor.configure(
        max_bytes=app.config['STORAGE_MAX_BYTES'],
        cooldown_seconds=app.config['STORAGE_CHECK_COOLDOWN_SECONDS'],
        warmup_seconds=app.config['STORAGE_MONITOR_WARMUP_SECONDS'],
        recheck_delay_seconds=app.config['STORAGE_RECHECK_DELAY_SECONDS'],
        backup_job=runner.run_automatic if runner is not None else None,
    )

    if not app.config.get('STORAGE_MONITOR_ENABLED', True):
        app.logger.info("Storage monitor disabled by configuration")
        return
    if not _should_start_background_work(app):
        app.logger.debug("Skipping storage monitor startup in reloader parent process")
        return

    interval_ms = app.config['STORAGE_MONITOR_INTERVAL_MINUTES'] * 60 * 1000
    manager = get_connection_manager()
    manager.monitor_running = is_storage_monitoring
    manager.add_first_connect_hook(lambda: start_storage_monitoring(interval_ms))
    _register_process_hooks()


def init_app(app) -> None:
    """Initialize database connection with Flask app.

    Args:
        app: Flask application instance
    """
    app.teardown_appcontext(close_db)

    manager = get_connection_manager()
    manager.configure(
        uri=app.config['MONGO_URI'],
        db_name=app.config['MONGO_DB'],
        retries=app.config['DB_CONNECT_RETRIES'],
        initial_delay_ms=app.config['DB_CONNECT_INITIAL_DELAY_MS'],
        settle_delay_seconds=app.config['DB_SETTLE_DELAY_SECONDS'],
    )
    _configure_storage_monitor(app)

    if not app.config.get('DB_CONNECT_ON_STARTUP', True):
        return

    try:
        database = manager.get_database()
        # Verify we can list collections (basic connectivity test)
        collections = database.list_collection_names()
        logger.info(f"Database initialization successful. Found {len(collections)} collections.")
    except DatabaseError as e:
        logger.error(f"Database initialization failed: {e}")
        # Don't raise here - allow app to start even if DB is temporarily unavailable
    except Exception as e:
        logger.error(f"Unexpected error during database initialization: {e}")


def health_check() -> dict:
    """Perform database health check.

    Returns:
        dict: Health check results with status and details
    """
    try:
        manager = get_connection_manager()
        client = manager.connect()
        db = manager.get_database()

        client.admin.command('ping')
        server_info = client.server_info()
        collection_count = len(db.list_collection_names())

        return {
            'status': 'healthy',
            'database': current_app.config['MONGO_DB'],
            'server_version': server_info.get('version', 'unknown'),
            'collections': collection_count,
            'message': 'Database connection is operational'
        }

    except DatabaseError as e:
        return {
            'status': 'unhealthy',
            'error': str(e),
            'message': 'Database connection failed'
        }
    except Exception as e:
        logger.error(f"Health check failed with unexpected error: {e}")
        return {
            'status': 'unhealthy',
            'error': f"Unexpected error: {str(e)}",
            'message': 'Database health check failed'
        }


def ensure_indexes() -> bool:
    """Ensure indexes used by the backup history and account checks exist.

    Returns:
        bool: True if all indexes were created/verified successfully
    """
    try:
        db = get_db()

        history = db.backup_histories
        history.create_index([('filename', ASCENDING)])
        history.create_index([('backupDate', DESCENDING)])
        history.create_index([('path', ASCENDING)])

        db.users.create_index([('role', ASCENDING)])

        logger.info("Database indexes created/verified successfully")
        return True

    except Exception as e:
        logger.error(f"Failed to create indexes: {e}")
        return False

