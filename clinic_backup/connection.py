"""Process-wide MongoDB connection manager.

One ``MongoClient`` is shared by request handlers, the storage monitor and
backup jobs. The first connect attempt is retried with exponential backoff
(``initial_delay_ms * 2 ** (attempt - 1)``). Callers arriving while an
attempt is in flight wait for it and receive the same client.

After the first successful connection of the process the registered
first-connect hooks run on a daemon timer once the connection has settled,
and the privileged-account check runs exactly once.
"""
from __future__ import annotations

import logging
import threading
import time
from typing import Callable, List, Optional

from pymongo import MongoClient
from pymongo.database import Database
from pymongo.errors import PyMongoError

from clinic_backup.errors import DatabaseError

logger = logging.getLogger(__name__)

DEFAULT_RETRIES = 3
DEFAULT_INITIAL_DELAY_MS = 500
DEFAULT_SETTLE_DELAY_SECONDS = 5
PRIVILEGED_ROLE = "SuperAdmin"


class ConnectionManager:
    """Lazily connects to MongoDB and keeps the client for the process lifetime."""

    def __init__(
        self,
        uri: Optional[str] = None,
        db_name: Optional[str] = None,
        retries: int = DEFAULT_RETRIES,
        initial_delay_ms: int = DEFAULT_INITIAL_DELAY_MS,
        settle_delay_seconds: float = DEFAULT_SETTLE_DELAY_SECONDS,
        client_factory: Callable[..., MongoClient] = MongoClient,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.uri = uri
        self.db_name = db_name
        self.retries = retries
        self.initial_delay_ms = initial_delay_ms
        self.settle_delay_seconds = settle_delay_seconds
        self._client_factory = client_factory
        self._sleep = sleep

        self._connect_lock = threading.Lock()
        self._hook_lock = threading.Lock()
        self._client: Optional[MongoClient] = None
        self._first_connect_hooks: List[Callable[[], None]] = []
        self._hooks_pending = False
        self._hooks_done = False
        self.super_admin_checked = False
        self.super_admin_exists: Optional[bool] = None
        # Set by the storage monitor wiring; lets an existing connection re-arm the start
        self.monitor_running: Optional[Callable[[], bool]] = None

    def configure(
        self,
        uri: str,
        db_name: str,
        retries: int = DEFAULT_RETRIES,
        initial_delay_ms: int = DEFAULT_INITIAL_DELAY_MS,
        settle_delay_seconds: float = DEFAULT_SETTLE_DELAY_SECONDS,
    ) -> None:
        self.uri = uri
        self.db_name = db_name
        self.retries = max(int(retries), 1)
        self.initial_delay_ms = max(int(initial_delay_ms), 0)
        self.settle_delay_seconds = max(float(settle_delay_seconds), 0.0)

    def add_first_connect_hook(self, hook: Callable[[], None]) -> None:
        """Run ``hook`` once the first connection has settled."""
        with self._hook_lock:
            self._first_connect_hooks.append(hook)

    def is_connected(self) -> bool:
        return self._client is not None

    def _open_client(self) -> MongoClient:
        client = self._client_factory(
            self.uri,
            serverSelectionTimeoutMS=5000,
            connectTimeoutMS=10000,
            socketTimeoutMS=45000,
            maxPoolSize=50,
            retryWrites=True,
        )
        try:
            client.admin.command("ping")
        except Exception:
            client.close()
            raise
        return client

    def connect(self) -> MongoClient:
        """Return the shared client, connecting with retries when needed.

        Raises:
            DatabaseError: every attempt failed; chained from the last error.
        """
        client = self._client
        if client is not None:
            logger.debug("Using existing MongoDB connection")
            self._rearm_monitor_start()
            return client

        if not self.uri or not self.db_name:
            raise DatabaseError("MONGO_URI and MONGO_DB must be configured")

        with self._connect_lock:
            # Another caller may have finished connecting while we waited
            if self._client is not None:
                return self._client

            logger.info("Starting new MongoDB connection attempt...")
            last_error: Optional[Exception] = None
            for attempt in range(1, self.retries + 1):
                try:
                    self._client = self._open_client()
                    logger.info("MongoDB connection established")
                    break
                except Exception as exc:
                    last_error = exc
                    logger.error("MongoDB connection attempt %d failed: %s", attempt, exc)
                    if attempt < self.retries:
                        backoff_ms = self.initial_delay_ms * 2 ** (attempt - 1)
                        logger.info("Retrying in %d ms...", backoff_ms)
                        self._sleep(backoff_ms / 1000.0)
            else:
                logger.error("All MongoDB connection attempts failed.")
                raise DatabaseError(f"Database connection failed: {last_error}") from last_error

            client = self._client

        self._check_super_admin()
        self._schedule_first_connect_hooks()
        return client

    def get_database(self, connect: bool = True) -> Database:
        """Database handle for the configured name.

        With ``connect=False`` no connection is opened; a missing client raises.
        """
        if connect:
            client = self.connect()
        else:
            client = self._client
            if client is None:
                raise DatabaseError("Database connection not available or not connected")
        return client[self.db_name]

    def _check_super_admin(self) -> None:
        if self.super_admin_checked:
            return
        self.super_admin_checked = True
        try:
            user = self.get_database(connect=False).users.find_one(
                {"role": PRIVILEGED_ROLE}, projection={"_id": 1}
            )
            self.super_admin_exists = user is not None
            logger.info("%s account present: %s", PRIVILEGED_ROLE, self.super_admin_exists)
        except PyMongoError as exc:
            logger.warning("Could not check for a %s account: %s", PRIVILEGED_ROLE, exc)

    def _schedule_first_connect_hooks(self) -> None:
        with self._hook_lock:
            if self._hooks_done or self._hooks_pending or not self._first_connect_hooks:
                return
            self._hooks_pending = True
        timer = threading.Timer(self.settle_delay_seconds, self._run_first_connect_hooks)
        timer.daemon = True
        timer.start()

    def _run_first_connect_hooks(self) -> None:
        with self._hook_lock:
            hooks = list(self._first_connect_hooks)
        try:
            for hook in hooks:
                try:
                    hook()
                except Exception:
                    logger.exception("First-connect hook %r failed", hook)
        finally:
            with self._hook_lock:
                self._hooks_pending = False
                self._hooks_done = True

    def _rearm_monitor_start(self) -> None:
        """Schedule the hooks again if monitoring was stopped or never came up."""
        if self.monitor_running is None or self._hooks_pending:
            return
        try:
            running = self.monitor_running()
        except Exception:
            logger.exception("Could not read storage monitor state")
            return
        if running:
            return
        with self._hook_lock:
            self._hooks_done = False
        self._schedule_first_connect_hooks()

    def close(self) -> None:
        with self._connect_lock:
            client = self._client
            self._client = None
        if client is not None:
            try:
                client.close()
                logger.debug("Database connection closed successfully")
            except Exception:
                logger.exception("Error closing database connection")


_manager_lock = threading.Lock()
_manager: Optional[ConnectionManager] = None


def get_connection_manager() -> ConnectionManager:
    """Return the process-wide connection manager."""
    global _manager
    with _manager_lock:
        if _manager is None:
            _manager = ConnectionManager()
        return _manager
