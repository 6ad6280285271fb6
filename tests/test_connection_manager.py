"""Tests for the shared MongoDB connection manager.

A fake client factory stands in for ``MongoClient`` so retries, hook
scheduling and the privileged-account check run without a server.
"""

from __future__ import annotations

import threading
from typing import List
from unittest.mock import MagicMock

import pytest

import clinic_backup.connection as connection_module
from clinic_backup.connection import ConnectionManager
from clinic_backup.errors import DatabaseError
from tests.conftest import FakeDatabase


class FakeClient:
    def __init__(self, database: FakeDatabase, ping_error: Exception = None):
        self.database = database
        self.admin = MagicMock()
        if ping_error is not None:
            self.admin.command.side_effect = ping_error
        self.closed = False

    def __getitem__(self, name):
        return self.database

    def close(self):
        self.closed = True


class ClientFactory:
    """Fails the first ``failures`` attempts, then hands out working clients."""

    def __init__(self, database: FakeDatabase, failures: int = 0):
        self.database = database
        self.failures = failures
        self.calls = 0
        self.clients: List[FakeClient] = []

    def __call__(self, uri, **options):
        self.calls += 1
        error = ConnectionError(f"attempt {self.calls} refused") if self.calls <= self.failures else None
        client = FakeClient(self.database, ping_error=error)
        self.clients.append(client)
        return client


@pytest.fixture(name="sleeps")
def fixture_sleeps() -> List[float]:
    return []


def _manager(factory, sleeps, **kwargs) -> ConnectionManager:
    return ConnectionManager(
        uri="mongodb://localhost:27017",
        db_name="dental_clinic_test",
        client_factory=factory,
        sleep=sleeps.append,
        **kwargs,
    )


def test_connect_retries_with_exponential_backoff(clinic_db, sleeps) -> None:
    factory = ClientFactory(clinic_db, failures=2)
    manager = _manager(factory, sleeps)

    client = manager.connect()

    assert factory.calls == 3
    assert sleeps == [0.5, 1.0]
    assert client is factory.clients[-1]
    assert factory.clients[0].closed and factory.clients[1].closed
    assert manager.is_connected()


def test_connect_raises_after_all_attempts_fail(clinic_db, sleeps) -> None:
    factory = ClientFactory(clinic_db, failures=5)
    manager = _manager(factory, sleeps)

    with pytest.raises(DatabaseError) as excinfo:
        manager.connect()

    assert factory.calls == 3
    assert sleeps == [0.5, 1.0]
    assert isinstance(excinfo.value.__cause__, ConnectionError)
    assert not manager.is_connected()


def test_connect_requires_configuration(sleeps) -> None:
    manager = ConnectionManager(client_factory=MagicMock(), sleep=sleeps.append)

    with pytest.raises(DatabaseError):
        manager.connect()


def test_existing_client_is_reused(clinic_db, sleeps) -> None:
    factory = ClientFactory(clinic_db)
    manager = _manager(factory, sleeps)

    first = manager.connect()
    second = manager.connect()

    assert first is second
    assert factory.calls == 1


def test_concurrent_callers_share_one_client(clinic_db, sleeps) -> None:
    factory = ClientFactory(clinic_db)
    manager = _manager(factory, sleeps)
    results = []
    start = threading.Barrier(5)

    def worker():
        start.wait()
        results.append(manager.connect())

    threads = [threading.Thread(target=worker) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    assert len(results) == 5
    assert all(client is results[0] for client in results)
    assert factory.calls == 1


def test_get_database_without_connect_raises_when_disconnected(clinic_db, sleeps) -> None:
    manager = _manager(ClientFactory(clinic_db), sleeps)

    with pytest.raises(DatabaseError, match="not connected"):
        manager.get_database(connect=False)


def test_get_database_returns_configured_database(clinic_db, sleeps) -> None:
    manager = _manager(ClientFactory(clinic_db), sleeps)

    assert manager.get_database() is clinic_db
    assert manager.get_database(connect=False) is clinic_db


def test_super_admin_check_runs_once(clinic_db, sleeps) -> None:
    clinic_db["users"].docs.append({"_id": 99, "role": "SuperAdmin"})
    manager = _manager(ClientFactory(clinic_db), sleeps)

    manager.connect()
    manager.close()
    clinic_db["users"].docs.clear()
    manager.connect()

    assert manager.super_admin_checked
    assert manager.super_admin_exists is True


class ImmediateTimer:
    """Timer stand-in that records the delay and runs nothing until ``fire``."""

    created: List["ImmediateTimer"] = []

    def __init__(self, interval, function):
        self.interval = interval
        self.function = function
        self.daemon = False
        ImmediateTimer.created.append(self)

    def start(self):
        pass

    def fire(self):
        self.function()


@pytest.fixture(name="timers")
def fixture_timers(monkeypatch) -> List[ImmediateTimer]:
    ImmediateTimer.created = []
    monkeypatch.setattr(connection_module.threading, "Timer", ImmediateTimer)
    return ImmediateTimer.created


def test_first_connect_hooks_run_once_after_settle_delay(clinic_db, sleeps, timers) -> None:
    manager = _manager(ClientFactory(clinic_db), sleeps, settle_delay_seconds=5)
    hook = MagicMock()
    manager.add_first_connect_hook(hook)

    manager.connect()
    manager.connect()

    assert len(timers) == 1
    assert timers[0].interval == 5
    assert timers[0].daemon is True
    hook.assert_not_called()

    timers[0].fire()
    manager.connect()

    hook.assert_called_once_with()
    assert len(timers) == 1


def test_failing_hook_does_not_block_the_others(clinic_db, sleeps, timers) -> None:
    manager = _manager(ClientFactory(clinic_db), sleeps)
    broken = MagicMock(side_effect=RuntimeError("monitor failed to start"))
    healthy = MagicMock()
    manager.add_first_connect_hook(broken)
    manager.add_first_connect_hook(healthy)

    manager.connect()
    timers[0].fire()

    broken.assert_called_once_with()
    healthy.assert_called_once_with()


def test_existing_connection_rearms_stopped_monitor(clinic_db, sleeps, timers) -> None:
    manager = _manager(ClientFactory(clinic_db), sleeps)
    running = {"value": False}
    manager.monitor_running = lambda: running["value"]
    hook = MagicMock(side_effect=lambda: running.update(value=True))
    manager.add_first_connect_hook(hook)

    manager.connect()
    timers[0].fire()
    running["value"] = False
    manager.connect()

    assert len(timers) == 2
    timers[1].fire()
    assert hook.call_count == 2

    manager.connect()
    assert len(timers) == 2


def test_close_releases_client(clinic_db, sleeps) -> None:
    factory = ClientFactory(clinic_db)
    manager = _manager(factory, sleeps)

    manager.connect()
    manager.close()

    assert factory.clients[0].closed
    assert not manager.is_connected()
