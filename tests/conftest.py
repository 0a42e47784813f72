"""Pytest configuration and shared fixtures."""

import asyncio
import inspect
import threading

import pytest

from warranty_sync.broadcast import Broadcaster, LocalBus
from warranty_sync.connectivity import ConnectivityMonitor
from warranty_sync.db import Database
from warranty_sync.engine import SyncEngine
from warranty_sync.errors import RetryableSyncError
from warranty_sync.queue.store import QueueStore
from warranty_sync.repository import EntityRepository
from warranty_sync.session import AuthSession


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem):
    """Execute async tests without external plugins."""
    testfunction = pyfuncitem.obj
    if inspect.iscoroutinefunction(testfunction):
        loop = asyncio.new_event_loop()
        try:
            asyncio.set_event_loop(loop)
            sig = inspect.signature(testfunction)
            call_kwargs = {name: pyfuncitem.funcargs[name] for name in sig.parameters}
            loop.run_until_complete(testfunction(**call_kwargs))
        finally:
            asyncio.set_event_loop(None)
            loop.close()
        return True
    return None


class FakeSyncClient:
    """Stands in for SyncApiClient; outcomes are scripted per entity id."""

    def __init__(self):
        self.calls = []
        self._outcomes = {}
        self._lock = threading.Lock()
        self.closed = False
        # What pull() returns: collection name -> records
        self.server_data = {}
        self.pull_outcomes = []
        self.pulls = 0

    def script(self, entity_id, *outcomes):
        """Queue outcomes for the next calls on ``entity_id``: an exception to raise or a dict to return."""
        self._outcomes.setdefault(entity_id, []).extend(outcomes)

    def fail(self, entity_id, times=1, error=None):
        self.script(entity_id, *[error or RetryableSyncError("HTTP 503: unavailable", status_code=503)] * times)

    def apply(self, item):
        with self._lock:
            self.calls.append((item.entity_type, item.entity_id, item.operation))
            pending = self._outcomes.get(item.entity_id)
            outcome = pending.pop(0) if pending else {}
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    def pull(self):
        with self._lock:
            self.pulls += 1
            outcome = self.pull_outcomes.pop(0) if self.pull_outcomes else self.server_data
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    def close(self):
        self.closed = True


@pytest.fixture
def db(tmp_path):
    database = Database(str(tmp_path / "store.db"))
    yield database
    database.close()


@pytest.fixture
def queue(db):
    return QueueStore(db)


@pytest.fixture
def auth():
    return AuthSession(user_id="user-1", token="token-1")


@pytest.fixture
def connectivity():
    return ConnectivityMonitor(online=True, visible=True)


@pytest.fixture
def bus():
    return LocalBus()


@pytest.fixture
def broadcaster(bus):
    return Broadcaster(bus, instance_id="instance-a")


@pytest.fixture
def repository(db, queue, broadcaster):
    return EntityRepository(db, queue, broadcaster)


@pytest.fixture
def client():
    return FakeSyncClient()


@pytest.fixture
def engine(queue, client, auth, connectivity, broadcaster, repository):
    return SyncEngine(queue, client, auth, connectivity, broadcaster=broadcaster, repository=repository)
