"""Shared fixtures: a controllable clock, stores and a broker double."""

import pytest

from reaction_shield.lib.store import InMemoryStore, KVStore, StoreError
from reaction_shield.services.security_service import SecurityMonitor


class FakeClock:
    """Callable clock in epoch seconds, moved by hand."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds

    @property
    def ms(self) -> int:
        return int(self.now * 1000)


class FailingStore(KVStore):
    """Every operation fails the way an unreachable backend would."""

    def __init__(self):
        self.calls = 0

    def _fail(self, operation, key):
        self.calls += 1
        raise StoreError(operation, key, ConnectionError("store unavailable"))

    def get(self, key):
        self._fail("get", key)

    def set(self, key, value, ttl):
        self._fail("set", key)

    def delete(self, key):
        self._fail("delete", key)

    def atomic_update(self, key, transform, ttl):
        self._fail("atomic_update", key)


class RecordingBroker:
    """Stands in for MessageBroker and keeps what would have been published."""

    def __init__(self):
        self.alerts = []
        self.critical_events = []

    def publish_alert(self, alert):
        self.alerts.append(alert)
        return True

    def publish_critical_event(self, event):
        self.critical_events.append(event)
        return True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryStore(clock=clock)


@pytest.fixture
def failing_store():
    return FailingStore()


@pytest.fixture
def broker():
    return RecordingBroker()


@pytest.fixture
def monitor(store, broker, clock):
    return SecurityMonitor(store, broker=broker, clock=clock)
