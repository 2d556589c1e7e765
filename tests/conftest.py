"""
conftest.py — Shared pytest fixtures for SimGuard tests.
"""
import random
import threading

import pytest

from store import SimGuardStore

SECONDS_PER_DAY = 24 * 60 * 60

# 2023-11-14T21:00:00Z, on an hour boundary so minute offsets are easy to read
BASE_TIME = 1699995600.0


class FakeClock:
    """Callable clock. Each read advances it by ``step`` seconds."""

    def __init__(self, start: float = BASE_TIME, step: float = 0.0):
        self.now = start
        self.step = step
        self._lock = threading.Lock()

    def __call__(self) -> float:
        with self._lock:
            now = self.now
            self.now += self.step
            return now

    def advance(self, seconds: float):
        with self._lock:
            self.now += seconds

    def set(self, when: float):
        with self._lock:
            self.now = when


class RecordingClient:
    """Stands in for AsyncStoreClient; remembers every call instead of sending it."""

    def __init__(self):
        self.calls = []

    def call(self, procedure, *args):
        self.calls.append((procedure,) + args)

    def drain(self):
        pass

    def named(self, procedure):
        return [c[1:] for c in self.calls if c[0] == procedure]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    """In-memory store with default parameters and rules, on the fake clock."""
    s = SimGuardStore(":memory:", clock=clock)
    s.create_locations(10)
    yield s
    s.close()


@pytest.fixture
def rng():
    return random.Random(1234)


@pytest.fixture
def client():
    return RecordingClient()


@pytest.fixture
def old_device(store, clock):
    """Device 1 at location 0, registered 30 days after its creation date."""
    store.register_device(1, 0, clock.now - 30 * SECONDS_PER_DAY)
    return 1


@pytest.fixture
def make_clock():
    """Factory for extra clocks, e.g. ``make_clock(step=0.05)``."""
    return FakeClock
