"""Shared fixtures: in-memory store, fake clock and a wired service."""

from collections import Counter

import pytest

from tutorsync.capabilities import KNOWN_CAPABILITIES
from tutorsync.config import SyncConfig
from tutorsync.service import create_service
from tutorsync.store import MemoryEntityStore


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class WriteCounter:
    """Counts effective writes per (entity, key) via store notifications."""

    def __init__(self, store):
        self.counts = Counter()
        store.subscribe(self)

    def __call__(self, event):
        self.counts[(event.entity_id, event.key)] += 1

    def __getitem__(self, item):
        return self.counts[item]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryEntityStore()


@pytest.fixture
def make_service(store, clock):
    """Build a service on the shared store with the given capabilities."""

    def _make(capabilities=None, **options):
        config = SyncConfig(capabilities=dict(capabilities or {}), **options)
        return create_service(config, store, clock)

    return _make


@pytest.fixture
def service(make_service):
    """Service with every known capability enabled."""
    return make_service({name: True for name in KNOWN_CAPABILITIES})


@pytest.fixture
def counter(store):
    return WriteCounter(store)
