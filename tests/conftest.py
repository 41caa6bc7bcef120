"""
Shared fixtures for the pipeline tests.
"""
from datetime import datetime

import pytest

from velvet_chat.core.usage_guard import UsageGuard
from velvet_chat.storage.repository import (
    HistoryStore,
    InMemoryKeyValueStore,
    KeyValueUsageStore,
)


class FakeClock:
    """Manually advanced epoch-millisecond clock."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, 0)):
        self.now = int(start.timestamp() * 1000)

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += int(seconds * 1000)


class SleepRecorder:
    """Async sleep replacement that records requested delays."""

    def __init__(self):
        self.delays = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def kv_store():
    return InMemoryKeyValueStore()


@pytest.fixture
def guard(kv_store, clock):
    return UsageGuard(KeyValueUsageStore(kv_store), clock=clock)


@pytest.fixture
def history_store(kv_store):
    return HistoryStore(kv_store)


@pytest.fixture
def sleeper():
    return SleepRecorder()
