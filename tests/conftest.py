"""
Shared fixtures for cache tests.
"""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from instant_cache import (
    CacheCoordinator,
    CacheOptions,
    CacheStore,
    MemoryBackend,
)


class FakeClock:
    """Settable clock for TTL tests."""

    def __init__(self, start: datetime = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FlakyBackend(MemoryBackend):
    """Memory backend that can be told to fail like unavailable storage."""

    def __init__(self):
        super().__init__()
        self.fail_get = False
        self.fail_set = False
        self.fail_analytics = False
        self.set_calls = 0

    async def get(self, key):
        if self.fail_get:
            raise ConnectionError("storage unavailable")
        return await super().get(key)

    async def set(self, key, value):
        self.set_calls += 1
        if self.fail_set:
            raise ConnectionError("storage unavailable")
        await super().set(key, value)

    async def analytics(self):
        if self.fail_analytics:
            raise ConnectionError("storage unavailable")
        return await super().analytics()


class StubProducer:
    """Async producer returning queued values and counting calls."""

    def __init__(self, *values, error: Exception = None):
        self.values = list(values)
        self.error = error
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        if len(self.values) > 1:
            return self.values.pop(0)
        return self.values[0]


class GatedProducer:
    """Producer that blocks until released, to hold a load in flight."""

    def __init__(self, value):
        self.value = value
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.calls = 0
        self.cancelled = False

    async def __call__(self):
        self.calls += 1
        self.started.set()
        try:
            await self.release.wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return self.value


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    return FlakyBackend()


@pytest.fixture
def store(backend, clock):
    return CacheStore(backend, default_ttl_seconds=3600, clock=clock)


@pytest.fixture
def coordinator(store):
    return CacheCoordinator(store, options=CacheOptions(ttl_seconds=3600))
