"""
Shared fixtures for booking service tests.
"""

import fnmatch
from typing import Any, Dict, Optional, Tuple

import pytest


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRedis:
    """In-memory stand-in for the subset of redis.asyncio.Redis the stores use."""

    def __init__(self, clock: Optional[FakeClock] = None):
        self.clock = clock or FakeClock()
        self.data: Dict[str, Tuple[str, Optional[float]]] = {}
        self.set_calls = []
        self.closed = False

    def _live(self, key: str) -> Optional[str]:
        item = self.data.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at is not None and self.clock() >= expires_at:
            del self.data[key]
            return None
        return value

    async def get(self, key: str) -> Optional[str]:
        return self._live(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None, xx: bool = False) -> Optional[bool]:
        self.set_calls.append((key, ex, xx))
        if xx and self._live(key) is None:
            return None
        expires_at = self.clock() + ex if ex else None
        self.data[key] = (value, expires_at)
        return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
        return removed

    async def scan_iter(self, match: str = "*"):
        for key in list(self.data):
            if fnmatch.fnmatchcase(key, match) and self._live(key) is not None:
                yield key

    async def ping(self) -> bool:
        return True

    async def aclose(self) -> None:
        self.closed = True


class DummyMetrics:
    """Minimal metrics collector stub."""

    def __init__(self):
        self.counters = []
        self.gauges = []
        self.histograms = []

    def increment_counter(self, metric_name: str, **labels):
        self.counters.append((metric_name, labels))

    def set_gauge(self, metric_name: str, value: float, **labels):
        self.gauges.append((metric_name, value, labels))

    def observe_histogram(self, metric_name: str, value: float, **labels):
        self.histograms.append((metric_name, value, labels))

    def count(self, metric_name: str, **labels: Any) -> int:
        return sum(
            1 for name, recorded in self.counters
            if name == metric_name and all(recorded.get(k) == v for k, v in labels.items())
        )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_redis(clock):
    return FakeRedis(clock)


@pytest.fixture
def metrics():
    return DummyMetrics()
