"""Pytest fixtures for delayq tests."""

import pytest

from delayq.queue.delay_queue import DelayQueue
from delayq.storage.memory import InMemoryBackend


class FakeClock:
    """Manually advanced millisecond clock."""

    def __init__(self, start: float = 1_700_000_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


@pytest.fixture(autouse=True)
def clear_settings_cache():
    """Make every test read settings from a clean environment."""
    from delayq.config import get_settings

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def backend() -> InMemoryBackend:
    """Fresh in-memory backend."""
    return InMemoryBackend()


@pytest.fixture
def clock() -> FakeClock:
    """Fake clock starting at a fixed epoch."""
    return FakeClock()


@pytest.fixture
def queue(backend: InMemoryBackend, clock: FakeClock) -> DelayQueue:
    """Queue driven by the fake clock."""
    return DelayQueue(backend, "orders", clock=clock)
