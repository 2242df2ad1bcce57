"""Fixtures for market data tests."""

import numpy as np
import pytest

from tickstream.market.config import MarketConfig

from .fakes import make_registry


@pytest.fixture
def registry():
    return make_registry()


@pytest.fixture
def rng():
    """Seeded generator so simulated paths are reproducible."""
    return np.random.default_rng(42)


@pytest.fixture
def fast_config():
    """Stream timings short enough for tests to observe several ticks."""
    return MarketConfig(
        tick_interval_min=0.01,
        tick_interval_max=0.02,
        heartbeat_interval=0.05,
        stream_seed_timeout=0.5,
    )


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()
