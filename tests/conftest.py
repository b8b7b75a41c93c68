"""Shared fixtures."""

import pytest

from surveillance_src.db import SurveillanceDatabase
from surveillance_src.fusion import FusionEngine
from surveillance_src.resilience import (
    BreakerSettings,
    CircuitBreakerRegistry,
    ResilienceManager,
    RetryPolicy,
)

from factories import FakeClock, make_source


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(delay):
        sleeps.append(delay)
    return _sleep


@pytest.fixture
def breakers(clock):
    settings = BreakerSettings(failure_threshold=3, window_seconds=60, cool_down=30,
                               backoff_multiplier=2.0, max_cool_down=100)
    return CircuitBreakerRegistry(settings, clock=clock)


@pytest.fixture
def resilience(breakers, fake_sleep):
    return ResilienceManager(breakers, RetryPolicy(max_retries=0), sleep=fake_sleep)


@pytest.fixture
def sources():
    return {
        "alpha": make_source("alpha", reliability=0.9, historical_error=0.1),
        "beta": make_source("beta", reliability=0.9, historical_error=0.1),
        "gamma": make_source("gamma", reliability=0.9, historical_error=0.1),
    }


@pytest.fixture
def fusion_engine(sources):
    return FusionEngine(sources)


@pytest.fixture
def db(tmp_path):
    return SurveillanceDatabase(tmp_path / "surveillance.db")
