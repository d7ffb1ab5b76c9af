"""
Test conftest — isolate TASKLOOP_* environment variables so Settings tests
are not affected by the developer's or CI environment, and reset the
settings singleton between tests.
"""
import os

import pytest


@pytest.fixture(autouse=True)
def _isolate_taskloop_env(monkeypatch):
    """Remove TASKLOOP_* env vars for every test so Settings() sees only
    what the test explicitly provides."""
    for var in list(os.environ):
        if var.startswith("TASKLOOP_"):
            monkeypatch.delenv(var, raising=False)

    from taskloop.config.settings import reset_settings
    reset_settings()
    yield
    reset_settings()


class FakeClock:
    """Manually advanced clock for time-dependent tests."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
