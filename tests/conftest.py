"""
Shared test helpers: a controllable clock and recording metrics sink.
"""
import pytest

from marsview.metrics import PerformanceMonitor


class FakeClock:
    """Manually advanced clock; call it to read the time."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def monitor(clock):
    return PerformanceMonitor(clock=clock)
