"""Shared pytest fixtures."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from sleep_sentinel.collectors.base import HealthDataSource
from sleep_sentinel.collectors.memory import InMemoryHealthSource
from sleep_sentinel.models import DetectionConfig, SignalKind
from sleep_sentinel.monitors.detection import SleepDetectionEngine
from sleep_sentinel.notifications.handlers import NotificationDispatcher


class FakeClock:
    """Manually advanced clock, injectable wherever a ``Callable[[], datetime]`` is taken."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 5, 1, 22, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class ScriptedSource(HealthDataSource):
    """Health source returning fixed samples, with optional failures and a gate."""

    name = "scripted"

    def __init__(
        self,
        heart_rates: list[float] | None = None,
        energy: list[float] | None = None,
    ) -> None:
        self.samples: dict[SignalKind, list[float]] = {
            SignalKind.HEART_RATE: list(heart_rates or []),
            SignalKind.ACTIVE_ENERGY: list(energy or []),
        }
        self.errors: dict[SignalKind, Exception] = {}
        self.gate: asyncio.Event | None = None
        self.fetch_started: asyncio.Event | None = None
        self.calls: list[tuple[SignalKind, datetime, datetime]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    def set_samples(self, heart_rates: list[float], energy: list[float]) -> None:
        self.samples[SignalKind.HEART_RATE] = list(heart_rates)
        self.samples[SignalKind.ACTIVE_ENERGY] = list(energy)

    async def fetch_samples(self, kind, window_start, window_end):
        self.calls.append((kind, window_start, window_end))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                if self.fetch_started is not None:
                    self.fetch_started.set()
                await self.gate.wait()
            else:
                await asyncio.sleep(0)
            if kind in self.errors:
                raise self.errors[kind]
            return list(self.samples[kind])
        finally:
            self.in_flight -= 1


# Median 50 bpm: low heart rate on its own.
LOW_HEART_RATES = [48.0, 50.0, 52.0, 47.0, 55.0]
RESTING_HEART_RATES = [72.0, 75.0, 70.0]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def scripted_source() -> ScriptedSource:
    return ScriptedSource(heart_rates=LOW_HEART_RATES)


@pytest.fixture
def memory_source() -> InMemoryHealthSource:
    return InMemoryHealthSource()


@pytest.fixture
def engine(scripted_source: ScriptedSource, clock: FakeClock) -> SleepDetectionEngine:
    return SleepDetectionEngine(scripted_source, config=DetectionConfig(), clock=clock)


@pytest.fixture
def dispatcher() -> NotificationDispatcher:
    return NotificationDispatcher()
