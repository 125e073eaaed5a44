"""
Pytest configuration and fixtures for glucocast tests.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence

import pytest

from glucocast.config import Settings
from glucocast.models.schemas import DiabetesParameters, GlucoseReading, Treatment


NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


class FakeSource:
    """In-memory history source that records how often it was asked."""

    def __init__(
        self,
        readings: Sequence[GlucoseReading] = (),
        treatments: Sequence[Treatment] = (),
        error: Optional[Exception] = None,
    ):
        self.readings = list(readings)
        self.treatments = list(treatments)
        self.error = error
        self.gate: Optional[asyncio.Event] = None
        self.reading_calls = 0
        self.treatment_calls = 0

    async def fetch_readings(self, start: datetime, end: datetime) -> List[GlucoseReading]:
        self.reading_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return list(self.readings)

    async def fetch_treatments(self, start: datetime, end: datetime) -> List[Treatment]:
        self.treatment_calls += 1
        if self.error is not None:
            raise self.error
        return list(self.treatments)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def settings() -> Settings:
    """Settings that ignore the environment's .env file."""
    return Settings(_env_file=None, timezone="UTC", lstm_seed=7)


@pytest.fixture
def default_params() -> DiabetesParameters:
    return DiabetesParameters(isf=50.0, icr=10.0, dia=4.0)


@pytest.fixture
def make_readings():
    """Build readings spaced `interval` minutes apart ending at `end`."""
    def _make(values: Sequence[float], end: datetime = NOW, interval: float = 5.0) -> List[GlucoseReading]:
        n = len(values)
        return [
            GlucoseReading(timestamp=end - timedelta(minutes=interval * (n - 1 - i)), value=value)
            for i, value in enumerate(values)
        ]
    return _make


@pytest.fixture
def flat_readings(make_readings) -> List[GlucoseReading]:
    """Three hours of flat glucose at 120 mg/dL."""
    return make_readings([120.0] * 37)


@pytest.fixture
def sample_treatments() -> List[Treatment]:
    """Generate sample treatments for testing."""
    return [
        Treatment(timestamp=NOW - timedelta(hours=1), insulin=3.0, event_type="Correction Bolus"),
        Treatment(timestamp=NOW - timedelta(hours=2), insulin=4.5, carbs=45.0, event_type="Meal Bolus"),
        Treatment(timestamp=NOW - timedelta(hours=3), insulin=2.5, event_type="Correction Bolus"),
        Treatment(timestamp=NOW - timedelta(hours=4), carbs=30.0, event_type="Carb Correction"),
    ]


@pytest.fixture
def fake_source(flat_readings, sample_treatments) -> FakeSource:
    return FakeSource(flat_readings, sample_treatments)


@pytest.fixture
def source_factory():
    """The FakeSource class, for tests that need their own source."""
    return FakeSource
