"""
Feature Engineering Module

Shared helpers for turning readings and treatments into the arrays and
frames the estimators work on: ordering, local time-of-day features,
glucose normalization and fast nearest-reading lookups.
"""
import logging
import math
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Iterable, List, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo

import numpy as np
import pandas as pd

from glucocast.config import get_settings
from glucocast.exceptions import NumericGuardError
from glucocast.models.schemas import GlucoseReading, TimeOfDay, Treatment

logger = logging.getLogger(__name__)


# Normalization range for all model input/training
GLUCOSE_MIN = 20.0
GLUCOSE_MAX = 420.0

SAMPLING_MIN = 5  # Data granularity in minutes


def normalize_glucose(glucose: float) -> float:
    """Normalize glucose (mg/dL) to the [-1, 1] range."""
    return (2 * glucose - GLUCOSE_MIN - GLUCOSE_MAX) / (GLUCOSE_MAX - GLUCOSE_MIN)


def denormalize_glucose(normalized: float) -> float:
    """Convert a normalized value back to mg/dL."""
    return (normalized * (GLUCOSE_MAX - GLUCOSE_MIN) + GLUCOSE_MIN + GLUCOSE_MAX) / 2


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def check_finite(value: float, what: str = "value") -> float:
    """Raise NumericGuardError for NaN or infinite values."""
    if not math.isfinite(value):
        raise NumericGuardError(f"non-finite {what}: {value}")
    return value


# ==================== Ordering ====================

def sort_readings(readings: Iterable[GlucoseReading]) -> List[GlucoseReading]:
    return sorted(readings, key=lambda r: r.timestamp)


def sort_treatments(treatments: Iterable[Treatment]) -> List[Treatment]:
    return sorted(treatments, key=lambda t: t.timestamp)


# ==================== Local Time ====================

@lru_cache(maxsize=8)
def _zone(name: str) -> ZoneInfo:
    return ZoneInfo(name)


def to_local(ts: datetime) -> datetime:
    """Convert a timestamp to the configured local zone."""
    return ts.astimezone(_zone(get_settings().timezone))


def local_hour(ts: datetime) -> int:
    return to_local(ts).hour


def time_of_day(ts: datetime) -> TimeOfDay:
    return TimeOfDay.from_hour(local_hour(ts))


def day_fraction(ts: datetime) -> float:
    """Normalized time of day in [0, 1)."""
    local = to_local(ts)
    return (local.hour * 60 + local.minute) / 1440.0


# ==================== Frames ====================

def readings_to_frame(readings: Sequence[GlucoseReading]) -> pd.DataFrame:
    """Build a time-ordered DataFrame with timestamp and value columns."""
    if not readings:
        return pd.DataFrame(columns=["timestamp", "value"])
    df = pd.DataFrame(
        {
            "timestamp": [r.timestamp for r in readings],
            "value": [float(r.value) for r in readings],
        }
    )
    df.sort_values("timestamp", inplace=True, ignore_index=True, kind="mergesort")
    return df


def treatments_to_frame(treatments: Sequence[Treatment]) -> pd.DataFrame:
    """Build a DataFrame of treatments with a local calendar day column."""
    columns = ["timestamp", "day", "insulin", "carbs", "bolus"]
    if not treatments:
        return pd.DataFrame(columns=columns)
    df = pd.DataFrame(
        {
            "timestamp": [t.timestamp for t in treatments],
            "day": [to_local(t.timestamp).date().isoformat() for t in treatments],
            "insulin": [float(t.insulin) for t in treatments],
            "carbs": [float(t.carbs) for t in treatments],
            "bolus": [float(t.insulin) if t.is_bolus else 0.0 for t in treatments],
        }
    )
    df.sort_values("timestamp", inplace=True, ignore_index=True, kind="mergesort")
    return df


# ==================== Lookups ====================

class GlucoseTimeline:
    """
    Time-ordered glucose values with binary-search lookups.

    Analysis over months of data performs thousands of nearest-reading and
    window queries, so readings are held as parallel numpy arrays of epoch
    seconds and mg/dL values.
    """

    def __init__(self, readings: Sequence[GlucoseReading]):
        ordered = sort_readings(readings)
        self.times = np.array([r.timestamp.timestamp() for r in ordered], dtype=float)
        self.values = np.array([float(r.value) for r in ordered], dtype=float)

    def __len__(self) -> int:
        return len(self.times)

    def nearest(
        self,
        target: datetime,
        max_diff: timedelta,
        inclusive: bool = False,
    ) -> Optional[float]:
        """
        Value of the reading closest to target.

        Args:
            target: Time to look up
            max_diff: Maximum allowed distance from target
            inclusive: Whether a reading exactly max_diff away qualifies

        Returns:
            Glucose value, or None when no reading is close enough.
            Ties resolve to the earlier reading.
        """
        if len(self.times) == 0:
            return None

        t = target.timestamp()
        idx = int(np.searchsorted(self.times, t))
        best: Optional[int] = None
        best_diff = 0.0
        for i in (idx - 1, idx):
            if 0 <= i < len(self.times):
                diff = abs(self.times[i] - t)
                if best is None or diff < best_diff:
                    best, best_diff = i, diff

        limit = max_diff.total_seconds()
        if best is None or best_diff > limit or (best_diff == limit and not inclusive):
            return None
        return float(self.values[best])

    def between(self, start: datetime, end: datetime) -> Tuple[np.ndarray, np.ndarray]:
        """Readings strictly after start and strictly before end."""
        lo = int(np.searchsorted(self.times, start.timestamp(), side="right"))
        hi = int(np.searchsorted(self.times, end.timestamp(), side="left"))
        if hi <= lo:
            return self.times[0:0], self.values[0:0]
        return self.times[lo:hi], self.values[lo:hi]
