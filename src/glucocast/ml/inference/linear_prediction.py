"""
Linear Prediction Module
Least-squares trend, linear extrapolation and threshold crossing estimates.
"""
import logging
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

import numpy as np

from glucocast.models.schemas import GlucoseReading, PredictedPoint

logger = logging.getLogger(__name__)


def calculate_trend(readings: Sequence[GlucoseReading], window: int = 5) -> float:
    """
    Current glucose trend from the newest readings.

    Fits a line to the newest `window` readings against minutes-ago.

    Args:
        readings: Recent readings in any order
        window: Number of newest readings to fit

    Returns:
        Trend in mg/dL per 5 minutes (positive when rising)
    """
    if len(readings) < 2:
        return 0.0

    newest = sorted(readings, key=lambda r: r.timestamp, reverse=True)[:window]
    if len(newest) < 2:
        return 0.0

    base_time = newest[0].timestamp
    x = np.array([(base_time - r.timestamp).total_seconds() / 60.0 for r in newest])
    y = np.array([r.value for r in newest], dtype=float)

    if np.ptp(x) == 0:
        return 0.0

    slope = np.polyfit(x, y, 1)[0]  # mg/dL per minute ago
    return float(-slope * 5)


class LinearPredictor:
    """
    Linear extrapolation over normalized or raw values.

    Serves as the fallback when there is too little data for the pattern
    library or the sequence model.
    """

    def __init__(self, step_factor: float = 0.5, low: float = -1.0, high: float = 1.0):
        """
        Initialize linear predictor.

        Args:
            step_factor: Fraction of the last delta carried per step
            low: Lower clamp for extrapolated values
            high: Upper clamp for extrapolated values
        """
        self.step_factor = step_factor
        self.low = low
        self.high = high

    def predict(self, values: Sequence[float], steps: int) -> List[float]:
        """Extrapolate from the last delta of `values` for `steps` points."""
        if not values:
            return [0.0] * steps

        last = values[-1]
        trend = values[-1] - values[-2] if len(values) >= 2 else 0.0

        predictions = []
        for i in range(steps):
            predicted = last + trend * (i + 1) * self.step_factor
            predictions.append(max(self.low, min(self.high, predicted)))
        return predictions


def threshold_crossing_times(
    points: Sequence[Tuple[float, float]],
    high_threshold: float,
    low_threshold: float,
) -> Tuple[Optional[float], Optional[float]]:
    """
    Minutes until the curve first reaches the high or low threshold.

    Crossings between two points are linearly interpolated.

    Args:
        points: (minutes from now, value) pairs in time order
        high_threshold: High threshold in mg/dL
        low_threshold: Low threshold in mg/dL

    Returns:
        (high_in, low_in); None where no crossing is predicted
    """
    high_in: Optional[float] = None
    low_in: Optional[float] = None

    for i, (minutes, value) in enumerate(points):
        prev = points[i - 1] if i > 0 else None

        if high_in is None and value >= high_threshold:
            if prev is not None and prev[1] < high_threshold:
                ratio = (high_threshold - prev[1]) / (value - prev[1])
                high_in = prev[0] + ratio * (minutes - prev[0])
            else:
                high_in = minutes

        if low_in is None and value <= low_threshold:
            if prev is not None and prev[1] > low_threshold:
                ratio = (prev[1] - low_threshold) / (prev[1] - value)
                low_in = prev[0] + ratio * (minutes - prev[0])
            else:
                low_in = minutes

        if high_in is not None and low_in is not None:
            break

    return high_in, low_in


def point_offsets(points: Sequence[PredictedPoint], now: datetime) -> List[Tuple[float, float]]:
    """(minutes from now, value) pairs for predicted points, time ordered."""
    pairs = [((p.time - now).total_seconds() / 60.0, p.value) for p in points]
    pairs.sort(key=lambda pair: pair[0])
    return pairs
