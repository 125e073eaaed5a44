"""Inference helpers shared by the forecasters."""
from glucocast.ml.inference.linear_prediction import (
    LinearPredictor,
    calculate_trend,
    point_offsets,
    threshold_crossing_times,
)

__all__ = [
    "LinearPredictor",
    "calculate_trend",
    "point_offsets",
    "threshold_crossing_times",
]
