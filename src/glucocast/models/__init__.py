# glucocast Models Package
from glucocast.models.schemas import (
    MGDL_PER_MMOL,
    PARAMETERS_SCHEMA_VERSION,
    TrendDirection,
    TimeOfDay,
    GlucoseReading,
    Treatment,
    CircadianProfile,
    DiabetesParameters,
    CalculationProgress,
    PredictedPoint,
    PredictionResult,
    to_mmol,
    to_mgdl,
)

__all__ = [
    "MGDL_PER_MMOL",
    "PARAMETERS_SCHEMA_VERSION",
    "TrendDirection",
    "TimeOfDay",
    "GlucoseReading",
    "Treatment",
    "CircadianProfile",
    "DiabetesParameters",
    "CalculationProgress",
    "PredictedPoint",
    "PredictionResult",
    "to_mmol",
    "to_mgdl",
]
