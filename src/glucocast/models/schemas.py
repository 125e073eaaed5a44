"""
Pydantic Models/Schemas for glucocast
Defines data structures for glucose readings, treatments, parameters and forecasts.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, PositiveFloat, field_validator


MGDL_PER_MMOL = 18.0182
PARAMETERS_SCHEMA_VERSION = 2


def to_mmol(mgdl: float) -> float:
    """Convert a mg/dL value to mmol/L."""
    return mgdl / MGDL_PER_MMOL


def to_mgdl(mmol: float) -> float:
    """Convert a mmol/L value to mg/dL."""
    return mmol * MGDL_PER_MMOL


def _ensure_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ==================== Enums ====================

class TrendDirection(str, Enum):
    DOUBLE_UP = "DoubleUp"
    SINGLE_UP = "SingleUp"
    FORTY_FIVE_UP = "FortyFiveUp"
    FLAT = "Flat"
    FORTY_FIVE_DOWN = "FortyFiveDown"
    SINGLE_DOWN = "SingleDown"
    DOUBLE_DOWN = "DoubleDown"
    NOT_COMPUTABLE = "NOT COMPUTABLE"
    RATE_OUT_OF_RANGE = "RATE OUT OF RANGE"


class TimeOfDay(str, Enum):
    MORNING = "morning"  # 06:00 - 11:00
    MIDDAY = "midday"    # 11:00 - 17:00
    EVENING = "evening"  # 17:00 - 22:00
    NIGHT = "night"      # 22:00 - 06:00

    @classmethod
    def from_hour(cls, hour: int) -> "TimeOfDay":
        if 6 <= hour < 11:
            return cls.MORNING
        if 11 <= hour < 17:
            return cls.MIDDAY
        if 17 <= hour < 22:
            return cls.EVENING
        return cls.NIGHT


# ==================== Input Models ====================

class GlucoseReading(BaseModel):
    """A single sensor glucose reading."""
    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(..., description="Reading timestamp")
    value: float = Field(..., gt=0, description="Glucose value in mg/dL")
    trend: Optional[TrendDirection] = Field(None, description="Trend direction")

    @field_validator("timestamp")
    @classmethod
    def _aware_timestamp(cls, value: datetime) -> datetime:
        return _ensure_aware(value)


class Treatment(BaseModel):
    """An insulin and/or carb treatment."""
    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(..., description="Treatment timestamp")
    insulin: float = Field(default=0.0, ge=0, description="Insulin units")
    carbs: float = Field(default=0.0, ge=0, description="Carbs in grams")
    id: Optional[str] = Field(None, description="Identifier from the source")
    event_type: Optional[str] = Field(None, description="Source event type, e.g. 'Meal Bolus'")

    @field_validator("timestamp")
    @classmethod
    def _aware_timestamp(cls, value: datetime) -> datetime:
        return _ensure_aware(value)

    @property
    def has_insulin(self) -> bool:
        return self.insulin > 0

    @property
    def has_carbs(self) -> bool:
        return self.carbs > 0

    @property
    def is_bolus(self) -> bool:
        return self.has_insulin and self.event_type != "Temp Basal"


# ==================== Learned State ====================

DEFAULT_HOURLY_SENSITIVITY = [
    1.4, 1.4, 1.2, 0.8, 0.7, 0.6,  # 00:00-05:59 night -> dawn
    0.6, 0.7, 0.8, 0.9, 1.0, 1.0,  # 06:00-11:59 morning
    1.0, 1.0, 1.0, 1.0, 1.0, 1.0,  # 12:00-17:59 afternoon
    1.0, 1.0, 1.1, 1.2, 1.3, 1.4,  # 18:00-23:59 evening -> night
]

DEFAULT_HOURLY_ICR = [
    1.0, 1.0, 1.0, 1.0, 1.0, 1.0,
    0.7, 0.75, 0.8, 0.9, 1.0, 1.0,  # breakfast needs more insulin
    1.0, 1.0, 1.0, 1.0, 1.0, 1.0,
    1.1, 1.15, 1.1, 1.0, 1.0, 1.0,  # dinner needs less
]


class CircadianProfile(BaseModel):
    """Hourly sensitivity and ICR factors relative to the global values."""
    hourly_sensitivity: List[PositiveFloat] = Field(
        default_factory=lambda: list(DEFAULT_HOURLY_SENSITIVITY), min_length=24, max_length=24
    )
    hourly_icr: List[PositiveFloat] = Field(
        default_factory=lambda: list(DEFAULT_HOURLY_ICR), min_length=24, max_length=24
    )
    hourly_counts: List[int] = Field(default_factory=lambda: [0] * 24, min_length=24, max_length=24)
    version: int = 0

    def period_average(self, hours: List[int], icr: bool = False) -> float:
        values = self.hourly_icr if icr else self.hourly_sensitivity
        return sum(values[h] for h in hours) / len(hours)


# ==================== Parameters ====================

class DiabetesParameters(BaseModel):
    """Snapshot of estimated diabetes management parameters."""
    schema_version: int = PARAMETERS_SCHEMA_VERSION
    mode: Literal["statistical", "ml"] = "statistical"

    isf: float = Field(default=50.0, description="mg/dL drop per unit")
    isf_by_time_of_day: Dict[str, float] = Field(default_factory=dict)
    icr: float = Field(default=10.0, description="grams covered per unit")
    icr_by_time_of_day: Dict[str, float] = Field(default_factory=dict)
    dia: float = Field(default=4.0, description="Duration of insulin action in hours")
    carb_absorption_rate: float = Field(default=30.0, description="grams per hour")
    basal_rate_by_time_of_day: Dict[str, float] = Field(default_factory=dict)

    total_daily_insulin: float = 0.0
    basal_insulin: float = 0.0
    bolus_insulin: float = 0.0
    total_daily_carbs: float = 0.0

    average_glucose: float = 0.0
    glucose_std_dev: float = 0.0
    time_in_range: float = 0.0
    time_below_range: float = 0.0
    time_above_range: float = 0.0
    gmi: float = 0.0
    coefficient_of_variation: float = 0.0

    isf_confidence: float = Field(default=0.0, ge=0, le=100)
    icr_confidence: float = Field(default=0.0, ge=0, le=100)
    dia_confidence: float = Field(default=0.0, ge=0, le=100)

    data_days: int = 0
    entries_analyzed: int = 0
    treatments_analyzed: int = 0
    calculated_at: Optional[datetime] = None

    circadian_profile: Optional[CircadianProfile] = None

    def isf_for(self, period: TimeOfDay) -> float:
        return self.isf_by_time_of_day.get(period.value) or self.isf

    def icr_for(self, period: TimeOfDay) -> float:
        return self.icr_by_time_of_day.get(period.value) or self.icr


class CalculationProgress(BaseModel):
    """Progress of a parameter recalculation."""
    stage: str = "Idle"
    progress: float = Field(default=0.0, ge=0, le=100)
    entries_processed: int = 0
    total_entries: int = 0
    treatments_processed: int = 0
    total_treatments: int = 0
    estimated_seconds_remaining: float = 0.0
    started_at: Optional[datetime] = None
    error: Optional[str] = None


# ==================== Forecast Models ====================

class PredictedPoint(BaseModel):
    """A single predicted glucose value."""
    time: datetime
    value: float = Field(..., description="Predicted glucose in mg/dL")
    value_mmol: float
    confidence: float = Field(..., ge=0, le=100)
    insulin_effect: float = 0.0
    carb_effect: float = 0.0
    trend_effect: float = 0.0


class PredictionResult(BaseModel):
    """Result of a glucose forecast."""
    short_term: List[PredictedPoint] = Field(default_factory=list)
    long_term: List[PredictedPoint] = Field(default_factory=list)
    iob: float = 0.0
    cob: float = 0.0
    iob_duration: float = Field(default=0.0, description="Minutes until IOB is depleted")
    cob_duration: float = Field(default=0.0, description="Minutes until COB is absorbed")
    high_in_minutes: Optional[float] = None
    low_in_minutes: Optional[float] = None
    high_threshold: float = 180.0
    low_threshold: float = 70.0
    predicted_at: datetime
    based_on_glucose: float
    based_on_trend: float = 0.0
    method: Literal["physiological", "ensemble", "pattern"] = "physiological"
