"""
Physiological Predictor
Deterministic insulin/carb/momentum simulation over the current parameters.

Each step adds the insulin, carb and momentum effects to the previous
predicted value and clamps the result to the safety range.
"""
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence

from glucocast.config import Settings, get_settings
from glucocast.exceptions import NumericGuardError
from glucocast.ml.feature_engineering import check_finite, clamp, time_of_day
from glucocast.ml.inference.linear_prediction import point_offsets, threshold_crossing_times
from glucocast.models.schemas import (
    DiabetesParameters,
    GlucoseReading,
    PredictedPoint,
    PredictionResult,
    Treatment,
    to_mmol,
)
from glucocast.services.iob_cob_service import (
    CARB_ABSORPTION_MINUTES,
    IOBCOBService,
    carbs_absorbed,
    insulin_remaining,
)

logger = logging.getLogger(__name__)


SHORT_HORIZON = timedelta(hours=2)
SHORT_INTERVAL = timedelta(minutes=5)
LONG_HORIZON = timedelta(hours=6)
LONG_INTERVAL = timedelta(minutes=15)


def trend_effect(trend_per_5min: float, minutes_out: float) -> float:
    """Momentum contribution: linear for 30 minutes, then decaying."""
    if minutes_out <= 30:
        return trend_per_5min * (minutes_out / 5)

    extra = minutes_out - 30
    return trend_per_5min * 6 + trend_per_5min * (extra / 5) * math.exp(-0.02 * extra)


class PhysiologicalPredictor:
    """
    Predicts future glucose from insulin and carb curves plus momentum.

    Produces a dense short-term curve (2h at 5 min) and a sparse long-term
    curve (6h at 15 min), each point carrying its effect breakdown.
    """

    def __init__(self, params: Optional[DiabetesParameters] = None, settings: Optional[Settings] = None):
        self.params = params or DiabetesParameters()
        self.settings = settings or get_settings()

    def set_parameters(self, params: DiabetesParameters) -> None:
        self.params = params

    def predict(
        self,
        current_glucose: float,
        current_trend: float,
        recent_readings: Sequence[GlucoseReading],
        recent_treatments: Sequence[Treatment],
        high_threshold: Optional[float] = None,
        low_threshold: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> PredictionResult:
        """
        Generate glucose predictions.

        Args:
            current_glucose: Latest glucose in mg/dL
            current_trend: Trend in mg/dL per 5 minutes
            recent_readings: Readings used for data-quality confidence
            recent_treatments: Treatments whose effects are simulated
            high_threshold: High alert threshold (default from settings)
            low_threshold: Low alert threshold (default from settings)
            now: Prediction start time (default: now)

        Returns:
            PredictionResult with short and long term curves
        """
        now = now or datetime.now(timezone.utc)
        high_threshold = self.settings.high_bg_threshold if high_threshold is None else high_threshold
        low_threshold = self.settings.low_bg_threshold if low_threshold is None else low_threshold
        treatments = list(recent_treatments)

        iob_cob = IOBCOBService.from_parameters(self.params)
        cob = iob_cob.calculate_cob(treatments, now)

        short_term = self._predict_range(
            current_glucose, current_trend, len(recent_readings), treatments,
            now, SHORT_HORIZON, SHORT_INTERVAL, high_confidence=True,
        )
        long_term = self._predict_range(
            current_glucose, current_trend, len(recent_readings), treatments,
            now, LONG_HORIZON, LONG_INTERVAL, high_confidence=False,
        )

        high_in, low_in = threshold_crossing_times(
            point_offsets(short_term + long_term, now), high_threshold, low_threshold
        )

        return PredictionResult(
            short_term=short_term,
            long_term=long_term,
            iob=iob_cob.calculate_iob(treatments, now),
            cob=cob,
            iob_duration=iob_cob.calculate_iob_duration(treatments, now),
            cob_duration=iob_cob.calculate_cob_duration(cob),
            high_in_minutes=high_in,
            low_in_minutes=low_in,
            high_threshold=high_threshold,
            low_threshold=low_threshold,
            predicted_at=now,
            based_on_glucose=current_glucose,
            based_on_trend=current_trend,
            method="physiological",
        )

    def predict_with_scenario(
        self,
        current_glucose: float,
        current_trend: float,
        recent_readings: Sequence[GlucoseReading],
        recent_treatments: Sequence[Treatment],
        hypothetical_insulin: float = 0.0,
        hypothetical_carbs: float = 0.0,
        high_threshold: Optional[float] = None,
        low_threshold: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> PredictionResult:
        """Predict with one hypothetical treatment given now."""
        now = now or datetime.now(timezone.utc)
        treatments = list(recent_treatments)
        if hypothetical_insulin > 0 or hypothetical_carbs > 0:
            treatments.append(
                Treatment(
                    timestamp=now,
                    insulin=hypothetical_insulin,
                    carbs=hypothetical_carbs,
                    event_type="Hypothetical",
                )
            )
        return self.predict(
            current_glucose, current_trend, recent_readings, treatments,
            high_threshold=high_threshold, low_threshold=low_threshold, now=now,
        )

    # ==================== Simulation ====================

    def _predict_range(
        self,
        current_glucose: float,
        current_trend: float,
        data_points: int,
        treatments: List[Treatment],
        start: datetime,
        horizon: timedelta,
        interval: timedelta,
        high_confidence: bool,
    ) -> List[PredictedPoint]:
        points = []
        steps = int(horizon / interval)
        prev = current_glucose

        for i in range(1, steps + 1):
            pred_time = start + interval * i
            minutes_out = i * interval.total_seconds() / 60

            try:
                insulin_effect = self._insulin_effect(treatments, start, pred_time)
                carb_effect = self._carb_effect(treatments, start, pred_time)
                momentum = trend_effect(current_trend, minutes_out)
                value = check_finite(prev + insulin_effect + carb_effect + momentum, "prediction")
            except NumericGuardError as e:
                logger.debug(f"Holding previous value at +{minutes_out:.0f} min: {e}")
                insulin_effect = carb_effect = momentum = 0.0
                value = prev

            value = clamp(value, self.settings.safety_min_glucose, self.settings.safety_max_glucose)
            points.append(
                PredictedPoint(
                    time=pred_time,
                    value=round(value, 1),
                    value_mmol=to_mmol(value),
                    confidence=self._confidence(minutes_out, high_confidence, data_points),
                    insulin_effect=insulin_effect,
                    carb_effect=carb_effect,
                    trend_effect=momentum,
                )
            )
            prev = value

        return points

    def _insulin_effect(self, treatments: List[Treatment], start: datetime, pred_time: datetime) -> float:
        dia_minutes = self.params.dia * 60
        isf = self.params.isf_for(time_of_day(pred_time))
        total = 0.0

        for t in treatments:
            if not t.is_bolus or t.timestamp > start:
                continue

            minutes_since = (pred_time - t.timestamp).total_seconds() / 60
            if minutes_since > dia_minutes or minutes_since < 0:
                continue

            at_start = insulin_remaining((start - t.timestamp).total_seconds() / 60, dia_minutes)
            at_pred = insulin_remaining(minutes_since, dia_minutes)
            used = at_start - at_pred
            if used > 0:
                total -= t.insulin * used * isf

        return total

    def _carb_effect(self, treatments: List[Treatment], start: datetime, pred_time: datetime) -> float:
        period = time_of_day(pred_time)
        icr = self.params.icr_for(period)
        if icr <= 0:
            raise NumericGuardError(f"ICR {icr} for {period.value}")
        csf = self.params.isf_for(period) / icr  # mg/dL per gram
        total = 0.0

        for t in treatments:
            if not t.has_carbs:
                continue

            minutes_since = (pred_time - t.timestamp).total_seconds() / 60
            if minutes_since > CARB_ABSORPTION_MINUTES or minutes_since < 0:
                continue

            by_start = carbs_absorbed(t.carbs, (start - t.timestamp).total_seconds() / 60)
            by_pred = carbs_absorbed(t.carbs, minutes_since)
            absorbed = by_pred - by_start
            if absorbed > 0:
                total += absorbed * csf

        return total

    def _confidence(self, minutes_out: float, high_confidence: bool, data_points: int) -> float:
        base = 90.0 if high_confidence else 70.0
        time_decay = math.exp(-0.005 * minutes_out)
        data_factor = min(1.0, data_points / 50)
        param_factor = (
            self.params.isf_confidence + self.params.icr_confidence + self.params.dia_confidence
        ) / 300

        confidence = base * time_decay * (0.5 + 0.5 * data_factor) * (0.5 + 0.5 * param_factor)
        return clamp(confidence, 10.0, 100.0)
