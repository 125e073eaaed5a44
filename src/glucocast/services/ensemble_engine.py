"""
Ensemble Forecast Engine

oref-style multi-curve forecasting:
- Exponential insulin activity curve (peak 75 min, DIA 5 h)
- Meal-size dependent carb absorption with a minimum carb impact
- Autosens ratio from recent deviations between observed and expected change
- Learned 24-hour circadian sensitivity/ICR profile
- Five candidate curves per step and a horizon-dependent conservative selection
"""
import logging
import math
import statistics
from collections import defaultdict
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from glucocast.config import Settings, get_settings
from glucocast.exceptions import NumericGuardError
from glucocast.ml.feature_engineering import (
    GlucoseTimeline,
    clamp,
    day_fraction,
    local_hour,
    sort_readings,
    sort_treatments,
)
from glucocast.ml.inference.linear_prediction import threshold_crossing_times
from glucocast.models.schemas import (
    CircadianProfile,
    DiabetesParameters,
    GlucoseReading,
    PredictedPoint,
    PredictionResult,
    Treatment,
    to_mmol,
)
from glucocast.services.iob_cob_service import (
    CARB_ABSORPTION_MINUTES,
    INSULIN_PEAK_MINUTES,
    IOBCOBService,
    exponential_insulin_remaining,
    meal_carbs_absorbed,
)

logger = logging.getLogger(__name__)


DIA_MINUTES = 300.0
MIN_5M_CARB_IMPACT = 8.0
HORIZON_MINUTES = 360
STEP_MINUTES = 5
SHORT_STEPS = 24  # First 2 hours
LONG_EVERY = 3  # 15-minute marks
LONG_CONFIDENCE_FACTOR = 0.8

BG_LOOKUP_WINDOW = timedelta(minutes=10)
MAX_MEAL_PATTERNS = 100
MAX_CORRECTION_PATTERNS = 100
PATTERN_ALPHA = 0.2

# Selection weights over (iob, cob, zt, uam, ml)
BLEND_WEIGHTS = (0.1, 0.3, 0.15, 0.15, 0.3)
SHORT_SELECTION_MINUTES = 30
BLEND_SELECTION_MINUTES = 120

UAM_DEVIATION_THRESHOLD = 0.5
UAM_PEAK_MINUTES = 45.0


# ==================== State ====================

@dataclass
class MealPattern:
    """Learned response to a carb treatment."""
    time_of_day: float  # fraction of the local day
    carb_amount: float
    insulin_given: float
    pre_meal_bg: float
    peak_bg_rise: float
    actual_icr: float
    glucose_curve: List[float]
    last_seen: datetime
    count: int = 1


@dataclass
class CorrectionPattern:
    """Learned response to a correction bolus."""
    time_of_day: float
    starting_bg: float
    insulin_given: float
    bg_drop: float
    time_to_nadir: float
    actual_isf: float
    last_seen: datetime
    count: int = 1


@dataclass(frozen=True)
class EngineState:
    """
    Everything the engine learns, held as one value.

    Learning builds a new state and replaces the old one; predictions read
    a single state for their whole run.
    """
    sensitivity_ratio: float = 1.0
    circadian: CircadianProfile = field(default_factory=CircadianProfile)
    meal_patterns: Tuple[MealPattern, ...] = ()
    correction_patterns: Tuple[CorrectionPattern, ...] = ()


# ==================== Strategies ====================

@dataclass
class EnginePoint:
    """A candidate value for one step."""
    time: datetime
    value: float
    confidence: float
    insulin_effect: float = 0.0
    carb_effect: float = 0.0
    momentum_effect: float = 0.0
    sens_adjustment: float = 1.0


@dataclass(frozen=True)
class ForecastContext:
    """Inputs shared by every strategy for one forecast."""
    current_glucose: float
    start: datetime
    treatments: Tuple[Treatment, ...]
    params: DiabetesParameters
    state: EngineState
    momentum: float
    deviation: float
    safety_min: float
    safety_max: float

    def clamp(self, value: float) -> float:
        return clamp(value, self.safety_min, self.safety_max)


def _minutes_between(later: datetime, earlier: datetime) -> float:
    return (later - earlier).total_seconds() / 60


def _carb_absorbed(carbs: float, minutes: float, params: DiabetesParameters) -> float:
    return meal_carbs_absorbed(
        carbs, minutes, params.isf, params.icr,
        absorption_minutes=CARB_ABSORPTION_MINUTES,
        min_5m_carb_impact=MIN_5M_CARB_IMPACT,
    )


def _insulin_remaining(minutes: float) -> float:
    return exponential_insulin_remaining(minutes, INSULIN_PEAK_MINUTES, DIA_MINUTES)


class InsulinOnlyStrategy:
    """Insulin effect with circadian and autosens adjusted ISF, plus momentum."""

    name = "iob"

    def evaluate(self, context: ForecastContext, step: int) -> EnginePoint:
        minutes_out = step * STEP_MINUTES
        pred_time = context.start + timedelta(minutes=minutes_out)

        sensitivity = context.state.circadian.hourly_sensitivity[local_hour(pred_time)]
        adjusted_isf = context.params.isf * sensitivity * context.state.sensitivity_ratio

        insulin_effect = 0.0
        for t in context.treatments:
            if not t.has_insulin:
                continue
            used = (
                _insulin_remaining(_minutes_between(context.start, t.timestamp))
                - _insulin_remaining(_minutes_between(pred_time, t.timestamp))
            )
            if used > 0:
                insulin_effect -= t.insulin * used * adjusted_isf

        momentum_effect = context.momentum * (minutes_out / 5) * math.exp(-0.03 * minutes_out)

        return EnginePoint(
            time=pred_time,
            value=context.clamp(context.current_glucose + insulin_effect + momentum_effect),
            confidence=max(20.0, 90 - minutes_out * 0.15),
            insulin_effect=insulin_effect,
            momentum_effect=momentum_effect,
            sens_adjustment=sensitivity,
        )


class CarbAwareStrategy(InsulinOnlyStrategy):
    """Insulin-only curve plus carb absorption with the circadian ICR."""

    name = "cob"

    def evaluate(self, context: ForecastContext, step: int) -> EnginePoint:
        point = super().evaluate(context, step)

        icr_factor = context.state.circadian.hourly_icr[local_hour(point.time)]
        if icr_factor <= 0:
            raise NumericGuardError(f"circadian ICR factor {icr_factor}")
        adjusted_icr = context.params.icr / icr_factor
        if adjusted_icr <= 0:
            raise NumericGuardError(f"adjusted ICR {adjusted_icr}")
        csf = (context.params.isf * context.state.sensitivity_ratio) / adjusted_icr

        carb_effect = 0.0
        for t in context.treatments:
            if not t.has_carbs:
                continue
            absorbed = (
                _carb_absorbed(t.carbs, _minutes_between(point.time, t.timestamp), context.params)
                - _carb_absorbed(t.carbs, _minutes_between(context.start, t.timestamp), context.params)
            )
            if absorbed > 0:
                carb_effect += absorbed * csf

        point.value = context.clamp(point.value + carb_effect)
        point.carb_effect = carb_effect
        return point


class ZeroTempStrategy(CarbAwareStrategy):
    """Carb-aware curve assuming no further insulin delivery."""

    name = "zt"

    def evaluate(self, context: ForecastContext, step: int) -> EnginePoint:
        point = super().evaluate(context, step)
        point.confidence *= 0.9
        return point


class UnannouncedMealStrategy(CarbAwareStrategy):
    """Adds an inferred meal when glucose rises faster than expected."""

    name = "uam"

    def evaluate(self, context: ForecastContext, step: int) -> EnginePoint:
        minutes_out = step * STEP_MINUTES

        uam_effect = 0.0
        if context.deviation > UAM_DEVIATION_THRESHOLD:
            if minutes_out < UAM_PEAK_MINUTES:
                uam_effect = context.deviation * (minutes_out / 5) * (minutes_out / UAM_PEAK_MINUTES)
            else:
                decay = math.exp(-0.02 * (minutes_out - UAM_PEAK_MINUTES))
                uam_effect = context.deviation * (UAM_PEAK_MINUTES / 5) * decay

        point = super().evaluate(context, step)
        point.value = context.clamp(point.value + uam_effect)
        return point


class PatternInformedStrategy(CarbAwareStrategy):
    """Carb-aware curve corrected toward learned meal and correction responses."""

    name = "ml"

    def evaluate(self, context: ForecastContext, step: int) -> EnginePoint:
        point = super().evaluate(context, step)
        minutes_out = step * STEP_MINUTES
        start_fraction = day_fraction(context.start)

        for t in context.treatments:
            if not t.has_carbs:
                continue
            meal_age = _minutes_between(context.start, t.timestamp)
            if meal_age < 0 or meal_age > CARB_ABSORPTION_MINUTES:
                continue

            for pattern in context.state.meal_patterns:
                if (
                    abs(pattern.time_of_day - start_fraction) < 0.1
                    and abs(pattern.carb_amount - t.carbs) < 20
                    and pattern.count >= 2
                ):
                    idx = int(minutes_out / 5)
                    if idx < len(pattern.glucose_curve):
                        pattern_rise = pattern.glucose_curve[idx] - pattern.pre_meal_bg
                        expected_rise = point.value - context.current_glucose
                        point.value += (pattern_rise - expected_rise) * 0.3

        if context.current_glucose > 180 and context.params.isf > 0:
            for pattern in context.state.correction_patterns:
                if (
                    abs(pattern.starting_bg - context.current_glucose) < 30
                    and abs(pattern.time_of_day - start_fraction) < 0.1
                    and pattern.count >= 2
                ):
                    point.insulin_effect *= pattern.actual_isf / context.params.isf
                    point.value = (
                        context.current_glucose
                        + point.insulin_effect
                        + point.carb_effect
                        + point.momentum_effect
                    )

        point.value = context.clamp(point.value)
        point.confidence *= 0.95
        return point


DEFAULT_STRATEGIES = (
    InsulinOnlyStrategy(),
    CarbAwareStrategy(),
    ZeroTempStrategy(),
    UnannouncedMealStrategy(),
    PatternInformedStrategy(),
)


def select_conservative(candidates: Sequence[EnginePoint], minutes_out: float) -> EnginePoint:
    """
    Pick the step's final point from the five candidates.

    Up to 30 minutes the highest value wins, up to 2 hours the candidates are
    blended with fixed weights, beyond that the carb-aware curve is used.
    Candidates are ordered (iob, cob, zt, uam, ml).
    """
    if minutes_out <= SHORT_SELECTION_MINUTES:
        highest = candidates[0]
        for point in candidates[1:]:
            if point.value > highest.value:
                highest = point
        return highest

    if minutes_out <= BLEND_SELECTION_MINUTES:
        total = sum(BLEND_WEIGHTS)
        return EnginePoint(
            time=candidates[0].time,
            value=sum(p.value * w for p, w in zip(candidates, BLEND_WEIGHTS)) / total,
            confidence=sum(p.confidence * w for p, w in zip(candidates, BLEND_WEIGHTS)) / total,
            insulin_effect=sum(p.insulin_effect * w for p, w in zip(candidates, BLEND_WEIGHTS)) / total,
            carb_effect=sum(p.carb_effect * w for p, w in zip(candidates, BLEND_WEIGHTS)) / total,
            momentum_effect=sum(p.momentum_effect * w for p, w in zip(candidates, BLEND_WEIGHTS)) / total,
        )

    return candidates[1]


# ==================== Engine ====================

class EnsembleForecastEngine:
    """
    Learns sensitivity state from history and forecasts by candidate selection.

    The learned EngineState is replaced wholesale by learn_from_history.
    """

    def __init__(
        self,
        params: Optional[DiabetesParameters] = None,
        settings: Optional[Settings] = None,
        state: Optional[EngineState] = None,
    ):
        self.params = params or DiabetesParameters()
        self.settings = settings or get_settings()
        if state is None:
            profile = self.params.circadian_profile
            state = EngineState(circadian=profile.model_copy(deep=True)) if profile else EngineState()
        self.state = state
        self.strategies = DEFAULT_STRATEGIES

    def set_parameters(self, params: DiabetesParameters) -> None:
        self.params = params

    @property
    def autosens_ratio(self) -> float:
        return self.state.sensitivity_ratio

    @property
    def circadian_profile(self) -> CircadianProfile:
        return self.state.circadian

    def pattern_stats(self) -> Tuple[int, int]:
        """(meal patterns, correction patterns) in the current state."""
        return len(self.state.meal_patterns), len(self.state.correction_patterns)

    # ==================== Learning ====================

    def learn_from_history(
        self,
        readings: Sequence[GlucoseReading],
        treatments: Sequence[Treatment],
        now: Optional[datetime] = None,
    ) -> EngineState:
        """
        Learn circadian profile, pattern libraries and autosens ratio.

        Does nothing unless there are enough readings and treatments.

        Args:
            readings: Historical readings in any order
            treatments: Historical treatments in any order
            now: End of the autosens window (default: time of the last reading)

        Returns:
            The engine state after learning
        """
        if (
            len(readings) < self.settings.min_learning_readings
            or len(treatments) < self.settings.min_learning_treatments
        ):
            logger.info(
                f"Skipping ensemble learning: {len(readings)} readings, {len(treatments)} treatments"
            )
            return self.state

        ordered = sort_readings(readings)
        ordered_treatments = sort_treatments(treatments)
        timeline = GlucoseTimeline(ordered)
        now = now or ordered[-1].timestamp

        circadian = self.learn_circadian(timeline, ordered_treatments, self.state.circadian)
        meals = self.learn_meal_patterns(timeline, ordered_treatments)
        corrections = self.learn_correction_patterns(timeline, ordered_treatments)
        ratio = self.calculate_autosens(ordered, ordered_treatments, now)

        self.state = EngineState(
            sensitivity_ratio=ratio if ratio is not None else self.state.sensitivity_ratio,
            circadian=circadian,
            meal_patterns=tuple(meals),
            correction_patterns=tuple(corrections),
        )
        logger.info(
            f"Ensemble learning complete: autosens={self.state.sensitivity_ratio:.2f}, "
            f"meal patterns={len(meals)}, correction patterns={len(corrections)}, "
            f"circadian v{circadian.version}"
        )
        return self.state

    @staticmethod
    def find_bg_at(timeline: GlucoseTimeline, target: datetime) -> Optional[float]:
        """Glucose within 10 minutes of target, or None."""
        return timeline.nearest(target, BG_LOOKUP_WINDOW, inclusive=True)

    def learn_circadian(
        self,
        timeline: GlucoseTimeline,
        treatments: List[Treatment],
        prior: CircadianProfile,
    ) -> CircadianProfile:
        """Blend hourly ISF/ICR factors learned from history into the prior profile."""
        hourly_isf: Dict[int, List[float]] = defaultdict(list)
        hourly_icr: Dict[int, List[float]] = defaultdict(list)

        for t in treatments:
            if not t.has_insulin or t.has_carbs or t.insulin < 0.5:
                continue
            hour = local_hour(t.timestamp)
            bg_before = self.find_bg_at(timeline, t.timestamp)
            bg_after = self.find_bg_at(timeline, t.timestamp + timedelta(hours=2))
            if bg_before is None or bg_after is None:
                continue
            if bg_before > self.settings.correction_min_glucose and bg_after < bg_before:
                isf = (bg_before - bg_after) / t.insulin
                if self.settings.isf_min <= isf <= self.settings.isf_max:
                    hourly_isf[hour].append(isf)

        for t in treatments:
            if not t.has_insulin or not t.has_carbs:
                continue
            hour = local_hour(t.timestamp)
            bg_before = self.find_bg_at(timeline, t.timestamp)
            bg_after = self.find_bg_at(timeline, t.timestamp + timedelta(hours=3))
            if bg_before is None or bg_after is None:
                continue
            if abs(bg_after - bg_before) < 50:
                icr = t.carbs / t.insulin
                if self.settings.icr_min <= icr <= self.settings.icr_max:
                    hourly_icr[hour].append(icr)

        sensitivity = list(prior.hourly_sensitivity)
        icr_factors = list(prior.hourly_icr)
        counts = list(prior.hourly_counts)
        rate = self.settings.circadian_learning_rate
        learned = False

        all_isf = [v for values in hourly_isf.values() for v in values]
        if len(all_isf) >= self.settings.circadian_min_total_samples:
            global_isf = statistics.median(all_isf)
            for hour, values in hourly_isf.items():
                if len(values) >= self.settings.circadian_min_hour_samples:
                    factor = statistics.median(values) / global_isf
                    sensitivity[hour] = (1 - rate) * sensitivity[hour] + rate * factor
                    counts[hour] = len(values)
                    learned = True

        all_icr = [v for values in hourly_icr.values() for v in values]
        if len(all_icr) >= self.settings.circadian_min_total_samples:
            global_icr = statistics.median(all_icr)
            for hour, values in hourly_icr.items():
                if len(values) >= self.settings.circadian_min_hour_samples:
                    # Inverse: a lower hourly ICR means more insulin per gram
                    factor = global_icr / statistics.median(values)
                    icr_factors[hour] = (1 - rate) * icr_factors[hour] + rate * factor
                    learned = True

        if not learned:
            return prior.model_copy(deep=True)

        return CircadianProfile(
            hourly_sensitivity=sensitivity,
            hourly_icr=icr_factors,
            hourly_counts=counts,
            version=prior.version + 1,
        )

    def learn_meal_patterns(self, timeline: GlucoseTimeline, treatments: List[Treatment]) -> List[MealPattern]:
        patterns: List[MealPattern] = []

        for t in treatments:
            if not t.has_carbs:
                continue
            pre_meal = self.find_bg_at(timeline, t.timestamp)
            if pre_meal is None:
                continue

            curve: List[float] = []
            peak_rise = 0.0
            for i in range(36):  # 3 hours at 5-min intervals
                bg = self.find_bg_at(timeline, t.timestamp + timedelta(minutes=i * 5))
                if bg is not None:
                    curve.append(bg)
                    peak_rise = max(peak_rise, bg - pre_meal)

            if len(curve) < 12:
                continue

            _add_meal_pattern(
                patterns,
                MealPattern(
                    time_of_day=day_fraction(t.timestamp),
                    carb_amount=t.carbs,
                    insulin_given=t.insulin,
                    pre_meal_bg=pre_meal,
                    peak_bg_rise=peak_rise,
                    actual_icr=t.carbs / t.insulin if t.has_insulin else 0.0,
                    glucose_curve=curve,
                    last_seen=t.timestamp,
                ),
            )

        return patterns

    def learn_correction_patterns(
        self,
        timeline: GlucoseTimeline,
        treatments: List[Treatment],
    ) -> List[CorrectionPattern]:
        patterns: List[CorrectionPattern] = []

        for t in treatments:
            if not t.has_insulin or t.has_carbs or t.insulin < 0.5:
                continue
            starting = self.find_bg_at(timeline, t.timestamp)
            if starting is None or starting < self.settings.correction_min_glucose:
                continue

            nadir, nadir_minutes = starting, 0.0
            for i in range(1, 49):  # 4 hours at 5-min intervals
                bg = self.find_bg_at(timeline, t.timestamp + timedelta(minutes=i * 5))
                if bg is not None and bg < nadir:
                    nadir, nadir_minutes = bg, float(i * 5)

            drop = starting - nadir
            if drop < 20:
                continue

            _add_correction_pattern(
                patterns,
                CorrectionPattern(
                    time_of_day=day_fraction(t.timestamp),
                    starting_bg=starting,
                    insulin_given=t.insulin,
                    bg_drop=drop,
                    time_to_nadir=nadir_minutes,
                    actual_isf=drop / t.insulin,
                    last_seen=t.timestamp,
                ),
            )

        return patterns

    def calculate_autosens(
        self,
        readings: List[GlucoseReading],
        treatments: List[Treatment],
        now: datetime,
    ) -> Optional[float]:
        """
        Sensitivity ratio from the trailing 24 hours.

        Returns:
            Median (actual + 100) / (expected + 100) clamped to the autosens
            band, or None with fewer than 10 usable intervals
        """
        cutoff = now - timedelta(hours=24)
        ratios: List[float] = []

        for prev, cur in zip(readings, readings[1:]):
            if cur.timestamp < cutoff:
                continue
            gap = _minutes_between(cur.timestamp, prev.timestamp)
            if gap < 4 or gap > 6:
                continue

            expected = self.expected_delta(prev.timestamp, cur.timestamp, treatments)
            if abs(expected) > 5:
                ratios.append((cur.value - prev.value + 100) / (expected + 100))

        if len(ratios) < 10:
            logger.debug(f"Autosens needs 10 intervals, found {len(ratios)}")
            return None

        ratios.sort()
        return clamp(ratios[len(ratios) // 2], self.settings.autosens_min, self.settings.autosens_max)

    def expected_delta(self, start: datetime, end: datetime, treatments: Sequence[Treatment]) -> float:
        """Glucose change expected from insulin and carb activity between two times."""
        insulin_effect = 0.0
        carb_effect = 0.0
        csf = self.params.isf / self.params.icr if self.params.icr > 0 else 0.0

        for t in treatments:
            # Both curves are flat outside this window
            if t.timestamp > end or _minutes_between(start, t.timestamp) >= DIA_MINUTES:
                continue
            if t.has_insulin:
                used = (
                    _insulin_remaining(_minutes_between(start, t.timestamp))
                    - _insulin_remaining(_minutes_between(end, t.timestamp))
                )
                if used > 0:
                    insulin_effect -= t.insulin * used * self.params.isf
            if t.has_carbs:
                absorbed = (
                    _carb_absorbed(t.carbs, _minutes_between(end, t.timestamp), self.params)
                    - _carb_absorbed(t.carbs, _minutes_between(start, t.timestamp), self.params)
                )
                if absorbed > 0:
                    carb_effect += absorbed * csf

        return insulin_effect + carb_effect

    # ==================== Prediction ====================

    def predict(
        self,
        current_glucose: float,
        recent_readings: Sequence[GlucoseReading],
        recent_treatments: Sequence[Treatment],
        high_threshold: Optional[float] = None,
        low_threshold: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> PredictionResult:
        """
        Generate an ensemble forecast.

        Args:
            current_glucose: Latest glucose in mg/dL
            recent_readings: Readings used for trend and deviation
            recent_treatments: Treatments whose effects are simulated
            high_threshold: High alert threshold (default from settings)
            low_threshold: Low alert threshold (default from settings)
            now: Prediction start time (default: now)

        Returns:
            PredictionResult with method "ensemble"
        """
        now = now or datetime.now(timezone.utc)
        high_threshold = self.settings.high_bg_threshold if high_threshold is None else high_threshold
        low_threshold = self.settings.low_bg_threshold if low_threshold is None else low_threshold
        state = self.state
        treatments = tuple(sort_treatments(recent_treatments))

        trend = self.calculate_trend(recent_readings, now)
        expected_trend = self.expected_delta(now - timedelta(minutes=5), now, treatments) / 5
        context = ForecastContext(
            current_glucose=current_glucose,
            start=now,
            treatments=treatments,
            params=self.params,
            state=state,
            momentum=trend,
            deviation=trend - expected_trend,
            safety_min=self.settings.safety_min_glucose,
            safety_max=self.settings.safety_max_glucose,
        )

        final = self.final_curve(context)
        short_term = [self._to_point(p) for p in final[:SHORT_STEPS]]
        long_term = [
            self._to_point(p, LONG_CONFIDENCE_FACTOR)
            for p in final[LONG_EVERY - 1::LONG_EVERY]
        ]
        high_in, low_in = threshold_crossing_times(
            [(_minutes_between(p.time, now), p.value) for p in final],
            high_threshold,
            low_threshold,
        )

        iob = self.calculate_iob(treatments, now)
        cob = self.calculate_cob(treatments, now)
        return PredictionResult(
            short_term=short_term,
            long_term=long_term,
            iob=iob,
            cob=cob,
            iob_duration=self.calculate_iob_duration(treatments, now),
            cob_duration=IOBCOBService.from_parameters(self.params).calculate_cob_duration(cob),
            high_in_minutes=high_in,
            low_in_minutes=low_in,
            high_threshold=high_threshold,
            low_threshold=low_threshold,
            predicted_at=now,
            based_on_glucose=current_glucose,
            based_on_trend=trend,
            method="ensemble",
        )

    def candidates(self, context: ForecastContext, step: int) -> List[EnginePoint]:
        """Evaluate every strategy for one step."""
        return [strategy.evaluate(context, step) for strategy in self.strategies]

    def final_curve(self, context: ForecastContext) -> List[EnginePoint]:
        """Selected point for every 5-minute step up to the horizon."""
        final: List[EnginePoint] = []
        for step in range(1, HORIZON_MINUTES // STEP_MINUTES + 1):
            minutes_out = step * STEP_MINUTES
            try:
                point = select_conservative(self.candidates(context, step), minutes_out)
            except NumericGuardError as e:
                logger.debug(f"Holding previous value at +{minutes_out} min: {e}")
                held = final[-1].value if final else context.current_glucose
                point = EnginePoint(
                    time=context.start + timedelta(minutes=minutes_out),
                    value=held,
                    confidence=20.0,
                )
            point.value = context.clamp(point.value)
            final.append(point)
        return final

    @staticmethod
    def calculate_trend(readings: Sequence[GlucoseReading], now: datetime) -> float:
        """Average 5-minute delta over the newest readings (up to 3 pairs, 20 min)."""
        if len(readings) < 2:
            return 0.0

        newest = sorted(readings, key=lambda r: r.timestamp, reverse=True)
        total, count = 0.0, 0
        for cur, prev in list(zip(newest, newest[1:]))[:3]:
            if _minutes_between(now, cur.timestamp) > 20:
                break
            gap = _minutes_between(cur.timestamp, prev.timestamp)
            if 4 <= gap <= 6:
                total += cur.value - prev.value
                count += 1

        return total / count if count else 0.0

    def calculate_iob(self, treatments: Sequence[Treatment], now: datetime) -> float:
        total = 0.0
        for t in treatments:
            if not t.has_insulin:
                continue
            minutes = _minutes_between(now, t.timestamp)
            if 0 <= minutes <= DIA_MINUTES:
                total += t.insulin * _insulin_remaining(minutes)
        return round(total, 2)

    def calculate_iob_duration(self, treatments: Sequence[Treatment], now: datetime) -> float:
        ages = [
            _minutes_between(now, t.timestamp)
            for t in treatments
            if t.has_insulin and t.timestamp <= now
        ]
        if not ages:
            return 0.0
        return max(0.0, DIA_MINUTES - min(ages))

    def calculate_cob(self, treatments: Sequence[Treatment], now: datetime) -> float:
        total = 0.0
        for t in treatments:
            if not t.has_carbs:
                continue
            minutes = _minutes_between(now, t.timestamp)
            if minutes < 0:
                continue
            remaining = t.carbs - _carb_absorbed(t.carbs, minutes, self.params)
            if remaining > 0:
                total += remaining
        return round(total, 1)

    @staticmethod
    def _to_point(point: EnginePoint, confidence_factor: float = 1.0) -> PredictedPoint:
        return PredictedPoint(
            time=point.time,
            value=round(point.value, 1),
            value_mmol=to_mmol(point.value),
            confidence=clamp(point.confidence * confidence_factor, 0.0, 100.0),
            insulin_effect=point.insulin_effect,
            carb_effect=point.carb_effect,
            trend_effect=point.momentum_effect,
        )


# ==================== Pattern Libraries ====================

def _add_meal_pattern(patterns: List[MealPattern], pattern: MealPattern) -> None:
    """Merge into a similar meal (time within 0.1 day, carbs within 20 g) or insert."""
    for i, existing in enumerate(patterns):
        if (
            abs(existing.time_of_day - pattern.time_of_day) < 0.1
            and abs(existing.carb_amount - pattern.carb_amount) < 20
        ):
            actual_icr = existing.actual_icr
            if pattern.actual_icr > 0:
                actual_icr = (1 - PATTERN_ALPHA) * existing.actual_icr + PATTERN_ALPHA * pattern.actual_icr
            patterns[i] = replace(
                existing,
                peak_bg_rise=(1 - PATTERN_ALPHA) * existing.peak_bg_rise + PATTERN_ALPHA * pattern.peak_bg_rise,
                actual_icr=actual_icr,
                count=existing.count + 1,
                last_seen=pattern.last_seen,
            )
            return

    if len(patterns) < MAX_MEAL_PATTERNS:
        patterns.append(pattern)


def _add_correction_pattern(patterns: List[CorrectionPattern], pattern: CorrectionPattern) -> None:
    """Merge into a similar correction (time within 0.1 day, start within 30 mg/dL) or insert."""
    for i, existing in enumerate(patterns):
        if (
            abs(existing.time_of_day - pattern.time_of_day) < 0.1
            and abs(existing.starting_bg - pattern.starting_bg) < 30
        ):
            patterns[i] = replace(
                existing,
                actual_isf=(1 - PATTERN_ALPHA) * existing.actual_isf + PATTERN_ALPHA * pattern.actual_isf,
                time_to_nadir=(1 - PATTERN_ALPHA) * existing.time_to_nadir + PATTERN_ALPHA * pattern.time_to_nadir,
                count=existing.count + 1,
                last_seen=pattern.last_seen,
            )
            return

    if len(patterns) < MAX_CORRECTION_PATTERNS:
        patterns.append(pattern)
