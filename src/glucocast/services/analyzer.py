"""
Parameter Analyzer
Infers ISF, ICR, DIA, carb absorption and glucose statistics from history.

The statistical path has no randomness: identical readings, treatments and
`now` always produce an identical DiabetesParameters snapshot.
"""
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence

import numpy as np

from glucocast.config import Settings, get_settings
from glucocast.exceptions import CalculationCancelledError, InsufficientDataError
from glucocast.ml.feature_engineering import (
    GlucoseTimeline,
    sort_readings,
    sort_treatments,
    time_of_day,
    treatments_to_frame,
)
from glucocast.models.schemas import (
    CalculationProgress,
    DiabetesParameters,
    GlucoseReading,
    TimeOfDay,
    Treatment,
)

logger = logging.getLogger(__name__)


BG_BEFORE_OFFSET = timedelta(minutes=15)
BG_BEFORE_TOLERANCE = timedelta(minutes=30)
BG_AFTER_OFFSET = timedelta(hours=3)
BG_AFTER_TOLERANCE = timedelta(minutes=60)
PEAK_WINDOW = timedelta(hours=2)
STABLE_WINDOW = timedelta(hours=4)
STABLE_CHANGE_THRESHOLD = 10.0  # mg/dL between successive readings
STABLE_HOLD_MINUTES = 30.0
MEAL_RETURN_BAND = 50.0  # |after - before| for a well-covered meal

DEFAULT_DIA_HOURS = 4.0
DEFAULT_CARB_ABSORPTION = 30.0
FALLBACK_CONFIDENCE = 30.0
DEFAULT_DIA_CONFIDENCE = 20.0


@dataclass
class CorrectionEvent:
    """Insulin-only bolus with a measured response."""
    time: datetime
    insulin_units: float
    bg_before: float
    bg_drop: float
    time_to_stable: float  # minutes


@dataclass
class MealEvent:
    """Carbs covered by insulin with a measured response."""
    time: datetime
    insulin_units: float
    carbs: float
    bg_before: float
    bg_after: float
    bg_peak: float
    time_to_peak: float  # minutes


def median(values: Sequence[float]) -> float:
    """Median; the mean of the middle pair for even counts."""
    if not values:
        return 0.0
    ordered = sorted(values)
    n = len(ordered)
    if n % 2 == 0:
        return (ordered[n // 2 - 1] + ordered[n // 2]) / 2
    return ordered[n // 2]


def sample_confidence(count: int, per_sample: float, floor: float) -> float:
    """Confidence for an estimate backed by `count` accepted samples."""
    return min(100.0, max(floor, count * per_sample))


class ParameterAnalyzer:
    """
    Calculates diabetes parameters from historical readings and treatments.

    Progress is observable from other threads through get_progress(). A set
    cancel event is honoured between stages by raising
    CalculationCancelledError, so no snapshot is produced.
    """

    STAGES = [
        ("Calculating glucose statistics", 10),
        ("Calculating daily averages", 25),
        ("Calculating insulin sensitivity", 40),
        ("Calculating insulin-to-carb ratio", 60),
        ("Estimating insulin duration", 75),
        ("Calculating carb absorption rate", 85),
        ("Calculating time-of-day variations", 95),
    ]

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._lock = threading.Lock()
        self._progress = CalculationProgress()
        self._started_monotonic = 0.0

    def get_progress(self) -> CalculationProgress:
        with self._lock:
            return self._progress.model_copy()

    def reset_progress(self) -> None:
        with self._lock:
            self._progress = CalculationProgress()

    def fail_progress(self, message: str) -> None:
        with self._lock:
            self._progress = self._progress.model_copy(update={"stage": "Failed", "error": message})

    def cancel_progress(self) -> None:
        with self._lock:
            self._progress = self._progress.model_copy(
                update={"stage": "Cancelled", "progress": 0.0, "estimated_seconds_remaining": 0.0}
            )

    # ==================== Entry Point ====================

    def analyze(
        self,
        readings: Sequence[GlucoseReading],
        treatments: Sequence[Treatment],
        cancel_event: Optional[threading.Event] = None,
        now: Optional[datetime] = None,
        finalize: bool = True,
    ) -> DiabetesParameters:
        """
        Run the full analysis.

        Args:
            readings: Glucose readings over the lookback window
            treatments: Treatments over the lookback window
            cancel_event: Checked between stages
            now: Timestamp recorded as calculated_at
            finalize: Report "Complete" at the end; callers with further
                stages report completion themselves

        Returns:
            A fresh DiabetesParameters snapshot

        Raises:
            CalculationCancelledError: If cancel_event was set
        """
        now = now or datetime.now(timezone.utc)
        self._started_monotonic = time.monotonic()
        with self._lock:
            self._progress = CalculationProgress(
                stage="Initializing",
                total_entries=len(readings),
                total_treatments=len(treatments),
                started_at=datetime.now(timezone.utc),
            )

        ordered_readings = sort_readings(readings)
        ordered_treatments = sort_treatments(treatments)
        timeline = GlucoseTimeline(ordered_readings)
        params = DiabetesParameters()

        logger.info(
            f"Analyzing {len(ordered_readings)} readings and "
            f"{len(ordered_treatments)} treatments"
        )

        self._stage(0, cancel_event)
        self._calculate_glucose_stats(timeline, params)

        self._stage(1, cancel_event)
        self._calculate_daily_averages(ordered_treatments, params)

        self._stage(2, cancel_event)
        corrections = self.find_correction_events(timeline, ordered_treatments)
        self._calculate_isf(corrections, params)

        self._stage(3, cancel_event)
        meals = self.find_meal_events(timeline, ordered_treatments)
        self._calculate_icr(meals, params)

        self._stage(4, cancel_event)
        self._calculate_dia(corrections, params)

        self._stage(5, cancel_event)
        self._calculate_carb_absorption(meals, params)

        self._stage(6, cancel_event)
        self._calculate_time_of_day_variations(corrections, meals, params)

        params.entries_analyzed = len(readings)
        params.treatments_analyzed = len(treatments)
        params.calculated_at = now
        if ordered_readings:
            span = ordered_readings[-1].timestamp - ordered_readings[0].timestamp
            params.data_days = int(span.total_seconds() / 3600 / 24)

        if finalize:
            self.update_progress("Complete", 100)
        logger.info(
            f"Analysis complete: ISF={params.isf:.1f} ({params.isf_confidence:.0f}%), "
            f"ICR={params.icr:.1f} ({params.icr_confidence:.0f}%), "
            f"DIA={params.dia:.1f}h ({params.dia_confidence:.0f}%)"
        )
        return params

    def check_cancelled(self, cancel_event: Optional[threading.Event]) -> None:
        """Raise CalculationCancelledError if the cancel event is set."""
        if cancel_event is not None and cancel_event.is_set():
            logger.info("Analysis cancelled")
            raise CalculationCancelledError("analysis cancelled")

    def _stage(self, index: int, cancel_event: Optional[threading.Event]) -> None:
        self.check_cancelled(cancel_event)
        stage, progress = self.STAGES[index]
        self.update_progress(stage, progress)

    def update_progress(self, stage: str, progress: float) -> None:
        elapsed = time.monotonic() - self._started_monotonic
        remaining = (elapsed / progress) * (100 - progress) if progress > 0 else 0.0
        with self._lock:
            self._progress = self._progress.model_copy(
                update={
                    "stage": stage,
                    "progress": progress,
                    "estimated_seconds_remaining": remaining,
                }
            )
        logger.debug(f"{stage} ({progress:.0f}%)")

    def _set_counts(self, **counts: int) -> None:
        with self._lock:
            self._progress = self._progress.model_copy(update=counts)

    # ==================== Statistics ====================

    def _calculate_glucose_stats(self, timeline: GlucoseTimeline, params: DiabetesParameters) -> None:
        values = timeline.values
        self._set_counts(entries_processed=len(values))
        if len(values) == 0:
            return

        low = self.settings.low_bg_threshold
        high = self.settings.high_bg_threshold
        n = float(len(values))
        below = int(np.count_nonzero(values < low))
        above = int(np.count_nonzero(values > high))

        params.average_glucose = float(values.mean())
        params.glucose_std_dev = float(values.std())
        params.time_below_range = below / n * 100
        params.time_above_range = above / n * 100
        params.time_in_range = (n - below - above) / n * 100
        params.gmi = 3.31 + 0.02392 * params.average_glucose
        if params.average_glucose > 0:
            params.coefficient_of_variation = params.glucose_std_dev / params.average_glucose * 100

    def _calculate_daily_averages(self, treatments: List[Treatment], params: DiabetesParameters) -> None:
        self._set_counts(treatments_processed=len(treatments))
        if not treatments:
            return

        df = treatments_to_frame(treatments)
        daily_insulin = df[df["insulin"] > 0].groupby("day")["insulin"].sum()
        daily_bolus = df[df["bolus"] > 0].groupby("day")["bolus"].sum()
        daily_carbs = df[df["carbs"] > 0].groupby("day")["carbs"].sum()

        if len(daily_insulin) > 0:
            params.total_daily_insulin = float(daily_insulin.mean())
            params.bolus_insulin = float(daily_bolus.mean()) if len(daily_bolus) > 0 else 0.0
            params.basal_insulin = params.total_daily_insulin - params.bolus_insulin

        if len(daily_carbs) > 0:
            params.total_daily_carbs = float(daily_carbs.mean())

    # ==================== Event Detection ====================

    def find_correction_events(
        self,
        timeline: GlucoseTimeline,
        treatments: List[Treatment],
    ) -> List[CorrectionEvent]:
        """
        Find insulin-only boluses given at elevated glucose with a clean
        3 hour observation window.
        """
        events: List[CorrectionEvent] = []
        for index, treatment in enumerate(treatments):
            if not (treatment.is_bolus and not treatment.has_carbs):
                continue

            bg_before = timeline.nearest(treatment.timestamp - BG_BEFORE_OFFSET, BG_BEFORE_TOLERANCE)
            if bg_before is None or bg_before < self.settings.correction_min_glucose:
                continue

            bg_after = timeline.nearest(treatment.timestamp + BG_AFTER_OFFSET, BG_AFTER_TOLERANCE)
            if bg_after is None:
                continue

            if self._has_confounding_treatment(treatments, index, BG_AFTER_OFFSET):
                continue

            events.append(
                CorrectionEvent(
                    time=treatment.timestamp,
                    insulin_units=treatment.insulin,
                    bg_before=bg_before,
                    bg_drop=bg_before - bg_after,
                    time_to_stable=self._time_to_stable(timeline, treatment.timestamp),
                )
            )
        return events

    def find_meal_events(
        self,
        timeline: GlucoseTimeline,
        treatments: List[Treatment],
    ) -> List[MealEvent]:
        """Find carb treatments covered by insulin with readings around them."""
        events: List[MealEvent] = []
        for treatment in treatments:
            if not (treatment.has_insulin and treatment.has_carbs):
                continue

            bg_before = timeline.nearest(treatment.timestamp - BG_BEFORE_OFFSET, BG_BEFORE_TOLERANCE)
            if bg_before is None:
                continue

            bg_after = timeline.nearest(treatment.timestamp + BG_AFTER_OFFSET, BG_AFTER_TOLERANCE)
            if bg_after is None:
                continue

            peak, time_to_peak = self._find_peak(timeline, treatment.timestamp)
            events.append(
                MealEvent(
                    time=treatment.timestamp,
                    insulin_units=treatment.insulin,
                    carbs=treatment.carbs,
                    bg_before=bg_before,
                    bg_after=bg_after,
                    bg_peak=peak,
                    time_to_peak=time_to_peak,
                )
            )
        return events

    @staticmethod
    def _has_confounding_treatment(treatments: List[Treatment], index: int, window: timedelta) -> bool:
        start = treatments[index].timestamp
        end = start + window
        for other_index, other in enumerate(treatments):
            if other_index == index:
                continue
            if start < other.timestamp < end and (other.has_insulin or other.has_carbs):
                return True
        return False

    @staticmethod
    def _find_peak(timeline: GlucoseTimeline, start: datetime):
        times, values = timeline.between(start, start + PEAK_WINDOW)
        peak = 0.0
        time_to_peak = 0.0
        for ts, value in zip(times, values):
            if value > peak:
                peak = float(value)
                time_to_peak = (ts - start.timestamp()) / 60
        return peak, time_to_peak

    @staticmethod
    def _time_to_stable(timeline: GlucoseTimeline, start: datetime) -> float:
        """Minutes until successive changes stay under 10 mg/dL for 30 minutes."""
        times, values = timeline.between(start, start + STABLE_WINDOW)
        origin = start.timestamp()
        prev_bg: Optional[float] = None
        stable_start: Optional[float] = None

        for ts, value in zip(times, values):
            if prev_bg is not None:
                if abs(value - prev_bg) < STABLE_CHANGE_THRESHOLD:
                    if stable_start is None:
                        stable_start = ts
                    elif (ts - stable_start) / 60 >= STABLE_HOLD_MINUTES:
                        return (stable_start - origin) / 60
                else:
                    stable_start = None
            prev_bg = float(value)

        return STABLE_WINDOW.total_seconds() / 60

    # ==================== Estimates ====================

    def _accepted_isf(self, events: List[CorrectionEvent]) -> List[float]:
        values = []
        for event in events:
            if event.insulin_units > 0 and event.bg_drop != 0:
                isf = abs(event.bg_drop) / event.insulin_units
                if self.settings.isf_min <= isf <= self.settings.isf_max:
                    values.append(isf)
        return values

    def _accepted_icr(self, events: List[MealEvent]) -> List[float]:
        values = []
        for event in events:
            if event.insulin_units > 0 and event.carbs > 0:
                if abs(event.bg_after - event.bg_before) < MEAL_RETURN_BAND:
                    icr = event.carbs / event.insulin_units
                    if self.settings.icr_min <= icr <= self.settings.icr_max:
                        values.append(icr)
        return values

    def _calculate_isf(self, events: List[CorrectionEvent], params: DiabetesParameters) -> None:
        try:
            values = self._accepted_isf(events)
            if len(values) < self.settings.min_estimate_events:
                raise InsufficientDataError(f"{len(values)} usable correction events")
            params.isf = median(values)
            params.isf_confidence = sample_confidence(len(values), 5, FALLBACK_CONFIDENCE)
        except InsufficientDataError as e:
            logger.warning(f"ISF falling back to the 1800 rule: {e}")
            if params.total_daily_insulin > 0:
                params.isf = 1800 / params.total_daily_insulin
            params.isf_confidence = FALLBACK_CONFIDENCE

    def _calculate_icr(self, events: List[MealEvent], params: DiabetesParameters) -> None:
        try:
            values = self._accepted_icr(events)
            if len(values) < self.settings.min_estimate_events:
                raise InsufficientDataError(f"{len(values)} usable meal events")
            params.icr = median(values)
            params.icr_confidence = sample_confidence(len(values), 5, FALLBACK_CONFIDENCE)
        except InsufficientDataError as e:
            logger.warning(f"ICR falling back to the 500 rule: {e}")
            if params.total_daily_insulin > 0:
                params.icr = 500 / params.total_daily_insulin
            params.icr_confidence = FALLBACK_CONFIDENCE

    def _calculate_dia(self, events: List[CorrectionEvent], params: DiabetesParameters) -> None:
        params.dia = DEFAULT_DIA_HOURS
        params.dia_confidence = DEFAULT_DIA_CONFIDENCE
        if len(events) < self.settings.min_dia_events:
            return

        hours = [
            event.time_to_stable / 60.0
            for event in events
            if event.time_to_stable > 0 and 2 <= event.time_to_stable / 60.0 <= 6
        ]
        if hours:
            params.dia = median(hours)
            params.dia_confidence = sample_confidence(len(hours), 10, DEFAULT_DIA_CONFIDENCE)

    def _calculate_carb_absorption(self, events: List[MealEvent], params: DiabetesParameters) -> None:
        params.carb_absorption_rate = DEFAULT_CARB_ABSORPTION
        if len(events) < self.settings.min_absorption_events:
            return

        rates = []
        for event in events:
            if event.time_to_peak > 0 and event.carbs > 0:
                # ~60% of carbs are absorbed by the peak
                absorption_hours = event.time_to_peak / 60.0 * 1.67
                rate = event.carbs / absorption_hours
                if 10 <= rate <= 100:
                    rates.append(rate)
        if rates:
            params.carb_absorption_rate = median(rates)

    def _calculate_time_of_day_variations(
        self,
        corrections: List[CorrectionEvent],
        meals: List[MealEvent],
        params: DiabetesParameters,
    ) -> None:
        periods = list(TimeOfDay)
        params.isf_by_time_of_day = {p.value: params.isf for p in periods}
        params.icr_by_time_of_day = {p.value: params.icr for p in periods}

        isf_by_period: Dict[TimeOfDay, List[float]] = {}
        for event in corrections:
            isf_by_period.setdefault(time_of_day(event.time), []).extend(self._accepted_isf([event]))

        icr_by_period: Dict[TimeOfDay, List[float]] = {}
        for event in meals:
            icr_by_period.setdefault(time_of_day(event.time), []).extend(self._accepted_icr([event]))

        minimum = self.settings.min_bucket_samples
        for period, values in isf_by_period.items():
            if len(values) >= minimum:
                params.isf_by_time_of_day[period.value] = median(values)
        for period, values in icr_by_period.items():
            if len(values) >= minimum:
                params.icr_by_time_of_day[period.value] = median(values)

        params.basal_rate_by_time_of_day = {p.value: params.basal_insulin / 24 for p in periods}
