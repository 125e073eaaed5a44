"""
Pattern Learning Engine

Sequence-based forecasting over a library of 30-minute-in / 30-minute-out
glucose responses:
- 6 normalized readings of history, 6 of outcome (5 min apart)
- Greedy clustering by shape (cosine) and insulin-on-board similarity
- Voting between pattern matching, a trend/physiology model, damped
  momentum and, once trained, the sequence model
"""
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence, Tuple

import numpy as np

from glucocast.config import Settings, get_settings
from glucocast.ml.feature_engineering import (
    check_finite,
    clamp,
    day_fraction,
    denormalize_glucose,
    normalize_glucose,
    sort_readings,
    sort_treatments,
)
from glucocast.ml.inference.linear_prediction import (
    LinearPredictor,
    calculate_trend,
    point_offsets,
    threshold_crossing_times,
)
from glucocast.ml.sequence_model import SequenceModel
from glucocast.exceptions import NumericGuardError
from glucocast.models.schemas import (
    DiabetesParameters,
    GlucoseReading,
    PredictedPoint,
    PredictionResult,
    Treatment,
    to_mmol,
)
from glucocast.services.iob_cob_service import IOBCOBService

logger = logging.getLogger(__name__)


SEQ_INPUT_LEN = 6  # 30 minutes at 5-min intervals
SEQ_OUTPUT_LEN = 6  # 30 minutes ahead
SEQ_TOTAL_LEN = SEQ_INPUT_LEN + SEQ_OUTPUT_LEN
FORECAST_LEN = 12  # Normalized points produced by the ensemble
INTERVAL_MINUTES = 5

MAX_PATTERNS = 1000
SIMILARITY_THRESHOLD = 0.85  # Merge into an existing pattern at or above
MATCH_THRESHOLD = 0.5  # Minimum similarity to vote in a forecast
TOP_K = 5
MERGE_ALPHA = 0.1
MIN_LEARNING_READINGS = 20

CONTEXT_WINDOW = timedelta(hours=2)
COB_CONTEXT_MINUTES = 240.0
CURRENT_WINDOW_MINUTES = 35.0

TREND_WEIGHT = 0.3
MOMENTUM_WEIGHT = 0.2
SEQUENCE_MODEL_WEIGHT = 0.25

NORMALIZED_SPAN = 400.0  # GLUCOSE_MAX - GLUCOSE_MIN


@dataclass
class GlucoseSequence:
    """A 12-reading window with treatment context at its start."""
    input_values: np.ndarray
    output_values: np.ndarray
    timestamp: datetime
    iob: float
    cob: float
    time_of_day: float
    recent_insulin: float
    recent_carbs: float
    velocity: float
    acceleration: float


@dataclass
class LearnedPattern:
    """Cluster representative of similar historical sequences."""
    input_pattern: np.ndarray
    output_pattern: np.ndarray
    context_iob: float
    context_cob: float
    count: int = 1
    weight: float = 1.0


def sequence_similarity(a: np.ndarray, b: np.ndarray, iob_a: float, iob_b: float) -> float:
    """0.8 * cosine similarity of shape + 0.2 * exp(-|dIOB| / 2)."""
    norm_a = float(np.linalg.norm(a))
    norm_b = float(np.linalg.norm(b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    shape = float(a @ b) / (norm_a * norm_b)
    return 0.8 * shape + 0.2 * math.exp(-abs(iob_a - iob_b) / 2.0)


class PatternLibrary:
    """
    Bounded pattern library with vectorized similarity search.

    Once full, unmatched sequences are dropped; patterns are never evicted.
    """

    def __init__(self, max_patterns: int = MAX_PATTERNS):
        self.max_patterns = max_patterns
        self.patterns: List[LearnedPattern] = []
        self._inputs = np.zeros((max_patterns, SEQ_INPUT_LEN))
        self._iob = np.zeros(max_patterns)
        self._norms = np.zeros(max_patterns)

    def __len__(self) -> int:
        return len(self.patterns)

    def similarities(self, values: np.ndarray, iob: float) -> np.ndarray:
        """Similarity of `values` to every stored pattern."""
        n = len(self.patterns)
        if n == 0:
            return np.zeros(0)

        norm = float(np.linalg.norm(values))
        if norm == 0:
            return np.zeros(n)

        norms = self._norms[:n]
        dots = self._inputs[:n] @ values
        with np.errstate(divide="ignore", invalid="ignore"):
            shape = np.where(norms > 0, dots / (norms * norm), 0.0)
        sims = 0.8 * shape + 0.2 * np.exp(-np.abs(iob - self._iob[:n]) / 2.0)
        sims[norms == 0] = 0.0
        return sims

    def add(self, seq: GlucoseSequence) -> None:
        """Merge into the most similar pattern or insert a new one."""
        sims = self.similarities(seq.input_values, seq.iob)
        if len(sims) > 0:
            best = int(np.argmax(sims))
            if sims[best] >= SIMILARITY_THRESHOLD:
                self._merge(best, seq)
                return

        if len(self.patterns) >= self.max_patterns:
            return

        idx = len(self.patterns)
        self.patterns.append(
            LearnedPattern(
                input_pattern=seq.input_values.copy(),
                output_pattern=seq.output_values.copy(),
                context_iob=seq.iob,
                context_cob=seq.cob,
            )
        )
        self._inputs[idx] = seq.input_values
        self._iob[idx] = seq.iob
        self._norms[idx] = np.linalg.norm(seq.input_values)

    def _merge(self, idx: int, seq: GlucoseSequence) -> None:
        pattern = self.patterns[idx]
        pattern.output_pattern = (1 - MERGE_ALPHA) * pattern.output_pattern + MERGE_ALPHA * seq.output_values
        pattern.context_iob = (1 - MERGE_ALPHA) * pattern.context_iob + MERGE_ALPHA * seq.iob
        pattern.context_cob = (1 - MERGE_ALPHA) * pattern.context_cob + MERGE_ALPHA * seq.cob
        pattern.count += 1
        self._iob[idx] = pattern.context_iob


class TreatmentContext:
    """Sorted treatment arrays for fast IOB/COB context lookups."""

    def __init__(self, treatments: Sequence[Treatment], dia_hours: float):
        ordered = sort_treatments(treatments)
        self.dia_minutes = dia_hours * 60
        self.times = np.array([t.timestamp.timestamp() for t in ordered], dtype=float)
        self.insulin = np.array([t.insulin for t in ordered], dtype=float)
        self.carbs = np.array([t.carbs for t in ordered], dtype=float)

    def _window(self, at: datetime, minutes: float) -> Tuple[np.ndarray, slice]:
        end = at.timestamp()
        lo = int(np.searchsorted(self.times, end - minutes * 60, side="left"))
        hi = int(np.searchsorted(self.times, end, side="right"))
        ages = (end - self.times[lo:hi]) / 60
        return ages, slice(lo, hi)

    def iob(self, at: datetime) -> float:
        """Insulin on board with linear decay over DIA."""
        if self.dia_minutes <= 0:
            return 0.0
        ages, window = self._window(at, self.dia_minutes)
        return float(np.sum(self.insulin[window] * (1.0 - ages / self.dia_minutes)))

    def cob(self, at: datetime) -> float:
        """Carbs on board with linear absorption over 4 hours."""
        ages, window = self._window(at, COB_CONTEXT_MINUTES)
        return float(np.sum(self.carbs[window] * (1.0 - ages / COB_CONTEXT_MINUTES)))

    def recent(self, at: datetime, window: timedelta = CONTEXT_WINDOW) -> Tuple[float, float]:
        """(insulin, carbs) given within the window before `at`."""
        _, sl = self._window(at, window.total_seconds() / 60)
        return float(np.sum(self.insulin[sl])), float(np.sum(self.carbs[sl]))


class PatternLearningEngine:
    """
    Builds the pattern library and sequence model from history and produces
    an independent ensemble forecast.

    Learning builds new state and swaps it in whole, so predictions running
    concurrently see either the old or the new library.
    """

    def __init__(self, params: Optional[DiabetesParameters] = None, settings: Optional[Settings] = None):
        self.params = params or DiabetesParameters()
        self.settings = settings or get_settings()
        self.library = PatternLibrary()
        self.sequence_model: Optional[SequenceModel] = None
        self._linear = LinearPredictor()

    def set_parameters(self, params: DiabetesParameters) -> None:
        self.params = params

    @property
    def pattern_count(self) -> int:
        return len(self.library)

    # ==================== Learning ====================

    def learn_from_history(
        self,
        readings: Sequence[GlucoseReading],
        treatments: Sequence[Treatment],
        train_sequence_model: bool = True,
    ) -> int:
        """
        Rebuild the pattern library (and optionally the sequence model).

        Returns:
            Number of patterns in the new library
        """
        if len(readings) < MIN_LEARNING_READINGS:
            logger.info(f"Skipping pattern learning: only {len(readings)} readings")
            return len(self.library)

        ordered = sort_readings(readings)
        sequences = self.build_sequences(ordered, treatments)

        library = PatternLibrary()
        for seq in sequences:
            library.add(seq)

        model = self.sequence_model
        if train_sequence_model:
            model = self.train_sequence_model(sequences)

        self.library = library
        self.sequence_model = model
        logger.info(f"Pattern library built: {len(library)} patterns from {len(sequences)} sequences")
        return len(library)

    def build_sequences(
        self,
        readings: List[GlucoseReading],
        treatments: Sequence[Treatment],
    ) -> List[GlucoseSequence]:
        """Slide a 12-reading window over time-ordered readings."""
        sequences: List[GlucoseSequence] = []
        if len(readings) < SEQ_TOTAL_LEN:
            return sequences

        context = TreatmentContext(treatments, self.params.dia)
        times = np.array([r.timestamp.timestamp() for r in readings], dtype=float)
        gaps = np.diff(times) / 60
        valid_gap = (gaps >= 3) & (gaps <= 7)
        normalized = np.array([normalize_glucose(r.value) for r in readings])

        for i in range(len(readings) - SEQ_TOTAL_LEN + 1):
            if not valid_gap[i:i + SEQ_TOTAL_LEN - 1].all():
                continue

            inputs = normalized[i:i + SEQ_INPUT_LEN]
            start = readings[i].timestamp
            recent_insulin, recent_carbs = context.recent(start)
            velocity = inputs[5] - inputs[4]

            sequences.append(
                GlucoseSequence(
                    input_values=inputs.copy(),
                    output_values=normalized[i + SEQ_INPUT_LEN:i + SEQ_TOTAL_LEN].copy(),
                    timestamp=start,
                    iob=context.iob(start),
                    cob=context.cob(start),
                    time_of_day=day_fraction(start),
                    recent_insulin=recent_insulin,
                    recent_carbs=recent_carbs,
                    velocity=velocity,
                    acceleration=velocity - (inputs[4] - inputs[3]),
                )
            )

        return sequences

    def train_sequence_model(self, sequences: List[GlucoseSequence]) -> Optional[SequenceModel]:
        """Train a fresh sequence model on the most recent windows."""
        if not sequences:
            return None

        recent = sequences[-self.settings.lstm_max_sequences:]
        windows = [np.concatenate([s.input_values, s.output_values]) for s in recent]
        model = SequenceModel(hidden_size=self.settings.lstm_hidden_size, seed=self.settings.lstm_seed)
        model.fit(windows, epochs=self.settings.lstm_epochs)
        return model if model.is_trained else None

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
        Generate a pattern-based forecast.

        Never raises on sparse input: with no usable history the forecast
        falls back to linear extrapolation with zero treatment context.
        """
        now = now or datetime.now(timezone.utc)
        high_threshold = self.settings.high_bg_threshold if high_threshold is None else high_threshold
        low_threshold = self.settings.low_bg_threshold if low_threshold is None else low_threshold
        treatments = list(recent_treatments)

        input_seq = self.build_current_sequence(current_glucose, recent_readings, now)
        iob = self.calculate_iob(treatments, now)
        cob = self.calculate_cob(treatments, now)

        predictions = self.ensemble_predict(input_seq, iob, cob)

        short_term = self._to_points(predictions[:SEQ_OUTPUT_LEN], now)
        long_term = self._extend(predictions, now)
        high_in, low_in = threshold_crossing_times(
            point_offsets(short_term + long_term, now), high_threshold, low_threshold
        )

        iob_cob = IOBCOBService.from_parameters(self.params)
        return PredictionResult(
            short_term=short_term,
            long_term=long_term,
            iob=iob,
            cob=cob,
            iob_duration=iob_cob.calculate_iob_duration(treatments, now),
            cob_duration=iob_cob.calculate_cob_duration(cob),
            high_in_minutes=high_in,
            low_in_minutes=low_in,
            high_threshold=high_threshold,
            low_threshold=low_threshold,
            predicted_at=now,
            based_on_glucose=current_glucose,
            based_on_trend=calculate_trend(recent_readings),
            method="pattern",
        )

    def build_current_sequence(
        self,
        current_glucose: float,
        readings: Sequence[GlucoseReading],
        now: datetime,
    ) -> np.ndarray:
        """Normalized last 30 minutes, index-interpolated when sparse."""
        ordered = sort_readings(readings)
        recent: List[GlucoseReading] = []
        for reading in reversed(ordered):
            if len(recent) >= SEQ_TOTAL_LEN:
                break
            if (now - reading.timestamp).total_seconds() / 60 <= CURRENT_WINDOW_MINUTES:
                recent.insert(0, reading)

        if not recent:
            return np.full(SEQ_INPUT_LEN, normalize_glucose(current_glucose))

        if len(recent) >= SEQ_INPUT_LEN:
            values = [r.value for r in recent[-SEQ_INPUT_LEN:]]
        else:
            values = [
                recent[int(i / 5.0 * (len(recent) - 1))].value
                for i in range(SEQ_INPUT_LEN)
            ]
        return np.array([normalize_glucose(v) for v in values])

    def ensemble_predict(self, input_seq: np.ndarray, iob: float, cob: float) -> np.ndarray:
        """Confidence-weighted vote over the sub-models (12 normalized points)."""
        pattern_pred = self.pattern_match_predict(input_seq, iob)
        trend_pred = self.trend_model_predict(input_seq, iob, cob)
        momentum_pred = self.momentum_predict(input_seq)

        pattern_weight = self.pattern_confidence(input_seq, iob)
        weighted = (
            pattern_weight * pattern_pred
            + TREND_WEIGHT * trend_pred
            + MOMENTUM_WEIGHT * momentum_pred
        )
        total = np.full(FORECAST_LEN, pattern_weight + TREND_WEIGHT + MOMENTUM_WEIGHT)

        model = self.sequence_model
        if model is not None and model.is_trained:
            near_term = np.array(model.forecast(input_seq, SEQ_OUTPUT_LEN))
            if np.all(np.isfinite(near_term)):
                weighted[:SEQ_OUTPUT_LEN] += SEQUENCE_MODEL_WEIGHT * near_term
                total[:SEQ_OUTPUT_LEN] += SEQUENCE_MODEL_WEIGHT

        return np.clip(weighted / total, -1.0, 1.0)

    def pattern_match_predict(self, input_seq: np.ndarray, iob: float) -> np.ndarray:
        """Weighted average of the top matches' outcomes (k-NN style)."""
        sims = self.library.similarities(input_seq, iob)
        candidates = np.nonzero(sims > MATCH_THRESHOLD)[0]
        if len(candidates) == 0:
            return self.linear_extrapolate(input_seq)

        top = candidates[np.argsort(-sims[candidates], kind="stable")][:TOP_K]
        predictions = np.zeros(FORECAST_LEN)
        total_weight = 0.0
        for idx in top:
            pattern = self.library.patterns[idx]
            weight = sims[idx] * pattern.count
            predictions[:SEQ_OUTPUT_LEN] += weight * pattern.output_pattern
            total_weight += weight

        predictions[:SEQ_OUTPUT_LEN] /= total_weight
        # Carry the last slope forward, damped
        predictions[SEQ_OUTPUT_LEN:] = predictions[5] + (predictions[5] - predictions[4]) * 0.9
        return predictions

    def trend_model_predict(self, input_seq: np.ndarray, iob: float, cob: float) -> np.ndarray:
        """Trend with insulin and carb activity, chained in normalized space."""
        trend = input_seq[5] - input_seq[4]
        isf = self.params.isf
        icr = self.params.icr or 10.0
        csf = isf / icr

        predictions = np.zeros(FORECAST_LEN)
        prev = float(input_seq[5])
        for i in range(FORECAST_LEN):
            minutes = (i + 1) * INTERVAL_MINUTES
            trend_effect = (trend / NORMALIZED_SPAN * 2) * math.exp(-0.02 * minutes)

            insulin_effect = 0.0
            if iob > 0:
                insulin_effect = -(iob * self._insulin_activity(minutes) * isf) / NORMALIZED_SPAN * 2

            carb_effect = 0.0
            if cob > 0:
                carb_effect = (cob * self._carb_activity(minutes) * csf) / NORMALIZED_SPAN * 2

            prev = clamp(prev + trend_effect + insulin_effect + carb_effect, -1.0, 1.0)
            predictions[i] = prev
        return predictions

    @staticmethod
    def momentum_predict(input_seq: np.ndarray) -> np.ndarray:
        """Damped velocity with a small acceleration term."""
        v1 = input_seq[5] - input_seq[4]
        v0 = input_seq[4] - input_seq[3]
        accel = v1 - v0

        velocity = v1
        pos = float(input_seq[5])
        predictions = np.zeros(FORECAST_LEN)
        for i in range(FORECAST_LEN):
            velocity = velocity * 0.85 + accel * 0.1
            pos += velocity
            if pos < -1 or pos > 1:
                pos = clamp(pos, -1.0, 1.0)
                velocity = 0.0
            predictions[i] = pos
        return predictions

    def linear_extrapolate(self, input_seq: np.ndarray) -> np.ndarray:
        return np.array(self._linear.predict(list(input_seq), FORECAST_LEN))

    def pattern_confidence(self, input_seq: np.ndarray, iob: float) -> float:
        n = len(self.library)
        if n < 10:
            return 0.2
        best = float(np.max(self.library.similarities(input_seq, iob)))
        return 0.3 + 0.4 * max(0.0, best) + 0.1 * min(1.0, n / 500)

    def _insulin_activity(self, minutes: float) -> float:
        dia_minutes = self.params.dia * 60
        if minutes >= dia_minutes:
            return 0.0
        peak = 75.0
        if minutes < peak:
            return (minutes / peak) * 0.3
        return 0.3 + 0.7 * (1 - (minutes - peak) / (dia_minutes - peak))

    @staticmethod
    def _carb_activity(minutes: float) -> float:
        absorption = 180.0
        if minutes >= absorption:
            return 0.0
        t = minutes / absorption
        return (1 / (1 + math.exp(-10 * (t - 0.3)))) * (1 - t)

    # ==================== Output ====================

    def _to_points(self, predictions: np.ndarray, start: datetime) -> List[PredictedPoint]:
        points = []
        for i, normalized in enumerate(predictions):
            glucose = self._safe_glucose(normalized)
            points.append(
                PredictedPoint(
                    time=start + timedelta(minutes=(i + 1) * INTERVAL_MINUTES),
                    value=round(glucose, 1),
                    value_mmol=to_mmol(glucose),
                    confidence=max(20.0, 90.0 - i * 5),
                )
            )
        return points

    def _extend(self, predictions: np.ndarray, start: datetime) -> List[PredictedPoint]:
        """Long-term: 24 points every 15 minutes, damped extrapolation."""
        last = float(predictions[-1])
        trend = float(predictions[-1] - predictions[-2])

        points = []
        for i in range(24):
            minutes = (i + 1) * 15
            decay = math.exp(-0.01 * minutes)
            predicted = clamp(last + trend * (i + 1) * 0.3 * decay, -1.0, 1.0)
            glucose = self._safe_glucose(predicted)
            points.append(
                PredictedPoint(
                    time=start + timedelta(minutes=minutes),
                    value=round(glucose, 1),
                    value_mmol=to_mmol(glucose),
                    confidence=max(10.0, 50.0 - i * 1.5),
                )
            )
            last = predicted
        return points

    def _safe_glucose(self, normalized: float) -> float:
        try:
            glucose = check_finite(denormalize_glucose(float(normalized)), "pattern forecast")
        except NumericGuardError as e:
            logger.debug(f"Replacing non-finite forecast value: {e}")
            glucose = denormalize_glucose(0.0)
        return clamp(glucose, self.settings.safety_min_glucose, self.settings.safety_max_glucose)

    # ==================== Context ====================

    def calculate_iob(self, treatments: Sequence[Treatment], now: datetime) -> float:
        """Insulin on board, linear decay over DIA."""
        dia_minutes = self.params.dia * 60
        total = 0.0
        for t in treatments:
            if not t.has_insulin:
                continue
            minutes_ago = (now - t.timestamp).total_seconds() / 60
            if 0 <= minutes_ago <= dia_minutes:
                total += t.insulin * (1.0 - minutes_ago / dia_minutes)
        return round(total, 2)

    @staticmethod
    def calculate_cob(treatments: Sequence[Treatment], now: datetime) -> float:
        """Carbs on board, logistic absorption over 3 hours."""
        total = 0.0
        for t in treatments:
            if not t.has_carbs:
                continue
            minutes_ago = (now - t.timestamp).total_seconds() / 60
            if 0 <= minutes_ago <= 180:
                absorbed = 1 / (1 + math.exp(-10 * (minutes_ago / 180 - 0.5)))
                total += t.carbs * (1 - absorbed)
        return round(total, 1)
