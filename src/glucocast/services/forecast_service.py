"""
Forecast Service
Owns the committed parameter snapshot and the forecasting engines.

- Background recalculation with progress, cancellation and busy rejection
- Whole-value commit of parameters and learned engine state
- Short-TTL cache of recent history for repeated forecast requests
"""
import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Literal, Optional, Tuple

from glucocast.config import Settings, get_settings
from glucocast.exceptions import (
    BusyError,
    CalculationCancelledError,
    ConfigurationError,
    DataFetchError,
)
from glucocast.ml.feature_engineering import sort_readings, sort_treatments
from glucocast.ml.inference.linear_prediction import calculate_trend
from glucocast.ml.pattern_engine import PatternLearningEngine
from glucocast.models.schemas import (
    CalculationProgress,
    CircadianProfile,
    DiabetesParameters,
    GlucoseReading,
    PredictionResult,
    TimeOfDay,
    Treatment,
)
from glucocast.services.analyzer import ParameterAnalyzer
from glucocast.services.ensemble_engine import EngineState, EnsembleForecastEngine
from glucocast.services.nightscout_source import HistorySource
from glucocast.services.parameter_store import ParameterStore
from glucocast.services.physiological_predictor import PhysiologicalPredictor

logger = logging.getLogger(__name__)


Mode = Literal["statistical", "ml"]

TIME_OF_DAY_HOURS: Dict[TimeOfDay, List[int]] = {
    TimeOfDay.MORNING: [6, 7, 8, 9, 10],
    TimeOfDay.MIDDAY: [11, 12, 13, 14, 15, 16],
    TimeOfDay.EVENING: [17, 18, 19, 20, 21],
    TimeOfDay.NIGHT: [22, 23, 0, 1, 2, 3, 4, 5],
}


def update_time_of_day_params(params: DiabetesParameters, profile: CircadianProfile) -> None:
    """Derive per-period ISF/ICR from the circadian profile's period averages."""
    for period, hours in TIME_OF_DAY_HOURS.items():
        params.isf_by_time_of_day[period.value] = params.isf * profile.period_average(hours)
        params.icr_by_time_of_day[period.value] = params.icr * profile.period_average(hours, icr=True)

    logger.info(
        "Time-of-day ISF: "
        + ", ".join(f"{p.value}={params.isf_by_time_of_day[p.value]:.1f}" for p in TIME_OF_DAY_HOURS)
    )


@dataclass(frozen=True)
class _Committed:
    """Everything a forecast reads, swapped as one value."""
    params: DiabetesParameters
    predictor: PhysiologicalPredictor
    ensemble: EnsembleForecastEngine
    patterns: PatternLearningEngine


class ForecastService:
    """
    Facade over parameter estimation and the three forecasters.

    Forecast calls may run while a recalculation is in flight; they always
    read the last committed snapshot.
    """

    def __init__(
        self,
        source: Optional[HistorySource] = None,
        store: Optional[ParameterStore] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the forecast service.

        Args:
            source: History source for readings and treatments
            store: Parameter store; stored parameters are loaded immediately
            settings: Settings (default: cached environment settings)
            clock: Monotonic clock used for the history cache
        """
        self.settings = settings or get_settings()
        self.source = source
        self.store = store
        self._clock = clock

        self.analyzer = ParameterAnalyzer(self.settings)

        self._calc_lock = threading.Lock()
        self._is_calculating = False
        self._cancel_event: Optional[threading.Event] = None

        self._state_lock = threading.Lock()
        params = store.load() if store is not None else None
        self._committed = self._build(params or DiabetesParameters())

        self._cache: Optional[Tuple[float, List[GlucoseReading], List[Treatment]]] = None
        self._last_prediction: Optional[PredictionResult] = None

    def _build(
        self,
        params: DiabetesParameters,
        ensemble: Optional[EnsembleForecastEngine] = None,
        patterns: Optional[PatternLearningEngine] = None,
    ) -> _Committed:
        return _Committed(
            params=params,
            predictor=PhysiologicalPredictor(params, self.settings),
            ensemble=ensemble or EnsembleForecastEngine(params, self.settings),
            patterns=patterns or PatternLearningEngine(params, self.settings),
        )

    def set_source(self, source: Optional[HistorySource]) -> None:
        """Attach a history source and drop cached history."""
        self.source = source
        self._cache = None

    # ==================== Snapshot ====================

    def get_parameters(self) -> DiabetesParameters:
        """Deep copy of the committed parameters."""
        with self._state_lock:
            return self._committed.params.model_copy(deep=True)

    def get_progress(self) -> CalculationProgress:
        return self.analyzer.get_progress()

    @property
    def is_calculating(self) -> bool:
        with self._calc_lock:
            return self._is_calculating

    @property
    def last_prediction(self) -> Optional[PredictionResult]:
        return self._last_prediction

    def _snapshot(self) -> _Committed:
        with self._state_lock:
            return self._committed

    # ==================== Recalculation ====================

    async def recalculate(
        self,
        lookback_days: Optional[int] = None,
        mode: Mode = "statistical",
        now: Optional[datetime] = None,
    ) -> Optional[DiabetesParameters]:
        """
        Fetch history, re-estimate parameters and commit them.

        Args:
            lookback_days: Days of history to analyze (default from settings)
            mode: "statistical" for the analyzer only, "ml" to also train the
                ensemble engine, sequence model and pattern library
            now: End of the lookback window (default: now)

        Returns:
            The committed parameters, or None if the run was cancelled

        Raises:
            ConfigurationError: If no history source is attached
            BusyError: If a recalculation is already running
            DataFetchError: If the history source fails
        """
        if self.source is None:
            raise ConfigurationError("No history source configured")

        with self._calc_lock:
            if self._is_calculating:
                raise BusyError("Calculation already in progress")
            self._is_calculating = True
            cancel_event = threading.Event()
            self._cancel_event = cancel_event

        days = lookback_days or self.settings.default_lookback_days
        end = now or datetime.now(timezone.utc)
        start = end - timedelta(days=days)
        logger.info(f"Starting {mode} recalculation over {days} days")

        try:
            self.analyzer.reset_progress()
            self.analyzer.update_progress("Fetching glucose entries", 0)
            readings = await self._fetch_readings(start, end)
            self.analyzer.check_cancelled(cancel_event)

            self.analyzer.update_progress("Fetching treatments", 0)
            treatments = await self._fetch_treatments(start, end)
            self.analyzer.check_cancelled(cancel_event)

            params, ensemble, patterns = await asyncio.to_thread(
                self._run_calculation, readings, treatments, mode, cancel_event, end
            )

            with self._state_lock:
                self.analyzer.check_cancelled(cancel_event)
                self._committed = self._build(params, ensemble, patterns)

            if self.store is not None:
                try:
                    await asyncio.to_thread(self.store.save, params)
                except OSError as e:
                    logger.error(f"Error saving parameters: {e}")

            self.analyzer.update_progress("Complete", 100)
            logger.info("Parameter calculation complete")
            return params.model_copy(deep=True)

        except CalculationCancelledError:
            logger.info("Recalculation cancelled; keeping previous parameters")
            self.analyzer.cancel_progress()
            return None
        except DataFetchError as e:
            logger.warning(f"Recalculation failed: {e}")
            self.analyzer.fail_progress(str(e))
            raise
        except Exception as e:
            logger.error(f"Recalculation failed: {e}")
            self.analyzer.fail_progress(str(e))
            raise
        finally:
            with self._calc_lock:
                self._is_calculating = False
                self._cancel_event = None

    def _run_calculation(
        self,
        readings: List[GlucoseReading],
        treatments: List[Treatment],
        mode: Mode,
        cancel_event: threading.Event,
        now: datetime,
    ) -> Tuple[DiabetesParameters, EnsembleForecastEngine, PatternLearningEngine]:
        """
        CPU-bound part of a recalculation; runs in a worker thread.

        Statistical runs keep the learned engine state (circadian profile,
        autosens, pattern libraries, sequence model) of the committed
        snapshot; only ml runs relearn it.
        """
        params = self.analyzer.analyze(readings, treatments, cancel_event, now=now, finalize=False)
        params.mode = mode

        if mode != "ml":
            previous = self._snapshot()
            if previous.params.circadian_profile is not None:
                params.circadian_profile = previous.params.circadian_profile.model_copy(deep=True)
            ensemble = EnsembleForecastEngine(params, self.settings, state=previous.ensemble.state)
            patterns = PatternLearningEngine(params, self.settings)
            patterns.library = previous.patterns.library
            patterns.sequence_model = previous.patterns.sequence_model
            return params, ensemble, patterns

        self.analyzer.check_cancelled(cancel_event)
        self.analyzer.update_progress("Training ensemble engine", 96)
        prior = self._snapshot().params.circadian_profile or CircadianProfile()
        ensemble = EnsembleForecastEngine(
            params, self.settings, state=EngineState(circadian=prior.model_copy(deep=True))
        )
        ensemble.learn_from_history(readings, treatments)
        meal_count, correction_count = ensemble.pattern_stats()
        logger.info(
            f"Ensemble engine learned {meal_count} meal patterns, {correction_count} correction patterns, "
            f"autosens={ensemble.autosens_ratio:.2f}"
        )

        update_time_of_day_params(params, ensemble.circadian_profile)
        params.circadian_profile = ensemble.circadian_profile.model_copy(deep=True)

        self.analyzer.check_cancelled(cancel_event)
        self.analyzer.update_progress("Building pattern library and sequence model", 98)
        patterns = PatternLearningEngine(params, self.settings)
        patterns.learn_from_history(readings, treatments)

        self.analyzer.check_cancelled(cancel_event)
        return params, ensemble, patterns

    def cancel(self) -> bool:
        """
        Request cancellation of the running recalculation.

        Returns:
            True if a recalculation was running
        """
        with self._calc_lock:
            if not self._is_calculating or self._cancel_event is None:
                return False
            self._cancel_event.set()
        self.analyzer.cancel_progress()
        logger.info("Cancellation requested")
        return True

    # ==================== Forecasts ====================

    def predict(
        self,
        current_glucose: float,
        current_trend: float,
        recent_readings: List[GlucoseReading],
        recent_treatments: List[Treatment],
        high_threshold: Optional[float] = None,
        low_threshold: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> PredictionResult:
        """Physiological forecast over the committed parameters."""
        return self._snapshot().predictor.predict(
            current_glucose, current_trend, recent_readings, recent_treatments,
            high_threshold=high_threshold, low_threshold=low_threshold, now=now,
        )

    def predict_with_scenario(
        self,
        current_glucose: float,
        current_trend: float,
        recent_readings: List[GlucoseReading],
        recent_treatments: List[Treatment],
        hypothetical_insulin: float = 0.0,
        hypothetical_carbs: float = 0.0,
        high_threshold: Optional[float] = None,
        low_threshold: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> PredictionResult:
        """Physiological forecast with one hypothetical treatment given now."""
        return self._snapshot().predictor.predict_with_scenario(
            current_glucose, current_trend, recent_readings, recent_treatments,
            hypothetical_insulin=hypothetical_insulin,
            hypothetical_carbs=hypothetical_carbs,
            high_threshold=high_threshold,
            low_threshold=low_threshold,
            now=now,
        )

    def predict_ensemble(
        self,
        current_glucose: float,
        recent_readings: List[GlucoseReading],
        recent_treatments: List[Treatment],
        high_threshold: Optional[float] = None,
        low_threshold: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> PredictionResult:
        """Ensemble (multi-candidate) forecast over the committed engine state."""
        return self._snapshot().ensemble.predict(
            current_glucose, recent_readings, recent_treatments,
            high_threshold=high_threshold, low_threshold=low_threshold, now=now,
        )

    def predict_sequence(
        self,
        current_glucose: float,
        recent_readings: List[GlucoseReading],
        recent_treatments: List[Treatment],
        high_threshold: Optional[float] = None,
        low_threshold: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> PredictionResult:
        """Pattern-library and sequence-model forecast."""
        return self._snapshot().patterns.predict(
            current_glucose, recent_readings, recent_treatments,
            high_threshold=high_threshold, low_threshold=low_threshold, now=now,
        )

    async def get_prediction(
        self,
        high_threshold: Optional[float] = None,
        low_threshold: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> PredictionResult:
        """
        Forecast from recent history.

        Uses the ensemble engine when the committed parameters were computed
        in "ml" mode, the physiological predictor otherwise.

        Raises:
            ConfigurationError: If no history source is attached
            DataFetchError: If the source fails or returns no readings
        """
        readings, treatments = await self._recent_history()
        if not readings:
            raise DataFetchError("No glucose data available")

        current = readings[-1].value
        trend = calculate_trend(readings)
        snapshot = self._snapshot()

        if snapshot.params.mode == "ml":
            prediction = snapshot.ensemble.predict(
                current, readings, treatments,
                high_threshold=high_threshold, low_threshold=low_threshold, now=now,
            )
            prediction = prediction.model_copy(update={"based_on_trend": trend})
        else:
            prediction = snapshot.predictor.predict(
                current, trend, readings, treatments,
                high_threshold=high_threshold, low_threshold=low_threshold, now=now,
            )

        self._last_prediction = prediction
        return prediction

    async def get_scenario_prediction(
        self,
        hypothetical_insulin: float = 0.0,
        hypothetical_carbs: float = 0.0,
        now: Optional[datetime] = None,
    ) -> PredictionResult:
        """Scenario forecast from recent history."""
        readings, treatments = await self._recent_history()
        if not readings:
            raise DataFetchError("No glucose data available")

        return self.predict_with_scenario(
            readings[-1].value, calculate_trend(readings), readings, treatments,
            hypothetical_insulin=hypothetical_insulin,
            hypothetical_carbs=hypothetical_carbs,
            now=now,
        )

    async def get_iob_cob(self, now: Optional[datetime] = None) -> Tuple[float, float]:
        """Current (IOB, COB) from recent history; zeros without readings."""
        readings, treatments = await self._recent_history()
        if not readings:
            return 0.0, 0.0

        prediction = self.predict(readings[-1].value, calculate_trend(readings), readings, treatments, now=now)
        return prediction.iob, prediction.cob

    # ==================== History Cache ====================

    async def refresh_cache(self) -> None:
        """Invalidate cached history and fetch it again."""
        self._cache = None
        await self._recent_history()

    async def _recent_history(self) -> Tuple[List[GlucoseReading], List[Treatment]]:
        cached = self._cache
        if cached is not None and self._clock() - cached[0] < self.settings.cache_ttl_seconds and cached[1]:
            return cached[1], cached[2]

        if self.source is None:
            raise ConfigurationError("No history source configured")

        end = datetime.now(timezone.utc)
        start = end - timedelta(hours=self.settings.recent_history_hours)
        readings = sort_readings(await self._fetch_readings(start, end))
        treatments = sort_treatments(await self._fetch_treatments(start, end))

        self._cache = (self._clock(), readings, treatments)
        return readings, treatments

    async def _fetch_readings(self, start: datetime, end: datetime) -> List[GlucoseReading]:
        try:
            return await self.source.fetch_readings(start, end)
        except DataFetchError:
            raise
        except Exception as e:
            logger.error(f"Error fetching glucose readings: {e}")
            raise DataFetchError(f"Failed to fetch glucose readings: {e}") from e

    async def _fetch_treatments(self, start: datetime, end: datetime) -> List[Treatment]:
        try:
            return await self.source.fetch_treatments(start, end)
        except DataFetchError:
            raise
        except Exception as e:
            logger.error(f"Error fetching treatments: {e}")
            raise DataFetchError(f"Failed to fetch treatments: {e}") from e
