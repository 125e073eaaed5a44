"""
Tests for the Ensemble Forecast Engine
"""
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from glucocast.models.schemas import CircadianProfile, DiabetesParameters, GlucoseReading, Treatment
from glucocast.services.ensemble_engine import (
    MAX_MEAL_PATTERNS,
    EnginePoint,
    EngineState,
    EnsembleForecastEngine,
    MealPattern,
    _add_correction_pattern,
    _add_meal_pattern,
    select_conservative,
)


DAY0 = datetime(2026, 3, 1, tzinfo=timezone.utc)


def candidate_points(values, now):
    return [EnginePoint(time=now, value=v, confidence=50.0) for v in values]


def correction_history(days: int = 6):
    """
    Corrections at 08:00 (250 -> 150 with 2 U) and 20:00 (250 -> 50 with 2 U)
    every day, with readings every 5 minutes for the two hours after each.
    """
    readings, treatments = [], []
    for day in range(days):
        for hour, target in ((8, 150.0), (20, 50.0)):
            t0 = DAY0 + timedelta(days=day, hours=hour)
            for i in range(25):
                value = 250.0 + (target - 250.0) * i / 24
                readings.append(GlucoseReading(timestamp=t0 + timedelta(minutes=5 * i), value=value))
            treatments.append(Treatment(timestamp=t0, insulin=2.0, event_type="Correction Bolus"))
    return readings, treatments


def meal_pattern(carbs: float, peak_rise: float = 40.0, icr: float = 10.0) -> MealPattern:
    return MealPattern(
        time_of_day=0.5,
        carb_amount=carbs,
        insulin_given=carbs / icr,
        pre_meal_bg=120.0,
        peak_bg_rise=peak_rise,
        actual_icr=icr,
        glucose_curve=[120.0] * 12,
        last_seen=DAY0,
    )


class TestSelection:
    """Tests for the conservative candidate selection."""

    def test_short_horizon_takes_highest(self, now):
        """Within 30 minutes the highest candidate wins."""
        point = select_conservative(candidate_points([100, 150, 120, 130, 110], now), 30)
        assert point.value == 150

    def test_mid_horizon_blends(self, now):
        """Up to 2 hours candidates are blended with fixed weights."""
        point = select_conservative(candidate_points([100, 150, 120, 130, 110], now), 60)
        assert point.value == pytest.approx(125.5)
        assert point.confidence == pytest.approx(50.0)

    def test_long_horizon_uses_carb_curve(self, now):
        """Beyond 2 hours the carb-aware candidate is used."""
        point = select_conservative(candidate_points([100, 150, 120, 130, 110], now), 150)
        assert point.value == 150

    def test_ties_keep_first_candidate(self, now):
        """Equal values keep the insulin-only candidate."""
        points = candidate_points([120, 120, 120, 120, 120], now)
        assert select_conservative(points, 10) is points[0]


class TestEnsemblePrediction:
    """Tests for EnsembleForecastEngine.predict."""

    def test_flat_prediction_shape(self, settings, flat_readings, now):
        """Flat history without treatments forecasts a flat curve."""
        engine = EnsembleForecastEngine(DiabetesParameters(), settings)
        result = engine.predict(120.0, flat_readings, [], now=now)

        assert result.method == "ensemble"
        assert len(result.short_term) == 24
        assert len(result.long_term) == 24
        assert all(p.value == pytest.approx(120.0) for p in result.short_term + result.long_term)
        assert result.short_term[0].time == now + timedelta(minutes=5)
        assert result.long_term[0].time == now + timedelta(minutes=15)
        assert result.long_term[-1].time == now + timedelta(hours=6)

    def test_long_term_confidence_factor(self, settings, flat_readings, now):
        """Long term points carry 80% of the step's confidence."""
        result = EnsembleForecastEngine(settings=settings).predict(120.0, flat_readings, [], now=now)
        assert result.long_term[0].confidence == pytest.approx(result.short_term[2].confidence * 0.8)

    def test_values_stay_in_safety_range(self, settings, make_readings, now):
        """Extreme glucose and treatments stay within 20-500 mg/dL."""
        engine = EnsembleForecastEngine(DiabetesParameters(isf=150.0), settings)

        rising = make_readings([400, 420, 440, 460])
        high = engine.predict(480.0, rising, [Treatment(timestamp=now, carbs=150.0)], now=now)
        assert all(20.0 <= p.value <= 500.0 for p in high.short_term + high.long_term)

        falling = make_readings([120, 100, 80, 60])
        heavy = [Treatment(timestamp=now - timedelta(minutes=30), insulin=25.0)]
        low = engine.predict(60.0, falling, heavy, now=now)
        assert all(20.0 <= p.value <= 500.0 for p in low.short_term + low.long_term)
        assert low.low_in_minutes is not None

    def test_bolus_lowers_forecast(self, settings, flat_readings, now):
        """Insulin on board pulls the forecast down."""
        treatments = [Treatment(timestamp=now - timedelta(minutes=10), insulin=3.0)]
        result = EnsembleForecastEngine(DiabetesParameters(), settings).predict(
            200.0, flat_readings, treatments, now=now
        )
        assert result.long_term[-1].value < 200.0
        assert result.iob > 0

    def test_rising_glucose_detected(self, settings, make_readings, now):
        """A rise without treatments is carried forward."""
        readings = make_readings([100, 105, 110, 115, 120])
        result = EnsembleForecastEngine(settings=settings).predict(120.0, readings, [], now=now)

        assert result.based_on_trend == pytest.approx(5.0)
        assert result.short_term[0].value > 120.0

    def test_invalid_icr_holds_value(self, settings, flat_readings, now):
        """A non-positive ICR holds the current value with low confidence."""
        engine = EnsembleForecastEngine(DiabetesParameters(icr=0.0), settings)
        result = engine.predict(140.0, flat_readings, [], now=now)

        assert all(p.value == 140.0 for p in result.short_term)
        assert all(p.confidence == 20.0 for p in result.short_term)

    def test_zero_circadian_icr_holds_value(self, settings, flat_readings, now):
        """A zero hourly ICR factor holds the value instead of dividing by zero."""
        profile = CircadianProfile.model_construct(
            hourly_sensitivity=[1.0] * 24, hourly_icr=[0.0] * 24, hourly_counts=[0] * 24, version=0
        )
        engine = EnsembleForecastEngine(settings=settings, state=EngineState(circadian=profile))
        treatments = [Treatment(timestamp=now - timedelta(minutes=10), carbs=30.0)]

        result = engine.predict(140.0, flat_readings, treatments, now=now)

        assert all(p.value == 140.0 for p in result.short_term)
        assert all(p.confidence == 20.0 for p in result.short_term)

    def test_profile_rejects_non_positive_factors(self):
        """Stored profiles with zero or negative factors fail validation."""
        with pytest.raises(ValidationError):
            CircadianProfile(hourly_icr=[0.0] * 24)
        with pytest.raises(ValidationError):
            CircadianProfile(hourly_sensitivity=[-1.0] + [1.0] * 23)

    def test_iob_and_cob(self, settings, now):
        """Treatments given now are fully on board."""
        engine = EnsembleForecastEngine(settings=settings)
        treatments = [Treatment(timestamp=now, insulin=2.0, carbs=50.0)]

        assert engine.calculate_iob(treatments, now) == pytest.approx(2.0)
        assert engine.calculate_cob(treatments, now) == pytest.approx(50.0)
        assert engine.calculate_iob_duration(treatments, now) == pytest.approx(300.0)

    def test_calculate_trend(self, make_readings, now):
        """Trend averages recent 5-minute deltas."""
        assert EnsembleForecastEngine.calculate_trend(make_readings([100, 105, 110, 115]), now) == pytest.approx(5.0)

        stale = make_readings([100, 105, 110, 115], end=now - timedelta(minutes=30))
        assert EnsembleForecastEngine.calculate_trend(stale, now) == 0.0


class TestEnsembleLearning:
    """Tests for EnsembleForecastEngine learning."""

    def test_learning_needs_enough_data(self, settings, flat_readings, sample_treatments):
        """Learning is skipped with too few readings or treatments."""
        engine = EnsembleForecastEngine(settings=settings)
        before = engine.state

        assert engine.learn_from_history(flat_readings, sample_treatments) is before
        assert engine.circadian_profile.version == 0

    def test_circadian_learning(self, settings):
        """Hourly sensitivity moves halfway toward the learned factor."""
        readings, treatments = correction_history()
        engine = EnsembleForecastEngine(DiabetesParameters(), settings)

        engine.learn_from_history(readings, treatments)
        profile = engine.circadian_profile

        # Global median ISF 75: 08:00 runs at 50, 20:00 at 100
        assert profile.hourly_sensitivity[8] == pytest.approx(0.5 * 0.8 + 0.5 * (50 / 75))
        assert profile.hourly_sensitivity[20] == pytest.approx(0.5 * 1.1 + 0.5 * (100 / 75))
        assert profile.hourly_sensitivity[3] == pytest.approx(0.8)
        assert profile.hourly_counts[8] == 6
        assert profile.version == 1
        assert engine.pattern_stats() == (0, 2)

    def test_circadian_unchanged_without_samples(self, settings):
        """With too few samples the prior profile is kept."""
        readings, treatments = correction_history(days=2)
        engine = EnsembleForecastEngine(settings=settings)

        from glucocast.ml.feature_engineering import GlucoseTimeline

        prior = CircadianProfile()
        learned = engine.learn_circadian(GlucoseTimeline(readings), treatments, prior)
        assert learned == prior
        assert learned is not prior

    def test_initial_state_from_parameters(self, settings):
        """A stored circadian profile seeds the engine state."""
        profile = CircadianProfile(version=4)
        engine = EnsembleForecastEngine(DiabetesParameters(circadian_profile=profile), settings)
        assert engine.circadian_profile.version == 4
        assert engine.autosens_ratio == 1.0

    def test_autosens_clamped(self, settings, make_readings, now):
        """Flat glucose after a large bolus means resistance, clamped to 1.2."""
        readings = make_readings([120.0] * 61)
        treatments = [Treatment(timestamp=now - timedelta(hours=5), insulin=20.0)]
        engine = EnsembleForecastEngine(DiabetesParameters(), settings)

        assert engine.calculate_autosens(readings, treatments, now) == pytest.approx(1.2)

    def test_autosens_needs_ten_intervals(self, settings, make_readings, now):
        """Too few intervals yields no ratio."""
        readings = make_readings([120.0] * 5)
        treatments = [Treatment(timestamp=now - timedelta(minutes=60), insulin=20.0)]
        engine = EnsembleForecastEngine(settings=settings)

        assert engine.calculate_autosens(readings, treatments, now) is None

    def test_state_replaced_on_learning(self, settings):
        """Learning swaps in a new state value."""
        readings, treatments = correction_history()
        engine = EnsembleForecastEngine(settings=settings, state=EngineState(sensitivity_ratio=0.9))
        before = engine.state

        after = engine.learn_from_history(readings, treatments)
        assert after is engine.state
        assert after is not before
        assert before.circadian.version == 0


class TestPatternLibraries:
    """Tests for meal and correction pattern merging."""

    def test_similar_meals_merge(self):
        """Similar meals merge with an exponential moving average."""
        patterns = []
        _add_meal_pattern(patterns, meal_pattern(50.0, peak_rise=40.0, icr=10.0))
        _add_meal_pattern(patterns, meal_pattern(55.0, peak_rise=60.0, icr=15.0))

        assert len(patterns) == 1
        assert patterns[0].count == 2
        assert patterns[0].peak_bg_rise == pytest.approx(44.0)
        assert patterns[0].actual_icr == pytest.approx(11.0)

    def test_meal_library_capped(self):
        """The meal library holds at most 100 patterns."""
        patterns = []
        for i in range(150):
            _add_meal_pattern(patterns, meal_pattern(float(i * 20)))
        assert len(patterns) == MAX_MEAL_PATTERNS

    def test_correction_merge(self):
        """Similar corrections merge their ISF."""
        from glucocast.services.ensemble_engine import CorrectionPattern

        def correction(isf):
            return CorrectionPattern(
                time_of_day=0.3, starting_bg=250.0, insulin_given=2.0,
                bg_drop=isf * 2, time_to_nadir=120.0, actual_isf=isf, last_seen=DAY0,
            )

        patterns = []
        _add_correction_pattern(patterns, correction(50.0))
        _add_correction_pattern(patterns, correction(100.0))

        assert len(patterns) == 1
        assert patterns[0].actual_isf == pytest.approx(60.0)
        assert patterns[0].count == 2
