"""
Tests for the Parameter Analyzer
"""
import threading
from datetime import datetime, timedelta, timezone

import pytest

from glucocast.exceptions import CalculationCancelledError
from glucocast.models.schemas import GlucoseReading, Treatment
from glucocast.services.analyzer import ParameterAnalyzer, median, sample_confidence


DAY0 = datetime(2026, 3, 1, tzinfo=timezone.utc)


def correction_day(day: int, insulin: float = 4.0):
    """
    A correction at 08:00: flat 350 before, -10 mg/dL per 5 min for two
    hours down to 110, then flat.
    """
    t0 = DAY0 + timedelta(days=day, hours=8)
    readings = []
    for minutes in range(-60, 241, 5):
        if minutes <= 0:
            value = 350.0
        elif minutes <= 120:
            value = 350.0 - 10 * (minutes // 5)
        else:
            value = 110.0
        readings.append(GlucoseReading(timestamp=t0 + timedelta(minutes=minutes), value=value))
    treatment = Treatment(timestamp=t0, insulin=insulin, event_type="Correction Bolus")
    return readings, [treatment]


def meal_day(day: int):
    """
    A 50 g meal covered by 5 U at 13:00: 120 before, peak of 180 after an
    hour, back to 130 at three hours.
    """
    t0 = DAY0 + timedelta(days=day, hours=13)
    readings = []
    for minutes in range(-60, 241, 5):
        if minutes <= 0:
            value = 120.0
        elif minutes <= 60:
            value = 120.0 + minutes
        elif minutes <= 180:
            value = 180.0 - (minutes - 60) * 50.0 / 120.0
        else:
            value = 130.0
        readings.append(GlucoseReading(timestamp=t0 + timedelta(minutes=minutes), value=value))
    treatment = Treatment(timestamp=t0, insulin=5.0, carbs=50.0, event_type="Meal Bolus")
    return readings, [treatment]


def build_history(days, builder):
    readings, treatments = [], []
    for day in range(days):
        r, t = builder(day)
        readings.extend(r)
        treatments.extend(t)
    return readings, treatments


class TestHelpers:
    """Tests for the analyzer helpers."""

    def test_median_odd_and_even(self):
        """Median uses the middle pair for even counts."""
        assert median([3, 1, 2]) == 2
        assert median([4, 1, 3, 2]) == 2.5
        assert median([]) == 0.0

    def test_sample_confidence(self):
        """Confidence grows with samples, floored and capped."""
        assert sample_confidence(1, 5, 30) == 30
        assert sample_confidence(10, 5, 30) == 50
        assert sample_confidence(50, 5, 30) == 100


class TestParameterAnalyzer:
    """Tests for ParameterAnalyzer."""

    def test_counts_recorded(self, settings, now):
        """Entry and treatment counts are recorded on the snapshot."""
        readings = [
            GlucoseReading(timestamp=now - timedelta(minutes=10), value=110),
            GlucoseReading(timestamp=now - timedelta(minutes=5), value=120),
            GlucoseReading(timestamp=now, value=130),
        ]
        treatments = [Treatment(timestamp=now - timedelta(minutes=5), insulin=1.0)]

        params = ParameterAnalyzer(settings).analyze(readings, treatments, now=now)

        assert params.entries_analyzed == 3
        assert params.treatments_analyzed == 1
        assert params.calculated_at == now
        assert params.average_glucose == pytest.approx(120.0)

    def test_glucose_statistics(self, settings, now):
        """Time in range splits readings at the configured thresholds."""
        values = [50, 100, 150, 200]
        readings = [
            GlucoseReading(timestamp=now - timedelta(minutes=5 * i), value=v)
            for i, v in enumerate(values)
        ]
        params = ParameterAnalyzer(settings).analyze(readings, [], now=now)

        assert params.time_below_range == pytest.approx(25.0)
        assert params.time_above_range == pytest.approx(25.0)
        assert params.time_in_range == pytest.approx(50.0)
        assert params.gmi == pytest.approx(3.31 + 0.02392 * 125)

    def test_isf_from_corrections(self, settings):
        """ISF is the median drop per unit of clean corrections."""
        readings, treatments = build_history(3, correction_day)
        params = ParameterAnalyzer(settings).analyze(readings, treatments, now=DAY0 + timedelta(days=3))

        assert params.isf == pytest.approx(60.0)
        assert params.isf_confidence == pytest.approx(30.0)

    def test_isf_bucket_needs_min_samples(self, settings):
        """Morning ISF is learned once enough corrections exist."""
        readings, treatments = build_history(3, correction_day)
        params = ParameterAnalyzer(settings).analyze(readings, treatments, now=DAY0 + timedelta(days=3))
        assert params.isf_by_time_of_day["morning"] == pytest.approx(60.0)

        readings, treatments = build_history(2, lambda d: correction_day(d, insulin=3.0))
        params = ParameterAnalyzer(settings).analyze(readings, treatments, now=DAY0 + timedelta(days=3))
        # Two samples: bucket falls back to the global ISF
        assert params.isf_by_time_of_day["morning"] == params.isf

    def test_isf_outside_bounds_falls_back(self, settings):
        """Implausible ISF samples are rejected and the 1800 rule applies."""
        readings, treatments = build_history(1, lambda d: correction_day(d, insulin=1.0))
        params = ParameterAnalyzer(settings).analyze(readings, treatments, now=DAY0 + timedelta(days=1))

        # 240 mg/dL per unit exceeds the maximum ISF
        assert params.isf == pytest.approx(1800 / 1.0)
        assert params.isf_confidence == pytest.approx(30.0)

    def test_low_glucose_bolus_not_a_correction(self, settings, now):
        """Boluses given in range do not count as corrections."""
        readings = [
            GlucoseReading(timestamp=now - timedelta(minutes=5 * i), value=100)
            for i in range(60)
        ]
        treatments = [Treatment(timestamp=now - timedelta(hours=4), insulin=30.0)]
        params = ParameterAnalyzer(settings).analyze(readings, treatments, now=now)

        assert params.isf == pytest.approx(1800 / 30.0)
        assert params.icr == pytest.approx(500 / 30.0)
        assert params.isf_confidence == pytest.approx(30.0)
        assert params.icr_confidence == pytest.approx(30.0)

    def test_dia_from_time_to_stable(self, settings):
        """DIA follows the time until glucose stabilizes after corrections."""
        readings, treatments = build_history(5, correction_day)
        params = ParameterAnalyzer(settings).analyze(readings, treatments, now=DAY0 + timedelta(days=5))

        assert params.dia == pytest.approx(125 / 60)
        assert params.dia_confidence == pytest.approx(50.0)

    def test_dia_default_with_few_events(self, settings):
        """Fewer than the minimum corrections keeps the default DIA."""
        readings, treatments = build_history(4, correction_day)
        params = ParameterAnalyzer(settings).analyze(readings, treatments, now=DAY0 + timedelta(days=4))

        assert params.dia == 4.0
        assert params.dia_confidence == 20.0

    def test_icr_and_absorption_from_meals(self, settings):
        """ICR and absorption rate are learned from covered meals."""
        readings, treatments = build_history(3, meal_day)
        params = ParameterAnalyzer(settings).analyze(readings, treatments, now=DAY0 + timedelta(days=3))

        assert params.icr == pytest.approx(10.0)
        assert params.icr_by_time_of_day["midday"] == pytest.approx(10.0)
        assert params.carb_absorption_rate == pytest.approx(50 / 1.67, rel=1e-3)
        assert params.total_daily_carbs == pytest.approx(50.0)

    def test_confidence_grows_with_data(self, settings):
        """More accepted events never lower confidence."""
        analyzer = ParameterAnalyzer(settings)
        confidences = []
        for days in (1, 7, 14):
            readings, treatments = build_history(days, correction_day)
            params = analyzer.analyze(readings, treatments, now=DAY0 + timedelta(days=days))
            confidences.append(params.isf_confidence)
        assert confidences == sorted(confidences)
        assert confidences[-1] == pytest.approx(70.0)

    def test_analysis_is_deterministic(self, settings):
        """Identical inputs produce identical snapshots."""
        readings, treatments = build_history(5, correction_day)
        now = DAY0 + timedelta(days=5)
        analyzer = ParameterAnalyzer(settings)

        first = analyzer.analyze(readings, treatments, now=now)
        second = analyzer.analyze(list(reversed(readings)), list(reversed(treatments)), now=now)

        assert first.model_dump() == second.model_dump()

    def test_cancel_raises(self, settings, flat_readings):
        """A set cancel event stops the analysis."""
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(CalculationCancelledError):
            ParameterAnalyzer(settings).analyze(flat_readings, [], cancel_event=cancel)

    def test_progress_reporting(self, settings, flat_readings, now):
        """Progress ends at Complete, or at the last stage without finalize."""
        analyzer = ParameterAnalyzer(settings)

        analyzer.analyze(flat_readings, [], now=now)
        progress = analyzer.get_progress()
        assert progress.stage == "Complete"
        assert progress.progress == 100
        assert progress.total_entries == len(flat_readings)

        analyzer.analyze(flat_readings, [], now=now, finalize=False)
        assert analyzer.get_progress().progress == 95

    def test_cancel_progress(self, settings):
        """Cancelling resets progress to zero with a Cancelled stage."""
        analyzer = ParameterAnalyzer(settings)
        analyzer.update_progress("Calculating insulin sensitivity", 40)
        analyzer.cancel_progress()

        progress = analyzer.get_progress()
        assert progress.stage == "Cancelled"
        assert progress.progress == 0

    def test_progress_readable_from_other_thread(self, settings):
        """get_progress returns a copy safe to read while analysis runs."""
        analyzer = ParameterAnalyzer(settings)
        snapshot = analyzer.get_progress()
        analyzer.update_progress("Calculating daily averages", 25)
        assert snapshot.stage == "Idle"
        assert analyzer.get_progress().stage == "Calculating daily averages"
