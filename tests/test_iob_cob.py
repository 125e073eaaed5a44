"""
Tests for IOB/COB Calculation Service
"""
from datetime import timedelta

import pytest

from glucocast.models.schemas import DiabetesParameters, Treatment
from glucocast.services.iob_cob_service import (
    IOBCOBService,
    carbs_absorbed,
    exponential_insulin_remaining,
    insulin_remaining,
    meal_carbs_absorbed,
)


class TestCurves:
    """Tests for the absorption curves."""

    def test_insulin_remaining_bounds(self):
        """Insulin curve starts at 1 and ends at 0."""
        assert insulin_remaining(0, 240) == 1.0
        assert insulin_remaining(-5, 240) == 1.0
        assert insulin_remaining(240, 240) == 0.0
        assert insulin_remaining(400, 240) == 0.0

    def test_insulin_remaining_rising_phase(self):
        """Only 10% is used up to the peak."""
        assert insulin_remaining(75, 240) == pytest.approx(0.9)
        assert insulin_remaining(37.5, 240) == pytest.approx(0.95)

    def test_insulin_remaining_monotonic(self):
        """Remaining fraction never increases."""
        values = [insulin_remaining(m, 240) for m in range(0, 250, 5)]
        assert all(b <= a for a, b in zip(values, values[1:]))

    def test_carbs_absorbed_midpoint(self):
        """Half the carbs are absorbed at mid-window."""
        assert carbs_absorbed(40, 90, 180) == pytest.approx(20.0)
        assert carbs_absorbed(40, 0) == 0.0
        assert carbs_absorbed(40, 200) == 40.0

    def test_exponential_curve_bounds(self):
        """Exponential curve stays in [0, 1] and is monotonic."""
        values = [exponential_insulin_remaining(m) for m in range(0, 310, 10)]
        assert values[0] == 1.0
        assert values[-1] == 0.0
        assert all(0.0 <= v <= 1.0 for v in values)
        assert all(b <= a + 1e-9 for a, b in zip(values, values[1:]))

    def test_meal_carbs_never_exceed_total(self):
        """Absorbed carbs are capped at the meal size."""
        for minutes in range(0, 400, 15):
            absorbed = meal_carbs_absorbed(50, minutes, isf=50, icr=10)
            assert 0.0 <= absorbed <= 50.0

    def test_meal_carbs_minimum_impact(self):
        """The minimum carb impact sets a floor early on."""
        # 8 mg/dL per 5 min at 5 mg/dL per gram -> 1.6 g per 5 min
        absorbed = meal_carbs_absorbed(100, 5, isf=50, icr=10)
        assert absorbed >= 1.6


class TestIOBCOBService:
    """Tests for IOBCOBService."""

    def test_iob_no_treatments(self, now):
        """IOB is zero with no treatments."""
        service = IOBCOBService()
        assert service.calculate_iob([], now) == 0.0

    def test_iob_recent_bolus(self, now):
        """IOB of a bolus given an hour ago."""
        service = IOBCOBService(dia_hours=4.0)
        treatments = [Treatment(timestamp=now - timedelta(minutes=60), insulin=5.0)]
        assert service.calculate_iob(treatments, now) == pytest.approx(4.6)

    def test_iob_decay_phase(self, now):
        """IOB during the linear decay after the peak."""
        service = IOBCOBService(dia_hours=4.0)
        treatments = [Treatment(timestamp=now - timedelta(minutes=150), insulin=5.0)]
        assert service.calculate_iob(treatments, now) == pytest.approx(2.45)

    def test_iob_ignores_future_and_expired(self, now):
        """Future boluses and expired boluses do not count."""
        service = IOBCOBService(dia_hours=4.0)
        treatments = [
            Treatment(timestamp=now + timedelta(minutes=10), insulin=5.0),
            Treatment(timestamp=now - timedelta(hours=5), insulin=5.0),
        ]
        assert service.calculate_iob(treatments, now) == 0.0

    def test_iob_ignores_temp_basal(self, now):
        """Temp basal records are not boluses."""
        service = IOBCOBService()
        treatments = [Treatment(timestamp=now - timedelta(minutes=10), insulin=1.0, event_type="Temp Basal")]
        assert service.calculate_iob(treatments, now) == 0.0

    def test_iob_duration(self, now):
        """IOB duration counts down from the latest bolus."""
        service = IOBCOBService(dia_hours=4.0)
        treatments = [
            Treatment(timestamp=now - timedelta(minutes=100), insulin=2.0),
            Treatment(timestamp=now - timedelta(minutes=40), insulin=1.0),
        ]
        assert service.calculate_iob_duration(treatments, now) == pytest.approx(200.0)

    def test_cob_linear_absorption(self, now):
        """COB decays linearly over the minimum window."""
        service = IOBCOBService(carb_absorption_rate=30.0, total_daily_carbs=0.0)
        treatments = [Treatment(timestamp=now - timedelta(minutes=60), carbs=60.0)]
        assert service.cob_window_minutes == 120.0
        assert service.calculate_cob(treatments, now) == pytest.approx(30.0)

    def test_cob_window_clamped(self):
        """COB window stays within 2-6 hours."""
        assert IOBCOBService(carb_absorption_rate=30.0, total_daily_carbs=100.0).cob_window_minutes == 200.0
        assert IOBCOBService(carb_absorption_rate=30.0, total_daily_carbs=1000.0).cob_window_minutes == 360.0
        assert IOBCOBService(carb_absorption_rate=0.0, total_daily_carbs=100.0).cob_window_minutes == 120.0

    def test_cob_duration(self):
        """COB duration follows the absorption rate."""
        service = IOBCOBService(carb_absorption_rate=30.0)
        assert service.calculate_cob_duration(15.0) == pytest.approx(30.0)
        assert service.calculate_cob_duration(0.0) == 0.0

    def test_from_parameters(self):
        """Service picks up DIA and absorption from parameters."""
        params = DiabetesParameters(dia=5.0, carb_absorption_rate=25.0, total_daily_carbs=150.0)
        service = IOBCOBService.from_parameters(params)
        assert service.dia_minutes == 300.0
        assert service.carb_absorption_rate == 25.0
        assert service.total_daily_carbs == 150.0
