"""
IOB/COB Calculation Service for glucocast

Implements the absorption curves shared by the forecasters:
- Bilinear insulin remaining fraction over the DIA window (peak near 75 min)
- Logistic cumulative carb absorption over a fixed window
- Exponential insulin activity curve used by the ensemble engine
- Size-dependent logistic carb absorption with a minimum carb impact floor

and the standalone Insulin on Board / Carbs on Board figures.
"""
import logging
import math
from datetime import datetime, timezone
from typing import List, Optional

from glucocast.exceptions import NumericGuardError
from glucocast.models.schemas import DiabetesParameters, Treatment

logger = logging.getLogger(__name__)


INSULIN_PEAK_MINUTES = 75.0
CARB_ABSORPTION_MINUTES = 180.0


# ==================== Curves ====================

def insulin_remaining(minutes: float, dia_minutes: float, peak_minutes: float = INSULIN_PEAK_MINUTES) -> float:
    """
    Fraction of a bolus still active after the given minutes.

    Only 10% is used during the rising phase up to the peak, the remaining
    90% decays linearly until the end of the DIA window.
    """
    if minutes <= 0:
        return 1.0
    if minutes >= dia_minutes:
        return 0.0

    if minutes < peak_minutes:
        return 1 - (minutes / peak_minutes) * 0.1

    decay_window = dia_minutes - peak_minutes
    if decay_window <= 0:
        return 0.0
    return 0.9 * ((dia_minutes - minutes) / decay_window)


def carbs_absorbed(carbs: float, minutes: float, absorption_minutes: float = CARB_ABSORPTION_MINUTES) -> float:
    """Grams absorbed after the given minutes (logistic centered mid-window)."""
    if minutes <= 0:
        return 0.0
    if minutes >= absorption_minutes:
        return carbs

    progress = minutes / absorption_minutes
    return carbs / (1 + math.exp(-10 * (progress - 0.5)))


def exponential_insulin_remaining(
    minutes: float,
    peak_minutes: float = INSULIN_PEAK_MINUTES,
    dia_minutes: float = 300.0,
) -> float:
    """
    Fraction of a bolus still active using the exponential activity curve.

    Activity(t) = (t / tau^2) * exp(-t / tau), integrated and scaled so the
    curve reaches zero at the end of the DIA window.
    """
    if minutes <= 0:
        return 1.0
    if minutes >= dia_minutes:
        return 0.0

    tau = peak_minutes * (1 - peak_minutes / dia_minutes)
    if tau <= 0:
        tau = peak_minutes * 0.75

    a = 2 * tau / dia_minutes
    s = 1 / (1 - a + (1 + a) * math.exp(-dia_minutes / tau))

    remaining = 1 - s * (1 - (1 + minutes / tau) * math.exp(-minutes / tau))
    if not math.isfinite(remaining):
        raise NumericGuardError(f"insulin curve diverged at {minutes} min")
    return max(0.0, min(1.0, remaining))


def meal_carbs_absorbed(
    carbs: float,
    minutes: float,
    isf: float,
    icr: float,
    absorption_minutes: float = CARB_ABSORPTION_MINUTES,
    min_5m_carb_impact: float = 8.0,
) -> float:
    """
    Grams absorbed after the given minutes with meal-size dependent timing.

    Large meals (>60 g) absorb 30% slower, snacks (<20 g) 30% faster. The
    absorbed amount never falls below the minimum 5-minute carb impact.
    """
    if minutes <= 0:
        return 0.0

    if carbs > 60:
        absorption_minutes *= 1.3
    elif carbs < 20:
        absorption_minutes *= 0.7

    if minutes >= absorption_minutes:
        return carbs

    progress = minutes / absorption_minutes
    absorbed = carbs / (1 + math.exp(-8.0 * (progress - 0.35)))

    if isf > 0 and icr > 0:
        min_absorbed = (minutes / 5) * (min_5m_carb_impact / (isf / icr))
        absorbed = max(absorbed, min_absorbed)

    return min(absorbed, carbs)


# ==================== Service ====================

class IOBCOBService:
    """Service for calculating Insulin on Board and Carbs on Board."""

    def __init__(
        self,
        dia_hours: float = 4.0,
        carb_absorption_rate: float = 30.0,
        total_daily_carbs: float = 0.0,
    ):
        """
        Initialize IOB/COB service.

        Args:
            dia_hours: Duration of insulin action in hours
            carb_absorption_rate: Carb absorption in grams per hour
            total_daily_carbs: Average daily carbs, sets the COB window
        """
        self.dia_hours = dia_hours
        self.carb_absorption_rate = carb_absorption_rate
        self.total_daily_carbs = total_daily_carbs

    @classmethod
    def from_parameters(cls, params: DiabetesParameters) -> "IOBCOBService":
        """Create service instance from a parameter snapshot."""
        return cls(
            dia_hours=params.dia,
            carb_absorption_rate=params.carb_absorption_rate,
            total_daily_carbs=params.total_daily_carbs,
        )

    @property
    def dia_minutes(self) -> float:
        return self.dia_hours * 60

    @property
    def cob_window_minutes(self) -> float:
        """Absorption window for the average meal, clamped to 2-6 hours."""
        if self.carb_absorption_rate > 0:
            window = self.total_daily_carbs / self.carb_absorption_rate * 60
        else:
            window = 0.0
        return max(120.0, min(360.0, window))

    def calculate_iob(
        self,
        treatments: List[Treatment],
        at_time: Optional[datetime] = None
    ) -> float:
        """
        Calculate Insulin on Board at a specific time.

        Args:
            treatments: Recent treatments
            at_time: Time to calculate IOB for (default: now)

        Returns:
            Total IOB in units
        """
        if not treatments:
            return 0.0

        at_time = at_time or datetime.now(timezone.utc)
        total_iob = 0.0

        for treatment in treatments:
            if not treatment.is_bolus or treatment.timestamp > at_time:
                continue

            minutes_ago = (at_time - treatment.timestamp).total_seconds() / 60
            if minutes_ago > self.dia_minutes:
                continue

            total_iob += treatment.insulin * insulin_remaining(minutes_ago, self.dia_minutes)

        return round(total_iob, 2)

    def calculate_iob_duration(
        self,
        treatments: List[Treatment],
        at_time: Optional[datetime] = None
    ) -> float:
        """Minutes until the most recent bolus has finished acting."""
        at_time = at_time or datetime.now(timezone.utc)
        latest: Optional[datetime] = None

        for treatment in treatments:
            if not treatment.is_bolus:
                continue
            if treatment.timestamp < at_time and (latest is None or treatment.timestamp > latest):
                latest = treatment.timestamp

        if latest is None:
            return 0.0

        remaining = self.dia_minutes - (at_time - latest).total_seconds() / 60
        return max(0.0, remaining)

    def calculate_cob(
        self,
        treatments: List[Treatment],
        at_time: Optional[datetime] = None
    ) -> float:
        """
        Calculate Carbs on Board at a specific time.

        Uses linear absorption over the average-meal window.

        Args:
            treatments: Recent treatments
            at_time: Time to calculate COB for (default: now)

        Returns:
            Total COB in grams
        """
        if not treatments:
            return 0.0

        at_time = at_time or datetime.now(timezone.utc)
        window = self.cob_window_minutes
        total_cob = 0.0

        for treatment in treatments:
            if not treatment.has_carbs or treatment.timestamp > at_time:
                continue

            minutes_ago = (at_time - treatment.timestamp).total_seconds() / 60
            if minutes_ago > window:
                continue

            remaining = treatment.carbs - (minutes_ago / window) * treatment.carbs
            if remaining > 0:
                total_cob += remaining

        return round(total_cob, 1)

    def calculate_cob_duration(self, cob: float) -> float:
        """Minutes until the remaining carbs are absorbed."""
        if cob <= 0 or self.carb_absorption_rate <= 0:
            return 0.0
        return cob / self.carb_absorption_rate * 60
