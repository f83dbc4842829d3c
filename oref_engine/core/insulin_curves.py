from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Tuple

from oref_engine.errors import ComputationError, InvalidProfile

logger = logging.getLogger(__name__)


class InsulinCurve(Enum):
    BILINEAR = "bilinear"
    RAPID_ACTING = "rapid-acting"
    ULTRA_RAPID = "ultra-rapid"

    @classmethod
    def parse(cls, value) -> "InsulinCurve":
        if isinstance(value, InsulinCurve):
            return value
        key = str(value or "").strip().lower().replace("_", "-").replace(" ", "-")
        aliases = {
            "bilinear": cls.BILINEAR,
            "rapid-acting": cls.RAPID_ACTING,
            "rapidacting": cls.RAPID_ACTING,
            "rapid": cls.RAPID_ACTING,
            "ultra-rapid": cls.ULTRA_RAPID,
            "ultrarapid": cls.ULTRA_RAPID,
        }
        if key not in aliases:
            raise InvalidProfile(f"unknown insulin curve: {value!r}")
        return aliases[key]

    @property
    def default_peak(self) -> float:
        return 55.0 if self is InsulinCurve.ULTRA_RAPID else 75.0

    @property
    def min_dia(self) -> float:
        return 3.0 if self is InsulinCurve.BILINEAR else 5.0

    @property
    def peak_bounds(self) -> Tuple[float, float]:
        if self is InsulinCurve.ULTRA_RAPID:
            return 35.0, 100.0
        return 50.0, 120.0


@dataclass(frozen=True)
class CurveParams:
    curve: InsulinCurve
    dia: float  # hours, already raised to the curve minimum
    peak: float  # minutes

    @property
    def end(self) -> float:
        return self.dia * 60.0


def curve_params(profile) -> CurveParams:
    """Effective curve, DIA and peak time for a profile."""
    curve = InsulinCurve.parse(profile.curve)
    if profile.dia is None or profile.dia <= 0:
        raise InvalidProfile(f"dia must be positive, got {profile.dia}")

    dia = profile.dia
    if dia < curve.min_dia:
        logger.debug("dia %.1f below %s minimum, using %.1f", dia, curve.value, curve.min_dia)
        dia = curve.min_dia

    peak = curve.default_peak
    if curve is not InsulinCurve.BILINEAR and profile.use_custom_peak_time and profile.insulin_peak_time:
        lo, hi = curve.peak_bounds
        peak = min(hi, max(lo, float(profile.insulin_peak_time)))

    return CurveParams(curve=curve, dia=dia, peak=peak)


# --- oref0 bilinear model ---
# peak 75 min, end 180 min on a 3h DIA, stretched for longer DIAs
def bilinear(mins_ago: float, dia: float) -> Tuple[float, float]:
    if mins_ago < 0:
        return 1.0, 0.0

    default_dia = 3.0
    peak = 75.0
    end = 180.0

    time_scalar = default_dia / dia
    scaled = time_scalar * mins_ago

    activity_peak = 2.0 / (dia * 60.0)
    slope_up = activity_peak / peak
    slope_down = -1.0 * (activity_peak / (end - peak))

    if scaled < peak:
        activity = slope_up * scaled
        x1 = scaled / 5.0 + 1.0
        iob = -0.001852 * x1 * x1 + 0.001852 * x1 + 1.0
    elif scaled < end:
        activity = activity_peak + slope_down * (scaled - peak)
        x2 = (scaled - peak) / 5.0
        iob = 0.001323 * x2 * x2 - 0.054233 * x2 + 0.555560
    else:
        return 0.0, 0.0

    # the quadratic fit dips slightly below zero just before the end
    return min(1.0, max(0.0, iob)), max(0.0, activity)


# --- exponential model (rapid-acting / ultra-rapid) ---
def exponential(mins_ago: float, dia: float, peak: float) -> Tuple[float, float]:
    end = dia * 60.0
    if mins_ago < 0:
        return 1.0, 0.0
    if mins_ago >= end:
        return 0.0, 0.0
    if 2.0 * peak >= end:
        raise ComputationError(f"peak {peak} min too late for dia {dia} h")

    tau = peak * (1 - peak / end) / (1 - 2 * peak / end)
    a = 2 * tau / end
    s = 1 / (1 - a + (1 + a) * math.exp(-end / tau))

    t = mins_ago
    # oref0 iobCalcExponential: activity = (S/tau^2)*t*(1-t/end)*exp(-t/tau), zero at end
    activity = (s / tau**2) * t * (1 - t / end) * math.exp(-t / tau)
    iob = 1 - s * (1 - a) * ((t**2 / (tau * end * (1 - a)) - t / tau - 1) * math.exp(-t / tau) + 1)

    if not (math.isfinite(iob) and math.isfinite(activity)):
        raise ComputationError(f"non-finite insulin curve at t={t} dia={dia} peak={peak}")
    return min(1.0, max(0.0, iob)), max(0.0, activity)


def insulin_effect(params: CurveParams, mins_ago: float) -> Tuple[float, float]:
    """Return (remaining fraction, activity per unit per minute)."""
    if params.curve is InsulinCurve.BILINEAR:
        return bilinear(mins_ago, params.dia)
    return exponential(mins_ago, params.dia, params.peak)
