from __future__ import annotations

import logging
import math

from oref_engine.core.profile import max_daily_basal
from oref_engine.core.rounding import round_half_up
from oref_engine.structs import CurrentTemp, DetermineBasalResult, Profile

logger = logging.getLogger(__name__)


def without_zeros(value: float) -> str:
    s = f"{value:.2f}"
    return s.rstrip("0").rstrip(".")


def round_basal(rate: float) -> float:
    """Pump-deliverable rate: 0.05 U/hr steps below 10 U/hr, 0.1 above."""
    if rate < 10:
        return round_half_up(rate * 20) / 20
    return round_half_up(rate * 10) / 10


def calculate_expected_delta(target_bg: float, eventual_bg: float, bgi: float) -> float:
    # BG change per 5m that would reach target in 2 hours
    five_min_blocks = (2 * 60) / 5
    target_delta = target_bg - eventual_bg
    return round_half_up(bgi + (target_delta / five_min_blocks), 1)


def get_max_safe_basal(profile: Profile) -> float:
    return min(
        profile.max_basal,
        profile.max_daily_safety_multiplier * max_daily_basal(profile),
        profile.current_basal_safety_multiplier * profile.current_basal,
    )


def set_temp_basal(
    rate: float,
    duration: float,
    profile: Profile,
    rt: DetermineBasalResult,
    currenttemp: CurrentTemp,
) -> DetermineBasalResult:
    max_safe_basal = get_max_safe_basal(profile)
    if rate < 0:
        rate = 0.0
    elif rate > max_safe_basal:
        rate = max_safe_basal

    suggested_rate = round_basal(rate)
    if suggested_rate > max_safe_basal:
        suggested_rate = math.floor(max_safe_basal * 20) / 20

    if (
        currenttemp.duration > (duration - 10)
        and currenttemp.duration <= 120
        and suggested_rate <= currenttemp.rate * 1.2
        and suggested_rate >= currenttemp.rate * 0.8
        and duration > 0
    ):
        rt.reason += (
            f" {without_zeros(currenttemp.duration)}m left and {without_zeros(currenttemp.rate)}"
            f" ~ req {without_zeros(suggested_rate)}U/hr: no temp required"
        )
        return rt

    if abs(suggested_rate - profile.current_basal) < 1e-9:
        if profile.skip_neutral_temps:
            if currenttemp.duration > 0:
                rt.reason += " Suggested rate is same as profile rate, a temp basal is active, canceling current temp"
                rt.duration = 0
                rt.rate = 0.0
                return rt
            rt.reason += " Suggested rate is same as profile rate, no temp basal is active, doing nothing"
            return rt
        rt.reason += f" Setting neutral temp basal of {without_zeros(profile.current_basal)}U/hr"

    rt.duration = duration
    rt.rate = suggested_rate
    logger.debug("set temp basal %.2f U/hr for %s min", suggested_rate, duration)
    return rt
