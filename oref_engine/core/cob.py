from __future__ import annotations

import logging
from typing import Iterable, List, Optional

from oref_engine.config import COB_DEVIATION_WINDOW_MINUTES
from oref_engine.core.deviations import BucketDeviation, bucket_glucose, deviation_series
from oref_engine.core.glucose_status import valid_readings
from oref_engine.core.iob import IobCalculator
from oref_engine.core.profile import carb_ratio_lookup
from oref_engine.core.rounding import round_half_up
from oref_engine.structs import GlucoseReading, MealData, Profile, Treatment

logger = logging.getLogger(__name__)

HOUR_MS = 3_600_000
MINUTE_MS = 60_000


def _readings_since_meal(readings, meal_time):
    # newest first; keep everything after the meal plus one pre-meal reading
    out = []
    for r in readings:
        out.append(r)
        if r.timestamp < meal_time:
            break
    return out


def carbs_absorbed(profile: Profile, series: List[BucketDeviation], meal_time: int) -> float:
    """Grams absorbed since ``meal_time`` inferred from deviations (newest first).

    Each 5m interval absorbs at least ``min_5m_carbimpact`` worth of carbs, so a
    flat or falling BG never adds carbs back.
    """
    if not series:
        return 0.0
    current_deviation = series[0].avg_deviation
    absorbed = 0.0
    for d in series:
        if d.timestamp <= meal_time:
            continue
        ci = max(d.deviation, current_deviation / 2, profile.min_5m_carbimpact)
        absorbed += ci * carb_ratio_lookup(profile, d.timestamp) / d.sens
    return absorbed


class DeviationStats:
    def __init__(self):
        self.current: Optional[float] = None
        self.max = 0.0
        self.min = 999.0
        self.slope_from_max = 0.0
        self.slope_from_min = 999.0
        self.all: List[int] = []


def deviation_stats(series: List[BucketDeviation], time: int) -> DeviationStats:
    """Current, max and min deviation over the last ~45 minutes."""
    stats = DeviationStats()
    for i, d in enumerate(series):
        if i == 0:
            stats.current = d.avg_deviation
            if time > d.timestamp:
                stats.all.append(int(round_half_up(stats.current)))
            continue
        if time <= d.timestamp:
            continue
        avg_dev = d.avg_deviation
        slope = (avg_dev - stats.current) / (d.timestamp - time) * MINUTE_MS * 5
        if avg_dev > stats.max:
            stats.slope_from_max = min(0.0, slope)
            stats.max = avg_dev
        if avg_dev < stats.min:
            stats.slope_from_min = max(0.0, slope)
            stats.min = avg_dev
        stats.all.append(int(round_half_up(avg_dev)))
    return stats


def calculate_meal(
    profile: Profile,
    glucose: Iterable[GlucoseReading],
    treatments: Iterable[Treatment],
    time: int,
) -> MealData:
    """Carbs on board and recent deviation statistics at ``time``."""
    calc = IobCalculator(profile, treatments, time)
    readings = [r for r in valid_readings(glucose) if r.timestamp <= time]

    window_start = time - int(profile.max_meal_absorption_time * HOUR_MS)
    entries = [t for t in calc.treatments if t.carbs >= 1 and window_start < t.timestamp <= time]

    carbs = 0.0
    meal_cob = None
    last_carb_time = 0
    # newest meal first: each older entry is checked against everything absorbed since it
    for entry in sorted(entries, key=lambda t: t.timestamp, reverse=True):
        carbs += entry.carbs
        last_carb_time = max(last_carb_time, entry.timestamp)
        buckets = bucket_glucose(_readings_since_meal(readings, entry.timestamp))
        absorbed = carbs_absorbed(profile, deviation_series(profile, buckets, calc), entry.timestamp)
        my_cob = max(0.0, carbs - absorbed)
        meal_cob = my_cob if meal_cob is None else max(meal_cob, my_cob)
        logger.debug("meal at %d: carbs=%.1f absorbed=%.1f cob=%.1f", entry.timestamp, carbs, absorbed, my_cob)

    recent_start = time - COB_DEVIATION_WINDOW_MINUTES * MINUTE_MS
    recent = [r for r in readings if r.timestamp >= recent_start]
    stats = deviation_stats(deviation_series(profile, bucket_glucose(recent), calc), time)

    meal_cob = min(profile.max_cob, meal_cob or 0.0)
    if stats.current is None:
        # no way to tell whether carbs are absorbing
        meal_cob = 0.0

    return MealData(
        carbs=round_half_up(carbs, 3),
        meal_cob=round_half_up(meal_cob),
        current_deviation=round_half_up(stats.current or 0.0, 2),
        max_deviation=round_half_up(stats.max, 2),
        min_deviation=round_half_up(stats.min, 2),
        slope_from_max_deviation=round_half_up(stats.slope_from_max, 3),
        slope_from_min_deviation=round_half_up(stats.slope_from_min, 3),
        all_deviations=stats.all,
        last_carb_time=last_carb_time,
    )
