from __future__ import annotations

import logging
from typing import Iterable, List, Sequence

from oref_engine.config import (
    AUTOSENS_FULL_DATA_POINTS,
    AUTOSENS_MAX_PAD,
    AUTOSENS_MIN_DEVIATIONS,
    AUTOSENS_WINDOW_HOURS,
)
from oref_engine.core.deviations import bucket_deviation, bucket_glucose
from oref_engine.core.glucose_status import valid_readings
from oref_engine.core.iob import IobCalculator
from oref_engine.core.profile import basal_lookup, carb_ratio_lookup, max_daily_basal
from oref_engine.core.rounding import round_half_up
from oref_engine.structs import AutosensResult, GlucoseReading, Profile, Treatment

logger = logging.getLogger(__name__)

HOUR_MS = 3_600_000


def percentile(sorted_values: Sequence[float], p: float) -> float:
    """oref percentile: linear between ``values[n*p]`` and its successor."""
    if not sorted_values:
        return 0.0
    if p <= 0:
        return sorted_values[0]
    if p >= 1:
        return sorted_values[-1]
    index = len(sorted_values) * p
    lower = int(index)
    upper = lower + 1
    weight = index % 1
    if upper >= len(sorted_values):
        return sorted_values[lower]
    return sorted_values[lower] * (1 - weight) + sorted_values[upper] * weight


def classify_deviations(profile: Profile, buckets, calc: IobCalculator, carb_entries: List[Treatment]):
    """Walk oldest-first buckets, returning (non-meal deviations, excluded count).

    Intervals with carbs absorbing, or with unannounced meal signs (high IOB
    or large positive deviations), are left out.
    """
    deviations = []
    excluded = 0
    meal_cob = 0.0
    meal_carbs = 0.0
    absorbing = False
    uam = False
    pending = list(carb_entries)

    for i in range(3, len(buckets)):
        d = bucket_deviation(profile, buckets[i], buckets[i - 1], buckets[i - 3], calc)
        deviation = d.deviation
        if d.glucose < 80 and deviation > 0:
            deviation = 0.0

        while pending and pending[0].timestamp < d.timestamp:
            meal_cob += pending[0].carbs
            meal_carbs += pending[0].carbs
            pending.pop(0)

        if meal_cob > 0:
            ci = max(deviation, profile.min_5m_carbimpact)
            meal_cob = max(0.0, meal_cob - ci * carb_ratio_lookup(profile, d.timestamp) / d.sens)

        if meal_cob > 0 or absorbing or meal_carbs > 0:
            absorbing = deviation > 0
            if not absorbing and not meal_cob:
                meal_carbs = 0.0
            kind = "csf"
        else:
            basal = basal_lookup(profile, d.timestamp)
            if d.iob.iob > 2 * basal or deviation > 6 or uam:
                uam = deviation > 0
                kind = "uam"
            else:
                kind = "non-meal"

        if kind == "non-meal":
            deviations.append(deviation)
        else:
            excluded += 1

    return deviations, excluded


def _neutral(profile, reason, count, excluded):
    return AutosensResult(
        ratio=1.0,
        new_isf=round_half_up(profile.sens),
        sens_result=reason,
        raw_ratio=1.0,
        deviation_count=count,
        excluded_count=excluded,
    )


def detect_sensitivity(
    profile: Profile,
    glucose: Iterable[GlucoseReading],
    treatments: Iterable[Treatment],
    time: int,
) -> AutosensResult:
    """Sensitivity ratio from the last 24h of non-meal deviations."""
    calc = IobCalculator(profile, treatments, time)
    start = time - AUTOSENS_WINDOW_HOURS * HOUR_MS
    readings = [r for r in valid_readings(glucose) if start <= r.timestamp <= time]
    buckets = list(reversed(bucket_glucose(readings)))

    carb_entries = [t for t in calc.treatments if t.carbs >= 1 and t.timestamp <= time]
    deviations, excluded = classify_deviations(profile, buckets, calc, carb_entries)

    if len(deviations) < AUTOSENS_MIN_DEVIATIONS:
        logger.debug("autosens: only %d deviations, using neutral ratio", len(deviations))
        return _neutral(profile, "Not enough data, sensitivity assumed normal", len(deviations), excluded)

    daily_basal = max_daily_basal(profile)
    if daily_basal <= 0:
        logger.debug("autosens: max daily basal %s, using neutral ratio", daily_basal)
        return _neutral(profile, "No basal to scale, sensitivity assumed normal", len(deviations), excluded)

    count = len(deviations)
    if count < AUTOSENS_FULL_DATA_POINTS:
        # less than 8h of data: dampen with zero deviations
        pad = int(round_half_up((1 - count / AUTOSENS_FULL_DATA_POINTS) * AUTOSENS_MAX_PAD))
        deviations = deviations + [0.0] * pad

    ordered = sorted(deviations)
    p50 = percentile(ordered, 0.50)

    basal_off = 0.0
    if p50 < 0:
        basal_off = p50 * (60 / 5) / profile.sens
        sens_result = "Excess insulin sensitivity detected"
    elif p50 > 0:
        basal_off = p50 * (60 / 5) / profile.sens
        sens_result = "Excess insulin resistance detected"
    else:
        sens_result = "Sensitivity normal"

    raw_ratio = 1 + basal_off / daily_basal
    ratio = min(profile.autosens_max, max(profile.autosens_min, raw_ratio))
    if ratio != raw_ratio:
        logger.debug("autosens ratio limited from %.3f to %.3f", raw_ratio, ratio)
    ratio = min(profile.autosens_max, max(profile.autosens_min, round_half_up(ratio, 2)))

    return AutosensResult(
        ratio=ratio,
        new_isf=round_half_up(profile.sens / ratio),
        sens_result=sens_result,
        raw_ratio=round_half_up(raw_ratio, 3),
        deviation_count=count,
        excluded_count=excluded,
    )
