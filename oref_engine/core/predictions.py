"""BG forecasts stepped in 5 minute ticks.

Four curves come from the same IOB projection: IOB (insulin only, current
deviation decaying over an hour), ZT (insulin with a zero temp from now),
COB (observed plus assumed remaining carb absorption) and UAM (current
deviation continuing along its recent slope). The blended curve combines
COB and UAM by the fraction of carbs still unabsorbed and is the one whose
last value becomes the eventual BG.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import List, Optional

from oref_engine.config import PRED_BG_MAX, PRED_BG_MIN
from oref_engine.core.rounding import round_half_up
from oref_engine.errors import ComputationError
from oref_engine.structs import IobPair, MealData, Predictions

logger = logging.getLogger(__name__)

MAX_CARB_ABSORPTION_RATE = 30  # g/h, used when no absorption is observed yet
ASSUMED_CARB_ABSORPTION_RATE = 20  # g/h
REMAINING_CA_TIME_MIN = 3.0  # h
INSULIN_PEAK_5M = 90 / 60 * 12  # wait 90m before trusting minimum predictions


def remaining_ca_time(meal: MealData, sensitivity_ratio: float, time: int) -> float:
    """Hours of carb absorption still expected."""
    remaining_min = REMAINING_CA_TIME_MIN / sensitivity_ratio
    if not meal.carbs:
        return remaining_min
    remaining_min = max(remaining_min, meal.meal_cob / ASSUMED_CARB_ABSORPTION_RATE)
    last_carb_age = round_half_up((time - meal.last_carb_time) / 60000)
    return round_half_up(remaining_min + 1.5 * last_carb_age / 60, 1)


def horizon_ticks(dia_hours: float, meal: MealData, sensitivity_ratio: float, time: int) -> int:
    """5m ticks to the longer of insulin action and remaining carb absorption."""
    hours = dia_hours
    if meal.carbs:
        hours = max(hours, remaining_ca_time(meal, sensitivity_ratio, time))
    return int(math.ceil(hours * 12))


@dataclass
class PredictionInputs:
    bg: float
    min_delta: float
    bgi: float
    sens: float
    carb_ratio: float
    sensitivity_ratio: float
    target_bg: float
    threshold: float
    meal: MealData
    time: int
    enable_uam: bool = False
    remaining_carbs_cap: float = 90.0
    remaining_carbs_fraction: float = 1.0


@dataclass
class PredictionResult:
    predictions: Predictions
    eventual_bg: float
    min_pred_bg: float
    min_guard_bg: float
    avg_pred_bg: float
    min_iob_pred_bg: float
    min_cob_pred_bg: float
    min_uam_pred_bg: float
    min_zt_guard_bg: float
    ci: float
    uci: float
    cid: float
    remaining_ci_peak: float
    remaining_ca_time: float
    csf: float
    cob_active: bool
    uam_active: bool
    uam_duration: float = 0.0
    console: List[str] = field(default_factory=list)


def _clamp_round(values):
    return [int(round_half_up(min(PRED_BG_MAX, max(PRED_BG_MIN, v)))) for v in values]


def _trim_flat_tail(values, keep=12):
    # drop trailing repeats once the curve has flattened
    out = list(values)
    while len(out) - 1 > keep and out[-2] == out[-1]:
        out.pop()
    return out


def _trim_zt(values, target_bg, keep=6):
    # stop once the zero-temp curve is rising and above target
    out = list(values)
    while len(out) - 1 > keep:
        if out[-2] >= out[-1] or out[-1] <= target_bg:
            break
        out.pop()
    return out


def _blend(cob, uam, iob, fraction_carbs_left):
    if cob is not None and uam is not None:
        length = max(len(cob), len(uam))
        cob = cob + [cob[-1]] * (length - len(cob))
        uam = uam + [uam[-1]] * (length - len(uam))
        return [
            int(round_half_up(fraction_carbs_left * c + (1 - fraction_carbs_left) * u)) for c, u in zip(cob, uam)
        ]
    if cob is not None:
        return list(cob)
    if uam is not None:
        return list(uam)
    return list(iob)


def predict_bgs(inp: PredictionInputs, iob_array: List[IobPair]) -> PredictionResult:
    if not iob_array:
        raise ComputationError("empty IOB projection")

    console: List[str] = []
    meal = inp.meal
    sens = inp.sens

    ci = round_half_up(inp.min_delta - inp.bgi, 1)
    uci = ci

    # ISF / CR = mg/dL per gram
    csf = sens / inp.carb_ratio
    max_ci = round_half_up(MAX_CARB_ABSORPTION_RATE * csf * 5 / 60, 1)
    if ci > max_ci:
        console.append(f"Limiting carb impact from {ci} to {max_ci} mg/dL/5m ( {MAX_CARB_ABSORPTION_RATE} g/h )")
        ci = max_ci

    ca_time = remaining_ca_time(meal, inp.sensitivity_ratio, inp.time)
    if meal.carbs:
        last_carb_age = round_half_up((inp.time - meal.last_carb_time) / 60000)
        fraction_absorbed = (meal.carbs - meal.meal_cob) / meal.carbs
        console.append(
            f"Last carbs {last_carb_age:g} minutes ago; remainingCATime: {ca_time:g} hours;"
            f" {round_half_up(fraction_absorbed * 100):g}% carbs absorbed"
        )

    total_ci = max(0.0, ci / 5 * 60 * ca_time / 2)
    total_ca = total_ci / csf
    remaining_carbs_cap = min(90.0, inp.remaining_carbs_cap)
    remaining_carbs_ignore = 1 - min(1.0, inp.remaining_carbs_fraction)
    remaining_carbs = max(0.0, meal.meal_cob - total_ca - meal.carbs * remaining_carbs_ignore)
    remaining_carbs = min(remaining_carbs_cap, remaining_carbs)
    remaining_ci_peak = remaining_carbs * csf * 5 / 60 / (ca_time / 2)

    slope_from_max = round_half_up(meal.slope_from_max_deviation, 2)
    slope_from_min = round_half_up(meal.slope_from_min_deviation, 2)
    slope_from_deviations = min(slope_from_max, -slope_from_min / 3)

    if ci == 0:
        cid = 0.0
    else:
        cid = min(ca_time * 60 / 5 / 2, max(0.0, meal.meal_cob * csf / ci))
    console.append(
        f"Carb Impact: {ci} mg/dL per 5m; CI Duration: {round_half_up(cid * 5 / 60 * 2, 1)} hours;"
        f" remaining CI ({ca_time / 2:g}h peak): {round_half_up(remaining_ci_peak, 1)} mg/dL per 5m"
    )

    iob_preds = [inp.bg]
    zt_preds = [inp.bg]
    cob_preds = [inp.bg]
    uam_preds = [inp.bg]

    min_iob_pred = min_cob_pred = min_uam_pred = 999.0
    min_iob_guard = min_cob_guard = min_uam_guard = min_zt_guard = 999.0
    max_iob_pred = inp.bg
    max_cob_pred = None
    uam_duration = 0.0

    iob_pred = cob_pred = uam_pred = inp.bg

    for tick in iob_array:
        pred_bgi = round_half_up(-tick.actual.activity * sens * 5, 2)
        pred_zt_bgi = round_half_up(-tick.zero_temp.activity * sens * 5, 2)

        # current deviation fades out over 60 minutes
        pred_dev = ci * (1 - min(1.0, len(iob_preds) / (60 / 5)))
        iob_pred = iob_preds[-1] + pred_bgi + pred_dev
        zt_pred = zt_preds[-1] + pred_zt_bgi

        pred_ci = max(0.0, max(0.0, ci) * (1 - len(cob_preds) / max(cid * 2, 1)))
        intervals = min(len(cob_preds), (ca_time * 12) - len(cob_preds))
        remaining_ci = max(0.0, intervals / (ca_time / 2 * 12) * remaining_ci_peak)
        cob_pred = cob_preds[-1] + pred_bgi + min(0.0, pred_dev) + pred_ci + remaining_ci

        pred_uci_slope = max(0.0, uci + len(uam_preds) * slope_from_deviations)
        pred_uci_max = max(0.0, uci * (1 - len(uam_preds) / max(3 * 60 / 5, 1)))
        pred_uci = min(pred_uci_slope, pred_uci_max)
        if pred_uci > 0:
            uam_duration = round_half_up((len(uam_preds) + 1) * 5 / 60, 1)
        uam_pred = uam_preds[-1] + pred_bgi + min(0.0, pred_dev) + pred_uci

        for v in (iob_pred, zt_pred, cob_pred, uam_pred):
            if not math.isfinite(v):
                raise ComputationError("non-finite BG prediction")

        iob_preds.append(iob_pred)
        zt_preds.append(zt_pred)
        cob_preds.append(cob_pred)
        uam_preds.append(uam_pred)

        min_cob_guard = min(min_cob_guard, round_half_up(cob_pred))
        min_uam_guard = min(min_uam_guard, round_half_up(uam_pred))
        min_iob_guard = min(min_iob_guard, round_half_up(iob_pred))
        min_zt_guard = min(min_zt_guard, round_half_up(zt_pred))

        if len(iob_preds) > INSULIN_PEAK_5M and iob_pred < min_iob_pred:
            min_iob_pred = round_half_up(iob_pred)
        max_iob_pred = max(max_iob_pred, iob_pred)
        if (cid or remaining_ci_peak > 0) and len(cob_preds) > INSULIN_PEAK_5M and cob_pred < min_cob_pred:
            min_cob_pred = round_half_up(cob_pred)
        if (cid or remaining_ci_peak > 0) and cob_pred > max_iob_pred:
            max_cob_pred = cob_pred if max_cob_pred is None else max(max_cob_pred, cob_pred)
        if inp.enable_uam and len(uam_preds) > 12 and uam_pred < min_uam_pred:
            min_uam_pred = round_half_up(uam_pred)

    iob_curve = _trim_flat_tail(_clamp_round(iob_preds))
    zt_curve = _trim_zt(_clamp_round(zt_preds), inp.target_bg)

    cob_active = meal.meal_cob > 0 and (ci > 0 or remaining_ci_peak > 0)
    uam_active = inp.enable_uam and (ci > 0 or remaining_ci_peak > 0)
    cob_curve = _trim_flat_tail(_clamp_round(cob_preds)) if cob_active else None
    uam_curve = _trim_flat_tail(_clamp_round(uam_preds)) if uam_active else None

    fraction_carbs_left = meal.meal_cob / meal.carbs if meal.carbs else 0.0
    blended = _trim_flat_tail(_blend(cob_curve, uam_curve, iob_curve, fraction_carbs_left))
    eventual_bg = float(blended[-1])
    console.append(f"UAM Impact: {uci} mg/dL per 5m; UAM Duration: {uam_duration:g} hours")

    min_iob_pred = max(PRED_BG_MIN, min_iob_pred)
    min_cob_pred = max(PRED_BG_MIN, min_cob_pred)
    min_uam_pred = max(PRED_BG_MIN, min_uam_pred)
    min_pred = round_half_up(min_iob_pred)

    if min_uam_pred < 999 and min_cob_pred < 999:
        avg_pred = round_half_up((1 - fraction_carbs_left) * uam_pred + fraction_carbs_left * cob_pred)
    elif min_cob_pred < 999:
        avg_pred = round_half_up((iob_pred + cob_pred) / 2)
    elif min_uam_pred < 999:
        avg_pred = round_half_up((iob_pred + uam_pred) / 2)
    else:
        avg_pred = round_half_up(iob_pred)
    if min_zt_guard > avg_pred:
        avg_pred = min_zt_guard

    if cid or remaining_ci_peak > 0:
        if inp.enable_uam:
            min_guard = fraction_carbs_left * min_cob_guard + (1 - fraction_carbs_left) * min_uam_guard
        else:
            min_guard = min_cob_guard
    elif inp.enable_uam:
        min_guard = min_uam_guard
    else:
        min_guard = min_iob_guard
    min_guard = round_half_up(min_guard)

    min_zt_uam_pred = min_uam_pred
    if min_zt_guard < inp.threshold:
        min_zt_uam_pred = (min_uam_pred + min_zt_guard) / 2
    elif min_zt_guard < inp.target_bg:
        blend_pct = (min_zt_guard - inp.threshold) / (inp.target_bg - inp.threshold)
        blended_min_zt_guard = min_uam_pred * blend_pct + min_zt_guard * (1 - blend_pct)
        min_zt_uam_pred = (min_uam_pred + blended_min_zt_guard) / 2
    elif min_zt_guard > min_uam_pred:
        min_zt_uam_pred = (min_uam_pred + min_zt_guard) / 2
    min_zt_uam_pred = round_half_up(min_zt_uam_pred)

    if meal.carbs:
        if not inp.enable_uam and min_cob_pred < 999:
            min_pred = round_half_up(max(min_iob_pred, min_cob_pred))
        elif min_cob_pred < 999:
            blended_min_pred = fraction_carbs_left * min_cob_pred + (1 - fraction_carbs_left) * min_zt_uam_pred
            min_pred = round_half_up(max(min_iob_pred, min_cob_pred, blended_min_pred))
        elif inp.enable_uam:
            min_pred = min_zt_uam_pred
        else:
            min_pred = min_guard
    elif inp.enable_uam:
        min_pred = round_half_up(max(min_iob_pred, min_zt_uam_pred))

    min_pred = min(min_pred, avg_pred)
    # a rising carb curve caps how much the UAM curve is trusted
    if max_cob_pred is not None and max_cob_pred > inp.bg:
        min_pred = min(min_pred, max_cob_pred)

    console.append(f"minPredBG: {min_pred:g} minIOBPredBG: {min_iob_pred:g} minZTGuardBG: {min_zt_guard:g}")
    if min_cob_pred < 999:
        console.append(f" minCOBPredBG: {min_cob_pred:g}")
    if min_uam_pred < 999:
        console.append(f" minUAMPredBG: {min_uam_pred:g}")
    console.append(f" avgPredBG: {avg_pred:g} COB: {meal.meal_cob:g} / {meal.carbs:g}")
    logger.debug("predictions: eventual=%s minPred=%s minGuard=%s", eventual_bg, min_pred, min_guard)

    return PredictionResult(
        predictions=Predictions(iob=iob_curve, zt=zt_curve, uam=uam_curve, cob=cob_curve, blended=blended),
        eventual_bg=eventual_bg,
        min_pred_bg=min_pred,
        min_guard_bg=min_guard,
        avg_pred_bg=avg_pred,
        min_iob_pred_bg=min_iob_pred,
        min_cob_pred_bg=min_cob_pred,
        min_uam_pred_bg=min_uam_pred,
        min_zt_guard_bg=min_zt_guard,
        ci=ci,
        uci=uci,
        cid=cid,
        remaining_ci_peak=remaining_ci_peak,
        remaining_ca_time=ca_time,
        csf=csf,
        cob_active=cob_active,
        uam_active=uam_active,
        uam_duration=uam_duration,
        console=console,
    )


def minutes_above(curve: List[int], level: float, default: int = 240) -> int:
    for i, v in enumerate(curve):
        if v < level:
            return 5 * i
    return default


def guard_curve(result: PredictionResult) -> List[int]:
    """Curve used for carbs-required timing."""
    if result.cob_active and result.predictions.cob:
        return result.predictions.cob
    return result.predictions.iob


def last_value(curve: Optional[List[int]]) -> Optional[int]:
    return curve[-1] if curve else None
