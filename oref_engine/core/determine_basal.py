from __future__ import annotations

import dataclasses
import logging
import math
from typing import Any, List

from oref_engine.config import (
    BG_FUTURE_MINUTES,
    BG_STALE_MINUTES,
    CGM_MAX_NOISE,
    EXERCISE_HALF_BASAL_DEFAULT,
    SMB_MAX_DELTA_PERCENTAGE,
)
from oref_engine.core.dynamic_isf import dynamic_isf
from oref_engine.core.insulin_curves import curve_params
from oref_engine.core.predictions import (
    PredictionInputs,
    guard_curve,
    last_value,
    minutes_above,
    predict_bgs,
)
from oref_engine.core.profile import minute_of_day, resolve, validate_profile
from oref_engine.core.rounding import floor_to, round_half_up
from oref_engine.core.smb import (
    SmbContext,
    bolus_wait,
    cap_to_max_iob,
    enable_smb,
    max_bolus,
    micro_bolus_size,
    smb_interval,
    smb_low_temp,
)
from oref_engine.core.temp_basal import (
    calculate_expected_delta,
    get_max_safe_basal,
    round_basal,
    set_temp_basal,
    without_zeros,
)
from oref_engine.errors import ComputationError, OrefError, StaleOrMissingGlucose
from oref_engine.structs import (
    CurrentTemp,
    DetermineBasalInputs,
    DetermineBasalResult,
    Profile,
    SafetyClamped,
)

logger = logging.getLogger(__name__)

NORMAL_TARGET = 100  # mg/dL


class TraceCollector:
    def __init__(self) -> None:
        self.steps: list[tuple[str, Any]] = []

    def add(self, name: str, value: Any) -> None:
        if dataclasses.is_dataclass(value) and not isinstance(value, type):
            value = dataclasses.asdict(value)
        self.steps.append((name, value))

    def dump(self) -> list[tuple[str, Any]]:
        return self.steps


def trace(tc: TraceCollector | None, name: str, value: Any) -> None:
    if tc is not None:
        tc.add(name, value)


def _bg(value) -> str:
    return f"{round_half_up(value):g}"


def error_result(message: str, time: int) -> DetermineBasalResult:
    return DetermineBasalResult(reason=message, error=message, deliver_at=time)


def _same_rate(a: float, b: float) -> bool:
    return round_basal(a) == round_basal(b)


def _duration_req(insulin_req: float, current_basal: float, lo: int, hi: int) -> int:
    """Minutes of zero temp that withhold ``insulin_req`` units, in 30m steps."""
    if current_basal <= 0:
        return hi
    minutes = round_half_up(60 * insulin_req / current_basal)
    minutes = round_half_up(minutes / 30) * 30
    return int(min(hi, max(lo, minutes)))


def _keep_or_set_basal(rt, basal, profile, currenttemp):
    if currenttemp.duration > 15 and _same_rate(basal, currenttemp.rate):
        rt.reason += f", temp {without_zeros(currenttemp.rate)} ~ req {without_zeros(basal)}U/hr. "
        return rt
    rt.reason += f"; setting current basal of {without_zeros(basal)} as temp. "
    return set_temp_basal(basal, 30, profile, rt, currenttemp)


# ----------------------------------------------------------------------
# stage 1: validation
# ----------------------------------------------------------------------
def check_glucose(inputs: DetermineBasalInputs) -> float:
    gs = inputs.glucose_status
    if gs is None or gs.glucose is None:
        raise StaleOrMissingGlucose("no glucose status available")

    bg = gs.glucose
    min_ago = round_half_up((inputs.current_time - gs.timestamp) / 60000, 1)

    if bg <= 10 or (gs.noise or 0) >= CGM_MAX_NOISE:
        raise StaleOrMissingGlucose("CGM is calibrating, in ??? state, or noise is high")
    if min_ago > BG_STALE_MINUTES or min_ago < BG_FUTURE_MINUTES:
        raise StaleOrMissingGlucose(
            f"If current system time {inputs.current_time} is correct, then BG data is too old."
            f" The last BG data was read {min_ago:g}m ago at {gs.timestamp}"
        )
    if bg > 60 and inputs.flat_bgs_detected:
        raise StaleOrMissingGlucose("Error: CGM data is unchanged for the past ~45m")
    return min_ago


def check_autosens(inputs: DetermineBasalInputs, profile: Profile) -> float:
    """Autosens ratio limited to the profile's autosens bounds."""
    ratio = inputs.autosens.ratio if inputs.autosens is not None else 1.0
    if ratio is None or not math.isfinite(ratio) or ratio <= 0:
        raise ComputationError(f"autosens ratio must be a positive number, got {ratio!r}")
    limited = min(profile.autosens_max, max(profile.autosens_min, ratio))
    if limited != ratio:
        logger.warning("autosens ratio %s limited to %s", ratio, limited)
    return limited


def check_pump_history(inputs: DetermineBasalInputs, profile: Profile, rt: DetermineBasalResult):
    """Cancel a running temp that pump history does not account for."""
    currenttemp = inputs.current_temp
    last_temp = inputs.iob_array[0].actual.last_temp
    if last_temp is None or currenttemp.duration <= 0:
        return None

    last_temp_age = round_half_up((inputs.current_time - last_temp.timestamp) / 60000)
    last_temp_ended = last_temp_age - last_temp.duration
    if currenttemp.rate != last_temp.rate and last_temp_age > 10:
        rt.reason = (
            f"Warning: currenttemp rate {without_zeros(currenttemp.rate)} != lastTemp rate"
            f" {without_zeros(last_temp.rate)} from pumphistory; canceling temp"
        )
        return set_temp_basal(0, 0, profile, rt, currenttemp)
    if last_temp_ended > 5 and last_temp_age > 10:
        rt.reason = (
            f"Warning: currenttemp running but lastTemp from pumphistory ended {last_temp_ended:g}m ago;"
            " canceling temp"
        )
        return set_temp_basal(0, 0, profile, rt, currenttemp)
    return None


def effective_profile(profile: Profile, time: int) -> Profile:
    """Profile with scheduled values resolved at ``time`` copied into the scalars."""
    r = resolve(profile, time)
    return dataclasses.replace(
        profile,
        current_basal=r.basal,
        sens=r.sens,
        carb_ratio=r.carb_ratio,
        min_bg=r.min_bg,
        max_bg=r.max_bg,
    )


# ----------------------------------------------------------------------
# stage 2: sensitivity and targets
# ----------------------------------------------------------------------
def sensitivity_ratio_for(profile: Profile, autosens_ratio: float, target_bg: float, console: List[str]) -> float:
    high_raises = profile.exercise_mode or profile.high_temptarget_raises_sensitivity
    if (high_raises and profile.temptarget_set and target_bg > NORMAL_TARGET) or (
        profile.low_temptarget_lowers_sensitivity and profile.temptarget_set and target_bg < NORMAL_TARGET
    ):
        half_basal_target = profile.half_basal_exercise_target or EXERCISE_HALF_BASAL_DEFAULT
        c = half_basal_target - NORMAL_TARGET
        if c * (c + target_bg - NORMAL_TARGET) <= 0:
            ratio = profile.autosens_max
        else:
            ratio = c / (c + target_bg - NORMAL_TARGET)
            ratio = round_half_up(min(ratio, profile.autosens_max), 2)
        console.append(f"Sensitivity ratio set to {ratio:g} based on temp target of {target_bg:g}; ")
        return ratio
    console.append(f"Autosens ratio: {autosens_ratio:g}; ")
    return autosens_ratio


def autosens_targets(profile: Profile, ratio: float, min_bg, max_bg, target_bg, console: List[str]):
    if profile.temptarget_set:
        return min_bg, max_bg, target_bg
    if (profile.sensitivity_raises_target and ratio < 1) or (profile.resistance_lowers_target and ratio > 1):
        min_bg = round_half_up((min_bg - 60) / ratio) + 60
        max_bg = round_half_up((max_bg - 60) / ratio) + 60
        new_target = max(80, round_half_up((target_bg - 60) / ratio) + 60)
        if new_target == target_bg:
            console.append(f"target_bg unchanged: {new_target:g}; ")
        else:
            console.append(f"target_bg from {target_bg:g} to {new_target:g}; ")
        target_bg = new_target
    return min_bg, max_bg, target_bg


def high_bg_targets(profile, bg, eventual_bg, naive_eventual_bg, min_bg, max_bg, target_bg, console):
    """Lower targets while BG is high and predicted to stay high."""
    if not (bg > max_bg and profile.adv_target_adjustments and not profile.temptarget_set):
        return min_bg, max_bg, target_bg

    adjusted_min = round_half_up(max(80, min_bg - (bg - min_bg) / 3))
    adjusted_target = round_half_up(max(80, target_bg - (bg - target_bg) / 3))
    adjusted_max = round_half_up(max(80, max_bg - (bg - max_bg) / 3))

    if eventual_bg > adjusted_min and naive_eventual_bg > adjusted_min and min_bg > adjusted_min:
        console.append(f"Adjusting targets for high BG: min_bg from {min_bg:g} to {adjusted_min:g}; ")
        min_bg = adjusted_min
    else:
        console.append(f"min_bg unchanged: {min_bg:g}; ")
    if eventual_bg > adjusted_target and naive_eventual_bg > adjusted_target and target_bg > adjusted_target:
        console.append(f"target_bg from {target_bg:g} to {adjusted_target:g}; ")
        target_bg = adjusted_target
    else:
        console.append(f"target_bg unchanged: {target_bg:g}; ")
    if eventual_bg > adjusted_max and naive_eventual_bg > adjusted_max and max_bg > adjusted_max:
        console.append(f"max_bg from {max_bg:g} to {adjusted_max:g}")
        max_bg = adjusted_max
    else:
        console.append(f"max_bg unchanged: {max_bg:g}")
    return min_bg, max_bg, target_bg


# ----------------------------------------------------------------------
# stage 6: safety clamp
# ----------------------------------------------------------------------
def apply_safety_clamps(rt: DetermineBasalResult, profile: Profile, iob: float) -> DetermineBasalResult:
    """Final hard limits on rate and SMB size, noted in the reason when they bite."""
    if rt.rate is not None:
        if not math.isfinite(rt.rate):
            raise ComputationError(f"non-finite temp basal rate {rt.rate}")
        limit = min(profile.max_basal, get_max_safe_basal(profile))
        if rt.rate < 0:
            rt.clamps.append(SafetyClamped("rate", rt.rate, 0.0))
            rt.rate = 0.0
        elif rt.rate > limit + 1e-9:
            clamped = floor_to(limit, 0.05)
            rt.clamps.append(SafetyClamped("rate", rt.rate, clamped))
            rt.rate = clamped

    if rt.units is not None:
        if not math.isfinite(rt.units):
            raise ComputationError(f"non-finite SMB size {rt.units}")
        capped = cap_to_max_iob(max(0.0, rt.units), iob, profile.max_iob, profile.bolus_increment)
        if capped < rt.units:
            rt.clamps.append(SafetyClamped("units", rt.units, capped))
        rt.units = capped if capped > 0 else None

    for c in rt.clamps:
        rt.reason += f" {c.describe()};"
        logger.warning("safety clamp: %s", c.describe())
    return rt


# ----------------------------------------------------------------------
# entry point
# ----------------------------------------------------------------------
def determine_basal(inputs: DetermineBasalInputs) -> DetermineBasalResult:
    """Temp basal / SMB recommendation, or an error result with no dosing."""
    try:
        rt = _determine_basal(inputs)
        if rt.rate is not None or rt.units is not None:
            iob = inputs.iob_array[0].actual.iob
            apply_safety_clamps(rt, effective_profile(inputs.profile, inputs.current_time), iob)
        return rt
    except OrefError as e:
        logger.warning("determine-basal rejected inputs: %s", e)
        return error_result(str(e), inputs.current_time)


def _determine_basal(inputs: DetermineBasalInputs) -> DetermineBasalResult:
    tc: TraceCollector | None = TraceCollector() if inputs.trace_mode else None
    console: List[str] = []

    validate_profile(inputs.profile)
    if not inputs.iob_array:
        raise ComputationError("IOB projection is empty")

    current_time = inputs.current_time
    profile = effective_profile(inputs.profile, current_time)
    currenttemp: CurrentTemp = inputs.current_temp or CurrentTemp()
    meal = inputs.meal
    gs = inputs.glucose_status

    check_glucose(inputs)
    autosens_ratio = check_autosens(inputs, profile)
    bg = gs.glucose
    trace(tc, "glucose_status", gs)

    rt = DetermineBasalResult(deliver_at=current_time, bg=bg, console_error=console)
    if tc is not None:
        rt.trace = tc.steps

    cancel = check_pump_history(inputs, profile, rt)
    if cancel is not None:
        return cancel

    # --- stage 2: sensitivity ---
    max_iob = profile.max_iob
    min_bg = profile.min_bg
    max_bg = profile.max_bg
    target_bg = profile.target_bg if profile.target_bg else (min_bg + max_bg) / 2

    sensitivity_ratio = sensitivity_ratio_for(profile, autosens_ratio, target_bg, console)
    basal = round_basal(profile.current_basal * sensitivity_ratio)
    if basal != profile.current_basal:
        console.append(f"Adjusting basal from {profile.current_basal:g} to {basal:g}; ")
    else:
        console.append(f"Basal unchanged: {basal:g}; ")

    min_bg, max_bg, target_bg = autosens_targets(profile, autosens_ratio, min_bg, max_bg, target_bg, console)

    profile_sens = round_half_up(profile.sens, 1)
    sens = round_half_up(profile.sens / sensitivity_ratio, 1)
    if sens != profile_sens:
        console.append(f"ISF from {profile_sens:g} to {sens:g}")
    else:
        console.append(f"ISF unchanged: {sens:g}")

    dyn = dynamic_isf(profile, profile.sens, bg, target_bg, inputs.tdd, curve_params(profile))
    if dyn is not None:
        sens = round_half_up(dyn.sens, 1)
        console.append(f"Dynamic ISF ({dyn.mode.value}): ratio {dyn.ratio:.2f}, ISF {sens:g}")
    trace(tc, "sensitivity", {"ratio": sensitivity_ratio, "basal": basal, "sens": sens})

    # --- stage 3: prediction ---
    iob_data = inputs.iob_array[0].actual
    if gs.delta > -0.5:
        tick = f"+{round_half_up(gs.delta):g}"
    else:
        tick = f"{round_half_up(gs.delta):g}"

    min_delta = min(gs.delta, gs.short_avg_delta)
    min_avg_delta = min(gs.short_avg_delta, gs.long_avg_delta)
    max_delta = max(gs.delta, gs.short_avg_delta, gs.long_avg_delta)

    bgi = round_half_up(-iob_data.activity * sens * 5, 2)
    deviation = round_half_up(30 / 5 * (min_delta - bgi))
    if deviation < 0:
        deviation = round_half_up(30 / 5 * (min_avg_delta - bgi))
        if deviation < 0:
            deviation = round_half_up(30 / 5 * (gs.long_avg_delta - bgi))

    if iob_data.iob > 0:
        naive_eventual_bg = round_half_up(bg - iob_data.iob * sens)
    else:
        # negative IOB: use the more conservative ISF
        naive_eventual_bg = round_half_up(bg - iob_data.iob * min(sens, profile.sens))
    eventual_bg = naive_eventual_bg + deviation

    min_bg, max_bg, target_bg = high_bg_targets(
        profile, bg, eventual_bg, naive_eventual_bg, min_bg, max_bg, target_bg, console
    )
    expected_delta = calculate_expected_delta(target_bg, eventual_bg, bgi)
    threshold = min_bg - 0.5 * (min_bg - 40)

    smb_ctx = SmbContext(profile, inputs.micro_bolus_allowed, meal, bg, target_bg)
    enable_smb_flag = enable_smb(smb_ctx, console)

    pred = predict_bgs(
        PredictionInputs(
            bg=bg,
            min_delta=min_delta,
            bgi=bgi,
            sens=sens,
            carb_ratio=profile.carb_ratio,
            sensitivity_ratio=sensitivity_ratio,
            target_bg=target_bg,
            threshold=threshold,
            meal=meal,
            time=current_time,
            enable_uam=profile.enable_uam,
            remaining_carbs_cap=profile.remaining_carbs_cap,
            remaining_carbs_fraction=profile.remaining_carbs_fraction,
        ),
        inputs.iob_array,
    )
    console.extend(pred.console)
    trace(tc, "predictions", pred.predictions)

    eventual_bg = pred.eventual_bg
    min_pred_bg = pred.min_pred_bg
    min_guard_bg = pred.min_guard_bg
    console.append(f"EventualBG is {_bg(eventual_bg)} ;")

    rt.tick = tick
    rt.eventual_bg = eventual_bg
    rt.target_bg = target_bg
    rt.insulin_req = 0.0
    rt.sensitivity_ratio = sensitivity_ratio
    rt.variable_sens = sens
    rt.threshold = threshold
    rt.pred_bgs = pred.predictions
    rt.cob = meal.meal_cob
    rt.iob = iob_data.iob

    last_iob_pred = last_value(pred.predictions.iob)
    rt.reason = (
        f"COB: {round_half_up(meal.meal_cob, 1):g}, Dev: {_bg(deviation)}, BGI: {_bg(bgi)}, ISF: {_bg(sens)},"
        f" CR: {round_half_up(profile.carb_ratio, 2):g}, Target: {_bg(target_bg)},"
        f" minPredBG {_bg(min_pred_bg)}, minGuardBG {_bg(min_guard_bg)}, IOBpredBG {_bg(last_iob_pred)}"
    )
    if pred.predictions.cob:
        rt.reason += f", COBpredBG {_bg(pred.predictions.cob[-1])}"
    if pred.predictions.uam:
        rt.reason += f", UAMpredBG {_bg(pred.predictions.uam[-1])}"
    rt.reason += "; "

    # --- carbs required ---
    carbs_req_bg = naive_eventual_bg
    if carbs_req_bg < 40:
        carbs_req_bg = min(min_guard_bg, carbs_req_bg)
    bg_undershoot = threshold - carbs_req_bg

    curve = guard_curve(pred)
    minutes_above_min_bg = minutes_above(curve, min_bg)
    minutes_above_threshold = minutes_above(curve, threshold)

    if enable_smb_flag and min_guard_bg < threshold:
        console.append(f"minGuardBG {_bg(min_guard_bg)} projected below {_bg(threshold)} - disabling SMB")
        enable_smb_flag = False
    if max_delta > SMB_MAX_DELTA_PERCENTAGE * bg:
        console.append(
            f"maxDelta {_bg(max_delta)} > {100 * SMB_MAX_DELTA_PERCENTAGE:g}% of BG {_bg(bg)} - disabling SMB"
        )
        rt.reason += f"maxDelta {_bg(max_delta)} > {100 * SMB_MAX_DELTA_PERCENTAGE:g}% of BG {_bg(bg)}: SMB disabled; "
        enable_smb_flag = False
    rt.smb_enabled = enable_smb_flag

    console.append(f"BG projected to remain above {_bg(min_bg)} for {minutes_above_min_bg} minutes")
    if minutes_above_threshold < 240 or minutes_above_min_bg < 60:
        console.append(f"BG projected to remain above {_bg(threshold)} for {minutes_above_threshold} minutes")

    zero_temp_effect = profile.current_basal * sens * minutes_above_threshold / 60
    # the last 25% of COB is not counted against carbsReq
    cob_for_carbs_req = max(0.0, meal.meal_cob - 0.25 * meal.carbs)
    carbs_req = round_half_up((bg_undershoot - zero_temp_effect) / pred.csf - cob_for_carbs_req)
    console.append(
        f"naive_eventualBG: {naive_eventual_bg:g} bgUndershoot: {bg_undershoot:g}"
        f" zeroTempDuration {minutes_above_threshold} zeroTempEffect: {round_half_up(zero_temp_effect):g}"
        f" carbsReq: {carbs_req:g}"
    )
    if carbs_req >= profile.carbs_req_threshold and minutes_above_threshold <= 45:
        rt.carbs_req = carbs_req
        rt.carbs_req_within = minutes_above_threshold
        rt.reason += f"{carbs_req:g} add'l carbs req w/in {minutes_above_threshold}m; "
    trace(tc, "carbs_req", carbs_req)

    # --- stage 4: temp basal ---
    if bg < threshold and iob_data.iob < -profile.current_basal * 20 / 60 and min_delta > 0 and min_delta > expected_delta:
        rt.reason += (
            f"IOB {iob_data.iob:g} < {round_half_up(-profile.current_basal * 20 / 60, 2):g}"
            f" and minDelta {_bg(min_delta)} > expectedDelta {_bg(expected_delta)}; "
        )
    elif bg < threshold or min_guard_bg < threshold:
        # predictive low glucose suspend
        rt.reason += f"minGuardBG {_bg(min_guard_bg)}<{_bg(threshold)}"
        duration_req = _duration_req((target_bg - min_guard_bg) / sens, profile.current_basal, 30, 120)
        return set_temp_basal(0, duration_req, profile, rt, currenttemp)

    if profile.skip_neutral_temps and minute_of_day(current_time, profile.timezone) % 60 >= 55:
        minutes = minute_of_day(current_time, profile.timezone) % 60
        rt.reason += f"; Canceling temp at {minutes}m past the hour. "
        return set_temp_basal(0, 0, profile, rt, currenttemp)

    if eventual_bg < min_bg:
        rt.reason += f"Eventual BG {_bg(eventual_bg)} < {_bg(min_bg)}"
        if min_delta > expected_delta and min_delta > 0 and not rt.carbs_req:
            if naive_eventual_bg < 40:
                rt.reason += ", naive_eventualBG < 40. "
                return set_temp_basal(0, 30, profile, rt, currenttemp)
            if gs.delta > min_delta:
                rt.reason += f", but Delta {tick} > expectedDelta {_bg(expected_delta)}"
            else:
                rt.reason += f", but Min. Delta {min_delta:.2f} > Exp. Delta {_bg(expected_delta)}"
            return _keep_or_set_basal(rt, basal, profile, currenttemp)

        # 30m low temp to bring the projection back up, doubled for hypo safety
        insulin_req = round_half_up(2 * min(0.0, (eventual_bg - target_bg) / sens), 2)
        naive_insulin_req = round_half_up(min(0.0, (naive_eventual_bg - target_bg) / sens), 2)
        if 0 > min_delta > expected_delta:
            # barely falling: barely negative requirement
            insulin_req = round_half_up(insulin_req * (min_delta / expected_delta), 2)

        rate = round_basal(basal + 2 * insulin_req)
        rt.insulin_req = insulin_req

        insulin_scheduled = currenttemp.duration * (currenttemp.rate - basal) / 60
        min_insulin_req = min(insulin_req, naive_insulin_req)
        if insulin_scheduled < min_insulin_req - basal * 0.3:
            rt.reason += f", {without_zeros(currenttemp.duration)}m@{currenttemp.rate:.2f} is a lot less than needed. "
            return set_temp_basal(rate, 30, profile, rt, currenttemp)
        if currenttemp.duration > 5 and rate >= currenttemp.rate * 0.8:
            rt.reason += f", temp {without_zeros(currenttemp.rate)} ~< req {without_zeros(rate)}U/hr. "
            return rt
        if rate <= 0:
            worst_case = (target_bg - naive_eventual_bg) / sens
            duration_req = 0 if worst_case < 0 else _duration_req(worst_case, profile.current_basal, 0, 120)
            if duration_req > 0:
                rt.reason += f", setting {duration_req}m zero temp. "
                return set_temp_basal(rate, duration_req, profile, rt, currenttemp)
        else:
            rt.reason += f", setting {without_zeros(rate)}U/hr. "
        return set_temp_basal(rate, 30, profile, rt, currenttemp)

    smb_mode = inputs.micro_bolus_allowed and enable_smb_flag

    if min_delta < expected_delta and not smb_mode:
        if gs.delta < min_delta:
            rt.reason += f"Eventual BG {_bg(eventual_bg)} > {_bg(min_bg)} but Delta {tick} < Exp. Delta {_bg(expected_delta)}"
        else:
            rt.reason += (
                f"Eventual BG {_bg(eventual_bg)} > {_bg(min_bg)} but Min. Delta {min_delta:.2f}"
                f" < Exp. Delta {_bg(expected_delta)}"
            )
        return _keep_or_set_basal(rt, basal, profile, currenttemp)

    if min(eventual_bg, min_pred_bg) < max_bg and not smb_mode:
        rt.reason += f"{_bg(eventual_bg)}-{_bg(min_pred_bg)} in range: no temp required"
        return _keep_or_set_basal(rt, basal, profile, currenttemp)

    if eventual_bg >= max_bg:
        rt.reason += f"Eventual BG {_bg(eventual_bg)} >= {_bg(max_bg)}, "

    if iob_data.iob > max_iob:
        rt.reason += f"IOB {round_half_up(iob_data.iob, 2):g} > max_iob {max_iob:g}"
        return _keep_or_set_basal(rt, basal, profile, currenttemp)

    # 30m high temp to bring the projection down to target
    insulin_req = round_half_up((min(min_pred_bg, eventual_bg) - target_bg) / sens, 2)
    if insulin_req > max_iob - iob_data.iob:
        rt.reason += f"max_iob {max_iob:g}, "
        insulin_req = max_iob - iob_data.iob

    rate = round_basal(basal + 2 * insulin_req)
    insulin_req = round_half_up(insulin_req, 3)
    rt.insulin_req = insulin_req
    trace(tc, "insulin_req", insulin_req)

    # --- stage 5: SMB ---
    if smb_mode and bg > threshold:
        max_bolus_units = max_bolus(profile, iob_data.iob, meal.meal_cob)
        micro_bolus = micro_bolus_size(insulin_req, max_bolus_units, profile.bolus_increment)
        low_temp = smb_low_temp(
            target_bg=target_bg,
            naive_eventual_bg=naive_eventual_bg,
            min_iob_pred_bg=pred.min_iob_pred_bg,
            sens=sens,
            current_basal=profile.current_basal,
            basal=basal,
            insulin_req=insulin_req,
            micro_bolus=micro_bolus,
            bolus_increment=profile.bolus_increment,
        )

        rt.reason += f" insulinReq {insulin_req:g}"
        if micro_bolus >= max_bolus_units:
            rt.reason += f"; maxBolus {max_bolus_units:g}"
        if low_temp.duration > 0:
            rt.reason += f"; setting {low_temp.duration:g}m low temp of {low_temp.rate:g}U/h"
        rt.reason += ". "

        if iob_data.last_bolus_time is None:
            last_bolus_age = math.inf
        else:
            last_bolus_age = round_half_up((current_time - iob_data.last_bolus_time) / 60000, 1)
        wait = bolus_wait(last_bolus_age, smb_interval(profile))
        if wait is None:
            if micro_bolus > 0:
                rt.units = micro_bolus
                rt.reason += f"Microbolusing {micro_bolus:g}U. "
        else:
            rt.reason += f"Waiting {wait[0]}m {wait[1]}s to microbolus again. "
        trace(tc, "smb", {"units": rt.units, "max_bolus": max_bolus_units, "low_temp": low_temp})

        if low_temp.duration > 0:
            rt.rate = low_temp.rate
            rt.duration = low_temp.duration
            return rt

    max_safe_basal = get_max_safe_basal(profile)
    if rate > max_safe_basal:
        rt.reason += f"adj. req. rate: {round_half_up(rate, 2):g} to maxSafeBasal: {max_safe_basal:g}, "
        rate = round_basal(max_safe_basal)

    insulin_scheduled = currenttemp.duration * (currenttemp.rate - basal) / 60
    if insulin_scheduled >= insulin_req * 2:
        rt.reason += (
            f"{without_zeros(currenttemp.duration)}m@{currenttemp.rate:.2f} > 2 * insulinReq."
            f" Setting temp basal of {without_zeros(rate)}U/hr. "
        )
        return set_temp_basal(rate, 30, profile, rt, currenttemp)

    if currenttemp.duration <= 0:
        rt.reason += f"no temp, setting {without_zeros(rate)}U/hr. "
        return set_temp_basal(rate, 30, profile, rt, currenttemp)

    if currenttemp.duration > 5 and round_basal(rate) <= round_basal(currenttemp.rate):
        rt.reason += f"temp {currenttemp.rate:.2f} >~ req {without_zeros(rate)}U/hr. "
        return rt

    rt.reason += f"temp {currenttemp.rate:.2f}<{without_zeros(rate)}U/hr. "
    return set_temp_basal(rate, 30, profile, rt, currenttemp)
