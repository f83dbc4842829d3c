from __future__ import annotations

from typing import Any, Dict, List

from oref_engine.parsing import field_names as fn
from oref_engine.structs import (
    AutosensResult,
    DetermineBasalResult,
    GlucoseStatus,
    IobData,
    IobPair,
    MealData,
    Predictions,
)


def _emit(values: Dict[str, Any], table: Dict[str, str], naming: str) -> Dict[str, Any]:
    # None means "not computed" and is left off the wire
    return {fn.wire_name(k, table, naming): v for k, v in values.items() if v is not None}


def write_iob_data(data: IobData, naming: str = "legacy") -> Dict[str, Any]:
    values = {
        "time": data.time,
        "iob": data.iob,
        "activity": data.activity,
        "basal_iob": data.basal_iob,
        "bolus_iob": data.bolus_iob,
        "net_basal_insulin": data.net_basal_insulin,
        "bolus_insulin": data.bolus_insulin,
        "last_bolus_time": data.last_bolus_time,
    }
    if data.last_temp is not None:
        values["last_temp"] = _emit(
            {
                "rate": data.last_temp.rate,
                "timestamp": data.last_temp.timestamp,
                "duration": data.last_temp.duration,
            },
            fn.LAST_TEMP,
            naming,
        )
    return _emit(values, fn.IOB, naming)


def write_iob_pair(pair: IobPair, naming: str = "legacy") -> Dict[str, Any]:
    """Legacy shape nests the zero-temp value; the other namings keep them as siblings."""
    if naming == "legacy":
        out = write_iob_data(pair.actual, naming)
        out["iobWithZeroTemp"] = write_iob_data(pair.zero_temp, naming)
        return out
    return {
        "actual": write_iob_data(pair.actual, naming),
        fn.wire_name("zero_temp", fn.IOB, naming): write_iob_data(pair.zero_temp, naming),
    }


def write_iob_array(pairs: List[IobPair], naming: str = "legacy") -> List[Dict[str, Any]]:
    return [write_iob_pair(p, naming) for p in pairs]


def write_meal(meal: MealData, naming: str = "legacy") -> Dict[str, Any]:
    return _emit(
        {
            "carbs": meal.carbs,
            "meal_cob": meal.meal_cob,
            "current_deviation": meal.current_deviation,
            "max_deviation": meal.max_deviation,
            "min_deviation": meal.min_deviation,
            "slope_from_max_deviation": meal.slope_from_max_deviation,
            "slope_from_min_deviation": meal.slope_from_min_deviation,
            "all_deviations": list(meal.all_deviations),
            "last_carb_time": meal.last_carb_time,
        },
        fn.MEAL,
        naming,
    )


def write_autosens(result: AutosensResult, naming: str = "legacy") -> Dict[str, Any]:
    return _emit(
        {
            "ratio": result.ratio,
            "new_isf": result.new_isf,
            "sens_result": result.sens_result,
            "raw_ratio": result.raw_ratio,
            "deviation_count": result.deviation_count,
            "excluded_count": result.excluded_count,
        },
        fn.AUTOSENS,
        naming,
    )


def write_glucose_status(status: GlucoseStatus, naming: str = "legacy") -> Dict[str, Any]:
    return _emit(
        {
            "glucose": status.glucose,
            "delta": status.delta,
            "short_avg_delta": status.short_avg_delta,
            "long_avg_delta": status.long_avg_delta,
            "timestamp": status.timestamp,
            "noise": status.noise,
        },
        fn.GLUCOSE_STATUS,
        naming,
    )


def write_predictions(preds: Predictions, naming: str = "legacy") -> Dict[str, Any]:
    return _emit(
        {
            "iob": preds.iob,
            "zt": preds.zt,
            "uam": preds.uam,
            "cob": preds.cob,
            "blended": preds.blended,
        },
        fn.PREDICTIONS,
        naming,
    )


def write_result(rt: DetermineBasalResult, naming: str = "legacy") -> Dict[str, Any]:
    values = {
        "reason": rt.reason,
        "rate": rt.rate,
        "duration": rt.duration,
        "units": rt.units,
        "error": rt.error,
        "bg": rt.bg,
        "tick": rt.tick,
        "eventual_bg": rt.eventual_bg,
        "target_bg": rt.target_bg,
        "insulin_req": rt.insulin_req,
        "cob": rt.cob,
        "iob": rt.iob,
        "sensitivity_ratio": rt.sensitivity_ratio,
        "variable_sens": rt.variable_sens,
        "threshold": rt.threshold,
        "carbs_req": rt.carbs_req,
        "carbs_req_within": rt.carbs_req_within,
        "smb_enabled": rt.smb_enabled,
        "deliver_at": rt.deliver_at,
        "pred_bgs": write_predictions(rt.pred_bgs, naming) if rt.pred_bgs is not None else None,
        "clamps": [c.describe() for c in rt.clamps] or None,
        "console_error": list(rt.console_error) or None,
    }
    return _emit(values, fn.RESULT, naming)
