"""Field naming for every wire shape the engine reads or writes.

Each table maps the internal snake_case field to its oref0 (legacy JS) name.
Input keys are accepted in any of three spellings: internal, legacy, or the
camelCase form of the internal name. ``EXTRA_ALIASES`` covers the few names
that follow none of those patterns.
"""

import logging
from typing import Any, Dict

logger = logging.getLogger(__name__)

NAMINGS = ("legacy", "snake", "camel")

PROFILE = {
    "dia": "dia",
    "curve": "curve",
    "use_custom_peak_time": "useCustomPeakTime",
    "insulin_peak_time": "insulinPeakTime",
    "current_basal": "current_basal",
    "max_iob": "max_iob",
    "max_basal": "max_basal",
    "max_daily_basal": "max_daily_basal",
    "max_daily_safety_multiplier": "max_daily_safety_multiplier",
    "current_basal_safety_multiplier": "current_basal_safety_multiplier",
    "min_bg": "min_bg",
    "max_bg": "max_bg",
    "target_bg": "target_bg",
    "sens": "sens",
    "carb_ratio": "carb_ratio",
    "autosens_min": "autosens_min",
    "autosens_max": "autosens_max",
    "min_5m_carbimpact": "min_5m_carbimpact",
    "max_cob": "maxCOB",
    "max_meal_absorption_time": "maxMealAbsorptionTime",
    "remaining_carbs_cap": "remainingCarbsCap",
    "remaining_carbs_fraction": "remainingCarbsFraction",
    "carbs_req_threshold": "carbsReqThreshold",
    "enable_uam": "enableUAM",
    "enable_smb_always": "enableSMB_always",
    "enable_smb_with_cob": "enableSMB_with_COB",
    "enable_smb_with_temptarget": "enableSMB_with_temptarget",
    "enable_smb_after_carbs": "enableSMB_after_carbs",
    "enable_smb_high_bg": "enableSMB_high_bg",
    "enable_smb_high_bg_target": "enableSMB_high_bg_target",
    "allow_smb_with_high_temptarget": "allowSMB_with_high_temptarget",
    "max_smb_basal_minutes": "maxSMBBasalMinutes",
    "max_uam_smb_basal_minutes": "maxUAMSMBBasalMinutes",
    "smb_interval": "SMBInterval",
    "bolus_increment": "bolus_increment",
    "skip_neutral_temps": "skip_neutral_temps",
    "temptarget_set": "temptargetSet",
    "exercise_mode": "exercise_mode",
    "high_temptarget_raises_sensitivity": "high_temptarget_raises_sensitivity",
    "low_temptarget_lowers_sensitivity": "low_temptarget_lowers_sensitivity",
    "half_basal_exercise_target": "half_basal_exercise_target",
    "sensitivity_raises_target": "sensitivity_raises_target",
    "resistance_lowers_target": "resistance_lowers_target",
    "adv_target_adjustments": "adv_target_adjustments",
    "dynamic_isf": "dynamicIsf",
    "adjustment_factor": "adjustmentFactor",
    "adjustment_factor_sigmoid": "adjustmentFactorSigmoid",
    "basal_schedule": "basalprofile",
    "isf_schedule": "isfProfile",
    "carb_ratio_schedule": "carb_ratios",
    "target_schedule": "bg_targets",
    "timezone": "timezone",
}

TREATMENT = {
    "timestamp": "date",
    "insulin": "insulin",
    "carbs": "carbs",
    "rate": "rate",
    "duration": "duration",
    "event_type": "eventType",
}

GLUCOSE = {
    "timestamp": "date",
    "glucose": "glucose",
    "noise": "noise",
}

GLUCOSE_STATUS = {
    "glucose": "glucose",
    "delta": "delta",
    "short_avg_delta": "short_avgdelta",
    "long_avg_delta": "long_avgdelta",
    "timestamp": "date",
    "noise": "noise",
}

CURRENT_TEMP = {
    "rate": "rate",
    "duration": "duration",
}

LAST_TEMP = {
    "rate": "rate",
    "timestamp": "date",
    "duration": "duration",
}

IOB = {
    "time": "time",
    "iob": "iob",
    "activity": "activity",
    "basal_iob": "basaliob",
    "bolus_iob": "bolusiob",
    "net_basal_insulin": "netbasalinsulin",
    "bolus_insulin": "bolusinsulin",
    "last_bolus_time": "lastBolusTime",
    "last_temp": "lastTemp",
    "zero_temp": "iobWithZeroTemp",
}

MEAL = {
    "carbs": "carbs",
    "meal_cob": "mealCOB",
    "current_deviation": "currentDeviation",
    "max_deviation": "maxDeviation",
    "min_deviation": "minDeviation",
    "slope_from_max_deviation": "slopeFromMaxDeviation",
    "slope_from_min_deviation": "slopeFromMinDeviation",
    "all_deviations": "allDeviations",
    "last_carb_time": "lastCarbTime",
}

AUTOSENS = {
    "ratio": "ratio",
    "new_isf": "newisf",
    "sens_result": "sensResult",
    "raw_ratio": "rawRatio",
    "deviation_count": "deviationCount",
    "excluded_count": "excludedCount",
}

TDD = {
    "tdd": "tdd",
    "tdd_average": "tddAverage",
    "tdd_weighted": "tddWeighted",
}

PREDICTIONS = {
    "iob": "IOB",
    "zt": "ZT",
    "uam": "UAM",
    "cob": "COB",
    "blended": "blended",
}

RESULT = {
    "reason": "reason",
    "rate": "rate",
    "duration": "duration",
    "units": "units",
    "error": "error",
    "bg": "bg",
    "tick": "tick",
    "eventual_bg": "eventualBG",
    "target_bg": "targetBG",
    "insulin_req": "insulinReq",
    "cob": "COB",
    "iob": "IOB",
    "sensitivity_ratio": "sensitivityRatio",
    "variable_sens": "variable_sens",
    "threshold": "threshold",
    "carbs_req": "carbsReq",
    "carbs_req_within": "carbsReqWithin",
    "smb_enabled": "smbEnabled",
    "deliver_at": "deliverAt",
    "pred_bgs": "predBGs",
    "clamps": "clamps",
    "console_error": "consoleError",
}

REQUEST = {
    "time": "time",
    "profile": "profile",
    "treatments": "treatments",
    "glucose": "glucose",
    "glucose_status": "glucose_status",
    "current_temp": "currenttemp",
    "iob_data": "iob_data",
    "autosens": "autosens_data",
    "meal": "meal_data",
    "micro_bolus_allowed": "microBolusAllowed",
    "flat_bgs_detected": "flatBGsDetected",
    "tdd": "tdd_data",
    "current_only": "currentOnly",
    "naming": "naming",
}

# spellings that are neither internal, legacy nor the camelCase of the internal name
EXTRA_ALIASES = {
    "max_cob": ("maxCob", "max_COB"),
    "smb_interval": ("smb_interval", "smbInterval"),
    "glucose": ("sgv", "bg"),
    "timestamp": ("mills", "created_at", "dateString", "timestamp", "started_at"),
    "insulin": ("amount", "units"),
    "rate": ("absolute", "absoluteRate"),
    "enable_uam": ("enableUam",),
    "enable_smb_with_cob": ("enableSmbWithCob",),
    "enable_smb_always": ("enableSmbAlways",),
    "enable_smb_with_temptarget": ("enableSmbWithTemptarget",),
    "enable_smb_after_carbs": ("enableSmbAfterCarbs",),
    "enable_smb_high_bg": ("enableSmbHighBg",),
    "enable_smb_high_bg_target": ("enableSmbHighBgTarget",),
    "allow_smb_with_high_temptarget": ("allowSmbWithHighTemptarget",),
    "max_smb_basal_minutes": ("maxSmbBasalMinutes",),
    "max_uam_smb_basal_minutes": ("maxUamSmbBasalMinutes",),
    "temptarget_set": ("tempTargetSet",),
    "short_avg_delta": ("shortAvgDelta", "short_avgdelta"),
    "long_avg_delta": ("longAvgDelta", "long_avgdelta"),
    "current_temp": ("currentTemp", "current_temp"),
    "autosens": ("autosens", "autosensData"),
    "meal": ("meal", "mealData"),
    "iob_data": ("iob", "iobData", "iob_array"),
    "sens": ("isf",),
    "current_basal": ("basal",),
    "max_daily_basal": ("maxDailyBasal",),
    "dynamic_isf": ("useNewFormula", "dynamic_isf_mode"),
}


def camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


def alias_map(table: Dict[str, str]) -> Dict[str, str]:
    """Every accepted spelling -> internal name."""
    out = {}
    for internal, legacy in table.items():
        for name in (internal, legacy, camel(internal), *EXTRA_ALIASES.get(internal, ())):
            out.setdefault(name, internal)
    return out


def normalize_keys(raw: Dict[str, Any], table: Dict[str, str]) -> Dict[str, Any]:
    aliases = alias_map(table)
    out: Dict[str, Any] = {}
    for key, value in raw.items():
        internal = aliases.get(key)
        if internal is None:
            logger.debug("ignoring unknown field %r", key)
            continue
        # the first spelling seen wins, internal names take priority
        if internal in out and key != internal:
            continue
        out[internal] = value
    return out


def wire_name(internal: str, table: Dict[str, str], naming: str) -> str:
    if naming == "snake":
        return internal
    if naming == "camel":
        return camel(internal)
    return table.get(internal, internal)
