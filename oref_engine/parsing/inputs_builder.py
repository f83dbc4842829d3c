from __future__ import annotations

import dataclasses
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from oref_engine.errors import InvalidProfile, InvalidTreatment
from oref_engine.parsing import field_names as fn
from oref_engine.structs import (
    AutosensResult,
    CurrentTemp,
    GlucoseReading,
    GlucoseStatus,
    IobData,
    IobPair,
    LastTemp,
    MealData,
    Profile,
    ScheduleEntry,
    TargetEntry,
    TddData,
    Treatment,
)

logger = logging.getLogger(__name__)

PROFILE_FIELDS = {f.name: f for f in dataclasses.fields(Profile)}
SCHEDULE_FIELDS = ("basal_schedule", "isf_schedule", "carb_ratio_schedule", "target_schedule")


def parse_time(value: Any) -> Optional[int]:
    """Epoch ms from a number (s or ms) or an ISO-8601 string."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError(f"not a timestamp: {value!r}")
    if isinstance(value, (int, float)):
        # seconds if it cannot be a plausible ms value
        return int(value * 1000) if value < 1e11 else int(value)
    text = str(value).strip()
    if text.lstrip("-").isdigit():
        return parse_time(int(text))
    dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def _offset_minutes(entry: Dict[str, Any]) -> int:
    if "minutes" in entry:
        return int(entry["minutes"])
    if "offset" in entry:
        return int(entry["offset"])
    if "start" in entry:
        hh, mm, *_ = str(entry["start"]).split(":")
        return int(hh) * 60 + int(mm)
    if "i" in entry:
        return int(entry["i"]) * 30
    return 0


def _schedule_items(raw, container_key):
    if raw is None:
        return []
    if isinstance(raw, dict):
        raw = raw.get(container_key, [])
    return list(raw)


def parse_schedule(raw, container_key: str, value_keys) -> List[ScheduleEntry]:
    out = []
    for entry in _schedule_items(raw, container_key):
        if isinstance(entry, ScheduleEntry):
            out.append(entry)
            continue
        value = next((entry[k] for k in value_keys if k in entry), None)
        if value is None:
            raise InvalidProfile(f"schedule entry without a value: {entry!r}")
        out.append(ScheduleEntry(start_minute=_offset_minutes(entry), value=float(value)))
    return sorted(out, key=lambda e: e.start_minute)


def parse_targets(raw) -> List[TargetEntry]:
    out = []
    for entry in _schedule_items(raw, "targets"):
        if isinstance(entry, TargetEntry):
            out.append(entry)
            continue
        low = entry.get("low", entry.get("min_bg"))
        high = entry.get("high", entry.get("max_bg", low))
        out.append(TargetEntry(start_minute=_offset_minutes(entry), low=float(low), high=float(high)))
    return sorted(out, key=lambda e: e.start_minute)


def build_profile(raw: Dict[str, Any], base: Optional[Profile] = None) -> Profile:
    if isinstance(raw, Profile):
        return raw
    data = fn.normalize_keys(raw or {}, fn.PROFILE)
    values = {}
    for name, value in data.items():
        if value is None or name in SCHEDULE_FIELDS:
            continue
        values[name] = value

    if "basal_schedule" in data:
        values["basal_schedule"] = parse_schedule(data["basal_schedule"], "schedule", ("rate", "value"))
    if "isf_schedule" in data:
        values["isf_schedule"] = parse_schedule(data["isf_schedule"], "sensitivities", ("sensitivity", "value"))
    if "carb_ratio_schedule" in data:
        values["carb_ratio_schedule"] = parse_schedule(data["carb_ratio_schedule"], "schedule", ("ratio", "value"))
    if "target_schedule" in data:
        values["target_schedule"] = parse_targets(data["target_schedule"])

    # coerce numbers and flags to the field's declared type
    for name, value in list(values.items()):
        declared = str(PROFILE_FIELDS[name].type)
        try:
            if declared == "bool":
                values[name] = value if isinstance(value, bool) else str(value).lower() in ("true", "1", "yes")
            elif "float" in declared and not isinstance(value, (list, dict)):
                values[name] = float(value)
        except (TypeError, ValueError) as e:
            raise InvalidProfile(f"profile field {name} has invalid value {value!r}") from e

    if "dynamic_isf" in values and isinstance(values["dynamic_isf"], bool):
        values["dynamic_isf"] = "logarithmic" if values["dynamic_isf"] else "off"

    return dataclasses.replace(base, **values) if base is not None else Profile(**values)


def build_treatment(raw: Dict[str, Any]) -> Treatment:
    if isinstance(raw, Treatment):
        return raw
    data = fn.normalize_keys(raw, fn.TREATMENT)
    try:
        timestamp = parse_time(data.get("timestamp"))
    except ValueError as e:
        raise InvalidTreatment(f"bad treatment time {data.get('timestamp')!r}") from e
    if timestamp is None:
        raise InvalidTreatment(f"treatment without a timestamp: {raw!r}")

    event_type = str(data.get("event_type") or "")
    rate = data.get("rate")
    duration = float(data.get("duration") or 0.0)
    is_temp = "temp" in event_type.lower() or (rate is not None and "duration" in data)
    try:
        return Treatment(
            timestamp=timestamp,
            insulin=float(data.get("insulin") or 0.0),
            carbs=float(data.get("carbs") or 0.0),
            rate=float(rate) if is_temp and rate is not None else None,
            duration=duration if is_temp else 0.0,
            event_type=event_type,
        )
    except (TypeError, ValueError) as e:
        raise InvalidTreatment(f"cannot read treatment {raw!r}") from e


def build_treatments(raw_list) -> List[Treatment]:
    return [build_treatment(t) for t in (raw_list or [])]


def build_glucose(raw_list) -> List[GlucoseReading]:
    out = []
    for raw in raw_list or []:
        if isinstance(raw, GlucoseReading):
            out.append(raw)
            continue
        data = fn.normalize_keys(raw, fn.GLUCOSE)
        glucose = data.get("glucose")
        timestamp = parse_time(data.get("timestamp"))
        if glucose is None or timestamp is None:
            logger.debug("skipping glucose entry without value or time: %r", raw)
            continue
        out.append(GlucoseReading(timestamp=timestamp, glucose=float(glucose), noise=float(data.get("noise") or 0)))
    return out


def build_glucose_status(raw) -> Optional[GlucoseStatus]:
    if raw is None or isinstance(raw, GlucoseStatus):
        return raw
    data = fn.normalize_keys(raw, fn.GLUCOSE_STATUS)
    if data.get("glucose") is None:
        return None
    return GlucoseStatus(
        glucose=float(data["glucose"]),
        delta=float(data.get("delta") or 0.0),
        short_avg_delta=float(data.get("short_avg_delta") or 0.0),
        long_avg_delta=float(data.get("long_avg_delta") or 0.0),
        timestamp=parse_time(data.get("timestamp")) or 0,
        noise=float(data.get("noise") or 0.0),
    )


def build_current_temp(raw) -> CurrentTemp:
    if raw is None:
        return CurrentTemp()
    if isinstance(raw, CurrentTemp):
        return raw
    data = fn.normalize_keys(raw, fn.CURRENT_TEMP)
    return CurrentTemp(rate=float(data.get("rate") or 0.0), duration=float(data.get("duration") or 0.0))


def _build_iob_data(raw) -> IobData:
    data = fn.normalize_keys(raw, fn.IOB)
    last_temp = None
    if data.get("last_temp"):
        lt = fn.normalize_keys(data["last_temp"], fn.LAST_TEMP)
        if lt.get("timestamp") is not None:
            last_temp = LastTemp(
                rate=float(lt.get("rate") or 0.0),
                timestamp=parse_time(lt["timestamp"]),
                duration=float(lt.get("duration") or 0.0),
            )
    return IobData(
        time=parse_time(data.get("time")) or 0,
        iob=float(data.get("iob") or 0.0),
        activity=float(data.get("activity") or 0.0),
        basal_iob=float(data.get("basal_iob") or 0.0),
        bolus_iob=float(data.get("bolus_iob") or 0.0),
        net_basal_insulin=float(data.get("net_basal_insulin") or 0.0),
        bolus_insulin=float(data.get("bolus_insulin") or 0.0),
        last_bolus_time=parse_time(data.get("last_bolus_time")),
        last_temp=last_temp,
    )


def build_iob_pair(raw) -> IobPair:
    """One tick; the zero-temp value may be nested (legacy) or a sibling."""
    if isinstance(raw, IobPair):
        return raw
    if "actual" in raw:
        actual = _build_iob_data(raw["actual"])
        zero = raw.get("zero_temp") or raw.get("zeroTemp") or raw["actual"]
        return IobPair(actual=actual, zero_temp=_build_iob_data(zero))
    actual = _build_iob_data(raw)
    nested = fn.normalize_keys(raw, fn.IOB).get("zero_temp")
    zero_temp = _build_iob_data(nested) if nested else dataclasses.replace(actual)
    return IobPair(actual=actual, zero_temp=zero_temp)


def build_iob_array(raw) -> List[IobPair]:
    if raw is None:
        return []
    if isinstance(raw, dict):
        raw = [raw]
    return [build_iob_pair(r) for r in raw]


def build_meal(raw) -> MealData:
    if raw is None:
        return MealData()
    if isinstance(raw, MealData):
        return raw
    data = fn.normalize_keys(raw, fn.MEAL)
    return MealData(
        carbs=float(data.get("carbs") or 0.0),
        meal_cob=float(data.get("meal_cob") or 0.0),
        current_deviation=float(data.get("current_deviation") or 0.0),
        max_deviation=float(data.get("max_deviation") or 0.0),
        min_deviation=float(data.get("min_deviation") or 0.0),
        slope_from_max_deviation=float(data.get("slope_from_max_deviation") or 0.0),
        slope_from_min_deviation=float(data.get("slope_from_min_deviation") or 0.0),
        all_deviations=[int(x) for x in data.get("all_deviations") or []],
        last_carb_time=parse_time(data.get("last_carb_time")) or 0,
    )


def build_autosens(raw) -> AutosensResult:
    if raw is None:
        return AutosensResult()
    if isinstance(raw, AutosensResult):
        return raw
    data = fn.normalize_keys(raw, fn.AUTOSENS)
    ratio = data.get("ratio")
    return AutosensResult(
        ratio=float(ratio) if ratio is not None else 1.0,
        new_isf=data.get("new_isf"),
        sens_result=str(data.get("sens_result") or ""),
    )


def build_tdd(raw) -> Optional[TddData]:
    if raw is None or isinstance(raw, TddData):
        return raw
    data = fn.normalize_keys(raw, fn.TDD)
    if not data.get("tdd"):
        return None
    return TddData(
        tdd=float(data["tdd"]),
        tdd_average=float(data["tdd_average"]) if data.get("tdd_average") else None,
        tdd_weighted=float(data["tdd_weighted"]) if data.get("tdd_weighted") else None,
    )


def build_request(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Top-level request keys in internal spelling."""
    return fn.normalize_keys(raw or {}, fn.REQUEST)
