from __future__ import annotations

import logging
import math
from bisect import bisect_right
from datetime import datetime, timezone
from typing import Sequence, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from oref_engine.core.insulin_curves import curve_params
from oref_engine.errors import InvalidProfile
from oref_engine.structs import Profile, ResolvedProfile, TargetEntry

logger = logging.getLogger(__name__)


def _tz(name):
    if not name or name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except ZoneInfoNotFoundError as e:
        raise InvalidProfile(f"unknown timezone {name!r}") from e


def minute_of_day(time_ms: int, tz_name: str = "UTC") -> int:
    dt = datetime.fromtimestamp(time_ms / 1000.0, tz=_tz(tz_name))
    return dt.hour * 60 + dt.minute


def _entry_at(entries: Sequence, minute: int):
    # entries are sorted by start_minute; before the first start wraps to the last entry
    starts = [e.start_minute for e in entries]
    idx = bisect_right(starts, minute) - 1
    return entries[idx] if idx >= 0 else entries[-1]


def _sorted(entries):
    return sorted(entries, key=lambda e: e.start_minute)


def basal_lookup(profile: Profile, time_ms: int) -> float:
    if not profile.basal_schedule:
        return profile.current_basal
    entry = _entry_at(_sorted(profile.basal_schedule), minute_of_day(time_ms, profile.timezone))
    return entry.value


def isf_lookup(profile: Profile, time_ms: int) -> float:
    if not profile.isf_schedule:
        return profile.sens
    entry = _entry_at(_sorted(profile.isf_schedule), minute_of_day(time_ms, profile.timezone))
    return entry.value


def carb_ratio_lookup(profile: Profile, time_ms: int) -> float:
    if not profile.carb_ratio_schedule:
        return profile.carb_ratio
    entry = _entry_at(_sorted(profile.carb_ratio_schedule), minute_of_day(time_ms, profile.timezone))
    return entry.value


def targets_lookup(profile: Profile, time_ms: int) -> Tuple[float, float]:
    if not profile.target_schedule:
        return profile.min_bg, profile.max_bg
    entry: TargetEntry = _entry_at(_sorted(profile.target_schedule), minute_of_day(time_ms, profile.timezone))
    return entry.low, entry.high


def max_daily_basal(profile: Profile) -> float:
    if profile.max_daily_basal:
        return profile.max_daily_basal
    if profile.basal_schedule:
        return max(e.value for e in profile.basal_schedule)
    return profile.current_basal


def resolve(profile: Profile, time_ms: int) -> ResolvedProfile:
    """Schedule-dependent values in effect at ``time_ms``."""
    low, high = targets_lookup(profile, time_ms)
    return ResolvedProfile(
        basal=basal_lookup(profile, time_ms),
        sens=isf_lookup(profile, time_ms),
        carb_ratio=carb_ratio_lookup(profile, time_ms),
        min_bg=low,
        max_bg=high,
    )


def _check(cond, msg):
    if not cond:
        logger.warning("invalid profile: %s", msg)
        raise InvalidProfile(msg)


def _finite(name, value):
    _check(value is not None and math.isfinite(value), f"{name} must be a finite number, got {value!r}")


def validate_profile(profile: Profile) -> None:
    """Raise InvalidProfile if the profile cannot be used for dosing."""
    for name in ("dia", "current_basal", "max_iob", "max_basal", "min_bg", "max_bg", "sens", "carb_ratio"):
        _finite(name, getattr(profile, name))

    _check(profile.dia > 0, f"dia must be positive, got {profile.dia}")
    _check(profile.sens > 0, f"sens must be positive, got {profile.sens}")
    _check(profile.carb_ratio > 0, f"carb_ratio must be positive, got {profile.carb_ratio}")
    _check(profile.current_basal >= 0, f"current_basal must not be negative, got {profile.current_basal}")
    _check(profile.max_basal >= 0, f"max_basal must not be negative, got {profile.max_basal}")
    _check(profile.max_iob >= 0, f"max_iob must not be negative, got {profile.max_iob}")
    _check(profile.min_bg > 0, f"min_bg must be positive, got {profile.min_bg}")
    _check(profile.max_bg >= profile.min_bg, f"max_bg {profile.max_bg} below min_bg {profile.min_bg}")
    _check(profile.bolus_increment > 0, f"bolus_increment must be positive, got {profile.bolus_increment}")
    _check(
        profile.autosens_min <= 1.0 <= profile.autosens_max,
        f"autosens bounds must contain 1.0, got [{profile.autosens_min}, {profile.autosens_max}]",
    )

    params = curve_params(profile)
    _check(0 < params.peak < params.end, f"insulin peak {params.peak} min outside dia {params.dia} h")

    for label, schedule in (
        ("basal", profile.basal_schedule),
        ("isf", profile.isf_schedule),
        ("carb ratio", profile.carb_ratio_schedule),
    ):
        for entry in schedule:
            _check(0 <= entry.start_minute < 1440, f"{label} schedule offset {entry.start_minute} out of day")
            _finite(f"{label} schedule value", entry.value)
            if label == "basal":
                _check(entry.value >= 0, f"basal schedule rate {entry.value} negative")
            else:
                _check(entry.value > 0, f"{label} schedule value {entry.value} not positive")
    for entry in profile.target_schedule:
        _check(0 <= entry.start_minute < 1440, f"target schedule offset {entry.start_minute} out of day")
        _check(0 < entry.low <= entry.high, f"target range {entry.low}-{entry.high} invalid")
