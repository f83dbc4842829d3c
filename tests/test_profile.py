import pytest
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from builders import HOUR, PROFILE, T0
from oref_engine.core.profile import (
    basal_lookup,
    max_daily_basal,
    minute_of_day,
    resolve,
    targets_lookup,
    validate_profile,
)
from oref_engine.errors import InvalidProfile
from oref_engine.structs import ScheduleEntry, TargetEntry

BASALS = [ScheduleEntry(0, 0.8), ScheduleEntry(360, 1.2), ScheduleEntry(1320, 0.9)]


def test_scalar_values_without_schedule():
    p = PROFILE(current_basal=0.7, sens=45, carb_ratio=12)
    r = resolve(p, T0)
    assert (r.basal, r.sens, r.carb_ratio, r.min_bg, r.max_bg) == (0.7, 45, 12, 100, 120)


def test_basal_schedule_lookup():
    p = PROFILE(basal_schedule=BASALS)
    assert basal_lookup(p, T0 + 3 * HOUR) == 0.8
    assert basal_lookup(p, T0 + 7 * HOUR) == 1.2
    assert basal_lookup(p, T0 + 23 * HOUR) == 0.9


def test_schedule_before_first_entry_wraps_to_last():
    p = PROFILE(basal_schedule=[ScheduleEntry(360, 1.2), ScheduleEntry(1320, 0.9)])
    assert basal_lookup(p, T0 + 3 * HOUR) == 0.9


def test_unsorted_schedule_is_handled():
    p = PROFILE(basal_schedule=list(reversed(BASALS)))
    assert basal_lookup(p, T0 + 7 * HOUR) == 1.2


def test_schedule_follows_profile_timezone():
    try:
        ZoneInfo("Europe/Berlin")
    except ZoneInfoNotFoundError:
        pytest.skip("no tz database")
    p = PROFILE(basal_schedule=BASALS, timezone="Europe/Berlin")
    # 05:30 UTC is 06:30 in Berlin in January
    assert minute_of_day(T0 + 5 * HOUR + 30 * 60_000, "Europe/Berlin") == 390
    assert basal_lookup(p, T0 + 5 * HOUR + 30 * 60_000) == 1.2


def test_target_schedule():
    p = PROFILE(target_schedule=[TargetEntry(0, 110, 110), TargetEntry(480, 95, 105)])
    assert targets_lookup(p, T0 + 9 * HOUR) == (95, 105)


def test_max_daily_basal():
    assert max_daily_basal(PROFILE(basal_schedule=BASALS)) == 1.2
    assert max_daily_basal(PROFILE(current_basal=0.6)) == 0.6
    assert max_daily_basal(PROFILE(max_daily_basal=2.0, basal_schedule=BASALS)) == 2.0


def test_default_profile_is_valid():
    validate_profile(PROFILE())


@pytest.mark.parametrize(
    "overrides",
    [
        {"sens": 0},
        {"carb_ratio": -5},
        {"dia": 0},
        {"max_bg": 90},
        {"autosens_min": 1.1},
        {"bolus_increment": 0},
        {"current_basal": float("nan")},
        {"basal_schedule": [ScheduleEntry(1500, 1.0)]},
        {"isf_schedule": [ScheduleEntry(0, 0.0)]},
    ],
)
def test_invalid_profiles(overrides):
    with pytest.raises(InvalidProfile):
        validate_profile(PROFILE(**overrides))


def test_unknown_timezone_rejected():
    with pytest.raises(InvalidProfile):
        basal_lookup(PROFILE(basal_schedule=BASALS, timezone="Mars/Olympus"), T0)
