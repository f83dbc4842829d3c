import pytest

from builders import CARBS, PROFILE, READINGS, T0
from oref_engine.core.autosens import detect_sensitivity, percentile

DAY = 289  # 24h of 5 minute readings, both ends included


def RISING(step=2.0, n=DAY):
    """BG climbing ``step`` every 5 minutes with no insulin on board."""
    return READINGS([100 + step * (n - 1 - i) for i in range(n)])


def FALLING(step=2.0, n=DAY):
    return READINGS([124 + step * i for i in range(n)])


def test_not_enough_data_is_neutral():
    result = detect_sensitivity(PROFILE(), READINGS([110] * 13), [], T0)
    assert result.ratio == 1.0
    assert result.deviation_count < 12
    assert "Not enough data" in result.sens_result


def test_flat_day_is_normal():
    result = detect_sensitivity(PROFILE(), READINGS([100] * DAY), [], T0)
    assert result.ratio == 1.0
    assert result.sens_result == "Sensitivity normal"


def test_resistance_is_capped_at_autosens_max():
    result = detect_sensitivity(PROFILE(), RISING(), [], T0)
    assert result.ratio == 1.2
    assert result.raw_ratio > 1.2
    assert result.sens_result == "Excess insulin resistance detected"


def test_sensitivity_is_capped_at_autosens_min():
    result = detect_sensitivity(PROFILE(), FALLING(), [], T0)
    assert result.ratio == 0.7
    assert result.new_isf == round(50 / 0.7)


@pytest.mark.parametrize("lo,hi", [(0.8, 1.1), (0.5, 2.0), (1.0, 1.0)])
def test_ratio_stays_within_bounds(lo, hi):
    for readings in (RISING(), FALLING(), RISING(step=0.5)):
        result = detect_sensitivity(PROFILE(autosens_min=lo, autosens_max=hi), readings, [], T0)
        assert lo <= result.ratio <= hi


def test_meal_intervals_are_excluded():
    result = detect_sensitivity(PROFILE(), READINGS([100] * DAY), [CARBS(12 * 60, 20)], T0)
    assert result.excluded_count >= 10
    assert result.ratio == 1.0


def test_readings_older_than_a_day_ignored():
    old = READINGS([300] * 50, now=T0 - 30 * 60 * 60_000)
    result = detect_sensitivity(PROFILE(), READINGS([100] * DAY) + old, [], T0)
    assert result.ratio == 1.0


def test_percentile_matches_oref():
    values = [1, 2, 3, 4]
    assert percentile(values, 0.5) == 3
    assert percentile(values, 0.25) == 2
    assert percentile([], 0.5) == 0.0


def test_zero_basal_profile_is_neutral():
    result = detect_sensitivity(PROFILE(current_basal=0.0), RISING(), [], T0)
    assert result.ratio == 1.0
    assert result.deviation_count >= 12
    assert "No basal" in result.sens_result


def test_same_history_same_ratio():
    readings = RISING(step=0.5)
    carbs = [CARBS(6 * 60, 20)]
    assert detect_sensitivity(PROFILE(), readings, carbs, T0) == detect_sensitivity(PROFILE(), readings, carbs, T0)
