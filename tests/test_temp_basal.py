import pytest

from builders import PROFILE
from oref_engine.core.temp_basal import (
    calculate_expected_delta,
    get_max_safe_basal,
    round_basal,
    set_temp_basal,
    without_zeros,
)
from oref_engine.structs import CurrentTemp, DetermineBasalResult


def test_round_basal_steps():
    assert round_basal(0.83) == pytest.approx(0.85)
    assert round_basal(0.824) == pytest.approx(0.8)
    assert round_basal(12.34) == pytest.approx(12.3)


def test_without_zeros():
    assert without_zeros(1.50) == "1.5"
    assert without_zeros(2.0) == "2"
    assert without_zeros(0.05) == "0.05"


def test_max_safe_basal_is_smallest_limit():
    assert get_max_safe_basal(PROFILE(max_basal=5.0, current_basal=1.0)) == 3.0
    assert get_max_safe_basal(PROFILE(max_basal=2.0, current_basal=1.0)) == 2.0
    assert get_max_safe_basal(PROFILE(max_basal=10.0, current_basal=1.0, max_daily_basal=0.9)) == pytest.approx(2.7)


def test_expected_delta():
    assert calculate_expected_delta(110, 134, 0.0) == -1.0


def test_rate_capped_at_max_safe_basal():
    rt = set_temp_basal(9.0, 30, PROFILE(max_basal=2.0), DetermineBasalResult(), CurrentTemp())
    assert rt.rate == 2.0
    assert rt.duration == 30


def test_negative_rate_becomes_zero():
    rt = set_temp_basal(-1.0, 30, PROFILE(), DetermineBasalResult(), CurrentTemp())
    assert rt.rate == 0.0


def test_similar_running_temp_is_kept():
    rt = set_temp_basal(1.6, 30, PROFILE(), DetermineBasalResult(), CurrentTemp(rate=1.5, duration=25))
    assert rt.rate is None
    assert "no temp required" in rt.reason


def test_neutral_temp_skipped_when_configured():
    profile = PROFILE(skip_neutral_temps=True)
    rt = set_temp_basal(1.0, 30, profile, DetermineBasalResult(), CurrentTemp())
    assert rt.rate is None

    rt = set_temp_basal(1.0, 30, profile, DetermineBasalResult(), CurrentTemp(rate=2.0, duration=10))
    assert rt.rate == 0.0
    assert rt.duration == 0


def test_neutral_temp_set_by_default():
    rt = set_temp_basal(1.0, 30, PROFILE(), DetermineBasalResult(), CurrentTemp())
    assert rt.rate == 1.0
    assert "neutral temp" in rt.reason
