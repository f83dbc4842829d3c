import math

import pytest

from builders import PROFILE
from oref_engine.core.dynamic_isf import (
    DynamicIsfMode,
    dynamic_isf,
    insulin_divisor,
    original_ratio,
    sigmoid_ratio,
)
from oref_engine.core.insulin_curves import curve_params
from oref_engine.errors import InvalidProfile
from oref_engine.structs import TddData

TDD = TddData(tdd=40.0)


def run(mode, bg, tdd=TDD, target=100, **overrides):
    profile = PROFILE(dynamic_isf=mode, **overrides)
    return dynamic_isf(profile, profile.sens, bg, target, tdd, curve_params(profile))


def test_off_and_missing_tdd_return_none():
    assert run("off", 150) is None
    assert run("original", 150, tdd=None) is None
    assert run("logarithmic", 150, tdd=TddData(tdd=0)) is None


def test_original_formula():
    params = curve_params(PROFILE())
    expected_sens = 1800 / (40 * 0.8 * math.log(100 / 55 + 1))
    assert original_ratio(50, 100, TDD, 0.8, params) == pytest.approx(50 / expected_sens)

    result = run("original", 100)
    assert result.mode is DynamicIsfMode.ORIGINAL
    assert result.sens == pytest.approx(50 / result.ratio)


@pytest.mark.parametrize("mode", ["original", "logarithmic", "sigmoid"])
def test_higher_bg_means_lower_isf(mode):
    low = run(mode, 100)
    high = run(mode, 200)
    assert high.sens <= low.sens


@pytest.mark.parametrize("mode", ["original", "logarithmic", "sigmoid"])
def test_ratio_clamped_to_autosens_bounds(mode):
    for bg in (60, 100, 250, 400):
        result = run(mode, bg)
        assert 0.7 <= result.ratio <= 1.2


def test_sigmoid_is_neutral_at_target():
    profile = PROFILE()
    params = curve_params(profile)
    assert sigmoid_ratio(50, 100, TDD, 0.5, params, target_bg=100, profile=profile) == pytest.approx(1.0)


def test_sigmoid_uses_weighted_tdd_factor():
    profile = PROFILE()
    params = curve_params(profile)
    base = sigmoid_ratio(50, 160, TDD, 0.5, params, target_bg=100, profile=profile)
    heavier = sigmoid_ratio(
        50, 160, TddData(tdd=40, tdd_average=40, tdd_weighted=60), 0.5, params, target_bg=100, profile=profile
    )
    assert heavier > base


def test_insulin_divisor_by_peak():
    assert insulin_divisor(75) == 55
    assert insulin_divisor(55) == 65
    assert insulin_divisor(45) == 75


def test_mode_parsing():
    assert DynamicIsfMode.parse(True) is DynamicIsfMode.LOGARITHMIC
    assert DynamicIsfMode.parse(None) is DynamicIsfMode.OFF
    with pytest.raises(InvalidProfile):
        DynamicIsfMode.parse("cubic")
