import math

import pytest

from builders import PROFILE
from oref_engine.core.insulin_curves import (
    InsulinCurve,
    bilinear,
    curve_params,
    exponential,
    insulin_effect,
)
from oref_engine.errors import ComputationError, InvalidProfile


def test_bilinear_full_at_zero_and_empty_at_end():
    assert bilinear(0, 3.0)[0] == pytest.approx(1.0)
    assert bilinear(180, 3.0) == (0.0, 0.0)


def test_bilinear_stretches_with_dia():
    """Same elapsed time leaves more insulin on a longer DIA."""
    assert bilinear(60, 4.0)[0] > bilinear(60, 3.0)[0]


def test_bilinear_never_negative_near_end():
    iob, activity = bilinear(178.5, 3.0)
    assert iob == 0.0
    assert activity >= 0.0


def test_exponential_monotonic_decay():
    values = [exponential(t, 5.0, 75.0)[0] for t in range(0, 300, 15)]
    assert values[0] == pytest.approx(1.0)
    assert all(a >= b for a, b in zip(values, values[1:]))
    assert exponential(300, 5.0, 75.0) == (0.0, 0.0)


def test_exponential_activity_peaks_near_peak_time():
    peak = exponential(75, 5.0, 75.0)[1]
    assert peak > exponential(30, 5.0, 75.0)[1]
    assert peak > exponential(120, 5.0, 75.0)[1]


def test_exponential_rejects_peak_too_late_for_dia():
    with pytest.raises(ComputationError):
        exponential(10, 2.0, 75.0)


def test_future_dose_is_untouched():
    assert exponential(-5, 5.0, 75.0) == (1.0, 0.0)
    assert bilinear(-5, 3.0) == (1.0, 0.0)


def test_curve_params_raise_dia_to_minimum():
    params = curve_params(PROFILE(dia=3.0, curve="rapid-acting"))
    assert params.dia == 5.0
    assert params.peak == 75.0

    params = curve_params(PROFILE(dia=2.0, curve="bilinear"))
    assert params.dia == 3.0


def test_custom_peak_is_clamped():
    params = curve_params(PROFILE(curve="ultra-rapid", use_custom_peak_time=True, insulin_peak_time=20))
    assert params.peak == 35.0
    params = curve_params(PROFILE(curve="rapid-acting", use_custom_peak_time=True, insulin_peak_time=200))
    assert params.peak == 120.0


def test_custom_peak_ignored_without_flag():
    params = curve_params(PROFILE(curve="ultra-rapid", insulin_peak_time=90))
    assert params.peak == 55.0


def test_curve_aliases_and_unknown():
    assert InsulinCurve.parse("rapid_acting") is InsulinCurve.RAPID_ACTING
    assert InsulinCurve.parse("Ultra Rapid") is InsulinCurve.ULTRA_RAPID
    with pytest.raises(InvalidProfile):
        InsulinCurve.parse("lyumjev-ish")


def test_insulin_effect_dispatches_on_curve():
    bil = curve_params(PROFILE(dia=3.0, curve="bilinear"))
    exp = curve_params(PROFILE(dia=5.0, curve="rapid-acting"))
    assert insulin_effect(bil, 60) == bilinear(60, 3.0)
    assert insulin_effect(exp, 60) == exponential(60, 5.0, 75.0)


def test_exponential_activity_tapers_to_zero_at_end():
    end, peak = 300.0, 75.0
    tau = peak * (1 - peak / end) / (1 - 2 * peak / end)
    a = 2 * tau / end
    s = 1 / (1 - a + (1 + a) * math.exp(-end / tau))
    t = 60.0
    assert exponential(t, 5.0, peak)[1] == pytest.approx((s / tau**2) * t * (1 - t / end) * math.exp(-t / tau))
    assert exponential(end - 0.5, 5.0, peak)[1] < 1e-4
