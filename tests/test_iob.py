import random

import pytest

from builders import BOLUS, HOUR, MIN, PROFILE, T0, TEMP
from oref_engine.core.iob import (
    calculate_iob,
    calculate_iob_array,
    iob_at,
    temp_intervals,
    sorted_treatments,
)
from oref_engine.errors import InvalidTreatment
from oref_engine.structs import Treatment


def BILINEAR(dia=3.0):
    return PROFILE(dia=dia, curve="bilinear")


def test_bolus_iob_dia3():
    """1U at t0 on a 3h bilinear curve: all of it now, some at 1h, none at 3h."""
    treatments = [BOLUS(0, 1.0)]
    assert calculate_iob(BILINEAR(), treatments, T0).actual.iob == pytest.approx(1.0)

    one_hour = iob_at(BILINEAR(), treatments, T0 + HOUR).iob
    assert 0.0 < one_hour < 1.0

    assert iob_at(BILINEAR(), treatments, T0 + 3 * HOUR).iob == pytest.approx(0.0, abs=1e-3)


def test_large_bolus_just_before_dia_end_prints_zero():
    treatments = [BOLUS(0, 5.0)]
    iob = iob_at(BILINEAR(), treatments, T0 + 3 * HOUR - 90_000).iob
    assert f"{iob:.2f}" == "0.00"


def test_bolus_iob_dia4():
    treatments = [BOLUS(0, 1.0)]
    assert iob_at(BILINEAR(4.0), treatments, T0 + HOUR).iob > 0.5
    assert iob_at(BILINEAR(4.0), treatments, T0 + 3 * HOUR).iob > 0.0
    assert iob_at(BILINEAR(4.0), treatments, T0 + 4 * HOUR).iob == pytest.approx(0.0, abs=1e-3)


def test_iob_is_independent_of_treatment_order():
    treatments = [
        BOLUS(120, 2.0),
        BOLUS(40, 0.5),
        TEMP(90, 2.0, 60),
        TEMP(20, 0.0, 30),
        Treatment(timestamp=T0 - 60 * MIN, carbs=20),
    ]
    expected = calculate_iob(PROFILE(), treatments, T0)
    shuffled = list(treatments)
    random.Random(7).shuffle(shuffled)
    assert calculate_iob(PROFILE(), shuffled, T0) == expected


def test_high_temp_adds_basal_iob():
    pair = calculate_iob(PROFILE(), [TEMP(60, 2.0, 60)], T0)
    assert pair.actual.basal_iob > 0
    assert pair.actual.bolus_iob == 0
    assert pair.actual.net_basal_insulin == pytest.approx(1.0, abs=1e-3)


def test_low_temp_gives_negative_iob():
    pair = calculate_iob(PROFILE(), [TEMP(60, 0.0, 60)], T0)
    assert pair.actual.iob < 0


def test_zero_temp_sibling_diverges_in_future_ticks():
    """A running high temp keeps adding insulin; the zero-temp variant withdraws basal."""
    array = calculate_iob_array(PROFILE(), [TEMP(30, 2.0, 60)], T0)
    later = array[6]
    assert later.actual.iob > later.zero_temp.iob


def test_iob_array_default_length_covers_dia():
    array = calculate_iob_array(PROFILE(dia=5.0), [BOLUS(0, 1.0)], T0)
    assert len(array) == 60
    assert array[1].actual.time - array[0].actual.time == 5 * MIN
    assert [p.actual.iob for p in array] == sorted((p.actual.iob for p in array), reverse=True)


def test_tiny_bolus_counts_as_basal():
    pair = calculate_iob(PROFILE(), [BOLUS(10, 0.05)], T0)
    assert pair.actual.bolus_iob == 0
    assert pair.actual.basal_iob > 0


def test_last_bolus_and_last_temp_reported():
    pair = calculate_iob(PROFILE(), [BOLUS(30, 1.0), BOLUS(10, 0.5), TEMP(20, 1.5, 30)], T0)
    assert pair.actual.last_bolus_time == T0 - 10 * MIN
    assert pair.actual.last_temp.rate == 1.5
    assert pair.actual.last_temp.timestamp == T0 - 20 * MIN


def test_later_temp_cancels_running_one():
    items = sorted_treatments([TEMP(60, 2.0, 60), TEMP(40, 0.5, 30)])
    intervals = temp_intervals(items)
    assert intervals[0].end == T0 - 40 * MIN
    assert intervals[1].start == T0 - 40 * MIN


def test_negative_bolus_rejected():
    with pytest.raises(InvalidTreatment):
        calculate_iob(PROFILE(), [Treatment(timestamp=T0, insulin=-1.0)], T0)


def test_no_negative_zero():
    pair = calculate_iob(PROFILE(), [], T0)
    assert str(pair.actual.iob) == "0.0"
