import pytest

from builders import MIN, READINGS, T0
from oref_engine.core.glucose_status import detect_flat_bgs, get_glucose_status, valid_readings
from oref_engine.errors import StaleOrMissingGlucose
from oref_engine.structs import GlucoseReading


def test_steady_rise():
    """+2 mg/dL every 5 minutes shows up in all three deltas."""
    status = get_glucose_status(READINGS([120 - 2 * i for i in range(10)]))
    assert status.glucose == 120
    assert status.delta == pytest.approx(2.0)
    assert status.short_avg_delta == pytest.approx(2.0)
    assert status.long_avg_delta == pytest.approx(2.0)
    assert status.timestamp == T0
    assert not detect_flat_bgs(status)


def test_flat_cgm_detected():
    status = get_glucose_status(READINGS([100] * 10))
    assert status.delta == 0
    assert detect_flat_bgs(status)


def test_sensor_codes_are_skipped():
    readings = [GlucoseReading(T0, 38)] + READINGS([110, 108, 106], now=T0 - 5 * MIN)
    status = get_glucose_status(readings)
    assert status.glucose == 110
    assert len(valid_readings(readings)) == 3


def test_close_readings_are_averaged():
    readings = [GlucoseReading(T0, 102), GlucoseReading(T0 - MIN, 100), GlucoseReading(T0 - 5 * MIN, 98)]
    status = get_glucose_status(readings)
    assert status.glucose == pytest.approx(101)


def test_input_order_does_not_matter():
    readings = READINGS([130, 125, 121, 118, 116])
    assert get_glucose_status(list(reversed(readings))) == get_glucose_status(readings)


def test_no_readings():
    with pytest.raises(StaleOrMissingGlucose):
        get_glucose_status([GlucoseReading(T0, 20)])
