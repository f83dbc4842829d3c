import pytest

from builders import GS, INPUTS, IOB_ARRAY, LAST_TEMP, PROFILE, T0
from oref_engine.core.determine_basal import apply_safety_clamps, determine_basal
from oref_engine.structs import CurrentTemp, DetermineBasalResult


def test_in_range_sets_neutral_temp():
    """BG 110 creeping up 1/5m with no IOB: eventual 116 is inside 100-120."""
    rt = determine_basal(INPUTS(GS(110, delta=1)))
    assert rt.error is None
    assert rt.eventual_bg == 116
    assert rt.rate == 1.0
    assert rt.duration == 30
    assert "in range" in rt.reason
    assert rt.pred_bgs.blended[-1] == 116


def test_low_bg_suspends():
    rt = determine_basal(INPUTS(GS(65, delta=-3, long=-2)))
    assert rt.rate == 0.0
    assert 30 <= rt.duration <= 120
    assert "minGuardBG" in rt.reason


def test_high_bg_high_temp_limited_by_max_basal():
    profile = PROFILE(max_iob=3.0, max_basal=2.0)
    rt = determine_basal(INPUTS(GS(250, delta=5, long=4), profile=profile))
    assert rt.rate == 2.0
    assert rt.duration == 30
    assert rt.insulin_req == pytest.approx(3.0)


@pytest.mark.parametrize("bg,delta", [(80, 1), (150, 2), (250, 5), (350, 8)])
@pytest.mark.parametrize("max_basal", [0.5, 1.5, 4.0])
def test_rate_never_exceeds_max_basal(bg, delta, max_basal):
    profile = PROFILE(max_iob=5.0, max_basal=max_basal)
    rt = determine_basal(INPUTS(GS(bg, delta=delta), profile=profile))
    assert rt.error is None
    assert rt.rate is None or 0 <= rt.rate <= max_basal


def test_smb_delivered_when_enabled():
    profile = PROFILE(max_iob=1.0, enable_smb_always=True)
    rt = determine_basal(INPUTS(GS(200, delta=3), profile=profile, micro_bolus_allowed=True))
    assert rt.smb_enabled is True
    assert rt.units == pytest.approx(0.5)
    assert "Microbolusing 0.5U" in rt.reason


@pytest.mark.parametrize("iob", [0.0, 0.5, 0.8, 0.9, 1.5])
def test_iob_plus_smb_within_max_iob(iob):
    profile = PROFILE(max_iob=1.0, enable_smb_always=True)
    rt = determine_basal(
        INPUTS(GS(200, delta=3), profile=profile, iob_array=IOB_ARRAY(iob=iob), micro_bolus_allowed=True)
    )
    assert rt.error is None
    if rt.units is not None:
        assert iob + rt.units <= profile.max_iob + 1e-9


def test_smb_waits_for_interval():
    profile = PROFILE(max_iob=1.0, enable_smb_always=True)
    iob_array = IOB_ARRAY(last_bolus_time=T0 - 60_000)
    rt = determine_basal(INPUTS(GS(200, delta=3), profile=profile, iob_array=iob_array, micro_bolus_allowed=True))
    assert rt.units is None
    assert "Waiting" in rt.reason


def test_carbs_required_when_dropping_fast():
    rt = determine_basal(INPUTS(GS(75, delta=-4), iob_array=IOB_ARRAY(iob=1.5, activity=0.02)))
    assert rt.carbs_req and rt.carbs_req > 0
    assert rt.carbs_req_within <= 45
    assert rt.rate == 0.0


def test_autosens_adjusts_basal_and_isf():
    rt = determine_basal(INPUTS(GS(110, delta=1), autosens=1.2))
    assert rt.sensitivity_ratio == 1.2
    assert rt.variable_sens == pytest.approx(41.7)


@pytest.mark.parametrize(
    "gs,kw,text",
    [
        (GS(110, delta=1, minutes_ago=20), {}, "too old"),
        (GS(110, delta=1, minutes_ago=-10), {}, "too old"),
        (GS(110, delta=1, noise=3), {}, "noise"),
        (GS(120), {"flat_bgs_detected": True}, "unchanged"),
        (None, {}, "no glucose"),
    ],
)
def test_unusable_glucose_gives_error_without_dosing(gs, kw, text):
    rt = determine_basal(INPUTS(gs, **kw))
    assert rt.error is not None
    assert text in rt.error
    assert rt.rate is None
    assert rt.units is None
    assert rt.deliver_at == T0


def test_invalid_profile_gives_error():
    rt = determine_basal(INPUTS(GS(110, delta=1), profile=PROFILE(sens=0)))
    assert "sens" in rt.error
    assert rt.rate is None


def test_empty_iob_projection_gives_error():
    rt = determine_basal(INPUTS(GS(110, delta=1), iob_array=[]))
    assert rt.error is not None


def test_temp_missing_from_pump_history_is_canceled():
    iob_array = IOB_ARRAY(last_temp=LAST_TEMP(30, 1.0, 60))
    rt = determine_basal(INPUTS(GS(110, delta=1), iob_array=iob_array, current_temp=CurrentTemp(2.0, 20)))
    assert rt.rate == 0.0
    assert rt.duration == 0
    assert "canceling temp" in rt.reason


def test_same_inputs_same_result():
    inputs = INPUTS(GS(180, delta=2), profile=PROFILE(enable_smb_always=True), micro_bolus_allowed=True)
    assert determine_basal(inputs) == determine_basal(inputs)


def test_trace_mode_records_stages():
    rt = determine_basal(INPUTS(GS(150, delta=2), trace_mode=True))
    names = [name for name, _ in rt.trace]
    assert names[0] == "glucose_status"
    assert "predictions" in names


def test_safety_clamps_are_recorded():
    rt = DetermineBasalResult(reason="test", rate=5.0, duration=30, units=2.0)
    apply_safety_clamps(rt, PROFILE(max_basal=2.0, max_iob=1.0), iob=0.5)
    assert rt.rate == 2.0
    assert rt.units == pytest.approx(0.5)
    assert [c.field for c in rt.clamps] == ["rate", "units"]
    assert "SafetyClamped rate 5 -> 2" in rt.reason


@pytest.mark.parametrize("ratio", [0.0, -1.0, float("nan"), float("inf")])
def test_unusable_autosens_ratio_gives_error(ratio):
    rt = determine_basal(INPUTS(GS(110, delta=1), autosens=ratio))
    assert "autosens ratio" in rt.error
    assert rt.rate is None
    assert rt.units is None


def test_autosens_ratio_limited_to_profile_bounds():
    rt = determine_basal(INPUTS(GS(110, delta=1), autosens=5.0))
    assert rt.error is None
    assert rt.sensitivity_ratio == 1.2
    assert rt.variable_sens == pytest.approx(41.7)
