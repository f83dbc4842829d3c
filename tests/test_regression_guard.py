from oref_engine.analysis.regression_guard import compare_metrics, main


def test_worse_metric_is_a_regression():
    prev = {"eventualBG_mae": 1.0, "rate_mae": 0.1}
    last = {"eventualBG_mae": 1.5, "rate_mae": 0.1}
    assert compare_metrics(prev, last) == [("eventualBG_mae", 1.0, 1.5)]


def test_missing_values_are_skipped():
    assert compare_metrics({"iob_mae": None, "rate_mae": 0.2}, {"iob_mae": 3.0}) == []


def test_main_exit_codes(write_json, tmp_path):
    prev = write_json("prev.json", {"rate_mae": 0.1, "error_count": 0})
    better = write_json("better.json", {"rate_mae": 0.05, "error_count": 0})
    worse = write_json("worse.json", {"rate_mae": 0.1, "error_count": 2})

    assert main(["--prev", str(prev), "--last", str(better)]) == 0
    assert main(["--prev", str(prev), "--last", str(worse)]) == 1
    assert main(["--prev", str(tmp_path / "none.json"), "--last", str(better)]) == 0
    assert main(["--prev", str(prev), "--last", str(tmp_path / "none.json")]) == 1
