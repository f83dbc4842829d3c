import pandas as pd
import pytest

from oref_engine.analysis.compare_runner import (
    COLUMNS,
    find_cases,
    load_case,
    run_compare_on_cases,
    write_rows_csv,
)
from oref_engine.analysis.metrics import compute_metrics, compute_metrics_from_csv, mae, match_pct, rmse


def test_bundled_cases_match_reference(cases_path):
    rows = run_compare_on_cases(cases_path)
    assert len(rows) == len(find_cases(cases_path)) >= 3
    for row in rows:
        assert row["error"] is None
        assert row["py_rate"] == pytest.approx(row["ref_rate"])
        if row["ref_eventual"] is not None:
            assert row["py_eventual"] == pytest.approx(row["ref_eventual"])


def test_bare_request_has_no_reference(write_json, tmp_path):
    write_json("bare.json", {"time": 1704067200000, "profile": {"sens": 50}})
    case = load_case(tmp_path / "bare.json")
    assert case["expected"] == {}
    rows = run_compare_on_cases(tmp_path)
    assert rows[0]["ref_rate"] is None
    assert rows[0]["error"]


def test_rows_written_as_csv(cases_path, tmp_path):
    rows = run_compare_on_cases(cases_path)
    out = write_rows_csv(rows, tmp_path / "diffs.csv")
    df = pd.read_csv(out)
    assert list(df.columns) == COLUMNS
    assert len(df) == len(rows)


def test_metrics_on_frame():
    df = pd.DataFrame(
        {
            "ref_eventual": [100, 120, None],
            "py_eventual": [102, 117, 130],
            "ref_rate": [1.0, 0.0, 2.0],
            "py_rate": [1.0, 0.05, 1.5],
            "error": [None, None, "stale"],
        }
    )
    m = compute_metrics(df)
    assert m["eventualBG_mae"] == pytest.approx(2.5)
    assert m["eventualBG_max"] == pytest.approx(3.0)
    assert m["rate_match_pct"] == pytest.approx(2 / 3)
    assert m["insulinReq_mae"] is None
    assert m["error_count"] == 1
    assert m["count"] == 3


def test_metric_helpers():
    a = pd.Series([1.0, 2.0, 3.0]).to_numpy()
    b = pd.Series([1.0, 2.0, 5.0]).to_numpy()
    assert mae(a, b) == pytest.approx(2 / 3)
    assert rmse(a, b) == pytest.approx((4 / 3) ** 0.5)
    assert match_pct(a, b) == pytest.approx(2 / 3)


def test_metrics_json_written(cases_path, tmp_path, load_json):
    diffs = write_rows_csv(run_compare_on_cases(cases_path), tmp_path / "diffs.csv")
    metrics = compute_metrics_from_csv(diffs, tmp_path / "metrics.json")
    assert load_json(tmp_path / "metrics.json") == metrics
    assert metrics["rate_mae"] == pytest.approx(0.0)
