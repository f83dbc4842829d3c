# oref_engine/analysis/compare_runner.py
import json
import logging
from pathlib import Path
from typing import Any

import pandas as pd

from oref_engine.api import determine_basal
from oref_engine.config import CASES_PATH, REPORTS_PATH
from oref_engine.parsing.inputs_builder import parse_time

logger = logging.getLogger(__name__)

COLUMNS = [
    "idx",
    "case",
    "ts",
    "ref_eventual",
    "py_eventual",
    "ref_rate",
    "py_rate",
    "ref_duration",
    "py_duration",
    "ref_insreq",
    "py_insreq",
    "ref_iob",
    "py_iob",
    "error",
]


def find_cases(cases_dir: str | Path | None = None) -> list[Path]:
    if cases_dir is None:
        cases_dir = CASES_PATH
    return sorted(Path(cases_dir).glob("*.json"))


def load_case(path: str | Path) -> dict[str, Any]:
    """
    A case file holds ``inputs`` (a determine-basal request in any naming)
    and ``expected`` (reference output in oref0 names). A file without
    ``inputs`` is treated as a bare request with no reference.
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if "inputs" not in data:
        return {"inputs": data, "expected": {}}
    return {"inputs": data["inputs"], "expected": data.get("expected") or {}}


def compare_case(idx: int, name: str, case: dict[str, Any]) -> dict[str, Any]:
    inputs = dict(case["inputs"])
    # rows are always built from the legacy spelling
    inputs["naming"] = "legacy"
    result = determine_basal(inputs)
    ref = case["expected"]
    return {
        "idx": idx,
        "case": name,
        "ts": parse_time(inputs.get("time")),
        "ref_eventual": ref.get("eventualBG"),
        "py_eventual": result.get("eventualBG"),
        "ref_rate": ref.get("rate"),
        "py_rate": result.get("rate"),
        "ref_duration": ref.get("duration"),
        "py_duration": result.get("duration"),
        "ref_insreq": ref.get("insulinReq"),
        "py_insreq": result.get("insulinReq"),
        "ref_iob": ref.get("IOB"),
        "py_iob": result.get("IOB"),
        "error": result.get("error"),
    }


def run_compare_on_cases(cases_dir: str | Path | None = None) -> list[dict[str, Any]]:
    """Replay every case in ``cases_dir`` through determine-basal, one row per case."""
    rows = []
    for idx, path in enumerate(find_cases(cases_dir)):
        logger.info("replaying %s", path)
        row = compare_case(idx, path.stem, load_case(path))
        if row["error"]:
            logger.warning("case %s returned error: %s", path.stem, row["error"])
        rows.append(row)
    return rows


def rows_to_frame(rows: list[dict[str, Any]]) -> pd.DataFrame:
    return pd.DataFrame(rows, columns=COLUMNS)


def write_rows_csv(rows: list[dict[str, Any]], out_path: str | Path | None = None) -> Path:
    if out_path is None:
        out_path = REPORTS_PATH / "last_run" / "diffs.csv"
    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    rows_to_frame(rows).to_csv(out_path, index=False)
    logger.info("wrote %d rows to %s", len(rows), out_path)
    return out_path
