import json
import logging
from pathlib import Path

import numpy as np
import pandas as pd

from oref_engine.config import REPORTS_PATH

logger = logging.getLogger(__name__)

METRICS_PATH = REPORTS_PATH / "last_run" / "metrics.json"


def _paired(df, ref_col, py_col):
    """Both columns as floats, restricted to rows where both are present."""
    if ref_col not in df or py_col not in df:
        return None, None
    pair = df[[ref_col, py_col]].apply(pd.to_numeric, errors="coerce").dropna()
    if pair.empty:
        return None, None
    return pair[ref_col].to_numpy(dtype=float), pair[py_col].to_numpy(dtype=float)


def mae(a, b):
    return float(np.abs(a - b).mean())


def rmse(a, b):
    return float(np.sqrt(((a - b) ** 2).mean()))


def match_pct(a, b, tol=0.05):
    return float((np.abs(a - b) <= tol).mean())


def _metric(df, ref_col, py_col, fn, **kw):
    a, b = _paired(df, ref_col, py_col)
    if a is None:
        return None
    return fn(a, b, **kw)


def compute_metrics(df: pd.DataFrame) -> dict:
    errors = df["error"].notna().sum() if "error" in df else 0
    return {
        "eventualBG_mae": _metric(df, "ref_eventual", "py_eventual", mae),
        "eventualBG_rmse": _metric(df, "ref_eventual", "py_eventual", rmse),
        "eventualBG_max": _metric(df, "ref_eventual", "py_eventual", lambda a, b: float(np.abs(a - b).max())),
        "rate_mae": _metric(df, "ref_rate", "py_rate", mae),
        "rate_match_pct": _metric(df, "ref_rate", "py_rate", match_pct, tol=0.05),
        "duration_match_pct": _metric(df, "ref_duration", "py_duration", match_pct, tol=0.5),
        "insulinReq_mae": _metric(df, "ref_insreq", "py_insreq", mae),
        "iob_mae": _metric(df, "ref_iob", "py_iob", mae),
        "error_count": int(errors),
        "count": int(len(df)),
    }


def compute_metrics_from_csv(diffs_path, out_path=None) -> dict:
    metrics = compute_metrics(pd.read_csv(diffs_path))
    out_path = Path(out_path) if out_path is not None else METRICS_PATH
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(json.dumps(metrics, indent=2), encoding="utf-8")
    logger.info("metrics saved to %s", out_path)
    return metrics
