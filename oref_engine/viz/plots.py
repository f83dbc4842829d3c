# oref_engine/viz/plots.py
from datetime import datetime, timezone

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt  # noqa: E402
import numpy as np  # noqa: E402

CURVES = [("IOB", "tab:blue"), ("ZT", "tab:cyan"), ("COB", "tab:orange"), ("UAM", "tab:red"), ("blended", "black")]


def plot_predictions(result, out_path, title=None):
    """
    result: determine-basal output dict in legacy naming (``predBGs`` keyed
    IOB/ZT/COB/UAM/blended, plus bg/targetBG/threshold when present).
    Writes a PNG and returns its path.
    """
    preds = result.get("predBGs") or {}
    fig, ax = plt.subplots(figsize=(10, 4))
    for key, color in CURVES:
        curve = preds.get(key)
        if not curve:
            continue
        minutes = np.arange(len(curve)) * 5
        ax.plot(minutes, curve, label=key, color=color, linewidth=2 if key == "blended" else 1)

    if result.get("targetBG") is not None:
        ax.axhline(result["targetBG"], color="green", linestyle="--", linewidth=0.8, label="target")
    if result.get("threshold") is not None:
        ax.axhline(result["threshold"], color="red", linestyle=":", linewidth=0.8, label="threshold")

    ax.set_xlabel("minutes from now")
    ax.set_ylabel("mg/dL")
    ax.set_title(title or f"Predictions (eventual BG {result.get('eventualBG', '?')})")
    ax.legend(loc="upper right", fontsize="small")
    fig.tight_layout()
    fig.savefig(out_path)
    plt.close(fig)
    return out_path


def plot_error_by_hour(rows, out_path):
    """
    rows: compare_runner rows; needs a ``ts`` (epoch ms) or falls back to idx,
    and ref_eventual / py_eventual. Bars are mean |ref - py| per hour.
    """
    pairs = [r for r in rows if r.get("ref_eventual") is not None and r.get("py_eventual") is not None]
    fig, ax = plt.subplots(figsize=(12, 3))
    if not pairs:
        ax.set_title("No comparable rows")
        fig.savefig(out_path)
        plt.close(fig)
        return out_path

    keys = []
    for r in pairs:
        if r.get("ts"):
            dt = datetime.fromtimestamp(r["ts"] / 1000, tz=timezone.utc)
            keys.append(dt.strftime("%Y-%m-%d %H:00"))
        else:
            keys.append(str(r["idx"]))
    err = np.array([abs(r["ref_eventual"] - r["py_eventual"]) for r in pairs], dtype=float)

    uniq = sorted(set(keys))
    agg = [float(np.mean([e for k, e in zip(keys, err) if k == u])) for u in uniq]

    cmap = plt.get_cmap("hot")
    norm = plt.Normalize(vmin=min(agg), vmax=max(agg) if max(agg) > 0 else 1)
    ax.bar(range(len(uniq)), agg, color=[cmap(norm(v)) for v in agg])
    ax.set_xticks(range(len(uniq)))
    ax.set_xticklabels(uniq, rotation=45, ha="right")
    ax.set_ylabel("mean |Δ| mg/dL")
    ax.set_title("Eventual BG |reference - engine|")
    fig.tight_layout()
    fig.savefig(out_path)
    plt.close(fig)
    return out_path
