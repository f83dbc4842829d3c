"""
Run one engine operation on a JSON request file and print the JSON result.

  python -m oref_engine.tools.run_case determine-basal case.json
  python -m oref_engine.tools.run_case iob request.json --naming snake
  python -m oref_engine.tools.run_case compare --cases tests/data/cases --out reports/last_run --plot
  python -m oref_engine.tools.run_case plot case.json --out reports/plots
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from oref_engine import api
from oref_engine.analysis.compare_runner import load_case, run_compare_on_cases, write_rows_csv
from oref_engine.analysis.metrics import compute_metrics_from_csv
from oref_engine.config import CASES_PATH, REPORTS_PATH, setup_logging

logger = logging.getLogger(__name__)

OPERATIONS = {
    "iob": api.calculate_iob,
    "cob": api.calculate_cob,
    "autosens": api.calculate_autosens,
    "glucose-status": api.calculate_glucose_status,
    "determine-basal": api.determine_basal,
}


def run_operation(name, path, naming=None):
    request = load_case(path)["inputs"]
    if naming:
        request["naming"] = naming
    return OPERATIONS[name](request)


def run_compare(cases_dir, out_dir, plot=False):
    out_dir = Path(out_dir)
    rows = run_compare_on_cases(cases_dir)
    diffs = write_rows_csv(rows, out_dir / "diffs.csv")
    metrics = compute_metrics_from_csv(diffs, out_dir / "metrics.json")
    if plot:
        from oref_engine.viz.plots import plot_error_by_hour

        plot_error_by_hour(rows, out_dir / "error_by_hour.png")
    return metrics


def run_plot(path, out_dir):
    """Prediction curves of one determine-basal case as PNG."""
    # matplotlib is the optional viz extra
    from oref_engine.viz.plots import plot_predictions

    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    result = run_operation("determine-basal", path, "legacy")
    if result.get("error"):
        return result
    png = plot_predictions(result, out_dir / f"{Path(path).stem}_predictions.png", title=Path(path).stem)
    logger.info("wrote %s", png)
    return {"plot": str(png), "eventualBG": result.get("eventualBG")}


def main(argv=None):
    p = argparse.ArgumentParser(description=__doc__.strip().splitlines()[0])
    sub = p.add_subparsers(dest="command", required=True)
    for name in OPERATIONS:
        sp = sub.add_parser(name)
        sp.add_argument("request", help="JSON request (or case file with 'inputs')")
        sp.add_argument("--naming", choices=["legacy", "snake", "camel"], default=None)
    cp = sub.add_parser("compare", help="replay all cases and write diffs.csv + metrics.json")
    cp.add_argument("--cases", default=str(CASES_PATH))
    cp.add_argument("--out", default=str(REPORTS_PATH / "last_run"))
    cp.add_argument("--plot", action="store_true", help="also write error_by_hour.png")
    pp = sub.add_parser("plot", help="render determine-basal prediction curves to PNG")
    pp.add_argument("request")
    pp.add_argument("--out", default=str(REPORTS_PATH / "plots"))
    args = p.parse_args(argv)
    setup_logging()

    if args.command == "compare":
        result = run_compare(args.cases, args.out, args.plot)
    elif args.command == "plot":
        result = run_plot(args.request, args.out)
    else:
        result = run_operation(args.command, args.request, args.naming)

    json.dump(result, sys.stdout, indent=2, sort_keys=True)
    sys.stdout.write("\n")
    return 1 if isinstance(result, dict) and result.get("error") else 0


if __name__ == "__main__":
    sys.exit(main())
