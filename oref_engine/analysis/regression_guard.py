import argparse
import json
import logging
import sys
from pathlib import Path

from oref_engine.config import REPORTS_PATH, setup_logging

logger = logging.getLogger(__name__)

LAST = REPORTS_PATH / "last_run" / "metrics.json"
PREV = REPORTS_PATH / "previous_run" / "metrics.json"

# lower is better for every guarded key
GUARDED_KEYS = ["eventualBG_mae", "rate_mae", "insulinReq_mae", "iob_mae", "error_count"]


def load(path):
    path = Path(path)
    if not path.exists():
        return None
    return json.loads(path.read_text(encoding="utf-8"))


def compare_metrics(prev, last, tolerance=1e-9):
    regressions = []
    for k in GUARDED_KEYS:
        if prev.get(k) is None or last.get(k) is None:
            continue
        if last[k] > prev[k] + tolerance:
            regressions.append((k, prev[k], last[k]))
    return regressions


def main(argv=None):
    p = argparse.ArgumentParser(description="Fail when parity metrics got worse than the previous run.")
    p.add_argument("--last", default=str(LAST))
    p.add_argument("--prev", default=str(PREV))
    args = p.parse_args(argv)
    setup_logging()

    prev = load(args.prev)
    last = load(args.last)
    if last is None:
        logger.error("no metrics at %s", args.last)
        return 1
    if prev is None:
        logger.warning("no previous metrics at %s, skipping regression check", args.prev)
        return 0

    regressions = compare_metrics(prev, last)
    if regressions:
        for key, was, now in regressions:
            logger.error("regression in %s: was %s, now %s", key, was, now)
        return 1

    logger.info("no regression")
    return 0


if __name__ == "__main__":
    sys.exit(main())
