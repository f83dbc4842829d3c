import json
import logging
import os
from pathlib import Path

# --- report locations (analysis tooling) ---
REPORTS_PATH = Path(os.environ.get("OREF_REPORTS_PATH", "reports"))
CASES_PATH = Path(os.environ.get("OREF_CASES_PATH", "tests/data/cases"))

# --- glucose ---
BG_MIN_VALID = 39  # below this a CGM value is a sensor code, not glucose
BG_STALE_MINUTES = 12
BG_FUTURE_MINUTES = -5
CGM_MAX_NOISE = 3
PRED_BG_MIN = 39
PRED_BG_MAX = 401

# --- windows ---
TICK_MINUTES = 5
ZERO_TEMP_MINUTES = 240
AUTOSENS_WINDOW_HOURS = 24
AUTOSENS_FULL_DATA_POINTS = 96  # 8h of 5m buckets
AUTOSENS_MAX_PAD = 18
AUTOSENS_MIN_DEVIATIONS = 12
COB_DEVIATION_WINDOW_MINUTES = 45
MAX_GAP_INTERPOLATION_MINUTES = 240

# --- insulin ---
SMB_BOLUS_MAX = 0.1  # boluses below this are counted as basal IOB
EXERCISE_HALF_BASAL_DEFAULT = 160

# --- SMB ---
SMB_MAX_DELTA_PERCENTAGE = 0.2
SMB_INTERVAL_MIN = 1
SMB_INTERVAL_MAX = 10
SMB_ZERO_TEMP_MAX = 60

# --- dynamic ISF ---
DYNAMIC_ISF_CONSTANT = 1800
DYNAMIC_ISF_MMOL_FACTOR = 0.0555


def log_level():
    return os.environ.get("OREF_LOG_LEVEL", "WARNING").upper()


def setup_logging():
    logging.basicConfig(
        level=log_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def load_preferences(path, base=None):
    """Read a preferences JSON file (any supported naming) into a Profile.

    Keys present in the file override ``base`` (or the Profile defaults).
    """
    from oref_engine.parsing.inputs_builder import build_profile

    with open(path, encoding="utf-8") as f:
        prefs = json.load(f)
    return build_profile(prefs, base=base)
