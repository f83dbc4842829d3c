from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from oref_engine.config import DYNAMIC_ISF_CONSTANT, DYNAMIC_ISF_MMOL_FACTOR
from oref_engine.core.insulin_curves import CurveParams
from oref_engine.errors import ComputationError, InvalidProfile
from oref_engine.structs import Profile, TddData

logger = logging.getLogger(__name__)


class DynamicIsfMode(Enum):
    OFF = "off"
    ORIGINAL = "original"
    LOGARITHMIC = "logarithmic"
    SIGMOID = "sigmoid"

    @classmethod
    def parse(cls, value) -> "DynamicIsfMode":
        if isinstance(value, DynamicIsfMode):
            return value
        if value in (None, False, ""):
            return cls.OFF
        if value is True:
            return cls.LOGARITHMIC
        key = str(value).strip().lower()
        for mode in cls:
            if mode.value == key:
                return mode
        raise InvalidProfile(f"unknown dynamic ISF mode: {value!r}")


@dataclass
class DynamicIsf:
    mode: DynamicIsfMode
    ratio: float  # profile ISF / dynamic ISF, within autosens bounds
    sens: float  # mg/dL per U
    raw_ratio: float


def insulin_divisor(peak: float) -> float:
    # rapid (75) -> 55, ultra-rapid (55) -> 65, faster analogues -> 75
    if peak > 65:
        return 55.0
    if peak > 50:
        return 65.0
    return 75.0


def blended_tdd(tdd: TddData) -> float:
    if tdd.tdd_weighted:
        return tdd.tdd_weighted
    if tdd.tdd_average:
        return 0.3 * tdd.tdd + 0.7 * tdd.tdd_average
    return tdd.tdd


def original_ratio(profile_sens, bg, tdd: TddData, af, params: CurveParams, target_bg=None, profile=None):
    """Absolute ISF from TDD, expressed as a ratio to the profile ISF."""
    variable_sens = DYNAMIC_ISF_CONSTANT / (blended_tdd(tdd) * af * math.log(bg / insulin_divisor(params.peak) + 1))
    return profile_sens / variable_sens


def logarithmic_ratio(profile_sens, bg, tdd: TddData, af, params: CurveParams, target_bg=None, profile=None):
    insulin_factor = 120 - params.peak
    return profile_sens * af * tdd.tdd * math.log(bg / insulin_factor + 1) / DYNAMIC_ISF_CONSTANT


def sigmoid_ratio(profile_sens, bg, tdd: TddData, af, params: CurveParams, target_bg=None, profile=None):
    min_ratio = profile.autosens_min
    max_ratio = profile.autosens_max
    interval = max_ratio - min_ratio
    max_minus_one = max_ratio - 1
    if max_minus_one == 0:
        max_minus_one = 0.01
    # deviation from target in mmol/L
    bg_dev = (bg - target_bg) * DYNAMIC_ISF_MMOL_FACTOR
    tdd_factor = 1.0
    if tdd.tdd_weighted and tdd.tdd_average:
        tdd_factor = tdd.tdd_weighted / tdd.tdd_average
    # offset puts the curve at ratio 1.0 when bg == target
    fix_offset = math.log(max(0.01, 1 - min_ratio) / max_minus_one)
    exponent = bg_dev * af * tdd_factor + fix_offset
    return interval / (1 + math.exp(-exponent)) + min_ratio


STRATEGIES = {
    DynamicIsfMode.ORIGINAL: original_ratio,
    DynamicIsfMode.LOGARITHMIC: logarithmic_ratio,
    DynamicIsfMode.SIGMOID: sigmoid_ratio,
}


def dynamic_isf(
    profile: Profile,
    profile_sens: float,
    bg: float,
    target_bg: float,
    tdd: Optional[TddData],
    params: CurveParams,
) -> Optional[DynamicIsf]:
    """ISF adjusted by the selected strategy, or None when disabled or without TDD."""
    mode = DynamicIsfMode.parse(profile.dynamic_isf)
    if mode is DynamicIsfMode.OFF:
        return None
    if tdd is None or not tdd.tdd or tdd.tdd <= 0:
        logger.debug("dynamic ISF %s: no TDD, skipping", mode.value)
        return None
    if bg <= 0:
        return None

    af = profile.adjustment_factor_sigmoid if mode is DynamicIsfMode.SIGMOID else profile.adjustment_factor
    if af is None or af <= 0:
        raise InvalidProfile(f"dynamic ISF adjustment factor must be positive, got {af}")

    raw = STRATEGIES[mode](profile_sens, bg, tdd, af, params, target_bg=target_bg, profile=profile)
    if not math.isfinite(raw) or raw <= 0:
        raise ComputationError(f"dynamic ISF {mode.value} produced ratio {raw}")

    ratio = min(profile.autosens_max, max(profile.autosens_min, raw))
    sens = profile_sens / ratio
    logger.debug("dynamic ISF %s: raw=%.3f ratio=%.3f sens=%.1f", mode.value, raw, ratio, sens)
    return DynamicIsf(mode=mode, ratio=ratio, sens=sens, raw_ratio=raw)
