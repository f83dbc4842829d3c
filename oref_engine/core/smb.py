from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Callable, List, Optional

from oref_engine.config import SMB_INTERVAL_MAX, SMB_INTERVAL_MIN, SMB_ZERO_TEMP_MAX
from oref_engine.core.rounding import floor_to, round_half_up
from oref_engine.structs import MealData, Profile

logger = logging.getLogger(__name__)


@dataclass
class SmbContext:
    profile: Profile
    micro_bolus_allowed: bool
    meal: MealData
    bg: float
    target_bg: float


@dataclass(frozen=True)
class SmbGate:
    name: str
    # True enables, False blocks, None leaves the decision to the next gate
    check: Callable[[SmbContext], Optional[bool]]
    message: Callable[[SmbContext], str]


def _micro_bolus_allowed(ctx):
    return None if ctx.micro_bolus_allowed else False


def _high_temptarget(ctx):
    p = ctx.profile
    if not p.allow_smb_with_high_temptarget and p.temptarget_set and ctx.target_bg > 100:
        return False
    return None


def _always(ctx):
    return True if ctx.profile.enable_smb_always else None


def _with_cob(ctx):
    return True if ctx.profile.enable_smb_with_cob and ctx.meal.meal_cob else None


def _after_carbs(ctx):
    return True if ctx.profile.enable_smb_after_carbs and ctx.meal.carbs else None


def _with_temptarget(ctx):
    p = ctx.profile
    return True if p.enable_smb_with_temptarget and p.temptarget_set and ctx.target_bg < 100 else None


def _high_bg(ctx):
    p = ctx.profile
    return True if p.enable_smb_high_bg and ctx.bg >= p.enable_smb_high_bg_target else None


SMB_GATES: List[SmbGate] = [
    SmbGate("micro_bolus_allowed", _micro_bolus_allowed, lambda c: "SMB disabled (!microBolusAllowed)"),
    SmbGate(
        "high_temptarget",
        _high_temptarget,
        lambda c: f"SMB disabled due to high temptarget of {round_half_up(c.target_bg):g}",
    ),
    SmbGate("always", _always, lambda c: "SMB enabled due to enableSMB_always"),
    SmbGate("with_cob", _with_cob, lambda c: f"SMB enabled for COB of {c.meal.meal_cob:g}"),
    SmbGate("after_carbs", _after_carbs, lambda c: "SMB enabled for 6h after carb entry"),
    SmbGate(
        "with_temptarget",
        _with_temptarget,
        lambda c: f"SMB enabled for temptarget of {round_half_up(c.target_bg):g}",
    ),
    SmbGate(
        "high_bg",
        _high_bg,
        lambda c: f"SMB enabled for BG {c.bg:g} >= {c.profile.enable_smb_high_bg_target:g}",
    ),
]


def enable_smb(ctx: SmbContext, console: List[str], gates: List[SmbGate] = SMB_GATES) -> bool:
    """First gate with an opinion decides; each decision is written to ``console``."""
    for gate in gates:
        verdict = gate.check(ctx)
        if verdict is None:
            continue
        console.append(gate.message(ctx))
        logger.debug("SMB gate %s -> %s", gate.name, verdict)
        return verdict
    console.append("SMB disabled (no enableSMB preferences active or no condition satisfied)")
    return False


def smb_interval(profile: Profile) -> float:
    return min(SMB_INTERVAL_MAX, max(SMB_INTERVAL_MIN, profile.smb_interval))


def max_bolus(profile: Profile, iob: float, meal_cob: float) -> float:
    """Largest single SMB: a number of minutes of scheduled basal."""
    meal_insulin_req = round_half_up(meal_cob / profile.carb_ratio, 3)
    if iob > meal_insulin_req and iob > 0:
        minutes = profile.max_uam_smb_basal_minutes
    else:
        minutes = profile.max_smb_basal_minutes
    return round_half_up(profile.current_basal * minutes / 60, 1)


def micro_bolus_size(insulin_req: float, max_bolus_units: float, bolus_increment: float) -> float:
    # half the requirement, capped, floored to what the pump can deliver
    return max(0.0, floor_to(min(insulin_req / 2, max_bolus_units), bolus_increment))


@dataclass
class SmbLowTemp:
    duration: float  # minutes, 0 = none
    rate: float  # U/hr


def smb_low_temp(
    target_bg: float,
    naive_eventual_bg: float,
    min_iob_pred_bg: float,
    sens: float,
    current_basal: float,
    basal: float,
    insulin_req: float,
    micro_bolus: float,
    bolus_increment: float,
) -> SmbLowTemp:
    """Zero (or low) temp to run alongside an SMB so the worst case corrects back to target."""
    worst_case_insulin_req = (target_bg - (naive_eventual_bg + min_iob_pred_bg) / 2) / sens
    duration_req = round_half_up(60 * worst_case_insulin_req / current_basal) if current_basal > 0 else 0

    if insulin_req > 0 and micro_bolus < bolus_increment:
        duration_req = 0

    low_temp_rate = 0.0
    if duration_req <= 0:
        duration_req = 0
    elif duration_req >= 30:
        duration_req = round_half_up(duration_req / 30) * 30
        duration_req = min(SMB_ZERO_TEMP_MAX, max(0, duration_req))
    else:
        low_temp_rate = round_half_up(basal * duration_req / 30, 2)
        duration_req = 30
    return SmbLowTemp(duration=duration_req, rate=low_temp_rate)


def bolus_wait(last_bolus_age: float, interval: float):
    """Minutes and seconds until the next SMB is allowed, or None when allowed now."""
    if last_bolus_age > interval:
        return None
    remaining = interval - last_bolus_age
    return int(round_half_up(remaining)), int(round_half_up(remaining * 60)) % 60


def cap_to_max_iob(units: float, iob: float, max_iob: float, bolus_increment: float) -> float:
    room = max(0.0, max_iob - iob)
    if units <= room:
        return units
    return floor_to(room, bolus_increment) if math.isfinite(room) else 0.0
