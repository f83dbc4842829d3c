from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

from oref_engine.config import SMB_BOLUS_MAX, TICK_MINUTES, ZERO_TEMP_MINUTES
from oref_engine.core.insulin_curves import CurveParams, curve_params, insulin_effect
from oref_engine.core.profile import basal_lookup
from oref_engine.errors import InvalidTreatment
from oref_engine.structs import IobData, IobPair, LastTemp, Profile, Treatment

logger = logging.getLogger(__name__)

MINUTE_MS = 60_000


@dataclass(frozen=True)
class InsulinDose:
    timestamp: int  # ms
    amount: float  # U, negative for a below-schedule temp
    basal: bool  # counts toward basal IOB


@dataclass(frozen=True)
class TempInterval:
    start: int  # ms
    end: int  # ms
    rate: float  # U/hr


def _round(value, digits):
    # + 0.0 turns -0.0 into 0.0
    return round(value, digits) + 0.0


def validate_treatment(t: Treatment) -> None:
    for name in ("insulin", "carbs", "duration"):
        v = getattr(t, name)
        if v is None or not math.isfinite(v) or v < 0:
            raise InvalidTreatment(f"{name} must be a non-negative number, got {v!r} at {t.timestamp}")
    if t.rate is not None and (not math.isfinite(t.rate) or t.rate < 0):
        raise InvalidTreatment(f"temp basal rate must be non-negative, got {t.rate!r} at {t.timestamp}")


def sorted_treatments(treatments: Iterable[Treatment]) -> List[Treatment]:
    items = list(treatments)
    for t in items:
        validate_treatment(t)
    # stable, input-order independent ordering
    return sorted(items, key=lambda t: (t.timestamp, t.rate is None, t.rate or 0.0, t.insulin, t.carbs, t.duration))


def temp_intervals(treatments: Sequence[Treatment], until: Optional[int] = None) -> List[TempInterval]:
    """Temp basals as non-overlapping intervals; a later temp cancels the running one."""
    temps = [t for t in treatments if t.rate is not None]
    intervals = []
    for i, t in enumerate(temps):
        end = t.timestamp + int(t.duration * MINUTE_MS)
        if i + 1 < len(temps):
            end = min(end, temps[i + 1].timestamp)
        if until is not None:
            end = min(end, until)
        if end > t.timestamp:
            intervals.append(TempInterval(t.timestamp, end, t.rate))
    return intervals


def net_basal_doses(profile: Profile, intervals: Sequence[TempInterval]) -> List[InsulinDose]:
    """Split temp intervals into 1-minute net insulin doses against the scheduled basal."""
    doses = []
    for iv in intervals:
        minutes = int(math.ceil((iv.end - iv.start) / MINUTE_MS))
        for m in range(minutes):
            ts = iv.start + m * MINUTE_MS
            seg_minutes = min(1.0, (iv.end - ts) / MINUTE_MS)
            net = (iv.rate - basal_lookup(profile, ts)) / 60.0 * seg_minutes
            if net != 0:
                doses.append(InsulinDose(ts, net, True))
    return doses


def bolus_doses(treatments: Sequence[Treatment]) -> List[InsulinDose]:
    return [InsulinDose(t.timestamp, t.insulin, t.insulin < SMB_BOLUS_MAX) for t in treatments if t.is_bolus]


def sum_iob(doses: Sequence[InsulinDose], time: int, params: CurveParams) -> IobData:
    end_ms = params.end * MINUTE_MS
    iob, activity = [], []
    basal_iob, bolus_iob = [], []
    net_basal, bolus_ins = [], []

    for d in doses:
        if d.timestamp > time or time - d.timestamp >= end_ms:
            continue
        frac, act = insulin_effect(params, (time - d.timestamp) / MINUTE_MS)
        contrib = d.amount * frac
        iob.append(contrib)
        activity.append(d.amount * act)
        if d.basal:
            basal_iob.append(contrib)
            net_basal.append(d.amount)
        else:
            bolus_iob.append(contrib)
            bolus_ins.append(d.amount)

    return IobData(
        time=time,
        iob=_round(math.fsum(iob), 3),
        activity=_round(math.fsum(activity), 4),
        basal_iob=_round(math.fsum(basal_iob), 3),
        bolus_iob=_round(math.fsum(bolus_iob), 3),
        net_basal_insulin=_round(math.fsum(net_basal), 3),
        bolus_insulin=_round(math.fsum(bolus_ins), 3),
    )


def _last_bolus_time(treatments, time):
    times = [t.timestamp for t in treatments if t.is_bolus and t.timestamp <= time]
    return max(times) if times else None


def _last_temp(treatments, time):
    temps = [t for t in treatments if t.rate is not None and t.timestamp <= time]
    if not temps:
        return None
    t = temps[-1]
    return LastTemp(rate=t.rate, timestamp=t.timestamp, duration=t.duration)


class IobCalculator:
    """Precomputed insulin doses for a treatment history.

    Holds both the actual doses (running temp continues to its end) and the
    zero-temp doses (running temp replaced by 0 U/hr from ``now``).
    """

    def __init__(self, profile: Profile, treatments: Iterable[Treatment], now: int):
        self.profile = profile
        self.params = curve_params(profile)
        self.now = now
        self.treatments = sorted_treatments(treatments)

        boluses = bolus_doses(self.treatments)
        actual = temp_intervals(self.treatments)
        self.doses = boluses + net_basal_doses(profile, actual)

        zero = temp_intervals(self.treatments, until=now)
        zero.append(TempInterval(now, now + ZERO_TEMP_MINUTES * MINUTE_MS, 0.0))
        self.zero_doses = boluses + net_basal_doses(profile, zero)

        self.last_bolus_time = _last_bolus_time(self.treatments, now)
        self.last_temp = _last_temp(self.treatments, now)

    def actual(self, time: int) -> IobData:
        data = sum_iob(self.doses, time, self.params)
        data.last_bolus_time = self.last_bolus_time
        data.last_temp = self.last_temp
        return data

    def zero_temp(self, time: int) -> IobData:
        return sum_iob(self.zero_doses, time, self.params)

    def pair(self, time: int) -> IobPair:
        return IobPair(actual=self.actual(time), zero_temp=self.zero_temp(time))


def calculate_iob(profile: Profile, treatments: Iterable[Treatment], time: int) -> IobPair:
    """IOB at ``time`` plus the zero-temp variant."""
    return IobCalculator(profile, treatments, time).pair(time)


def calculate_iob_array(
    profile: Profile, treatments: Iterable[Treatment], time: int, ticks: Optional[int] = None
) -> List[IobPair]:
    """IOB pairs for ``time`` and every 5 minutes after it, up to DIA by default."""
    calc = IobCalculator(profile, treatments, time)
    if ticks is None:
        ticks = int(math.ceil(calc.params.end / TICK_MINUTES))
    out = [calc.pair(time + i * TICK_MINUTES * MINUTE_MS) for i in range(ticks)]
    logger.debug("iob array: %d ticks, iob[0]=%.3f", len(out), out[0].actual.iob if out else 0.0)
    return out


def iob_at(profile: Profile, treatments: Iterable[Treatment], time: int) -> IobData:
    """Actual IOB only, using history up to ``time``."""
    return IobCalculator(profile, treatments, time).actual(time)
