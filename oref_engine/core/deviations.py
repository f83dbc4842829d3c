"""Glucose bucketing and per-interval deviation from insulin-only expectations.

Shared by the COB engine (newest-first walk over the last hours) and by
autosens (oldest-first walk over a day). A deviation is the observed BG
change minus the change explained by insulin activity (``bgi``).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Sequence

from oref_engine.config import MAX_GAP_INTERPOLATION_MINUTES, TICK_MINUTES
from oref_engine.core.iob import IobCalculator
from oref_engine.core.profile import isf_lookup
from oref_engine.core.rounding import round_half_up
from oref_engine.structs import GlucoseReading, IobData

logger = logging.getLogger(__name__)

MINUTE_MS = 60_000


@dataclass
class Bucket:
    timestamp: int  # ms
    glucose: float  # mg/dL


@dataclass
class BucketDeviation:
    timestamp: int
    glucose: float
    delta: float  # vs. previous 5m bucket
    avg_delta: float  # 15m average, per 5m
    bgi: float  # insulin-explained change per 5m
    deviation: float  # delta - bgi
    avg_deviation: float  # avg_delta - bgi
    sens: float
    iob: IobData


def bucket_glucose(readings: Sequence[GlucoseReading]) -> List[Bucket]:
    """Readings (newest first) into ~5 minute buckets, newest first.

    Readings within 2 minutes of the previous bucket are averaged into it;
    gaps longer than 8 minutes are filled by linear interpolation.
    """
    if not readings:
        return []

    buckets = [Bucket(readings[0].timestamp, readings[0].glucose)]
    last_time = readings[0].timestamp
    last_bg = readings[0].glucose

    for r in readings[1:]:
        elapsed = (last_time - r.timestamp) / MINUTE_MS
        if abs(elapsed) > 8:
            elapsed = min(MAX_GAP_INTERPOLATION_MINUTES, abs(elapsed))
            gap_bg = last_bg
            gap_time = last_time
            while elapsed > TICK_MINUTES:
                gap_time -= TICK_MINUTES * MINUTE_MS
                gap_bg = gap_bg + TICK_MINUTES / elapsed * (r.glucose - gap_bg)
                buckets.append(Bucket(gap_time, round_half_up(gap_bg)))
                elapsed -= TICK_MINUTES
            buckets.append(Bucket(r.timestamp, r.glucose))
        elif abs(elapsed) > 2:
            buckets.append(Bucket(r.timestamp, r.glucose))
        else:
            buckets[-1].glucose = (buckets[-1].glucose + r.glucose) / 2
        last_time = r.timestamp
        last_bg = r.glucose

    return buckets


def bucket_deviation(profile, newer: Bucket, previous: Bucket, older3: Bucket, calc: IobCalculator) -> BucketDeviation:
    """Deviation at ``newer`` given the bucket 5m before and the bucket 15m before."""
    sens = isf_lookup(profile, newer.timestamp)
    iob = calc.actual(newer.timestamp)

    avg_delta = round_half_up((newer.glucose - older3.glucose) / 3, 2)
    delta = newer.glucose - previous.glucose
    bgi = round_half_up(-iob.activity * sens * 5, 2)

    return BucketDeviation(
        timestamp=newer.timestamp,
        glucose=newer.glucose,
        delta=delta,
        avg_delta=avg_delta,
        bgi=bgi,
        deviation=round_half_up(delta - bgi, 2),
        avg_deviation=round_half_up(avg_delta - bgi, 3),
        sens=sens,
        iob=iob,
    )


def deviation_series(profile, buckets: Sequence[Bucket], calc: IobCalculator) -> List[BucketDeviation]:
    """Deviations for newest-first buckets; the oldest three have no 15m history."""
    out = []
    for i in range(len(buckets) - 3):
        out.append(bucket_deviation(profile, buckets[i], buckets[i + 1], buckets[i + 3], calc))
    return out
