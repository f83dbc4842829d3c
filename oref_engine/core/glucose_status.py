from __future__ import annotations

import logging
from typing import Iterable, List

from oref_engine.config import BG_MIN_VALID
from oref_engine.core.rounding import round_half_up
from oref_engine.errors import StaleOrMissingGlucose
from oref_engine.structs import GlucoseReading, GlucoseStatus

logger = logging.getLogger(__name__)


def valid_readings(readings: Iterable[GlucoseReading]) -> List[GlucoseReading]:
    """Readings carrying real glucose, newest first."""
    out = [r for r in readings if r.glucose is not None and r.glucose >= BG_MIN_VALID]
    return sorted(out, key=lambda r: r.timestamp, reverse=True)


def _avg(values):
    return sum(values) / len(values) if values else 0.0


def get_glucose_status(readings: Iterable[GlucoseReading]) -> GlucoseStatus:
    data = valid_readings(readings)
    if not data:
        raise StaleOrMissingGlucose("no valid glucose readings")

    now = data[0]
    now_glucose = now.glucose
    now_date = float(now.timestamp)

    last_deltas, short_deltas, long_deltas = [], [], []

    for then in data[1:]:
        minutes_ago = round_half_up((now_date - then.timestamp) / 60000.0)
        if minutes_ago == 0:
            avgdelta = 0.0
        else:
            avgdelta = (now_glucose - then.glucose) / minutes_ago * 5

        if -2 < minutes_ago < 2.5:
            # everything within 2.5m is averaged into "now"
            now_glucose = (now_glucose + then.glucose) / 2
            now_date = (now_date + then.timestamp) / 2
        elif 2.5 < minutes_ago < 17.5:
            short_deltas.append(avgdelta)
            if minutes_ago < 7.5:
                last_deltas.append(avgdelta)
        elif 17.5 < minutes_ago < 42.5:
            long_deltas.append(avgdelta)

    status = GlucoseStatus(
        glucose=round_half_up(now_glucose, 2),
        delta=round_half_up(_avg(last_deltas), 2),
        short_avg_delta=round_half_up(_avg(short_deltas), 2),
        long_avg_delta=round_half_up(_avg(long_deltas), 2),
        timestamp=int(now_date),
        noise=round_half_up(now.noise or 0.0),
    )
    logger.debug(
        "glucose status bg=%s delta=%s short=%s long=%s",
        status.glucose,
        status.delta,
        status.short_avg_delta,
        status.long_avg_delta,
    )
    return status


def detect_flat_bgs(status: GlucoseStatus) -> bool:
    """CGM reporting the same value for ~45 minutes."""
    return (
        status.glucose > 60
        and status.delta == 0
        and -1 < status.short_avg_delta < 1
        and -1 < status.long_avg_delta < 1
    )
