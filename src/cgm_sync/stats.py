"""Glucose summary statistics for the dashboard."""

from __future__ import annotations

import math
from typing import Sequence

from cgm_sync.models import GlucoseReading, GlucoseStats, TrendDirection

# Standard CGM target range, mg/dL, inclusive
LOW_THRESHOLD = 70
HIGH_THRESHOLD = 180

_ARROWS: dict[TrendDirection, str] = {
    TrendDirection.NONE: "→",
    TrendDirection.DOUBLE_UP: "↑↑",
    TrendDirection.SINGLE_UP: "↑",
    TrendDirection.FORTY_FIVE_UP: "↗",
    TrendDirection.FLAT: "→",
    TrendDirection.FORTY_FIVE_DOWN: "↘",
    TrendDirection.SINGLE_DOWN: "↓",
    TrendDirection.DOUBLE_DOWN: "↓↓",
    TrendDirection.NOT_COMPUTABLE: "?",
    TrendDirection.RATE_OUT_OF_RANGE: "?",
}


def _round_half_up(value: float, digits: int = 0) -> float:
    factor = 10**digits
    return math.floor(value * factor + 0.5) / factor


def estimated_hba1c(average: float) -> float:
    """ADAG estimate: ``(average + 46.7) / 28.7``."""
    return (average + 46.7) / 28.7


def calculate_stats(readings: Sequence[GlucoseReading]) -> GlucoseStats:
    """Summarise a set of readings.

    Parameters
    ----------
    readings:
        Readings in any order.

    Returns
    -------
    GlucoseStats
        Rounded average, percentage of readings in 70–180 mg/dL, estimated
        HbA1c and the most recent reading by display time.  An empty input
        yields all zeros.
    """
    if not readings:
        return GlucoseStats()

    values = [r.value for r in readings]
    count = len(values)
    average = sum(values) / count
    in_range = sum(1 for v in values if LOW_THRESHOLD <= v <= HIGH_THRESHOLD)

    return GlucoseStats(
        average=int(_round_half_up(average)),
        time_in_range=_round_half_up(in_range / count * 100, 1),
        estimated_hba1c=_round_half_up(estimated_hba1c(average), 1),
        last_reading=max(readings, key=lambda r: r.display_time),
        readings_count=count,
        high_readings=sum(1 for v in values if v > HIGH_THRESHOLD),
        low_readings=sum(1 for v in values if v < LOW_THRESHOLD),
        normal_readings=in_range,
    )


def trend_arrow(trend: str | None) -> str:
    """Arrow glyph for a vendor trend name; unknown names read as flat."""
    if not trend:
        return _ARROWS[TrendDirection.NONE]
    folded = trend.lower()
    for member, arrow in _ARROWS.items():
        if member.value.lower() == folded:
            return arrow
    return _ARROWS[TrendDirection.FLAT]
