"""Tests for glucose summary statistics."""

from datetime import timedelta

import pytest

from cgm_sync.models import GlucoseReading
from cgm_sync.stats import calculate_stats, trend_arrow

from conftest import NOW


def _reading(value: float, minutes: int = 0) -> GlucoseReading:
    t = NOW + timedelta(minutes=minutes)
    return GlucoseReading(user_id="u1", system_time=t, display_time=t.replace(tzinfo=None), value=value)


def test_empty_input_is_all_zero():
    stats = calculate_stats([])
    assert stats.average == 0
    assert stats.readings_count == 0
    assert stats.last_reading is None


def test_summary_values():
    readings = [_reading(60, 0), _reading(100, 5), _reading(150, 10), _reading(200, 15)]
    stats = calculate_stats(readings)

    assert stats.average == 128  # 127.5 rounds half up
    assert stats.time_in_range == 50.0
    assert stats.estimated_hba1c == 6.1
    assert stats.readings_count == 4
    assert (stats.low_readings, stats.normal_readings, stats.high_readings) == (1, 2, 1)


def test_range_bounds_are_inclusive():
    stats = calculate_stats([_reading(70), _reading(180, 5)])
    assert stats.time_in_range == 100.0
    assert stats.low_readings == stats.high_readings == 0


def test_last_reading_is_latest_by_display_time():
    stats = calculate_stats([_reading(100, 10), _reading(120, 30), _reading(90, 20)])
    assert stats.last_reading.value == 120


@pytest.mark.parametrize(
    ("trend", "arrow"),
    [
        ("doubleUp", "↑↑"),
        ("DoubleUp", "↑↑"),
        ("singleDown", "↓"),
        ("fortyFiveUp", "↗"),
        ("flat", "→"),
        ("notComputable", "?"),
        ("sideways", "→"),
        (None, "→"),
    ],
)
def test_trend_arrow(trend, arrow):
    assert trend_arrow(trend) == arrow
