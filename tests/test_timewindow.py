"""Tests for clock, parsing and range helpers."""

from datetime import UTC, date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from cgm_sync.timewindow import (
    TimeRange,
    epoch_millis,
    format_vendor_time,
    from_epoch_millis,
    parse_instant,
    parse_wall_clock,
    resolve_time_range,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)


class TestFormatVendorTime:
    def test_utc_has_no_offset_suffix(self):
        assert format_vendor_time(NOW, UTC) == "2024-06-01T12:00:00"

    def test_converts_to_local_wall_clock(self):
        assert format_vendor_time(NOW, ZoneInfo("America/New_York")) == "2024-06-01T08:00:00"

    def test_same_instant_same_digits(self):
        shifted = NOW.astimezone(timezone(timedelta(hours=9)))
        assert format_vendor_time(shifted, UTC) == format_vendor_time(NOW, UTC)

    def test_drops_fractional_seconds(self):
        assert format_vendor_time(NOW + timedelta(milliseconds=750), UTC) == "2024-06-01T12:00:00"


class TestParsing:
    def test_parse_instant_with_z(self):
        assert parse_instant("2024-06-01T12:00:00Z") == NOW

    def test_parse_instant_with_offset(self):
        assert parse_instant("2024-06-01T14:00:00+02:00") == NOW

    def test_naive_is_utc(self):
        assert parse_instant("2024-06-01T12:00:00") == NOW

    @pytest.mark.parametrize("text", ["", "yesterday", "2024-13-01T00:00:00"])
    def test_parse_instant_rejects_garbage(self, text):
        with pytest.raises(ValueError):
            parse_instant(text)

    def test_wall_clock_is_naive(self):
        parsed = parse_wall_clock("2024-06-01T08:00:00-04:00")
        assert parsed == datetime(2024, 6, 1, 8, 0)
        assert parsed.tzinfo is None

    def test_epoch_millis_is_exact(self):
        instant = NOW + timedelta(milliseconds=100)
        assert epoch_millis(instant) - epoch_millis(NOW) == 100
        assert from_epoch_millis(epoch_millis(instant)) == instant


class TestTimeRange:
    def test_last_week(self):
        start, end = resolve_time_range(TimeRange.LAST_WEEK, NOW)
        assert end == NOW
        assert end - start == timedelta(days=7)

    def test_last_month_is_thirty_days(self):
        start, _ = resolve_time_range("last_month", NOW)
        assert NOW - start == timedelta(days=30)

    def test_all_time_starts_at_floor(self):
        start, end = resolve_time_range(TimeRange.ALL_TIME, NOW, floor=date(2020, 1, 1))
        assert start == datetime(2020, 1, 1, tzinfo=UTC)
        assert end == NOW

    def test_unknown_selector_means_last_twelve_hours(self):
        assert TimeRange.parse("fortnight") is TimeRange.LAST_TWELVE
        start, end = resolve_time_range("fortnight", NOW)
        assert end - start == timedelta(hours=12)
