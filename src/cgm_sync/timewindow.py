"""Clock and time-window helpers.

Dexcom interprets ``startDate``/``endDate`` as device-local wall-clock time,
so instants go over the wire as ``YYYY-MM-DDTHH:MM:SS`` in the configured
local zone with no offset suffix.
"""

from __future__ import annotations

from datetime import UTC, date, datetime, time, timedelta, tzinfo
from enum import Enum
from typing import Callable
from zoneinfo import ZoneInfo

Clock = Callable[[], datetime]

_VENDOR_FORMAT = "%Y-%m-%dT%H:%M:%S"
_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)
_MILLISECOND = timedelta(milliseconds=1)


def utcnow() -> datetime:
    """Current instant, timezone-aware UTC."""
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes, convert aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def epoch_millis(value: datetime) -> int:
    """Whole milliseconds since the Unix epoch, without float rounding."""
    return (as_utc(value) - _EPOCH) // _MILLISECOND


def from_epoch_millis(ms: int) -> datetime:
    return _EPOCH + timedelta(milliseconds=ms)


def floor_instant(day: date) -> datetime:
    """Midnight UTC of ``day``."""
    return datetime.combine(day, time.min, tzinfo=UTC)


def resolve_timezone(name: str | None) -> tzinfo | None:
    """``ZoneInfo`` for ``name``; ``None`` (host local zone) when empty."""
    if not name:
        return None
    return ZoneInfo(name)


# ── Parsing ───────────────────────────────────────────────────


def parse_instant(text: str) -> datetime:
    """Parse ISO-8601 text into an aware UTC datetime.

    Naive input is taken as UTC.  Raises :class:`ValueError` on bad input.
    """
    if not isinstance(text, str) or not text.strip():
        raise ValueError(f"Not a date: {text!r}")
    return as_utc(datetime.fromisoformat(text.strip()))


def parse_wall_clock(text: str) -> datetime:
    """Parse a vendor display time into a naive wall-clock datetime."""
    parsed = datetime.fromisoformat(text.strip())
    return parsed.replace(tzinfo=None)


# ── Formatting ────────────────────────────────────────────────


def format_vendor_time(instant: datetime, tz: tzinfo | None = None) -> str:
    """Render ``instant`` as local wall-clock digits without an offset.

    ``tz=None`` uses the host's local zone.
    """
    local = as_utc(instant).astimezone(tz)
    return local.strftime(_VENDOR_FORMAT)


# ── Logical ranges ────────────────────────────────────────────


class TimeRange(str, Enum):
    """Dashboard range selectors."""

    LAST_TWELVE = "last_twelve"
    LAST_WEEK = "last_week"
    LAST_MONTH = "last_month"
    ALL_TIME = "all_time"

    @classmethod
    def parse(cls, value: str | None) -> TimeRange:
        """Unknown selectors fall back to the last twelve hours."""
        try:
            return cls(value)
        except ValueError:
            return cls.LAST_TWELVE


_RANGE_SPANS: dict[TimeRange, timedelta] = {
    TimeRange.LAST_TWELVE: timedelta(hours=12),
    TimeRange.LAST_WEEK: timedelta(days=7),
    TimeRange.LAST_MONTH: timedelta(days=30),
}


def resolve_time_range(
    selector: TimeRange | str,
    now: datetime,
    *,
    floor: date = date(2020, 1, 1),
) -> tuple[datetime, datetime]:
    """Turn a range selector into concrete ``(start, end)`` instants."""
    if not isinstance(selector, TimeRange):
        selector = TimeRange.parse(selector)
    now = as_utc(now)
    if selector is TimeRange.ALL_TIME:
        return floor_instant(floor), now
    return now - _RANGE_SPANS[selector], now
