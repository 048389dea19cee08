"""Reading synchronizer — pulls EGVs for a window and stores them.

Two entry points share the same building blocks:

* :meth:`ReadingSynchronizer.sync_window` — interactive fetch for one user,
  with date validation, sandbox window adjustment and detailed errors.
* :meth:`ReadingSynchronizer.sync_recent` — the unit of work of the
  scheduled sweep: fetch the last few minutes and store whatever came back.

Readings are keyed by ``(user_id, system_time)`` so re-fetching an
overlapping window never duplicates data.
"""

from __future__ import annotations

import time
from datetime import date, datetime, timedelta
from typing import Sequence

import structlog
from sqlalchemy.exc import SQLAlchemyError

from cgm_sync.config import Settings
from cgm_sync.dexcom.client import DexcomClient, envelope_format, normalize_egvs_payload
from cgm_sync.errors import (
    CGMSyncError,
    InvalidDateRangeError,
    NotConnectedError,
    RateLimitExceededError,
    StorageError,
    VendorAPIError,
    classify_vendor_status,
)
from cgm_sync.models import (
    AdjustedDateRange,
    AvailableDataRange,
    DataRange,
    EGVRecord,
    GlucoseReading,
    HealthMetric,
    RateLimitDecision,
    RawFetchResult,
    SyncResult,
    TrendDirection,
    WindowAdjustment,
)
from cgm_sync.oauth.refresh import TokenRefreshEngine
from cgm_sync.ratelimit import RateLimiter
from cgm_sync.storage.repository import (
    CredentialRepository,
    HealthMetricRepository,
    ReadingRepository,
)
from cgm_sync.timewindow import Clock, floor_instant, parse_instant, parse_wall_clock, utcnow

logger = structlog.get_logger(__name__)

FETCH_OPERATION = "dexcom_glucose_fetch"


# ── Window helpers ────────────────────────────────────────────


def resolve_window(
    start_date: str | None,
    end_date: str | None,
    now: datetime,
    default_window: timedelta,
) -> tuple[datetime, datetime]:
    """Parse the requested bounds, or fall back to the trailing default window.

    Supplied dates are only honoured when both are present.
    """
    if start_date and end_date:
        try:
            return parse_instant(start_date), parse_instant(end_date)
        except ValueError as exc:
            logger.warning("sync.invalid_dates", start=start_date, end=end_date)
            raise InvalidDateRangeError("Invalid date format provided") from exc
    return now - default_window, now


def validate_window(
    start: datetime,
    end: datetime,
    *,
    min_date: date,
    max_range: timedelta,
) -> None:
    """Reject windows Dexcom cannot serve.  Checks run in a fixed order."""
    floor = floor_instant(min_date)
    if start < floor:
        raise InvalidDateRangeError(f"Start date cannot be before {min_date.year}")
    if end < floor:
        raise InvalidDateRangeError(f"End date cannot be before {min_date.year}")
    if start >= end:
        raise InvalidDateRangeError("Start date must be before end date")
    if end - start > max_range:
        raise InvalidDateRangeError("Date range cannot exceed 1 year")


def adjust_for_sandbox(
    start: datetime,
    end: datetime,
    available: DataRange | None,
    fallback: timedelta = timedelta(hours=12),
) -> WindowAdjustment:
    """Fit a requested window onto the sandbox's synthetic data range.

    A window entirely outside the range is remapped to the last ``fallback``
    of available data (or the whole range when it is shorter); a partial
    overlap is clamped to the intersection.
    """
    if available is None:
        return WindowAdjustment(start=start, end=end)

    if start > available.end or end < available.start:
        span = min(fallback, available.end - available.start)
        logger.info(
            "sync.sandbox_window_remapped",
            requested_start=start.isoformat(),
            requested_end=end.isoformat(),
        )
        return WindowAdjustment(start=available.end - span, end=available.end, adjusted=True)

    new_start = max(start, available.start)
    new_end = min(end, available.end)
    adjusted = new_start != start or new_end != end
    if adjusted:
        logger.info(
            "sync.sandbox_window_clamped",
            start=new_start.isoformat(),
            end=new_end.isoformat(),
        )
    return WindowAdjustment(start=new_start, end=new_end, adjusted=adjusted)


def to_readings(user_id: str, records: Sequence[EGVRecord]) -> list[GlucoseReading]:
    """Convert vendor EGVs into storable readings, skipping unparseable times."""
    readings: list[GlucoseReading] = []
    for rec in records:
        try:
            readings.append(
                GlucoseReading(
                    user_id=user_id,
                    system_time=parse_instant(rec.system_time),
                    display_time=parse_wall_clock(rec.display_time),
                    value=rec.value,
                    trend=TrendDirection.from_vendor(rec.trend).value,
                    trend_rate=rec.trend_rate,
                )
            )
        except ValueError:
            logger.warning("sync.reading_skipped", user=user_id, system_time=rec.system_time)
    return readings


# ── Synchronizer ──────────────────────────────────────────────


class ReadingSynchronizer:
    """Fetches EGVs from Dexcom and upserts them into the reading store."""

    def __init__(
        self,
        client: DexcomClient,
        credentials: CredentialRepository,
        readings: ReadingRepository,
        limiter: RateLimiter,
        refresher: TokenRefreshEngine,
        *,
        health: HealthMetricRepository | None = None,
        sandbox: bool = True,
        min_date: date = date(2020, 1, 1),
        max_range: timedelta = timedelta(days=365),
        default_window: timedelta = timedelta(hours=12),
        sandbox_fallback: timedelta = timedelta(hours=12),
        clock: Clock = utcnow,
    ) -> None:
        self._client = client
        self._credentials = credentials
        self._readings = readings
        self._limiter = limiter
        self._refresher = refresher
        self._health = health
        self.sandbox = sandbox
        self.min_date = min_date
        self.max_range = max_range
        self.default_window = default_window
        self.sandbox_fallback = sandbox_fallback
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        client: DexcomClient,
        credentials: CredentialRepository,
        readings: ReadingRepository,
        limiter: RateLimiter,
        refresher: TokenRefreshEngine,
        settings: Settings,
        *,
        health: HealthMetricRepository | None = None,
        clock: Clock = utcnow,
    ) -> ReadingSynchronizer:
        return cls(
            client,
            credentials,
            readings,
            limiter,
            refresher,
            health=health,
            sandbox=settings.dexcom_use_sandbox,
            min_date=settings.sync_min_date,
            max_range=timedelta(days=settings.sync_max_range_days),
            default_window=timedelta(hours=settings.sync_default_window_hours),
            sandbox_fallback=timedelta(hours=settings.sandbox_fallback_window_hours),
            clock=clock,
        )

    # ── Interactive fetch ─────────────────────────────────────

    async def sync_window(
        self,
        user_id: str,
        start_date: str | None = None,
        end_date: str | None = None,
    ) -> SyncResult:
        """Fetch, store and return readings for the requested window.

        Precondition failures raise before any vendor data call is made.
        """
        record = await self._credentials.get(user_id)
        if record is None:
            raise NotConnectedError("No Dexcom tokens found. Please connect to Dexcom first.")

        decision = await self._limiter.check_and_reserve()
        if not decision.allowed:
            await self._record(False, 0, "Rate limit exceeded")
            raise RateLimitExceededError(
                "API rate limit exceeded. Please try again later.",
                detail={"reset_time": decision.reset_time.isoformat()},
            )

        record = await self._refresher.ensure_fresh(user_id, record)

        started = time.monotonic()
        try:
            return await self._fetch_and_store(
                user_id, record.access_token, start_date, end_date, decision, started
            )
        except CGMSyncError:
            raise
        except Exception as exc:
            logger.exception("sync.fetch_failed", user=user_id)
            await self._record(False, _elapsed_ms(started), str(exc) or type(exc).__name__)
            raise CGMSyncError("Failed to fetch glucose data") from exc

    async def _fetch_and_store(
        self,
        user_id: str,
        access_token: str,
        start_date: str | None,
        end_date: str | None,
        decision: RateLimitDecision,
        started: float,
    ) -> SyncResult:
        now = self._clock()
        start, end = resolve_window(start_date, end_date, now, self.default_window)
        validate_window(start, end, min_date=self.min_date, max_range=self.max_range)

        available: DataRange | None = None
        adjusted = False
        if self.sandbox:
            available = await self._client.get_data_range(access_token)
            if available is None:
                logger.warning("sync.sandbox_range_unavailable", user=user_id)

        if self.sandbox and available is not None:
            window = adjust_for_sandbox(start, end, available, self.sandbox_fallback)
            start, end, adjusted = window.start, window.end, window.adjusted
        else:
            if start > now:
                raise InvalidDateRangeError("Start date cannot be in the future")
            if end > now:
                logger.debug("sync.end_clamped", user=user_id)
                end = now

        wire_start, wire_end = self._client.wire_window(start, end)
        logger.info(
            "sync.fetching",
            user=user_id,
            start=wire_start,
            end=wire_end,
            hours=round((end - start).total_seconds() / 3600, 2),
            sandbox=self.sandbox,
            adjusted=adjusted,
        )

        try:
            records = await self._client.get_egvs(access_token, start, end)
        except VendorAPIError as exc:
            await self._record(False, _elapsed_ms(started), exc.info.message)
            if exc.status == 400 and "date" in exc.body:
                raise InvalidDateRangeError(
                    "Invalid date parameters sent to Dexcom API. "
                    f"Sent: {wire_start} to {wire_end}."
                ) from exc
            raise

        readings = to_readings(user_id, records)
        try:
            await self._readings.upsert_batch(readings)
        except SQLAlchemyError as exc:
            logger.error("sync.store_failed", user=user_id, error=str(exc))
            raise StorageError("Failed to store glucose data") from exc

        if readings:
            logger.info(
                "sync.stored",
                user=user_id,
                count=len(readings),
                first=readings[0].system_time.isoformat(),
                last=readings[-1].system_time.isoformat(),
            )
        else:
            self._log_empty(user_id, wire_start, wire_end, available, adjusted)

        await self._record(True, _elapsed_ms(started))

        return SyncResult(
            glucose_data=readings,
            rate_limit_remaining=decision.remaining,
            rate_limit_reset_time=decision.reset_time,
            sandbox=self.sandbox,
            dates_adjusted=adjusted,
            adjusted_date_range=AdjustedDateRange(
                original_start=start_date,
                original_end=end_date,
                adjusted_start=wire_start,
                adjusted_end=wire_end,
            )
            if adjusted
            else None,
            available_data_range=AvailableDataRange(start=available.start, end=available.end)
            if self.sandbox and available is not None
            else None,
        )

    def _log_empty(
        self,
        user_id: str,
        start: str,
        end: str,
        available: DataRange | None,
        adjusted: bool,
    ) -> None:
        if self.sandbox:
            logger.info(
                "sync.no_data_sandbox",
                user=user_id,
                start=start,
                end=end,
                available_start=available.start.isoformat() if available else None,
                available_end=available.end.isoformat() if available else None,
                adjusted=adjusted,
            )
        else:
            # Production: sensor probably inactive or warming up.
            logger.info("sync.no_data_production", user=user_id, start=start, end=end)

    # ── Sweep unit ────────────────────────────────────────────

    async def sync_recent(self, user_id: str, lookback: timedelta) -> int | None:
        """Store the last ``lookback`` of readings for one user.

        Returns the number of readings written, or ``None`` when the rate
        limiter turned the call away.
        """
        decision = await self._limiter.check_and_reserve()
        if not decision.allowed:
            logger.warning("sync.sweep_rate_limited", user=user_id)
            return None

        record = await self._refresher.ensure_fresh(user_id)
        now = self._clock()
        records = await self._client.get_egvs(record.access_token, now - lookback, now)
        readings = to_readings(user_id, records)
        stored = await self._readings.upsert_batch(readings)
        logger.info("sync.sweep_user_done", user=user_id, stored=stored)
        return stored

    # ── Diagnostics ───────────────────────────────────────────

    async def fetch_raw(
        self,
        user_id: str,
        start_date: str | None = None,
        end_date: str | None = None,
    ) -> RawFetchResult:
        """Call the EGV endpoint and return the payload without storing it."""
        record = await self._credentials.get(user_id)
        if record is None:
            raise NotConnectedError("No Dexcom tokens found. Please connect to Dexcom first.")

        decision = await self._limiter.check_and_reserve()
        if not decision.allowed:
            raise RateLimitExceededError("API rate limit exceeded. Please try again later.")

        record = await self._refresher.ensure_fresh(user_id, record)
        start, end = resolve_window(start_date, end_date, self._clock(), self.default_window)
        wire_start, wire_end = self._client.wire_window(start, end)

        started = time.monotonic()
        resp = await self._client.fetch_egvs_raw(record.access_token, start, end)
        elapsed = _elapsed_ms(started)
        if resp.status_code != 200:
            logger.error("sync.raw_fetch_failed", user=user_id, status=resp.status_code, body=resp.text)
            raise VendorAPIError(classify_vendor_status(resp.status_code), body=resp.text)

        payload = resp.json()
        parsed = normalize_egvs_payload(payload)
        logger.info("sync.raw_fetched", user=user_id, count=len(parsed))
        return RawFetchResult(
            status_code=resp.status_code,
            response_time_ms=elapsed,
            raw_response=payload,
            parsed_glucose_data=parsed,
            data_length=len(parsed),
            sandbox=self.sandbox,
            date_range={"start": wire_start, "end": wire_end},
            api_format=envelope_format(payload),
        )

    # ── Helpers ───────────────────────────────────────────────

    async def _record(self, success: bool, response_time_ms: int, error: str | None = None) -> None:
        if self._health is None:
            return
        await self._health.record(
            HealthMetric(
                operation=FETCH_OPERATION,
                success=success,
                response_time_ms=response_time_ms,
                error=error,
                timestamp=self._clock(),
            )
        )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
