"""Global rolling-window rate limiter shared by every user.

The ledger is a list of epoch-millisecond call timestamps stored in a single
row.  Each admission check filters, counts and appends inside one storage
transaction, so multiple processes can share the budget.
"""

from __future__ import annotations

from datetime import timedelta

import structlog
from sqlalchemy.exc import SQLAlchemyError

from cgm_sync.config import Settings
from cgm_sync.errors import StorageError
from cgm_sync.models import RateLimitDecision
from cgm_sync.storage.repository import RateLimitLedgerRepository
from cgm_sync.timewindow import Clock, epoch_millis, utcnow

logger = structlog.get_logger(__name__)


class RateLimiter:
    """Admit or deny one Dexcom API call against the shared budget.

    Parameters
    ----------
    ledger:
        Repository holding the call ledger.
    max_calls:
        Ceiling of calls inside one window.
    window:
        Length of the rolling window.
    fail_open:
        When the ledger cannot be read or written, admit the call with a
        full budget instead of raising.  Dexcom's own 429 is the backstop.
    """

    def __init__(
        self,
        ledger: RateLimitLedgerRepository,
        *,
        max_calls: int = 60_000,
        window: timedelta = timedelta(hours=1),
        fail_open: bool = True,
        clock: Clock = utcnow,
    ) -> None:
        self._ledger = ledger
        self.max_calls = max_calls
        self.window = window
        self.fail_open = fail_open
        self._clock = clock

    @classmethod
    def from_settings(
        cls, ledger: RateLimitLedgerRepository, settings: Settings, *, clock: Clock = utcnow
    ) -> RateLimiter:
        return cls(
            ledger,
            max_calls=settings.rate_limit_max_calls,
            window=timedelta(seconds=settings.rate_limit_window_seconds),
            fail_open=settings.rate_limit_fail_open,
            clock=clock,
        )

    async def check_and_reserve(self) -> RateLimitDecision:
        """Reserve one call if the window has room.

        ``remaining`` is the headroom seen before this reservation.
        """
        now = self._clock()
        now_ms = epoch_millis(now)
        cutoff_ms = now_ms - int(self.window.total_seconds() * 1000)
        reset_time = now + self.window

        def _update(calls: list[int]) -> tuple[list[int] | None, RateLimitDecision]:
            fresh = [ts for ts in calls if ts > cutoff_ms]
            remaining = self.max_calls - len(fresh)
            if remaining <= 0:
                return None, RateLimitDecision(allowed=False, remaining=0, reset_time=reset_time)
            fresh.append(now_ms)
            return fresh, RateLimitDecision(allowed=True, remaining=remaining, reset_time=reset_time)

        try:
            decision = await self._ledger.transact(_update)
        except SQLAlchemyError as exc:
            if not self.fail_open:
                logger.error("rate_limiter.storage_failed", error=str(exc))
                raise StorageError("Rate limit check failed") from exc
            logger.warning("rate_limiter.fail_open", error=str(exc))
            return RateLimitDecision(allowed=True, remaining=self.max_calls, reset_time=reset_time)

        if not decision.allowed:
            logger.warning("rate_limiter.denied", reset_time=reset_time.isoformat())
        return decision
