"""Scheduler service — periodic glucose sweep over every connected user.

Architecture
~~~~~~~~~~~~
The ``SchedulerService`` runs as a background component within the
FastAPI lifespan.  Every ``scheduler_collect_interval_minutes`` it:

1. Loads every stored Dexcom credential.
2. For each user (up to ``max_concurrent`` at a time):
   a. Asks the shared rate limiter for a call; skips the user when denied.
   b. Refreshes the access token if it is close to expiry.
   c. Fetches the last ``lookback_minutes`` of readings.
   d. Upserts whatever came back.

A failure for one user is logged and never stops the sweep for the others.
Nothing is reported to a caller; the only effect is stored readings.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Any

import structlog

from cgm_sync.config import Settings
from cgm_sync.storage.repository import CredentialRepository
from cgm_sync.sync.synchronizer import ReadingSynchronizer
from cgm_sync.timewindow import Clock, utcnow

logger = structlog.get_logger(__name__)


class SchedulerService:
    """Background service for the periodic Dexcom sweep.

    Integration::

        scheduler = SchedulerService(synchronizer, credentials)
        await scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        synchronizer: ReadingSynchronizer,
        credentials: CredentialRepository,
        *,
        interval_minutes: int = 15,
        max_concurrent: int = 3,
        lookback_minutes: int = 60,
        clock: Clock = utcnow,
    ) -> None:
        self._synchronizer = synchronizer
        self._credentials = credentials
        self._interval = interval_minutes
        self._max_concurrent = max(1, max_concurrent)
        self._lookback = timedelta(minutes=lookback_minutes)
        self._clock = clock
        self._running = False
        self._task: asyncio.Task | None = None

        # Track sweep stats
        self._stats: dict[str, Any] = {
            "last_run": None,
            "total_runs": 0,
            "last_users": 0,
            "last_readings_count": 0,
            "last_skipped": 0,
            "last_errors": 0,
        }

    @classmethod
    def from_settings(
        cls,
        synchronizer: ReadingSynchronizer,
        credentials: CredentialRepository,
        settings: Settings,
        *,
        clock: Clock = utcnow,
    ) -> SchedulerService:
        return cls(
            synchronizer,
            credentials,
            interval_minutes=settings.scheduler_collect_interval_minutes,
            max_concurrent=settings.scheduler_max_concurrent_syncs,
            lookback_minutes=settings.scheduler_lookback_minutes,
            clock=clock,
        )

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self) -> None:
        """Start the periodic sweep loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "scheduler.started",
            interval_minutes=self._interval,
            max_concurrent=self._max_concurrent,
        )

    async def stop(self) -> None:
        """Stop the scheduler gracefully."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("scheduler.stopped")

    @property
    def stats(self) -> dict[str, Any]:
        return dict(self._stats)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def interval_minutes(self) -> int:
        return self._interval

    # ── Main loop ─────────────────────────────────────────────

    async def _run_loop(self) -> None:
        """Sweep forever, sleeping one interval between passes."""
        while self._running:
            try:
                await self.run_sweep()
            except Exception:
                logger.exception("scheduler.run_error")

            await asyncio.sleep(self._interval * 60)

    async def run_sweep(self) -> dict[str, Any]:
        """Run one sweep over every connected user and return the stats."""
        credentials = await self._credentials.list_all()
        self._stats["total_runs"] += 1
        self._stats["last_run"] = self._clock().isoformat()
        self._stats["last_users"] = len(credentials)
        if not credentials:
            logger.debug("scheduler.no_users")
            self._stats.update(last_readings_count=0, last_skipped=0, last_errors=0)
            return self.stats

        semaphore = asyncio.Semaphore(self._max_concurrent)

        async def _sync_one(user_id: str) -> int | None:
            async with semaphore:
                return await self._synchronizer.sync_recent(user_id, self._lookback)

        user_ids = [c.user_id for c in credentials]
        results = await asyncio.gather(
            *(_sync_one(uid) for uid in user_ids), return_exceptions=True
        )

        total_readings = 0
        skipped = 0
        errors = 0
        for user_id, result in zip(user_ids, results):
            if isinstance(result, BaseException):
                errors += 1
                logger.error(
                    "scheduler.user_error",
                    user=user_id,
                    error=str(result) or type(result).__name__,
                )
            elif result is None:
                skipped += 1
            else:
                total_readings += result

        self._stats["last_readings_count"] = total_readings
        self._stats["last_skipped"] = skipped
        self._stats["last_errors"] = errors
        logger.info(
            "scheduler.cycle_complete",
            users=len(user_ids),
            readings=total_readings,
            skipped=skipped,
            errors=errors,
        )
        return self.stats
