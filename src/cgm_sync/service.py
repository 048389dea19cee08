"""DexcomService — the operations exposed to the dashboard.

Every method takes an already-authenticated user id; verifying the caller is
the job of the HTTP layer.  :meth:`DexcomService.build` wires all components
from one resolved :class:`~cgm_sync.config.Settings` instance.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

import httpx
import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cgm_sync.config import Settings
from cgm_sync.dexcom.client import DexcomClient
from cgm_sync.errors import NotConnectedError, StorageError
from cgm_sync.models import (
    ConnectionStatus,
    GlucoseReading,
    GlucoseStats,
    RawFetchResult,
    SyncResult,
)
from cgm_sync.oauth.flow import OAuthFlow
from cgm_sync.oauth.refresh import TokenRefreshEngine
from cgm_sync.ratelimit import RateLimiter
from cgm_sync.scheduler.service import SchedulerService
from cgm_sync.stats import calculate_stats
from cgm_sync.storage.repository import (
    CredentialRepository,
    HealthMetricRepository,
    RateLimitLedgerRepository,
    ReadingRepository,
)
from cgm_sync.sync.synchronizer import ReadingSynchronizer
from cgm_sync.timewindow import Clock, TimeRange, resolve_time_range, utcnow

logger = structlog.get_logger(__name__)


class DexcomService:
    """Facade over the OAuth, refresh, sync and query components."""

    def __init__(
        self,
        *,
        settings: Settings,
        credentials: CredentialRepository,
        readings: ReadingRepository,
        health: HealthMetricRepository,
        limiter: RateLimiter,
        refresher: TokenRefreshEngine,
        flow: OAuthFlow,
        synchronizer: ReadingSynchronizer,
        scheduler: SchedulerService,
        clock: Clock = utcnow,
    ) -> None:
        self.settings = settings
        self.credentials = credentials
        self.readings = readings
        self.health = health
        self.limiter = limiter
        self.refresher = refresher
        self.flow = flow
        self.synchronizer = synchronizer
        self.scheduler = scheduler
        self._clock = clock

    @classmethod
    def build(
        cls,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        http: httpx.AsyncClient,
        *,
        clock: Clock = utcnow,
    ) -> DexcomService:
        """Construct every component from ``settings``."""
        credentials = CredentialRepository(session_factory, clock=clock)
        readings = ReadingRepository(session_factory, clock=clock)
        health = HealthMetricRepository(session_factory)
        ledger = RateLimitLedgerRepository(
            session_factory, max_attempts=settings.rate_limit_transaction_attempts
        )

        client = DexcomClient.from_settings(http, settings)
        limiter = RateLimiter.from_settings(ledger, settings, clock=clock)
        refresher = TokenRefreshEngine(
            credentials,
            client,
            health=health,
            expiry_buffer=timedelta(minutes=settings.token_expiry_buffer_minutes),
            refresh_token_lifetime=timedelta(days=settings.refresh_token_lifetime_days),
            refresh_token_warning=timedelta(days=settings.refresh_token_warning_days),
            clock=clock,
        )
        flow = OAuthFlow.from_settings(client, credentials, settings, health=health, clock=clock)
        synchronizer = ReadingSynchronizer.from_settings(
            client, credentials, readings, limiter, refresher, settings, health=health, clock=clock
        )
        scheduler = SchedulerService.from_settings(synchronizer, credentials, settings, clock=clock)

        return cls(
            settings=settings,
            credentials=credentials,
            readings=readings,
            health=health,
            limiter=limiter,
            refresher=refresher,
            flow=flow,
            synchronizer=synchronizer,
            scheduler=scheduler,
            clock=clock,
        )

    # ── OAuth ─────────────────────────────────────────────────

    def start_authorization(self, user_id: str) -> str:
        return self.flow.start_authorization(user_id)

    async def handle_oauth_callback(
        self, code: str | None, state: str | None, error: str | None
    ) -> str:
        return await self.flow.handle_callback(code=code, state=state, error=error)

    # ── Credentials ───────────────────────────────────────────

    async def connection_status(self, user_id: str) -> ConnectionStatus:
        return await self.refresher.connection_status(user_id)

    async def refresh_token(self, user_id: str) -> None:
        """Force a refresh regardless of expiry."""
        record = await self.credentials.get(user_id)
        if record is None or not record.refresh_token:
            raise NotConnectedError("No refresh token found. Please reconnect to Dexcom.")
        await self.refresher.refresh(user_id, record.refresh_token)

    async def disconnect(self, user_id: str) -> None:
        try:
            await self.credentials.delete(user_id)
        except SQLAlchemyError as exc:
            logger.error("dexcom.disconnect_failed", user=user_id, error=str(exc))
            raise StorageError("Failed to disconnect from Dexcom") from exc
        logger.info("dexcom.disconnected", user=user_id)

    # ── Readings ──────────────────────────────────────────────

    async def fetch_glucose_data(
        self, user_id: str, start_date: str | None = None, end_date: str | None = None
    ) -> SyncResult:
        return await self.synchronizer.sync_window(user_id, start_date, end_date)

    async def fetch_raw(
        self, user_id: str, start_date: str | None = None, end_date: str | None = None
    ) -> RawFetchResult:
        return await self.synchronizer.fetch_raw(user_id, start_date, end_date)

    async def list_readings(
        self,
        user_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[GlucoseReading]:
        """Stored readings for ``user_id`` ordered by ``system_time``."""
        return await self.readings.list_range(user_id, start, end)

    async def glucose_stats(
        self, user_id: str, time_range: TimeRange | str = TimeRange.LAST_TWELVE
    ) -> tuple[TimeRange, GlucoseStats]:
        selector = time_range if isinstance(time_range, TimeRange) else TimeRange.parse(time_range)
        start, end = resolve_time_range(selector, self._clock(), floor=self.settings.sync_min_date)
        readings = await self.readings.list_range(user_id, start, end)
        return selector, calculate_stats(readings)

    # ── Diagnostics ───────────────────────────────────────────

    def config_check(self) -> dict[str, Any]:
        """Which Dexcom settings are present.  Never returns secret values."""
        s = self.settings
        return {
            "dexcom_configured": s.dexcom_configured,
            "has_client_id": bool(s.dexcom_client_id),
            "has_client_secret": bool(s.dexcom_client_secret),
            "has_redirect_uri": bool(s.dexcom_redirect_uri),
            "use_sandbox": s.dexcom_use_sandbox,
            "base_url": s.dexcom_base_url,
            "frontend_url": s.dexcom_frontend_url,
            "timestamp": self._clock().isoformat(),
        }
