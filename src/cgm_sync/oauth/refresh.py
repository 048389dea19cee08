"""Token refresh engine — decides when an access token must be renewed.

Both the interactive fetch and the scheduled sweep call
:meth:`TokenRefreshEngine.ensure_fresh`.  Two concurrent refreshes for the
same user are tolerated: each persists a complete, usable record and the
last write wins.
"""

from __future__ import annotations

from datetime import datetime, timedelta

import structlog
from sqlalchemy.exc import SQLAlchemyError

from cgm_sync.dexcom.client import DexcomClient
from cgm_sync.errors import ErrorKind, NotConnectedError, VendorAPIError
from cgm_sync.models import ConnectionStatus, CredentialRecord, HealthMetric, TokenGrant
from cgm_sync.storage.repository import CredentialRepository, HealthMetricRepository
from cgm_sync.timewindow import Clock, utcnow

logger = structlog.get_logger(__name__)


def credential_from_grant(
    user_id: str,
    grant: TokenGrant,
    now: datetime,
    *,
    previous_refresh_token: str = "",
) -> CredentialRecord:
    """Build the complete record persisted after an exchange or refresh.

    The refresh credential's age restarts at ``now`` every time Dexcom
    hands out a token pair.
    """
    return CredentialRecord(
        user_id=user_id,
        access_token=grant.access_token,
        refresh_token=grant.refresh_token or previous_refresh_token,
        expires_at=now + timedelta(seconds=grant.expires_in),
        refresh_token_created_at=now,
        last_refresh=now,
    )


class TokenRefreshEngine:
    """Keeps a user's access token usable.

    Parameters
    ----------
    credentials:
        Store of per-user credential records.
    client:
        Dexcom API client used for the refresh grant.
    expiry_buffer:
        Refresh proactively once the token is this close to expiry.
    refresh_token_lifetime, refresh_token_warning:
        Dexcom refresh tokens die after a fixed lifetime; the status call
        warns this long before that.
    """

    def __init__(
        self,
        credentials: CredentialRepository,
        client: DexcomClient,
        *,
        health: HealthMetricRepository | None = None,
        expiry_buffer: timedelta = timedelta(minutes=30),
        refresh_token_lifetime: timedelta = timedelta(days=365),
        refresh_token_warning: timedelta = timedelta(days=7),
        clock: Clock = utcnow,
    ) -> None:
        self._credentials = credentials
        self._client = client
        self._health = health
        self._expiry_buffer = expiry_buffer
        self._refresh_lifetime = refresh_token_lifetime
        self._refresh_warning = refresh_token_warning
        self._clock = clock

    # ── Policy ────────────────────────────────────────────────

    def is_expired(self, record: CredentialRecord, now: datetime) -> bool:
        return now >= record.expires_at

    def needs_refresh(self, record: CredentialRecord, now: datetime) -> bool:
        """True once ``now`` is within the buffer of (or past) expiry."""
        return self.is_expired(record, now) or now + self._expiry_buffer >= record.expires_at

    def refresh_token_expiring_soon(self, record: CredentialRecord, now: datetime) -> bool:
        age = now - record.refresh_token_created_at
        return age > self._refresh_lifetime - self._refresh_warning

    # ── Operations ────────────────────────────────────────────

    async def ensure_fresh(
        self, user_id: str, record: CredentialRecord | None = None
    ) -> CredentialRecord:
        """Return a record whose access token is not about to expire."""
        if record is None:
            record = await self._credentials.get(user_id)
        if record is None:
            raise NotConnectedError("No Dexcom tokens found. Please connect to Dexcom first.")

        if not self.needs_refresh(record, self._clock()):
            return record

        logger.info("token.refresh_due", user=user_id, expires_at=record.expires_at.isoformat())
        return await self.refresh(user_id, record.refresh_token)

    async def refresh(self, user_id: str, refresh_token: str) -> CredentialRecord:
        """Exchange ``refresh_token`` for a new pair and persist it.

        Raises :class:`VendorAPIError` (kind ``internal``) when Dexcom
        refuses; storage failures propagate.
        """
        started = self._clock()
        try:
            grant = await self._client.refresh(refresh_token)
        except VendorAPIError as exc:
            await self._record(False, started, exc.info.message)
            raise VendorAPIError(exc.info, body=exc.body, kind=ErrorKind.INTERNAL) from exc

        now = self._clock()
        record = credential_from_grant(
            user_id, grant, now, previous_refresh_token=refresh_token
        )
        await self._credentials.save(record)
        await self._record(True, started)
        logger.info("token.refreshed", user=user_id, expires_at=record.expires_at.isoformat())
        return record

    async def connection_status(self, user_id: str) -> ConnectionStatus:
        try:
            record = await self._credentials.get(user_id)
        except SQLAlchemyError:
            logger.exception("token.status_lookup_failed", user=user_id)
            return ConnectionStatus(connected=False, error="Database connection failed")

        if record is None:
            return ConnectionStatus(connected=False)

        now = self._clock()
        return ConnectionStatus(
            connected=True,
            token_expired=self.is_expired(record, now),
            token_expiring_soon=self.needs_refresh(record, now),
            refresh_token_expiring_soon=self.refresh_token_expiring_soon(record, now),
            expires_at=record.expires_at,
            refresh_token_created_at=record.refresh_token_created_at,
        )

    async def _record(self, success: bool, started: datetime, error: str | None = None) -> None:
        if self._health is None:
            return
        now = self._clock()
        await self._health.record(
            HealthMetric(
                operation="dexcom_token_refresh",
                success=success,
                response_time_ms=int((now - started).total_seconds() * 1000),
                error=error,
                timestamp=now,
            )
        )
