"""Three-legged OAuth handshake with Dexcom.

``start_authorization`` hands the user an authorization URL carrying a state
token; ``handle_callback`` receives Dexcom's redirect, recovers the user from
that token, exchanges the code and stores the credential.  The callback has no
caller to raise to, so every outcome is a redirect URL for the front end.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from urllib.parse import urlencode

import structlog
from sqlalchemy.exc import SQLAlchemyError

from cgm_sync.config import Settings
from cgm_sync.dexcom.client import DexcomClient
from cgm_sync.errors import ConfigurationError, VendorAPIError
from cgm_sync.models import HealthMetric
from cgm_sync.oauth.refresh import credential_from_grant
from cgm_sync.oauth.state import StateTokenError, decode_state, issue_state, validate_state
from cgm_sync.storage.repository import CredentialRepository, HealthMetricRepository
from cgm_sync.timewindow import Clock, utcnow

logger = structlog.get_logger(__name__)

# Redirect error codes understood by the front end
CONFIGURATION_ERROR = "configuration_error"
MISSING_PARAMETERS = "missing_parameters"
INVALID_STATE = "invalid_state"
TOKEN_EXCHANGE_FAILED = "token_exchange_failed"
INTERNAL_ERROR = "internal_error"


class OAuthFlow:
    """Drives authorization start and callback handling.

    ``persist_best_effort`` keeps the historical behaviour of reporting
    success when the code exchange worked but storing the credential did
    not.  Turn it off to redirect with ``internal_error`` instead.
    """

    def __init__(
        self,
        client: DexcomClient,
        credentials: CredentialRepository,
        *,
        frontend_url: str,
        configured: bool,
        health: HealthMetricRepository | None = None,
        persist_best_effort: bool = True,
        state_max_age: timedelta = timedelta(hours=1),
        clock: Clock = utcnow,
    ) -> None:
        self._client = client
        self._credentials = credentials
        self._health = health
        self.frontend_url = frontend_url.rstrip("/")
        self.configured = configured
        self.persist_best_effort = persist_best_effort
        self.state_max_age = state_max_age
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        client: DexcomClient,
        credentials: CredentialRepository,
        settings: Settings,
        *,
        health: HealthMetricRepository | None = None,
        clock: Clock = utcnow,
    ) -> OAuthFlow:
        return cls(
            client,
            credentials,
            frontend_url=settings.dexcom_frontend_url,
            configured=settings.dexcom_configured,
            health=health,
            persist_best_effort=settings.oauth_persist_best_effort,
            state_max_age=timedelta(minutes=settings.state_token_max_age_minutes),
            clock=clock,
        )

    # ── Start ─────────────────────────────────────────────────

    def start_authorization(self, user_id: str) -> str:
        """Return the Dexcom login URL for ``user_id``."""
        if not self._client.client_id or not self._client.redirect_uri:
            raise ConfigurationError("Dexcom API credentials not configured")
        state = issue_state(user_id, self._clock())
        logger.info("oauth.authorization_started", user=user_id)
        return self._client.authorization_url(state)

    # ── Callback ──────────────────────────────────────────────

    def success_redirect(self) -> str:
        return f"{self.frontend_url}/dexcom?success=true"

    def error_redirect(self, code: str) -> str:
        return f"{self.frontend_url}/dexcom?{urlencode({'error': code})}"

    async def handle_callback(
        self,
        code: str | None = None,
        state: str | None = None,
        error: str | None = None,
    ) -> str:
        """Process Dexcom's redirect and return where to send the browser.

        Never raises.
        """
        logger.info(
            "oauth.callback_received",
            has_code=bool(code),
            has_state=bool(state),
            error=error,
        )
        try:
            return await self._handle_callback(code, state, error)
        except Exception:
            logger.exception("oauth.callback_failed")
            return self.error_redirect(INTERNAL_ERROR)

    async def _handle_callback(
        self, code: str | None, state: str | None, error: str | None
    ) -> str:
        if not self.configured:
            logger.error("oauth.not_configured")
            return self.error_redirect(CONFIGURATION_ERROR)

        if error:
            logger.error("oauth.vendor_error", error=error)
            return self.error_redirect(error)

        if not code or not state:
            logger.error("oauth.missing_parameters")
            return self.error_redirect(MISSING_PARAMETERS)

        try:
            user_id = decode_state(state).get("userId")
        except StateTokenError:
            logger.error("oauth.state_undecodable")
            return self.error_redirect(INVALID_STATE)
        if not user_id or not isinstance(user_id, str):
            logger.error("oauth.state_missing_user")
            return self.error_redirect(INVALID_STATE)

        now = self._clock()
        validation = validate_state(state, user_id, now, max_age=self.state_max_age)
        if not validation.valid:
            logger.error("oauth.state_rejected", user=user_id, reason=validation.reason)
            return self.error_redirect(INVALID_STATE)

        try:
            grant = await self._client.exchange_code(code)
        except VendorAPIError as exc:
            logger.error("oauth.token_exchange_failed", user=user_id, status=exc.status)
            await self._record(False, now, exc.info.message)
            return self.error_redirect(TOKEN_EXCHANGE_FAILED)

        record = credential_from_grant(user_id, grant, self._clock())
        await self._record(True, now)

        try:
            await self._credentials.save(record)
        except SQLAlchemyError as exc:
            if not self.persist_best_effort:
                logger.error("oauth.persist_failed", user=user_id, error=str(exc))
                return self.error_redirect(INTERNAL_ERROR)
            # The user is told they are connected though nothing was stored.
            logger.warning("oauth.persist_failed_best_effort", user=user_id, error=str(exc))

        logger.info("oauth.connected", user=user_id)
        return self.success_redirect()

    async def _record(self, success: bool, started: datetime, error: str | None = None) -> None:
        if self._health is None:
            return
        now = self._clock()
        await self._health.record(
            HealthMetric(
                operation="oauth_token_exchange",
                success=success,
                response_time_ms=int((now - started).total_seconds() * 1000),
                error=error,
                timestamp=now,
            )
        )
