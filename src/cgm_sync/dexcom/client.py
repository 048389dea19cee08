"""Dexcom OAuth 2.0 + v3 data API client.

Covers the three endpoints the sync core needs:

* ``POST /v2/oauth2/token``        — authorization-code and refresh grants
* ``GET  /v3/users/self/egvs``     — estimated glucose values for a window
* ``GET  /v3/users/self/dataRange`` — available data window (sandbox only)

See: https://developer.dexcom.com/docs/dexcom/
"""

from __future__ import annotations

from datetime import datetime, tzinfo
from typing import Any
from urllib.parse import urlencode

import httpx
import structlog
from pydantic import ValidationError

from cgm_sync.config import Settings
from cgm_sync.errors import VendorAPIError, classify_vendor_status
from cgm_sync.models import DataRange, EGVRecord, TokenGrant
from cgm_sync.timewindow import format_vendor_time, parse_instant, resolve_timezone

logger = structlog.get_logger(__name__)

_AUTHORIZE_PATH = "/v2/oauth2/login"
_TOKEN_PATH = "/v2/oauth2/token"
_EGVS_PATH = "/v3/users/self/egvs"
_DATA_RANGE_PATH = "/v3/users/self/dataRange"

# offline_access is what makes Dexcom issue a refresh token
_SCOPE = "offline_access"


# ── Envelope normalisation ────────────────────────────────────


def envelope_format(payload: dict[str, Any]) -> str:
    """Name the envelope generation a payload uses, for diagnostics."""
    if payload.get("records") is not None:
        return "records"
    if payload.get("egvs") is not None:
        return "egvs"
    return "unknown"


def normalize_egvs_payload(payload: dict[str, Any]) -> list[EGVRecord]:
    """Accept both the current ``records`` and the legacy ``egvs`` envelope.

    Entries that do not carry the fields of a reading are skipped.
    """
    items = payload.get("records") or payload.get("egvs") or []
    records: list[EGVRecord] = []
    for item in items:
        try:
            records.append(EGVRecord.model_validate(item))
        except ValidationError:
            logger.warning("dexcom.egv_skipped", keys=sorted(item) if isinstance(item, dict) else None)
    return records


def parse_data_range(payload: dict[str, Any]) -> DataRange | None:
    """Extract the EGV window from a ``dataRange`` response, if present."""
    egvs = payload.get("egvs") or {}
    start = (egvs.get("start") or {}).get("systemTime")
    end = (egvs.get("end") or {}).get("systemTime")
    if not start or not end:
        return None
    return DataRange(start=parse_instant(start), end=parse_instant(end))


# ── Client ────────────────────────────────────────────────────


class DexcomClient:
    """Thin async wrapper around the Dexcom HTTP API.

    The ``httpx.AsyncClient`` is owned by the caller, so one connection
    pool serves every user.

    Usage::

        async with httpx.AsyncClient(timeout=30) as http:
            client = DexcomClient.from_settings(http, settings)
            grant = await client.exchange_code(code)
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        base_url: str,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        local_tz: tzinfo | None = None,
    ) -> None:
        self._http = http
        self.base_url = base_url.rstrip("/")
        self.client_id = client_id
        self._client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.local_tz = local_tz

    @classmethod
    def from_settings(cls, http: httpx.AsyncClient, settings: Settings) -> DexcomClient:
        return cls(
            http,
            base_url=settings.dexcom_base_url,
            client_id=settings.dexcom_client_id,
            client_secret=settings.dexcom_client_secret,
            redirect_uri=settings.dexcom_redirect_uri,
            local_tz=resolve_timezone(settings.dexcom_local_timezone),
        )

    # ── OAuth ─────────────────────────────────────────────────

    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": _SCOPE,
            "state": state,
        }
        return f"{self.base_url}{_AUTHORIZE_PATH}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> TokenGrant:
        """Authorization-code grant."""
        return await self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.redirect_uri,
            }
        )

    async def refresh(self, refresh_token: str) -> TokenGrant:
        """Refresh-token grant."""
        return await self._token_request(
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            }
        )

    async def _token_request(self, form: dict[str, str]) -> TokenGrant:
        resp = await self._http.post(
            f"{self.base_url}{_TOKEN_PATH}",
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            data={
                "client_id": self.client_id,
                "client_secret": self._client_secret,
                **form,
            },
        )
        if resp.status_code != 200:
            raise self._vendor_error(resp, grant=form["grant_type"])
        return TokenGrant.model_validate(resp.json())

    # ── Data ──────────────────────────────────────────────────

    def wire_window(self, start: datetime, end: datetime) -> tuple[str, str]:
        """The ``startDate``/``endDate`` strings Dexcom expects."""
        return (
            format_vendor_time(start, self.local_tz),
            format_vendor_time(end, self.local_tz),
        )

    async def fetch_egvs_raw(
        self, access_token: str, start: datetime, end: datetime
    ) -> httpx.Response:
        """GET the EGV endpoint and hand back the untouched response."""
        start_s, end_s = self.wire_window(start, end)
        logger.debug("dexcom.egvs_request", start=start_s, end=end_s)
        return await self._http.get(
            f"{self.base_url}{_EGVS_PATH}",
            params={"startDate": start_s, "endDate": end_s},
            headers={"Authorization": f"Bearer {access_token}"},
        )

    async def get_egvs(self, access_token: str, start: datetime, end: datetime) -> list[EGVRecord]:
        """Fetch readings for ``[start, end]``.

        Raises :class:`VendorAPIError` on a non-success status.
        """
        resp = await self.fetch_egvs_raw(access_token, start, end)
        if resp.status_code != 200:
            raise self._vendor_error(resp, endpoint="egvs")
        payload = resp.json()
        records = normalize_egvs_payload(payload)
        logger.info(
            "dexcom.egvs_fetched",
            count=len(records),
            format=envelope_format(payload),
        )
        return records

    async def get_data_range(self, access_token: str) -> DataRange | None:
        """Return the available EGV window, or ``None`` when unavailable."""
        try:
            resp = await self._http.get(
                f"{self.base_url}{_DATA_RANGE_PATH}",
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as exc:
            logger.warning("dexcom.data_range_unreachable", error=str(exc))
            return None
        if resp.status_code != 200:
            logger.warning("dexcom.data_range_failed", status=resp.status_code, body=resp.text)
            return None
        try:
            data_range = parse_data_range(resp.json())
        except ValueError as exc:
            logger.warning("dexcom.data_range_unparseable", error=str(exc))
            return None
        if data_range is not None:
            logger.info(
                "dexcom.data_range",
                start=data_range.start.isoformat(),
                end=data_range.end.isoformat(),
            )
        return data_range

    # ── Helpers ───────────────────────────────────────────────

    @staticmethod
    def _vendor_error(resp: httpx.Response, **context: Any) -> VendorAPIError:
        info = classify_vendor_status(resp.status_code)
        logger.error(
            "dexcom.request_failed",
            status=resp.status_code,
            message=info.message,
            retryable=info.is_retryable,
            body=resp.text,
            **context,
        )
        return VendorAPIError(info, body=resp.text)
