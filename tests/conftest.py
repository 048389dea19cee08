"""Shared pytest fixtures."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import parse_qs

import httpx
import pytest
from sqlalchemy import event, update
from sqlalchemy.orm import Session

from cgm_sync.config import Settings
from cgm_sync.dexcom.client import DexcomClient
from cgm_sync.models import CredentialRecord
from cgm_sync.service import DexcomService
from cgm_sync.storage.database import (
    RateLimitLedgerRow,
    create_engine,
    create_session_factory,
    init_db,
)
from cgm_sync.storage.repository import (
    CredentialRepository,
    HealthMetricRepository,
    RateLimitLedgerRepository,
    ReadingRepository,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)


class FrozenClock:
    """Injectable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def egv(system_time: datetime, value: float = 110.0, trend: str = "flat") -> dict[str, Any]:
    """One EGV as the v3 API returns it (UTC system time, no offset)."""
    return {
        "systemTime": system_time.strftime("%Y-%m-%dT%H:%M:%S"),
        "displayTime": (system_time - timedelta(hours=4)).strftime("%Y-%m-%dT%H:%M:%S"),
        "value": value,
        "trend": trend,
        "trendRate": 0.5,
        "unit": "mg/dL",
    }


def make_record(
    user_id: str,
    now: datetime = NOW,
    *,
    expires_in: timedelta = timedelta(hours=2),
    access_token: str | None = None,
    refresh_token: str | None = None,
    refresh_age: timedelta = timedelta(days=1),
) -> CredentialRecord:
    return CredentialRecord(
        user_id=user_id,
        access_token=access_token or f"access-{user_id}",
        refresh_token=refresh_token or f"refresh-{user_id}",
        expires_at=now + expires_in,
        refresh_token_created_at=now - refresh_age,
    )


class FakeDexcom:
    """Programmable stand-in for the Dexcom API, mounted via ``MockTransport``."""

    def __init__(self) -> None:
        self.token_status = 200
        self.token_payload: dict[str, Any] = {
            "access_token": "new-access",
            "refresh_token": "new-refresh",
            "expires_in": 7200,
            "token_type": "Bearer",
        }
        self.egvs_status = 200
        self.egvs_error_text = "error"
        self.egvs_payload: dict[str, Any] = {"recordType": "egv", "records": []}
        self.egvs_by_token: dict[str, dict[str, Any]] = {}
        self.failing_tokens: set[str] = set()
        self.data_range: dict[str, Any] | None = None
        self.token_forms: list[dict[str, str]] = []
        self.egvs_params: list[dict[str, str]] = []

    def set_data_range(self, start: datetime, end: datetime) -> None:
        fmt = "%Y-%m-%dT%H:%M:%S"
        self.data_range = {
            "recordType": "dataRange",
            "egvs": {
                "start": {"systemTime": start.strftime(fmt), "displayTime": start.strftime(fmt)},
                "end": {"systemTime": end.strftime(fmt), "displayTime": end.strftime(fmt)},
            },
        }

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/v2/oauth2/token":
            form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
            self.token_forms.append(form)
            if self.token_status != 200:
                return httpx.Response(self.token_status, text="token rejected")
            return httpx.Response(200, json=self.token_payload)

        if path == "/v3/users/self/egvs":
            self.egvs_params.append(dict(request.url.params))
            token = request.headers.get("Authorization", "").removeprefix("Bearer ")
            if token in self.failing_tokens:
                return httpx.Response(500, text="upstream exploded")
            if self.egvs_status != 200:
                return httpx.Response(self.egvs_status, text=self.egvs_error_text)
            return httpx.Response(200, json=self.egvs_by_token.get(token, self.egvs_payload))

        if path == "/v3/users/self/dataRange":
            if self.data_range is None:
                return httpx.Response(404, text="not found")
            return httpx.Response(200, json=self.data_range)

        return httpx.Response(404, text="unknown endpoint")


# ── Settings & clock ──────────────────────────────────────────


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        dexcom_client_id="client-id",
        dexcom_client_secret="client-secret",
        dexcom_redirect_uri="http://test/dexcom/oauth/callback",
        dexcom_frontend_url="http://frontend.test",
        dexcom_use_sandbox=False,
        dexcom_local_timezone="UTC",
        database_url="sqlite+aiosqlite:///:memory:",
        scheduler_enabled=False,
        api_secret_key="",
    )


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


# ── Storage ───────────────────────────────────────────────────


@pytest.fixture
async def session_factory():
    engine = create_engine("sqlite+aiosqlite:///:memory:")
    await init_db(engine)
    try:
        yield create_session_factory(engine)
    finally:
        await engine.dispose()


@pytest.fixture
def credentials(session_factory, clock) -> CredentialRepository:
    return CredentialRepository(session_factory, clock=clock)


@pytest.fixture
def readings(session_factory, clock) -> ReadingRepository:
    return ReadingRepository(session_factory, clock=clock)


@pytest.fixture
def ledger(session_factory) -> RateLimitLedgerRepository:
    return RateLimitLedgerRepository(session_factory)


@pytest.fixture
def health(session_factory) -> HealthMetricRepository:
    return HealthMetricRepository(session_factory)


@pytest.fixture
def competing_writer():
    """Bump the ledger version just before a flush, as another writer would.

    Set ``["remaining"]`` to the number of flushes to interfere with.
    """
    state = {"remaining": 0}
    table = RateLimitLedgerRow.__table__

    def bump(session, flush_context, instances):
        if state["remaining"] <= 0:
            return
        state["remaining"] -= 1
        session.connection().execute(
            update(table).where(table.c.id == "global").values(version=table.c.version + 1)
        )

    event.listen(Session, "before_flush", bump)
    yield state
    event.remove(Session, "before_flush", bump)


# ── Vendor ────────────────────────────────────────────────────


@pytest.fixture
def fake_dexcom() -> FakeDexcom:
    return FakeDexcom()


@pytest.fixture
async def http(fake_dexcom: FakeDexcom):
    async with httpx.AsyncClient(transport=httpx.MockTransport(fake_dexcom)) as client:
        yield client


@pytest.fixture
def dexcom_client(http: httpx.AsyncClient, settings: Settings) -> DexcomClient:
    return DexcomClient.from_settings(http, settings)


@pytest.fixture
def service(settings, session_factory, http, clock) -> DexcomService:
    return DexcomService.build(settings, session_factory, http, clock=clock)
