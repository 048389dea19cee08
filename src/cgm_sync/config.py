"""Centralised application settings loaded from environment / .env file."""

from __future__ import annotations

import os
from datetime import date
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent


def _resolve_db_dir() -> Path:
    """Return (and create) the directory that holds the SQLite file."""
    d = _PROJECT_ROOT / "data"
    d.mkdir(parents=True, exist_ok=True)
    return d


_DEFAULT_DB_URL = f"sqlite+aiosqlite:///{_resolve_db_dir() / 'cgm_sync.db'}"


class Settings(BaseSettings):
    """All runtime configuration for the CGM sync service.

    Values are read from environment variables first, then from a *.env* file
    located at the project root.  Variable names are the upper-cased field
    names (``DEXCOM_CLIENT_ID``, ``RATE_LIMIT_MAX_CALLS`` ...).

    Resolve the settings once at startup and hand the instance to every
    component constructor; nothing below the API layer reads the environment.
    """

    model_config = SettingsConfigDict(
        env_file=str(_PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Dexcom OAuth 2 ────────────────────────────────────────
    dexcom_client_id: str = ""
    dexcom_client_secret: str = ""
    dexcom_redirect_uri: str = ""
    dexcom_frontend_url: str = "http://localhost:5173"

    # ── Dexcom API behaviour ──────────────────────────────────
    dexcom_use_sandbox: bool = True
    dexcom_sandbox_base_url: str = "https://sandbox-api.dexcom.com"
    dexcom_production_base_url: str = "https://api.dexcom.com"
    dexcom_request_timeout: float = 30.0
    dexcom_local_timezone: str = ""  # IANA name; empty means the host zone

    # ── Token lifecycle ───────────────────────────────────────
    token_expiry_buffer_minutes: int = 30
    refresh_token_lifetime_days: int = 365
    refresh_token_warning_days: int = 7
    state_token_max_age_minutes: int = 60
    oauth_persist_best_effort: bool = True

    # ── Rate limiting (shared by every user) ──────────────────
    rate_limit_max_calls: int = 60_000
    rate_limit_window_seconds: int = 3600
    rate_limit_fail_open: bool = True
    rate_limit_transaction_attempts: int = 5

    # ── Reading sync ──────────────────────────────────────────
    sync_min_date: date = date(2020, 1, 1)  # Dexcom G7 family launch floor
    sync_max_range_days: int = 365
    sync_default_window_hours: int = 12
    sandbox_fallback_window_hours: int = 12

    # ── Scheduler ─────────────────────────────────────────────
    scheduler_enabled: bool = True
    scheduler_collect_interval_minutes: int = 15
    scheduler_max_concurrent_syncs: int = 3
    scheduler_lookback_minutes: int = 60

    # ── Database ──────────────────────────────────────────────
    database_url: str = _DEFAULT_DB_URL

    # ── API server ────────────────────────────────────────────
    api_host: str = "0.0.0.0"
    api_port: int = int(os.getenv("PORT", "8000"))
    api_secret_key: str = "change-me-to-a-random-secret"
    cors_origins: str = "*"  # comma-separated origins, or "*" for all

    # ── Logging ───────────────────────────────────────────────
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    @property
    def dexcom_base_url(self) -> str:
        if self.dexcom_use_sandbox:
            return self.dexcom_sandbox_base_url
        return self.dexcom_production_base_url

    @property
    def dexcom_configured(self) -> bool:
        return bool(
            self.dexcom_client_id and self.dexcom_client_secret and self.dexcom_redirect_uri
        )


@lru_cache
def get_settings() -> Settings:
    """Return a cached :class:`Settings` singleton."""
    return Settings()
