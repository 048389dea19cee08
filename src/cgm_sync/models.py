"""Shared Pydantic models used across the service."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from cgm_sync.timewindow import epoch_millis

GLUCOSE_UNIT = "mg/dL"

# ── Enums ─────────────────────────────────────────────────────


class TrendDirection(str, Enum):
    """Dexcom trend arrows (v3 spelling; v2 used PascalCase)."""

    NONE = "none"
    DOUBLE_UP = "doubleUp"
    SINGLE_UP = "singleUp"
    FORTY_FIVE_UP = "fortyFiveUp"
    FLAT = "flat"
    FORTY_FIVE_DOWN = "fortyFiveDown"
    SINGLE_DOWN = "singleDown"
    DOUBLE_DOWN = "doubleDown"
    NOT_COMPUTABLE = "notComputable"
    RATE_OUT_OF_RANGE = "rateOutOfRange"

    @classmethod
    def from_vendor(cls, value: str | None) -> TrendDirection:
        """Match a vendor trend string regardless of casing."""
        if value:
            folded = value.lower()
            for member in cls:
                if member.value.lower() == folded:
                    return member
        return cls.NOT_COMPUTABLE


# ── Vendor payloads ───────────────────────────────────────────


class EGVRecord(BaseModel):
    """One estimated glucose value as returned by the Dexcom API.

    Unknown vendor fields are ignored so both envelope generations parse.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    system_time: str = Field(alias="systemTime")
    display_time: str = Field(alias="displayTime")
    value: float
    trend: str | None = None
    trend_rate: float | None = Field(default=None, alias="trendRate")


class TokenGrant(BaseModel):
    """Successful response of ``POST /v2/oauth2/token``."""

    model_config = ConfigDict(extra="ignore")

    access_token: str
    refresh_token: str | None = None
    expires_in: int = 7200
    token_type: str = "Bearer"


class DataRange(BaseModel):
    """Available EGV window reported by ``/v3/users/self/dataRange``."""

    start: datetime
    end: datetime


# ── Stored records ────────────────────────────────────────────


class CredentialRecord(BaseModel):
    """The OAuth credential pair held for one user."""

    user_id: str
    access_token: str
    refresh_token: str
    expires_at: datetime
    refresh_token_created_at: datetime
    last_refresh: datetime | None = None


class GlucoseReading(BaseModel):
    """A stored sensor reading, unique per ``(user_id, system_time)``."""

    user_id: str
    system_time: datetime  # device clock, aware UTC
    display_time: datetime  # user-local wall clock, naive
    value: float
    unit: str = GLUCOSE_UNIT
    trend: str = TrendDirection.NONE.value
    trend_rate: float | None = None

    @property
    def reading_id(self) -> str:
        return f"{self.user_id}_{epoch_millis(self.system_time)}"


class HealthMetric(BaseModel):
    """Append-only diagnostic record of one vendor-facing operation."""

    operation: str
    success: bool
    response_time_ms: int = 0
    error: str | None = None
    timestamp: datetime


# ── Results ───────────────────────────────────────────────────


class RateLimitDecision(BaseModel):
    allowed: bool
    remaining: int
    reset_time: datetime


class StateValidation(BaseModel):
    valid: bool
    reason: str | None = None


class WindowAdjustment(BaseModel):
    start: datetime
    end: datetime
    adjusted: bool = False


class AdjustedDateRange(BaseModel):
    original_start: str | None = None
    original_end: str | None = None
    adjusted_start: str
    adjusted_end: str


class AvailableDataRange(BaseModel):
    start: datetime
    end: datetime


class SyncResult(BaseModel):
    """Outcome of an interactive glucose fetch."""

    glucose_data: list[GlucoseReading]
    rate_limit_remaining: int
    rate_limit_reset_time: datetime
    sandbox: bool
    dates_adjusted: bool = False
    adjusted_date_range: AdjustedDateRange | None = None
    available_data_range: AvailableDataRange | None = None


class RawFetchResult(BaseModel):
    """Unstored vendor response, for debugging the payload shape."""

    status_code: int
    response_time_ms: int
    raw_response: dict[str, Any]
    parsed_glucose_data: list[EGVRecord]
    data_length: int
    sandbox: bool
    date_range: dict[str, str]
    api_format: str


class ConnectionStatus(BaseModel):
    connected: bool
    token_expired: bool | None = None
    token_expiring_soon: bool | None = None
    refresh_token_expiring_soon: bool | None = None
    expires_at: datetime | None = None
    refresh_token_created_at: datetime | None = None
    error: str | None = None


class GlucoseStats(BaseModel):
    average: int = 0
    time_in_range: float = 0.0
    estimated_hba1c: float = 0.0
    last_reading: GlucoseReading | None = None
    readings_count: int = 0
    high_readings: int = 0
    low_readings: int = 0
    normal_readings: int = 0
