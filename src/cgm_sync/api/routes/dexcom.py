"""Dexcom API routes — OAuth, connection management and glucose data.

Endpoints
~~~~~~~~~
* ``POST   /dexcom/oauth/start``    — authorization URL for the caller
* ``GET    /dexcom/oauth/callback`` — Dexcom redirect target (public)
* ``GET    /dexcom/status``         — connection and token status
* ``POST   /dexcom/refresh``        — force a token refresh
* ``POST   /dexcom/glucose``        — fetch and store readings for a window
* ``DELETE /dexcom/connection``     — forget the stored credential
* ``GET    /dexcom/readings``       — stored readings
* ``GET    /dexcom/stats``          — summary statistics for a range
* ``POST   /dexcom/raw``            — unstored vendor payload, for debugging

Every route except the callback needs the caller's id in ``X-User-ID``.
"""

from __future__ import annotations

from datetime import datetime

import structlog
from fastapi import APIRouter, Depends, Query
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, ConfigDict, Field

from cgm_sync.api.deps import current_user, get_service
from cgm_sync.service import DexcomService
from cgm_sync.stats import trend_arrow
from cgm_sync.timewindow import as_utc

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/dexcom", tags=["dexcom"])


class GlucoseRequest(BaseModel):
    """Optional fetch window; both bounds or neither, ISO-8601.

    The dashboard sends ``startDate``/``endDate``; snake_case also works.
    """

    model_config = ConfigDict(populate_by_name=True)

    start_date: str | None = Field(default=None, alias="startDate")
    end_date: str | None = Field(default=None, alias="endDate")


# ── OAuth ─────────────────────────────────────────────────────


@router.post("/oauth/start", summary="Start Dexcom OAuth flow")
async def oauth_start(
    user_id: str = Depends(current_user),
    service: DexcomService = Depends(get_service),
):
    return {"auth_url": service.start_authorization(user_id)}


@router.get("/oauth/callback", summary="Dexcom OAuth callback")
async def oauth_callback(
    code: str | None = Query(None),
    state: str | None = Query(None),
    error: str | None = Query(None),
    service: DexcomService = Depends(get_service),
):
    """Exchange the code and send the browser back to the dashboard."""
    url = await service.handle_oauth_callback(code, state, error)
    return RedirectResponse(url, status_code=307)


# ── Connection ────────────────────────────────────────────────


@router.get("/status", summary="Connection status")
async def connection_status(
    user_id: str = Depends(current_user),
    service: DexcomService = Depends(get_service),
):
    status = await service.connection_status(user_id)
    return status.model_dump(mode="json", exclude_none=True)


@router.post("/refresh", summary="Refresh Dexcom tokens")
async def refresh_token(
    user_id: str = Depends(current_user),
    service: DexcomService = Depends(get_service),
):
    await service.refresh_token(user_id)
    return {"success": True}


@router.delete("/connection", summary="Disconnect Dexcom")
async def disconnect(
    user_id: str = Depends(current_user),
    service: DexcomService = Depends(get_service),
):
    await service.disconnect(user_id)
    return {"success": True}


# ── Glucose data ──────────────────────────────────────────────


@router.post("/glucose", summary="Fetch glucose data")
async def fetch_glucose(
    req: GlucoseRequest | None = None,
    user_id: str = Depends(current_user),
    service: DexcomService = Depends(get_service),
):
    """Fetch readings from Dexcom, store them and return them.

    Without both dates the last twelve hours are fetched.
    """
    req = req or GlucoseRequest()
    result = await service.fetch_glucose_data(user_id, req.start_date, req.end_date)
    return result.model_dump(mode="json", exclude_none=True)


@router.get("/readings", summary="Stored glucose readings")
async def list_readings(
    start: datetime | None = Query(None),
    end: datetime | None = Query(None),
    user_id: str = Depends(current_user),
    service: DexcomService = Depends(get_service),
):
    readings = await service.list_readings(
        user_id,
        as_utc(start) if start else None,
        as_utc(end) if end else None,
    )
    return {
        "user_id": user_id,
        "count": len(readings),
        "readings": [
            {
                "id": r.reading_id,
                **r.model_dump(mode="json", exclude={"user_id"}),
                "trend_arrow": trend_arrow(r.trend),
            }
            for r in readings
        ],
    }


@router.get("/stats", summary="Glucose statistics")
async def glucose_stats(
    time_range: str = Query("last_twelve"),
    user_id: str = Depends(current_user),
    service: DexcomService = Depends(get_service),
):
    selector, stats = await service.glucose_stats(user_id, time_range)
    return {"time_range": selector.value, "stats": stats.model_dump(mode="json")}


@router.post("/raw", summary="Raw Dexcom response (debug)")
async def fetch_raw(
    req: GlucoseRequest | None = None,
    user_id: str = Depends(current_user),
    service: DexcomService = Depends(get_service),
):
    req = req or GlucoseRequest()
    result = await service.fetch_raw(user_id, req.start_date, req.end_date)
    return {"success": True, **result.model_dump(mode="json")}
