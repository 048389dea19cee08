"""Sweep API routes — inspect and trigger the scheduled glucose sweep."""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends

from cgm_sync.api.deps import get_service
from cgm_sync.service import DexcomService

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])


@router.get("/status", summary="Get scheduler status")
async def scheduler_status(service: DexcomService = Depends(get_service)):
    """Return current scheduler status and statistics."""
    scheduler = service.scheduler
    return {
        "enabled": service.settings.scheduler_enabled,
        "running": scheduler.is_running,
        "interval_minutes": scheduler.interval_minutes,
        "stats": scheduler.stats,
    }


@router.post("", summary="Run one sweep now")
async def sync_all(service: DexcomService = Depends(get_service)):
    """Run an immediate sweep over every connected user."""
    logger.info("sync.manual_sweep")
    stats = await service.scheduler.run_sweep()
    return {"status": "complete", "stats": stats}
