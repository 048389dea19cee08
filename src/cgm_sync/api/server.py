"""FastAPI application — Dexcom OAuth, glucose sync and the background sweep.

This module wires together all infrastructure:
- CORS + API key auth middleware
- Dexcom OAuth 2.0 flow
- On-demand glucose sync and stored-reading queries
- Scheduled glucose sweep
"""

from __future__ import annotations

from contextlib import asynccontextmanager

import httpx
import structlog
from fastapi import FastAPI, Request

from cgm_sync import __version__
from cgm_sync.api.middleware import setup_middleware
from cgm_sync.api.routes.dexcom import router as dexcom_router
from cgm_sync.api.routes.sync import router as sync_router
from cgm_sync.config import Settings, get_settings
from cgm_sync.service import DexcomService
from cgm_sync.storage.database import create_engine, create_session_factory, init_db
from cgm_sync.timewindow import Clock, utcnow

logger = structlog.get_logger(__name__)


def create_app(
    settings: Settings | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    clock: Clock = utcnow,
) -> FastAPI:
    """Build the application.

    Parameters
    ----------
    settings:
        Resolved configuration; defaults to :func:`get_settings`.
    transport:
        Optional httpx transport for the Dexcom client (tests pass a
        ``MockTransport``).
    clock:
        Time source handed to every component.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup / shutdown lifecycle hooks."""
        # 1. Database
        engine = create_engine(settings.database_url)
        await init_db(engine)
        logger.info("server.db_ready")

        # 2. Shared Dexcom HTTP connection pool
        http = httpx.AsyncClient(timeout=settings.dexcom_request_timeout, transport=transport)

        # 3. Core components
        service = DexcomService.build(settings, create_session_factory(engine), http, clock=clock)
        app.state.service = service

        # 4. Scheduled sweep
        if settings.scheduler_enabled:
            await service.scheduler.start()
            logger.info("server.scheduler_started")

        logger.info(
            "server.started",
            port=settings.api_port,
            sandbox=settings.dexcom_use_sandbox,
            dexcom_configured=settings.dexcom_configured,
        )

        yield  # ← application runs

        # Shutdown
        await service.scheduler.stop()
        await http.aclose()
        await engine.dispose()
        app.state.service = None
        logger.info("server.stopped")

    app = FastAPI(
        title="CGM Sync API",
        description="Dexcom OAuth token lifecycle and glucose data synchronization.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.service = None

    # ── Middleware ────────────────────────────────────────────
    setup_middleware(app, settings)

    # ── Routers ───────────────────────────────────────────────
    app.include_router(dexcom_router)
    app.include_router(sync_router)

    # ── System ────────────────────────────────────────────────

    @app.get("/health", tags=["system"])
    async def health(request: Request):
        service: DexcomService | None = request.app.state.service
        return {
            "status": "ok" if service is not None else "starting",
            "sandbox": settings.dexcom_use_sandbox,
            "scheduler_running": service.scheduler.is_running if service else False,
        }

    @app.get("/system/config", tags=["system"])
    async def system_config(request: Request):
        """Which Dexcom settings are present (never their values)."""
        service: DexcomService | None = request.app.state.service
        if service is None:
            return {"success": False, "error": "Service not ready"}
        return {"success": True, **service.config_check()}

    return app


app = create_app()
