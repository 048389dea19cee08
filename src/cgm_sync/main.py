"""Application entrypoint — start the API server or run one-off commands."""

from __future__ import annotations

import argparse
import asyncio
import sys

import httpx
import uvicorn

from cgm_sync.config import Settings, get_settings
from cgm_sync.logger import setup_logging


async def _run_sweep(settings: Settings) -> dict:
    from cgm_sync.service import DexcomService
    from cgm_sync.storage.database import create_engine, create_session_factory, init_db

    engine = create_engine(settings.database_url)
    try:
        await init_db(engine)
        async with httpx.AsyncClient(timeout=settings.dexcom_request_timeout) as http:
            service = DexcomService.build(settings, create_session_factory(engine), http)
            return await service.scheduler.run_sweep()
    finally:
        await engine.dispose()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="cgm-sync",
        description="Dexcom OAuth token lifecycle and glucose sync service.",
    )
    sub = parser.add_subparsers(dest="command")

    # ── serve ─────────────────────────────────────────────────
    serve_parser = sub.add_parser("serve", help="Start the API server.")
    serve_parser.add_argument("--host", default=None)
    serve_parser.add_argument("--port", type=int, default=None)
    serve_parser.add_argument("--reload", action="store_true")

    # ── init-db ───────────────────────────────────────────────
    sub.add_parser("init-db", help="Create database tables.")

    # ── sweep ─────────────────────────────────────────────────
    sub.add_parser("sweep", help="Run one glucose sweep over all connected users and exit.")

    args = parser.parse_args(argv)
    settings = get_settings()
    setup_logging(settings.log_level)

    if args.command == "serve":
        uvicorn.run(
            "cgm_sync.api.server:app",
            host=args.host or settings.api_host,
            port=args.port or settings.api_port,
            reload=args.reload,
        )
    elif args.command == "init-db":
        from cgm_sync.storage.database import init_db

        asyncio.run(init_db())
        print("Database tables created.")
    elif args.command == "sweep":
        stats = asyncio.run(_run_sweep(settings))
        print(
            f"Sweep complete: {stats['last_users']} users, "
            f"{stats['last_readings_count']} readings, "
            f"{stats['last_skipped']} skipped, {stats['last_errors']} errors."
        )
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
