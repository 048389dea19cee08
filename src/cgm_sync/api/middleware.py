"""Middleware — CORS, API key authentication, request logging, error mapping."""

from __future__ import annotations

import secrets
import time
import uuid
from typing import Callable

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from cgm_sync.config import Settings
from cgm_sync.errors import CGMSyncError, ErrorKind

logger = structlog.get_logger(__name__)

_PLACEHOLDER_KEY = "change-me-to-a-random-secret"
REQUEST_ID_HEADER = "X-Request-ID"


# ── CORS ──────────────────────────────────────────────────────


def parse_origins(raw: str) -> list[str]:
    """Split ``CORS_ORIGINS`` (comma-separated, or ``*``) into a list."""
    raw = raw.strip()
    if raw == "*":
        return ["*"]
    return [o.strip() for o in raw.split(",") if o.strip()]


def add_cors(app: FastAPI, settings: Settings) -> None:
    """Let the dashboard origin call the API from the browser."""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=parse_origins(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=[REQUEST_ID_HEADER],
    )


# ── API key authentication ────────────────────────────────────

_PUBLIC_PATHS: frozenset[str] = frozenset(
    {
        "/health",
        "/docs",
        "/openapi.json",
        "/redoc",
        "/system/config",
        # Dexcom redirects the browser here without any of our headers.
        "/dexcom/oauth/callback",
    }
)


class APIKeyMiddleware(BaseHTTPMiddleware):
    """Require the shared service key on everything but public paths.

    The key may come as ``X-API-Key`` or ``Authorization: Bearer <key>``.
    An empty key or the shipped placeholder turns the check off.
    """

    def __init__(self, app: ASGIApp, secret_key: str = "") -> None:
        super().__init__(app)
        self._secret_key = "" if secret_key == _PLACEHOLDER_KEY else secret_key

    @property
    def enabled(self) -> bool:
        return bool(self._secret_key)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not self.enabled or request.url.path in _PUBLIC_PATHS:
            return await call_next(request)

        presented = request.headers.get("X-API-Key") or _extract_bearer(
            request.headers.get("Authorization", "")
        )
        if not secrets.compare_digest(presented.encode(), self._secret_key.encode()):
            logger.warning("http.api_key_rejected", path=request.url.path)
            return _error_response(401, ErrorKind.UNAUTHENTICATED, "Invalid or missing API key.")

        return await call_next(request)


# ── Request logging ───────────────────────────────────────────


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Tag each request with an id and log its outcome.

    The id is bound into structlog's context so every event logged while
    serving the request carries it.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        structlog.contextvars.bind_contextvars(request_id=request_id)
        started = time.monotonic()
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")
        response.headers[REQUEST_ID_HEADER] = request_id

        if request.url.path != "/health":
            logger.info(
                "http.request",
                request_id=request_id,
                method=request.method,
                path=request.url.path,
                user=request.headers.get("X-User-ID"),
                status=response.status_code,
                duration_ms=round((time.monotonic() - started) * 1000, 1),
            )
        return response


# ── Error mapping ─────────────────────────────────────────────

STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.UNAUTHENTICATED: 401,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.FAILED_PRECONDITION: 412,
    ErrorKind.RESOURCE_EXHAUSTED: 429,
    ErrorKind.INVALID_ARGUMENT: 400,
    ErrorKind.INTERNAL: 500,
}


def _error_response(status: int, kind: ErrorKind, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status, content={"error": kind.value, "detail": detail})


async def cgm_sync_error_handler(request: Request, exc: CGMSyncError) -> JSONResponse:
    """Render a :class:`CGMSyncError` as ``{"error": kind, "detail": message}``.

    Vendor bodies and other internal detail go to the log only.
    """
    status = STATUS_BY_KIND.get(exc.kind, 500)
    log = logger.error if status >= 500 else logger.warning
    log(
        "http.request_failed",
        path=request.url.path,
        kind=exc.kind.value,
        message=exc.user_message,
        **{k: v for k, v in exc.detail.items() if k != "body"},
    )
    return _error_response(status, exc.kind, exc.user_message)


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Turn anything unhandled into an ``internal`` error body."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except Exception as exc:
            logger.exception("http.unhandled_error", path=request.url.path, error=str(exc))
            return _error_response(500, ErrorKind.INTERNAL, "Internal server error.")


# ── Setup helper ──────────────────────────────────────────────


def setup_middleware(app: FastAPI, settings: Settings) -> None:
    """Register the error handler and the middleware stack.

    Outermost first: error handler, request logging, API key, CORS.
    Starlette wraps in reverse order of registration.
    """
    app.add_exception_handler(CGMSyncError, cgm_sync_error_handler)
    add_cors(app, settings)
    app.add_middleware(APIKeyMiddleware, secret_key=settings.api_secret_key)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(ErrorHandlerMiddleware)


# ── Helpers ───────────────────────────────────────────────────


def _extract_bearer(auth_header: str) -> str:
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() == "bearer":
        return token.strip()
    return ""
