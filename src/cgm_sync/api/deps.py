"""FastAPI dependencies shared by the routers."""

from __future__ import annotations

from fastapi import Header, Request

from cgm_sync.errors import CGMSyncError, ErrorKind, UnauthenticatedError
from cgm_sync.service import DexcomService

# Set by the upstream identity provider after it has verified the caller.
USER_HEADER = "X-User-ID"


def get_service(request: Request) -> DexcomService:
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise CGMSyncError("Service not ready", kind=ErrorKind.INTERNAL)
    return service


def current_user(x_user_id: str | None = Header(default=None, alias=USER_HEADER)) -> str:
    """The authenticated caller's user id."""
    if not x_user_id or not x_user_id.strip():
        raise UnauthenticatedError("User must be authenticated")
    return x_user_id.strip()
