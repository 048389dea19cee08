"""Error taxonomy and Dexcom HTTP status classification.

Every failure surfaced to a caller is a :class:`CGMSyncError` carrying an
:class:`ErrorKind` and a short user-facing message.  Internal detail (vendor
status, raw body) rides along in ``detail`` for logging and is never
returned over the API.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    NOT_FOUND = "not_found"
    FAILED_PRECONDITION = "failed_precondition"
    RESOURCE_EXHAUSTED = "resource_exhausted"
    INVALID_ARGUMENT = "invalid_argument"
    INTERNAL = "internal"


class CGMSyncError(Exception):
    """Base class for every error raised by the sync core."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(
        self,
        user_message: str,
        *,
        kind: ErrorKind | None = None,
        detail: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(user_message)
        if kind is not None:
            self.kind = kind
        self.user_message = user_message
        self.detail = detail or {}


class UnauthenticatedError(CGMSyncError):
    kind = ErrorKind.UNAUTHENTICATED


class NotConnectedError(CGMSyncError):
    """No credential record exists for the user."""

    kind = ErrorKind.NOT_FOUND


class ConfigurationError(CGMSyncError):
    """Dexcom client credentials are missing."""

    kind = ErrorKind.FAILED_PRECONDITION


class RateLimitExceededError(CGMSyncError):
    kind = ErrorKind.RESOURCE_EXHAUSTED


class InvalidDateRangeError(CGMSyncError):
    kind = ErrorKind.INVALID_ARGUMENT


class StorageError(CGMSyncError):
    kind = ErrorKind.INTERNAL


# ── Dexcom status table ───────────────────────────────────────


@dataclass(frozen=True)
class VendorErrorInfo:
    status: int
    message: str
    user_message: str
    is_retryable: bool


_VENDOR_ERRORS: dict[int, tuple[str, str, bool]] = {
    400: ("Bad Request - Invalid parameters", "Invalid request parameters", False),
    401: (
        "Unauthorized - Invalid or expired token",
        "Authentication expired. Please reconnect.",
        False,
    ),
    403: (
        "Forbidden - Insufficient permissions",
        "Access denied. Please check permissions.",
        False,
    ),
    404: ("Not Found - Endpoint or resource not found", "Requested data not found", False),
    409: ("Conflict - Resource conflict", "Data conflict occurred", False),
    429: (
        "Too Many Requests - Rate limit exceeded",
        "Too many requests. Please try again later.",
        True,
    ),
    500: (
        "Internal Server Error - Dexcom API error",
        "Dexcom service temporarily unavailable",
        True,
    ),
    502: ("Bad Gateway - Upstream server error", "Service temporarily unavailable", True),
    503: ("Service Unavailable - Dexcom maintenance", "Dexcom service under maintenance", True),
    504: ("Gateway Timeout - Request timeout", "Request timed out. Please try again.", True),
}


def classify_vendor_status(status: int) -> VendorErrorInfo:
    """Map a Dexcom HTTP status onto the error table.

    Unknown statuses are treated as non-retryable.
    """
    entry = _VENDOR_ERRORS.get(status)
    if entry is None:
        return VendorErrorInfo(
            status=status,
            message=f"HTTP {status} - Unknown error",
            user_message="An unexpected error occurred",
            is_retryable=False,
        )
    message, user_message, retryable = entry
    return VendorErrorInfo(status, message, user_message, retryable)


class VendorAPIError(CGMSyncError):
    """A Dexcom endpoint answered with a non-success status.

    Retryable statuses (429, 5xx) default to ``internal``; the rest are
    ``failed_precondition``.
    """

    def __init__(
        self,
        info: VendorErrorInfo,
        *,
        body: str = "",
        kind: ErrorKind | None = None,
    ) -> None:
        if kind is None:
            kind = ErrorKind.INTERNAL if info.is_retryable else ErrorKind.FAILED_PRECONDITION
        super().__init__(
            info.user_message,
            kind=kind,
            detail={"status": info.status, "message": info.message, "body": body},
        )
        self.info = info
        self.body = body

    @property
    def status(self) -> int:
        return self.info.status

    @property
    def is_retryable(self) -> bool:
        return self.info.is_retryable
