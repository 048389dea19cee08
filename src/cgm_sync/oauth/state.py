"""OAuth ``state`` parameter: a time-boxed token binding a user to a request.

The token is base64-encoded JSON ``{"userId", "timestamp", "nonce"}``.  It
is not signed; the callback recovers identity from it alone, so validation
checks shape, owner and age.
"""

from __future__ import annotations

import base64
import binascii
import json
import math
import secrets
from datetime import datetime, timedelta
from typing import Any

from cgm_sync.models import StateValidation
from cgm_sync.timewindow import epoch_millis, utcnow

DEFAULT_MAX_AGE = timedelta(hours=1)

_REQUIRED_FIELDS = ("userId", "timestamp", "nonce")


class StateTokenError(ValueError):
    """Raised when a state token cannot be decoded."""


def issue_state(user_id: str, now: datetime | None = None) -> str:
    """Create a fresh state token for ``user_id``."""
    payload = {
        "userId": user_id,
        "timestamp": epoch_millis(now or utcnow()),
        "nonce": secrets.token_hex(16),
    }
    raw = json.dumps(payload, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode("ascii")


def decode_state(token: str) -> dict[str, Any]:
    """Decode a state token without validating it."""
    try:
        raw = base64.b64decode(token, altchars=b"-_", validate=True)
        data = json.loads(raw)
    except (binascii.Error, ValueError, TypeError) as exc:
        raise StateTokenError("invalid format") from exc
    if not isinstance(data, dict):
        raise StateTokenError("invalid format")
    return data


def validate_state(
    token: str,
    expected_user_id: str,
    now: datetime | None = None,
    *,
    max_age: timedelta = DEFAULT_MAX_AGE,
) -> StateValidation:
    """Check a state token against the user it is redeemed for.

    Failure reasons, first match wins: ``invalid format``,
    ``missing fields``, ``user mismatch``, ``expired``.
    """
    try:
        data = decode_state(token)
    except StateTokenError:
        return StateValidation(valid=False, reason="invalid format")

    if any(data.get(name) in (None, "") for name in _REQUIRED_FIELDS):
        return StateValidation(valid=False, reason="missing fields")

    if data["userId"] != expected_user_id:
        return StateValidation(valid=False, reason="user mismatch")

    timestamp = data["timestamp"]
    if not isinstance(timestamp, (int, float)) or isinstance(timestamp, bool):
        return StateValidation(valid=False, reason="invalid format")

    now_ms = epoch_millis(now or utcnow())
    # Must be a finite instant no later than now.
    if not math.isfinite(timestamp) or timestamp > now_ms:
        return StateValidation(valid=False, reason="invalid format")

    age_ms = now_ms - timestamp
    if age_ms > max_age.total_seconds() * 1000:
        return StateValidation(valid=False, reason="expired")

    return StateValidation(valid=True)
