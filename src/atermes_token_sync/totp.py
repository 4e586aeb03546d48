from __future__ import annotations

import binascii
from datetime import datetime, timezone
from typing import Optional

import pyotp

from .errors import TOTPGenerationError


TOTP_DIGITS = 6
TOTP_INTERVAL_SECONDS = 30


def normalize_seed(seed: str) -> str:
    # Authenticator apps show seeds grouped ("ABCD EFGH ...") and sometimes lower-case.
    return (seed or "").replace(" ", "").replace("-", "").strip().upper()


def generate_totp(seed: str, at: Optional[datetime] = None) -> str:
    """
    Return the 6-digit RFC 6238 code (SHA-1, 30 second step) for `seed` at time `at` (default: now).
    """
    secret = normalize_seed(seed)
    if not secret:
        raise TOTPGenerationError("TOTP seed is empty")

    when = at or datetime.now(timezone.utc)
    try:
        return pyotp.TOTP(secret, digits=TOTP_DIGITS, interval=TOTP_INTERVAL_SECONDS).at(when)
    except (binascii.Error, ValueError, TypeError) as e:
        raise TOTPGenerationError(f"Invalid TOTP seed: {e}") from e
