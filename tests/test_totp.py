from __future__ import annotations

from datetime import datetime, timezone

import pytest

from atermes_token_sync.errors import TOTPGenerationError
from atermes_token_sync.totp import generate_totp, normalize_seed


# RFC 6238 appendix B (SHA-1), truncated to 6 digits. Seed is base32("12345678901234567890").
RFC_SEED = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"


@pytest.mark.parametrize(
    "unix_time,expected",
    [
        (59, "287082"),
        (1111111109, "081804"),
        (1111111111, "050471"),
        (1234567890, "005924"),
        (2000000000, "279037"),
    ],
)
def test_generate_totp_matches_rfc6238_vectors(unix_time: int, expected: str) -> None:
    at = datetime.fromtimestamp(unix_time, tz=timezone.utc)
    assert generate_totp(RFC_SEED, at) == expected


def test_generate_totp_is_stable_within_one_step() -> None:
    a = generate_totp(RFC_SEED, datetime.fromtimestamp(1111111110, tz=timezone.utc))
    b = generate_totp(RFC_SEED, datetime.fromtimestamp(1111111119, tz=timezone.utc))
    assert a == b
    assert len(a) == 6 and a.isdigit()


def test_normalize_seed_accepts_grouped_lowercase_seeds() -> None:
    assert normalize_seed("gezd gnbv-gy3t") == "GEZDGNBVGY3T"
    at = datetime.fromtimestamp(59, tz=timezone.utc)
    assert generate_totp("gezd gnbv gy3t qojq gezd gnbv gy3t qojq", at) == "287082"


def test_generate_totp_rejects_empty_seed() -> None:
    with pytest.raises(TOTPGenerationError):
        generate_totp("   ")


def test_generate_totp_rejects_non_base32_seed() -> None:
    with pytest.raises(TOTPGenerationError):
        generate_totp("not!base32?")
