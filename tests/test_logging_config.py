from __future__ import annotations

import logging
import sys

from atermes_token_sync.logging_config import LOG_FORMAT, BearerRedactingFormatter, mask_secret


TOKEN = "eyJhbGciOiJSUzI1NiJ9." + "x" * 40


def test_mask_secret() -> None:
    assert mask_secret(None) == "<none>"
    assert mask_secret("") == "<none>"
    assert mask_secret("abcdefghijklmnop") == "abcdefgh...(16 chars)"


def test_bearer_tokens_are_masked_in_messages() -> None:
    record = logging.LogRecord(
        "atermes_token_sync", logging.ERROR, __file__, 1, "request failed: headers=%s", ({"Authorization": f"Bearer {TOKEN}"},), None
    )

    line = BearerRedactingFormatter(LOG_FORMAT).format(record)

    assert TOKEN not in line
    assert "Bearer eyJhbGci...(61 chars)" in line


def test_bearer_tokens_are_masked_in_tracebacks() -> None:
    try:
        raise RuntimeError(f"upstream rejected Authorization: Bearer {TOKEN}")
    except RuntimeError:
        exc_info = sys.exc_info()
    record = logging.LogRecord("atermes_token_sync.service", logging.DEBUG, __file__, 1, "Unexpected extraction error.", None, exc_info)

    line = BearerRedactingFormatter(LOG_FORMAT).format(record)

    assert "Traceback" in line
    assert "RuntimeError: upstream rejected Authorization: Bearer eyJhbGci...(61 chars)" in line
    assert TOKEN not in line


def test_lines_without_bearer_are_untouched() -> None:
    record = logging.LogRecord("x", logging.INFO, __file__, 1, "Opening %s", ("https://acme.atermes.nl",), None)
    line = BearerRedactingFormatter("%(message)s").format(record)
    assert line == "Opening https://acme.atermes.nl"
