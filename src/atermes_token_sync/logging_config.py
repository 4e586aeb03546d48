import logging
import os
import re
from pathlib import Path
from typing import Optional


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"

_BEARER_RE = re.compile(r"(Bearer\s+)([A-Za-z0-9._~+/=-]{12,})")


def mask_secret(value: Optional[str], *, keep: int = 8) -> str:
    """
    Render a token for logs: first `keep` characters plus its length, never the whole value.
    """
    if not value:
        return "<none>"
    return f"{value[:keep]}...({len(value)} chars)"


def redact_bearer(text: str) -> str:
    if "Bearer" not in text:
        return text
    return _BEARER_RE.sub(lambda m: m.group(1) + mask_secret(m.group(2)), text)


class BearerRedactingFormatter(logging.Formatter):
    """
    Masks `Bearer <token>` fragments in the fully formatted line: message, traceback and stack info.
    """

    def format(self, record: logging.LogRecord) -> str:
        return redact_bearer(super().format(record))


def configure_logging(level: str = "INFO", file_path: Optional[str] = None) -> None:
    numeric_level = getattr(logging, (level or "INFO").upper(), logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if file_path:
        path = Path(file_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))

    formatter = BearerRedactingFormatter(LOG_FORMAT)
    for h in handlers:
        h.setFormatter(formatter)

    # force=True: the CLI configures once with env defaults, then again after loading the config file.
    logging.basicConfig(level=numeric_level, handlers=handlers, force=True)

    for noisy in ("playwright", "urllib3", "asyncio"):
        logging.getLogger(noisy).setLevel(os.getenv("NOISY_LOG_LEVEL", "WARNING"))
