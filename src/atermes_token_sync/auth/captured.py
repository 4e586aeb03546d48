from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Iterable, Mapping, Optional

from ..models import AuthData


logger = logging.getLogger(__name__)


class CapturedAuthData:
    """
    Token + cookies captured during one login, shared between the login flow and the network listeners.

    Every mutation goes through one lock. The token is last-write-wins across sources: a header
    sighting and a response-body sighting have no priority over each other.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._token: Optional[str] = None
        self._token_source: Optional[str] = None
        self._capture_count = 0
        self._cookies: dict[str, str] = {}
        self._captured_at: Optional[datetime] = None

    def set_token(self, token: str, *, source: str) -> None:
        with self._lock:
            previous_source = self._token_source
            replaced = self._token is not None and self._token != token
            self._token = token
            self._token_source = source
            self._capture_count += 1
            count = self._capture_count

        if replaced and previous_source != source:
            logger.debug("Token from %s overwritten by %s sighting (capture #%d).", previous_source, source, count)

    def set_cookies(self, cookies: Iterable[Mapping[str, str]]) -> None:
        with self._lock:
            for c in cookies:
                name = c.get("name")
                if name:
                    self._cookies[str(name)] = str(c.get("value", ""))

    def mark_captured(self, at: Optional[datetime] = None) -> None:
        with self._lock:
            self._captured_at = at or datetime.now(timezone.utc)

    @property
    def token(self) -> Optional[str]:
        with self._lock:
            return self._token

    @property
    def token_source(self) -> Optional[str]:
        with self._lock:
            return self._token_source

    @property
    def capture_count(self) -> int:
        with self._lock:
            return self._capture_count

    def snapshot(self) -> AuthData:
        with self._lock:
            return AuthData(
                token=self._token,
                cookies=dict(self._cookies),
                captured_at=self._captured_at or datetime.now(timezone.utc),
                token_source=self._token_source,
            )
