from __future__ import annotations

import json
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Mapping, Optional

from ..browser.session import BrowserSession
from ..config import InterceptionConfig, SiteConfig
from .captured import CapturedAuthData


logger = logging.getLogger(__name__)


# Probed in this order; the first string value longer than the minimum wins.
TOKEN_BODY_FIELDS: tuple[str, ...] = ("token", "access_token", "jwt", "id_token")

BEARER_PREFIX = "Bearer "


def token_from_authorization_header(headers: Mapping[str, str], *, min_length: int = 50) -> Optional[str]:
    """
    Return the bearer token of an `Authorization` header (any key casing) if it is longer than `min_length`.
    """
    for key, value in headers.items():
        if key.lower() != "authorization":
            continue
        raw = str(value or "")
        if not raw.startswith(BEARER_PREFIX):
            continue
        token = raw[len(BEARER_PREFIX):].strip()
        if len(token) > min_length:
            return token
    return None


def token_from_json_body(body: bytes, *, min_length: int = 20) -> Optional[str]:
    """
    Parse a flat JSON object and return the first known token field holding a long-enough string.
    """
    if not body:
        return None
    try:
        data = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        return None
    if not isinstance(data, dict):
        return None

    for key in TOKEN_BODY_FIELDS:
        value = data.get(key)
        if isinstance(value, str) and len(value) > min_length:
            return value
    return None


class InterceptionListener:
    """
    Watches browser traffic for a bearer token while the login flow runs.

    Two independent sources write into the same CapturedAuthData:
    - header path: Authorization headers of outbound API requests (handled inline, request is never held);
    - body path: JSON bodies of token/auth/API responses, parsed on a small bounded worker pool.
    """

    def __init__(
        self,
        captured: CapturedAuthData,
        *,
        site: Optional[SiteConfig] = None,
        settings: Optional[InterceptionConfig] = None,
    ) -> None:
        self.captured = captured
        self.site = site or SiteConfig()
        self.settings = settings or InterceptionConfig()

        self._executor = ThreadPoolExecutor(
            max_workers=self.settings.body_workers,
            thread_name_prefix="token-body",
        )
        self._slots = threading.BoundedSemaphore(self.settings.max_pending_bodies)
        self._pending: set[Future] = set()
        self._pending_lock = threading.Lock()
        self._closed = False
        self.dropped_bodies = 0

    def attach(self, session: BrowserSession) -> None:
        session.on_request(self.matches_api_request, self.handle_request)
        session.on_response(self.matches_token_response, self.handle_response)

    def matches_api_request(self, url: str) -> bool:
        return self.site.api_domain in url or "/api/" in url

    def matches_token_response(self, url: str) -> bool:
        return any(marker in url for marker in self.site.response_path_markers)

    def handle_request(self, headers: Mapping[str, str], url: str) -> None:
        token = token_from_authorization_header(headers, min_length=self.settings.min_header_token_length)
        if token:
            self.captured.set_token(token, source="header")
            logger.info("Bearer token captured from Authorization header.")

    def handle_response(self, url: str, body: bytes) -> None:
        if not body:
            return
        if self._closed:
            return
        if not self._slots.acquire(blocking=False):
            self.dropped_bodies += 1
            logger.warning("Too many pending response bodies; dropping url=%s", url)
            return

        try:
            fut = self._executor.submit(self._parse_body, url, body)
        except RuntimeError:
            # Executor shut down between the check above and submit().
            self._slots.release()
            return

        with self._pending_lock:
            self._pending.add(fut)
        fut.add_done_callback(self._on_done)

    def _on_done(self, fut: Future) -> None:
        with self._pending_lock:
            self._pending.discard(fut)
        self._slots.release()
        if fut.cancelled():
            return
        exc = fut.exception()
        if exc is not None:
            logger.debug("Response body worker failed.", exc_info=exc)

    def _parse_body(self, url: str, body: bytes) -> None:
        token = token_from_json_body(body, min_length=self.settings.min_body_token_length)
        if token:
            self.captured.set_token(token, source="body")
            logger.info("Bearer token captured from response body (url=%s).", url.split("?", 1)[0])

    def drain(self, timeout: Optional[float] = 5.0) -> bool:
        """
        Wait for queued body parses to finish. Returns False if some were still running at `timeout`.
        """
        with self._pending_lock:
            pending = set(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def close(self) -> None:
        self._closed = True
        self._executor.shutdown(wait=False, cancel_futures=True)
