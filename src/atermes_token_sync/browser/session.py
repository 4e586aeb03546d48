from __future__ import annotations

import logging
import re
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterator, Mapping, Optional, Protocol

from playwright.sync_api import BrowserContext, Error as PlaywrightError, Page, Playwright, sync_playwright

from ..config import BrowserConfig
from ..errors import NavigationError


logger = logging.getLogger(__name__)


UrlFilter = Callable[[str], bool]
RequestCallback = Callable[[Mapping[str, str], str], None]
ResponseCallback = Callable[[str, bytes], None]


@dataclass(frozen=True)
class Located:
    selector: str
    count: int
    handle: Any = None

    @property
    def present(self) -> bool:
        return self.count > 0


class BrowserSession(Protocol):
    """
    The browser capabilities the login flow relies on.

    `PlaywrightSession` is the real implementation; tests drive the flow with an in-memory fake.
    """

    def navigate(self, url: str, *, timeout_ms: int = 30_000, wait_until: str = "networkidle") -> str: ...

    def url(self) -> str: ...

    def locate(self, selector: str) -> Located: ...

    def fill(self, handle: Any, text: str) -> None: ...

    def click(self, handle: Any) -> None: ...

    def press_key(self, handle: Any, key: str) -> None: ...

    def cookies(self) -> list[dict[str, str]]: ...

    def on_request(self, url_filter: UrlFilter, callback: RequestCallback) -> None: ...

    def on_response(self, url_filter: UrlFilter, callback: ResponseCallback) -> None: ...

    def wait(self, ms: int) -> None: ...

    def save_debug(self, name_prefix: str, *, screenshot_only: bool = False) -> None: ...


class PlaywrightSession:
    """
    BrowserSession backed by one Playwright (sync API) context + page.
    """

    def __init__(self, context: BrowserContext, page: Page, *, debug_dir: str = "data/debug") -> None:
        self._context = context
        self._page = page
        self._debug_dir = debug_dir

    def navigate(self, url: str, *, timeout_ms: int = 30_000, wait_until: str = "networkidle") -> str:
        try:
            self._page.goto(url, wait_until=wait_until, timeout=timeout_ms)
        except PlaywrightError as e:
            raise NavigationError(f"Failed to open {url}: {e}") from e
        return self.url()

    def url(self) -> str:
        try:
            return self._page.url or ""
        except PlaywrightError:
            return ""

    def locate(self, selector: str) -> Located:
        loc = self._page.locator(selector)
        try:
            n = int(loc.count())
        except PlaywrightError:
            logger.debug("Selector count failed (selector=%s).", selector, exc_info=True)
            n = 0
        return Located(selector=selector, count=n, handle=loc.first if n > 0 else None)

    def fill(self, handle: Any, text: str) -> None:
        handle.fill(text)

    def click(self, handle: Any) -> None:
        handle.click()

    def press_key(self, handle: Any, key: str) -> None:
        handle.press(key)

    def cookies(self) -> list[dict[str, str]]:
        return [{"name": c.get("name", ""), "value": c.get("value", "")} for c in self._context.cookies()]

    def on_request(self, url_filter: UrlFilter, callback: RequestCallback) -> None:
        """
        Observe every outbound request of the context. Requests are always continued unmodified.
        """

        def _route(route, request) -> None:
            try:
                url = request.url
                if url_filter(url):
                    callback(dict(request.headers), url)
            except Exception:
                logger.debug("Request observer failed; continuing request.", exc_info=True)
            finally:
                try:
                    route.continue_()
                except PlaywrightError:
                    # Page/context already closing.
                    logger.debug("route.continue_ failed.", exc_info=True)

        self._context.route("**/*", _route)

    def on_response(self, url_filter: UrlFilter, callback: ResponseCallback) -> None:
        """
        Observe inbound responses whose URL passes `url_filter`.

        Playwright runs each event handler on its own greenlet, so a slow `body()` here does not
        hold up other network events; `callback` receives the raw body bytes.
        """

        def _on_response(response) -> None:
            url = response.url
            if not url_filter(url):
                return
            try:
                body = response.body()
            except PlaywrightError:
                # Redirects and aborted requests have no body.
                logger.debug("Could not read response body (url=%s).", url, exc_info=True)
                return
            callback(url, body)

        self._page.on("response", _on_response)

    def wait(self, ms: int) -> None:
        # page.wait_for_timeout keeps Playwright dispatching events; time.sleep would starve the listeners.
        self._page.wait_for_timeout(ms)

    def save_debug(self, name_prefix: str, *, screenshot_only: bool = False) -> None:
        """
        Save a full-page screenshot (and the HTML) as `<stamp>_<name_prefix>.*` under the debug dir.

        Existing artifacts are never overwritten: a clashing name gets a `_2`, `_3`, ... suffix.
        """
        stamp = time.strftime("%Y%m%d_%H%M%S")
        safe = re.sub(r"[^a-zA-Z0-9_-]+", "_", name_prefix).strip("_")[:80] or "page"
        try:
            out_dir = Path(self._debug_dir)
            out_dir.mkdir(parents=True, exist_ok=True)
            stem = _free_stem(out_dir, f"{stamp}_{safe}")
            self._page.screenshot(path=str(out_dir / f"{stem}.png"), full_page=True)
            if not screenshot_only:
                (out_dir / f"{stem}.html").write_text(self._page.content(), encoding="utf-8")
        except Exception:
            logger.debug("Failed to save debug artifacts.", exc_info=True)


def _free_stem(out_dir: Path, stem: str) -> str:
    candidate, n = stem, 1
    while (out_dir / f"{candidate}.png").exists() or (out_dir / f"{candidate}.html").exists():
        n += 1
        candidate = f"{stem}_{n}"
    return candidate


def _launch_browser(p: Playwright, config: BrowserConfig):
    launch_kwargs: dict = {
        "headless": config.headless,
        "slow_mo": int(config.slow_mo_ms or 0),
        "args": list(config.launch_args),
    }
    if config.channel:
        return p.chromium.launch(channel=config.channel, **launch_kwargs)

    # Prefer Playwright's bundled Chromium, but fall back to a system-installed browser if the
    # container/cache doesn't have Playwright browsers available.
    try:
        return p.chromium.launch(**launch_kwargs)
    except PlaywrightError as e:
        msg = str(e)
        if "Executable doesn't exist" not in msg:
            raise

        logger.warning(
            "Playwright Chromium executable missing; falling back to system browser channel. (%s)",
            msg,
        )
        try:
            return p.chromium.launch(channel="chrome", **launch_kwargs)
        except PlaywrightError:
            return p.chromium.launch(channel="msedge", **launch_kwargs)


@contextmanager
def open_browser_session(config: Optional[BrowserConfig] = None) -> Iterator[PlaywrightSession]:
    """
    Start a dedicated browser + isolated context + page, and tear all of it down on exit.

    One of these is opened per credential so cookies/storage never leak between accounts.
    """
    cfg = config or BrowserConfig()
    with sync_playwright() as p:
        browser = _launch_browser(p, cfg)
        try:
            ctx = browser.new_context(color_scheme="light")
            try:
                page = ctx.new_page()
                yield PlaywrightSession(ctx, page, debug_dir=cfg.debug_dir)
            finally:
                try:
                    ctx.close()
                except PlaywrightError:
                    logger.debug("Failed to close browser context.", exc_info=True)
        finally:
            try:
                browser.close()
            except PlaywrightError:
                logger.debug("Failed to close browser.", exc_info=True)
