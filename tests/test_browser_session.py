from __future__ import annotations

import re
from pathlib import Path

from playwright.sync_api import Error as PlaywrightError

from atermes_token_sync.browser.session import PlaywrightSession


class _StubRoute:
    def __init__(self) -> None:
        self.continued = 0

    def continue_(self) -> None:
        self.continued += 1


class _StubRequest:
    def __init__(self, url: str, headers: dict[str, str]) -> None:
        self.url = url
        self.headers = headers


class _StubResponse:
    def __init__(self, url: str, body: bytes = b"", *, error: str = "") -> None:
        self.url = url
        self._body = body
        self._error = error
        self.body_reads = 0

    def body(self) -> bytes:
        self.body_reads += 1
        if self._error:
            raise PlaywrightError(self._error)
        return self._body


class _StubContext:
    def __init__(self) -> None:
        self.routes: list[tuple[str, object]] = []

    def route(self, pattern: str, handler) -> None:
        self.routes.append((pattern, handler))

    def cookies(self) -> list[dict]:
        return []


class _StubPage:
    def __init__(self, label: str = "page") -> None:
        self.label = label
        self.handlers: dict[str, list] = {}

    def on(self, event: str, handler) -> None:
        self.handlers.setdefault(event, []).append(handler)

    def screenshot(self, path: str, full_page: bool = False) -> None:
        Path(path).write_text(self.label, encoding="utf-8")

    def content(self) -> str:
        return f"<html>{self.label}</html>"


def _session(tmp_path: Path, label: str = "page") -> tuple[PlaywrightSession, _StubContext, _StubPage]:
    ctx, page = _StubContext(), _StubPage(label)
    return PlaywrightSession(ctx, page, debug_dir=str(tmp_path / "debug")), ctx, page


def _route_handler(ctx: _StubContext):
    assert len(ctx.routes) == 1
    pattern, handler = ctx.routes[0]
    assert pattern == "**/*"
    return handler


def test_on_request_passes_headers_and_continues(tmp_path: Path) -> None:
    session, ctx, _ = _session(tmp_path)
    seen: list[tuple[dict, str]] = []
    session.on_request(lambda url: "api" in url, lambda headers, url: seen.append((dict(headers), url)))

    route = _StubRoute()
    _route_handler(ctx)(route, _StubRequest("https://acme.atermes.nl/api/me", {"authorization": "Bearer abc"}))

    assert seen == [({"authorization": "Bearer abc"}, "https://acme.atermes.nl/api/me")]
    assert route.continued == 1


def test_on_request_continues_filtered_out_requests(tmp_path: Path) -> None:
    session, ctx, _ = _session(tmp_path)
    seen: list[str] = []
    session.on_request(lambda url: False, lambda headers, url: seen.append(url))

    route = _StubRoute()
    _route_handler(ctx)(route, _StubRequest("https://cdn.example/app.js", {}))

    assert seen == []
    assert route.continued == 1


def test_on_request_continues_when_callback_raises(tmp_path: Path) -> None:
    session, ctx, _ = _session(tmp_path)

    def boom(headers, url) -> None:
        raise ValueError("observer bug")

    session.on_request(lambda url: True, boom)

    route = _StubRoute()
    _route_handler(ctx)(route, _StubRequest("https://acme.atermes.nl/api/me", {}))

    assert route.continued == 1


def test_on_response_delivers_body_bytes(tmp_path: Path) -> None:
    session, _, page = _session(tmp_path)
    got: list[tuple[str, bytes]] = []
    session.on_response(lambda url: url.endswith("/token"), lambda url, body: got.append((url, body)))

    (handler,) = page.handlers["response"]
    handler(_StubResponse("https://login.example/token", b'{"access_token": "x"}'))

    assert got == [("https://login.example/token", b'{"access_token": "x"}')]


def test_on_response_drops_unreadable_bodies(tmp_path: Path) -> None:
    session, _, page = _session(tmp_path)
    got: list[str] = []
    session.on_response(lambda url: True, lambda url, body: got.append(url))

    (handler,) = page.handlers["response"]
    resp = _StubResponse("https://login.example/authorize", error="Response body is unavailable for redirect responses")
    handler(resp)

    assert resp.body_reads == 1
    assert got == []


def test_on_response_skips_body_for_filtered_urls(tmp_path: Path) -> None:
    session, _, page = _session(tmp_path)
    got: list[str] = []
    session.on_response(lambda url: False, lambda url, body: got.append(url))

    (handler,) = page.handlers["response"]
    resp = _StubResponse("https://cdn.example/logo.png", b"png")
    handler(resp)

    assert resp.body_reads == 0
    assert got == []


def test_save_debug_never_overwrites_other_credentials_artifacts(tmp_path: Path) -> None:
    first, _, _ = _session(tmp_path, "cred-one")
    second, _, _ = _session(tmp_path, "cred-two")

    first.save_debug("login_failure_awaiting_totp")
    second.save_debug("login_failure_awaiting_totp")

    files = sorted((tmp_path / "debug").iterdir())
    assert len(files) == 4
    assert all(re.match(r"\d{8}_\d{6}_login_failure_awaiting_totp(_\d+)?\.(png|html)$", f.name) for f in files)
    pngs = sorted(f.read_text(encoding="utf-8") for f in files if f.suffix == ".png")
    assert pngs == ["cred-one", "cred-two"]


def test_save_debug_screenshot_only_skips_html(tmp_path: Path) -> None:
    session, _, _ = _session(tmp_path)

    session.save_debug("acme_c1_step_01_navigated", screenshot_only=True)

    (only,) = (tmp_path / "debug").iterdir()
    assert only.name.endswith("_acme_c1_step_01_navigated.png")
