from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from atermes_token_sync.config import SiteConfig, TimingConfig, load_config, normalize_tenant


def _write(tmp_path: Path, name: str, text: str) -> Path:
    p = tmp_path / name
    p.write_text(text, encoding="utf-8")
    return p


def test_defaults_without_yaml(tmp_path: Path, monkeypatch) -> None:
    for var in ("ATERMES_TENANT_URL_TEMPLATE", "STORE_DB_PATH", "BROWSER_HEADLESS", "LOG_LEVEL"):
        monkeypatch.delenv(var, raising=False)

    cfg = load_config(tmp_path / "missing.yaml")

    assert cfg.site.base_url("acme") == "https://acme.atermes.nl"
    assert cfg.browser.headless is True
    assert cfg.store.db_path == "data/atermes.db"
    assert cfg.timings.totp_poll_attempts * cfg.timings.totp_poll_interval_ms == 10_000
    assert cfg.timings.redirect_poll_attempts * cfg.timings.redirect_poll_interval_ms == 30_000
    assert cfg.timings.body_drain_timeout_ms == 5_000
    assert cfg.interception.min_header_token_length == 50
    assert cfg.interception.min_body_token_length == 20


def test_env_vars_feed_defaults(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("BROWSER_HEADLESS", "false")
    monkeypatch.setenv("BROWSER_SLOW_MO_MS", "250")
    monkeypatch.setenv("STORE_DB_PATH", str(tmp_path / "x.db"))

    cfg = load_config(None)

    assert cfg.browser.headless is False
    assert cfg.browser.slow_mo_ms == 250
    assert cfg.store.db_path == str(tmp_path / "x.db")


def test_yaml_overrides_and_env_expansion(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("MY_API_KEY", "key-123")
    cfg_path = _write(
        tmp_path,
        "cfg.yaml",
        """
site:
  tenant_url_template: "https://{tenant}.test.atermes.nl/"
  login_path: "signin"
timings:
  redirect_poll_attempts: 5
api:
  api_key: "${MY_API_KEY}"
""",
    )

    cfg = load_config(cfg_path)

    assert cfg.site.base_url("acme") == "https://acme.test.atermes.nl"
    assert cfg.site.login_path == "/signin"
    assert cfg.site.api_domain == "api.atermes.nl"
    assert cfg.timings.redirect_poll_attempts == 5
    assert cfg.timings.redirect_poll_interval_ms == 1_000
    assert cfg.api.api_key == "key-123"
    assert "key-123" not in repr(cfg.api)


def test_tenant_template_requires_placeholder() -> None:
    with pytest.raises(ValidationError):
        SiteConfig(tenant_url_template="https://atermes.nl")
    with pytest.raises(ValidationError):
        SiteConfig(tenant_url_template="{tenant}.atermes.nl")


def test_timings_reject_non_positive_budgets() -> None:
    with pytest.raises(ValidationError):
        TimingConfig(totp_poll_attempts=0)
    with pytest.raises(ValidationError):
        TimingConfig(finalize_grace_ms=-1)
    with pytest.raises(ValidationError):
        TimingConfig(body_drain_timeout_ms=-1)
    assert TimingConfig(finalize_grace_ms=0).finalize_grace_ms == 0


def test_normalize_tenant() -> None:
    assert normalize_tenant("  Acme-Zorg ") == "acme-zorg"
    for bad in ("", "acme.atermes.nl", "https://acme", "a b"):
        with pytest.raises(ValueError):
            normalize_tenant(bad)
