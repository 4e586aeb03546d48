from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Optional
from typing import Union
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator


_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z0-9_]+)\}")
_TENANT_SLUG_RE = re.compile(r"^[a-z0-9-]+$")


def _expand_env_vars(value: object) -> object:
    if isinstance(value, str):
        def repl(match: re.Match[str]) -> str:
            var = match.group(1)
            return os.getenv(var, "")

        return _ENV_VAR_PATTERN.sub(repl, value)
    if isinstance(value, list):
        return [_expand_env_vars(v) for v in value]
    if isinstance(value, dict):
        return {k: _expand_env_vars(v) for k, v in value.items()}
    return value


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name, "") or "").strip().lower()
    if not raw:
        return bool(default)
    return raw in {"1", "true", "t", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name, "") or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _deep_merge(base: object, override: object) -> object:
    if isinstance(base, dict) and isinstance(override, dict):
        out = dict(base)
        for k, v in override.items():
            if k in out:
                out[k] = _deep_merge(out[k], v)
            else:
                out[k] = v
        return out
    return override


def normalize_tenant(tenant: str) -> str:
    slug = (tenant or "").strip().lower()
    if not _TENANT_SLUG_RE.match(slug):
        raise ValueError(f"tenant must be a slug like 'acme' (lowercase letters, numbers, hyphen only), got {tenant!r}")
    return slug


def _default_config_from_env() -> dict:
    """
    Env-only config so a deployment only needs `.env`; YAML remains an optional override.
    """
    return {
        "site": {
            "tenant_url_template": os.getenv("ATERMES_TENANT_URL_TEMPLATE", "https://{tenant}.atermes.nl"),
            "api_domain": os.getenv("ATERMES_API_DOMAIN", "api.atermes.nl"),
            "idp_domain_marker": os.getenv("ATERMES_IDP_DOMAIN_MARKER", "b2clogin.com"),
            "login_path": os.getenv("ATERMES_LOGIN_PATH", "/Account/Login"),
        },
        "browser": {
            "headless": _env_bool("BROWSER_HEADLESS", default=True),
            "channel": os.getenv("BROWSER_CHANNEL", ""),
            "slow_mo_ms": _env_int("BROWSER_SLOW_MO_MS", 0),
            "debug_dir": os.getenv("BROWSER_DEBUG_DIR", "data/debug"),
            "step_debug": _env_bool("BROWSER_STEP_DEBUG", default=False),
            "log_steps": _env_bool("BROWSER_LOG_STEPS", default=False),
        },
        "store": {
            "db_path": os.getenv("STORE_DB_PATH", "data/atermes.db"),
        },
        "api": {
            "api_key": os.getenv("ATERMES_API_KEY", ""),
        },
        "logging": {
            "level": os.getenv("LOG_LEVEL", "INFO"),
            "file_path": os.getenv("LOG_FILE", "data/token_sync.log"),
        },
    }


class SiteConfig(BaseModel):
    """
    Where the tenant application and its identity provider live.

    Each tenant is a subdomain of the application (`https://{tenant}.atermes.nl`); logging in bounces
    through the Azure B2C identity provider (`*.b2clogin.com`) and back.
    """

    tenant_url_template: str = "https://{tenant}.atermes.nl"
    api_domain: str = "api.atermes.nl"
    idp_domain_marker: str = "b2clogin.com"
    login_path: str = "/Account/Login"
    response_path_markers: tuple[str, ...] = ("/api/", "/token", "/auth")

    @model_validator(mode="after")
    def _validate_template(self) -> "SiteConfig":
        if "{tenant}" not in self.tenant_url_template:
            raise ValueError("site.tenant_url_template must contain a '{tenant}' placeholder")
        parsed = urlparse(self.tenant_url_template.replace("{tenant}", "tenant"))
        if not parsed.scheme or not parsed.netloc:
            raise ValueError("site.tenant_url_template must be a full URL like 'https://{tenant}.atermes.nl'")
        if not self.login_path.startswith("/"):
            self.login_path = "/" + self.login_path
        return self

    def base_url(self, tenant: str) -> str:
        return self.tenant_url_template.format(tenant=normalize_tenant(tenant)).rstrip("/")


class BrowserConfig(BaseModel):
    headless: bool = True
    # Empty: Playwright's bundled Chromium (falls back to system Chrome/Edge when it is missing).
    channel: str = ""
    launch_args: list[str] = Field(
        default_factory=lambda: ["--no-sandbox", "--disable-dev-shm-usage", "--disable-gpu"]
    )
    slow_mo_ms: int = 0
    debug_dir: str = "data/debug"
    step_debug: bool = False
    log_steps: bool = False


class TimingConfig(BaseModel):
    """
    All values in milliseconds except the attempt counts.
    """

    navigation_timeout_ms: int = 30_000
    post_navigation_settle_ms: int = 1_000
    post_submit_settle_ms: int = 5_000
    totp_poll_interval_ms: int = 500
    totp_poll_attempts: int = 20
    totp_settle_ms: int = 500
    redirect_poll_interval_ms: int = 1_000
    redirect_poll_attempts: int = 30
    finalize_grace_ms: int = 2_000
    body_drain_timeout_ms: int = 5_000
    inter_credential_pause_ms: int = 1_000

    @field_validator(
        "navigation_timeout_ms",
        "totp_poll_interval_ms",
        "totp_poll_attempts",
        "redirect_poll_interval_ms",
        "redirect_poll_attempts",
    )
    @classmethod
    def _positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator(
        "post_navigation_settle_ms",
        "post_submit_settle_ms",
        "totp_settle_ms",
        "finalize_grace_ms",
        "body_drain_timeout_ms",
        "inter_credential_pause_ms",
    )
    @classmethod
    def _non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must not be negative")
        return v


class InterceptionConfig(BaseModel):
    body_workers: int = 4
    max_pending_bodies: int = 64
    min_header_token_length: int = 50
    min_body_token_length: int = 20

    @model_validator(mode="after")
    def _validate_pool(self) -> "InterceptionConfig":
        if self.body_workers <= 0 or self.max_pending_bodies <= 0:
            raise ValueError("interception.body_workers and interception.max_pending_bodies must be positive")
        return self


class StoreConfig(BaseModel):
    db_path: str = "data/atermes.db"


class ApiConfig(BaseModel):
    api_key: str = Field(default="", repr=False)
    timeout_seconds: float = 30.0


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file_path: str = "data/token_sync.log"


class AppConfig(BaseModel):
    site: SiteConfig = SiteConfig()
    browser: BrowserConfig = BrowserConfig()
    timings: TimingConfig = TimingConfig()
    interception: InterceptionConfig = InterceptionConfig()
    store: StoreConfig = StoreConfig()
    api: ApiConfig = ApiConfig()
    logging: LoggingConfig = LoggingConfig()


def load_config(path: Optional[Union[str, Path]] = None) -> AppConfig:
    raw: dict = {}
    if path:
        p = Path(path)
        if p.exists():
            raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
            raw = _expand_env_vars(raw)  # supports ${ENV_VAR} in YAML

    merged = _deep_merge(_default_config_from_env(), raw)
    return AppConfig.model_validate(merged)
