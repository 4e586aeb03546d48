from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from .auth.client import ApiClient
from .config import AppConfig, load_config
from .errors import ApiError, ConfigurationError, TokenSyncError
from .logging_config import configure_logging
from .models import AuthData
from .service import TokenSyncService, unique_credentials
from .store import CredentialStore
from .totp import generate_totp
from .util.debug_bundle import create_debug_bundle, has_debug_artifacts


logger = logging.getLogger("atermes_token_sync")


def _add_config_arg(p: argparse.ArgumentParser) -> None:
    p.add_argument("--config", default="config.yaml", help="Path to YAML config (default: config.yaml; optional)")


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="atermes_token_sync")
    p.add_argument(
        "--env-file",
        default=".env",
        help="Path to a dotenv file (default: .env). If missing, env vars must already be set.",
    )

    sub = p.add_subparsers(dest="cmd", required=True)

    run = sub.add_parser("run", help="Log into every enabled tenant once and store a fresh JWT per credential")
    _add_config_arg(run)
    run.add_argument("--headful", action="store_true", help="Run browser headful (debug)")
    run.add_argument("--slowmo-ms", type=int, default=None, help="Playwright slow motion in milliseconds (debug).")
    run.add_argument("--step-debug", action="store_true", help="Save a screenshot per login step under the debug dir.")
    run.add_argument("--log-steps", action="store_true", help="Log each login step with the current URL.")
    run.add_argument(
        "--strict",
        action="store_true",
        help="Exit 1 if any credential failed (default: exit 0 as long as the batch ran).",
    )

    add_cred = sub.add_parser("add-credential", help="Store a login (email + password + TOTP seed)")
    _add_config_arg(add_cred)
    add_cred.add_argument("--email", required=True)
    add_cred.add_argument("--password", default="", help="Default: $ATERMES_PASSWORD")
    add_cred.add_argument("--totp-seed", default="", help="Base32 TOTP seed. Default: $ATERMES_TOTP_SEED")

    add_env = sub.add_parser("add-environment", help="Bind a tenant to a stored credential")
    _add_config_arg(add_env)
    add_env.add_argument("--tenant", required=True, help="Tenant slug, e.g. 'acme' for https://acme.atermes.nl")
    add_env.add_argument("--credential-id", required=True)
    add_env.add_argument("--disabled", action="store_true", help="Create the environment disabled")

    list_envs = sub.add_parser("list-environments", help="List tenants and the age of their stored token")
    _add_config_arg(list_envs)

    preflight = sub.add_parser(
        "preflight",
        help="Validate config, store and TOTP seeds without launching a browser.",
    )
    _add_config_arg(preflight)

    overview = sub.add_parser("client-overview", help="Call the client overview API with the stored token")
    _add_config_arg(overview)
    overview.add_argument("--tenant", required=True)
    overview.add_argument("--take", type=int, default=10)
    overview.add_argument("--skip", type=int, default=0)

    return p


def _load(args: argparse.Namespace) -> AppConfig:
    cfg = load_config(args.config)
    configure_logging(level=cfg.logging.level, file_path=cfg.logging.file_path)
    return cfg


def _token_age(set_at: Optional[datetime]) -> str:
    if set_at is None:
        return "never"
    if set_at.tzinfo is None:
        set_at = set_at.replace(tzinfo=timezone.utc)
    hours = (datetime.now(timezone.utc) - set_at).total_seconds() / 3600
    return f"{hours:.1f}h ago"


def _cmd_run(args: argparse.Namespace) -> int:
    cfg = _load(args)
    browser_update: dict = {}
    if args.headful:
        browser_update["headless"] = False
    if args.slowmo_ms is not None:
        browser_update["slow_mo_ms"] = args.slowmo_ms
    if args.step_debug:
        browser_update["step_debug"] = True
    if args.log_steps:
        browser_update["log_steps"] = True
    if browser_update:
        cfg = cfg.model_copy(update={"browser": cfg.browser.model_copy(update=browser_update)})

    t0 = time.time()
    with CredentialStore(cfg.store.db_path) as store:
        try:
            summary = TokenSyncService(store, config=cfg).process_all()
        except ConfigurationError as e:
            logger.error("Nothing to do: %s", e)
            return 2

    logger.info("Run finished (run_id=%s %s seconds=%.2f)", summary.run_id, summary.message(), time.time() - t0)
    for failure in summary.failed:
        logger.warning("  failed: %s on %s (%s)", failure.email, failure.tenant, failure.reason)

    if summary.failed and has_debug_artifacts(cfg.browser.debug_dir):
        try:
            bundle = create_debug_bundle(
                debug_dir=cfg.browser.debug_dir,
                log_file=cfg.logging.file_path,
                out_dir=str(Path(cfg.store.db_path).parent),
                summary=summary,
            )
            logger.error("Wrote debug bundle: %s", bundle)
        except OSError:
            logger.debug("Failed to create debug bundle.", exc_info=True)

    if args.strict and not summary.ok:
        return 1
    return 0


def _cmd_add_credential(args: argparse.Namespace) -> int:
    cfg = _load(args)
    password = args.password or os.getenv("ATERMES_PASSWORD", "")
    seed = args.totp_seed or os.getenv("ATERMES_TOTP_SEED", "")
    if not password or not seed:
        raise SystemExit("A password and TOTP seed are required (--password/--totp-seed or ATERMES_PASSWORD/ATERMES_TOTP_SEED).")

    # Reject unusable seeds now rather than at the next scheduled run.
    generate_totp(seed)

    with CredentialStore(cfg.store.db_path) as store:
        cid = store.add_credential(email=args.email, password=password, totp_seed=seed)
    print(cid)
    return 0


def _cmd_add_environment(args: argparse.Namespace) -> int:
    cfg = _load(args)
    with CredentialStore(cfg.store.db_path) as store:
        eid = store.add_environment(tenant=args.tenant, credential_id=args.credential_id, enabled=not args.disabled)
    print(eid)
    return 0


def _cmd_list_environments(args: argparse.Namespace) -> int:
    cfg = _load(args)
    with CredentialStore(cfg.store.db_path) as store:
        envs = store.list_environments()

    if not envs:
        print("No environments configured.")
        return 0

    print(f"{'tenant':<24} {'enabled':<8} {'credential':<36} {'email':<32} token")
    for b in envs:
        print(
            f"{b.tenant:<24} {('yes' if b.enabled else 'no'):<8} {b.credential_id:<36} "
            f"{b.credential.email:<32} {_token_age(b.credential.last_token_set_at)}"
        )
    return 0


def _cmd_preflight(args: argparse.Namespace) -> int:
    cfg = _load(args)
    logger.info("Starting preflight checks")
    with CredentialStore(cfg.store.db_path) as store:
        bindings = store.list_enabled_bindings()

    if not bindings:
        logger.error("No enabled environments in %s", cfg.store.db_path)
        return 2

    problems = 0
    for cred, tenant in unique_credentials(bindings):
        try:
            cfg.site.base_url(tenant)
            generate_totp(cred.totp_seed)
        except (TokenSyncError, ValueError) as e:
            problems += 1
            logger.error("Credential %s (tenant %s) is not usable: %s", cred.email, tenant, e)

    if problems:
        return 1
    logger.info("Preflight OK (%d environments)", len(bindings))
    return 0


def _cmd_client_overview(args: argparse.Namespace) -> int:
    cfg = _load(args)
    with CredentialStore(cfg.store.db_path) as store:
        token = store.get_token_for_tenant(args.tenant)
    if not token:
        raise SystemExit(f"No stored token for tenant {args.tenant!r}; run `atermes_token_sync run` first.")

    client = ApiClient(
        base_url=cfg.site.base_url(args.tenant),
        auth=AuthData(token=token),
        api_key=cfg.api.api_key,
        timeout_seconds=cfg.api.timeout_seconds,
    )
    try:
        data = client.get_client_overview(take=args.take, skip=args.skip)
    except ApiError as e:
        logger.error("%s", e)
        return 1
    print(json.dumps(data, indent=2, ensure_ascii=False))
    return 0


_COMMANDS = {
    "run": _cmd_run,
    "add-credential": _cmd_add_credential,
    "add-environment": _cmd_add_environment,
    "list-environments": _cmd_list_environments,
    "preflight": _cmd_preflight,
    "client-overview": _cmd_client_overview,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)

    env_path = Path(args.env_file)
    if env_path.exists():
        load_dotenv(env_path)

    # Default logging: can be overridden once config is loaded.
    configure_logging(level=os.getenv("LOG_LEVEL", "INFO"))

    try:
        return _COMMANDS[args.cmd](args)
    except (TokenSyncError, ValueError) as e:
        # ValueError covers config validation and bad tenant slugs.
        logger.error("%s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
