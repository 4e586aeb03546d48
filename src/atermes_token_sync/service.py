from __future__ import annotations

import logging
import time
from contextlib import AbstractContextManager
from datetime import datetime
from typing import Callable, Optional, Protocol

from .auth.extractor import AuthExtractor, LoginCredentials
from .browser.session import BrowserSession, open_browser_session
from .config import AppConfig
from .errors import ConfigurationError, PersistenceError, TokenSyncError
from .logging_config import mask_secret
from .models import AuthData, Credential, CredentialFailure, RunSummary, TenantBinding
from .totp import generate_totp


logger = logging.getLogger(__name__)


SessionFactory = Callable[[], AbstractContextManager[BrowserSession]]


class TokenStore(Protocol):
    def list_enabled_bindings(self) -> list[TenantBinding]: ...

    def update_token(self, credential_id: str, token: str, timestamp: Optional[datetime] = None) -> None: ...

    def record_run_start(self) -> int: ...

    def record_run_finish(self, run_id: int, *, ok: bool, message: Optional[str] = None) -> None: ...


def unique_credentials(bindings: list[TenantBinding]) -> list[tuple[Credential, str]]:
    """
    Collapse environment rows to one (credential, tenant) pair per credential id.

    The first binding seen wins, so with tenant-ordered input a shared credential logs in on its
    alphabetically first tenant.
    """
    seen: set[str] = set()
    out: list[tuple[Credential, str]] = []
    for b in bindings:
        if not b.enabled or b.credential_id in seen:
            continue
        seen.add(b.credential_id)
        out.append((b.credential, b.tenant))
    return out


class TokenSyncService:
    """
    Refreshes the stored Atermes JWT of every credential referenced by an enabled environment.

    Credentials are handled one at a time, each in its own freshly launched browser, with a short
    pause in between so the login site does not see a burst of automated logins.
    """

    def __init__(
        self,
        store: TokenStore,
        *,
        config: Optional[AppConfig] = None,
        session_factory: Optional[SessionFactory] = None,
        totp: Callable[[str], str] = generate_totp,
        sleep: Callable[[float], None] = time.sleep,
        extractor_sleep: Optional[Callable[[int], None]] = None,
    ) -> None:
        self.store = store
        self.config = config or AppConfig()
        self._session_factory = session_factory or (lambda: open_browser_session(self.config.browser))
        self._totp = totp
        self._sleep = sleep
        self._extractor_sleep = extractor_sleep

    def process_all(self) -> RunSummary:
        logger.info("Starting sequential JWT extraction...")

        bindings = self.store.list_enabled_bindings()
        if not bindings:
            raise ConfigurationError("no enabled environments found")

        work = unique_credentials(bindings)
        summary = RunSummary(environments=len(bindings), credentials=len(work))
        logger.info("Found %d unique credentials across %d environments", len(work), len(bindings))

        run_id = self._record_run_start()
        summary.run_id = run_id

        pause_s = self.config.timings.inter_credential_pause_ms / 1000
        for i, (cred, tenant) in enumerate(work, start=1):
            if i > 1 and pause_s > 0:
                self._sleep(pause_s)

            logger.info("[%d/%d] Processing %s on tenant %s", i, len(work), cred.email, tenant)
            try:
                auth = self.extract_one(cred, tenant)
            except Exception as e:
                logger.error("Failed for %s on %s: %s", cred.email, tenant, e)
                if not isinstance(e, TokenSyncError):
                    logger.debug("Unexpected extraction error.", exc_info=True)
                summary.failed.append(CredentialFailure(email=cred.email, tenant=tenant, reason=str(e)))
                continue

            if not auth.has_token:
                logger.error("No JWT found for %s on %s", cred.email, tenant)
                summary.failed.append(CredentialFailure(email=cred.email, tenant=tenant, reason="no JWT captured"))
                continue

            summary.succeeded.append(cred.email)
            try:
                self.store.update_token(cred.id, auth.token or "", auth.captured_at)
            except PersistenceError as e:
                logger.error("Failed storing JWT for %s: %s", cred.email, e)
                summary.persistence_failures.append(cred.email)
                continue
            logger.info("Stored JWT for %s (%s)", cred.email, mask_secret(auth.token))

        self._record_run_finish(run_id, summary)
        logger.info("All credentials processed (%s)", summary.message())
        return summary

    def extract_one(self, cred: Credential, tenant: str) -> AuthData:
        """
        Log one credential into `tenant` in an isolated browser session and return what was captured.
        """
        base_url = self.config.site.base_url(tenant)
        totp_code = self._totp(cred.totp_seed)

        with self._session_factory() as session:
            extractor = AuthExtractor(
                session,
                base_url=base_url,
                creds=LoginCredentials(email=cred.email, password=cred.password),
                totp_code=totp_code,
                site=self.config.site,
                timings=self.config.timings,
                interception=self.config.interception,
                sleep=self._extractor_sleep,
                log_steps=self.config.browser.log_steps,
                step_debug=self.config.browser.step_debug,
                debug_tag=f"{tenant}_{cred.id[:8]}",
            )
            return extractor.extract()

    def _record_run_start(self) -> Optional[int]:
        # Run history is bookkeeping only; never let it abort a batch.
        try:
            return int(self.store.record_run_start())
        except Exception:
            logger.warning("Failed to record run start.", exc_info=True)
            return None

    def _record_run_finish(self, run_id: Optional[int], summary: RunSummary) -> None:
        if run_id is None:
            return
        try:
            self.store.record_run_finish(run_id, ok=summary.ok, message=summary.message())
        except Exception:
            logger.warning("Failed to record run finish (run_id=%s).", run_id, exc_info=True)
