from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional
from urllib.parse import urlparse

from ..browser.selectors import LoginSelectors, SelectorChain
from ..browser.session import BrowserSession
from ..config import InterceptionConfig, SiteConfig, TimingConfig
from ..errors import ElementNotFoundError, LoginTimeoutError, SubmissionError
from ..models import AuthData
from ..polling import poll_until
from .captured import CapturedAuthData
from .interception import InterceptionListener


logger = logging.getLogger(__name__)


class LoginState(str, Enum):
    START = "start"
    NAVIGATED = "navigated"
    ALREADY_AUTHENTICATED = "already_authenticated"
    AT_LOGIN_FORM = "at_login_form"
    EMAIL_FILLED = "email_filled"
    PASSWORD_FILLED = "password_filled"
    SUBMITTED = "submitted"
    AWAITING_TOTP = "awaiting_totp"
    TOTP_FILLED = "totp_filled"
    AWAITING_REDIRECT = "awaiting_redirect"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class LoginCredentials:
    email: str
    password: str = field(repr=False)


class AuthExtractor:
    """
    Logs one account into a tenant through the B2C login UI and collects the bearer token + cookies.

    The caller owns the browser session (open it, hand it over, close it afterwards). While the flow
    fills the forms, an InterceptionListener attached to the same session captures whatever token the
    web app sends or receives.
    """

    def __init__(
        self,
        session: BrowserSession,
        *,
        base_url: str,
        creds: LoginCredentials,
        totp_code: str,
        site: Optional[SiteConfig] = None,
        timings: Optional[TimingConfig] = None,
        interception: Optional[InterceptionConfig] = None,
        selectors: Optional[LoginSelectors] = None,
        sleep: Optional[Callable[[int], None]] = None,
        log_steps: bool = False,
        step_debug: bool = False,
        debug_tag: str = "",
    ) -> None:
        self.session = session
        self.base_url = base_url.rstrip("/")
        self.creds = creds
        self.totp_code = totp_code
        self.site = site or SiteConfig()
        self.timings = timings or TimingConfig()
        self.selectors = selectors or LoginSelectors()
        self._sleep = sleep or session.wait

        self._base_host = (urlparse(self.base_url).netloc or "").strip().lower()

        self.captured = CapturedAuthData()
        self.listener = InterceptionListener(self.captured, site=self.site, settings=interception)

        self.state = LoginState.START
        self.history: list[LoginState] = [LoginState.START]
        self.failure: Optional[BaseException] = None
        self.redirect_completed = False

        self._step_log_enabled = bool(log_steps or step_debug)
        self._step_debug_enabled = bool(step_debug)
        self._step_counter = 0
        # Prefixes artifact names so credentials sharing one debug dir do not overwrite each other.
        self._debug_tag = debug_tag

    def extract(self) -> AuthData:
        """
        Run the whole login flow and return the captured auth data.

        Raises on a hard step failure (navigation, missing field, submission, 2FA timeout). A flow that
        completes without ever seeing a token still returns normally; check `AuthData.has_token`.
        """
        logger.info("Starting authentication extraction for %s on %s", self.creds.email, self.base_url)
        self.listener.attach(self.session)
        try:
            self._run_login_flow()
            self._finalize()
        except Exception as e:
            self.failure = e
            self.session.save_debug(self._debug_name(f"login_failure_{self.state.value}"))
            self._transition(LoginState.FAILED, capture=False)
            raise
        finally:
            self.listener.close()

        return self.captured.snapshot()

    def _run_login_flow(self) -> None:
        t = self.timings

        logger.info("Opening %s", self.base_url)
        self.session.navigate(self.base_url, timeout_ms=t.navigation_timeout_ms, wait_until="networkidle")
        self._transition(LoginState.NAVIGATED)

        # Client-side redirects to the identity provider happen after "networkidle".
        self._sleep(t.post_navigation_settle_ms)

        url = self.session.url()
        if not self._needs_login(url):
            logger.info("Already logged in (url=%s); skipping credential and 2FA steps.", url)
            self._transition(LoginState.ALREADY_AUTHENTICATED)
            return

        self._transition(LoginState.AT_LOGIN_FORM)
        if not self._on_identity_provider(url):
            login_url = self.base_url + self.site.login_path
            logger.info("Opening login page %s", login_url)
            self.session.navigate(login_url, timeout_ms=t.navigation_timeout_ms, wait_until="load")
        self._sleep(t.post_navigation_settle_ms)

        self._fill_field(self.selectors.email, self.creds.email)
        self._transition(LoginState.EMAIL_FILLED)

        self._fill_field(self.selectors.password, self.creds.password)
        self._transition(LoginState.PASSWORD_FILLED)

        self._submit_credentials()
        self._transition(LoginState.SUBMITTED)

        # The 2FA page renders well after the password POST returns.
        self._sleep(t.post_submit_settle_ms)
        self._transition(LoginState.AWAITING_TOTP)

        self._complete_totp()
        # No screenshot here: the code is still visible in the field.
        self._transition(LoginState.TOTP_FILLED, capture=False)

        self._transition(LoginState.AWAITING_REDIRECT, capture=False)
        self.redirect_completed = self._wait_for_redirect()
        if not self.redirect_completed:
            logger.warning(
                "Still not back on %s after %d attempts (url=%s); collecting whatever was captured.",
                self._base_host,
                t.redirect_poll_attempts,
                self.session.url(),
            )

    def _finalize(self) -> None:
        # Let in-flight API calls fired by the landing page reach the listeners.
        if self.timings.finalize_grace_ms > 0:
            self._sleep(self.timings.finalize_grace_ms)
        if not self.listener.drain(timeout=self.timings.body_drain_timeout_ms / 1000):
            logger.warning("Some response bodies were still being parsed at finalization.")

        self.captured.set_cookies(self.session.cookies())
        self.captured.mark_captured()
        self._transition(LoginState.COMPLETED)

        if not self.captured.token:
            logger.warning("No bearer token captured during login flow for %s", self.creds.email)
        else:
            logger.info(
                "Authentication extraction completed (token source=%s, sightings=%d)",
                self.captured.token_source,
                self.captured.capture_count,
            )

    def _needs_login(self, url: str) -> bool:
        return self._on_identity_provider(url) or self.site.login_path.lower() in (url or "").lower()

    def _on_identity_provider(self, url: str) -> bool:
        return self.site.idp_domain_marker in (url or "")

    def _back_on_tenant(self) -> bool:
        url = self.session.url()
        host = (urlparse(url).netloc or "").strip().lower()
        return bool(self._base_host) and host == self._base_host and not self._on_identity_provider(url)

    def _fill_field(self, chain: SelectorChain, value: str) -> None:
        located = chain.first_present(self.session)
        if located is None:
            raise ElementNotFoundError(chain.field, chain.selectors)
        logger.debug("Filling %s using %s", chain.field, located.selector)
        self.session.fill(located.handle, value)

    def _submit_credentials(self) -> None:
        """
        Press Enter in the password field; only click a submit button if that did not work.
        """
        for sel in self.selectors.password.selectors:
            located = self.session.locate(sel)
            if not located.present:
                continue
            try:
                self.session.press_key(located.handle, "Enter")
                logger.info("Submitted login form with Enter (selector=%s)", sel)
                return
            except Exception as e:
                logger.info("Enter in password field failed (selector=%s): %s", sel, e)

        located = self.selectors.submit.first_present(self.session)
        if located is None:
            raise SubmissionError("login button not found")
        try:
            self.session.click(located.handle)
        except Exception as e:
            raise SubmissionError(f"Clicking login button {located.selector} failed: {e}") from e
        logger.info("Submitted login form by clicking %s", located.selector)

    def _complete_totp(self) -> None:
        t = self.timings
        located = self.selectors.totp.wait_for_first_present(
            self.session,
            attempts=t.totp_poll_attempts,
            interval_ms=t.totp_poll_interval_ms,
            sleep=self._sleep,
        )
        if located is None:
            waited_s = t.totp_poll_attempts * t.totp_poll_interval_ms / 1000
            raise LoginTimeoutError("2fa", f"2FA input field not found after waiting {waited_s:g} seconds")

        logger.info("2FA field found (selector=%s); entering code.", located.selector)
        self.session.fill(located.handle, self.totp_code)
        self._sleep(t.totp_settle_ms)
        try:
            self.session.press_key(located.handle, "Enter")
        except Exception as e:
            logger.warning("Failed to press Enter on 2FA field: %s", e)

    def _wait_for_redirect(self) -> bool:
        logger.info("Waiting for redirect back to %s", self._base_host)
        t = self.timings
        return bool(
            poll_until(
                self._back_on_tenant,
                attempts=t.redirect_poll_attempts,
                interval_ms=t.redirect_poll_interval_ms,
                sleep=self._sleep,
            )
        )

    def _transition(self, state: LoginState, *, capture: bool = True) -> None:
        self.state = state
        self.history.append(state)
        if not self._step_log_enabled:
            return

        self._step_counter += 1
        logger.info("Step %02d %s (url=%s)", self._step_counter, state.value, self.session.url())
        if self._step_debug_enabled and capture:
            self.session.save_debug(
                self._debug_name(f"step_{self._step_counter:02d}_{state.value}"), screenshot_only=True
            )

    def _debug_name(self, name: str) -> str:
        return f"{self._debug_tag}_{name}" if self._debug_tag else name
