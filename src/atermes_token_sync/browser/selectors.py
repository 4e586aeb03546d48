from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Optional

from ..polling import poll_until

if TYPE_CHECKING:
    from .session import BrowserSession, Located


@dataclass(frozen=True)
class SelectorChain:
    """
    Ordered locators for one logical form field; the first one with a present match wins.
    """

    field: str
    selectors: tuple[str, ...]

    def first_present(self, session: "BrowserSession") -> Optional["Located"]:
        for sel in self.selectors:
            located = session.locate(sel)
            if located.present:
                return located
        return None

    def wait_for_first_present(
        self,
        session: "BrowserSession",
        *,
        attempts: int = 1,
        interval_ms: int = 500,
        sleep: Optional[Callable[[int], None]] = None,
    ) -> Optional["Located"]:
        """
        Re-scan the whole chain until a selector matches or the budget (`attempts` scans) is spent.
        """
        if attempts <= 1:
            return self.first_present(session)
        return poll_until(
            lambda: self.first_present(session),
            attempts=attempts,
            interval_ms=interval_ms,
            sleep=sleep or session.wait,
        )


@dataclass(frozen=True)
class LoginSelectors:
    """
    The login UI (Azure B2C pages) may change over time; keep every selector here.
    """

    email: SelectorChain = field(
        default_factory=lambda: SelectorChain(
            "email",
            ("input[type='email']", "input#email", "input#signInName"),
        )
    )
    password: SelectorChain = field(
        default_factory=lambda: SelectorChain(
            "password",
            ("input[type='password']", "input#password"),
        )
    )
    # Fallback only: the form is normally submitted by pressing Enter in the password field.
    submit: SelectorChain = field(
        default_factory=lambda: SelectorChain(
            "submit",
            (
                "button#next",
                "button[type='submit']",
                "button:has-text('Aanmelden')",
                "button:has-text('Sign in')",
                "button:has-text('Login')",
                "input[type='submit']",
            ),
        )
    )
    totp: SelectorChain = field(
        default_factory=lambda: SelectorChain(
            "2fa",
            ("input#otpCode", "input[name='code']", "input#totpCode"),
        )
    )
