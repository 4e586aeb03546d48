from __future__ import annotations

from typing import Optional


class TokenSyncError(RuntimeError):
    """
    Base class for every failure raised by the token sync flow.

    A TokenSyncError aborts at most one credential's login; the batch runner catches it and moves on.
    """


class ConfigurationError(TokenSyncError):
    """
    Raised when a run cannot start at all (e.g. no enabled environments in the store).
    """


class NavigationError(TokenSyncError):
    pass


class ElementNotFoundError(TokenSyncError):
    """
    Raised when no selector of a field's fallback chain matched a present element.
    """

    def __init__(self, field: str, selectors: tuple[str, ...] = ()) -> None:
        self.field = field
        self.selectors = tuple(selectors)
        tried = f" (tried: {', '.join(self.selectors)})" if self.selectors else ""
        super().__init__(f"{field} input not found{tried}")


class SubmissionError(TokenSyncError):
    pass


class TOTPGenerationError(TokenSyncError):
    pass


class LoginTimeoutError(TokenSyncError, TimeoutError):
    """
    Raised when a bounded wait inside the login flow ran out (e.g. the 2FA field never rendered).
    """

    def __init__(self, phase: str, message: str = "") -> None:
        self.phase = phase
        super().__init__(message or f"Timed out waiting for {phase}")


class PersistenceError(TokenSyncError):
    pass


class ApiError(TokenSyncError):
    def __init__(self, message: str, *, status: Optional[int] = None, body: bytes = b"") -> None:
        self.status = status
        self.body = body
        super().__init__(message)
