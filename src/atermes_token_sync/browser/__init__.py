from .selectors import LoginSelectors, SelectorChain
from .session import BrowserSession, Located, PlaywrightSession, open_browser_session

__all__ = [
    "BrowserSession",
    "Located",
    "LoginSelectors",
    "PlaywrightSession",
    "SelectorChain",
    "open_browser_session",
]
