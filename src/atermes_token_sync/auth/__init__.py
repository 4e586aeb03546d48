from .captured import CapturedAuthData
from .extractor import AuthExtractor, LoginState
from .interception import InterceptionListener

__all__ = ["AuthExtractor", "CapturedAuthData", "InterceptionListener", "LoginState"]
