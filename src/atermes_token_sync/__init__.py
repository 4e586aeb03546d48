"""
Keep Atermes API tokens fresh by logging in through the browser UI (email, password, TOTP)
and capturing the JWT the web app uses.
"""

__version__ = "0.1.0"
