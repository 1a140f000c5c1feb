"""
Login error taxonomy. ConfigError is fatal at startup; AuthError subclasses are per-request
failures that never leave a session behind.
"""


class ConfigError(Exception):
    """Provider configuration missing or malformed."""


class AuthError(Exception):
    """Base for failures of a single login attempt."""


class InvalidStateError(AuthError):
    """Callback state unknown, expired, already used, or not bound to this browser."""


class TokenExchangeError(AuthError):
    """Back-channel call to the provider failed (transport, status, or body)."""


class InvalidTokenError(AuthError):
    """Identity token (or userinfo response) failed validation."""


class LoginDeniedError(AuthError):
    """Provider redirected back with an error instead of a code."""

    def __init__(self, error: str, description: str | None = None):
        super().__init__(f"{error}: {description}" if description else error)
        self.error = error
        self.description = description
