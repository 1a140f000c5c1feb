"""
Okta login configuration. Loaded once from the environment at startup.
Credentials come from env only; nothing secret has a default.
"""
import os
from dataclasses import dataclass
from typing import Mapping

from okta_login.errors import ConfigError

# Same callback the app has always registered with Okta (port 3000)
DEFAULT_CALLBACK_URL = "http://localhost:3000/auth/okta/callback"

DEFAULT_SCOPE = "openid profile email"

# Pending login lifetime: user has 10 minutes to finish at the provider
DEFAULT_FLOW_TTL = 600

# Session lifetime (8 hours)
DEFAULT_SESSION_TTL = 8 * 3600

# Bound on every outbound call to the provider (seconds)
DEFAULT_HTTP_TIMEOUT = 10.0


def _flag(value: str | None, default: bool) -> bool:
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    issuer: str
    client_id: str
    client_secret: str
    redirect_uri: str = DEFAULT_CALLBACK_URL
    scope: str = DEFAULT_SCOPE
    discovery: bool = False
    use_pkce: bool = True
    fetch_userinfo: bool = True
    http_timeout: float = DEFAULT_HTTP_TIMEOUT
    session_secret: str = ""
    session_ttl: int = DEFAULT_SESSION_TTL
    flow_ttl: int = DEFAULT_FLOW_TTL
    session_store_url: str = ""

    @property
    def cookie_secure(self) -> bool:
        """Secure cookies whenever the app is reached over TLS."""
        return self.redirect_uri.lower().startswith("https://")


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    """
    Read settings from the environment. Values are not validated here; the provider
    metadata cache validates them (ConfigError) when the app is built.
    """
    env = os.environ if environ is None else environ
    try:
        return _build(env)
    except ValueError as e:
        raise ConfigError(f"Invalid numeric setting: {e}") from e


def _build(env: Mapping[str, str]) -> Settings:
    return Settings(
        issuer=env.get("OKTA_ISSUER_URL", "").strip().rstrip("/"),
        client_id=env.get("OKTA_CLIENT_ID", "").strip(),
        client_secret=env.get("OKTA_CLIENT_SECRET", "").strip(),
        redirect_uri=env.get("OKTA_CALLBACK_URL", DEFAULT_CALLBACK_URL).strip(),
        scope=env.get("OKTA_SCOPE", DEFAULT_SCOPE).strip(),
        discovery=_flag(env.get("OKTA_DISCOVERY"), False),
        use_pkce=_flag(env.get("OKTA_USE_PKCE"), True),
        fetch_userinfo=_flag(env.get("OKTA_FETCH_USERINFO"), True),
        http_timeout=float(env.get("OKTA_HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT)),
        session_secret=env.get("SESSION_SECRET", ""),
        session_ttl=int(env.get("SESSION_TTL_SECONDS", DEFAULT_SESSION_TTL)),
        flow_ttl=int(env.get("LOGIN_FLOW_TTL_SECONDS", DEFAULT_FLOW_TTL)),
        session_store_url=env.get("SESSION_STORE_URL", "").strip(),
    )
