"""
Provider metadata cache: endpoints, client credentials, and the provider's signing keys.
Resolved once and cached for the process lifetime (no background refresh).
"""
import logging
import threading
from dataclasses import dataclass
from urllib.parse import urlparse

import httpx
import jwt
from jwt.exceptions import PyJWKSetError

from okta_login.config import Settings
from okta_login.errors import ConfigError, InvalidTokenError, TokenExchangeError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderConfig:
    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    userinfo_endpoint: str | None
    jwks_uri: str
    client_id: str
    client_secret: str
    redirect_uri: str
    scope: str


def _is_url(value: str | None) -> bool:
    if not value:
        return False
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def okta_endpoints(issuer: str) -> dict[str, str]:
    """Endpoint layout of an Okta authorization server, relative to its issuer."""
    return {
        "authorization_endpoint": f"{issuer}/v1/authorize",
        "token_endpoint": f"{issuer}/v1/token",
        "userinfo_endpoint": f"{issuer}/v1/userinfo",
        "jwks_uri": f"{issuer}/v1/keys",
    }


class ProviderMetadata:
    def __init__(self, settings: Settings, http: httpx.Client):
        self._settings = settings
        self._http = http
        self._lock = threading.Lock()
        self._config: ProviderConfig | None = None
        self._jwks: jwt.PyJWKSet | None = None

    def resolve(self) -> ProviderConfig:
        """Validated provider config. Raises ConfigError on missing or malformed values."""
        with self._lock:
            if self._config is None:
                self._config = self._load()
            return self._config

    def _load(self) -> ProviderConfig:
        s = self._settings
        missing = [
            name
            for name, value in (
                ("OKTA_ISSUER_URL", s.issuer),
                ("OKTA_CLIENT_ID", s.client_id),
                ("OKTA_CLIENT_SECRET", s.client_secret),
                ("OKTA_CALLBACK_URL", s.redirect_uri),
            )
            if not value
        ]
        if missing:
            raise ConfigError(f"Missing required setting(s): {', '.join(missing)}")
        if not _is_url(s.issuer):
            raise ConfigError("OKTA_ISSUER_URL is not a valid http(s) URL")
        if not _is_url(s.redirect_uri):
            raise ConfigError("OKTA_CALLBACK_URL is not a valid http(s) URL")
        if "openid" not in s.scope.split():
            raise ConfigError("OKTA_SCOPE must include 'openid'")

        endpoints = self._discover() if s.discovery else okta_endpoints(s.issuer)
        for name in ("authorization_endpoint", "token_endpoint", "jwks_uri"):
            if not _is_url(endpoints.get(name)):
                raise ConfigError(f"Provider {name} is missing or not a valid URL")
        userinfo = endpoints.get("userinfo_endpoint")
        if userinfo is not None and not _is_url(userinfo):
            raise ConfigError("Provider userinfo_endpoint is not a valid URL")

        config = ProviderConfig(
            issuer=s.issuer,
            authorization_endpoint=endpoints["authorization_endpoint"],
            token_endpoint=endpoints["token_endpoint"],
            userinfo_endpoint=userinfo,
            jwks_uri=endpoints["jwks_uri"],
            client_id=s.client_id,
            client_secret=s.client_secret,
            redirect_uri=s.redirect_uri,
            scope=s.scope,
        )
        logger.info("Provider resolved: issuer=%s discovery=%s", config.issuer, s.discovery)
        return config

    def _discover(self) -> dict[str, str]:
        url = f"{self._settings.issuer}/.well-known/openid-configuration"
        try:
            r = self._http.get(url, headers={"Accept": "application/json"}, timeout=self._settings.http_timeout)
        except httpx.HTTPError as e:
            raise ConfigError(f"Discovery request to {url} failed: {e}") from e
        if r.status_code != 200:
            raise ConfigError(f"Discovery request to {url} returned {r.status_code}")
        try:
            doc = r.json()
        except ValueError as e:
            raise ConfigError(f"Discovery document at {url} is not JSON") from e
        if not isinstance(doc, dict):
            raise ConfigError(f"Discovery document at {url} is not a JSON object")
        if str(doc.get("issuer", "")).rstrip("/") != self._settings.issuer:
            raise ConfigError(f"Discovery issuer {doc.get('issuer')!r} does not match configured issuer")
        return {
            "authorization_endpoint": doc.get("authorization_endpoint"),
            "token_endpoint": doc.get("token_endpoint"),
            "userinfo_endpoint": doc.get("userinfo_endpoint"),
            "jwks_uri": doc.get("jwks_uri"),
        }

    def _key_set(self) -> jwt.PyJWKSet:
        with self._lock:
            if self._jwks is not None:
                return self._jwks
        config = self.resolve()
        try:
            r = self._http.get(
                config.jwks_uri, headers={"Accept": "application/json"}, timeout=self._settings.http_timeout
            )
        except httpx.HTTPError as e:
            raise TokenExchangeError(f"JWKS request failed: {e}") from e
        if r.status_code != 200:
            raise TokenExchangeError(f"JWKS request returned {r.status_code}")
        try:
            doc = r.json()
            if not isinstance(doc, dict):
                raise ValueError("not a JSON object")
            key_set = jwt.PyJWKSet.from_dict(doc)
        except (ValueError, PyJWKSetError) as e:
            raise TokenExchangeError(f"JWKS document is invalid: {e}") from e
        with self._lock:
            self._jwks = key_set
        logger.info("Loaded %d signing key(s) from %s", len(key_set.keys), config.jwks_uri)
        return key_set

    def signing_key_for(self, token: str) -> jwt.PyJWK:
        """Provider key matching the token's kid. Raises InvalidTokenError if none matches."""
        try:
            header = jwt.get_unverified_header(token)
        except jwt.DecodeError as e:
            raise InvalidTokenError(f"Malformed ID token header: {e}") from e
        kid = header.get("kid")
        keys = self._key_set().keys
        if kid is None:
            if len(keys) == 1:
                return keys[0]
            raise InvalidTokenError("ID token has no kid and the provider publishes several keys")
        for key in keys:
            if key.key_id == kid:
                return key
        raise InvalidTokenError(f"No provider signing key with kid={kid}")
