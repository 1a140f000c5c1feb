"""
Shared fixtures: a stub Okta authorization server served through httpx.MockTransport,
with a real RSA key so ID tokens are signed and verified end to end.
"""
import base64
import secrets
import time
from urllib.parse import parse_qs, urlparse

import httpx
import jwt
import pytest
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives.asymmetric.rsa import generate_private_key

from okta_login.callback import CallbackHandler
from okta_login.config import Settings
from okta_login.flow_store import PendingFlowStore
from okta_login.identity_store import MemoryIdentityStore
from okta_login.login import AuthorizationRequestBuilder
from okta_login.pkce import code_challenge_for
from okta_login.provider import ProviderMetadata
from okta_login.sessions import SessionManager

ISSUER = "https://dev-123.okta.com/oauth2/default"
CLIENT_ID = "0oa-test-client"
CLIENT_SECRET = "test-secret"
REDIRECT_URI = "http://localhost:3000/auth/okta/callback"
SUBJECT = "00u-alice"

# One RSA key for the whole run; generating 2048-bit keys is slow
_KEY = generate_private_key(65537, 2048, default_backend())


def _int_to_b64url(value: int) -> str:
    length = (value.bit_length() + 7) // 8
    return base64.urlsafe_b64encode(value.to_bytes(length, "big")).rstrip(b"=").decode("ascii")


def jwk_for(private_key, kid: str) -> dict:
    pub = private_key.public_key().public_numbers()
    return {"kty": "RSA", "kid": kid, "alg": "RS256", "use": "sig", "n": _int_to_b64url(pub.n), "e": _int_to_b64url(pub.e)}


def query_params(url: str) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StubOkta:
    """
    Minimal provider: /v1/token, /v1/userinfo, /v1/keys and discovery.
    Tests call issue_code() in place of the user authenticating at the provider.
    """

    issuer = ISSUER
    client_id = CLIENT_ID
    redirect_uri = REDIRECT_URI
    subject = SUBJECT

    def __init__(self):
        self.key = _KEY
        self.kid = "stub-key"
        self.jwks = {"keys": [jwk_for(self.key, self.kid)]}
        self.codes: dict[str, dict] = {}
        self.requests: list[httpx.Request] = []
        self.token_status = 200
        self.token_body: dict | None = None
        self.token_failures: list[Exception] = []
        self.userinfo_claims = {"sub": SUBJECT, "email": "alice@example.com", "preferred_username": "alice"}
        self.discovery_doc = {
            "issuer": ISSUER,
            "authorization_endpoint": f"{ISSUER}/v1/authorize",
            "token_endpoint": f"{ISSUER}/v1/token",
            "userinfo_endpoint": f"{ISSUER}/v1/userinfo",
            "jwks_uri": f"{ISSUER}/v1/keys",
        }

    def id_token(self, *, signing_key=None, kid=None, **overrides) -> str:
        now = int(time.time())
        claims = {
            "iss": ISSUER,
            "sub": SUBJECT,
            "aud": CLIENT_ID,
            "exp": now + 300,
            "iat": now,
            "name": "Alice Example",
            "email": "alice@example.com",
        }
        claims.update(overrides)
        claims = {k: v for k, v in claims.items() if v is not None}
        return jwt.encode(claims, signing_key or self.key, algorithm="RS256", headers={"kid": kid or self.kid})

    def issue_code(self, nonce: str, code_challenge: str | None = None, **id_token_overrides) -> str:
        code = secrets.token_urlsafe(16)
        self.codes[code] = {"nonce": nonce, "code_challenge": code_challenge, "overrides": id_token_overrides}
        return code

    def authorize(self, authorize_url: str, **id_token_overrides) -> tuple[str, str]:
        """Act as the user approving login; returns (state, code)."""
        params = query_params(authorize_url)
        code = self.issue_code(params["nonce"], params.get("code_challenge"), **id_token_overrides)
        return params["state"], code

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.endswith("/.well-known/openid-configuration"):
            return httpx.Response(200, json=self.discovery_doc)
        if path.endswith("/v1/keys"):
            return httpx.Response(200, json=self.jwks)
        if path.endswith("/v1/token"):
            return self._token(request)
        if path.endswith("/v1/userinfo"):
            if request.headers.get("authorization") != "Bearer stub-access-token":
                return httpx.Response(401, json={"error": "invalid_token"})
            return httpx.Response(200, json=self.userinfo_claims)
        return httpx.Response(404)

    def _token(self, request: httpx.Request) -> httpx.Response:
        if self.token_failures:
            raise self.token_failures.pop(0)
        if self.token_status != 200:
            return httpx.Response(self.token_status, json={"error": "invalid_grant", "error_description": "bad code"})
        if self.token_body is not None:
            return httpx.Response(200, json=self.token_body)
        expected = "Basic " + base64.b64encode(f"{CLIENT_ID}:{CLIENT_SECRET}".encode()).decode()
        if request.headers.get("authorization") != expected:
            return httpx.Response(401, json={"error": "invalid_client"})
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        grant = self.codes.pop(form.get("code", ""), None)
        if form.get("grant_type") != "authorization_code" or grant is None:
            return httpx.Response(400, json={"error": "invalid_grant"})
        if form.get("redirect_uri") != REDIRECT_URI:
            return httpx.Response(400, json={"error": "invalid_grant"})
        if grant["code_challenge"] and code_challenge_for(form.get("code_verifier", "")) != grant["code_challenge"]:
            return httpx.Response(400, json={"error": "invalid_grant", "error_description": "PKCE verification failed"})
        overrides = {"nonce": grant["nonce"], **grant["overrides"]}
        return httpx.Response(
            200,
            json={
                "token_type": "Bearer",
                "access_token": "stub-access-token",
                "id_token": self.id_token(**overrides),
                "expires_in": 3600,
                "scope": "openid profile email",
            },
        )


@pytest.fixture
def stub():
    return StubOkta()


@pytest.fixture
def http_client(stub):
    client = httpx.Client(transport=httpx.MockTransport(stub.handler))
    yield client
    client.close()


@pytest.fixture
def settings():
    return Settings(
        issuer=ISSUER,
        client_id=CLIENT_ID,
        client_secret=CLIENT_SECRET,
        redirect_uri=REDIRECT_URI,
        session_secret="test-session-secret",
    )


@pytest.fixture
def provider(settings, http_client):
    return ProviderMetadata(settings, http_client)


@pytest.fixture
def flows():
    return PendingFlowStore()


@pytest.fixture
def store():
    return MemoryIdentityStore()


@pytest.fixture
def sessions(store):
    return SessionManager(store, ttl=3600, secret="test-session-secret")


@pytest.fixture
def builder(provider, flows):
    return AuthorizationRequestBuilder(provider, flows)


@pytest.fixture
def handler(provider, flows, sessions, http_client):
    return CallbackHandler(provider, flows, sessions, http_client)


@pytest.fixture
def clock():
    return FakeClock()
