"""
OIDC callback handling: consume the pending state, exchange the code at the token endpoint,
validate the ID token, build the user profile, and issue a session.
Any failure raises an AuthError and leaves no session behind.
"""
import hashlib
import logging
import math
from dataclasses import dataclass
from typing import Any

import httpx
import jwt

from okta_login.errors import InvalidStateError, InvalidTokenError, LoginDeniedError, TokenExchangeError
from okta_login.flow_store import AuthRequestState, PendingFlowStore
from okta_login.identity_store import Session, UserProfile
from okta_login.provider import ProviderConfig, ProviderMetadata
from okta_login.sessions import SessionManager

logger = logging.getLogger(__name__)

# Clock skew tolerated on exp/iat (seconds)
ID_TOKEN_LEEWAY = 60

# Provider error values come from the query string; cap what reaches the log
MAX_LOGGED_ERROR = 200


def state_ref(state: str | None) -> str:
    """Short log-safe reference for a state token (never log the token itself)."""
    if not state:
        return "-"
    return hashlib.sha256(state.encode("utf-8")).hexdigest()[:12]


@dataclass(frozen=True)
class TokenResponse:
    access_token: str
    id_token: str
    refresh_token: str | None
    expires_in: int | None


class CallbackHandler:
    def __init__(
        self,
        provider: ProviderMetadata,
        flows: PendingFlowStore,
        sessions: SessionManager,
        http: httpx.Client,
        *,
        timeout: float = 10.0,
        fetch_userinfo: bool = True,
    ):
        self._provider = provider
        self._flows = flows
        self._sessions = sessions
        self._http = http
        self._timeout = timeout
        self._fetch_userinfo = fetch_userinfo

    def handle_callback(self, returned_state: str | None, code: str | None) -> Session:
        flow = self._consume(returned_state)
        ref = state_ref(returned_state)
        if not code:
            logger.warning("Callback without code (state_ref=%s)", ref)
            raise LoginDeniedError("invalid_request", "Missing code parameter")
        config = self._provider.resolve()
        try:
            tokens = self._exchange_code(config, code, flow)
            claims = self._validate_id_token(config, tokens.id_token, flow)
            if self._fetch_userinfo and config.userinfo_endpoint:
                claims = {**claims, **self._userinfo(config, tokens.access_token, claims["sub"])}
        except TokenExchangeError as e:
            logger.warning("Token exchange failed (state_ref=%s): %s", ref, e)
            raise
        except InvalidTokenError as e:
            logger.warning("ID token rejected (state_ref=%s): %s", ref, e)
            raise
        profile = UserProfile.from_claims(claims)
        logger.info("Login succeeded for sub=%s (state_ref=%s)", profile.subject, ref)
        return self._sessions.issue(profile)

    def fail_callback(self, returned_state: str | None, error: str, description: str | None = None) -> None:
        """Provider returned error=...; burn the pending state and raise LoginDeniedError."""
        self._consume(returned_state)
        logger.warning(
            "Provider returned error=%r (state_ref=%s): %r",
            error[:MAX_LOGGED_ERROR],
            state_ref(returned_state),
            (description or "")[:MAX_LOGGED_ERROR],
        )
        raise LoginDeniedError(error, description)

    def _consume(self, returned_state: str | None) -> AuthRequestState:
        flow = self._flows.consume(returned_state) if returned_state else None
        if flow is None:
            logger.warning("Unknown, expired, or reused state (state_ref=%s)", state_ref(returned_state))
            raise InvalidStateError("Invalid or expired state")
        return flow

    def _exchange_code(self, config: ProviderConfig, code: str, flow: AuthRequestState) -> TokenResponse:
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": config.redirect_uri,
        }
        if flow.code_verifier:
            data["code_verifier"] = flow.code_verifier

        r = None
        for attempt in (1, 2):
            try:
                r = self._http.post(
                    config.token_endpoint,
                    data=data,
                    auth=(config.client_id, config.client_secret),
                    headers={"Accept": "application/json"},
                    timeout=self._timeout,
                )
                break
            except httpx.ConnectError as e:
                # Request never reached the provider, so the code is still unused
                if attempt == 2:
                    raise TokenExchangeError(f"Token endpoint unreachable: {e}") from e
                logger.info("Token endpoint connect failed, retrying once: %s", e)
            except httpx.HTTPError as e:
                raise TokenExchangeError(f"Token request failed: {e}") from e

        if not r.is_success:
            raise TokenExchangeError(f"Token endpoint returned {r.status_code}: {_oauth_error(r)}")
        try:
            body = r.json()
        except ValueError as e:
            raise TokenExchangeError("Token response is not JSON") from e
        if not isinstance(body, dict):
            raise TokenExchangeError("Token response is not a JSON object")
        access_token = body.get("access_token")
        id_token = body.get("id_token")
        if not isinstance(access_token, str) or not access_token:
            raise TokenExchangeError("Token response has no access_token")
        if not isinstance(id_token, str) or not id_token:
            raise TokenExchangeError("Token response has no id_token")
        expires_in = body.get("expires_in")
        if expires_in is not None and (
            isinstance(expires_in, bool) or not isinstance(expires_in, (int, float)) or not math.isfinite(expires_in)
        ):
            raise TokenExchangeError("Token response has invalid expires_in")
        return TokenResponse(
            access_token=access_token,
            id_token=id_token,
            refresh_token=body.get("refresh_token"),
            expires_in=int(expires_in) if expires_in is not None else None,
        )

    def _validate_id_token(self, config: ProviderConfig, id_token: str, flow: AuthRequestState) -> dict[str, Any]:
        """Verify RS256 signature, iss, aud/azp, exp, iat and nonce. Returns the claims."""
        signing_key = self._provider.signing_key_for(id_token)
        try:
            claims = jwt.decode(
                id_token,
                signing_key.key,
                algorithms=["RS256"],
                audience=config.client_id,
                issuer=config.issuer,
                leeway=ID_TOKEN_LEEWAY,
                options={"require": ["iss", "sub", "aud", "exp", "iat"]},
            )
        except jwt.ExpiredSignatureError as e:
            raise InvalidTokenError("ID token expired") from e
        except jwt.InvalidAudienceError as e:
            raise InvalidTokenError("ID token audience mismatch") from e
        except jwt.InvalidIssuerError as e:
            raise InvalidTokenError("ID token issuer mismatch") from e
        except jwt.InvalidTokenError as e:
            raise InvalidTokenError(f"ID token verification failed: {e}") from e

        aud = claims.get("aud")
        if isinstance(aud, list) and len(aud) > 1 and claims.get("azp") != config.client_id:
            raise InvalidTokenError("ID token azp does not match client_id")
        if claims.get("nonce") != flow.nonce:
            raise InvalidTokenError("ID token nonce mismatch")
        return claims

    def _userinfo(self, config: ProviderConfig, access_token: str, subject: str) -> dict[str, Any]:
        try:
            r = self._http.get(
                config.userinfo_endpoint,
                headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
                timeout=self._timeout,
            )
        except httpx.HTTPError as e:
            raise TokenExchangeError(f"Userinfo request failed: {e}") from e
        if not r.is_success:
            raise TokenExchangeError(f"Userinfo endpoint returned {r.status_code}")
        try:
            info = r.json()
        except ValueError as e:
            raise TokenExchangeError("Userinfo response is not JSON") from e
        if not isinstance(info, dict):
            raise TokenExchangeError("Userinfo response is not a JSON object")
        if info.get("sub") != subject:
            raise InvalidTokenError("Userinfo sub does not match ID token sub")
        return info


def _oauth_error(r: httpx.Response) -> str:
    """error / error_description from an OAuth error body, else a slice of the text."""
    if r.headers.get("content-type", "").startswith("application/json"):
        try:
            err = r.json()
        except ValueError:
            err = {}
        if isinstance(err, dict) and (err.get("error") or err.get("error_description")):
            return str(err.get("error_description") or err.get("error"))
    return r.text[:200] or "(no body)"
