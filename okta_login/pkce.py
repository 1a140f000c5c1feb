"""
PKCE (RFC 7636, S256 only) plus state and nonce generation for login initiation.
"""
import hashlib
import secrets
from base64 import urlsafe_b64encode
from urllib.parse import urlencode

# 32 random bytes = 256 bits; encodes to 43 base64url chars
_TOKEN_BYTES = 32


def generate_state() -> str:
    """Opaque anti-forgery value; returned to us unchanged on the callback."""
    return secrets.token_urlsafe(_TOKEN_BYTES)


def generate_nonce() -> str:
    """Random value the provider copies into the ID token."""
    return secrets.token_urlsafe(_TOKEN_BYTES)


def code_challenge_for(code_verifier: str) -> str:
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def generate_pkce() -> tuple[str, str]:
    """
    Generate code_verifier and code_challenge (S256).
    Returns (code_verifier, code_challenge). Verifier is 43 chars (256 bits entropy).
    """
    code_verifier = secrets.token_urlsafe(_TOKEN_BYTES)
    return code_verifier, code_challenge_for(code_verifier)


def build_authorize_url(
    *,
    authorization_endpoint: str,
    client_id: str,
    redirect_uri: str,
    scope: str,
    state: str,
    nonce: str | None = None,
    code_challenge: str | None = None,
) -> str:
    """Build the provider authorization URL with required and optional params."""
    params = {
        "response_type": "code",
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "scope": scope,
        "state": state,
    }
    if nonce:
        params["nonce"] = nonce
    if code_challenge:
        params["code_challenge"] = code_challenge
        params["code_challenge_method"] = "S256"
    sep = "&" if "?" in authorization_endpoint else "?"
    return f"{authorization_endpoint}{sep}{urlencode(params)}"
