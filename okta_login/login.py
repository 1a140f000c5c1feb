"""
Authorization request builder: new state/nonce/PKCE per login attempt, stored as pending,
and the redirect URL to the provider's authorization endpoint.
"""
import logging

from okta_login.flow_store import AuthRequestState, PendingFlowStore
from okta_login.pkce import build_authorize_url, generate_nonce, generate_pkce, generate_state
from okta_login.provider import ProviderMetadata

logger = logging.getLogger(__name__)


class AuthorizationRequestBuilder:
    def __init__(self, provider: ProviderMetadata, flows: PendingFlowStore, *, use_pkce: bool = True):
        self._provider = provider
        self._flows = flows
        self._use_pkce = use_pkce

    def begin_login(self) -> tuple[str, AuthRequestState]:
        """Returns (redirect_url, pending state). No network call."""
        config = self._provider.resolve()
        code_verifier = code_challenge = None
        if self._use_pkce:
            code_verifier, code_challenge = generate_pkce()
        flow = self._flows.create(generate_state(), nonce=generate_nonce(), code_verifier=code_verifier)
        url = build_authorize_url(
            authorization_endpoint=config.authorization_endpoint,
            client_id=config.client_id,
            redirect_uri=config.redirect_uri,
            scope=config.scope,
            state=flow.state,
            nonce=flow.nonce,
            code_challenge=code_challenge,
        )
        return url, flow
