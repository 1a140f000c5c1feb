"""
Okta login web app. Home, profile, login redirect, OIDC callback, logout.
The relying-party components are built by create_app() and reached through app.state.
Port 3000 by default (same callback URL as registered with Okta).
"""
import html
import logging
import os
from contextlib import asynccontextmanager

import httpx
from fastapi import Depends, FastAPI, Request
from fastapi.responses import HTMLResponse, RedirectResponse

from okta_login.callback import CallbackHandler, state_ref
from okta_login.config import Settings, load_settings
from okta_login.database import init_db, make_engine, make_session_factory
from okta_login.errors import AuthError, InvalidStateError, TokenExchangeError
from okta_login.flow_store import PendingFlowStore
from okta_login.identity_store import IdentityStore, MemoryIdentityStore, SqlIdentityStore, UserProfile
from okta_login.login import AuthorizationRequestBuilder
from okta_login.provider import ProviderMetadata
from okta_login.sessions import SessionManager

logger = logging.getLogger(__name__)

SESSION_COOKIE = "okta_session"
# Binds the pending state to the browser that started the login
FLOW_COOKIE = "okta_login_state"

LOGIN_PATH = "/auth/okta"
CALLBACK_PATH = "/auth/okta/callback"


def _page(title: str, body: str, status_code: int = 200) -> HTMLResponse:
    return HTMLResponse(
        f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{html.escape(title)}</title></head>
<body>
{body}
</body>
</html>""",
        status_code=status_code,
    )


def _login_failed(status_code: int) -> HTMLResponse:
    return _page(
        "Login failed",
        """  <h1>Login failed</h1>
  <p>Login failed. Please try again.</p>
  <p><a href="/auth/okta">Log in</a> | <a href="/">Home</a></p>""",
        status_code=status_code,
    )


def _build_identity_store(settings: Settings) -> IdentityStore:
    if not settings.session_store_url:
        return MemoryIdentityStore()
    engine = make_engine(settings.session_store_url)
    init_db(engine)
    return SqlIdentityStore(make_session_factory(engine))


def create_app(
    settings: Settings | None = None,
    *,
    http_client: httpx.Client | None = None,
    identity_store: IdentityStore | None = None,
) -> FastAPI:
    """
    Build the app and its relying-party components. Raises ConfigError when the provider
    configuration is missing or malformed, so a misconfigured process never starts serving.
    """
    settings = settings or load_settings()
    owns_http = http_client is None
    http = http_client or httpx.Client(timeout=settings.http_timeout)

    provider = ProviderMetadata(settings, http)
    try:
        provider.resolve()
    except Exception:
        if owns_http:
            http.close()
        raise

    flows = PendingFlowStore(ttl=settings.flow_ttl)
    sessions = SessionManager(
        identity_store or _build_identity_store(settings),
        ttl=settings.session_ttl,
        secret=settings.session_secret,
    )
    if not settings.session_secret:
        logger.warning("SESSION_SECRET is not set; session store is keyed by raw session IDs")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if owns_http:
            http.close()

    app = FastAPI(title="Okta Login", version="1.0.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.flows = flows
    app.state.sessions = sessions
    app.state.login = AuthorizationRequestBuilder(provider, flows, use_pkce=settings.use_pkce)
    app.state.callback = CallbackHandler(
        provider,
        flows,
        sessions,
        http,
        timeout=settings.http_timeout,
        fetch_userinfo=settings.fetch_userinfo,
    )
    _register_routes(app)
    return app


def get_session_manager(request: Request) -> SessionManager:
    return request.app.state.sessions


def current_user(request: Request, sessions: SessionManager = Depends(get_session_manager)) -> UserProfile | None:
    """Dependency: profile for the request's session cookie, or None."""
    return sessions.resolve(request.cookies.get(SESSION_COOKIE))


def _register_routes(app: FastAPI) -> None:
    @app.get("/health")
    def health():
        """Health check endpoint."""
        return {"status": "ok", "service": "okta_login"}

    @app.get("/", response_class=HTMLResponse)
    def home(user: UserProfile | None = Depends(current_user)):
        """Home page; links to login or, when logged in, to the profile."""
        if user is None:
            links = '<p><a href="/auth/okta">Log in with Okta</a></p>'
        else:
            who = html.escape(user.name or user.subject)
            links = f'<p>Signed in as {who}.</p>\n  <p><a href="/profile">Profile</a> | <a href="/logout">Log out</a></p>'
        return _page("Home", f"  <h1>Okta OpenID Connect login</h1>\n  {links}")

    @app.get("/profile", response_class=HTMLResponse)
    def profile(user: UserProfile | None = Depends(current_user)):
        """Profile of the logged-in user; redirects home when not authenticated."""
        if user is None:
            return RedirectResponse(url="/", status_code=302)
        rows = "".join(
            f"<tr><td>{html.escape(str(k))}</td><td>{html.escape(str(v))}</td></tr>"
            for k, v in sorted(user.claims.items())
        )
        return _page(
            "Profile",
            f"""  <h1>Profile</h1>
  <p>Name: {html.escape(user.name or "")}</p>
  <p>Email: {html.escape(user.email or "")}</p>
  <p>Subject: <code>{html.escape(user.subject)}</code></p>
  <table><thead><tr><th>Claim</th><th>Value</th></tr></thead><tbody>{rows}</tbody></table>
  <p><a href="/logout">Log out</a> | <a href="/">Home</a></p>""",
        )

    @app.get(LOGIN_PATH)
    def start_login(request: Request):
        """New state, nonce and PKCE; redirect to the provider's authorization endpoint."""
        settings: Settings = request.app.state.settings
        url, flow = request.app.state.login.begin_login()
        response = RedirectResponse(url=url, status_code=302)
        response.set_cookie(
            FLOW_COOKIE,
            flow.state,
            max_age=settings.flow_ttl,
            path=CALLBACK_PATH,
            httponly=True,
            secure=settings.cookie_secure,
            samesite="lax",
        )
        return response

    @app.get(CALLBACK_PATH)
    def callback(
        request: Request,
        code: str | None = None,
        state: str | None = None,
        error: str | None = None,
        error_description: str | None = None,
    ):
        """Provider redirect target. On success sets the session cookie and goes to /profile."""
        settings: Settings = request.app.state.settings
        handler: CallbackHandler = request.app.state.callback
        bound_state = request.cookies.get(FLOW_COOKIE)
        try:
            if not state or bound_state != state:
                # Burn the pending state anyway so it cannot be replayed elsewhere
                if state:
                    request.app.state.flows.consume(state)
                logger.warning("Callback state not bound to this browser (state_ref=%s)", state_ref(state))
                raise InvalidStateError("State missing or not bound to this browser")
            if error:
                handler.fail_callback(state, error, error_description)
            session = handler.handle_callback(state, code)
        except InvalidStateError:
            response = RedirectResponse(url=LOGIN_PATH, status_code=302)
            response.delete_cookie(FLOW_COOKIE, path=CALLBACK_PATH)
            return response
        except TokenExchangeError:
            response = _login_failed(502)
            response.delete_cookie(FLOW_COOKIE, path=CALLBACK_PATH)
            return response
        except AuthError:
            response = _login_failed(400)
            response.delete_cookie(FLOW_COOKIE, path=CALLBACK_PATH)
            return response

        response = RedirectResponse(url="/profile", status_code=302)
        response.delete_cookie(FLOW_COOKIE, path=CALLBACK_PATH)
        response.set_cookie(
            SESSION_COOKIE,
            session.session_id,
            max_age=settings.session_ttl,
            httponly=True,
            secure=settings.cookie_secure,
            samesite="lax",
        )
        return response

    @app.get("/logout")
    def logout(request: Request, sessions: SessionManager = Depends(get_session_manager)):
        """Revoke the local session and clear the cookie."""
        sessions.revoke(request.cookies.get(SESSION_COOKIE))
        response = RedirectResponse(url="/", status_code=302)
        response.delete_cookie(SESSION_COOKIE)
        return response


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "okta_login.main:create_app",
        factory=True,
        host="127.0.0.1",
        port=int(os.environ.get("PORT", "3000")),
        reload=True,
    )
