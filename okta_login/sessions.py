"""
Session manager: opaque random session IDs bound server-side to a user profile.
Only the ID ever reaches the browser.
"""
import hashlib
import hmac
import logging
import secrets
import time
from typing import Callable

from okta_login.config import DEFAULT_SESSION_TTL
from okta_login.identity_store import IdentityStore, Session, UserProfile

logger = logging.getLogger(__name__)

# Expired sessions are swept on issue, at most once per interval (seconds)
SWEEP_INTERVAL = 60


class SessionManager:
    def __init__(
        self,
        store: IdentityStore,
        *,
        ttl: int = DEFAULT_SESSION_TTL,
        secret: str = "",
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._ttl = ttl
        self._secret = secret.encode("utf-8")
        self._clock = clock
        self._last_sweep: float | None = None

    @property
    def ttl(self) -> int:
        return self._ttl

    def _key(self, session_id: str) -> str:
        """Store key for a session ID; keyed hash when a session secret is configured."""
        if not self._secret:
            return session_id
        return hmac.new(self._secret, session_id.encode("utf-8"), hashlib.sha256).hexdigest()

    def issue(self, profile: UserProfile) -> Session:
        now = self._clock()
        if self._last_sweep is None or now - self._last_sweep >= SWEEP_INTERVAL:
            self._last_sweep = now
            self._store.sweep()
        session = Session(
            session_id=secrets.token_urlsafe(32),
            profile=profile,
            created_at=now,
            expires_at=now + self._ttl,
        )
        self._store.put(self._key(session.session_id), session)
        logger.info("Session issued for sub=%s (expires in %ss)", profile.subject, self._ttl)
        return session

    def resolve(self, session_id: str | None) -> UserProfile | None:
        """Profile for a live session; None for empty, unknown, or expired IDs."""
        if not session_id:
            return None
        session = self._store.get(self._key(session_id))
        if session is None or session.expired(self._clock()):
            return None
        return session.profile

    def revoke(self, session_id: str | None) -> None:
        """Idempotent: unknown or already revoked IDs are ignored."""
        if not session_id:
            return
        self._store.delete(self._key(session_id))

    def sweep(self) -> int:
        return self._store.sweep()
