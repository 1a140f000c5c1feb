"""
Identity store: session key -> Session (user profile + expiry).
Two backings with the same contract: in-memory (default) and SQL via SQLAlchemy.
Expired entries are never returned; sweep() evicts them in bulk.
"""
import json
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

from sqlalchemy import delete
from sqlalchemy.orm import Session as DbSession, sessionmaker

from okta_login.models import SessionRecord


@dataclass(frozen=True)
class UserProfile:
    subject: str
    name: str | None = None
    email: str | None = None
    claims: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_claims(cls, claims: dict[str, Any]) -> "UserProfile":
        """Build a profile from validated OIDC claims (ID token merged with userinfo)."""
        name = claims.get("name") or claims.get("preferred_username")
        if not name:
            parts = [claims.get("given_name"), claims.get("family_name")]
            name = " ".join(str(p) for p in parts if p) or None
        email = claims.get("email")
        return cls(
            subject=str(claims["sub"]),
            name=str(name) if name is not None else None,
            email=str(email) if email is not None else None,
            claims=dict(claims),
        )


@dataclass(frozen=True)
class Session:
    session_id: str
    profile: UserProfile
    created_at: float  # epoch seconds
    expires_at: float

    def expired(self, now: float) -> bool:
        return now >= self.expires_at


class IdentityStore(Protocol):
    def get(self, key: str) -> Session | None: ...

    def put(self, key: str, session: Session) -> None: ...

    def delete(self, key: str) -> None: ...

    def sweep(self) -> int: ...


class MemoryIdentityStore:
    """Dict-backed store guarded by a lock. Expired entries are dropped when read."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Session | None:
        with self._lock:
            session = self._sessions.get(key)
            if session is None:
                return None
            if session.expired(self._clock()):
                del self._sessions[key]
                return None
            return session

    def put(self, key: str, session: Session) -> None:
        with self._lock:
            self._sessions[key] = session

    def delete(self, key: str) -> None:
        with self._lock:
            self._sessions.pop(key, None)

    def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, s in self._sessions.items() if s.expired(now)]
            for k in expired:
                del self._sessions[k]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


def _to_db_time(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, timezone.utc).replace(tzinfo=None)


def _from_db_time(dt: datetime) -> float:
    return dt.replace(tzinfo=timezone.utc).timestamp()


class SqlIdentityStore:
    """
    SQLAlchemy-backed store (table "sessions"). The session ID itself is not stored;
    Session.session_id is left empty on read, callers already hold the ID.
    """

    def __init__(self, session_factory: sessionmaker[DbSession], clock: Callable[[], float] = time.time):
        self._session_factory = session_factory
        self._clock = clock

    def get(self, key: str) -> Session | None:
        db = self._session_factory()
        try:
            row = db.get(SessionRecord, key)
            if row is None:
                return None
            expires_at = _from_db_time(row.expires_at)
            if self._clock() >= expires_at:
                db.delete(row)
                db.commit()
                return None
            profile = UserProfile(
                subject=row.subject,
                name=row.name,
                email=row.email,
                claims=json.loads(row.claims),
            )
            return Session(
                session_id="",
                profile=profile,
                created_at=_from_db_time(row.created_at),
                expires_at=expires_at,
            )
        finally:
            db.close()

    def put(self, key: str, session: Session) -> None:
        db = self._session_factory()
        try:
            db.merge(
                SessionRecord(
                    session_key=key,
                    subject=session.profile.subject,
                    name=session.profile.name,
                    email=session.profile.email,
                    claims=json.dumps(session.profile.claims),
                    created_at=_to_db_time(session.created_at),
                    expires_at=_to_db_time(session.expires_at),
                )
            )
            db.commit()
        finally:
            db.close()

    def delete(self, key: str) -> None:
        db = self._session_factory()
        try:
            db.execute(delete(SessionRecord).where(SessionRecord.session_key == key))
            db.commit()
        finally:
            db.close()

    def sweep(self) -> int:
        db = self._session_factory()
        try:
            result = db.execute(
                delete(SessionRecord).where(SessionRecord.expires_at <= _to_db_time(self._clock()))
            )
            db.commit()
            return result.rowcount or 0
        finally:
            db.close()
