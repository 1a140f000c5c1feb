"""
Pending authorization requests (state -> nonce, code_verifier) between /auth/okta and the callback.
Entries are single-use and expire after the flow TTL.
"""
import threading
import time
from dataclasses import dataclass
from typing import Callable

from okta_login.config import DEFAULT_FLOW_TTL


@dataclass(frozen=True)
class AuthRequestState:
    state: str
    nonce: str
    code_verifier: str | None
    created_at: float
    expires_at: float

    def expired(self, now: float) -> bool:
        return now >= self.expires_at


class PendingFlowStore:
    """In-memory pending-request store. consume() is an atomic check-and-delete."""

    def __init__(self, ttl: int = DEFAULT_FLOW_TTL, clock: Callable[[], float] = time.monotonic):
        self._ttl = ttl
        self._clock = clock
        self._pending: dict[str, AuthRequestState] = {}
        self._lock = threading.Lock()

    def create(self, state: str, nonce: str, code_verifier: str | None = None) -> AuthRequestState:
        now = self._clock()
        flow = AuthRequestState(
            state=state,
            nonce=nonce,
            code_verifier=code_verifier,
            created_at=now,
            expires_at=now + self._ttl,
        )
        with self._lock:
            self._drop_expired(now)
            if state in self._pending:
                raise ValueError("state already pending")
            self._pending[state] = flow
        return flow

    def consume(self, state: str) -> AuthRequestState | None:
        """Remove and return the flow for state; None if unknown, used, or expired."""
        with self._lock:
            flow = self._pending.pop(state, None)
        if flow is None or flow.expired(self._clock()):
            return None
        return flow

    def _drop_expired(self, now: float) -> int:
        # Caller holds the lock
        expired = [s for s, f in self._pending.items() if f.expired(now)]
        for s in expired:
            del self._pending[s]
        return len(expired)

    def sweep(self) -> int:
        """Drop expired flows. Returns how many were removed."""
        with self._lock:
            return self._drop_expired(self._clock())

    def __len__(self) -> int:
        """Number of live (unexpired) pending flows."""
        with self._lock:
            self._drop_expired(self._clock())
            return len(self._pending)
