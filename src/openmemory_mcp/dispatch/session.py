"""Client sessions and caller identity.

A session is one logical client connection. It carries the caller's
identity, which seeds the server-injected Filter Spec for every call made
on it, and nothing else: no memory state lives here.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from pydantic import BaseModel, ConfigDict, Field

from ..errors import ScopeViolation
from ..models.scope import FilterSpec

logger = logging.getLogger(__name__)


class CallerIdentity(BaseModel):
    """Who is calling: the user and, optionally, the client application."""

    model_config = ConfigDict(frozen=True)

    user_id: str = Field(min_length=1)
    client_name: str | None = None

    def base_scope(self, scope_by_client: bool = False) -> FilterSpec:
        """Dimensions the server injects into every call from this caller."""
        dims = {"user_id": self.user_id}
        if scope_by_client and self.client_name:
            dims["app_id"] = self.client_name
        return FilterSpec.of(dims)


@dataclass
class Session:
    session_id: str
    identity: CallerIdentity
    created_at: float
    last_seen: float
    calls: int = 0
    closed: bool = field(default=False, repr=False)

    def touch(self, now: float) -> None:
        self.last_seen = now
        self.calls += 1


class SessionRegistry:
    """
    Live sessions keyed by transport session id.

    Sessions are created on first contact and dropped on ``close`` or after
    ``idle_ttl`` seconds without a call. The transport does not report
    disconnects, so a client that goes away without calling ``close_session``
    is reaped by the idle sweep that runs on every ``get_or_create``.

    A session's identity is fixed at creation; a later call claiming another
    user on the same session is refused.
    """

    def __init__(self, idle_ttl: float = 3600.0, clock: Callable[[], float] = time.monotonic):
        if idle_ttl <= 0:
            raise ValueError("idle_ttl must be positive")
        self.idle_ttl = idle_ttl
        self._clock = clock
        self._sessions: dict[str, Session] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def get_or_create(self, session_id: str, identity: CallerIdentity) -> Session:
        now = self._clock()
        self.expire_idle(now)
        session = self._sessions.get(session_id)
        if session is None:
            session = Session(session_id=session_id, identity=identity, created_at=now, last_seen=now)
            self._sessions[session_id] = session
            logger.info(f"Opened session {session_id} for user {identity.user_id}")
        elif session.identity != identity:
            raise ScopeViolation(
                "Caller identity does not match the identity this session was opened with",
                session_id=session_id,
            )
        session.touch(now)
        return session

    def close(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        session.closed = True
        logger.info(f"Closed session {session_id} after {session.calls} calls")
        return True

    def expire_idle(self, now: float | None = None) -> int:
        """Drop sessions idle for longer than the TTL. Returns how many were dropped."""
        now = self._clock() if now is None else now
        expired = [sid for sid, s in self._sessions.items() if now - s.last_seen > self.idle_ttl]
        for sid in expired:
            self._sessions.pop(sid).closed = True
        if expired:
            logger.debug(f"Expired {len(expired)} idle sessions")
        return len(expired)

    def clear(self) -> None:
        for session in self._sessions.values():
            session.closed = True
        self._sessions.clear()
