"""Session and CSRF secret stores.

Sessions, tokens and CSRF secrets refer to each other by identifier only and
are resolved through these stores on every use.
"""

from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, field

import structlog

logger = structlog.get_logger()


def new_secret() -> str:
    return secrets.token_hex(32)


@dataclass
class Session:
    """A browser session, anonymous until a subject logs in."""

    sid: str
    subject: str | None = None
    created_at: float = field(default_factory=time.time)
    last_seen: float = field(default_factory=time.time)


class SessionStore:
    """In-process map of session id to session.

    Sessions idle longer than their limit are treated as absent and evicted
    by ``purge()``, which runs at most once per ``purge_interval``. Anonymous
    sessions get a shorter limit than signed-in ones.
    """

    def __init__(
        self,
        idle_seconds: float = 7 * 24 * 3600,
        anonymous_idle_seconds: float = 3600,
        purge_interval: float = 60.0,
    ) -> None:
        self._sessions: dict[str, Session] = {}
        self._idle = idle_seconds
        self._anonymous_idle = anonymous_idle_seconds
        self._purge_interval = purge_interval
        self._last_purge = 0.0

    def __len__(self) -> int:
        return len(self._sessions)

    def _expired(self, session: Session, now: float) -> bool:
        limit = self._idle if session.subject else self._anonymous_idle
        return now >= session.last_seen + limit

    def get(self, sid: str | None, now: float | None = None) -> Session | None:
        if not sid:
            return None
        now = time.time() if now is None else now
        session = self._sessions.get(sid)
        if session is None or self._expired(session, now):
            return None
        session.last_seen = now
        return session

    def create(self, sid: str | None = None, now: float | None = None) -> Session:
        now = time.time() if now is None else now
        session = Session(sid=sid or secrets.token_urlsafe(24), created_at=now, last_seen=now)
        self._sessions.setdefault(session.sid, session)
        return self._sessions[session.sid]

    def bind(self, sid: str, subject: str | None) -> Session:
        session = self._sessions.get(sid) or self.create(sid)
        session.subject = subject
        session.last_seen = time.time()
        return session

    def sessions_for(self, subject: str) -> list[str]:
        return [s.sid for s in self._sessions.values() if s.subject == subject]

    def destroy(self, sid: str) -> None:
        self._sessions.pop(sid, None)

    def purge(self, now: float | None = None) -> list[str]:
        """Evict idle sessions; returns the evicted session ids."""
        now = time.time() if now is None else now
        self._last_purge = now
        stale = [sid for sid, s in self._sessions.items() if self._expired(s, now)]
        for sid in stale:
            del self._sessions[sid]
        if stale:
            logger.debug("sessions_purged", removed=len(stale))
        return stale

    def purge_due(self, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        return now - self._last_purge >= self._purge_interval


class CsrfStore:
    """Server-side half of the double-submit CSRF pair, keyed by session id."""

    def __init__(self) -> None:
        self._secrets: dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._secrets)

    def get(self, sid: str | None) -> str | None:
        if not sid:
            return None
        return self._secrets.get(sid)

    def mint(self, sid: str, preferred: str | None = None) -> str:
        """Create the secret for ``sid`` if it has none yet.

        Concurrent first requests of the same session converge on whichever
        secret was stored first; a cookie the request already carries wins
        over a freshly generated value.
        """
        return self._secrets.setdefault(sid, preferred or new_secret())

    def rotate(self, sid: str) -> str:
        secret = new_secret()
        self._secrets[sid] = secret
        logger.debug("csrf_secret_rotated", sid=sid[:8])
        return secret

    def destroy(self, sid: str) -> None:
        self._secrets.pop(sid, None)
