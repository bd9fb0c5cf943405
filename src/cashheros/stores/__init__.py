"""Process-wide stores used by the edge pipeline."""

from cashheros.config import get_settings
from cashheros.stores.base import LoginAttempt, RateDecision, RateStore, bucket_key, login_key
from cashheros.stores.memory import MemoryRateStore
from cashheros.stores.redis_store import RedisRateStore
from cashheros.stores.sessions import CsrfStore, Session, SessionStore

__all__ = [
    "CsrfStore",
    "LoginAttempt",
    "MemoryRateStore",
    "RateDecision",
    "RateStore",
    "RedisRateStore",
    "Session",
    "SessionStore",
    "bucket_key",
    "get_csrf_store",
    "get_rate_store",
    "get_session_store",
    "login_key",
]

# Singleton instances
_rate_store: RateStore | None = None
_session_store: SessionStore | None = None
_csrf_store: CsrfStore | None = None


def get_rate_store() -> RateStore:
    """Get the rate store singleton selected by settings."""
    global _rate_store
    if _rate_store is None:
        if get_settings().rate_store == "redis":
            _rate_store = RedisRateStore()
        else:
            _rate_store = MemoryRateStore()
    return _rate_store


def get_session_store() -> SessionStore:
    """Get the session store singleton."""
    global _session_store
    if _session_store is None:
        settings = get_settings()
        _session_store = SessionStore(
            idle_seconds=settings.session_idle_seconds,
            anonymous_idle_seconds=settings.anonymous_session_idle_seconds,
        )
    return _session_store


def get_csrf_store() -> CsrfStore:
    """Get the CSRF secret store singleton."""
    global _csrf_store
    if _csrf_store is None:
        _csrf_store = CsrfStore()
    return _csrf_store
