"""Rate store interface shared by the in-memory and Redis implementations."""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class RateDecision:
    """Outcome of one fixed-window hit."""

    allowed: bool
    count: int
    ceiling: int
    reset_at: float
    retry_after: int = 0

    @property
    def remaining(self) -> int:
        return max(0, self.ceiling - self.count)

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.ceiling),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_at)),
        }


@dataclass(frozen=True)
class LoginAttempt:
    """Snapshot of a login-attempt record after an attempt was counted."""

    failures: int
    first_failure: float


def bucket_key(identity: str, rule: str) -> str:
    """Key for the (client identity, rule name) bucket."""
    return f"ratelimit:{rule}:{identity}"


def login_key(account: str, client_ip: str) -> str:
    """Key for the (account identifier, client ip) login-attempt record."""
    return f"login:{account.strip().lower()}:{client_ip}"


def retry_after_seconds(reset_at: float, now: float) -> int:
    """Whole seconds until ``reset_at``, never less than one."""
    return max(1, math.ceil(reset_at - now))


class RateStore(ABC):
    """Counter, lockout and login-attempt storage used by the pipeline.

    The pipeline depends only on these operations. The in-memory store keeps
    counters per process; a shared store gives exact global limits.
    """

    async def connect(self) -> None:
        """Open connections, if the store has any."""

    async def disconnect(self) -> None:
        """Release connections, if the store has any."""

    async def health_check(self) -> bool:
        return True

    @abstractmethod
    async def increment_and_check(
        self, key: str, window: int, ceiling: int, now: float | None = None
    ) -> RateDecision:
        """Count one hit in the current window and compare with ``ceiling``.

        The count and the window start reset together once the window has
        elapsed.
        """

    @abstractmethod
    async def lockout(self, key: str, duration: int, now: float | None = None) -> float:
        """Lock ``key`` for ``duration`` seconds; returns the expiry epoch."""

    @abstractmethod
    async def lockout_remaining(self, key: str, now: float | None = None) -> float:
        """Seconds left on an active lockout, or 0."""

    @abstractmethod
    async def login_failures(self, key: str, now: float | None = None) -> int:
        """Failures recorded for ``key`` in its current login window."""

    @abstractmethod
    async def record_login_attempt(
        self, key: str, window: int, now: float | None = None
    ) -> LoginAttempt:
        """Count a failed attempt inside the login window."""

    @abstractmethod
    async def clear_login(self, key: str) -> None:
        """Forget the attempt record and any lockout for ``key``."""

    async def purge(self, now: float | None = None) -> int:
        """Evict idle entries; returns how many were removed."""
        return 0
