"""Per-process in-memory rate store."""

from __future__ import annotations

import time
from dataclasses import dataclass

import structlog

from cashheros.stores.base import LoginAttempt, RateDecision, RateStore, retry_after_seconds

logger = structlog.get_logger()


@dataclass
class _Bucket:
    count: int
    window_start: float
    window: int

    def expired(self, now: float) -> bool:
        return now >= self.window_start + self.window


@dataclass
class _LoginRecord:
    failures: int
    first_failure: float
    window: int


class MemoryRateStore(RateStore):
    """Rate store backed by plain dicts.

    Counters are per process: with N worker processes a client can be admitted
    up to N times the ceiling within one window.
    """

    def __init__(self, purge_interval: float = 60.0) -> None:
        self._buckets: dict[str, _Bucket] = {}
        self._logins: dict[str, _LoginRecord] = {}
        self._lockouts: dict[str, float] = {}
        self._purge_interval = purge_interval
        self._last_purge = 0.0

    async def increment_and_check(
        self, key: str, window: int, ceiling: int, now: float | None = None
    ) -> RateDecision:
        now = time.time() if now is None else now
        await self._maybe_purge(now)

        bucket = self._buckets.get(key)
        if bucket is None or bucket.expired(now):
            bucket = _Bucket(count=0, window_start=now, window=window)
            self._buckets[key] = bucket

        bucket.count += 1
        reset_at = bucket.window_start + bucket.window
        allowed = bucket.count <= ceiling
        return RateDecision(
            allowed=allowed,
            count=bucket.count,
            ceiling=ceiling,
            reset_at=reset_at,
            retry_after=0 if allowed else retry_after_seconds(reset_at, now),
        )

    async def lockout(self, key: str, duration: int, now: float | None = None) -> float:
        now = time.time() if now is None else now
        expires_at = now + duration
        self._lockouts[key] = expires_at
        return expires_at

    async def lockout_remaining(self, key: str, now: float | None = None) -> float:
        now = time.time() if now is None else now
        expires_at = self._lockouts.get(key)
        if expires_at is None:
            return 0.0
        if now >= expires_at:
            # Expired lockouts clear the whole record
            del self._lockouts[key]
            self._logins.pop(key, None)
            return 0.0
        return expires_at - now

    async def login_failures(self, key: str, now: float | None = None) -> int:
        now = time.time() if now is None else now
        record = self._logins.get(key)
        if record is None or now >= record.first_failure + record.window:
            return 0
        return record.failures

    async def record_login_attempt(
        self, key: str, window: int, now: float | None = None
    ) -> LoginAttempt:
        now = time.time() if now is None else now
        record = self._logins.get(key)
        if record is None or now >= record.first_failure + record.window:
            record = _LoginRecord(failures=0, first_failure=now, window=window)
            self._logins[key] = record
        record.failures += 1
        return LoginAttempt(failures=record.failures, first_failure=record.first_failure)

    async def clear_login(self, key: str) -> None:
        self._logins.pop(key, None)
        self._lockouts.pop(key, None)

    async def purge(self, now: float | None = None) -> int:
        now = time.time() if now is None else now
        stale_buckets = [k for k, b in self._buckets.items() if b.expired(now)]
        for k in stale_buckets:
            del self._buckets[k]

        stale_locks = [k for k, expires_at in self._lockouts.items() if now >= expires_at]
        for k in stale_locks:
            del self._lockouts[k]

        stale_logins = [
            k
            for k, r in self._logins.items()
            if k not in self._lockouts and now >= r.first_failure + r.window
        ]
        for k in stale_logins:
            del self._logins[k]

        removed = len(stale_buckets) + len(stale_locks) + len(stale_logins)
        if removed:
            logger.debug("rate_store_purged", removed=removed)
        return removed

    async def _maybe_purge(self, now: float) -> None:
        if now - self._last_purge >= self._purge_interval:
            self._last_purge = now
            await self.purge(now)
