"""Redis rate store shared by every edge process."""

import time

import redis.asyncio as redis
import structlog
from redis.exceptions import NoScriptError, RedisError

from cashheros.config import get_settings
from cashheros.metrics import metrics
from cashheros.stores.base import LoginAttempt, RateDecision, RateStore, retry_after_seconds

logger = structlog.get_logger()

# Lua script for fixed window counting (atomic operation)
FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local window_ms = tonumber(ARGV[1])

local count = redis.call('INCR', key)
if count == 1 then
    redis.call('PEXPIRE', key, window_ms)
end

local ttl = redis.call('PTTL', key)
if ttl < 0 then
    redis.call('PEXPIRE', key, window_ms)
    ttl = window_ms
end
return {count, ttl}
"""

# Lua script for login attempt records (atomic operation)
LOGIN_ATTEMPT_SCRIPT = """
local key = KEYS[1]
local window_ms = tonumber(ARGV[1])
local now = ARGV[2]

local failures = redis.call('HINCRBY', key, 'failures', 1)
if failures == 1 then
    redis.call('HSET', key, 'first_failure', now)
    redis.call('PEXPIRE', key, window_ms)
end
local first_failure = redis.call('HGET', key, 'first_failure')
return {failures, first_failure}
"""


class RedisRateStore(RateStore):
    """Rate store keeping counters in Redis for exact global limits."""

    def __init__(self) -> None:
        self._client: redis.Redis | None = None
        self._fixed_window_sha: str | None = None
        self._login_attempt_sha: str | None = None

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            raise RuntimeError("Redis not connected")
        return self._client

    async def connect(self) -> None:
        """Open the connection pool, verify it and load the Lua scripts."""
        settings = get_settings()
        pool = redis.ConnectionPool(
            host=settings.redis_host,
            port=settings.redis_port,
            password=settings.redis_password or None,
            db=settings.redis_db,
            decode_responses=True,
            max_connections=settings.redis_pool_size,
        )
        self._client = redis.Redis(connection_pool=pool)
        await self._client.ping()
        logger.info("rate_store_connected", backend="redis", host=settings.redis_host, db=settings.redis_db)
        await self._load_scripts()

    async def _load_scripts(self) -> None:
        self._fixed_window_sha = await self.client.script_load(FIXED_WINDOW_SCRIPT)
        self._login_attempt_sha = await self.client.script_load(LOGIN_ATTEMPT_SCRIPT)
        logger.info("lua_scripts_loaded", scripts=["fixed_window", "login_attempt"])

    async def disconnect(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            await self._client.connection_pool.disconnect()
            self._client = None
            logger.info("rate_store_disconnected", backend="redis")

    async def health_check(self) -> bool:
        if self._client is None:
            return False
        try:
            return bool(await self._client.ping())
        except RedisError as err:
            logger.error("rate_store_unhealthy", backend="redis", error=str(err))
            return False

    async def _evalsha(self, script: str, key: str, *args: str) -> list:
        sha = self._fixed_window_sha if script == "fixed_window" else self._login_attempt_sha
        if sha is None:
            raise RuntimeError("Redis not connected")
        try:
            result = await self.client.evalsha(sha, 1, key, *args)  # type: ignore[misc]
        except NoScriptError:
            # SCRIPT FLUSH or a failover dropped the cache
            metrics.redis_operations_total.labels(operation=script, status="reload").inc()
            await self._load_scripts()
            return await self._evalsha(script, key, *args)
        metrics.redis_operations_total.labels(operation=script, status="ok").inc()
        return result

    async def increment_and_check(
        self, key: str, window: int, ceiling: int, now: float | None = None
    ) -> RateDecision:
        now = time.time() if now is None else now
        result = await self._evalsha("fixed_window", key, str(window * 1000))
        count = int(result[0])
        reset_at = now + int(result[1]) / 1000
        allowed = count <= ceiling

        logger.debug("rate_limit_evaluated", key=key, count=count, allow=allowed)

        return RateDecision(
            allowed=allowed,
            count=count,
            ceiling=ceiling,
            reset_at=reset_at,
            retry_after=0 if allowed else retry_after_seconds(reset_at, now),
        )

    async def lockout(self, key: str, duration: int, now: float | None = None) -> float:
        now = time.time() if now is None else now
        await self.client.set(f"lock:{key}", "1", px=duration * 1000)
        return now + duration

    async def lockout_remaining(self, key: str, now: float | None = None) -> float:
        ttl = await self.client.pttl(f"lock:{key}")
        return max(0.0, ttl / 1000) if ttl and ttl > 0 else 0.0

    async def login_failures(self, key: str, now: float | None = None) -> int:
        failures = await self.client.hget(key, "failures")
        return int(failures) if failures else 0

    async def record_login_attempt(
        self, key: str, window: int, now: float | None = None
    ) -> LoginAttempt:
        now = time.time() if now is None else now
        result = await self._evalsha("login_attempt", key, str(window * 1000), str(now))
        return LoginAttempt(failures=int(result[0]), first_failure=float(result[1]))

    async def clear_login(self, key: str) -> None:
        await self.client.delete(key, f"lock:{key}")
