"""Unit tests for the rate stores and the session/CSRF stores."""

from unittest.mock import AsyncMock

import pytest
from redis.exceptions import NoScriptError

from cashheros.config import Settings
from cashheros.edge.csrf import SessionCookies
from cashheros.stores import CsrfStore, MemoryRateStore, RedisRateStore, SessionStore, bucket_key, login_key


class TestKeys:
    def test_bucket_key_isolates_rules(self):
        assert bucket_key("ip:1.2.3.4", "route:/a") != bucket_key("ip:1.2.3.4", "route:/b")

    def test_login_key_normalizes_account(self):
        assert login_key(" A@B.com ", "10.0.0.1") == "login:a@b.com:10.0.0.1"


class TestMemoryRateStore:
    """Tests for the per-process store."""

    @pytest.fixture
    def store(self):
        return MemoryRateStore()

    @pytest.mark.asyncio
    async def test_allows_up_to_ceiling(self, store):
        decisions = [await store.increment_and_check("k", 60, 3, now=1000.0) for _ in range(5)]
        assert [d.allowed for d in decisions] == [True, True, True, False, False]
        assert decisions[2].remaining == 0
        assert decisions[0].headers()["X-RateLimit-Limit"] == "3"

    @pytest.mark.asyncio
    async def test_retry_after_counts_down_to_window_end(self, store):
        await store.increment_and_check("k", 60, 1, now=1000.0)
        decision = await store.increment_and_check("k", 60, 1, now=1030.2)
        assert not decision.allowed
        assert decision.retry_after == 30
        assert decision.reset_at == 1060.0

    @pytest.mark.asyncio
    async def test_window_resets_count_and_start_together(self, store):
        for _ in range(3):
            await store.increment_and_check("k", 60, 2, now=1000.0)
        decision = await store.increment_and_check("k", 60, 2, now=1060.0)
        assert decision.allowed
        assert decision.count == 1
        assert decision.reset_at == 1120.0

    @pytest.mark.asyncio
    async def test_lockout_expires_and_clears_record(self, store):
        await store.record_login_attempt("login:a@b.com:ip", 900, now=1000.0)
        await store.lockout("login:a@b.com:ip", 1800, now=1000.0)

        assert await store.lockout_remaining("login:a@b.com:ip", now=1100.0) == 1700.0
        assert await store.lockout_remaining("login:a@b.com:ip", now=2800.0) == 0.0

        attempt = await store.record_login_attempt("login:a@b.com:ip", 900, now=2801.0)
        assert attempt.failures == 1

    @pytest.mark.asyncio
    async def test_login_attempts_count_within_window(self, store):
        for _ in range(3):
            attempt = await store.record_login_attempt("k", 900, now=1000.0)
        assert attempt.failures == 3
        attempt = await store.record_login_attempt("k", 900, now=1900.0)
        assert attempt.failures == 1

    @pytest.mark.asyncio
    async def test_login_failures_reads_without_counting(self, store):
        assert await store.login_failures("k", now=1000.0) == 0
        await store.record_login_attempt("k", 900, now=1000.0)
        await store.record_login_attempt("k", 900, now=1001.0)
        assert await store.login_failures("k", now=1002.0) == 2
        assert await store.login_failures("k", now=1002.0) == 2
        assert await store.login_failures("k", now=1900.0) == 0

    @pytest.mark.asyncio
    async def test_clear_login_removes_lockout(self, store):
        await store.record_login_attempt("k", 900, now=1000.0)
        await store.lockout("k", 1800, now=1000.0)
        await store.clear_login("k")
        assert await store.lockout_remaining("k", now=1001.0) == 0.0

    @pytest.mark.asyncio
    async def test_purge_evicts_idle_entries(self, store):
        await store.increment_and_check("a", 60, 5, now=1000.0)
        await store.increment_and_check("b", 600, 5, now=1000.0)
        removed = await store.purge(now=1100.0)
        assert removed == 1
        decision = await store.increment_and_check("b", 600, 5, now=1100.0)
        assert decision.count == 2


class TestRedisRateStore:
    """Tests for the Redis store with a mocked script runner."""

    @pytest.fixture
    def store(self, mock_redis):
        store = RedisRateStore()
        store._client = mock_redis
        store._fixed_window_sha = "sha_fixed"
        store._login_attempt_sha = "sha_login"
        return store

    @pytest.mark.asyncio
    async def test_increment_and_check_allows(self, store, mock_redis):
        mock_redis.evalsha = AsyncMock(return_value=[1, 60000])
        decision = await store.increment_and_check("k", 60, 5, now=1000.0)
        assert decision.allowed
        assert decision.remaining == 4
        assert decision.reset_at == 1060.0
        mock_redis.evalsha.assert_called_once_with("sha_fixed", 1, "k", "60000")

    @pytest.mark.asyncio
    async def test_increment_and_check_rejects_over_ceiling(self, store, mock_redis):
        mock_redis.evalsha = AsyncMock(return_value=[6, 12500])
        decision = await store.increment_and_check("k", 60, 5, now=1000.0)
        assert not decision.allowed
        assert decision.retry_after == 13

    @pytest.mark.asyncio
    async def test_reloads_scripts_on_noscript(self, store, mock_redis):
        mock_redis.evalsha = AsyncMock(side_effect=[NoScriptError("gone"), [1, 60000]])
        mock_redis.script_load = AsyncMock(return_value="sha_new")
        decision = await store.increment_and_check("k", 60, 5, now=1000.0)
        assert decision.allowed
        assert mock_redis.script_load.await_count == 2

    @pytest.mark.asyncio
    async def test_lockout_uses_key_ttl(self, store):
        await store.lockout("login:a@b.com:ip", 1800)
        remaining = await store.lockout_remaining("login:a@b.com:ip")
        assert 1790 < remaining <= 1800

        await store.clear_login("login:a@b.com:ip")
        assert await store.lockout_remaining("login:a@b.com:ip") == 0.0

    @pytest.mark.asyncio
    async def test_record_login_attempt(self, store, mock_redis):
        mock_redis.evalsha = AsyncMock(return_value=[3, "1000.0"])
        attempt = await store.record_login_attempt("k", 900, now=1200.0)
        assert attempt.failures == 3
        assert attempt.first_failure == 1000.0

    @pytest.mark.asyncio
    async def test_login_failures_reads_hash(self, store, mock_redis):
        assert await store.login_failures("k") == 0
        await mock_redis.hset("k", "failures", 4)
        assert await store.login_failures("k") == 4

    @pytest.mark.asyncio
    async def test_health_check(self, store):
        assert await store.health_check() is True
        assert await RedisRateStore().health_check() is False

    @pytest.mark.asyncio
    async def test_not_connected(self):
        with pytest.raises(RuntimeError):
            await RedisRateStore().increment_and_check("k", 60, 5)


class TestSessionStores:
    def test_mint_prefers_carried_secret_and_is_idempotent(self):
        csrf = CsrfStore()
        first = csrf.mint("sid-1", preferred="from-cookie")
        second = csrf.mint("sid-1", preferred="other")
        assert first == second == "from-cookie"

    def test_rotate_replaces_secret(self):
        csrf = CsrfStore()
        old = csrf.mint("sid-1")
        assert csrf.rotate("sid-1") != old

    def test_sessions_for_subject(self):
        sessions = SessionStore()
        a = sessions.create()
        b = sessions.create()
        sessions.bind(a.sid, "user-1")
        sessions.bind(b.sid, "user-1")
        sessions.create()
        assert sorted(sessions.sessions_for("user-1")) == sorted([a.sid, b.sid])

        sessions.destroy(a.sid)
        assert sessions.get(a.sid) is None

    def test_idle_anonymous_session_expires_first(self):
        sessions = SessionStore(idle_seconds=1000, anonymous_idle_seconds=10)
        anonymous = sessions.create(now=100.0)
        signed_in = sessions.create(now=100.0)
        sessions.bind(signed_in.sid, "user-1")

        assert sessions.get(anonymous.sid, now=105.0) is anonymous
        assert sessions.get(anonymous.sid, now=116.0) is None
        assert sessions.get(signed_in.sid, now=116.0) is not None

    def test_purge_evicts_idle_sessions_with_their_secrets(self):
        settings = Settings()
        sessions = SessionStore(anonymous_idle_seconds=10)
        csrf = CsrfStore()
        cookies = SessionCookies(settings, sessions, csrf)
        stale = sessions.create(now=100.0)
        csrf.mint(stale.sid)
        fresh = sessions.create(now=200.0)
        csrf.mint(fresh.sid)

        assert cookies.purge(now=205.0) == 1
        assert len(sessions) == 1
        assert csrf.get(stale.sid) is None
        assert csrf.get(fresh.sid) is not None
