"""Property-based tests using Hypothesis for limiter, cache and queue invariants."""

import asyncio
from collections import Counter

import fakeredis
import fakeredis.aioredis
from hypothesis import given, settings
from hypothesis import strategies as st

from cashheros.stores import MemoryRateStore
from cashheros.worker.caches import Cache, CacheLimits
from cashheros.worker.http import FetchRequest, FetchResponse, canonical_url
from cashheros.worker.queue import OfflineQueue


class TestFixedWindowProperties:
    """Property-based tests ensuring rate limiting invariants."""

    @given(
        ceiling=st.integers(min_value=1, max_value=50),
        window=st.integers(min_value=1, max_value=900),
        offsets=st.lists(st.floats(min_value=0, max_value=3000, allow_nan=False), min_size=1, max_size=120),
    )
    @settings(max_examples=50)
    def test_never_exceeds_ceiling_per_window(self, ceiling: int, window: int, offsets: list[float]):
        """
        Property: Never allow more than the ceiling within one window.

        Decisions sharing a reset time belong to the same window.
        """
        store = MemoryRateStore()

        async def run():
            return [
                await store.increment_and_check("k", window, ceiling, now=1000.0 + offset)
                for offset in sorted(offsets)
            ]

        decisions = asyncio.run(run())
        allowed_per_window = Counter(d.reset_at for d in decisions if d.allowed)

        assert all(count <= ceiling for count in allowed_per_window.values())

    @given(
        ceiling=st.integers(min_value=1, max_value=10),
        window=st.integers(min_value=1, max_value=900),
        extra=st.integers(min_value=1, max_value=20),
        elapsed=st.floats(min_value=0, max_value=0.999),
    )
    @settings(max_examples=50)
    def test_retry_after_within_window(self, ceiling: int, window: int, extra: int, elapsed: float):
        """
        Property: A rejection's Retry-After is at least 1 and never beyond the window.
        """
        store = MemoryRateStore()

        async def run():
            for _ in range(ceiling):
                await store.increment_and_check("k", window, ceiling, now=1000.0)
            return [
                await store.increment_and_check("k", window, ceiling, now=1000.0 + elapsed * window)
                for _ in range(extra)
            ]

        for decision in asyncio.run(run()):
            assert not decision.allowed
            assert 1 <= decision.retry_after <= window
            assert decision.remaining == 0

    @given(
        ceiling=st.integers(min_value=1, max_value=20),
        identities=st.lists(st.sampled_from(["ip:a", "ip:b", "user:c"]), min_size=1, max_size=60),
    )
    @settings(max_examples=30)
    def test_identities_do_not_share_counters(self, ceiling: int, identities: list[str]):
        """
        Property: Each identity gets exactly min(requests, ceiling) allowances.
        """
        store = MemoryRateStore()

        async def run():
            return [
                (identity, await store.increment_and_check(identity, 60, ceiling, now=1000.0))
                for identity in identities
            ]

        allowed = Counter(identity for identity, decision in asyncio.run(run()) if decision.allowed)
        requested = Counter(identities)

        for identity, count in requested.items():
            assert allowed[identity] == min(count, ceiling)


class TestCacheProperties:
    """Property-based tests for cache bounds."""

    @given(
        max_entries=st.integers(min_value=1, max_value=20),
        paths=st.lists(st.text(alphabet="abcdef", min_size=1, max_size=8), min_size=1, max_size=80),
    )
    @settings(max_examples=50)
    def test_entry_count_bounded_and_newest_kept(self, max_entries: int, paths: list[str]):
        """
        Property: A cache never holds more than max_entries, and the last write is always present.
        """
        cache = Cache("dynamic-cache-v1", CacheLimits(max_entries=max_entries, max_age_seconds=3600))
        for path in paths:
            cache.put(f"https://cashheros.com/{path}", FetchResponse(status=200, body=b"x"), now=1000.0)
            assert len(cache) <= max_entries

        assert cache.match(f"https://cashheros.com/{paths[-1]}", now=1000.0) is not None

    @given(fragment=st.text(alphabet="abcxyz0123", max_size=10))
    def test_canonical_url_ignores_fragment(self, fragment: str):
        url = "https://cashheros.com/deals"
        assert canonical_url(f"{url}#{fragment}") == canonical_url(url)


class TestQueueProperties:
    """Property-based tests for the offline queue."""

    @given(paths=st.lists(st.text(alphabet="abcdefgh", min_size=1, max_size=6), min_size=1, max_size=15))
    @settings(max_examples=25, deadline=None)
    def test_replay_preserves_enqueue_order(self, paths: list[str]):
        """
        Property: Drained requests are replayed exactly once, oldest first.
        """
        replayed: list[str] = []

        async def network(request: FetchRequest) -> FetchResponse:
            replayed.append(request.url)
            return FetchResponse(status=201)

        async def run():
            queue = OfflineQueue(
                fakeredis.aioredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True),
                "q",
                retention_seconds=3600,
            )
            for index, path in enumerate(paths):
                await queue.enqueue(
                    FetchRequest(f"https://cashheros.com/api/{path}", method="POST", body=b"{}"),
                    now=1000.0 + index,
                )
            result = await queue.drain(network, now=2000.0)
            return result, await queue.size()

        result, remaining = asyncio.run(run())

        assert replayed == [f"https://cashheros.com/api/{path}" for path in paths]
        assert result.replayed == len(paths)
        assert remaining == 0
