"""Named, versioned response caches with per-cache expiration."""

from __future__ import annotations

import time
from collections import OrderedDict
from dataclasses import dataclass

import structlog

from cashheros.worker.http import FetchResponse, canonical_url

logger = structlog.get_logger()

CACHE_KINDS = ("static", "dynamic", "images", "api", "pages")


class QuotaExceededError(Exception):
    """Storing an entry would exceed the storage quota."""


@dataclass(frozen=True)
class CacheLimits:
    max_entries: int
    max_age_seconds: int


@dataclass
class CacheEntry:
    url: str
    response: FetchResponse
    stored_at: float

    @property
    def size(self) -> int:
        return len(self.response.body)


class CacheNames:
    """The five cache names for one version label, e.g. ``static-cache-v5``."""

    def __init__(self, version: str) -> None:
        self.version = version
        self.static = f"static-cache-{version}"
        self.dynamic = f"dynamic-cache-{version}"
        self.images = f"images-cache-{version}"
        self.api = f"api-cache-{version}"
        self.pages = f"pages-cache-{version}"

    def all(self) -> frozenset[str]:
        return frozenset({self.static, self.dynamic, self.images, self.api, self.pages})

    def by_kind(self, kind: str) -> str:
        return getattr(self, kind)


class Cache:
    """Entries keyed by canonical URL in insertion order.

    Every write prunes expired entries and then the oldest ones beyond
    ``max_entries``; expired entries read as misses.
    """

    def __init__(self, name: str, limits: CacheLimits | None = None) -> None:
        self.name = name
        self.limits = limits
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def size(self) -> int:
        return sum(entry.size for entry in self._entries.values())

    def keys(self) -> list[str]:
        return list(self._entries)

    def _expired(self, entry: CacheEntry, now: float) -> bool:
        return self.limits is not None and now - entry.stored_at >= self.limits.max_age_seconds

    def match(self, url: str, now: float | None = None) -> FetchResponse | None:
        now = time.time() if now is None else now
        key = canonical_url(url)
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._expired(entry, now):
            del self._entries[key]
            return None
        return entry.response

    def put(self, url: str, response: FetchResponse, now: float | None = None) -> None:
        now = time.time() if now is None else now
        key = canonical_url(url)
        self._entries.pop(key, None)
        self._entries[key] = CacheEntry(url=key, response=response, stored_at=now)
        self.prune(now)

    def delete(self, url: str) -> bool:
        return self._entries.pop(canonical_url(url), None) is not None

    def clear(self) -> int:
        removed = len(self._entries)
        self._entries.clear()
        return removed

    def prune(self, now: float | None = None) -> int:
        if self.limits is None:
            return 0
        now = time.time() if now is None else now
        removed = 0
        for key in [k for k, e in self._entries.items() if self._expired(e, now)]:
            del self._entries[key]
            removed += 1
        while len(self._entries) > self.limits.max_entries:
            self._entries.popitem(last=False)
            removed += 1
        return removed


class CacheStorage:
    """All caches of one origin, sharing a byte quota."""

    def __init__(self, quota_bytes: int | None = None) -> None:
        self._caches: dict[str, Cache] = {}
        self.quota_bytes = quota_bytes

    def open(self, name: str, limits: CacheLimits | None = None) -> Cache:
        cache = self._caches.get(name)
        if cache is None:
            cache = Cache(name, limits)
            self._caches[name] = cache
        elif limits is not None:
            cache.limits = limits
        return cache

    def has(self, name: str) -> bool:
        return name in self._caches

    def keys(self) -> list[str]:
        return list(self._caches)

    def delete(self, name: str) -> bool:
        return self._caches.pop(name, None) is not None

    def usage(self) -> int:
        return sum(cache.size for cache in self._caches.values())

    def match(self, url: str, cache_names: frozenset[str] | None = None) -> FetchResponse | None:
        """First hit across caches, restricted to ``cache_names`` when given."""
        for name, cache in self._caches.items():
            if cache_names is not None and name not in cache_names:
                continue
            response = cache.match(url)
            if response is not None:
                return response
        return None

    def write(self, cache: Cache, url: str, response: FetchResponse, now: float | None = None) -> None:
        """Store one entry.

        Raises:
            QuotaExceededError: If the entry does not fit in the remaining quota
        """
        if self.quota_bytes is not None:
            existing = cache.match(url, now)
            freed = len(existing.body) if existing is not None else 0
            if self.usage() - freed + len(response.body) > self.quota_bytes:
                raise QuotaExceededError(f"{cache.name}: {url}")
        cache.put(url, response, now)

    def store(
        self,
        cache: Cache,
        url: str,
        response: FetchResponse,
        purge_first: str | None = None,
        now: float | None = None,
    ) -> bool:
        """Write with quota recovery: on exhaustion clear ``purge_first`` and retry once."""
        try:
            self.write(cache, url, response, now)
            return True
        except QuotaExceededError:
            if purge_first is None or purge_first not in self._caches:
                logger.warning("cache_quota_exceeded", cache=cache.name, url=url)
                return False
            purged = self._caches[purge_first].clear()
            logger.warning("cache_quota_purged", purged_cache=purge_first, entries=purged)
        try:
            self.write(cache, url, response, now)
            return True
        except QuotaExceededError:
            logger.warning("cache_quota_exceeded", cache=cache.name, url=url)
            return False
