"""Cache/network strategies applied per request destination."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any

import structlog

from cashheros.worker.caches import Cache, CacheStorage
from cashheros.worker.http import FetchRequest, FetchResponse, Fetcher, NetworkError, offline_response

logger = structlog.get_logger()

Fallback = Callable[[FetchRequest], Awaitable[FetchResponse | None]]


class TaskTracker:
    """Keeps references to background tasks until they finish."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def __len__(self) -> int:
        return len(self._tasks)

    async def wait(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class Strategy(ABC):
    """Answer a request from ``cache`` and/or the network.

    Only 2xx responses are stored. When nothing can answer, the fallback is
    tried and finally a synthetic 408 is returned.
    """

    def __init__(
        self,
        storage: CacheStorage,
        cache: Cache,
        fetcher: Fetcher,
        fallback: Fallback | None = None,
        purge_on_quota: str | None = None,
    ) -> None:
        self.storage = storage
        self.cache_name = cache.name
        self.limits = cache.limits
        self.fetcher = fetcher
        self.fallback = fallback
        self.purge_on_quota = purge_on_quota

    @property
    def cache(self) -> Cache:
        # Resolved on every use; caches may be deleted and recreated
        return self.storage.open(self.cache_name, self.limits)

    @abstractmethod
    async def handle(self, request: FetchRequest) -> FetchResponse: ...

    async def fetch_and_store(self, request: FetchRequest) -> FetchResponse:
        response = await self.fetcher(request)
        if response.ok and request.method == "GET":
            self.storage.store(self.cache, request.url, response, purge_first=self.purge_on_quota)
        return response

    async def unavailable(self, request: FetchRequest) -> FetchResponse:
        if self.fallback is not None:
            response = await self.fallback(request)
            if response is not None:
                return response
        return offline_response(request.url)


class NetworkFirst(Strategy):
    async def handle(self, request: FetchRequest) -> FetchResponse:
        try:
            return await self.fetch_and_store(request)
        except NetworkError:
            cached = self.cache.match(request.url)
            if cached is not None:
                logger.debug("served_from_cache", cache=self.cache.name, url=request.url)
                return cached
            return await self.unavailable(request)


class CacheFirst(Strategy):
    async def handle(self, request: FetchRequest) -> FetchResponse:
        cached = self.cache.match(request.url)
        if cached is not None:
            return cached
        try:
            return await self.fetch_and_store(request)
        except NetworkError:
            return await self.unavailable(request)


class StaleWhileRevalidate(Strategy):
    """Serve the cached copy at once and refresh it in the background."""

    def __init__(self, *args: Any, tracker: TaskTracker, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.tracker = tracker

    async def handle(self, request: FetchRequest) -> FetchResponse:
        cached = self.cache.match(request.url)
        if cached is not None:
            self.tracker.spawn(self._revalidate(request.clone()))
            return cached
        try:
            return await self.fetch_and_store(request)
        except NetworkError:
            return await self.unavailable(request)

    async def _revalidate(self, request: FetchRequest) -> None:
        try:
            await self.fetch_and_store(request)
        except NetworkError:
            logger.debug("revalidation_skipped", url=request.url)
