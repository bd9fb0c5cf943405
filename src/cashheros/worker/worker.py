"""Worker lifecycle: install, activate, fetch interception, messages and sync."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

import redis.asyncio as redis
import structlog

from cashheros.worker.caches import CACHE_KINDS, CacheLimits, CacheNames, CacheStorage
from cashheros.worker.clients import Clients, Message
from cashheros.worker.config import WorkerSettings, get_worker_settings
from cashheros.worker.http import FetchRequest, FetchResponse, Fetcher, HttpxFetcher, NetworkError
from cashheros.worker.queue import OfflineQueue
from cashheros.worker.router import StrategyRouter
from cashheros.worker.strategies import CacheFirst, NetworkFirst, StaleWhileRevalidate, TaskTracker

logger = structlog.get_logger()

OFFLINE_MESSAGE = "Your request has been saved and will be sent when you are back online."


class WorkerState(StrEnum):
    PARSED = "parsed"
    INSTALLING = "installing"
    INSTALLED = "installed"
    ACTIVATING = "activating"
    ACTIVATED = "activated"
    REDUNDANT = "redundant"


class ServiceWorker:
    """One worker version.

    All state (cache names, strategies, router) is built here, before any
    event is handled.
    """

    def __init__(
        self,
        settings: WorkerSettings,
        storage: CacheStorage,
        fetcher: Fetcher,
        queue: OfflineQueue,
        clients: Clients,
    ) -> None:
        self.settings = settings
        self.storage = storage
        self.fetcher = fetcher
        self.queue = queue
        self.clients = clients
        self.version = settings.version_label
        self.names = CacheNames(self.version)
        self.state = WorkerState.PARSED
        self.skip_waiting_requested = False
        self.registration: Registration | None = None
        self.tracker = TaskTracker()
        self.sync_tags: set[str] = set()

        limits = {kind: CacheLimits(*settings.cache_limits[kind]) for kind in CACHE_KINDS}
        caches = {kind: storage.open(self.names.by_kind(kind), limits[kind]) for kind in CACHE_KINDS}
        images = self.names.images
        self.router = StrategyRouter(
            settings.origin,
            pages=NetworkFirst(storage, caches["pages"], fetcher, self._shell_fallback, images),
            images=CacheFirst(storage, caches["images"], fetcher, self._image_fallback, images),
            static=StaleWhileRevalidate(storage, caches["static"], fetcher, None, images, tracker=self.tracker),
            api=NetworkFirst(storage, caches["api"], fetcher, None, images),
            dynamic=CacheFirst(storage, caches["dynamic"], fetcher, None, images),
        )

    def url(self, path: str) -> str:
        return f"{self.settings.origin.rstrip('/')}{path}"

    # === Fallbacks ===

    async def _shell_fallback(self, request: FetchRequest) -> FetchResponse | None:
        static = self.storage.open(self.names.static)
        return static.match(self.url(self.settings.shell_url)) or static.match(self.url(self.settings.offline_url))

    async def _image_fallback(self, request: FetchRequest) -> FetchResponse | None:
        return self.storage.match(self.url(self.settings.placeholder_image), self.names.all())

    # === Lifecycle ===

    async def install(self, replacing: bool = False) -> None:
        """Precache the shell; unreachable assets are logged and skipped."""
        self.state = WorkerState.INSTALLING
        static = self.storage.open(self.names.static)
        cached = 0
        for path in self.settings.precache_list:
            request = FetchRequest(url=self.url(path))
            try:
                response = await self.fetcher(request)
            except NetworkError as err:
                logger.warning("precache_failed", url=request.url, error=str(err))
                continue
            if not response.ok:
                logger.warning("precache_failed", url=request.url, status=response.status)
                continue
            self.storage.store(static, request.url, response, purge_first=self.names.images)
            cached += 1

        self.state = WorkerState.INSTALLED
        logger.info("worker_installed", version=self.version, precached=cached)
        if self.settings.skip_waiting_on_install:
            self.skip_waiting()
        if replacing:
            self.clients.post_all({"type": "sw-update", "waiting": not self.skip_waiting_requested})

    def skip_waiting(self) -> None:
        self.skip_waiting_requested = True

    async def activate(self) -> None:
        """Delete every cache not named for this version, then claim all pages."""
        self.state = WorkerState.ACTIVATING
        removed = await self.cleanup_caches()
        claimed = self.clients.claim(self.version)
        self.state = WorkerState.ACTIVATED
        logger.info("worker_activated", version=self.version, removed_caches=removed, clients=claimed)
        self.clients.post_all({"type": "sw-activated", "version": self.version})

    async def cleanup_caches(self) -> list[str]:
        current = self.names.all()
        removed = [name for name in self.storage.keys() if name not in current]
        for name in removed:
            self.storage.delete(name)
        return removed

    # === Events ===

    async def fetch(self, request: FetchRequest) -> FetchResponse | None:
        """Answer an intercepted request; None means the page goes to the network itself."""
        if self.router.is_same_origin(request) and not request.is_safe and request.is_api:
            return await self._send_or_queue(request)

        strategy = self.router.route(request)
        if strategy is None:
            return None
        return await strategy.handle(request)

    async def _send_or_queue(self, request: FetchRequest) -> FetchResponse:
        retained = request.clone()
        try:
            return await self.fetcher(request)
        except NetworkError:
            await self.queue.enqueue(retained)
            self.sync_tags.add(self.settings.sync_tag)
            return FetchResponse.from_json(202, {"offline": True, "message": OFFLINE_MESSAGE}, url=request.url)

    async def message(self, data: Message) -> None:
        kind = data.get("type") if isinstance(data, dict) else None
        if kind == "skip-waiting":
            self.skip_waiting()
            if self.registration is not None and self.registration.waiting is self:
                await self.registration.promote()
        elif kind == "clear-caches":
            names = self.storage.keys()
            for name in names:
                self.storage.delete(name)
            logger.info("caches_cleared", caches=len(names))
            self.clients.post_all({"type": "caches-cleared", "success": True})
        else:
            logger.debug("message_ignored", type=kind)

    async def sync(self, tag: str) -> None:
        if tag == self.settings.sync_tag:
            await self.drain()

    async def periodic_sync(self, tag: str) -> None:
        if tag == self.settings.cleanup_tag:
            removed = await self.cleanup_caches()
            logger.info("periodic_cache_cleanup", removed_caches=removed)

    async def online(self) -> None:
        await self.drain()

    async def drain(self) -> int:
        """Replay the offline queue and tell pages what happened."""
        result = await self.queue.drain(self.fetcher)
        if result is None:
            return 0
        for dropped in result.dropped:
            self.clients.post_all({"type": "background-sync-dropped", **dropped})
        if result.replayed:
            self.clients.post_all({"type": "background-sync-completed", "count": result.replayed})
        if not result.stopped:
            self.sync_tags.discard(self.settings.sync_tag)
        return result.replayed

    async def close(self) -> None:
        await self.tracker.wait()


class Registration:
    """Active and waiting worker of one scope."""

    def __init__(self) -> None:
        self.active: ServiceWorker | None = None
        self.waiting: ServiceWorker | None = None

    async def register(self, worker: ServiceWorker) -> ServiceWorker:
        worker.registration = self
        await worker.install(replacing=self.active is not None)
        self.waiting = worker
        if self.active is None or worker.skip_waiting_requested:
            await self.promote()
        return worker

    async def promote(self) -> None:
        worker = self.waiting
        if worker is None:
            return
        if self.active is not None:
            self.active.state = WorkerState.REDUNDANT
        self.active, self.waiting = worker, None
        await worker.activate()


def create_worker(
    settings: WorkerSettings | None = None,
    storage: CacheStorage | None = None,
    clients: Clients | None = None,
    fetcher: Fetcher | None = None,
    redis_client: Any = None,
) -> ServiceWorker:
    """Wire a worker from settings, creating whatever collaborators are not given."""
    settings = settings or get_worker_settings()
    client = redis_client
    if client is None:
        client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
    return ServiceWorker(
        settings=settings,
        storage=storage or CacheStorage(settings.storage_quota_bytes),
        fetcher=fetcher or HttpxFetcher.create(settings.network_timeout_seconds),
        queue=OfflineQueue(client, settings.queue_key, settings.queue_retention_seconds),
        clients=clients or Clients(),
    )
