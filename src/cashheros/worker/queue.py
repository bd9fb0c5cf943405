"""Durable FIFO of mutating API requests that failed while offline."""

from __future__ import annotations

import asyncio
import base64
import json
import time
import uuid
from dataclasses import dataclass, field

import redis.asyncio as redis
import structlog
from pydantic import BaseModel, ConfigDict, Field

from cashheros.worker.http import FetchRequest, Fetcher, NetworkError

logger = structlog.get_logger()


class QueuedRequest(BaseModel):
    """A cloned request waiting for replay; credentials travel in ``headers``."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    method: str
    url: str
    headers: dict[str, str] = Field(default_factory=dict)
    body: str | None = None  # base64
    enqueued_at: float = Field(..., alias="enqueuedAt")
    deadline: float

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_request(cls, request: FetchRequest, now: float, retention: int) -> QueuedRequest:
        return cls(
            method=request.method,
            url=request.url,
            headers=dict(request.headers),
            body=base64.b64encode(request.body).decode("ascii") if request.body is not None else None,
            enqueued_at=now,
            deadline=now + retention,
        )

    def to_request(self) -> FetchRequest:
        return FetchRequest(
            url=self.url,
            method=self.method,
            headers=dict(self.headers),
            body=base64.b64decode(self.body) if self.body is not None else None,
        )


@dataclass
class DrainResult:
    """Outcome of one drain pass."""

    replayed: int = 0
    dropped: list[dict[str, object]] = field(default_factory=list)
    stopped: bool = False


class OfflineQueue:
    """Entries stored as one JSON list under a single key.

    Every mutation is a read-modify-write of that key, serialized by a lock.
    At most one drain runs at a time.
    """

    def __init__(self, client: redis.Redis, key: str, retention_seconds: int) -> None:
        self._client = client
        self._key = key
        self._retention = retention_seconds
        self._lock = asyncio.Lock()
        self._draining = False

    @property
    def draining(self) -> bool:
        return self._draining

    async def _read(self) -> list[QueuedRequest]:
        data = await self._client.get(self._key)
        if not data:
            return []
        return [QueuedRequest.model_validate(item) for item in json.loads(data)]

    async def _write(self, entries: list[QueuedRequest]) -> None:
        if not entries:
            await self._client.delete(self._key)
            return
        payload = json.dumps([entry.model_dump(mode="json", by_alias=True) for entry in entries])
        await self._client.set(self._key, payload)

    async def enqueue(self, request: FetchRequest, now: float | None = None) -> QueuedRequest:
        now = time.time() if now is None else now
        entry = QueuedRequest.from_request(request, now, self._retention)
        async with self._lock:
            entries = await self._read()
            entries.append(entry)
            await self._write(entries)
        logger.info("request_queued", url=entry.url, method=entry.method, size=len(entries))
        return entry

    async def entries(self) -> list[QueuedRequest]:
        return await self._read()

    async def size(self) -> int:
        return len(await self._read())

    async def remove(self, entry_id: str) -> None:
        async with self._lock:
            entries = await self._read()
            await self._write([e for e in entries if e.id != entry_id])

    async def clear(self) -> None:
        async with self._lock:
            await self._client.delete(self._key)

    async def drain(self, fetcher: Fetcher, now: float | None = None) -> DrainResult | None:
        """Replay entries oldest first.

        Success or 4xx removes the entry; a network error or 5xx stops the
        pass and keeps it. Entries past their deadline are dropped unsent.
        Returns None when another drain is already running.
        """
        if self._draining:
            return None
        self._draining = True
        result = DrainResult()
        try:
            for entry in await self._read():
                current = time.time() if now is None else now
                if current >= entry.deadline:
                    await self.remove(entry.id)
                    result.dropped.append({"url": entry.url, "reason": "expired"})
                    logger.info("queued_request_expired", url=entry.url)
                    continue

                try:
                    response = await fetcher(entry.to_request())
                except NetworkError:
                    result.stopped = True
                    break

                if response.status >= 500:
                    logger.info("replay_deferred", url=entry.url, status=response.status)
                    result.stopped = True
                    break

                await self.remove(entry.id)
                if response.status >= 400:
                    result.dropped.append({"url": entry.url, "status": response.status})
                    logger.warning("queued_request_rejected", url=entry.url, status=response.status)
                else:
                    result.replayed += 1
        finally:
            self._draining = False

        logger.info(
            "offline_queue_drained",
            replayed=result.replayed,
            dropped=len(result.dropped),
            stopped=result.stopped,
        )
        return result
