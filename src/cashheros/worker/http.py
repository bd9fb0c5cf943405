"""Request/response values seen by the worker and the network fetcher."""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from typing import Any, Protocol

import httpx
import structlog

logger = structlog.get_logger()

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


class NetworkError(Exception):
    """The request never produced an HTTP response (offline, DNS, reset, timeout)."""


def is_api_path(path: str) -> bool:
    """Requests under the backend API prefix."""
    return path == "/api" or path.startswith("/api/")


def canonical_url(url: str) -> str:
    """Cache key for ``url``: fragment dropped, scheme and host normalized."""
    return str(httpx.URL(url).copy_with(fragment=None))


@dataclass
class FetchRequest:
    """A request issued by a page."""

    url: str
    method: str = "GET"
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes | None = None
    destination: str = ""  # document, image, script, style, ...
    mode: str = "cors"  # navigate for top-level page loads

    def __post_init__(self) -> None:
        self.method = self.method.upper()

    @property
    def origin(self) -> str:
        parsed = httpx.URL(self.url)
        port = f":{parsed.port}" if parsed.port else ""
        return f"{parsed.scheme}://{parsed.host}{port}"

    @property
    def path(self) -> str:
        return httpx.URL(self.url).path

    @property
    def is_safe(self) -> bool:
        return self.method in SAFE_METHODS

    @property
    def is_api(self) -> bool:
        return is_api_path(self.path)

    def clone(self) -> FetchRequest:
        return replace(self, headers=dict(self.headers))


@dataclass
class FetchResponse:
    status: int
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    url: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json(self) -> Any:
        return json.loads(self.body)

    @classmethod
    def from_json(cls, status: int, payload: Any, url: str = "") -> FetchResponse:
        return cls(
            status=status,
            headers={"Content-Type": "application/json"},
            body=json.dumps(payload).encode("utf-8"),
            url=url,
        )


def offline_response(url: str = "") -> FetchResponse:
    """Synthetic response when neither the network nor a cache can answer."""
    return FetchResponse(status=408, headers={"Content-Type": "text/plain"}, body=b"Network unavailable", url=url)


class Fetcher(Protocol):
    async def __call__(self, request: FetchRequest) -> FetchResponse: ...


class HttpxFetcher:
    """Network access through ``httpx``; transport failures become ``NetworkError``.

    HTTP error statuses are returned as responses, never raised.
    """

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    @classmethod
    def create(cls, timeout: float, transport: httpx.AsyncBaseTransport | None = None) -> HttpxFetcher:
        return cls(httpx.AsyncClient(timeout=timeout, transport=transport, follow_redirects=True))

    async def __call__(self, request: FetchRequest) -> FetchResponse:
        try:
            response = await self._client.request(
                request.method,
                request.url,
                headers=request.headers,
                content=request.body,
            )
        except httpx.TransportError as err:
            logger.info("network_request_failed", url=request.url, error=type(err).__name__)
            raise NetworkError(str(err)) from err
        return FetchResponse(
            status=response.status_code,
            headers=dict(response.headers),
            body=response.content,
            url=str(response.url),
        )

    async def aclose(self) -> None:
        await self._client.aclose()
