"""Compression negotiation."""

from __future__ import annotations

import gzip

from starlette.requests import Request
from starlette.responses import Response

from cashheros.edge.pipeline import Next, Outcome
from cashheros.errors import ApiError


def accepts_gzip(request: Request) -> bool:
    if request.headers.get("x-no-compression"):
        return False
    encodings = request.headers.get("accept-encoding", "")
    for item in encodings.split(","):
        name, _, params = item.strip().partition(";")
        if name.strip().lower() in ("gzip", "*"):
            return params.replace(" ", "") != "q=0"
    return False


async def read_body(response: Response) -> bytes:
    body = getattr(response, "body", None)
    if body is not None:
        return bytes(body)
    chunks = [chunk async for chunk in response.body_iterator]  # type: ignore[attr-defined]
    return b"".join(c if isinstance(c, bytes) else c.encode("utf-8") for c in chunks)


class CompressionStage:
    """Gzip successful responses when the client accepts it."""

    def __init__(self, min_bytes: int = 1024, level: int = 6) -> None:
        self._min_bytes = min_bytes
        self._level = level

    async def __call__(self, request: Request, call_next: Next) -> Outcome:
        wants_gzip = accepts_gzip(request)
        outcome = await call_next(request)

        if (
            not wants_gzip
            or isinstance(outcome, ApiError)
            or outcome.status_code >= 300
            or "content-encoding" in outcome.headers
        ):
            return outcome

        body = await read_body(outcome)
        raw_headers = [(k, v) for k, v in outcome.raw_headers if k.lower() != b"content-length"]

        if len(body) < self._min_bytes:
            content = body
        else:
            content = gzip.compress(body, compresslevel=self._level)

        response = Response(content=content, status_code=outcome.status_code)
        response.raw_headers = raw_headers + [(b"content-length", str(len(content)).encode("latin-1"))]
        response.background = outcome.background
        if content is not body:
            response.headers["Content-Encoding"] = "gzip"
            vary = response.headers.get("vary")
            response.headers["Vary"] = f"{vary}, Accept-Encoding" if vary else "Accept-Encoding"
        return response
