"""Payload parsing."""

from __future__ import annotations

import json

import structlog
from starlette.requests import Request

from cashheros.edge.context import edge_context
from cashheros.edge.pipeline import Next, Outcome
from cashheros.errors import UnprocessableError

logger = structlog.get_logger()

BODY_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


def is_json(content_type: str) -> bool:
    media_type = content_type.split(";", 1)[0].strip().lower()
    return media_type == "application/json" or media_type.endswith("+json")


class PayloadStage:
    """Read the body once, enforce its size and parse JSON into the context."""

    def __init__(self, max_bytes: int) -> None:
        self._max_bytes = max_bytes

    async def __call__(self, request: Request, call_next: Next) -> Outcome:
        if request.method not in BODY_METHODS:
            return await call_next(request)

        declared = request.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > self._max_bytes:
            return UnprocessableError("Request body too large", details={"reason": "payload-too-large"})

        body = await request.body()
        if len(body) > self._max_bytes:
            return UnprocessableError("Request body too large", details={"reason": "payload-too-large"})

        if not body:
            return await call_next(request)

        content_type = request.headers.get("content-type", "")
        if not is_json(content_type):
            logger.info("payload_unsupported", path=request.url.path, content_type=content_type)
            return UnprocessableError("Unsupported media type", details={"reason": "unsupported-media-type"})

        try:
            edge_context(request).payload = json.loads(body)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            logger.info("payload_malformed", path=request.url.path, error=str(exc))
            return UnprocessableError("Malformed JSON body", details={"reason": "malformed-json"})

        return await call_next(request)
