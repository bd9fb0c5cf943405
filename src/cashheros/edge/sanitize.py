"""Input sanitization: refuse query operators, strip markup from strings."""

from __future__ import annotations

import json
import re
from html.parser import HTMLParser
from typing import Any

import structlog
from starlette.requests import Request

from cashheros.edge.context import edge_context
from cashheros.edge.pipeline import Next, Outcome
from cashheros.errors import BadRequestError
from cashheros.metrics import metrics

logger = structlog.get_logger()

ZERO_WIDTH = re.compile("[\u200b-\u200f\u202a-\u202e\u2060-\u2064\ufeff]")

# Secrets are compared byte for byte and never rendered
VERBATIM_FIELDS = frozenset(
    {
        "password",
        "passwordConfirm",
        "newPassword",
        "currentPassword",
        "token",
        "refreshToken",
        "accessToken",
        "idToken",
        "code",
    }
)

URL_FIELDS = frozenset({"url", "website", "link", "imageUrl", "profilePicture", "avatarUrl"})

DROPPED_ELEMENTS = frozenset({"script", "style"})


class _TextCollector(HTMLParser):
    """Keep text and entity references; drop tags and script/style bodies."""

    def __init__(self) -> None:
        super().__init__(convert_charrefs=False)
        self.parts: list[str] = []
        self._dropping = 0

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag in DROPPED_ELEMENTS:
            self._dropping += 1

    def handle_endtag(self, tag: str) -> None:
        if tag in DROPPED_ELEMENTS and self._dropping:
            self._dropping -= 1

    def handle_data(self, data: str) -> None:
        if not self._dropping:
            self.parts.append(data)

    def handle_entityref(self, name: str) -> None:
        if not self._dropping:
            self.parts.append(f"&{name};")

    def handle_charref(self, name: str) -> None:
        if not self._dropping:
            self.parts.append(f"&#{name};")


def strip_markup(value: str) -> str:
    """Remove tags and invisible characters from ``value``."""
    value = ZERO_WIDTH.sub("", value)
    if "<" not in value:
        return value
    collector = _TextCollector()
    collector.feed(value)
    collector.close()
    return "".join(collector.parts)


def safe_url(value: str) -> str:
    """Keep http(s) and site-relative links; anything else becomes ``#``."""
    candidate = ZERO_WIDTH.sub("", value).strip()
    lowered = candidate.lower()
    if lowered.startswith(("http://", "https://")):
        return candidate
    if candidate.startswith("/") and not candidate.startswith("//"):
        return candidate
    return "#"


def operator_path(value: Any, path: str = "") -> str | None:
    """Dotted path of the first ``$``-prefixed key in ``value``, if any."""
    if isinstance(value, dict):
        for key, item in value.items():
            where = f"{path}.{key}" if path else str(key)
            if isinstance(key, str) and key.startswith("$"):
                return where
            found = operator_path(item, where)
            if found:
                return found
    elif isinstance(value, list):
        for index, item in enumerate(value):
            found = operator_path(item, f"{path}[{index}]")
            if found:
                return found
    return None


def clean(value: Any, field: str | None = None) -> Any:
    if isinstance(value, dict):
        return {key: clean(item, key) for key, item in value.items()}
    if isinstance(value, list):
        return [clean(item, field) for item in value]
    if not isinstance(value, str) or field in VERBATIM_FIELDS:
        return value
    if field in URL_FIELDS:
        return safe_url(value)
    return strip_markup(value)


class SanitizationStage:
    """Refuse operator keys in queries and bodies, then clean string fields.

    A cleaned body replaces both the parsed payload and the raw bytes the
    handler will read.
    """

    async def __call__(self, request: Request, call_next: Next) -> Outcome:
        for key in request.query_params.keys():
            if key.startswith("$") or "[$" in key:
                return self._reject(request, "query", key)

        ctx = edge_context(request)
        if ctx.payload is None:
            return await call_next(request)

        where = operator_path(ctx.payload)
        if where:
            return self._reject(request, "body", where)

        cleaned = clean(ctx.payload)
        if cleaned != ctx.payload:
            logger.info("payload_sanitized", path=request.url.path)
            ctx.payload = cleaned
            request._body = json.dumps(cleaned).encode("utf-8")
        return await call_next(request)

    def _reject(self, request: Request, location: str, key: str) -> BadRequestError:
        metrics.payload_rejections_total.labels(location=location).inc()
        logger.warning("operator_key_rejected", location=location, key=key, path=request.url.path)
        return BadRequestError(
            "Request contains a disallowed operator key",
            details={"reason": "operator-injection", "field": key},
        )
