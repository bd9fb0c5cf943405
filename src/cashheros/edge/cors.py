"""Cross-origin admission."""

from __future__ import annotations

from dataclasses import dataclass, field

import structlog
from starlette.requests import Request
from starlette.responses import Response

from cashheros.edge.context import edge_context
from cashheros.edge.pipeline import Next, Outcome
from cashheros.errors import ForbiddenError

logger = structlog.get_logger()

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})
DEFAULT_METHODS = ("GET", "HEAD", "OPTIONS", "POST", "PUT", "PATCH", "DELETE")
DEFAULT_HEADERS = ("Content-Type", "Authorization", "X-CSRF-Token", "X-Requested-With", "X-API-Key")
EXPOSED_HEADERS = (
    "X-CSRF-Token",
    "X-Request-ID",
    "X-RateLimit-Limit",
    "X-RateLimit-Remaining",
    "X-RateLimit-Reset",
    "Retry-After",
)


def normalize_origin(origin: str) -> str:
    return origin.strip().rstrip("/").lower()


@dataclass
class CorsPolicy:
    """Allow list and permitted methods/headers.

    Origins are compared exactly on scheme, host and port; ``www.`` variants
    are separate entries. A ``*`` entry admits only requests that carry no
    credentials.
    """

    origins: list[str]
    methods: tuple[str, ...] = DEFAULT_METHODS
    headers: tuple[str, ...] = DEFAULT_HEADERS
    max_age: int = 86400
    _exact: frozenset[str] = field(init=False, repr=False)
    _wildcard: bool = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._exact = frozenset(normalize_origin(o) for o in self.origins if o.strip() != "*")
        self._wildcard = any(o.strip() == "*" for o in self.origins)

    def is_listed(self, origin: str) -> bool:
        return normalize_origin(origin) in self._exact

    def admits(self, origin: str, credentialed: bool) -> bool:
        if self.is_listed(origin):
            return True
        return self._wildcard and not credentialed

    def allow_origin_headers(self, origin: str) -> dict[str, str]:
        if self.is_listed(origin):
            return {
                "Access-Control-Allow-Origin": origin,
                "Access-Control-Allow-Credentials": "true",
                "Vary": "Origin",
            }
        return {"Access-Control-Allow-Origin": "*"}

    def preflight(self, origin: str, requested_method: str, requested_headers: str) -> Response:
        """Answer a preflight with the intersection of requested and permitted."""
        permitted_methods = {m.upper() for m in self.methods}
        methods = [m for m in [requested_method.strip().upper()] if m in permitted_methods]

        permitted_headers = {h.lower(): h for h in self.headers}
        asked = [h.strip() for h in requested_headers.split(",") if h.strip()]
        headers = [permitted_headers[h.lower()] for h in asked if h.lower() in permitted_headers]

        response = Response(status_code=204)
        for name, value in self.allow_origin_headers(origin).items():
            response.headers[name] = value
        if methods:
            response.headers["Access-Control-Allow-Methods"] = ", ".join(methods)
        if headers:
            response.headers["Access-Control-Allow-Headers"] = ", ".join(headers)
        response.headers["Access-Control-Max-Age"] = str(self.max_age)
        return response


def is_credentialed(request: Request) -> bool:
    return "cookie" in request.headers or "authorization" in request.headers


class CorsStage:
    """Admit or reject a request based on its ``Origin`` before any parsing."""

    def __init__(self, policy: CorsPolicy) -> None:
        self._policy = policy

    async def __call__(self, request: Request, call_next: Next) -> Outcome:
        origin = request.headers.get("origin")
        if not origin:
            return await call_next(request)

        preflight = request.method == "OPTIONS" and "access-control-request-method" in request.headers
        credentialed = is_credentialed(request) or preflight

        if not self._policy.admits(origin, credentialed):
            logger.warning("cors_origin_rejected", origin=origin, path=request.url.path)
            return ForbiddenError("Origin not allowed", details={"reason": "cors-origin"})

        if preflight:
            return self._policy.preflight(
                origin,
                request.headers["access-control-request-method"],
                request.headers.get("access-control-request-headers", ""),
            )

        ctx = edge_context(request)
        ctx.response_headers.update(self._policy.allow_origin_headers(origin))
        ctx.response_headers["Access-Control-Expose-Headers"] = ", ".join(EXPOSED_HEADERS)
        return await call_next(request)
