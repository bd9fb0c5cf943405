"""API-key admission for machine-to-machine route prefixes."""

from __future__ import annotations

import secrets
from collections.abc import Mapping, Sequence

import structlog
from starlette.requests import Request

from cashheros.edge.context import edge_context
from cashheros.edge.fingerprint import api_key_id
from cashheros.edge.pipeline import Next, Outcome
from cashheros.edge.sanitize import ZERO_WIDTH
from cashheros.errors import ApiError, ForbiddenError, UnauthorizedError
from cashheros.metrics import metrics

logger = structlog.get_logger()

API_KEY_HEADER = "X-API-Key"


class ApiKeyStage:
    """Admit requests under a guarded prefix only with a key for an allowed service.

    ``routes`` maps a path prefix to the services it admits; an empty list
    admits any configured key. Paths outside every prefix pass untouched.
    """

    def __init__(self, keys: Mapping[str, str], routes: Mapping[str, Sequence[str]]) -> None:
        self._keys = [(key.encode("utf-8"), service) for key, service in keys.items() if key]
        # Longest prefix first so nested guards win
        self._routes = sorted(
            ((prefix.rstrip("/"), frozenset(services)) for prefix, services in routes.items()),
            key=lambda item: len(item[0]),
            reverse=True,
        )

    def guard_for(self, path: str) -> frozenset[str] | None:
        for prefix, services in self._routes:
            if path == prefix or path.startswith(prefix + "/"):
                return services
        return None

    def service_for(self, presented: str) -> str | None:
        """Service owning ``presented``; every configured key is compared."""
        candidate = presented.encode("utf-8")
        owner = None
        for key, service in self._keys:
            if secrets.compare_digest(candidate, key):
                owner = service
        return owner

    async def __call__(self, request: Request, call_next: Next) -> Outcome:
        services = self.guard_for(request.url.path)
        if services is None or request.method == "OPTIONS":
            return await call_next(request)

        presented = ZERO_WIDTH.sub("", request.headers.get(API_KEY_HEADER, "")).strip()
        if not presented:
            return self._reject(
                request,
                UnauthorizedError("API key is required", details={"reason": "api-key-missing"}),
            )

        service = self.service_for(presented)
        if service is None:
            return self._reject(request, UnauthorizedError("Invalid API key", details={"reason": "api-key-invalid"}))
        if services and service not in services:
            return self._reject(
                request,
                ForbiddenError("API key not authorized for this service", details={"reason": "api-key-scope"}),
            )

        edge_context(request).api_service = service
        request.state.api_service = service
        logger.debug("api_key_admitted", service=service, key=api_key_id(presented), path=request.url.path)
        return await call_next(request)

    def _reject(self, request: Request, error: ApiError) -> ApiError:
        reason = (error.details or {}).get("reason", "unknown")
        metrics.api_key_rejections_total.labels(reason=reason).inc()
        logger.warning("api_key_rejected", reason=reason, path=request.url.path)
        return error


def current_api_service(request: Request) -> str | None:
    """Dependency: the service whose key admitted the request, if any."""
    return getattr(request.state, "api_service", None)
