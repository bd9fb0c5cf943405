"""Composition of the edge pipeline and the error shaping stage.

Each stage is an async callable ``stage(request, call_next)`` returning either
a response or an ``ApiError`` value. Stages are composed by a plain function;
the outermost stage (error shaping) turns error values and unhandled
exceptions into the JSON envelope.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable, Sequence
from typing import Protocol

import structlog
from fastapi import FastAPI
from starlette.requests import Request
from starlette.responses import Response

from cashheros.edge.context import edge_context
from cashheros.edge.fingerprint import client_ip, resolve_route_key
from cashheros.errors import ApiError, InternalError
from cashheros.metrics import metrics

logger = structlog.get_logger()

Outcome = Response | ApiError
Next = Callable[[Request], Awaitable[Outcome]]


class Stage(Protocol):
    async def __call__(self, request: Request, call_next: Next) -> Outcome: ...


def compose(stages: Sequence[Stage], endpoint: Next) -> Next:
    """Chain ``stages`` in order in front of ``endpoint``."""
    handler = endpoint
    for stage in reversed(stages):
        handler = _bind(stage, handler)
    return handler


def _bind(stage: Stage, call_next: Next) -> Next:
    async def run(request: Request) -> Outcome:
        return await stage(request, call_next)

    return run


class ErrorShapingStage:
    """Outermost stage: fingerprints the request and renders every outcome."""

    def __init__(self, trusted_proxies: frozenset[str]) -> None:
        self._trusted = trusted_proxies

    async def __call__(self, request: Request, call_next: Next) -> Outcome:
        ctx = edge_context(request)
        incoming_id = request.headers.get("x-request-id")
        if incoming_id and len(incoming_id) <= 128:
            ctx.request_id = incoming_id
        ctx.client_ip = client_ip(request, self._trusted)
        ctx.route_key = resolve_route_key(request)

        structlog.contextvars.bind_contextvars(request_id=ctx.request_id)
        start = time.perf_counter()
        try:
            try:
                outcome = await call_next(request)
            except ApiError as exc:
                outcome = exc
            except Exception as exc:
                logger.exception(
                    "unhandled_exception",
                    error=str(exc),
                    path=request.url.path,
                    correlation_id=ctx.request_id,
                )
                outcome = InternalError(ctx.request_id)

            if isinstance(outcome, ApiError):
                metrics.errors_total.labels(kind=outcome.kind.value).inc()
                response = outcome.to_response()
            else:
                response = outcome
            ctx.apply(response)

            duration = time.perf_counter() - start
            metrics.http_requests_total.labels(
                method=request.method,
                route=ctx.route_key,
                status=response.status_code,
            ).inc()
            metrics.http_request_duration.labels(
                method=request.method,
                route=ctx.route_key,
            ).observe(duration)
            logger.info(
                "request_completed",
                method=request.method,
                route=ctx.route_key,
                status=response.status_code,
                client=ctx.client_ip,
                duration_ms=round(duration * 1000, 2),
            )
            return response
        finally:
            structlog.contextvars.unbind_contextvars("request_id")


def install_pipeline(app: FastAPI, stages: Sequence[Stage]) -> None:
    """Run ``stages`` in front of the app's router for every HTTP request."""

    @app.middleware("http")
    async def edge_pipeline(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        outcome = await compose(stages, call_next)(request)
        if isinstance(outcome, ApiError):
            # Only reachable when no shaping stage was installed
            return outcome.to_response()
        return outcome
