"""Route class bounding every handler by the configured timeout."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Coroutine
from typing import Any

import structlog
from fastapi.routing import APIRoute
from starlette.requests import Request
from starlette.responses import Response

from cashheros.config import get_settings
from cashheros.errors import HandlerTimeoutError

logger = structlog.get_logger()


class EdgeRoute(APIRoute):
    """``APIRoute`` whose handler is cancelled once the timeout elapses."""

    timeout_seconds: float | None = None

    def get_route_handler(self) -> Callable[[Request], Coroutine[Any, Any, Response]]:
        handler = super().get_route_handler()
        route_path = self.path

        async def bounded_handler(request: Request) -> Response:
            timeout = self.timeout_seconds or get_settings().handler_timeout_seconds
            try:
                return await asyncio.wait_for(handler(request), timeout=timeout)
            except TimeoutError as err:
                logger.error("handler_timed_out", route=route_path, timeout=timeout)
                raise HandlerTimeoutError() from err

        return bounded_handler
