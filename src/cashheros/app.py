"""FastAPI application for the CashHeros edge."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.exceptions import HTTPException as StarletteHTTPException

from cashheros import __version__
from cashheros.api import auth_router, external_router, feedback_router, users_router
from cashheros.config import get_settings
from cashheros.edge.builder import build_stages
from cashheros.edge.pipeline import install_pipeline
from cashheros.errors import (
    ApiError,
    BadRequestError,
    ForbiddenError,
    NotFoundError,
    ServiceUnavailableError,
    TooManyRequestsError,
    UnauthorizedError,
    success,
)
from cashheros.logging import setup_logging
from cashheros.stores import get_rate_store

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan manager."""
    # Startup
    setup_logging()
    logger.info("cashheros_starting", version=__version__, environment=get_settings().environment)

    store = get_rate_store()
    try:
        await store.connect()
    except Exception as e:
        logger.error("rate_store_connection_failed", error=str(e))
        raise

    yield

    # Shutdown
    await store.disconnect()
    logger.info("cashheros_stopped")


# === Error handlers ===


async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    return exc.to_response()


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Render schema violations as ``bad-request`` with one entry per field."""
    fields = []
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
        fields.append({"field": ".".join(location) or "body", "message": error.get("msg", "Invalid value")})
    return BadRequestError(details={"fields": fields}).to_response()


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Framework errors (unknown route, wrong method) in the envelope shape."""
    error: ApiError
    if exc.status_code == 401:
        error = UnauthorizedError()
    elif exc.status_code == 403:
        error = ForbiddenError()
    elif exc.status_code == 429:
        error = TooManyRequestsError(retry_after=1)
    elif exc.status_code in (404, 405):
        error = NotFoundError("Route not found")
    else:
        error = BadRequestError(str(exc.detail))
    return error.to_response()


# === Health and metrics ===


async def health() -> dict[str, Any]:
    """Health check endpoint."""
    store_healthy = await get_rate_store().health_check()
    return success(
        {
            "status": "healthy" if store_healthy else "degraded",
            "version": __version__,
            "checks": {
                "rate_store": "ok" if store_healthy else "error",
            },
        }
    )


async def ready() -> JSONResponse:
    """Readiness check endpoint."""
    if not await get_rate_store().health_check():
        return ServiceUnavailableError("Rate store unavailable").to_response()
    return JSONResponse(content=success({"status": "ready"}))


async def prometheus_metrics() -> Response:
    """Prometheus metrics endpoint."""
    if not get_settings().metrics_enabled:
        raise NotFoundError("Route not found")
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


def create_app() -> FastAPI:
    """Build the app with the edge pipeline in front of the routers."""
    app = FastAPI(
        title="CashHeros API",
        version=__version__,
        description="CashHeros edge pipeline and account API",
        lifespan=lifespan,
    )

    app.add_exception_handler(ApiError, api_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, validation_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, http_error_handler)  # type: ignore[arg-type]

    app.add_api_route("/health", health, methods=["GET"], tags=["Health"])
    app.add_api_route("/ready", ready, methods=["GET"], tags=["Health"])
    app.add_api_route("/metrics", prometheus_metrics, methods=["GET"], tags=["Observability"])

    app.include_router(auth_router)
    app.include_router(users_router)
    app.include_router(feedback_router)
    app.include_router(external_router)

    install_pipeline(app, build_stages())
    return app


app = create_app()
