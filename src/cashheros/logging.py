"""Structured logging for the edge service and the worker."""

import logging
import sys
from collections.abc import MutableMapping
from typing import Any

import structlog

from cashheros import __version__
from cashheros.config import get_settings

# Event keys whose values must never reach the log stream
SENSITIVE_KEYS = frozenset(
    {
        "authorization",
        "password",
        "token",
        "refresh_token",
        "csrf_token",
        "id_token",
        "access_token",
        "cookie",
        "secret",
    }
)
REDACTED = "[redacted]"


def redact_secrets(logger: Any, method_name: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    """Mask credentials passed as event fields, including one level of nested dicts."""
    for key, value in event_dict.items():
        if key.lower() in SENSITIVE_KEYS:
            event_dict[key] = REDACTED
        elif isinstance(value, dict):
            event_dict[key] = {k: REDACTED if str(k).lower() in SENSITIVE_KEYS else v for k, v in value.items()}
    return event_dict


def log_level(name: str) -> int:
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else logging.INFO


def add_static_fields(**fields: Any) -> Any:
    """Processor adding fixed fields to every event."""

    def processor(logger: Any, method_name: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
        for key, value in fields.items():
            event_dict.setdefault(key, value)
        return event_dict

    return processor


def setup_logging() -> None:
    """Configure structlog once per process."""
    settings = get_settings()
    level = log_level(settings.log_level)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        add_static_fields(service="cashheros", version=__version__, environment=settings.environment),
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if settings.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,  # type: ignore[arg-type]
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    # Uvicorn's access log duplicates request_completed
    for noisy in ("uvicorn.access", "httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
