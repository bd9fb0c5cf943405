"""Per-request state shared by the pipeline stages and the route handlers."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from starlette.requests import Request
from starlette.responses import Response

# Health checks and metric scrapes; no session, no rate limit
MONITORING_PATHS = frozenset({"/health", "/ready", "/metrics"})


@dataclass
class CookieSpec:
    """Arguments for ``Response.set_cookie``."""

    key: str
    value: str
    max_age: int | None = None
    httponly: bool = False
    secure: bool = False
    samesite: str = "lax"
    path: str = "/"


@dataclass
class EdgeContext:
    """Request fingerprint plus the response decorations stages collect.

    Stages never hold on to the response itself; they record headers and
    cookies here and the shaping stage applies them to whatever response
    finally leaves the pipeline, error envelopes included.
    """

    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started_at: float = field(default_factory=time.time)
    client_ip: str = "unknown"
    identity: str | None = None
    route_key: str = ""
    session_id: str | None = None
    api_service: str | None = None
    payload: Any = None
    response_headers: dict[str, str] = field(default_factory=dict)
    cookies: dict[str, CookieSpec] = field(default_factory=dict)
    deleted_cookies: set[str] = field(default_factory=set)

    def set_cookie(self, spec: CookieSpec) -> None:
        self.deleted_cookies.discard(spec.key)
        self.cookies[spec.key] = spec

    def delete_cookie(self, key: str) -> None:
        self.cookies.pop(key, None)
        self.deleted_cookies.add(key)

    def apply(self, response: Response) -> Response:
        for name, value in self.response_headers.items():
            if name.lower() == "vary" and "vary" in response.headers:
                existing = response.headers["vary"]
                if value.lower() not in existing.lower():
                    response.headers["Vary"] = f"{existing}, {value}"
                continue
            response.headers.setdefault(name, value)
        for spec in self.cookies.values():
            response.set_cookie(
                spec.key,
                spec.value,
                max_age=spec.max_age,
                path=spec.path,
                secure=spec.secure,
                httponly=spec.httponly,
                samesite=spec.samesite,  # type: ignore[arg-type]
            )
        for key in self.deleted_cookies:
            response.delete_cookie(key, path="/")
        response.headers["X-Request-ID"] = self.request_id
        return response


def edge_context(request: Request) -> EdgeContext:
    """Return the context for ``request``, creating it on first use."""
    ctx = getattr(request.state, "edge", None)
    if ctx is None:
        ctx = EdgeContext()
        request.state.edge = ctx
    return ctx
