"""Security and caching headers for every response leaving the edge."""

from __future__ import annotations

from starlette.requests import Request

from cashheros.edge.context import edge_context
from cashheros.edge.pipeline import Next, Outcome

STATIC_SUFFIXES = (
    ".js", ".css", ".png", ".jpg", ".jpeg", ".gif", ".svg", ".ico",
    ".woff", ".woff2", ".ttf", ".eot", ".webp", ".avif",
)

CSP_DIRECTIVES = (
    "default-src 'self'",
    "script-src 'self' https://accounts.google.com https://connect.facebook.net",
    "style-src 'self' 'unsafe-inline' https://fonts.googleapis.com",
    "font-src 'self' https://fonts.gstatic.com data:",
    "img-src 'self' data: https:",
    "connect-src 'self' https://accounts.google.com https://graph.facebook.com",
    "frame-src https://accounts.google.com https://www.facebook.com",
    "object-src 'none'",
    "frame-ancestors 'none'",
    "base-uri 'self'",
    "form-action 'self'",
)

PERMISSIONS_POLICY = ", ".join(
    (
        "accelerometer=()",
        "camera=()",
        "geolocation=(self)",
        "gyroscope=()",
        "magnetometer=()",
        "microphone=()",
        "payment=(self)",
        "usb=()",
        "interest-cohort=()",
    )
)

API_NO_STORE = {
    "Cache-Control": "no-store, no-cache, must-revalidate, proxy-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
    "Surrogate-Control": "no-store",
}


def baseline_headers(production: bool, hsts_max_age: int) -> dict[str, str]:
    """Headers that do not depend on the request.

    Production enforces the content policy and pins HTTPS; other
    environments report policy violations without blocking.
    """
    headers = {
        "X-Content-Type-Options": "nosniff",
        "X-Frame-Options": "DENY",
        "X-XSS-Protection": "1; mode=block",
        "Referrer-Policy": "strict-origin-when-cross-origin",
        "Permissions-Policy": PERMISSIONS_POLICY,
        "Cross-Origin-Resource-Policy": "same-origin",
        "Cross-Origin-Opener-Policy": "same-origin",
        "Cross-Origin-Embedder-Policy": "require-corp" if production else "unsafe-none",
    }
    policy = "; ".join(CSP_DIRECTIVES)
    if production:
        headers["Content-Security-Policy"] = f"{policy}; upgrade-insecure-requests"
        headers["Strict-Transport-Security"] = f"max-age={hsts_max_age}; includeSubDomains; preload"
    else:
        headers["Content-Security-Policy-Report-Only"] = policy
    return headers


def cache_headers(path: str) -> dict[str, str]:
    if path.startswith("/api/"):
        return API_NO_STORE
    if path.lower().endswith(STATIC_SUFFIXES):
        return {"Cache-Control": "public, max-age=31536000, immutable"}
    return {"Cache-Control": "no-cache, must-revalidate, max-age=0"}


class SecurityHeadersStage:
    """Record the header set on the context before anything can short-circuit.

    Headers a handler sets itself are kept; the context only fills gaps.
    """

    def __init__(self, production: bool, hsts_max_age: int = 31_536_000) -> None:
        self._baseline = baseline_headers(production, hsts_max_age)

    async def __call__(self, request: Request, call_next: Next) -> Outcome:
        ctx = edge_context(request)
        for name, value in self._baseline.items():
            ctx.response_headers.setdefault(name, value)
        for name, value in cache_headers(request.url.path).items():
            ctx.response_headers.setdefault(name, value)
        return await call_next(request)
