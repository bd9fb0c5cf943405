"""Request fingerprint: client identity, route key, method and time."""

from __future__ import annotations

import hashlib
from collections.abc import Callable

from starlette.requests import Request
from starlette.routing import Match


def client_ip(request: Request, trusted_proxies: frozenset[str]) -> str:
    """Peer address, following ``X-Forwarded-For`` only through trusted hops.

    The chain is walked right to left and the first untrusted address wins,
    so a client cannot spoof its address by prepending entries.
    """
    peer = request.client.host if request.client else "unknown"
    forwarded = request.headers.get("x-forwarded-for")
    if not forwarded or peer not in trusted_proxies:
        return peer

    hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
    for hop in reversed(hops):
        if hop not in trusted_proxies:
            return hop
    return hops[0] if hops else peer


def resolve_route_key(request: Request) -> str:
    """The matched route's path pattern, or the literal path when none matches."""
    router = getattr(request.scope.get("app"), "router", None)
    if router is None:
        return request.url.path

    partial: str | None = None
    for route in router.routes:
        match, _ = route.matches(request.scope)
        if match == Match.FULL:
            return getattr(route, "path", request.url.path)
        if match == Match.PARTIAL and partial is None:
            partial = getattr(route, "path", None)
    return partial or request.url.path


def api_key_id(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()[:16]


def client_identity(
    request: Request,
    ip: str,
    subject_from_token: Callable[[str], str | None],
) -> str:
    """Account id, then API-key id, then network address."""
    auth = request.headers.get("authorization") or ""
    if auth.lower().startswith("bearer "):
        subject = subject_from_token(auth.split(" ", 1)[1].strip())
        if subject:
            return f"user:{subject}"

    api_key = request.headers.get("x-api-key")
    if api_key:
        return f"key:{api_key_id(api_key)}"

    return f"ip:{ip}"
