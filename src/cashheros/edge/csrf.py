"""Double-submit CSRF validation and the session cookie pair."""

from __future__ import annotations

import secrets

import structlog
from starlette.requests import Request

from cashheros.config import Settings
from cashheros.edge.context import MONITORING_PATHS, CookieSpec, EdgeContext, edge_context
from cashheros.edge.cors import SAFE_METHODS
from cashheros.edge.pipeline import Next, Outcome
from cashheros.errors import ForbiddenError
from cashheros.metrics import metrics
from cashheros.stores.sessions import CsrfStore, SessionStore

logger = structlog.get_logger()


class SessionCookies:
    """Issue, rotate and destroy the ``sid``/``csrf_token`` pair.

    The session id cookie is HttpOnly; the CSRF cookie is readable by the page
    so it can echo the secret in the request header.
    """

    def __init__(self, settings: Settings, sessions: SessionStore, csrf: CsrfStore) -> None:
        self.settings = settings
        self.sessions = sessions
        self.csrf = csrf

    def publish(self, ctx: EdgeContext, sid: str, secret: str) -> None:
        ctx.session_id = sid
        ctx.set_cookie(
            CookieSpec(
                key=self.settings.session_cookie_name,
                value=sid,
                httponly=True,
                secure=self.settings.cookie_secure,
            )
        )
        ctx.set_cookie(
            CookieSpec(
                key=self.settings.csrf_cookie_name,
                value=secret,
                httponly=False,
                secure=self.settings.cookie_secure,
            )
        )
        ctx.response_headers[self.settings.csrf_header_name] = secret

    def establish(self, ctx: EdgeContext, preferred_secret: str | None = None) -> str:
        """Mint a fresh anonymous session and return its secret."""
        if self.sessions.purge_due():
            self.purge()
        session = self.sessions.create()
        secret = self.csrf.mint(session.sid, preferred=preferred_secret)
        self.publish(ctx, session.sid, secret)
        logger.debug("csrf_session_established", sid=session.sid[:8])
        return secret

    def rotate(self, ctx: EdgeContext, subject: str | None) -> str:
        """Rotate the current session's secret and bind it to ``subject``.

        A request that reached a handler without a session gets a new one.
        """
        sid = ctx.session_id
        if sid is None or self.sessions.get(sid) is None:
            sid = self.sessions.create().sid
        self.sessions.bind(sid, subject)
        secret = self.csrf.rotate(sid)
        self.publish(ctx, sid, secret)
        return secret

    def rotate_subject(self, subject: str) -> int:
        """Rotate the secret of every session bound to ``subject``."""
        sids = self.sessions.sessions_for(subject)
        for sid in sids:
            self.csrf.rotate(sid)
        logger.info("csrf_secrets_rotated", subject=subject, sessions=len(sids))
        return len(sids)

    def destroy(self, ctx: EdgeContext) -> str:
        """Drop the current session and hand out a fresh anonymous pair."""
        if ctx.session_id:
            self.csrf.destroy(ctx.session_id)
            self.sessions.destroy(ctx.session_id)
        return self.establish(ctx)

    def current_secret(self, ctx: EdgeContext) -> str | None:
        return self.csrf.get(ctx.session_id)

    def purge(self, now: float | None = None) -> int:
        """Evict idle sessions together with their CSRF secrets."""
        evicted = self.sessions.purge(now)
        for sid in evicted:
            self.csrf.destroy(sid)
        return len(evicted)


class CsrfStage:
    """Reject mutating requests without a matching cookie/header pair."""

    def __init__(self, cookies: SessionCookies, exempt_prefixes: tuple[str, ...] = ()) -> None:
        self._cookies = cookies
        self._exempt = exempt_prefixes

    async def __call__(self, request: Request, call_next: Next) -> Outcome:
        if request.url.path in MONITORING_PATHS or (self._exempt and request.url.path.startswith(self._exempt)):
            return await call_next(request)

        ctx = edge_context(request)
        if ctx.api_service is not None:
            # Key-admitted machine clients carry no browser session
            return await call_next(request)

        settings = self._cookies.settings
        mutating = request.method not in SAFE_METHODS

        sid = request.cookies.get(settings.session_cookie_name)
        carried = request.cookies.get(settings.csrf_cookie_name)
        secret = self._cookies.csrf.get(sid) if self._cookies.sessions.get(sid) else None

        if secret is None:
            self._cookies.establish(ctx, preferred_secret=carried)
            if mutating:
                return self._reject("csrf-missing", request)
            return await call_next(request)

        ctx.session_id = sid
        if not mutating:
            if carried != secret:
                # Secret rotated since the page last read it
                self._cookies.publish(ctx, sid, secret)
            else:
                ctx.response_headers.setdefault(settings.csrf_header_name, secret)
            return await call_next(request)

        header = request.headers.get(settings.csrf_header_name)
        if not carried or not header:
            return self._reject("csrf-missing", request)
        if not (
            secrets.compare_digest(carried.encode(), secret.encode())
            and secrets.compare_digest(header.encode(), secret.encode())
        ):
            return self._reject("csrf-invalid", request)

        return await call_next(request)

    def _reject(self, reason: str, request: Request) -> ForbiddenError:
        metrics.csrf_rejections_total.labels(reason=reason).inc()
        logger.warning("csrf_rejected", reason=reason, path=request.url.path)
        return ForbiddenError("Invalid or missing CSRF token", details={"reason": reason})
