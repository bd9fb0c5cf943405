"""Fixed-window rate limiting and progressive login lockout."""

from __future__ import annotations

import math
from collections.abc import Callable
from dataclasses import dataclass

import structlog
from starlette.requests import Request
from starlette.responses import Response

from cashheros.config import Settings
from cashheros.edge.context import MONITORING_PATHS, edge_context
from cashheros.edge.fingerprint import client_identity
from cashheros.edge.pipeline import Next, Outcome
from cashheros.errors import TooManyRequestsError
from cashheros.metrics import metrics
from cashheros.stores.base import RateStore, bucket_key, login_key

logger = structlog.get_logger()


@dataclass(frozen=True)
class RateRule:
    """A named fixed-window limit; each name owns its own counters."""

    name: str
    window: int
    ceiling: int


@dataclass(frozen=True)
class LoginRule:
    max_attempts: int
    window: int
    lockout: int
    paths: frozenset[str]


class RuleBook:
    """Resolve the general rule for a route pattern."""

    def __init__(self, default_window: int, default_ceiling: int, overrides: dict[str, tuple[int, int]]):
        self._default = (default_window, default_ceiling)
        self._overrides = dict(overrides)

    def rule_for(self, route_key: str) -> RateRule:
        window, ceiling = self._overrides.get(route_key, self._default)
        return RateRule(name=f"route:{route_key}", window=window, ceiling=ceiling)

    @classmethod
    def from_settings(cls, settings: Settings) -> RuleBook:
        return cls(settings.default_window_seconds, settings.default_limit, settings.route_limits)


def login_rule_from_settings(settings: Settings) -> LoginRule:
    return LoginRule(
        max_attempts=settings.login_max_attempts,
        window=settings.login_window_seconds,
        lockout=settings.login_lockout_seconds,
        paths=settings.login_path_set,
    )


def login_account(payload: object) -> str:
    """Account identifier submitted to a login endpoint."""
    if isinstance(payload, dict):
        email = payload.get("email")
        if isinstance(email, str) and email.strip():
            return email
    return "-"


class RateLimitStage:
    """Apply the route's general rule, then the login rule on login endpoints.

    The first rule to be exceeded rejects the request.
    """

    def __init__(
        self,
        store: Callable[[], RateStore],
        rules: RuleBook,
        login: LoginRule,
        subject_from_token: Callable[[str], str | None],
    ) -> None:
        self._store = store
        self._rules = rules
        self._login = login
        self._subject_from_token = subject_from_token

    async def __call__(self, request: Request, call_next: Next) -> Outcome:
        if request.url.path in MONITORING_PATHS or request.method == "OPTIONS":
            return await call_next(request)

        ctx = edge_context(request)
        ctx.identity = client_identity(request, ctx.client_ip, self._subject_from_token)
        rule = self._rules.rule_for(ctx.route_key)

        decision = await self._store().increment_and_check(
            bucket_key(ctx.identity, rule.name), rule.window, rule.ceiling
        )
        ctx.response_headers.update(decision.headers())

        if not decision.allowed:
            metrics.rate_limit_decisions_total.labels(rule=rule.name, result="rejected").inc()
            logger.warning(
                "rate_limit_exceeded",
                rule=rule.name,
                identity=ctx.identity,
                count=decision.count,
                retry_after=decision.retry_after,
            )
            return TooManyRequestsError(retry_after=decision.retry_after)
        metrics.rate_limit_decisions_total.labels(rule=rule.name, result="allowed").inc()

        if request.method == "POST" and request.url.path in self._login.paths:
            return await self._limit_login(request, call_next)
        return await call_next(request)

    async def _limit_login(self, request: Request, call_next: Next) -> Outcome:
        ctx = edge_context(request)
        store = self._store()
        key = login_key(login_account(ctx.payload), ctx.client_ip)

        remaining = await store.lockout_remaining(key)
        if remaining > 0:
            metrics.rate_limit_decisions_total.labels(rule="login", result="locked").inc()
            logger.info("login_locked_out", client=ctx.client_ip, retry_after=math.ceil(remaining))
            return TooManyRequestsError(
                "Too many login attempts, please try again later",
                retry_after=max(1, math.ceil(remaining)),
            )

        # The attempt that would reach the limit is rejected without running
        if await store.login_failures(key) + 1 >= self._login.max_attempts:
            await store.lockout(key, self._login.lockout)
            metrics.login_lockouts_total.inc()
            metrics.rate_limit_decisions_total.labels(rule="login", result="locked").inc()
            logger.warning("login_lockout_started", client=ctx.client_ip, failures=self._login.max_attempts)
            return TooManyRequestsError(
                "Too many login attempts, please try again later",
                retry_after=self._login.lockout,
            )

        outcome = await call_next(request)
        if isinstance(outcome, Response) and outcome.status_code == 401:
            attempt = await store.record_login_attempt(key, self._login.window)
            logger.debug("login_failure_counted", client=ctx.client_ip, failures=attempt.failures)
        return outcome
