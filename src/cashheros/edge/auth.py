"""Bearer-token authentication and per-route authorization."""

from __future__ import annotations

import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import structlog
from fastapi import Request
from jose import ExpiredSignatureError, JWTError, jwt

from cashheros.config import Settings
from cashheros.edge.pipeline import Next, Outcome
from cashheros.errors import ForbiddenError, UnauthorizedError
from cashheros.metrics import metrics
from cashheros.repository import Account, AccountRepository, Role, get_account_repository

logger = structlog.get_logger()

ACCESS = "access"
REFRESH = "refresh"


class TokenError(Exception):
    """A token could not be accepted."""


@dataclass(frozen=True)
class Principal:
    """The authenticated subject attached to a request."""

    subject: str
    role: str
    session_id: str | None
    token_id: str
    expires_at: int


@dataclass(frozen=True)
class IssuedToken:
    token: str
    token_id: str
    expires_at: int


class TokenDenylist:
    """Token ids revoked before their expiry (logout)."""

    def __init__(self) -> None:
        self._revoked: dict[str, float] = {}

    def revoke(self, token_id: str, expires_at: float) -> None:
        self._revoked[token_id] = expires_at
        self._purge()

    def is_revoked(self, token_id: str) -> bool:
        return token_id in self._revoked

    def _purge(self) -> None:
        now = time.time()
        for token_id in [t for t, exp in self._revoked.items() if exp <= now]:
            del self._revoked[token_id]


class TokenCodec:
    """Mint and verify access and refresh JWTs."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def _secret(self, typ: str) -> str:
        return self._settings.jwt_secret if typ == ACCESS else self._settings.jwt_refresh_secret

    def _issue(self, typ: str, account: Account, session_id: str | None, ttl: int) -> IssuedToken:
        now = int(time.time())
        token_id = uuid.uuid4().hex
        claims: dict[str, Any] = {
            "sub": account.id,
            "sid": session_id,
            "iat": now,
            "exp": now + ttl,
            "jti": token_id,
            "typ": typ,
            "ver": account.token_version,
        }
        if typ == ACCESS:
            claims["role"] = account.role.value
            claims["email"] = account.email
        token = jwt.encode(claims, self._secret(typ), algorithm=self._settings.jwt_algorithm)
        return IssuedToken(token=token, token_id=token_id, expires_at=claims["exp"])

    def issue_access(self, account: Account, session_id: str | None) -> IssuedToken:
        return self._issue(ACCESS, account, session_id, self._settings.access_token_ttl_seconds)

    def issue_refresh(self, account: Account, session_id: str | None) -> IssuedToken:
        return self._issue(REFRESH, account, session_id, self._settings.refresh_token_ttl_seconds)

    def decode(self, token: str, typ: str = ACCESS) -> dict[str, Any]:
        """Verify signature, expiry and token type.

        Raises:
            TokenError: If the token is malformed, forged, expired or of the wrong type
        """
        try:
            claims = jwt.decode(
                token,
                self._secret(typ),
                algorithms=[self._settings.jwt_algorithm],
                options={"require_exp": True, "require_sub": True},
            )
        except ExpiredSignatureError as err:
            raise TokenError("expired") from err
        except JWTError as err:
            raise TokenError("invalid") from err
        if claims.get("typ") != typ:
            raise TokenError("wrong-type")
        return claims

    def peek_subject(self, token: str) -> str | None:
        """Subject of a valid access token, without raising."""
        try:
            return self.decode(token)["sub"]
        except TokenError:
            return None


class AuthenticationStage:
    """Attach the bearer token's subject to the request, or reject it.

    No ``Authorization`` header means the request continues anonymously.
    """

    def __init__(
        self,
        codec: TokenCodec,
        denylist: TokenDenylist,
        accounts: Callable[[], AccountRepository] = get_account_repository,
    ) -> None:
        self._codec = codec
        self._denylist = denylist
        self._accounts = accounts

    async def __call__(self, request: Request, call_next: Next) -> Outcome:
        request.state.principal = None
        header = request.headers.get("authorization")
        if header is None:
            return await call_next(request)

        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return self._reject("malformed")

        try:
            claims = self._codec.decode(token.strip())
        except TokenError as err:
            return self._reject(str(err))

        if self._denylist.is_revoked(claims["jti"]):
            return self._reject("revoked")

        account = await self._accounts().get(claims["sub"])
        if account is None or account.token_version != claims.get("ver", 0):
            return self._reject("revoked")

        request.state.principal = Principal(
            subject=claims["sub"],
            role=claims.get("role", Role.USER.value),
            session_id=claims.get("sid"),
            token_id=claims["jti"],
            expires_at=claims["exp"],
        )
        structlog.contextvars.bind_contextvars(subject=claims["sub"])
        try:
            return await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("subject")

    def _reject(self, reason: str) -> UnauthorizedError:
        metrics.auth_failures_total.labels(reason=reason).inc()
        logger.info("bearer_token_rejected", reason=reason)
        message = "Token has expired" if reason == "expired" else "Invalid or expired token"
        return UnauthorizedError(message, details={"reason": reason})


def current_principal(request: Request) -> Principal | None:
    """Dependency: the request's principal, or None for anonymous requests."""
    return getattr(request.state, "principal", None)


async def require_user(request: Request) -> Account:
    """Dependency: the authenticated account, loaded fresh for this request."""
    principal = current_principal(request)
    if principal is None:
        raise UnauthorizedError()
    account = await get_account_repository().get(principal.subject)
    if account is None:
        raise UnauthorizedError("User not found")
    return account


def require_role(*roles: Role) -> Callable[[Request], Awaitable[Account]]:
    """Dependency factory re-checking the stored role; the token's role is advisory."""

    async def dependency(request: Request) -> Account:
        account = await require_user(request)
        if account.role not in roles:
            raise ForbiddenError("Insufficient role", details={"required": [r.value for r in roles]})
        return account

    return dependency
