"""Account and session service behind the auth and user routes."""

from __future__ import annotations

import time
from collections.abc import Awaitable
from dataclasses import replace

import structlog
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from cashheros.config import Settings, get_settings
from cashheros.edge.auth import REFRESH, Principal, TokenCodec, TokenDenylist, TokenError
from cashheros.edge.builder import get_denylist, get_session_cookies, get_token_codec
from cashheros.edge.context import CookieSpec, EdgeContext
from cashheros.edge.csrf import SessionCookies
from cashheros.errors import (
    ConflictError,
    NotFoundError,
    ProviderVerificationError,
    UnauthorizedError,
)
from cashheros.metrics import metrics
from cashheros.models import AuthPayload, LoginRequest, ProfileUpdate, RegisterRequest, UserOut
from cashheros.oauth import FacebookVerifier, GoogleVerifier, ProviderIdentity
from cashheros.repository import (
    Account,
    AccountRepository,
    DuplicateAccountError,
    IdentityConflictError,
    Role,
    get_account_repository,
)
from cashheros.stores import RateStore, get_rate_store, login_key

logger = structlog.get_logger()


class AuthService:
    """Registration, sign-in, token refresh and sign-out.

    Every change of authentication state rotates the session's CSRF secret
    in the same call that mints or revokes tokens.
    """

    def __init__(
        self,
        accounts: AccountRepository | None = None,
        codec: TokenCodec | None = None,
        denylist: TokenDenylist | None = None,
        cookies: SessionCookies | None = None,
        google: GoogleVerifier | None = None,
        facebook: FacebookVerifier | None = None,
        settings: Settings | None = None,
        rate_store: RateStore | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._rate_store = rate_store
        self._accounts = accounts or get_account_repository()
        self._codec = codec or get_token_codec()
        self._denylist = denylist or get_denylist()
        self._cookies = cookies or get_session_cookies()
        self._google = google or GoogleVerifier(self._settings)
        self._facebook = facebook or FacebookVerifier(self._settings)
        self._hasher = PasswordHasher(type=Type.ID)
        # Verified against on unknown emails so both paths cost the same
        self._dummy_hash = self._hasher.hash("cashheros-dummy-password")

    # === Passwords ===

    def hash_password(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify_password(self, stored_hash: str | None, password: str) -> bool:
        if stored_hash is None:
            try:
                self._hasher.verify(self._dummy_hash, password)
            except VerificationError:
                pass
            return False
        try:
            return self._hasher.verify(stored_hash, password)
        except (VerifyMismatchError, InvalidHash):
            return False

    def _rates(self) -> RateStore:
        return self._rate_store or get_rate_store()

    # === Sessions ===

    async def _start_session(self, account: Account, ctx: EdgeContext) -> AuthPayload:
        """Bind the session to ``account``, issue tokens and forget failed logins."""
        self._cookies.rotate(ctx, account.id)
        await self._rates().clear_login(login_key(account.email, ctx.client_ip))
        access = self._codec.issue_access(account, ctx.session_id)
        refresh = self._codec.issue_refresh(account, ctx.session_id)
        ctx.set_cookie(
            CookieSpec(
                key=self._settings.refresh_cookie_name,
                value=refresh.token,
                max_age=self._settings.refresh_token_ttl_seconds,
                httponly=True,
                secure=self._settings.cookie_secure,
            )
        )
        return AuthPayload(token=access.token, expires_at=access.expires_at, user=UserOut.from_account(account))

    async def register(self, request: RegisterRequest, ctx: EdgeContext) -> AuthPayload:
        """Create a password account and sign it in."""
        try:
            account = await self._accounts.create(
                Account(
                    id="",
                    email=request.email,
                    password_hash=self.hash_password(request.password),
                    first_name=request.first_name,
                    last_name=request.last_name,
                )
            )
        except DuplicateAccountError as err:
            raise ConflictError("An account with this email already exists") from err
        logger.info("user_registered", user_id=account.id)
        return await self._start_session(account, ctx)

    async def login(self, request: LoginRequest, ctx: EdgeContext) -> AuthPayload:
        account = await self._accounts.get_by_email(request.email)
        password_hash = account.password_hash if account else None
        if account is None or not self.verify_password(password_hash, request.password):
            metrics.auth_failures_total.labels(reason="credentials").inc()
            logger.info("login_failed", client=ctx.client_ip)
            raise UnauthorizedError("Invalid email or password")

        account = await self._accounts.save(replace(account, last_login=time.time()))
        logger.info("user_logged_in", user_id=account.id)
        return await self._start_session(account, ctx)

    async def refresh(self, refresh_token: str | None, ctx: EdgeContext) -> AuthPayload:
        """Mint a new access token from the refresh cookie, rotating the refresh token."""
        if not refresh_token:
            raise UnauthorizedError("Refresh token required")
        try:
            claims = self._codec.decode(refresh_token, REFRESH)
        except TokenError as err:
            metrics.auth_failures_total.labels(reason=f"refresh-{err}").inc()
            raise UnauthorizedError("Invalid or expired refresh token") from err
        if self._denylist.is_revoked(claims["jti"]):
            raise UnauthorizedError("Invalid or expired refresh token")

        account = await self._accounts.get(claims["sub"])
        if account is None or account.token_version != claims.get("ver", 0):
            raise UnauthorizedError("Invalid or expired refresh token")

        self._denylist.revoke(claims["jti"], claims["exp"])
        if ctx.session_id is None:
            ctx.session_id = claims.get("sid")
        return await self._start_session(account, ctx)

    async def logout(self, principal: Principal, refresh_token: str | None, ctx: EdgeContext) -> None:
        """Revoke the presented tokens and replace the session with an anonymous one."""
        self._denylist.revoke(principal.token_id, principal.expires_at)
        if refresh_token:
            try:
                claims = self._codec.decode(refresh_token, REFRESH)
                self._denylist.revoke(claims["jti"], claims["exp"])
            except TokenError as err:
                logger.debug("refresh_token_not_revoked", reason=str(err))
        ctx.delete_cookie(self._settings.refresh_cookie_name)
        self._cookies.destroy(ctx)
        logger.info("user_logged_out", user_id=principal.subject)

    async def logout_all(self, principal: Principal, ctx: EdgeContext) -> None:
        """Invalidate every token of the subject by bumping its token version."""
        await self._accounts.bump_token_version(principal.subject)
        self._cookies.rotate_subject(principal.subject)
        ctx.delete_cookie(self._settings.refresh_cookie_name)
        self._cookies.destroy(ctx)
        logger.info("user_logged_out_everywhere", user_id=principal.subject)

    # === Accounts ===

    async def update_profile(self, account: Account, update: ProfileUpdate) -> Account:
        changes = update.model_dump(exclude_unset=True, exclude_none=True)
        if not changes:
            return account
        account = await self._accounts.save(replace(account, **changes))
        logger.info("profile_updated", user_id=account.id, fields=sorted(changes))
        return account

    async def change_role(self, actor: Account, user_id: str, role: Role) -> Account:
        """Change an account's role and rotate the CSRF secret of all its sessions."""
        account = await self._accounts.get(user_id)
        if account is None:
            raise NotFoundError("User not found")
        account = await self._accounts.save(replace(account, role=role))
        self._cookies.rotate_subject(account.id)
        logger.info("user_role_changed", user_id=account.id, role=role.value, actor=actor.id)
        return account

    # === Identity providers ===

    async def google_login(self, id_token: str, ctx: EdgeContext) -> AuthPayload:
        return await self._provider_login(self._google.verify_id_token(id_token), ctx)

    async def google_code_login(self, code: str, redirect_uri: str | None, ctx: EdgeContext) -> AuthPayload:
        return await self._provider_login(self._google.exchange_code(code, redirect_uri), ctx)

    async def facebook_login(self, access_token: str, ctx: EdgeContext) -> AuthPayload:
        return await self._provider_login(self._facebook.verify_access_token(access_token), ctx)

    async def _provider_login(self, verification: Awaitable[ProviderIdentity], ctx: EdgeContext) -> AuthPayload:
        try:
            identity = await verification
        except ProviderVerificationError as err:
            metrics.auth_failures_total.labels(reason="provider").inc()
            raise UnauthorizedError("Identity provider verification failed") from err

        account = await self.link_identity(identity)
        account = await self._accounts.save(replace(account, last_login=time.time()))
        logger.info("user_logged_in", user_id=account.id, provider=identity.provider)
        return await self._start_session(account, ctx)

    async def link_identity(self, identity: ProviderIdentity) -> Account:
        """Resolve the local account for a provider identity.

        An already-linked identity wins; otherwise a verified email adopts the
        existing account, or a new account is created.
        """
        account = await self._accounts.find_identity(identity.provider, identity.subject)
        if account is not None:
            return account

        if not identity.email:
            raise UnauthorizedError("Identity provider did not share an email address")

        account = await self._accounts.get_by_email(identity.email)
        if account is not None and not identity.email_verified:
            raise ConflictError("An account with this email already exists")
        if account is None:
            try:
                account = await self._accounts.create(
                    Account(
                        id="",
                        email=identity.email,
                        first_name=identity.first_name,
                        last_name=identity.last_name,
                        profile_picture=identity.picture,
                        verified=identity.email_verified,
                    )
                )
            except DuplicateAccountError as err:
                raise ConflictError("An account with this email already exists") from err

        try:
            await self._accounts.link_identity(identity.provider, identity.subject, account.id)
        except IdentityConflictError as err:
            raise ConflictError("This identity is linked to another account") from err
        return account


# Singleton instance
_service: AuthService | None = None


def get_service() -> AuthService:
    """Get the auth service singleton."""
    global _service
    if _service is None:
        _service = AuthService()
    return _service
