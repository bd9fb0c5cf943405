"""Identity-provider verification for Google and Facebook sign-in."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from cashheros.config import Settings
from cashheros.errors import ProviderVerificationError

logger = structlog.get_logger()

GOOGLE_TOKENINFO_URL = "https://oauth2.googleapis.com/tokeninfo"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_ISSUERS = frozenset({"accounts.google.com", "https://accounts.google.com"})
FACEBOOK_GRAPH_URL = "https://graph.facebook.com"
FACEBOOK_API_VERSION = "v13.0"


@dataclass(frozen=True)
class ProviderIdentity:
    """Identity asserted by a provider after verification."""

    provider: str
    subject: str
    email: str | None
    first_name: str | None = None
    last_name: str | None = None
    picture: str | None = None
    email_verified: bool = False


class ProviderClient:
    """Shared httpx plumbing; every transport or protocol failure becomes
    ``ProviderVerificationError``."""

    provider = ""

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._settings = settings
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._settings.oauth_timeout_seconds, transport=self._transport)

    async def _request(self, client: httpx.AsyncClient, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.HTTPError as err:
            logger.warning("provider_request_failed", provider=self.provider, error=str(err))
            raise ProviderVerificationError(f"{self.provider} unreachable") from err
        if response.status_code != 200:
            logger.info("provider_rejected_credential", provider=self.provider, status=response.status_code)
            raise ProviderVerificationError(f"{self.provider} rejected the credential")
        try:
            data = response.json()
        except ValueError as err:
            raise ProviderVerificationError(f"{self.provider} returned invalid JSON") from err
        if not isinstance(data, dict):
            raise ProviderVerificationError(f"{self.provider} returned an unexpected body")
        return data


class GoogleVerifier(ProviderClient):
    provider = "google"

    async def verify_id_token(self, id_token: str) -> ProviderIdentity:
        """Validate an ID token's audience and issuer via the tokeninfo endpoint."""
        async with self._client() as client:
            claims = await self._request(client, "GET", GOOGLE_TOKENINFO_URL, params={"id_token": id_token})
        return self._identity(claims)

    async def exchange_code(self, code: str, redirect_uri: str | None = None) -> ProviderIdentity:
        """Exchange an authorization code, then verify the returned ID token."""
        async with self._client() as client:
            tokens = await self._request(
                client,
                "POST",
                GOOGLE_TOKEN_URL,
                data={
                    "code": code,
                    "client_id": self._settings.google_client_id,
                    "client_secret": self._settings.google_client_secret,
                    "redirect_uri": redirect_uri or self._settings.google_redirect_uri,
                    "grant_type": "authorization_code",
                },
            )
            id_token = tokens.get("id_token")
            if not id_token:
                raise ProviderVerificationError("google returned no id_token")
            claims = await self._request(client, "GET", GOOGLE_TOKENINFO_URL, params={"id_token": id_token})
        return self._identity(claims)

    def _identity(self, claims: dict[str, Any]) -> ProviderIdentity:
        if claims.get("aud") != self._settings.google_client_id:
            raise ProviderVerificationError("google token audience mismatch")
        if claims.get("iss") not in GOOGLE_ISSUERS:
            raise ProviderVerificationError("google token issuer mismatch")
        if not claims.get("sub"):
            raise ProviderVerificationError("google token has no subject")
        return ProviderIdentity(
            provider=self.provider,
            subject=str(claims["sub"]),
            email=claims.get("email"),
            first_name=claims.get("given_name"),
            last_name=claims.get("family_name"),
            picture=claims.get("picture"),
            # tokeninfo returns booleans as strings
            email_verified=str(claims.get("email_verified", "false")).lower() == "true",
        )


class FacebookVerifier(ProviderClient):
    provider = "facebook"

    async def verify_access_token(self, access_token: str) -> ProviderIdentity:
        """Check the token with ``debug_token`` and read the profile it grants."""
        app_token = f"{self._settings.facebook_app_id}|{self._settings.facebook_app_secret}"
        async with self._client() as client:
            debug = await self._request(
                client,
                "GET",
                f"{FACEBOOK_GRAPH_URL}/debug_token",
                params={"input_token": access_token, "access_token": app_token},
            )
            info = debug.get("data") or {}
            if not info.get("is_valid") or not info.get("user_id"):
                raise ProviderVerificationError("facebook token is not valid")
            if str(info.get("app_id", "")) != self._settings.facebook_app_id:
                raise ProviderVerificationError("facebook token issued for another app")

            profile = await self._request(
                client,
                "GET",
                f"{FACEBOOK_GRAPH_URL}/{FACEBOOK_API_VERSION}/{info['user_id']}",
                params={"fields": "id,email,first_name,last_name,picture", "access_token": access_token},
            )

        picture = (profile.get("picture") or {}).get("data", {}).get("url")
        return ProviderIdentity(
            provider=self.provider,
            subject=str(profile.get("id") or info["user_id"]),
            email=profile.get("email"),
            first_name=profile.get("first_name"),
            last_name=profile.get("last_name"),
            picture=picture,
            email_verified=bool(profile.get("email")),
        )
