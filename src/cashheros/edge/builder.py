"""Assemble the edge stages in their fixed order."""

from __future__ import annotations

from cashheros.config import Settings, get_settings
from cashheros.edge.apikey import ApiKeyStage
from cashheros.edge.auth import AuthenticationStage, TokenCodec, TokenDenylist
from cashheros.edge.compression import CompressionStage
from cashheros.edge.cors import CorsPolicy, CorsStage
from cashheros.edge.csrf import CsrfStage, SessionCookies
from cashheros.edge.headers import SecurityHeadersStage
from cashheros.edge.payload import PayloadStage
from cashheros.edge.pipeline import ErrorShapingStage, Stage
from cashheros.edge.ratelimit import RateLimitStage, RuleBook, login_rule_from_settings
from cashheros.edge.sanitize import SanitizationStage
from cashheros.stores import get_csrf_store, get_rate_store, get_session_store

# Singleton instances
_codec: TokenCodec | None = None
_denylist: TokenDenylist | None = None
_session_cookies: SessionCookies | None = None


def get_token_codec() -> TokenCodec:
    """Get the token codec singleton."""
    global _codec
    if _codec is None:
        _codec = TokenCodec(get_settings())
    return _codec


def get_denylist() -> TokenDenylist:
    """Get the revoked-token list singleton."""
    global _denylist
    if _denylist is None:
        _denylist = TokenDenylist()
    return _denylist


def get_session_cookies() -> SessionCookies:
    """Get the session cookie manager singleton."""
    global _session_cookies
    if _session_cookies is None:
        _session_cookies = SessionCookies(get_settings(), get_session_store(), get_csrf_store())
    return _session_cookies


def build_stages(settings: Settings | None = None) -> list[Stage]:
    """The stages in request order, outermost first."""
    settings = settings or get_settings()
    codec = get_token_codec()
    stages: list[Stage] = [ErrorShapingStage(settings.trusted_proxy_set)]
    if settings.security_headers_enabled:
        stages.append(SecurityHeadersStage(settings.is_production, settings.hsts_max_age))
    stages += [
        CorsStage(CorsPolicy(settings.allowed_origins, max_age=settings.cors_max_age)),
        PayloadStage(settings.max_body_bytes),
        SanitizationStage(),
        CompressionStage(settings.compression_min_bytes, settings.compression_level),
        RateLimitStage(
            get_rate_store,
            RuleBook.from_settings(settings),
            login_rule_from_settings(settings),
            codec.peek_subject,
        ),
        ApiKeyStage(settings.api_keys, settings.api_key_routes),
        CsrfStage(get_session_cookies(), settings.csrf_exempt_prefixes),
        AuthenticationStage(codec, get_denylist()),
    ]
    return stages
