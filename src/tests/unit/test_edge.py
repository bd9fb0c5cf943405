"""Unit tests for the edge building blocks."""

import json
import time

import pytest
from fastapi import FastAPI
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from cashheros.config import Settings
from cashheros.edge.apikey import ApiKeyStage
from cashheros.edge.auth import REFRESH, TokenCodec, TokenDenylist, TokenError
from cashheros.edge.compression import accepts_gzip
from cashheros.edge.context import CookieSpec, EdgeContext, edge_context
from cashheros.edge.cors import CorsPolicy
from cashheros.edge.fingerprint import api_key_id, client_identity, client_ip, resolve_route_key
from cashheros.edge.headers import SecurityHeadersStage, baseline_headers, cache_headers
from cashheros.edge.pipeline import compose
from cashheros.edge.ratelimit import RuleBook, login_account
from cashheros.edge.sanitize import SanitizationStage, clean, operator_path, safe_url, strip_markup
from cashheros.errors import BadRequestError, ForbiddenError, UnauthorizedError
from cashheros.repository import Account, Role


def make_request(
    path: str = "/",
    method: str = "GET",
    headers: dict[str, str] | None = None,
    client: tuple[str, int] = ("203.0.113.9", 5000),
    query: bytes = b"",
    app: FastAPI | None = None,
) -> Request:
    scope = {
        "type": "http",
        "method": method,
        "path": path,
        "raw_path": path.encode(),
        "root_path": "",
        "query_string": query,
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": client,
        "server": ("testserver", 443),
        "scheme": "https",
    }
    if app is not None:
        scope["app"] = app
    return Request(scope)


class TestCorsPolicy:
    """Tests for origin admission."""

    @pytest.fixture
    def policy(self):
        return CorsPolicy(["https://cashheros.com"])

    def test_exact_origin_only(self, policy):
        assert policy.admits("https://cashheros.com", credentialed=True)
        assert not policy.admits("https://www.cashheros.com", credentialed=True)
        assert not policy.admits("http://cashheros.com", credentialed=False)
        assert not policy.admits("https://evil.com", credentialed=False)

    def test_wildcard_ignored_for_credentialed(self):
        policy = CorsPolicy(["*"])
        assert policy.admits("https://any.example", credentialed=False)
        assert not policy.admits("https://any.example", credentialed=True)
        assert policy.allow_origin_headers("https://any.example") == {"Access-Control-Allow-Origin": "*"}

    def test_listed_origin_headers_name_exact_origin(self, policy):
        headers = policy.allow_origin_headers("https://cashheros.com")
        assert headers["Access-Control-Allow-Origin"] == "https://cashheros.com"
        assert headers["Access-Control-Allow-Credentials"] == "true"
        assert headers["Vary"] == "Origin"

    def test_preflight_intersects_methods_and_headers(self, policy):
        response = policy.preflight("https://cashheros.com", "put", "content-type, X-Custom, x-csrf-token")
        assert response.status_code == 204
        assert response.headers["Access-Control-Allow-Methods"] == "PUT"
        assert response.headers["Access-Control-Allow-Headers"] == "Content-Type, X-CSRF-Token"
        assert response.headers["Access-Control-Max-Age"] == "86400"

    def test_preflight_unknown_method_not_allowed(self, policy):
        response = policy.preflight("https://cashheros.com", "TRACE", "")
        assert "Access-Control-Allow-Methods" not in response.headers


class TestFingerprint:
    """Tests for client identity and route key resolution."""

    def test_forwarded_for_ignored_from_untrusted_peer(self):
        request = make_request(headers={"X-Forwarded-For": "1.1.1.1"})
        assert client_ip(request, frozenset({"127.0.0.1"})) == "203.0.113.9"

    def test_forwarded_for_walked_right_to_left(self):
        request = make_request(
            headers={"X-Forwarded-For": "6.6.6.6, 198.51.100.7, 10.0.0.2"},
            client=("127.0.0.1", 1234),
        )
        assert client_ip(request, frozenset({"127.0.0.1", "10.0.0.2"})) == "198.51.100.7"

    def test_identity_prefers_token_subject_then_api_key(self):
        with_token = make_request(headers={"Authorization": "Bearer tok", "X-API-Key": "k"})
        assert client_identity(with_token, "1.2.3.4", lambda t: "user-1") == "user:user-1"

        with_key = make_request(headers={"Authorization": "Bearer bad", "X-API-Key": "k"})
        assert client_identity(with_key, "1.2.3.4", lambda t: None) == f"key:{api_key_id('k')}"

        anonymous = make_request()
        assert client_identity(anonymous, "1.2.3.4", lambda t: None) == "ip:1.2.3.4"

    def test_route_key_is_path_pattern(self):
        app = FastAPI()

        @app.put("/api/users/{user_id}/role")
        async def change_role(user_id: str) -> dict:
            return {}

        request = make_request("/api/users/abc/role", "PUT", app=app)
        assert resolve_route_key(request) == "/api/users/{user_id}/role"

        unknown = make_request("/nowhere", app=app)
        assert resolve_route_key(unknown) == "/nowhere"


class TestCompressionNegotiation:
    def test_accepts_gzip(self):
        assert accepts_gzip(make_request(headers={"Accept-Encoding": "br, gzip"}))
        assert not accepts_gzip(make_request(headers={"Accept-Encoding": "gzip;q=0"}))
        assert not accepts_gzip(make_request(headers={"Accept-Encoding": "gzip", "X-No-Compression": "1"}))
        assert not accepts_gzip(make_request())


class TestEdgeContext:
    def test_apply_merges_vary_and_cookies(self):
        ctx = EdgeContext(request_id="rid")
        ctx.response_headers["Vary"] = "Origin"
        ctx.set_cookie(CookieSpec("sid", "abc", httponly=True, secure=True))
        response = Response(headers={"Vary": "Accept-Encoding"})

        ctx.apply(response)

        assert response.headers["vary"] == "Accept-Encoding, Origin"
        assert response.headers["X-Request-ID"] == "rid"
        assert "sid=abc" in response.headers["set-cookie"]
        assert "HttpOnly" in response.headers["set-cookie"]


class TestCompose:
    @pytest.mark.asyncio
    async def test_stages_run_in_order_and_short_circuit(self):
        calls: list[str] = []

        def stage(name, stop=False):
            async def run(request, call_next):
                calls.append(name)
                if stop:
                    return ForbiddenError()
                return await call_next(request)

            return run

        async def endpoint(request):
            calls.append("endpoint")
            return JSONResponse({})

        handler = compose([stage("a"), stage("b", stop=True), stage("c")], endpoint)
        outcome = await handler(make_request())

        assert isinstance(outcome, ForbiddenError)
        assert calls == ["a", "b"]


class TestTokenCodec:
    """Tests for JWT issuing and verification."""

    @pytest.fixture
    def codec(self):
        return TokenCodec(Settings(jwt_secret="access", jwt_refresh_secret="refresh"))

    @pytest.fixture
    def account(self):
        return Account(id="user-1", email="a@b.com", role=Role.ADMIN, token_version=2)

    def test_access_claims(self, codec, account):
        issued = codec.issue_access(account, "sid-1")
        claims = codec.decode(issued.token)
        assert claims["sub"] == "user-1"
        assert claims["role"] == "admin"
        assert claims["sid"] == "sid-1"
        assert claims["ver"] == 2
        assert claims["jti"] == issued.token_id

    def test_refresh_token_is_not_an_access_token(self, codec, account):
        refresh = codec.issue_refresh(account, "sid-1")
        with pytest.raises(TokenError):
            codec.decode(refresh.token)
        assert codec.decode(refresh.token, REFRESH)["sub"] == "user-1"

    def test_expired_token_rejected(self, account):
        codec = TokenCodec(Settings(jwt_secret="access", access_token_ttl_seconds=-10))
        issued = codec.issue_access(account, None)
        with pytest.raises(TokenError, match="expired"):
            codec.decode(issued.token)

    def test_forged_token_rejected(self, codec, account):
        other = TokenCodec(Settings(jwt_secret="someone-else"))
        forged = other.issue_access(account, None)
        with pytest.raises(TokenError, match="invalid"):
            codec.decode(forged.token)
        assert codec.peek_subject(forged.token) is None
        assert codec.peek_subject("not-a-jwt") is None

    def test_denylist_forgets_expired_entries(self):
        denylist = TokenDenylist()
        denylist.revoke("old", time.time() - 1)
        denylist.revoke("live", time.time() + 60)
        assert denylist.is_revoked("live")
        assert not denylist.is_revoked("old")


class TestRules:
    def test_route_override_and_default(self):
        rules = RuleBook(900, 100, {"/api/auth/login": (900, 20)})
        login = rules.rule_for("/api/auth/login")
        other = rules.rule_for("/api/users/profile")
        assert (login.name, login.window, login.ceiling) == ("route:/api/auth/login", 900, 20)
        assert (other.window, other.ceiling) == (900, 100)

    def test_login_account_from_payload(self):
        assert login_account({"email": "a@b.com"}) == "a@b.com"
        assert login_account({"email": ""}) == "-"
        assert login_account(None) == "-"


async def ok_endpoint(request):
    return JSONResponse({"ok": True})


class TestSecurityHeaders:
    def test_production_enforces_policy_and_pins_https(self):
        headers = baseline_headers(production=True, hsts_max_age=600)
        assert headers["Strict-Transport-Security"] == "max-age=600; includeSubDomains; preload"
        assert "frame-ancestors 'none'" in headers["Content-Security-Policy"]
        assert headers["Cross-Origin-Embedder-Policy"] == "require-corp"
        assert "Content-Security-Policy-Report-Only" not in headers

    def test_development_reports_only(self):
        headers = baseline_headers(production=False, hsts_max_age=600)
        assert "Strict-Transport-Security" not in headers
        assert "Content-Security-Policy" not in headers
        assert "default-src 'self'" in headers["Content-Security-Policy-Report-Only"]
        assert headers["X-Frame-Options"] == "DENY"

    def test_cache_policy_by_path(self):
        assert cache_headers("/api/users/profile")["Cache-Control"].startswith("no-store")
        assert cache_headers("/api/users/profile")["Pragma"] == "no-cache"
        assert cache_headers("/static/app.JS")["Cache-Control"] == "public, max-age=31536000, immutable"
        assert cache_headers("/health") == {"Cache-Control": "no-cache, must-revalidate, max-age=0"}

    @pytest.mark.asyncio
    async def test_handler_headers_win(self):
        async def endpoint(request):
            return JSONResponse({}, headers={"Cache-Control": "private, max-age=60"})

        request = make_request("/api/things")
        handler = compose([SecurityHeadersStage(production=False)], endpoint)
        response = await handler(request)
        edge_context(request).apply(response)

        assert response.headers["Cache-Control"] == "private, max-age=60"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["Expires"] == "0"


class TestSanitization:
    def test_strip_markup_keeps_text_and_entities(self):
        assert strip_markup("<b>hi</b> there") == "hi there"
        assert strip_markup("a<script>alert(1)</script>b") == "ab"
        assert strip_markup("&lt;b&gt; stays escaped") == "&lt;b&gt; stays escaped"
        assert strip_markup("zero\u200bwidth") == "zerowidth"
        assert strip_markup("plain") == "plain"

    def test_safe_url(self):
        assert safe_url("https://cdn.cashheros.com/a.png") == "https://cdn.cashheros.com/a.png"
        assert safe_url("/avatars/1.png") == "/avatars/1.png"
        assert safe_url("javascript:alert(1)") == "#"
        assert safe_url("//evil.example/x") == "#"

    def test_operator_path_finds_nested_keys(self):
        assert operator_path({"email": {"$ne": ""}}) == "email.$ne"
        assert operator_path({"items": [{"ok": 1}, {"$where": "1"}]}) == "items[1].$where"
        assert operator_path({"price": "$5"}) is None

    def test_secret_fields_left_verbatim(self):
        cleaned = clean({"password": "<b>pw</b>", "subject": "<i>x</i>", "profilePicture": "data:x"})
        assert cleaned == {"password": "<b>pw</b>", "subject": "x", "profilePicture": "#"}

    @pytest.mark.asyncio
    async def test_stage_rewrites_body(self):
        request = make_request("/api/feedback/submit", "POST")
        edge_context(request).payload = {"subject": "<b>hi</b>", "message": "ok"}
        outcome = await compose([SanitizationStage()], ok_endpoint)(request)

        assert outcome.status_code == 200
        assert edge_context(request).payload == {"subject": "hi", "message": "ok"}
        assert json.loads(await request.body()) == {"subject": "hi", "message": "ok"}

    @pytest.mark.asyncio
    async def test_stage_rejects_operator_keys(self):
        request = make_request("/api/auth/login", "POST")
        edge_context(request).payload = {"email": {"$gt": ""}, "password": "x"}
        outcome = await compose([SanitizationStage()], ok_endpoint)(request)

        assert isinstance(outcome, BadRequestError)
        assert outcome.details == {"reason": "operator-injection", "field": "email.$gt"}

    @pytest.mark.asyncio
    async def test_stage_rejects_operator_query(self):
        request = make_request("/api/users/profile", query=b"email[$ne]=x")
        outcome = await compose([SanitizationStage()], ok_endpoint)(request)
        assert isinstance(outcome, BadRequestError)


class TestApiKeyStage:
    @pytest.fixture
    def stage(self):
        return ApiKeyStage(
            {"k-analytics": "analytics", "k-admin": "admin"},
            {"/api/monitoring": ["admin"], "/api/external": []},
        )

    @pytest.mark.asyncio
    async def test_unguarded_path_passes(self, stage):
        outcome = await compose([stage], ok_endpoint)(make_request("/api/users/profile"))
        assert outcome.status_code == 200

    @pytest.mark.asyncio
    async def test_missing_invalid_and_out_of_scope(self, stage):
        handler = compose([stage], ok_endpoint)

        missing = await handler(make_request("/api/monitoring/stats"))
        invalid = await handler(make_request("/api/monitoring/stats", headers={"X-API-Key": "nope"}))
        scope = await handler(make_request("/api/monitoring/stats", headers={"X-API-Key": "k-analytics"}))

        assert isinstance(missing, UnauthorizedError)
        assert missing.details["reason"] == "api-key-missing"
        assert isinstance(invalid, UnauthorizedError)
        assert invalid.details["reason"] == "api-key-invalid"
        assert isinstance(scope, ForbiddenError)
        assert scope.details["reason"] == "api-key-scope"

    @pytest.mark.asyncio
    async def test_admitted_key_records_service(self, stage):
        request = make_request("/api/external", headers={"X-API-Key": "k-analytics"})
        outcome = await compose([stage], ok_endpoint)(request)

        assert outcome.status_code == 200
        assert edge_context(request).api_service == "analytics"
        assert request.state.api_service == "analytics"

    def test_prefix_match_is_segment_aware(self, stage):
        assert stage.guard_for("/api/externals") is None
        assert stage.guard_for("/api/external/ping") == frozenset()
