"""Authentication endpoints."""

from typing import Any

from fastapi import APIRouter, Depends, Request

from cashheros.config import get_settings
from cashheros.edge.auth import Principal, current_principal
from cashheros.edge.builder import get_session_cookies
from cashheros.edge.context import edge_context
from cashheros.edge.routing import EdgeRoute
from cashheros.errors import UnauthorizedError, success
from cashheros.models import (
    FacebookTokenRequest,
    GoogleCodeRequest,
    GoogleTokenRequest,
    LoginRequest,
    RegisterRequest,
)
from cashheros.service import get_service

router = APIRouter(prefix="/api/auth", tags=["Auth"], route_class=EdgeRoute)


def authenticated(request: Request) -> Principal:
    principal = current_principal(request)
    if principal is None:
        raise UnauthorizedError()
    return principal


def refresh_cookie(request: Request) -> str | None:
    return request.cookies.get(get_settings().refresh_cookie_name)


@router.post("/register", status_code=201)
async def register(body: RegisterRequest, request: Request) -> dict[str, Any]:
    """Create an account and sign it in."""
    payload = await get_service().register(body, edge_context(request))
    return success(payload.model_dump(by_alias=True))


@router.post("/login")
async def login(body: LoginRequest, request: Request) -> dict[str, Any]:
    payload = await get_service().login(body, edge_context(request))
    return success(payload.model_dump(by_alias=True))


@router.post("/refresh")
async def refresh(request: Request) -> dict[str, Any]:
    """Exchange the refresh cookie for a new access token."""
    payload = await get_service().refresh(refresh_cookie(request), edge_context(request))
    return success(payload.model_dump(by_alias=True))


@router.post("/logout")
async def logout(request: Request, principal: Principal = Depends(authenticated)) -> dict[str, Any]:
    await get_service().logout(principal, refresh_cookie(request), edge_context(request))
    return success({"message": "Logged out"})


@router.post("/logout-all")
async def logout_all(request: Request, principal: Principal = Depends(authenticated)) -> dict[str, Any]:
    """Sign out of every session by invalidating all issued tokens."""
    await get_service().logout_all(principal, edge_context(request))
    return success({"message": "Logged out of all sessions"})


@router.get("/csrf")
async def csrf_token(request: Request) -> dict[str, Any]:
    """Current CSRF secret for the caller's session."""
    return success({"csrfToken": get_session_cookies().current_secret(edge_context(request))})


@router.post("/oauth/google")
async def google_login(body: GoogleTokenRequest, request: Request) -> dict[str, Any]:
    payload = await get_service().google_login(body.id_token, edge_context(request))
    return success(payload.model_dump(by_alias=True))


@router.post("/oauth/google/code")
async def google_code_login(body: GoogleCodeRequest, request: Request) -> dict[str, Any]:
    payload = await get_service().google_code_login(body.code, body.redirect_uri, edge_context(request))
    return success(payload.model_dump(by_alias=True))


@router.post("/oauth/facebook")
async def facebook_login(body: FacebookTokenRequest, request: Request) -> dict[str, Any]:
    payload = await get_service().facebook_login(body.access_token, edge_context(request))
    return success(payload.model_dump(by_alias=True))
