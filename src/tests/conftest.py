"""Pytest configuration and fixtures."""

import asyncio
from dataclasses import replace

import fakeredis
import fakeredis.aioredis
import pytest
from fastapi.testclient import TestClient

BASE_URL = "https://testserver"


@pytest.fixture(autouse=True)
def reset_singletons():
    """Give every test fresh stores, repositories and settings."""
    import cashheros.edge.builder as builder
    import cashheros.repository as repository
    import cashheros.service as service
    import cashheros.stores as stores
    from cashheros.config import get_settings
    from cashheros.worker.config import get_worker_settings

    def reset():
        get_settings.cache_clear()
        get_worker_settings.cache_clear()
        stores._rate_store = None
        stores._session_store = None
        stores._csrf_store = None
        builder._codec = None
        builder._denylist = None
        builder._session_cookies = None
        repository._accounts = None
        repository._feedback = None
        service._service = None

    reset()
    yield
    reset()


@pytest.fixture
def mock_redis():
    """Create a fake Redis client for testing."""
    return fakeredis.aioredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def app():
    """A freshly built application bound to the reset singletons."""
    from cashheros.app import create_app

    return create_app()


@pytest.fixture
def client(app):
    """Synchronous test client; cookies persist between requests."""
    with TestClient(app, base_url=BASE_URL, raise_server_exceptions=False) as c:
        yield c


def csrf_headers(client: TestClient) -> dict[str, str]:
    """Establish a session and return the header echoing its CSRF secret."""
    if "csrf_token" not in client.cookies:
        client.get("/api/auth/csrf")
    return {"X-CSRF-Token": client.cookies["csrf_token"]}


def register(
    client: TestClient,
    email: str = "a@b.com",
    password: str = "secret-pw",
    **extra: str,
) -> dict:
    """Register an account through the API and return the success payload."""
    response = client.post(
        "/api/auth/register",
        json={"email": email, "password": password, **extra},
        headers=csrf_headers(client),
    )
    assert response.status_code == 201, response.text
    return response.json()["data"]


def bearer(token: str, client: TestClient | None = None) -> dict[str, str]:
    headers = {"Authorization": f"Bearer {token}"}
    if client is not None:
        headers.update(csrf_headers(client))
    return headers


def promote_to_admin(account_id: str) -> None:
    """Set the stored role directly; role changes through the API need an admin."""
    from cashheros.repository import Role, get_account_repository

    repo = get_account_repository()

    async def _promote():
        account = await repo.get(account_id)
        await repo.save(replace(account, role=Role.ADMIN))

    asyncio.run(_promote())


@pytest.fixture
def helpers():
    """Access to the module-level helpers from test classes."""

    class Helpers:
        csrf_headers = staticmethod(csrf_headers)
        register = staticmethod(register)
        bearer = staticmethod(bearer)
        promote_to_admin = staticmethod(promote_to_admin)

    return Helpers
