import os

# Set test environment
os.environ.setdefault("MY_DOMAIN", "http://client.test")
os.environ.setdefault("MY_PUBLIC_DOMAIN", "http://testserver")
os.environ.setdefault("CLIENT_ADDR", "http://client.test")
os.environ.setdefault("SESSION_SECRET", "test-session-secret")
os.environ.setdefault("APP_ID", "test-app-id")
os.environ.setdefault("APP_SECRET", "test-app-secret")
os.environ.setdefault("FB_LOGIN_PATH", "/api/auth/facebook")
os.environ.setdefault("FB_LOGIN_CB_PATH", "/api/auth/facebook/callback")
os.environ.setdefault("FB_LOGIN_FAIL_PATH", "/api/auth/facebook/failed")
os.environ.setdefault("FB_SUCCESS_URL", "http://client.test/welcome")

from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any
from urllib.parse import parse_qs, urlparse
from uuid import uuid4

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from agora.config import Settings
from agora.database import Base, create_session_maker
from agora.main import create_app
from agora.models import User, session_table
from agora.models.user import OAuthIdentity
from agora.services.session_store import SessionStore
from agora.utils.facebook import FacebookProvider

# Defaults to a throwaway SQLite file; point TEST_DATABASE_URL at PostgreSQL
# to run against the production dialect.
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")

SUCCESS_URL = "http://client.test/welcome"

DEFAULT_PROFILE: dict[str, Any] = {
    "id": "123",
    "emails": [{"value": "a@x.com"}],
    "first_name": "A",
    "last_name": "B",
}


class FakeGraphAPI(httpx.AsyncBaseTransport):
    """Stands in for graph.facebook.com.

    Answers the token exchange and ``/me`` calls with canned payloads and
    records every request it sees.
    """

    def __init__(self, profile: dict[str, Any] | None = None, access_token: str = "fb-access-token"):
        self.profile = dict(profile or DEFAULT_PROFILE)
        self.access_token = access_token
        self.token_status = 200
        self.profile_status = 200
        self.fail_with: Exception | None = None
        self.requests: list[httpx.Request] = []

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with is not None:
            raise self.fail_with
        if request.url.path.endswith("/oauth/access_token"):
            return httpx.Response(
                self.token_status,
                json={"access_token": self.access_token, "token_type": "bearer", "expires_in": 5183944},
            )
        if request.url.path.endswith("/me"):
            return httpx.Response(self.profile_status, json=self.profile)
        return httpx.Response(404, json={"error": {"message": "Unknown path"}})


@pytest.fixture
def assets_dir(tmp_path: Path) -> Path:
    path = tmp_path / "assets"
    path.mkdir()
    return path


@pytest.fixture
def settings(tmp_path: Path, assets_dir: Path) -> Settings:
    return Settings(
        _env_file=None,
        database_url=TEST_DATABASE_URL or f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        my_domain="http://client.test",
        my_public_domain="http://testserver",
        client_addr="http://client.test",
        session_name="sid",
        session_secret="test-session-secret",
        session_life=60 * 60 * 1000,
        session_store_retries=2,
        session_store_retry_backoff=0,
        app_id="test-app-id",
        app_secret="test-app-secret",
        fb_login_path="/api/auth/facebook",
        fb_login_cb_path="/api/auth/facebook/callback",
        fb_login_fail_path="/api/auth/facebook/failed",
        fb_success_url=SUCCESS_URL,
        assets_dir=str(assets_dir),
    )


@pytest_asyncio.fixture(scope="function")
async def async_engine(settings: Settings):
    """Create async engine for each test."""
    engine = create_async_engine(settings.database_url, echo=False)
    session_table(Base.metadata, settings.session_db_collection)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    if TEST_DATABASE_URL:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_maker(async_engine) -> async_sessionmaker[AsyncSession]:
    return create_session_maker(async_engine)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for each test."""
    async with session_maker() as session:
        yield session


@pytest.fixture
def graph_api() -> FakeGraphAPI:
    return FakeGraphAPI()


@pytest.fixture
def facebook(settings: Settings, graph_api: FakeGraphAPI) -> FacebookProvider:
    return FacebookProvider(settings, transport=graph_api)


@pytest.fixture
def app(settings: Settings, session_maker, facebook: FacebookProvider) -> FastAPI:
    return create_app(settings, session_maker=session_maker, identity_provider=facebook)


@pytest.fixture
def session_store(app: FastAPI) -> SessionStore:
    return app.state.session_store


@pytest_asyncio.fixture(scope="function")
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client bound to the app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac


@pytest_asyncio.fixture
async def test_user(db_session: AsyncSession) -> User:
    """Create a Facebook user with unique identifiers."""
    unique_id = uuid4()
    user = User(
        id=unique_id,
        email=f"test-{unique_id}@example.com",
        given_name="Test",
        family_name="User",
        username=f"TestUser{unique_id.hex}",
        is_active=True,
    )
    user.auth_method = OAuthIdentity(provider="facebook", external_id=f"fb-{unique_id}")
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest.fixture
def facebook_login(client: AsyncClient, settings: Settings):
    """Run the browser side of the Facebook login and return the callback response."""

    async def _login(code: str = "auth-code") -> httpx.Response:
        start = await client.get(settings.fb_login_path)
        assert start.status_code == 302
        state = parse_qs(urlparse(start.headers["location"]).query)["state"][0]
        return await client.get(settings.fb_login_cb_path, params={"code": code, "state": state})

    return _login


@pytest_asyncio.fixture
async def logged_in_client(client: AsyncClient, facebook_login) -> AsyncClient:
    response = await facebook_login()
    assert response.headers["location"] == SUCCESS_URL
    return client
