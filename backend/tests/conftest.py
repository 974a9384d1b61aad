import os

# Set test environment
os.environ["DEBUG"] = "true"
os.environ["SECRET_KEY"] = "test-secret-key-that-is-long-enough-for-hs256"
os.environ["BCRYPT_ROUNDS"] = "4"

from collections.abc import AsyncGenerator
from typing import Any, Optional
from uuid import uuid4

import httpx
import pytest
import pytest_asyncio
from fakeredis import FakeServer, aioredis
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

from app.config import Settings, get_settings
from app.context import ServiceContext, build_context
from app.database import Base, Database, get_db
from app.main import app
from app.models import AuthProvider, User, UserAuth
from app.services.auth_service import AuthService
from app.services.cache import CacheManager
from app.services.oauth_service import OAuthService
from app.services.tuya_oauth import (
    REVOKE_PATH,
    TOKEN_PATH,
    USERINFO_PATH,
    TuyaOAuthClient,
    compute_signature,
)

TEST_DATABASE_URL = "sqlite+aiosqlite://"

TUYA_CLIENT_ID = "test-client-id"
TUYA_CLIENT_SECRET = "test-client-secret"
TUYA_BASE_URL = "https://openapi.tuya.test"
TUYA_REDIRECT_URI = "http://localhost:3000/auth/tuya/callback"


class FakeTuyaProvider:
    """In-process stand-in for the Tuya OAuth API.

    Rejects requests whose signature does not match, like the real service.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.issued = 0
        self.expires_in = 7200
        self.revoke_error: Optional[Exception] = None
        self.profile: dict[str, Any] = {
            "uid": "ay1600000000000001",
            "username": "tuya_user",
            "email": "tuya@example.com",
            "nick_name": "Ada Lovelace",
            "avatar_url": "https://images.tuya.test/avatar.png",
            "mobile": "+15550100",
            "country_code": "44",
            "time_zone_id": "2",
        }

    def paths(self) -> list[str]:
        return [r.url.path for r in self.requests]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        body = request.content.decode()
        expected = compute_signature(
            TUYA_CLIENT_ID,
            TUYA_CLIENT_SECRET,
            request.headers["t"],
            request.headers["nonce"],
            request.method,
            request.url.path,
            body,
            request.headers.get("access_token"),
        )
        if request.headers.get("sign") != expected:
            return httpx.Response(200, json={"success": False, "msg": "sign invalid"})

        path = request.url.path
        if path == TOKEN_PATH:
            self.issued += 1
            return httpx.Response(
                200,
                json={
                    "success": True,
                    "result": {
                        "access_token": f"tuya-access-{self.issued}",
                        "refresh_token": f"tuya-refresh-{self.issued}",
                        "expires_in": self.expires_in,
                        "uid": self.profile["uid"],
                    },
                },
            )
        if path == USERINFO_PATH:
            return httpx.Response(200, json={"success": True, "result": self.profile})
        if path == REVOKE_PATH:
            if self.revoke_error is not None:
                raise self.revoke_error
            return httpx.Response(200, json={"success": True, "result": True})
        return httpx.Response(404, json={"success": False, "msg": "unknown path"})


@pytest.fixture
def settings() -> Settings:
    return get_settings()


@pytest.fixture
def tuya() -> FakeTuyaProvider:
    return FakeTuyaProvider()


@pytest_asyncio.fixture(scope="function")
async def async_engine():
    """Create an in-memory database for each test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def cache() -> AsyncGenerator[CacheManager, None]:
    client = aioredis.FakeRedis(server=FakeServer(), decode_responses=True)
    yield CacheManager(client)
    await client.flushall()
    await client.aclose()


@pytest_asyncio.fixture
async def tuya_client(tuya: FakeTuyaProvider) -> AsyncGenerator[TuyaOAuthClient, None]:
    client = TuyaOAuthClient(
        client_id=TUYA_CLIENT_ID,
        client_secret=TUYA_CLIENT_SECRET,
        base_url=TUYA_BASE_URL,
        redirect_uri=TUYA_REDIRECT_URI,
        timeout=2.0,
        transport=httpx.MockTransport(tuya.handler),
    )
    yield client
    await client.aclose()


@pytest.fixture
def context(
    settings: Settings, async_engine, cache: CacheManager, tuya_client: TuyaOAuthClient
) -> ServiceContext:
    return build_context(
        settings,
        database=Database(TEST_DATABASE_URL, engine=async_engine),
        cache=cache,
        oauth_client=tuya_client,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(context: ServiceContext) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for each test."""
    async with context.database.session() as session:
        yield session


@pytest.fixture
def auth_service(db_session: AsyncSession, context: ServiceContext) -> AuthService:
    return AuthService(db_session, context)


@pytest.fixture
def oauth_service(
    db_session: AsyncSession, context: ServiceContext, auth_service: AuthService
) -> OAuthService:
    return OAuthService(db_session, context, auth=auth_service)


@pytest_asyncio.fixture(scope="function")
async def client(
    db_session: AsyncSession, context: ServiceContext
) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client with database session override."""

    async def override_get_db():
        yield db_session

    app.state.context = context
    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def test_user(db_session: AsyncSession, context: ServiceContext) -> User:
    """Create a local user whose password is ``Secret123!``."""
    unique_id = uuid4()
    email = f"test-{unique_id}@example.com"
    user = User(
        id=unique_id,
        email=email,
        display_name="Test User",
        profile={"first_name": "Test", "last_name": "User", "timezone": "UTC"},
        auth=[
            UserAuth(
                provider=AuthProvider.local.value,
                provider_id=email,
                access_token=context.hasher.hash("Secret123!"),
            )
        ],
    )
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest_asyncio.fixture
async def auth_headers(auth_service: AuthService, test_user: User) -> dict[str, str]:
    """Log the test user in and return authorization headers."""
    result = await auth_service.login_local(test_user.email, "Secret123!")
    return {"Authorization": f"Bearer {result.token}"}
