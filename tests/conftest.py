"""
Shared fixtures: a file-backed SQLite database per test and a fake OAuth
provider (Google + LinkedIn) behind ``httpx.MockTransport``.
"""

import asyncio
import uuid
from typing import Any, Dict, List
from urllib.parse import parse_qs

import httpx
import pytest
import pytest_asyncio
from cryptography.fernet import Fernet
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import create_async_engine

from auth.password import hash_password
from config.settings import Settings
from connectors.coordinator import OAuthFlowCoordinator
from connectors.credential_store import CredentialStore
from connectors.encryption import TokenCipher
from connectors.registry import ConnectorRegistry
from connectors.state_store import AuthorizationStateStore
from connectors.token_manager import TokenRefresher
from database.models import Base, User
from database.session import build_session_factory
from main import create_app

_TOKEN_PATHS = {"/token", "/oauth/v2/accessToken"}
_PROFILE_PATHS = {"/oauth2/v2/userinfo", "/v2/userinfo"}
_REVOKE_PATHS = {"/revoke", "/oauth/v2/revoke"}


class FakeProvider:
    """
    Answers token, userinfo and revoke calls for Google and LinkedIn.

    Token responses are queued with ``queue_token`` / ``queue_failure`` and
    served in order; an empty queue answers 500.
    """

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self._token_queue: List[Any] = []
        self.profiles: Dict[str, Dict[str, Any]] = {
            "www.googleapis.com": {"id": "g-123", "email": "ada@example.com", "name": "Ada Lovelace"},
            "api.linkedin.com": {"sub": "li-789", "name": "Ada L."},
        }
        self.revoke_status = 200

    def queue_token(self, status_code: int = 200, **body: Any) -> None:
        self._token_queue.append(httpx.Response(status_code, json=body))

    def queue_failure(self, exc: Exception) -> None:
        self._token_queue.append(exc)

    @property
    def token_calls(self) -> List[Dict[str, str]]:
        """Form bodies of every token-endpoint request, in order."""
        return [
            {k: v[0] for k, v in parse_qs(r.content.decode()).items()}
            for r in self.requests
            if r.url.path in _TOKEN_PATHS
        ]

    @property
    def revoke_calls(self) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path in _REVOKE_PATHS]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path in _TOKEN_PATHS:
            if not self._token_queue:
                return httpx.Response(500, json={"error": "server_error"})
            item = self._token_queue.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        if path in _PROFILE_PATHS:
            return httpx.Response(200, json=self.profiles[request.url.host])
        if path in _REVOKE_PATHS:
            return httpx.Response(self.revoke_status)
        return httpx.Response(404)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        jwt_secret="test-jwt-secret",
        password_hash_rounds=4,
        token_encryption_key=Fernet.generate_key().decode(),
        oauth_redirect_base="http://testserver",
        gmail_client_id="gmail-client",
        gmail_client_secret="gmail-secret",
        linkedin_client_id="li-client",
        linkedin_client_secret="li-secret",
        debug=False,
    )


# ── Service-level fixtures ─────────────────────────────────────────────


@pytest_asyncio.fixture
async def session_factory(settings):
    # One pooled connection: SQLite cannot interleave two write transactions.
    engine = create_async_engine(settings.database_url, pool_size=1, max_overflow=0)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield build_session_factory(engine)
    await engine.dispose()


async def create_user(session_factory, email: str = "ada@example.com") -> str:
    user = User(
        user_id=uuid.uuid4(),
        email=email,
        display_name=email.split("@")[0],
        password_hash=hash_password("correct horse", rounds=4),
    )
    async with session_factory() as session:
        async with session.begin():
            session.add(user)
    return str(user.user_id)


@pytest_asyncio.fixture
async def user_id(session_factory) -> str:
    return await create_user(session_factory)


@pytest.fixture
def credential_store(session_factory, settings) -> CredentialStore:
    return CredentialStore(session_factory, TokenCipher(settings.token_encryption_key))


@pytest.fixture
def state_store(session_factory, settings) -> AuthorizationStateStore:
    return AuthorizationStateStore(session_factory, ttl_seconds=settings.oauth_state_ttl_seconds)


@pytest.fixture
def connector_registry(settings, fake_provider) -> ConnectorRegistry:
    return ConnectorRegistry.from_settings(settings, transport=fake_provider.transport)


@pytest.fixture
def coordinator(connector_registry, credential_store, state_store) -> OAuthFlowCoordinator:
    return OAuthFlowCoordinator(connector_registry, credential_store, state_store)


@pytest.fixture
def refresher(connector_registry, credential_store) -> TokenRefresher:
    return TokenRefresher(connector_registry, credential_store, margin_seconds=60)


# ── Application fixtures ───────────────────────────────────────────────


async def create_schema(database_url: str) -> None:
    engine = create_async_engine(database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    await engine.dispose()


@pytest.fixture
def make_client(fake_provider):
    """Build a ``TestClient`` for the given settings; closed at teardown."""
    clients = []

    def _make(app_settings: Settings) -> TestClient:
        asyncio.run(create_schema(app_settings.database_url))
        client = TestClient(create_app(app_settings, transport=fake_provider.transport))
        client.__enter__()
        clients.append(client)
        return client

    yield _make
    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def client(make_client, settings) -> TestClient:
    return make_client(settings)


def register(client: TestClient, email: str = "ada@example.com", password: str = "correct horse") -> Dict[str, Any]:
    resp = client.post(
        "/api/v1/auth/register",
        json={"username": email.split("@")[0], "email": email, "password": password},
    )
    assert resp.status_code == 200, resp.text
    return resp.json()


def bearer(token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"}
