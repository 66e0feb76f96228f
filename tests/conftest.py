"""
tests/conftest.py -- Shared test fixtures for the Validiant auth core.

This module provides:
  - settings: a Settings instance with fixed keys and cheap bcrypt rounds
  - cache: RedisCache over a private fakeredis server
  - store: CredentialStore over a private in-memory SQLite database
  - sessions / state_store / issuer / password_auth: the real
    components, wired the same way build_services() wires them
  - client: TestClient against the real app with a patched lifespan

Design: the API fixture uses a named shared-memory SQLite URI (not plain
:memory:) because TestClient runs sync route handlers in a thread pool. Plain
:memory: DBs are per-connection and would present a blank schema to each
worker thread. Each test gets its own name so state never leaks between tests.

The DEBUG env var must be set before any core import so get_settings() (called
when api.main is imported) auto-generates signing keys instead of raising.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: Set DEBUG before any core/api import.
os.environ.setdefault("DEBUG", "true")

import fakeredis
import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, build_services
from auth.passwords import PasswordAuthenticator
from auth.store import CredentialStore
from auth.tokens import TokenIssuer
from cache.sessions import Denylist, LoginThrottle, OneTimeStateStore, SessionStore
from cache.store import RedisCache
from core.config import Settings

TEST_PASSWORD = "Corr3ct-Horse!"


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        debug=True,
        secret_key="a" * 32 + "-access-signing-key",
        refresh_secret_key="b" * 32 + "-refresh-signing-key",
        bcrypt_rounds=4,
        secure_cookies=False,
        login_max_attempts=3,
        cors_origins=["http://localhost:3000"],
        webauthn_rp_id="localhost",
        webauthn_origin="http://localhost:3000",
    )


@pytest.fixture
def redis_client() -> fakeredis.FakeRedis:
    # A private server per test: FakeRedis instances otherwise share state.
    return fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def cache(redis_client: fakeredis.FakeRedis) -> RedisCache:
    return RedisCache(redis_client)


@pytest.fixture
def store() -> Generator[CredentialStore, None, None]:
    s = CredentialStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def sessions(cache: RedisCache, settings: Settings) -> SessionStore:
    return SessionStore(cache, settings.session_ttl_seconds)


@pytest.fixture
def state_store(cache: RedisCache) -> OneTimeStateStore:
    return OneTimeStateStore(cache)


@pytest.fixture
def issuer(sessions: SessionStore, cache: RedisCache, settings: Settings) -> TokenIssuer:
    return TokenIssuer(
        sessions,
        Denylist(cache),
        secret_key=settings.secret_key,
        refresh_secret_key=settings.refresh_secret_key,
        issuer=settings.jwt_issuer,
        audience=settings.jwt_audience,
        access_ttl_seconds=settings.access_token_ttl_seconds,
        refresh_ttl_seconds=settings.refresh_token_ttl_seconds,
    )


@pytest.fixture
def password_auth(
    store: CredentialStore, issuer: TokenIssuer, cache: RedisCache, settings: Settings
) -> PasswordAuthenticator:
    return PasswordAuthenticator(
        store,
        issuer,
        LoginThrottle(cache, settings.login_max_attempts, settings.login_attempt_window_seconds),
        secret_key=settings.secret_key,
        bcrypt_rounds=settings.bcrypt_rounds,
    )


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


def _patch_lifespan(settings: Settings, cache: RedisCache, store: CredentialStore):
    """Return a lifespan that wires test doubles into app.state.

    Mirrors the real lifespan except that the Redis client is fakeredis and
    the database is a private in-memory SQLite instance.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        build_services(app, settings, cache, store)
        yield

    return test_lifespan


@pytest.fixture
def api_store() -> Generator[CredentialStore, None, None]:
    url = f"sqlite:///file:validiant_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"
    s = CredentialStore(url)
    yield s
    s.close()


@pytest.fixture
def client(settings: Settings, cache: RedisCache, api_store: CredentialStore) -> Generator[TestClient, None, None]:
    """TestClient over the real app, routes, and middleware.

    The per-IP slowapi limit is disabled: it would count requests across tests.
    The per-account login throttle stays on; it lives in the per-test cache.
    """
    app.router.lifespan_context = _patch_lifespan(settings, cache, api_store)
    limiter.enabled = False
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c
    limiter.enabled = True


@pytest.fixture
def register(client: TestClient):
    """Return a helper that POSTs /auth/register. Cookies land in the client jar."""

    def _register(email: str = "ada@example.com", password: str = TEST_PASSWORD):
        return client.post(
            "/api/v1/auth/register",
            json={"email": email, "password": password, "fullName": "Ada Lovelace"},
        )

    return _register
