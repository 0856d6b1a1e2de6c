"""
tests/conftest.py -- Shared test fixtures for the shortlink test suite.

This module provides:
  - make_test_stores(): creates isolated in-memory DBs for users and quota counters
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - api_client: TestClient plus a local user and its bearer token
  - make_api_key(): stores an API key for a user and returns the raw key

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The auth environment must be set before any api/ import, because api/main.py
reads get_settings() when the module is imported.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: Set the auth environment before any api/core import so
# get_settings() sees a valid local HS256 deployment.
os.environ.setdefault("DEBUG", "true")
os.environ["AUTH_PROVIDER"] = "local"
os.environ["JWT_ALGORITHM"] = "HS256"
os.environ["JWT_SECRET_KEY"] = "test-only-shortlink-signing-secret-0123456789"
os.environ["ADMIN_PASSWORD"] = "test-admin-password"
os.environ["LOGIN_RATE_LIMIT"] = "1000/minute"

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.hashing import hash_secret
from auth.models import ApiKey, User
from auth.principal import PrincipalResolver
from auth.providers import AuthProvider, build_auth_provider
from auth.store import UserStore
from auth.tokens import api_key_display_prefix, generate_api_key_secret
from core.config import AuthConfig, AuthProviderKind, JWTConfig
from quota.models import QuotaPolicy
from quota.store import QuotaLedger

TEST_SECRET = os.environ["JWT_SECRET_KEY"]
ADMIN_PASSWORD = os.environ["ADMIN_PASSWORD"]
TEST_PASSWORD = "testpass123"


def local_auth_config() -> AuthConfig:
    return AuthConfig(
        provider=AuthProviderKind.LOCAL,
        jwt=JWTConfig(algorithm="HS256", secret_key=TEST_SECRET),
    )


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def make_test_stores(db_suffix: str) -> tuple[UserStore, QuotaLedger]:
    """Create isolated named shared-memory SQLite stores for test isolation.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state (e.g. 'api', 'admin').
    """
    auth_url = f"sqlite:///file:test_auth_{db_suffix}?mode=memory&cache=shared&uri=true"
    quota_url = f"sqlite:///file:test_quota_{db_suffix}?mode=memory&cache=shared&uri=true"
    return UserStore(db_url=auth_url), QuotaLedger(db_url=quota_url)


def make_api_key(user_store: UserStore, user_id: str, scopes: list[str]) -> str:
    """Store a new API key for user_id and return the raw key."""
    raw_key = generate_api_key_secret()
    user_store.create_api_key(
        ApiKey(
            id=str(uuid.uuid4()),
            owner_user_id=user_id,
            secret_hash=hash_secret(raw_key),
            key_prefix=api_key_display_prefix(raw_key),
            scopes=scopes,
        )
    )
    return raw_key


def _patch_lifespan(
    user_store: UserStore,
    ledger: QuotaLedger,
    provider: AuthProvider,
    policy: QuotaPolicy | None = None,
):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test stores into app.state so TestClient routes see
    isolated test DBs rather than the package-local database files.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.auth_provider = provider
        app.state.user_store = user_store
        app.state.quota_ledger = ledger
        app.state.quota_policy = policy or QuotaPolicy()
        app.state.resolver = PrincipalResolver(user_store, provider)
        app.state.admin_password = ADMIN_PASSWORD
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Module-scoped fixtures -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


def _client_for(db_suffix: str) -> Generator[tuple[TestClient, str, str], None, None]:
    user_store, ledger = make_test_stores(db_suffix)
    provider = build_auth_provider(local_auth_config())

    uid = user_store.create_user(User(user_id="", username="testuser", hashed_password=hash_secret(TEST_PASSWORD)))
    token = provider.issue_token(uid)

    app.router.lifespan_context = _patch_lifespan(user_store, ledger, provider)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, token, uid

    user_store.close()
    ledger.close()


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, str, str], None, None]:
    """Yield (client, token, user_id) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers but use isolated in-memory stores. Each
    test module gets its own databases, named after the module.
    """
    yield from _client_for(request.module.__name__.rsplit(".", 1)[-1])


@pytest.fixture
def user_store(tmp_path) -> Generator[UserStore, None, None]:
    store = UserStore(db_url=f"sqlite:///{tmp_path / 'auth.db'}")
    yield store
    store.close()
