"""
tests/conftest.py -- Shared test fixtures for the identity service tests.

This module provides:
  - _make_test_stores(): creates isolated in-memory DBs for credentials, clients and cache
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - seed_identity(): standard roles, permissions and accounts used across tests
  - credential_store / client_store / cache: fresh stores for unit tests
  - file_credential_store: file-backed store for concurrency tests
  - api_client: TestClient (follow_redirects=False) plus an admin JWT
  - api: api_client with an empty cookie jar; what most tests use

Design: Named shared-memory SQLite URIs (not plain :memory:) are required for
the TestClient fixtures because route handlers run in a thread pool. Plain
:memory: DBs are per-connection and would present a blank schema to each
worker thread. Unit-test stores are used from one thread, so each gets its own
uniquely named database instead.

DEBUG and LOGIN_RATE_LIMIT must be set before any project import so
get_settings() auto-generates SECRET_KEY and per-route limits do not trip
while the suite logs in dozens of times from the same client address.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: set before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import attach_services
from asgi import app
from auth.models import Permission, Role, User
from auth.store import CredentialStore
from auth.tokens import hash_password, issue_access_token
from cache.store import EphemeralCache
from core.config import get_settings
from oidc.clients import ClientManager
from oidc.store import ClientStore

ADMIN_LOGIN = "testadmin"
ADMIN_PASSWORD = "adminpass123"
CASHIER_LOGIN = "cashier"
CASHIER_PASSWORD = "cashierpass1"
CASHIER_EMAIL = "cashier@example.com"

CLIENT_ID = "desktop"
CLIENT_SECRET = "desktop-client-secret-0001"
CLIENT_REDIRECT = "http://127.0.0.1:7890/callback"
PUBLIC_CLIENT_ID = "mobile"
PUBLIC_REDIRECT = "https://driver.example/callback"


def _memory_url(name: str) -> str:
    return f"sqlite:///file:{name}?mode=memory&cache=shared&uri=true"


def _make_test_stores(db_suffix: str) -> tuple[CredentialStore, ClientStore, EphemeralCache]:
    """Create isolated named shared-memory stores for one test module.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state (e.g. 'auth_routes', 'oidc').
    """
    store = CredentialStore(db_url=_memory_url(f"test_identity_{db_suffix}"))
    clients = ClientStore(db_url=_memory_url(f"test_clients_{db_suffix}"))
    cache = EphemeralCache(":memory:")
    return store, clients, cache


def _patch_lifespan(store: CredentialStore, clients: ClientStore, cache: EphemeralCache):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine: a real asyncio.Task is
    required because shutdown calls .cancel() on it.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        attach_services(app.state, store, clients, cache, get_settings())
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


def seed_identity(store: CredentialStore) -> dict[str, object]:
    """Create the standard roles and accounts. Returns them keyed by name."""
    admin_role = Role(name="Administrator", legacy_role_id=1, priority=100, is_system=True)
    cashier_role = Role(name="Cashier", legacy_role_id=3, priority=10)
    user_role = Role(name="User", legacy_role_id=0, priority=1, is_system=True)
    for role in (admin_role, cashier_role, user_role):
        role.role_id = store.create_role(role)

    sell = Permission(name="tickets.sell", category="tickets")
    refund = Permission(name="tickets.refund", category="tickets")
    for perm in (sell, refund):
        perm.permission_id = store.create_permission(perm)
    store.grant_permission(cashier_role.role_id, sell.permission_id)
    store.grant_permission(admin_role.role_id, sell.permission_id)
    store.grant_permission(admin_role.role_id, refund.permission_id)

    admin = User(login=ADMIN_LOGIN, hashed_password=hash_password(ADMIN_PASSWORD), email="admin@example.com")
    store.create_user(admin)
    store.assign_role(admin.user_id, admin_role.role_id)
    store.ensure_user_settings(admin.user_id)

    cashier = User(
        login=CASHIER_LOGIN,
        hashed_password=hash_password(CASHIER_PASSWORD),
        email=CASHIER_EMAIL,
        phone_number="+375291112233",
        email_confirmed=True,
    )
    store.create_user(cashier)
    store.assign_role(cashier.user_id, cashier_role.role_id)
    store.assign_role(cashier.user_id, user_role.role_id)
    store.ensure_user_settings(cashier.user_id)

    return {
        "admin": admin,
        "cashier": cashier,
        "admin_role": admin_role,
        "cashier_role": cashier_role,
        "user_role": user_role,
    }


def seed_clients(clients: ClientStore) -> None:
    manager = ClientManager(clients)
    manager.register(
        client_id=CLIENT_ID,
        display_name="Cashier desktop",
        redirect_uris=[CLIENT_REDIRECT],
        client_secret=CLIENT_SECRET,
        allowed_scopes=["openid", "profile", "email", "roles"],
    )
    manager.register(
        client_id=PUBLIC_CLIENT_ID,
        display_name="Driver app",
        redirect_uris=[PUBLIC_REDIRECT],
        allowed_scopes=["openid", "profile"],
    )


# ---------------------------------------------------------------------------
# Unit-test stores -- fresh per test
# ---------------------------------------------------------------------------


@pytest.fixture
def credential_store() -> Generator[CredentialStore, None, None]:
    store = CredentialStore(db_url=_memory_url(f"unit_{uuid.uuid4().hex}"))
    yield store
    store.close()


@pytest.fixture
def file_credential_store(tmp_path) -> Generator[CredentialStore, None, None]:
    """File-backed store for thread races.

    Shared-cache memory databases report table locks to competing writers
    instead of waiting, so races need a real file with WAL and a busy timeout.
    """
    store = CredentialStore(db_url=f"sqlite:///{tmp_path / 'identity.db'}")
    yield store
    store.close()


@pytest.fixture
def client_store() -> Generator[ClientStore, None, None]:
    clients = ClientStore(db_url=_memory_url(f"unit_clients_{uuid.uuid4().hex}"))
    yield clients
    clients.close()


@pytest.fixture
def cache() -> Generator[EphemeralCache, None, None]:
    c = EphemeralCache(":memory:")
    yield c
    c.close()


@pytest.fixture
def seeded(credential_store: CredentialStore) -> dict[str, object]:
    return seed_identity(credential_store)


# ---------------------------------------------------------------------------
# Module-scoped integration client
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, str], None, None]:
    """Yield (client, admin_token) for API and web integration tests.

    One database per test module. follow_redirects=False so tests can assert
    on redirect locations. Services are reachable through client.app.state.
    """
    store, clients, cache = _make_test_stores(request.module.__name__.rsplit(".", 1)[-1])
    people = seed_identity(store)
    seed_clients(clients)
    token = issue_access_token(store, people["admin"])

    app.router.lifespan_context = _patch_lifespan(store, clients, cache)

    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield client, token

    cache.close()
    clients.close()
    store.close()


@pytest.fixture
def api(api_client: tuple[TestClient, str]) -> tuple[TestClient, str]:
    """api_client with the cookie jar emptied, so each test starts signed out."""
    client, token = api_client
    client.cookies.clear()
    return client, token
