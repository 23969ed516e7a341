"""
tests/conftest.py -- Shared test fixtures for folio auth.

This module provides:
  - an in-process Redis (fakeredis with Lua) shared between an async client
    for the code under test and a sync client for assertions
  - an isolated principal store per test (named shared-memory SQLite)
  - FakeClock for expiry / renewal tests
  - api_client: TestClient over the real app with a patched lifespan
  - a pytest_pyfunc_call hook that runs `async def` tests with asyncio.run

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because flows run store calls in worker threads (asyncio.to_thread) and
TestClient serves requests from its own thread. Plain :memory: DBs are
per-connection and would present a blank schema to each of them.

DEBUG must be set before any auth/core import so get_settings() generates
JWT secrets instead of raising. BCRYPT_ROUNDS keeps hashing fast.
"""

from __future__ import annotations

import asyncio
import inspect
import os
import time
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass

# CRITICAL: set before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import fakeredis
import pytest
from fastapi.testclient import TestClient

from api.main import app, install_components
from auth.models import Principal
from auth.passwords import hash_password
from auth.store import PrincipalStore
from core.config import get_settings

ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "Adm1n!pass"
EDITOR_EMAIL = "editor@example.com"
EDITOR_PASSWORD = "Ed1tor!pass"


# ---------------------------------------------------------------------------
# Async test support
# ---------------------------------------------------------------------------


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable returning epoch seconds; starts at real time, moves only on advance()."""

    def __init__(self, start: float | None = None) -> None:
        self.now = time.time() if start is None else start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Redis
# ---------------------------------------------------------------------------


@pytest.fixture
def redis_server() -> fakeredis.FakeServer:
    return fakeredis.FakeServer()


@pytest.fixture
def redis_client(redis_server) -> fakeredis.FakeAsyncRedis:
    """Async client for code under test. Use only inside one event loop."""
    return fakeredis.FakeAsyncRedis(server=redis_server, decode_responses=True)


@pytest.fixture
def redis_sync(redis_server) -> fakeredis.FakeRedis:
    """Sync view of the same data, for assertions from any thread."""
    return fakeredis.FakeRedis(server=redis_server, decode_responses=True)


# ---------------------------------------------------------------------------
# Principal store
# ---------------------------------------------------------------------------


def _memory_db_url() -> str:
    return f"sqlite:///file:test_auth_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


def add_principal(store: PrincipalStore, email: str, password: str, role: str = "viewer", name: str = "") -> str:
    return store.create_principal(
        Principal(email=email, name=name or email.split("@")[0], password_hash=hash_password(password), role=role)
    )


@pytest.fixture
def db_url() -> str:
    return _memory_db_url()


@pytest.fixture
def principal_store(db_url) -> Generator[PrincipalStore, None, None]:
    store = PrincipalStore(db_url=db_url)
    yield store
    store.close()


@pytest.fixture
def make_principal(principal_store):
    """Factory: make_principal(email, password, role="viewer") -> id."""

    def _make(email: str, password: str, role: str = "viewer", name: str = "") -> str:
        return add_principal(principal_store, email, password, role=role, name=name)

    return _make


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


@dataclass
class ApiHarness:
    client: TestClient
    principals: PrincipalStore
    redis: fakeredis.FakeRedis
    admin_id: str
    editor_id: str

    def sign_in(self, email: str = ADMIN_EMAIL, password: str = ADMIN_PASSWORD, ip: str = "198.51.100.1"):
        return self.client.post(
            "/api/v1/auth/signin",
            json={"email": email, "password": password},
            headers={"X-Forwarded-For": ip, "User-Agent": "pytest-agent"},
        )


def _patch_lifespan(redis_server: fakeredis.FakeServer, principals: PrincipalStore):
    """Return an async context manager that replaces the real lifespan.

    Wires the same components as production, but around fakeredis and an
    isolated in-memory principal store. The async Redis client is created
    inside the lifespan so it binds to TestClient's event loop.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        client = fakeredis.FakeAsyncRedis(server=redis_server, decode_responses=True)
        install_components(app, get_settings(), client, principals)
        yield
        await client.aclose()

    return test_lifespan


@pytest.fixture
def api_client(redis_server, redis_sync, principal_store) -> Generator[ApiHarness, None, None]:
    """Yield an ApiHarness with one admin and one editor already created.

    follow_redirects=False so gate tests can assert on redirect locations.
    """
    admin_id = add_principal(principal_store, ADMIN_EMAIL, ADMIN_PASSWORD, role="admin", name="Admin")
    editor_id = add_principal(principal_store, EDITOR_EMAIL, EDITOR_PASSWORD, role="editor", name="Editor")

    app.router.lifespan_context = _patch_lifespan(redis_server, principal_store)

    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield ApiHarness(
            client=client,
            principals=principal_store,
            redis=redis_sync,
            admin_id=admin_id,
            editor_id=editor_id,
        )
