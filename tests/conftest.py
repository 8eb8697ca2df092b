"""
tests/conftest.py -- Shared test fixtures for the client portal.

This module provides:
  - make_store(): an isolated named shared-memory AuthStore
  - FakeClock: a settable clock injected into codecs and services
  - create_user() / create_org(): seed helpers that bypass the HTTP layer
  - store, clock, codec, sessions: unit-test fixtures
  - api: a TestClient over the real app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool and the API key
dispatcher writes from its own threads. Plain :memory: DBs are per-connection
and would present a blank schema to each worker thread. The named URI format
(file:name?mode=memory&cache=shared&uri=true) shares one in-memory instance
across all connections in the same process. Each fixture gets a fresh name.

The DEBUG and ALLOWED_HOSTS env vars must be set before any api/auth/core
import so get_settings() auto-generates SECRET_KEY in dev mode rather than
raising ValueError, and so TrustedHostMiddleware accepts TestClient's host.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

# CRITICAL: set before any api/auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost", "127.0.0.1"]')

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, init_app_state
from auth.identity import Identity
from auth.models import Organization, OrganizationMember, User
from auth.rbac import MemberRole
from auth.sessions import SessionIssuer
from auth.store import AuthStore
from auth.tokens import CredentialCodec, TokenSubject, hash_password
from core.config import Settings, get_settings

TEST_SECRET = "test-secret-key-that-is-at-least-32-characters"
PASSWORD = "Correct-Horse-9"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def make_store(prefix: str = "auth") -> AuthStore:
    """Create an AuthStore on a uniquely named shared-memory SQLite database."""
    name = f"test_{prefix}_{uuid.uuid4().hex}"
    return AuthStore(db_url=f"sqlite:///file:{name}?mode=memory&cache=shared&uri=true")


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now = self.now + timedelta(seconds=seconds)


def create_user(
    store: AuthStore,
    email: str,
    *,
    verified: bool = True,
    is_admin: bool = False,
    password: str | None = None,
    name: str | None = None,
) -> User:
    user = User(
        email=email,
        name=name,
        is_admin=is_admin,
        hashed_password=hash_password(password) if password else None,
        email_verified_at=datetime.now(timezone.utc).isoformat() if verified else None,
    )
    user_id = store.create_user(user)
    return store.get_user_by_id(user_id)


def create_org(store: AuthStore, slug: str, billing_status: str = "ACTIVE") -> int:
    return store.create_organization(Organization(name=slug.title(), slug=slug), billing_status=billing_status)


def add_member(store: AuthStore, org_id: int, user: User, role: MemberRole) -> None:
    store.add_member(OrganizationMember(organization_id=org_id, user_id=user.id, role=role.value))


def identity_of(user: User) -> Identity:
    return Identity(user_id=user.id, email=user.email, is_admin=user.is_admin, email_verified=user.email_verified)


# ---------------------------------------------------------------------------
# Unit-test fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[AuthStore, None, None]:
    s = make_store()
    yield s
    s.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def codec(clock: FakeClock) -> CredentialCodec:
    return CredentialCodec(TEST_SECRET, clock=clock)


@pytest.fixture
def sessions(store: AuthStore, codec: CredentialCodec, clock: FakeClock) -> SessionIssuer:
    return SessionIssuer(store, codec, clock=clock)


# ---------------------------------------------------------------------------
# HTTP fixture
# ---------------------------------------------------------------------------


@dataclass
class ApiHarness:
    client: TestClient
    store: AuthStore
    settings: Settings
    oauth: MagicMock

    def bearer_for(self, user: User) -> dict[str, str]:
        """Authorization header with a fresh access token for user."""
        token = app.state.codec.issue(TokenSubject.from_user(user))
        return {"Authorization": f"Bearer {token}"}


def _patch_lifespan(settings: Settings, store: AuthStore, oauth: MagicMock):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store and a mocked OAuth registry into app.state through
    the same init_app_state() the real lifespan uses, so routes see exactly
    the production component graph with no network access.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        init_app_state(app.state, settings, store, oauth=oauth)
        yield
        app.state.dispatcher.shutdown(wait=True)

    return test_lifespan


@pytest.fixture
def api() -> Generator[ApiHarness, None, None]:
    """Yield an ApiHarness around a TestClient with an isolated store.

    Google is "configured" in these settings so the OAuth routes are enabled;
    the registry itself is a MagicMock that tests program per case.
    follow_redirects=False so tests can assert on redirect Location headers.
    """
    settings = get_settings().model_copy(
        update={"google_client_id": "test-google-id", "google_client_secret": "test-google-secret"}
    )
    test_store = make_store("api")
    oauth = MagicMock()
    limiter.reset()
    app.router.lifespan_context = _patch_lifespan(settings, test_store, oauth)

    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield ApiHarness(client=client, store=test_store, settings=settings, oauth=oauth)

    test_store.close()
