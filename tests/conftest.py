"""
tests/conftest.py -- Shared test fixtures for authcore unit and integration tests.

This module provides:
  - RecordingNotifier: captures the opaque tokens the service hands off, so
    tests can play the role of the user clicking the email link
  - store / hasher / issuer / service: isolated components on a file-backed
    SQLite database under tmp_path
  - api_client: TestClient over the real FastAPI app with a patched lifespan

Design: file-backed SQLite (not :memory:) is used everywhere. The concurrency
tests hit the store from several threads at once, and a :memory: database is
private to the connection that created it.

Environment variables must be set before any core/auth/api import so
get_settings() sees cheap bcrypt rounds and a rate limit the suite cannot trip.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: set before any core/auth/api import (get_settings() is cached).
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("JWT_SECRET", "test-secret-key-with-at-least-32-characters")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.models import Account
from auth.passwords import PasswordHasher
from auth.service import CredentialService
from auth.store import AccountStore
from auth.tokens import TokenIssuer
from core.config import get_settings

TEST_SECRET = "test-secret-key-with-at-least-32-characters"

# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class RecordingNotifier:
    """Notifier that remembers every (email, token) hand-off instead of sending mail."""

    def __init__(self) -> None:
        self.verifications: list[tuple[str, str]] = []
        self.resets: list[tuple[str, str]] = []

    def send_verification_email(self, account: Account, token: str) -> None:
        self.verifications.append((account.email, token))

    def send_password_reset_email(self, account: Account, token: str) -> None:
        self.resets.append((account.email, token))

    def last_verification_token(self, email: str) -> str:
        return [t for e, t in self.verifications if e == email][-1]

    def last_reset_token(self, email: str) -> str:
        return [t for e, t in self.resets if e == email][-1]


class FailingNotifier:
    """Notifier whose mail pipeline is down."""

    def send_verification_email(self, account: Account, token: str) -> None:
        raise ConnectionError("SMTP unavailable")

    def send_password_reset_email(self, account: Account, token: str) -> None:
        raise ConnectionError("SMTP unavailable")


# ---------------------------------------------------------------------------
# Component fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def hasher() -> PasswordHasher:
    """bcrypt at the minimum cost factor -- correctness, not strength, is under test."""
    return PasswordHasher(rounds=4)


@pytest.fixture
def issuer() -> TokenIssuer:
    return TokenIssuer(secret=TEST_SECRET)


@pytest.fixture
def store(tmp_path) -> Generator[AccountStore, None, None]:
    s = AccountStore(f"sqlite:///{tmp_path / 'accounts.db'}")
    yield s
    s.close()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def failing_notifier() -> FailingNotifier:
    return FailingNotifier()


@pytest.fixture
def service(
    store: AccountStore, hasher: PasswordHasher, issuer: TokenIssuer, notifier: RecordingNotifier
) -> CredentialService:
    return CredentialService(store=store, hasher=hasher, issuer=issuer, notifier=notifier)


@pytest.fixture
def register(service: CredentialService):
    """Return a callable that registers an account with valid profile fields."""

    def _register(email: str = "a@x.com", password: str = "Password123!"):
        return service.register(
            email=email,
            password=password,
            full_name="Ada Lovelace",
            date_of_birth="1990-12-10",
            gender="female",
        )

    return _register


# ---------------------------------------------------------------------------
# API integration fixture
# ---------------------------------------------------------------------------


def _patch_lifespan(store: AccountStore, notifier: RecordingNotifier):
    """Return an async context manager that replaces the real lifespan.

    Wires test components into app.state so TestClient routes use an isolated
    database and a recording notifier.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        settings = get_settings()
        issuer = TokenIssuer(secret=TEST_SECRET)
        app.state.settings = settings
        app.state.account_store = store
        app.state.token_issuer = issuer
        app.state.credential_service = CredentialService(
            store=store,
            hasher=PasswordHasher(rounds=4),
            issuer=issuer,
            notifier=notifier,
        )
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(tmp_path_factory) -> Generator[tuple[TestClient, RecordingNotifier], None, None]:
    """Yield (client, notifier) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so tests
    hit real route handlers, dependencies, and exception handlers.
    """
    db_path = tmp_path_factory.mktemp("api") / "accounts.db"
    store = AccountStore(f"sqlite:///{db_path}")
    notifier = RecordingNotifier()

    app.router.lifespan_context = _patch_lifespan(store, notifier)

    with TestClient(app, raise_server_exceptions=False) as client:
        yield client, notifier

    store.close()
