"""
tests/conftest.py -- Shared test fixtures for CredGuard.

This module provides:
  Unit fixtures (fresh in-memory DB per test):
    - clock, engine, registry, ledger, notifier, config, service, gate
    - make_principal(): factory for persisted principals
  Integration fixtures (one app per module):
    - app_ctx: TestClient on the real ASGI app with a patched lifespan
    - client: the same TestClient with its cookie jar cleared per test

Design: the integration DB uses a named shared-memory SQLite URI (not plain
:memory:) because TestClient runs sync route handlers in a thread pool.
Plain :memory: DBs are per-connection and would present a blank schema to
each worker thread. The named URI format
(file:name?mode=memory&cache=shared&uri=true) shares one in-memory instance
across all connections in the same process.

DEBUG, RATE_LIMIT_ENABLED and PRINCIPAL_TYPES must be set before any project
import so get_settings() auto-generates SECRET_KEY, the limiter is built
disabled, and the app serves both a "user" and a "staff" principal type.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

# CRITICAL: set before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("PRINCIPAL_TYPES", '{"user": "users", "staff": "staff_members"}')

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine

from api.main import init_app_state
from asgi import app
from auth.models import Principal
from auth.registry import PrincipalRegistry
from auth.tokens import create_access_token, hash_password
from core.clock import FixedClock
from core.config import get_settings
from core.database import make_engine
from ledger.models import AuditEntry
from ledger.store import AuditLedger
from security.gate import EnforcementGate
from security.policy import PolicyConfig
from security.service import CredentialSecurityService

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
PRINCIPAL_TYPES = {"user": "users", "staff": "staff_members"}


class RecordingNotifier:
    """Notifier double that remembers what it was asked to send."""

    def __init__(self) -> None:
        self.verifications: list[Principal] = []
        self.resets: list[tuple[Principal, str]] = []

    def send_verification_notification(self, principal: Principal) -> None:
        self.verifications.append(principal)

    def send_password_reset_notification(self, principal: Principal, token: str) -> None:
        self.resets.append((principal, token))


def create_principal(
    registry: PrincipalRegistry,
    ledger: AuditLedger,
    email: str | None = None,
    principal_type: str = "user",
    verified_at: datetime | None = None,
    password_changed_at: datetime | None = None,
    password: str | None = None,
    role: str = "member",
) -> Principal:
    """Persist a principal; optionally seed a password-change ledger record."""
    store = registry.get(principal_type)
    pid = store.create(
        Principal(
            email=email or f"{uuid.uuid4().hex[:10]}@example.com",
            principal_type=principal_type,
            role=role,
            email_verified_at=verified_at,
            hashed_password=hash_password(password) if password else None,
        )
    )
    principal = store.get_by_id(pid)
    if password_changed_at is not None:
        ledger.record(principal, AuditEntry(reason="seed").as_password_change(password_changed_at))
    return principal


# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(T0)


@pytest.fixture
def engine() -> Generator[Engine, None, None]:
    eng = make_engine("sqlite:///:memory:")
    yield eng
    eng.dispose()


@pytest.fixture
def registry(engine: Engine, clock: FixedClock) -> PrincipalRegistry:
    return PrincipalRegistry(engine, PRINCIPAL_TYPES, default="user", clock=clock)


@pytest.fixture
def ledger(engine: Engine, clock: FixedClock) -> AuditLedger:
    return AuditLedger(engine, clock=clock)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def config() -> PolicyConfig:
    return PolicyConfig(
        verification_expiry_days=30,
        password_expiry_days=30,
        exempt_routes=frozenset({"verification.notice", "logout"}),
    )


@pytest.fixture
def service(registry, ledger, notifier, config, clock) -> CredentialSecurityService:
    return CredentialSecurityService(registry, ledger, notifier, config, clock=clock)


@pytest.fixture
def gate(ledger, notifier, config, clock) -> EnforcementGate:
    return EnforcementGate(ledger, notifier, config, clock=clock)


@pytest.fixture
def make_principal(registry, ledger):
    """Factory: make_principal(verified_at=..., password_changed_at=..., ...)."""

    def _make(**kwargs) -> Principal:
        return create_principal(registry, ledger, **kwargs)

    return _make


# ---------------------------------------------------------------------------
# Integration fixtures
# ---------------------------------------------------------------------------


@dataclass
class AppContext:
    client: TestClient
    registry: PrincipalRegistry
    ledger: AuditLedger
    notifier: RecordingNotifier
    clock: FixedClock
    admin: Principal
    admin_token: str

    def fresh(self, **kwargs) -> Principal:
        """A principal with both credentials inside their windows."""
        kwargs.setdefault("verified_at", self.clock() - timedelta(days=1))
        kwargs.setdefault("password_changed_at", self.clock() - timedelta(days=1))
        return create_principal(self.registry, self.ledger, **kwargs)

    def stale(self, **kwargs) -> Principal:
        """A principal whose verification and password both expired."""
        kwargs.setdefault("verified_at", self.clock() - timedelta(days=45))
        kwargs.setdefault("password_changed_at", self.clock() - timedelta(days=45))
        return create_principal(self.registry, self.ledger, **kwargs)

    @staticmethod
    def bearer(principal: Principal) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(principal)}"}


def _patch_lifespan(engine: Engine, notifier: RecordingNotifier, clock: FixedClock):
    """Return an async context manager that replaces the real lifespan.

    Runs the same init_app_state() as production, with the test engine,
    a recording notifier and a fixed clock.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        init_app_state(app, get_settings(), engine=engine, notifier=notifier, clock=clock)
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def app_ctx(request) -> Generator[AppContext, None, None]:
    """Yield an AppContext wired to an isolated shared-memory database.

    follow_redirects=False so tests can assert on redirect locations.
    base_url uses localhost because TrustedHostMiddleware rejects "testserver".
    """
    name = request.module.__name__.rsplit(".", 1)[-1]
    engine = make_engine(f"sqlite:///file:credguard_{name}?mode=memory&cache=shared&uri=true")
    notifier = RecordingNotifier()
    clock = FixedClock(T0)

    app.router.lifespan_context = _patch_lifespan(engine, notifier, clock)

    with TestClient(app, base_url="http://localhost", follow_redirects=False) as client:
        registry: PrincipalRegistry = app.state.registry
        ledger: AuditLedger = app.state.ledger
        admin = create_principal(
            registry,
            ledger,
            email=f"admin-{name}@example.com",
            role="admin",
            password="adminpass123",
            verified_at=clock() - timedelta(days=1),
            password_changed_at=clock() - timedelta(days=1),
        )
        yield AppContext(
            client=client,
            registry=registry,
            ledger=ledger,
            notifier=notifier,
            clock=clock,
            admin=admin,
            admin_token=create_access_token(admin),
        )

    engine.dispose()


@pytest.fixture
def client(app_ctx: AppContext) -> TestClient:
    """The module's TestClient with no cookies left over from earlier tests."""
    app_ctx.client.cookies.clear()
    return app_ctx.client
