"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import os

# ---------------------------------------------------------------------------
# Secrets must be in place before mentorhub.api.deps is imported; it
# validates JWT_SECRET at module-load time.
# ---------------------------------------------------------------------------
_TEST_JWT_SECRET = "test-secret-for-pytest-only-" + "x" * 40  # > 32 chars
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("CALCOM_WEBHOOK_SECRET", "test-cal-webhook-secret")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")

from datetime import UTC, datetime, timedelta  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import Engine, create_engine  # noqa: E402

# ---------------------------------------------------------------------------
# SQLite has no JSONB; render it as TEXT so create_all works.
# ---------------------------------------------------------------------------
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402

from mentorhub.database.models import (  # noqa: E402
    Base,
    MentorCredential,
    MentorProfile,
    MentorStripeAccount,
    User,
)

_jsonb_sqlite_registered = False


def _register_jsonb_sqlite_compat():
    """Register SQLite compilation for PG JSONB type (idempotent)."""
    global _jsonb_sqlite_registered
    if _jsonb_sqlite_registered:
        return
    from sqlalchemy.ext.compiler import compiles

    @compiles(PG_JSONB, "sqlite")
    def _compile_jsonb_as_text(type_, compiler, **kw):
        return "TEXT"

    _jsonb_sqlite_registered = True


_register_jsonb_sqlite_compat()

T0 = datetime(2026, 3, 2, 12, 0, 0, tzinfo=UTC)


@pytest.fixture
def db_engine() -> Engine:
    """In-memory SQLite engine with all mentorhub tables.

    Uses StaticPool so every thread (``asyncio.to_thread``, TestClient)
    sees the same in-memory database.
    """
    from sqlalchemy.pool import StaticPool

    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


# ---------------------------------------------------------------------------
# Row factories
# ---------------------------------------------------------------------------
def make_mentor(
    engine: Engine,
    email: str = "mentor@example.com",
    *,
    ranking_score: float = 0.0,
    stripe_account_id: str | None = None,
    payouts_enabled: bool = True,
) -> int:
    """Create a user with a mentor profile (and optionally a payout account)."""
    with Session(engine) as session:
        user = User(email=email, name=email.split("@")[0])
        session.add(user)
        session.flush()
        session.add(MentorProfile(user_id=user.id, ranking_score=ranking_score))
        if stripe_account_id:
            session.add(MentorStripeAccount(
                user_id=user.id,
                stripe_account_id=stripe_account_id,
                status="active" if payouts_enabled else "pending",
                charges_enabled=payouts_enabled,
                payouts_enabled=payouts_enabled,
            ))
        session.commit()
        return user.id


def make_credential(
    engine: Engine,
    mentor_id: int,
    *,
    now: datetime = T0,
    access_ttl: timedelta = timedelta(hours=1),
    refresh_ttl: timedelta = timedelta(days=365),
    external_account_id: int = 4242,
    access_token: str = "access-0",
    refresh_token: str = "refresh-0",
) -> None:
    with Session(engine) as session:
        session.add(MentorCredential(
            mentor_id=mentor_id,
            external_account_id=external_account_id,
            external_username=f"mentor-{mentor_id}",
            access_token=access_token,
            refresh_token=refresh_token,
            access_token_expires_at=now + access_ttl,
            refresh_token_expires_at=now + refresh_ttl,
            version=0,
        ))
        session.commit()


def make_user_token(user_id: int) -> str:
    import jwt

    from mentorhub.api.deps import JWT_ALGORITHM, JWT_SECRET

    return jwt.encode({"sub": str(user_id)}, JWT_SECRET, algorithm=JWT_ALGORITHM)


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------
@pytest.fixture
def client(db_engine):
    """TestClient bound to the in-memory engine and default configuration."""
    from fastapi.testclient import TestClient

    from mentorhub.api.deps import get_config, get_engine
    from mentorhub.api.main import app
    from mentorhub.config import MentorhubConfig

    app.dependency_overrides[get_engine] = lambda: db_engine
    app.dependency_overrides[get_config] = lambda: MentorhubConfig()
    try:
        yield TestClient(app, raise_server_exceptions=False)
    finally:
        app.dependency_overrides.clear()
