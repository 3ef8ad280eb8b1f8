"""Pytest configuration for sync engine integration tests

WHAT: Shared fixtures for registry, warehouse and orchestrator tests
WHY: Every test gets an isolated SQLite database and a configured vault,
     and never talks to Meta
REFERENCES:
    - adsync/models.py: Schema created per test
    - adsync/services/account_registry.py: Account fixtures
    - adsync/services/meta_sync_service.py: Orchestrator under test
"""

import os
import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Ensure backend is in path
BACKEND_ROOT = Path(__file__).resolve().parents[2]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

# Set test environment before any adsync import reads settings
os.environ.setdefault("ENCRYPTION_KEY", "test-master-secret-for-vault")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SYNC_FANOUT_WORKERS", "1")
os.environ.setdefault("SYNC_MAX_ACCOUNT_WORKERS", "1")

from adsync.models import Base  # noqa: E402
from adsync.schemas import ClientAccountCreate  # noqa: E402
from adsync.services.account_registry import AccountRegistry  # noqa: E402


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """In-memory SQLite shared by every session of one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(test_db_engine):
    return sessionmaker(bind=test_db_engine, autoflush=False, autocommit=False)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def file_session_factory(tmp_path):
    """File-backed SQLite for tests that run account workers on real threads."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'adsync.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)

    yield sessionmaker(bind=engine, autoflush=False, autocommit=False)

    engine.dispose()


# ============================================================================
# Registry Fixtures
# ============================================================================

@pytest.fixture
def registry(db_session):
    return AccountRegistry(db_session)


@pytest.fixture
def make_account(registry):
    """Factory creating registered client accounts."""
    counter = {"n": 0}

    def _make(**overrides):
        counter["n"] += 1
        payload = {
            "client_name": f"Client {counter['n']}",
            "meta_account_id": f"act_10000{counter['n']}",
            "access_token": f"EAAB-test-token-{counter['n']}",
            "timezone": "America/New_York",
            "currency": "USD",
        }
        payload.update(overrides)
        return registry.create(ClientAccountCreate(**payload))

    return _make
