"""Database engine and session factory.

WHAT:
    Builds the sync SQLAlchemy engine from DATABASE_URL and exposes
    `SessionLocal` plus a context manager for workers and scripts.

WHY:
    The orchestrator opens one session per account worker; the batch runner
    takes a session factory so tests can hand in their own engine.

REFERENCES:
    - adsync/services/meta_sync_service.py (per-worker sessions)
    - adsync/models.py (Base)
"""

from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from .config import get_settings
from .utils.env import require_env


def _get_database_url() -> str:
    """Get DATABASE_URL from settings, falling back to backend/.env.

    Raises:
        RuntimeError: If DATABASE_URL is not configured
    """
    return get_settings().DATABASE_URL or require_env("DATABASE_URL")


DATABASE_URL = _get_database_url()

# NOTE: SQLite engines (used in tests/dev) do not support pool_size/max_overflow.
if DATABASE_URL.startswith("sqlite"):
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False},
    )
else:
    engine = create_engine(
        DATABASE_URL,
        pool_size=10,
        max_overflow=20,        # account workers + fan-out may burst past pool_size
        pool_recycle=3600,
        pool_pre_ping=True,
    )

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


from .models import Base  # noqa: E402


@contextmanager
def get_sync_session() -> Generator[Session, None, None]:
    """Context manager for sessions outside the batch runner.

    Example:
        with get_sync_session() as db:
            stats = run_full_sync(db, account_id, "2025-01-01", "2025-01-07")
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
