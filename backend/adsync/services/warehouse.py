"""Warehouse write boundary.

WHAT:
    Idempotent upserts (INSERT ... ON CONFLICT DO UPDATE) for the structural
    hierarchy and daily fact rows, keyed by each table's natural key.

WHY:
    Re-syncing an overlapping window must overwrite rows, never duplicate
    them. PostgreSQL is the production target; SQLite supports the same
    ON CONFLICT clause, which keeps tests on the real code path.

REFERENCES:
    - adsync/models.py (target tables)
    - adsync/services/meta_sync_service.py (caller; commits per stage)
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Sequence, Set

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from adsync.models import Account, Ad, AdSet, Campaign, DailyAdInsight, utcnow
from adsync.schemas import DailyFactRow

logger = logging.getLogger(__name__)

# Columns whose first-write value is kept on conflict
_PRESERVED_ON_CONFLICT = {"id", "created_at"}
# SQLite builds without a raised limit accept 999 bound parameters per statement
_SQLITE_MAX_PARAMS = 999
_POSTGRES_CHUNK_ROWS = 500


def _insert_for(db: Session):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise NotImplementedError(f"Upserts are not supported on dialect '{dialect}'")


def _dedupe(rows: Iterable[Dict[str, Any]], key_columns: Sequence[str]) -> List[Dict[str, Any]]:
    """Last occurrence wins; ON CONFLICT cannot touch one row twice per statement."""
    by_key: Dict[tuple, Dict[str, Any]] = {}
    for row in rows:
        by_key[tuple(row[column] for column in key_columns)] = row
    return list(by_key.values())


def _upsert(db: Session, model, rows: Iterable[Dict[str, Any]], key_columns: Sequence[str]) -> int:
    """Upsert `rows` into `model`; returns the number of distinct rows written."""
    rows = _dedupe(rows, key_columns)
    if not rows:
        return 0

    insert = _insert_for(db)
    now = utcnow()
    table_columns = {column.name for column in model.__table__.columns}
    for row in rows:
        if "updated_at" in table_columns:
            row.setdefault("updated_at", now)
        if "synced_at" in table_columns:
            row.setdefault("synced_at", now)

    columns = list(rows[0].keys())
    if db.get_bind().dialect.name == "sqlite":
        chunk_size = max(1, _SQLITE_MAX_PARAMS // (len(columns) + 1))
    else:
        chunk_size = _POSTGRES_CHUNK_ROWS

    for offset in range(0, len(rows), chunk_size):
        stmt = insert(model).values(rows[offset:offset + chunk_size])
        stmt = stmt.on_conflict_do_update(
            index_elements=list(key_columns),
            set_={
                column: stmt.excluded[column]
                for column in columns
                if column not in key_columns and column not in _PRESERVED_ON_CONFLICT
            },
        )
        db.execute(stmt)

    return len(rows)


def upsert_account(db: Session, row: Dict[str, Any]) -> int:
    return _upsert(db, Account, [row], ["id"])


def upsert_campaigns(db: Session, rows: Iterable[Dict[str, Any]]) -> int:
    return _upsert(db, Campaign, rows, ["id"])


def upsert_ad_sets(db: Session, rows: Iterable[Dict[str, Any]]) -> int:
    return _upsert(db, AdSet, rows, ["id"])


def upsert_ads(db: Session, rows: Iterable[Dict[str, Any]]) -> int:
    return _upsert(db, Ad, rows, ["id"])


def upsert_daily_insights(db: Session, rows: Iterable[DailyFactRow]) -> int:
    """Upsert fact rows keyed by (ad_id, date_start)."""
    written = _upsert(
        db,
        DailyAdInsight,
        (row.model_dump() for row in rows),
        ["ad_id", "date_start"],
    )
    logger.debug("[WAREHOUSE] Upserted %d daily insight rows", written)
    return written


def existing_ad_ids(db: Session, account_id: str) -> Set[str]:
    """Ad ids already stored for an account (parents insight rows may reference)."""
    return set(db.execute(select(Ad.id).where(Ad.account_id == account_id)).scalars())
