"""Dialect-aware INSERT ... ON CONFLICT construction.

PostgreSQL and SQLite both implement ``ON CONFLICT`` + ``RETURNING``; the
SQLAlchemy constructs live in their dialect modules.
"""

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session


def dialect_name(db: Session) -> str:
    return db.get_bind().dialect.name


def insert_for(db: Session, model: Any):
    """Return an ON CONFLICT-capable insert() for the session's dialect.

    Raises:
        NotImplementedError: dialect without ON CONFLICT support
    """
    name = dialect_name(db)
    if name == "postgresql":
        return postgresql.insert(model)
    if name == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"ON CONFLICT upsert not supported for dialect {name!r}")


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a stored timestamp to aware UTC (SQLite returns naive values)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
