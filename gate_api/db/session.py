"""Database session management.

The engine is built lazily from settings so importing the app never opens a
connection; ``reset_engine()`` drops it for tests.
"""

from typing import Generator, Optional

from sqlalchemy import Engine
from sqlalchemy.orm import Session, sessionmaker

from gate_api.config.settings import get_settings
from gate_api.db.engine import build_engine, build_sessionmaker

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker[Session]] = None


def get_engine() -> Engine:
    """Get (or build) the process-wide engine."""
    global _engine, _session_factory
    if _engine is None:
        settings = get_settings()
        _engine = build_engine(
            settings.database_url,
            connect_timeout_seconds=settings.db_connect_timeout_seconds,
            statement_timeout_ms=settings.db_statement_timeout_ms,
        )
        _session_factory = build_sessionmaker(_engine)
    return _engine


def SessionLocal() -> Session:
    get_engine()
    assert _session_factory is not None
    return _session_factory()


def get_db() -> Generator[Session, None, None]:
    """
    Get database session.

    Yields:
        Session: SQLAlchemy session
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def reset_engine() -> None:
    """Dispose engine and session factory (for testing)."""
    global _engine, _session_factory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None
