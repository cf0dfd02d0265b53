"""Database engine builder.

Every connection carries explicit timeouts:
- PostgreSQL: connect_timeout + server-side statement_timeout (libpq options)
- SQLite: busy timeout

Pool mode via GATE_DB_POOL=nullpool|queuepool (default: nullpool).
"""

import logging
import os
import re
from typing import Any, Optional

from sqlalchemy import Engine, NullPool, create_engine
from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)


def _mask_password(url: str) -> str:
    """Mask password in database URL for safe logging."""
    return re.sub(r"://([^:]+):([^@]+)@", r"://\1:***@", url)


def _normalize_driver(url: str) -> str:
    """Pin bare PostgreSQL URLs to the psycopg2 driver this project ships with."""
    for prefix in ("postgresql://", "postgres://"):
        if url.startswith(prefix):
            return "postgresql+psycopg2://" + url[len(prefix):]
    return url


def _build_connect_args(
    url: str,
    connect_timeout_seconds: int,
    statement_timeout_ms: int,
) -> dict[str, Any]:
    if url.startswith("sqlite"):
        return {"check_same_thread": False, "timeout": connect_timeout_seconds}

    connect_args: dict[str, Any] = {"connect_timeout": connect_timeout_seconds}
    if statement_timeout_ms > 0:
        connect_args["options"] = f"-c statement_timeout={statement_timeout_ms}"

    app_name = os.getenv("GATE_DB_APPLICATION_NAME", "entitlement-gate")
    if app_name:
        connect_args["application_name"] = app_name
    return connect_args


def build_engine(
    database_url: Optional[str] = None,
    *,
    connect_timeout_seconds: int = 5,
    statement_timeout_ms: int = 5000,
) -> Engine:
    """Build a SQLAlchemy engine with explicit connect/statement timeouts.

    Args:
        database_url: Database URL. If None, reads from env DATABASE_URL.
        connect_timeout_seconds: TCP/connect timeout handed to the driver.
        statement_timeout_ms: Server-side per-statement limit (PostgreSQL only, 0 = off).

    Raises:
        ValueError: If no URL is available or GATE_DB_POOL is invalid.
    """
    url = database_url or os.getenv("DATABASE_URL")
    if not url:
        raise ValueError(
            "DATABASE_URL is required. "
            "Pass as argument or set DATABASE_URL environment variable."
        )

    url = _normalize_driver(url)
    connect_args = _build_connect_args(url, connect_timeout_seconds, statement_timeout_ms)

    pool_mode = os.getenv("GATE_DB_POOL", "nullpool").lower()
    if pool_mode == "nullpool":
        engine = create_engine(
            url,
            poolclass=NullPool,
            pool_pre_ping=True,
            connect_args=connect_args,
        )
    elif pool_mode == "queuepool":
        pool_size = int(os.getenv("GATE_DB_POOL_SIZE", "5"))
        max_overflow = int(os.getenv("GATE_DB_MAX_OVERFLOW", "10"))
        engine = create_engine(
            url,
            pool_pre_ping=True,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_timeout=connect_timeout_seconds,
            connect_args=connect_args,
        )
    else:
        raise ValueError(
            f"Invalid GATE_DB_POOL value: {pool_mode}. "
            "Must be 'nullpool' or 'queuepool'."
        )

    logger.debug(
        "Database engine created: pool=%s, url=%s",
        engine.pool.__class__.__name__,
        _mask_password(url),
    )
    return engine


def build_sessionmaker(engine: Engine) -> sessionmaker[Session]:
    """Build a sessionmaker configured with autocommit=False, autoflush=False."""
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)
