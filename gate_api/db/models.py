"""SQLAlchemy ORM models for the entitlement gate."""

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import BIGINT, INTEGER, JSON, TEXT, TIMESTAMP, Index, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# BIGINT identity on PostgreSQL; SQLite only autoincrements INTEGER PRIMARY KEY
PK_TYPE = BIGINT().with_variant(INTEGER(), "sqlite")

# JSONB on PostgreSQL (enables the `||` shallow merge); plain JSON elsewhere
JSON_TYPE = JSON().with_variant(JSONB(), "postgresql")

# Entitlement status values
STATUS_PENDING = "pending"
STATUS_ACTIVE = "active"
STATUS_CANCELLED = "cancelled"
STATUS_EXPIRED = "expired"
STATUS_PAUSED = "paused"
STATUS_REVOKED = "revoked"

TERMINAL_STATUSES = frozenset({STATUS_EXPIRED, STATUS_REVOKED})

# Webhook event status values
EVENT_RECEIVED = "received"
EVENT_PROCESSED = "processed"
EVENT_ERROR = "error"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class WebhookEvent(Base):
    """Append-only audit trail of webhook deliveries.

    ``event_id`` is the idempotency key: INSERT ... ON CONFLICT (event_id) DO
    NOTHING decides first delivery vs. redelivery. After insert only
    ``status``, ``processed_at`` and ``error`` change.
    """

    __tablename__ = "webhook_events"

    id: Mapped[int] = mapped_column(PK_TYPE, primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(TEXT, nullable=False)
    event_name: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    received_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=utcnow,
    )
    payload: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON_TYPE, nullable=True)
    # SHA-256 hex of the raw request body (audit only)
    payload_hash: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    status: Mapped[str] = mapped_column(
        TEXT, nullable=False, default=EVENT_RECEIVED
    )  # received | processed | error
    error: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    __table_args__ = (
        UniqueConstraint("event_id", name="uq_webhook_events_event_id"),
        Index("idx_webhook_events_status", "status"),
        Index("idx_webhook_events_received_at", "received_at"),
    )


class Entitlement(Base):
    """Per-license entitlement ledger row.

    Keyed by ``license_key`` when known (unique; NULLs allowed many times),
    otherwise correlated through ``order_id`` / ``subscription_id``.
    ``expires_at = NULL`` means status alone governs access.
    """

    __tablename__ = "entitlements"

    id: Mapped[int] = mapped_column(PK_TYPE, primary_key=True, autoincrement=True)
    email: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    customer_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    order_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    subscription_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    license_key: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    plan: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)  # fixed | monthly | annual | unknown
    status: Mapped[str] = mapped_column(TEXT, nullable=False, default=STATUS_PENDING)
    starts_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    meta: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON_TYPE, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=utcnow,
    )

    __table_args__ = (
        UniqueConstraint("license_key", name="uq_entitlements_license_key"),
        Index("idx_entitlements_email", "email"),
        Index("idx_entitlements_order_id", "order_id"),
        Index("idx_entitlements_subscription_id", "subscription_id"),
    )
