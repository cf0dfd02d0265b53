"""Entitlement store: merge-upsert of classifier patches + lookup.

Merge contract (same for both write paths):
- identity columns: incoming non-null value, else existing
- plan: an incoming "unknown" never replaces a real plan
- status: expired / revoked are terminal and never overwritten
- starts_at: write-once
- expires_at: incoming non-null wins, except write-once grant expiries
- meta: shallow key-level merge (PostgreSQL jsonb ``||``, SQLite ``json_patch``)
- updated_at: always refreshed

Each write is one statement; concurrent deliveries resolve last-write-wins
per column with no application lock.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import case, func, literal, literal_column, or_, select, update
from sqlalchemy.orm import Session

from gate_api.billing.classifier import PLAN_UNKNOWN, EntitlementPatch
from gate_api.db.dialect import dialect_name, insert_for
from gate_api.db.models import JSON_TYPE, TERMINAL_STATUSES, Entitlement, utcnow
from gate_api.errors import CorrelationMiss
from gate_api.utils.sanitize import fingerprint

logger = logging.getLogger(__name__)

_IDENTITY_COLUMNS = ("email", "customer_id", "order_id", "subscription_id")


def _merge_meta(db: Session, incoming: Any) -> Any:
    if dialect_name(db) == "postgresql":
        existing = func.coalesce(Entitlement.meta, literal_column("'{}'::jsonb"))
        return existing.op("||")(incoming)
    existing = func.coalesce(Entitlement.meta, literal_column("'{}'"))
    return func.json_patch(existing, incoming)


def _merged_values(
    db: Session,
    incoming: dict[str, Any],
    *,
    keep_existing_expiry: bool,
    now: datetime,
) -> dict[str, Any]:
    """SET clause merging ``incoming`` SQL expressions into the stored row."""
    values: dict[str, Any] = {
        name: func.coalesce(incoming[name], getattr(Entitlement, name))
        for name in _IDENTITY_COLUMNS
    }
    values["plan"] = func.coalesce(
        func.nullif(incoming["plan"], PLAN_UNKNOWN),
        Entitlement.plan,
        incoming["plan"],
    )
    values["status"] = case(
        (Entitlement.status.in_(sorted(TERMINAL_STATUSES)), Entitlement.status),
        else_=incoming["status"],
    )
    values["starts_at"] = func.coalesce(Entitlement.starts_at, incoming["starts_at"])
    if keep_existing_expiry:
        values["expires_at"] = func.coalesce(Entitlement.expires_at, incoming["expires_at"])
    else:
        values["expires_at"] = func.coalesce(incoming["expires_at"], Entitlement.expires_at)
    values["meta"] = _merge_meta(db, incoming["meta"])
    values["updated_at"] = now
    return values


def upsert_by_license_key(db: Session, patch: EntitlementPatch, now: Optional[datetime] = None) -> int:
    """INSERT ... ON CONFLICT (license_key) DO UPDATE with the merge contract.

    Returns:
        Entitlement id of the inserted or merged row.
    """
    if not patch.license_key:
        raise ValueError("upsert_by_license_key requires a license_key")
    now = now or utcnow()

    stmt = insert_for(db, Entitlement).values(
        license_key=patch.license_key,
        email=patch.email,
        customer_id=patch.customer_id,
        order_id=patch.order_id,
        subscription_id=patch.subscription_id,
        plan=patch.plan,
        status=patch.status,
        starts_at=patch.starts_at,
        expires_at=patch.expires_at,
        meta=patch.meta,
        created_at=now,
        updated_at=now,
    )
    excluded = stmt.excluded
    incoming = {
        name: getattr(excluded, name)
        for name in (*_IDENTITY_COLUMNS, "plan", "status", "starts_at", "expires_at", "meta")
    }
    stmt = stmt.on_conflict_do_update(
        index_elements=["license_key"],
        set_=_merged_values(db, incoming, keep_existing_expiry=patch.keep_existing_expiry, now=now),
    ).returning(Entitlement.id)

    entitlement_id = db.execute(stmt).scalar_one()
    db.commit()

    logger.info(
        "ENTITLEMENT_UPSERTED",
        extra={
            "entitlement_id": entitlement_id,
            "license_fp": fingerprint(patch.license_key),
            "status": patch.status,
            "plan": patch.plan,
            "event_kind": patch.kind.value,
        },
    )
    return entitlement_id


def update_by_correlation(db: Session, patch: EntitlementPatch, now: Optional[datetime] = None) -> int:
    """Merge ``patch`` into rows matching its order_id or subscription_id.

    Returns:
        Number of rows updated.

    Raises:
        CorrelationMiss: no row matched (event is dropped; the license_key_created
            event establishes the canonical row later)
    """
    now = now or utcnow()

    conditions = []
    if patch.order_id:
        conditions.append(Entitlement.order_id == patch.order_id)
    if patch.subscription_id:
        conditions.append(Entitlement.subscription_id == patch.subscription_id)
    if not conditions:
        raise CorrelationMiss(None, None)

    incoming: dict[str, Any] = {
        name: literal(getattr(patch, name), Entitlement.__table__.c[name].type)
        for name in (*_IDENTITY_COLUMNS, "plan", "status", "starts_at", "expires_at")
    }
    incoming["meta"] = literal(patch.meta, JSON_TYPE)

    stmt = (
        update(Entitlement)
        .where(or_(*conditions))
        .values(_merged_values(db, incoming, keep_existing_expiry=patch.keep_existing_expiry, now=now))
        .execution_options(synchronize_session=False)
    )
    rowcount = db.execute(stmt).rowcount
    db.commit()

    if rowcount == 0:
        raise CorrelationMiss(patch.order_id, patch.subscription_id)

    logger.info(
        "ENTITLEMENT_CORRELATED",
        extra={
            "rows": rowcount,
            "order_id": patch.order_id,
            "subscription_id": patch.subscription_id,
            "status": patch.status,
            "event_kind": patch.kind.value,
        },
    )
    return rowcount


def apply_patch(db: Session, patch: EntitlementPatch, now: Optional[datetime] = None) -> None:
    """Route a patch: license key → upsert, otherwise → correlation update."""
    if patch.license_key:
        upsert_by_license_key(db, patch, now)
    else:
        update_by_correlation(db, patch, now)


def find_entitlement(
    db: Session,
    license_key: Optional[str] = None,
    email: Optional[str] = None,
) -> Optional[Entitlement]:
    """Lookup by license key first, else by email (newest update wins)."""
    if license_key:
        ent = db.execute(
            select(Entitlement).where(Entitlement.license_key == license_key)
        ).scalar_one_or_none()
        if ent is not None:
            return ent

    if email:
        return db.execute(
            select(Entitlement)
            .where(func.lower(Entitlement.email) == email.strip().lower())
            .order_by(Entitlement.updated_at.desc(), Entitlement.id.desc())
            .limit(1)
        ).scalar_one_or_none()

    return None
