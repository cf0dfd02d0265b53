"""Webhook event ingestion: idempotency key extraction + atomic event record.

The ``webhook_events`` row is the only idempotency boundary. At-least-once
delivery becomes at-most-once side effects through a two-step gate:

  1. INSERT ... ON CONFLICT (event_id) DO NOTHING RETURNING id
       → row returned : first delivery → process
       → no row       : conflict → step 2
  2. UPDATE ... SET status='received'
       WHERE event_id=:id AND (status='error' OR (status='received' AND received_at < :cutoff))
       RETURNING id
       → row returned : earlier attempt failed or crashed mid-flight → re-process
       → no row       : processed (or in flight) → duplicate, ACK without side effects

Both statements are single atomic operations; the UNIQUE constraint on
event_id decides concurrent first deliveries.
"""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping, Optional

from sqlalchemy import and_, or_, update
from sqlalchemy.orm import Session

from gate_api.db.dialect import insert_for
from gate_api.db.models import EVENT_ERROR, EVENT_PROCESSED, EVENT_RECEIVED, WebhookEvent, utcnow
from gate_api.utils.sanitize import sanitize_str

logger = logging.getLogger(__name__)

MAX_ERROR_LEN = 500

Extractor = Callable[[Mapping[str, str], dict], Optional[str]]


# ---------------------------------------------------------------------------
# Field extraction (ordered extractor tables, first non-empty wins)
# ---------------------------------------------------------------------------


def dig(obj: Any, *path: str | int) -> Optional[str]:
    """Walk ``path`` through nested dicts/lists; return a non-empty string or None."""
    current = obj
    for step in path:
        if isinstance(step, int):
            if not isinstance(current, list) or len(current) <= step:
                return None
            current = current[step]
        else:
            if not isinstance(current, dict):
                return None
            current = current.get(step)
    if current is None or isinstance(current, (dict, list, bool)):
        return None
    value = str(current).strip()
    return value or None


def _header(name: str) -> Extractor:
    def extract(headers: Mapping[str, str], payload: dict) -> Optional[str]:
        value = (headers.get(name) or "").strip()
        return value or None

    return extract


def _field(*path: str | int) -> Extractor:
    def extract(headers: Mapping[str, str], payload: dict) -> Optional[str]:
        return dig(payload, *path)

    return extract


EVENT_NAME_EXTRACTORS: tuple[Extractor, ...] = (
    _header("x-event-name"),
    _field("event_name"),
    _field("name"),
    _field("type"),
    _field("meta", "event_name"),
    _field("meta", "name"),
)

EVENT_ID_EXTRACTORS: tuple[Extractor, ...] = (
    _header("x-event-id"),
    _field("event_id"),
    _field("id"),
    _field("meta", "event_id"),
    _field("meta", "id"),
)


def first_match(extractors: tuple[Extractor, ...], headers: Mapping[str, str], payload: dict) -> Optional[str]:
    for extractor in extractors:
        value = extractor(headers, payload)
        if value:
            return value
    return None


def _normalize_headers(headers: Mapping[str, str]) -> dict[str, str]:
    return {str(k).lower(): v for k, v in headers.items()}


def extract_event_name(headers: Mapping[str, str], payload: dict) -> Optional[str]:
    """Event name from headers, top level, then ``meta``."""
    return first_match(EVENT_NAME_EXTRACTORS, _normalize_headers(headers), payload)


def extract_event_id(
    headers: Mapping[str, str],
    payload: dict,
    raw_body: bytes,
    event_name: Optional[str] = None,
) -> str:
    """Derive the idempotency key for one delivery.

    Order: X-Event-Id header, top-level id, ``meta`` id, then ``data.id``.

    ``data.id`` names the resource (an order, a subscription), not the
    delivery, so it is qualified with the event name, resource type and
    ``attributes.updated_at``: a redelivery collides, a later lifecycle change
    of the same subscription does not.

    With nothing usable, the key is the sha256 of the raw body, so byte-identical
    redeliveries still deduplicate.
    """
    event_id = first_match(EVENT_ID_EXTRACTORS, _normalize_headers(headers), payload)
    if event_id:
        return event_id

    resource_id = dig(payload, "data", "id")
    if resource_id:
        parts = [
            (event_name or "unknown").lower(),
            dig(payload, "data", "type") or "resource",
            resource_id,
            dig(payload, "data", "attributes", "updated_at") or "",
        ]
        return ":".join(parts)

    return "sha256:" + hashlib.sha256(raw_body).hexdigest()


# ---------------------------------------------------------------------------
# Atomic record / reclaim
# ---------------------------------------------------------------------------


def record_event(
    db: Session,
    event_id: str,
    event_name: Optional[str],
    payload: dict,
    *,
    payload_hash: Optional[str] = None,
    reclaim_after_seconds: int = 300,
    now: Optional[datetime] = None,
) -> bool:
    """Claim processing rights for ``event_id``.

    Returns:
        True: first delivery, or a failed / stale earlier attempt reclaimed.
        False: duplicate delivery; caller must ACK with zero side effects.

    Raises:
        sqlalchemy.exc.SQLAlchemyError: store unavailable (caller answers 5xx)
    """
    now = now or utcnow()

    stmt = (
        insert_for(db, WebhookEvent)
        .values(
            event_id=event_id,
            event_name=event_name,
            received_at=now,
            payload=payload,
            payload_hash=payload_hash,
            status=EVENT_RECEIVED,
        )
        .on_conflict_do_nothing(index_elements=["event_id"])
        .returning(WebhookEvent.id)
    )
    row = db.execute(stmt).fetchone()
    db.commit()

    if row is not None:
        logger.info(
            "WEBHOOK_EVENT_RECORDED",
            extra={"event_name": event_name, "event_key_prefix": event_id[:24]},
        )
        return True

    if reclaim_event(db, event_id, reclaim_after_seconds=reclaim_after_seconds, now=now):
        return True

    logger.info(
        "WEBHOOK_DUPLICATE",
        extra={"event_name": event_name, "event_key_prefix": event_id[:24]},
    )
    return False


def reclaim_event(
    db: Session,
    event_id: str,
    *,
    reclaim_after_seconds: int = 300,
    now: Optional[datetime] = None,
) -> bool:
    """Flip an ``error`` row, or a ``received`` row older than the window, back to received."""
    now = now or utcnow()
    cutoff = now - timedelta(seconds=reclaim_after_seconds)

    stmt = (
        update(WebhookEvent)
        .where(WebhookEvent.event_id == event_id)
        .where(
            or_(
                WebhookEvent.status == EVENT_ERROR,
                and_(
                    WebhookEvent.status == EVENT_RECEIVED,
                    WebhookEvent.received_at < cutoff,
                ),
            )
        )
        .values(status=EVENT_RECEIVED, error=None, processed_at=None)
        .returning(WebhookEvent.id)
    )
    row = db.execute(stmt).fetchone()
    db.commit()

    if row is not None:
        logger.info(
            "WEBHOOK_EVENT_RECLAIMED",
            extra={"event_key_prefix": event_id[:24]},
        )
        return True
    return False


def mark_event_processed(db: Session, event_id: str, now: Optional[datetime] = None) -> None:
    """Mark event as processed after the entitlement merge committed."""
    stmt = (
        update(WebhookEvent)
        .where(WebhookEvent.event_id == event_id)
        .values(status=EVENT_PROCESSED, processed_at=now or utcnow(), error=None)
    )
    db.execute(stmt)
    db.commit()


def mark_event_error(
    db: Session,
    event_id: str,
    error: str,
    now: Optional[datetime] = None,
) -> None:
    """Mark event as errored; the message is sanitized and truncated."""
    stmt = (
        update(WebhookEvent)
        .where(WebhookEvent.event_id == event_id)
        .values(
            status=EVENT_ERROR,
            processed_at=now or utcnow(),
            error=sanitize_str(error[:MAX_ERROR_LEN])[:MAX_ERROR_LEN],
        )
    )
    db.execute(stmt)
    db.commit()
