"""Admin endpoints for operational inspection.

WARNING: These endpoints are for authorized operators only.
- Protected by ADMIN_KEY (X-Admin-Key header, or ?key= for browser use)
- Unset ADMIN_KEY disables every endpoint here (401)
"""

import logging
import secrets
import time
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from gate_api.billing.entitlements import find_entitlement
from gate_api.config.settings import GateSettings, get_settings
from gate_api.context import request_id_var
from gate_api.db.models import EVENT_ERROR, EVENT_PROCESSED, EVENT_RECEIVED, WebhookEvent
from gate_api.db.session import get_db
from gate_api.schemas import EntitlementView, WebhookEventSummary

router = APIRouter(prefix="/admin", tags=["admin"])
logger = logging.getLogger(__name__)

EVENT_STATUSES = (EVENT_RECEIVED, EVENT_PROCESSED, EVENT_ERROR)


def require_admin(
    x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key"),
    key: Optional[str] = Query(None),
    settings: GateSettings = Depends(get_settings),
) -> None:
    """Verify the admin key using constant-time comparison.

    Raises:
        HTTPException 401: key not configured, missing, or wrong
    """
    provided = x_admin_key or key
    expected = settings.admin_key

    if not expected or not provided or not secrets.compare_digest(
        provided.encode("utf-8"), expected.encode("utf-8")
    ):
        logger.warning(
            "Invalid admin key attempt",
            extra={
                "event": "admin.auth_failed",
                "configured": bool(expected),
                "request_id": request_id_var.get(),
            },
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing admin key",
        )


@router.get("/db-ping", dependencies=[Depends(require_admin)])
def db_ping(db: Session = Depends(get_db)) -> dict:
    """Round-trip a trivial query and report latency."""
    start = time.perf_counter()
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("ADMIN_DB_PING_FAILED", extra={"error_type": type(exc).__name__})
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database unreachable",
        )
    return {"ok": True, "latency_ms": round((time.perf_counter() - start) * 1000, 2)}


@router.get(
    "/webhook-events",
    response_model=list[WebhookEventSummary],
    dependencies=[Depends(require_admin)],
)
def list_webhook_events(
    event_status: Optional[str] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
) -> list[WebhookEventSummary]:
    """Most recent webhook events, optionally filtered by status."""
    if event_status is not None and event_status not in EVENT_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"status must be one of {', '.join(EVENT_STATUSES)}",
        )

    stmt = select(WebhookEvent).order_by(WebhookEvent.received_at.desc(), WebhookEvent.id.desc())
    if event_status is not None:
        stmt = stmt.where(WebhookEvent.status == event_status)

    rows = db.execute(stmt.limit(limit)).scalars().all()
    return [
        WebhookEventSummary(
            event_id=row.event_id,
            event_name=row.event_name,
            status=row.status,
            received_at=row.received_at,
            processed_at=row.processed_at,
            error=row.error,
            payload_hash=row.payload_hash,
        )
        for row in rows
    ]


@router.get(
    "/entitlements/{license_key}",
    response_model=EntitlementView,
    dependencies=[Depends(require_admin)],
)
def get_entitlement(license_key: str, db: Session = Depends(get_db)) -> EntitlementView:
    """Entitlement row for a license key."""
    row = find_entitlement(db, license_key=license_key)
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Entitlement not found")
    return EntitlementView.model_validate(row)
