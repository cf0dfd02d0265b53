"""Provider webhook endpoint.

Error taxonomy (retry-storm aware):
  (A) Signature missing / invalid            → 401, nothing stored
  (B) Body is not a JSON object              → 200, event recorded as error
  (C) Store unavailable (connect, timeout)   → 500 + Retry-After, provider retries
  (D) Redelivery of a processed event        → 200 {ok, duplicate}
  (E) Unrecognized event / correlation miss  → 200, event marked processed
  (F) Processing error caused by the payload → 200, event marked error
500 is ONLY for (C). A malformed payload never earns a retry.
"""

import json as _json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session

from gate_api.billing.classifier import PlanConfig, build_patch
from gate_api.billing.entitlements import apply_patch
from gate_api.billing.signature import verify_signature
from gate_api.billing.webhook_ingest import (
    extract_event_id,
    extract_event_name,
    mark_event_error,
    mark_event_processed,
    record_event,
)
from gate_api.config.settings import GateSettings, get_settings
from gate_api.context import event_id_var, request_id_var
from gate_api.db.session import get_db
from gate_api.errors import (
    EVENT_UNRECOGNIZED,
    SIGNATURE_INVALID,
    STORE_UNAVAILABLE,
    CorrelationMiss,
    MalformedEvent,
)
from gate_api.schemas import WebhookAck
from gate_api.utils.sanitize import payload_hash_bytes, sanitize_str

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)

PROVIDER = "provider"

TRANSIENT_STORE_ERRORS = (OperationalError, InterfaceError, PoolTimeoutError, TimeoutError)


# ============================================================================
# Webhook Problem Details helper
# ============================================================================


def _webhook_problem(
    request: Request,
    status: int,
    *,
    code: str,
    title: str,
    detail: Optional[str],
    payload_hash: Optional[str],
    extra: Optional[dict] = None,
) -> JSONResponse:
    """Log once + return RFC 9457 Problem Details response with webhook extensions.

    4xx failures → warning log.
    5xx failures → error log + Retry-After: 60 response header.
    """
    request_id = request_id_var.get()
    instance = f"urn:gate:trace:{request_id}" if request_id else str(request.url.path)

    log_extra: dict = {
        "event": f"webhook.{code.lower()}",
        "provider": PROVIDER,
        "payload_hash": payload_hash,
        "error_code": code,
    }
    if extra:
        log_extra.update(extra)

    if status >= 500:
        logger.error(code, extra=log_extra)
    else:
        logger.warning(code, extra=log_extra)

    content: dict = {
        "type": f"urn:gate:webhook:{code.lower()}",
        "title": title,
        "status": status,
        "error_code": code,
        "instance": instance,
    }
    if detail is not None:
        content["detail"] = detail
    if payload_hash is not None:
        content["payload_hash"] = payload_hash

    headers = {}
    if status >= 500:
        headers["Retry-After"] = "60"

    return JSONResponse(
        status_code=status,
        content=content,
        media_type="application/problem+json",
        headers=headers,
    )


def _ack(duplicate: bool = False) -> dict:
    return WebhookAck(duplicate=True if duplicate else None).model_dump(exclude_none=True)


# ============================================================================
# POST /webhooks/provider
# ============================================================================


@router.post("/provider")
async def provider_webhook(
    request: Request,
    x_signature: Optional[str] = Header(None, alias="X-Signature"),
    db: Session = Depends(get_db),
    settings: GateSettings = Depends(get_settings),
):
    """Ingest one signed provider webhook delivery."""
    # ── Step 0: Raw body ─────────────────────────────────────────────────────
    raw_body: bytes = await request.body()
    payload_hash = payload_hash_bytes(raw_body)
    logger.info(
        "WEBHOOK_RECEIVED",
        extra={"provider": PROVIDER, "payload_hash": payload_hash, "payload_size": len(raw_body)},
    )

    # ── Step 1: Signature over the exact bytes (A → 401) ─────────────────────
    if not verify_signature(raw_body, settings.webhook_secret, x_signature):
        return _webhook_problem(
            request, 401,
            code=SIGNATURE_INVALID,
            title="Webhook signature verification failed",
            detail="Missing or invalid X-Signature",
            payload_hash=payload_hash,
        )

    # ── Step 2: JSON parsing (B is recorded, then acknowledged) ─────────────
    try:
        parsed = _json.loads(raw_body)
    except (_json.JSONDecodeError, UnicodeDecodeError):
        parsed = None
    malformed = not isinstance(parsed, dict)
    if malformed:
        payload: dict = {}
        # PostgreSQL JSON rejects NUL characters
        stored_payload = {"raw": raw_body.decode("utf-8", errors="replace").replace("\x00", "")}
    else:
        payload = stored_payload = parsed

    event_name = extract_event_name(request.headers, payload)
    event_id = extract_event_id(request.headers, payload, raw_body, event_name)
    event_id_var.set(event_id)

    # ── Step 3: Idempotency gate (C → 500, D → 200 duplicate) ────────────────
    try:
        is_first = record_event(
            db,
            event_id,
            event_name,
            stored_payload,
            payload_hash=payload_hash,
            reclaim_after_seconds=settings.webhook_reclaim_after_seconds,
        )
    except (SQLAlchemyError, TimeoutError) as exc:
        db.rollback()
        return _webhook_problem(
            request, 500,
            code=STORE_UNAVAILABLE,
            title="Entitlement store unavailable",
            detail="The event could not be recorded; retry later",
            payload_hash=payload_hash,
            extra={"error_type": type(exc).__name__},
        )

    if not is_first:
        return _ack(duplicate=True)

    # ── Step 4: Classify + merge (C → 500, E/F → 200) ────────────────────────
    try:
        if malformed:
            raise MalformedEvent("Request body is not a JSON object")
        patch = build_patch(event_name, payload, PlanConfig.from_settings(settings))
        if patch is None:
            logger.info(
                EVENT_UNRECOGNIZED,
                extra={"event_name": event_name, "payload_hash": payload_hash},
            )
        else:
            try:
                apply_patch(db, patch)
            except CorrelationMiss as miss:
                logger.info(
                    CorrelationMiss.code,
                    extra={
                        "event_name": event_name,
                        "order_id": miss.order_id,
                        "subscription_id": miss.subscription_id,
                    },
                )
        mark_event_processed(db, event_id)

    except TRANSIENT_STORE_ERRORS as exc:
        db.rollback()
        try:
            mark_event_error(db, event_id, f"transient: {type(exc).__name__}")
        except SQLAlchemyError:
            db.rollback()
            logger.error("WEBHOOK_MARK_ERROR_FAILED", extra={"payload_hash": payload_hash})
        return _webhook_problem(
            request, 500,
            code=STORE_UNAVAILABLE,
            title="Entitlement store unavailable",
            detail="The event could not be applied; retry later",
            payload_hash=payload_hash,
            extra={"error_type": type(exc).__name__},
        )

    except Exception as exc:
        db.rollback()
        logger.warning(
            "WEBHOOK_PROCESSING_FAILED",
            extra={
                "event_name": event_name,
                "payload_hash": payload_hash,
                "error_type": type(exc).__name__,
                "error_msg": sanitize_str(str(exc)),
            },
        )
        mark_event_error(db, event_id, f"{type(exc).__name__}: {exc}")
        return _ack()

    logger.info(
        "WEBHOOK_PROCESSED",
        extra={"event_name": event_name, "payload_hash": payload_hash},
    )
    return _ack()
