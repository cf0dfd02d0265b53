"""Access check endpoints.

POST /access/check: decision for a license key and/or email (never raises on deny)
GET  /access/me: gated; returns the caller's entitlement summary
"""

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from gate_api.access.cache import ValidationCache, get_validation_cache
from gate_api.access.checker import AccessDecision
from gate_api.access.gate import require_access, resolve_access
from gate_api.access.provider import LicenseValidationClient, get_validation_client
from gate_api.billing.entitlements import find_entitlement
from gate_api.config.settings import GateSettings, get_settings
from gate_api.db.session import get_db
from gate_api.schemas import AccessCheckRequest, AccessCheckResponse, EntitlementView

router = APIRouter(prefix="/access", tags=["access"])
logger = logging.getLogger(__name__)


def _to_response(decision: AccessDecision) -> AccessCheckResponse:
    return AccessCheckResponse(
        active=decision.active,
        reason=decision.reason,
        expires_at=decision.expires_at,
        plan=decision.plan,
    )


@router.post("/check", response_model=AccessCheckResponse, response_model_exclude_none=True)
async def check(
    body: AccessCheckRequest,
    db: Session = Depends(get_db),
    settings: GateSettings = Depends(get_settings),
    client: LicenseValidationClient = Depends(get_validation_client),
    cache: ValidationCache = Depends(get_validation_cache),
) -> AccessCheckResponse:
    """Evaluate access for the presented identifiers."""
    decision = await resolve_access(
        db,
        license_key=body.license_key,
        email=body.email,
        settings=settings,
        client=client,
        cache=cache,
    )
    return _to_response(decision)


@router.get("/me")
async def me(
    request: Request,
    decision: AccessDecision = Depends(require_access),
    db: Session = Depends(get_db),
) -> dict:
    """Entitlement summary for the license key that passed the gate."""
    entitlement = None
    license_key = getattr(request.state, "license_key", None)
    if license_key:
        try:
            row = find_entitlement(db, license_key=license_key)
        except SQLAlchemyError:
            db.rollback()
            logger.warning("ACCESS_ME_LOOKUP_FAILED")
            row = None
        if row is not None:
            entitlement = EntitlementView.model_validate(row).model_dump(
                mode="json", exclude={"email", "customer_id"}
            )

    return {
        "ok": True,
        "access": _to_response(decision).model_dump(mode="json", by_alias=True, exclude_none=True),
        "source": decision.source,
        "entitlement": entitlement,
    }
