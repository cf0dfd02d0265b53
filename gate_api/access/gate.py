"""Gated-endpoint dependency and the local → provider decision chain.

Usage:

    @router.get("/something-paid")
    async def handler(decision: AccessDecision = Depends(require_access)):
        ...

Missing key → 401 missing_license_key; deny → 403 with the decision reason.
ACCESS_REQUIRED=false disables the gate.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from gate_api.access.cache import ValidationCache, get_validation_cache
from gate_api.access.checker import (
    REASON_ACTIVE,
    REASON_MISSING_LICENSE_KEY,
    REASON_NOT_FOUND,
    REASON_PROVIDER_INVALID,
    REASON_PROVIDER_UNAVAILABLE,
    SOURCE_PROVIDER,
    AccessDecision,
    check_access,
)
from gate_api.access.provider import (
    BLOCKED_LICENSE_STATUSES,
    LicenseValidation,
    LicenseValidationClient,
    ProviderUnavailable,
    get_validation_client,
)
from gate_api.billing.classifier import PlanConfig, resolve_plan
from gate_api.config.settings import GateSettings, get_settings
from gate_api.context import access_decision_var
from gate_api.db.session import get_db
from gate_api.errors import GateError
from gate_api.utils.sanitize import fingerprint

logger = logging.getLogger(__name__)

REASON_ACCESS_NOT_REQUIRED = "access_not_required"

LICENSE_KEY_HEADER = "X-License-Key"
LICENSE_KEY_FIELDS = ("licenseKey", "license_key")


class AccessDeniedError(GateError):
    """Raised by the gate; rendered as 401/403 with a stable reason."""

    code = "ACCESS_DENIED"

    def __init__(self, status_code: int, reason: str):
        super().__init__(reason)
        self.status_code = status_code
        self.reason = reason


def decision_from_validation(
    result: LicenseValidation,
    now: datetime,
    plan_config: Optional[PlanConfig] = None,
) -> AccessDecision:
    plan = resolve_plan(result.product_key, plan_config) if plan_config else None
    if not result.valid or (result.status or "").lower() in BLOCKED_LICENSE_STATUSES:
        return AccessDecision.deny(REASON_PROVIDER_INVALID, source=SOURCE_PROVIDER, status=result.status)
    if result.expires_at is not None and now > result.expires_at:
        return AccessDecision.deny(
            REASON_PROVIDER_INVALID,
            source=SOURCE_PROVIDER,
            status=result.status,
            expires_at=result.expires_at,
        )
    return AccessDecision(
        active=True,
        reason=REASON_ACTIVE,
        expires_at=result.expires_at,
        plan=plan,
        status=result.status,
        source=SOURCE_PROVIDER,
    )


async def validate_with_provider(
    license_key: str,
    client: LicenseValidationClient,
    cache: ValidationCache,
    now: datetime,
    plan_config: Optional[PlanConfig] = None,
) -> AccessDecision:
    """Provider fallback through the TTL cache. Errors and timeouts deny."""
    result = cache.get(license_key)
    if result is None:
        try:
            result = await client.validate(license_key)
        except ProviderUnavailable as exc:
            logger.warning(
                "PROVIDER_VALIDATION_UNAVAILABLE",
                extra={"error": str(exc), "license_fp": fingerprint(license_key)},
            )
            return AccessDecision.deny(REASON_PROVIDER_UNAVAILABLE, source=SOURCE_PROVIDER)
        cache.set(license_key, result)
    return decision_from_validation(result, now, plan_config)


async def resolve_access(
    db: Session,
    *,
    license_key: Optional[str],
    email: Optional[str],
    settings: GateSettings,
    client: LicenseValidationClient,
    cache: ValidationCache,
    now: Optional[datetime] = None,
) -> AccessDecision:
    """Local ledger first; provider fallback only for keys the ledger has never seen."""
    now = now or datetime.now(timezone.utc)
    decision = check_access(db, license_key=license_key, email=email, now=now)

    if (
        decision.reason == REASON_NOT_FOUND
        and license_key
        and settings.provider_fallback_enabled
    ):
        decision = await validate_with_provider(
            license_key, client, cache, now, PlanConfig.from_settings(settings)
        )
        access_decision_var.set(decision.reason)
        logger.info(
            "ACCESS_PROVIDER_FALLBACK",
            extra={"active": decision.active, "reason": decision.reason},
        )
    return decision


async def extract_license_key(request: Request) -> Optional[str]:
    """License key from header, then query string, then JSON body."""
    value = request.headers.get(LICENSE_KEY_HEADER)
    if value and value.strip():
        return value.strip()

    for name in LICENSE_KEY_FIELDS:
        value = request.query_params.get(name)
        if value and value.strip():
            return value.strip()

    content_type = request.headers.get("content-type", "")
    if request.method in ("POST", "PUT", "PATCH") and content_type.startswith("application/json"):
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return None
        if isinstance(body, dict):
            for name in LICENSE_KEY_FIELDS:
                value = body.get(name)
                if isinstance(value, str) and value.strip():
                    return value.strip()
    return None


async def require_access(
    request: Request,
    db: Session = Depends(get_db),
    settings: GateSettings = Depends(get_settings),
    client: LicenseValidationClient = Depends(get_validation_client),
    cache: ValidationCache = Depends(get_validation_cache),
) -> AccessDecision:
    """FastAPI dependency guarding paid endpoints.

    Raises:
        AccessDeniedError: 401 without a license key, 403 when denied
    """
    if not settings.access_required:
        return AccessDecision(active=True, reason=REASON_ACCESS_NOT_REQUIRED)

    license_key = await extract_license_key(request)
    if not license_key:
        access_decision_var.set(REASON_MISSING_LICENSE_KEY)
        raise AccessDeniedError(401, REASON_MISSING_LICENSE_KEY)

    decision = await resolve_access(
        db,
        license_key=license_key,
        email=None,
        settings=settings,
        client=client,
        cache=cache,
    )
    if not decision.active:
        raise AccessDeniedError(403, decision.reason)

    request.state.license_key = license_key
    return decision
