"""Access decisions over the entitlement ledger.

Decision sequence for a stored row at time ``now``:

1. no row                                   → deny  not_found
2. status expired / revoked (terminal)      → deny  status_blocked
3. expires_at set and now > expires_at      → deny  expired
4. status paused                            → deny  status_blocked
5. status not in {active, cancelled}        → deny  not_active
6. otherwise                                → allow

Any store error resolves to deny ``store_unavailable``. Nothing here ever
defaults to allow.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from gate_api.billing.entitlements import find_entitlement
from gate_api.context import access_decision_var
from gate_api.db.dialect import as_utc
from gate_api.db.models import (
    STATUS_ACTIVE,
    STATUS_CANCELLED,
    STATUS_PAUSED,
    TERMINAL_STATUSES,
    Entitlement,
)
from gate_api.utils.sanitize import fingerprint

logger = logging.getLogger(__name__)

REASON_ACTIVE = "active"
REASON_NOT_FOUND = "not_found"
REASON_EXPIRED = "expired"
REASON_STATUS_BLOCKED = "status_blocked"
REASON_NOT_ACTIVE = "not_active"
REASON_STORE_UNAVAILABLE = "store_unavailable"
REASON_MISSING_LICENSE_KEY = "missing_license_key"
REASON_PROVIDER_INVALID = "provider_invalid"
REASON_PROVIDER_UNAVAILABLE = "provider_unavailable"

ALLOWED_STATUSES = frozenset({STATUS_ACTIVE, STATUS_CANCELLED})

SOURCE_LOCAL = "local"
SOURCE_PROVIDER = "provider"


@dataclass(frozen=True)
class AccessDecision:
    """Ephemeral allow/deny result. Never persisted."""

    active: bool
    reason: str
    expires_at: Optional[datetime] = None
    plan: Optional[str] = None
    status: Optional[str] = None
    source: str = SOURCE_LOCAL

    @classmethod
    def deny(cls, reason: str, **kwargs) -> "AccessDecision":
        return cls(active=False, reason=reason, **kwargs)


def evaluate_entitlement(ent: Optional[Entitlement], now: datetime) -> AccessDecision:
    """Pure decision over one row at ``now``."""
    if ent is None:
        return AccessDecision.deny(REASON_NOT_FOUND)

    expires_at = as_utc(ent.expires_at)
    details = {"expires_at": expires_at, "plan": ent.plan, "status": ent.status}

    if ent.status in TERMINAL_STATUSES:
        return AccessDecision.deny(REASON_STATUS_BLOCKED, **details)
    if expires_at is not None and now > expires_at:
        return AccessDecision.deny(REASON_EXPIRED, **details)
    if ent.status == STATUS_PAUSED:
        return AccessDecision.deny(REASON_STATUS_BLOCKED, **details)
    if ent.status not in ALLOWED_STATUSES:
        return AccessDecision.deny(REASON_NOT_ACTIVE, **details)
    return AccessDecision(active=True, reason=REASON_ACTIVE, **details)


def check_access(
    db: Session,
    license_key: Optional[str] = None,
    email: Optional[str] = None,
    now: Optional[datetime] = None,
) -> AccessDecision:
    """Look up the caller's entitlement and evaluate it. Fails closed."""
    now = now or datetime.now(timezone.utc)
    try:
        ent = find_entitlement(db, license_key=license_key, email=email)
    except (SQLAlchemyError, TimeoutError) as exc:
        db.rollback()
        logger.error(
            "ACCESS_STORE_UNAVAILABLE",
            extra={"error_type": type(exc).__name__, "license_fp": fingerprint(license_key)},
        )
        decision = AccessDecision.deny(REASON_STORE_UNAVAILABLE)
    else:
        decision = evaluate_entitlement(ent, now)

    access_decision_var.set(decision.reason)
    if not decision.active:
        logger.info(
            "ACCESS_DENIED",
            extra={"reason": decision.reason, "license_fp": fingerprint(license_key)},
        )
    return decision
