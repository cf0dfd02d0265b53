"""Event classification: provider webhook → canonical entitlement patch.

Two declarative layers:

- Extractor tables. Each logical field (plan key, license key, email, ...) has an
  ordered tuple of pure extractors over the payload; first non-empty wins.
- Event-kind table. Event names map case-insensitively onto a closed
  ``EventKind`` enum; each kind dispatches to a pure patch builder.

| kind     | status    | expires_at                                                 |
|----------|-----------|------------------------------------------------------------|
| GRANT    | active    | fixed plan: created_at (or now) + fixed duration, write-once |
| ACTIVATE | active    | unchanged                                                  |
| CANCEL   | cancelled | ends_at, else renews_at, else unchanged                    |
| EXPIRE   | expired   | now                                                        |
| PAUSE    | paused    | unchanged                                                  |
| REVOKE   | revoked   | now                                                        |

Unrecognized names yield no patch.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional

from gate_api.billing.webhook_ingest import dig
from gate_api.config.settings import GateSettings
from gate_api.db.models import (
    STATUS_ACTIVE,
    STATUS_CANCELLED,
    STATUS_EXPIRED,
    STATUS_PAUSED,
    STATUS_REVOKED,
)
from gate_api.errors import MalformedEvent

PLAN_FIXED = "fixed"
PLAN_MONTHLY = "monthly"
PLAN_ANNUAL = "annual"
PLAN_UNKNOWN = "unknown"

PayloadExtractor = Callable[[dict], Optional[str]]


class EventKind(str, Enum):
    """Closed set of event families the classifier understands."""

    GRANT = "grant"
    ACTIVATE = "activate"
    CANCEL = "cancel"
    EXPIRE = "expire"
    PAUSE = "pause"
    REVOKE = "revoke"
    UNRECOGNIZED = "unrecognized"


EVENT_KINDS: dict[str, EventKind] = {
    "order_created": EventKind.GRANT,
    "order_paid": EventKind.GRANT,
    "license_key_created": EventKind.GRANT,
    "subscription_created": EventKind.ACTIVATE,
    "subscription_payment_success": EventKind.ACTIVATE,
    "payment_success": EventKind.ACTIVATE,
    "subscription_payment_recovered": EventKind.ACTIVATE,
    "subscription_resumed": EventKind.ACTIVATE,
    "subscription_unpaused": EventKind.ACTIVATE,
    "resumed": EventKind.ACTIVATE,
    "subscription_cancelled": EventKind.CANCEL,
    "subscription_expired": EventKind.EXPIRE,
    "subscription_paused": EventKind.PAUSE,
    "order_refunded": EventKind.REVOKE,
    "subscription_payment_refunded": EventKind.REVOKE,
    "refund": EventKind.REVOKE,
    "refinanced": EventKind.REVOKE,
}


def classify_event_name(event_name: Optional[str]) -> EventKind:
    if not event_name:
        return EventKind.UNRECOGNIZED
    return EVENT_KINDS.get(event_name.strip().lower(), EventKind.UNRECOGNIZED)


# ---------------------------------------------------------------------------
# Extractor tables
# ---------------------------------------------------------------------------


def _attr(*path: str | int) -> PayloadExtractor:
    return lambda payload: dig(payload, "data", "attributes", *path)


def _data_id_when(resource_type: str) -> PayloadExtractor:
    def extract(payload: dict) -> Optional[str]:
        if dig(payload, "data", "type") != resource_type:
            return None
        return dig(payload, "data", "id")

    return extract


PLAN_KEY_EXTRACTORS: tuple[PayloadExtractor, ...] = (
    _attr("product_id"),
    _attr("order_items", 0, "product_id"),
    _attr("first_order_item", "product_id"),
    _attr("first_subscription_item", "product_id"),
)

LICENSE_KEY_EXTRACTORS: tuple[PayloadExtractor, ...] = (
    _attr("key"),
    _attr("license_key"),
    lambda payload: dig(payload, "meta", "custom_data", "license_key"),
)

EMAIL_EXTRACTORS: tuple[PayloadExtractor, ...] = (
    _attr("user_email"),
    _attr("customer_email"),
    _attr("email"),
)

CUSTOMER_ID_EXTRACTORS: tuple[PayloadExtractor, ...] = (
    _attr("customer_id"),
)

ORDER_ID_EXTRACTORS: tuple[PayloadExtractor, ...] = (
    _attr("order_id"),
    _data_id_when("orders"),
)

SUBSCRIPTION_ID_EXTRACTORS: tuple[PayloadExtractor, ...] = (
    _attr("subscription_id"),
    _data_id_when("subscriptions"),
)


def extract_first(extractors: tuple[PayloadExtractor, ...], payload: dict) -> Optional[str]:
    for extractor in extractors:
        value = extractor(payload)
        if value:
            return value
    return None


def extract_plan_key(payload: dict) -> Optional[str]:
    return extract_first(PLAN_KEY_EXTRACTORS, payload)


def parse_timestamp(value: Optional[str], field_name: str) -> Optional[datetime]:
    """Parse a provider ISO 8601 timestamp ("...Z" accepted) into aware UTC.

    Raises:
        MalformedEvent: value present but not a timestamp
    """
    if not value:
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise MalformedEvent(f"Invalid timestamp in {field_name}")
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Plan resolution
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PlanConfig:
    """Plan allow-lists and fixed-duration length."""

    fixed_keys: frozenset[str] = frozenset()
    monthly_keys: frozenset[str] = frozenset()
    annual_keys: frozenset[str] = frozenset()
    fixed_duration_hours: float = 48.0

    @classmethod
    def from_settings(cls, settings: GateSettings) -> "PlanConfig":
        return cls(
            fixed_keys=settings.plan_fixed_keys,
            monthly_keys=settings.plan_monthly_keys,
            annual_keys=settings.plan_annual_keys,
            fixed_duration_hours=settings.fixed_duration_hours,
        )


def resolve_plan(product_key: Optional[str], config: PlanConfig) -> Optional[str]:
    """Map a product key to a plan name; None when the payload carries no key."""
    if not product_key:
        return None
    if product_key in config.fixed_keys:
        return PLAN_FIXED
    if product_key in config.monthly_keys:
        return PLAN_MONTHLY
    if product_key in config.annual_keys:
        return PLAN_ANNUAL
    return PLAN_UNKNOWN


# ---------------------------------------------------------------------------
# Patch model + builders
# ---------------------------------------------------------------------------


@dataclass
class EntitlementPatch:
    """Canonical change to one entitlement row. None means "leave as is"."""

    kind: EventKind
    status: str
    license_key: Optional[str] = None
    email: Optional[str] = None
    customer_id: Optional[str] = None
    order_id: Optional[str] = None
    subscription_id: Optional[str] = None
    plan: Optional[str] = None
    starts_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    # Grant expiries are write-once: an existing expires_at wins over this one
    keep_existing_expiry: bool = False
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PatchContext:
    now: datetime
    plan: Optional[str]
    config: PlanConfig


@dataclass(frozen=True)
class StatusChange:
    status: str
    starts_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    keep_existing_expiry: bool = False


def _grant(payload: dict, ctx: PatchContext) -> StatusChange:
    created_at = parse_timestamp(_attr("created_at")(payload), "created_at")
    base = created_at or ctx.now
    if ctx.plan == PLAN_FIXED:
        return StatusChange(
            STATUS_ACTIVE,
            starts_at=base,
            expires_at=base + timedelta(hours=ctx.config.fixed_duration_hours),
            keep_existing_expiry=True,
        )
    return StatusChange(STATUS_ACTIVE, starts_at=base)


def _activate(payload: dict, ctx: PatchContext) -> StatusChange:
    created_at = parse_timestamp(_attr("created_at")(payload), "created_at")
    return StatusChange(STATUS_ACTIVE, starts_at=created_at)


def _cancel(payload: dict, ctx: PatchContext) -> StatusChange:
    ends_at = parse_timestamp(_attr("ends_at")(payload), "ends_at")
    if ends_at is None:
        ends_at = parse_timestamp(_attr("renews_at")(payload), "renews_at")
    return StatusChange(STATUS_CANCELLED, expires_at=ends_at)


def _expire(payload: dict, ctx: PatchContext) -> StatusChange:
    return StatusChange(STATUS_EXPIRED, expires_at=ctx.now)


def _pause(payload: dict, ctx: PatchContext) -> StatusChange:
    return StatusChange(STATUS_PAUSED)


def _revoke(payload: dict, ctx: PatchContext) -> StatusChange:
    return StatusChange(STATUS_REVOKED, expires_at=ctx.now)


PATCH_BUILDERS: dict[EventKind, Callable[[dict, PatchContext], StatusChange]] = {
    EventKind.GRANT: _grant,
    EventKind.ACTIVATE: _activate,
    EventKind.CANCEL: _cancel,
    EventKind.EXPIRE: _expire,
    EventKind.PAUSE: _pause,
    EventKind.REVOKE: _revoke,
}


def _test_mode(payload: dict) -> Optional[bool]:
    for container in (payload.get("meta"), (payload.get("data") or {}).get("attributes")):
        if isinstance(container, dict) and isinstance(container.get("test_mode"), bool):
            return container["test_mode"]
    return None


def build_patch(
    event_name: Optional[str],
    payload: dict,
    config: PlanConfig,
    now: Optional[datetime] = None,
) -> Optional[EntitlementPatch]:
    """Classify one event and build its entitlement patch.

    Returns None for unrecognized event names.

    Raises:
        MalformedEvent: payload is not an object, or carries an unparseable timestamp
    """
    kind = classify_event_name(event_name)
    if kind is EventKind.UNRECOGNIZED:
        return None
    if not isinstance(payload, dict):
        raise MalformedEvent("Payload is not a JSON object")

    now = now or datetime.now(timezone.utc)
    product_key = extract_plan_key(payload)
    plan = resolve_plan(product_key, config)
    change = PATCH_BUILDERS[kind](payload, PatchContext(now=now, plan=plan, config=config))

    email = extract_first(EMAIL_EXTRACTORS, payload)
    meta = {
        "last_event": event_name.strip().lower() if event_name else None,
        "product_key": product_key,
        "provider_status": _attr("status")(payload),
        "test_mode": _test_mode(payload),
    }

    return EntitlementPatch(
        kind=kind,
        status=change.status,
        license_key=extract_first(LICENSE_KEY_EXTRACTORS, payload),
        email=email.lower() if email else None,
        customer_id=extract_first(CUSTOMER_ID_EXTRACTORS, payload),
        order_id=extract_first(ORDER_ID_EXTRACTORS, payload),
        subscription_id=extract_first(SUBSCRIPTION_ID_EXTRACTORS, payload),
        plan=plan,
        starts_at=change.starts_at,
        expires_at=change.expires_at,
        keep_existing_expiry=change.keep_existing_expiry,
        meta={k: v for k, v in meta.items() if v is not None},
    )
