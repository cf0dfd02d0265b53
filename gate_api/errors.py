"""Error taxonomy for webhook ingestion and access decisions.

CorrelationMiss    → event recorded, no row to update, dropped
MalformedEvent     → event recorded with status=error, acknowledged

Outcomes that are answered rather than raised carry a stable code only:
signature rejection (401, no side effect), unrecognized events (recorded,
entitlement untouched) and store failures (deny on reads, retryable 5xx on
ingestion).
"""

from typing import Optional

SIGNATURE_INVALID = "WEBHOOK_SIGNATURE_INVALID"
EVENT_UNRECOGNIZED = "WEBHOOK_EVENT_UNRECOGNIZED"
STORE_UNAVAILABLE = "STORE_UNAVAILABLE"


class GateError(Exception):
    """Base class for entitlement gate errors."""

    code: str = "GATE_ERROR"


class CorrelationMiss(GateError):
    """Patch without license key matched no row by order_id / subscription_id."""

    code = "ENTITLEMENT_CORRELATION_MISS"

    def __init__(self, order_id: Optional[str], subscription_id: Optional[str]):
        super().__init__(
            f"No entitlement for order_id={order_id!r} subscription_id={subscription_id!r}"
        )
        self.order_id = order_id
        self.subscription_id = subscription_id


class MalformedEvent(GateError):
    """Payload that verified but cannot be interpreted (wrong shapes, bad dates)."""

    code = "WEBHOOK_MALFORMED_EVENT"
