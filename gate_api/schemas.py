"""Pydantic schemas for request/response validation."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


# ============================================================================
# RFC 9457 Problem Details
# ============================================================================


class ProblemDetail(BaseModel):
    """RFC 9457 Problem Details for HTTP API errors.

    RFC 9457: detail can be either a string or a structured object (dict).
    """

    type: str = Field(..., description="URI reference identifying the problem type")
    title: str = Field(..., description="Short, human-readable summary")
    status: int = Field(..., description="HTTP status code")
    detail: str | dict[str, Any] = Field(..., description="Human-readable explanation or structured error details")
    instance: Optional[str] = Field(None, description="URI reference identifying the specific occurrence")


# ============================================================================
# POST /webhooks/provider
# ============================================================================


class WebhookAck(BaseModel):
    """Acknowledgement returned to the provider."""

    ok: bool = True
    duplicate: Optional[bool] = None


# ============================================================================
# POST /access/check
# ============================================================================


class AccessCheckRequest(BaseModel):
    """Access check input. At least one of licenseKey / email is required."""

    model_config = ConfigDict(populate_by_name=True)

    license_key: Optional[str] = Field(None, alias="licenseKey", max_length=256)
    email: Optional[str] = Field(None, max_length=320)

    @model_validator(mode="after")
    def _require_identifier(self) -> "AccessCheckRequest":
        if self.license_key:
            self.license_key = self.license_key.strip() or None
        if self.email:
            self.email = self.email.strip() or None
        if not self.license_key and not self.email:
            raise ValueError("licenseKey or email is required")
        return self


class AccessCheckResponse(BaseModel):
    """Access decision as exposed to callers."""

    model_config = ConfigDict(populate_by_name=True)

    ok: bool = True
    active: bool
    reason: Optional[str] = None
    expires_at: Optional[datetime] = Field(None, alias="expiresAt")
    plan: Optional[str] = None


# ============================================================================
# Admin
# ============================================================================


class WebhookEventSummary(BaseModel):
    """Stored webhook event (payload omitted)."""

    event_id: str
    event_name: Optional[str] = None
    status: str
    received_at: datetime
    processed_at: Optional[datetime] = None
    error: Optional[str] = None
    payload_hash: Optional[str] = None


class EntitlementView(BaseModel):
    """Entitlement row as shown to operators and to the key holder."""

    model_config = ConfigDict(from_attributes=True)

    email: Optional[str] = None
    customer_id: Optional[str] = None
    order_id: Optional[str] = None
    subscription_id: Optional[str] = None
    plan: Optional[str] = None
    status: str
    starts_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    meta: Optional[dict[str, Any]] = None
    updated_at: Optional[datetime] = None
