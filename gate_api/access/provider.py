"""Provider real-time license validation client.

Used only as a fallback when the local ledger has no row for a presented key
(purchase completed, webhook not processed yet).

API: POST {PROVIDER_API_BASE}/v1/licenses/validate, form field ``license_key``.
Response (200 or 4xx):
    {"valid": bool, "error": str|null,
     "license_key": {"status": "active", "expires_at": null, ...},
     "meta": {"product_id": 1001, ...}}
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

import httpx

from gate_api.billing.classifier import parse_timestamp
from gate_api.billing.webhook_ingest import dig
from gate_api.config.settings import get_settings
from gate_api.errors import MalformedEvent

logger = logging.getLogger(__name__)

# License statuses the provider reports that never grant access
BLOCKED_LICENSE_STATUSES = frozenset({"disabled", "expired"})

# HTTP statuses whose body is a validation answer; anything else is a provider fault
ANSWER_STATUSES = frozenset({200, 400, 404, 422})


class ProviderUnavailable(Exception):
    """Validation endpoint unreachable, timed out, faulted, or unreadable response."""


@dataclass(frozen=True)
class LicenseValidation:
    """Normalized provider answer for one license key."""

    valid: bool
    status: Optional[str] = None
    expires_at: Optional[datetime] = None
    product_key: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "status": self.status,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "product_key": self.product_key,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LicenseValidation":
        expires_at = data.get("expires_at")
        return cls(
            valid=bool(data.get("valid")),
            status=data.get("status"),
            expires_at=datetime.fromisoformat(expires_at) if expires_at else None,
            product_key=data.get("product_key"),
        )


def parse_validation_response(body: Any) -> LicenseValidation:
    """Normalize the provider JSON body.

    Raises:
        ProviderUnavailable: body is not an object, lacks a boolean ``valid``,
            or carries a bad timestamp
    """
    if not isinstance(body, dict):
        raise ProviderUnavailable("Validation response is not a JSON object")
    if not isinstance(body.get("valid"), bool):
        raise ProviderUnavailable("Validation response has no boolean valid field")
    try:
        expires_at = parse_timestamp(dig(body, "license_key", "expires_at"), "license_key.expires_at")
    except MalformedEvent as exc:
        raise ProviderUnavailable(str(exc)) from exc
    return LicenseValidation(
        valid=body.get("valid") is True,
        status=dig(body, "license_key", "status"),
        expires_at=expires_at,
        product_key=dig(body, "meta", "product_id"),
    )


class LicenseValidationClient:
    """HTTP client for the provider license validation endpoint.

    Environment Variables (via settings):
    - PROVIDER_API_BASE: API base URL
    - PROVIDER_TIMEOUT_SECONDS: total request timeout
    """

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = httpx.Timeout(timeout_seconds)
        self._transport = transport

    async def validate(self, license_key: str) -> LicenseValidation:
        """Validate a license key with the provider.

        Returns:
            LicenseValidation (valid=False for unknown / disabled keys)

        Raises:
            ProviderUnavailable: timeout, network error, non-answer status
                (5xx, 401, 429, ...), or unreadable body
        """
        url = f"{self.base_url}/v1/licenses/validate"

        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
                response = await client.post(
                    url,
                    data={"license_key": license_key},
                    headers={"Accept": "application/json"},
                )
                if response.status_code not in ANSWER_STATUSES:
                    response.raise_for_status()
                    raise ProviderUnavailable(f"Unexpected status {response.status_code}")
                body = response.json()
        except httpx.HTTPError as exc:
            raise ProviderUnavailable(f"{type(exc).__name__}") from exc
        except ValueError as exc:
            raise ProviderUnavailable("Validation response is not JSON") from exc

        result = parse_validation_response(body)
        logger.info(
            "PROVIDER_LICENSE_VALIDATED",
            extra={
                "http_status": response.status_code,
                "valid": result.valid,
                "license_status": result.status,
            },
        )
        return result


# Global client instance (singleton)
_validation_client: Optional[LicenseValidationClient] = None


def get_validation_client() -> LicenseValidationClient:
    """Get global validation client instance (singleton)."""
    global _validation_client
    if _validation_client is None:
        settings = get_settings()
        _validation_client = LicenseValidationClient(
            settings.provider_api_base,
            timeout_seconds=settings.provider_timeout_seconds,
        )
    return _validation_client


def reset_validation_client() -> None:
    """Drop the singleton (for testing)."""
    global _validation_client
    _validation_client = None
