"""Bounded-TTL cache of provider license validation results (Redis).

Keys are ``gate:license-validation:<sha256(license_key)>``; the key itself is
never stored. Entries expire via SETEX. Any Redis failure degrades to a cache
miss; the caller then asks the provider directly.
"""

import hashlib
import json
import logging
from typing import Callable, Optional

import redis

from gate_api.access.provider import LicenseValidation
from gate_api.config.settings import get_settings
from gate_api.db.redis_client import RedisClient

logger = logging.getLogger(__name__)

KEY_PREFIX = "gate:license-validation:"


def cache_key(license_key: str) -> str:
    return KEY_PREFIX + hashlib.sha256(license_key.encode("utf-8")).hexdigest()


class ValidationCache:
    """Keyed TTL store for ``LicenseValidation`` results."""

    def __init__(
        self,
        ttl_seconds: int,
        client_factory: Callable[[], redis.Redis] = RedisClient.get_client,
    ):
        self.ttl_seconds = ttl_seconds
        self._client_factory = client_factory

    @property
    def enabled(self) -> bool:
        return self.ttl_seconds > 0

    def get(self, license_key: str) -> Optional[LicenseValidation]:
        if not self.enabled:
            return None
        try:
            raw = self._client_factory().get(cache_key(license_key))
        except redis.RedisError as exc:
            logger.warning("VALIDATION_CACHE_READ_FAILED", extra={"error_type": type(exc).__name__})
            return None
        if raw is None:
            return None
        try:
            return LicenseValidation.from_dict(json.loads(raw))
        except (ValueError, TypeError, AttributeError):
            logger.warning("VALIDATION_CACHE_CORRUPT_ENTRY")
            return None

    def set(self, license_key: str, result: LicenseValidation) -> None:
        if not self.enabled:
            return
        try:
            self._client_factory().setex(
                cache_key(license_key),
                self.ttl_seconds,
                json.dumps(result.to_dict()),
            )
        except redis.RedisError as exc:
            logger.warning("VALIDATION_CACHE_WRITE_FAILED", extra={"error_type": type(exc).__name__})


_validation_cache: Optional[ValidationCache] = None


def get_validation_cache() -> ValidationCache:
    """Get global validation cache (singleton)."""
    global _validation_cache
    if _validation_cache is None:
        _validation_cache = ValidationCache(get_settings().validation_cache_ttl_seconds)
    return _validation_cache


def reset_validation_cache() -> None:
    """Drop the singleton (for testing)."""
    global _validation_cache
    _validation_cache = None
