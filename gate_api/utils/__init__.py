"""Utility functions and helpers."""

from gate_api.utils.logging import JSONFormatter, configure_json_logging
from gate_api.utils.sanitize import fingerprint, payload_hash_bytes, sanitize_obj, sanitize_str

__all__ = [
    "JSONFormatter",
    "configure_json_logging",
    "fingerprint",
    "payload_hash_bytes",
    "sanitize_obj",
    "sanitize_str",
]
