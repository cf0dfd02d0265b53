"""Webhook signature verification (HMAC-SHA256 over the raw request body).

The provider signs the exact bytes it sends. Verification therefore runs on
``await request.body()`` before any JSON parsing; re-serialized JSON is not
guaranteed to reproduce the signed bytes.

Accepted encodings of the X-Signature header:
- hex (case-insensitive), optionally prefixed with "sha256="
- standard or URL-safe base64
"""

import base64
import binascii
import hashlib
import hmac
import logging
from typing import Optional

logger = logging.getLogger(__name__)

_SHA256_DIGEST_SIZE = hashlib.sha256().digest_size


def compute_signature(raw_body: bytes, secret: str) -> bytes:
    """Return the raw HMAC-SHA256 digest of ``raw_body`` under ``secret``."""
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()


def _decode_signature(signature_header: str) -> Optional[bytes]:
    value = signature_header.strip()
    if value.lower().startswith("sha256="):
        value = value[len("sha256="):]
    if not value:
        return None

    if len(value) == _SHA256_DIGEST_SIZE * 2:
        try:
            return bytes.fromhex(value)
        except ValueError:
            pass

    padded = value + "=" * (-len(value) % 4)
    for decoder in (base64.b64decode, base64.urlsafe_b64decode):
        try:
            decoded = decoder(padded)
        except (binascii.Error, ValueError):
            continue
        if len(decoded) == _SHA256_DIGEST_SIZE:
            return decoded
    return None


def verify_signature(
    raw_body: Optional[bytes],
    secret: Optional[str],
    signature_header: Optional[str],
) -> bool:
    """Verify a webhook signature. Fails closed.

    Returns False when the secret, the header or the body is missing, when the
    header cannot be decoded, or on digest mismatch. Comparison is constant-time.
    """
    if not secret:
        logger.error("WEBHOOK_SECRET_MISSING")
        return False
    if not signature_header:
        return False
    if not raw_body:
        return False

    provided = _decode_signature(signature_header)
    if provided is None:
        return False

    expected = compute_signature(raw_body, secret)
    return hmac.compare_digest(expected, provided)
