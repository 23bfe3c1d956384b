"""HMAC-SHA256 signing and verification for payment-rail and policy webhooks.

Three signature formats are accepted:

* base64 HMAC of the raw body (PFMS default)
* base64 HMAC of ``"{timestamp}.{body}"`` with a freshness window
* ``sha256=<hex>`` HMAC of the raw body
"""

import base64
import hashlib
import hmac
import logging
import time
from typing import Optional

logger = logging.getLogger(__name__)

HEX_PREFIX = "sha256="


def _digest(secret: str, payload: bytes) -> bytes:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).digest()


def sign_payload(secret: str, payload: bytes) -> str:
    return base64.b64encode(_digest(secret, payload)).decode("ascii")


def sign_payload_hex(secret: str, payload: bytes) -> str:
    return HEX_PREFIX + _digest(secret, payload).hex()


def sign_timestamped(secret: str, payload: bytes, timestamp: int) -> str:
    return sign_payload(secret, f"{timestamp}.".encode("ascii") + payload)


def verify_signature(secret: str, payload: bytes, signature: Optional[str]) -> bool:
    """Constant-time check of a base64 or ``sha256=`` hex signature."""
    if not secret or not signature:
        return False
    signature = signature.strip()
    if signature.startswith(HEX_PREFIX):
        expected = sign_payload_hex(secret, payload)
    else:
        expected = sign_payload(secret, payload)
    return hmac.compare_digest(signature.encode("utf-8"), expected.encode("utf-8"))


def verify_timestamped_signature(
    secret: str,
    payload: bytes,
    signature: Optional[str],
    timestamp: Optional[str],
    *,
    tolerance_seconds: int = 300,
    now: Optional[float] = None,
) -> bool:
    if not secret or not signature or not timestamp:
        return False
    try:
        ts = int(timestamp)
    except ValueError:
        logger.warning("Webhook timestamp is not an integer: %r", timestamp)
        return False
    current = now if now is not None else time.time()
    if abs(current - ts) > tolerance_seconds:
        logger.warning("Webhook timestamp %s outside tolerance of %ss", ts, tolerance_seconds)
        return False
    expected = sign_timestamped(secret, payload, ts)
    return hmac.compare_digest(signature.strip().encode("utf-8"), expected.encode("utf-8"))
