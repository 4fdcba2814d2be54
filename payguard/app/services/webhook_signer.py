"""
Webhook payload signing.

Webhook signatures are always HMAC-SHA256 over the exact bytes that are
transmitted, base64 encoded (not URL escaped) and delivered in a single
header. Unlike request signing there is no versioning.

Receivers must recompute over the raw received body. Re-serialising a parsed
payload before verifying will, in general, change the bytes and fail
verification.
"""

import base64
import hmac
import logging
from typing import Dict, Optional

from payguard.app.config import DEFAULT_WEBHOOK_CONFIG, WebhookConfig
from payguard.app.services.hmac_primitive import HmacAlgorithm, compute_hmac
from payguard.app.services.signer import Secret, secret_to_bytes

logger = logging.getLogger(__name__)

WEBHOOK_ALGORITHM = HmacAlgorithm.HMAC_SHA256


def _require_bytes(payload) -> bytes:
    if not isinstance(payload, (bytes, bytearray, memoryview)):
        raise TypeError(
            f"Webhook payload must be the raw transmitted bytes, got {type(payload).__name__}"
        )
    return bytes(payload)


def compute_webhook_signature(secret: Secret, payload: bytes) -> str:
    """
    Compute the base64 HMAC-SHA256 signature of a webhook payload.

    Args:
        secret: Per-endpoint shared secret; str secrets are UTF-8 encoded
        payload: Exact serialised body bytes

    Returns:
        Base64 signature string

    Raises:
        TypeError: If payload is not a bytes-like object
    """
    mac = compute_hmac(secret_to_bytes(secret), _require_bytes(payload), WEBHOOK_ALGORITHM)
    return base64.b64encode(mac).decode("ascii")


def verify_webhook_signature(secret: Secret, payload: bytes, presented: Optional[str]) -> bool:
    """Constant time comparison of a presented webhook signature."""
    if not presented:
        return False

    expected = compute_webhook_signature(secret, payload)
    if hmac.compare_digest(expected.encode("ascii"), presented.strip().encode("utf-8")):
        return True

    logger.warning("Webhook signature mismatch (payload_bytes=%d)", len(payload))
    return False


def build_webhook_headers(
    secret: Secret,
    payload: bytes,
    config: WebhookConfig = DEFAULT_WEBHOOK_CONFIG,
) -> Dict[str, str]:
    """Headers to send with an outbound webhook body."""
    return {
        "Content-Type": config.content_type,
        config.signature_header: compute_webhook_signature(secret, payload),
    }
