"""
Inbound request signature verification.

Verifies the caller's own signature headers (Authorization with keyId,
appId or tokenId, Date, and the nonce or idempotency key) against the
shared secret registered for the key id. A nonce is accepted once per key
id; replays inside the clock skew window are refused.
"""

from typing import Any, Dict

from fastapi import APIRouter, Request

from payguard.app.config import get_settings
from payguard.app.errors import RejectionReason
from payguard.app.routes.rejections import REJECTION_STATUS, error_exception
from payguard.app.services.nonces import SqliteNonceLedger
from payguard.app.services.secret_registry import get_secret_registry, verify_request_headers
from payguard.app.services.signer import HttpSignatureHeaders

router = APIRouter(prefix="/v1/signatures", tags=["signatures"])


@router.post("/verify")
async def verify_request_signature(request: Request) -> Dict[str, Any]:
    """
    Verify the HMAC signature headers of this request.

    Returns 401 with a generic message on any failure; only missing header
    problems are reported.
    """
    config = get_settings().signature
    ledger = SqliteNonceLedger(retention_seconds=2 * config.max_clock_skew_seconds)
    result = verify_request_headers(request.headers, get_secret_registry(), config, nonce_ledger=ledger)

    if not result.verified:
        message = " ".join(result.problems) if result.problems else "Request signature could not be verified."
        raise error_exception(
            REJECTION_STATUS[result.reason or RejectionReason.SIGNATURE_MISMATCH],
            (result.reason or RejectionReason.SIGNATURE_MISMATCH).value,
            message,
        )

    parsed = HttpSignatureHeaders.from_headers(request.headers, config)
    return {"verified": True, "key_id": parsed.key_id}
