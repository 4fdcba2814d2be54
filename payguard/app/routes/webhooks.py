"""
Webhook signature verification for receivers.

The signature is recomputed over the raw request body exactly as received.
"""

from typing import Any, Dict

from fastapi import APIRouter, Request, status

from payguard.app.config import get_settings
from payguard.app.errors import RejectionReason
from payguard.app.routes.rejections import error_exception
from payguard.app.services.secret_registry import get_secret_registry
from payguard.app.services.webhook_signer import verify_webhook_signature

router = APIRouter(prefix="/v1/webhooks", tags=["webhooks"])


@router.post("/{key_id}/verify")
async def verify_webhook(key_id: str, request: Request) -> Dict[str, Any]:
    """Verify the webhook signature header against the raw body for a registered endpoint secret."""
    payload = await request.body()
    presented = request.headers.get(get_settings().webhook.signature_header)

    shared_secret = get_secret_registry().get(key_id)
    # Unknown key ids fail exactly like a bad signature.
    verified = shared_secret is not None and verify_webhook_signature(
        shared_secret.secret_bytes(), payload, presented
    )
    if not verified:
        raise error_exception(
            status.HTTP_401_UNAUTHORIZED,
            RejectionReason.SIGNATURE_MISMATCH.value,
            "Webhook signature could not be verified.",
        )

    return {"verified": True, "key_id": key_id, "payload_bytes": len(payload)}
