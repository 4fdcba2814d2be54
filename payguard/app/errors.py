"""
Error taxonomy for the payguard core.

Two kinds of failure exist:

- Hard failures (misconfiguration, malformed input) raise a subclass of
  PayguardError. These are never expected in normal operation.
- Policy and integrity failures (a signature that does not match, an entity
  that drifted since approval, a replayed claim) are returned to the caller
  as a Rejection value carrying a RejectionReason.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel


class PayguardError(Exception):
    """Base class for hard failures."""


class UnsupportedAlgorithmError(PayguardError, ValueError):
    """Unknown signature version / HMAC algorithm pair."""


class MalformedSecretError(PayguardError, ValueError):
    """A shared secret could not be decoded."""


class ApprovalHashError(PayguardError, ValueError):
    """An entity cannot produce an approval hash (e.g. payout with no destination)."""


class ClaimValidationError(PayguardError, ValueError):
    """An approval claims bag is missing or has malformed required claims."""


class ConfigurationError(PayguardError, ValueError):
    """Server configuration (e.g. merchant authorisation settings) is invalid."""


class ConcurrentUpdateError(PayguardError):
    """A stored record changed between read and write (optimistic version check failed)."""


class RejectionReason(str, Enum):
    UNSUPPORTED_ALGORITHM = "unsupported_algorithm"
    SIGNATURE_MISMATCH = "signature_mismatch"
    APPROVAL_HASH_MISMATCH = "approval_hash_mismatch"
    INSUFFICIENT_APPROVERS = "insufficient_approvers"
    INELIGIBLE_APPROVER = "ineligible_approver"
    REPLAYED_APPROVAL_CLAIM = "replayed_approval_claim"
    CLAIM_ENTITY_MISMATCH = "claim_entity_mismatch"
    ALREADY_FULLY_APPROVED = "already_fully_approved"
    ALREADY_EXECUTED = "already_executed"
    UPDATE_NOT_PERMITTED = "update_not_permitted"
    REPLAYED_REQUEST_NONCE = "replayed_request_nonce"


class Rejection(BaseModel):
    """A typed, local rejection returned to the caller."""

    reason: RejectionReason
    message: str

    def to_detail(self) -> dict:
        return {"error": self.reason.value, "message": self.message}


def reject(reason: RejectionReason, message: Optional[str] = None) -> Rejection:
    return Rejection(reason=reason, message=message or reason.value.replace("_", " "))
