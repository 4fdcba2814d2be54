"""
HTTP mapping for typed rejections.

Every failure path returns the same {"error", "message"} body. Secrets,
signatures and claim values are never echoed back.
"""

from fastapi import HTTPException, status

from payguard.app.errors import Rejection, RejectionReason

REJECTION_STATUS = {
    RejectionReason.UNSUPPORTED_ALGORITHM: status.HTTP_400_BAD_REQUEST,
    RejectionReason.SIGNATURE_MISMATCH: status.HTTP_401_UNAUTHORIZED,
    RejectionReason.REPLAYED_REQUEST_NONCE: status.HTTP_401_UNAUTHORIZED,
    RejectionReason.INELIGIBLE_APPROVER: status.HTTP_403_FORBIDDEN,
    RejectionReason.CLAIM_ENTITY_MISMATCH: status.HTTP_403_FORBIDDEN,
    RejectionReason.APPROVAL_HASH_MISMATCH: status.HTTP_409_CONFLICT,
    RejectionReason.INSUFFICIENT_APPROVERS: status.HTTP_409_CONFLICT,
    RejectionReason.REPLAYED_APPROVAL_CLAIM: status.HTTP_409_CONFLICT,
    RejectionReason.ALREADY_FULLY_APPROVED: status.HTTP_409_CONFLICT,
    RejectionReason.ALREADY_EXECUTED: status.HTTP_409_CONFLICT,
    RejectionReason.UPDATE_NOT_PERMITTED: status.HTTP_409_CONFLICT,
}


def rejection_exception(rejection: Rejection) -> HTTPException:
    """
    Build the HTTPException for a rejection.

    Examples:
        >>> rejection_exception(Rejection(reason=RejectionReason.ALREADY_EXECUTED, message="x")).status_code
        409
    """
    return HTTPException(
        status_code=REJECTION_STATUS[rejection.reason],
        detail=rejection.to_detail(),
    )


def error_exception(status_code: int, error: str, message: str) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"error": error, "message": message})
