"""
Pydantic models for payguard.
"""

from payguard.app.models.approvals import (
    ApprovalClaim,
    ApprovalState,
    Approver,
    AuthorisationOutcome,
    AuthorisationRecord,
    AuthorisationSetting,
    AuthorisationStatus,
)
from payguard.app.models.entities import ApprovableEntity, EntityType
from payguard.app.models.requests import (
    ApprovalHashRequest,
    ApprovalRequest,
    AuthoriseRequest,
    SignatureRequest,
)

__all__ = [
    "ApprovableEntity",
    "ApprovalClaim",
    "ApprovalHashRequest",
    "ApprovalRequest",
    "ApprovalState",
    "Approver",
    "AuthorisationOutcome",
    "AuthorisationRecord",
    "AuthorisationSetting",
    "AuthorisationStatus",
    "AuthoriseRequest",
    "EntityType",
    "SignatureRequest",
]
