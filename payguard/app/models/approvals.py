"""
Approval and authorisation models.

ApprovalClaim is the strongly typed form of the claims an identity provider
returns after strong customer authentication. The claims bag is converted
exactly once, at the boundary, by ApprovalClaim.from_claims.

AuthorisationRecord is the persisted approval state of one entity; the
AuthorisationStatus view is always derived from it and is never stored.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from payguard.app.config import DEFAULT_CLAIMS_CONFIG, ClaimsConfig
from payguard.app.errors import ClaimValidationError, Rejection
from payguard.app.models.entities import EntityType


class AuthenticationMethod(str, Enum):
    NONE = "none"
    WEBAUTHN = "webauthn"
    ONE_TIME_PASSWORD = "one_time_password"


class AuthorisationType(str, Enum):
    PAYOUT = "payout"
    RULE = "rule"
    BENEFICIARY = "beneficiary"
    PAYRUN = "payrun"
    MERCHANT_TOKEN = "merchant_token"
    USER_INVITE = "user_invite"
    ROLE_USER = "role_user"


class ApprovalState(str, Enum):
    UNAPPROVED = "unapproved"
    PARTIALLY_APPROVED = "partially_approved"
    FULLY_APPROVED = "fully_approved"
    EXECUTED = "executed"


class UpdatePolicy(str, Enum):
    """When an entity under approval may still be edited."""

    UNTIL_FULLY_APPROVED = "until_fully_approved"
    # Editing a fully approved, not yet executed entity voids its approvals.
    UNTIL_EXECUTED = "until_executed"
    # Recurring entities (rules, tokens): editing after execution reopens approval.
    ALWAYS = "always"


# Claim names, appended to the claims namespace.
CLAIM_APPROVE_ID = "approveid"
CLAIM_APPROVE_TYPE = "approvetype"
CLAIM_APPROVE_HASH = "approvehash"
CLAIM_APPROVE_SIGNATURE = "approvesignature"
CLAIM_APPROVE_KEY_ID = "approvekeyid"
CLAIM_APPROVE_AMR = "approveamr"

_APPROVE_TYPE_ALIASES = {
    "payout": EntityType.PAYOUT,
    "batchpayout": EntityType.BATCH_PAYOUT,
    "batch_payout": EntityType.BATCH_PAYOUT,
    "payrun": EntityType.PAYRUN,
    "rule": EntityType.RULE,
    "usertoken": EntityType.MERCHANT_TOKEN,
    "merchanttoken": EntityType.MERCHANT_TOKEN,
    "merchant_token": EntityType.MERCHANT_TOKEN,
    "beneficiary": EntityType.BENEFICIARY,
}

_AMR_ALIASES = {
    "none": AuthenticationMethod.NONE,
    "webauthn": AuthenticationMethod.WEBAUTHN,
    "onetimepassword": AuthenticationMethod.ONE_TIME_PASSWORD,
    "one_time_password": AuthenticationMethod.ONE_TIME_PASSWORD,
}

ClaimsBag = Union[Mapping[str, str], Iterable[Tuple[str, str]]]


class ApprovalClaim(BaseModel):
    """Approval claims issued by the identity provider after SCA."""

    model_config = ConfigDict(frozen=True)

    entity_id: UUID
    entity_type: EntityType
    approval_hash: str = Field(..., min_length=1)
    signature: str = Field(..., min_length=1)
    key_id: str = Field(..., min_length=1)
    authentication_method: AuthenticationMethod = AuthenticationMethod.NONE

    @classmethod
    def from_claims(cls, claims: ClaimsBag, config: ClaimsConfig = DEFAULT_CLAIMS_CONFIG) -> "ApprovalClaim":
        """
        Build a claim from a claims bag (a mapping, or (type, value) pairs).

        The first occurrence of each claim type wins.

        Raises:
            ClaimValidationError: If a required claim is missing or malformed
        """
        pairs = claims.items() if isinstance(claims, Mapping) else claims
        values: Dict[str, str] = {}
        for claim_type, value in pairs:
            if claim_type.startswith(config.namespace):
                values.setdefault(claim_type[len(config.namespace):], value)

        approve_type = (values.get(CLAIM_APPROVE_TYPE) or "").strip().lower()
        if approve_type not in _APPROVE_TYPE_ALIASES:
            raise ClaimValidationError(f"Unknown or missing approval type claim: {approve_type or '<missing>'}")

        amr = (values.get(CLAIM_APPROVE_AMR) or "none").strip().lower()

        try:
            return cls(
                entity_id=values.get(CLAIM_APPROVE_ID),
                entity_type=_APPROVE_TYPE_ALIASES[approve_type],
                approval_hash=values.get(CLAIM_APPROVE_HASH) or "",
                signature=values.get(CLAIM_APPROVE_SIGNATURE) or "",
                key_id=values.get(CLAIM_APPROVE_KEY_ID) or "",
                authentication_method=_AMR_ALIASES.get(amr, AuthenticationMethod.NONE),
            )
        except ValidationError as e:
            fields = ", ".join(str(err["loc"][0]) for err in e.errors())
            raise ClaimValidationError(f"Approval claims invalid: {fields}")

    def to_claims(self, config: ClaimsConfig = DEFAULT_CLAIMS_CONFIG) -> Dict[str, str]:
        ns = config.namespace
        return {
            ns + CLAIM_APPROVE_ID: str(self.entity_id),
            ns + CLAIM_APPROVE_TYPE: self.entity_type.value,
            ns + CLAIM_APPROVE_HASH: self.approval_hash,
            ns + CLAIM_APPROVE_SIGNATURE: self.signature,
            ns + CLAIM_APPROVE_KEY_ID: self.key_id,
            ns + CLAIM_APPROVE_AMR: self.authentication_method.value,
        }


class Authorisation(BaseModel):
    """One completed approval. Immutable once recorded."""

    model_config = ConfigDict(frozen=True)

    approver_id: str
    approver_name: Optional[str] = None
    authorised_at: datetime
    approval_hash: str
    authentication_method: AuthenticationMethod = AuthenticationMethod.NONE


class Approver(BaseModel):
    """The user attempting to authorise or edit an entity."""

    user_id: str
    roles: Set[str] = Field(default_factory=set)
    name: Optional[str] = None


class AuthorisationSetting(BaseModel):
    """
    Merchant/account level authorisation rules. Supplied externally; the
    tracker only consumes them.
    """

    authorisation_type: Optional[AuthorisationType] = None
    # Zero means no approval is required: the entity is fully approved as created.
    number_of_authorisers: int = Field(default=1, ge=0)
    creator_cant_authorise: bool = False
    editor_cant_authorise: bool = False
    # Empty means any role may authorise.
    eligible_roles: Set[str] = Field(default_factory=set)
    allowed_authentication_methods: Set[AuthenticationMethod] = Field(
        default_factory=lambda: {AuthenticationMethod.WEBAUTHN, AuthenticationMethod.ONE_TIME_PASSWORD}
    )
    amount_lower: Optional[Decimal] = None
    amount_upper: Optional[Decimal] = None
    update_policy: UpdatePolicy = UpdatePolicy.UNTIL_EXECUTED


class AuthorisationRecord(BaseModel):
    """Persisted approval state for one entity."""

    model_config = ConfigDict(frozen=True)

    entity_id: UUID
    entity_type: EntityType
    # Merchant that owns the entity; callers from any other merchant are refused.
    merchant_id: Optional[str] = None
    created_by: Optional[str] = None
    last_updated_by: Optional[str] = None
    # Hash of the critical fields the authorisations below were given against.
    approval_hash: Optional[str] = None
    authorisations: Tuple[Authorisation, ...] = ()
    executed_at: Optional[datetime] = None
    # Setting resolved when the entity was created or last edited; approval
    # and execution are judged against it.
    setting: Optional[AuthorisationSetting] = None
    version: int = 0


class AuthorisationStatus(BaseModel):
    """Derived view, recomputed on every read."""

    state: ApprovalState
    authorisations: List[Authorisation] = Field(default_factory=list)
    authorisers_required_count: int
    authorisers_completed_count: int
    can_authorise: bool
    can_update: bool
    has_current_user_authorised: bool
    allowed_authentication_methods: List[AuthenticationMethod] = Field(default_factory=list)


class AuthorisationOutcome(BaseModel):
    """Result of a tracker operation: the (possibly unchanged) record plus any rejection."""

    record: AuthorisationRecord
    rejection: Optional[Rejection] = None
    # Same approver authorising the same hash again; nothing was recorded.
    duplicate: bool = False
    # Existing authorisations were cleared because a critical field changed.
    voided: bool = False

    @property
    def accepted(self) -> bool:
        return self.rejection is None
