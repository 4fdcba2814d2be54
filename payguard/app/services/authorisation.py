"""
Authorisation state tracker.

Tracks N-of-M human approval of an approvable entity:

    unapproved -> partially_approved -> fully_approved -> executed

Any change to a critical field voids the recorded authorisations (back to
unapproved). The tracker never mutates a record: every accepted state change
returns a new AuthorisationRecord with version + 1, which callers persist
with an optimistic version check so that two concurrent final approvals
cannot both succeed.

AuthorisationStatus is derived from the record, the live entity and the
merchant setting on every call. Authorisations given against a hash that no
longer matches the entity do not count.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional, Sequence

from payguard.app.errors import ApprovalHashError, RejectionReason, reject
from payguard.app.models.approvals import (
    ApprovalClaim,
    ApprovalState,
    Approver,
    Authorisation,
    AuthorisationOutcome,
    AuthorisationRecord,
    AuthorisationSetting,
    AuthorisationStatus,
    AuthorisationType,
    AuthenticationMethod,
    UpdatePolicy,
)
from payguard.app.models.entities import (
    BatchPayout,
    Beneficiary,
    MerchantToken,
    Payout,
    Payrun,
    Rule,
)
from payguard.app.services.approval_hash import compute_approval_hash
from payguard.app.services.claims import ClaimLedger
from payguard.app.services.hashing import hashes_match

logger = logging.getLogger(__name__)


def authorisation_type_for(entity) -> AuthorisationType:
    match entity:
        case Payout() | BatchPayout():
            return AuthorisationType.PAYOUT
        case Payrun():
            return AuthorisationType.PAYRUN
        case Rule():
            return AuthorisationType.RULE
        case MerchantToken():
            return AuthorisationType.MERCHANT_TOKEN
        case Beneficiary():
            return AuthorisationType.BENEFICIARY
    raise ValueError(f"Unsupported approvable entity: {type(entity).__name__}")


def amount_for(entity) -> Optional[Decimal]:
    """Amount used to pick an amount banded setting, if the entity has one."""
    match entity:
        case Payout():
            return entity.amount
        case BatchPayout():
            return sum((p.amount for p in entity.payouts), Decimal("0"))
        case Payrun():
            return entity.total_amount
    return None


def select_setting(
    settings: Sequence[AuthorisationSetting],
    authorisation_type: Optional[AuthorisationType] = None,
    amount: Optional[Decimal] = None,
) -> Optional[AuthorisationSetting]:
    """
    Pick the merchant setting that applies to an entity.

    A setting applies when its type is unset or equal to authorisation_type
    and the amount falls in [amount_lower, amount_upper). Type specific
    settings win over generic ones; among equals the strictest (highest
    number_of_authorisers) wins.

    Returns:
        The applicable setting, or None if no setting applies
    """
    candidates = []
    for setting in settings:
        if setting.authorisation_type is not None and setting.authorisation_type != authorisation_type:
            continue
        if amount is not None:
            if setting.amount_lower is not None and amount < setting.amount_lower:
                continue
            if setting.amount_upper is not None and amount >= setting.amount_upper:
                continue
        candidates.append(setting)

    if not candidates:
        return None
    return max(
        candidates,
        key=lambda s: (s.authorisation_type is not None, s.number_of_authorisers),
    )


def new_record(
    entity,
    created_by: Optional[str] = None,
    merchant_id: Optional[str] = None,
    setting: Optional[AuthorisationSetting] = None,
) -> AuthorisationRecord:
    """Fresh, unapproved record for a newly created entity, owned by merchant_id."""
    return AuthorisationRecord(
        entity_id=entity.id,
        entity_type=entity.entity_type,
        merchant_id=merchant_id,
        created_by=created_by,
        setting=setting,
        approval_hash=_approval_hash_or_none(entity),
    )


def _approval_hash_or_none(entity) -> Optional[str]:
    # Drafts (e.g. a payout with no destination yet) have no approval hash.
    try:
        return compute_approval_hash(entity)
    except ApprovalHashError:
        return None


def _check_record(record: AuthorisationRecord, entity):
    if record.entity_id != entity.id or record.entity_type.value != entity.entity_type:
        raise ValueError(
            f"Authorisation record {record.entity_type.value} {record.entity_id} "
            f"does not belong to {entity.entity_type} {entity.id}"
        )


def _valid_authorisations(record: AuthorisationRecord, current_hash: Optional[str]) -> List[Authorisation]:
    """Authorisations bound to current_hash, first per distinct approver."""
    if not current_hash:
        return []
    seen = set()
    valid = []
    for authorisation in record.authorisations:
        if authorisation.approver_id in seen:
            continue
        if hashes_match(current_hash, authorisation.approval_hash):
            seen.add(authorisation.approver_id)
            valid.append(authorisation)
    return valid


def _derive_state(record: AuthorisationRecord, completed: int, required: int) -> ApprovalState:
    if record.executed_at is not None:
        return ApprovalState.EXECUTED
    if completed >= required:
        return ApprovalState.FULLY_APPROVED
    if completed > 0:
        return ApprovalState.PARTIALLY_APPROVED
    return ApprovalState.UNAPPROVED


def _update_permitted(state: ApprovalState, policy: UpdatePolicy) -> bool:
    match policy:
        case UpdatePolicy.ALWAYS:
            return True
        case UpdatePolicy.UNTIL_EXECUTED:
            return state != ApprovalState.EXECUTED
        case UpdatePolicy.UNTIL_FULLY_APPROVED:
            return state not in (ApprovalState.FULLY_APPROVED, ApprovalState.EXECUTED)
    return False


def ineligibility(
    record: AuthorisationRecord,
    setting: AuthorisationSetting,
    user: Approver,
    authentication_method: Optional[AuthenticationMethod] = None,
) -> Optional[str]:
    """
    Why a user may not authorise, or None if they may.

    The authentication method is only checked when one is given (status
    reads have no claim to check).
    """
    if setting.eligible_roles and not (user.roles & setting.eligible_roles):
        return "Approver does not hold an eligible role."
    if setting.creator_cant_authorise and record.created_by == user.user_id:
        return "The creator cannot authorise this entity."
    if setting.editor_cant_authorise and record.last_updated_by == user.user_id:
        return "The last editor cannot authorise this entity."
    if (
        authentication_method is not None
        and setting.allowed_authentication_methods
        and authentication_method not in setting.allowed_authentication_methods
    ):
        return "Authentication method is not allowed for this entity."
    return None


def status(
    record: AuthorisationRecord,
    entity,
    setting: AuthorisationSetting,
    user: Optional[Approver] = None,
) -> AuthorisationStatus:
    """
    Derive the authorisation status of an entity for a (optional) user.

    Raises:
        ValueError: If the record belongs to a different entity
    """
    _check_record(record, entity)
    valid = _valid_authorisations(record, _approval_hash_or_none(entity))
    state = _derive_state(record, len(valid), setting.number_of_authorisers)

    has_current_user_authorised = user is not None and any(a.approver_id == user.user_id for a in valid)
    can_authorise = (
        user is not None
        and state in (ApprovalState.UNAPPROVED, ApprovalState.PARTIALLY_APPROVED)
        and not has_current_user_authorised
        and ineligibility(record, setting, user) is None
    )

    return AuthorisationStatus(
        state=state,
        authorisations=valid,
        authorisers_required_count=setting.number_of_authorisers,
        authorisers_completed_count=len(valid),
        can_authorise=can_authorise,
        can_update=_update_permitted(state, setting.update_policy),
        has_current_user_authorised=has_current_user_authorised,
        allowed_authentication_methods=sorted(setting.allowed_authentication_methods, key=lambda m: m.value),
    )


def _rejected(record: AuthorisationRecord, reason: RejectionReason, message: Optional[str] = None) -> AuthorisationOutcome:
    logger.warning(
        "Rejected %s %s: %s", record.entity_type.value, record.entity_id, reason.value
    )
    return AuthorisationOutcome(record=record, rejection=reject(reason, message))


def authorise(
    record: AuthorisationRecord,
    entity,
    setting: AuthorisationSetting,
    user: Approver,
    claim: ApprovalClaim,
    ledger: ClaimLedger,
    now: Optional[datetime] = None,
) -> AuthorisationOutcome:
    """
    Record one approval of the entity's current critical fields.

    Checks run in a fixed order and the first failure is returned:
    claim_entity_mismatch, approval_hash_mismatch, already_executed,
    already_fully_approved, ineligible_approver, replayed_approval_claim.
    An approver who already authorised the current hash gets an accepted,
    duplicate outcome and nothing is recorded. The claim is only consumed
    once every other check has passed.

    Args:
        record: Current persisted record of the entity
        entity: Live approvable entity
        setting: Applicable merchant authorisation setting
        user: Authenticated approver
        claim: Approval claim returned by the identity provider
        ledger: Claim ledger used for replay protection
        now: Authorisation timestamp, defaults to the current UTC time

    Returns:
        AuthorisationOutcome with the new record (version + 1) when recorded

    Raises:
        ValueError: If the record belongs to a different entity
        ApprovalHashError: If the entity cannot produce an approval hash
    """
    _check_record(record, entity)

    if claim.entity_id != entity.id or claim.entity_type.value != entity.entity_type:
        return _rejected(record, RejectionReason.CLAIM_ENTITY_MISMATCH, "Approval claim is for a different entity.")

    current_hash = compute_approval_hash(entity)
    if not hashes_match(current_hash, claim.approval_hash):
        return _rejected(
            record,
            RejectionReason.APPROVAL_HASH_MISMATCH,
            "Entity changed since approval was requested; approval must be requested again.",
        )

    if record.executed_at is not None:
        return _rejected(record, RejectionReason.ALREADY_EXECUTED)

    valid = _valid_authorisations(record, current_hash)
    if any(a.approver_id == user.user_id for a in valid):
        logger.info("Duplicate authorisation of %s %s ignored", record.entity_type.value, record.entity_id)
        return AuthorisationOutcome(record=record, duplicate=True)

    if len(valid) >= setting.number_of_authorisers:
        return _rejected(record, RejectionReason.ALREADY_FULLY_APPROVED)

    reason = ineligibility(record, setting, user, claim.authentication_method)
    if reason:
        return _rejected(record, RejectionReason.INELIGIBLE_APPROVER, reason)

    if not ledger.consume(claim):
        return _rejected(record, RejectionReason.REPLAYED_APPROVAL_CLAIM, "Approval claim has already been used.")

    authorisation = Authorisation(
        approver_id=user.user_id,
        approver_name=user.name,
        authorised_at=now or datetime.now(timezone.utc),
        approval_hash=current_hash,
        authentication_method=claim.authentication_method,
    )
    updated = record.model_copy(
        update={
            "approval_hash": current_hash,
            "authorisations": tuple(valid) + (authorisation,),
            "version": record.version + 1,
        }
    )
    logger.info(
        "Authorisation %d/%d recorded for %s %s",
        len(updated.authorisations),
        setting.number_of_authorisers,
        record.entity_type.value,
        record.entity_id,
    )
    return AuthorisationOutcome(record=updated)


def update(
    record: AuthorisationRecord,
    entity,
    setting: AuthorisationSetting,
    editor: Approver,
) -> AuthorisationOutcome:
    """
    Record an edit of the entity.

    `entity` is the entity after the edit. When its approval hash differs
    from the one the record was bound to, all authorisations are voided and
    an executed record is reopened, and `setting` is pinned to the record
    for the new approval round. Edits that leave the hash unchanged keep the
    pinned setting. Refused with update_not_permitted when the update policy
    of the pinned setting (or of `setting`, with none pinned) does not allow
    edits in the current state.
    """
    _check_record(record, entity)

    current_setting = record.setting or setting
    previous = _valid_authorisations(record, record.approval_hash)
    state = _derive_state(record, len(previous), current_setting.number_of_authorisers)
    if not _update_permitted(state, current_setting.update_policy):
        return _rejected(
            record,
            RejectionReason.UPDATE_NOT_PERMITTED,
            f"Entity cannot be updated while {state.value}.",
        )

    new_hash = _approval_hash_or_none(entity)
    unchanged = bool(record.approval_hash and new_hash and hashes_match(record.approval_hash, new_hash))

    changes = {"last_updated_by": editor.user_id, "version": record.version + 1}
    if record.setting is None:
        changes["setting"] = setting
    voided = False
    if not unchanged:
        voided = bool(record.authorisations) or record.executed_at is not None
        changes.update(
            {"approval_hash": new_hash, "authorisations": (), "executed_at": None, "setting": setting}
        )
        if voided:
            logger.info("Critical fields of %s %s changed; authorisations voided", record.entity_type.value, record.entity_id)

    return AuthorisationOutcome(record=record.model_copy(update=changes), voided=voided)


def execute(
    record: AuthorisationRecord,
    entity,
    setting: AuthorisationSetting,
    now: Optional[datetime] = None,
) -> AuthorisationOutcome:
    """
    Gate execution of the action on a full, still valid approval.

    Rejects already_executed, approval_hash_mismatch (entity changed after
    approval) and insufficient_approvers, in that order. On success the
    record is stamped with executed_at.
    """
    _check_record(record, entity)

    if record.executed_at is not None:
        return _rejected(record, RejectionReason.ALREADY_EXECUTED)

    current_hash = compute_approval_hash(entity)
    if record.approval_hash and not hashes_match(record.approval_hash, current_hash):
        return _rejected(
            record,
            RejectionReason.APPROVAL_HASH_MISMATCH,
            "Entity changed since it was approved; approval must be requested again.",
        )

    completed = len(_valid_authorisations(record, current_hash))
    if completed < setting.number_of_authorisers:
        return _rejected(
            record,
            RejectionReason.INSUFFICIENT_APPROVERS,
            f"{completed} of {setting.number_of_authorisers} required authorisations.",
        )

    updated = record.model_copy(
        update={"executed_at": now or datetime.now(timezone.utc), "version": record.version + 1}
    )
    logger.info("Executed %s %s", record.entity_type.value, record.entity_id)
    return AuthorisationOutcome(record=updated)
