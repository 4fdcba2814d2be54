"""
Approval endpoints.

Approval hash computation and the authorisation state tracker exposed to
the resource server. The caller's identity (approver or editor) and merchant
come from the JWT. Authorisation settings are resolved from the merchant
settings registry and pinned to the entity's record, which is owned by the
merchant that first touched it. Records are persisted with an optimistic
version check.
"""

import logging
import os
import uuid
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request, status
from slowapi import Limiter
from slowapi.util import get_remote_address

from payguard.app.config import get_settings
from payguard.app.errors import ClaimValidationError
from payguard.app.models.approvals import ApprovalClaim, AuthorisationRecord, AuthorisationSetting
from payguard.app.models.entities import EntityType
from payguard.app.models.requests import ApprovalHashRequest, ApprovalRequest, AuthoriseRequest
from payguard.app.routes.rejections import error_exception, rejection_exception
from payguard.app.security.auth import Identity, get_current_identity
from payguard.app.services import authorisation
from payguard.app.services.approval_hash import CRITICAL_FIELDS, compute_approval_hash
from payguard.app.services.claims import SqliteClaimLedger
from payguard.app.services.settings_registry import get_settings_registry
from payguard.app.services.storage import get_record, save_record

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/approvals", tags=["approvals"])


def get_approvals_limiter():
    """Create rate limiter that respects test mode environment variables."""
    disable_limits = (
        os.environ.get("ENV") == "TEST" or os.environ.get("DISABLE_RATE_LIMITS") == "1"
    )

    if disable_limits:
        return Limiter(key_func=lambda: str(uuid.uuid4()), enabled=False)
    else:
        return Limiter(key_func=get_remote_address)


limiter = get_approvals_limiter()


def _check_merchant(entity, identity: Identity):
    merchant_id = getattr(entity, "merchant_id", None)
    if merchant_id is not None and str(merchant_id) != identity.merchant_id:
        # Same response as an unknown entity: do not confirm it exists.
        raise error_exception(status.HTTP_404_NOT_FOUND, "not_found", "Entity not found")


def _resolve_setting(entity, identity: Identity) -> AuthorisationSetting:
    return get_settings_registry().resolve(identity.merchant_id, entity)


def _load_record(entity, identity: Identity, created_by=None) -> AuthorisationRecord:
    """
    Stored record of the entity, or a new one owned by the caller's merchant
    with the merchant's current setting pinned.
    """
    record = get_record(entity.id)
    if record is None:
        return authorisation.new_record(
            entity,
            created_by=created_by,
            merchant_id=identity.merchant_id,
            setting=_resolve_setting(entity, identity),
        )
    if record.entity_type.value != entity.entity_type or record.merchant_id != identity.merchant_id:
        raise error_exception(status.HTTP_404_NOT_FOUND, "not_found", "Entity not found")
    return record


def _pinned_setting(record: AuthorisationRecord, entity, identity: Identity) -> AuthorisationSetting:
    return record.setting or _resolve_setting(entity, identity)


def _status_response(record: AuthorisationRecord, entity, setting: AuthorisationSetting, identity: Identity) -> Dict[str, Any]:
    current = authorisation.status(record, entity, setting, identity.to_approver())
    return {
        "entity_id": str(record.entity_id),
        "entity_type": record.entity_type.value,
        "version": record.version,
        "status": current.model_dump(mode="json"),
    }


@router.post("/hash")
@limiter.limit("100/minute")
async def approval_hash(
    request: Request,  # Required for rate limiting
    req_body: ApprovalHashRequest,
    identity: Identity = Depends(get_current_identity),
) -> Dict[str, Any]:
    """
    Compute the approval hash of an entity's current critical fields.

    The hash is embedded in the approval request sent to the identity
    provider and compared again at execution time.
    """
    entity = req_body.entity
    _check_merchant(entity, identity)
    return {
        "entity_id": str(entity.id),
        "entity_type": entity.entity_type,
        "approval_hash": compute_approval_hash(entity),
        "critical_fields": list(CRITICAL_FIELDS[EntityType(entity.entity_type)]) + ["nonce"],
    }


@router.post("/status")
@limiter.limit("100/minute")
async def approval_status(
    request: Request,  # Required for rate limiting
    req_body: ApprovalRequest,
    identity: Identity = Depends(get_current_identity),
) -> Dict[str, Any]:
    """Authorisation status of an entity for the calling user, derived on every read."""
    entity = req_body.entity
    _check_merchant(entity, identity)
    record = _load_record(entity, identity)
    return _status_response(record, entity, _pinned_setting(record, entity, identity), identity)


@router.post("/update")
@limiter.limit("30/minute")
async def approval_update(
    request: Request,  # Required for rate limiting
    req_body: ApprovalRequest,
    identity: Identity = Depends(get_current_identity),
) -> Dict[str, Any]:
    """
    Record an edit of an entity (the body carries the entity after the edit).

    The first update of an entity with no record registers the caller as
    its creator. A change to a critical field voids existing authorisations.
    """
    entity = req_body.entity
    _check_merchant(entity, identity)

    record = _load_record(entity, identity, created_by=identity.sub)
    # Pinned to the record only when the edit starts a new approval round.
    setting = _resolve_setting(entity, identity)
    outcome = authorisation.update(record, entity, setting, identity.to_approver())
    if not outcome.accepted:
        raise rejection_exception(outcome.rejection)

    save_record(outcome.record)
    response = _status_response(outcome.record, entity, outcome.record.setting, identity)
    response["voided"] = outcome.voided
    return response


@router.post("/authorise")
@limiter.limit("30/minute")
async def approval_authorise(
    request: Request,  # Required for rate limiting
    req_body: AuthoriseRequest,
    identity: Identity = Depends(get_current_identity),
) -> Dict[str, Any]:
    """
    Record an approval using the claims returned by the identity provider
    after strong customer authentication.

    Rejections map to 403 (eligibility, claim for another entity) and 409
    (hash mismatch, replayed claim, entity state).
    """
    entity = req_body.entity
    _check_merchant(entity, identity)

    try:
        claim = ApprovalClaim.from_claims(req_body.claims, get_settings().claims)
    except ClaimValidationError as e:
        raise error_exception(status.HTTP_400_BAD_REQUEST, "invalid_claims", str(e))

    record = _load_record(entity, identity)
    setting = _pinned_setting(record, entity, identity)
    outcome = authorisation.authorise(
        record, entity, setting, identity.to_approver(), claim, SqliteClaimLedger()
    )
    if not outcome.accepted:
        raise rejection_exception(outcome.rejection)

    if not outcome.duplicate:
        save_record(outcome.record)

    response = _status_response(outcome.record, entity, setting, identity)
    response["duplicate"] = outcome.duplicate
    return response


@router.post("/execute")
@limiter.limit("30/minute")
async def approval_execute(
    request: Request,  # Required for rate limiting
    req_body: ApprovalRequest,
    identity: Identity = Depends(get_current_identity),
) -> Dict[str, Any]:
    """
    Gate execution of the approved action.

    Succeeds only if the entity is fully approved and its critical fields
    still hash to the approved value.
    """
    entity = req_body.entity
    _check_merchant(entity, identity)

    record = _load_record(entity, identity)
    setting = _pinned_setting(record, entity, identity)
    outcome = authorisation.execute(record, entity, setting)
    if not outcome.accepted:
        raise rejection_exception(outcome.rejection)

    save_record(outcome.record)
    logger.info("Execution of %s %s approved by gate", entity.entity_type, entity.id)
    return {
        "entity_id": str(entity.id),
        "entity_type": entity.entity_type,
        "executed_at": outcome.record.executed_at.isoformat(),
        "version": outcome.record.version,
    }
