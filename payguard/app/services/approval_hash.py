"""
Approval hash engine.

An approval hash is a SHA-256 digest over an entity's critical fields,
concatenated in a fixed per-type order, with the optional approval nonce
appended last. It is computed when approval is requested (and embedded in
the claim sent to the identity provider) and again at execution time from
the live entity. Execution is only allowed when the two are equal.

The critical field set of each entity type IS the security boundary: fields
outside it can change after approval without voiding the approval. Any
change to CRITICAL_FIELDS or to the rendering rules below changes every
outstanding hash and must be reviewed as a security decision.

Canonical rendering:
- no delimiters between fields
- decimals quantized with banker's rounding (2 places for sweep values,
  the currency's minor units for payout amounts)
- datetimes as ISO-8601 in UTC, naive values taken as UTC
- booleans as 'true' / 'false'
- absent values as the empty string
- nested counterparties and sweep destinations contribute their own hash
"""

import logging
from datetime import datetime, timezone
from decimal import ROUND_HALF_EVEN, Decimal
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple
from uuid import UUID

from payguard.app.errors import ApprovalHashError
from payguard.app.models.entities import (
    AccountIdentifier,
    BatchPayout,
    Beneficiary,
    Counterparty,
    EntityType,
    MerchantToken,
    Payout,
    Payrun,
    Rule,
    SweepAction,
    SweepDestination,
    currency_decimal_places,
)
from payguard.app.services.hashing import create_hash, hashes_match

logger = logging.getLogger(__name__)

SWEEP_DECIMAL_PLACES = 2

# Ordered critical fields per entity type. Every type additionally binds the
# entity's optional approval nonce, appended after these fields.
CRITICAL_FIELDS: Dict[EntityType, Tuple[str, ...]] = {
    EntityType.PAYOUT: (
        "id",
        "account_id",
        "currency",
        "amount",
        "destination",
        "scheduled",
        "schedule_date",
    ),
    EntityType.BATCH_PAYOUT: ("payouts",),
    EntityType.PAYRUN: ("id", "merchant_id", "name", "schedule_date"),
    # Destinations only: action priority and amount_to_leave are not critical.
    EntityType.RULE: ("id", "sweep_action.destinations"),
    EntityType.MERCHANT_TOKEN: ("description", "merchant_id", "permissions"),
    EntityType.BENEFICIARY: (
        "id",
        "merchant_id",
        "name",
        "destination_account_name",
        "currency",
        "identifier",
    ),
}


def render(value) -> str:
    """Render a scalar critical field value in its canonical string form."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    if isinstance(value, Decimal):
        return format(value, "f")
    if isinstance(value, UUID):
        return str(value)
    return str(value)


def round_decimal(value, places: int) -> str:
    """Fixed precision rendering, e.g. round_decimal(Decimal('33.335'), 2) == '33.34'."""
    quantum = Decimal(1).scaleb(-places)
    return format(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_EVEN), "f")


def _identifier_input(identifier: Optional[AccountIdentifier]) -> str:
    if identifier is None:
        return ""
    return (
        render(identifier.type)
        + render(identifier.iban)
        + render(identifier.account_number)
        + render(identifier.sort_code)
        + render(identifier.bic)
    )


def counterparty_approval_hash(counterparty: Counterparty) -> str:
    """Hash of the fields that identify where money goes."""
    canonical = (
        render(counterparty.account_id)
        + render(counterparty.name)
        + _identifier_input(counterparty.identifier)
    )
    if not canonical:
        raise ApprovalHashError("Counterparty has no identifying details.")
    return create_hash(canonical)


def sweep_destination_approval_hash(destination: SweepDestination) -> str:
    canonical = (
        round_decimal(destination.sweep_percentage, SWEEP_DECIMAL_PLACES)
        + round_decimal(destination.sweep_amount, SWEEP_DECIMAL_PLACES)
        + counterparty_approval_hash(destination)
    )
    return create_hash(canonical)


def destinations_approval_input(action: SweepAction) -> str:
    """Concatenated destination hashes, in destination order."""
    return "".join(sweep_destination_approval_hash(d) for d in action.destinations)


def critical_values(entity) -> List[str]:
    """
    Canonical strings of an entity's critical fields, ordered as in
    CRITICAL_FIELDS for its type. The nonce is not included.
    """
    match entity:
        case Payout():
            if entity.destination is None:
                raise ApprovalHashError(f"Payout {entity.id} has no destination and cannot be approved.")
            return [
                render(entity.id),
                render(entity.account_id),
                render(entity.currency),
                round_decimal(entity.amount, currency_decimal_places(entity.currency)),
                counterparty_approval_hash(entity.destination),
                render(entity.scheduled),
                render(entity.schedule_date),
            ]
        case BatchPayout():
            if not entity.payouts:
                raise ApprovalHashError(f"Batch payout {entity.id} has no payouts and cannot be approved.")
            return ["".join(compute_approval_hash(p) for p in entity.payouts)]
        case Payrun():
            return [
                render(entity.id),
                render(entity.merchant_id),
                render(entity.name),
                render(entity.schedule_date),
            ]
        case Rule():
            return [render(entity.id), destinations_approval_input(entity.sweep_action)]
        case MerchantToken():
            permissions = ",".join(sorted({render(p) for p in entity.permissions}))
            return [render(entity.description), render(entity.merchant_id), permissions]
        case Beneficiary():
            return [
                render(entity.id),
                render(entity.merchant_id),
                render(entity.name),
                render(entity.destination_account_name),
                render(entity.currency),
                _identifier_input(entity.identifier),
            ]
        case _:
            raise ApprovalHashError(f"Unsupported approvable entity: {type(entity).__name__}")


def compute_critical_hash(entity_type, values: Sequence[str], nonce: Optional[str] = None) -> str:
    """
    Hash already rendered critical field values for an entity type.

    Args:
        entity_type: EntityType (or its value) the values belong to
        values: Rendered values, one per CRITICAL_FIELDS[entity_type] entry
        nonce: Optional nonce bound to this approval attempt

    Raises:
        ApprovalHashError: If the value count does not match the type's field list
    """
    entity_type = EntityType(entity_type)
    expected = len(CRITICAL_FIELDS[entity_type])
    if len(values) != expected:
        raise ApprovalHashError(
            f"{entity_type.value} approval hash needs {expected} critical values, got {len(values)}."
        )
    return create_hash("".join(values) + (nonce or ""))


def compute_approval_hash(entity) -> str:
    """Compute the approval hash of an approvable entity from its current state."""
    return compute_critical_hash(entity.entity_type, critical_values(entity), entity.nonce)


def approval_hash_matches(entity, claimed_hash: Optional[str]) -> bool:
    """
    Recompute the hash from live entity state and compare with a claimed hash.

    A False result means the entity changed after approval was granted.
    """
    matches = hashes_match(compute_approval_hash(entity), claimed_hash or "")
    if not matches:
        logger.warning(
            "Approval hash mismatch for %s %s", entity.entity_type, entity.id
        )
    return matches
