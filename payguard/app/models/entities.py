"""
Approvable entity models.

Each approvable kind is a pydantic model tagged by an `entity_type` literal,
and ApprovableEntity is the discriminated union over all of them. Only a
subset of each model's fields is critical (see
payguard.app.services.approval_hash.CRITICAL_FIELDS); the rest can change
after approval without voiding it.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, Field


class EntityType(str, Enum):
    PAYOUT = "payout"
    BATCH_PAYOUT = "batch_payout"
    PAYRUN = "payrun"
    RULE = "rule"
    MERCHANT_TOKEN = "merchant_token"
    BENEFICIARY = "beneficiary"


class CurrencyType(str, Enum):
    GBP = "GBP"
    EUR = "EUR"
    BTC = "BTC"


FIAT_ROUNDING_DECIMAL_PLACES = 2
BITCOIN_ROUNDING_DECIMAL_PLACES = 8


def currency_decimal_places(currency: CurrencyType) -> int:
    if currency == CurrencyType.BTC:
        return BITCOIN_ROUNDING_DECIMAL_PLACES
    return FIAT_ROUNDING_DECIMAL_PLACES


class AccountIdentifierType(str, Enum):
    SCAN = "SCAN"
    IBAN = "IBAN"
    DD = "DD"
    INTL = "INTL"


class AccountIdentifier(BaseModel):
    type: Optional[AccountIdentifierType] = None
    iban: Optional[str] = None
    account_number: Optional[str] = None
    sort_code: Optional[str] = None
    bic: Optional[str] = None
    currency: Optional[CurrencyType] = None

    @property
    def summary(self) -> str:
        if self.type == AccountIdentifierType.IBAN:
            return f"IBAN: {self.iban or ''}"
        if self.type == AccountIdentifierType.SCAN:
            return f"SortCode: {self.sort_code or ''}, AccountNumber: {self.account_number or ''}"
        return f"{self.type.value if self.type else 'Unknown'}: {self.iban or self.account_number or ''}"


class Counterparty(BaseModel):
    account_id: Optional[UUID] = None
    name: Optional[str] = None
    email_address: Optional[str] = None
    phone_number: Optional[str] = None
    identifier: Optional[AccountIdentifier] = None

    @property
    def summary(self) -> str:
        return (self.name or "") + (", " + self.identifier.summary if self.identifier else "")


class SweepDestination(Counterparty):
    """A sweep target: a percentage of the balance, or a fixed amount if no percentage is set."""

    sweep_percentage: Decimal = Decimal("0")
    sweep_amount: Decimal = Decimal("0")


class SweepAction(BaseModel):
    priority: int = 0
    destinations: List[SweepDestination] = Field(default_factory=list)
    amount_to_leave: Decimal = Decimal("0")


class MerchantTokenPermission(str, Enum):
    CREATE_PAYMENT_REQUEST = "CreatePaymentRequest"
    EDIT_PAYMENT_REQUEST = "EditPaymentRequest"
    DELETE_PAYMENT_REQUEST = "DeletePaymentRequest"
    CREATE_RULE = "CreateRule"
    EDIT_RULE = "EditRule"
    DELETE_RULE = "DeleteRule"
    CREATE_PAYOUT = "CreatePayout"
    EDIT_PAYOUT = "EditPayout"
    DELETE_PAYOUT = "DeletePayout"


class Payout(BaseModel):
    entity_type: Literal["payout"] = "payout"
    id: UUID
    account_id: UUID
    merchant_id: Optional[UUID] = None
    currency: CurrencyType
    amount: Decimal
    destination: Optional[Counterparty] = None
    scheduled: bool = False
    schedule_date: Optional[datetime] = None
    nonce: Optional[str] = None
    description: Optional[str] = None
    your_reference: Optional[str] = None
    their_reference: Optional[str] = None
    tags: List[str] = Field(default_factory=list)


class BatchPayout(BaseModel):
    entity_type: Literal["batch_payout"] = "batch_payout"
    id: UUID
    payouts: List[Payout] = Field(default_factory=list)
    nonce: Optional[str] = None


class Payrun(BaseModel):
    entity_type: Literal["payrun"] = "payrun"
    id: UUID
    merchant_id: UUID
    name: Optional[str] = None
    schedule_date: Optional[datetime] = None
    total_amount: Decimal = Decimal("0")
    nonce: Optional[str] = None


class Rule(BaseModel):
    """A fund sweep rule."""

    entity_type: Literal["rule"] = "rule"
    id: UUID
    account_id: UUID
    name: str = ""
    description: Optional[str] = None
    is_disabled: bool = False
    trigger_on_pay_in: bool = False
    trigger_on_pay_out: bool = False
    trigger_cron_expression: str = ""
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    sweep_action: SweepAction = Field(default_factory=SweepAction)
    on_executed_webhook_url: Optional[str] = None
    nonce: Optional[str] = None


class MerchantToken(BaseModel):
    entity_type: Literal["merchant_token"] = "merchant_token"
    id: UUID
    merchant_id: UUID
    description: str = ""
    permissions: List[MerchantTokenPermission] = Field(default_factory=list)
    is_enabled: bool = False
    expires_at: Optional[datetime] = None
    nonce: Optional[str] = None


class Beneficiary(BaseModel):
    entity_type: Literal["beneficiary"] = "beneficiary"
    id: UUID
    merchant_id: UUID
    name: str
    your_reference: str = ""
    their_reference: str = ""
    destination_account_name: str = ""
    currency: CurrencyType
    identifier: Optional[AccountIdentifier] = None
    nonce: Optional[str] = None


ApprovableEntity = Annotated[
    Union[Payout, BatchPayout, Payrun, Rule, MerchantToken, Beneficiary],
    Field(discriminator="entity_type"),
]
