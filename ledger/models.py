from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator


class EntryKind(str, Enum):
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"


class EntryReason(str, Enum):
    CONTRIBUTION_RECEIVED = "CONTRIBUTION_RECEIVED"
    PAYOUT_REQUESTED = "PAYOUT_REQUESTED"
    PAYOUT_CANCELLED = "PAYOUT_CANCELLED"
    PAYOUT_FAILED = "PAYOUT_FAILED"
    ADJUSTMENT_MANUAL = "ADJUSTMENT_MANUAL"


class AccountType(str, Enum):
    CHECKING = "checking"
    SAVINGS = "savings"
    VISTA = "vista"


def rut_is_valid(rut: str) -> bool:
    """Check a Chilean RUT against its modulo-11 verifier digit."""
    rut = rut.replace(".", "").replace("-", "").strip().upper()
    if len(rut) < 8 or not rut[:-1].isdigit():
        return False

    body, dv = rut[:-1], rut[-1]
    total = 0
    multiplier = 2
    for digit in reversed(body):
        total += int(digit) * multiplier
        multiplier = 2 if multiplier == 7 else multiplier + 1

    expected = 11 - (total % 11)
    if expected == 11:
        expected_dv = "0"
    elif expected == 10:
        expected_dv = "K"
    else:
        expected_dv = str(expected)
    return dv == expected_dv


class BankAccount(BaseModel):
    holder_name: str = Field(..., min_length=1, max_length=100)
    rut: str
    bank_name: str = Field(..., min_length=1, max_length=100)
    account_type: AccountType = AccountType.CHECKING
    account_number: str = Field(..., min_length=4, max_length=30, pattern=r"^\d+$")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "holder_name": "Camila Rojas",
            "rut": "12.345.678-5",
            "bank_name": "Banco Estado",
            "account_type": "vista",
            "account_number": "000123456789",
        }
    })

    @field_validator("rut")
    @classmethod
    def validate_rut(cls, rut: str) -> str:
        if not rut_is_valid(rut):
            raise ValueError("Invalid RUT")
        return rut.upper()


class LedgerEntry(BaseModel):
    id: int
    user_id: int
    kind: EntryKind
    amount: int
    reason: EntryReason
    payout_id: Optional[int] = Field(
        default=None, description="Payout this entry reserves or returns funds for"
    )
    metadata: dict = Field(default_factory=dict)
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class UserBalance(BaseModel):
    user_id: int
    currency: str
    current_balance: int
    total_entries: int
    last_transaction_at: Optional[datetime] = None


class LedgerHistoryResponse(BaseModel):
    user_id: int
    entries: list[LedgerEntry]
    next_before_id: Optional[int] = None
    current_balance: int


class RecordContributionRequest(BaseModel):
    list_id: int
    order_id: str = Field(..., min_length=1, description="Commerce order id; one credit per order")
    gross_amount: int = Field(..., gt=0)
    platform_fee_rate: Optional[Decimal] = Field(default=None, ge=0, lt=1)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "list_id": 42,
            "order_id": "wc-10231",
            "gross_amount": 25000,
        }
    })


class ContributionBreakdown(BaseModel):
    host_amount: int
    platform_fee: int
    total_paid: int
    fee_rate: Decimal


class ManualAdjustmentRequest(BaseModel):
    user_id: int
    kind: EntryKind
    amount: int = Field(..., gt=0)
    note: str = Field(..., min_length=1, description="Why the correction was needed")
    performed_by: Optional[str] = None


class AssignListOwnerRequest(BaseModel):
    user_id: int
