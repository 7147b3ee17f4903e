from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict

from ledger.models import BankAccount


class PayoutStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class Payout(BaseModel):
    id: int
    user_id: int
    amount: int
    fee: int
    net_amount: int
    status: PayoutStatus
    destination_account: BankAccount
    gateway_transaction_id: Optional[str] = None
    attempts: int = 0
    last_error: Optional[str] = None
    failure_reason: Optional[str] = None
    manual_review_required: bool = False
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def idempotency_key(self) -> str:
        """
        Key sent with every gateway call for this payout.

        ``payout-<id>``: the payout id is the key, prefixed so the provider
        can tell it apart from other references on the same account. Every
        retry and reconciliation call reuses it.
        """
        return f"payout-{self.id}"


class CreatePayoutRequest(BaseModel):
    user_id: int
    amount: int = Field(..., gt=0, description="Gross amount to withdraw, in minor units")

    # Payouts always go to the registered account; a destination in the body is refused
    model_config = ConfigDict(extra="forbid", json_schema_extra={
        "example": {"user_id": 7, "amount": 10000}
    })


class CreatePayoutResponse(BaseModel):
    payout: Payout
    message: str


class SettlementOutcome(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


class SettlementNotification(BaseModel):
    """Asynchronous result pushed by the gateway for a transfer."""
    outcome: SettlementOutcome
    transaction_id: Optional[str] = None
    reason: Optional[str] = None


class BatchSummary(BaseModel):
    processed: int = 0
    completed: int = 0
    failed: int = 0
    awaiting_gateway: int = 0
    errors: dict[int, str] = Field(default_factory=dict)


class ReconcileSummary(BaseModel):
    checked: int = 0
    completed: int = 0
    failed: int = 0
    retried: int = 0
    escalated: int = 0
    unresolved: int = 0


class PayoutStatistics(BaseModel):
    total_payouts: int
    total_amount: int
    total_fees: int
    completed_count: int
    completed_amount: int
