import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Optional

from .errors import DuplicateEntryError, UnknownListError, ValidationError
from .events import ContributionReceived, EventBus
from .models import ContributionBreakdown, EntryKind, EntryReason, LedgerEntry
from .service import LedgerService

logger = logging.getLogger(__name__)

OwnerLookup = Callable[[int], Optional[int]]


def apply_rate(amount: int, rate: Decimal) -> int:
    """``amount * rate`` rounded half-up to a whole minor unit."""
    return int((Decimal(amount) * Decimal(rate)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class ContributionRecorder:
    """
    Turns a settled gift purchase into a credit for the list owner.

    The guest pays the gift price plus the platform's service fee. The full
    gift price is credited to the owner; the fee is operator revenue and is
    only noted on the entry for accounting.
    """

    def __init__(
        self,
        ledger: LedgerService,
        owner_lookup: OwnerLookup,
        events: EventBus,
        default_fee_rate: Decimal = Decimal("0.10"),
    ):
        self.ledger = ledger
        self.owner_lookup = owner_lookup
        self.events = events
        self.default_fee_rate = Decimal(default_fee_rate)

    def breakdown(self, gross_amount: int, platform_fee_rate: Optional[Decimal] = None) -> ContributionBreakdown:
        rate = self.default_fee_rate if platform_fee_rate is None else Decimal(platform_fee_rate)
        if not Decimal(0) <= rate < Decimal(1):
            raise ValidationError(f"Platform fee rate must be in [0, 1), got {rate}")
        platform_fee = apply_rate(gross_amount, rate)
        return ContributionBreakdown(
            host_amount=gross_amount,
            platform_fee=platform_fee,
            total_paid=gross_amount + platform_fee,
            fee_rate=rate,
        )

    def record_contribution(
        self,
        list_id: int,
        order_id: str,
        gross_amount: int,
        platform_fee_rate: Optional[Decimal] = None,
    ) -> LedgerEntry:
        order_id = str(order_id)
        existing = self.ledger.find_contribution(order_id)
        if existing:
            logger.info("Order %s already recorded as entry %s", order_id, existing.id)
            return existing

        owner_id = self.owner_lookup(list_id)
        if owner_id is None:
            raise UnknownListError(f"Registry list {list_id} has no known owner")

        split = self.breakdown(gross_amount, platform_fee_rate)
        try:
            entry = self.ledger.record(
                owner_id,
                EntryKind.CREDIT,
                split.host_amount,
                EntryReason.CONTRIBUTION_RECEIVED,
                metadata={
                    "order_id": order_id,
                    "list_id": list_id,
                    "gross_amount": gross_amount,
                    "platform_fee": split.platform_fee,
                    "platform_fee_rate": str(split.fee_rate),
                },
            )
        except DuplicateEntryError:
            # Lost a race with another delivery of the same order
            existing = self.ledger.find_contribution(order_id)
            if existing is None:
                raise
            return existing

        self.events.publish(ContributionReceived(
            contribution_id=entry.id,
            list_id=list_id,
            amount=entry.amount,
        ))
        return entry
