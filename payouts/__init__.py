"""
Payout Settlement

Withdrawal requests move through pending -> processing -> completed, with
cancellation from pending and failure from processing. Funds are reserved
in the ledger when a payout is requested and returned if it is cancelled
or fails.
"""

from .models import PayoutStatus, Payout
from .gateway import PaymentGateway, HttpPaymentGateway, Approved, Rejected
from .manager import PayoutManager

__all__ = [
    "PayoutStatus",
    "Payout",
    "PaymentGateway",
    "HttpPaymentGateway",
    "Approved",
    "Rejected",
    "PayoutManager",
]
