"""
Contribution Ledger for Gift Registries

This module provides:
- Immutable, append-only ledger entries per user
- Balance derivation (credits minus debits) with an optional cache
- Idempotent contribution recording, one credit per commerce order
- Outbound events for the notification collaborator
"""

from .models import (
    EntryKind,
    EntryReason,
    BankAccount,
    LedgerEntry,
    UserBalance,
)
from .service import LedgerService
from .balance import BalanceResolver
from .contributions import ContributionRecorder
from .events import EventBus

__all__ = [
    "EntryKind",
    "EntryReason",
    "BankAccount",
    "LedgerEntry",
    "UserBalance",
    "LedgerService",
    "BalanceResolver",
    "ContributionRecorder",
    "EventBus",
]
