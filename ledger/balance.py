import threading
from typing import Optional

from sqlalchemy.orm import Session

from .service import LedgerService


class BalanceResolver:
    """Available balance per user, optionally cached until the next ledger write."""

    def __init__(self, ledger: LedgerService, min_withdrawal: int, cache_enabled: bool = True):
        self.ledger = ledger
        self.min_withdrawal = min_withdrawal
        self.cache_enabled = cache_enabled
        self._cache: dict[int, int] = {}
        self._generation = 0
        self._lock = threading.Lock()
        ledger.add_listener(self.invalidate)

    def available_balance(self, user_id: int, session: Optional[Session] = None) -> int:
        # A session means a decision is being made inside a transaction: read
        # that transaction's snapshot, never the cache.
        if session is not None or not self.cache_enabled:
            return self.ledger.balance_of(user_id, session=session)

        with self._lock:
            if user_id in self._cache:
                return self._cache[user_id]
            generation = self._generation

        balance = self.ledger.balance_of(user_id)
        with self._lock:
            # A write landed while we were reading; don't cache a stale sum
            if generation == self._generation:
                self._cache[user_id] = balance
        return balance

    def can_withdraw(self, user_id: int, amount: int, session: Optional[Session] = None) -> bool:
        if amount < self.min_withdrawal:
            return False
        return amount <= self.available_balance(user_id, session=session)

    def invalidate(self, user_id: Optional[int] = None) -> None:
        with self._lock:
            self._generation += 1
            if user_id is None:
                self._cache.clear()
            else:
                self._cache.pop(user_id, None)
