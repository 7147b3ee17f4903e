"""
Unit Tests for the Ledger Service

Tests cover:
1. Recording credits and debits
2. Immutability of written entries
3. Balance calculation
4. Cursor-paginated history
5. Manual adjustments
"""

import threading
from decimal import Decimal

import pytest

from ledger.errors import InvalidAmountError, StorageError, ValidationError
from ledger.models import EntryKind, EntryReason
from ledger.store import LedgerEntryRow

from conftest import OWNER_ID, OTHER_USER_ID


class TestRecord:
    """Tests for appending entries."""

    def test_record_credit(self, services):
        """A credit is stored with its reason and metadata."""
        entry = services.ledger.record(
            OWNER_ID, EntryKind.CREDIT, 25000, EntryReason.ADJUSTMENT_MANUAL,
            metadata={"note": "opening balance"},
        )

        assert entry.id > 0
        assert entry.user_id == OWNER_ID
        assert entry.kind == EntryKind.CREDIT
        assert entry.amount == 25000
        assert entry.reason == EntryReason.ADJUSTMENT_MANUAL
        assert entry.metadata == {"note": "opening balance"}
        assert entry.payout_id is None

    def test_ids_follow_insertion_order(self, services, fund):
        first = fund(OWNER_ID, 100)
        second = fund(OTHER_USER_ID, 100)
        third = fund(OWNER_ID, 100)

        assert first.id < second.id < third.id

    @pytest.mark.parametrize("amount", [0, -500])
    def test_non_positive_amount_rejected(self, services, amount):
        with pytest.raises(InvalidAmountError):
            services.ledger.record(OWNER_ID, EntryKind.CREDIT, amount, EntryReason.ADJUSTMENT_MANUAL)

        assert services.ledger.balance_of(OWNER_ID) == 0

    @pytest.mark.parametrize("amount", [1000.0, 12.5, Decimal("99.9"), "1000", True])
    def test_non_integer_amount_rejected(self, services, amount):
        """Money is whole minor units; floats and fractions never reach the table."""
        with pytest.raises(InvalidAmountError):
            services.ledger.record(OWNER_ID, EntryKind.CREDIT, amount, EntryReason.ADJUSTMENT_MANUAL)

        assert services.ledger.get_balance(OWNER_ID).total_entries == 0

    def test_contribution_needs_order_id(self, services):
        with pytest.raises(ValidationError):
            services.ledger.record(OWNER_ID, EntryKind.CREDIT, 1000, EntryReason.CONTRIBUTION_RECEIVED)


class TestImmutability:
    """Written entries can be neither changed nor removed."""

    def test_update_is_refused(self, services, store, fund):
        entry = fund(OWNER_ID, 1000)

        with pytest.raises(StorageError):
            with store.transaction() as session:
                row = session.get(LedgerEntryRow, entry.id)
                row.amount = 1

        assert services.ledger.get_entry(entry.id).amount == 1000

    def test_delete_is_refused(self, services, store, fund):
        entry = fund(OWNER_ID, 1000)

        with pytest.raises(StorageError):
            with store.transaction() as session:
                session.delete(session.get(LedgerEntryRow, entry.id))

        assert services.ledger.get_entry(entry.id) is not None


class TestBalanceCalculation:
    """Tests for balance calculation."""

    def test_unknown_user_has_zero_balance(self, services):
        assert services.ledger.balance_of(999) == 0

        balance = services.ledger.get_balance(999)
        assert balance.current_balance == 0
        assert balance.total_entries == 0
        assert balance.last_transaction_at is None

    def test_balance_is_credits_minus_debits(self, services, fund):
        fund(OWNER_ID, 10000)
        fund(OWNER_ID, 2500)
        services.ledger.record(OWNER_ID, EntryKind.DEBIT, 4000, EntryReason.ADJUSTMENT_MANUAL)
        fund(OTHER_USER_ID, 777)

        assert services.ledger.balance_of(OWNER_ID) == 8500
        assert services.ledger.balance_of(OTHER_USER_ID) == 777

        balance = services.ledger.get_balance(OWNER_ID)
        assert balance.current_balance == 8500
        assert balance.total_entries == 3
        assert balance.currency == "CLP"
        assert balance.last_transaction_at is not None

    def test_concurrent_writers(self, services, fund):
        """Balance equals the sum of every write, whatever the interleaving."""

        def writer(kind, amount, times):
            for _ in range(times):
                services.ledger.record(OWNER_ID, kind, amount, EntryReason.ADJUSTMENT_MANUAL)

        threads = [
            threading.Thread(target=writer, args=(EntryKind.CREDIT, 300, 10)),
            threading.Thread(target=writer, args=(EntryKind.CREDIT, 50, 10)),
            threading.Thread(target=writer, args=(EntryKind.DEBIT, 100, 10)),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert services.ledger.balance_of(OWNER_ID) == 3000 + 500 - 1000
        assert services.ledger.get_balance(OWNER_ID).total_entries == 30


class TestHistory:
    """Tests for ledger history retrieval."""

    def test_newest_first(self, services, fund):
        ids = [fund(OWNER_ID, amount).id for amount in (100, 200, 300)]

        history = services.ledger.history(OWNER_ID)

        assert history.user_id == OWNER_ID
        assert [e.id for e in history.entries] == list(reversed(ids))
        assert history.next_before_id is None
        assert history.current_balance == 600

    def test_cursor_pagination(self, services, fund):
        ids = [fund(OWNER_ID, 100).id for _ in range(5)]

        first = services.ledger.history(OWNER_ID, limit=2)
        assert [e.id for e in first.entries] == [ids[4], ids[3]]
        assert first.next_before_id == ids[3]

        second = services.ledger.history(OWNER_ID, limit=2, before_id=first.next_before_id)
        assert [e.id for e in second.entries] == [ids[2], ids[1]]

        third = services.ledger.history(OWNER_ID, limit=2, before_id=second.next_before_id)
        assert [e.id for e in third.entries] == [ids[0]]
        assert third.next_before_id is None

    def test_new_entries_do_not_shift_pages(self, services, fund):
        ids = [fund(OWNER_ID, 100).id for _ in range(4)]

        first = services.ledger.history(OWNER_ID, limit=2)
        fund(OWNER_ID, 100)
        fund(OWNER_ID, 100)
        second = services.ledger.history(OWNER_ID, limit=2, before_id=first.next_before_id)

        assert [e.id for e in second.entries] == [ids[1], ids[0]]

    def test_only_own_entries(self, services, fund):
        fund(OWNER_ID, 100)
        fund(OTHER_USER_ID, 100)

        history = services.ledger.history(OTHER_USER_ID)
        assert all(e.user_id == OTHER_USER_ID for e in history.entries)
        assert len(history.entries) == 1

    def test_limit_bounds(self, services):
        with pytest.raises(ValidationError):
            services.ledger.history(OWNER_ID, limit=0)


class TestAdjustments:
    """Manual corrections are ordinary offsetting entries."""

    def test_debit_adjustment(self, services, fund):
        fund(OWNER_ID, 5000)

        entry = services.ledger.record_adjustment(
            OWNER_ID, EntryKind.DEBIT, 1200, note="Duplicate order refunded", performed_by="ops@example.com",
        )

        assert entry.reason == EntryReason.ADJUSTMENT_MANUAL
        assert entry.metadata["performed_by"] == "ops@example.com"
        assert services.ledger.balance_of(OWNER_ID) == 3800


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
