import logging
from typing import Callable, Optional

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from .errors import InvalidAmountError, ValidationError
from .models import (
    EntryKind,
    EntryReason,
    LedgerEntry,
    LedgerHistoryResponse,
    UserBalance,
)
from .store import LedgerEntryRow, Store

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 500

WriteListener = Callable[[int], None]


def entry_from_row(row: LedgerEntryRow) -> LedgerEntry:
    return LedgerEntry(
        id=row.id,
        user_id=row.user_id,
        kind=EntryKind(row.kind),
        amount=row.amount,
        reason=EntryReason(row.reason),
        payout_id=row.payout_id,
        metadata=dict(row.meta or {}),
        created_at=row.created_at,
    )


class LedgerService:
    """
    Append-only ledger of credits and debits per user.

    Rows are only ever inserted. A user's balance is the sum of their
    credits minus the sum of their debits; mistakes are corrected with new
    offsetting entries.
    """

    def __init__(self, store: Store, currency: str = "CLP"):
        self.store = store
        self.currency = currency
        self._listeners: list[WriteListener] = []

    def add_listener(self, listener: WriteListener) -> None:
        """``listener(user_id)`` runs after each write and again after its commit."""
        self._listeners.append(listener)

    def record(
        self,
        user_id: int,
        kind: EntryKind,
        amount: int,
        reason: EntryReason,
        payout_id: Optional[int] = None,
        metadata: Optional[dict] = None,
        session: Optional[Session] = None,
    ) -> LedgerEntry:
        if not isinstance(amount, int) or isinstance(amount, bool):
            raise InvalidAmountError(f"Ledger amounts are whole minor units, got {amount!r}")
        if amount <= 0:
            raise InvalidAmountError(f"Ledger amount must be positive, got {amount}")

        metadata = dict(metadata or {})
        order_id = None
        if reason == EntryReason.CONTRIBUTION_RECEIVED:
            order_id = metadata.get("order_id")
            if not order_id:
                raise ValidationError("Contribution entries need an order_id")
            order_id = str(order_id)

        with self.store.transaction(session) as s:
            row = LedgerEntryRow(
                user_id=user_id,
                kind=EntryKind(kind).value,
                amount=amount,
                reason=EntryReason(reason).value,
                payout_id=payout_id,
                meta=metadata,
                contribution_order_id=order_id,
            )
            s.add(row)
            s.flush()
            entry = entry_from_row(row)
            self._notify(user_id)
            self.store.after_commit(s, lambda: self._notify(user_id))

        logger.info(
            "Ledger %s of %s for user %s (%s)",
            entry.kind.value.lower(), entry.amount, user_id, entry.reason.value,
            extra={"entry_id": entry.id, "payout_id": payout_id},
        )
        return entry

    def record_adjustment(
        self,
        user_id: int,
        kind: EntryKind,
        amount: int,
        note: str,
        performed_by: Optional[str] = None,
    ) -> LedgerEntry:
        return self.record(
            user_id,
            kind,
            amount,
            EntryReason.ADJUSTMENT_MANUAL,
            metadata={"note": note, "performed_by": performed_by},
        )

    def balance_of(self, user_id: int, session: Optional[Session] = None) -> int:
        signed = case(
            (LedgerEntryRow.kind == EntryKind.CREDIT.value, LedgerEntryRow.amount),
            else_=-LedgerEntryRow.amount,
        )
        stmt = select(func.coalesce(func.sum(signed), 0)).where(LedgerEntryRow.user_id == user_id)
        if session is not None:
            return int(session.execute(stmt).scalar_one())
        with self.store.session() as s:
            return int(s.execute(stmt).scalar_one())

    def get_balance(self, user_id: int) -> UserBalance:
        with self.store.session() as s:
            total_entries, last_at = s.execute(
                select(func.count(LedgerEntryRow.id), func.max(LedgerEntryRow.created_at))
                .where(LedgerEntryRow.user_id == user_id)
            ).one()
            current = self.balance_of(user_id, session=s)

        return UserBalance(
            user_id=user_id,
            currency=self.currency,
            current_balance=current,
            total_entries=total_entries,
            last_transaction_at=last_at,
        )

    def history(self, user_id: int, limit: int = 50, before_id: Optional[int] = None) -> LedgerHistoryResponse:
        """
        Newest-first page of a user's entries.

        ``before_id`` is the ``next_before_id`` of the previous page. Ids grow
        with insertion order, so entries written while a client pages through
        the history never shift or duplicate rows on later pages.
        """
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")

        stmt = select(LedgerEntryRow).where(LedgerEntryRow.user_id == user_id)
        if before_id is not None:
            stmt = stmt.where(LedgerEntryRow.id < before_id)
        stmt = stmt.order_by(LedgerEntryRow.id.desc()).limit(limit + 1)

        with self.store.session() as s:
            rows = s.execute(stmt).scalars().all()
            balance = self.balance_of(user_id, session=s)

        page = [entry_from_row(r) for r in rows[:limit]]
        next_before_id = page[-1].id if len(rows) > limit else None

        return LedgerHistoryResponse(
            user_id=user_id,
            entries=page,
            next_before_id=next_before_id,
            current_balance=balance,
        )

    def get_entry(self, entry_id: int) -> Optional[LedgerEntry]:
        with self.store.session() as s:
            row = s.get(LedgerEntryRow, entry_id)
            return entry_from_row(row) if row else None

    def entries_for_payout(self, payout_id: int) -> list[LedgerEntry]:
        with self.store.session() as s:
            rows = s.execute(
                select(LedgerEntryRow)
                .where(LedgerEntryRow.payout_id == payout_id)
                .order_by(LedgerEntryRow.id)
            ).scalars().all()
            return [entry_from_row(r) for r in rows]

    def find_contribution(self, order_id: str) -> Optional[LedgerEntry]:
        with self.store.session() as s:
            row = s.execute(
                select(LedgerEntryRow).where(LedgerEntryRow.contribution_order_id == str(order_id))
            ).scalar_one_or_none()
            return entry_from_row(row) if row else None

    def _notify(self, user_id: int) -> None:
        for listener in self._listeners:
            listener(user_id)
