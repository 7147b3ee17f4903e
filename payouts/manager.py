import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import case, func, select, update
from sqlalchemy.orm import Session

from ledger.balance import BalanceResolver
from ledger.contributions import apply_rate
from ledger.errors import (
    BelowMinimumError,
    FatalGatewayError,
    InsufficientBalanceError,
    InvalidStateTransitionError,
    LedgerServiceError,
    MissingBankAccountError,
    PayoutNotFoundError,
    TransientGatewayError,
)
from ledger.events import EventBus, PayoutCancelled, PayoutCompleted, PayoutFailed, PayoutRequested
from ledger.models import BankAccount, EntryKind, EntryReason
from ledger.service import LedgerService
from ledger.store import PayoutRow, Store, utcnow

from .gateway import Approved, GatewayResult, PaymentGateway, Rejected
from .models import BatchSummary, Payout, PayoutStatistics, PayoutStatus, ReconcileSummary

logger = logging.getLogger(__name__)


class PayoutManager:
    """
    Withdrawal lifecycle: pending -> processing -> completed, with
    pending -> cancelled and processing -> failed as side branches.

    Creating a payout reserves the funds with a ledger debit written in the
    same transaction as the payout row. Cancelled and failed payouts get a
    reversal credit, so the user's balance always reflects money that has
    not left (or is not about to leave) the platform.
    """

    def __init__(
        self,
        store: Store,
        ledger: LedgerService,
        balances: BalanceResolver,
        gateway: PaymentGateway,
        events: EventBus,
        processing_fee_rate: Decimal = Decimal("0.02"),
        max_attempts: int = 5,
        reconcile_after: timedelta = timedelta(minutes=15),
    ):
        self.store = store
        self.ledger = ledger
        self.balances = balances
        self.gateway = gateway
        self.events = events
        self.processing_fee_rate = Decimal(processing_fee_rate)
        self.max_attempts = max_attempts
        self.reconcile_after = reconcile_after

    @property
    def min_withdrawal(self) -> int:
        return self.balances.min_withdrawal

    def compute_fee(self, amount: int) -> tuple[int, int]:
        fee = apply_rate(amount, self.processing_fee_rate)
        return fee, amount - fee

    # Requests

    def create_payout_request(self, user_id: int, amount: int) -> int:
        """
        Reserve ``amount`` for withdrawal to the user's registered bank account.

        The account is copied onto the payout so later changes to the user's
        bank details do not redirect a request already made.
        """
        if amount < self.min_withdrawal:
            raise BelowMinimumError(f"Minimum withdrawal amount is {self.min_withdrawal}")

        with self.store.user_lock(user_id):
            with self.store.transaction() as session:
                self.store.lock_user_rows(session, user_id)

                if not self.balances.can_withdraw(user_id, amount, session=session):
                    raise InsufficientBalanceError("Insufficient balance for withdrawal")

                destination = self._registered_account(user_id, session)
                if destination is None:
                    raise MissingBankAccountError("Please set up a bank account first")

                fee, net_amount = self.compute_fee(amount)
                now = utcnow()
                row = PayoutRow(
                    user_id=user_id,
                    amount=amount,
                    fee=fee,
                    net_amount=net_amount,
                    status=PayoutStatus.PENDING.value,
                    destination_account=destination.model_dump(mode="json"),
                    attempts=0,
                    created_at=now,
                    updated_at=now,
                )
                session.add(row)
                session.flush()
                payout_id = row.id

                self.ledger.record(
                    user_id,
                    EntryKind.DEBIT,
                    amount,
                    EntryReason.PAYOUT_REQUESTED,
                    payout_id=payout_id,
                    metadata={"fee": fee, "net_amount": net_amount},
                    session=session,
                )

        logger.info(
            "Payout %s requested by user %s for %s (fee %s)",
            payout_id, user_id, amount, fee,
            extra={"payout_id": payout_id},
        )
        self.events.publish(PayoutRequested(payout_id=payout_id, user_id=user_id, amount=amount))
        return payout_id

    def cancel_payout(self, payout_id: int) -> Payout:
        with self.store.transaction() as session:
            if not self._transition(session, payout_id, PayoutStatus.PENDING, PayoutStatus.CANCELLED):
                self._raise_transition_error(session, payout_id, "cancel")
            payout = self._load(session, payout_id)
            self.ledger.record(
                payout.user_id,
                EntryKind.CREDIT,
                payout.amount,
                EntryReason.PAYOUT_CANCELLED,
                payout_id=payout_id,
                session=session,
            )

        logger.info("Payout %s cancelled", payout_id, extra={"payout_id": payout_id})
        self.events.publish(PayoutCancelled(payout_id=payout_id, user_id=payout.user_id))
        return payout

    # Settlement

    def advance_to_processing(self, payout_id: int) -> Payout:
        """
        Claim a pending payout and hand it to the gateway.

        The claim is a compare-and-set on the status, committed before the
        gateway is called: of two concurrent callers only one wins, and a
        crash after the call still leaves the payout marked as in flight.
        """
        with self.store.transaction() as session:
            claimed = self._transition(
                session, payout_id, PayoutStatus.PENDING, PayoutStatus.PROCESSING,
                attempts=PayoutRow.attempts + 1,
            )
            if not claimed:
                self._raise_transition_error(session, payout_id, "process")
            payout = self._load(session, payout_id)

        return self._dispatch(payout)

    def on_gateway_success(self, payout_id: int, gateway_transaction_id: str) -> Payout:
        now = utcnow()
        with self.store.transaction() as session:
            completed = self._transition(
                session, payout_id, PayoutStatus.PROCESSING, PayoutStatus.COMPLETED,
                gateway_transaction_id=gateway_transaction_id,
                completed_at=now,
                last_error=None,
            )
            if not completed:
                current = self._get_row(session, payout_id)
                if current.status == PayoutStatus.COMPLETED.value and current.gateway_transaction_id == gateway_transaction_id:
                    # Repeated settlement notice for the same transfer
                    return Payout.model_validate(current)
                self._raise_transition_error(session, payout_id, "complete")
            payout = self._load(session, payout_id)

        logger.info(
            "Payout %s completed, gateway transaction %s", payout_id, gateway_transaction_id,
            extra={"payout_id": payout_id},
        )
        self.events.publish(PayoutCompleted(payout_id=payout_id, user_id=payout.user_id))
        return payout

    def on_gateway_failure(self, payout_id: int, reason: str, manual_review: bool = False) -> Payout:
        with self.store.transaction() as session:
            failed = self._transition(
                session, payout_id, PayoutStatus.PROCESSING, PayoutStatus.FAILED,
                failure_reason=reason,
                manual_review_required=manual_review,
            )
            if not failed:
                current = self._get_row(session, payout_id)
                if current.status == PayoutStatus.FAILED.value:
                    return Payout.model_validate(current)
                self._raise_transition_error(session, payout_id, "fail")
            payout = self._load(session, payout_id)
            self.ledger.record(
                payout.user_id,
                EntryKind.CREDIT,
                payout.amount,
                EntryReason.PAYOUT_FAILED,
                payout_id=payout_id,
                metadata={"reason": reason},
                session=session,
            )

        logger.warning(
            "Payout %s failed: %s", payout_id, reason,
            extra={"payout_id": payout_id, "manual_review": manual_review},
        )
        self.events.publish(PayoutFailed(payout_id=payout_id, user_id=payout.user_id))
        return payout

    def batch_process_pending(self) -> BatchSummary:
        """Advance every pending payout, oldest first, each on its own."""
        with self.store.session() as session:
            pending_ids = session.execute(
                select(PayoutRow.id)
                .where(PayoutRow.status == PayoutStatus.PENDING.value)
                .order_by(PayoutRow.created_at.asc(), PayoutRow.id.asc())
            ).scalars().all()

        summary = BatchSummary()
        for payout_id in pending_ids:
            try:
                payout = self.advance_to_processing(payout_id)
            except LedgerServiceError as exc:
                logger.warning("Skipping payout %s: %s", payout_id, exc)
                summary.errors[payout_id] = str(exc)
                continue
            except Exception as exc:
                logger.exception("Unexpected error while processing payout %s", payout_id)
                summary.errors[payout_id] = str(exc)
                continue
            summary.processed += 1
            self._tally(summary, payout)

        logger.info(
            "Processed %s pending payouts: %s completed, %s failed, %s awaiting gateway",
            summary.processed, summary.completed, summary.failed, summary.awaiting_gateway,
        )
        return summary

    def reconcile_processing(self, older_than: Optional[timedelta] = None) -> ReconcileSummary:
        """
        Resolve payouts stuck in processing.

        The gateway is asked for the outcome of each transfer. Unknown
        outcomes are retried with the same idempotency key until the attempt
        budget is spent, after which the payout fails and is flagged for
        manual review.
        """
        cutoff = utcnow() - (self.reconcile_after if older_than is None else older_than)
        with self.store.session() as session:
            stale_ids = session.execute(
                select(PayoutRow.id)
                .where(
                    PayoutRow.status == PayoutStatus.PROCESSING.value,
                    PayoutRow.updated_at <= cutoff,
                )
                .order_by(PayoutRow.created_at.asc(), PayoutRow.id.asc())
            ).scalars().all()

        summary = ReconcileSummary()
        for payout_id in stale_ids:
            summary.checked += 1
            payout = self.get_payout(payout_id)
            try:
                result = self.gateway.transfer_status(payout.idempotency_key)
            except (TransientGatewayError, FatalGatewayError) as exc:
                logger.warning("Could not fetch status of payout %s: %s", payout_id, exc)
                summary.unresolved += 1
                continue

            try:
                if result is not None:
                    self._tally(summary, self._apply_result(payout, result))
                elif payout.attempts >= self.max_attempts:
                    self.on_gateway_failure(
                        payout_id,
                        f"No settlement after {payout.attempts} attempts",
                        manual_review=True,
                    )
                    summary.escalated += 1
                elif self._claim_retry(payout):
                    summary.retried += 1
                    self._tally(summary, self._dispatch(self.get_payout(payout_id)))
                else:
                    summary.unresolved += 1
            except LedgerServiceError as exc:
                # Usually a settlement notice that arrived in the meantime
                logger.info("Payout %s changed during reconciliation: %s", payout_id, exc)
                summary.unresolved += 1

        return summary

    # Queries

    def get_payout(self, payout_id: int) -> Payout:
        with self.store.session() as session:
            return self._load(session, payout_id)

    def list_user_payouts(self, user_id: int, limit: int = 50) -> list[Payout]:
        with self.store.session() as session:
            rows = session.execute(
                select(PayoutRow)
                .where(PayoutRow.user_id == user_id)
                .order_by(PayoutRow.created_at.desc(), PayoutRow.id.desc())
                .limit(limit)
            ).scalars().all()
            return [Payout.model_validate(r) for r in rows]

    def get_statistics(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> PayoutStatistics:
        is_completed = PayoutRow.status == PayoutStatus.COMPLETED.value
        stmt = select(
            func.count(PayoutRow.id),
            func.coalesce(func.sum(PayoutRow.amount), 0),
            func.coalesce(func.sum(PayoutRow.fee), 0),
            func.coalesce(func.sum(case((is_completed, 1), else_=0)), 0),
            func.coalesce(func.sum(case((is_completed, PayoutRow.amount), else_=0)), 0),
        )
        if start is not None:
            stmt = stmt.where(PayoutRow.created_at >= start)
        if end is not None:
            stmt = stmt.where(PayoutRow.created_at <= end)

        with self.store.session() as session:
            total, amount, fees, completed, completed_amount = session.execute(stmt).one()

        return PayoutStatistics(
            total_payouts=int(total),
            total_amount=int(amount),
            total_fees=int(fees),
            completed_count=int(completed),
            completed_amount=int(completed_amount),
        )

    # Internals

    def _dispatch(self, payout: Payout) -> Payout:
        try:
            result = self.gateway.transfer(
                payout.net_amount, payout.destination_account, payout.idempotency_key,
            )
        except TransientGatewayError as exc:
            return self._handle_transient(payout, str(exc))
        except FatalGatewayError as exc:
            return self.on_gateway_failure(payout.id, f"Gateway error: {exc}")
        return self._apply_result(payout, result)

    def _apply_result(self, payout: Payout, result: GatewayResult) -> Payout:
        if isinstance(result, Approved):
            if result.settled_amount != payout.net_amount:
                logger.warning(
                    "Payout %s settled %s, expected %s", payout.id, result.settled_amount, payout.net_amount,
                    extra={"payout_id": payout.id},
                )
            return self.on_gateway_success(payout.id, result.transaction_id)
        if isinstance(result, Rejected):
            return self.on_gateway_failure(payout.id, f"{result.code}: {result.message}")
        raise TypeError(f"Unknown gateway result {result!r}")

    def _handle_transient(self, payout: Payout, error: str) -> Payout:
        if payout.attempts >= self.max_attempts:
            return self.on_gateway_failure(
                payout.id,
                f"Gateway unavailable after {payout.attempts} attempts: {error}",
                manual_review=True,
            )

        with self.store.transaction() as session:
            session.execute(
                update(PayoutRow)
                .where(PayoutRow.id == payout.id, PayoutRow.status == PayoutStatus.PROCESSING.value)
                .values(last_error=error, updated_at=utcnow())
            )
            payout = self._load(session, payout.id)

        logger.warning(
            "Transient gateway error for payout %s (attempt %s): %s", payout.id, payout.attempts, error,
            extra={"payout_id": payout.id},
        )
        return payout

    def _claim_retry(self, payout: Payout) -> bool:
        with self.store.transaction() as session:
            result = session.execute(
                update(PayoutRow)
                .where(
                    PayoutRow.id == payout.id,
                    PayoutRow.status == PayoutStatus.PROCESSING.value,
                    PayoutRow.attempts == payout.attempts,
                )
                .values(attempts=PayoutRow.attempts + 1, updated_at=utcnow())
            )
            return result.rowcount == 1

    def _transition(
        self,
        session: Session,
        payout_id: int,
        from_status: PayoutStatus,
        to_status: PayoutStatus,
        **values,
    ) -> bool:
        result = session.execute(
            update(PayoutRow)
            .where(PayoutRow.id == payout_id, PayoutRow.status == from_status.value)
            .values(status=to_status.value, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _raise_transition_error(self, session: Session, payout_id: int, action: str) -> None:
        row = self._get_row(session, payout_id)
        raise InvalidStateTransitionError(f"Cannot {action} payout {payout_id} in {row.status} state")

    def _get_row(self, session: Session, payout_id: int) -> PayoutRow:
        row = session.execute(
            select(PayoutRow).where(PayoutRow.id == payout_id).execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if row is None:
            raise PayoutNotFoundError(f"Payout {payout_id} not found")
        return row

    def _load(self, session: Session, payout_id: int) -> Payout:
        return Payout.model_validate(self._get_row(session, payout_id))

    def _registered_account(self, user_id: int, session: Session) -> Optional[BankAccount]:
        account = self.store.get_bank_account(user_id, session=session)
        return BankAccount.model_validate(account) if account else None

    @staticmethod
    def _tally(summary, payout: Payout) -> None:
        if payout.status == PayoutStatus.COMPLETED:
            summary.completed += 1
        elif payout.status == PayoutStatus.FAILED:
            summary.failed += 1
        elif isinstance(summary, BatchSummary):
            summary.awaiting_gateway += 1
        else:
            summary.unresolved += 1
