"""
Unit Tests for Payout Settlement

Tests cover:
1. pending -> processing -> completed / failed
2. Reversal credits for failed payouts
3. Transient gateway errors and the attempt budget
4. Exactly one gateway call per claim, even under concurrency
5. Batch processing and reconciliation
6. Repeated settlement notices
"""

import threading
from datetime import timedelta

import pytest

from ledger.errors import FatalGatewayError, InvalidStateTransitionError, TransientGatewayError
from ledger.events import PayoutCompleted, PayoutFailed
from ledger.models import EntryReason
from payouts.gateway import Approved, Rejected
from payouts.jobs import run_payout_cycle
from payouts.models import PayoutStatus

from conftest import OWNER_ID

NOW = timedelta(0)


@pytest.fixture
def pending(services, fund):
    """A funded owner with one pending 10000 payout."""
    fund(OWNER_ID, 10000)
    return services.payouts.create_payout_request(OWNER_ID, 10000)


class TestAdvanceToProcessing:

    def test_approved_transfer_completes(self, services, gateway, pending, published):
        payout = services.payouts.advance_to_processing(pending)

        assert payout.status == PayoutStatus.COMPLETED
        assert payout.gateway_transaction_id == f"tx-payout-{pending}"
        assert payout.completed_at is not None
        assert payout.attempts == 1
        assert gateway.calls == [(9800, f"payout-{pending}")]
        assert published[-1] == PayoutCompleted(payout_id=pending, user_id=OWNER_ID)
        assert services.ledger.balance_of(OWNER_ID) == 0

    def test_rejected_transfer_fails_and_reverses(self, services, gateway, pending, published):
        gateway.outcomes[f"payout-{pending}"] = Rejected(code="R03", message="Account closed")

        payout = services.payouts.advance_to_processing(pending)

        assert payout.status == PayoutStatus.FAILED
        assert payout.failure_reason == "R03: Account closed"
        assert payout.manual_review_required is False
        assert services.balances.available_balance(OWNER_ID) == 10000
        reasons = [e.reason for e in services.ledger.entries_for_payout(pending)]
        assert reasons == [EntryReason.PAYOUT_REQUESTED, EntryReason.PAYOUT_FAILED]
        assert published[-1] == PayoutFailed(payout_id=pending, user_id=OWNER_ID)

    def test_fatal_gateway_error_fails(self, services, gateway, pending):
        gateway.outcomes[f"payout-{pending}"] = FatalGatewayError("bad credentials")

        payout = services.payouts.advance_to_processing(pending)

        assert payout.status == PayoutStatus.FAILED
        assert "bad credentials" in payout.failure_reason
        assert services.ledger.balance_of(OWNER_ID) == 10000

    def test_transient_error_keeps_processing(self, services, gateway, pending):
        gateway.outcomes[f"payout-{pending}"] = TransientGatewayError("read timeout")

        payout = services.payouts.advance_to_processing(pending)

        assert payout.status == PayoutStatus.PROCESSING
        assert payout.last_error == "read timeout"
        # Funds stay reserved while the outcome is unknown
        assert services.ledger.balance_of(OWNER_ID) == 0

    def test_only_pending_can_be_processed(self, services, pending):
        services.payouts.cancel_payout(pending)

        with pytest.raises(InvalidStateTransitionError):
            services.payouts.advance_to_processing(pending)

    def test_concurrent_claims_call_gateway_once(self, services, gateway, pending):
        gateway.delay = 0.2
        results, errors = [], []
        barrier = threading.Barrier(2)

        def advance():
            barrier.wait()
            try:
                results.append(services.payouts.advance_to_processing(pending))
            except InvalidStateTransitionError as exc:
                errors.append(exc)

        threads = [threading.Thread(target=advance) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results) == 1
        assert len(errors) == 1
        assert len(gateway.calls) == 1


class TestSettlementNotices:

    def test_repeated_success_is_ignored(self, services, pending, published):
        completed = services.payouts.advance_to_processing(pending)
        count = len(published)

        again = services.payouts.on_gateway_success(pending, completed.gateway_transaction_id)

        assert again.status == PayoutStatus.COMPLETED
        assert len(published) == count

    def test_success_with_other_transaction_rejected(self, services, pending):
        services.payouts.advance_to_processing(pending)

        with pytest.raises(InvalidStateTransitionError):
            services.payouts.on_gateway_success(pending, "tx-other")

    def test_failure_after_completion_rejected(self, services, pending):
        services.payouts.advance_to_processing(pending)

        with pytest.raises(InvalidStateTransitionError):
            services.payouts.on_gateway_failure(pending, "late decline")

        assert services.ledger.balance_of(OWNER_ID) == 0

    def test_repeated_failure_reverses_once(self, services, gateway, pending):
        gateway.outcomes[f"payout-{pending}"] = TransientGatewayError("timeout")
        services.payouts.advance_to_processing(pending)

        services.payouts.on_gateway_failure(pending, "declined")
        services.payouts.on_gateway_failure(pending, "declined")

        assert services.ledger.balance_of(OWNER_ID) == 10000
        assert len(services.ledger.entries_for_payout(pending)) == 2

    def test_success_on_pending_rejected(self, services, pending):
        with pytest.raises(InvalidStateTransitionError):
            services.payouts.on_gateway_success(pending, "tx-1")


class TestBatchProcessPending:

    def test_one_failure_does_not_stop_batch(self, services, gateway, fund):
        fund(OWNER_ID, 50000)
        ids = [services.payouts.create_payout_request(OWNER_ID, 10000) for _ in range(5)]
        gateway.outcomes[f"payout-{ids[2]}"] = FatalGatewayError("invalid destination")

        summary = services.payouts.batch_process_pending()

        assert summary.processed == 5
        assert summary.completed == 4
        assert summary.failed == 1
        assert services.payouts.get_payout(ids[2]).status == PayoutStatus.FAILED
        assert services.ledger.balance_of(OWNER_ID) == 10000

    def test_unexpected_error_is_recorded(self, services, gateway, fund):
        fund(OWNER_ID, 30000)
        ids = [services.payouts.create_payout_request(OWNER_ID, 10000) for _ in range(3)]
        gateway.outcomes[f"payout-{ids[0]}"] = RuntimeError("socket closed")

        summary = services.payouts.batch_process_pending()

        assert summary.processed == 2
        assert summary.completed == 2
        assert list(summary.errors) == [ids[0]]

    def test_oldest_first(self, services, gateway, fund):
        fund(OWNER_ID, 30000)
        ids = [services.payouts.create_payout_request(OWNER_ID, 10000) for _ in range(3)]

        services.payouts.batch_process_pending()

        assert gateway.keys_called() == [f"payout-{i}" for i in ids]

    def test_skips_non_pending(self, services, gateway, fund):
        fund(OWNER_ID, 20000)
        cancelled = services.payouts.create_payout_request(OWNER_ID, 10000)
        services.payouts.cancel_payout(cancelled)

        summary = services.payouts.batch_process_pending()

        assert summary.processed == 0
        assert gateway.calls == []


class TestReconcileProcessing:

    @pytest.fixture
    def stuck(self, services, gateway, pending):
        gateway.outcomes[f"payout-{pending}"] = TransientGatewayError("timeout")
        services.payouts.advance_to_processing(pending)
        return pending

    def test_settled_upstream(self, services, gateway, stuck):
        gateway.statuses[f"payout-{stuck}"] = Approved(transaction_id="tx-99", settled_amount=9800)

        summary = services.payouts.reconcile_processing(older_than=NOW)

        assert summary.checked == 1
        assert summary.completed == 1
        payout = services.payouts.get_payout(stuck)
        assert payout.status == PayoutStatus.COMPLETED
        assert payout.gateway_transaction_id == "tx-99"

    def test_declined_upstream(self, services, gateway, stuck):
        gateway.statuses[f"payout-{stuck}"] = Rejected(code="R01", message="Insufficient funds")

        summary = services.payouts.reconcile_processing(older_than=NOW)

        assert summary.failed == 1
        assert services.payouts.get_payout(stuck).status == PayoutStatus.FAILED
        assert services.ledger.balance_of(OWNER_ID) == 10000

    def test_unknown_outcome_is_retried_with_same_key(self, services, gateway, stuck):
        gateway.outcomes[f"payout-{stuck}"] = None

        summary = services.payouts.reconcile_processing(older_than=NOW)

        assert summary.retried == 1
        assert summary.completed == 1
        assert gateway.keys_called() == [f"payout-{stuck}", f"payout-{stuck}"]
        assert services.payouts.get_payout(stuck).attempts == 2

    def test_attempt_budget_exhausted(self, services, gateway, stuck):
        """Three transient attempts in a row end in a failure flagged for review."""
        services.payouts.reconcile_processing(older_than=NOW)
        assert services.payouts.get_payout(stuck).status == PayoutStatus.PROCESSING

        services.payouts.reconcile_processing(older_than=NOW)

        payout = services.payouts.get_payout(stuck)
        assert payout.attempts == 3
        assert payout.status == PayoutStatus.FAILED
        assert payout.manual_review_required is True
        assert services.ledger.balance_of(OWNER_ID) == 10000

    def test_unknown_outcome_at_budget_escalates(self, services, gateway, stuck):
        services.payouts.max_attempts = 1

        summary = services.payouts.reconcile_processing(older_than=NOW)

        assert summary.escalated == 1
        assert len(gateway.calls) == 1
        payout = services.payouts.get_payout(stuck)
        assert payout.status == PayoutStatus.FAILED
        assert payout.manual_review_required is True

    def test_status_lookup_error_leaves_payout(self, services, gateway, stuck):
        gateway.statuses[f"payout-{stuck}"] = TransientGatewayError("gateway down")

        summary = services.payouts.reconcile_processing(older_than=NOW)

        assert summary.unresolved == 1
        assert services.payouts.get_payout(stuck).status == PayoutStatus.PROCESSING

    def test_recent_payouts_are_left_alone(self, services, gateway, stuck):
        summary = services.payouts.reconcile_processing()

        assert summary.checked == 0


class TestPayoutCycle:

    def test_run_payout_cycle(self, services, gateway, fund):
        fund(OWNER_ID, 20000)
        services.payouts.create_payout_request(OWNER_ID, 10000)
        services.payouts.create_payout_request(OWNER_ID, 5000)

        result = run_payout_cycle(services)

        assert result["batch"]["completed"] == 2
        assert result["reconcile"]["checked"] == 0
        assert services.payouts.get_statistics().completed_amount == 15000
