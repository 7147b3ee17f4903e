from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Query, Request, status

from ledger.api import get_services
from ledger.errors import ValidationError

from .models import (
    BatchSummary,
    CreatePayoutRequest,
    CreatePayoutResponse,
    Payout,
    PayoutStatistics,
    ReconcileSummary,
    SettlementNotification,
    SettlementOutcome,
)

router = APIRouter(tags=["Payouts"])


@router.post("/payouts", response_model=CreatePayoutResponse, status_code=status.HTTP_201_CREATED)
def create_payout(body: CreatePayoutRequest, request: Request) -> CreatePayoutResponse:
    payouts = get_services(request).payouts
    payout_id = payouts.create_payout_request(body.user_id, body.amount)
    return CreatePayoutResponse(
        payout=payouts.get_payout(payout_id),
        message="Payout requested successfully",
    )


@router.get("/payouts/statistics", response_model=PayoutStatistics)
def payout_statistics(
    request: Request,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> PayoutStatistics:
    return get_services(request).payouts.get_statistics(start, end)


@router.post("/payouts/batch", response_model=BatchSummary)
def process_pending_payouts(request: Request) -> BatchSummary:
    return get_services(request).payouts.batch_process_pending()


@router.post("/payouts/reconcile", response_model=ReconcileSummary)
def reconcile_payouts(
    request: Request,
    older_than_seconds: Optional[int] = Query(None, ge=0),
) -> ReconcileSummary:
    older_than = timedelta(seconds=older_than_seconds) if older_than_seconds is not None else None
    return get_services(request).payouts.reconcile_processing(older_than)


@router.get("/payouts/{payout_id}", response_model=Payout)
def get_payout(payout_id: int, request: Request) -> Payout:
    return get_services(request).payouts.get_payout(payout_id)


@router.get("/users/{user_id}/payouts", response_model=list[Payout], tags=["Users"])
def list_user_payouts(
    user_id: int,
    request: Request,
    limit: int = Query(50, ge=1, le=500),
) -> list[Payout]:
    return get_services(request).payouts.list_user_payouts(user_id, limit)


@router.post("/payouts/{payout_id}/cancel", response_model=Payout)
def cancel_payout(payout_id: int, request: Request) -> Payout:
    return get_services(request).payouts.cancel_payout(payout_id)


@router.post("/payouts/{payout_id}/process", response_model=Payout)
def process_payout(payout_id: int, request: Request) -> Payout:
    return get_services(request).payouts.advance_to_processing(payout_id)


@router.post("/payouts/{payout_id}/settlement", response_model=Payout)
def settle_payout(payout_id: int, body: SettlementNotification, request: Request) -> Payout:
    payouts = get_services(request).payouts
    if body.outcome == SettlementOutcome.APPROVED:
        if not body.transaction_id:
            raise ValidationError("Approved settlements need a transaction_id")
        return payouts.on_gateway_success(payout_id, body.transaction_id)
    return payouts.on_gateway_failure(payout_id, body.reason or "Rejected by gateway")
