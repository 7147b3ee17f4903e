from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request, status

from .models import (
    AssignListOwnerRequest,
    BankAccount,
    LedgerEntry,
    LedgerHistoryResponse,
    ManualAdjustmentRequest,
    RecordContributionRequest,
    UserBalance,
)
from .service import MAX_PAGE_SIZE

router = APIRouter()


def get_services(request: Request):
    return request.app.state.services


@router.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "gift-registry-ledger"}


@router.get("/users/{user_id}/balance", response_model=UserBalance, tags=["Users"])
def get_user_balance(user_id: int, request: Request) -> UserBalance:
    return get_services(request).ledger.get_balance(user_id)


@router.get("/users/{user_id}/ledger", response_model=LedgerHistoryResponse, tags=["Users"])
def get_user_ledger(
    user_id: int,
    request: Request,
    limit: int = Query(50, ge=1, le=MAX_PAGE_SIZE),
    before_id: Optional[int] = None,
) -> LedgerHistoryResponse:
    return get_services(request).ledger.history(user_id, limit=limit, before_id=before_id)


@router.put("/users/{user_id}/bank-account", response_model=BankAccount, tags=["Users"])
def set_bank_account(user_id: int, account: BankAccount, request: Request) -> BankAccount:
    get_services(request).store.set_bank_account(user_id, account.model_dump(mode="json"))
    return account


@router.get("/users/{user_id}/bank-account", response_model=BankAccount, tags=["Users"])
def get_bank_account(user_id: int, request: Request) -> BankAccount:
    account = get_services(request).store.get_bank_account(user_id)
    if account is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"User {user_id} has no bank account")
    return BankAccount.model_validate(account)


@router.put("/lists/{list_id}/owner", tags=["Lists"])
def assign_list_owner(list_id: int, body: AssignListOwnerRequest, request: Request):
    get_services(request).store.set_list_owner(list_id, body.user_id)
    return {"list_id": list_id, "user_id": body.user_id}


@router.post("/contributions", response_model=LedgerEntry, status_code=status.HTTP_201_CREATED, tags=["Contributions"])
def record_contribution(body: RecordContributionRequest, request: Request) -> LedgerEntry:
    return get_services(request).contributions.record_contribution(
        body.list_id, body.order_id, body.gross_amount, body.platform_fee_rate,
    )


@router.post("/adjustments", response_model=LedgerEntry, status_code=status.HTTP_201_CREATED, tags=["Ledger"])
def record_adjustment(body: ManualAdjustmentRequest, request: Request) -> LedgerEntry:
    return get_services(request).ledger.record_adjustment(
        body.user_id, body.kind, body.amount, body.note, body.performed_by,
    )
