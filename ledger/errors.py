from typing import Optional


class LedgerServiceError(Exception):
    code = "ledger_error"

    def __init__(self, message: str = "", code: Optional[str] = None):
        super().__init__(message or self.__class__.__name__)
        if code:
            self.code = code


class ValidationError(LedgerServiceError):
    code = "invalid_request"


class InvalidAmountError(ValidationError):
    code = "invalid_amount"


class BelowMinimumError(ValidationError):
    code = "minimum_amount"


class InsufficientBalanceError(ValidationError):
    code = "insufficient_balance"


class MissingBankAccountError(ValidationError):
    code = "no_bank_account"


class UnknownListError(ValidationError):
    code = "unknown_list"


class NotFoundError(LedgerServiceError):
    code = "not_found"


class PayoutNotFoundError(NotFoundError):
    code = "payout_not_found"


class ConflictError(LedgerServiceError):
    code = "conflict"


class InvalidStateTransitionError(ConflictError):
    code = "invalid_state"


class StorageError(LedgerServiceError):
    code = "storage_error"


class DuplicateEntryError(StorageError):
    code = "duplicate_entry"


class GatewayError(Exception):
    """Raised by payment gateway adapters."""


class TransientGatewayError(GatewayError):
    """Network failure or timeout; the transfer may or may not have happened."""


class FatalGatewayError(GatewayError):
    """The gateway refused the transfer for good."""
