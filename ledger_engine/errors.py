"""
Error Types Module

Exception hierarchy shared by the store, the transfer protocol and the API.
Recoverable failures derive from LedgerError. InconsistencyError deliberately
does not, so a handler written for ordinary failures cannot absorb it.
"""

from enum import Enum
from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base class for recoverable ledger errors"""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause


class ValidationError(LedgerError):
    """Malformed input, rejected before any state is touched"""
    pass


class NotFoundError(LedgerError):
    """Account or transaction absent"""
    pass


class ConflictError(LedgerError):
    """Version token mismatch on a conditional write"""
    pass


class EntryExistsError(ConflictError):
    """The ledger slot of an entry was already written"""
    pass


class InsufficientFundsError(LedgerError):
    """Sender balance below the transfer amount"""
    pass


class StorageError(LedgerError):
    """Backend call failed"""
    pass


class ConditionalCheckFailedError(StorageError):
    """A write precondition evaluated to false"""

    def __init__(self, message: str, item: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.item = item


class TransactionCanceledError(StorageError):
    """A multi-item atomic write was rejected as a whole"""

    def __init__(self, message: str, reasons: Optional[list] = None):
        super().__init__(message)
        # One entry per write item: None when the item's own condition passed
        self.reasons = reasons or []

    @property
    def is_condition_failure(self) -> bool:
        return any(reason == "ConditionalCheckFailed" for reason in self.reasons)


class DeadlineExceededError(StorageError):
    """The caller's deadline expired before the backend call was issued"""
    pass


class InconsistencyError(Exception):
    """
    Compensation of a committed debit failed.

    Money has left the sender without reaching the receiver and could not be
    put back. Requires operator intervention; never returned as an ordinary
    transfer failure.
    """

    def __init__(self, message: str, tenant_id: str, transaction_id: str,
                 account_id: str, amount: Any, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.tenant_id = tenant_id
        self.transaction_id = transaction_id
        self.account_id = account_id
        self.amount = amount
        self.cause = cause


class TransferErrorCode(Enum):
    """Codes returned to callers of a failed transfer"""
    USER_NOT_FOUND = "user_not_found"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    DEBIT_FAILED = "debit_failed"
    CREDIT_FAILED = "credit_failed"


class TransferError(LedgerError):
    """A transfer attempt that failed without leaving money in flight"""

    code: TransferErrorCode = TransferErrorCode.DEBIT_FAILED

    def __init__(self, message: str, cause: Optional[BaseException] = None,
                 transaction_id: Optional[str] = None,
                 code: Optional[TransferErrorCode] = None):
        super().__init__(message, cause)
        self.transaction_id = transaction_id
        if code is not None:
            self.code = code

    @property
    def details(self) -> str:
        if self.cause is None:
            return self.message
        return f"{self.message}: {self.cause}"

    def to_response(self) -> Dict[str, Any]:
        """Structured code + message for API callers"""
        return {
            "status": "error",
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
            "transaction_id": self.transaction_id
        }


class AccountNotFoundError(TransferError, NotFoundError):
    """Sender or receiver lookup failed"""
    code = TransferErrorCode.USER_NOT_FOUND


class TransferInsufficientFundsError(TransferError, InsufficientFundsError):
    """Advisory balance check rejected the transfer"""
    code = TransferErrorCode.INSUFFICIENT_BALANCE


class TransferFailedError(TransferError):
    """Debit or credit write failed; code tells which"""
    pass
