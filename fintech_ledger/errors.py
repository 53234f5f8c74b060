"""
Ledger Error Taxonomy

Every failure the transfer engine surfaces maps to one stable error code so
callers can tell "fix the request" (validation errors) from "retry safely"
(conflicts, timeouts, cancellations) from "contact support" (reconciliation).
"""

from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base class for all ledger errors"""

    code = "LEDGER_ERROR"
    retryable = False

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        """Serialize with stable keys for the outer API layer"""
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": {k: str(v) for k, v in self.details.items()}
        }


class TransferRejectedError(LedgerError, ValueError):
    """A transfer request failed validation; nothing was persisted"""


class InvalidAmountError(TransferRejectedError):
    """Amount is not positive, has too many fractional digits, or is not fixed-point"""

    code = "INVALID_AMOUNT"


class SameAccountTransferError(TransferRejectedError):
    code = "SAME_ACCOUNT_TRANSFER"


class AccountNotFoundError(TransferRejectedError):
    code = "ACCOUNT_NOT_FOUND"


class ForbiddenError(TransferRejectedError):
    """Caller is not allowed to act on the account"""

    code = "FORBIDDEN"


class InsufficientFundsError(TransferRejectedError):
    code = "INSUFFICIENT_FUNDS"


class ConflictError(LedgerError):
    """Optimistic concurrency retries exhausted"""

    code = "CONFLICT"
    retryable = True


class LedgerTimeoutError(LedgerError):
    """Account locks could not be acquired in time"""

    code = "TIMEOUT"
    retryable = True


class TransferCancelledError(LedgerError):
    """Transfer cancelled before it entered the critical section"""

    code = "CANCELLED"
    retryable = True


class ReconciliationRequiredError(LedgerError):
    """
    A transfer was durably recorded but its balance mutation could not be
    confirmed. The transaction is FAILED and needs operator intervention.
    """

    code = "RECONCILIATION_REQUIRED"

    def __init__(self, message: str, transaction_id: Optional[str] = None, **details: Any):
        super().__init__(message, transaction_id=transaction_id, **details)
        self.transaction_id = transaction_id


class IllegalTransitionError(LedgerError):
    """Transaction status transition is not allowed"""

    code = "ILLEGAL_TRANSITION"

    def __init__(self, from_status: str, to_status: str):
        super().__init__(
            f"Illegal transaction status transition {from_status} -> {to_status}",
            from_status=from_status, to_status=to_status
        )
        self.from_status = from_status
        self.to_status = to_status
