"""
Error taxonomy for the credit ledger and generation pipeline.

Every domain error carries a tagged ErrorCode so callers can match
exhaustively instead of parsing messages.
"""

from enum import Enum
from typing import Optional


class ErrorCode(Enum):
    """Tagged error variants surfaced to callers."""
    INVALID_AMOUNT = "invalid_amount"
    ACCOUNT_NOT_FOUND = "account_not_found"
    ACCOUNT_EXISTS = "account_exists"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    QUOTA_EXCEEDED = "quota_exceeded"
    TRANSACTION_CONFLICT = "transaction_conflict"
    TRANSACTION_NOT_FOUND = "transaction_not_found"
    TRANSACTION_ALREADY_SETTLED = "transaction_already_settled"
    GENERATION_FAILURE = "generation_failure"
    GENERATION_CANCELLED = "generation_cancelled"
    DETECTION_FAILURE = "detection_failure"
    RECONCILIATION_FAILURE = "reconciliation_failure"


class CreditLedgerError(Exception):
    """Base class for all domain errors."""
    code: ErrorCode

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidAmount(CreditLedgerError, ValueError):
    """Raised when a credit or word amount is not a positive number."""
    code = ErrorCode.INVALID_AMOUNT


class AccountNotFound(CreditLedgerError):
    code = ErrorCode.ACCOUNT_NOT_FOUND

    def __init__(self, user_id: str):
        super().__init__(f"account not found: {user_id}")
        self.user_id = user_id


class AccountExists(CreditLedgerError):
    code = ErrorCode.ACCOUNT_EXISTS

    def __init__(self, user_id: str):
        super().__init__(f"account already exists: {user_id}")
        self.user_id = user_id


class InsufficientFunds(CreditLedgerError):
    """Raised when the balance cannot cover the required credits."""
    code = ErrorCode.INSUFFICIENT_FUNDS

    def __init__(self, required: int, available: int):
        super().__init__(f"insufficient credits: need {required}, have {available}")
        self.required = required
        self.available = available


class QuotaExceeded(CreditLedgerError):
    """Raised when a request would push monthly word usage past the plan cap."""
    code = ErrorCode.QUOTA_EXCEEDED

    def __init__(self, current: int, requested: int, limit: int):
        super().__init__(
            f"monthly word limit exceeded: used {current}, requested {requested}, "
            f"limit {limit} ({max(limit - current, 0)} remaining)"
        )
        self.current = current
        self.requested = requested
        self.limit = limit


class TransactionConflict(CreditLedgerError):
    """Raised when the store keeps rejecting a write because of concurrent access."""
    code = ErrorCode.TRANSACTION_CONFLICT


class TransactionNotFound(CreditLedgerError):
    code = ErrorCode.TRANSACTION_NOT_FOUND

    def __init__(self, transaction_id: str):
        super().__init__(f"transaction not found: {transaction_id}")
        self.transaction_id = transaction_id


class TransactionAlreadySettled(CreditLedgerError):
    """Raised when a refund or rollback targets an already reversed deduction."""
    code = ErrorCode.TRANSACTION_ALREADY_SETTLED

    def __init__(self, transaction_id: str, reason: str):
        super().__init__(f"transaction {transaction_id} already settled: {reason}")
        self.transaction_id = transaction_id


class GenerationFailure(CreditLedgerError):
    """Raised when the text-generation collaborator fails."""
    code = ErrorCode.GENERATION_FAILURE

    def __init__(self, message: str, chunk_index: Optional[int] = None):
        super().__init__(message)
        self.chunk_index = chunk_index


class GenerationCancelled(CreditLedgerError):
    code = ErrorCode.GENERATION_CANCELLED

    def __init__(self, chunks_completed: int):
        super().__init__(f"generation cancelled after {chunks_completed} chunk(s)")
        self.chunks_completed = chunks_completed


class DetectionFailure(CreditLedgerError):
    """Raised by detector adapters; the quality gate never lets it escape."""
    code = ErrorCode.DETECTION_FAILURE


class ReconciliationFailure(CreditLedgerError):
    """Raised when a settlement could neither be applied nor recorded."""
    code = ErrorCode.RECONCILIATION_FAILURE
