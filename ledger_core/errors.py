"""
Ledger Error Module

Typed failures raised by every balance-changing operation. Callers map these
to user-visible messages; only LockTimeoutError is safe to retry as-is.
"""

from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base class for all ledger failures"""

    code = "ledger_error"
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses and logging"""
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": {k: str(v) for k, v in self.details.items()}
        }


class ValidationError(LedgerError):
    """Malformed amount, currency or request"""
    code = "validation_error"


class AccountNotFoundError(LedgerError):
    code = "account_not_found"


class UnauthorizedError(LedgerError):
    """Caller does not own the account it is acting on"""
    code = "unauthorized"


class InsufficientFundsError(LedgerError):
    code = "insufficient_funds"


class AccountInactiveError(LedgerError):
    code = "account_inactive"


class CurrencyMismatchError(LedgerError):
    """Amount currency differs from account currency"""
    code = "currency_mismatch"


class RateUnavailableError(LedgerError):
    code = "rate_unavailable"


class RateStaleError(LedgerError):
    """Quote validity window elapsed between quote and commit"""
    code = "rate_stale"


class ConcurrentModificationError(LedgerError):
    code = "concurrent_modification"


class LockTimeoutError(ConcurrentModificationError):
    """Bounded wait for an account section elapsed"""
    code = "lock_timeout"
    retryable = True


class OverpaymentNotAllowedError(LedgerError):
    code = "overpayment_not_allowed"


class LimitExceededError(LedgerError):
    """Daily/monthly or per-operation limit would be exceeded"""
    code = "limit_exceeded"


class InvalidStateError(LedgerError):
    """Entity is not in a state that permits the operation"""
    code = "invalid_state"


class OperationCancelledError(LedgerError):
    code = "operation_cancelled"
