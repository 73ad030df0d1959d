"""
Ledger Error Taxonomy

Every failure the engine reports is a LedgerError subclass carrying a stable
code, a human message and structured details so callers can present
actionable feedback. Nothing here implies a committed mutation: errors raised
inside a unit of work are only surfaced after the unit has been rolled back.
"""

from enum import Enum
from typing import Any, Dict, Optional


class RejectionReason(Enum):
    """Specific, distinguishable reasons for refusing an operation"""
    INVALID_AMOUNT = "invalid_amount"
    BELOW_MINIMUM_WITHDRAWAL = "below_minimum_withdrawal"
    ABOVE_WITHDRAWAL_LIMIT = "above_withdrawal_limit"
    MISSING_RECIPIENT = "missing_recipient"
    STEP_UP_NOT_REQUIRED = "step_up_not_required"
    INVALID_PAGINATION = "invalid_pagination"
    INVALID_FILTER = "invalid_filter"
    ACCOUNT_FROZEN = "account_frozen"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    SINGLE_TRANSFER_LIMIT = "single_transfer_limit"
    MINIMUM_BALANCE = "minimum_balance"
    DAILY_LIMIT = "daily_limit"
    SELF_TRANSFER = "self_transfer"
    RECIPIENT_NOT_FOUND = "recipient_not_found"


class LedgerError(Exception):
    """Base class for all ledger failures"""

    code = "ledger_error"
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    @property
    def reason(self) -> str:
        return self.code

    def to_dict(self) -> Dict[str, Any]:
        """Serializable form used by the HTTP layer and logs"""
        return {
            "code": self.code,
            "reason": self.reason,
            "message": self.message,
            "retryable": self.retryable,
            "details": {k: str(v) if not isinstance(v, (int, bool, str)) else v
                        for k, v in self.details.items()},
        }


class ValidationError(LedgerError):
    """Malformed or out-of-bounds input, rejected before any lock"""

    code = "validation_error"

    def __init__(self, reason: RejectionReason, message: str,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.rejection = reason

    @property
    def reason(self) -> str:
        return self.rejection.value


class PolicyRejected(LedgerError):
    """A business rule refused the operation; no committed mutation"""

    code = "policy_rejected"

    def __init__(self, reason: RejectionReason, message: str,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.rejection = reason

    @property
    def reason(self) -> str:
        return self.rejection.value


class StepUpRequired(LedgerError):
    """High-value transfer attempted without a one-time code"""

    code = "step_up_required"


class InvalidOrExpired(LedgerError):
    """One-time code missing from the store, wrong or past its expiry"""

    code = "invalid_or_expired"


class Busy(LedgerError):
    """Lock wait timed out; the whole operation may be retried"""

    code = "busy"
    retryable = True


class OperationCancelled(LedgerError):
    """The caller cancelled the request before its unit committed"""

    code = "cancelled"
    retryable = True


class StorageFailure(LedgerError):
    """Durable store unreachable or commit failed; the unit was rolled back"""

    code = "storage_failure"


class NotFound(LedgerError):
    """Unknown account"""

    code = "not_found"


class ChallengeDeliveryFailed(LedgerError):
    """The side-channel notifier could not deliver a one-time code"""

    code = "challenge_delivery_failed"
    retryable = True
