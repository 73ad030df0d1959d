"""
Limit Policy Module

Pure evaluation of the ledger's business rules: withdrawal bounds, the
single-transfer cap, the minimum-balance floor, the daily transfer cap and
the step-up threshold. Checks never touch storage; the engine feeds them the
state it read under lock and raises the rejection they return.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional

from .currency import format_amount
from .errors import LedgerError, PolicyRejected, RejectionReason, ValidationError
from .ledger import AccountSnapshot


# Reasons raised as ValidationError (input shape); all others are PolicyRejected
VALIDATION_REASONS = {
    RejectionReason.INVALID_AMOUNT,
    RejectionReason.BELOW_MINIMUM_WITHDRAWAL,
    RejectionReason.ABOVE_WITHDRAWAL_LIMIT,
    RejectionReason.MISSING_RECIPIENT,
    RejectionReason.STEP_UP_NOT_REQUIRED,
    RejectionReason.INVALID_PAGINATION,
    RejectionReason.INVALID_FILTER,
}


@dataclass
class Rejection:
    """A refused operation with its reason and actionable details"""
    reason: RejectionReason
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_error(self) -> LedgerError:
        if self.reason in VALIDATION_REASONS:
            return ValidationError(self.reason, self.message, self.details)
        return PolicyRejected(self.reason, self.message, self.details)


@dataclass
class LimitPolicy:
    """Named, overridable business thresholds in base currency units"""
    min_withdrawal: Decimal = Decimal('100')
    max_withdrawal: Decimal = Decimal('50000')
    max_single_transfer: Decimal = Decimal('20000')
    min_balance_after_transfer: Decimal = Decimal('1000')
    daily_transfer_limit: Decimal = Decimal('50000')
    step_up_threshold: Decimal = Decimal('10000')
    # Largest amount or balance the stores can hold (NUMERIC(15, 2))
    max_amount: Decimal = Decimal('9999999999999.99')

    @classmethod
    def from_config(cls, config) -> 'LimitPolicy':
        return cls(
            min_withdrawal=config.min_withdrawal,
            max_withdrawal=config.max_withdrawal,
            max_single_transfer=config.max_single_transfer,
            min_balance_after_transfer=config.min_balance_after_transfer,
            daily_transfer_limit=config.daily_transfer_limit,
            step_up_threshold=config.step_up_threshold,
            max_amount=config.max_amount,
        )

    # Deposits

    def check_deposit(self, amount: Decimal) -> Optional[Rejection]:
        """Deposits only need a positive amount; frozen accounts may still receive them"""
        if amount <= Decimal('0'):
            return Rejection(RejectionReason.INVALID_AMOUNT, "Invalid deposit amount",
                             {"amount": amount})
        if amount > self.max_amount:
            return Rejection(
                RejectionReason.INVALID_AMOUNT,
                f"Amount exceeds the maximum of {format_amount(self.max_amount)}",
                {"amount": amount, "max_amount": self.max_amount}
            )
        return None

    def check_credit(self, account: AccountSnapshot, amount: Decimal) -> Optional[Rejection]:
        """Credited balance must stay within what the ledger can store"""
        if account.balance + amount > self.max_amount:
            return Rejection(
                RejectionReason.INVALID_AMOUNT,
                f"Resulting balance would exceed the maximum of {format_amount(self.max_amount)}",
                {"balance": account.balance, "amount": amount, "max_amount": self.max_amount}
            )
        return None

    # Withdrawals

    def check_withdraw_amount(self, amount: Decimal) -> Optional[Rejection]:
        if amount <= Decimal('0'):
            return Rejection(RejectionReason.INVALID_AMOUNT, "Invalid withdrawal amount",
                             {"amount": amount})
        if amount < self.min_withdrawal:
            return Rejection(
                RejectionReason.BELOW_MINIMUM_WITHDRAWAL,
                f"Minimum withdrawal is {format_amount(self.min_withdrawal)}",
                {"amount": amount, "min_withdrawal": self.min_withdrawal}
            )
        if amount > self.max_withdrawal:
            return Rejection(
                RejectionReason.ABOVE_WITHDRAWAL_LIMIT,
                f"Withdrawal limit exceeded. Max: {format_amount(self.max_withdrawal)}",
                {"amount": amount, "max_withdrawal": self.max_withdrawal}
            )
        return None

    def check_withdraw_state(self, account: AccountSnapshot, amount: Decimal) -> Optional[Rejection]:
        """Checks against the freshly locked balance"""
        if account.is_frozen:
            return Rejection(RejectionReason.ACCOUNT_FROZEN,
                             "Account is frozen. Please contact support.",
                             {"account_id": account.account_id})
        if account.balance < amount:
            return Rejection(
                RejectionReason.INSUFFICIENT_FUNDS,
                "Insufficient funds for this withdrawal",
                {"balance": account.balance, "amount": amount}
            )
        return None

    # Transfers

    def requires_step_up(self, amount: Decimal) -> bool:
        return amount > self.step_up_threshold

    def check_transfer_amount(self, amount: Decimal) -> Optional[Rejection]:
        if amount <= Decimal('0'):
            return Rejection(RejectionReason.INVALID_AMOUNT, "Invalid transfer amount",
                             {"amount": amount})
        if amount > self.max_amount:
            return Rejection(
                RejectionReason.INVALID_AMOUNT,
                f"Amount exceeds the maximum of {format_amount(self.max_amount)}",
                {"amount": amount, "max_amount": self.max_amount}
            )
        if amount > self.max_single_transfer:
            return Rejection(
                RejectionReason.SINGLE_TRANSFER_LIMIT,
                f"Transfer exceeds single transaction limit of {format_amount(self.max_single_transfer)}",
                {"amount": amount, "max_single_transfer": self.max_single_transfer}
            )
        return None

    def check_self_transfer(self, sender_id: str, receiver_id: str) -> Optional[Rejection]:
        if sender_id == receiver_id:
            return Rejection(RejectionReason.SELF_TRANSFER, "Self-transfers not permitted",
                             {"account_id": sender_id})
        return None

    def check_transfer_state(self, sender: AccountSnapshot, amount: Decimal) -> Optional[Rejection]:
        """Frozen flag and minimum-balance floor under the sender's lock"""
        if sender.is_frozen:
            return Rejection(RejectionReason.ACCOUNT_FROZEN,
                             "Your account is currently restricted",
                             {"account_id": sender.account_id})
        if sender.balance - amount < self.min_balance_after_transfer:
            return Rejection(
                RejectionReason.MINIMUM_BALANCE,
                f"Transaction rejected: Minimum balance of "
                f"{format_amount(self.min_balance_after_transfer)} must be maintained",
                {
                    "balance": sender.balance,
                    "amount": amount,
                    "min_balance": self.min_balance_after_transfer,
                    "max_transferable": max(sender.balance - self.min_balance_after_transfer,
                                            Decimal('0')),
                }
            )
        return None

    def remaining_daily_limit(self, daily_total: Decimal) -> Decimal:
        return max(self.daily_transfer_limit - daily_total, Decimal('0'))

    def check_daily_cap(self, daily_total: Decimal, amount: Decimal) -> Optional[Rejection]:
        if daily_total + amount > self.daily_transfer_limit:
            remaining = self.remaining_daily_limit(daily_total)
            return Rejection(
                RejectionReason.DAILY_LIMIT,
                f"Daily transfer limit exceeded. Remaining limit: {format_amount(remaining)}",
                {
                    "daily_total": daily_total,
                    "amount": amount,
                    "remaining_daily_limit": remaining,
                }
            )
        return None


def enforce(rejection: Optional[Rejection]) -> None:
    """Raise the error for a rejection, if any"""
    if rejection is not None:
        raise rejection.to_error()
