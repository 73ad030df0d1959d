"""
Transaction Engine Module

Orchestrates deposits, withdrawals and transfers: validates input against
the limit policy, locks the affected accounts inside one unit of work,
writes balances, appends the immutable transaction record and the audit
entries, then commits. Any failure inside the unit rolls it back before the
error reaches the caller; financial mutations are never retried here.
"""

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Optional
from zoneinfo import ZoneInfo

from .audit import AuditSink
from .currency import AmountLike, format_amount, to_amount
from .errors import (
    LedgerError, NotFound, PolicyRejected, RejectionReason, StepUpRequired,
    StorageFailure, ValidationError
)
from .ledger import (
    AccountSnapshot, HistoryFilter, HistoryPage, TransactionKind, TransactionRecord,
    generate_reference
)
from .limits import LimitPolicy, enforce
from .logging_config import correlation_scope, get_logger, log_action
from .notifications import OtpNotifier, OutboxOtpNotifier
from .otp import ChallengeStore, InMemoryChallengeStore
from .storage import CancellationToken, LedgerStore, LedgerUnit


class TransactionStage(Enum):
    """Per-request progress through the engine"""
    VALIDATING = "validating"
    LOCKING = "locking"
    MUTATING = "mutating"
    RECORDING = "recording"
    COMMITTED = "committed"
    ABORTED = "aborted"


@dataclass(frozen=True)
class TransactionOutcome:
    """Result of a committed money movement"""
    kind: TransactionKind
    amount: Decimal
    new_balance: Decimal
    reference: str
    sequence_id: int
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "amount": str(self.amount),
            "balance": str(self.new_balance),
            "reference_id": self.reference,
            "sequence_id": self.sequence_id,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class ChallengeReceipt:
    """Acknowledgement that a step-up code was sent out of band"""
    account_id: str
    expires_at: datetime
    accepted: bool = True


class _StageTracker:
    def __init__(self, operation: str, account_id: str):
        self.operation = operation
        self.account_id = account_id
        self.stage = TransactionStage.VALIDATING
        self.unit_id: Optional[str] = None

    def advance(self, stage: TransactionStage) -> None:
        self.stage = stage


def resolve_timezone(name: str) -> tzinfo:
    if not name or name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


class TransactionEngine:
    """
    Deposit, withdraw and transfer over an injected ledger store

    Lock order for transfers is ascending account id, so two transfers in
    opposite directions between the same accounts cannot deadlock. The sender
    is locked before its daily total is computed, which serializes concurrent
    transfers from one sender around the cap check.
    """

    def __init__(
        self,
        store: LedgerStore,
        policy: Optional[LimitPolicy] = None,
        challenges: Optional[ChallengeStore] = None,
        audit: Optional[AuditSink] = None,
        notifier: Optional[OtpNotifier] = None,
        clock: Optional[Callable[[], datetime]] = None,
        business_timezone: str = "UTC",
    ):
        self.store = store
        self.policy = policy or LimitPolicy()
        self.challenges = challenges or InMemoryChallengeStore()
        self.audit = audit or AuditSink(store)
        self.notifier = notifier or OutboxOtpNotifier()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.timezone = resolve_timezone(business_timezone)
        self.logger = get_logger("ledger.transactions")

    # Request plumbing

    @contextmanager
    def _track(self, operation: str, account_id: str):
        """Log how far a request got and why it stopped"""
        tracker = _StageTracker(operation, account_id)
        try:
            yield tracker
        except LedgerError as e:
            failed_at = tracker.stage
            tracker.advance(TransactionStage.ABORTED)
            level = "error" if isinstance(e, StorageFailure) else "info"
            log_action(
                self.logger, level, f"{operation} aborted at {failed_at.value}: {e.message}",
                user_id=account_id, action=operation, resource=f"account:{account_id}",
                correlation_id=tracker.unit_id,
                extra={"stage": failed_at.value, "code": e.code, "reason": e.reason}
            )
            raise

    @contextmanager
    def _unit(self, tracker: _StageTracker, cancel_token: Optional[CancellationToken]):
        """Unit of work that always rolls back before an error surfaces"""
        tracker.advance(TransactionStage.LOCKING)
        unit = self.store.begin_unit(cancel_token)
        tracker.unit_id = unit.unit_id
        with correlation_scope(unit.unit_id):
            try:
                yield unit
                # Cancellation is honoured up to the commit point, never after
                unit.check_cancelled()
                self.store.commit(unit)
            except LedgerError:
                self.store.rollback(unit)
                raise
            except Exception as e:
                self.store.rollback(unit)
                self.logger.exception(f"Unexpected failure in {tracker.operation} unit {unit.unit_id}")
                raise StorageFailure("Transaction failure on server. No funds were moved.") from e
            except BaseException:
                self.store.rollback(unit)
                raise
        tracker.advance(TransactionStage.COMMITTED)

    def _day_start(self) -> datetime:
        """Start of the current calendar day in the business timezone, as UTC"""
        local_now = self.clock().astimezone(self.timezone)
        midnight = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
        return midnight.astimezone(timezone.utc)

    def _committed(self, tracker: _StageTracker, outcome: TransactionOutcome,
                   extra: Optional[Dict[str, Any]] = None) -> None:
        details = {"reference": outcome.reference, "amount": str(outcome.amount),
                   "new_balance": str(outcome.new_balance)}
        details.update(extra or {})
        log_action(
            self.logger, "info", f"{tracker.operation} committed",
            user_id=tracker.account_id, action=tracker.operation,
            resource=f"transaction:{outcome.reference}",
            correlation_id=tracker.unit_id, extra=details
        )

    # Operations

    def deposit(self, account_id: str, amount: AmountLike, origin: Optional[str] = None,
                cancel_token: Optional[CancellationToken] = None) -> TransactionOutcome:
        """
        Credit an account

        Frozen accounts still accept deposits.

        Returns:
            Outcome carrying the account's new balance
        """
        with self._track("deposit", account_id) as tracker:
            value = to_amount(amount)
            enforce(self.policy.check_deposit(value))

            with self._unit(tracker, cancel_token) as unit:
                account = self.store.lock_account_for_update(unit, account_id)
                enforce(self.policy.check_credit(account, value))

                tracker.advance(TransactionStage.MUTATING)
                new_balance = account.balance + value
                self.store.set_balance(unit, account_id, new_balance)

                tracker.advance(TransactionStage.RECORDING)
                record = TransactionRecord(
                    reference=generate_reference(TransactionKind.DEPOSIT),
                    kind=TransactionKind.DEPOSIT,
                    amount=value,
                    balance_after=new_balance,
                    created_at=self.clock(),
                    receiver_id=account_id,
                    description="Deposit",
                )
                sequence_id = self.store.append_transaction(unit, record)
                self.audit.record(account_id, f"Credit: {format_amount(value)}", origin, unit)

            outcome = TransactionOutcome(TransactionKind.DEPOSIT, value, new_balance,
                                         record.reference, sequence_id, record.created_at)
            self._committed(tracker, outcome)
            return outcome

    def withdraw(self, account_id: str, amount: AmountLike, origin: Optional[str] = None,
                 cancel_token: Optional[CancellationToken] = None) -> TransactionOutcome:
        """
        Debit an account

        Amount bounds are checked before the store is touched; the frozen
        flag and sufficiency are re-checked against the locked balance.
        """
        with self._track("withdraw", account_id) as tracker:
            value = to_amount(amount)
            enforce(self.policy.check_withdraw_amount(value))

            with self._unit(tracker, cancel_token) as unit:
                account = self.store.lock_account_for_update(unit, account_id)
                enforce(self.policy.check_withdraw_state(account, value))

                tracker.advance(TransactionStage.MUTATING)
                new_balance = account.balance - value
                self.store.set_balance(unit, account_id, new_balance)

                tracker.advance(TransactionStage.RECORDING)
                record = TransactionRecord(
                    reference=generate_reference(TransactionKind.WITHDRAW),
                    kind=TransactionKind.WITHDRAW,
                    amount=value,
                    balance_after=new_balance,
                    created_at=self.clock(),
                    sender_id=account_id,
                    description="Withdrawal",
                )
                sequence_id = self.store.append_transaction(unit, record)
                self.audit.record(account_id, f"Debit: {format_amount(value)}", origin, unit)

            outcome = TransactionOutcome(TransactionKind.WITHDRAW, value, new_balance,
                                         record.reference, sequence_id, record.created_at)
            self._committed(tracker, outcome)
            return outcome

    def request_transfer_challenge(self, account_id: str, amount: AmountLike,
                                   origin: Optional[str] = None) -> ChallengeReceipt:
        """
        Issue a step-up code for a high-value transfer and send it out of band

        Raises:
            ValidationError: If the amount does not need step-up
            NotFound: If the account does not exist
            ChallengeDeliveryFailed: If the notifier could not deliver the code
        """
        with self._track("request_transfer_challenge", account_id):
            value = to_amount(amount)
            if not self.policy.requires_step_up(value):
                raise ValidationError(
                    RejectionReason.STEP_UP_NOT_REQUIRED,
                    f"OTP only required for transfers above {format_amount(self.policy.step_up_threshold)}",
                    {"amount": value, "step_up_threshold": self.policy.step_up_threshold}
                )
            if self.store.get_account(account_id) is None:
                raise NotFound(f"Account {account_id} not found", {"account_id": account_id})

            challenge = self.challenges.issue(account_id)
            self.notifier.send(challenge, value)
            log_action(
                self.logger, "info", "Step-up code sent",
                user_id=account_id, action="request_transfer_challenge",
                resource=f"account:{account_id}",
                extra={"amount": str(value), "origin": origin,
                       "expires_at": challenge.expires_at.isoformat()}
            )
            return ChallengeReceipt(account_id=account_id, expires_at=challenge.expires_at)

    def transfer(self, sender_id: str, receiver_identifier: str, amount: AmountLike,
                 otp_code: Optional[str] = None, origin: Optional[str] = None,
                 cancel_token: Optional[CancellationToken] = None) -> TransactionOutcome:
        """
        Move money between two accounts

        Args:
            sender_id: Authenticated caller's account
            receiver_identifier: Receiver account id or display name, any case
            amount: Amount in base currency units
            otp_code: Step-up code, required above the step-up threshold
            origin: Caller network address for the audit trail
            cancel_token: Cancellation handle honoured until commit

        Returns:
            Outcome carrying the sender's new balance and the reference code
        """
        with self._track("transfer", sender_id) as tracker:
            if receiver_identifier is None or not str(receiver_identifier).strip():
                raise ValidationError(RejectionReason.MISSING_RECIPIENT, "Invalid recipient or amount")
            value = to_amount(amount)
            enforce(self.policy.check_transfer_amount(value))

            receiver = self.store.resolve_account(str(receiver_identifier))
            if receiver is None:
                raise PolicyRejected(RejectionReason.RECIPIENT_NOT_FOUND,
                                     "Recipient account not found",
                                     {"recipient": receiver_identifier})
            enforce(self.policy.check_self_transfer(sender_id, receiver.account_id))

            if self.policy.requires_step_up(value):
                if not otp_code:
                    raise StepUpRequired(
                        "High-value transfer requires OTP validation",
                        {"amount": value, "step_up_threshold": self.policy.step_up_threshold}
                    )
                # Consumed before the unit begins; a later rejection still spends it
                self.challenges.verify_and_consume(sender_id, otp_code)

            with self._unit(tracker, cancel_token) as unit:
                locked = self._lock_pair(unit, sender_id, receiver.account_id)
                sender = locked[sender_id]
                receiver = locked[receiver.account_id]

                daily_total = self.store.sum_transfers_since(unit, sender_id, self._day_start())
                enforce(self.policy.check_daily_cap(daily_total, value))
                enforce(self.policy.check_transfer_state(sender, value))
                enforce(self.policy.check_credit(receiver, value))

                tracker.advance(TransactionStage.MUTATING)
                sender_balance = sender.balance - value
                receiver_balance = receiver.balance + value
                self.store.set_balance(unit, sender.account_id, sender_balance)
                self.store.set_balance(unit, receiver.account_id, receiver_balance)

                tracker.advance(TransactionStage.RECORDING)
                record = TransactionRecord(
                    reference=generate_reference(TransactionKind.TRANSFER),
                    kind=TransactionKind.TRANSFER,
                    amount=value,
                    balance_after=sender_balance,
                    created_at=self.clock(),
                    sender_id=sender.account_id,
                    receiver_id=receiver.account_id,
                    description=f"Transfer to {receiver.display_name}",
                )
                sequence_id = self.store.append_transaction(unit, record)
                shown = format_amount(value)
                self.audit.record(sender.account_id,
                                  f"Transfer Out: {shown} to {receiver.display_name}", origin, unit)
                self.audit.record(receiver.account_id,
                                  f"Transfer In: {shown} from {sender.display_name}", origin, unit)

            outcome = TransactionOutcome(TransactionKind.TRANSFER, value, sender_balance,
                                         record.reference, sequence_id, record.created_at)
            self._committed(tracker, outcome, {
                "receiver_id": receiver.account_id,
                "remaining_daily_limit": str(self.policy.remaining_daily_limit(daily_total + value)),
            })
            return outcome

    def _lock_pair(self, unit: LedgerUnit, sender_id: str,
                   receiver_id: str) -> Dict[str, AccountSnapshot]:
        """Lock both parties in ascending id order"""
        locked = {}
        for account_id in sorted((sender_id, receiver_id)):
            try:
                locked[account_id] = self.store.lock_account_for_update(unit, account_id)
            except NotFound:
                if account_id == receiver_id:
                    raise PolicyRejected(RejectionReason.RECIPIENT_NOT_FOUND,
                                         "Recipient account not found",
                                         {"recipient": receiver_id})
                raise
        return locked

    # Queries

    def history(self, account_id: str, history_filter: Any = HistoryFilter.ALL,
                page: int = 1, page_size: int = 10, max_page_size: int = 100) -> HistoryPage:
        """Page of an account's records, newest first, with counterparty names"""
        if not isinstance(history_filter, HistoryFilter):
            try:
                history_filter = HistoryFilter.parse(history_filter)
            except ValueError:
                raise ValidationError(
                    RejectionReason.INVALID_FILTER,
                    f"Unknown history filter '{history_filter}'",
                    {"allowed": ", ".join(f.value for f in HistoryFilter)}
                )
        if page < 1:
            raise ValidationError(RejectionReason.INVALID_PAGINATION,
                                  "Page must be 1 or greater", {"page": page})
        if page_size < 1 or page_size > max_page_size:
            raise ValidationError(RejectionReason.INVALID_PAGINATION,
                                  f"Page size must be between 1 and {max_page_size}",
                                  {"page_size": page_size})

        entries, total = self.store.query_history(
            account_id, history_filter, offset=(page - 1) * page_size, limit=page_size
        )
        return HistoryPage(records=entries, total=total, page=page,
                           page_size=page_size, filter=history_filter)

    def lookup_recipient(self, identifier: str) -> AccountSnapshot:
        """Resolve a transfer recipient by id or display name"""
        account = self.store.resolve_account(identifier)
        if account is None:
            raise NotFound("Recipient account not found", {"recipient": identifier})
        return account
