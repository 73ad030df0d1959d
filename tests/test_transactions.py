"""
Test suite for the transaction engine

Covers deposits, withdrawals, transfers with step-up codes, limit
rejections, rollback on failure and history queries.
"""

import pytest
from decimal import Decimal
from datetime import datetime, timedelta, timezone

from core_ledger.audit import AuditSink
from core_ledger.errors import (
    ChallengeDeliveryFailed, InvalidOrExpired, NotFound, OperationCancelled,
    PolicyRejected, RejectionReason, StepUpRequired, StorageFailure, ValidationError
)
from core_ledger.ledger import HistoryFilter, TransactionKind, TransactionStatus
from core_ledger.limits import LimitPolicy
from core_ledger.notifications import OtpNotifier, OutboxOtpNotifier
from core_ledger.otp import InMemoryChallengeStore
from core_ledger.storage import CancellationToken, InMemoryLedgerStore
from core_ledger.transactions import TransactionEngine, TransactionStage


class FakeClock:
    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def build_engine(store, clock=None, notifier=None, business_timezone="UTC"):
    return TransactionEngine(
        store,
        policy=LimitPolicy(),
        challenges=InMemoryChallengeStore(clock=clock),
        audit=AuditSink(store, clock=clock),
        notifier=notifier or OutboxOtpNotifier(),
        clock=clock,
        business_timezone=business_timezone,
    )


def balance(store, account_id):
    return store.get_account(account_id).balance


class TestExampleScenarios:
    """End-to-end scenarios on every backend"""

    def test_withdraw_then_transfer(self, store):
        store.create_account("ACC-A", "alice", Decimal('5000'))
        store.create_account("ACC-B", "bob", Decimal('2000'))
        engine = build_engine(store)

        outcome = engine.withdraw("ACC-A", 100)
        assert outcome.new_balance == Decimal('4900')
        entries, total = store.query_history("ACC-A", HistoryFilter.WITHDRAW, 0, 10)
        assert total == 1
        assert entries[0].record.status == TransactionStatus.SUCCESS
        assert entries[0].record.balance_after == Decimal('4900')

        outcome = engine.transfer("ACC-A", "BOB", 3000)
        assert outcome.new_balance == Decimal('1900')
        assert outcome.reference.startswith("TRF-")
        assert balance(store, "ACC-A") == Decimal('1900')
        assert balance(store, "ACC-B") == Decimal('5000')

        entries, total = store.query_history("ACC-B", HistoryFilter.RECEIVED, 0, 10)
        assert total == 1
        record = entries[0].record
        assert (record.sender_id, record.receiver_id) == ("ACC-A", "ACC-B")
        assert record.amount == Decimal('3000')
        assert record.reference == outcome.reference

    def test_high_value_transfer_with_step_up(self, store):
        store.create_account("ACC-A", "alice", Decimal('30000'))
        store.create_account("ACC-B", "bob", Decimal('2000'))
        notifier = OutboxOtpNotifier()
        engine = build_engine(store, notifier=notifier)

        with pytest.raises(StepUpRequired):
            engine.transfer("ACC-A", "ACC-B", 15000)

        engine.request_transfer_challenge("ACC-A", 15000)
        code = notifier.last_code("ACC-A")
        outcome = engine.transfer("ACC-A", "ACC-B", 15000, otp_code=code)
        assert outcome.new_balance == Decimal('15000')
        assert outcome.amount == Decimal('15000')

        with pytest.raises(InvalidOrExpired):
            engine.transfer("ACC-A", "ACC-B", 12000, otp_code=code)
        assert balance(store, "ACC-A") == Decimal('15000')
        assert balance(store, "ACC-B") == Decimal('17000')

    def test_transfer_writes_audit_pair(self, store):
        store.create_account("ACC-A", "alice", Decimal('5000'))
        store.create_account("ACC-B", "bob", Decimal('2000'))
        engine = build_engine(store)

        engine.transfer("ACC-A", "bob", 3000, origin="10.1.1.1")
        assert [e.action for e in store.audit_entries("ACC-A")] == ["Transfer Out: ₹3,000 to bob"]
        assert [e.action for e in store.audit_entries("ACC-B")] == ["Transfer In: ₹3,000 from alice"]
        assert store.audit_entries("ACC-B")[0].origin == "10.1.1.1"


class TestDepositsAndWithdrawals:
    """Test single-account operations"""

    def setup_method(self):
        self.store = InMemoryLedgerStore()
        self.store.create_account("ACC-A", "alice", Decimal('5000'))
        self.engine = build_engine(self.store)

    def test_deposit(self):
        outcome = self.engine.deposit("ACC-A", "250.50", origin="127.0.0.1")
        assert outcome.kind == TransactionKind.DEPOSIT
        assert outcome.new_balance == Decimal('5250.50')
        assert outcome.reference.startswith("DEP-")
        entries, _ = self.store.query_history("ACC-A", HistoryFilter.DEPOSIT, 0, 10)
        record = entries[0].record
        assert record.sender_id is None
        assert record.receiver_id == "ACC-A"
        assert [e.action for e in self.store.audit_entries("ACC-A")] == ["Credit: ₹250.50"]

    @pytest.mark.parametrize("amount", [0, -10, "abc", None])
    def test_deposit_rejects_bad_amounts(self, amount):
        with pytest.raises(ValidationError) as exc_info:
            self.engine.deposit("ACC-A", amount)
        assert exc_info.value.rejection == RejectionReason.INVALID_AMOUNT
        assert balance(self.store, "ACC-A") == Decimal('5000')

    @pytest.mark.parametrize("amount", ["1e27", "10000000000000"])
    def test_deposit_rejects_oversized_amounts(self, amount):
        with pytest.raises(ValidationError) as exc_info:
            self.engine.deposit("ACC-A", amount)
        assert exc_info.value.rejection == RejectionReason.INVALID_AMOUNT
        assert balance(self.store, "ACC-A") == Decimal('5000')
        assert self.store.stats().transaction_count == 0

    def test_deposit_cannot_overflow_balance(self):
        with pytest.raises(ValidationError) as exc_info:
            self.engine.deposit("ACC-A", Decimal('9999999999000'))
        assert exc_info.value.rejection == RejectionReason.INVALID_AMOUNT
        assert balance(self.store, "ACC-A") == Decimal('5000')

    def test_deposit_unknown_account(self):
        with pytest.raises(NotFound):
            self.engine.deposit("missing", 100)

    def test_withdraw_bounds(self):
        with pytest.raises(ValidationError) as exc_info:
            self.engine.withdraw("ACC-A", 99)
        assert exc_info.value.rejection == RejectionReason.BELOW_MINIMUM_WITHDRAWAL
        with pytest.raises(ValidationError) as exc_info:
            self.engine.withdraw("ACC-A", 50001)
        assert exc_info.value.rejection == RejectionReason.ABOVE_WITHDRAWAL_LIMIT

    def test_withdraw_insufficient_funds(self):
        with pytest.raises(PolicyRejected) as exc_info:
            self.engine.withdraw("ACC-A", 5001)
        assert exc_info.value.rejection == RejectionReason.INSUFFICIENT_FUNDS
        assert balance(self.store, "ACC-A") == Decimal('5000')

    def test_withdraw_entire_balance(self):
        outcome = self.engine.withdraw("ACC-A", 5000)
        assert outcome.new_balance == Decimal('0')
        assert [e.action for e in self.store.audit_entries("ACC-A")] == ["Debit: ₹5,000"]

    def test_frozen_account_accepts_deposits_only(self):
        self.store.set_frozen("ACC-A", True)
        assert self.engine.deposit("ACC-A", 100).new_balance == Decimal('5100')
        with pytest.raises(PolicyRejected) as exc_info:
            self.engine.withdraw("ACC-A", 100)
        assert exc_info.value.rejection == RejectionReason.ACCOUNT_FROZEN

    def test_cancelled_request_changes_nothing(self):
        token = CancellationToken()
        token.cancel()
        with pytest.raises(OperationCancelled):
            self.engine.deposit("ACC-A", 100, cancel_token=token)
        assert balance(self.store, "ACC-A") == Decimal('5000')
        assert self.store.stats().transaction_count == 0


class TestTransferRules:
    """Test transfer rejections"""

    def setup_method(self):
        self.store = InMemoryLedgerStore()
        self.store.create_account("ACC-A", "alice", Decimal('5000'))
        self.store.create_account("ACC-B", "bob", Decimal('2000'))
        self.notifier = OutboxOtpNotifier()
        self.engine = build_engine(self.store, notifier=self.notifier)

    def assert_unchanged(self):
        assert balance(self.store, "ACC-A") == Decimal('5000')
        assert balance(self.store, "ACC-B") == Decimal('2000')
        assert self.store.stats().transaction_count == 0

    def test_minimum_balance_floor(self):
        with pytest.raises(PolicyRejected) as exc_info:
            self.engine.transfer("ACC-A", "ACC-B", 4001)
        assert exc_info.value.rejection == RejectionReason.MINIMUM_BALANCE
        self.assert_unchanged()
        self.engine.transfer("ACC-A", "ACC-B", 4000)
        assert balance(self.store, "ACC-A") == Decimal('1000')

    def test_single_transfer_cap_checked_before_step_up(self):
        with pytest.raises(PolicyRejected) as exc_info:
            self.engine.transfer("ACC-A", "ACC-B", 20001)
        assert exc_info.value.rejection == RejectionReason.SINGLE_TRANSFER_LIMIT
        self.assert_unchanged()

    def test_oversized_transfer_amount(self):
        with pytest.raises(ValidationError) as exc_info:
            self.engine.transfer("ACC-A", "ACC-B", "1e27")
        assert exc_info.value.rejection == RejectionReason.INVALID_AMOUNT
        self.assert_unchanged()

    def test_transfer_cannot_overflow_receiver(self):
        self.store.create_account("ACC-R", "rich", Decimal('9999999999999'))
        with pytest.raises(ValidationError) as exc_info:
            self.engine.transfer("ACC-A", "ACC-R", 1000)
        assert exc_info.value.rejection == RejectionReason.INVALID_AMOUNT
        assert balance(self.store, "ACC-A") == Decimal('5000')
        assert balance(self.store, "ACC-R") == Decimal('9999999999999')

    def test_self_transfer_rejection_is_repeatable(self):
        reasons = []
        for identifier in ["ACC-A", "alice", "ALICE"]:
            with pytest.raises(PolicyRejected) as exc_info:
                self.engine.transfer("ACC-A", identifier, 100)
            reasons.append(exc_info.value.rejection)
        assert reasons == [RejectionReason.SELF_TRANSFER] * 3
        self.assert_unchanged()

    def test_unknown_recipient(self):
        with pytest.raises(PolicyRejected) as exc_info:
            self.engine.transfer("ACC-A", "nobody", 100)
        assert exc_info.value.rejection == RejectionReason.RECIPIENT_NOT_FOUND

    def test_missing_recipient(self):
        with pytest.raises(ValidationError) as exc_info:
            self.engine.transfer("ACC-A", "  ", 100)
        assert exc_info.value.rejection == RejectionReason.MISSING_RECIPIENT

    def test_frozen_sender(self):
        self.store.set_frozen("ACC-A", True)
        with pytest.raises(PolicyRejected) as exc_info:
            self.engine.transfer("ACC-A", "ACC-B", 100)
        assert exc_info.value.rejection == RejectionReason.ACCOUNT_FROZEN
        self.assert_unchanged()

    def test_frozen_receiver_still_credited(self):
        self.store.set_frozen("ACC-B", True)
        self.engine.transfer("ACC-A", "ACC-B", 100)
        assert balance(self.store, "ACC-B") == Decimal('2100')

    def test_wrong_code_keeps_challenge(self):
        self.store.create_account("ACC-C", "carol", Decimal('30000'))
        self.engine.request_transfer_challenge("ACC-C", 12000)
        code = self.notifier.last_code("ACC-C")
        with pytest.raises(InvalidOrExpired):
            self.engine.transfer("ACC-C", "ACC-B", 12000, otp_code="000000")
        self.engine.transfer("ACC-C", "ACC-B", 12000, otp_code=code)
        assert balance(self.store, "ACC-C") == Decimal('18000')

    def test_challenge_only_for_high_value(self):
        with pytest.raises(ValidationError) as exc_info:
            self.engine.request_transfer_challenge("ACC-A", 10000)
        assert exc_info.value.rejection == RejectionReason.STEP_UP_NOT_REQUIRED
        assert self.notifier.last_code("ACC-A") is None

    def test_challenge_for_unknown_account(self):
        with pytest.raises(NotFound):
            self.engine.request_transfer_challenge("missing", 15000)

    def test_delivery_failure_surfaces(self):
        class BrokenNotifier(OtpNotifier):
            def send(self, challenge, amount):
                raise ChallengeDeliveryFailed("gateway down")

        engine = build_engine(self.store, notifier=BrokenNotifier())
        with pytest.raises(ChallengeDeliveryFailed):
            engine.request_transfer_challenge("ACC-A", 15000)

    def test_conservation(self):
        before = balance(self.store, "ACC-A") + balance(self.store, "ACC-B")
        self.engine.transfer("ACC-A", "ACC-B", Decimal('1234.56'))
        self.engine.transfer("ACC-B", "ACC-A", Decimal('99.99'))
        after = balance(self.store, "ACC-A") + balance(self.store, "ACC-B")
        assert before == after


class TestDailyCap:
    """Test the calendar-day transfer cap"""

    def setup_method(self):
        self.clock = FakeClock(datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc))
        self.store = InMemoryLedgerStore()
        self.store.create_account("ACC-A", "alice", Decimal('200000'))
        self.store.create_account("ACC-B", "bob", Decimal('0'))

    def test_cap_resets_next_day(self):
        engine = build_engine(self.store, clock=self.clock)
        for _ in range(5):
            engine.transfer("ACC-A", "ACC-B", 10000)
            self.clock.advance(minutes=1)

        with pytest.raises(PolicyRejected) as exc_info:
            engine.transfer("ACC-A", "ACC-B", 1)
        assert exc_info.value.rejection == RejectionReason.DAILY_LIMIT
        assert exc_info.value.details["remaining_daily_limit"] == Decimal('0')

        self.clock.now = datetime(2026, 3, 2, 0, 0, 1, tzinfo=timezone.utc)
        engine.transfer("ACC-A", "ACC-B", 10000)
        assert balance(self.store, "ACC-B") == Decimal('60000')

    def test_remaining_limit_reported(self):
        engine = build_engine(self.store, clock=self.clock)
        engine.transfer("ACC-A", "ACC-B", 10000)
        engine.transfer("ACC-A", "ACC-B", 10000)
        engine.transfer("ACC-A", "ACC-B", 10000)
        engine.transfer("ACC-A", "ACC-B", 5000)
        with pytest.raises(PolicyRejected) as exc_info:
            engine.transfer("ACC-A", "ACC-B", 6000)
        assert exc_info.value.details["remaining_daily_limit"] == Decimal('5000')
        assert "Remaining limit: ₹5,000" in exc_info.value.message

    def test_window_follows_business_timezone(self):
        # 23:30 in Kolkata on 1 March is 18:00 UTC
        self.clock.now = datetime(2026, 3, 1, 18, 0, tzinfo=timezone.utc)
        engine = build_engine(self.store, clock=self.clock, business_timezone="Asia/Kolkata")
        for _ in range(5):
            engine.transfer("ACC-A", "ACC-B", 10000)

        # 00:30 on 2 March in Kolkata, a new business day
        self.clock.now = datetime(2026, 3, 1, 19, 0, tzinfo=timezone.utc)
        engine.transfer("ACC-A", "ACC-B", 10000)
        assert balance(self.store, "ACC-B") == Decimal('60000')


class FailingAppendStore(InMemoryLedgerStore):
    """Store that breaks after balances are written"""

    def append_transaction(self, unit, record):
        raise RuntimeError("disk full")


class FailingAuditStore(InMemoryLedgerStore):
    def append_audit(self, unit, entry):
        raise StorageFailure("audit table unavailable")


class TestFailureHandling:
    """Test rollback and best-effort audit"""

    def test_unexpected_failure_rolls_back(self):
        store = FailingAppendStore(lock_timeout=0.2)
        store.create_account("ACC-A", "alice", Decimal('5000'))
        store.create_account("ACC-B", "bob", Decimal('2000'))
        engine = build_engine(store)

        with pytest.raises(StorageFailure):
            engine.transfer("ACC-A", "ACC-B", 1000)
        assert balance(store, "ACC-A") == Decimal('5000')
        assert balance(store, "ACC-B") == Decimal('2000')

        # Locks were released by the rollback
        with store.unit_of_work() as unit:
            store.lock_account_for_update(unit, "ACC-A")
            store.lock_account_for_update(unit, "ACC-B")

    def test_audit_failure_does_not_fail_transfer(self):
        store = FailingAuditStore()
        store.create_account("ACC-A", "alice", Decimal('5000'))
        store.create_account("ACC-B", "bob", Decimal('2000'))
        engine = build_engine(store)

        outcome = engine.transfer("ACC-A", "ACC-B", 1000)
        assert outcome.new_balance == Decimal('4000')
        assert balance(store, "ACC-B") == Decimal('3000')

    def test_stages(self):
        assert [s.value for s in TransactionStage] == [
            "validating", "locking", "mutating", "recording", "committed", "aborted"
        ]


class TestHistory:
    """Test history queries through the engine"""

    def setup_method(self):
        self.clock = FakeClock(datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc))
        self.store = InMemoryLedgerStore()
        self.store.create_account("ACC-A", "alice", Decimal('50000'))
        self.store.create_account("ACC-B", "bob", Decimal('50000'))
        self.engine = build_engine(self.store, clock=self.clock)
        for i in range(12):
            self.clock.advance(minutes=1)
            if i % 3 == 0:
                self.engine.deposit("ACC-A", 100)
            elif i % 3 == 1:
                self.engine.transfer("ACC-A", "ACC-B", 100)
            else:
                self.engine.transfer("ACC-B", "ACC-A", 100)

    def test_pages(self):
        page = self.engine.history("ACC-A", "all", page=2, page_size=5)
        assert page.total == 12
        assert page.total_pages == 3
        assert len(page.records) == 5
        last = self.engine.history("ACC-A", "all", page=3, page_size=5)
        assert len(last.records) == 2

    def test_newest_first(self):
        page = self.engine.history("ACC-A", page_size=12)
        stamps = [e.record.created_at for e in page.records]
        assert stamps == sorted(stamps, reverse=True)

    def test_filters(self):
        assert self.engine.history("ACC-A", "Sent").total == 4
        assert self.engine.history("ACC-A", "received").total == 4
        assert self.engine.history("ACC-A", HistoryFilter.DEPOSIT).total == 4
        assert self.engine.history("ACC-B", "deposit").total == 0

    def test_counterparty_names(self):
        page = self.engine.history("ACC-A", "sent", page_size=1)
        assert page.records[0].receiver_name == "bob"
        assert page.records[0].to_dict()["sender_name"] == "alice"

    def test_invalid_arguments(self):
        with pytest.raises(ValidationError) as exc_info:
            self.engine.history("ACC-A", page=0)
        assert exc_info.value.rejection == RejectionReason.INVALID_PAGINATION
        with pytest.raises(ValidationError):
            self.engine.history("ACC-A", page_size=101)
        with pytest.raises(ValidationError) as exc_info:
            self.engine.history("ACC-A", "refunds")
        assert exc_info.value.rejection == RejectionReason.INVALID_FILTER

    def test_lookup_recipient(self):
        assert self.engine.lookup_recipient(" BOB ").account_id == "ACC-B"
        with pytest.raises(NotFound):
            self.engine.lookup_recipient("carol")
