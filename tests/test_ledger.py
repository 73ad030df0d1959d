"""
Test suite for the ledger data model
"""

import pytest
from decimal import Decimal
from datetime import datetime, timezone

from core_ledger.ledger import (
    HistoryFilter, HistoryPage, TransactionKind, TransactionRecord,
    generate_reference, matches_history_filter
)


NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def record(kind, sender=None, receiver=None, amount='100'):
    return TransactionRecord(
        reference=generate_reference(kind),
        kind=kind,
        amount=Decimal(amount),
        balance_after=Decimal('0'),
        created_at=NOW,
        sender_id=sender,
        receiver_id=receiver,
    )


class TestTransactionRecord:
    """Test record shape rules"""

    def test_parties_per_kind(self):
        assert record(TransactionKind.DEPOSIT, receiver="A").primary_account_id == "A"
        assert record(TransactionKind.WITHDRAW, sender="A").primary_account_id == "A"
        assert record(TransactionKind.TRANSFER, "A", "B").primary_account_id == "A"

        with pytest.raises(ValueError):
            record(TransactionKind.DEPOSIT, sender="A", receiver="B")
        with pytest.raises(ValueError):
            record(TransactionKind.WITHDRAW, sender="A", receiver="B")
        with pytest.raises(ValueError):
            record(TransactionKind.TRANSFER, sender="A")

    def test_amount_must_be_positive(self):
        with pytest.raises(ValueError):
            record(TransactionKind.DEPOSIT, receiver="A", amount='0')

    def test_dict_round_trip_keeps_sequence(self):
        original = record(TransactionKind.TRANSFER, "A", "B").with_sequence(7)
        restored = TransactionRecord.from_dict(original.to_dict())
        assert restored == original

    def test_reference_prefixes(self):
        assert generate_reference(TransactionKind.DEPOSIT).startswith("DEP-")
        assert generate_reference(TransactionKind.WITHDRAW).startswith("WDR-")
        reference = generate_reference(TransactionKind.TRANSFER)
        assert reference.startswith("TRF-")
        assert len(reference) == 16


class TestHistoryFilter:

    def test_parse(self):
        assert HistoryFilter.parse(None) == HistoryFilter.ALL
        assert HistoryFilter.parse(" Sent ") == HistoryFilter.SENT
        with pytest.raises(ValueError):
            HistoryFilter.parse("refunds")

    def test_matching(self):
        transfer = record(TransactionKind.TRANSFER, "A", "B")
        deposit = record(TransactionKind.DEPOSIT, receiver="A")

        assert matches_history_filter(transfer, "A", HistoryFilter.SENT)
        assert not matches_history_filter(transfer, "A", HistoryFilter.RECEIVED)
        assert matches_history_filter(transfer, "B", HistoryFilter.RECEIVED)
        assert matches_history_filter(transfer, "B", HistoryFilter.TRANSFER)
        assert matches_history_filter(deposit, "A", HistoryFilter.ALL)
        assert not matches_history_filter(deposit, "A", HistoryFilter.WITHDRAW)
        assert not matches_history_filter(deposit, "B", HistoryFilter.ALL)

    def test_total_pages(self):
        assert HistoryPage(records=[], total=0, page=1, page_size=10).total_pages == 0
        assert HistoryPage(records=[], total=21, page=1, page_size=10).total_pages == 3
