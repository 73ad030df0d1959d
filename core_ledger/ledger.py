"""
Ledger Data Model

Accounts, immutable transaction records, audit entries and the history
views built from them. Transaction kinds form a closed set; every consumer
handles all three kinds explicitly.
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional


class TransactionKind(Enum):
    """Kinds of money movement the engine records"""
    DEPOSIT = "DEPOSIT"
    WITHDRAW = "WITHDRAW"
    TRANSFER = "TRANSFER"


class TransactionStatus(Enum):
    """Settlement status of a transaction record"""
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    PENDING = "PENDING"


class HistoryFilter(Enum):
    """History narrowing options"""
    ALL = "all"
    SENT = "sent"            # Transfers where the account is the sender
    RECEIVED = "received"    # Transfers where the account is the receiver
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    TRANSFER = "transfer"

    @classmethod
    def parse(cls, value: Optional[str]) -> 'HistoryFilter':
        """Case-insensitive parse; empty means ALL"""
        if not value:
            return cls.ALL
        return cls(value.strip().lower())

    @property
    def kind(self) -> Optional[TransactionKind]:
        """Transaction kind this filter narrows to, if any"""
        if self in (HistoryFilter.SENT, HistoryFilter.RECEIVED, HistoryFilter.TRANSFER):
            return TransactionKind.TRANSFER
        if self == HistoryFilter.DEPOSIT:
            return TransactionKind.DEPOSIT
        if self == HistoryFilter.WITHDRAW:
            return TransactionKind.WITHDRAW
        return None


_REFERENCE_PREFIXES = {
    TransactionKind.DEPOSIT: "DEP",
    TransactionKind.WITHDRAW: "WDR",
    TransactionKind.TRANSFER: "TRF",
}


def generate_reference(kind: TransactionKind) -> str:
    """Short human-shareable reference code, e.g. TRF-3F9A0C7D21BE"""
    return f"{_REFERENCE_PREFIXES[kind]}-{uuid.uuid4().hex[:12].upper()}"


@dataclass(frozen=True)
class AccountSnapshot:
    """Account state as read by the store (under lock for mutations)"""
    account_id: str
    display_name: str
    balance: Decimal
    is_frozen: bool = False


@dataclass(frozen=True)
class TransactionRecord:
    """
    Immutable ledger entry

    Sender is None for deposits, receiver is None for withdrawals.
    balance_after is the primary actor's balance: the receiver for a deposit,
    the sender for withdrawals and transfers.
    """
    reference: str
    kind: TransactionKind
    amount: Decimal
    balance_after: Decimal
    created_at: datetime
    sender_id: Optional[str] = None
    receiver_id: Optional[str] = None
    status: TransactionStatus = TransactionStatus.SUCCESS
    description: str = ""
    sequence_id: Optional[int] = None

    def __post_init__(self):
        if self.amount <= Decimal('0'):
            raise ValueError("Transaction amount must be positive")

        if self.kind == TransactionKind.DEPOSIT:
            if self.sender_id is not None or not self.receiver_id:
                raise ValueError("Deposit records have a receiver and no sender")
        elif self.kind == TransactionKind.WITHDRAW:
            if self.receiver_id is not None or not self.sender_id:
                raise ValueError("Withdrawal records have a sender and no receiver")
        elif self.kind == TransactionKind.TRANSFER:
            if not self.sender_id or not self.receiver_id:
                raise ValueError("Transfer records need both sender and receiver")
        else:
            raise ValueError(f"Unsupported transaction kind: {self.kind}")

    @property
    def primary_account_id(self) -> str:
        """Account whose balance is captured in balance_after"""
        if self.kind == TransactionKind.DEPOSIT:
            return self.receiver_id
        return self.sender_id

    def with_sequence(self, sequence_id: int) -> 'TransactionRecord':
        """Copy carrying the store-assigned sequence id"""
        return replace(self, sequence_id=sequence_id)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage and responses"""
        return {
            'sequence_id': self.sequence_id,
            'reference': self.reference,
            'kind': self.kind.value,
            'sender_id': self.sender_id,
            'receiver_id': self.receiver_id,
            'amount': str(self.amount),
            'balance_after': str(self.balance_after),
            'status': self.status.value,
            'description': self.description,
            'created_at': self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TransactionRecord':
        """Create instance from dictionary"""
        created_at = data['created_at']
        if isinstance(created_at, str):
            created_at = datetime.fromisoformat(created_at)

        return cls(
            sequence_id=data.get('sequence_id'),
            reference=data['reference'],
            kind=TransactionKind(data['kind']),
            sender_id=data.get('sender_id'),
            receiver_id=data.get('receiver_id'),
            amount=Decimal(str(data['amount'])),
            balance_after=Decimal(str(data['balance_after'])),
            status=TransactionStatus(data.get('status', TransactionStatus.SUCCESS.value)),
            description=data.get('description') or "",
            created_at=created_at,
        )


@dataclass(frozen=True)
class AuditEntry:
    """Append-only record of an action taken against an account"""
    action: str
    created_at: datetime
    account_id: Optional[str] = None
    origin: Optional[str] = None
    entry_id: Optional[int] = None


@dataclass(frozen=True)
class HistoryEntry:
    """Transaction record with counterparty display names resolved"""
    record: TransactionRecord
    sender_name: Optional[str] = None
    receiver_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = self.record.to_dict()
        result['sender_name'] = self.sender_name
        result['receiver_name'] = self.receiver_name
        return result


@dataclass
class HistoryPage:
    """One page of an account's history, newest first"""
    records: List[HistoryEntry]
    total: int
    page: int
    page_size: int
    filter: HistoryFilter = HistoryFilter.ALL

    @property
    def total_pages(self) -> int:
        if self.total == 0:
            return 0
        return (self.total + self.page_size - 1) // self.page_size


@dataclass
class LedgerStats:
    """Aggregate figures across the whole ledger"""
    account_count: int
    total_balance: Decimal
    transaction_count: int
    by_kind: Dict[str, int] = field(default_factory=dict)


def matches_history_filter(record: TransactionRecord, account_id: str,
                           history_filter: HistoryFilter) -> bool:
    """Whether a record belongs to an account's history under a filter"""
    if history_filter == HistoryFilter.SENT:
        return record.kind == TransactionKind.TRANSFER and record.sender_id == account_id
    if history_filter == HistoryFilter.RECEIVED:
        return record.kind == TransactionKind.TRANSFER and record.receiver_id == account_id

    involved = record.sender_id == account_id or record.receiver_id == account_id
    if not involved:
        return False
    kind = history_filter.kind
    return kind is None or record.kind == kind
