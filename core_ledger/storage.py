"""
Ledger Store Module

Provides the abstract ledger store interface (units of work, row locks,
balance writes, append-only transaction and audit logs) and an in-memory
implementation for tests and single-process use. SQL backends live in
sql_storage. All monetary values are Decimal.
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Set, Tuple
import threading
import time
import uuid

from .errors import Busy, NotFound, OperationCancelled, StorageFailure
from .ledger import (
    AccountSnapshot, AuditEntry, HistoryEntry, HistoryFilter, LedgerStats,
    TransactionKind, TransactionRecord, matches_history_filter
)
from .logging_config import get_logger


logger = get_logger("ledger.storage")


class CancellationToken:
    """
    Cooperative cancellation handle passed through the lock-wait boundary

    A token may carry a deadline; an elapsed deadline surfaces as Busy
    (retryable), an explicit cancel() as OperationCancelled.
    """

    def __init__(self, timeout: Optional[float] = None):
        self._event = threading.Event()
        self.deadline = time.monotonic() + timeout if timeout is not None else None

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, None if unbounded"""
        if self.deadline is None:
            return None
        return max(self.deadline - time.monotonic(), 0.0)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCancelled("Request was cancelled before commit")
        if self.deadline is not None and time.monotonic() >= self.deadline:
            raise Busy("Request deadline elapsed while waiting for the ledger",
                       {"retry_after_seconds": 1})


class LedgerUnit:
    """Handle for one unit of work against the ledger store"""

    def __init__(self, cancel_token: Optional[CancellationToken] = None):
        self.unit_id = uuid.uuid4().hex[:12]
        self.cancel_token = cancel_token
        self.locked: Set[str] = set()
        self.closed = False

    def ensure_open(self) -> None:
        if self.closed:
            raise StorageFailure(f"Unit {self.unit_id} is already finished")

    def ensure_locked(self, account_id: str) -> None:
        if account_id not in self.locked:
            raise StorageFailure(
                f"Account {account_id} must be locked in unit {self.unit_id} before writing"
            )

    def check_cancelled(self) -> None:
        if self.cancel_token:
            self.cancel_token.raise_if_cancelled()


class LedgerStore(ABC):
    """Abstract interface for ledger store backends"""

    def __init__(self, lock_timeout: float = 5.0):
        self.lock_timeout = lock_timeout

    # Provisioning and passthrough writes (owned by external collaborators)

    @abstractmethod
    def create_account(self, account_id: str, display_name: str,
                       balance: Decimal = Decimal('0'),
                       is_frozen: bool = False) -> AccountSnapshot:
        """Provision an account; ids and display names are unique"""
        pass

    @abstractmethod
    def set_frozen(self, account_id: str, frozen: bool) -> None:
        """Set or clear the frozen flag"""
        pass

    # Committed reads

    @abstractmethod
    def get_account(self, account_id: str) -> Optional[AccountSnapshot]:
        """Committed account state, without locking"""
        pass

    @abstractmethod
    def resolve_account(self, identifier: str) -> Optional[AccountSnapshot]:
        """Case-insensitive match on account id, then on display name"""
        pass

    @abstractmethod
    def query_history(self, account_id: str, history_filter: HistoryFilter,
                      offset: int, limit: int) -> Tuple[List[HistoryEntry], int]:
        """Page of an account's committed records, newest first, plus the total"""
        pass

    @abstractmethod
    def recent_transactions(self, limit: int) -> List[HistoryEntry]:
        """Most recent committed records across the ledger"""
        pass

    @abstractmethod
    def audit_entries(self, account_id: Optional[str] = None,
                      limit: Optional[int] = None) -> List[AuditEntry]:
        """Committed audit entries, oldest first"""
        pass

    @abstractmethod
    def stats(self) -> LedgerStats:
        """Aggregate account and transaction figures"""
        pass

    # Unit of work

    @abstractmethod
    def begin_unit(self, cancel_token: Optional[CancellationToken] = None) -> LedgerUnit:
        """Open a unit of work"""
        pass

    @abstractmethod
    def lock_account_for_update(self, unit: LedgerUnit, account_id: str) -> AccountSnapshot:
        """
        Take an exclusive lock on an account held until the unit ends

        Raises:
            NotFound: If the account does not exist
            Busy: If the lock could not be acquired within lock_timeout
            OperationCancelled: If the unit's token was cancelled while waiting
        """
        pass

    @abstractmethod
    def set_balance(self, unit: LedgerUnit, account_id: str, new_balance: Decimal) -> None:
        """Write a balance; the account must be locked in this unit"""
        pass

    @abstractmethod
    def append_transaction(self, unit: LedgerUnit, record: TransactionRecord) -> int:
        """Append a transaction record and return its sequence id"""
        pass

    @abstractmethod
    def sum_transfers_since(self, unit: LedgerUnit, account_id: str, since: datetime) -> Decimal:
        """Sum of committed TRANSFER amounts sent by account_id at or after since"""
        pass

    @abstractmethod
    def append_audit(self, unit: LedgerUnit, entry: AuditEntry) -> None:
        """Append an audit entry as part of the unit"""
        pass

    @abstractmethod
    def commit(self, unit: LedgerUnit) -> None:
        """Make every write in the unit durable and release its locks"""
        pass

    @abstractmethod
    def rollback(self, unit: LedgerUnit) -> None:
        """Void every write in the unit and release its locks; safe to repeat"""
        pass

    def close(self) -> None:
        """Close storage connections (default no-op)"""
        pass

    @contextmanager
    def unit_of_work(self, cancel_token: Optional[CancellationToken] = None):
        """Context manager that commits on success and rolls back on any error"""
        unit = self.begin_unit(cancel_token)
        try:
            yield unit
            self.commit(unit)
        except BaseException:
            self.rollback(unit)
            raise

    @staticmethod
    def _check_new_balance(account_id: str, new_balance: Decimal) -> None:
        if new_balance < Decimal('0'):
            raise StorageFailure(f"Refusing negative balance for account {account_id}")


class _MemoryUnit(LedgerUnit):
    """Staged writes of an in-memory unit"""

    def __init__(self, cancel_token: Optional[CancellationToken] = None):
        super().__init__(cancel_token)
        self.balance_writes: Dict[str, Decimal] = {}
        self.appended: List[TransactionRecord] = []
        self.audit: List[AuditEntry] = []


class InMemoryLedgerStore(LedgerStore):
    """
    In-memory ledger store for testing and single-process deployments

    Every account owns a row lock; a unit's writes are staged privately and
    applied atomically on commit, so other units only ever see committed data.
    """

    LOCK_POLL_INTERVAL = 0.05

    def __init__(self, lock_timeout: float = 5.0):
        super().__init__(lock_timeout)
        self._accounts: Dict[str, Dict] = {}
        self._row_locks: Dict[str, threading.Lock] = {}
        self._transactions: List[TransactionRecord] = []
        self._references: Set[str] = set()
        self._audit: List[AuditEntry] = []
        self._next_sequence = 1
        self._next_audit_id = 1
        self._guard = threading.RLock()

    def create_account(self, account_id: str, display_name: str,
                       balance: Decimal = Decimal('0'),
                       is_frozen: bool = False) -> AccountSnapshot:
        if balance < Decimal('0'):
            raise ValueError("Opening balance cannot be negative")
        with self._guard:
            if account_id in self._accounts:
                raise ValueError(f"Account {account_id} already exists")
            if any(a['display_name'].upper() == display_name.upper()
                   for a in self._accounts.values()):
                raise ValueError(f"Display name {display_name} is already taken")
            self._accounts[account_id] = {
                'display_name': display_name,
                'balance': balance,
                'is_frozen': is_frozen,
            }
            self._row_locks[account_id] = threading.Lock()
            return self._snapshot(account_id)

    def set_frozen(self, account_id: str, frozen: bool) -> None:
        with self._guard:
            if account_id not in self._accounts:
                raise NotFound(f"Account {account_id} not found", {"account_id": account_id})
            self._accounts[account_id]['is_frozen'] = frozen

    def get_account(self, account_id: str) -> Optional[AccountSnapshot]:
        with self._guard:
            if account_id not in self._accounts:
                return None
            return self._snapshot(account_id)

    def resolve_account(self, identifier: str) -> Optional[AccountSnapshot]:
        normalized = (identifier or "").strip().upper()
        if not normalized:
            return None
        with self._guard:
            for account_id in self._accounts:
                if account_id.upper() == normalized:
                    return self._snapshot(account_id)
            for account_id, account in self._accounts.items():
                if account['display_name'].upper() == normalized:
                    return self._snapshot(account_id)
        return None

    def query_history(self, account_id: str, history_filter: HistoryFilter,
                      offset: int, limit: int) -> Tuple[List[HistoryEntry], int]:
        with self._guard:
            matched = [r for r in self._transactions
                       if matches_history_filter(r, account_id, history_filter)]
            matched.sort(key=lambda r: (r.created_at, r.sequence_id), reverse=True)
            page = matched[offset:offset + limit]
            return [self._history_entry(r) for r in page], len(matched)

    def recent_transactions(self, limit: int) -> List[HistoryEntry]:
        with self._guard:
            ordered = sorted(self._transactions,
                             key=lambda r: (r.created_at, r.sequence_id), reverse=True)
            return [self._history_entry(r) for r in ordered[:limit]]

    def audit_entries(self, account_id: Optional[str] = None,
                      limit: Optional[int] = None) -> List[AuditEntry]:
        with self._guard:
            entries = [e for e in self._audit
                       if account_id is None or e.account_id == account_id]
        if limit:
            entries = entries[-limit:]
        return entries

    def stats(self) -> LedgerStats:
        with self._guard:
            by_kind = {kind.value: 0 for kind in TransactionKind}
            for record in self._transactions:
                by_kind[record.kind.value] += 1
            return LedgerStats(
                account_count=len(self._accounts),
                total_balance=sum((a['balance'] for a in self._accounts.values()), Decimal('0')),
                transaction_count=len(self._transactions),
                by_kind=by_kind,
            )

    def begin_unit(self, cancel_token: Optional[CancellationToken] = None) -> LedgerUnit:
        if cancel_token:
            cancel_token.raise_if_cancelled()
        return _MemoryUnit(cancel_token)

    def lock_account_for_update(self, unit: LedgerUnit, account_id: str) -> AccountSnapshot:
        unit.ensure_open()
        with self._guard:
            row_lock = self._row_locks.get(account_id)
        if row_lock is None:
            raise NotFound(f"Account {account_id} not found", {"account_id": account_id})

        if account_id not in unit.locked:
            self._acquire(unit, account_id, row_lock)
            unit.locked.add(account_id)

        with self._guard:
            snapshot = self._snapshot(account_id)
        staged = unit.balance_writes.get(account_id)
        if staged is not None:
            snapshot = AccountSnapshot(snapshot.account_id, snapshot.display_name,
                                       staged, snapshot.is_frozen)
        return snapshot

    def set_balance(self, unit: LedgerUnit, account_id: str, new_balance: Decimal) -> None:
        unit.ensure_open()
        unit.ensure_locked(account_id)
        self._check_new_balance(account_id, new_balance)
        unit.balance_writes[account_id] = new_balance

    def append_transaction(self, unit: LedgerUnit, record: TransactionRecord) -> int:
        unit.ensure_open()
        with self._guard:
            for account_id in (record.sender_id, record.receiver_id):
                if account_id is not None and account_id not in self._accounts:
                    raise StorageFailure(f"Record references unknown account {account_id}")
            if record.reference in self._references or any(
                    r.reference == record.reference for r in unit.appended):
                raise StorageFailure(f"Duplicate reference code {record.reference}")
            sequence_id = self._next_sequence
            self._next_sequence += 1
        unit.appended.append(record.with_sequence(sequence_id))
        return sequence_id

    def sum_transfers_since(self, unit: LedgerUnit, account_id: str, since: datetime) -> Decimal:
        unit.ensure_open()
        with self._guard:
            return sum(
                (r.amount for r in self._transactions
                 if r.kind == TransactionKind.TRANSFER
                 and r.sender_id == account_id
                 and r.created_at >= since),
                Decimal('0')
            )

    def append_audit(self, unit: LedgerUnit, entry: AuditEntry) -> None:
        unit.ensure_open()
        unit.audit.append(entry)

    def commit(self, unit: LedgerUnit) -> None:
        unit.ensure_open()
        try:
            with self._guard:
                for account_id, balance in unit.balance_writes.items():
                    self._accounts[account_id]['balance'] = balance
                for record in unit.appended:
                    self._transactions.append(record)
                    self._references.add(record.reference)
                for entry in unit.audit:
                    self._audit.append(AuditEntry(
                        action=entry.action,
                        created_at=entry.created_at,
                        account_id=entry.account_id,
                        origin=entry.origin,
                        entry_id=self._next_audit_id,
                    ))
                    self._next_audit_id += 1
        finally:
            self._finish(unit)

    def rollback(self, unit: LedgerUnit) -> None:
        if unit.closed:
            return
        unit.balance_writes.clear()
        unit.appended.clear()
        unit.audit.clear()
        self._finish(unit)

    def _acquire(self, unit: LedgerUnit, account_id: str, row_lock: threading.Lock) -> None:
        """Wait for a row lock, bounded by lock_timeout and the unit's token"""
        deadline = time.monotonic() + self.lock_timeout
        while True:
            unit.check_cancelled()
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning(f"Lock wait timed out for account {account_id} in unit {unit.unit_id}")
                raise Busy(f"Account {account_id} is busy, please retry",
                           {"account_id": account_id, "retry_after_seconds": 1})
            wait = remaining
            if unit.cancel_token:
                wait = min(wait, self.LOCK_POLL_INTERVAL)
            if row_lock.acquire(timeout=wait):
                return

    def _finish(self, unit: LedgerUnit) -> None:
        unit.closed = True
        with self._guard:
            for account_id in unit.locked:
                self._row_locks[account_id].release()
        unit.locked.clear()

    def _snapshot(self, account_id: str) -> AccountSnapshot:
        account = self._accounts[account_id]
        return AccountSnapshot(
            account_id=account_id,
            display_name=account['display_name'],
            balance=account['balance'],
            is_frozen=account['is_frozen'],
        )

    def _history_entry(self, record: TransactionRecord) -> HistoryEntry:
        def name_of(account_id):
            if account_id is None or account_id not in self._accounts:
                return None
            return self._accounts[account_id]['display_name']

        return HistoryEntry(
            record=record,
            sender_name=name_of(record.sender_id),
            receiver_name=name_of(record.receiver_id),
        )


def create_ledger_store(database_url: str, lock_timeout: float = 5.0,
                        pool_size: int = 5) -> LedgerStore:
    """
    Create a ledger store from a database URL

    Args:
        database_url: memory://, sqlite:///path/to.db or postgresql://...
        lock_timeout: Bounded lock wait in seconds
        pool_size: Connection pool size for PostgreSQL

    Returns:
        Ledger store instance
    """
    if database_url.startswith("memory://"):
        return InMemoryLedgerStore(lock_timeout=lock_timeout)

    if database_url.startswith("sqlite:///"):
        from .sql_storage import SQLiteLedgerStore
        return SQLiteLedgerStore(database_url[len("sqlite:///"):], lock_timeout=lock_timeout)

    if database_url.startswith(("postgresql://", "postgres://")):
        from .sql_storage import PostgreSQLLedgerStore
        return PostgreSQLLedgerStore(database_url, lock_timeout=lock_timeout,
                                     pool_size=pool_size)

    raise ValueError(f"Unsupported database URL: {database_url}")
