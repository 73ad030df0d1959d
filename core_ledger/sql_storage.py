"""
SQL Ledger Store Module

SQLite and PostgreSQL ledger stores. Both keep accounts, the append-only
transactions table and the audit log in one database so a unit of work spans
all three tables. Amounts are stored as Decimal strings (SQLite) or NUMERIC
(PostgreSQL).

Locking differs by backend: PostgreSQL takes real row locks with
SELECT ... FOR UPDATE bounded by lock_timeout; SQLite has no row locks, so a
unit holds the database write lock (BEGIN IMMEDIATE) from start to finish.
"""

from abc import abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union
import sqlite3
import threading

from .errors import Busy, LedgerError, NotFound, StorageFailure
from .ledger import (
    AccountSnapshot, AuditEntry, HistoryEntry, HistoryFilter, LedgerStats,
    TransactionKind, TransactionRecord, TransactionStatus
)
from .logging_config import get_logger
from .storage import CancellationToken, LedgerStore, LedgerUnit


logger = get_logger("ledger.storage")


HISTORY_SELECT = """
    SELECT t.sequence_id, t.reference, t.sender_id, t.receiver_id, t.amount,
           t.kind, t.balance_after, t.status, t.description, t.created_at,
           s.display_name AS sender_name, r.display_name AS receiver_name
    FROM transactions t
    LEFT JOIN accounts s ON t.sender_id = s.account_id
    LEFT JOIN accounts r ON t.receiver_id = r.account_id
"""


def history_clause(account_id: str, history_filter: HistoryFilter) -> Tuple[str, List[Any]]:
    """WHERE clause and parameters selecting an account's history"""
    if history_filter == HistoryFilter.SENT:
        return "t.sender_id = ? AND t.kind = ?", [account_id, TransactionKind.TRANSFER.value]
    if history_filter == HistoryFilter.RECEIVED:
        return "t.receiver_id = ? AND t.kind = ?", [account_id, TransactionKind.TRANSFER.value]

    clause = "(t.sender_id = ? OR t.receiver_id = ?)"
    params: List[Any] = [account_id, account_id]
    if history_filter.kind is not None:
        clause += " AND t.kind = ?"
        params.append(history_filter.kind.value)
    return clause, params


class SQLUnit(LedgerUnit):
    """Unit of work bound to one database connection"""

    def __init__(self, connection, cancel_token: Optional[CancellationToken] = None):
        super().__init__(cancel_token)
        self.connection = connection


class SQLLedgerStore(LedgerStore):
    """Shared SQL for the relational ledger stores"""

    placeholder = "?"

    def _sql(self, statement: str) -> str:
        if self.placeholder == "?":
            return statement
        return statement.replace("?", self.placeholder)

    # Backend hooks

    @abstractmethod
    def _connect(self):
        """Obtain a connection"""
        pass

    @abstractmethod
    def _release(self, connection) -> None:
        """Return or close a connection"""
        pass

    @abstractmethod
    def _begin(self, connection, cancel_token: Optional[CancellationToken]) -> None:
        """Start a write transaction on the connection"""
        pass

    @abstractmethod
    def _lock_row(self, unit: SQLUnit, account_id: str) -> Optional[Dict[str, Any]]:
        """Select an account row with whatever exclusivity the backend offers"""
        pass

    @abstractmethod
    def _insert_transaction(self, cursor, params: Tuple) -> int:
        """Insert a transaction row and return its sequence id"""
        pass

    @abstractmethod
    def _translate(self, exc: Exception) -> LedgerError:
        """Map a driver exception onto the ledger taxonomy"""
        pass

    @abstractmethod
    def _sum_balances(self, cursor) -> Decimal:
        pass

    def _to_db_time(self, value: datetime):
        return value

    def _from_db_time(self, value) -> datetime:
        return value

    def _db_bool(self, value: bool):
        return value

    def _db_amount(self, value: Decimal):
        return value

    # Helpers

    @contextmanager
    def _guarded(self, operation: str):
        """Translate driver errors raised inside the block"""
        try:
            yield
        except LedgerError:
            raise
        except Exception as e:
            translated = self._translate(e)
            logger.error(f"{operation} failed: {e}")
            raise translated from e

    @contextmanager
    def _read(self):
        """Short-lived connection for committed reads"""
        connection = self._connect()
        try:
            cursor = connection.cursor()
            try:
                yield cursor
            finally:
                cursor.close()
        finally:
            self._release(connection)

    def _row_to_snapshot(self, row) -> AccountSnapshot:
        return AccountSnapshot(
            account_id=row['account_id'],
            display_name=row['display_name'],
            balance=Decimal(str(row['balance'])),
            is_frozen=bool(row['is_frozen']),
        )

    def _row_to_history(self, row) -> HistoryEntry:
        record = TransactionRecord(
            sequence_id=row['sequence_id'],
            reference=row['reference'],
            kind=TransactionKind(row['kind']),
            sender_id=row['sender_id'],
            receiver_id=row['receiver_id'],
            amount=Decimal(str(row['amount'])),
            balance_after=Decimal(str(row['balance_after'])),
            status=TransactionStatus(row['status']),
            description=row['description'] or "",
            created_at=self._from_db_time(row['created_at']),
        )
        return HistoryEntry(record=record, sender_name=row['sender_name'],
                            receiver_name=row['receiver_name'])

    # Provisioning and passthrough writes

    def create_account(self, account_id: str, display_name: str,
                       balance: Decimal = Decimal('0'),
                       is_frozen: bool = False) -> AccountSnapshot:
        if balance < Decimal('0'):
            raise ValueError("Opening balance cannot be negative")
        with self._guarded("create_account"):
            connection = self._connect()
        try:
            cursor = connection.cursor()
            try:
                cursor.execute(self._sql("""
                    INSERT INTO accounts (account_id, display_name, display_key, balance,
                                          is_frozen, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                """), (account_id, display_name, display_name.upper(), self._db_amount(balance),
                       self._db_bool(is_frozen), self._to_db_time(datetime.now(timezone.utc))))
                connection.commit()
            finally:
                cursor.close()
        except self._integrity_errors() as e:
            connection.rollback()
            raise ValueError(f"Account {account_id} or display name {display_name} already exists") from e
        except LedgerError:
            raise
        except Exception as e:
            connection.rollback()
            raise self._translate(e) from e
        finally:
            self._release(connection)
        return AccountSnapshot(account_id, display_name, balance, is_frozen)

    def set_frozen(self, account_id: str, frozen: bool) -> None:
        with self._guarded("set_frozen"):
            connection = self._connect()
        try:
            with self._guarded("set_frozen"):
                cursor = connection.cursor()
                try:
                    cursor.execute(self._sql("UPDATE accounts SET is_frozen = ? WHERE account_id = ?"),
                                   (self._db_bool(frozen), account_id))
                    updated = cursor.rowcount
                finally:
                    cursor.close()
                connection.commit()
        finally:
            self._release(connection)
        if not updated:
            raise NotFound(f"Account {account_id} not found", {"account_id": account_id})

    @abstractmethod
    def _integrity_errors(self) -> Tuple[type, ...]:
        pass

    # Committed reads

    def get_account(self, account_id: str) -> Optional[AccountSnapshot]:
        with self._guarded("get_account"), self._read() as cursor:
            cursor.execute(self._sql("""
                SELECT account_id, display_name, balance, is_frozen
                FROM accounts WHERE account_id = ?
            """), (account_id,))
            row = cursor.fetchone()
        return self._row_to_snapshot(row) if row else None

    def resolve_account(self, identifier: str) -> Optional[AccountSnapshot]:
        normalized = (identifier or "").strip().upper()
        if not normalized:
            return None
        with self._guarded("resolve_account"), self._read() as cursor:
            cursor.execute(self._sql("""
                SELECT account_id, display_name, balance, is_frozen
                FROM accounts WHERE UPPER(account_id) = ?
            """), (normalized,))
            row = cursor.fetchone()
            if row is None:
                cursor.execute(self._sql("""
                    SELECT account_id, display_name, balance, is_frozen
                    FROM accounts WHERE display_key = ?
                """), (normalized,))
                row = cursor.fetchone()
        return self._row_to_snapshot(row) if row else None

    def query_history(self, account_id: str, history_filter: HistoryFilter,
                      offset: int, limit: int) -> Tuple[List[HistoryEntry], int]:
        clause, params = history_clause(account_id, history_filter)
        with self._guarded("query_history"), self._read() as cursor:
            cursor.execute(self._sql(f"SELECT COUNT(*) AS total FROM transactions t WHERE {clause}"),
                           tuple(params))
            total = cursor.fetchone()['total']
            cursor.execute(self._sql(f"""
                {HISTORY_SELECT}
                WHERE {clause}
                ORDER BY t.created_at DESC, t.sequence_id DESC
                LIMIT ? OFFSET ?
            """), tuple(params) + (limit, offset))
            rows = cursor.fetchall()
        return [self._row_to_history(row) for row in rows], total

    def recent_transactions(self, limit: int) -> List[HistoryEntry]:
        with self._guarded("recent_transactions"), self._read() as cursor:
            cursor.execute(self._sql(f"""
                {HISTORY_SELECT}
                ORDER BY t.created_at DESC, t.sequence_id DESC
                LIMIT ?
            """), (limit,))
            rows = cursor.fetchall()
        return [self._row_to_history(row) for row in rows]

    def audit_entries(self, account_id: Optional[str] = None,
                      limit: Optional[int] = None) -> List[AuditEntry]:
        statement = "SELECT entry_id, account_id, action, origin, created_at FROM audit_logs"
        params: Tuple = ()
        if account_id is not None:
            statement += " WHERE account_id = ?"
            params = (account_id,)
        statement += " ORDER BY entry_id"
        with self._guarded("audit_entries"), self._read() as cursor:
            cursor.execute(self._sql(statement), params)
            rows = cursor.fetchall()
        entries = [AuditEntry(action=row['action'],
                              created_at=self._from_db_time(row['created_at']),
                              account_id=row['account_id'],
                              origin=row['origin'],
                              entry_id=row['entry_id']) for row in rows]
        if limit:
            entries = entries[-limit:]
        return entries

    def stats(self) -> LedgerStats:
        with self._guarded("stats"), self._read() as cursor:
            cursor.execute("SELECT COUNT(*) AS total FROM accounts")
            account_count = cursor.fetchone()['total']
            total_balance = self._sum_balances(cursor)
            cursor.execute("SELECT kind, COUNT(*) AS total FROM transactions GROUP BY kind")
            by_kind = {kind.value: 0 for kind in TransactionKind}
            for row in cursor.fetchall():
                by_kind[row['kind']] = row['total']
        return LedgerStats(
            account_count=account_count,
            total_balance=total_balance,
            transaction_count=sum(by_kind.values()),
            by_kind=by_kind,
        )

    # Unit of work

    def begin_unit(self, cancel_token: Optional[CancellationToken] = None) -> LedgerUnit:
        if cancel_token:
            cancel_token.raise_if_cancelled()
        with self._guarded("begin_unit"):
            connection = self._connect()
        try:
            with self._guarded("begin_unit"):
                self._begin(connection, cancel_token)
        except LedgerError:
            self._release(connection)
            raise
        return SQLUnit(connection, cancel_token)

    def lock_account_for_update(self, unit: LedgerUnit, account_id: str) -> AccountSnapshot:
        unit.ensure_open()
        unit.check_cancelled()
        with self._guarded("lock_account_for_update"):
            row = self._lock_row(unit, account_id)
        if row is None:
            raise NotFound(f"Account {account_id} not found", {"account_id": account_id})
        unit.locked.add(account_id)
        return self._row_to_snapshot(row)

    def set_balance(self, unit: LedgerUnit, account_id: str, new_balance: Decimal) -> None:
        unit.ensure_open()
        unit.ensure_locked(account_id)
        self._check_new_balance(account_id, new_balance)
        with self._guarded("set_balance"):
            cursor = unit.connection.cursor()
            try:
                cursor.execute(self._sql("UPDATE accounts SET balance = ? WHERE account_id = ?"),
                               (self._db_amount(new_balance), account_id))
            finally:
                cursor.close()

    def append_transaction(self, unit: LedgerUnit, record: TransactionRecord) -> int:
        unit.ensure_open()
        params = (
            record.reference, record.sender_id, record.receiver_id,
            self._db_amount(record.amount), record.kind.value,
            self._db_amount(record.balance_after), record.status.value,
            record.description, self._to_db_time(record.created_at),
        )
        with self._guarded("append_transaction"):
            cursor = unit.connection.cursor()
            try:
                return self._insert_transaction(cursor, params)
            finally:
                cursor.close()

    def sum_transfers_since(self, unit: LedgerUnit, account_id: str, since: datetime) -> Decimal:
        unit.ensure_open()
        with self._guarded("sum_transfers_since"):
            cursor = unit.connection.cursor()
            try:
                cursor.execute(self._sql("""
                    SELECT amount FROM transactions
                    WHERE sender_id = ? AND kind = ? AND created_at >= ?
                """), (account_id, TransactionKind.TRANSFER.value, self._to_db_time(since)))
                rows = cursor.fetchall()
            finally:
                cursor.close()
        return sum((Decimal(str(row['amount'])) for row in rows), Decimal('0'))

    def append_audit(self, unit: LedgerUnit, entry: AuditEntry) -> None:
        """Insert inside a savepoint so a failed audit write leaves the unit usable"""
        unit.ensure_open()
        with self._guarded("append_audit"):
            cursor = unit.connection.cursor()
            try:
                cursor.execute("SAVEPOINT audit_entry")
                try:
                    cursor.execute(self._sql("""
                        INSERT INTO audit_logs (account_id, action, origin, created_at)
                        VALUES (?, ?, ?, ?)
                    """), (entry.account_id, entry.action, entry.origin,
                           self._to_db_time(entry.created_at)))
                except Exception:
                    cursor.execute("ROLLBACK TO SAVEPOINT audit_entry")
                    cursor.execute("RELEASE SAVEPOINT audit_entry")
                    raise
                cursor.execute("RELEASE SAVEPOINT audit_entry")
            finally:
                cursor.close()

    def commit(self, unit: LedgerUnit) -> None:
        unit.ensure_open()
        try:
            with self._guarded("commit"):
                unit.connection.commit()
        except LedgerError as e:
            self._abort(unit)
            if isinstance(e, Busy):
                raise
            raise StorageFailure("Commit failed, no changes were applied") from e
        self._close_unit(unit)

    def rollback(self, unit: LedgerUnit) -> None:
        if unit.closed:
            return
        self._abort(unit)

    def _abort(self, unit: SQLUnit) -> None:
        try:
            unit.connection.rollback()
        except Exception as e:
            logger.error(f"Rollback of unit {unit.unit_id} failed: {e}")
        finally:
            self._close_unit(unit)

    def _close_unit(self, unit: SQLUnit) -> None:
        unit.closed = True
        unit.locked.clear()
        self._release(unit.connection)


SQLITE_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS accounts (
        account_id TEXT PRIMARY KEY,
        display_name TEXT NOT NULL,
        display_key TEXT NOT NULL UNIQUE,
        balance TEXT NOT NULL DEFAULT '0.00',
        is_frozen INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS transactions (
        sequence_id INTEGER PRIMARY KEY AUTOINCREMENT,
        reference TEXT NOT NULL UNIQUE,
        sender_id TEXT REFERENCES accounts(account_id),
        receiver_id TEXT REFERENCES accounts(account_id),
        amount TEXT NOT NULL,
        kind TEXT NOT NULL CHECK (kind IN ('DEPOSIT', 'WITHDRAW', 'TRANSFER')),
        balance_after TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'SUCCESS' CHECK (status IN ('SUCCESS', 'FAILED', 'PENDING')),
        description TEXT,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_transactions_sender ON transactions(sender_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_transactions_receiver ON transactions(receiver_id, created_at)",
    """
    CREATE TABLE IF NOT EXISTS audit_logs (
        entry_id INTEGER PRIMARY KEY AUTOINCREMENT,
        account_id TEXT REFERENCES accounts(account_id),
        action TEXT NOT NULL,
        origin TEXT,
        created_at TEXT NOT NULL
    )
    """,
]


class SQLiteLedgerStore(SQLLedgerStore):
    """
    SQLite ledger store

    Each unit opens its own connection and starts with BEGIN IMMEDIATE, so
    units are serialized on the database write lock; the wait for that lock
    is bounded by lock_timeout and surfaces as Busy.
    """

    def __init__(self, db_path: Union[str, Path], lock_timeout: float = 5.0):
        super().__init__(lock_timeout)
        self.db_path = str(db_path)
        if self.db_path == ":memory:":
            raise ValueError("SQLiteLedgerStore needs a file path; use memory:// for an in-memory ledger")
        self._schema_lock = threading.Lock()
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        with self._schema_lock:
            connection = sqlite3.connect(self.db_path, timeout=self.lock_timeout)
            try:
                connection.execute("PRAGMA journal_mode = WAL")
                connection.execute("PRAGMA synchronous = NORMAL")
                for statement in SQLITE_SCHEMA:
                    connection.execute(statement)
                connection.commit()
            finally:
                connection.close()

    def _connect(self, timeout: Optional[float] = None):
        connection = sqlite3.connect(
            self.db_path,
            timeout=self.lock_timeout if timeout is None else timeout,
            isolation_level=None,  # Transactions are started explicitly
            check_same_thread=False,
        )
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON")
        return connection

    def _release(self, connection) -> None:
        connection.close()

    def _begin(self, connection, cancel_token: Optional[CancellationToken]) -> None:
        timeout = self.lock_timeout
        if cancel_token and cancel_token.remaining() is not None:
            timeout = min(timeout, cancel_token.remaining())
        # Busy timeout in milliseconds for the write-lock wait
        connection.execute(f"PRAGMA busy_timeout = {int(timeout * 1000)}")
        connection.execute("BEGIN IMMEDIATE")

    def _lock_row(self, unit: SQLUnit, account_id: str) -> Optional[Dict[str, Any]]:
        cursor = unit.connection.execute("""
            SELECT account_id, display_name, balance, is_frozen
            FROM accounts WHERE account_id = ?
        """, (account_id,))
        return cursor.fetchone()

    def _insert_transaction(self, cursor, params: Tuple) -> int:
        cursor.execute("""
            INSERT INTO transactions (reference, sender_id, receiver_id, amount, kind,
                                      balance_after, status, description, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, params)
        return cursor.lastrowid

    def _translate(self, exc: Exception) -> LedgerError:
        if isinstance(exc, sqlite3.OperationalError):
            message = str(exc).lower()
            if "locked" in message or "busy" in message:
                return Busy("Ledger is busy, please retry", {"retry_after_seconds": 1})
        return StorageFailure("Ledger storage failure")

    def _integrity_errors(self) -> Tuple[type, ...]:
        return (sqlite3.IntegrityError,)

    def _sum_balances(self, cursor) -> Decimal:
        cursor.execute("SELECT balance FROM accounts")
        return sum((Decimal(row['balance']) for row in cursor.fetchall()), Decimal('0'))

    def _to_db_time(self, value: datetime):
        return value.astimezone(timezone.utc).isoformat(timespec='microseconds')

    def _from_db_time(self, value) -> datetime:
        return datetime.fromisoformat(value)

    def _db_bool(self, value: bool):
        return 1 if value else 0

    def _db_amount(self, value: Decimal):
        return str(value)


POSTGRES_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS accounts (
        account_id VARCHAR(50) PRIMARY KEY,
        display_name VARCHAR(50) NOT NULL,
        display_key VARCHAR(50) NOT NULL UNIQUE,
        balance NUMERIC(15, 2) NOT NULL DEFAULT 0 CHECK (balance >= 0),
        is_frozen BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS transactions (
        sequence_id BIGSERIAL PRIMARY KEY,
        reference VARCHAR(36) NOT NULL UNIQUE,
        sender_id VARCHAR(50) REFERENCES accounts(account_id),
        receiver_id VARCHAR(50) REFERENCES accounts(account_id),
        amount NUMERIC(15, 2) NOT NULL CHECK (amount > 0),
        kind VARCHAR(10) NOT NULL CHECK (kind IN ('DEPOSIT', 'WITHDRAW', 'TRANSFER')),
        balance_after NUMERIC(15, 2) NOT NULL,
        status VARCHAR(10) NOT NULL DEFAULT 'SUCCESS' CHECK (status IN ('SUCCESS', 'FAILED', 'PENDING')),
        description TEXT,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_transactions_sender ON transactions(sender_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_transactions_receiver ON transactions(receiver_id, created_at)",
    """
    CREATE TABLE IF NOT EXISTS audit_logs (
        entry_id BIGSERIAL PRIMARY KEY,
        account_id VARCHAR(50) REFERENCES accounts(account_id),
        action VARCHAR(255) NOT NULL,
        origin VARCHAR(50),
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
]

# SQLSTATE codes that mean "try again": lock_not_available, deadlock_detected,
# serialization_failure, query_canceled (statement timeout)
RETRYABLE_PGCODES = {"55P03", "40P01", "40001", "57014"}


class PostgreSQLLedgerStore(SQLLedgerStore):
    """PostgreSQL ledger store with row-level locks and a threaded connection pool"""

    placeholder = "%s"

    def __init__(self, connection_string: str, lock_timeout: float = 5.0, pool_size: int = 5):
        try:
            import psycopg2
            import psycopg2.extras
            import psycopg2.pool
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        super().__init__(lock_timeout)
        self.connection_string = connection_string
        self._pool = psycopg2.pool.ThreadedConnectionPool(
            1, pool_size, connection_string,
            cursor_factory=self.extras.RealDictCursor
        )
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        connection = self._connect()
        try:
            cursor = connection.cursor()
            try:
                for statement in POSTGRES_SCHEMA:
                    cursor.execute(statement)
            finally:
                cursor.close()
            connection.commit()
        finally:
            self._release(connection)

    def _connect(self):
        try:
            connection = self._pool.getconn()
        except self.psycopg2.Error as e:
            raise StorageFailure("Ledger database is unreachable") from e
        connection.autocommit = False
        return connection

    def _release(self, connection) -> None:
        try:
            if not connection.closed:
                connection.rollback()
        finally:
            self._pool.putconn(connection)

    def _begin(self, connection, cancel_token: Optional[CancellationToken]) -> None:
        # psycopg2 opens the transaction implicitly on the first statement
        pass

    def _lock_row(self, unit: SQLUnit, account_id: str) -> Optional[Dict[str, Any]]:
        timeout = self.lock_timeout
        if unit.cancel_token and unit.cancel_token.remaining() is not None:
            timeout = min(timeout, unit.cancel_token.remaining())
        cursor = unit.connection.cursor()
        try:
            cursor.execute(f"SET LOCAL lock_timeout = '{max(int(timeout * 1000), 1)}ms'")
            cursor.execute("""
                SELECT account_id, display_name, balance, is_frozen
                FROM accounts WHERE account_id = %s
                FOR UPDATE
            """, (account_id,))
            return cursor.fetchone()
        finally:
            cursor.close()

    def _insert_transaction(self, cursor, params: Tuple) -> int:
        cursor.execute("""
            INSERT INTO transactions (reference, sender_id, receiver_id, amount, kind,
                                      balance_after, status, description, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING sequence_id
        """, params)
        return cursor.fetchone()['sequence_id']

    def _translate(self, exc: Exception) -> LedgerError:
        if getattr(exc, 'pgcode', None) in RETRYABLE_PGCODES:
            return Busy("Ledger is busy, please retry", {"retry_after_seconds": 1})
        return StorageFailure("Ledger storage failure")

    def _integrity_errors(self) -> Tuple[type, ...]:
        return (self.psycopg2.IntegrityError,)

    def _sum_balances(self, cursor) -> Decimal:
        cursor.execute("SELECT COALESCE(SUM(balance), 0) AS total FROM accounts")
        return Decimal(str(cursor.fetchone()['total']))

    def close(self) -> None:
        """Close every pooled connection"""
        if self._pool:
            self._pool.closeall()
            self._pool = None
