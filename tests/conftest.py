"""
Shared fixtures: ledger stores for every backend

PostgreSQL runs only when LEDGER_TEST_POSTGRES_URL points at a scratch
database; its tables are emptied before each test.
"""

import os

import pytest

from core_ledger.storage import InMemoryLedgerStore
from core_ledger.sql_storage import SQLiteLedgerStore


POSTGRES_URL = os.getenv("LEDGER_TEST_POSTGRES_URL")


def make_store(backend: str, tmp_path, lock_timeout: float = 2.0):
    if backend == "memory":
        return InMemoryLedgerStore(lock_timeout=lock_timeout)
    if backend == "sqlite":
        return SQLiteLedgerStore(tmp_path / "ledger.db", lock_timeout=lock_timeout)
    if backend == "postgres":
        if not POSTGRES_URL:
            pytest.skip("LEDGER_TEST_POSTGRES_URL not set")
        from core_ledger.sql_storage import PostgreSQLLedgerStore
        store = PostgreSQLLedgerStore(POSTGRES_URL, lock_timeout=lock_timeout, pool_size=12)
        connection = store._connect()
        try:
            cursor = connection.cursor()
            cursor.execute("TRUNCATE audit_logs, transactions, accounts RESTART IDENTITY CASCADE")
            connection.commit()
        finally:
            store._release(connection)
        return store
    raise ValueError(backend)


@pytest.fixture(params=["memory", "sqlite", "postgres"])
def store(request, tmp_path):
    """Ledger store for each backend"""
    ledger_store = make_store(request.param, tmp_path)
    yield ledger_store
    ledger_store.close()


@pytest.fixture(params=["memory", "postgres"])
def row_locking_store(request, tmp_path):
    """Backends with per-account locks"""
    ledger_store = make_store(request.param, tmp_path, lock_timeout=0.3)
    yield ledger_store
    ledger_store.close()


@pytest.fixture(params=["sqlite", "postgres"])
def sql_store(request, tmp_path):
    """Relational backends with foreign keys on the audit log"""
    ledger_store = make_store(request.param, tmp_path)
    yield ledger_store
    ledger_store.close()
