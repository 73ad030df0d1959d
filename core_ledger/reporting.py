"""
Ledger Reporting Module

Read-only administrative views over committed ledger data.
"""

from typing import Any, Dict, List

from .ledger import HistoryEntry
from .storage import LedgerStore


class LedgerReporter:
    """Aggregate statistics and recent activity for administrators"""

    RECENT_ACTIVITY_LIMIT = 100

    def __init__(self, store: LedgerStore):
        self.store = store

    def stats(self) -> Dict[str, Any]:
        stats = self.store.stats()
        return {
            "users": stats.account_count,
            "balance": str(stats.total_balance),
            "transactions": stats.transaction_count,
            "by_kind": stats.by_kind,
        }

    def recent_activity(self, limit: int = RECENT_ACTIVITY_LIMIT) -> List[HistoryEntry]:
        """Most recent transactions across every account, newest first"""
        return self.store.recent_transactions(min(max(limit, 1), self.RECENT_ACTIVITY_LIMIT))
