"""
Audit Sink Module

Best-effort, append-only recording of account actions. When handed a unit
of work the entry joins that unit and commits with it; without one it is
written in its own unit. A failed audit write is logged and never turns a
financial commit into a failure.
"""

from datetime import datetime, timezone
from typing import Callable, List, Optional

from .errors import LedgerError
from .ledger import AuditEntry
from .logging_config import get_logger, log_action
from .storage import LedgerStore, LedgerUnit


logger = get_logger("ledger.audit")


class AuditSink:
    """Records audit entries through the ledger store"""

    def __init__(self, store: LedgerStore, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def record(self, account_id: Optional[str], action: str,
               origin: Optional[str] = None, unit: Optional[LedgerUnit] = None) -> bool:
        """
        Append an audit entry

        Args:
            account_id: Actor account, None for system actions
            action: Human-readable action text
            origin: Network address the request came from
            unit: Ambient unit of work to join, if any

        Returns:
            True if the entry was written (or staged in the unit)
        """
        entry = AuditEntry(action=action, created_at=self.clock(),
                           account_id=account_id, origin=origin)
        try:
            if unit is not None:
                self.store.append_audit(unit, entry)
            else:
                with self.store.unit_of_work() as own_unit:
                    self.store.append_audit(own_unit, entry)
            return True
        except (LedgerError, ValueError) as e:
            log_action(logger, "warning", f"Audit write failed: {e}",
                       user_id=account_id, action="audit_write_failed",
                       resource=account_id, extra={"audit_action": action})
            return False

    def entries_for(self, account_id: str, limit: Optional[int] = None) -> List[AuditEntry]:
        return self.store.audit_entries(account_id=account_id, limit=limit)
