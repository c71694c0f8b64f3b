from .keys import canonical_json, escalation_key, job_run_key, notification_key
from .ledger import ExecutionLedger
from .schemas import LedgerKind, LedgerRecord, LedgerStatus

__all__ = [
    "ExecutionLedger",
    "LedgerKind",
    "LedgerRecord",
    "LedgerStatus",
    "canonical_json",
    "escalation_key",
    "job_run_key",
    "notification_key",
]
