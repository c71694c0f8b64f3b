from .engine import EscalationEngine, EscalationSkipped
from .metrics import compute_metrics
from .schemas import EscalationMetadata, EscalationMetrics, EscalationRecord, MaxEscalationReached, ScanResult
from .selection import select_approvers

__all__ = [
    "EscalationEngine",
    "EscalationMetadata",
    "EscalationMetrics",
    "EscalationRecord",
    "EscalationSkipped",
    "MaxEscalationReached",
    "ScanResult",
    "compute_metrics",
    "select_approvers",
]
