from __future__ import annotations

from datetime import datetime

from warden.core.clock import to_iso
from warden.core.escalation.schemas import EscalationMetrics
from warden.core.history.ledger import HistoryLedger


def compute_metrics(history: HistoryLedger, period_start: datetime, period_end: datetime) -> EscalationMetrics:
    by_action_kind: dict[str, int] = {}
    by_level: dict[int, int] = {}
    waits: list[float] = []

    entries = history.entries(action="ESCALATED", since=period_start, until=period_end)
    for entry in entries:
        meta = entry.metadata
        action_kind = (meta.action_kind if meta else None) or "unknown"
        by_action_kind[action_kind] = by_action_kind.get(action_kind, 0) + 1
        level = (meta.level if meta else None) or 1
        by_level[level] = by_level.get(level, 0) + 1
        if meta is not None and meta.wait_hours is not None:
            waits.append(meta.wait_hours)

    return EscalationMetrics(
        period_start_iso=to_iso(period_start),
        period_end_iso=to_iso(period_end),
        total=len(entries),
        by_action_kind=by_action_kind,
        by_level=dict(sorted(by_level.items())),
        average_escalation_wait_hours=round(sum(waits) / len(waits), 2) if waits else 0.0,
    )
