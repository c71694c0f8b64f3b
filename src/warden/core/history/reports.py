from __future__ import annotations

import logging
from collections import Counter, defaultdict
from datetime import datetime

from warden.core.approvals.schemas import ApprovalRequest
from warden.core.approvals.store import RequestStore
from warden.core.clock import hours_between, parse_iso, to_iso
from warden.core.history.ledger import HistoryLedger
from warden.core.history.schemas import ApprovalStatistics, DecisionCounts, HistoryEntry, HistoryFilters, HistoryPage

logger = logging.getLogger("warden.history")

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 500

_OUTCOMES = {"APPROVED": "approved", "EXECUTED": "approved", "REJECTED": "rejected", "CANCELLED": "cancelled", "EXPIRED": "expired", "PENDING": "pending"}


def _scoped_request_ids(requests: RequestStore, filters: HistoryFilters) -> set[str] | None:
    scoped: set[str] | None = {filters.request_id} if filters.request_id else None
    if filters.action_kind is None and filters.department is None:
        return scoped
    matching = {
        request.id
        for request in requests.list_all()
        if (filters.action_kind is None or request.action_kind == filters.action_kind)
        and (filters.department is None or request.department == filters.department)
    }
    return matching if scoped is None else scoped & matching


def search_history(
    history: HistoryLedger,
    requests: RequestStore,
    filters: HistoryFilters | None = None,
    page: int = 1,
    limit: int = DEFAULT_PAGE_SIZE,
) -> HistoryPage:
    """Filtered audit trail across requests, newest first, one page at a time."""
    filters = filters or HistoryFilters()
    page = max(1, page)
    limit = min(max(1, limit), MAX_PAGE_SIZE)

    entries = history.search(
        request_ids=_scoped_request_ids(requests, filters),
        approver_id=filters.approver_id,
        actions=set(filters.actions) or None,
        since=filters.since,
        until=filters.until,
    )
    start = (page - 1) * limit
    return HistoryPage(items=entries[start : start + limit], total=len(entries), page=page, limit=limit)


def _in_period(request: ApprovalRequest, start: datetime, end: datetime, department: str | None) -> bool:
    created = parse_iso(request.created_at_iso)
    if created is None or created < start or created > end:
        return False
    return department is None or request.department == department


def compute_approval_statistics(
    history: HistoryLedger,
    requests: RequestStore,
    period_start: datetime,
    period_end: datetime,
    department: str | None = None,
) -> ApprovalStatistics:
    """Outcomes of the requests created in the period.

    Approval time runs from creation to the last vote of an approved or rejected
    request. Approver counts use each approver's latest vote per request.
    """
    scoped = [request for request in requests.list_all() if _in_period(request, period_start, period_end, department)]
    stats = ApprovalStatistics(
        period_start_iso=to_iso(period_start),
        period_end_iso=to_iso(period_end),
        department=department,
        total_requests=len(scoped),
    )
    if not scoped:
        return stats

    votes_by_request: dict[str, list[HistoryEntry]] = defaultdict(list)
    for entry in history.search(request_ids={request.id for request in scoped}, actions={"APPROVED", "REJECTED"}):
        votes_by_request[entry.request_id].append(entry)

    by_action_kind: dict[str, DecisionCounts] = {}
    by_approver: dict[str, DecisionCounts] = {}
    outcomes: Counter[str] = Counter()
    decision_hours: list[float] = []
    for request in scoped:
        outcome = _OUTCOMES.get(request.status, "pending")
        outcomes[outcome] += 1

        votes = votes_by_request.get(request.id, [])
        latest_per_approver: dict[str, str] = {}
        for entry in reversed(votes):
            if entry.approver_id is not None:
                latest_per_approver[entry.approver_id] = entry.action
        for approver_id, action in latest_per_approver.items():
            counts = by_approver.setdefault(approver_id, DecisionCounts())
            if action == "APPROVED":
                counts.approved += 1
            else:
                counts.rejected += 1

        if outcome not in ("approved", "rejected"):
            continue
        counts = by_action_kind.setdefault(request.action_kind, DecisionCounts())
        if outcome == "approved":
            counts.approved += 1
        else:
            counts.rejected += 1
        created = parse_iso(request.created_at_iso)
        decided = parse_iso(votes[0].ts_iso) if votes else None
        if created is not None and decided is not None:
            decision_hours.append(hours_between(created, decided))

    stats.approved = outcomes["approved"]
    stats.rejected = outcomes["rejected"]
    stats.cancelled = outcomes["cancelled"]
    stats.expired = outcomes["expired"]
    stats.pending = outcomes["pending"]
    stats.approval_rate = round(100 * stats.approved / stats.total_requests, 2)
    stats.rejection_rate = round(100 * stats.rejected / stats.total_requests, 2)
    stats.average_decision_hours = round(sum(decision_hours) / len(decision_hours), 2) if decision_hours else 0.0
    stats.by_action_kind = dict(sorted(by_action_kind.items()))
    stats.by_approver = dict(sorted(by_approver.items()))
    logger.info(
        "approval_statistics_computed",
        extra={"extra_fields": {"total_requests": stats.total_requests, "department": department, "approved": stats.approved, "rejected": stats.rejected}},
    )
    return stats
