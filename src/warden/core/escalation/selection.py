from __future__ import annotations

from warden.core.approvals.schemas import ApprovalRequest, Approver
from warden.core.approvals.store import ApproverStore
from warden.core.rules.schemas import EscalationRule

COMMITTEE_SIZE = 3


def _rank(approver: Approver) -> tuple[bool, int, float, str]:
    return (approver.sequence is None, approver.sequence or 0, -approver.weight, approver.id)


def select_approvers(
    rule: EscalationRule,
    request: ApprovalRequest,
    approvers: ApproverStore,
    strategy: str,
) -> list[str]:
    """Pick who the request escalates to.

    The rule's explicit list wins when set. Otherwise hierarchical takes the next
    superior above the current positions, committee takes three members and every other
    strategy takes one approver, always from active approvers not already assigned.
    """
    if rule.escalation.approver_ids:
        return [approver.id for approver in approvers.get_many(rule.escalation.approver_ids) if approver.active]

    assigned = set(request.approver_ids)
    candidates = sorted((a for a in approvers.list_active() if a.id not in assigned), key=_rank)

    if strategy == "hierarchical":
        current_positions = [a.sequence for a in approvers.get_many(request.approver_ids) if a.sequence is not None]
        floor = max(current_positions) if current_positions else None
        superiors = [a for a in candidates if a.sequence is not None and (floor is None or a.sequence > floor)]
        return [a.id for a in (superiors or candidates)[:1]]
    if strategy == "committee":
        return [a.id for a in candidates[:COMMITTEE_SIZE]]
    return [a.id for a in candidates[:1]]
