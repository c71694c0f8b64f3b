from __future__ import annotations

from datetime import datetime

from warden.core.approvals.schemas import ApprovalRequest
from warden.core.clock import hours_since, utc_now
from warden.core.rules.schemas import EscalationRule


def rule_matches(rule: EscalationRule, request: ApprovalRequest, now: datetime | None = None) -> bool:
    conditions = rule.conditions
    if conditions.action_kinds and request.action_kind not in conditions.action_kinds:
        return False

    if request.value_at_risk:
        if conditions.min_value is not None and request.value_at_risk < conditions.min_value:
            return False
        if conditions.max_value is not None and request.value_at_risk > conditions.max_value:
            return False

    if conditions.wait_hours:
        if hours_since(request.created_at_iso, now or utc_now()) < conditions.wait_hours:
            return False

    if conditions.departments and request.department and request.department not in conditions.departments:
        return False

    requester_role = request.payload.get("requester_role")
    if conditions.roles and requester_role and requester_role not in conditions.roles:
        return False

    return True


def match_rule(
    rules: list[EscalationRule],
    request: ApprovalRequest,
    now: datetime | None = None,
) -> EscalationRule | None:
    """Highest-priority active rule whose every condition holds for ``request``."""
    candidates = sorted((rule for rule in rules if rule.active), key=lambda rule: rule.priority, reverse=True)
    for rule in candidates:
        if rule_matches(rule, request, now):
            return rule
    return None
