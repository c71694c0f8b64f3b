from __future__ import annotations

import logging

from warden.core.rules.schemas import EscalationPolicy, EscalationRule, NotificationPolicy, RuleConditions
from warden.core.rules.store import RuleStore

logger = logging.getLogger("warden.rules")


def default_rules() -> list[EscalationRule]:
    return [
        EscalationRule(
            id="critical-high-value",
            name="Critical actions with high value at risk",
            priority=10,
            conditions=RuleConditions(
                action_kinds=["beneficiary_deletion", "system_configuration"],
                min_value=50_000,
                wait_hours=4,
            ),
            escalation=EscalationPolicy(
                strategy="hierarchical",
                wait_hours=4,
                max_level=3,
                notifications=NotificationPolicy(lead_hours=[2, 1], channels=["email", "sms", "push"]),
            ),
        ),
        EscalationRule(
            id="general",
            name="General escalation",
            priority=1,
            conditions=RuleConditions(wait_hours=24),
            escalation=EscalationPolicy(
                strategy="hierarchical",
                wait_hours=24,
                max_level=2,
                notifications=NotificationPolicy(lead_hours=[4, 2], channels=["email", "push"]),
            ),
        ),
    ]


def seed_default_rules(store: RuleStore) -> int:
    if store.load():
        return 0
    seeded = default_rules()
    for rule in seeded:
        store.save(rule)
    logger.info("rules_seeded", extra={"extra_fields": {"count": len(seeded)}})
    return len(seeded)
