from __future__ import annotations

from datetime import timedelta

import pytest

from warden.core.approvals.schemas import ApprovalConfiguration, Approver
from warden.core.errors import ValidationError
from warden.core.rules.defaults import default_rules
from warden.core.rules.schemas import EscalationPolicy, EscalationRule, RuleConditions


def _rule(**escalation) -> EscalationRule:
    policy = {"strategy": "hierarchical", "wait_hours": 2, "max_level": 2}
    policy.update(escalation)
    return EscalationRule(id="custom", name="Custom", escalation=EscalationPolicy(**policy))


def test_configure_rule_persists_and_emits_event(runtime) -> None:
    saved = runtime.engine.configure_rule(_rule())

    assert runtime.rules.get("custom") == saved
    events = runtime.outbox.list_recent(name="escalation.rule_configured")
    assert events[0].payload == {"rule_id": "custom", "name": "Custom", "active": True}


@pytest.mark.parametrize(
    ("rule", "field"),
    [
        (_rule(strategy=None), "escalation.strategy"),
        (_rule(wait_hours=-1), "escalation.wait_hours"),
        (_rule(max_level=0), "escalation.max_level"),
        (EscalationRule(id="  ", name="Blank id", escalation=EscalationPolicy(strategy="parallel")), "id"),
        (EscalationRule(id="no-name", name="", escalation=EscalationPolicy(strategy="parallel")), "name"),
        (
            EscalationRule(
                id="bounds",
                name="Bad bounds",
                conditions=RuleConditions(min_value=10, max_value=5),
                escalation=EscalationPolicy(strategy="parallel"),
            ),
            "conditions.min_value",
        ),
    ],
)
def test_configure_rule_rejects_invalid_rules(runtime, rule: EscalationRule, field: str) -> None:
    with pytest.raises(ValidationError) as excinfo:
        runtime.engine.configure_rule(rule)

    assert excinfo.value.field == field
    assert runtime.rules.load() == []


@pytest.mark.parametrize(
    ("payload", "field"),
    [
        ({"name": "No id", "escalation": {"strategy": "parallel", "max_level": 1}}, "id"),
        ({"id": "no-name", "escalation": {"strategy": "parallel"}}, "name"),
        ({"id": "bad-level", "name": "Bad level", "escalation": {"strategy": "parallel", "max_level": "many"}}, "escalation.max_level"),
    ],
)
def test_configure_rule_rejects_invalid_persisted_shape(runtime, payload: dict, field: str) -> None:
    with pytest.raises(ValidationError) as excinfo:
        runtime.engine.configure_rule(payload)

    assert excinfo.value.field == field
    assert runtime.rules.load() == []


def test_configure_rule_accepts_persisted_shape(runtime) -> None:
    saved = runtime.engine.configure_rule(
        {
            "id": "from-json",
            "name": "From JSON",
            "priority": 3,
            "active": True,
            "conditions": {"action_kinds": ["user_block"], "min_value": None, "max_value": None, "wait_hours": 1, "departments": [], "roles": []},
            "escalation": {
                "strategy": "parallel",
                "approver_ids": ["x"],
                "wait_hours": 1,
                "max_level": 2,
                "notifications": {"lead_hours": [2], "channels": ["push"]},
            },
        }
    )
    assert saved.escalation.notifications.channels == ["push"]

    with pytest.raises(ValidationError):
        runtime.engine.configure_rule({"id": "bad", "name": "Bad", "escalation": {"strategy": "coin_flip"}})


def test_list_rules_filters_by_action_kind_and_active(runtime) -> None:
    critical, general = default_rules()
    runtime.engine.configure_rule(critical)
    runtime.engine.configure_rule(general)
    runtime.engine.configure_rule(general.model_copy(update={"id": "retired", "name": "Retired", "active": False, "priority": 50}))

    assert [rule.id for rule in runtime.engine.list_rules()] == ["retired", "critical-high-value", "general"]
    assert [rule.id for rule in runtime.engine.list_rules(active=True)] == ["critical-high-value", "general"]
    assert [rule.id for rule in runtime.engine.list_rules(action_kind="user_block", active=True)] == ["general"]
    assert [rule.id for rule in runtime.engine.list_rules(action_kind="system_configuration", active=True)] == ["critical-high-value", "general"]


def test_metrics_summarise_escalations_in_period(runtime, now) -> None:
    for idx in range(1, 4):
        runtime.approvers.upsert(Approver(id=f"p{idx}", name=f"P{idx}", sequence=idx))
    runtime.engine.configure_rule(
        EscalationRule(
            id="fast",
            name="Fast",
            conditions=RuleConditions(),
            escalation=EscalationPolicy(strategy="hierarchical", wait_hours=0, max_level=3),
        )
    )
    for kind, age in (("user_block", 2), ("user_block", 4), ("benefit_suspension", 6)):
        configuration = ApprovalConfiguration(id=f"cfg-{kind}", action_kind=kind, strategy="hierarchical", deadline_hours=12, approver_ids=["p1"])
        runtime.configurations.upsert(configuration)
        runtime.registry.create(configuration, requester_id="clerk", now=now - timedelta(hours=age))

    runtime.engine.run_escalation_scan(now=now)
    runtime.engine.run_escalation_scan(now=now + timedelta(hours=3))

    summary = runtime.engine.metrics(now - timedelta(hours=1), now + timedelta(hours=1))
    assert summary.total == 3
    assert summary.by_action_kind == {"user_block": 2, "benefit_suspension": 1}
    assert summary.by_level == {1: 3}
    assert summary.average_escalation_wait_hours == 4.0

    whole = runtime.engine.metrics(now - timedelta(hours=1), now + timedelta(hours=4))
    assert whole.total == 6
    assert whole.by_level == {1: 3, 2: 3}


def test_metrics_for_empty_period(runtime, now) -> None:
    summary = runtime.engine.metrics(now - timedelta(days=7), now)

    assert summary.total == 0
    assert summary.by_level == {}
    assert summary.average_escalation_wait_hours == 0.0
