from .defaults import default_rules, seed_default_rules
from .matcher import match_rule, rule_matches
from .schemas import EscalationPolicy, EscalationRule, NotificationPolicy, RuleConditions
from .store import RuleStore

__all__ = [
    "EscalationPolicy",
    "EscalationRule",
    "NotificationPolicy",
    "RuleConditions",
    "RuleStore",
    "default_rules",
    "match_rule",
    "rule_matches",
    "seed_default_rules",
]
