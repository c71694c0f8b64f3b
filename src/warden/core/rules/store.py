from __future__ import annotations

from pathlib import Path

from warden.core.clock import now_iso
from warden.core.jsonl import JsonlStore
from warden.core.rules.schemas import EscalationRule


class RuleStore(JsonlStore[EscalationRule]):
    filename = "rules.jsonl"

    def __init__(self, state_dir: Path | None = None) -> None:
        super().__init__(EscalationRule, state_dir)

    def load(self) -> list[EscalationRule]:
        return self._load_all()

    def list_all(self) -> list[EscalationRule]:
        return sorted(self._load_all(), key=lambda rule: rule.priority, reverse=True)

    def save(self, rule: EscalationRule) -> EscalationRule:
        with self._lock:
            current = self.get(rule.id)
            updates = {"updated_at_iso": now_iso()}
            if current is not None:
                updates["created_at_iso"] = current.created_at_iso
            saved = rule.model_copy(update=updates)
            self.upsert(saved)
        return saved

    def set_active(self, rule_id: str, active: bool) -> EscalationRule | None:
        rule = self.get(rule_id)
        if rule is None:
            return None
        return self.save(rule.model_copy(update={"active": active}))
