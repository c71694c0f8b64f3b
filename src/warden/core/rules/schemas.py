from __future__ import annotations

from pydantic import BaseModel, Field

from warden.core.approvals.schemas import StrategyName
from warden.core.clock import now_iso


class RuleConditions(BaseModel):
    action_kinds: list[str] = Field(default_factory=list)
    min_value: float | None = None
    max_value: float | None = None
    wait_hours: float | None = None
    departments: list[str] = Field(default_factory=list)
    roles: list[str] = Field(default_factory=list)


class NotificationPolicy(BaseModel):
    lead_hours: list[int] = Field(default_factory=list)
    channels: list[str] = Field(default_factory=list)


class EscalationPolicy(BaseModel):
    strategy: StrategyName | None = None
    approver_ids: list[str] = Field(default_factory=list)
    wait_hours: float = 0
    max_level: int = 1
    notifications: NotificationPolicy = Field(default_factory=NotificationPolicy)


class EscalationRule(BaseModel):
    id: str
    name: str
    priority: int = 0
    active: bool = True
    conditions: RuleConditions = Field(default_factory=RuleConditions)
    escalation: EscalationPolicy = Field(default_factory=EscalationPolicy)
    created_at_iso: str = Field(default_factory=now_iso)
    updated_at_iso: str = Field(default_factory=now_iso)
