from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

StrategyName = Literal[
    "any_one",
    "majority",
    "weighted",
    "unanimous",
    "committee",
    "hierarchical",
    "parallel",
    "substitute",
    "automatic",
]
RequestStatus = Literal["PENDING", "APPROVED", "REJECTED", "EXECUTED", "CANCELLED", "EXPIRED"]
Decision = Literal["APPROVED", "REJECTED"]
Outcome = Literal["pending", "approved", "rejected"]
RiskTier = Literal["low", "medium", "high", "critical"]
ApproverKind = Literal["individual", "role", "org_unit", "hierarchy_position"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"REJECTED", "EXECUTED", "CANCELLED", "EXPIRED"})


class CriticalAction(BaseModel):
    kind: str
    name: str
    risk_tier: RiskTier = "high"


class ApprovalConfiguration(BaseModel):
    id: str
    action_kind: str
    strategy: StrategyName
    min_approvers: int = Field(default=1, ge=1)
    deadline_hours: int = Field(default=24, ge=1)
    escalation_enabled: bool = True
    active: bool = True
    approver_ids: list[str] = Field(default_factory=list)


class Approver(BaseModel):
    id: str
    kind: ApproverKind = "individual"
    name: str
    weight: float = Field(default=1.0, gt=0)
    sequence: int | None = None
    active: bool = True
    department: str | None = None
    role: str | None = None
    contact: str | None = None


class ApprovalRequest(BaseModel):
    id: str
    action_kind: str
    configuration_id: str
    requester_id: str
    status: RequestStatus = "PENDING"
    strategy: StrategyName
    approver_ids: list[str] = Field(default_factory=list)
    required_approvals: int = 1
    deadline_iso: str
    created_at_iso: str
    updated_at_iso: str
    completed_at_iso: str | None = None
    value_at_risk: float | None = None
    department: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class Vote(BaseModel):
    approver_id: str
    decision: Decision
    ts_iso: str
