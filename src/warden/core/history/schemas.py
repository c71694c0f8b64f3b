from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

HistoryAction = Literal["CREATED", "APPROVED", "REJECTED", "ESCALATED", "CANCELLED", "EXPIRED", "EXECUTED"]


class EscalationMetadata(BaseModel):
    wait_hours: float | None = None
    notification_attempts: int = 0
    value_at_risk: float | None = None
    action_kind: str | None = None
    level: int | None = None
    strategy: str | None = None
    rule_id: str | None = None
    manual: bool = False
    actor_id: str | None = None
    original_deadline_iso: str | None = None
    new_deadline_iso: str | None = None
    approver_ids: list[str] = Field(default_factory=list)
    extra: dict[str, Any] = Field(default_factory=dict)


class HistoryEntry(BaseModel):
    id: str
    request_id: str
    approver_id: str | None = None
    action: HistoryAction
    justification: str = ""
    metadata: EscalationMetadata | None = None
    ts_iso: str


class HistoryFilters(BaseModel):
    request_id: str | None = None
    approver_id: str | None = None
    actions: list[HistoryAction] = Field(default_factory=list)
    since: datetime | None = None
    until: datetime | None = None
    action_kind: str | None = None
    department: str | None = None


class HistoryPage(BaseModel):
    items: list[HistoryEntry] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 50

    @property
    def pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0


class DecisionCounts(BaseModel):
    approved: int = 0
    rejected: int = 0


class ApprovalStatistics(BaseModel):
    period_start_iso: str
    period_end_iso: str
    department: str | None = None
    total_requests: int = 0
    approved: int = 0
    rejected: int = 0
    cancelled: int = 0
    expired: int = 0
    pending: int = 0
    approval_rate: float = 0.0
    rejection_rate: float = 0.0
    average_decision_hours: float = 0.0
    by_action_kind: dict[str, DecisionCounts] = Field(default_factory=dict)
    by_approver: dict[str, DecisionCounts] = Field(default_factory=dict)
