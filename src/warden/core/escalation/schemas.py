from __future__ import annotations

from pydantic import BaseModel, Field

from warden.core.history.schemas import EscalationMetadata


class EscalationRecord(BaseModel):
    request_id: str
    approver_ids: list[str] = Field(default_factory=list)
    level: int
    reason: str
    strategy: str
    escalated_at_iso: str
    original_deadline_iso: str
    new_deadline_iso: str | None = None
    metadata: EscalationMetadata = Field(default_factory=EscalationMetadata)


class MaxEscalationReached(BaseModel):
    request_id: str
    rule_id: str
    level: int
    max_level: int
    action_kind: str
    deadline_iso: str


class ScanResult(BaseModel):
    job: str
    started_at_iso: str
    finished_at_iso: str | None = None
    scanned: int = 0
    escalated: int = 0
    max_escalations: int = 0
    warnings_sent: int = 0
    expired: int = 0
    failures: int = 0
    skipped: dict[str, int] = Field(default_factory=dict)
    failed_request_ids: list[str] = Field(default_factory=list)

    def skip(self, reason: str) -> None:
        self.skipped[reason] = self.skipped.get(reason, 0) + 1


class EscalationMetrics(BaseModel):
    period_start_iso: str
    period_end_iso: str
    total: int = 0
    by_action_kind: dict[str, int] = Field(default_factory=dict)
    by_level: dict[int, int] = Field(default_factory=dict)
    average_escalation_wait_hours: float = 0.0


__all__ = ["EscalationMetadata", "EscalationMetrics", "EscalationRecord", "MaxEscalationReached", "ScanResult"]
