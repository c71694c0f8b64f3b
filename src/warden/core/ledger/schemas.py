from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from warden.core.clock import parse_iso

LedgerKind = Literal["job_run", "escalation", "notification"]
LedgerStatus = Literal["started", "succeeded", "skipped", "failed"]


class LedgerRecord(BaseModel):
    """One state change for a guarded unit of work; the newest record per key wins."""

    key: str
    kind: LedgerKind
    status: LedgerStatus
    ts_iso: str
    correlation_id: str | None = None
    meta: dict[str, Any] = Field(default_factory=dict)

    @property
    def blocks_restart(self) -> bool:
        # failed and skipped work may be attempted again under the same key
        return self.status in ("started", "succeeded")

    @property
    def request_id(self) -> str | None:
        return self.meta.get("request_id")

    def age_seconds(self, now: datetime) -> float:
        started = parse_iso(self.ts_iso)
        if started is None:
            return 0.0
        return (now - started).total_seconds()
