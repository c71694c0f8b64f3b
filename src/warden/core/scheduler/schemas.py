from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class JobInfo(BaseModel):
    id: str
    next_run_time_iso: str | None = None
    trigger: str
    kwargs: dict[str, Any] = Field(default_factory=dict)
