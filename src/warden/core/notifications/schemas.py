from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class NotificationPayload(BaseModel):
    event: str
    title: str
    body: str
    request_id: str | None = None
    channels: list[str] = Field(default_factory=list)
    meta: dict[str, Any] = Field(default_factory=dict)
