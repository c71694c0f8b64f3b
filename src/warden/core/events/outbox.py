from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Callable
from uuid import uuid4

from pydantic import BaseModel, Field

from warden.core.clock import now_iso
from warden.core.logging.context import current_correlation_id
from warden.core.settings import default_state_dir

logger = logging.getLogger("warden.events")

Subscriber = Callable[["DomainEvent"], None]


class DomainEvent(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    name: str
    payload: dict[str, Any] = Field(default_factory=dict)
    ts_iso: str = Field(default_factory=now_iso)
    correlation_id: str | None = None


class EventOutbox:
    """Durable outbound event log with optional in-process subscribers."""

    def __init__(self, state_dir: Path | None = None) -> None:
        self.state_dir = Path(state_dir) if state_dir is not None else default_state_dir()
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.path = self.state_dir / "events.jsonl"
        self._lock = threading.Lock()
        self._subscribers: list[Subscriber] = []

    def subscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.append(subscriber)

    def emit(self, name: str, payload: dict[str, Any] | None = None) -> DomainEvent:
        event = DomainEvent(name=name, payload=payload or {}, correlation_id=current_correlation_id())
        with self._lock:
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(event.model_dump_json() + "\n")
        logger.info("event_emitted", extra={"extra_fields": {"event_name": name, "event_id": event.id}})

        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception:
                logger.exception("event_subscriber_failed", extra={"extra_fields": {"event_name": name}})
        return event

    def list_recent(self, limit: int = 100, name: str | None = None) -> list[DomainEvent]:
        if not self.path.exists() or limit <= 0:
            return []
        events: list[DomainEvent] = []
        with self.path.open("r", encoding="utf-8") as handle:
            for line in handle:
                raw = line.strip()
                if not raw:
                    continue
                try:
                    event = DomainEvent.model_validate(json.loads(raw))
                except (ValueError, TypeError):
                    continue
                if name is None or event.name == name:
                    events.append(event)
        return events[-limit:]
