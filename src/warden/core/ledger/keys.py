"""Deterministic ledger keys for work that must happen at most once."""

from __future__ import annotations

import hashlib
import json
from typing import Any

from warden.core.clock import to_iso, utc_now


def canonical_json(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _digest(*parts: str) -> str:
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


def job_run_key(job_id: str, scheduled_run_iso: str | None, extra: dict[str, Any] | None = None) -> str:
    # Unscheduled manual runs share one key per wall-clock minute.
    slot = scheduled_run_iso or to_iso(utc_now().replace(second=0, microsecond=0))
    return _digest("job_run", job_id, slot, canonical_json(extra or {}))


def escalation_key(request_id: str, level: int, step: str = "escalate") -> str:
    """Key for moving ``request_id`` to ``level``; ``step="max"`` guards the max-level alert."""
    return _digest("escalation", step, request_id, str(level))


def notification_key(request_id: str, event: str, recipients: list[str], ts_iso: str) -> str:
    return _digest("notification", request_id, event, ",".join(sorted(recipients)), ts_iso)
