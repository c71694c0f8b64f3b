from __future__ import annotations

import json
import logging
import os
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator
from uuid import uuid4

from warden.core.approvals.schemas import Vote
from warden.core.clock import now_iso, parse_iso
from warden.core.history.schemas import EscalationMetadata, HistoryAction, HistoryEntry
from warden.core.settings import default_state_dir

logger = logging.getLogger("warden.history")


class HistoryLedger:
    """Append-only audit trail of every request transition.

    Escalation level, last escalation time and recorded votes are all derived from it.
    """

    def __init__(self, state_dir: Path | None = None) -> None:
        self.state_dir = Path(state_dir) if state_dir is not None else default_state_dir()
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.path = self.state_dir / "history.jsonl"
        self.lock_path = self.state_dir / "history.lock"
        self._thread_lock = threading.Lock()

    def append(self, entry: HistoryEntry) -> HistoryEntry:
        with self._locked():
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(entry.model_dump_json() + "\n")
                handle.flush()
                os.fsync(handle.fileno())
        return entry

    def record(
        self,
        request_id: str,
        action: HistoryAction,
        approver_id: str | None = None,
        justification: str = "",
        metadata: EscalationMetadata | None = None,
        ts_iso: str | None = None,
    ) -> HistoryEntry:
        return self.append(
            HistoryEntry(
                id=str(uuid4()),
                request_id=request_id,
                approver_id=approver_id,
                action=action,
                justification=justification,
                metadata=metadata,
                ts_iso=ts_iso or now_iso(),
            )
        )

    def query(self, request_id: str) -> list[HistoryEntry]:
        return _newest_first([entry for entry in self._read_all() if entry.request_id == request_id])

    def entries(
        self,
        action: HistoryAction | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[HistoryEntry]:
        return self.search(actions={action} if action is not None else None, since=since, until=until)

    def search(
        self,
        request_ids: set[str] | None = None,
        approver_id: str | None = None,
        actions: set[str] | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[HistoryEntry]:
        """Entries matching every given filter, newest first; ``None`` leaves a filter open."""
        selected: list[HistoryEntry] = []
        for entry in self._read_all():
            if request_ids is not None and entry.request_id not in request_ids:
                continue
            if approver_id is not None and entry.approver_id != approver_id:
                continue
            if actions is not None and entry.action not in actions:
                continue
            if since is not None or until is not None:
                ts = parse_iso(entry.ts_iso)
                if ts is None or (since is not None and ts < since) or (until is not None and ts > until):
                    continue
            selected.append(entry)
        return _newest_first(selected)

    def current_level(self, request_id: str) -> int:
        return sum(1 for entry in self.query(request_id) if entry.action == "ESCALATED")

    def last_escalation_at(self, request_id: str) -> datetime | None:
        for entry in self.query(request_id):
            if entry.action == "ESCALATED":
                return parse_iso(entry.ts_iso)
        return None

    def votes(self, request_id: str) -> dict[str, Vote]:
        latest: dict[str, Vote] = {}
        for entry in reversed(self.query(request_id)):
            if entry.action not in {"APPROVED", "REJECTED"} or entry.approver_id is None:
                continue
            latest[entry.approver_id] = Vote(approver_id=entry.approver_id, decision=entry.action, ts_iso=entry.ts_iso)
        return latest

    def _read_all(self) -> list[HistoryEntry]:
        if not self.path.exists():
            return []
        entries: list[HistoryEntry] = []
        with self.path.open("r", encoding="utf-8") as handle:
            for line in handle:
                raw = line.strip()
                if not raw:
                    continue
                try:
                    entries.append(HistoryEntry.model_validate(json.loads(raw)))
                except (ValueError, TypeError):
                    logger.warning("history_line_skipped", extra={"extra_fields": {"path": str(self.path)}})
        return entries

    @contextmanager
    def _locked(self) -> Iterator[None]:
        with self._thread_lock:
            acquired = False
            give_up_at = time.monotonic() + 2.0
            while not acquired:
                try:
                    os.close(os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY))
                    acquired = True
                except FileExistsError:
                    if time.monotonic() >= give_up_at:
                        logger.warning("history_lock_timeout", extra={"extra_fields": {"lock_path": str(self.lock_path)}})
                        break
                    time.sleep(0.01)
            try:
                yield
            finally:
                if acquired:
                    self.lock_path.unlink(missing_ok=True)


def _newest_first(entries: list[HistoryEntry]) -> list[HistoryEntry]:
    indexed = list(enumerate(entries))
    indexed.sort(key=lambda pair: (parse_iso(pair[1].ts_iso) or datetime.min.replace(tzinfo=timezone.utc), pair[0]), reverse=True)
    return [entry for _, entry in indexed]
