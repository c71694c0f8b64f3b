from __future__ import annotations

import json
import logging
import os
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from warden.core.clock import now_iso, utc_now
from warden.core.ledger.schemas import LedgerRecord

logger = logging.getLogger("warden.ledger")


class ExecutionLedger:
    """Append-only record of job runs, escalation levels and notification dispatches.

    The latest record for a key decides whether work guarded by that key may start.
    """

    def __init__(self, state_dir: str | Path) -> None:
        self.state_dir = Path(state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.path = self.state_dir / "executions.jsonl"
        self.lock_path = self.state_dir / "executions.lock"
        self.max_records = int(os.getenv("WARDEN_LEDGER_MAX", "20000"))
        self.lock_mode = os.getenv("WARDEN_LEDGER_LOCK_MODE", "file").casefold()

    def latest(self, key: str) -> LedgerRecord | None:
        found: LedgerRecord | None = None
        for record in self._records():
            if record.key == key:
                found = record
        return found

    def has_succeeded(self, key: str) -> bool:
        record = self.latest(key)
        return record is not None and record.status == "succeeded"

    def try_start(
        self,
        key: str,
        kind: str,
        correlation_id: str | None = None,
        meta: dict[str, Any] | None = None,
        stale_after_s: float | None = None,
    ) -> bool:
        """Claim ``key`` unless it is running or done.

        With ``stale_after_s`` a ``started`` record older than that is treated as left
        behind by a dead worker and claimed again.
        """
        with self._locked():
            current = self.latest(key)
            if current is not None and current.blocks_restart:
                if not (stale_after_s is not None and current.status == "started" and current.age_seconds(utc_now()) >= stale_after_s):
                    return False
                logger.warning(
                    "ledger_stale_start_reclaimed",
                    extra={"extra_fields": {"key": key, "kind": kind, "started_at": current.ts_iso}},
                )
            self._write(LedgerRecord(key=key, kind=kind, status="started", ts_iso=now_iso(), correlation_id=correlation_id, meta=meta or {}))
            return True

    def mark(self, key: str, status: str, meta_update: dict[str, Any] | None = None) -> None:
        with self._locked():
            current = self.latest(key)
            meta: dict[str, Any] = dict(current.meta) if current is not None else {}
            meta.update(meta_update or {})
            self._write(
                LedgerRecord(
                    key=key,
                    kind=current.kind if current is not None else "job_run",
                    status=status,
                    ts_iso=now_iso(),
                    correlation_id=current.correlation_id if current is not None else None,
                    meta=meta,
                )
            )

    def record(self, key: str, kind: str, status: str, meta: dict[str, Any] | None = None) -> LedgerRecord:
        entry = LedgerRecord(key=key, kind=kind, status=status, ts_iso=now_iso(), meta=meta or {})
        with self._locked():
            self._write(entry)
        return entry

    def count(self, kind: str, request_id: str | None = None) -> int:
        return sum(
            1
            for record in self._records()
            if record.kind == kind and (request_id is None or record.request_id == request_id)
        )

    def list_recent(self, limit: int) -> list[LedgerRecord]:
        if limit <= 0:
            return []
        return self._records()[-limit:]

    def trim(self, max_records: int) -> None:
        if max_records <= 0:
            return
        records = self._records()
        if len(records) <= max_records:
            return
        tmp_path = self.path.with_suffix(".tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            for record in records[-max_records:]:
                handle.write(record.model_dump_json() + "\n")
        tmp_path.replace(self.path)

    def _write(self, record: LedgerRecord) -> None:
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(record.model_dump_json() + "\n")
            handle.flush()
        self.trim(self.max_records)

    def _records(self) -> list[LedgerRecord]:
        if not self.path.exists():
            return []
        records: list[LedgerRecord] = []
        with self.path.open("r", encoding="utf-8") as handle:
            for line in handle:
                raw = line.strip()
                if not raw:
                    continue
                try:
                    records.append(LedgerRecord.model_validate(json.loads(raw)))
                except (ValueError, TypeError):
                    logger.warning("ledger_line_skipped", extra={"extra_fields": {"path": str(self.path)}})
        return records

    @contextmanager
    def _locked(self) -> Iterator[None]:
        if self.lock_mode != "file":
            yield
            return

        acquired = False
        give_up_at = time.monotonic() + 2.0
        while not acquired:
            try:
                os.close(os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY))
                acquired = True
            except FileExistsError:
                if time.monotonic() >= give_up_at:
                    break
                time.sleep(0.01)
        try:
            yield
        finally:
            if acquired:
                self.lock_path.unlink(missing_ok=True)
