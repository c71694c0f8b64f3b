from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Callable, Generic, TypeVar

from pydantic import BaseModel

from warden.core.settings import default_state_dir

logger = logging.getLogger("warden.store")

ModelT = TypeVar("ModelT", bound=BaseModel)

_FILE_LOCKS: dict[Path, threading.RLock] = {}
_FILE_LOCKS_GUARD = threading.Lock()


def _lock_for(path: Path) -> threading.RLock:
    with _FILE_LOCKS_GUARD:
        return _FILE_LOCKS.setdefault(path.resolve(), threading.RLock())


class JsonlStore(Generic[ModelT]):
    """One pydantic record per line; upserts rewrite the file through a temp-file replace."""

    filename = "records.jsonl"

    def __init__(self, model: type[ModelT], state_dir: Path | None = None, key: Callable[[ModelT], str] | None = None) -> None:
        self.model = model
        self.state_dir = Path(state_dir) if state_dir is not None else default_state_dir()
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.file_path = self.state_dir / self.filename
        self._key = key or (lambda record: str(getattr(record, "id")))
        self._lock = _lock_for(self.file_path)

    def _load_all(self) -> list[ModelT]:
        if not self.file_path.exists() or self.file_path.stat().st_size == 0:
            return []

        records: list[ModelT] = []
        with self.file_path.open("r", encoding="utf-8") as handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(self.model.model_validate(json.loads(line)))
                except (json.JSONDecodeError, ValueError):
                    logger.warning("store_line_skipped", extra={"extra_fields": {"path": str(self.file_path)}})
        return records

    def _rewrite(self, records: list[ModelT]) -> None:
        tmp_path = self.file_path.with_suffix(".tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            for record in records:
                handle.write(json.dumps(record.model_dump(mode="json"), ensure_ascii=False) + "\n")
            handle.flush()
            os.fsync(handle.fileno())
        tmp_path.replace(self.file_path)

    def list_all(self) -> list[ModelT]:
        return self._load_all()

    def get(self, id: str) -> ModelT | None:
        for record in self._load_all():
            if self._key(record) == id:
                return record
        return None

    def upsert(self, record: ModelT) -> None:
        with self._lock:
            records = self._load_all()
            record_key = self._key(record)
            for idx, current in enumerate(records):
                if self._key(current) == record_key:
                    records[idx] = record
                    break
            else:
                records.append(record)
            self._rewrite(records)

    def delete(self, id: str) -> bool:
        with self._lock:
            records = self._load_all()
            kept = [record for record in records if self._key(record) != id]
            if len(kept) == len(records):
                return False
            self._rewrite(kept)
            return True
