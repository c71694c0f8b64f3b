from __future__ import annotations

from pathlib import Path

from warden.core.approvals.schemas import ApprovalConfiguration, ApprovalRequest, Approver, CriticalAction
from warden.core.clock import parse_iso
from warden.core.errors import ConflictError, ValidationError
from warden.core.jsonl import JsonlStore


class RequestStore(JsonlStore[ApprovalRequest]):
    filename = "requests.jsonl"

    def __init__(self, state_dir: Path | None = None) -> None:
        super().__init__(ApprovalRequest, state_dir)

    def list_all(self, status: str | None = None) -> list[ApprovalRequest]:
        records = self._load_all()
        if status:
            records = [record for record in records if record.status == status]
        return sorted(records, key=lambda item: item.created_at_iso, reverse=True)

    def list_pending_by_deadline(self) -> list[ApprovalRequest]:
        pending = [record for record in self._load_all() if record.status == "PENDING"]
        return sorted(pending, key=lambda item: parse_iso(item.deadline_iso) or parse_iso(item.created_at_iso))

    def save(self, record: ApprovalRequest, expected_version: int | None = None) -> ApprovalRequest:
        """Persist ``record`` with its version bumped.

        ``expected_version`` is the version the caller read; a different stored version
        means another writer got there first.
        """
        with self._lock:
            current = self.get(record.id)
            stored_version = current.version if current is not None else 0
            if expected_version is not None and stored_version != expected_version:
                raise ConflictError(
                    f"request {record.id} was modified concurrently (expected v{expected_version}, found v{stored_version})",
                    request_id=record.id,
                    status=current.status if current is not None else None,
                )
            saved = record.model_copy(update={"version": stored_version + 1})
            self.upsert(saved)
            return saved


class ApproverStore(JsonlStore[Approver]):
    filename = "approvers.jsonl"

    def __init__(self, state_dir: Path | None = None) -> None:
        super().__init__(Approver, state_dir)

    def get_many(self, ids: list[str]) -> list[Approver]:
        by_id = {approver.id: approver for approver in self._load_all()}
        return [by_id[approver_id] for approver_id in ids if approver_id in by_id]

    def list_active(self) -> list[Approver]:
        return [approver for approver in self._load_all() if approver.active]


class CriticalActionStore(JsonlStore[CriticalAction]):
    filename = "actions.jsonl"

    def __init__(self, state_dir: Path | None = None) -> None:
        super().__init__(CriticalAction, state_dir, key=lambda action: action.kind)


class ConfigurationStore(JsonlStore[ApprovalConfiguration]):
    filename = "configurations.jsonl"

    def __init__(self, state_dir: Path | None = None) -> None:
        super().__init__(ApprovalConfiguration, state_dir)

    def active_for(self, action_kind: str) -> ApprovalConfiguration | None:
        for configuration in self._load_all():
            if configuration.action_kind == action_kind and configuration.active:
                return configuration
        return None

    def save(self, configuration: ApprovalConfiguration) -> ApprovalConfiguration:
        with self._lock:
            if configuration.active:
                for current in self._load_all():
                    if current.id != configuration.id and current.active and current.action_kind == configuration.action_kind:
                        raise ValidationError(
                            f"action kind {configuration.action_kind} already has active configuration {current.id}",
                            field="action_kind",
                        )
            self.upsert(configuration)
        return configuration
