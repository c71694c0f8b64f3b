from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Iterator
from uuid import uuid4

from warden.core.approvals.schemas import ApprovalConfiguration, ApprovalRequest, Approver, Decision, Vote
from warden.core.approvals.store import ApproverStore, ConfigurationStore, RequestStore
from warden.core.approvals.strategies import get_strategy
from warden.core.clock import hours_between, parse_iso, to_iso, utc_now
from warden.core.errors import ConflictError, NotFoundError, ValidationError
from warden.core.events.outbox import EventOutbox
from warden.core.history import reports
from warden.core.history.ledger import HistoryLedger
from warden.core.history.schemas import ApprovalStatistics, EscalationMetadata, HistoryFilters, HistoryPage
from warden.core.logging.context import log_context
from warden.core.notifications.dispatcher import NotificationDispatcher
from warden.core.notifications.schemas import NotificationPayload

SYSTEM_APPROVER = "system"

# a new request is urgent above this value or this close to its deadline
URGENT_VALUE_AT_RISK = 10_000
URGENT_DEADLINE_HOURS = 24


class RequestRegistry:
    """State machine over approval requests.

    Every mutation runs under a per-request lock and saves with an optimistic version
    check, so a cancel racing an escalation can never both win.
    """

    def __init__(
        self,
        requests: RequestStore,
        approvers: ApproverStore,
        configurations: ConfigurationStore,
        history: HistoryLedger,
        outbox: EventOutbox | None = None,
        dispatcher: NotificationDispatcher | None = None,
    ) -> None:
        self.requests = requests
        self.approvers = approvers
        self.configurations = configurations
        self.history = history
        self.outbox = outbox
        self.dispatcher = dispatcher
        self.logger = logging.getLogger("warden.approvals")
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def _locked(self, request_id: str) -> Iterator[None]:
        with self._locks_guard:
            lock = self._locks.setdefault(request_id, threading.Lock())
        with lock, log_context(request_id=request_id):
            yield

    def get(self, request_id: str) -> ApprovalRequest:
        request = self.requests.get(request_id)
        if request is None:
            raise NotFoundError("request", request_id)
        return request

    def list(self, status: str | None = None) -> list[ApprovalRequest]:
        return self.requests.list_all(status=status)

    def list_due(self, within_hours: float, now: datetime | None = None) -> list[ApprovalRequest]:
        horizon = (now or utc_now()) + timedelta(hours=within_hours)
        due: list[ApprovalRequest] = []
        for request in self.requests.list_pending_by_deadline():
            deadline = parse_iso(request.deadline_iso)
            if deadline is not None and deadline < horizon:
                due.append(request)
        return due

    def approvers_for(self, request: ApprovalRequest) -> list[Approver]:
        return self.approvers.get_many(request.approver_ids)

    def level(self, request_id: str) -> int:
        return self.history.current_level(request_id)

    def search_history(self, filters: HistoryFilters | None = None, page: int = 1, limit: int = reports.DEFAULT_PAGE_SIZE) -> HistoryPage:
        return reports.search_history(self.history, self.requests, filters, page=page, limit=limit)

    def statistics(self, period_start: datetime, period_end: datetime, department: str | None = None) -> ApprovalStatistics:
        return reports.compute_approval_statistics(self.history, self.requests, period_start, period_end, department=department)

    def create(
        self,
        configuration: ApprovalConfiguration | str,
        requester_id: str,
        payload: dict[str, Any] | None = None,
        *,
        value_at_risk: float | None = None,
        department: str | None = None,
        now: datetime | None = None,
    ) -> ApprovalRequest:
        if isinstance(configuration, str):
            found = self.configurations.get(configuration)
            if found is None:
                raise ValidationError(f"approval configuration not found: {configuration}", field="configuration_id")
            configuration = found
        if not configuration.active:
            raise ValidationError(f"approval configuration {configuration.id} is inactive", field="configuration_id")

        created = now or utc_now()
        created_iso = to_iso(created)
        request = ApprovalRequest(
            id=str(uuid4()),
            action_kind=configuration.action_kind,
            configuration_id=configuration.id,
            requester_id=requester_id,
            status="PENDING",
            strategy=configuration.strategy,
            approver_ids=list(configuration.approver_ids),
            required_approvals=configuration.min_approvers,
            deadline_iso=to_iso(created + timedelta(hours=configuration.deadline_hours)),
            created_at_iso=created_iso,
            updated_at_iso=created_iso,
            value_at_risk=value_at_risk,
            department=department,
            payload=dict(payload or {}),
        )
        with self._locked(request.id):
            saved = self.requests.save(request, expected_version=0)
            self.history.record(saved.id, "CREATED", approver_id=requester_id, ts_iso=created_iso)
            self.logger.info(
                "request_created",
                extra={"extra_fields": {"action_kind": saved.action_kind, "strategy": saved.strategy, "deadline_iso": saved.deadline_iso}},
            )
        self._emit("approval.created", saved)
        self._notify_requested(saved, created)
        return saved

    def record_vote(
        self,
        request_id: str,
        approver_id: str,
        decision: Decision,
        justification: str = "",
        now: datetime | None = None,
    ) -> ApprovalRequest:
        moment = now or utc_now()
        with self._locked(request_id):
            request = self.get(request_id)
            approver = self.approvers.get(approver_id)
            if approver is None:
                raise NotFoundError("approver", approver_id)
            if request.status != "PENDING":
                raise ConflictError(f"request {request_id} is {request.status}", request_id=request_id, status=request.status)

            deadline = parse_iso(request.deadline_iso)
            if deadline is not None and deadline < moment:
                expired = self._transition(request, "EXPIRED", moment, justification="deadline passed before vote")
                self._emit("approval.expired", expired)
                raise ConflictError(f"request {request_id} expired at {request.deadline_iso}", request_id=request_id, status="EXPIRED")

            if approver_id not in request.approver_ids or not approver.active:
                raise ConflictError(f"approver {approver_id} may not vote on request {request_id}", request_id=request_id, status=request.status)

            strategy = get_strategy(request.strategy)
            approvers = self.approvers_for(request)
            votes = self.history.votes(request_id)
            if not strategy.can_vote(approvers, votes, approver_id):
                raise ConflictError(f"approver {approver_id} is not the next position for request {request_id}", request_id=request_id, status=request.status)

            moment_iso = to_iso(moment)
            votes[approver_id] = Vote(approver_id=approver_id, decision=decision, ts_iso=moment_iso)
            outcome = strategy.evaluate(approvers, votes, request.required_approvals)

            updates: dict[str, Any] = {"updated_at_iso": moment_iso}
            if outcome == "approved":
                updates.update(status="APPROVED", completed_at_iso=moment_iso)
            elif outcome == "rejected":
                updates.update(status="REJECTED", completed_at_iso=moment_iso)
            saved = self.requests.save(request.model_copy(update=updates), expected_version=request.version)
            self.history.record(request_id, decision, approver_id=approver_id, justification=justification, ts_iso=moment_iso)
            self.logger.info("vote_recorded", extra={"extra_fields": {"approver_id": approver_id, "decision": decision, "outcome": outcome}})

        if saved.status != "PENDING":
            self._emit(f"approval.{saved.status.lower()}", saved)
            self._notify_decision(saved, approver_id, justification)
        return saved

    def escalate(
        self,
        request_id: str,
        new_approver_ids: list[str],
        strategy: str,
        reason: str,
        actor_id: str | None = None,
        *,
        metadata: EscalationMetadata | None = None,
        new_deadline: datetime | None = None,
        expected_version: int | None = None,
        now: datetime | None = None,
    ) -> ApprovalRequest:
        moment = now or utc_now()
        moment_iso = to_iso(moment)
        with self._locked(request_id):
            request = self.get(request_id)
            if request.status != "PENDING":
                raise ConflictError(f"request {request_id} is {request.status}; escalation aborted", request_id=request_id, status=request.status)
            if expected_version is not None and request.version != expected_version:
                raise ConflictError(f"request {request_id} changed since it was read", request_id=request_id, status=request.status)

            updates: dict[str, Any] = dict(get_strategy(strategy).apply_escalation(request, new_approver_ids))
            updates["updated_at_iso"] = moment_iso
            current_deadline = parse_iso(request.deadline_iso)
            if new_deadline is not None and (current_deadline is None or new_deadline > current_deadline):
                updates["deadline_iso"] = to_iso(new_deadline)
            automatic = strategy == "automatic"
            if automatic:
                updates.update(status="APPROVED", completed_at_iso=moment_iso)

            saved = self.requests.save(request.model_copy(update=updates), expected_version=request.version)

            level = self.history.current_level(request_id) + 1
            entry_meta = (metadata or EscalationMetadata()).model_copy(
                update={
                    "level": level,
                    "strategy": strategy,
                    "actor_id": actor_id,
                    "approver_ids": list(new_approver_ids),
                    "original_deadline_iso": request.deadline_iso,
                    "new_deadline_iso": saved.deadline_iso if saved.deadline_iso != request.deadline_iso else None,
                }
            )
            self.history.record(request_id, "ESCALATED", approver_id=actor_id, justification=reason, metadata=entry_meta, ts_iso=moment_iso)
            if automatic:
                self.history.record(request_id, "APPROVED", approver_id=SYSTEM_APPROVER, justification="approved automatically on escalation", ts_iso=moment_iso)
            self.logger.info(
                "request_escalated",
                extra={"extra_fields": {"escalation_level": level, "strategy": strategy, "approver_ids": new_approver_ids, "status": saved.status}},
            )

        if automatic:
            self._emit("approval.approved", saved)
            self._notify_decision(saved, SYSTEM_APPROVER, "approved automatically on escalation")
        return saved

    def cancel(
        self,
        request_id: str,
        reason: str = "",
        actor_id: str | None = None,
        now: datetime | None = None,
    ) -> ApprovalRequest:
        with self._locked(request_id):
            request = self.get(request_id)
            if request.is_terminal:
                return request
            saved = self._transition(request, "CANCELLED", now or utc_now(), actor_id=actor_id, justification=reason)
        self._emit("approval.cancelled", saved)
        return saved

    def mark_executed(self, request_id: str, actor_id: str | None = None, now: datetime | None = None) -> ApprovalRequest:
        with self._locked(request_id):
            request = self.get(request_id)
            if request.status != "APPROVED":
                raise ConflictError(f"request {request_id} is {request.status}; only APPROVED can execute", request_id=request_id, status=request.status)
            saved = self._transition(request, "EXECUTED", now or utc_now(), actor_id=actor_id)
        self._emit("approval.executed", saved)
        return saved

    def expire(self, request_id: str, now: datetime | None = None) -> ApprovalRequest:
        with self._locked(request_id):
            request = self.get(request_id)
            if request.status != "PENDING":
                raise ConflictError(f"request {request_id} is {request.status}; only PENDING can expire", request_id=request_id, status=request.status)
            saved = self._transition(request, "EXPIRED", now or utc_now(), justification="deadline passed")
        self._emit("approval.expired", saved)
        return saved

    def expire_overdue(self, grace_hours: float = 0, now: datetime | None = None) -> list[ApprovalRequest]:
        moment = now or utc_now()
        cutoff = moment - timedelta(hours=grace_hours)
        expired: list[ApprovalRequest] = []
        for request in self.requests.list_pending_by_deadline():
            deadline = parse_iso(request.deadline_iso)
            if deadline is None or deadline >= cutoff:
                continue
            try:
                expired.append(self.expire(request.id, now=moment))
            except ConflictError as exc:
                self.logger.info("expiry_skipped", extra={"extra_fields": {"request_id": request.id, "status": exc.status}})
        return expired

    def _transition(
        self,
        request: ApprovalRequest,
        status: str,
        moment: datetime,
        actor_id: str | None = None,
        justification: str = "",
    ) -> ApprovalRequest:
        moment_iso = to_iso(moment)
        saved = self.requests.save(
            request.model_copy(update={"status": status, "updated_at_iso": moment_iso, "completed_at_iso": moment_iso}),
            expected_version=request.version,
        )
        self.history.record(request.id, status, approver_id=actor_id, justification=justification, ts_iso=moment_iso)
        self.logger.info("request_transitioned", extra={"extra_fields": {"from_status": request.status, "to_status": status}})
        return saved

    def _notify_requested(self, request: ApprovalRequest, now: datetime) -> None:
        if self.dispatcher is None:
            return
        approvers = [approver for approver in self.approvers_for(request) if approver.active]
        deadline = parse_iso(request.deadline_iso)
        remaining = hours_between(now, deadline) if deadline is not None else None
        urgent = (request.value_at_risk or 0) > URGENT_VALUE_AT_RISK or (remaining is not None and remaining <= URGENT_DEADLINE_HOURS)
        self.dispatcher.dispatch(
            [approver.contact or approver.id for approver in approvers],
            NotificationPayload(
                event="approval.requested",
                title=f"[APPROVAL PENDING] {request.action_kind}",
                body=f"{request.requester_id} requested {request.action_kind} (request {request.id}). Decide before {request.deadline_iso}.",
                request_id=request.id,
                meta={
                    "requester_id": request.requester_id,
                    "approver_ids": [approver.id for approver in approvers],
                    "deadline_iso": request.deadline_iso,
                    "value_at_risk": request.value_at_risk,
                },
            ),
            urgent=urgent,
        )

    def _notify_decision(self, request: ApprovalRequest, approver_id: str, justification: str) -> None:
        if self.dispatcher is None or request.status not in ("APPROVED", "REJECTED"):
            return
        approved = request.status == "APPROVED"
        body = f"Request {request.id} for {request.action_kind} was {request.status.lower()} by {approver_id}."
        if justification:
            body += f" {'Notes' if approved else 'Reason'}: {justification}"
        self.dispatcher.dispatch(
            [request.requester_id],
            NotificationPayload(
                event=f"approval.{request.status.lower()}",
                title=f"[{request.status}] {request.action_kind}",
                body=body,
                request_id=request.id,
                meta={"approver_id": approver_id, "justification": justification},
            ),
            urgent=True,
        )

    def _emit(self, name: str, request: ApprovalRequest) -> None:
        if self.outbox is None:
            return
        self.outbox.emit(
            name,
            {"request_id": request.id, "action_kind": request.action_kind, "status": request.status, "version": request.version},
        )
