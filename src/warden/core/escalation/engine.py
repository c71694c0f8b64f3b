from __future__ import annotations

import contextvars
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import datetime, timedelta
from typing import Any, Callable

from pydantic import ValidationError as PydanticValidationError

from warden.core.approvals.registry import RequestRegistry
from warden.core.approvals.schemas import ApprovalRequest
from warden.core.approvals.strategies import STRATEGIES
from warden.core.clock import hours_between, hours_since, parse_iso, to_iso, utc_now
from warden.core.errors import ConflictError, ValidationError
from warden.core.escalation.metrics import compute_metrics
from warden.core.escalation.schemas import EscalationMetrics, EscalationRecord, MaxEscalationReached, ScanResult
from warden.core.escalation.selection import select_approvers
from warden.core.events.outbox import EventOutbox
from warden.core.history.ledger import HistoryLedger
from warden.core.history.schemas import EscalationMetadata
from warden.core.ledger.keys import escalation_key
from warden.core.ledger.ledger import ExecutionLedger
from warden.core.logging.context import log_context
from warden.core.notifications.dispatcher import NotificationDispatcher
from warden.core.notifications.schemas import NotificationPayload
from warden.core.rules.matcher import match_rule
from warden.core.rules.schemas import EscalationRule
from warden.core.rules.store import RuleStore
from warden.core.settings import EngineSettings

logger = logging.getLogger("warden.escalation")

ESCALATED = "escalated"
MAX_ESCALATION = "max_escalation"

_scan_cancelled: contextvars.ContextVar[threading.Event | None] = contextvars.ContextVar("warden_scan_cancelled", default=None)


def _run_cancellable(cancelled: threading.Event, handler: Callable[[ApprovalRequest], str], request: ApprovalRequest) -> str:
    _scan_cancelled.set(cancelled)
    return handler(request)


class EscalationSkipped(Exception):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class EscalationEngine:
    def __init__(
        self,
        registry: RequestRegistry,
        rules: RuleStore,
        history: HistoryLedger,
        ledger: ExecutionLedger,
        dispatcher: NotificationDispatcher,
        outbox: EventOutbox,
        settings: EngineSettings,
    ) -> None:
        self.registry = registry
        self.rules = rules
        self.history = history
        self.ledger = ledger
        self.dispatcher = dispatcher
        self.outbox = outbox
        self.settings = settings

    def run_escalation_scan(self, now: datetime | None = None) -> ScanResult:
        moment = now or utc_now()
        result = ScanResult(job="escalation_scan", started_at_iso=to_iso(moment))
        due = self.registry.list_due(self.settings.scan_horizon_hours, now=moment)
        rules = self.rules.load()
        logger.info("escalation_scan_started", extra={"extra_fields": {"due": len(due), "rules": len(rules)}})

        for request, outcome in self._fan_out(due, lambda request: self.process_request(request, rules, moment), result):
            if outcome == ESCALATED:
                result.escalated += 1
            elif outcome == MAX_ESCALATION:
                result.max_escalations += 1
            else:
                result.skip(outcome)

        result.finished_at_iso = to_iso(utc_now())
        logger.info("escalation_scan_completed", extra={"extra_fields": result.model_dump(exclude={"started_at_iso", "finished_at_iso"})})
        return result

    def run_deadline_warning_scan(self, now: datetime | None = None) -> ScanResult:
        moment = now or utc_now()
        result = ScanResult(job="deadline_warning_scan", started_at_iso=to_iso(moment))
        window = [
            request
            for request in self.registry.list_due(self.settings.warning_window_hours, now=moment)
            if (parse_iso(request.deadline_iso) or moment) >= moment
        ]

        for request, outcome in self._fan_out(window, lambda request: self.warn_request(request, moment), result):
            if outcome == "warned":
                result.warnings_sent += 1
            else:
                result.skip(outcome)

        result.finished_at_iso = to_iso(utc_now())
        logger.info("deadline_warning_scan_completed", extra={"extra_fields": result.model_dump(exclude={"started_at_iso", "finished_at_iso"})})
        return result

    def run_expiry_sweep(self, now: datetime | None = None) -> ScanResult:
        moment = now or utc_now()
        result = ScanResult(job="expiry_sweep", started_at_iso=to_iso(moment))
        expired = self.registry.expire_overdue(self.settings.expiry_grace_hours, now=moment)
        result.expired = len(expired)
        result.scanned = len(expired)
        result.finished_at_iso = to_iso(utc_now())
        logger.info("expiry_sweep_completed", extra={"extra_fields": {"expired": result.expired}})
        return result

    def _fan_out(
        self,
        requests: list[ApprovalRequest],
        handler: Callable[[ApprovalRequest], str],
        result: ScanResult,
    ) -> list[tuple[ApprovalRequest, str]]:
        """Run ``handler`` for every request on a bounded pool; one failure never aborts the batch.

        ``scan_request_timeout_s`` bounds how long the scan waits on each result, counted
        from the moment that result is awaited. A handler still running at that point is
        abandoned: its cancel flag is set and ``_apply`` refuses to mutate the request.
        """
        result.scanned = len(requests)
        outcomes: list[tuple[ApprovalRequest, str]] = []
        if not requests:
            return outcomes

        executor = ThreadPoolExecutor(max_workers=self.settings.scan_max_workers, thread_name_prefix="warden-scan")
        try:
            futures: list[tuple[ApprovalRequest, threading.Event, Future[str]]] = []
            for request in requests:
                cancelled = threading.Event()
                futures.append((request, cancelled, executor.submit(contextvars.copy_context().run, _run_cancellable, cancelled, handler, request)))
            for request, cancelled, future in futures:
                try:
                    outcomes.append((request, future.result(timeout=self.settings.scan_request_timeout_s)))
                except FutureTimeoutError:
                    cancelled.set()
                    result.failures += 1
                    result.failed_request_ids.append(request.id)
                    logger.error(
                        "scan_request_timeout",
                        extra={"extra_fields": {"request_id": request.id, "job": result.job, "timeout_s": self.settings.scan_request_timeout_s}},
                    )
                except Exception:
                    result.failures += 1
                    result.failed_request_ids.append(request.id)
                    logger.exception("scan_request_failed", extra={"extra_fields": {"request_id": request.id, "job": result.job}})
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
        return outcomes

    def process_request(self, request: ApprovalRequest, rules: list[EscalationRule], now: datetime) -> str:
        """Escalate one due request if a rule calls for it; returns the outcome or skip reason."""
        with log_context(request_id=request.id):
            last_escalation = self.history.last_escalation_at(request.id)
            if last_escalation is not None and hours_between(last_escalation, now) < self.settings.anti_thrash_hours:
                return "recently_escalated"

            rule = match_rule(rules, request, now)
            if rule is None:
                return "no_rule"

            with log_context(rule_id=rule.id):
                wait_hours = hours_since(request.created_at_iso, now)
                if wait_hours < rule.escalation.wait_hours:
                    return "waiting"

                level = self.history.current_level(request.id)
                if level >= rule.escalation.max_level:
                    self._signal_max_escalation(request, rule, level)
                    return MAX_ESCALATION

                strategy = rule.escalation.strategy or request.strategy
                approver_ids = select_approvers(rule, request, self.registry.approvers, strategy)
                if not approver_ids:
                    logger.warning("escalation_no_approvers", extra={"extra_fields": {"strategy": strategy}})
                    return "no_approvers"

                metadata = EscalationMetadata(
                    wait_hours=round(wait_hours, 2),
                    notification_attempts=self.dispatcher.attempts(request.id),
                    value_at_risk=request.value_at_risk,
                    action_kind=request.action_kind,
                    strategy=strategy,
                    rule_id=rule.id,
                )
                try:
                    self._apply(
                        request.id,
                        level,
                        approver_ids,
                        strategy,
                        reason=f"automatic escalation by rule {rule.name}",
                        actor_id=None,
                        metadata=metadata,
                        now=now,
                        channels=rule.escalation.notifications.channels,
                    )
                except EscalationSkipped as skipped:
                    return skipped.reason
                return ESCALATED

    def warn_request(self, request: ApprovalRequest, now: datetime) -> str:
        with log_context(request_id=request.id):
            deadline = parse_iso(request.deadline_iso)
            if deadline is None:
                return "no_deadline"
            remaining = hours_between(now, deadline)
            urgent = remaining <= self.settings.urgent_warning_hours

            votes = self.history.votes(request.id)
            pending = [approver for approver in self.registry.approvers_for(request) if approver.active and approver.id not in votes]
            if not pending:
                return "no_pending_approvers"

            self.dispatcher.dispatch(
                [approver.contact or approver.id for approver in pending],
                NotificationPayload(
                    event="approval.deadline_warning",
                    title=("Urgent: " if urgent else "") + f"approval for {request.action_kind} due soon",
                    body=f"Request {request.id} needs your decision within {remaining:.1f}h (deadline {request.deadline_iso}).",
                    request_id=request.id,
                    meta={"remaining_hours": round(remaining, 2), "urgent": urgent},
                ),
                urgent=urgent,
            )
            return "warned"

    def escalate(
        self,
        request_id: str,
        approver_ids: list[str],
        strategy: str,
        reason: str,
        actor_id: str,
        now: datetime | None = None,
    ) -> EscalationRecord:
        if not approver_ids:
            raise ValidationError("at least one approver is required to escalate", field="approver_ids")
        if strategy not in STRATEGIES:
            raise ValidationError(f"unknown approval strategy: {strategy}", field="strategy")
        known = {approver.id: approver for approver in self.registry.approvers.get_many(approver_ids)}
        missing = [approver_id for approver_id in approver_ids if approver_id not in known]
        if missing:
            raise ValidationError(f"unknown approvers: {', '.join(missing)}", field="approver_ids")
        inactive = [approver_id for approver_id in approver_ids if not known[approver_id].active]
        if inactive:
            raise ValidationError(f"inactive approvers: {', '.join(inactive)}", field="approver_ids")

        moment = now or utc_now()
        with log_context(request_id=request_id):
            request = self.registry.get(request_id)
            if request.status != "PENDING":
                raise ConflictError(f"request {request_id} is {request.status}", request_id=request_id, status=request.status)
            metadata = EscalationMetadata(
                wait_hours=round(hours_since(request.created_at_iso, moment), 2),
                notification_attempts=self.dispatcher.attempts(request_id),
                value_at_risk=request.value_at_risk,
                action_kind=request.action_kind,
                strategy=strategy,
                manual=True,
                actor_id=actor_id,
            )
            level = self.history.current_level(request_id)
            try:
                return self._apply(request_id, level, approver_ids, strategy, reason, actor_id, metadata, moment, channels=[])
            except EscalationSkipped as skipped:
                current = self.registry.get(request_id)
                raise ConflictError(
                    f"request {request_id} could not be escalated: {skipped.reason}", request_id=request_id, status=current.status
                ) from skipped

    def configure_rule(self, rule: EscalationRule | dict[str, Any]) -> EscalationRule:
        if isinstance(rule, dict):
            try:
                rule = EscalationRule.model_validate(rule)
            except PydanticValidationError as exc:
                first = exc.errors()[0]
                field = ".".join(str(part) for part in first["loc"]) or None
                if first["type"] == "missing" and field == "id":
                    raise ValidationError("rule id is required", field="id") from exc
                raise ValidationError(f"invalid escalation rule: {exc.error_count()} error(s)", field=field) from exc

        if not rule.id or not rule.id.strip():
            raise ValidationError("rule id is required", field="id")
        if not rule.name or not rule.name.strip():
            raise ValidationError("rule name is required", field="name")
        if not rule.escalation.strategy:
            raise ValidationError("escalation strategy is required", field="escalation.strategy")
        if rule.escalation.wait_hours < 0:
            raise ValidationError("escalation wait hours cannot be negative", field="escalation.wait_hours")
        if rule.escalation.max_level < 1:
            raise ValidationError("max escalation level must be at least 1", field="escalation.max_level")
        conditions = rule.conditions
        if conditions.wait_hours is not None and conditions.wait_hours < 0:
            raise ValidationError("condition wait hours cannot be negative", field="conditions.wait_hours")
        if conditions.min_value is not None and conditions.max_value is not None and conditions.min_value > conditions.max_value:
            raise ValidationError("min value exceeds max value", field="conditions.min_value")

        saved = self.rules.save(rule)
        with log_context(rule_id=saved.id):
            logger.info("rule_configured", extra={"extra_fields": {"priority": saved.priority, "active": saved.active}})
        self.outbox.emit("escalation.rule_configured", {"rule_id": saved.id, "name": saved.name, "active": saved.active})
        return saved

    def list_rules(self, action_kind: str | None = None, active: bool | None = None) -> list[EscalationRule]:
        rules = self.rules.list_all()
        if active is not None:
            rules = [rule for rule in rules if rule.active == active]
        if action_kind is not None:
            rules = [rule for rule in rules if not rule.conditions.action_kinds or action_kind in rule.conditions.action_kinds]
        return rules

    def metrics(self, period_start: datetime, period_end: datetime) -> EscalationMetrics:
        return compute_metrics(self.history, period_start, period_end)

    def _apply(
        self,
        request_id: str,
        level: int,
        approver_ids: list[str],
        strategy: str,
        reason: str,
        actor_id: str | None,
        metadata: EscalationMetadata,
        now: datetime,
        channels: list[str],
    ) -> EscalationRecord:
        key = escalation_key(request_id, level + 1)
        if not self.ledger.try_start(
            key,
            kind="escalation",
            meta={"request_id": request_id, "level": level + 1},
            stale_after_s=self.settings.scan_request_timeout_s,
        ):
            logger.info("escalation_already_recorded", extra={"extra_fields": {"escalation_level": level + 1}})
            raise EscalationSkipped("duplicate")

        try:
            current = self.registry.get(request_id)
            if current.status != "PENDING":
                self.ledger.mark(key, "skipped", {"status": current.status})
                raise EscalationSkipped("not_pending")

            deadline = parse_iso(current.deadline_iso)
            new_deadline = None
            if deadline is not None and deadline <= now:
                new_deadline = now + timedelta(hours=self.settings.deadline_extensions.for_strategy(strategy))

            cancelled = _scan_cancelled.get()
            if cancelled is not None and cancelled.is_set():
                self.ledger.mark(key, "skipped", {"timed_out": True})
                logger.warning("escalation_abandoned_after_timeout", extra={"extra_fields": {"escalation_level": level + 1}})
                raise EscalationSkipped("timed_out")

            updated = self.registry.escalate(
                request_id,
                approver_ids,
                strategy,
                reason,
                actor_id,
                metadata=metadata.model_copy(update={"level": level + 1}),
                new_deadline=new_deadline,
                expected_version=current.version,
                now=now,
            )
        except ConflictError as exc:
            self.ledger.mark(key, "skipped", {"conflict": str(exc)})
            logger.info("escalation_aborted", extra={"extra_fields": {"status": exc.status, "reason": str(exc)}})
            raise EscalationSkipped("conflict") from exc
        except EscalationSkipped:
            raise
        except BaseException:
            # interrupts too, so the level key is never left in started
            self.ledger.mark(key, "failed")
            raise
        self.ledger.mark(key, "succeeded")

        record = EscalationRecord(
            request_id=request_id,
            approver_ids=list(approver_ids),
            level=level + 1,
            reason=reason,
            strategy=strategy,
            escalated_at_iso=to_iso(now),
            original_deadline_iso=current.deadline_iso,
            new_deadline_iso=updated.deadline_iso if updated.deadline_iso != current.deadline_iso else None,
            metadata=metadata.model_copy(
                update={
                    "level": level + 1,
                    "original_deadline_iso": current.deadline_iso,
                    "new_deadline_iso": updated.deadline_iso if updated.deadline_iso != current.deadline_iso else None,
                    "approver_ids": list(approver_ids),
                }
            ),
        )
        logger.info(
            "approval_escalated",
            extra={"extra_fields": {"escalation_level": record.level, "strategy": strategy, "approver_ids": approver_ids, "manual": metadata.manual}},
        )

        recipients = [approver.contact or approver.id for approver in self.registry.approvers.get_many(approver_ids)]
        self.dispatcher.dispatch(
            recipients,
            NotificationPayload(
                event="approval.escalated",
                title=f"Escalated approval needed: {updated.action_kind}",
                body=f"Request {request_id} was escalated to level {record.level}. Deadline: {updated.deadline_iso}. Reason: {reason}",
                request_id=request_id,
                channels=channels,
                meta={"level": record.level, "strategy": strategy},
            ),
            urgent=True,
        )
        self.outbox.emit("approval.escalated", record.model_dump(mode="json"))
        return record

    def _signal_max_escalation(self, request: ApprovalRequest, rule: EscalationRule, level: int) -> None:
        # Signalled once per level; later scans only count it.
        max_key = escalation_key(request.id, level, step="max")
        if not self.ledger.try_start(max_key, kind="escalation", meta={"request_id": request.id, "level": level}, stale_after_s=self.settings.scan_request_timeout_s):
            return
        signal = MaxEscalationReached(
            request_id=request.id,
            rule_id=rule.id,
            level=level,
            max_level=rule.escalation.max_level,
            action_kind=request.action_kind,
            deadline_iso=request.deadline_iso,
        )
        logger.warning("max_escalation_reached", extra={"extra_fields": {"escalation_level": level, "max_level": rule.escalation.max_level}})
        self.dispatcher.dispatch(
            list(self.settings.admin_recipients),
            NotificationPayload(
                event="approval.max_escalation",
                title=f"Maximum escalation reached: {request.action_kind}",
                body=f"Request {request.id} reached escalation level {level} of {rule.escalation.max_level} and is still pending.",
                request_id=request.id,
                channels=rule.escalation.notifications.channels,
                meta=signal.model_dump(mode="json"),
            ),
            urgent=True,
        )
        self.outbox.emit("approval.max_escalation", signal.model_dump(mode="json"))
        self.ledger.mark(max_key, "succeeded")
