from __future__ import annotations

from datetime import timedelta

import pytest

from warden.core.approvals.schemas import ApprovalConfiguration, Approver
from warden.core.clock import parse_iso
from warden.core.errors import ConflictError, NotFoundError, ValidationError


def _seed(runtime, strategy: str = "parallel", approver_ids: list[str] | None = None, min_approvers: int = 2, deadline_hours: int = 24) -> ApprovalConfiguration:
    for idx, approver_id in enumerate(["a1", "a2", "a3"]):
        runtime.approvers.upsert(Approver(id=approver_id, name=approver_id.upper(), sequence=idx + 1, contact=f"{approver_id}@example.org"))
    runtime.approvers.upsert(Approver(id="gone", name="Former", active=False))
    configuration = ApprovalConfiguration(
        id=f"cfg-{strategy}",
        action_kind="benefit_cancellation",
        strategy=strategy,
        min_approvers=min_approvers,
        deadline_hours=deadline_hours,
        approver_ids=approver_ids or ["a1", "a2", "a3"],
    )
    runtime.configurations.save(configuration)
    return configuration


def test_create_sets_deadline_and_records_history(runtime, now) -> None:
    configuration = _seed(runtime)

    request = runtime.registry.create(configuration, requester_id="clerk", payload={"benefit_id": "b-7"}, value_at_risk=1200.0, now=now)

    assert request.status == "PENDING"
    assert request.required_approvals == 2
    assert request.approver_ids == ["a1", "a2", "a3"]
    assert parse_iso(request.deadline_iso) == now + timedelta(hours=24)
    assert request.version == 1
    assert [entry.action for entry in runtime.history.query(request.id)] == ["CREATED"]


def test_create_rejects_missing_or_inactive_configuration(runtime, now) -> None:
    configuration = _seed(runtime)
    runtime.configurations.upsert(configuration.model_copy(update={"active": False}))

    with pytest.raises(ValidationError):
        runtime.registry.create("missing", requester_id="clerk", now=now)
    with pytest.raises(ValidationError):
        runtime.registry.create(configuration.id, requester_id="clerk", now=now)


def test_only_one_active_configuration_per_action_kind(runtime) -> None:
    configuration = _seed(runtime)

    with pytest.raises(ValidationError):
        runtime.configurations.save(configuration.model_copy(update={"id": "cfg-other"}))


def test_parallel_votes_reach_approval_then_execute(runtime, now) -> None:
    request = runtime.registry.create(_seed(runtime), requester_id="clerk", now=now)

    after_first = runtime.registry.record_vote(request.id, "a1", "APPROVED", "looks fine", now=now + timedelta(minutes=5))
    assert after_first.status == "PENDING"

    approved = runtime.registry.record_vote(request.id, "a3", "APPROVED", now=now + timedelta(minutes=10))
    assert approved.status == "APPROVED"
    assert approved.completed_at_iso is not None

    executed = runtime.registry.mark_executed(request.id, actor_id="ops", now=now + timedelta(hours=1))
    assert executed.status == "EXECUTED"
    assert [entry.action for entry in runtime.history.query(request.id)] == ["EXECUTED", "APPROVED", "APPROVED", "CREATED"]
    assert [event.name for event in runtime.outbox.list_recent()] == ["approval.created", "approval.approved", "approval.executed"]


def test_any_rejection_rejects_parallel_request(runtime, now) -> None:
    request = runtime.registry.create(_seed(runtime), requester_id="clerk", now=now)

    rejected = runtime.registry.record_vote(request.id, "a2", "REJECTED", "missing paperwork", now=now)

    assert rejected.status == "REJECTED"
    with pytest.raises(ConflictError):
        runtime.registry.record_vote(request.id, "a1", "APPROVED", now=now)


def test_vote_guards(runtime, now) -> None:
    request = runtime.registry.create(_seed(runtime, approver_ids=["a1", "a2", "gone"]), requester_id="clerk", now=now)

    with pytest.raises(NotFoundError):
        runtime.registry.record_vote("nope", "a1", "APPROVED", now=now)
    with pytest.raises(NotFoundError):
        runtime.registry.record_vote(request.id, "ghost", "APPROVED", now=now)
    with pytest.raises(ConflictError):
        runtime.registry.record_vote(request.id, "a3", "APPROVED", now=now)
    with pytest.raises(ConflictError):
        runtime.registry.record_vote(request.id, "gone", "APPROVED", now=now)


def test_hierarchical_vote_out_of_order_conflicts(runtime, now) -> None:
    request = runtime.registry.create(_seed(runtime, strategy="hierarchical", min_approvers=1), requester_id="clerk", now=now)

    with pytest.raises(ConflictError):
        runtime.registry.record_vote(request.id, "a2", "APPROVED", now=now)

    runtime.registry.record_vote(request.id, "a1", "APPROVED", now=now)
    runtime.registry.record_vote(request.id, "a2", "APPROVED", now=now)
    final = runtime.registry.record_vote(request.id, "a3", "APPROVED", now=now)
    assert final.status == "APPROVED"


def test_vote_after_deadline_expires_request(runtime, now) -> None:
    request = runtime.registry.create(_seed(runtime, deadline_hours=2), requester_id="clerk", now=now)

    with pytest.raises(ConflictError) as excinfo:
        runtime.registry.record_vote(request.id, "a1", "APPROVED", now=now + timedelta(hours=3))

    assert excinfo.value.status == "EXPIRED"
    assert runtime.registry.get(request.id).status == "EXPIRED"
    assert runtime.history.query(request.id)[0].action == "EXPIRED"


def test_cancel_is_noop_on_terminal_requests(runtime, now) -> None:
    request = runtime.registry.create(_seed(runtime), requester_id="clerk", now=now)

    cancelled = runtime.registry.cancel(request.id, reason="duplicate", actor_id="clerk", now=now)
    again = runtime.registry.cancel(request.id, reason="again", actor_id="clerk", now=now)

    assert cancelled.status == "CANCELLED"
    assert again.version == cancelled.version
    assert [entry.action for entry in runtime.history.query(request.id)].count("CANCELLED") == 1


def test_approved_request_can_still_be_cancelled(runtime, now) -> None:
    configuration = _seed(runtime, min_approvers=1)
    request = runtime.registry.create(configuration, requester_id="clerk", now=now)
    runtime.registry.record_vote(request.id, "a1", "APPROVED", now=now)

    assert runtime.registry.cancel(request.id, now=now).status == "CANCELLED"
    with pytest.raises(ConflictError):
        runtime.registry.mark_executed(request.id)


def test_escalate_rejects_non_pending_and_stale_versions(runtime, now) -> None:
    request = runtime.registry.create(_seed(runtime), requester_id="clerk", now=now)

    with pytest.raises(ConflictError):
        runtime.registry.escalate(request.id, ["a1"], "hierarchical", "stale", expected_version=request.version - 1, now=now)

    runtime.registry.cancel(request.id, now=now)
    with pytest.raises(ConflictError):
        runtime.registry.escalate(request.id, ["a1"], "hierarchical", "too late", now=now)
    assert runtime.history.current_level(request.id) == 0


def test_store_save_detects_concurrent_writer(runtime, now) -> None:
    request = runtime.registry.create(_seed(runtime), requester_id="clerk", now=now)
    runtime.requests.save(request.model_copy(update={"department": "finance"}), expected_version=request.version)

    with pytest.raises(ConflictError):
        runtime.requests.save(request.model_copy(update={"department": "legal"}), expected_version=request.version)


def test_automatic_escalation_approves_after_recording_escalation(runtime, now) -> None:
    request = runtime.registry.create(_seed(runtime), requester_id="clerk", now=now)

    escalated = runtime.registry.escalate(request.id, [], "automatic", "auto-approve low risk", actor_id=None, now=now)

    assert escalated.status == "APPROVED"
    actions = [entry.action for entry in reversed(runtime.history.query(request.id))]
    assert actions == ["CREATED", "ESCALATED", "APPROVED"]
    assert runtime.history.query(request.id)[0].approver_id == "system"


def test_escalate_moves_deadline_only_forward(runtime, now) -> None:
    request = runtime.registry.create(_seed(runtime), requester_id="clerk", now=now)
    original = parse_iso(request.deadline_iso)

    earlier = runtime.registry.escalate(request.id, ["a1"], "hierarchical", "earlier", new_deadline=original - timedelta(hours=5), now=now)
    assert parse_iso(earlier.deadline_iso) == original

    later = runtime.registry.escalate(request.id, ["a2"], "hierarchical", "later", new_deadline=original + timedelta(hours=5), now=now)
    assert parse_iso(later.deadline_iso) == original + timedelta(hours=5)
    assert runtime.history.current_level(request.id) == 2


def test_expire_overdue_respects_grace(runtime, now) -> None:
    configuration = _seed(runtime, deadline_hours=1)
    overdue = runtime.registry.create(configuration, requester_id="clerk", now=now - timedelta(hours=5))
    recent = runtime.registry.create(configuration, requester_id="clerk", now=now - timedelta(hours=2))

    expired = runtime.registry.expire_overdue(grace_hours=2, now=now)

    assert [request.id for request in expired] == [overdue.id]
    assert runtime.registry.get(recent.id).status == "PENDING"
    with pytest.raises(ConflictError):
        runtime.registry.expire(overdue.id, now=now)


def test_list_due_and_status_filter(runtime, now) -> None:
    configuration = _seed(runtime, deadline_hours=48)
    far = runtime.registry.create(configuration, requester_id="clerk", now=now)
    near = runtime.registry.create(configuration, requester_id="clerk", now=now - timedelta(hours=40))

    due = runtime.registry.list_due(24, now=now)

    assert [request.id for request in due] == [near.id]
    assert {request.id for request in runtime.registry.list(status="PENDING")} == {far.id, near.id}


def _notices(gateway, event: str) -> list[dict]:
    return [item for item in gateway.sent if item["payload"].event == event]


def test_new_request_notifies_active_approvers(runtime, gateway, now) -> None:
    configuration = _seed(runtime, approver_ids=["a1", "gone", "a2"], deadline_hours=72)

    calm = runtime.registry.create(configuration, requester_id="clerk", value_at_risk=500.0, now=now)
    costly = runtime.registry.create(configuration, requester_id="clerk", value_at_risk=25_000.0, now=now)

    requested = _notices(gateway, "approval.requested")
    assert [item["payload"].request_id for item in requested] == [calm.id, costly.id]
    assert requested[0]["recipients"] == ["a1@example.org", "a2@example.org"]
    assert requested[0]["payload"].title == "[APPROVAL PENDING] benefit_cancellation"
    assert requested[0]["payload"].meta["requester_id"] == "clerk"
    assert requested[0]["urgent"] is False
    assert requested[1]["urgent"] is True
    assert runtime.dispatcher.attempts(calm.id) == 1


def test_short_deadline_request_is_urgent(runtime, gateway, now) -> None:
    runtime.registry.create(_seed(runtime, deadline_hours=24), requester_id="clerk", now=now)

    assert _notices(gateway, "approval.requested")[0]["urgent"] is True


def test_requester_hears_the_decision(runtime, gateway, now) -> None:
    configuration = _seed(runtime)
    approved = runtime.registry.create(configuration, requester_id="clerk", now=now)
    rejected = runtime.registry.create(configuration, requester_id="analyst", now=now)

    runtime.registry.record_vote(approved.id, "a1", "APPROVED", now=now)
    assert _notices(gateway, "approval.approved") == []
    runtime.registry.record_vote(approved.id, "a2", "APPROVED", "all checks passed", now=now)
    runtime.registry.record_vote(rejected.id, "a3", "REJECTED", "missing paperwork", now=now)

    approval = _notices(gateway, "approval.approved")
    assert len(approval) == 1
    assert approval[0]["recipients"] == ["clerk"]
    assert approval[0]["urgent"] is True
    assert approval[0]["payload"].title == "[APPROVED] benefit_cancellation"
    assert "all checks passed" in approval[0]["payload"].body

    rejection = _notices(gateway, "approval.rejected")
    assert rejection[0]["recipients"] == ["analyst"]
    assert rejection[0]["payload"].meta == {"approver_id": "a3", "justification": "missing paperwork"}
    assert "Reason: missing paperwork" in rejection[0]["payload"].body


def test_automatic_approval_notifies_requester(runtime, gateway, now) -> None:
    request = runtime.registry.create(_seed(runtime), requester_id="clerk", now=now)

    runtime.registry.escalate(request.id, [], "automatic", "auto-approve low risk", actor_id=None, now=now)

    approval = _notices(gateway, "approval.approved")
    assert approval[0]["recipients"] == ["clerk"]
    assert approval[0]["payload"].meta["approver_id"] == "system"


def test_cancel_and_expiry_do_not_notify_requester(runtime, gateway, now) -> None:
    configuration = _seed(runtime)
    cancelled = runtime.registry.create(configuration, requester_id="clerk", now=now)
    overdue = runtime.registry.create(configuration, requester_id="clerk", now=now - timedelta(hours=30))

    runtime.registry.cancel(cancelled.id, reason="withdrawn", actor_id="clerk", now=now)
    runtime.registry.expire(overdue.id, now=now)

    assert {item["payload"].event for item in gateway.sent} == {"approval.requested"}
