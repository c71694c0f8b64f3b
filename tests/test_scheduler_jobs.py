from __future__ import annotations

from datetime import timedelta

from warden.apps.worker.worker import Worker
from warden.core.approvals.schemas import ApprovalConfiguration
from warden.core.ledger.keys import job_run_key
from warden.core.runtime import build_runtime
from warden.core.scheduler.jobs import (
    DEADLINE_WARNING_JOB_ID,
    ESCALATION_SCAN_JOB_ID,
    EXPIRY_SWEEP_JOB_ID,
    run_escalation_scan,
    run_expiry_sweep,
)
from warden.core.scheduler.scheduler import SchedulerService
from warden.core.settings import load_settings


def test_scan_job_is_idempotent_per_scheduled_run(runtime) -> None:
    state_dir = str(runtime.settings.state_dir)

    first = run_escalation_scan(state_dir, scheduled_run_iso="2026-03-02T12:00:00Z", runtime=runtime)
    second = run_escalation_scan(state_dir, scheduled_run_iso="2026-03-02T12:00:00Z", runtime=runtime)
    third = run_escalation_scan(state_dir, scheduled_run_iso="2026-03-02T12:30:00Z", runtime=runtime)

    assert first is not None
    assert second is None
    assert third is not None
    for scheduled in ("2026-03-02T12:00:00Z", "2026-03-02T12:30:00Z"):
        key = job_run_key(job_id=ESCALATION_SCAN_JOB_ID, scheduled_run_iso=scheduled)
        assert runtime.ledger.has_succeeded(key)
    started = [record for record in runtime.ledger.list_recent(20) if record.kind == "job_run" and record.status == "started"]
    assert len(started) == 2


def test_expiry_job_builds_its_own_runtime(tmp_path, now) -> None:
    state_dir = tmp_path / "state"

    seeded = build_runtime(settings=load_settings())
    configuration = ApprovalConfiguration(id="cfg", action_kind="user_block", strategy="parallel", deadline_hours=1, approver_ids=["a"])
    seeded.configurations.upsert(configuration)
    request = seeded.registry.create(configuration, requester_id="clerk", now=now - timedelta(days=365))
    seeded.close()

    result = run_expiry_sweep(str(state_dir))

    assert result is not None
    assert result.expired == 1
    assert build_runtime(state_dir=state_dir).registry.get(request.id).status == "EXPIRED"


def test_scheduler_service_lists_interval_jobs() -> None:
    service = SchedulerService(load_settings())
    service.add_interval("sample-scan", 5, run_escalation_scan, {"state_dir": "/tmp/x"})

    jobs = service.list_jobs()
    assert [job.id for job in jobs] == ["sample-scan"]
    assert jobs[0].kwargs == {"state_dir": "/tmp/x"}

    service.remove_job("sample-scan")
    assert service.list_jobs() == []


def test_worker_schedules_scan_jobs(monkeypatch) -> None:
    worker = Worker(load_settings())
    worker.schedule_jobs()
    assert sorted(job.id for job in worker.scheduler.list_jobs()) == sorted(
        [ESCALATION_SCAN_JOB_ID, DEADLINE_WARNING_JOB_ID, EXPIRY_SWEEP_JOB_ID]
    )
    assert len(worker.scheduler.scheduler.get_jobs()) == 3
    assert worker.settings.seed_default_rules is True

    monkeypatch.setenv("WARDEN_EXPIRY_SWEEP", "off")
    without_sweep = Worker(load_settings())
    without_sweep.schedule_jobs()
    assert EXPIRY_SWEEP_JOB_ID not in [job.id for job in without_sweep.scheduler.list_jobs()]
