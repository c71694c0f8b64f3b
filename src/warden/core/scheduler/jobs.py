from __future__ import annotations

import logging
from typing import Callable
from uuid import uuid4

from warden.core.escalation.schemas import ScanResult
from warden.core.ledger.keys import job_run_key
from warden.core.logging.context import log_context
from warden.core.runtime import Runtime, build_runtime

logger = logging.getLogger("warden.scheduler.jobs")

ESCALATION_SCAN_JOB_ID = "escalation:scan"
DEADLINE_WARNING_JOB_ID = "escalation:deadline_warnings"
EXPIRY_SWEEP_JOB_ID = "approvals:expiry_sweep"


def _run_guarded(
    job_id: str,
    state_dir: str,
    scheduled_run_iso: str | None,
    runtime: Runtime | None,
    scan: Callable[[Runtime], ScanResult],
) -> ScanResult | None:
    active = runtime or build_runtime(state_dir=state_dir)
    try:
        return _guarded_scan(job_id, scheduled_run_iso, active, scan)
    finally:
        if runtime is None:
            active.close()


def _guarded_scan(
    job_id: str,
    scheduled_run_iso: str | None,
    active: Runtime,
    scan: Callable[[Runtime], ScanResult],
) -> ScanResult | None:
    run_correlation_id = str(uuid4())
    with log_context(correlation_id=run_correlation_id, job_id=job_id):
        job_key = job_run_key(job_id=job_id, scheduled_run_iso=scheduled_run_iso)
        started = active.ledger.try_start(
            job_key,
            kind="job_run",
            correlation_id=run_correlation_id,
            meta={"job_id": job_id, "scheduled_run_iso": scheduled_run_iso},
        )
        if not started:
            logger.info("job_completed", extra={"extra_fields": {"skipped_idempotent": True}})
            return None

        logger.info("job_started")
        try:
            result = scan(active)
        except Exception:
            active.ledger.mark(job_key, "failed")
            logger.exception("job_failed")
            raise
        active.ledger.mark(
            job_key,
            "succeeded",
            {"scanned": result.scanned, "escalated": result.escalated, "failures": result.failures},
        )
        logger.info("job_completed", extra={"extra_fields": {"skipped_idempotent": False, "scanned": result.scanned}})
        return result


def run_escalation_scan(
    state_dir: str,
    job_id: str = ESCALATION_SCAN_JOB_ID,
    scheduled_run_iso: str | None = None,
    runtime: Runtime | None = None,
) -> ScanResult | None:
    return _run_guarded(job_id, state_dir, scheduled_run_iso, runtime, lambda rt: rt.engine.run_escalation_scan())


def run_deadline_warning_scan(
    state_dir: str,
    job_id: str = DEADLINE_WARNING_JOB_ID,
    scheduled_run_iso: str | None = None,
    runtime: Runtime | None = None,
) -> ScanResult | None:
    return _run_guarded(job_id, state_dir, scheduled_run_iso, runtime, lambda rt: rt.engine.run_deadline_warning_scan())


def run_expiry_sweep(
    state_dir: str,
    job_id: str = EXPIRY_SWEEP_JOB_ID,
    scheduled_run_iso: str | None = None,
    runtime: Runtime | None = None,
) -> ScanResult | None:
    return _run_guarded(job_id, state_dir, scheduled_run_iso, runtime, lambda rt: rt.engine.run_expiry_sweep())
