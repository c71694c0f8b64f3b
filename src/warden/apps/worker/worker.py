from __future__ import annotations

import logging
import signal
import time

from warden.core.logging.setup import configure_logging
from warden.core.rules.defaults import seed_default_rules
from warden.core.rules.store import RuleStore
from warden.core.scheduler.jobs import (
    DEADLINE_WARNING_JOB_ID,
    ESCALATION_SCAN_JOB_ID,
    EXPIRY_SWEEP_JOB_ID,
    run_deadline_warning_scan,
    run_escalation_scan,
    run_expiry_sweep,
)
from warden.core.scheduler.scheduler import SchedulerService
from warden.core.settings import EngineSettings, load_settings

logger = logging.getLogger("warden.worker")


class Worker:
    def __init__(self, settings: EngineSettings | None = None) -> None:
        self.settings = settings or load_settings()
        configure_logging(
            self.settings.state_dir,
            level=self.settings.log_level,
            to_file=self.settings.log_to_file,
            log_dir=self.settings.log_dir,
        )
        self.scheduler = SchedulerService(self.settings)
        self._running = True

    def schedule_jobs(self) -> None:
        state_dir = str(self.settings.state_dir)
        if self.settings.seed_default_rules:
            seed_default_rules(RuleStore(self.settings.state_dir))

        self.scheduler.add_interval(
            ESCALATION_SCAN_JOB_ID,
            self.settings.scan_interval_minutes,
            run_escalation_scan,
            {"state_dir": state_dir, "job_id": ESCALATION_SCAN_JOB_ID},
        )
        self.scheduler.add_interval(
            DEADLINE_WARNING_JOB_ID,
            self.settings.warning_interval_minutes,
            run_deadline_warning_scan,
            {"state_dir": state_dir, "job_id": DEADLINE_WARNING_JOB_ID},
        )
        if self.settings.expiry_sweep_enabled:
            self.scheduler.add_interval(
                EXPIRY_SWEEP_JOB_ID,
                60,
                run_expiry_sweep,
                {"state_dir": state_dir, "job_id": EXPIRY_SWEEP_JOB_ID},
            )
        logger.info("jobs_scheduled", extra={"extra_fields": {"jobs": [job.id for job in self.scheduler.list_jobs()]}})

    def _handle_signal(self, signum, frame) -> None:  # type: ignore[no-untyped-def]
        _ = frame
        logger.info("worker_signal_received", extra={"extra_fields": {"signum": signum}})
        self._running = False

    def run_forever(self) -> None:
        signal.signal(signal.SIGINT, self._handle_signal)
        signal.signal(signal.SIGTERM, self._handle_signal)
        self.schedule_jobs()
        self.scheduler.start()
        logger.info("worker_started")
        try:
            while self._running:
                time.sleep(0.5)
        finally:
            self.scheduler.shutdown()
            logger.info("worker_stopped")


def run() -> None:
    Worker().run_forever()


if __name__ == "__main__":
    run()
