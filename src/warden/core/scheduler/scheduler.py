from __future__ import annotations

from pathlib import Path
from typing import Any, Callable
from zoneinfo import ZoneInfo

from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.schedulers.background import BackgroundScheduler

from warden.core.settings import EngineSettings

from .schemas import JobInfo


class SchedulerService:
    def __init__(self, settings: EngineSettings) -> None:
        self.state_dir = Path(settings.state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.test_mode = settings.test_mode
        self.timezone = ZoneInfo(settings.timezone)
        self.scheduler = BackgroundScheduler(
            jobstores={"default": self._build_job_store()},
            timezone=self.timezone,
            job_defaults={"coalesce": True, "max_instances": 1},
        )
        self._started = False

    def _build_job_store(self) -> MemoryJobStore | SQLAlchemyJobStore:
        if self.test_mode:
            return MemoryJobStore()
        return SQLAlchemyJobStore(url=f"sqlite:///{self.state_dir / 'jobs.sqlite'}")

    def start(self) -> None:
        if self.test_mode or self._started:
            return
        self.scheduler.start()
        self._started = True

    def shutdown(self) -> None:
        if self._started:
            self.scheduler.shutdown(wait=False)
            self._started = False

    def add_interval(self, job_id: str, minutes: int, func: Callable[..., Any], kwargs: dict[str, Any]) -> None:
        self.scheduler.add_job(
            func,
            trigger="interval",
            id=job_id,
            minutes=minutes,
            kwargs=kwargs,
            replace_existing=True,
        )

    def list_jobs(self) -> list[JobInfo]:
        jobs: list[JobInfo] = []
        for job in self.scheduler.get_jobs():
            next_run_time = getattr(job, "next_run_time", None)
            jobs.append(
                JobInfo(
                    id=job.id,
                    next_run_time_iso=next_run_time.isoformat() if next_run_time else None,
                    trigger=str(job.trigger),
                    kwargs=dict(job.kwargs),
                )
            )
        return jobs

    def remove_job(self, job_id: str) -> None:
        self.scheduler.remove_job(job_id)
