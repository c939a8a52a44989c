"""APScheduler wrapper registering discovery and staleness jobs per portal."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from ..config import PortalConfig, ScheduleConfig, ScheduleType
from ..logging_conf import configure_logging

PortalCallback = Callable[[PortalConfig], None]


class APSchedulerAdapter:
    """Manage APScheduler jobs for configured portals."""

    def __init__(self, scheduler: BackgroundScheduler | None = None) -> None:
        self.scheduler = scheduler or BackgroundScheduler()
        self.logger = configure_logging().bind(component="scheduler")
        self.started = False

    def start(self) -> None:
        if not self.started:
            self.scheduler.start()
            self.started = True
            self.logger.info("apscheduler_started")

    def shutdown(self, wait: bool = False) -> None:
        if self.started:
            self.scheduler.shutdown(wait=wait)
            self.started = False
            self.logger.info("apscheduler_stopped")

    def schedule_portal(
        self,
        portal: PortalConfig,
        discovery_callback: PortalCallback,
        sweep_callback: PortalCallback | None = None,
    ) -> list[str]:
        """Register the discovery job and, when given, the independent sweep job."""

        job_ids = [self._add(f"discover::{portal.portal}", portal.discovery.schedule, discovery_callback, portal)]
        if sweep_callback is not None:
            job_ids.append(self._add(f"sweep::{portal.portal}", portal.staleness.schedule, sweep_callback, portal))
        return job_ids

    def remove_portal(self, portal_name: str) -> None:
        for job_id in (f"discover::{portal_name}", f"sweep::{portal_name}"):
            if self.scheduler.get_job(job_id) is not None:
                self.scheduler.remove_job(job_id)
            else:
                self.logger.warning("job_remove_failed", job_id=job_id)

    def _add(self, job_id: str, schedule: ScheduleConfig, callback: PortalCallback, portal: PortalConfig) -> str:
        trigger = self._build_trigger(schedule)
        # one run per portal at a time; late runs collapse into one
        self.scheduler.add_job(
            callback,
            trigger=trigger,
            id=job_id,
            args=[portal],
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.logger.info("job_scheduled", job_id=job_id, portal=portal.portal, schedule=schedule.model_dump(mode="json"))
        return job_id

    @staticmethod
    def _build_trigger(schedule: ScheduleConfig):
        if schedule.type is ScheduleType.CRON:
            return CronTrigger.from_crontab(str(schedule.value))
        if schedule.type is ScheduleType.INTERVAL:
            if isinstance(schedule.value, (int, float)):
                return IntervalTrigger(seconds=float(schedule.value))
            if isinstance(schedule.value, dict):
                return IntervalTrigger(**schedule.value)
            raise ValueError("Interval schedule requires seconds or kwargs dict")
        if schedule.type is ScheduleType.ONCE:
            if schedule.value:
                run_date = datetime.fromisoformat(str(schedule.value))
            else:
                run_date = datetime.now(timezone.utc)
            return DateTrigger(run_date=run_date)
        raise ValueError(f"Unknown schedule type: {schedule.type}")

    def list_jobs(self) -> list[dict]:
        jobs = []
        for job in self.scheduler.get_jobs():
            jobs.append(
                {
                    "id": job.id,
                    "next_run_time": getattr(job, "next_run_time", None),
                    "trigger": str(job.trigger),
                }
            )
        return jobs


__all__ = ["APSchedulerAdapter", "PortalCallback"]
