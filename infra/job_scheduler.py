"""
Trade Lifecycle Infrastructure: Job Scheduler

Timezone-aware cron triggers for the recurring jobs. Handlers are plain
callables, so every job can be exercised by calling its handler directly.
"""

import logging
from typing import Callable, List, Optional
from zoneinfo import ZoneInfo

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


def build_trigger(spec: str, timezone: str) -> CronTrigger:
    """
    Build a cron trigger from a 5-field crontab string.

    Weekdays should be named (``mon-fri``): numeric day-of-week values are
    counted from Monday, not Sunday.
    """
    try:
        return CronTrigger.from_crontab(spec, timezone=ZoneInfo(timezone))
    except (ValueError, KeyError) as e:
        raise ConfigurationError(f"Invalid schedule '{spec}' ({timezone}): {e}") from e


class JobScheduler:
    """
    Thin wrapper over APScheduler's BackgroundScheduler.

    Jobs never overlap with themselves (max_instances=1) and missed runs are
    collapsed into one (coalesce=True).
    """

    def __init__(self, scheduler: Optional[BackgroundScheduler] = None, misfire_grace_seconds: int = 300):
        self._scheduler = scheduler or BackgroundScheduler(timezone="UTC")
        self.misfire_grace_seconds = misfire_grace_seconds

    def schedule(self, spec: str, timezone: str, handler: Callable[[], object], job_id: Optional[str] = None) -> str:
        trigger = build_trigger(spec, timezone)
        job = self._scheduler.add_job(
            handler,
            trigger,
            id=job_id,
            name=job_id,
            replace_existing=job_id is not None,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=self.misfire_grace_seconds,
        )
        logger.info(f"Scheduled job {job.id}: '{spec}' ({timezone})")
        return job.id

    def remove(self, job_id: str) -> None:
        if self._scheduler.get_job(job_id) is not None:
            self._scheduler.remove_job(job_id)
            logger.info(f"Removed job {job_id}")

    def get_job(self, job_id: str):
        return self._scheduler.get_job(job_id)

    def job_ids(self) -> List[str]:
        return [job.id for job in self._scheduler.get_jobs()]

    def start(self) -> None:
        if not self._scheduler.running:
            self._scheduler.start()
            logger.info("Job scheduler started")

    def shutdown(self, wait: bool = True) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
            logger.info("Job scheduler stopped")

    @property
    def running(self) -> bool:
        return self._scheduler.running
