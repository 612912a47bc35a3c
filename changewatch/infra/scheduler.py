"""
Scheduler infrastructure: APScheduler poll loops and cron helpers.

The poll loops only wake the pipeline up. Which watch is due and which
delivery may be retried is decided from database rows, so the job store is
in-memory and nothing is lost when the process restarts.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional
from zoneinfo import ZoneInfo

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from croniter import croniter

from ..errors import ConfigurationError

logger = logging.getLogger(__name__)


def validate_cron_expression(cron_expression: str) -> None:
    """Raise ConfigurationError unless this is a valid 5-field cron expression."""
    if not isinstance(cron_expression, str) or len(cron_expression.split()) != 5:
        raise ConfigurationError(
            f"Cron expression must have 5 parts (minute hour day month day_of_week): {cron_expression!r}"
        )
    if not croniter.is_valid(cron_expression):
        raise ConfigurationError(f"Invalid cron expression: {cron_expression!r}")


def next_run_after(cron_expression: str, after: datetime, tz: str = "UTC") -> datetime:
    """Next fire time strictly after ``after``, evaluated in ``tz``, returned in UTC."""
    validate_cron_expression(cron_expression)
    if after.tzinfo is None:
        after = after.replace(tzinfo=timezone.utc)
    local = after.astimezone(ZoneInfo(tz))
    nxt = croniter(cron_expression, local).get_next(datetime)
    return nxt.astimezone(timezone.utc)


class Scheduler:
    """Async task scheduler wrapper around APScheduler for the poll loops."""

    def __init__(self, timezone: str = "UTC"):
        job_defaults = {
            "coalesce": True,
            "max_instances": 1,
            "misfire_grace_time": 30,  # seconds
        }
        self._scheduler = AsyncIOScheduler(job_defaults=job_defaults, timezone=timezone)
        self._started = False

    @property
    def running(self) -> bool:
        return self._started

    async def start(self) -> None:
        """Start the scheduler."""
        if not self._started:
            self._scheduler.start()
            self._started = True
            logger.info("Scheduler started")

    async def stop(self) -> None:
        """Stop the scheduler."""
        if self._started:
            self._scheduler.shutdown(wait=False)
            self._started = False
            logger.info("Scheduler stopped")

    def add_interval_job(
        self,
        func: Callable,
        seconds: float,
        job_id: Optional[str] = None,
        run_now: bool = True,
        **kwargs,
    ) -> None:
        """Add a job that runs every ``seconds``; overlapping runs are skipped."""
        if seconds <= 0:
            raise ValueError("Interval must be positive")

        if run_now:
            kwargs.setdefault("next_run_time", datetime.now(timezone.utc))

        self._scheduler.add_job(
            func,
            trigger=IntervalTrigger(seconds=seconds),
            id=job_id,
            replace_existing=True,
            **kwargs,
        )
        logger.info(f"Added interval job: {job_id or func.__name__} (every {seconds}s)")

    def list_jobs(self) -> Dict[str, Any]:
        """List all scheduled jobs."""
        jobs = {}
        for job in self._scheduler.get_jobs():
            jobs[job.id] = {
                "name": job.name,
                "next_run": job.next_run_time,
                "trigger": str(job.trigger),
            }
        return jobs
