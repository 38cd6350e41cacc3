"""Periodic jobs: fixed intervals and UTC cron expressions.

Usage::

    scheduler = Scheduler()
    scheduler.add_interval("dns-sync", synchronizer.sync_all, seconds=30)
    scheduler.add_cron("backup-daily", daily_backups, "0 2 * * *")
    scheduler.add_cron("backup-weekly", weekly_backups, "0 3 * * 0")
    scheduler.start()

Jobs run one after another on the scheduler thread. A job that raises is
logged and scheduled again as usual.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from croniter import croniter

logger = logging.getLogger(__name__)

Job = Callable[[], object]


class SchedulerError(Exception):
    """Raised when a job is registered with an invalid schedule."""


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


@dataclass
class IntervalSchedule:
    seconds: float

    def next_after(self, moment: datetime) -> datetime:
        return moment + timedelta(seconds=self.seconds)


@dataclass
class CronSchedule:
    """Fires on a five-field cron *expression*, evaluated in UTC."""

    expression: str

    def __post_init__(self) -> None:
        if not croniter.is_valid(self.expression):
            raise SchedulerError(f"Invalid cron expression: {self.expression!r}")

    def next_after(self, moment: datetime) -> datetime:
        return croniter(self.expression, moment.astimezone(UTC)).get_next(datetime)


@dataclass
class ScheduledJob:
    name: str
    func: Job
    schedule: IntervalSchedule | CronSchedule
    next_run: datetime
    runs: int = 0
    failures: int = 0
    last_error: str | None = field(default=None, repr=False)


class Scheduler:
    """Runs registered jobs from one daemon thread."""

    def __init__(
        self,
        tick_seconds: float = 1.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._tick = tick_seconds
        self._clock = clock
        self._jobs: dict[str, ScheduledJob] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def jobs(self) -> list[ScheduledJob]:
        with self._lock:
            return list(self._jobs.values())

    def add_interval(self, name: str, func: Job, seconds: float) -> ScheduledJob:
        if seconds <= 0:
            raise SchedulerError(f"Interval for {name} must be positive")
        return self._add(name, func, IntervalSchedule(seconds))

    def add_cron(self, name: str, func: Job, expression: str) -> ScheduledJob:
        return self._add(name, func, CronSchedule(expression))

    def _add(self, name: str, func: Job, schedule: IntervalSchedule | CronSchedule) -> ScheduledJob:
        job = ScheduledJob(name=name, func=func, schedule=schedule, next_run=schedule.next_after(self._clock()))
        with self._lock:
            if name in self._jobs:
                raise SchedulerError(f"Job already registered: {name}")
            self._jobs[name] = job
        logger.debug("Scheduled %s, first run at %s", name, job.next_run.isoformat())
        return job

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------

    def run_pending(self) -> list[str]:
        """Run every job that is due. Returns the names of the jobs run."""
        now = self._clock()
        with self._lock:
            due = [job for job in self._jobs.values() if job.next_run <= now]
        ran: list[str] = []
        for job in due:
            try:
                job.func()
            except Exception as exc:
                job.failures += 1
                job.last_error = str(exc)
                logger.exception("Scheduled job %s failed", job.name)
            job.runs += 1
            job.next_run = job.schedule.next_after(now)
            ran.append(job.name)
        return ran

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="pgcluster-scheduler", daemon=True)
        self._thread.start()
        logger.info("Scheduler started with %d jobs", len(self._jobs))

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self._tick * 5)
            self._thread = None

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.run_pending()
            except Exception:
                logger.exception("Scheduler tick failed")
            self._stop.wait(self._tick)
