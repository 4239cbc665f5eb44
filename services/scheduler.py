from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, time as dtime, timedelta, tzinfo
from typing import Callable, Dict, List, Optional

from services.single_flight import SingleFlight

logger = logging.getLogger(__name__)

ErrorHandler = Callable[[str, Exception], None]


def next_local_midnight(now: datetime, tz: tzinfo) -> datetime:
    local = now.astimezone(tz)
    return datetime.combine(local.date() + timedelta(days=1), dtime(0, 0), tzinfo=tz)


@dataclass
class Job:
    name: str
    fn: Callable[[], object]
    interval_sec: Optional[int]
    next_due: datetime

    @property
    def daily(self) -> bool:
        return self.interval_sec is None


class Scheduler:
    """Timer loop for the periodic jobs.

    Jobs run one at a time through a shared ``SingleFlight`` guard. A job that
    is due while another one holds the guard stays due and runs on a later
    tick; ticks are never stacked.
    """

    def __init__(
        self,
        guard: SingleFlight,
        tz: tzinfo,
        *,
        now: Optional[Callable[[], datetime]] = None,
        on_error: Optional[ErrorHandler] = None,
    ):
        self.guard = guard
        self.tz = tz
        self._now = now or (lambda: datetime.now(tz))
        self.on_error = on_error
        self.jobs: Dict[str, Job] = {}

    def add_interval(self, name: str, fn: Callable[[], object], interval_sec: int, *, run_immediately: bool = True) -> Job:
        now = self._now()
        due = now if run_immediately else now + timedelta(seconds=interval_sec)
        job = Job(name=name, fn=fn, interval_sec=interval_sec, next_due=due)
        self.jobs[name] = job
        return job

    def add_daily(self, name: str, fn: Callable[[], object]) -> Job:
        job = Job(name=name, fn=fn, interval_sec=None, next_due=next_local_midnight(self._now(), self.tz))
        self.jobs[name] = job
        logger.info("job=%s scheduled for %s", name, job.next_due.isoformat())
        return job

    def _call(self, job: Job) -> None:
        try:
            job.fn()
        except Exception as e:
            logger.exception("job=%s failed: %s", job.name, e)
            if self.on_error is not None:
                self.on_error(job.name, e)

    def run_job(self, name: str) -> bool:
        """Run one job now through the guard; returns False when it was skipped."""
        job = self.jobs[name]
        ran, _ = self.guard.run(name, lambda: self._call(job))
        if ran:
            now = self._now()
            if job.daily:
                job.next_due = next_local_midnight(now, self.tz)
            else:
                job.next_due = now + timedelta(seconds=job.interval_sec or 0)
        return ran

    def run_due(self) -> List[str]:
        ran: List[str] = []
        for job in list(self.jobs.values()):
            if job.next_due <= self._now() and self.run_job(job.name):
                ran.append(job.name)
        return ran

    def seconds_until_next(self) -> float:
        if not self.jobs:
            return 60.0
        soonest = min(j.next_due for j in self.jobs.values())
        return max(0.0, (soonest - self._now()).total_seconds())

    def run_forever(self, stop: threading.Event, max_sleep_sec: float = 30.0) -> None:
        while not stop.is_set():
            self.run_due()
            stop.wait(min(max_sleep_sec, max(1.0, self.seconds_until_next())))
