"""
Rollup Scheduler

Runs the rollup jobs on their UTC calendar schedule:
- weekly:  every Monday 00:00 UTC + offset
- monthly: the 1st of every month 00:00 UTC + offset

Jobs run one at a time. A fire time that passes while another job is
running is served as soon as that job finishes.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, List, Optional, Tuple

from engine.rollup.jobs import RollupJob
from engine.rollup.windows import as_utc

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def next_weekly_run(now: datetime, offset_minutes: int = 0) -> datetime:
    """First Monday 00:00 UTC + offset strictly after ``now``"""
    now = as_utc(now)
    day = now.replace(hour=0, minute=0, second=0, microsecond=0)
    monday = day - timedelta(days=day.weekday())
    candidate = monday + timedelta(minutes=offset_minutes)
    while candidate <= now:
        candidate += timedelta(days=7)
    return candidate


def next_monthly_run(now: datetime, offset_minutes: int = 0) -> datetime:
    """First 1st-of-month 00:00 UTC + offset strictly after ``now``"""
    now = as_utc(now)
    first = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    candidate = first + timedelta(minutes=offset_minutes)
    while candidate <= now:
        if first.month == 12:
            first = first.replace(year=first.year + 1, month=1)
        else:
            first = first.replace(month=first.month + 1)
        candidate = first + timedelta(minutes=offset_minutes)
    return candidate


@dataclass
class ScheduledJob:
    """A rollup job, the function giving its next fire time, and its pending fire time"""
    job: RollupJob
    next_run: Callable[[datetime], datetime]
    due_at: Optional[datetime] = None


class RollupScheduler:
    """
    Sleeps until the next due job and runs it.

    Each job keeps its own pending fire time. After a run the fire time is
    advanced from the one just served, not from the clock, so a fire time
    that passed while another job was running is served late instead of
    being dropped.

    Example usage:
        scheduler = RollupScheduler([
            ScheduledJob(weekly, lambda now: next_weekly_run(now, 5)),
            ScheduledJob(monthly, lambda now: next_monthly_run(now, 10)),
        ])
        await scheduler.run_forever()
    """

    def __init__(
        self,
        jobs: List[ScheduledJob],
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if not jobs:
            raise ValueError("RollupScheduler needs at least one job")
        self.jobs = jobs
        self._clock = clock
        self._sleep = sleep

    def next_due(self, now: Optional[datetime] = None) -> Tuple[datetime, ScheduledJob]:
        """Earliest pending (fire time, job) pair; unset fire times start from ``now``"""
        start = now or self._clock()
        for entry in self.jobs:
            if entry.due_at is None:
                entry.due_at = entry.next_run(start)
        entry = min(self.jobs, key=lambda e: e.due_at)
        return entry.due_at, entry

    async def run_once(self) -> None:
        """Wait for the next due job and run it with its scheduled time"""
        now = self._clock()
        when, entry = self.next_due(now)
        delay = (when - now).total_seconds()
        if delay > 0:
            logger.info(f"Next run: {entry.job.name} at {when.isoformat()} (in {delay:.0f}s)")
            await self._sleep(delay)
        elif delay < 0:
            logger.warning(f"{entry.job.name} run for {when.isoformat()} is overdue by {-delay:.0f}s, running now")

        try:
            await entry.job.run(now=when)
        except Exception as e:
            logger.error(f"{entry.job.name} run scheduled for {when.isoformat()} failed: {e}", exc_info=True)
        finally:
            entry.due_at = entry.next_run(when)

    async def run_forever(self) -> None:
        """Run jobs until cancelled"""
        while True:
            await self.run_once()
