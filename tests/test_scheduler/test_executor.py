"""Tests for the rollup scheduler."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from engine.scheduler.executor import (
    RollupScheduler,
    ScheduledJob,
    next_monthly_run,
    next_weekly_run,
)


def _utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def _job(name: str) -> MagicMock:
    job = MagicMock()
    job.name = name
    job.run = AsyncMock()
    return job


class TestNextRuns:
    """Tests for calendar fire times."""

    def test_weekly_later_same_week(self) -> None:
        # Wednesday -> next Monday 00:05
        assert next_weekly_run(_utc(2024, 1, 17, 12), 5) == _utc(2024, 1, 22, 0, 5)

    def test_weekly_monday_before_offset(self) -> None:
        assert next_weekly_run(_utc(2024, 1, 15, 0, 1), 5) == _utc(2024, 1, 15, 0, 5)

    def test_weekly_exact_fire_time_moves_on(self) -> None:
        assert next_weekly_run(_utc(2024, 1, 15, 0, 5), 5) == _utc(2024, 1, 22, 0, 5)

    def test_monthly_mid_month(self) -> None:
        assert next_monthly_run(_utc(2024, 1, 20), 10) == _utc(2024, 2, 1, 0, 10)

    def test_monthly_first_before_offset(self) -> None:
        assert next_monthly_run(_utc(2024, 3, 1, 0, 3), 10) == _utc(2024, 3, 1, 0, 10)

    def test_monthly_december_rolls_year(self) -> None:
        assert next_monthly_run(_utc(2024, 12, 1, 0, 10), 10) == _utc(2025, 1, 1, 0, 10)

    def test_naive_now_treated_as_utc(self) -> None:
        assert next_weekly_run(datetime(2024, 1, 17, 12), 5) == _utc(2024, 1, 22, 0, 5)


class TestRollupScheduler:
    """Tests for picking and running the next job."""

    def test_requires_jobs(self) -> None:
        with pytest.raises(ValueError):
            RollupScheduler([])

    def test_next_due_picks_earliest(self) -> None:
        weekly, monthly = _job("WeeklyRollup"), _job("MonthlyRollup")
        scheduler = RollupScheduler([
            ScheduledJob(weekly, lambda now: next_weekly_run(now, 5)),
            ScheduledJob(monthly, lambda now: next_monthly_run(now, 10)),
        ])

        when, entry = scheduler.next_due(_utc(2024, 1, 30, 12))

        # Feb 1 comes before Monday Feb 5
        assert entry.job is monthly
        assert when == _utc(2024, 2, 1, 0, 10)

    @pytest.mark.asyncio
    async def test_run_once_sleeps_then_runs_at_fire_time(self) -> None:
        weekly = _job("WeeklyRollup")
        sleep = AsyncMock()
        scheduler = RollupScheduler(
            [ScheduledJob(weekly, lambda now: next_weekly_run(now, 5))],
            clock=lambda: _utc(2024, 1, 15, 0, 0),
            sleep=sleep,
        )

        await scheduler.run_once()

        sleep.assert_awaited_once_with(300.0)
        weekly.run.assert_awaited_once_with(now=_utc(2024, 1, 15, 0, 5))

    @pytest.mark.asyncio
    async def test_job_failure_is_logged_not_raised(self) -> None:
        weekly = _job("WeeklyRollup")
        weekly.run.side_effect = RuntimeError("boom")
        scheduler = RollupScheduler(
            [ScheduledJob(weekly, lambda now: next_weekly_run(now, 5))],
            clock=lambda: _utc(2024, 1, 15, 0, 0),
            sleep=AsyncMock(),
        )

        await scheduler.run_once()

        weekly.run.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_job_due_during_long_run_is_not_skipped(self) -> None:
        clock = {"now": _utc(2024, 3, 31, 23, 0)}

        async def fake_sleep(seconds: float) -> None:
            clock["now"] += timedelta(seconds=seconds)

        async def slow_weekly(now: datetime) -> None:
            clock["now"] += timedelta(minutes=10)

        weekly, monthly = _job("WeeklyRollup"), _job("MonthlyRollup")
        weekly.run.side_effect = slow_weekly
        scheduler = RollupScheduler(
            [
                ScheduledJob(weekly, lambda now: next_weekly_run(now, 5)),
                ScheduledJob(monthly, lambda now: next_monthly_run(now, 10)),
            ],
            clock=lambda: clock["now"],
            sleep=fake_sleep,
        )

        await scheduler.run_once()
        await scheduler.run_once()

        # Monday Apr 1 00:05 weekly runs until 00:15, past the 00:10 monthly fire time
        weekly.run.assert_awaited_once_with(now=_utc(2024, 4, 1, 0, 5))
        monthly.run.assert_awaited_once_with(now=_utc(2024, 4, 1, 0, 10))
        assert clock["now"] == _utc(2024, 4, 1, 0, 15)

    @pytest.mark.asyncio
    async def test_next_fire_time_advances_from_the_one_served(self) -> None:
        weekly = _job("WeeklyRollup")
        entry = ScheduledJob(weekly, lambda now: next_weekly_run(now, 5))
        scheduler = RollupScheduler(
            [entry],
            clock=lambda: _utc(2024, 1, 15, 0, 0),
            sleep=AsyncMock(),
        )

        await scheduler.run_once()

        assert entry.due_at == _utc(2024, 1, 22, 0, 5)

    @pytest.mark.asyncio
    async def test_failed_run_still_advances(self) -> None:
        weekly = _job("WeeklyRollup")
        weekly.run.side_effect = RuntimeError("boom")
        entry = ScheduledJob(weekly, lambda now: next_weekly_run(now, 5))
        scheduler = RollupScheduler([entry], clock=lambda: _utc(2024, 1, 15, 0, 0), sleep=AsyncMock())

        await scheduler.run_once()

        assert entry.due_at == _utc(2024, 1, 22, 0, 5)
