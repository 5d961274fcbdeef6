"""
Scheduler Module

Calendar scheduling for the rollup jobs.
"""

from .executor import RollupScheduler, ScheduledJob, next_monthly_run, next_weekly_run

__all__ = [
    "RollupScheduler",
    "ScheduledJob",
    "next_weekly_run",
    "next_monthly_run",
]
