"""
Rollup Module

Weekly and monthly candles recomputed from daily candles.
"""

from .jobs import MonthlyRollupJob, RollupJob, RollupReport, WeeklyRollupJob

__all__ = [
    "RollupJob",
    "RollupReport",
    "WeeklyRollupJob",
    "MonthlyRollupJob",
]
