"""
Rollup Windows

UTC calendar windows the rollup jobs recompute. Windows are half-open:
``start`` inclusive, ``end`` exclusive, both epoch seconds.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone


@dataclass(frozen=True)
class RollupWindow:
    start: int
    end: int

    @property
    def label(self) -> str:
        return datetime.fromtimestamp(self.start, tz=timezone.utc).date().isoformat()


def as_utc(now: datetime) -> datetime:
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def previous_week_window(now: datetime) -> RollupWindow:
    """
    The most recently completed ISO week (Monday 00:00 to Monday 00:00 UTC).

    The week containing ``now`` is never returned, even on a Sunday.
    """
    today = as_utc(now).replace(hour=0, minute=0, second=0, microsecond=0)
    this_monday = today - timedelta(days=today.weekday())
    last_monday = this_monday - timedelta(days=7)
    return RollupWindow(int(last_monday.timestamp()), int(this_monday.timestamp()))


def previous_month_window(now: datetime) -> RollupWindow:
    """The previous full calendar month in UTC"""
    this_month = as_utc(now).replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if this_month.month == 1:
        last_month = this_month.replace(year=this_month.year - 1, month=12)
    else:
        last_month = this_month.replace(month=this_month.month - 1)
    return RollupWindow(int(last_month.timestamp()), int(this_month.timestamp()))
