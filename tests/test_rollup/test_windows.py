"""Tests for rollup windows."""

from datetime import datetime, timedelta, timezone

from engine.rollup.windows import previous_month_window, previous_week_window


def _ts(*args) -> int:
    return int(datetime(*args, tzinfo=timezone.utc).timestamp())


class TestPreviousWeekWindow:
    """Tests for the last completed ISO week."""

    def test_monday_morning(self) -> None:
        window = previous_week_window(datetime(2024, 1, 15, 0, 5, tzinfo=timezone.utc))
        assert window.start == _ts(2024, 1, 8)
        assert window.end == _ts(2024, 1, 15)

    def test_midweek(self) -> None:
        window = previous_week_window(datetime(2024, 1, 17, 13, 0, tzinfo=timezone.utc))
        assert window.start == _ts(2024, 1, 8)
        assert window.end == _ts(2024, 1, 15)

    def test_sunday_never_returns_current_week(self) -> None:
        window = previous_week_window(datetime(2024, 1, 21, 23, 59, tzinfo=timezone.utc))
        assert window.start == _ts(2024, 1, 8)
        assert window.end == _ts(2024, 1, 15)

    def test_spans_exactly_seven_days(self) -> None:
        window = previous_week_window(datetime(2024, 3, 6, tzinfo=timezone.utc))
        assert window.end - window.start == 7 * 86400
        assert datetime.fromtimestamp(window.start, tz=timezone.utc).weekday() == 0

    def test_naive_datetime_treated_as_utc(self) -> None:
        aware = previous_week_window(datetime(2024, 1, 17, 12, tzinfo=timezone.utc))
        naive = previous_week_window(datetime(2024, 1, 17, 12))
        assert aware == naive

    def test_other_timezone_converted(self) -> None:
        # Monday 01:00 at UTC+2 is still Sunday in UTC
        plus_two = timezone(timedelta(hours=2))
        window = previous_week_window(datetime(2024, 1, 15, 1, 0, tzinfo=plus_two))
        assert window.end == _ts(2024, 1, 8)


class TestPreviousMonthWindow:
    """Tests for the previous calendar month."""

    def test_first_of_month(self) -> None:
        window = previous_month_window(datetime(2024, 3, 1, 0, 10, tzinfo=timezone.utc))
        assert window.start == _ts(2024, 2, 1)
        assert window.end == _ts(2024, 3, 1)
        assert window.end - window.start == 29 * 86400

    def test_january_rolls_back_year(self) -> None:
        window = previous_month_window(datetime(2024, 1, 20, tzinfo=timezone.utc))
        assert window.start == _ts(2023, 12, 1)
        assert window.end == _ts(2024, 1, 1)

    def test_label(self) -> None:
        window = previous_month_window(datetime(2024, 5, 1, tzinfo=timezone.utc))
        assert window.label == "2024-04-01"
