"""
Tests for cron expression parsing and next-run computation.
"""

from datetime import datetime, timezone

import pytest

from plugin_runtime.cron import CronExpression, CronParseError


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


class TestParsing:

    def test_steps_ranges_and_lists(self):
        expr = CronExpression.parse("*/15 9-17 1,15 * *")
        assert expr.minutes == {0, 15, 30, 45}
        assert expr.hours == set(range(9, 18))
        assert expr.days == {1, 15}

    def test_range_with_step(self):
        assert CronExpression.parse("5-10/2 * * * *").minutes == {5, 7, 9}

    def test_names(self):
        expr = CronExpression.parse("0 0 * jan,jul mon-fri")
        assert expr.months == {1, 7}
        assert expr.weekdays == {1, 2, 3, 4, 5}

    def test_seven_is_sunday(self):
        assert CronExpression.parse("0 0 * * 7").weekdays == {0}

    def test_macros(self):
        assert CronExpression.parse("@hourly").minutes == {0}
        daily = CronExpression.parse("@daily")
        assert daily.minutes == {0} and daily.hours == {0}

    @pytest.mark.parametrize("text", ["", "* * * *", "61 * * * *", "5-1 * * * *",
                                      "*/0 * * * *", "* * * * funday", "1,,2 * * * *"])
    def test_invalid(self, text):
        with pytest.raises(CronParseError):
            CronExpression.parse(text)

    def test_parse_error_is_value_error(self):
        assert issubclass(CronParseError, ValueError)


class TestMatching:

    def test_day_of_month_or_day_of_week(self):
        # 13th of the month or any Friday
        expr = CronExpression.parse("0 0 13 * 5")
        assert expr.matches(utc(2024, 1, 5))       # Friday
        assert expr.matches(utc(2024, 1, 13))      # Saturday the 13th
        assert not expr.matches(utc(2024, 1, 10))  # Wednesday the 10th

    def test_star_step_day_field_is_unrestricted(self):
        # "*/2" in day-of-month leaves the weekday field in charge
        expr = CronExpression.parse("0 0 */2 * 1")
        assert expr.matches(utc(2024, 1, 8))       # Monday the 8th
        assert not expr.matches(utc(2024, 1, 9))   # Tuesday the 9th

    def test_minute_and_hour(self):
        expr = CronExpression.parse("30 14 * * *")
        assert expr.matches(utc(2024, 6, 1, 14, 30))
        assert not expr.matches(utc(2024, 6, 1, 14, 31))


class TestNextRun:

    def test_next_minute_is_strictly_after(self):
        expr = CronExpression.parse("* * * * *")
        assert expr.next_after(utc(2024, 1, 1, 10, 0, 30)) == utc(2024, 1, 1, 10, 1)

    def test_weekly(self):
        # 2024-01-01 is a Monday
        expr = CronExpression.parse("0 9 * * 1")
        assert expr.next_after(utc(2024, 1, 1, 10, 0)) == utc(2024, 1, 8, 9, 0)

    def test_daily_macro(self):
        assert CronExpression.parse("@daily").next_after(utc(2024, 3, 10, 12, 34)) == utc(2024, 3, 11)

    def test_rolls_over_year(self):
        expr = CronExpression.parse("0 0 1 1 *")
        assert expr.next_after(utc(2024, 6, 1)) == utc(2025, 1, 1)

    def test_leap_day(self):
        expr = CronExpression.parse("0 12 29 2 *")
        assert expr.next_after(utc(2024, 3, 1)) == utc(2028, 2, 29, 12, 0)

    def test_never_fires(self):
        with pytest.raises(CronParseError, match="never fires"):
            CronExpression.parse("0 0 30 2 *").next_after(utc(2024, 1, 1))
