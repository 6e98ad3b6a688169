from datetime import datetime, timezone

import pytest

from artscout.jobs.cron import parse_cron
from artscout.main.exceptions import InvalidCronExpressionError


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def test_five_field_expression_fires_on_second_zero():
    schedule = parse_cron("*/15 * * * *")

    assert schedule.next_after(utc(2024, 1, 1, 10, 7, 30)) == utc(2024, 1, 1, 10, 15)


def test_next_after_is_strictly_later():
    schedule = parse_cron("0 * * * *")

    assert schedule.next_after(utc(2024, 1, 1, 10, 0)) == utc(2024, 1, 1, 11, 0)


def test_weekday_uses_cron_numbering():
    schedule = parse_cron("0 9 * * 1")

    # 2024-01-03 is a Wednesday; the next Monday is 2024-01-08
    assert schedule.next_after(utc(2024, 1, 3, 12, 0)) == utc(2024, 1, 8, 9, 0)


def test_sunday_can_be_zero_or_seven():
    # 2024-01-03 is a Wednesday; the next Sunday is 2024-01-07
    after = utc(2024, 1, 3, 12, 0)

    assert parse_cron("0 0 * * 0").next_after(after) == utc(2024, 1, 7, 0, 0)
    assert parse_cron("0 0 * * 7").next_after(after) == utc(2024, 1, 7, 0, 0)


def test_day_and_weekday_must_both_match():
    # The 13th that falls on a Friday: 2024-09-13
    schedule = parse_cron("0 0 13 * 5")

    assert schedule.next_after(utc(2024, 1, 1)) == utc(2024, 9, 13, 0, 0)


def test_names_ranges_and_lists():
    schedule = parse_cron("0 8-10 1,15 jan-mar *")

    assert schedule.next_after(utc(2024, 1, 1, 10, 30)) == utc(2024, 1, 15, 8, 0)
    assert schedule.next_after(utc(2024, 3, 15, 10, 0)) == utc(2025, 1, 1, 8, 0)


def test_six_field_expression_has_seconds_first():
    schedule = parse_cron("30 * * * * *")

    assert schedule.normalized == "* * * * * 30"
    assert schedule.next_after(utc(2024, 1, 1, 10, 0, 0)) == utc(2024, 1, 1, 10, 0, 30)


def test_macros():
    schedule = parse_cron("@daily")

    assert schedule.next_after(utc(2024, 2, 28, 12, 0)) == utc(2024, 2, 29, 0, 0)
    assert parse_cron("@hourly").next_after(utc(2024, 1, 1, 10, 5)) == utc(2024, 1, 1, 11, 0)


def test_naive_datetimes_are_treated_as_utc():
    schedule = parse_cron("@hourly")

    assert schedule.next_after(datetime(2024, 1, 1, 10, 30)) == utc(2024, 1, 1, 11, 0)


@pytest.mark.parametrize(
    "expression",
    [
        "",
        "   ",
        "* * *",
        "* * * * * * *",
        "61 * * * *",
        "0 25 * * *",
        "0 0 32 * *",
        "a b c d e",
    ],
)
def test_invalid_expressions_are_rejected(expression):
    with pytest.raises(InvalidCronExpressionError):
        parse_cron(expression)
