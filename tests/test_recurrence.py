import pytest

from conftest import ms
from recurrence import (
    WEEK_MS, next_occurrence, parse_time_of_day, scheduled_record_id, validate_time_of_day,
)

MONDAY_NOON = ms(2026, 10, 19, 12, 0)


def test_same_instant_today_rolls_to_next_week():
    assert next_occurrence(1, "12:00", MONDAY_NOON) == ms(2026, 10, 26, 12, 0)


def test_later_today_is_today():
    assert next_occurrence(1, "13:30", MONDAY_NOON) == ms(2026, 10, 19, 13, 30)


def test_earlier_today_is_next_week():
    assert next_occurrence(1, "08:00", MONDAY_NOON) == ms(2026, 10, 26, 8, 0)


def test_other_weekdays():
    assert next_occurrence(3, "08:30", MONDAY_NOON) == ms(2026, 10, 21, 8, 30)
    assert next_occurrence(0, "00:00", MONDAY_NOON) == ms(2026, 10, 25, 0, 0)
    assert next_occurrence(6, "23:59", MONDAY_NOON) == ms(2026, 10, 24, 23, 59)


@pytest.mark.parametrize("weekday", range(7))
@pytest.mark.parametrize("time_of_day", ["00:00", "11:59", "12:00", "12:01", "23:59"])
def test_result_within_one_week(weekday, time_of_day):
    result = next_occurrence(weekday, time_of_day, MONDAY_NOON)
    assert MONDAY_NOON < result <= MONDAY_NOON + WEEK_MS


def test_local_wall_clock_across_dst_change():
    # Berlin leaves summer time on Sunday 2026-10-25; 09:00 CET is 08:00 UTC
    assert next_occurrence(1, "09:00", MONDAY_NOON, "Europe/Berlin") == ms(2026, 10, 26, 8, 0)


def test_lenient_parsing_defaults_to_midnight():
    assert parse_time_of_day("07:45") == (7, 45)
    assert parse_time_of_day("07") == (7, 0)
    assert parse_time_of_day("xx:30") == (0, 30)
    assert parse_time_of_day("") == (0, 0)
    assert parse_time_of_day(None) == (0, 0)
    assert parse_time_of_day("25:99") == (0, 0)
    assert next_occurrence(2, "garbage", MONDAY_NOON) == ms(2026, 10, 20, 0, 0)


def test_strict_validation():
    assert validate_time_of_day("7:05") == "07:05"
    for bad in ["", "7", "24:00", "12:60", "ab:cd", "12:5"]:
        with pytest.raises(ValueError):
            validate_time_of_day(bad)


def test_record_id_is_deterministic():
    assert scheduled_record_id("abc", 3, 1000) == "abc-3-1000"
