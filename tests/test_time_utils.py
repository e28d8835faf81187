from __future__ import annotations

import datetime

import pytest

from shift_planner.errors import InvalidDateFormatError, InvalidTimeFormatError
from shift_planner.time_utils import (
    ShiftInterval,
    add_minutes_to_time,
    calculate_duration_hours,
    calculate_duration_minutes,
    date_range,
    format_date,
    format_time,
    in_range,
    is_overnight,
    is_valid_time_range,
    overlaps,
    parse_date,
    parse_time,
    project_interval,
    validate_date,
    validate_time,
    week_bounds,
    weekday_index,
)


@pytest.mark.parametrize("value", ["00:00", "09:05", "12:30", "23:59"])
def test_time_round_trip(value):
    assert format_time(parse_time(value)) == value


def test_every_minute_of_the_day_round_trips():
    for minutes in range(24 * 60):
        text = format_time(minutes)
        assert validate_time(text)
        assert format_time(parse_time(text)) == text
        assert parse_time(text).minutes == minutes


@pytest.mark.parametrize("value", ["2024-02-29", "2025-01-01", "2025-12-31"])
def test_date_round_trip(value):
    assert format_date(parse_date(value)) == value


@pytest.mark.parametrize(
    "value",
    ["9:00", "14:30:00", "14:30Z", "14:30+00:00", "24:00", "12:60", "", "12:00\n", None, 900],
)
def test_rejects_non_canonical_times(value):
    assert validate_time(value) is False
    with pytest.raises(InvalidTimeFormatError):
        parse_time(value)


@pytest.mark.parametrize("value", ["2025-02-30", "2023-02-29", "2024-2-01", "2024-04-01T00:00", ""])
def test_rejects_bad_dates(value):
    assert validate_date(value) is False
    with pytest.raises(InvalidDateFormatError):
        parse_date(value)


def test_leap_day_only_in_leap_years():
    assert validate_date("2024-02-29")
    assert not validate_date("2025-02-29")


def test_format_time_rejects_out_of_range_minutes():
    assert format_time(0) == "00:00"
    assert format_time(1439) == "23:59"
    with pytest.raises(InvalidTimeFormatError):
        format_time(1440)
    with pytest.raises(InvalidTimeFormatError):
        format_time(-1)
    with pytest.raises(InvalidTimeFormatError):
        format_time(True)


def test_format_time_accepts_datetime_time():
    assert format_time(datetime.time(7, 5)) == "07:05"


def test_touching_intervals_do_not_overlap():
    assert overlaps("09:00", "13:00", "13:00", "17:00") is False
    assert overlaps("13:00", "17:00", "09:00", "13:00") is False


def test_one_minute_overlap():
    assert overlaps("09:00", "13:01", "13:00", "17:00") is True
    assert overlaps("13:00", "17:00", "09:00", "13:01") is True


@pytest.mark.parametrize(
    "first,second",
    [
        (("08:00", "12:00"), ("10:00", "11:00")),
        (("08:00", "12:00"), ("12:00", "14:00")),
        (("08:00", "09:00"), ("10:00", "11:00")),
    ],
)
def test_overlaps_is_symmetric(first, second):
    assert overlaps(*first, *second) == overlaps(*second, *first)


def test_durations():
    assert calculate_duration_minutes("09:00", "17:00") == 480
    assert calculate_duration_minutes("00:00", "23:59") == 1439
    assert calculate_duration_minutes("22:00", "06:00") == -960
    assert calculate_duration_hours("22:00", "06:00") == 8.0
    assert calculate_duration_hours("09:00", "13:30") == 4.5


def test_overnight_interval():
    interval = ShiftInterval.parse("22:00", "06:00")
    assert interval.overnight
    assert interval.minutes == 480
    assert is_overnight("22:00", "06:00")
    assert not is_overnight("06:00", "22:00")


def test_interval_requires_distinct_ends():
    with pytest.raises(InvalidTimeFormatError):
        ShiftInterval.parse("09:00", "09:00")


def test_valid_time_range():
    assert is_valid_time_range("09:00", "17:00")
    assert is_valid_time_range("22:00", "06:00")
    assert not is_valid_time_range("22:00", "06:00", allow_overnight=False)
    assert not is_valid_time_range("09:00", "09:00")
    assert not is_valid_time_range("9:00", "17:00")


def test_in_range_is_half_open():
    assert in_range("09:00", "09:00", "17:00")
    assert in_range("16:59", "09:00", "17:00")
    assert not in_range("17:00", "09:00", "17:00")


def test_add_minutes_wraps_midnight():
    assert add_minutes_to_time("22:00", 180) == "01:00"
    assert add_minutes_to_time("00:30", -60) == "23:30"


def test_weekday_index_starts_on_sunday():
    sunday = datetime.date(2024, 4, 7)
    assert weekday_index(sunday) == 0
    assert weekday_index(sunday + datetime.timedelta(days=1)) == 1
    assert weekday_index(sunday + datetime.timedelta(days=6)) == 6
    assert week_bounds(datetime.date(2024, 4, 10)) == (sunday, datetime.date(2024, 4, 13))


def test_date_range_is_inclusive():
    days = list(date_range(datetime.date(2024, 4, 1), datetime.date(2024, 4, 3)))
    assert [day.day for day in days] == [1, 2, 3]
    assert list(date_range(datetime.date(2024, 4, 3), datetime.date(2024, 4, 1))) == []


def test_project_interval_offsets_neighbouring_days():
    day = datetime.date(2024, 4, 10)
    overnight = ShiftInterval.parse("22:00", "06:00")
    assert project_interval(overnight, day, day) == (1320, 1800)
    assert project_interval(overnight, day - datetime.timedelta(days=1), day) == (-120, 360)
