"""UTC-only time-of-day and calendar-date helpers.

Every time value handled by the engine is a plain ``HH:mm`` wall-clock string
and every date a plain ``YYYY-MM-DD`` string.  No timezone conversion ever
happens here; strings carrying seconds, ``Z`` or an offset are rejected.

Overnight shifts (end earlier than start) belong to the date they start on.
When two shifts on neighbouring dates have to be compared, both are projected
onto one minute line anchored at midnight of the reference date (see
:func:`project_interval`) and then tested with :func:`overlaps`.
"""

from __future__ import annotations

import datetime
import re
from dataclasses import dataclass
from typing import Iterator, Tuple, Union

from .errors import InvalidDateFormatError, InvalidTimeFormatError

MINUTES_PER_DAY = 24 * 60
TIME_PATTERN = re.compile(r"([01][0-9]|2[0-3]):([0-5][0-9])")
DATE_PATTERN = re.compile(r"([0-9]{4})-([0-9]{2})-([0-9]{2})")


@dataclass(frozen=True, order=True)
class TimeOfDay:
    minutes: int

    def __post_init__(self) -> None:
        if not isinstance(self.minutes, int) or not 0 <= self.minutes < MINUTES_PER_DAY:
            raise InvalidTimeFormatError(self.minutes)

    @property
    def hour(self) -> int:
        return self.minutes // 60

    @property
    def minute(self) -> int:
        return self.minutes % 60

    def to_time(self) -> datetime.time:
        return datetime.time(self.hour, self.minute)

    def __str__(self) -> str:
        return f"{self.hour:02d}:{self.minute:02d}"


TimeLike = Union[str, int, TimeOfDay, datetime.time]


@dataclass(frozen=True)
class ShiftInterval:
    start: TimeOfDay
    end: TimeOfDay

    def __post_init__(self) -> None:
        if self.start == self.end:
            raise InvalidTimeFormatError(
                f"{self.start}-{self.end}", field="interval (start and end must differ)"
            )

    @classmethod
    def parse(cls, start: TimeLike, end: TimeLike) -> "ShiftInterval":
        return cls(as_time_of_day(start, field="start_time"), as_time_of_day(end, field="end_time"))

    @property
    def overnight(self) -> bool:
        return self.end.minutes < self.start.minutes

    @property
    def minutes(self) -> int:
        return overnight_duration_minutes(self.start, self.end)

    def as_strings(self) -> Tuple[str, str]:
        return str(self.start), str(self.end)


# ---------------------------------------------------------------------------
# Canonicalizer


def validate_time(value: object) -> bool:
    """Return True only for strict ``HH:mm`` strings (00:00 - 23:59)."""
    if not isinstance(value, str):
        return False
    return TIME_PATTERN.fullmatch(value) is not None


def validate_date(value: object) -> bool:
    """Return True only for ``YYYY-MM-DD`` strings naming a real calendar date."""
    if not isinstance(value, str):
        return False
    match = DATE_PATTERN.fullmatch(value)
    if not match:
        return False
    year, month, day = (int(part) for part in match.groups())
    try:
        datetime.date(year, month, day)
    except ValueError:
        return False
    return True


def parse_time(value: str, *, field: str | None = None) -> TimeOfDay:
    if not validate_time(value):
        raise InvalidTimeFormatError(value, field=field)
    hours, minutes = value.split(":")
    return TimeOfDay(int(hours) * 60 + int(minutes))


def format_time(value: TimeLike) -> str:
    """Return the zero-padded ``HH:mm`` form of minutes, a TimeOfDay or a ``datetime.time``."""
    if isinstance(value, TimeOfDay):
        return str(value)
    if isinstance(value, datetime.time):
        return f"{value.hour:02d}:{value.minute:02d}"
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidTimeFormatError(value)
    return str(TimeOfDay(value))


def parse_date(value: str, *, field: str | None = None) -> datetime.date:
    if not validate_date(value):
        raise InvalidDateFormatError(value, field=field)
    return datetime.date.fromisoformat(value)


def format_date(value: datetime.date) -> str:
    if isinstance(value, datetime.datetime):
        value = value.date()
    if not isinstance(value, datetime.date):
        raise InvalidDateFormatError(value)
    return value.isoformat()


def as_time_of_day(value: TimeLike, *, field: str | None = None) -> TimeOfDay:
    if isinstance(value, TimeOfDay):
        return value
    if isinstance(value, datetime.time):
        if value.second or value.microsecond or value.tzinfo is not None:
            raise InvalidTimeFormatError(value.isoformat(), field=field)
        return TimeOfDay(value.hour * 60 + value.minute)
    if isinstance(value, str):
        return parse_time(value, field=field)
    raise InvalidTimeFormatError(value, field=field)


def as_date(value: Union[str, datetime.date], *, field: str | None = None) -> datetime.date:
    if isinstance(value, datetime.datetime):
        raise InvalidDateFormatError(value.isoformat(), field=field)
    if isinstance(value, datetime.date):
        return value
    return parse_date(value, field=field)


def time_to_minutes(value: TimeLike) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return TimeOfDay(value).minutes
    return as_time_of_day(value).minutes


def to_time(value: TimeLike) -> datetime.time:
    """Convert a wall-clock value into the ``datetime.time`` stored in Time columns."""
    return as_time_of_day(value).to_time()


def add_minutes_to_time(value: TimeLike, minutes: int) -> str:
    """Shift a time by ``minutes`` wrapping around midnight (``22:00`` + 180 -> ``01:00``)."""
    return format_time((time_to_minutes(value) + minutes) % MINUTES_PER_DAY)


def weekday_index(date_: datetime.date) -> int:
    """Return the day index used by day patterns: 0 = Sunday ... 6 = Saturday."""
    return (date_.weekday() + 1) % 7


def date_range(start_date: datetime.date, end_date: datetime.date) -> Iterator[datetime.date]:
    """Yield every date from ``start_date`` to ``end_date`` inclusive."""
    current = start_date
    while current <= end_date:
        yield current
        current += datetime.timedelta(days=1)


def week_bounds(date_: datetime.date) -> Tuple[datetime.date, datetime.date]:
    """Return the Sunday-anchored week containing ``date_``."""
    start = date_ - datetime.timedelta(days=weekday_index(date_))
    return start, start + datetime.timedelta(days=6)


# ---------------------------------------------------------------------------
# Interval arithmetic


def duration_minutes(start: TimeLike, end: TimeLike) -> int:
    """Same-day duration; negative when ``end`` is earlier than ``start``."""
    return time_to_minutes(end) - time_to_minutes(start)


def overnight_duration_minutes(start: TimeLike, end: TimeLike) -> int:
    """Duration that wraps past midnight when ``end`` is earlier than ``start``."""
    minutes = duration_minutes(start, end)
    if minutes < 0:
        minutes += MINUTES_PER_DAY
    return minutes


def calculate_duration_minutes(start_time: str, end_time: str) -> int:
    return duration_minutes(parse_time(start_time, field="start_time"), parse_time(end_time, field="end_time"))


def calculate_duration_hours(start_time: str, end_time: str) -> float:
    minutes = overnight_duration_minutes(
        parse_time(start_time, field="start_time"), parse_time(end_time, field="end_time")
    )
    return round(minutes / 60, 2)


def is_overnight(start: TimeLike, end: TimeLike) -> bool:
    return duration_minutes(start, end) < 0


def is_valid_time_range(start_time: object, end_time: object, *, allow_overnight: bool = True) -> bool:
    if not validate_time(start_time) or not validate_time(end_time):
        return False
    if start_time == end_time:
        return False
    if not allow_overnight and is_overnight(start_time, end_time):
        return False
    return True


def overlaps(start1: TimeLike, end1: TimeLike, start2: TimeLike, end2: TimeLike) -> bool:
    """Half-open overlap test: ``[start1, end1)`` and ``[start2, end2)`` share a minute.

    Plain integers are taken as already projected minute values and may fall
    outside a single day; anything else is read as a same-day wall-clock time.
    """
    a_start, a_end, b_start, b_end = (_minute_value(value) for value in (start1, end1, start2, end2))
    return a_start < b_end and b_start < a_end


def in_range(value: TimeLike, start: TimeLike, end: TimeLike) -> bool:
    point, low, high = (_minute_value(item) for item in (value, start, end))
    return low <= point < high


def project_interval(
    interval: ShiftInterval, shift_date: datetime.date, reference_date: datetime.date
) -> Tuple[int, int]:
    """Place an interval on a minute line anchored at midnight of ``reference_date``."""
    day_offset = (shift_date - reference_date).days
    start = day_offset * MINUTES_PER_DAY + interval.start.minutes
    return start, start + interval.minutes


def _minute_value(value: TimeLike) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return as_time_of_day(value).minutes
