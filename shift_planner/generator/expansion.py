"""Turn a weekly day pattern into dated shift requirements.

A day pattern maps weekday indexes (0 = Sunday ... 6 = Saturday, keys may be
strings) to an ordered list of shift definitions::

    {"1": [{"start_time": "09:00", "end_time": "17:00",
            "department_id": 3,
            "positions": [{"job_position_id": 7, "required_count": 2}]}]}

The whole pattern is checked before anything is expanded so a caller either
gets every requirement or an ``InvalidTemplatePatternError``.
"""

from __future__ import annotations

import datetime
from dataclasses import dataclass
from typing import Any, Dict, List, Tuple

from ..errors import EmptyDateRangeError, InvalidTemplatePatternError, SchedulingError
from ..time_utils import ShiftInterval, as_date, date_range, weekday_index

DayPattern = Dict[int, List["ShiftDefinition"]]
DAY_KEYS = frozenset(str(day) for day in range(7))


@dataclass(frozen=True)
class PositionNeed:
    job_position_id: int
    required_count: int = 1


@dataclass(frozen=True)
class ShiftDefinition:
    interval: ShiftInterval
    department_id: int | None = None
    positions: Tuple[PositionNeed, ...] = ()


@dataclass(frozen=True)
class RequirementDraft:
    shift_date: datetime.date
    interval: ShiftInterval
    department_id: int | None
    positions: Tuple[PositionNeed, ...]


def validate_day_pattern(pattern: Any) -> DayPattern:
    """Return the pattern with int keys and parsed definitions, or raise."""
    if not isinstance(pattern, dict):
        raise InvalidTemplatePatternError("pattern must be an object keyed by weekday")
    normalized: DayPattern = {}
    for raw_key, entries in pattern.items():
        day = _weekday_key(raw_key)
        if day in normalized:
            raise InvalidTemplatePatternError("weekday listed twice", day=day)
        if not isinstance(entries, list):
            raise InvalidTemplatePatternError("day entry must be a list of shifts", day=day)
        normalized[day] = [_shift_definition(entry, day, position) for position, entry in enumerate(entries)]
    return normalized


def expand_day_pattern(start_date, end_date, pattern: Any) -> List[RequirementDraft]:
    """Expand ``pattern`` over ``start_date``..``end_date`` inclusive, date-major then pattern order."""
    start = as_date(start_date, field="start_date")
    end = as_date(end_date, field="end_date")
    if end < start:
        raise EmptyDateRangeError(start, end)
    days = validate_day_pattern(pattern)
    drafts: List[RequirementDraft] = []
    for current in date_range(start, end):
        for definition in days.get(weekday_index(current), ()):
            drafts.append(
                RequirementDraft(
                    shift_date=current,
                    interval=definition.interval,
                    department_id=definition.department_id,
                    positions=definition.positions,
                )
            )
    return drafts


def _weekday_key(raw_key: Any) -> int:
    if isinstance(raw_key, bool):
        raise InvalidTemplatePatternError("weekday key must be 0-6", key=raw_key)
    if isinstance(raw_key, int):
        day = raw_key
    elif isinstance(raw_key, str) and raw_key.strip() in DAY_KEYS:
        day = int(raw_key.strip())
    else:
        raise InvalidTemplatePatternError("weekday key must be 0-6", key=raw_key)
    if not 0 <= day <= 6:
        raise InvalidTemplatePatternError("weekday key must be 0-6", key=raw_key)
    return day


def _shift_definition(entry: Any, day: int, index: int) -> ShiftDefinition:
    if not isinstance(entry, dict):
        raise InvalidTemplatePatternError("shift definition must be an object", day=day, index=index)
    try:
        interval = ShiftInterval.parse(entry.get("start_time"), entry.get("end_time"))
    except SchedulingError as exc:
        raise InvalidTemplatePatternError(exc.message, day=day, index=index) from exc
    department_id = entry.get("department_id")
    if department_id is not None:
        department_id = _positive_int(department_id, "department_id", day, index)
    raw_positions = entry.get("positions") or []
    if not isinstance(raw_positions, list):
        raise InvalidTemplatePatternError("positions must be a list", day=day, index=index)
    positions = tuple(_position_need(item, day, index) for item in raw_positions)
    return ShiftDefinition(interval=interval, department_id=department_id, positions=positions)


def _position_need(item: Any, day: int, index: int) -> PositionNeed:
    if not isinstance(item, dict):
        raise InvalidTemplatePatternError("position must be an object", day=day, index=index)
    position_id = item.get("job_position_id", item.get("id"))
    if position_id is None:
        raise InvalidTemplatePatternError("position is missing job_position_id", day=day, index=index)
    count = item.get("required_count", item.get("count"))
    return PositionNeed(
        job_position_id=_positive_int(position_id, "job_position_id", day, index),
        required_count=1 if count is None else _positive_int(count, "required_count", day, index),
    )


def _positive_int(value: Any, name: str, day: int, index: int) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise InvalidTemplatePatternError(f"{name} must be a positive integer", day=day, index=index)
    try:
        number = int(value)
    except ValueError:
        raise InvalidTemplatePatternError(f"{name} must be a positive integer", day=day, index=index) from None
    if number < 1:
        raise InvalidTemplatePatternError(f"{name} must be a positive integer", day=day, index=index)
    return number


def serialize_day_pattern(days: DayPattern) -> Dict[str, Any]:
    """Canonical JSON form of a validated pattern: string keys, ``HH:mm`` times."""
    serialized: Dict[str, Any] = {}
    for day in sorted(days):
        entries = []
        for definition in days[day]:
            start, end = definition.interval.as_strings()
            entries.append(
                {
                    "start_time": start,
                    "end_time": end,
                    "department_id": definition.department_id,
                    "positions": [
                        {"job_position_id": need.job_position_id, "required_count": need.required_count}
                        for need in definition.positions
                    ],
                }
            )
        serialized[str(day)] = entries
    return serialized
