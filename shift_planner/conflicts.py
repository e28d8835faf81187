"""Overlap and labor-rule checks for a single shift candidate.

Everything here is a pure function over values already loaded by the caller:
nothing reads from or writes to the database, and nothing decides whether a
conflicting candidate is rejected.  That policy lives in :mod:`shift_planner.bulk`.
"""

from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Union

from .database import SHIFT_STATUS_CHOICES, Shift
from .time_utils import (
    ShiftInterval,
    as_date,
    format_date,
    overlaps,
    project_interval,
    week_bounds,
)

ADJACENT_DAYS = (-1, 0, 1)


@dataclass(frozen=True)
class ShiftCandidate:
    employee_id: int
    location_id: int
    shift_date: datetime.date
    interval: ShiftInterval
    notes: str = ""
    status: str = "draft"
    position_id: Optional[int] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ShiftCandidate":
        """Build a candidate from wire values, raising on any malformed field."""
        if not isinstance(payload, dict):
            raise ValueError("Shift payload must be an object.")
        employee_id = _required_int(payload, "employee_id")
        location_id = _required_int(payload, "location_id")
        shift_date = as_date(payload.get("shift_date"), field="shift_date")
        interval = ShiftInterval.parse(payload.get("start_time"), payload.get("end_time"))
        status = str(payload.get("status") or "draft").lower()
        if status not in SHIFT_STATUS_CHOICES:
            raise ValueError(f"Unknown shift status {status!r}.")
        position_id = _required_int(payload, "position_id") if payload.get("position_id") is not None else None
        return cls(
            employee_id=employee_id,
            location_id=location_id,
            shift_date=shift_date,
            interval=interval,
            notes=str(payload.get("notes") or ""),
            status=status,
            position_id=position_id,
        )

    def to_dict(self) -> Dict[str, Any]:
        start, end = self.interval.as_strings()
        return {
            "employee_id": self.employee_id,
            "location_id": self.location_id,
            "position_id": self.position_id,
            "shift_date": format_date(self.shift_date),
            "start_time": start,
            "end_time": end,
            "notes": self.notes,
            "status": self.status,
        }


@dataclass(frozen=True)
class ShiftSlot:
    """The part of a shift the detector looks at; persisted rows and in-batch items alike."""

    employee_id: int
    shift_date: datetime.date
    interval: ShiftInterval
    shift_id: Optional[int] = None
    batch_index: Optional[int] = None
    live: bool = True

    @classmethod
    def from_shift(cls, shift: Shift) -> "ShiftSlot":
        return cls(
            employee_id=shift.employee_id,
            shift_date=shift.shift_date,
            interval=shift.interval,
            shift_id=shift.id,
            live=shift.is_live,
        )

    @classmethod
    def from_candidate(cls, candidate: ShiftCandidate, batch_index: int) -> "ShiftSlot":
        return cls(
            employee_id=candidate.employee_id,
            shift_date=candidate.shift_date,
            interval=candidate.interval,
            batch_index=batch_index,
            live=candidate.status != "cancelled",
        )


SlotLike = Union[ShiftSlot, Shift]


@dataclass(frozen=True)
class Conflict:
    shift_date: datetime.date
    interval: ShiftInterval
    shift_id: Optional[int] = None
    batch_index: Optional[int] = None

    @property
    def source(self) -> str:
        return "persisted" if self.shift_id is not None else "batch"

    def to_dict(self) -> Dict[str, Any]:
        start, end = self.interval.as_strings()
        return {
            "type": "overlap",
            "source": self.source,
            "shift_id": self.shift_id,
            "batch_index": self.batch_index,
            "shift_date": format_date(self.shift_date),
            "start_time": start,
            "end_time": end,
        }


@dataclass(frozen=True)
class Violation:
    kind: str
    message: str
    total_hours: float
    limit_hours: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.kind,
            "message": self.message,
            "total_hours": self.total_hours,
            "limit_hours": self.limit_hours,
        }


@dataclass
class ConflictReport:
    candidate: ShiftCandidate
    conflicts: List[Conflict] = field(default_factory=list)
    violations: List[Violation] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.conflicts and not self.violations

    def to_dict(self) -> Dict[str, Any]:
        return {
            "candidate": self.candidate.to_dict(),
            "has_conflicts": bool(self.conflicts),
            "conflicts": [conflict.to_dict() for conflict in self.conflicts],
            "violations": [violation.to_dict() for violation in self.violations],
        }


def detect_conflicts(candidate: ShiftCandidate, existing: Iterable[SlotLike]) -> List[Conflict]:
    """Return every existing slot the candidate overlaps, in input order.

    ``existing`` should hold the employee's shifts on the candidate date and on
    the dates either side of it, so overnight shifts are caught in both
    directions.  Slots for other employees, cancelled or deleted slots and
    slots more than one day away are ignored.
    """
    if candidate.status == "cancelled":
        return []
    reference = candidate.shift_date
    cand_start, cand_end = project_interval(candidate.interval, reference, reference)
    conflicts: List[Conflict] = []
    for item in existing:
        slot = _as_slot(item)
        if slot.employee_id != candidate.employee_id or not slot.live:
            continue
        if (slot.shift_date - reference).days not in ADJACENT_DAYS:
            continue
        slot_start, slot_end = project_interval(slot.interval, slot.shift_date, reference)
        if overlaps(cand_start, cand_end, slot_start, slot_end):
            conflicts.append(
                Conflict(
                    shift_date=slot.shift_date,
                    interval=slot.interval,
                    shift_id=slot.shift_id,
                    batch_index=slot.batch_index,
                )
            )
    return conflicts


def check_daily_hours(
    candidate: ShiftCandidate,
    existing: Iterable[SlotLike],
    max_daily_hours: Optional[float],
) -> Optional[Violation]:
    """Sum the employee's hours on the candidate date, candidate included.

    A cancelled candidate books no hours, so it never trips a cap.
    """
    if not max_daily_hours or candidate.status == "cancelled":
        return None
    total_minutes = candidate.interval.minutes + sum(
        slot.interval.minutes
        for slot in _live_slots(existing, candidate.employee_id)
        if slot.shift_date == candidate.shift_date
    )
    total_hours = round(total_minutes / 60, 2)
    if total_hours <= max_daily_hours:
        return None
    return Violation(
        kind="daily_hour_cap",
        message=(
            f"Total daily hours ({total_hours}h) on {format_date(candidate.shift_date)} "
            f"would exceed maximum daily hours ({max_daily_hours}h)"
        ),
        total_hours=total_hours,
        limit_hours=float(max_daily_hours),
    )


def check_weekly_hours(
    candidate: ShiftCandidate,
    existing: Iterable[SlotLike],
    max_weekly_hours: Optional[float],
) -> Optional[Violation]:
    if not max_weekly_hours or candidate.status == "cancelled":
        return None
    week_start, week_end = week_bounds(candidate.shift_date)
    total_minutes = candidate.interval.minutes + sum(
        slot.interval.minutes
        for slot in _live_slots(existing, candidate.employee_id)
        if week_start <= slot.shift_date <= week_end
    )
    total_hours = round(total_minutes / 60, 2)
    if total_hours <= max_weekly_hours:
        return None
    return Violation(
        kind="weekly_hour_cap",
        message=(
            f"Weekly hours ({total_hours}h) for the week of {format_date(week_start)} "
            f"would exceed maximum weekly hours ({max_weekly_hours}h)"
        ),
        total_hours=total_hours,
        limit_hours=float(max_weekly_hours),
    )


def evaluate(
    candidate: ShiftCandidate,
    existing: Iterable[SlotLike],
    *,
    max_daily_hours: Optional[float] = None,
    max_weekly_hours: Optional[float] = None,
) -> ConflictReport:
    """Overlaps and labor-rule violations for one candidate, reported separately."""
    slots = [_as_slot(item) for item in existing]
    report = ConflictReport(candidate=candidate, conflicts=detect_conflicts(candidate, slots))
    for violation in (
        check_daily_hours(candidate, slots, max_daily_hours),
        check_weekly_hours(candidate, slots, max_weekly_hours),
    ):
        if violation is not None:
            report.violations.append(violation)
    return report


def _as_slot(item: SlotLike) -> ShiftSlot:
    if isinstance(item, ShiftSlot):
        return item
    return ShiftSlot.from_shift(item)


def _live_slots(existing: Iterable[SlotLike], employee_id: int) -> Iterable[ShiftSlot]:
    for item in existing:
        slot = _as_slot(item)
        if slot.employee_id == employee_id and slot.live:
            yield slot


def _required_int(payload: Dict[str, Any], key: str) -> int:
    value = payload.get(key)
    if value is None or isinstance(value, bool):
        raise ValueError(f"{key} is required.")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{key} must be an integer.") from None
