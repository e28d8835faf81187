from __future__ import annotations

import datetime

import pytest

from shift_planner.conflicts import (
    ShiftCandidate,
    ShiftSlot,
    check_daily_hours,
    check_weekly_hours,
    detect_conflicts,
    evaluate,
)
from shift_planner.errors import InvalidDateFormatError, InvalidTimeFormatError
from shift_planner.time_utils import ShiftInterval

DAY = datetime.date(2024, 4, 10)
ONE_DAY = datetime.timedelta(days=1)


def _candidate(start: str, end: str, day: datetime.date = DAY, employee_id: int = 1) -> ShiftCandidate:
    return ShiftCandidate(
        employee_id=employee_id,
        location_id=10,
        shift_date=day,
        interval=ShiftInterval.parse(start, end),
    )


def _slot(start: str, end: str, day: datetime.date = DAY, employee_id: int = 1, shift_id: int = 1, live=True):
    return ShiftSlot(
        employee_id=employee_id,
        shift_date=day,
        interval=ShiftInterval.parse(start, end),
        shift_id=shift_id,
        live=live,
    )


def test_same_day_overlap_is_reported():
    conflicts = detect_conflicts(_candidate("12:00", "20:00"), [_slot("09:00", "17:00", shift_id=7)])
    assert len(conflicts) == 1
    assert conflicts[0].shift_id == 7
    assert conflicts[0].to_dict()["start_time"] == "09:00"
    assert conflicts[0].source == "persisted"


def test_back_to_back_shifts_do_not_conflict():
    assert detect_conflicts(_candidate("17:00", "22:00"), [_slot("09:00", "17:00")]) == []


def test_overnight_candidate_conflicts_with_next_day_early_shift():
    existing = [_slot("05:00", "09:00", day=DAY + ONE_DAY)]
    conflicts = detect_conflicts(_candidate("22:00", "06:00"), existing)
    assert [conflict.shift_date for conflict in conflicts] == [DAY + ONE_DAY]


def test_previous_day_overnight_shift_conflicts_with_early_candidate():
    existing = [_slot("22:00", "06:00", day=DAY - ONE_DAY)]
    assert len(detect_conflicts(_candidate("05:00", "09:00"), existing)) == 1
    assert detect_conflicts(_candidate("06:00", "10:00"), existing) == []


def test_ignores_other_employees_dead_rows_and_far_dates():
    existing = [
        _slot("09:00", "17:00", employee_id=2),
        _slot("09:00", "17:00", live=False),
        _slot("09:00", "17:00", day=DAY + 2 * ONE_DAY),
    ]
    assert detect_conflicts(_candidate("09:00", "17:00"), existing) == []


def test_collects_every_conflict_in_input_order():
    existing = [
        _slot("13:00", "15:00", shift_id=3),
        _slot("06:00", "07:00", shift_id=4),
        _slot("08:00", "10:00", shift_id=5),
    ]
    conflicts = detect_conflicts(_candidate("08:00", "16:00"), existing)
    assert [conflict.shift_id for conflict in conflicts] == [3, 5]


def test_in_batch_slots_report_batch_source():
    batch_slot = ShiftSlot.from_candidate(_candidate("09:00", "12:00"), batch_index=0)
    conflicts = detect_conflicts(_candidate("11:00", "13:00"), [batch_slot])
    assert conflicts[0].source == "batch"
    assert conflicts[0].batch_index == 0


def test_daily_cap_counts_candidate_and_same_day_shifts():
    existing = [_slot("09:00", "17:00"), _slot("09:00", "17:00", day=DAY - ONE_DAY)]
    violation = check_daily_hours(_candidate("18:00", "23:00"), existing, 12)
    assert violation is not None
    assert violation.kind == "daily_hour_cap"
    assert violation.total_hours == 13.0
    assert check_daily_hours(_candidate("18:00", "22:00"), existing, 12) is None
    assert check_daily_hours(_candidate("18:00", "23:00"), existing, None) is None


def test_daily_cap_uses_overnight_duration():
    violation = check_daily_hours(_candidate("20:00", "10:00"), [], 12)
    assert violation is not None
    assert violation.total_hours == 14.0


def test_weekly_cap_only_counts_the_candidates_week():
    sunday = datetime.date(2024, 4, 7)
    existing = [_slot("08:00", "18:00", day=sunday + datetime.timedelta(days=offset), shift_id=offset) for offset in range(4)]
    existing.append(_slot("08:00", "18:00", day=sunday - ONE_DAY, shift_id=99))
    violation = check_weekly_hours(_candidate("08:00", "12:00", day=sunday + 5 * ONE_DAY), existing, 40)
    assert violation is not None
    assert violation.kind == "weekly_hour_cap"
    assert violation.total_hours == 44.0
    assert check_weekly_hours(_candidate("08:00", "12:00"), [], 40) is None


def test_evaluate_keeps_overlaps_and_cap_violations_apart():
    report = evaluate(
        _candidate("10:00", "23:00"),
        [_slot("09:00", "12:00")],
        max_daily_hours=12,
    )
    assert len(report.conflicts) == 1
    assert [violation.kind for violation in report.violations] == ["daily_hour_cap"]
    payload = report.to_dict()
    assert payload["has_conflicts"] is True
    assert payload["violations"][0]["type"] == "daily_hour_cap"
    assert not report.ok


def test_candidate_from_payload():
    candidate = ShiftCandidate.from_payload(
        {"employee_id": "3", "location_id": 4, "shift_date": "2024-04-10", "start_time": "22:00", "end_time": "06:00"}
    )
    assert candidate.employee_id == 3
    assert candidate.interval.overnight
    assert candidate.to_dict()["shift_date"] == "2024-04-10"


@pytest.mark.parametrize(
    "payload,error",
    [
        ({"location_id": 4, "shift_date": "2024-04-10", "start_time": "09:00", "end_time": "17:00"}, ValueError),
        ({"employee_id": 1, "location_id": 4, "shift_date": "2024-04-10", "start_time": "9:00", "end_time": "17:00"}, InvalidTimeFormatError),
        ({"employee_id": 1, "location_id": 4, "shift_date": "10/04/2024", "start_time": "09:00", "end_time": "17:00"}, InvalidDateFormatError),
        ({"employee_id": 1, "location_id": 4, "shift_date": "2024-04-10", "start_time": "09:00", "end_time": "17:00", "status": "maybe"}, ValueError),
    ],
)
def test_candidate_from_payload_rejects_malformed_input(payload, error):
    with pytest.raises(error):
        ShiftCandidate.from_payload(payload)


def test_cancelled_candidate_books_no_hours():
    cancelled = ShiftCandidate(
        employee_id=1,
        location_id=10,
        shift_date=DAY,
        interval=ShiftInterval.parse("08:00", "20:00"),
        status="cancelled",
    )
    existing = [_slot("06:00", "12:00", shift_id=1), _slot("12:00", "18:00", day=DAY - ONE_DAY, shift_id=2)]

    assert check_daily_hours(cancelled, existing, 8) is None
    assert check_weekly_hours(cancelled, existing, 10) is None
    report = evaluate(cancelled, existing, max_daily_hours=8, max_weekly_hours=10)
    assert report.ok
    assert not evaluate(_candidate("13:00", "20:00"), existing, max_daily_hours=8).ok
