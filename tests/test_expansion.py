from __future__ import annotations

import datetime
import json

import pytest
from sqlalchemy import func, select

from shift_planner.database import AuditLog, SchedulingBatch, SchedulingTemplate, ShiftRequirement
from shift_planner.errors import EmptyDateRangeError, InvalidTemplatePatternError, ResourceNotFoundError
from shift_planner.generator.api import apply_template_to_batch
from shift_planner.generator.expansion import expand_day_pattern, serialize_day_pattern, validate_day_pattern
from shift_planner.time_utils import weekday_index

COMPANY_ID = 1
SUNDAY = datetime.date(2024, 4, 7)
SATURDAY = datetime.date(2024, 4, 13)
WEEKDAY_SHIFT = {"start_time": "09:00", "end_time": "17:00", "positions": [{"job_position_id": 5, "required_count": 2}]}
WEEKDAY_PATTERN = {str(day): [WEEKDAY_SHIFT] for day in range(1, 6)}


def test_weekday_pattern_skips_weekend():
    drafts = expand_day_pattern(SUNDAY, SATURDAY, WEEKDAY_PATTERN)
    assert len(drafts) == 5
    assert all(weekday_index(draft.shift_date) in range(1, 6) for draft in drafts)
    assert [draft.shift_date.day for draft in drafts] == [8, 9, 10, 11, 12]
    assert drafts[0].positions[0].required_count == 2


def test_multiple_shifts_keep_pattern_order():
    pattern = {
        1: [
            {"start_time": "06:00", "end_time": "14:00"},
            {"start_time": "22:00", "end_time": "06:00", "department_id": 2},
        ]
    }
    drafts = expand_day_pattern("2024-04-08", "2024-04-15", pattern)
    assert [(draft.shift_date.day, str(draft.interval.start)) for draft in drafts] == [
        (8, "06:00"),
        (8, "22:00"),
        (15, "06:00"),
        (15, "22:00"),
    ]
    assert drafts[1].department_id == 2
    assert drafts[1].interval.overnight


def test_single_day_range():
    assert len(expand_day_pattern("2024-04-08", "2024-04-08", WEEKDAY_PATTERN)) == 1


def test_inverted_range_raises():
    with pytest.raises(EmptyDateRangeError):
        expand_day_pattern("2024-04-10", "2024-04-09", WEEKDAY_PATTERN)


def test_position_count_defaults_to_one():
    days = validate_day_pattern({"2": [{"start_time": "09:00", "end_time": "12:00", "positions": [{"id": 4}]}]})
    assert days[2][0].positions[0].required_count == 1
    assert days[2][0].positions[0].job_position_id == 4


@pytest.mark.parametrize(
    "pattern",
    [
        {"1": [{"start_time": "09:00", "end_time": "09:00"}]},
        {"1": [{"start_time": "9:00", "end_time": "17:00"}]},
        {"7": [WEEKDAY_SHIFT]},
        {"mon": [WEEKDAY_SHIFT]},
        {"1": WEEKDAY_SHIFT},
        {"1": [WEEKDAY_SHIFT], 1: [WEEKDAY_SHIFT]},
        {"1": [{"start_time": "09:00", "end_time": "17:00", "positions": [{"job_position_id": 1, "required_count": 0}]}]},
        [WEEKDAY_SHIFT],
    ],
)
def test_malformed_patterns_raise(pattern):
    with pytest.raises(InvalidTemplatePatternError):
        validate_day_pattern(pattern)


def test_serialized_pattern_is_canonical():
    days = validate_day_pattern({3: [{"start_time": "09:00", "end_time": "17:00", "positions": [{"id": 4, "count": 3}]}]})
    assert serialize_day_pattern(days) == {
        "3": [
            {
                "start_time": "09:00",
                "end_time": "17:00",
                "department_id": None,
                "positions": [{"job_position_id": 4, "required_count": 3}],
            }
        ]
    }


def _batch_and_template(session, pattern_json: str):
    template = SchedulingTemplate(company_id=COMPANY_ID, name="Weekdays", patternJSON=pattern_json)
    batch = SchedulingBatch(company_id=COMPANY_ID, location_id=10, start_date=SUNDAY, end_date=SATURDAY)
    session.add_all([template, batch])
    session.commit()
    return batch, template


def test_apply_template_creates_requirements(session):
    batch, template = _batch_and_template(session, json.dumps(WEEKDAY_PATTERN))

    result = apply_template_to_batch(session, batch.id, template.id, company_id=COMPANY_ID, actor="tests")

    assert result["created_requirements"] == 5
    rows = list(session.scalars(select(ShiftRequirement).order_by(ShiftRequirement.shift_date)))
    assert len(rows) == 5
    assert {row.status for row in rows} == {"open"}
    assert rows[0].notes == "Created from template: Weekdays"
    assert rows[0].location_id == 10
    assert [(p.job_position_id, p.required_count, p.filled_count) for p in rows[0].positions] == [(5, 2, 0)]
    assert result["requirements"][0]["start_time"] == "09:00"
    audit = session.scalars(select(AuditLog).where(AuditLog.action == "apply_template")).one()
    assert json.loads(audit.newValuesJSON)["created_requirements"] == 5


def test_malformed_stored_pattern_writes_nothing(session):
    pattern = dict(WEEKDAY_PATTERN)
    pattern["3"] = [{"start_time": "25:00", "end_time": "17:00"}]
    batch, template = _batch_and_template(session, json.dumps(pattern))

    with pytest.raises(InvalidTemplatePatternError):
        apply_template_to_batch(session, batch.id, template.id, company_id=COMPANY_ID, actor="tests")

    assert session.scalar(select(func.count()).select_from(ShiftRequirement)) == 0


def test_unparseable_stored_pattern_is_rejected(session):
    batch, template = _batch_and_template(session, "{not json")
    with pytest.raises(InvalidTemplatePatternError):
        apply_template_to_batch(session, batch.id, template.id, company_id=COMPANY_ID, actor="tests")


def test_apply_template_requires_batch_and_template_of_company(session):
    batch, template = _batch_and_template(session, json.dumps(WEEKDAY_PATTERN))
    with pytest.raises(ResourceNotFoundError):
        apply_template_to_batch(session, batch.id + 100, template.id, company_id=COMPANY_ID, actor="tests")
    with pytest.raises(ResourceNotFoundError):
        apply_template_to_batch(session, batch.id, template.id, company_id=COMPANY_ID + 1, actor="tests")
