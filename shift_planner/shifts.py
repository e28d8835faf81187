from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from .bulk import FAIL, normalize_candidate, persisted_context, resolve_rules, resolve_shift_batch
from .cache import TemplateCache
from .conflicts import ShiftCandidate, evaluate
from .database import (
    EmployeeShiftPattern,
    Shift,
    get_employee,
    get_shift,
    record_audit_log,
    shift_to_dict,
    touch_shift_pattern,
    utcnow,
)
from .errors import (
    DailyHourCapExceededError,
    InvalidRequestError,
    OverlapConflictError,
    ResourceNotFoundError,
    TransactionFailedError,
    WeeklyHourCapExceededError,
)
from .time_utils import ShiftInterval, as_date, format_time, to_time

logger = logging.getLogger(__name__)

DEFAULT_PATTERN_LIMIT = 10
DEFAULT_SUGGESTION_LIMIT = 5
UPDATABLE_FIELDS = (
    "employee_id",
    "location_id",
    "position_id",
    "shift_date",
    "start_time",
    "end_time",
    "notes",
    "status",
)


def create_shift(
    session,
    payload: Dict[str, Any],
    *,
    company_id: int,
    actor: str = "system",
    cache: Optional[TemplateCache] = None,
    rules: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Create one shift, raising instead of recording a failure when it cannot be booked."""
    rules = resolve_rules(session, company_id, rules)
    normalize_candidate(session, payload, company_id, rules)
    result = resolve_shift_batch(
        session,
        [payload],
        company_id=company_id,
        conflict_resolution=FAIL,
        actor=actor,
        cache=cache,
        rules=rules,
        operation="create",
    )
    created = dict(result.succeeded[0])
    created.pop("index", None)
    return created


def update_shift(
    session,
    shift_id: int,
    payload: Dict[str, Any],
    *,
    company_id: int,
    actor: str = "system",
    cache: Optional[TemplateCache] = None,
    rules: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Apply ``payload`` over the stored shift and re-check it against everything but itself."""
    if not isinstance(payload, dict):
        raise InvalidRequestError("request body must be an object")
    shift = _require_shift(session, shift_id, company_id)
    old_values = shift_to_dict(shift)
    merged = {key: old_values[key] for key in UPDATABLE_FIELDS}
    merged.update({key: value for key, value in payload.items() if key in UPDATABLE_FIELDS})

    rules = resolve_rules(session, company_id, rules)
    candidate = normalize_candidate(session, merged, company_id, rules)
    existing = persisted_context(session, candidate, rules, exclude_ids={shift_id})
    report = evaluate(
        candidate,
        existing,
        max_daily_hours=rules.get("max_daily_hours"),
        max_weekly_hours=rules.get("max_weekly_hours") if rules.get("enforce_weekly_cap") else None,
    )
    if report.conflicts:
        logger.warning("Update of shift %s rejected: overlaps %s shift(s)", shift_id, len(report.conflicts))
        raise OverlapConflictError([conflict.to_dict() for conflict in report.conflicts])
    if report.violations:
        violation = report.violations[0]
        logger.warning("Update of shift %s rejected: %s", shift_id, violation.message)
        error_cls = WeeklyHourCapExceededError if violation.kind == "weekly_hour_cap" else DailyHourCapExceededError
        raise error_cls([violation.to_dict()])

    start, end = candidate.interval.as_strings()
    moved = (candidate.employee_id, start, end) != (shift.employee_id, old_values["start_time"], old_values["end_time"])
    shift.employee_id = candidate.employee_id
    shift.location_id = candidate.location_id
    shift.position_id = candidate.position_id
    shift.shift_date = candidate.shift_date
    shift.start_time = to_time(start)
    shift.end_time = to_time(end)
    shift.notes = candidate.notes
    shift.status = candidate.status
    pattern = (candidate.employee_id, start, end) if moved else None
    _commit_change(session, shift, actor, "update", old_values, pattern=pattern)
    if cache is not None:
        for employee_id in sorted({old_values["employee_id"], candidate.employee_id}):
            cache.invalidate_patterns(company_id, employee_id)
    return shift_to_dict(shift)


def cancel_shift(session, shift_id: int, *, company_id: int, actor: str = "system") -> Dict[str, Any]:
    shift = _require_shift(session, shift_id, company_id)
    old_values = shift_to_dict(shift)
    shift.status = "cancelled"
    _commit_change(session, shift, actor, "cancel", old_values)
    return shift_to_dict(shift)


def confirm_shift(session, shift_id: int, *, company_id: int, actor: str = "system") -> Dict[str, Any]:
    shift = _require_shift(session, shift_id, company_id)
    if shift.status == "cancelled":
        raise InvalidRequestError("Cancelled shifts cannot be confirmed", shift_id=shift_id)
    old_values = shift_to_dict(shift)
    shift.status = "confirmed"
    shift.confirmed_by = actor
    shift.confirmed_at = utcnow()
    _commit_change(session, shift, actor, "confirm", old_values)
    return shift_to_dict(shift)


def delete_shift(session, shift_id: int, *, company_id: int, actor: str = "system") -> Dict[str, Any]:
    """Soft delete: the row stays for audit but is no longer live."""
    shift = _require_shift(session, shift_id, company_id)
    old_values = shift_to_dict(shift)
    shift.deleted_at = utcnow()
    _commit_change(session, shift, actor, "delete", old_values)
    return shift_to_dict(shift)


def get_employee_patterns(
    session,
    company_id: int,
    employee_id: int,
    *,
    limit: int = DEFAULT_PATTERN_LIMIT,
    cache: Optional[TemplateCache] = None,
) -> List[Dict[str, Any]]:
    """Most used start/end pairs for an employee, most frequent first."""
    if get_employee(session, employee_id, company_id) is None:
        raise ResourceNotFoundError("Employee", employee_id)
    patterns = cache.get_patterns(company_id, employee_id) if cache is not None else None
    if patterns is None:
        generation = cache.pattern_generation(company_id) if cache is not None else None
        rows = session.scalars(
            select(EmployeeShiftPattern)
            .where(EmployeeShiftPattern.employee_id == employee_id)
            .order_by(
                EmployeeShiftPattern.frequency_count.desc(),
                EmployeeShiftPattern.last_used.desc(),
                EmployeeShiftPattern.id.asc(),
            )
        )
        patterns = [_pattern_to_dict(row) for row in rows]
        if cache is not None:
            cache.set_patterns(company_id, employee_id, patterns, generation=generation)
    return [dict(item) for item in patterns[: max(0, int(limit))]]


def suggest_shift_times(
    session,
    company_id: int,
    employee_id: int,
    *,
    shift_date: Any = None,
    location_id: Optional[int] = None,
    limit: int = DEFAULT_SUGGESTION_LIMIT,
    cache: Optional[TemplateCache] = None,
    rules: Optional[Dict[str, Any]] = None,
) -> List[Dict[str, Any]]:
    """Suggest the employee's usual times, dropping any that could not be booked on ``shift_date``."""
    patterns = get_employee_patterns(session, company_id, employee_id, limit=DEFAULT_PATTERN_LIMIT * 5, cache=cache)
    if shift_date is None:
        return [dict(item, source="pattern") for item in patterns[: max(0, int(limit))]]

    day = as_date(shift_date, field="shift_date")
    if limit <= 0:
        return []
    rules = resolve_rules(session, company_id, rules)
    suggestions: List[Dict[str, Any]] = []
    existing = None
    for item in patterns:
        interval = ShiftInterval.parse(item["start_time"], item["end_time"])
        if interval.overnight and not rules.get("allow_overnight", True):
            continue
        candidate = ShiftCandidate(
            employee_id=employee_id,
            location_id=location_id or 0,
            shift_date=day,
            interval=interval,
        )
        if existing is None:
            existing = persisted_context(session, candidate, rules)
        report = evaluate(
            candidate,
            existing,
            max_daily_hours=rules.get("max_daily_hours"),
            max_weekly_hours=rules.get("max_weekly_hours") if rules.get("enforce_weekly_cap") else None,
        )
        if not report.ok:
            continue
        suggestions.append(dict(item, source="pattern"))
        if len(suggestions) >= limit:
            break
    return suggestions


def _pattern_to_dict(pattern: EmployeeShiftPattern) -> Dict[str, Any]:
    interval = ShiftInterval.parse(pattern.start_time, pattern.end_time)
    return {
        "start_time": format_time(pattern.start_time),
        "end_time": format_time(pattern.end_time),
        "frequency_count": pattern.frequency_count,
        "duration_hours": round(interval.minutes / 60, 2),
        "last_used": pattern.last_used.isoformat() if pattern.last_used else None,
    }


def _require_shift(session, shift_id: int, company_id: int) -> Shift:
    shift = get_shift(session, shift_id, company_id)
    if shift is None:
        raise ResourceNotFoundError("Shift", shift_id)
    return shift


def _commit_change(
    session,
    shift: Shift,
    actor: str,
    action: str,
    old_values: Dict[str, Any],
    *,
    pattern: Optional[Tuple[int, str, str]] = None,
) -> None:
    shift_id, company_id = shift.id, shift.company_id
    try:
        session.flush()
        if pattern is not None:
            touch_shift_pattern(session, *pattern)
        record_audit_log(
            session,
            actor,
            action,
            target_type="shift",
            target_id=shift_id,
            company_id=company_id,
            old_values=old_values,
            new_values=shift_to_dict(shift),
            commit=False,
        )
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        logger.exception("Shift %s %s failed for company %s", shift_id, action, company_id)
        raise TransactionFailedError(f"shift {action}") from None
    logger.info("Shift %s %s by %s", shift_id, action, actor)
