"""Create many shifts at once under a fail / skip / overwrite conflict strategy.

This module is the only place that decides whether a conflicting candidate
is rejected, skipped or allowed to replace what is already booked.  Candidates
are resolved in request order against the persisted live shifts and against
the candidates already accepted earlier in the same request.  Nothing touches
the session until every candidate has been resolved, so ``preview_only`` runs
exactly the same steps as a real write.
"""

from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from .cache import TemplateCache
from .conflicts import (
    ShiftCandidate,
    ShiftSlot,
    check_daily_hours,
    check_weekly_hours,
    detect_conflicts,
    evaluate,
)
from .database import (
    Shift,
    ShiftTemplate,
    get_employee,
    get_live_shifts,
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
    SchedulingError,
    TransactionFailedError,
    WeeklyHourCapExceededError,
)
from .policy import labor_rules, load_active_policy
from .time_utils import format_date, format_time, to_time, week_bounds

logger = logging.getLogger(__name__)

FAIL = "fail"
SKIP = "skip"
OVERWRITE = "overwrite"
STRATEGIES = (FAIL, SKIP, OVERWRITE)
DEFAULT_STRATEGY = FAIL
ONE_DAY = datetime.timedelta(days=1)


@dataclass
class BatchResult:
    preview_only: bool = False
    succeeded: List[Dict[str, Any]] = field(default_factory=list)
    failed: List[Dict[str, Any]] = field(default_factory=list)
    cancelled_shift_ids: List[int] = field(default_factory=list)

    @property
    def summary(self) -> Dict[str, int]:
        return {
            "requested": len(self.succeeded) + len(self.failed),
            "succeeded": len(self.succeeded),
            "failed": len(self.failed),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "preview_only": self.preview_only,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "cancelled_shift_ids": self.cancelled_shift_ids,
            "summary": self.summary,
        }


@dataclass
class _Accepted:
    index: int
    candidate: ShiftCandidate


# ---------------------------------------------------------------------------
# Entry points


def bulk_create_shifts(
    session,
    request: Dict[str, Any],
    *,
    company_id: int,
    actor: str = "system",
    cache: Optional[TemplateCache] = None,
    rules: Optional[Dict[str, Any]] = None,
) -> BatchResult:
    """Create shifts from explicit ``items`` or from ``employee_ids`` x ``dates``.

    The product form takes its times from ``start_time``/``end_time`` or from
    the company shift template named by ``template_id``.
    """
    request = _as_request(request)
    strategy = _strategy(request)
    defaults = _item_defaults(request)
    if request.get("items") is not None:
        items = request["items"]
        if not isinstance(items, list) or not items:
            raise InvalidRequestError("items must be a non-empty list")
        payloads = [_merge(defaults, item) for item in items]
    else:
        employee_ids = _non_empty_list(request, "employee_ids")
        dates = _non_empty_list(request, "dates")
        start_time, end_time = _request_times(session, request, company_id)
        payloads = [
            _merge(
                defaults,
                {"employee_id": employee_id, "shift_date": shift_date, "start_time": start_time, "end_time": end_time},
            )
            for employee_id in employee_ids
            for shift_date in dates
        ]
    return resolve_shift_batch(
        session,
        payloads,
        company_id=company_id,
        conflict_resolution=strategy,
        preview_only=_preview_flag(request),
        actor=actor,
        cache=cache,
        rules=rules,
        operation="bulk_create",
    )


def duplicate_shifts(
    session,
    request: Dict[str, Any],
    *,
    company_id: int,
    actor: str = "system",
    cache: Optional[TemplateCache] = None,
    rules: Optional[Dict[str, Any]] = None,
) -> BatchResult:
    """Copy source shifts to other dates, other employees, or the product of both."""
    request = _as_request(request)
    strategy = _strategy(request)
    source_ids = _non_empty_list(request, "source_shift_ids")
    target_dates = request.get("target_dates") or []
    target_employee_ids = request.get("target_employee_ids") or []
    if not isinstance(target_dates, list) or not isinstance(target_employee_ids, list):
        raise InvalidRequestError("target_dates and target_employee_ids must be lists")
    if not target_dates and not target_employee_ids:
        raise InvalidRequestError("target_dates or target_employee_ids is required")

    sources = _load_source_shifts(session, source_ids, company_id)
    payloads: List[Dict[str, Any]] = []
    for source in sources:
        employees = target_employee_ids or [source.employee_id]
        dates = target_dates or [format_date(source.shift_date)]
        for employee_id in employees:
            for shift_date in dates:
                payloads.append(
                    {
                        "employee_id": employee_id,
                        "location_id": source.location_id,
                        "position_id": source.position_id,
                        "shift_date": shift_date,
                        "start_time": format_time(source.start_time),
                        "end_time": format_time(source.end_time),
                        "notes": source.notes,
                        "status": "draft",
                    }
                )
    return resolve_shift_batch(
        session,
        payloads,
        company_id=company_id,
        conflict_resolution=strategy,
        preview_only=_preview_flag(request),
        actor=actor,
        cache=cache,
        rules=rules,
        operation="duplicate",
    )


def validate_conflicts(
    session,
    candidates: Iterable[Dict[str, Any]],
    *,
    company_id: int,
    rules: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Report overlaps and hour-cap violations for each payload without writing anything."""
    rules = resolve_rules(session, company_id, rules)
    employees: Dict[int, bool] = {}
    earlier: List[ShiftSlot] = []
    results: List[Dict[str, Any]] = []
    for index, payload in enumerate(candidates):
        try:
            candidate = normalize_candidate(session, payload, company_id, rules, employees)
        except SchedulingError as exc:
            results.append({"index": index, "valid": False, "error": exc.to_dict()})
            continue
        persisted = persisted_context(session, candidate, rules)
        report = evaluate(
            candidate,
            [*persisted, *earlier],
            max_daily_hours=rules.get("max_daily_hours"),
            max_weekly_hours=rules.get("max_weekly_hours") if rules.get("enforce_weekly_cap") else None,
        )
        results.append({"index": index, "valid": True, **report.to_dict()})
        earlier.append(ShiftSlot.from_candidate(candidate, index))
    return {
        "has_conflicts": any(item.get("has_conflicts") or item.get("violations") for item in results),
        "results": results,
    }


# ---------------------------------------------------------------------------
# Resolver


def resolve_shift_batch(
    session,
    payloads: List[Dict[str, Any]],
    *,
    company_id: int,
    conflict_resolution: str = DEFAULT_STRATEGY,
    preview_only: bool = False,
    actor: str = "system",
    cache: Optional[TemplateCache] = None,
    rules: Optional[Dict[str, Any]] = None,
    operation: str = "bulk_create",
) -> BatchResult:
    if conflict_resolution not in STRATEGIES:
        raise InvalidRequestError(
            f"conflict_resolution must be one of {', '.join(STRATEGIES)}", value=conflict_resolution
        )
    rules = resolve_rules(session, company_id, rules)
    max_daily = rules.get("max_daily_hours")
    max_weekly = rules.get("max_weekly_hours") if rules.get("enforce_weekly_cap") else None

    result = BatchResult(preview_only=preview_only)
    employees: Dict[int, bool] = {}
    accepted: List[_Accepted] = []
    replaced: Set[int] = set()

    for index, payload in enumerate(payloads):
        try:
            candidate = normalize_candidate(session, payload, company_id, rules, employees)
        except SchedulingError as exc:
            result.failed.append(_failure(index, payload, "invalid", error=exc.to_dict()))
            continue

        persisted = [
            slot for slot in persisted_context(session, candidate, rules) if slot.shift_id not in replaced
        ]
        in_batch = [
            ShiftSlot.from_candidate(item.candidate, item.index)
            for item in accepted
            if item.candidate.employee_id == candidate.employee_id
        ]
        conflicts = detect_conflicts(candidate, [*persisted, *in_batch])

        replaces: Tuple[int, ...] = ()
        if conflicts:
            if conflict_resolution == FAIL:
                logger.warning(
                    "%s rejected: item %s overlaps %s shift(s) for employee %s on %s",
                    operation,
                    index,
                    len(conflicts),
                    candidate.employee_id,
                    format_date(candidate.shift_date),
                )
                raise OverlapConflictError(
                    [dict(conflict.to_dict(), index=index) for conflict in conflicts],
                    message=f"Item {index} overlaps existing shifts. Use conflict_resolution to handle them",
                )
            batch_conflicts = [conflict for conflict in conflicts if conflict.shift_id is None]
            if conflict_resolution == SKIP or batch_conflicts:
                result.failed.append(
                    _failure(
                        index,
                        candidate.to_dict(),
                        "conflict",
                        conflicts=[conflict.to_dict() for conflict in conflicts],
                    )
                )
                continue
            replaces = tuple(conflict.shift_id for conflict in conflicts)
            persisted = [slot for slot in persisted if slot.shift_id not in replaces]

        context = [*persisted, *in_batch]
        violation = check_daily_hours(candidate, context, max_daily)
        error_cls = DailyHourCapExceededError
        if violation is None:
            violation = check_weekly_hours(candidate, context, max_weekly)
            error_cls = WeeklyHourCapExceededError
        if violation is not None:
            if conflict_resolution == FAIL:
                logger.warning("%s rejected: item %s %s", operation, index, violation.message)
                raise error_cls([dict(violation.to_dict(), index=index)])
            result.failed.append(
                _failure(index, candidate.to_dict(), violation.kind, violations=[violation.to_dict()])
            )
            continue

        accepted.append(_Accepted(index=index, candidate=candidate))
        replaced.update(replaces)

    result.cancelled_shift_ids = sorted(replaced)
    if preview_only:
        result.succeeded = [dict(item.candidate.to_dict(), index=item.index) for item in accepted]
        return result

    if accepted:
        created = _persist(session, accepted, result.cancelled_shift_ids, company_id, actor, operation)
        result.succeeded = [
            dict(shift_to_dict(shift), index=item.index) for item, shift in zip(accepted, created)
        ]
        if cache is not None:
            for employee_id in sorted({item.candidate.employee_id for item in accepted}):
                cache.invalidate_patterns(company_id, employee_id)
    logger.info(
        "%s finished for company %s: %s created, %s failed, %s cancelled",
        operation,
        company_id,
        len(result.succeeded),
        len(result.failed),
        len(result.cancelled_shift_ids),
    )
    return result


def _persist(
    session,
    accepted: List[_Accepted],
    cancelled_ids: List[int],
    company_id: int,
    actor: str,
    operation: str,
) -> List[Shift]:
    created: List[Shift] = []
    try:
        if cancelled_ids:
            now = utcnow()
            for shift in session.scalars(select(Shift).where(Shift.id.in_(cancelled_ids))):
                shift.status = "cancelled"
                shift.deleted_at = now
            # Live-slot index must see the cancellations before the replacements land.
            session.flush()
        for item in accepted:
            candidate = item.candidate
            start, end = candidate.interval.as_strings()
            shift = Shift(
                company_id=company_id,
                employee_id=candidate.employee_id,
                location_id=candidate.location_id,
                position_id=candidate.position_id,
                shift_date=candidate.shift_date,
                start_time=to_time(start),
                end_time=to_time(end),
                notes=candidate.notes,
                status=candidate.status,
                assigned_by=actor,
            )
            session.add(shift)
            created.append(shift)
            touch_shift_pattern(session, candidate.employee_id, start, end)
        session.flush()
        record_audit_log(
            session,
            actor,
            operation,
            target_type="shift",
            company_id=company_id,
            old_values={"cancelled_shift_ids": cancelled_ids} if cancelled_ids else None,
            new_values={"count": len(created), "shift_ids": [shift.id for shift in created]},
            commit=False,
        )
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        logger.exception(
            "%s transaction failed for company %s (%s shifts, %s cancellations)",
            operation,
            company_id,
            len(accepted),
            len(cancelled_ids),
        )
        raise TransactionFailedError(f"Bulk shift {operation.replace('_', ' ')}") from None
    return created


# ---------------------------------------------------------------------------
# Helpers


def normalize_candidate(
    session,
    payload: Any,
    company_id: int,
    rules: Dict[str, Any],
    employees: Optional[Dict[int, bool]] = None,
) -> ShiftCandidate:
    """Parse a raw payload and check the employee belongs to the company; raises on any problem."""
    if employees is None:
        employees = {}
    try:
        candidate = ShiftCandidate.from_payload(payload)
    except SchedulingError:
        raise
    except ValueError as exc:
        raise InvalidRequestError(str(exc)) from None
    if candidate.interval.overnight and not rules.get("allow_overnight", True):
        raise InvalidRequestError("Overnight shifts are not allowed", start_time=str(candidate.interval.start))
    known = employees.get(candidate.employee_id)
    if known is None:
        known = get_employee(session, candidate.employee_id, company_id) is not None
        employees[candidate.employee_id] = known
    if not known:
        raise ResourceNotFoundError("Employee", candidate.employee_id)
    return candidate


def persisted_context(
    session,
    candidate: ShiftCandidate,
    rules: Dict[str, Any],
    *,
    exclude_ids: Iterable[int] = (),
) -> List[ShiftSlot]:
    """Live shifts the candidate has to be checked against: adjacent days, or its whole week."""
    day = candidate.shift_date
    dates = {day - ONE_DAY, day, day + ONE_DAY}
    if rules.get("enforce_weekly_cap") and rules.get("max_weekly_hours"):
        week_start, _week_end = week_bounds(day)
        dates.update(week_start + datetime.timedelta(days=offset) for offset in range(7))
    return [
        ShiftSlot.from_shift(shift)
        for shift in get_live_shifts(session, candidate.employee_id, dates, exclude_ids=exclude_ids)
    ]


def resolve_rules(session, company_id: int, rules: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if rules is not None:
        return rules
    return labor_rules(load_active_policy(session, company_id))


def _load_source_shifts(session, source_ids: List[Any], company_id: int) -> List[Shift]:
    try:
        wanted = [int(value) for value in source_ids]
    except (TypeError, ValueError):
        raise InvalidRequestError("source_shift_ids must be integers") from None
    rows = session.scalars(
        select(Shift).where(
            Shift.id.in_(wanted),
            Shift.company_id == company_id,
            Shift.deleted_at.is_(None),
        )
    )
    found = {shift.id: shift for shift in rows}
    for shift_id in wanted:
        if shift_id not in found:
            raise ResourceNotFoundError("Shift", shift_id)
    return [found[shift_id] for shift_id in dict.fromkeys(wanted)]


def _request_times(session, request: Dict[str, Any], company_id: int) -> Tuple[Any, Any]:
    template_id = request.get("template_id")
    if template_id is None:
        if request.get("start_time") is None or request.get("end_time") is None:
            raise InvalidRequestError("start_time and end_time, or template_id, are required")
        return request.get("start_time"), request.get("end_time")
    template = session.scalars(
        select(ShiftTemplate).where(
            ShiftTemplate.id == template_id,
            ShiftTemplate.company_id == company_id,
            ShiftTemplate.deleted_at.is_(None),
        )
    ).first()
    if template is None:
        raise ResourceNotFoundError("Shift template", template_id)
    return format_time(template.start_time), format_time(template.end_time)


def _as_request(request: Any) -> Dict[str, Any]:
    if not isinstance(request, dict):
        raise InvalidRequestError("request body must be an object")
    return request


def _strategy(request: Dict[str, Any]) -> str:
    value = request.get("conflict_resolution") or DEFAULT_STRATEGY
    if value not in STRATEGIES:
        raise InvalidRequestError(f"conflict_resolution must be one of {', '.join(STRATEGIES)}", value=value)
    return value


def _preview_flag(request: Dict[str, Any]) -> bool:
    value = request.get("preview_only")
    if value is None:
        return False
    if not isinstance(value, bool):
        raise InvalidRequestError("preview_only must be a boolean", value=value)
    return value


def _item_defaults(request: Dict[str, Any]) -> Dict[str, Any]:
    return {key: request[key] for key in ("location_id", "position_id", "notes", "status") if request.get(key) is not None}


def _merge(defaults: Dict[str, Any], item: Any) -> Any:
    if not isinstance(item, dict):
        return item
    return {**defaults, **item}


def _non_empty_list(request: Dict[str, Any], key: str) -> List[Any]:
    value = request.get(key)
    if not isinstance(value, list) or not value:
        raise InvalidRequestError(f"{key} must be a non-empty list")
    return value


def _failure(index: int, candidate: Any, reason: str, **details: Any) -> Dict[str, Any]:
    return {"index": index, "candidate": candidate, "reason": reason, **details}
