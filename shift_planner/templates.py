"""Scheduling and shift template catalogue.

Reads of the scheduling-template listing go through the ``templates`` cache
keyspace.  Every write here invalidates that company's template entries
before returning, so a caller never reads back a listing older than its own
write.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from .cache import TemplateCache, TemplateFilter
from .database import (
    SchedulingBatch,
    SchedulingTemplate,
    ShiftTemplate,
    record_audit_log,
    utcnow,
)
from .errors import EmptyDateRangeError, InvalidRequestError, ResourceNotFoundError, TransactionFailedError
from .generator.expansion import serialize_day_pattern, validate_day_pattern
from .time_utils import ShiftInterval, as_date, format_date, format_time, to_time

logger = logging.getLogger(__name__)


def scheduling_template_to_dict(template: SchedulingTemplate) -> Dict[str, Any]:
    return {
        "id": template.id,
        "company_id": template.company_id,
        "location_id": template.location_id,
        "name": template.name,
        "description": template.description,
        "days_pattern": template.pattern_dict(),
        "is_active": bool(template.is_active),
    }


def shift_template_to_dict(template: ShiftTemplate) -> Dict[str, Any]:
    return {
        "id": template.id,
        "company_id": template.company_id,
        "name": template.name,
        "description": template.description,
        "start_time": format_time(template.start_time),
        "end_time": format_time(template.end_time),
    }


def batch_to_dict(batch: SchedulingBatch) -> Dict[str, Any]:
    return {
        "id": batch.id,
        "company_id": batch.company_id,
        "location_id": batch.location_id,
        "template_id": batch.template_id,
        "start_date": format_date(batch.start_date),
        "end_date": format_date(batch.end_date),
        "status": batch.status,
    }


def list_scheduling_templates(
    session,
    company_id: int,
    filters: Optional[TemplateFilter] = None,
    *,
    cache: Optional[TemplateCache] = None,
) -> List[Dict[str, Any]]:
    generation = None
    if cache is not None:
        cached = cache.get_templates(company_id, filters)
        if cached is not None:
            return cached
        generation = cache.template_generation(company_id)
    stmt = select(SchedulingTemplate).where(
        SchedulingTemplate.company_id == company_id,
        SchedulingTemplate.deleted_at.is_(None),
    )
    if filters is not None:
        if filters.location_id is not None:
            stmt = stmt.where(SchedulingTemplate.location_id == filters.location_id)
        if filters.is_active is not None:
            stmt = stmt.where(SchedulingTemplate.is_active == int(filters.is_active))
        if filters.search:
            stmt = stmt.where(SchedulingTemplate.name.ilike(f"%{filters.search.strip()}%"))
    rows = session.scalars(stmt.order_by(SchedulingTemplate.name.asc(), SchedulingTemplate.id.asc()))
    templates = [scheduling_template_to_dict(row) for row in rows]
    if cache is not None:
        cache.set_templates(company_id, templates, filters, generation=generation)
    return templates


def create_scheduling_template(
    session,
    payload: Dict[str, Any],
    *,
    company_id: int,
    actor: str = "system",
    cache: Optional[TemplateCache] = None,
) -> Dict[str, Any]:
    name = _required_name(payload)
    days = validate_day_pattern(payload.get("days_pattern"))
    _ensure_unique_name(session, SchedulingTemplate, company_id, name)
    template = SchedulingTemplate(
        company_id=company_id,
        location_id=payload.get("location_id"),
        name=name,
        description=str(payload.get("description") or ""),
        patternJSON=json.dumps(serialize_day_pattern(days)),
        is_active=1 if payload.get("is_active", True) else 0,
        created_by=actor,
    )
    session.add(template)
    _commit(session, actor, "create", "scheduling_template", template, company_id, cache)
    return scheduling_template_to_dict(template)


def update_scheduling_template(
    session,
    template_id: int,
    payload: Dict[str, Any],
    *,
    company_id: int,
    actor: str = "system",
    cache: Optional[TemplateCache] = None,
) -> Dict[str, Any]:
    template = _require_scheduling_template(session, template_id, company_id)
    old_values = scheduling_template_to_dict(template)
    if "days_pattern" in payload:
        days = validate_day_pattern(payload.get("days_pattern"))
        template.patternJSON = json.dumps(serialize_day_pattern(days))
    if "name" in payload:
        name = _required_name(payload)
        if name != template.name:
            _ensure_unique_name(session, SchedulingTemplate, company_id, name)
        template.name = name
    if "description" in payload:
        template.description = str(payload.get("description") or "")
    if "location_id" in payload:
        template.location_id = payload.get("location_id")
    if "is_active" in payload:
        template.is_active = 1 if payload.get("is_active") else 0
    _commit(session, actor, "update", "scheduling_template", template, company_id, cache, old_values)
    return scheduling_template_to_dict(template)


def delete_scheduling_template(
    session,
    template_id: int,
    *,
    company_id: int,
    actor: str = "system",
    cache: Optional[TemplateCache] = None,
) -> Dict[str, Any]:
    template = _require_scheduling_template(session, template_id, company_id)
    old_values = scheduling_template_to_dict(template)
    template.deleted_at = utcnow()
    _commit(session, actor, "delete", "scheduling_template", template, company_id, cache, old_values)
    return {"id": template_id, "deleted": True}


def create_shift_template(
    session,
    payload: Dict[str, Any],
    *,
    company_id: int,
    actor: str = "system",
    cache: Optional[TemplateCache] = None,
) -> Dict[str, Any]:
    name = _required_name(payload)
    interval = ShiftInterval.parse(payload.get("start_time"), payload.get("end_time"))
    _ensure_unique_name(session, ShiftTemplate, company_id, name)
    start, end = interval.as_strings()
    template = ShiftTemplate(
        company_id=company_id,
        name=name,
        description=str(payload.get("description") or ""),
        start_time=to_time(start),
        end_time=to_time(end),
    )
    session.add(template)
    _commit(session, actor, "create", "shift_template", template, company_id, cache)
    return shift_template_to_dict(template)


def create_scheduling_batch(
    session,
    payload: Dict[str, Any],
    *,
    company_id: int,
    actor: str = "system",
) -> Dict[str, Any]:
    start_date = as_date(payload.get("start_date"), field="start_date")
    end_date = as_date(payload.get("end_date"), field="end_date")
    if end_date < start_date:
        raise EmptyDateRangeError(start_date, end_date)
    location_id = payload.get("location_id")
    if location_id is None:
        raise InvalidRequestError("location_id is required")
    template_id = payload.get("template_id")
    if template_id is not None:
        _require_scheduling_template(session, template_id, company_id)
    batch = SchedulingBatch(
        company_id=company_id,
        location_id=int(location_id),
        template_id=template_id,
        start_date=start_date,
        end_date=end_date,
        status="draft",
        created_by=actor,
    )
    session.add(batch)
    _commit(session, actor, "create", "scheduling_batch", batch, company_id, None)
    return batch_to_dict(batch)


def _commit(
    session,
    actor: str,
    action: str,
    target_type: str,
    target,
    company_id: int,
    cache: Optional[TemplateCache],
    old_values: Optional[Dict[str, Any]] = None,
) -> None:
    try:
        session.flush()
        record_audit_log(
            session,
            actor,
            action,
            target_type=target_type,
            target_id=target.id,
            company_id=company_id,
            old_values=old_values,
            new_values={"id": target.id, "name": getattr(target, "name", None)},
            commit=False,
        )
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        logger.exception("%s %s failed for company %s", target_type, action, company_id)
        raise TransactionFailedError(f"{target_type.replace('_', ' ')} {action}") from None
    if cache is not None:
        cache.invalidate_templates(company_id)


def _require_scheduling_template(session, template_id: int, company_id: int) -> SchedulingTemplate:
    template = session.scalars(
        select(SchedulingTemplate).where(
            SchedulingTemplate.id == template_id,
            SchedulingTemplate.company_id == company_id,
            SchedulingTemplate.deleted_at.is_(None),
        )
    ).first()
    if template is None:
        raise ResourceNotFoundError("Scheduling template", template_id)
    return template


def _ensure_unique_name(session, model, company_id: int, name: str) -> None:
    existing = session.scalars(
        select(model.id).where(model.company_id == company_id, model.name == name)
    ).first()
    if existing is not None:
        raise InvalidRequestError(f"A template named {name!r} already exists", name=name)


def _required_name(payload: Dict[str, Any]) -> str:
    name = str(payload.get("name") or "").strip()
    if not name:
        raise InvalidRequestError("name is required")
    return name
