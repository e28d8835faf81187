from __future__ import annotations

import json
import logging
from typing import Any, Dict

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from .expansion import expand_day_pattern
from ..database import (
    RequirementPosition,
    SchedulingBatch,
    SchedulingTemplate,
    ShiftRequirement,
    record_audit_log,
    requirement_to_dict,
)
from ..errors import InvalidTemplatePatternError, ResourceNotFoundError, TransactionFailedError
from ..time_utils import to_time

logger = logging.getLogger(__name__)


def apply_template_to_batch(
    session,
    batch_id: int,
    template_id: int,
    *,
    company_id: int,
    actor: str,
) -> Dict[str, Any]:
    """Create one open requirement per pattern shift on every matching batch date.

    Nothing is written unless the whole template pattern is valid; the rows and
    the audit entry commit together.
    """
    batch = session.scalars(
        select(SchedulingBatch).where(
            SchedulingBatch.id == batch_id,
            SchedulingBatch.company_id == company_id,
            SchedulingBatch.deleted_at.is_(None),
        )
    ).first()
    if batch is None:
        raise ResourceNotFoundError("Scheduling batch", batch_id)
    template = session.scalars(
        select(SchedulingTemplate).where(
            SchedulingTemplate.id == template_id,
            SchedulingTemplate.company_id == company_id,
            SchedulingTemplate.deleted_at.is_(None),
        )
    ).first()
    if template is None:
        raise ResourceNotFoundError("Scheduling template", template_id)
    try:
        pattern = json.loads(template.patternJSON or "{}")
    except json.JSONDecodeError:
        raise InvalidTemplatePatternError("stored pattern is not valid JSON", template_id=template_id) from None

    drafts = expand_day_pattern(batch.start_date, batch.end_date, pattern)

    created = []
    try:
        for draft in drafts:
            start, end = draft.interval.as_strings()
            requirement = ShiftRequirement(
                company_id=company_id,
                location_id=batch.location_id,
                department_id=draft.department_id,
                batch_id=batch.id,
                shift_date=draft.shift_date,
                start_time=to_time(start),
                end_time=to_time(end),
                status="open",
                notes=f"Created from template: {template.name}",
            )
            requirement.positions = [
                RequirementPosition(
                    job_position_id=need.job_position_id,
                    required_count=need.required_count,
                    filled_count=0,
                )
                for need in draft.positions
            ]
            session.add(requirement)
            created.append(requirement)
        batch.template_id = template.id
        session.flush()
        record_audit_log(
            session,
            actor,
            "apply_template",
            target_type="scheduling_batch",
            target_id=batch.id,
            company_id=company_id,
            new_values={
                "batch_id": batch.id,
                "template_id": template.id,
                "created_requirements": len(created),
            },
            commit=False,
        )
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        logger.exception(
            "Applying template %s to batch %s failed (company %s, %s requirements pending)",
            template_id,
            batch_id,
            company_id,
            len(created),
        )
        raise TransactionFailedError("Apply scheduling template to batch") from None

    logger.info(
        "Applied template %s to batch %s: %s requirements created", template.id, batch.id, len(created)
    )
    return {
        "created_requirements": len(created),
        "requirements": [requirement_to_dict(requirement) for requirement in created],
    }
