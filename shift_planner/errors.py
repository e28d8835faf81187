from __future__ import annotations

from typing import Any, Dict, List, Optional


class SchedulingError(Exception):
    """Base class for every error the scheduling engine raises on purpose."""

    code = "SCHEDULING_ERROR"
    status_code = 400

    def __init__(self, message: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.metadata: Dict[str, Any] = dict(metadata or {})

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.metadata:
            payload["metadata"] = self.metadata
        return payload


class InvalidTimeFormatError(SchedulingError, ValueError):
    code = "INVALID_TIME_FORMAT"

    def __init__(self, value: Any, field: Optional[str] = None) -> None:
        label = f" for {field}" if field else ""
        super().__init__(
            f"Invalid time format{label}: {value!r}. Expected HH:mm without timezone (e.g. \"14:30\")",
            {"field": field, "value": value},
        )


class InvalidDateFormatError(SchedulingError, ValueError):
    code = "INVALID_DATE_FORMAT"

    def __init__(self, value: Any, field: Optional[str] = None) -> None:
        label = f" for {field}" if field else ""
        super().__init__(
            f"Invalid date format{label}: {value!r}. Expected YYYY-MM-DD (e.g. \"2025-10-26\")",
            {"field": field, "value": value},
        )


class EmptyDateRangeError(SchedulingError, ValueError):
    code = "EMPTY_DATE_RANGE"

    def __init__(self, start_date: Any, end_date: Any) -> None:
        super().__init__(
            f"End date {end_date} is before start date {start_date}",
            {"start_date": str(start_date), "end_date": str(end_date)},
        )


class InvalidTemplatePatternError(SchedulingError, ValueError):
    code = "INVALID_TEMPLATE_PATTERN"

    def __init__(self, reason: str, **details: Any) -> None:
        super().__init__(f"Invalid days pattern: {reason}", details)


class OverlapConflictError(SchedulingError):
    code = "SHIFT_OVERLAP"
    status_code = 409

    def __init__(self, conflicts: List[Dict[str, Any]], message: Optional[str] = None) -> None:
        super().__init__(
            message or "Shift overlaps with existing shifts",
            {"conflict_count": len(conflicts), "conflicts": conflicts},
        )
        self.conflicts = conflicts


class DailyHourCapExceededError(SchedulingError):
    code = "DAILY_HOUR_CAP_EXCEEDED"
    status_code = 422

    def __init__(self, violations: List[Dict[str, Any]]) -> None:
        first = violations[0] if violations else {}
        super().__init__(
            first.get("message") or "Working hours would exceed the configured maximum",
            {"violations": violations},
        )
        self.violations = violations


class ResourceNotFoundError(SchedulingError, LookupError):
    code = "RESOURCE_NOT_FOUND"
    status_code = 404

    def __init__(self, resource: str, identifier: Any) -> None:
        super().__init__(f"{resource} {identifier} not found", {"resource": resource, "id": identifier})


class TransactionFailedError(SchedulingError):
    code = "TRANSACTION_FAILED"
    status_code = 500

    def __init__(self, operation: str) -> None:
        super().__init__(f"Transaction failed: {operation}", {"operation": operation})


class WeeklyHourCapExceededError(DailyHourCapExceededError):
    code = "WEEKLY_HOUR_CAP_EXCEEDED"


class InvalidRequestError(SchedulingError, ValueError):
    code = "INVALID_REQUEST"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message, details)
