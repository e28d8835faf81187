from __future__ import annotations

import datetime
import json
import os
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import (
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    create_engine,
    select,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, sessionmaker
from sqlalchemy.types import Time

from .time_utils import ShiftInterval, format_date, format_time, to_time


DATA_DIR = Path(__file__).resolve().parent / "data"
DATABASE_URL = os.environ.get(
    "SHIFT_PLANNER_DATABASE_URL",
    f"sqlite:///{(DATA_DIR / 'shift_planner.db').as_posix()}",
)
SHIFT_STATUS_CHOICES = {"draft", "confirmed", "cancelled"}
LIVE_SHIFT_CLAUSE = "deleted_at IS NULL AND status != 'cancelled'"


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class Base(DeclarativeBase):
    """Metadata for every table the scheduling engine touches."""

    pass


class Employee(Base):
    __tablename__ = "employees"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    full_name: Mapped[str] = mapped_column(String(120), nullable=False)
    status: Mapped[str] = mapped_column(String(12), default="active", nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    deleted_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    shifts: Mapped[List["Shift"]] = relationship(back_populates="employee")
    patterns: Mapped[List["EmployeeShiftPattern"]] = relationship(
        back_populates="employee", cascade="all, delete-orphan"
    )


class Shift(Base):
    __tablename__ = "shifts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[int] = mapped_column(Integer, nullable=False)
    employee_id: Mapped[int] = mapped_column(ForeignKey("employees.id"), nullable=False)
    location_id: Mapped[int] = mapped_column(Integer, nullable=False)
    position_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    shift_date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    start_time: Mapped[datetime.time] = mapped_column(Time, nullable=False)
    end_time: Mapped[datetime.time] = mapped_column(Time, nullable=False)
    notes: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="draft")
    assigned_by: Mapped[str | None] = mapped_column(String(60), nullable=True)
    confirmed_by: Mapped[str | None] = mapped_column(String(60), nullable=True)
    confirmed_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )
    deleted_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    employee: Mapped[Employee] = relationship(back_populates="shifts")

    __table_args__ = (
        Index("ix_shifts_employee_date", "employee_id", "shift_date"),
        # Commit-time backstop against two writers inserting the same live shift.
        Index(
            "uq_shifts_live_slot",
            "employee_id",
            "shift_date",
            "start_time",
            "end_time",
            unique=True,
            sqlite_where=text(LIVE_SHIFT_CLAUSE),
            postgresql_where=text(LIVE_SHIFT_CLAUSE),
        ),
    )

    @property
    def interval(self) -> ShiftInterval:
        return ShiftInterval.parse(self.start_time, self.end_time)

    @property
    def is_live(self) -> bool:
        return self.deleted_at is None and self.status != "cancelled"


class ShiftTemplate(Base):
    """Named reusable start/end pair offered when creating shifts in bulk."""

    __tablename__ = "shift_templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    start_time: Mapped[datetime.time] = mapped_column(Time, nullable=False)
    end_time: Mapped[datetime.time] = mapped_column(Time, nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    deleted_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (UniqueConstraint("company_id", "name", name="uq_shift_template_company_name"),)


class SchedulingTemplate(Base):
    __tablename__ = "scheduling_templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    location_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    patternJSON: Mapped[str] = mapped_column(String(8000), nullable=False, default="{}")
    is_active: Mapped[bool] = mapped_column(Integer, nullable=False, default=1)
    created_by: Mapped[str | None] = mapped_column(String(60), nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )
    deleted_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (UniqueConstraint("company_id", "name", name="uq_scheduling_template_company_name"),)

    def pattern_dict(self) -> Dict[str, Any]:
        try:
            value = json.loads(self.patternJSON or "{}")
        except json.JSONDecodeError:
            return {}
        return value if isinstance(value, dict) else {}


class SchedulingBatch(Base):
    __tablename__ = "scheduling_batches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    location_id: Mapped[int] = mapped_column(Integer, nullable=False)
    template_id: Mapped[int | None] = mapped_column(ForeignKey("scheduling_templates.id"), nullable=True)
    start_date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    end_date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="draft")
    created_by: Mapped[str | None] = mapped_column(String(60), nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    deleted_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    requirements: Mapped[List["ShiftRequirement"]] = relationship(back_populates="batch")


class ShiftRequirement(Base):
    __tablename__ = "shift_requirements"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[int] = mapped_column(Integer, nullable=False)
    location_id: Mapped[int] = mapped_column(Integer, nullable=False)
    department_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    batch_id: Mapped[int | None] = mapped_column(ForeignKey("scheduling_batches.id"), nullable=True)
    shift_date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    start_time: Mapped[datetime.time] = mapped_column(Time, nullable=False)
    end_time: Mapped[datetime.time] = mapped_column(Time, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="open")
    notes: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    deleted_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    batch: Mapped[Optional[SchedulingBatch]] = relationship(back_populates="requirements")
    positions: Mapped[List["RequirementPosition"]] = relationship(
        back_populates="requirement", cascade="all, delete-orphan"
    )

    __table_args__ = (Index("ix_shift_requirements_location_date", "location_id", "shift_date"),)


class RequirementPosition(Base):
    __tablename__ = "shift_requirement_positions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    requirement_id: Mapped[int] = mapped_column(
        ForeignKey("shift_requirements.id", ondelete="CASCADE"), nullable=False
    )
    job_position_id: Mapped[int] = mapped_column(Integer, nullable=False)
    required_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    filled_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    requirement: Mapped[ShiftRequirement] = relationship(back_populates="positions")


class EmployeeShiftPattern(Base):
    __tablename__ = "employee_shift_patterns"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    employee_id: Mapped[int] = mapped_column(ForeignKey("employees.id", ondelete="CASCADE"), nullable=False)
    start_time: Mapped[datetime.time] = mapped_column(Time, nullable=False)
    end_time: Mapped[datetime.time] = mapped_column(Time, nullable=False)
    frequency_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_used: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    employee: Mapped[Employee] = relationship(back_populates="patterns")

    __table_args__ = (
        UniqueConstraint("employee_id", "start_time", "end_time", name="uq_employee_shift_pattern"),
    )


class Policy(Base):
    __tablename__ = "policies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    paramsJSON: Mapped[str] = mapped_column(String(8000), nullable=False, default="{}")
    lastEditedBy: Mapped[str] = mapped_column(String(60), nullable=False, default="system")
    lastEditedAt: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (UniqueConstraint("company_id", "name", name="uq_policies_company_name"),)

    def params_dict(self) -> Dict:
        try:
            value = json.loads(self.paramsJSON or "{}")
            if isinstance(value, dict):
                return value
        except json.JSONDecodeError:
            pass
        return {}


class AuditLog(Base):
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    user_id: Mapped[str] = mapped_column(String(60), nullable=False)
    action: Mapped[str] = mapped_column(String(60), nullable=False)
    target_type: Mapped[str] = mapped_column(String(48), nullable=False, default="shift")
    target_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    oldValuesJSON: Mapped[str] = mapped_column(String(8000), nullable=False, default="{}")
    newValuesJSON: Mapped[str] = mapped_column(String(8000), nullable=False, default="{}")
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


engine = create_engine(DATABASE_URL, echo=False, future=True)
SessionLocal = sessionmaker(bind=engine, expire_on_commit=False, future=True)


def init_database(bind=None) -> None:
    target = bind if bind is not None else engine
    if target is engine and DATABASE_URL.startswith("sqlite:///"):
        DATA_DIR.mkdir(parents=True, exist_ok=True)
    Base.metadata.create_all(target)


def get_policies(session, company_id: Optional[int] = None) -> List[Policy]:
    stmt = select(Policy).where(Policy.company_id == company_id).order_by(Policy.name.asc(), Policy.id.asc())
    return list(session.scalars(stmt))


def upsert_policy(
    session,
    name: str,
    params_dict: Dict,
    *,
    company_id: Optional[int] = None,
    edited_by: str = "system",
) -> Policy:
    existing: Optional[Policy] = session.execute(
        select(Policy).where(Policy.name == name, Policy.company_id == company_id)
    ).scalars().first()
    payload = params_dict if isinstance(params_dict, dict) else {}
    if existing:
        existing.paramsJSON = json.dumps(payload)
        existing.lastEditedBy = edited_by
        existing.lastEditedAt = utcnow()
        session.commit()
        session.refresh(existing)
        return existing
    policy = Policy(
        company_id=company_id,
        name=name,
        paramsJSON=json.dumps(payload),
        lastEditedBy=edited_by,
        lastEditedAt=utcnow(),
    )
    session.add(policy)
    session.commit()
    session.refresh(policy)
    return policy


def get_active_policy(session, company_id: Optional[int] = None) -> Optional[Policy]:
    """Return the most recently edited policy for the company, falling back to the global one."""
    if company_id is not None:
        stmt = (
            select(Policy)
            .where(Policy.company_id == company_id)
            .order_by(Policy.lastEditedAt.desc(), Policy.id.desc())
        )
        policy = session.scalars(stmt).first()
        if policy:
            return policy
    stmt = select(Policy).where(Policy.company_id.is_(None)).order_by(Policy.lastEditedAt.desc(), Policy.id.desc())
    return session.scalars(stmt).first()


def get_employee(session, employee_id: int, company_id: int) -> Optional[Employee]:
    stmt = select(Employee).where(
        Employee.id == employee_id,
        Employee.company_id == company_id,
        Employee.deleted_at.is_(None),
    )
    return session.scalars(stmt).first()


def get_shift(session, shift_id: int, company_id: int) -> Optional[Shift]:
    stmt = select(Shift).where(
        Shift.id == shift_id,
        Shift.company_id == company_id,
        Shift.deleted_at.is_(None),
    )
    return session.scalars(stmt).first()


def get_live_shifts(
    session,
    employee_id: int,
    dates: Iterable[datetime.date],
    *,
    exclude_ids: Iterable[int] = (),
) -> List[Shift]:
    """Non-cancelled, non-deleted shifts of one employee on any of ``dates``."""
    date_values = sorted(set(dates))
    if not date_values:
        return []
    stmt = (
        select(Shift)
        .where(
            Shift.employee_id == employee_id,
            Shift.shift_date.in_(date_values),
            Shift.deleted_at.is_(None),
            Shift.status != "cancelled",
        )
        .order_by(Shift.shift_date, Shift.start_time, Shift.id)
    )
    excluded = set(exclude_ids)
    if excluded:
        stmt = stmt.where(Shift.id.not_in(excluded))
    return list(session.scalars(stmt))


def shift_to_dict(shift: Shift) -> Dict[str, Any]:
    return {
        "id": shift.id,
        "company_id": shift.company_id,
        "employee_id": shift.employee_id,
        "location_id": shift.location_id,
        "position_id": shift.position_id,
        "shift_date": format_date(shift.shift_date),
        "start_time": format_time(shift.start_time),
        "end_time": format_time(shift.end_time),
        "notes": shift.notes,
        "status": shift.status,
        "deleted_at": shift.deleted_at.isoformat() if shift.deleted_at else None,
    }


def requirement_to_dict(requirement: ShiftRequirement) -> Dict[str, Any]:
    return {
        "id": requirement.id,
        "batch_id": requirement.batch_id,
        "location_id": requirement.location_id,
        "department_id": requirement.department_id,
        "shift_date": format_date(requirement.shift_date),
        "start_time": format_time(requirement.start_time),
        "end_time": format_time(requirement.end_time),
        "status": requirement.status,
        "positions": [
            {
                "job_position_id": position.job_position_id,
                "required_count": position.required_count,
                "filled_count": position.filled_count,
            }
            for position in requirement.positions
        ],
    }


def touch_shift_pattern(session, employee_id: int, start_time: str, end_time: str) -> EmployeeShiftPattern:
    """Count one more use of the employee's ``start_time``-``end_time`` pair."""
    start_value = to_time(start_time)
    end_value = to_time(end_time)
    stmt = select(EmployeeShiftPattern).where(
        EmployeeShiftPattern.employee_id == employee_id,
        EmployeeShiftPattern.start_time == start_value,
        EmployeeShiftPattern.end_time == end_value,
    )
    pattern = session.scalars(stmt).first()
    if pattern is None:
        pattern = EmployeeShiftPattern(
            employee_id=employee_id,
            start_time=start_value,
            end_time=end_value,
            frequency_count=0,
        )
        session.add(pattern)
    pattern.frequency_count = (pattern.frequency_count or 0) + 1
    pattern.last_used = utcnow()
    session.flush()
    return pattern


def record_audit_log(
    session,
    user_id: str,
    action: str,
    target_type: str = "shift",
    target_id: Optional[int] = None,
    *,
    company_id: Optional[int] = None,
    old_values: Optional[Dict[str, Any]] = None,
    new_values: Optional[Dict[str, Any]] = None,
    commit: bool = True,
) -> AuditLog:
    log = AuditLog(
        company_id=company_id,
        user_id=user_id,
        action=action,
        target_type=target_type,
        target_id=target_id,
        oldValuesJSON=json.dumps(old_values or {}, default=str),
        newValuesJSON=json.dumps(new_values or {}, default=str),
    )
    session.add(log)
    if commit:
        session.commit()
    return log
