from __future__ import annotations

import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from shift_planner.database import Base, Employee, Shift
from shift_planner.time_utils import to_time

COMPANY_ID = 1


def memory_engine():
    return create_engine(
        "sqlite://",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )


@pytest.fixture
def session_factory():
    engine = memory_engine()
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, expire_on_commit=False, future=True)
    yield factory
    engine.dispose()


@pytest.fixture
def session(session_factory):
    with session_factory() as session:
        yield session


@pytest.fixture
def add_employee(session):
    def _add(name: str = "Alex Rivera", company_id: int = COMPANY_ID) -> Employee:
        employee = Employee(company_id=company_id, full_name=name)
        session.add(employee)
        session.commit()
        return employee

    return _add


@pytest.fixture
def add_shift(session):
    def _add(employee: Employee, day: str, start: str, end: str, **extra) -> Shift:
        shift = Shift(
            company_id=employee.company_id,
            employee_id=employee.id,
            location_id=extra.pop("location_id", 10),
            shift_date=datetime.date.fromisoformat(day),
            start_time=to_time(start),
            end_time=to_time(end),
            **extra,
        )
        session.add(shift)
        session.commit()
        return shift

    return _add
