"""
Shared fixtures for the staffing rollup tests.

Dates are anchored on the week of Monday 2024-01-01.
"""
import itertools
from datetime import date

import pytest

import config
from config import RollupConfig
from infrastructure import InMemoryDatabase, InMemoryUnitOfWork
from model import Allocation, Calendar, DateRange, Holiday, Phase, Specifier


MONDAY = date(2024, 1, 1)
WEDNESDAY = date(2024, 1, 3)
FRIDAY = date(2024, 1, 5)
SATURDAY = date(2024, 1, 6)
SUNDAY = date(2024, 1, 7)

WORK_WEEK = DateRange(start=MONDAY, end=FRIDAY)


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch):
    """Make sure no ambient config file leaks into a test."""
    monkeypatch.delenv(config.CONFIG_ENV_VAR, raising=False)
    config.get_config.cache_clear()
    yield
    config.get_config.cache_clear()


@pytest.fixture
def rollup_config():
    return RollupConfig()


@pytest.fixture
def id_generator():
    """Deterministic ids: id-1, id-2, ..."""
    counter = itertools.count(1)
    return lambda: f"id-{next(counter)}"


@pytest.fixture
def db():
    return InMemoryDatabase()


@pytest.fixture
def uow(db):
    return InMemoryUnitOfWork(db)


@pytest.fixture
def wednesday_off_calendar():
    """Calendar with a full-day holiday on Wednesday of the anchor week."""
    return Calendar(
        id="cal-wed",
        name="Wednesday off",
        holidays=[Holiday(date=WEDNESDAY, name="Midweek", hours_off=8)],
    )


@pytest.fixture
def plain_calendar():
    return Calendar(id="cal-plain", name="No holidays")


@pytest.fixture
def staffed_phase(uow, wednesday_off_calendar):
    """
    The reference phase: one fully-rated specifier committing 16 hours and
    one specifier without a bill rate committing 10 hours.
    """
    consultant = Specifier(
        id="spec-1",
        name="Consultant",
        role="Senior",
        calendar=wednesday_off_calendar.id,
        allocations=[Allocation(percent=50)],
        billrate=100,
        costrate=60,
    )
    analyst = Specifier(
        id="spec-2",
        name="Analyst",
        role="Junior",
        calendar=wednesday_off_calendar.id,
        allocations=[Allocation(percent=31.25)],
        billrate=0,
        costrate=50,
    )
    phase = Phase(
        id="phase-1",
        name="Discovery",
        specifier_ids=[consultant.id, analyst.id],
        date_ranges=[WORK_WEEK],
    )
    uow.calendars.save(wednesday_off_calendar)
    uow.specifiers.save(consultant)
    uow.specifiers.save(analyst)
    uow.phases.save(phase)
    return phase
