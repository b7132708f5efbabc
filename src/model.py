"""
model.py

Domain models for the Staffing Rollup system.

Entities
--------
- Project
- Scenario
- Phase
- Specifier
- Allocation
- Calendar
- Holiday
- DateRange
- WorkHoursByCalendar

Rollup results
--------------
- ScenarioRollup
- ProjectRollup
- RateAggregate
- FinancialSummary

All models use Python dataclasses for clean, framework-agnostic definitions.
Identifiers are opaque strings produced by an injectable generator; cross-entity
links (project → phase, phase → specifier, specifier → calendar) are stored as
ids and resolved through an entity store, never as embedded objects.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Callable, List, Optional


IdGenerator = Callable[[], str]


def new_id() -> str:
    """Default identifier generator: a random UUID4 rendered as a string."""
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class EntityKind(str, Enum):
    """Kinds of entity addressable through the shared entity store."""
    PROJECT = "project"
    SCENARIO = "scenario"
    PHASE = "phase"
    SPECIFIER = "specifier"
    CALENDAR = "calendar"


# ---------------------------------------------------------------------------
# Calendar Entities
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DateRange:
    """An inclusive span of calendar dates."""
    start: date
    end: date

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end

    def overlaps(self, other: "DateRange") -> bool:
        return self.start <= other.end and other.start <= self.end


@dataclass
class Holiday:
    date: date
    name: str = ""
    hours_off: float = 0.0


@dataclass
class Calendar:
    """
    A named working calendar and its holidays.

    The working-hours baseline (e.g. 8 hours per weekday) is configuration,
    not calendar data; see config.RollupConfig.
    """
    id: str = field(default_factory=new_id)
    name: str = ""
    holidays: List[Holiday] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Staffing Entities
# ---------------------------------------------------------------------------


@dataclass
class Allocation:
    """
    A specifier's commitment to a phase date range.

    percent   – 0–100, fraction of the calendar's available hours.
    daily     – hours per working day.
    weekly    – hours per working week.
    monthly   – hours per working month.
    yearly    – hours per working year.
    extra     – ad-hoc additional hours (overtime), added on top of the base.

    By convention only one base unit is set; when percent is non-zero it wins
    and the absolute units are ignored.
    """
    percent: float = 0.0
    daily: float = 0.0
    weekly: float = 0.0
    monthly: float = 0.0
    yearly: float = 0.0
    extra: float = 0.0


@dataclass
class Specifier:
    """
    A staffed role on a phase.

    `allocations` holds either one entry per phase date range (paired by
    position) or a single global allocation applied to every range.
    A bill or cost rate of zero, negative or None counts as missing.
    """
    id: str = field(default_factory=new_id)
    name: str = ""
    role: str = ""
    calendar: str = ""                  # FK → Calendar.id
    allocations: List[Allocation] = field(default_factory=list)
    billrate: Optional[float] = 0.0
    costrate: Optional[float] = 0.0


@dataclass(frozen=True)
class WorkHoursByCalendar:
    calendar_id: str
    total_hours: float = 0.0


@dataclass
class Phase:
    """
    A time-bounded body of work staffed by specifiers.

    Everything below `date_ranges` is derived and written exclusively by the
    rollup engine, which returns a new Phase rather than mutating this one.
    """
    id: str = field(default_factory=new_id)
    name: str = ""
    specifier_ids: List[str] = field(default_factory=list)     # FK → Specifier.id
    date_ranges: List[DateRange] = field(default_factory=list)

    # Derived
    bill_rate_blended: float = 0.0
    cost_rate_blended: float = 0.0
    margin_percent: float = 0.0
    work_hours_by_calendar: List[WorkHoursByCalendar] = field(default_factory=list)
    work_hour_totals: float = 0.0
    bill_total: float = 0.0
    cost_total: float = 0.0
    profit_total: float = 0.0
    missing_rates: List[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Project Entities
# ---------------------------------------------------------------------------


@dataclass
class Scenario:
    """An alternative staffing plan for a project: an ordered set of phases."""
    id: str = field(default_factory=new_id)
    name: str = ""
    phase_ids: List[str] = field(default_factory=list)         # FK → Phase.id


@dataclass
class Project:
    """
    Top-level container.

    A project may reference phases directly, through scenarios, or both;
    scenarios are an optional intermediate layer.
    """
    id: str = field(default_factory=new_id)
    name: str = ""
    phase_ids: List[str] = field(default_factory=list)         # FK → Phase.id
    scenario_ids: List[str] = field(default_factory=list)      # FK → Scenario.id
    author_ids: List[str] = field(default_factory=list)
    stage_id: str = ""


# ---------------------------------------------------------------------------
# Rollup Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RateAggregate:
    """Hours-weighted blended rates over specifiers with usable rates."""
    bill_rate_blended: float = 0.0
    cost_rate_blended: float = 0.0
    missing_rates: List[str] = field(default_factory=list)


@dataclass
class ScenarioRollup:
    scenario_id: str
    phases: List[Phase] = field(default_factory=list)


@dataclass
class ProjectRollup:
    """
    Rolled-up phases of a project in reference order: direct phases first,
    then each scenario's phases. `scenarios` keeps the per-scenario grouping.
    """
    project_id: str
    phases: List[Phase] = field(default_factory=list)
    scenarios: List[ScenarioRollup] = field(default_factory=list)


@dataclass(frozen=True)
class FinancialSummary:
    """Totals over a set of rolled-up phases. Reporting only."""
    phase_count: int = 0
    work_hour_totals: float = 0.0
    bill_total: float = 0.0
    cost_total: float = 0.0
    profit_total: float = 0.0
    margin_percent: float = 0.0
    missing_rates: List[str] = field(default_factory=list)
