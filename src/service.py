"""
service.py

Service layer for the Staffing Rollup system.

Responsibilities
----------------
Each service class encapsulates the business logic for its part of the
domain.  Services receive and return domain model instances (from model.py).
No persistence is handled here; entities referenced by id are resolved
through an entity store passed in by the caller.

Services
--------
- ProjectService      – Project / Scenario construction and phase wiring
- PhaseService        – Phase construction, date-range validation, staffing
- SpecifierService    – Specifier and Allocation construction
- CalendarService     – Calendar construction and available working hours
- AllocationService   – Allocation normalisation into committed hours
- RateService         – Hours-weighted blended rates and missing-rate detection
- RollupService       – Phase / Scenario / Project financial rollups

Design notes
------------
- Rollups are pure: rollup_phase returns a new Phase and never writes to the
  one it was given, so phases may be rolled up concurrently.
- A rollup is all-or-nothing.  Every reference is resolved before any
  derived value is computed, and results only reach the caller on success.
- Business rule violations raise a RollupError subclass.  Invalid ranges,
  allocations and duplicate references are also ValueErrors; dangling ids
  are also LookupErrors.
- Division by a zero weight or zero bill total yields 0 and is never raised.
"""

from __future__ import annotations

import dataclasses
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import date
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Union

from config import RollupConfig, get_config
from model import (
    Allocation,
    Calendar,
    DateRange,
    EntityKind,
    FinancialSummary,
    Holiday,
    IdGenerator,
    Phase,
    Project,
    ProjectRollup,
    RateAggregate,
    Scenario,
    ScenarioRollup,
    Specifier,
    WorkHoursByCalendar,
    new_id,
)

logger = logging.getLogger(__name__)

# Allocation units expressed in hours per period; scaled by working days.
ABSOLUTE_UNITS = ("daily", "weekly", "monthly", "yearly")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class RollupError(Exception):
    """Base class for errors raised while computing staffing financials."""


class InvalidRangeError(RollupError, ValueError):
    """Raised when a date range starts after it ends, or phase ranges overlap."""


class InvalidAllocationError(RollupError, ValueError):
    """Raised when an allocation unit is out of bounds or cannot be paired."""


class DuplicateReferenceError(RollupError, ValueError):
    """Raised when a phase lists the same specifier more than once."""


class ReferenceNotFoundError(RollupError, LookupError):
    """Raised when an id does not resolve in the entity store."""

    def __init__(self, kind: EntityKind, entity_id: str):
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(f"{kind.value.capitalize()} {entity_id!r} not found.")


class EntityLookup(Protocol):
    """Read-only store contract: get(kind, id) returns the entity or None."""

    def get(self, kind: EntityKind, entity_id: str) -> Optional[Any]: ...


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _safe_div(numerator: float, denominator: float) -> float:
    if denominator == 0:
        return 0.0
    return numerator / denominator


def _resolve(store: EntityLookup, kind: EntityKind, entity_id: str) -> Any:
    entity = store.get(kind, entity_id)
    if entity is None:
        raise ReferenceNotFoundError(kind, entity_id)
    return entity


def _check_range(date_range: DateRange) -> None:
    if date_range.start > date_range.end:
        raise InvalidRangeError(
            f"Date range start {date_range.start.isoformat()} is after "
            f"end {date_range.end.isoformat()}."
        )


def _is_applicable(day: date, include_weekends: bool) -> bool:
    return include_weekends or day.weekday() < 5


def _dedupe(ids: Iterable[str]) -> List[str]:
    seen: set = set()
    out: List[str] = []
    for i in ids:
        if i not in seen:
            seen.add(i)
            out.append(i)
    return out


# ---------------------------------------------------------------------------
# ProjectService
# ---------------------------------------------------------------------------

class ProjectService:
    """
    Builds projects and scenarios and wires phases into them.
    Only ids are recorded; callers store the referenced entities.
    """

    def __init__(self, id_generator: IdGenerator = new_id):
        self._new_id = id_generator

    def create_project(
        self,
        name: str,
        author_ids: Optional[List[str]] = None,
        stage_id: str = "",
    ) -> Project:
        """Create and return a new Project instance (unsaved)."""
        return Project(
            id=self._new_id(),
            name=name,
            author_ids=list(author_ids or []),
            stage_id=stage_id,
        )

    def create_scenario(self, name: str) -> Scenario:
        """Create and return a new Scenario instance (unsaved)."""
        return Scenario(id=self._new_id(), name=name)

    def add_phase(self, project: Project, phase_id: str) -> Project:
        if phase_id in project.phase_ids:
            raise ValueError(f"Phase {phase_id} is already part of project '{project.name}'.")
        project.phase_ids.append(phase_id)
        return project

    def add_scenario(self, project: Project, scenario_id: str) -> Project:
        if scenario_id in project.scenario_ids:
            raise ValueError(
                f"Scenario {scenario_id} is already part of project '{project.name}'."
            )
        project.scenario_ids.append(scenario_id)
        return project

    def add_phase_to_scenario(self, scenario: Scenario, phase_id: str) -> Scenario:
        if phase_id in scenario.phase_ids:
            raise ValueError(f"Phase {phase_id} is already part of scenario '{scenario.name}'.")
        scenario.phase_ids.append(phase_id)
        return scenario


# ---------------------------------------------------------------------------
# PhaseService
# ---------------------------------------------------------------------------

class PhaseService:
    """
    Manages phase construction and staffing.
    """

    def __init__(self, id_generator: IdGenerator = new_id):
        self._new_id = id_generator

    def create_phase(
        self,
        name: str,
        date_ranges: Optional[Sequence[DateRange]] = None,
    ) -> Phase:
        """Create and return a new Phase (unsaved) with zeroed derived fields."""
        ranges = list(date_ranges or [])
        self.validate_date_ranges(ranges)
        return Phase(id=self._new_id(), name=name, date_ranges=ranges)

    def add_specifier(self, phase: Phase, specifier_id: str) -> Phase:
        if specifier_id in phase.specifier_ids:
            raise ValueError(f"Specifier {specifier_id} is already staffed on phase '{phase.name}'.")
        phase.specifier_ids.append(specifier_id)
        return phase

    @staticmethod
    def validate_date_ranges(date_ranges: Sequence[DateRange]) -> None:
        """
        Raise InvalidRangeError if any range is inverted or if any two ranges
        share a day.
        """
        for date_range in date_ranges:
            _check_range(date_range)
        ordered = sorted(date_ranges, key=lambda r: r.start)
        for prev, nxt in zip(ordered, ordered[1:]):
            if prev.overlaps(nxt):
                raise InvalidRangeError(
                    f"Phase date ranges overlap: {prev.start.isoformat()}–{prev.end.isoformat()} "
                    f"and {nxt.start.isoformat()}–{nxt.end.isoformat()}."
                )


# ---------------------------------------------------------------------------
# SpecifierService
# ---------------------------------------------------------------------------

class SpecifierService:
    """
    Builds specifiers (staffed roles) and their allocations.
    """

    def __init__(self, id_generator: IdGenerator = new_id):
        self._new_id = id_generator

    def create_specifier(
        self,
        name: str,
        role: str,
        calendar_id: str,
        allocations: Optional[List[Allocation]] = None,
        billrate: Optional[float] = 0.0,
        costrate: Optional[float] = 0.0,
    ) -> Specifier:
        """Create and return a new Specifier (unsaved).  Allocations are validated."""
        allocations = list(allocations or [])
        for allocation in allocations:
            AllocationService.validate(allocation)
        return Specifier(
            id=self._new_id(),
            name=name,
            role=role,
            calendar=calendar_id,
            allocations=allocations,
            billrate=billrate,
            costrate=costrate,
        )

    @staticmethod
    def create_allocation(**units: float) -> Allocation:
        """Create a validated Allocation; unspecified units default to 0."""
        allocation = Allocation(**units)
        AllocationService.validate(allocation)
        return allocation


# ---------------------------------------------------------------------------
# CalendarService
# ---------------------------------------------------------------------------

class CalendarService:
    """
    Calendar construction and working-hours resolution.

    Available hours for a range are the applicable days (weekdays, or every
    day when weekends are included) times the baseline, less holiday hours.
    Holidays on non-applicable days deduct nothing and no single day drops
    below zero, so widening a range never reduces its available hours.
    """

    def __init__(self, id_generator: IdGenerator = new_id):
        self._new_id = id_generator

    def create_calendar(
        self, name: str, holidays: Optional[List[Holiday]] = None
    ) -> Calendar:
        """Create and return a new Calendar (unsaved)."""
        holidays = list(holidays or [])
        for holiday in holidays:
            self._check_holiday(holiday)
        return Calendar(id=self._new_id(), name=name, holidays=holidays)

    def add_holiday(self, calendar: Calendar, holiday: Holiday) -> Calendar:
        self._check_holiday(holiday)
        calendar.holidays.append(holiday)
        return calendar

    @staticmethod
    def business_days(date_range: DateRange, include_weekends: bool = False) -> int:
        """Count the applicable days in an inclusive date range."""
        _check_range(date_range)
        total = (date_range.end - date_range.start).days + 1
        if include_weekends:
            return total
        full_weeks, remainder = divmod(total, 7)
        first = date_range.start.weekday()
        return full_weeks * 5 + sum(1 for i in range(remainder) if (first + i) % 7 < 5)

    def available_hours(
        self,
        calendar: Calendar,
        date_range: DateRange,
        baseline_hours_per_day: float,
        include_weekends: bool = False,
    ) -> float:
        """Net working hours the calendar offers over the date range."""
        if baseline_hours_per_day < 0:
            raise ValueError("baseline_hours_per_day must not be negative.")
        days = self.business_days(date_range, include_weekends)

        hours_off: Dict[date, float] = {}
        for holiday in calendar.holidays:
            day = holiday.date
            if date_range.contains(day) and _is_applicable(day, include_weekends):
                hours_off[day] = hours_off.get(day, 0.0) + max(holiday.hours_off, 0.0)

        deducted = sum(min(off, baseline_hours_per_day) for off in hours_off.values())
        return days * baseline_hours_per_day - deducted

    @staticmethod
    def _check_holiday(holiday: Holiday) -> None:
        if holiday.hours_off < 0:
            raise ValueError(f"Holiday '{holiday.name}' cannot have negative hours off.")


# ---------------------------------------------------------------------------
# AllocationService
# ---------------------------------------------------------------------------

class AllocationService:
    """
    Normalises allocations into committed hours.

    Precedence: a non-zero percent is applied to the calendar's available
    hours and the absolute units are ignored.  Otherwise daily, weekly,
    monthly and yearly hours are scaled to the range's working days and
    summed.  The base is clamped to [0, available]; extra is added after the
    clamp and is never clamped.
    """

    def __init__(self, config: Optional[RollupConfig] = None):
        self.config = config or get_config()

    @staticmethod
    def validate(allocation: Allocation) -> None:
        if not (0.0 <= allocation.percent <= 100.0):
            raise InvalidAllocationError(
                f"Allocation percent must be between 0 and 100, got {allocation.percent}."
            )
        for unit in ABSOLUTE_UNITS + ("extra",):
            value = getattr(allocation, unit)
            if value < 0:
                raise InvalidAllocationError(
                    f"Allocation {unit} hours must not be negative, got {value}."
                )

    def committed_hours(
        self,
        allocation: Allocation,
        calendar_available_hours: float,
        working_days: Optional[float] = None,
    ) -> float:
        """
        Hours committed by one allocation against one date range.

        Absolute units need the range's working days to be scaled; asking for
        them without `working_days` raises InvalidAllocationError.
        """
        self.validate(allocation)
        cfg = self.config
        if allocation.percent > 0:
            base = calendar_available_hours * allocation.percent / 100.0
        else:
            if working_days is None:
                units = [u for u in ABSOLUTE_UNITS if getattr(allocation, u) > 0]
                if units:
                    raise InvalidAllocationError(
                        f"Allocation {', '.join(units)} hours need the range's "
                        f"working days to be converted."
                    )
                working_days = 0.0
            base = (
                allocation.daily * working_days
                + allocation.weekly * working_days / cfg.days_per_week
                + allocation.monthly * working_days / cfg.days_per_month
                + allocation.yearly * working_days / cfg.days_per_year
            )
        base = min(max(base, 0.0), max(calendar_available_hours, 0.0))
        return base + allocation.extra

    def specifier_hours(
        self,
        specifier: Specifier,
        available_by_range: Sequence[float],
        working_days_by_range: Sequence[float],
    ) -> float:
        """
        Total committed hours for a specifier across a phase's date ranges.

        A single allocation applies to every range; otherwise allocations are
        paired with ranges by position and the counts must match.
        """
        allocations = specifier.allocations
        if not allocations:
            return 0.0
        range_count = len(available_by_range)
        if len(allocations) == 1:
            paired = [allocations[0]] * range_count
        elif len(allocations) == range_count:
            paired = list(allocations)
        else:
            raise InvalidAllocationError(
                f"Specifier {specifier.id} has {len(allocations)} allocations for "
                f"{range_count} date ranges; expected 1 or {range_count}."
            )
        return sum(
            self.committed_hours(allocation, available, days)
            for allocation, available, days in zip(
                paired, available_by_range, working_days_by_range
            )
        )


# ---------------------------------------------------------------------------
# RateService
# ---------------------------------------------------------------------------

class RateService:
    """
    Hours-weighted blended rates.  Specifiers without a usable bill and cost
    rate are left out of the averages and reported in missing_rates.
    """

    @staticmethod
    def has_usable_rates(specifier: Specifier) -> bool:
        return bool(specifier.billrate and specifier.billrate > 0) and bool(
            specifier.costrate and specifier.costrate > 0
        )

    def aggregate_rates(
        self,
        specifiers: Sequence[Specifier],
        committed_hours_by_specifier: Mapping[str, float],
    ) -> RateAggregate:
        missing: List[str] = []
        hours_total = 0.0
        bill_weighted = 0.0
        cost_weighted = 0.0
        for specifier in specifiers:
            if not self.has_usable_rates(specifier):
                missing.append(specifier.id)
                continue
            hours = committed_hours_by_specifier.get(specifier.id, 0.0)
            hours_total += hours
            bill_weighted += specifier.billrate * hours
            cost_weighted += specifier.costrate * hours
        return RateAggregate(
            bill_rate_blended=_safe_div(bill_weighted, hours_total),
            cost_rate_blended=_safe_div(cost_weighted, hours_total),
            missing_rates=missing,
        )


# ---------------------------------------------------------------------------
# RollupService
# ---------------------------------------------------------------------------

class RollupService:
    """
    Computes phase financials and applies them across scenarios and projects.

    Each phase is independent: project and scenario rollups are an ordered
    application of rollup_phase with no cross-phase arithmetic.  summarize()
    totals a set of rolled-up phases for reporting only.
    """

    def __init__(
        self,
        config: Optional[RollupConfig] = None,
        calendar_service: Optional[CalendarService] = None,
        allocation_service: Optional[AllocationService] = None,
        rate_service: Optional[RateService] = None,
    ):
        self.config = config or get_config()
        self.calendars = calendar_service or CalendarService()
        self.allocations = allocation_service or AllocationService(self.config)
        self.rates = rate_service or RateService()

    # --- Phase --------------------------------------------------------------

    def rollup_phase(self, phase: Phase, store: EntityLookup) -> Phase:
        """
        Return a copy of `phase` with every derived financial field populated.

        Raises InvalidRangeError, InvalidAllocationError or
        ReferenceNotFoundError; the input phase is never modified, so a failed
        rollup leaves no partial results behind.
        """
        cfg = self.config
        ranges = list(phase.date_ranges)
        PhaseService.validate_date_ranges(ranges)

        if len(set(phase.specifier_ids)) != len(phase.specifier_ids):
            raise DuplicateReferenceError(f"Phase {phase.id} lists a specifier more than once.")
        specifiers: List[Specifier] = [
            _resolve(store, EntityKind.SPECIFIER, sid) for sid in phase.specifier_ids
        ]
        calendars: Dict[str, Calendar] = {}
        for specifier in specifiers:
            if specifier.calendar not in calendars:
                calendars[specifier.calendar] = _resolve(
                    store, EntityKind.CALENDAR, specifier.calendar
                )

        working_days = [
            self.calendars.business_days(r, cfg.include_weekends) for r in ranges
        ]
        available: Dict[str, List[float]] = {
            calendar_id: [
                self.calendars.available_hours(
                    calendar, r, cfg.baseline_hours_per_day, cfg.include_weekends
                )
                for r in ranges
            ]
            for calendar_id, calendar in calendars.items()
        }

        committed: Dict[str, float] = {
            s.id: self.allocations.specifier_hours(s, available[s.calendar], working_days)
            for s in specifiers
        }

        usable = [s for s in specifiers if self.rates.has_usable_rates(s)]
        bill_total = sum(committed[s.id] * s.billrate for s in usable)
        cost_total = sum(committed[s.id] * s.costrate for s in usable)
        profit_total = bill_total - cost_total
        margin_percent = _safe_div(profit_total, bill_total) * 100.0 if bill_total > 0 else 0.0

        rates = self.rates.aggregate_rates(specifiers, committed)
        if rates.missing_rates:
            logger.warning(
                "Phase %s has %d specifier(s) with missing rates: %s",
                phase.id, len(rates.missing_rates), ", ".join(rates.missing_rates),
            )

        rolled = dataclasses.replace(
            phase,
            specifier_ids=list(phase.specifier_ids),
            date_ranges=ranges,
            bill_rate_blended=rates.bill_rate_blended,
            cost_rate_blended=rates.cost_rate_blended,
            margin_percent=margin_percent,
            work_hours_by_calendar=[
                WorkHoursByCalendar(calendar_id=cid, total_hours=sum(hours))
                for cid, hours in available.items()
            ],
            work_hour_totals=sum(committed.values(), 0.0),
            bill_total=bill_total,
            cost_total=cost_total,
            profit_total=profit_total,
            missing_rates=list(rates.missing_rates),
        )
        logger.debug(
            "Rolled up phase %s: hours=%.2f bill=%.2f cost=%.2f margin=%.2f%%",
            phase.id, rolled.work_hour_totals, bill_total, cost_total, margin_percent,
        )
        return rolled

    # --- Scenario / Project -------------------------------------------------

    def rollup_scenario(
        self,
        scenario: Scenario,
        store: EntityLookup,
        max_workers: Optional[int] = None,
    ) -> ScenarioRollup:
        rolled = self.rollup_phases(scenario.phase_ids, store, max_workers)
        return ScenarioRollup(
            scenario_id=scenario.id, phases=[rolled[pid] for pid in scenario.phase_ids]
        )

    def rollup_project(
        self,
        project: Project,
        store: EntityLookup,
        max_workers: Optional[int] = None,
    ) -> ProjectRollup:
        """
        Roll up every phase the project references: its direct phases, then
        each scenario's phases, in order.  Any dangling phase or scenario id
        fails the whole call with ReferenceNotFoundError.
        """
        scenarios: List[Scenario] = [
            _resolve(store, EntityKind.SCENARIO, sid) for sid in project.scenario_ids
        ]
        all_ids = self.project_phase_ids(project, scenarios)
        rolled = self.rollup_phases(all_ids, store, max_workers)
        return ProjectRollup(
            project_id=project.id,
            phases=[rolled[pid] for pid in all_ids],
            scenarios=[
                ScenarioRollup(
                    scenario_id=scenario.id,
                    phases=[rolled[pid] for pid in scenario.phase_ids],
                )
                for scenario in scenarios
            ],
        )

    def summarize(self, phases: Sequence[Phase]) -> FinancialSummary:
        bill_total = sum(p.bill_total for p in phases)
        cost_total = sum(p.cost_total for p in phases)
        profit_total = bill_total - cost_total
        return FinancialSummary(
            phase_count=len(phases),
            work_hour_totals=sum(p.work_hour_totals for p in phases),
            bill_total=bill_total,
            cost_total=cost_total,
            profit_total=profit_total,
            margin_percent=_safe_div(profit_total, bill_total) * 100.0 if bill_total > 0 else 0.0,
            missing_rates=_dedupe(sid for p in phases for sid in p.missing_rates),
        )

    # --- Phase batches ------------------------------------------------------

    @staticmethod
    def project_phase_ids(project: Project, scenarios: Sequence[Scenario]) -> List[str]:
        """Direct phase ids, then each scenario's, with repeats kept."""
        phase_ids = list(project.phase_ids)
        for scenario in scenarios:
            phase_ids.extend(scenario.phase_ids)
        return phase_ids

    def rollup_phases(
        self,
        phase_ids: Sequence[str],
        store: EntityLookup,
        max_workers: Optional[int] = None,
        skip_errors: bool = False,
    ) -> Dict[str, Union[Phase, RollupError]]:
        """
        Roll up each distinct phase id once, keyed in first-reference order.

        By default every phase id is resolved up front and the first error
        propagates.  With skip_errors a phase that fails to resolve or roll up
        maps to its RollupError and the others still complete.
        """
        unique_ids = _dedupe(phase_ids)
        workers = max_workers if max_workers is not None else self.config.max_workers
        if not skip_errors:
            phases = {pid: _resolve(store, EntityKind.PHASE, pid) for pid in unique_ids}

            def run(phase_id: str) -> Union[Phase, RollupError]:
                return self.rollup_phase(phases[phase_id], store)
        else:
            def run(phase_id: str) -> Union[Phase, RollupError]:
                try:
                    return self.rollup_phase(_resolve(store, EntityKind.PHASE, phase_id), store)
                except RollupError as exc:
                    logger.warning("Skipping phase %s: %s", phase_id, exc)
                    return exc

        if not workers or len(unique_ids) < 2:
            outcomes = [run(pid) for pid in unique_ids]
        else:
            with ThreadPoolExecutor(max_workers=workers) as pool:
                outcomes = list(pool.map(run, unique_ids))
        return dict(zip(unique_ids, outcomes))


# ---------------------------------------------------------------------------
# Module-level entry points
# ---------------------------------------------------------------------------

def available_hours(
    calendar: Calendar,
    date_range: DateRange,
    baseline_hours_per_day: float,
    include_weekends: bool = False,
) -> float:
    return CalendarService().available_hours(
        calendar, date_range, baseline_hours_per_day, include_weekends
    )


def committed_hours(
    allocation: Allocation,
    calendar_available_hours: float,
    working_days: Optional[float] = None,
    config: Optional[RollupConfig] = None,
) -> float:
    return AllocationService(config).committed_hours(
        allocation, calendar_available_hours, working_days
    )


def aggregate_rates(
    specifiers: Sequence[Specifier],
    committed_hours_by_specifier: Mapping[str, float],
) -> RateAggregate:
    return RateService().aggregate_rates(specifiers, committed_hours_by_specifier)


def rollup_phase(
    phase: Phase, store: EntityLookup, config: Optional[RollupConfig] = None
) -> Phase:
    return RollupService(config).rollup_phase(phase, store)


def rollup_project(
    project: Project,
    store: EntityLookup,
    config: Optional[RollupConfig] = None,
    max_workers: Optional[int] = None,
) -> ProjectRollup:
    return RollupService(config).rollup_project(project, store, max_workers)
