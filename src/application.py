"""
application.py

Application layer for the Staffing Rollup system.

Overview
--------
The application layer sits between whatever presents staffing financials
(a UI, a report writer, a persistence adapter) and the domain / service
layer.  It is responsible for:

  1. Defining clean output DTOs (dataclasses) that carry the computed phase
     and project shapes as plain structured data.
  2. Declaring abstract Repository interfaces and the entity-store lookup
     contract so that the application layer remains persistence-agnostic
     (implementations live in infrastructure.py).
  3. Declaring the UnitOfWork abstraction that groups the repositories and
     provides read-only snapshots for concurrent rollups.
  4. Implementing Use Case handlers, one class per operation, that
     orchestrate service calls and repository reads/writes.

Structure
---------
DTOs
    AllocationDTO, SpecifierDTO, HolidayDTO, CalendarDTO
    ProjectDTO, ScenarioDTO, PhaseDTO, WorkHoursByCalendarDTO
    FinancialSummaryDTO, ScenarioFinancialsDTO, ProjectFinancialsDTO
    RollupFailureDTO

Repository interfaces
    AbstractProjectRepository
    AbstractScenarioRepository
    AbstractPhaseRepository
    AbstractSpecifierRepository
    AbstractCalendarRepository

Unit of Work
    AbstractUnitOfWork

Use Cases
    --- Construction ---
    CreateProjectUseCase
    AddScenarioUseCase
    AddPhaseUseCase
    CreateCalendarUseCase
    AddSpecifierUseCase

    --- Rollup ---
    RollupPhaseUseCase
    RollupProjectUseCase
    GetProjectFinancialsUseCase

Design notes
------------
- Use cases return DTOs only; no domain objects cross the application
  boundary.
- Each use case accepts a UnitOfWork as its sole per-call dependency.  The
  identifier generator and rollup configuration are injected at construction.
- Dates flowing out are ISO-8601 strings.
- Construction rule violations surface as ApplicationError; missing
  projects / phases / scenarios looked up by a use case as NotFoundError.
  Rollup errors (InvalidRangeError, InvalidAllocationError,
  ReferenceNotFoundError) propagate unchanged unless the SKIP policy is used.
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from config import RollupConfig
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
    Scenario,
    Specifier,
    new_id,
)
from service import (
    CalendarService,
    PhaseService,
    ProjectService,
    ReferenceNotFoundError,
    RollupError,
    RollupService,
    SpecifierService,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ApplicationError(Exception):
    """Raised when a use case cannot complete due to a business rule violation."""


class NotFoundError(ApplicationError):
    """Raised when a requested entity does not exist."""


class RollupPolicy(str, Enum):
    """
    How a project rollup reacts to a phase that cannot be rolled up.

    ABORT – the first failure propagates; nothing is saved.
    SKIP  – failing phases are reported and left untouched; the rest are saved.
    """
    ABORT = "abort"
    SKIP = "skip"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _fmt_date(d: Optional[date]) -> Optional[str]:
    return d.isoformat() if d else None


# ===========================================================================
# DTO DEFINITIONS
# ===========================================================================

# ---------------------------------------------------------------------------
# Calendar DTOs
# ---------------------------------------------------------------------------

@dataclass
class HolidayDTO:
    date: str
    name: str
    hours_off: float


@dataclass
class CalendarDTO:
    id: str
    name: str
    holidays: List[HolidayDTO]


# ---------------------------------------------------------------------------
# Specifier DTOs
# ---------------------------------------------------------------------------

@dataclass
class AllocationDTO:
    percent: float
    daily: float
    weekly: float
    monthly: float
    yearly: float
    extra: float


@dataclass
class SpecifierDTO:
    id: str
    name: str
    role: str
    calendar: str
    allocations: List[AllocationDTO]
    billrate: Optional[float]
    costrate: Optional[float]


# ---------------------------------------------------------------------------
# Project / Scenario DTOs
# ---------------------------------------------------------------------------

@dataclass
class ProjectDTO:
    id: str
    name: str
    phase_ids: List[str]
    scenario_ids: List[str]
    author_ids: List[str]
    stage_id: str


@dataclass
class ScenarioDTO:
    id: str
    name: str
    phase_ids: List[str]


# ---------------------------------------------------------------------------
# Phase DTOs
# ---------------------------------------------------------------------------

@dataclass
class WorkHoursByCalendarDTO:
    calendar_id: str
    total_hours: float


@dataclass
class PhaseDTO:
    id: str
    name: str
    specifier_ids: List[str]
    date_ranges: List[Dict[str, str]]
    bill_rate_blended: float
    cost_rate_blended: float
    margin_percent: float
    work_hours_by_calendar: List[WorkHoursByCalendarDTO]
    work_hour_totals: float
    bill_total: float
    cost_total: float
    profit_total: float
    missing_rates: List[str]


# ---------------------------------------------------------------------------
# Financials DTOs
# ---------------------------------------------------------------------------

@dataclass
class FinancialSummaryDTO:
    phase_count: int
    work_hour_totals: float
    bill_total: float
    cost_total: float
    profit_total: float
    margin_percent: float
    missing_rates: List[str]


@dataclass
class RollupFailureDTO:
    """A phase or scenario that could not be rolled up under the SKIP policy."""
    entity_kind: str
    entity_id: str
    error_type: str
    message: str


@dataclass
class ScenarioFinancialsDTO:
    scenario_id: str
    scenario_name: str
    phases: List[PhaseDTO]
    summary: FinancialSummaryDTO


@dataclass
class ProjectFinancialsDTO:
    project_id: str
    project_name: str
    phases: List[PhaseDTO]
    scenarios: List[ScenarioFinancialsDTO]
    summary: FinancialSummaryDTO
    failures: List[RollupFailureDTO] = field(default_factory=list)


# ===========================================================================
# DTO ASSEMBLERS
# ===========================================================================

class _Assembler:
    """Converts domain model instances into DTOs."""

    @staticmethod
    def calendar(c: Calendar) -> CalendarDTO:
        return CalendarDTO(
            id=c.id,
            name=c.name,
            holidays=[
                HolidayDTO(date=_fmt_date(h.date), name=h.name, hours_off=h.hours_off)
                for h in c.holidays
            ],
        )

    @staticmethod
    def allocation(a: Allocation) -> AllocationDTO:
        return AllocationDTO(
            percent=a.percent,
            daily=a.daily,
            weekly=a.weekly,
            monthly=a.monthly,
            yearly=a.yearly,
            extra=a.extra,
        )

    @staticmethod
    def specifier(s: Specifier) -> SpecifierDTO:
        return SpecifierDTO(
            id=s.id,
            name=s.name,
            role=s.role,
            calendar=s.calendar,
            allocations=[_Assembler.allocation(a) for a in s.allocations],
            billrate=s.billrate,
            costrate=s.costrate,
        )

    @staticmethod
    def project(p: Project) -> ProjectDTO:
        return ProjectDTO(
            id=p.id,
            name=p.name,
            phase_ids=list(p.phase_ids),
            scenario_ids=list(p.scenario_ids),
            author_ids=list(p.author_ids),
            stage_id=p.stage_id,
        )

    @staticmethod
    def scenario(s: Scenario) -> ScenarioDTO:
        return ScenarioDTO(id=s.id, name=s.name, phase_ids=list(s.phase_ids))

    @staticmethod
    def phase(ph: Phase) -> PhaseDTO:
        return PhaseDTO(
            id=ph.id,
            name=ph.name,
            specifier_ids=list(ph.specifier_ids),
            date_ranges=[
                {"start": _fmt_date(r.start), "end": _fmt_date(r.end)} for r in ph.date_ranges
            ],
            bill_rate_blended=ph.bill_rate_blended,
            cost_rate_blended=ph.cost_rate_blended,
            margin_percent=ph.margin_percent,
            work_hours_by_calendar=[
                WorkHoursByCalendarDTO(calendar_id=w.calendar_id, total_hours=w.total_hours)
                for w in ph.work_hours_by_calendar
            ],
            work_hour_totals=ph.work_hour_totals,
            bill_total=ph.bill_total,
            cost_total=ph.cost_total,
            profit_total=ph.profit_total,
            missing_rates=list(ph.missing_rates),
        )

    @staticmethod
    def summary(s: FinancialSummary) -> FinancialSummaryDTO:
        return FinancialSummaryDTO(
            phase_count=s.phase_count,
            work_hour_totals=s.work_hour_totals,
            bill_total=s.bill_total,
            cost_total=s.cost_total,
            profit_total=s.profit_total,
            margin_percent=round(s.margin_percent, 2),
            missing_rates=list(s.missing_rates),
        )

    @staticmethod
    def failure(kind: EntityKind, entity_id: str, exc: Exception) -> RollupFailureDTO:
        return RollupFailureDTO(
            entity_kind=kind.value,
            entity_id=entity_id,
            error_type=type(exc).__name__,
            message=str(exc),
        )


# ===========================================================================
# REPOSITORY INTERFACES
# ===========================================================================

class AbstractProjectRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, project_id: str) -> Optional[Project]: ...
    @abc.abstractmethod
    def save(self, project: Project) -> None: ...


class AbstractScenarioRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, scenario_id: str) -> Optional[Scenario]: ...
    @abc.abstractmethod
    def save(self, scenario: Scenario) -> None: ...


class AbstractPhaseRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, phase_id: str) -> Optional[Phase]: ...
    @abc.abstractmethod
    def save(self, phase: Phase) -> None: ...
    @abc.abstractmethod
    def delete(self, phase_id: str) -> None: ...


class AbstractSpecifierRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, specifier_id: str) -> Optional[Specifier]: ...
    @abc.abstractmethod
    def save(self, specifier: Specifier) -> None: ...


class AbstractCalendarRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, calendar_id: str) -> Optional[Calendar]: ...
    @abc.abstractmethod
    def save(self, calendar: Calendar) -> None: ...


class AbstractEntityStore(abc.ABC):
    """Read-only lookup by kind and id; None when the id does not resolve."""

    @abc.abstractmethod
    def get(self, kind: EntityKind, entity_id: str) -> Optional[object]: ...


# ===========================================================================
# UNIT OF WORK
# ===========================================================================

class AbstractUnitOfWork(AbstractEntityStore):
    """
    Groups all repositories under a single transactional boundary and serves
    as the entity store for rollups.  Use as a context manager:

        with uow:
            uow.phases.save(phase)
            uow.commit()
    """
    projects: AbstractProjectRepository
    scenarios: AbstractScenarioRepository
    phases: AbstractPhaseRepository
    specifiers: AbstractSpecifierRepository
    calendars: AbstractCalendarRepository

    def __enter__(self) -> "AbstractUnitOfWork":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if exc_type:
            self.rollback()
        else:
            self.commit()

    def get(self, kind: EntityKind, entity_id: str) -> Optional[object]:
        repositories = {
            EntityKind.PROJECT: self.projects,
            EntityKind.SCENARIO: self.scenarios,
            EntityKind.PHASE: self.phases,
            EntityKind.SPECIFIER: self.specifiers,
            EntityKind.CALENDAR: self.calendars,
        }
        return repositories[EntityKind(kind)].get(entity_id)

    @abc.abstractmethod
    def snapshot(self) -> AbstractEntityStore:
        """Return an immutable point-in-time view safe to share across threads."""

    @abc.abstractmethod
    def commit(self) -> None: ...

    @abc.abstractmethod
    def rollback(self) -> None: ...


# ===========================================================================
# USE CASE HELPERS
# ===========================================================================

def _get_project_or_raise(uow: AbstractUnitOfWork, project_id: str) -> Project:
    project = uow.projects.get(project_id)
    if project is None:
        raise NotFoundError(f"Project {project_id} not found.")
    return project


def _get_scenario_or_raise(uow: AbstractUnitOfWork, scenario_id: str) -> Scenario:
    scenario = uow.scenarios.get(scenario_id)
    if scenario is None:
        raise NotFoundError(f"Scenario {scenario_id} not found.")
    return scenario


def _get_phase_or_raise(uow: AbstractUnitOfWork, phase_id: str) -> Phase:
    phase = uow.phases.get(phase_id)
    if phase is None:
        raise NotFoundError(f"Phase {phase_id} not found.")
    return phase


def _financials(
    project: Project,
    phases: Dict[str, Phase],
    scenarios: Sequence[Scenario],
    rollup_svc: RollupService,
    failures: Optional[List[RollupFailureDTO]] = None,
) -> ProjectFinancialsDTO:
    """
    Assemble a ProjectFinancialsDTO from phases keyed by id.  Ids absent
    from `phases` (failed or dangling) are left out of the listing.
    """
    direct = [phases[pid] for pid in project.phase_ids if pid in phases]
    scenario_rows: List[ScenarioFinancialsDTO] = []
    every_phase = list(direct)
    for scenario in scenarios:
        scenario_phases = [phases[pid] for pid in scenario.phase_ids if pid in phases]
        every_phase.extend(scenario_phases)
        scenario_rows.append(
            ScenarioFinancialsDTO(
                scenario_id=scenario.id,
                scenario_name=scenario.name,
                phases=[_Assembler.phase(p) for p in scenario_phases],
                summary=_Assembler.summary(rollup_svc.summarize(scenario_phases)),
            )
        )
    return ProjectFinancialsDTO(
        project_id=project.id,
        project_name=project.name,
        phases=[_Assembler.phase(p) for p in direct],
        scenarios=scenario_rows,
        summary=_Assembler.summary(rollup_svc.summarize(every_phase)),
        failures=list(failures or []),
    )


# ===========================================================================
# USE CASES: CONSTRUCTION
# ===========================================================================

@dataclass
class CreateProjectCommand:
    name: str
    author_ids: List[str] = field(default_factory=list)
    stage_id: str = ""


class CreateProjectUseCase:
    def __init__(self, id_generator: IdGenerator = new_id):
        self._project_svc = ProjectService(id_generator)

    def execute(self, cmd: CreateProjectCommand, uow: AbstractUnitOfWork) -> ProjectDTO:
        with uow:
            project = self._project_svc.create_project(
                name=cmd.name,
                author_ids=cmd.author_ids,
                stage_id=cmd.stage_id,
            )
            uow.projects.save(project)
            uow.commit()
            return _Assembler.project(project)


@dataclass
class AddScenarioCommand:
    project_id: str
    name: str


class AddScenarioUseCase:
    def __init__(self, id_generator: IdGenerator = new_id):
        self._project_svc = ProjectService(id_generator)

    def execute(self, cmd: AddScenarioCommand, uow: AbstractUnitOfWork) -> ScenarioDTO:
        with uow:
            project = _get_project_or_raise(uow, cmd.project_id)
            scenario = self._project_svc.create_scenario(cmd.name)
            try:
                self._project_svc.add_scenario(project, scenario.id)
            except ValueError as exc:
                raise ApplicationError(str(exc)) from exc
            uow.scenarios.save(scenario)
            uow.projects.save(project)
            uow.commit()
            return _Assembler.scenario(scenario)


@dataclass
class AddPhaseCommand:
    """
    Add a phase to a project.  With scenario_id the phase is attached to that
    scenario (which must belong to the project) instead of the project itself.
    """
    project_id: str
    name: str
    date_ranges: List[Tuple[date, date]] = field(default_factory=list)
    scenario_id: Optional[str] = None


class AddPhaseUseCase:
    def __init__(self, id_generator: IdGenerator = new_id):
        self._project_svc = ProjectService(id_generator)
        self._phase_svc = PhaseService(id_generator)

    def execute(self, cmd: AddPhaseCommand, uow: AbstractUnitOfWork) -> PhaseDTO:
        with uow:
            project = _get_project_or_raise(uow, cmd.project_id)
            try:
                phase = self._phase_svc.create_phase(
                    cmd.name, [DateRange(start=s, end=e) for s, e in cmd.date_ranges]
                )
                if cmd.scenario_id is None:
                    self._project_svc.add_phase(project, phase.id)
                    uow.projects.save(project)
                else:
                    if cmd.scenario_id not in project.scenario_ids:
                        raise NotFoundError(
                            f"Scenario {cmd.scenario_id} not found in project {project.id}."
                        )
                    scenario = _get_scenario_or_raise(uow, cmd.scenario_id)
                    self._project_svc.add_phase_to_scenario(scenario, phase.id)
                    uow.scenarios.save(scenario)
            except ValueError as exc:
                raise ApplicationError(str(exc)) from exc
            uow.phases.save(phase)
            uow.commit()
            return _Assembler.phase(phase)


@dataclass
class CreateCalendarCommand:
    name: str
    holidays: List[Holiday] = field(default_factory=list)


class CreateCalendarUseCase:
    def __init__(self, id_generator: IdGenerator = new_id):
        self._calendar_svc = CalendarService(id_generator)

    def execute(self, cmd: CreateCalendarCommand, uow: AbstractUnitOfWork) -> CalendarDTO:
        with uow:
            try:
                calendar = self._calendar_svc.create_calendar(cmd.name, cmd.holidays)
            except ValueError as exc:
                raise ApplicationError(str(exc)) from exc
            uow.calendars.save(calendar)
            uow.commit()
            return _Assembler.calendar(calendar)


@dataclass
class AddSpecifierCommand:
    phase_id: str
    name: str
    role: str
    calendar_id: str
    allocations: List[Allocation] = field(default_factory=list)
    billrate: Optional[float] = 0.0
    costrate: Optional[float] = 0.0


class AddSpecifierUseCase:
    """Create a specifier on a known calendar and staff it on a phase."""

    def __init__(self, id_generator: IdGenerator = new_id):
        self._specifier_svc = SpecifierService(id_generator)
        self._phase_svc = PhaseService(id_generator)

    def execute(self, cmd: AddSpecifierCommand, uow: AbstractUnitOfWork) -> SpecifierDTO:
        with uow:
            phase = _get_phase_or_raise(uow, cmd.phase_id)
            if uow.calendars.get(cmd.calendar_id) is None:
                raise NotFoundError(f"Calendar {cmd.calendar_id} not found.")
            try:
                specifier = self._specifier_svc.create_specifier(
                    name=cmd.name,
                    role=cmd.role,
                    calendar_id=cmd.calendar_id,
                    allocations=cmd.allocations,
                    billrate=cmd.billrate,
                    costrate=cmd.costrate,
                )
                self._phase_svc.add_specifier(phase, specifier.id)
            except ValueError as exc:
                raise ApplicationError(str(exc)) from exc
            uow.specifiers.save(specifier)
            uow.phases.save(phase)
            uow.commit()
            return _Assembler.specifier(specifier)


# ===========================================================================
# USE CASES: ROLLUP
# ===========================================================================

class RollupPhaseUseCase:
    """Recompute one phase's financials and store the result."""

    def __init__(self, config: Optional[RollupConfig] = None):
        self._rollup_svc = RollupService(config)

    def execute(self, phase_id: str, uow: AbstractUnitOfWork) -> PhaseDTO:
        with uow:
            phase = _get_phase_or_raise(uow, phase_id)
            rolled = self._rollup_svc.rollup_phase(phase, uow)
            uow.phases.save(rolled)
            uow.commit()
            logger.info("Rolled up phase %s", phase_id)
            return _Assembler.phase(rolled)


@dataclass
class RollupProjectCommand:
    project_id: str
    policy: RollupPolicy = RollupPolicy.ABORT
    max_workers: Optional[int] = None


class RollupProjectUseCase:
    """
    Recompute every phase of a project against a read-only snapshot of the
    store, then save the results.

    Under ABORT the first error propagates and nothing is saved.  Under SKIP
    each failing phase or dangling scenario is reported in `failures`, keeps
    its previously stored values, and the remaining phases are saved.
    """

    def __init__(self, config: Optional[RollupConfig] = None):
        self._rollup_svc = RollupService(config)

    def execute(
        self, cmd: RollupProjectCommand, uow: AbstractUnitOfWork
    ) -> ProjectFinancialsDTO:
        with uow:
            project = _get_project_or_raise(uow, cmd.project_id)
            store = uow.snapshot()
            if RollupPolicy(cmd.policy) is RollupPolicy.ABORT:
                rollup = self._rollup_svc.rollup_project(project, store, cmd.max_workers)
                rolled = {p.id: p for p in rollup.phases}
                scenarios = [_get_scenario_or_raise(uow, s.scenario_id) for s in rollup.scenarios]
                failures: List[RollupFailureDTO] = []
            else:
                rolled, scenarios, failures = self._rollup_skipping(
                    project, store, cmd.max_workers
                )

            for phase in rolled.values():
                uow.phases.save(phase)
            uow.commit()
            logger.info(
                "Rolled up project %s: %d phase(s), %d failure(s)",
                project.id, len(rolled), len(failures),
            )
            return _financials(project, rolled, scenarios, self._rollup_svc, failures)

    def _rollup_skipping(
        self,
        project: Project,
        store: AbstractEntityStore,
        max_workers: Optional[int],
    ) -> Tuple[Dict[str, Phase], List[Scenario], List[RollupFailureDTO]]:
        failures: List[RollupFailureDTO] = []
        scenarios: List[Scenario] = []
        for scenario_id in project.scenario_ids:
            scenario = store.get(EntityKind.SCENARIO, scenario_id)
            if scenario is None:
                exc = ReferenceNotFoundError(EntityKind.SCENARIO, scenario_id)
                logger.warning("Skipping scenario %s: %s", scenario_id, exc)
                failures.append(_Assembler.failure(EntityKind.SCENARIO, scenario_id, exc))
                continue
            scenarios.append(scenario)

        outcomes = self._rollup_svc.rollup_phases(
            self._rollup_svc.project_phase_ids(project, scenarios),
            store,
            max_workers,
            skip_errors=True,
        )
        rolled: Dict[str, Phase] = {}
        for phase_id, outcome in outcomes.items():
            if isinstance(outcome, RollupError):
                failures.append(_Assembler.failure(EntityKind.PHASE, phase_id, outcome))
            else:
                rolled[phase_id] = outcome
        return rolled, scenarios, failures


class GetProjectFinancialsUseCase:
    """Report the stored (last rolled-up) financials of a project."""

    def __init__(self, config: Optional[RollupConfig] = None):
        self._rollup_svc = RollupService(config)

    def execute(self, project_id: str, uow: AbstractUnitOfWork) -> ProjectFinancialsDTO:
        with uow:
            project = _get_project_or_raise(uow, project_id)
            scenarios = [_get_scenario_or_raise(uow, sid) for sid in project.scenario_ids]
            phase_ids = list(project.phase_ids)
            for scenario in scenarios:
                phase_ids.extend(scenario.phase_ids)
            phases = {pid: _get_phase_or_raise(uow, pid) for pid in phase_ids}
            return _financials(project, phases, scenarios, self._rollup_svc)
