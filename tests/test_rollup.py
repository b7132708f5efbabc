"""
Unit Tests for the financial rollup engine.

Tests:
- Phase totals, margin, blended rates and missing rates
- Work hours per calendar
- Copy-on-write and idempotency
- Reference and range failures leave nothing half-computed
- Scenario / project rollups, sequential and concurrent
"""
import copy
from datetime import date

import pytest

from config import RollupConfig
from model import (
    Allocation,
    Calendar,
    DateRange,
    EntityKind,
    Phase,
    Project,
    Scenario,
    Specifier,
    WorkHoursByCalendar,
)
from service import (
    DuplicateReferenceError,
    InvalidAllocationError,
    InvalidRangeError,
    ReferenceNotFoundError,
    RollupError,
    RollupService,
    rollup_phase,
    rollup_project,
)

from conftest import MONDAY, SUNDAY, WORK_WEEK

NEXT_WEEK = DateRange(date(2024, 1, 8), date(2024, 1, 12))


def _add_phase(uow, phase_id, calendar, billrate=100, costrate=60, percent=50, ranges=None):
    spec = Specifier(
        id=f"{phase_id}-spec",
        calendar=calendar.id,
        allocations=[Allocation(percent=percent)],
        billrate=billrate,
        costrate=costrate,
    )
    phase = Phase(id=phase_id, specifier_ids=[spec.id], date_ranges=ranges or [WORK_WEEK])
    uow.calendars.save(calendar)
    uow.specifiers.save(spec)
    uow.phases.save(phase)
    return phase


# =============================================================================
# Phase Rollup
# =============================================================================

class TestRollupPhase:

    def test_reference_phase_financials(self, uow, staffed_phase, rollup_config):
        rolled = rollup_phase(staffed_phase, uow, rollup_config)

        assert rolled.bill_total == pytest.approx(1600)
        assert rolled.cost_total == pytest.approx(960)
        assert rolled.profit_total == pytest.approx(640)
        assert rolled.margin_percent == pytest.approx(40)
        assert rolled.missing_rates == ["spec-2"]
        assert rolled.bill_rate_blended == pytest.approx(100)
        assert rolled.cost_rate_blended == pytest.approx(60)

    def test_work_hour_totals_include_missing_rate_specifiers(self, uow, staffed_phase, rollup_config):
        rolled = rollup_phase(staffed_phase, uow, rollup_config)
        assert rolled.work_hour_totals == pytest.approx(26)

    def test_work_hours_by_calendar(self, uow, staffed_phase, rollup_config):
        rolled = rollup_phase(staffed_phase, uow, rollup_config)
        assert rolled.work_hours_by_calendar == [WorkHoursByCalendar("cal-wed", 32)]

    def test_one_entry_per_calendar_in_first_reference_order(self, uow, rollup_config):
        cal_a = Calendar(id="cal-a")
        cal_b = Calendar(id="cal-b")
        specs = [
            Specifier(id="s1", calendar="cal-b", billrate=1, costrate=1),
            Specifier(id="s2", calendar="cal-a", billrate=1, costrate=1),
            Specifier(id="s3", calendar="cal-b", billrate=1, costrate=1),
        ]
        for entity in (cal_a, cal_b):
            uow.calendars.save(entity)
        for spec in specs:
            uow.specifiers.save(spec)
        phase = Phase(specifier_ids=["s1", "s2", "s3"], date_ranges=[WORK_WEEK, NEXT_WEEK])

        rolled = rollup_phase(phase, uow, rollup_config)
        assert [w.calendar_id for w in rolled.work_hours_by_calendar] == ["cal-b", "cal-a"]
        assert all(w.total_hours == 80 for w in rolled.work_hours_by_calendar)

    def test_per_range_allocations(self, uow, plain_calendar, rollup_config):
        spec = Specifier(
            id="s1",
            calendar=plain_calendar.id,
            allocations=[Allocation(percent=100), Allocation(percent=50)],
            billrate=200,
            costrate=100,
        )
        uow.calendars.save(plain_calendar)
        uow.specifiers.save(spec)
        phase = Phase(specifier_ids=["s1"], date_ranges=[WORK_WEEK, NEXT_WEEK])

        rolled = rollup_phase(phase, uow, rollup_config)
        assert rolled.work_hour_totals == 60
        assert rolled.bill_total == 12000
        assert rolled.margin_percent == pytest.approx(50)

    def test_weekends_included_by_config(self, uow, plain_calendar):
        phase = _add_phase(uow, "p1", plain_calendar, percent=100, ranges=[DateRange(MONDAY, SUNDAY)])
        rolled = rollup_phase(phase, uow, RollupConfig(include_weekends=True))
        assert rolled.work_hour_totals == 56

    def test_baseline_from_config(self, uow, plain_calendar):
        phase = _add_phase(uow, "p1", plain_calendar, percent=100)
        rolled = rollup_phase(phase, uow, RollupConfig(baseline_hours_per_day=7.5))
        assert rolled.work_hour_totals == pytest.approx(37.5)

    def test_no_billing_gives_zero_margin(self, uow, plain_calendar, rollup_config):
        phase = _add_phase(uow, "p1", plain_calendar, billrate=0)
        rolled = rollup_phase(phase, uow, rollup_config)
        assert rolled.bill_total == 0
        assert rolled.margin_percent == 0
        assert rolled.missing_rates == ["p1-spec"]

    def test_empty_phase(self, uow, rollup_config):
        rolled = rollup_phase(Phase(), uow, rollup_config)
        assert rolled.work_hour_totals == 0
        assert rolled.work_hours_by_calendar == []
        assert rolled.margin_percent == 0

    def test_input_phase_is_not_modified(self, uow, staffed_phase, rollup_config):
        before = copy.deepcopy(staffed_phase)
        rolled = rollup_phase(staffed_phase, uow, rollup_config)
        assert rolled is not staffed_phase
        assert staffed_phase == before

    def test_idempotent(self, uow, staffed_phase, rollup_config):
        first = rollup_phase(staffed_phase, uow, rollup_config)
        second = rollup_phase(first, uow, rollup_config)
        assert second == first


# =============================================================================
# Phase Rollup Failures
# =============================================================================

class TestRollupPhaseFailures:

    def test_unknown_calendar(self, uow, rollup_config):
        uow.specifiers.save(Specifier(id="s1", calendar="cal-gone", billrate=1, costrate=1))
        phase = Phase(id="p1", specifier_ids=["s1"], date_ranges=[WORK_WEEK])
        before = copy.deepcopy(phase)

        with pytest.raises(ReferenceNotFoundError) as info:
            rollup_phase(phase, uow, rollup_config)

        assert info.value.kind is EntityKind.CALENDAR
        assert info.value.entity_id == "cal-gone"
        assert phase == before

    def test_unknown_specifier(self, uow, rollup_config):
        phase = Phase(specifier_ids=["nobody"], date_ranges=[WORK_WEEK])
        with pytest.raises(ReferenceNotFoundError, match="nobody") as info:
            rollup_phase(phase, uow, rollup_config)
        assert info.value.kind is EntityKind.SPECIFIER

    def test_reference_error_is_a_lookup_error(self, uow, rollup_config):
        with pytest.raises(LookupError):
            rollup_phase(Phase(specifier_ids=["nobody"]), uow, rollup_config)

    def test_inverted_range(self, uow, rollup_config):
        phase = Phase(date_ranges=[DateRange(SUNDAY, MONDAY)])
        with pytest.raises(InvalidRangeError):
            rollup_phase(phase, uow, rollup_config)

    def test_overlapping_ranges(self, uow, rollup_config):
        phase = Phase(date_ranges=[WORK_WEEK, DateRange(date(2024, 1, 5), date(2024, 1, 9))])
        with pytest.raises(InvalidRangeError, match="overlap"):
            rollup_phase(phase, uow, rollup_config)

    def test_allocation_count_mismatch(self, uow, plain_calendar, rollup_config):
        uow.calendars.save(plain_calendar)
        uow.specifiers.save(
            Specifier(
                id="s1",
                calendar=plain_calendar.id,
                allocations=[Allocation(percent=10), Allocation(percent=20)],
            )
        )
        phase = Phase(specifier_ids=["s1"], date_ranges=[WORK_WEEK])
        with pytest.raises(InvalidAllocationError):
            rollup_phase(phase, uow, rollup_config)

    def test_duplicate_specifier(self, uow, plain_calendar, rollup_config):
        phase = _add_phase(uow, "p1", plain_calendar)
        phase.specifier_ids.append("p1-spec")
        with pytest.raises(DuplicateReferenceError, match="more than once"):
            rollup_phase(phase, uow, rollup_config)


# =============================================================================
# Scenario / Project Rollup
# =============================================================================

class TestRollupProject:

    @pytest.fixture
    def project(self, uow, plain_calendar, wednesday_off_calendar):
        _add_phase(uow, "p-direct-1", plain_calendar, percent=100)            # 40 h
        _add_phase(uow, "p-direct-2", wednesday_off_calendar, percent=100)    # 32 h
        _add_phase(uow, "p-scenario", plain_calendar, percent=25)             # 10 h
        scenario = Scenario(id="scn-1", name="Lean", phase_ids=["p-scenario"])
        uow.scenarios.save(scenario)
        project = Project(
            id="proj-1",
            phase_ids=["p-direct-1", "p-direct-2"],
            scenario_ids=["scn-1"],
        )
        uow.projects.save(project)
        return project

    def test_phases_in_reference_order(self, uow, project, rollup_config):
        rollup = rollup_project(project, uow, rollup_config)
        assert rollup.project_id == "proj-1"
        assert [p.id for p in rollup.phases] == ["p-direct-1", "p-direct-2", "p-scenario"]
        assert [p.work_hour_totals for p in rollup.phases] == [40, 32, 10]

    def test_scenario_grouping(self, uow, project, rollup_config):
        rollup = rollup_project(project, uow, rollup_config)
        assert len(rollup.scenarios) == 1
        assert rollup.scenarios[0].scenario_id == "scn-1"
        assert [p.id for p in rollup.scenarios[0].phases] == ["p-scenario"]

    def test_concurrent_matches_sequential(self, uow, project, rollup_config):
        sequential = rollup_project(project, uow, rollup_config)
        concurrent = rollup_project(project, uow, rollup_config, max_workers=4)
        assert concurrent == sequential

    def test_stored_phases_untouched(self, uow, project, rollup_config):
        rollup_project(project, uow, rollup_config)
        assert uow.phases.get("p-direct-1").work_hour_totals == 0

    def test_missing_phase(self, uow, project, rollup_config):
        project.phase_ids.append("p-gone")
        with pytest.raises(ReferenceNotFoundError) as info:
            rollup_project(project, uow, rollup_config)
        assert info.value.kind is EntityKind.PHASE

    def test_missing_scenario(self, uow, project, rollup_config):
        project.scenario_ids.append("scn-gone")
        with pytest.raises(ReferenceNotFoundError) as info:
            rollup_project(project, uow, rollup_config)
        assert info.value.kind is EntityKind.SCENARIO

    def test_rollup_scenario(self, uow, project, rollup_config):
        scenario = uow.scenarios.get("scn-1")
        result = RollupService(rollup_config).rollup_scenario(scenario, uow)
        assert [p.work_hour_totals for p in result.phases] == [10]

    def test_summarize(self, uow, project, rollup_config):
        svc = RollupService(rollup_config)
        rollup = svc.rollup_project(project, uow)
        summary = svc.summarize(rollup.phases)
        assert summary.phase_count == 3
        assert summary.work_hour_totals == 82
        assert summary.bill_total == pytest.approx(8200)
        assert summary.cost_total == pytest.approx(4920)
        assert summary.profit_total == pytest.approx(3280)
        assert summary.margin_percent == pytest.approx(40)

    def test_summarize_nothing(self, rollup_config):
        summary = RollupService(rollup_config).summarize([])
        assert summary.phase_count == 0
        assert summary.margin_percent == 0


class TestRollupPhases:

    @pytest.fixture
    def phases(self, uow, plain_calendar):
        _add_phase(uow, "p1", plain_calendar, percent=100)
        _add_phase(uow, "p2", plain_calendar, percent=50)
        bad = _add_phase(uow, "p3", plain_calendar)
        bad.specifier_ids.append("p3-spec")
        return ["p1", "p2", "p1", "p3"]

    def test_each_phase_rolled_up_once(self, uow, plain_calendar, rollup_config):
        _add_phase(uow, "p1", plain_calendar, percent=100)
        _add_phase(uow, "p2", plain_calendar, percent=50)
        rolled = RollupService(rollup_config).rollup_phases(["p2", "p1", "p2"], uow)
        assert list(rolled) == ["p2", "p1"]
        assert rolled["p1"].work_hour_totals == 40

    def test_first_error_propagates(self, uow, phases, rollup_config):
        with pytest.raises(DuplicateReferenceError):
            RollupService(rollup_config).rollup_phases(phases, uow)

    @pytest.mark.parametrize("max_workers", [None, 3])
    def test_skip_errors_keeps_going(self, uow, phases, rollup_config, max_workers):
        rolled = RollupService(rollup_config).rollup_phases(
            phases + ["p-gone"], uow, max_workers, skip_errors=True
        )
        assert list(rolled) == ["p1", "p2", "p3", "p-gone"]
        assert rolled["p2"].work_hour_totals == 20
        assert isinstance(rolled["p3"], DuplicateReferenceError)
        assert isinstance(rolled["p-gone"], ReferenceNotFoundError)
        assert all(isinstance(v, RollupError) for v in (rolled["p3"], rolled["p-gone"]))

    def test_project_phase_ids(self):
        project = Project(phase_ids=["a", "b"])
        scenarios = [Scenario(phase_ids=["b", "c"]), Scenario(phase_ids=["d"])]
        assert RollupService.project_phase_ids(project, scenarios) == ["a", "b", "b", "c", "d"]
