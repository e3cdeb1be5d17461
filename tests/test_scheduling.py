"""Tests for the scheduling drivers."""

from collections import Counter

import numpy as np
import pytest

from precursor_selection.candidates import Candidate, PeptideEntry, PreprocessedDatabase
from precursor_selection.exceptions import ConfigurationError
from precursor_selection.formulation import SchedulingParams, StepWindow
from precursor_selection.scheduling import (
    CombinedScheduler,
    FeatureBasedScheduler,
    SchedulerState,
    SequentialScheduler,
    build_and_solve,
)
from precursor_selection.signal import ArraySignalSource
from precursor_selection.solver import Solution, SolverStatus


def point_candidate(cid, placements, charge=2, protein=None):
    """Candidate with one single-sample region per (scan, sample) placement."""
    ranges = []
    for scan, sample in placements:
        ranges.extend([(scan, sample), (scan, sample)])
    return Candidate(cid, 400.0 + len(cid), charge, mass_ranges=ranges, protein_accession=protein)


@pytest.fixture
def scenario_a():
    """Candidates 1-2 compete for bin 0, candidate 3 is alone in bin 1."""
    source = ArraySignalSource([np.array([5.0, 3.0]), np.array([1.0])])
    candidates = [
        point_candidate("c1", [(0, 0)]),
        point_candidate("c2", [(0, 1)]),
        point_candidate("c3", [(1, 0)]),
    ]
    return candidates, source


@pytest.fixture
def grid():
    """Four candidates eluting across four scans with distinct intensities."""
    spectra = [np.array([8.0, 6.0, 4.0, 2.0]) + scan for scan in range(4)]
    source = ArraySignalSource(spectra)
    candidates = [
        point_candidate(f"c{i}", [(scan, i) for scan in range(4)]) for i in range(4)
    ]
    return candidates, source


def assert_limits(result, params):
    """Capacity, acquisition cap and list size hold for a result."""
    per_bin = Counter(t.scan for t in result.selected)
    per_candidate = Counter(t.candidate for t in result.selected)

    assert all(n <= params.ms2_spectra_per_rt_bin for n in per_bin.values())
    assert all(n <= params.number_of_msms_per_precursor for n in per_candidate.values())
    if params.max_list_size is not None:
        assert len(result.selected) <= params.max_list_size


class TestFeatureBasedScheduler:
    """Tests for single-shot scheduling."""

    def test_scenario_a(self, scenario_a):
        """The stronger candidate takes the contested bin."""
        candidates, source = scenario_a
        params = SchedulingParams(ms2_spectra_per_rt_bin=1, normalize_intensity=False)

        result = FeatureBasedScheduler(params).build_and_solve(candidates, source)

        assert result.status == SolverStatus.OPTIMAL
        assert result.selected_candidates == [0, 2]
        assert [(t.candidate, t.scan) for t in result.selected] == [(0, 0), (2, 1)]
        assert result.solution.objective_value == pytest.approx(6.0)

    def test_state_transitions(self, scenario_a):
        candidates, source = scenario_a
        scheduler = FeatureBasedScheduler(SchedulingParams(normalize_intensity=False))
        assert scheduler.state == SchedulerState.IDLE

        scheduler.build(candidates, source)
        assert scheduler.state == SchedulerState.BUILDING_MODEL

        scheduler.solve()
        assert scheduler.state == SchedulerState.SOLVED

    def test_no_model_yet(self):
        scheduler = FeatureBasedScheduler(SchedulingParams())
        with pytest.raises(RuntimeError):
            scheduler.variable_indices

    def test_variable_table(self, scenario_a):
        candidates, source = scenario_a
        scheduler = FeatureBasedScheduler(SchedulingParams())
        scheduler.build(candidates, source)

        table = scheduler.variable_table()
        assert list(table["variable"]) == [0, 1, 2]
        assert list(table["scan"]) == [0, 0, 1]

    @pytest.mark.parametrize("capacity,cap,max_list", [(1, 1, None), (2, 1, 3), (3, 2, 5)])
    def test_limits_hold(self, grid, capacity, cap, max_list):
        candidates, source = grid
        params = SchedulingParams(
            ms2_spectra_per_rt_bin=capacity,
            number_of_msms_per_precursor=cap,
            max_list_size=max_list,
        )

        result = FeatureBasedScheduler(params).build_and_solve(candidates, source)

        assert result.status == SolverStatus.OPTIMAL
        assert_limits(result, params)

    def test_charge_filter_excludes(self, scenario_a):
        candidates, source = scenario_a
        candidates[0].charge = 6
        params = SchedulingParams(ms2_spectra_per_rt_bin=1, normalize_intensity=False)

        result = FeatureBasedScheduler(params).build_and_solve(candidates, source)

        assert result.selected_candidates == [1, 2]

    def test_invalid_params(self):
        with pytest.raises(ConfigurationError):
            FeatureBasedScheduler(SchedulingParams(ms2_spectra_per_rt_bin=0))

    @pytest.mark.parametrize("scan", [2, -1])
    def test_candidate_outside_source(self, scenario_a, scan):
        """A candidate in a scan the source does not hold is a configuration error."""
        candidates, source = scenario_a
        candidates.append(point_candidate("c4", [(scan, 0)]))

        with pytest.raises(ConfigurationError):
            FeatureBasedScheduler(SchedulingParams()).build_and_solve(candidates, source)


class TestSequentialScheduler:
    """Tests for rolling-window scheduling."""

    def test_scenario_b(self, grid):
        """Two windows over four scans; the list size holds across windows."""
        candidates, source = grid
        params = SchedulingParams(ms2_spectra_per_rt_bin=2, step_size=2, max_list_size=3)

        result = SequentialScheduler(params).run(candidates, source)

        assert result.n_window_advances == 2
        assert [w.window for w in result.windows] == [StepWindow(0, 2), StepWindow(2, 2)]
        assert len(result.selected) <= 3
        assert_limits(result, params)

    def test_window_picks_inside_window(self, grid):
        candidates, source = grid
        params = SchedulingParams(ms2_spectra_per_rt_bin=1, step_size=2)

        result = SequentialScheduler(params).run(candidates, source)

        for w in result.windows:
            assert all(w.window.contains(t.scan) for t in w.selected)
        assert len(result.selected) == 4
        assert_limits(result, params)

    def test_committed_candidates_not_repeated(self, grid):
        """Candidates selected in one window count against the cap later."""
        candidates, source = grid
        params = SchedulingParams(ms2_spectra_per_rt_bin=2, step_size=2)

        result = SequentialScheduler(params).run(candidates, source)

        assert len(result.windows[0].selected) == 4
        assert result.windows[1].selected == []
        assert sorted(t.candidate for t in result.selected) == [0, 1, 2, 3]

    def test_model_versions_advance(self, grid):
        candidates, source = grid
        params = SchedulingParams(step_size=1)

        result = SequentialScheduler(params).run(candidates, source)

        versions = [w.model_version for w in result.windows]
        assert len(versions) == 4
        assert versions == sorted(set(versions))

    def test_manual_cycle(self, grid):
        """build / solve / update_window can be driven step by step."""
        candidates, source = grid
        scheduler = SequentialScheduler(SchedulingParams(step_size=3))
        scheduler.build(candidates, source)

        assert scheduler.window == StepWindow(0, 3)
        scheduler.solve()
        new_window = scheduler.update_window(step_size=1)
        assert new_window == StepWindow(3, 1)
        assert scheduler.state == SchedulerState.ADVANCE_WINDOW

        scheduler.solve()
        scheduler.update_window()
        assert scheduler.is_done
        assert scheduler.state == SchedulerState.DONE

    def test_requires_step_size(self):
        with pytest.raises(ConfigurationError):
            SequentialScheduler(SchedulingParams(step_size=0))

    def test_invalid_policy(self):
        with pytest.raises(ConfigurationError):
            SequentialScheduler(SchedulingParams(step_size=1), on_infeasible="retry")

    def test_skip_infeasible_windows(self, grid, monkeypatch):
        candidates, source = grid
        monkeypatch.setattr(
            "precursor_selection.scheduling.solve_model",
            lambda model, config: Solution.infeasible(),
        )

        result = SequentialScheduler(SchedulingParams(step_size=2)).run(candidates, source)

        assert result.n_window_advances == 2
        assert result.status == SolverStatus.INFEASIBLE
        assert result.selected == []

    def test_abort_on_infeasible(self, grid, monkeypatch):
        candidates, source = grid
        monkeypatch.setattr(
            "precursor_selection.scheduling.solve_model",
            lambda model, config: Solution.infeasible(),
        )

        scheduler = SequentialScheduler(SchedulingParams(step_size=2), on_infeasible="abort")
        result = scheduler.run(candidates, source)

        assert result.n_window_advances == 1
        assert result.status == SolverStatus.INFEASIBLE

    def test_protein_inference_revises_objective(self, grid):
        candidates, source = grid
        for cand in candidates:
            cand.protein_accession = "P1"
        calls = []

        def inference(committed):
            calls.append(list(committed))
            return ["P1"] if committed else []

        params = SchedulingParams(ms2_spectra_per_rt_bin=1, step_size=2)
        scheduler = SequentialScheduler(params, protein_inference=inference)
        result = scheduler.run(candidates, source)

        assert calls
        assert "Revised objective for identified proteins: ['P1']" in result.method_log
        assert_limits(result, params)

    def test_coverage_bonus_once_per_protein(self):
        """A protein covered in an earlier window gives no bonus later."""
        spectra = [np.array([1.0]), np.zeros(1), np.array([1.0, 0.9]), np.zeros(1)]
        source = ArraySignalSource(spectra)
        candidates = [
            point_candidate("a", [(0, 0)], protein="P1"),
            point_candidate("b", [(2, 0)], protein="P1"),
            point_candidate("c", [(2, 1)], protein="P2"),
        ]
        params = SchedulingParams(
            ms2_spectra_per_rt_bin=1, step_size=2, normalize_intensity=False, coverage_bonus=10.0
        )

        result = SequentialScheduler(params, protein_coverage=True).run(candidates, source)

        assert result.selected_candidates == [0, 2]
        assert {t.protein_accession for t in result.selected} == {"P1", "P2"}
        assert result.solution.objective_value == pytest.approx(1.0 + 0.9 + 20.0)

    def test_add_candidates_mid_run(self, grid):
        """A candidate added between windows keeps existing ids and can be picked."""
        candidates, source = grid
        params = SchedulingParams(ms2_spectra_per_rt_bin=1, step_size=2, normalize_intensity=False)
        scheduler = SequentialScheduler(params)
        scheduler.build(candidates, source)
        scheduler.solve()
        scheduler.update_window()
        before = list(scheduler.variable_indices)

        spectra = [np.array([8.0, 6.0, 4.0, 2.0, 0.0]) + scan for scan in range(4)]
        spectra[2][4] = spectra[3][4] = 50.0
        late = point_candidate("late", [(2, 4), (3, 4)])
        formulation = scheduler.add_candidates([late], ArraySignalSource(spectra))

        assert formulation.triples[:len(before)] == before
        added = formulation.triples[len(before):]
        assert [(t.candidate, t.scan) for t in added] == [(4, 2), (4, 3)]
        assert all(t.variable >= len(before) for t in added)
        assert scheduler.window == StepWindow(2, 2)

        scheduler.solve()
        picks = scheduler.windows[-1].selected
        assert 4 in {t.candidate for t in picks}
        assert all(scheduler.window.contains(t.scan) for t in picks)
        assert len(picks) == 2


class TestCombinedScheduler:
    """Tests for protein coverage scheduling."""

    @pytest.fixture
    def coverage_database(self):
        """P1 has two strong peptides, P2 one weak one; two bins of capacity 1."""
        return PreprocessedDatabase(proteins={
            "P1": [
                PeptideEntry("PEPA", 500.0, 2, 1.0, {0: 1.0, 1: 1.0}),
                PeptideEntry("PEPC", 520.0, 2, 0.9, {0: 1.0, 1: 1.0}),
            ],
            "P2": [PeptideEntry("PEPB", 610.0, 2, 0.1, {0: 1.0, 1: 1.0})],
        })

    def test_scenario_d_coverage_bonus(self, coverage_database):
        """With the bonus, one peptide per protein is chosen."""
        params = SchedulingParams(ms2_spectra_per_rt_bin=1, coverage_bonus=1.0)

        result = CombinedScheduler(params).create_inclusion_list(coverage_database)

        covered = {t.protein_accession for t in result.selected}
        assert covered == {"P1", "P2"}
        assert len(result.selected) == 2
        assert_limits(result, params)

    def test_without_bonus_signal_wins(self, coverage_database):
        params = SchedulingParams(ms2_spectra_per_rt_bin=1)

        result = CombinedScheduler(params).create_inclusion_list(coverage_database)

        assert {t.protein_accession for t in result.selected} == {"P1"}

    def test_construction_only(self, coverage_database):
        result = CombinedScheduler(SchedulingParams()).create_inclusion_list(
            coverage_database, solve=False
        )

        assert result.status == SolverStatus.NOT_SOLVED
        assert result.selected == []
        assert len(result.ranked) == result.formulation.n_variables
        assert result.ranked[0].protein_accession == "P1"

    def test_feature_candidates_with_proteins(self):
        """Combined feature variant over a signal source."""
        source = ArraySignalSource([np.array([9.0, 8.0, 1.0])])
        candidates = [
            point_candidate("a", [(0, 0)], protein="P1"),
            point_candidate("b", [(0, 1)], protein="P1"),
            point_candidate("c", [(0, 2)], protein="P2"),
        ]
        params = SchedulingParams(
            ms2_spectra_per_rt_bin=2, normalize_intensity=False, coverage_bonus=10.0
        )

        result = CombinedScheduler(params).build_and_solve(candidates, source)

        assert result.selected_candidates == [0, 2]
        assert result.formulation.model.name == "combined_feature_based"


class TestBuildAndSolve:
    """Tests for the mode dispatcher."""

    def test_feature_mode(self, scenario_a):
        candidates, source = scenario_a
        params = SchedulingParams(ms2_spectra_per_rt_bin=1, normalize_intensity=False)

        result = build_and_solve(candidates, source, params)
        assert result.selected_candidates == [0, 2]

    def test_sequential_mode(self, grid):
        candidates, source = grid
        result = build_and_solve(candidates, source, SchedulingParams(step_size=2), mode="sequential")
        assert result.n_window_advances == 2

    def test_unknown_mode(self, scenario_a):
        candidates, source = scenario_a
        with pytest.raises(ConfigurationError):
            build_and_solve(candidates, source, SchedulingParams(), mode="greedy")
