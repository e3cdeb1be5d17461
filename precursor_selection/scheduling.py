"""Scheduling drivers: build -> solve -> commit cycles.

Three drivers share one state machine:

    IDLE -> BUILDING_MODEL -> SOLVING -> SOLVED | INFEASIBLE
         (sequential only) -> ADVANCE_WINDOW -> SOLVING -> ... -> DONE

- FeatureBasedScheduler: one build and one solve over the whole run
- CombinedScheduler: protein coverage indicators active; supports a
  construction-only mode that returns a ranked assignment without solving,
  and protein-based inclusion list creation from a preprocessed database
- SequentialScheduler: rolling step window; each window is solved on a
  patched model version, its picks are committed and count against the
  per-candidate caps and the global list size of later windows

A driver instance owns its model. Calls on one instance must not overlap.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field, replace
from enum import Enum

import pandas as pd

from .candidates import Candidate, PreprocessedDatabase
from .exceptions import ConfigurationError
from .formulation import (
    Formulation,
    SchedulingParams,
    StepWindow,
    add_candidates,
    build_feature_model,
    build_protein_model,
    patch_window,
    ranked_assignment,
    revise_objective,
)
from .model import IndexTriple, triples_to_frame
from .signal import SpectralDataSource, calculate_xics
from .solver import Solution, SolverConfig, SolverStatus, solve_model

logger = logging.getLogger(__name__)

# Receives committed candidate indices, returns accessions considered identified
ProteinInference = Callable[[list[int]], Iterable[str]]


class SchedulerState(Enum):
    IDLE = "idle"
    BUILDING_MODEL = "building_model"
    SOLVING = "solving"
    SOLVED = "solved"
    INFEASIBLE = "infeasible"
    ADVANCE_WINDOW = "advance_window"
    DONE = "done"


@dataclass
class WindowResult:
    """Outcome of one window of a sequential run."""

    window: StepWindow
    model_version: int
    status: SolverStatus
    selected: list[IndexTriple] = field(default_factory=list)


@dataclass
class ScheduleResult:
    """Result of a scheduling run."""

    formulation: Formulation
    solution: Solution
    selected: list[IndexTriple]
    ranked: list[IndexTriple] = field(default_factory=list)
    windows: list[WindowResult] = field(default_factory=list)
    method_log: list[str] = field(default_factory=list)

    @property
    def status(self) -> SolverStatus:
        return self.solution.status

    @property
    def selected_candidates(self) -> list[int]:
        return sorted({t.candidate for t in self.selected})

    @property
    def n_window_advances(self) -> int:
        return len(self.windows)


def selected_triples(triples: Sequence[IndexTriple], solution: Solution) -> list[IndexTriple]:
    """Triples whose variable is set in ``solution``, by variable id."""
    chosen = set(solution.selected)
    return [t for t in triples if t.variable in chosen]


class _Scheduler:
    """State handling and accessors shared by the drivers."""

    def __init__(self, params: SchedulingParams, solver_config: SolverConfig | None = None):
        params.validate()
        self.params = params
        self.solver_config = solver_config or SolverConfig()
        self.state = SchedulerState.IDLE
        self._formulation: Formulation | None = None
        self.method_log: list[str] = []

    def _transition(self, state: SchedulerState) -> None:
        logger.debug(f"{type(self).__name__}: {self.state.value} -> {state.value}")
        self.state = state

    @property
    def formulation(self) -> Formulation:
        if self._formulation is None:
            raise RuntimeError("No model built yet; call build() first")
        return self._formulation

    @property
    def variable_indices(self) -> list[IndexTriple]:
        """Current variable index table."""
        return self.formulation.triples

    def variable_table(self) -> pd.DataFrame:
        return triples_to_frame(self.variable_indices)

    def _build_features(
        self,
        candidates: Sequence[Candidate],
        source: SpectralDataSource,
        params: SchedulingParams,
        protein_coverage: bool,
    ) -> Formulation:
        self._transition(SchedulerState.BUILDING_MODEL)
        xics = calculate_xics(
            [c.mass_ranges for c in candidates], source, normalize=params.normalize_intensity
        )
        formulation = build_feature_model(
            candidates, xics, len(source), params, protein_coverage=protein_coverage
        )
        self._formulation = formulation
        self.method_log.append(
            f"Built {formulation.model.name} model: {formulation.n_variables} variables, "
            f"{formulation.model.n_rows} rows"
        )
        return formulation

    def solve(self) -> Solution:
        """Solve the current model."""
        formulation = self.formulation
        self._transition(SchedulerState.SOLVING)
        solution = solve_model(formulation.model, self.solver_config)
        if solution.is_feasible:
            self._transition(SchedulerState.SOLVED)
        else:
            self._transition(SchedulerState.INFEASIBLE)
        self.method_log.append(
            f"Solved model version {formulation.model.version}: {solution.status.value}, "
            f"{len(solution.selected)} columns selected"
        )
        return solution

    def _result(self, solution: Solution, ranked: list[IndexTriple] | None = None) -> ScheduleResult:
        formulation = self.formulation
        return ScheduleResult(
            formulation=formulation,
            solution=solution,
            selected=selected_triples(formulation.triples, solution),
            ranked=ranked or [],
            method_log=list(self.method_log),
        )


class FeatureBasedScheduler(_Scheduler):
    """Single build and solve over the whole experiment."""

    def build(self, candidates: Sequence[Candidate], source: SpectralDataSource) -> Formulation:
        params = replace(self.params, step_size=0)
        return self._build_features(candidates, source, params, protein_coverage=False)

    def build_and_solve(
        self, candidates: Sequence[Candidate], source: SpectralDataSource
    ) -> ScheduleResult:
        self.build(candidates, source)
        solution = self.solve()
        self._transition(SchedulerState.DONE)
        return self._result(solution)


class CombinedScheduler(_Scheduler):
    """Feature-based selection with protein coverage indicators.

    With ``solve=False`` the model is only constructed; the result carries a
    ranked assignment and a NOT_SOLVED solution.
    """

    def build(self, candidates: Sequence[Candidate], source: SpectralDataSource) -> Formulation:
        params = replace(self.params, step_size=0)
        return self._build_features(candidates, source, params, protein_coverage=True)

    def build_and_solve(
        self,
        candidates: Sequence[Candidate],
        source: SpectralDataSource,
        solve: bool = True,
    ) -> ScheduleResult:
        self.build(candidates, source)
        return self._finish(solve)

    def create_inclusion_list(
        self, database: PreprocessedDatabase, solve: bool = True
    ) -> ScheduleResult:
        """Select peptides maximizing protein coverage under bin capacity."""
        self._transition(SchedulerState.BUILDING_MODEL)
        params = replace(self.params, step_size=0)
        formulation = build_protein_model(database, params)
        self._formulation = formulation
        self.method_log.append(
            f"Built protein_based model: {len(database.proteins)} proteins, "
            f"{formulation.n_variables} variables, {formulation.model.n_rows} rows"
        )
        return self._finish(solve)

    def _finish(self, solve: bool) -> ScheduleResult:
        ranked = ranked_assignment(self.formulation)
        if not solve:
            self.method_log.append("Construction only: model not solved")
            self._transition(SchedulerState.DONE)
            return self._result(Solution(status=SolverStatus.NOT_SOLVED), ranked)
        solution = self.solve()
        self._transition(SchedulerState.DONE)
        return self._result(solution, ranked)


class SequentialScheduler(_Scheduler):
    """Rolling-horizon scheduling over step windows of RT bins."""

    def __init__(
        self,
        params: SchedulingParams,
        solver_config: SolverConfig | None = None,
        on_infeasible: str = "skip",
        protein_inference: ProteinInference | None = None,
        protein_coverage: bool = False,
    ):
        super().__init__(params, solver_config)
        if params.step_size <= 0:
            raise ConfigurationError("Sequential scheduling requires step_size > 0")
        if on_infeasible not in ("skip", "abort"):
            raise ConfigurationError(
                f"on_infeasible must be 'skip' or 'abort', got {on_infeasible}"
            )
        self.on_infeasible = on_infeasible
        self.protein_inference = protein_inference
        self.protein_coverage = protein_coverage
        self.committed: list[IndexTriple] = []
        self.windows: list[WindowResult] = []
        self._identified: set[str] = set()
        # Objective of every column before window revisions
        self._base_objective: list[float] = []

    @property
    def window(self) -> StepWindow:
        window = self.formulation.window
        if window is None:
            raise RuntimeError("Model has no step window")
        return window

    @property
    def is_done(self) -> bool:
        return self.window.start >= self.formulation.n_scans

    def build(self, candidates: Sequence[Candidate], source: SpectralDataSource) -> Formulation:
        self.committed = []
        self.windows = []
        self._identified = set()
        formulation = self._build_features(
            candidates, source, self.params, protein_coverage=self.protein_coverage
        )
        self._base_objective = [c.objective for c in formulation.model.columns]
        return formulation

    def add_candidates(
        self, candidates: Sequence[Candidate], source: SpectralDataSource
    ) -> Formulation:
        """Add candidates detected after the run started.

        Existing variable ids and committed picks are unchanged. The new
        variables take part from the next solve on; proteins identified so
        far are down-weighted for them as well.
        """
        formulation = self.formulation
        xics = calculate_xics(
            [c.mass_ranges for c in candidates], source, normalize=self.params.normalize_intensity
        )
        n_columns = formulation.model.n_columns
        updated = add_candidates(formulation, candidates, xics, self.params)
        self._base_objective.extend(c.objective for c in updated.model.columns[n_columns:])

        if self._identified:
            new_proteins = {
                acc: col for acc, col in updated.protein_columns.items() if col >= n_columns
            }
            model = revise_objective(
                updated.model,
                updated.triples[formulation.n_variables:],
                self._identified,
                new_proteins,
                self.params.identified_protein_weight,
            )
            updated = replace(updated, model=model)

        self._formulation = updated
        self.method_log.append(
            f"Added {len(candidates)} candidates: "
            f"{updated.n_variables - formulation.n_variables} variables "
            f"-> model version {updated.model.version}"
        )
        return updated

    def solve(self) -> Solution:
        """Solve the current window and commit its picks."""
        window = self.window
        version = self.formulation.model.version
        solution = super().solve()

        if solution.is_feasible:
            picks = selected_triples(self.formulation.triples, solution)
            self.committed.extend(picks)
            logger.info(
                f"Window [{window.start}, {window.end}): committed {len(picks)} precursors "
                f"({len(self.committed)} total)"
            )
        else:
            picks = []
            logger.warning(f"Window [{window.start}, {window.end}) is infeasible")

        self.windows.append(
            WindowResult(window=window, model_version=version, status=solution.status, selected=picks)
        )
        return solution

    def update_window(self, step_size: int | None = None) -> StepWindow:
        """Advance the window and patch the model to it.

        Returns the new window; when it starts past the last scan the run is
        done and no patch is applied.
        """
        self._transition(SchedulerState.ADVANCE_WINDOW)
        current = self.window
        size = step_size if step_size is not None else current.size
        if size <= 0:
            raise ConfigurationError(f"step_size must be positive, got {size}")
        new_window = StepWindow(current.end, size)

        formulation = self.formulation
        if new_window.start >= formulation.n_scans:
            self._formulation = replace(formulation, window=new_window)
            self._transition(SchedulerState.DONE)
            return new_window

        if self.protein_inference is not None:
            formulation = self._apply_protein_inference(formulation)

        self._formulation = patch_window(formulation, new_window, self.params, self.committed)
        self.method_log.append(
            f"Advanced to window [{new_window.start}, {new_window.end}) "
            f"-> model version {self._formulation.model.version}"
        )
        return new_window

    def _apply_protein_inference(self, formulation: Formulation) -> Formulation:
        identified = set(self.protein_inference(sorted({t.candidate for t in self.committed})))
        new = identified - self._identified
        if not new:
            return formulation
        self._identified |= new
        model = revise_objective(
            formulation.model,
            formulation.triples,
            new,
            formulation.protein_columns,
            self.params.identified_protein_weight,
        )
        self.method_log.append(f"Revised objective for identified proteins: {sorted(new)}")
        return replace(formulation, model=model)

    def run(self, candidates: Sequence[Candidate], source: SpectralDataSource) -> ScheduleResult:
        """Schedule every window until the window passes the last scan."""
        self.build(candidates, source)

        aborted = False
        while not self.is_done:
            solution = self.solve()
            if not solution.is_feasible and self.on_infeasible == "abort":
                logger.warning("Aborting sequential run on infeasible window")
                aborted = True
                break
            self.update_window()

        self._transition(SchedulerState.DONE)
        logger.info(
            f"Sequential run finished: {len(self.windows)} windows, "
            f"{len(self.committed)} precursors selected"
        )
        return self._sequential_result(aborted)

    def _sequential_result(self, aborted: bool) -> ScheduleResult:
        formulation = self.formulation
        statuses = {w.status for w in self.windows}
        if aborted or statuses == {SolverStatus.INFEASIBLE}:
            solution = Solution.infeasible()
            selected: list[IndexTriple] = []
        else:
            status = SolverStatus.OPTIMAL
            if statuses - {SolverStatus.OPTIMAL}:
                status = SolverStatus.FEASIBLE
            selected = sorted(self.committed, key=lambda t: t.variable)
            columns = [t.variable for t in selected]
            # Coverage indicators of proteins reached by any window
            covered = {t.protein_accession for t in selected}
            columns += [
                col for acc, col in sorted(formulation.protein_columns.items()) if acc in covered
            ]
            solution = Solution(
                status=status,
                selected=columns,
                objective_value=float(sum(self._base_objective[c] for c in columns)),
            )
        return ScheduleResult(
            formulation=formulation,
            solution=solution,
            selected=selected,
            windows=list(self.windows),
            method_log=list(self.method_log),
        )


def build_and_solve(
    candidates: Sequence[Candidate],
    source: SpectralDataSource,
    params: SchedulingParams,
    solver_config: SolverConfig | None = None,
    mode: str = "feature",
) -> ScheduleResult:
    """Run one of the drivers.

    Args:
        candidates: Candidate precursors
        source: Raw intensity lookup
        params: Scheduling parameters
        solver_config: Backend selection and limits
        mode: 'feature', 'combined' or 'sequential'

    Returns:
        ScheduleResult

    """
    if mode == "feature":
        return FeatureBasedScheduler(params, solver_config).build_and_solve(candidates, source)
    elif mode == "combined":
        return CombinedScheduler(params, solver_config).build_and_solve(candidates, source)
    elif mode == "sequential":
        return SequentialScheduler(params, solver_config).run(candidates, source)
    else:
        raise ConfigurationError(
            f"Unknown scheduling mode: {mode}. Supported: feature, combined, sequential"
        )
