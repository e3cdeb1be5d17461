"""Solver adapter: hands a ``LinearModel`` to an ILP backend through pulp.

Supported backends are CBC (bundled with pulp, the default), GLPK and HiGHS
command-line solvers. The call is synchronous and may run long; any time
limit must be set on the backend through ``SolverConfig.time_limit``.

Outcomes:
- Optimal or best-found solution -> ``Solution`` with the selected column ids
- Infeasible model -> ``Solution`` with status INFEASIBLE and no selection
- Backend crash, undefined status or no solution within the time limit
  -> ``SolverError``
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum

import pulp

from .exceptions import ConfigurationError, SolverError
from .model import LinearModel

logger = logging.getLogger(__name__)


class SolverStatus(Enum):
    OPTIMAL = "optimal"
    FEASIBLE = "feasible"  # best solution found before a backend limit
    INFEASIBLE = "infeasible"
    NOT_SOLVED = "not_solved"  # model built but not handed to a backend


@dataclass
class SolverConfig:
    """Backend selection and limits."""

    backend: str = "cbc"
    time_limit: float | None = None  # seconds
    gap_rel: float | None = None
    threads: int | None = None
    msg: bool = False


@dataclass
class Solution:
    """Column ids set to 1, or an explicit infeasible marker."""

    status: SolverStatus
    selected: list[int] = field(default_factory=list)
    objective_value: float | None = None
    solve_time: float = 0.0

    @property
    def is_feasible(self) -> bool:
        return self.status in (SolverStatus.OPTIMAL, SolverStatus.FEASIBLE)

    @classmethod
    def infeasible(cls) -> Solution:
        return cls(status=SolverStatus.INFEASIBLE)


def get_solver(config: SolverConfig) -> pulp.LpSolver:
    """Create the pulp solver object for ``config.backend``."""
    backend = config.backend.lower()
    if backend == "cbc":
        return pulp.PULP_CBC_CMD(
            msg=config.msg,
            timeLimit=config.time_limit,
            gapRel=config.gap_rel,
            threads=config.threads,
        )
    elif backend == "glpk":
        return pulp.GLPK_CMD(msg=config.msg, timeLimit=config.time_limit)
    elif backend == "highs":
        return pulp.HiGHS_CMD(
            msg=config.msg,
            timeLimit=config.time_limit,
            gapRel=config.gap_rel,
            threads=config.threads,
        )
    else:
        raise ConfigurationError(
            f"Unknown solver backend: {config.backend}. Supported: cbc, glpk, highs"
        )


def to_pulp(model: LinearModel) -> tuple[pulp.LpProblem, list[pulp.LpVariable]]:
    """Translate the model into a pulp problem.

    Columns and rows get index-based names (``c<i>``, ``r<k>``) since pulp
    rewrites characters such as ``-`` that occur in accessions.
    Rows without coefficients are dropped.
    """
    sense = pulp.LpMaximize if model.maximize else pulp.LpMinimize
    prob = pulp.LpProblem(model.name, sense)

    variables = [
        pulp.LpVariable(
            f"c{i}",
            lowBound=col.lower,
            upBound=col.upper,
            cat=pulp.LpBinary if col.binary else pulp.LpContinuous,
        )
        for i, col in enumerate(model.columns)
    ]

    prob += pulp.lpSum(col.objective * variables[i] for i, col in enumerate(model.columns)
                       if col.objective != 0.0), "objective"

    for k, row in enumerate(model.rows.values()):
        if not row.coefficients:
            continue
        expr = pulp.lpSum(coef * variables[v] for v, coef in row.coefficients.items())
        if row.lower is not None and row.upper is not None and row.lower == row.upper:
            prob += expr == row.upper, f"r{k}"
            continue
        if row.upper is not None:
            prob += expr <= row.upper, f"r{k}_ub"
        if row.lower is not None:
            prob += expr >= row.lower, f"r{k}_lb"

    return prob, variables


def _trivially_infeasible(model: LinearModel) -> list[str]:
    """Empty rows whose bounds exclude zero."""
    bad = []
    for row in model.rows.values():
        if row.coefficients:
            continue
        if (row.upper is not None and row.upper < 0) or (row.lower is not None and row.lower > 0):
            bad.append(row.name)
    return bad


def solve_model(
    model: LinearModel,
    config: SolverConfig | None = None,
    solver: pulp.LpSolver | None = None,
) -> Solution:
    """Solve the model and return the selected column ids.

    Args:
        model: Model to solve; not modified
        config: Backend selection and limits (default: CBC, no limit)
        solver: Preconfigured pulp solver, overrides ``config``

    Returns:
        Solution (OPTIMAL, FEASIBLE or INFEASIBLE)

    Raises:
        SolverError: The backend failed or returned no usable status
        ConfigurationError: Unknown backend name

    """
    config = config or SolverConfig()

    bad_rows = _trivially_infeasible(model)
    if bad_rows:
        logger.info(f"Model infeasible before solve: empty rows {bad_rows}")
        return Solution.infeasible()

    if model.n_columns == 0:
        logger.info("Model has no variables; returning empty solution")
        return Solution(status=SolverStatus.OPTIMAL, selected=[], objective_value=0.0)

    prob, variables = to_pulp(model)
    backend = solver if solver is not None else get_solver(config)

    logger.info(
        f"Solving '{model.name}' (version {model.version}): "
        f"{model.n_columns} columns, {prob.numConstraints()} rows"
    )
    start = time.time()
    try:
        prob.solve(backend)
    except pulp.PulpSolverError as e:
        raise SolverError(f"Solver backend failed on '{model.name}': {e}") from e
    elapsed = time.time() - start

    status = prob.status
    if status == pulp.LpStatusInfeasible:
        logger.info(f"Model '{model.name}' is infeasible ({elapsed:.2f}s)")
        return Solution(status=SolverStatus.INFEASIBLE, solve_time=elapsed)
    if status != pulp.LpStatusOptimal:
        raise SolverError(
            f"Solver returned status '{pulp.LpStatus.get(status, status)}' for '{model.name}'"
        )

    selected = [
        i for i, var in enumerate(variables)
        if var.varValue is not None and var.varValue > 0.5
    ]
    result_status = SolverStatus.OPTIMAL
    if getattr(prob, "sol_status", None) == pulp.LpSolutionIntegerFeasible:
        result_status = SolverStatus.FEASIBLE

    objective_value = model.objective_value(selected)
    logger.info(
        f"Solved '{model.name}': {result_status.value}, {len(selected)} columns selected, "
        f"objective {objective_value:.4f} ({elapsed:.2f}s)"
    )
    return Solution(
        status=result_status,
        selected=selected,
        objective_value=objective_value,
        solve_time=elapsed,
    )
