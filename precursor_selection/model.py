"""Decision variable index and backend-neutral linear model.

The model is a plain container of binary columns, named constraint rows and
objective coefficients. It is handed to a solver backend (see ``solver.py``)
only at solve time, which keeps it inspectable and lets window patches be
expressed as explicit transforms: every ``with_*`` method returns a new model
with ``version`` incremented and leaves the original untouched.

Column ids double as variable ids. Candidate variables are allocated first,
in creation order, so rebuilding from identical inputs reproduces the same
mapping. Auxiliary columns (protein indicators) follow them.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from enum import Enum

import pandas as pd

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IndexTriple:
    """Links a candidate and a scan to one model variable."""

    candidate: int  # index into the candidate list
    scan: int
    variable: int  # model column id
    rt_probability: float = 1.0
    signal_weight: float = 0.0
    protein_accession: str | None = None


class TripleOrder(Enum):
    """Ordering tags for ``sort_triples``."""

    CANDIDATE = "candidate"
    SCAN = "scan"
    VARIABLE = "variable"


_ORDER_KEYS = {
    TripleOrder.CANDIDATE: lambda t: (t.candidate, t.variable),
    TripleOrder.SCAN: lambda t: (t.scan, t.variable),
    TripleOrder.VARIABLE: lambda t: t.variable,
}


def sort_triples(triples: Iterable[IndexTriple], order: TripleOrder) -> list[IndexTriple]:
    """Return triples sorted by candidate, scan or variable id.

    Ties on candidate or scan are broken by variable id.
    """
    return sorted(triples, key=_ORDER_KEYS[TripleOrder(order)])


def triples_to_frame(triples: Iterable[IndexTriple]) -> pd.DataFrame:
    """Variable index table as a DataFrame, one row per triple."""
    columns = [
        "candidate", "scan", "variable", "rt_probability",
        "signal_weight", "protein_accession",
    ]
    rows = [
        (t.candidate, t.scan, t.variable, t.rt_probability,
         t.signal_weight, t.protein_accession)
        for t in triples
    ]
    return pd.DataFrame(rows, columns=columns)


@dataclass(frozen=True)
class ModelColumn:
    """A bounded (by default binary) model variable."""

    name: str
    objective: float = 0.0
    lower: float = 0.0
    upper: float = 1.0
    binary: bool = True


@dataclass(frozen=True)
class ConstraintRow:
    """``lower <= sum(coef * x) <= upper``; a missing bound is unbounded."""

    name: str
    coefficients: Mapping[int, float]
    lower: float | None = None
    upper: float | None = None

    def activity(self, selected: Iterable[int]) -> float:
        """Row value for a 0/1 assignment given as the set of columns set to 1."""
        return float(sum(self.coefficients.get(v, 0.0) for v in selected))

    def is_satisfied(self, selected: Iterable[int], tol: float = 1e-6) -> bool:
        value = self.activity(selected)
        if self.lower is not None and value < self.lower - tol:
            return False
        if self.upper is not None and value > self.upper + tol:
            return False
        return True


@dataclass
class LinearModel:
    """Binary program: columns, named rows and a linear objective."""

    name: str = "precursor_selection"
    maximize: bool = True
    columns: list[ModelColumn] = field(default_factory=list)
    rows: dict[str, ConstraintRow] = field(default_factory=dict)
    version: int = 0

    @property
    def n_columns(self) -> int:
        return len(self.columns)

    @property
    def n_rows(self) -> int:
        return len(self.rows)

    def add_column(
        self,
        name: str,
        objective: float = 0.0,
        lower: float = 0.0,
        upper: float = 1.0,
        binary: bool = True,
    ) -> int:
        """Append a column during build and return its id."""
        self.columns.append(
            ModelColumn(name=name, objective=objective, lower=lower, upper=upper, binary=binary)
        )
        return len(self.columns) - 1

    def add_row(
        self,
        name: str,
        coefficients: Mapping[int, float],
        lower: float | None = None,
        upper: float | None = None,
    ) -> ConstraintRow:
        """Add a named constraint row during build."""
        if name in self.rows:
            raise ConfigurationError(f"Duplicate constraint row: {name}")
        for col in coefficients:
            if not 0 <= col < len(self.columns):
                raise ConfigurationError(f"Row {name} references unknown column {col}")
        row = ConstraintRow(name=name, coefficients=dict(coefficients), lower=lower, upper=upper)
        self.rows[name] = row
        return row

    def row(self, name: str) -> ConstraintRow:
        return self.rows[name]

    def rows_with_prefix(self, prefix: str) -> list[ConstraintRow]:
        return [row for name, row in self.rows.items() if name.startswith(prefix)]

    def column_index(self, name: str) -> int:
        for i, col in enumerate(self.columns):
            if col.name == name:
                return i
        raise KeyError(name)

    def objective(self) -> dict[int, float]:
        """Non-zero objective coefficients by column id."""
        return {i: c.objective for i, c in enumerate(self.columns) if c.objective != 0.0}

    def objective_value(self, selected: Iterable[int]) -> float:
        return float(sum(self.columns[v].objective for v in selected))

    # ------------------------------------------------------------------
    # Versioned transforms
    # ------------------------------------------------------------------

    def next_version(self) -> LinearModel:
        """Copy with the version bumped. The copy may be extended in place."""
        return LinearModel(
            name=self.name,
            maximize=self.maximize,
            columns=list(self.columns),
            rows=dict(self.rows),
            version=self.version + 1,
        )

    def with_row_bounds(
        self, bounds: Mapping[str, tuple[float | None, float | None]]
    ) -> LinearModel:
        """New model version with the given rows' ``(lower, upper)`` replaced."""
        model = self.next_version()
        for name, (lower, upper) in bounds.items():
            if name not in model.rows:
                raise KeyError(f"Unknown constraint row: {name}")
            model.rows[name] = replace(model.rows[name], lower=lower, upper=upper)
        return model

    def with_rows(self, rows: Iterable[ConstraintRow]) -> LinearModel:
        """New model version with rows added or replaced by name."""
        model = self.next_version()
        for row in rows:
            model.rows[row.name] = row
        return model

    def with_objective(self, coefficients: Mapping[int, float]) -> LinearModel:
        """New model version with the given columns' objective replaced."""
        model = self.next_version()
        for col, value in coefficients.items():
            model.columns[col] = replace(model.columns[col], objective=float(value))
        return model

    def check(self, selected: Iterable[int]) -> list[str]:
        """Names of rows violated by a 0/1 assignment."""
        chosen = list(selected)
        return [name for name, row in self.rows.items() if not row.is_satisfied(chosen)]
