"""ILP formulation of precursor selection.

Builds a ``LinearModel`` from candidates and scheduling parameters. One binary
variable x(c, s) is created for every candidate c passing the charge filter
and every scan s it elutes in. Constraint families (each independently
toggleable through ``SchedulingParams``):

    RT_CAP_<s>            sum_c x(c, s)            <= ms2_spectra_per_rt_bin
    PREC_ACQU_LIMIT_<c>   sum_s x(c, s)            <= number_of_msms_per_precursor
    LIST_SIZE             sum_{c,s} x(c, s)        <= max_list_size
    PROT_COVER_<acc>      y(acc) - sum x(c in acc) <= 0
    STEP_WINDOW           sum x(c, s), s outside window <= 0

Objective (maximize):

    sum signal_weight(c, s) * [rt_probability(c, s)] * x(c, s)
        + coverage_bonus * sum_acc y(acc)

Sequential scheduling keeps all variables and moves the window by returning
patched model versions (``patch_window``) instead of rebuilding. Candidates
detected mid-run are appended the same way (``add_candidates``).
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field, replace

from .candidates import Candidate, PreprocessedDatabase, expand_protein_candidates
from .exceptions import ConfigurationError
from .model import ConstraintRow, IndexTriple, LinearModel, TripleOrder, sort_triples
from .signal import SignalWeights

logger = logging.getLogger(__name__)

RT_CAP_PREFIX = "RT_CAP_"
ACQUISITION_PREFIX = "PREC_ACQU_LIMIT_"
LIST_SIZE_ROW = "LIST_SIZE"
COVERAGE_PREFIX = "PROT_COVER_"
STEP_WINDOW_ROW = "STEP_WINDOW"


@dataclass
class SchedulingParams:
    """Parameters of the precursor selection ILP."""

    # Capacity
    ms2_spectra_per_rt_bin: int = 5
    number_of_msms_per_precursor: int = 1
    max_list_size: int | None = None
    allowed_charges: list[int] = field(default_factory=lambda: [1, 2, 3, 4])

    # Constraint toggles
    rt_bin_capacity: bool = True
    precursor_acquisition_cap: bool = True

    # Objective
    normalize_intensity: bool = True
    use_rt_probability: bool = False
    coverage_bonus: float = 0.0
    identified_protein_weight: float = 0.0
    tie_break_epsilon: float = 0.0  # > 0: lowest variable id wins exact ties

    # Protein-based variant: RT bins below this probability get no variable
    min_rt_probability: float = 0.2

    # Sequential variant (0 = single shot)
    step_size: int = 0

    def validate(self) -> None:
        """Raise ConfigurationError for invalid settings."""
        if not self.allowed_charges:
            raise ConfigurationError("Allowed charge set is empty")
        if self.ms2_spectra_per_rt_bin <= 0:
            raise ConfigurationError(
                f"ms2_spectra_per_rt_bin must be positive, got {self.ms2_spectra_per_rt_bin}"
            )
        if self.number_of_msms_per_precursor <= 0:
            raise ConfigurationError(
                "number_of_msms_per_precursor must be positive, "
                f"got {self.number_of_msms_per_precursor}"
            )
        if self.max_list_size is not None and self.max_list_size <= 0:
            raise ConfigurationError(
                f"max_list_size must be positive, got {self.max_list_size}"
            )
        if self.step_size < 0:
            raise ConfigurationError(f"step_size must be >= 0, got {self.step_size}")
        if not 0.0 <= self.min_rt_probability <= 1.0:
            raise ConfigurationError(
                f"min_rt_probability must be in [0, 1], got {self.min_rt_probability}"
            )
        if self.coverage_bonus < 0:
            raise ConfigurationError(f"coverage_bonus must be >= 0, got {self.coverage_bonus}")
        if self.tie_break_epsilon < 0:
            raise ConfigurationError(
                f"tie_break_epsilon must be >= 0, got {self.tie_break_epsilon}"
            )


@dataclass(frozen=True)
class StepWindow:
    """Half-open scan window ``[start, start + size)`` of a sequential run."""

    start: int
    size: int

    @property
    def end(self) -> int:
        return self.start + self.size

    def contains(self, scan: int) -> bool:
        return self.start <= scan < self.end

    def advance(self) -> StepWindow:
        return StepWindow(self.start + self.size, self.size)


@dataclass
class Formulation:
    """A built model together with its variable index."""

    model: LinearModel
    triples: list[IndexTriple]
    candidates: list[Candidate]
    n_scans: int
    protein_columns: dict[str, int] = field(default_factory=dict)
    window: StepWindow | None = None
    protein_coverage: bool = False

    @property
    def n_variables(self) -> int:
        return len(self.triples)


def rt_cap_row_name(scan: int) -> str:
    return f"{RT_CAP_PREFIX}{scan}"


def acquisition_row_name(candidate: int) -> str:
    return f"{ACQUISITION_PREFIX}{candidate}"


def coverage_row_name(accession: str) -> str:
    return f"{COVERAGE_PREFIX}{accession}"


# ============================================================================
# Variables
# ============================================================================


def _create_variables(
    model: LinearModel,
    candidates: Sequence[Candidate],
    entries: Sequence[Sequence[tuple[int, float, float]]],
    params: SchedulingParams,
    n_scans: int,
    first_candidate: int = 0,
) -> list[IndexTriple]:
    """Allocate one column per (candidate, scan) passing the charge filter.

    ``entries[i]`` lists ``(scan, signal_weight, rt_probability)`` for
    ``candidates[i]``, which is numbered ``first_candidate + i``. Duplicate
    scans of one candidate are merged (weights summed).
    """
    charges = set(params.allowed_charges)
    triples: list[IndexTriple] = []
    n_filtered = 0

    for offset, cand in enumerate(candidates):
        i = first_candidate + offset
        if cand.charge not in charges:
            n_filtered += 1
            continue

        merged: dict[int, tuple[float, float]] = {}
        for scan, weight, rt_prob in entries[offset]:
            if not 0 <= scan < n_scans:
                raise ConfigurationError(
                    f"Candidate {cand.candidate_id} references scan {scan} "
                    f"outside [0, {n_scans})"
                )
            if scan in merged:
                prev_weight, prev_prob = merged[scan]
                merged[scan] = (prev_weight + weight, max(prev_prob, rt_prob))
            else:
                merged[scan] = (weight, rt_prob)

        for scan, (weight, rt_prob) in merged.items():
            coef = weight * rt_prob if params.use_rt_probability else weight
            var = model.add_column(f"x_{i}_{scan}", objective=coef)
            triples.append(
                IndexTriple(
                    candidate=i,
                    scan=scan,
                    variable=var,
                    rt_probability=rt_prob,
                    signal_weight=weight,
                    protein_accession=cand.protein_accession,
                )
            )

    if n_filtered:
        logger.debug(f"Charge filter removed {n_filtered} of {len(candidates)} candidates")
    return triples


def _apply_tie_break(model: LinearModel, triples: Sequence[IndexTriple], epsilon: float) -> None:
    # Strictly decreasing in the variable id, also for appended columns
    if epsilon <= 0:
        return
    for t in triples:
        col = model.columns[t.variable]
        bonus = epsilon / (t.variable + 1)
        model.columns[t.variable] = replace(col, objective=col.objective + bonus)


# ============================================================================
# Constraints
# ============================================================================


def add_rt_bin_capacity_constraint(
    model: LinearModel,
    triples: Sequence[IndexTriple],
    ms2_spectra_per_rt_bin: int,
    window: StepWindow | None = None,
) -> int:
    """One row per scan bin: selected precursors <= capacity.

    With a window, bins outside it get capacity 0. Returns rows added.
    """
    by_scan: dict[int, dict[int, float]] = {}
    for t in sort_triples(triples, TripleOrder.SCAN):
        by_scan.setdefault(t.scan, {})[t.variable] = 1.0

    for scan, coefs in by_scan.items():
        upper = ms2_spectra_per_rt_bin
        if window is not None and not window.contains(scan):
            upper = 0
        model.add_row(rt_cap_row_name(scan), coefs, upper=float(upper))

    logger.debug(f"Added {len(by_scan)} RT bin capacity rows (capacity {ms2_spectra_per_rt_bin})")
    return len(by_scan)


def add_precursor_acquisition_number_constraint(
    model: LinearModel,
    triples: Sequence[IndexTriple],
    number_of_msms_per_precursor: int,
) -> int:
    """One row per candidate: number of scans it is selected in <= cap."""
    by_candidate: dict[int, dict[int, float]] = {}
    for t in sort_triples(triples, TripleOrder.CANDIDATE):
        by_candidate.setdefault(t.candidate, {})[t.variable] = 1.0

    for cand, coefs in by_candidate.items():
        model.add_row(
            acquisition_row_name(cand), coefs, upper=float(number_of_msms_per_precursor)
        )

    logger.debug(f"Added {len(by_candidate)} precursor acquisition rows")
    return len(by_candidate)


def add_max_inclusion_list_size_constraint(
    model: LinearModel,
    triples: Sequence[IndexTriple],
    max_list_size: int,
) -> None:
    """Global row: total selected variables <= max_list_size."""
    model.add_row(
        LIST_SIZE_ROW, {t.variable: 1.0 for t in triples}, upper=float(max_list_size)
    )


def add_protein_coverage_constraint(
    model: LinearModel,
    triples: Sequence[IndexTriple],
    coverage_bonus: float,
) -> dict[str, int]:
    """One indicator per protein, set only if one of its peptides is selected.

    Row ``y(acc) - sum x(c in acc) <= 0`` lets the indicator be 1 only when
    at least one of the protein's variables is 1. Returns accession -> column.
    """
    by_protein: dict[str, list[int]] = {}
    for t in sort_triples(triples, TripleOrder.VARIABLE):
        if t.protein_accession is None:
            continue
        by_protein.setdefault(t.protein_accession, []).append(t.variable)

    protein_columns: dict[str, int] = {}
    for acc in sorted(by_protein):
        col = model.add_column(f"y_{acc}", objective=coverage_bonus)
        protein_columns[acc] = col
        coefs = {col: 1.0}
        coefs.update({v: -1.0 for v in by_protein[acc]})
        model.add_row(coverage_row_name(acc), coefs, upper=0.0)

    logger.debug(f"Added coverage indicators for {len(protein_columns)} proteins")
    return protein_columns


def step_window_row(triples: Iterable[IndexTriple], window: StepWindow) -> ConstraintRow:
    """Row forbidding every variable whose scan lies outside ``window``."""
    coefs = {t.variable: 1.0 for t in triples if not window.contains(t.scan)}
    return ConstraintRow(name=STEP_WINDOW_ROW, coefficients=coefs, upper=0.0)


def add_step_size_constraint(
    model: LinearModel,
    triples: Sequence[IndexTriple],
    window: StepWindow,
) -> None:
    row = step_window_row(triples, window)
    model.add_row(row.name, row.coefficients, upper=row.upper)


# ============================================================================
# Builders
# ============================================================================


def _assemble(
    name: str,
    candidates: Sequence[Candidate],
    entries: Sequence[Sequence[tuple[int, float, float]]],
    params: SchedulingParams,
    n_scans: int,
    protein_coverage: bool,
) -> Formulation:
    model = LinearModel(name=name, maximize=True)
    triples = _create_variables(model, candidates, entries, params, n_scans)

    window = None
    if params.step_size > 0:
        window = StepWindow(0, params.step_size)

    if params.rt_bin_capacity:
        add_rt_bin_capacity_constraint(model, triples, params.ms2_spectra_per_rt_bin, window)
    if params.precursor_acquisition_cap:
        add_precursor_acquisition_number_constraint(
            model, triples, params.number_of_msms_per_precursor
        )
    if params.max_list_size is not None:
        add_max_inclusion_list_size_constraint(model, triples, params.max_list_size)

    protein_columns: dict[str, int] = {}
    if protein_coverage:
        protein_columns = add_protein_coverage_constraint(model, triples, params.coverage_bonus)

    if window is not None:
        add_step_size_constraint(model, triples, window)

    _apply_tie_break(model, triples, params.tie_break_epsilon)

    logger.info(
        f"Built model '{name}': {len(triples)} variables, "
        f"{model.n_columns - len(triples)} auxiliary columns, {model.n_rows} rows"
    )
    return Formulation(
        model=model,
        triples=triples,
        candidates=list(candidates),
        n_scans=n_scans,
        protein_columns=protein_columns,
        window=window,
        protein_coverage=protein_coverage,
    )


def _feature_entries(
    candidates: Sequence[Candidate],
    xics: Sequence[SignalWeights],
) -> list[list[tuple[int, float, float]]]:
    if len(xics) != len(candidates):
        raise ConfigurationError(
            f"Got {len(candidates)} candidates but {len(xics)} signal weight sets"
        )
    return [
        [(scan, w, cand.rt_probability) for scan, w in zip(xic.scans, xic.weights)]
        for cand, xic in zip(candidates, xics)
    ]


def build_feature_model(
    candidates: Sequence[Candidate],
    xics: Sequence[SignalWeights],
    n_scans: int,
    params: SchedulingParams,
    protein_coverage: bool = False,
) -> Formulation:
    """Build the feature-based ILP from candidates and their signal weights.

    Args:
        candidates: Candidate precursors
        xics: Signal weights per candidate (index-aligned with ``candidates``)
        n_scans: Number of scans (RT bins) in the signal source
        params: Scheduling parameters
        protein_coverage: Add protein indicators for candidates carrying an
            accession (combined protein + feature variant)

    Returns:
        Formulation with model and variable index

    Raises:
        ConfigurationError: Size mismatch or invalid parameters

    """
    params.validate()
    entries = _feature_entries(candidates, xics)

    name = "combined_feature_based" if protein_coverage else "feature_based"
    return _assemble(name, candidates, entries, params, n_scans, protein_coverage)


def build_protein_model(
    database: PreprocessedDatabase,
    params: SchedulingParams,
) -> Formulation:
    """Build the protein-coverage ILP for inclusion list creation.

    Every (protein, peptide) pair is a candidate with one variable per RT bin
    whose elution probability reaches ``min_rt_probability``. The objective
    coefficient is detectability x RT probability.
    """
    params.validate()
    expanded = expand_protein_candidates(database)
    candidates = [pc.candidate for pc in expanded]

    entries = []
    for pc in expanded:
        pep = pc.peptide
        entries.append([
            (int(rt_bin), pep.detectability, prob)
            for rt_bin, prob in sorted(pep.rt_probabilities.items())
            if prob >= params.min_rt_probability
        ])

    # The objective always includes the RT probability in this variant
    protein_params = replace(params, use_rt_probability=True)
    return _assemble(
        "protein_based", candidates, entries, protein_params,
        database.n_rt_bins, protein_coverage=True,
    )


def ranked_assignment(formulation: Formulation) -> list[IndexTriple]:
    """Triples ordered by descending objective coefficient, ties by variable id."""
    columns = formulation.model.columns
    return sorted(
        formulation.triples,
        key=lambda t: (-columns[t.variable].objective, t.variable),
    )


# ============================================================================
# Window patches
# ============================================================================


def patch_rt_capacity(
    model: LinearModel,
    window: StepWindow,
    ms2_spectra_per_rt_bin: int,
) -> LinearModel:
    """Open the bins inside ``window`` to full capacity and close all others."""
    bounds = {}
    for row in model.rows_with_prefix(RT_CAP_PREFIX):
        scan = int(row.name[len(RT_CAP_PREFIX):])
        upper = ms2_spectra_per_rt_bin if window.contains(scan) else 0
        bounds[row.name] = (None, float(upper))
    return model.with_row_bounds(bounds)


def patch_step_window(
    model: LinearModel,
    triples: Sequence[IndexTriple],
    window: StepWindow,
) -> LinearModel:
    return model.with_rows([step_window_row(triples, window)])


def patch_committed(
    model: LinearModel,
    committed: Iterable[IndexTriple],
    params: SchedulingParams,
    protein_columns: Mapping[str, int] | None = None,
) -> LinearModel:
    """Shrink per-candidate caps and the list-size budget by committed picks.

    Proteins already covered by a committed pick lose their coverage bonus,
    so a later window cannot earn it a second time.
    """
    committed = list(committed)
    per_candidate = Counter(t.candidate for t in committed)

    bounds: dict[str, tuple[float | None, float | None]] = {}
    if params.precursor_acquisition_cap:
        for cand, count in per_candidate.items():
            name = acquisition_row_name(cand)
            if name in model.rows:
                remaining = max(0, params.number_of_msms_per_precursor - count)
                bounds[name] = (None, float(remaining))
    if params.max_list_size is not None and LIST_SIZE_ROW in model.rows:
        bounds[LIST_SIZE_ROW] = (None, float(max(0, params.max_list_size - len(committed))))

    covered = {t.protein_accession for t in committed}
    updates = {
        col: 0.0
        for acc, col in (protein_columns or {}).items()
        if acc in covered and model.columns[col].objective != 0.0
    }

    if bounds:
        model = model.with_row_bounds(bounds)
    if updates:
        model = model.with_objective(updates)
    return model


def patch_window(
    formulation: Formulation,
    window: StepWindow,
    params: SchedulingParams,
    committed: Iterable[IndexTriple] = (),
) -> Formulation:
    """Return a formulation scoped to ``window``.

    Applies the RT capacity, step window and committed-solution patches to a
    new model version. The variable index is shared, not copied.
    """
    model = formulation.model
    if params.rt_bin_capacity:
        model = patch_rt_capacity(model, window, params.ms2_spectra_per_rt_bin)
    model = patch_step_window(model, formulation.triples, window)
    model = patch_committed(model, committed, params, formulation.protein_columns)

    logger.debug(
        f"Patched model to window [{window.start}, {window.end}) -> version {model.version}"
    )
    return replace(formulation, model=model, window=window)


def _extend_row(
    model: LinearModel, name: str, coefficients: dict[int, float], upper: float
) -> None:
    if name in model.rows:
        row = model.rows[name]
        model.rows[name] = replace(row, coefficients={**row.coefficients, **coefficients})
    else:
        model.add_row(name, coefficients, upper=upper)


def add_candidates(
    formulation: Formulation,
    candidates: Sequence[Candidate],
    xics: Sequence[SignalWeights],
    params: SchedulingParams,
) -> Formulation:
    """Append variables for candidates detected after the model was built.

    New candidates are numbered after the existing ones and their columns
    follow the existing columns, so variable ids already handed out stay
    valid. On a new model version the RT capacity, acquisition, list-size,
    coverage and step-window rows are extended to the new variables.
    Existing row bounds are kept; a new RT bin row inside the current window
    gets full capacity and one outside it gets 0.

    Args:
        formulation: Current formulation (possibly patched to a window)
        candidates: Newly detected candidates
        xics: Signal weights per new candidate
        params: Scheduling parameters the formulation was built with

    Returns:
        Formulation over the old and new candidates

    """
    entries = _feature_entries(candidates, xics)
    model = formulation.model.next_version()
    new_triples = _create_variables(
        model, candidates, entries, params, formulation.n_scans,
        first_candidate=len(formulation.candidates),
    )
    window = formulation.window

    if params.rt_bin_capacity:
        by_scan: dict[int, dict[int, float]] = {}
        for t in new_triples:
            by_scan.setdefault(t.scan, {})[t.variable] = 1.0
        for scan, coefs in sorted(by_scan.items()):
            upper = params.ms2_spectra_per_rt_bin
            if window is not None and not window.contains(scan):
                upper = 0
            _extend_row(model, rt_cap_row_name(scan), coefs, float(upper))
    if params.precursor_acquisition_cap:
        add_precursor_acquisition_number_constraint(
            model, new_triples, params.number_of_msms_per_precursor
        )
    if params.max_list_size is not None:
        _extend_row(
            model, LIST_SIZE_ROW, {t.variable: 1.0 for t in new_triples},
            float(params.max_list_size),
        )

    protein_columns = dict(formulation.protein_columns)
    if formulation.protein_coverage:
        by_protein: dict[str, dict[int, float]] = {}
        for t in new_triples:
            if t.protein_accession is not None:
                by_protein.setdefault(t.protein_accession, {})[t.variable] = -1.0
        for acc in sorted(by_protein):
            if acc not in protein_columns:
                protein_columns[acc] = model.add_column(f"y_{acc}", objective=params.coverage_bonus)
            coefs = {protein_columns[acc]: 1.0}
            coefs.update(by_protein[acc])
            _extend_row(model, coverage_row_name(acc), coefs, 0.0)

    triples = formulation.triples + new_triples
    if window is not None:
        model.rows[STEP_WINDOW_ROW] = step_window_row(triples, window)

    _apply_tie_break(model, new_triples, params.tie_break_epsilon)

    logger.info(
        f"Added {len(candidates)} candidates: {len(new_triples)} variables "
        f"-> model version {model.version}"
    )
    return replace(
        formulation,
        model=model,
        triples=triples,
        candidates=formulation.candidates + list(candidates),
        protein_columns=protein_columns,
    )


def revise_objective(
    model: LinearModel,
    triples: Sequence[IndexTriple],
    identified_proteins: Iterable[str],
    protein_columns: Mapping[str, int] | None = None,
    identified_protein_weight: float = 0.0,
) -> LinearModel:
    """Down-weight proteins that are already identified.

    The coverage bonus of each identified protein is removed and the
    coefficients of its candidates' variables are multiplied by
    ``identified_protein_weight``. Call once per newly identified protein;
    repeated calls compound the factor.
    """
    identified = set(identified_proteins)
    if not identified:
        return model

    updates: dict[int, float] = {}
    for t in triples:
        if t.protein_accession in identified:
            updates[t.variable] = model.columns[t.variable].objective * identified_protein_weight
    for acc, col in (protein_columns or {}).items():
        if acc in identified:
            updates[col] = 0.0

    logger.info(
        f"Revised objective for {len(identified)} identified proteins "
        f"({len(updates)} coefficients)"
    )
    return model.with_objective(updates)
