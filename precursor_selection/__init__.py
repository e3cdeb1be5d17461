"""
Precursor selection: ILP scheduling of MS2 acquisitions for LC-MS.

Chooses which precursor ions to fragment in which retention time bins so that
the summed signal (or protein coverage) of the acquired spectra is maximal,
subject to instrument capacity and acquisition limits.
"""

__version__ = "0.1.0"

from .exceptions import (
    ConfigurationError,
    SolverError,
)
from .signal import (
    SpectralDataSource,
    ArraySignalSource,
    SignalWeights,
    extract_signal_weights,
    calculate_xics,
)
from .candidates import (
    Candidate,
    PeptideEntry,
    PreprocessedDatabase,
    expand_protein_candidates,
)
from .model import (
    IndexTriple,
    TripleOrder,
    sort_triples,
    LinearModel,
    ConstraintRow,
)
from .formulation import (
    SchedulingParams,
    StepWindow,
    Formulation,
    add_candidates,
    build_feature_model,
    build_protein_model,
    patch_window,
    revise_objective,
)
from .solver import (
    SolverConfig,
    SolverStatus,
    Solution,
    solve_model,
)
from .scheduling import (
    FeatureBasedScheduler,
    CombinedScheduler,
    SequentialScheduler,
    ScheduleResult,
    build_and_solve,
)
from .validation import (
    validate_schedule,
    count_precursors_in_bin,
    generate_schedule_report,
)
from .data_io import (
    load_candidates,
    load_signal,
    load_protein_database,
    assemble_inclusion_list,
    write_inclusion_list,
)
