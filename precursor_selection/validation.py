"""
Validation module for checking a solved schedule.

Re-checks the selected precursors against the scheduling limits independently
of the solver:
- RT bin capacity: selected per scan <= ms2_spectra_per_rt_bin
- Acquisition cap: selected per candidate <= number_of_msms_per_precursor
- List size: total selected <= max_list_size
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field

import pandas as pd

from .formulation import SchedulingParams
from .model import IndexTriple

logger = logging.getLogger(__name__)


@dataclass
class ScheduleValidation:
    """Occupancy and constraint checks for a schedule."""

    bin_counts: dict[int, int]
    candidate_counts: dict[int, int]
    list_size: int

    # Limits checked against
    ms2_spectra_per_rt_bin: int | None
    number_of_msms_per_precursor: int | None
    max_list_size: int | None

    violations: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        """True when no limit is exceeded."""
        return not self.violations

    @property
    def max_bin_occupancy(self) -> int:
        return max(self.bin_counts.values()) if self.bin_counts else 0


def _check_counts(
    bin_counts: dict[int, int],
    candidate_counts: dict[int, int],
    list_size: int,
    capacity: int | None,
    per_precursor: int | None,
    max_list_size: int | None,
) -> ScheduleValidation:
    violations = []
    warnings = []

    if capacity is not None:
        for scan, n in sorted(bin_counts.items()):
            if n > capacity:
                violations.append(f"RT bin {scan}: {n} precursors exceed capacity {capacity}")

    if per_precursor is not None:
        for cand, n in sorted(candidate_counts.items()):
            if n > per_precursor:
                violations.append(
                    f"Candidate {cand}: selected {n} times, limit {per_precursor}"
                )

    if max_list_size is not None and list_size > max_list_size:
        violations.append(f"List size {list_size} exceeds maximum {max_list_size}")

    if list_size == 0:
        warnings.append("Schedule is empty")

    return ScheduleValidation(
        bin_counts=dict(bin_counts),
        candidate_counts=dict(candidate_counts),
        list_size=list_size,
        ms2_spectra_per_rt_bin=capacity,
        number_of_msms_per_precursor=per_precursor,
        max_list_size=max_list_size,
        violations=violations,
        warnings=warnings,
    )


def count_precursors_in_bin(
    triples: Iterable[IndexTriple],
    selected: Iterable[int],
    scan: int,
) -> int:
    """Number of selected variables mapped to ``scan``."""
    chosen = set(selected)
    return sum(1 for t in triples if t.scan == scan and t.variable in chosen)


def validate_schedule(
    triples: list[IndexTriple],
    selected: Iterable[int],
    params: SchedulingParams,
) -> ScheduleValidation:
    """
    Check selected variables against the scheduling limits.

    Args:
        triples: Variable index of the model
        selected: Selected column ids (auxiliary columns are ignored)
        params: Parameters the schedule was built with

    Returns:
        ScheduleValidation with counts and any violations
    """
    chosen = set(selected)
    picked = [t for t in triples if t.variable in chosen]

    result = _check_counts(
        Counter(t.scan for t in picked),
        Counter(t.candidate for t in picked),
        len(picked),
        params.ms2_spectra_per_rt_bin if params.rt_bin_capacity else None,
        params.number_of_msms_per_precursor if params.precursor_acquisition_cap else None,
        params.max_list_size,
    )
    _log_result(result)
    return result


def validate_inclusion_list(
    inclusion_list: pd.DataFrame,
    ms2_spectra_per_rt_bin: int | None = None,
    number_of_msms_per_precursor: int | None = None,
    max_list_size: int | None = None,
    scan_col: str = 'scan',
    candidate_col: str = 'candidate_id',
) -> ScheduleValidation:
    """
    Run the schedule checks on an exported inclusion list table.

    Args:
        inclusion_list: One row per scheduled MS2 event
        ms2_spectra_per_rt_bin: Capacity per scan (None = unchecked)
        number_of_msms_per_precursor: Per-candidate cap (None = unchecked)
        max_list_size: Total size cap (None = unchecked)
        scan_col: Column with scan indices
        candidate_col: Column with candidate identifiers

    Returns:
        ScheduleValidation
    """
    bin_counts = inclusion_list[scan_col].value_counts().to_dict()
    candidate_counts = inclusion_list[candidate_col].value_counts().to_dict()

    result = _check_counts(
        {int(k): int(v) for k, v in bin_counts.items()},
        {k: int(v) for k, v in candidate_counts.items()},
        len(inclusion_list),
        ms2_spectra_per_rt_bin,
        number_of_msms_per_precursor,
        max_list_size,
    )
    _log_result(result)
    return result


def _log_result(result: ScheduleValidation) -> None:
    logger.info(f"Schedule: {result.list_size} precursors in {len(result.bin_counts)} RT bins "
                f"(max occupancy {result.max_bin_occupancy})")
    for w in result.warnings:
        logger.warning(w)
    for v in result.violations:
        logger.warning(v)

    if result.passed:
        logger.info("Validation PASSED")
    else:
        logger.warning("Validation FAILED - review violations")


def generate_schedule_report(
    validation: ScheduleValidation,
    schedule_log: list[str],
    output_path: str,
) -> None:
    """
    Generate HTML schedule report.

    Args:
        validation: ScheduleValidation from validate_schedule
        schedule_log: List of scheduling steps performed
        output_path: Path to save HTML report
    """
    occupancy_rows = ''.join(
        f'<tr><td>{scan}</td><td>{n}</td></tr>'
        for scan, n in sorted(validation.bin_counts.items())
    )

    def _limit(value: int | None) -> str:
        return 'unchecked' if value is None else str(value)

    html = f"""
    <!DOCTYPE html>
    <html>
    <head>
        <title>Precursor Schedule Report</title>
        <style>
            body {{ font-family: Arial, sans-serif; margin: 40px; }}
            h1 {{ color: #333; }}
            h2 {{ color: #666; border-bottom: 1px solid #ccc; }}
            .metric {{ margin: 10px 0; }}
            .metric-name {{ font-weight: bold; }}
            .metric-value {{ color: #0066cc; }}
            .warning {{ color: #cc6600; background: #fff3e0; padding: 10px; margin: 5px 0; }}
            .passed {{ color: #006600; background: #e0ffe0; padding: 10px; }}
            .failed {{ color: #cc0000; background: #ffe0e0; padding: 10px; }}
            table {{ border-collapse: collapse; margin: 20px 0; }}
            th, td {{ border: 1px solid #ccc; padding: 8px; text-align: left; }}
            th {{ background: #f0f0f0; }}
        </style>
    </head>
    <body>
        <h1>Precursor Schedule Report</h1>

        <h2>Validation Status</h2>
        <div class="{'passed' if validation.passed else 'failed'}">
            {'PASSED' if validation.passed else 'FAILED'} -
            {'All scheduling limits respected' if validation.passed else 'Review violations below'}
        </div>

        <h2>Limits</h2>
        <div class="metric">
            <span class="metric-name">MS2 spectra per RT bin:</span>
            <span class="metric-value">{_limit(validation.ms2_spectra_per_rt_bin)}</span>
        </div>
        <div class="metric">
            <span class="metric-name">MS/MS per precursor:</span>
            <span class="metric-value">{_limit(validation.number_of_msms_per_precursor)}</span>
        </div>
        <div class="metric">
            <span class="metric-name">Maximum list size:</span>
            <span class="metric-value">{_limit(validation.max_list_size)}</span>
        </div>
        <div class="metric">
            <span class="metric-name">Scheduled precursors:</span>
            <span class="metric-value">{validation.list_size}</span>
        </div>

        <h2>RT Bin Occupancy</h2>
        <table>
            <tr><th>Scan</th><th>Precursors</th></tr>
            {occupancy_rows}
        </table>

        <h2>Violations</h2>
        {''.join(f'<div class="warning">{v}</div>' for v in validation.violations) if validation.violations else '<p>No violations</p>'}

        <h2>Scheduling Steps</h2>
        <ol>
            {''.join(f'<li>{step}</li>' for step in schedule_log)}
        </ol>

    </body>
    </html>
    """

    with open(output_path, 'w') as f:
        f.write(html)

    logger.info(f"Schedule report saved to {output_path}")
