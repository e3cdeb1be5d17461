"""Command-line interface for precursor selection.

Schedules MS2 precursor acquisitions with an integer linear program and
writes the resulting inclusion list.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

import yaml

from .data_io import (
    assemble_inclusion_list,
    assemble_ranked_list,
    load_candidates,
    load_protein_database,
    load_signal,
    read_table,
    write_inclusion_list,
)
from .formulation import SchedulingParams
from .scheduling import (
    CombinedScheduler,
    FeatureBasedScheduler,
    ScheduleResult,
    SequentialScheduler,
)
from .solver import SolverConfig
from .validation import (
    ScheduleValidation,
    generate_schedule_report,
    validate_inclusion_list,
    validate_schedule,
)

logger = logging.getLogger(__name__)

MODES = ('feature', 'combined', 'sequential')


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )


def default_config() -> dict:
    """Built-in configuration, mirroring the library defaults."""
    return {
        'scheduling': {
            'mode': 'feature',
            'ms2_spectra_per_rt_bin': 5,
            'number_of_msms_per_precursor': 1,
            'max_list_size': None,
            'allowed_charges': [1, 2, 3, 4],
            'rt_bin_capacity': True,
            'precursor_acquisition_cap': True,
            'use_rt_probability': False,
            'coverage_bonus': 0.0,
            'tie_break_epsilon': 0.0,
            'min_rt_probability': 0.2,
        },
        'signal': {
            'normalize_intensity': True,
            'n_scans': None,  # None = highest scan in the signal table + 1
        },
        'sequential': {
            'step_size': 0,
            'on_infeasible': 'skip',
            'identified_protein_weight': 0.0,
        },
        'solver': {
            'backend': 'cbc',
            'time_limit': None,
            'gap_rel': None,
            'threads': None,
            'msg': False,
        },
        'output': {
            'report': True,
            'metadata': True,
        },
    }


def load_config(config_path: Path | None) -> dict:
    """Load configuration from YAML file or return defaults."""
    config = default_config()

    if config_path and config_path.exists():
        with open(config_path) as f:
            user_config = yaml.safe_load(f) or {}
        config = _deep_merge(config, user_config)
    elif config_path:
        logger.warning(f"Config file not found: {config_path}, using defaults")

    return config


def _deep_merge(base: dict, override: dict) -> dict:
    """Deep merge override dict into base dict."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def params_from_config(config: dict) -> tuple[SchedulingParams, SolverConfig]:
    """Turn a merged configuration into scheduling and solver settings."""
    sched = config.get('scheduling', {})
    signal = config.get('signal', {})
    sequential = config.get('sequential', {})
    solver = config.get('solver', {})

    params = SchedulingParams(
        ms2_spectra_per_rt_bin=int(sched.get('ms2_spectra_per_rt_bin', 5)),
        number_of_msms_per_precursor=int(sched.get('number_of_msms_per_precursor', 1)),
        max_list_size=sched.get('max_list_size'),
        allowed_charges=list(sched.get('allowed_charges', [1, 2, 3, 4])),
        rt_bin_capacity=bool(sched.get('rt_bin_capacity', True)),
        precursor_acquisition_cap=bool(sched.get('precursor_acquisition_cap', True)),
        normalize_intensity=bool(signal.get('normalize_intensity', True)),
        use_rt_probability=bool(sched.get('use_rt_probability', False)),
        coverage_bonus=float(sched.get('coverage_bonus', 0.0)),
        identified_protein_weight=float(sequential.get('identified_protein_weight', 0.0)),
        tie_break_epsilon=float(sched.get('tie_break_epsilon', 0.0)),
        min_rt_probability=float(sched.get('min_rt_probability', 0.2)),
        step_size=int(sequential.get('step_size', 0)),
    )
    params.validate()

    solver_config = SolverConfig(
        backend=solver.get('backend', 'cbc'),
        time_limit=solver.get('time_limit'),
        gap_rel=solver.get('gap_rel'),
        threads=solver.get('threads'),
        msg=bool(solver.get('msg', False)),
    )
    return params, solver_config


def generate_run_metadata(
    config: dict,
    mode: str,
    input_files: list[str],
    result: ScheduleResult,
    validation: ScheduleValidation | None = None,
) -> dict:
    """Collect provenance of a scheduling run.

    Args:
        config: Effective (merged) configuration
        mode: Scheduling mode that was run
        input_files: Input file paths
        result: Scheduling result
        validation: Optional post-solve validation

    Returns:
        Dictionary ready for JSON serialization

    """
    try:
        package_version = version('precursor-selection')
    except PackageNotFoundError:
        package_version = 'development'

    formulation = result.formulation
    summary = {
        'status': result.status.value,
        'objective_value': result.solution.objective_value,
        'n_candidates': len(formulation.candidates),
        'n_scans': formulation.n_scans,
        'n_variables': formulation.n_variables,
        'n_rows': formulation.model.n_rows,
        'model_version': formulation.model.version,
        'n_selected': len(result.selected),
        'n_selected_candidates': len(result.selected_candidates),
        'n_windows': result.n_window_advances,
    }

    validation_summary = {}
    if validation is not None:
        validation_summary = {
            'passed': validation.passed,
            'max_bin_occupancy': validation.max_bin_occupancy,
            'violations': validation.violations,
            'warnings': validation.warnings,
        }

    return {
        'package_version': package_version,
        'processing_date': datetime.now(timezone.utc).isoformat(),
        'mode': mode,
        'source_files': input_files,
        'parameters': config,
        'summary': summary,
        'method_log': result.method_log,
        'validation': validation_summary,
    }


def _write_outputs(
    result: ScheduleResult,
    table,
    output_path: Path,
    config: dict,
    mode: str,
    input_files: list[str],
    validation: ScheduleValidation | None,
) -> None:
    write_inclusion_list(table, output_path)
    output_cfg = config.get('output', {})

    if validation is not None and output_cfg.get('report', True):
        report_path = output_path.parent / 'schedule_report.html'
        generate_schedule_report(validation, result.method_log, str(report_path))

    if output_cfg.get('metadata', True):
        metadata = generate_run_metadata(config, mode, input_files, result, validation)
        metadata_path = output_path.parent / 'run_metadata.json'
        with open(metadata_path, 'w') as f:
            json.dump(metadata, f, indent=2, default=str)
        logger.info(f"Saved run metadata to {metadata_path}")


def cmd_schedule(args: argparse.Namespace) -> int:
    """Schedule candidates from a candidate table and a signal table."""
    config = load_config(Path(args.config) if args.config else None)
    mode = args.mode or config['scheduling'].get('mode', 'feature')
    if mode not in MODES:
        logger.error(f"Unknown scheduling mode: {mode}. Supported: {', '.join(MODES)}")
        return 1
    params, solver_config = params_from_config(config)

    logger.info("=" * 60)
    logger.info(f"Precursor selection ({mode})")
    logger.info("=" * 60)

    candidates = load_candidates(Path(args.candidates))
    source = load_signal(Path(args.signal), n_scans=config['signal'].get('n_scans'))

    if mode == 'feature':
        result = FeatureBasedScheduler(params, solver_config).build_and_solve(candidates, source)
    elif mode == 'combined':
        result = CombinedScheduler(params, solver_config).build_and_solve(candidates, source)
    else:
        scheduler = SequentialScheduler(
            params,
            solver_config,
            on_infeasible=config['sequential'].get('on_infeasible', 'skip'),
        )
        result = scheduler.run(candidates, source)

    if not result.solution.is_feasible:
        logger.error(f"No schedule found: {result.status.value}")
        return 1

    validation = validate_schedule(result.formulation.triples, result.solution.selected, params)
    table = assemble_inclusion_list(
        result.formulation.triples, result.solution.selected, result.formulation.candidates
    )
    _write_outputs(
        result, table, Path(args.output), config, mode,
        [str(args.candidates), str(args.signal)], validation,
    )

    logger.info("Scheduling steps:")
    for step in result.method_log:
        logger.info(f"  {step}")

    return 0 if validation.passed else 1


def cmd_inclusion_list(args: argparse.Namespace) -> int:
    """Create a protein-coverage inclusion list from a preprocessed database."""
    config = load_config(Path(args.config) if args.config else None)
    params, solver_config = params_from_config(config)

    database = load_protein_database(Path(args.database))
    scheduler = CombinedScheduler(params, solver_config)
    result = scheduler.create_inclusion_list(database, solve=not args.no_solve)
    candidates = result.formulation.candidates

    if args.no_solve:
        table = assemble_ranked_list(result.ranked, candidates)
        _write_outputs(
            result, table, Path(args.output), config, 'protein', [str(args.database)], None
        )
        return 0

    if not result.solution.is_feasible:
        logger.error(f"No inclusion list found: {result.status.value}")
        return 1

    validation = validate_schedule(result.formulation.triples, result.solution.selected, params)
    table = assemble_inclusion_list(
        result.formulation.triples, result.solution.selected, candidates
    )
    _write_outputs(
        result, table, Path(args.output), config, 'protein', [str(args.database)], validation
    )
    covered = sorted({t.protein_accession for t in result.selected if t.protein_accession})
    logger.info(f"Covered {len(covered)} of {len(database.proteins)} proteins")

    return 0 if validation.passed else 1


def cmd_validate(args: argparse.Namespace) -> int:
    """Check an exported inclusion list against scheduling limits."""
    inclusion_list = read_table(Path(args.input))

    validation = validate_inclusion_list(
        inclusion_list,
        ms2_spectra_per_rt_bin=args.capacity,
        number_of_msms_per_precursor=args.max_per_precursor,
        max_list_size=args.max_list_size,
    )

    if args.report:
        generate_schedule_report(
            validation,
            schedule_log=[f'Loaded inclusion list from {args.input}'],
            output_path=args.report,
        )

    return 0 if validation.passed else 1


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog='psel',
        description='Precursor selection: ILP scheduling of MS2 acquisitions\n\n'
                    'Primary usage:\n'
                    '  psel schedule -c candidates.tsv -s signal.parquet -o inclusion.tsv\n'
                    '  psel inclusion-list -d proteins.tsv -o inclusion.tsv',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('-v', '--verbose', action='store_true', help='Verbose output')
    parser.add_argument('--version', action='version', version='%(prog)s 0.1.0')

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    sched_parser = subparsers.add_parser(
        'schedule',
        help='Select precursors from LC-MS signal',
        description='Build and solve the precursor selection ILP for a candidate table '
                    'and write the inclusion list.'
    )
    sched_parser.add_argument('-c', '--candidates', required=True,
                              help='Candidate table (CSV/TSV/parquet)')
    sched_parser.add_argument('-s', '--signal', required=True,
                              help='Signal table: scan, sample_index, intensity')
    sched_parser.add_argument('-o', '--output', required=True,
                              help='Output inclusion list (CSV/TSV/parquet)')
    sched_parser.add_argument('--config', help='Configuration YAML file')
    sched_parser.add_argument('--mode', choices=MODES,
                              help='Scheduling mode (default: from config, else feature)')

    incl_parser = subparsers.add_parser(
        'inclusion-list', help='Protein coverage inclusion list from a preprocessed database'
    )
    incl_parser.add_argument('-d', '--database', required=True,
                             help='Protein database table (CSV/TSV/parquet)')
    incl_parser.add_argument('-o', '--output', required=True, help='Output inclusion list')
    incl_parser.add_argument('--config', help='Configuration YAML file')
    incl_parser.add_argument('--no-solve', action='store_true',
                             help='Only build the model and write the ranked assignment')

    val_parser = subparsers.add_parser('validate', help='Validate an inclusion list')
    val_parser.add_argument('-i', '--input', required=True, help='Inclusion list table')
    val_parser.add_argument('--capacity', type=int, help='MS2 spectra per RT bin')
    val_parser.add_argument('--max-per-precursor', type=int, help='MS/MS per precursor')
    val_parser.add_argument('--max-list-size', type=int, help='Maximum list size')
    val_parser.add_argument('--report', help='Output HTML report path')

    args = parser.parse_args(argv)

    setup_logging(args.verbose)

    if args.command == 'schedule':
        return cmd_schedule(args)
    elif args.command == 'inclusion-list':
        return cmd_inclusion_list(args)
    elif args.command == 'validate':
        return cmd_validate(args)
    else:
        parser.print_help()
        return 1


if __name__ == '__main__':
    sys.exit(main())
