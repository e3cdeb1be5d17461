"""Data I/O module for candidate, signal and protein database tables."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path

import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq

from .candidates import Candidate, PeptideEntry, PreprocessedDatabase
from .exceptions import ConfigurationError
from .model import IndexTriple
from .signal import ArraySignalSource

logger = logging.getLogger(__name__)

# Required columns per table
CANDIDATE_REQUIRED = [
    'candidate_id',
    'mz',
    'charge',
    'scan_start',
    'scan_end',
    'sample_start',
    'sample_end',
]
CANDIDATE_OPTIONAL = ['protein_accession', 'rt_probability']

SIGNAL_REQUIRED = ['scan', 'sample_index', 'intensity']

DATABASE_REQUIRED = [
    'protein_accession',
    'peptide_sequence',
    'mz',
    'charge',
    'detectability',
    'rt_bin',
    'rt_probability',
]

INCLUSION_LIST_COLUMNS = [
    'candidate_index',
    'candidate_id',
    'mz',
    'charge',
    'scan',
    'variable',
    'signal_weight',
    'rt_probability',
    'protein_accession',
]

TableSource = str | Path | pd.DataFrame


def read_table(path: str | Path) -> pd.DataFrame:
    """Read a CSV, TSV or parquet table, chosen by extension."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Input file not found: {path}")

    suffix = path.suffix.lower()
    if suffix == '.csv':
        return pd.read_csv(path)
    elif suffix in ('.tsv', '.txt'):
        return pd.read_csv(path, sep='\t')
    elif suffix == '.parquet':
        return pq.read_table(path).to_pandas()
    else:
        raise ConfigurationError(
            f"Unsupported table format: {suffix}. Supported formats: .csv, .tsv, .txt, .parquet"
        )


def _as_frame(source: TableSource) -> pd.DataFrame:
    if isinstance(source, pd.DataFrame):
        return source
    return read_table(source)


def _require_columns(df: pd.DataFrame, required: list[str], what: str) -> None:
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise ConfigurationError(f"Missing required {what} columns: {missing}")


def load_candidates(source: TableSource) -> list[Candidate]:
    """Load candidate precursors.

    Each row covers scans ``scan_start..scan_end`` and the same sample range
    ``sample_start..sample_end`` in every scan, giving one boundary pair per
    scan.

    Args:
        source: Path to a candidate table or an already loaded DataFrame

    Returns:
        Candidates in table order

    """
    df = _as_frame(source)
    _require_columns(df, CANDIDATE_REQUIRED, 'candidate')

    has_protein = 'protein_accession' in df.columns
    has_rt_prob = 'rt_probability' in df.columns

    candidates = []
    for row in df.itertuples(index=False):
        scan_start, scan_end = int(row.scan_start), int(row.scan_end)
        if scan_end < scan_start:
            raise ConfigurationError(
                f"Candidate {row.candidate_id}: scan_end {scan_end} < scan_start {scan_start}"
            )
        mass_ranges = []
        for scan in range(scan_start, scan_end + 1):
            mass_ranges.append((scan, int(row.sample_start)))
            mass_ranges.append((scan, int(row.sample_end)))

        protein = None
        if has_protein and pd.notna(row.protein_accession):
            protein = str(row.protein_accession)

        candidates.append(Candidate(
            candidate_id=str(row.candidate_id),
            mz=float(row.mz),
            charge=int(row.charge),
            mass_ranges=mass_ranges,
            protein_accession=protein,
            rt_probability=float(row.rt_probability) if has_rt_prob else 1.0,
        ))

    logger.info(f"Loaded {len(candidates)} candidates")
    return candidates


def load_signal(source: TableSource, n_scans: int | None = None) -> ArraySignalSource:
    """Load a long-format signal table into an ArraySignalSource."""
    df = _as_frame(source)
    _require_columns(df, SIGNAL_REQUIRED, 'signal')
    signal = ArraySignalSource.from_long_table(df, n_scans=n_scans)
    logger.info(f"Loaded signal for {len(signal)} scans ({len(df)} samples)")
    return signal


def load_protein_database(source: TableSource) -> PreprocessedDatabase:
    """Load protein-peptide relations with detectability and RT bin probabilities.

    One row per (protein, peptide, RT bin). Peptides keep the order of their
    first appearance within each protein.
    """
    df = _as_frame(source)
    _require_columns(df, DATABASE_REQUIRED, 'protein database')

    proteins: dict[str, list[PeptideEntry]] = {}
    index: dict[tuple[str, str, int], PeptideEntry] = {}
    for row in df.itertuples(index=False):
        acc = str(row.protein_accession)
        key = (acc, str(row.peptide_sequence), int(row.charge))
        entry = index.get(key)
        if entry is None:
            entry = PeptideEntry(
                sequence=str(row.peptide_sequence),
                mz=float(row.mz),
                charge=int(row.charge),
                detectability=float(row.detectability),
            )
            index[key] = entry
            proteins.setdefault(acc, []).append(entry)
        entry.rt_probabilities[int(row.rt_bin)] = float(row.rt_probability)

    logger.info(f"Loaded {len(proteins)} proteins with {len(index)} peptides")
    return PreprocessedDatabase(proteins=proteins)


def assemble_inclusion_list(
    triples: Iterable[IndexTriple],
    selected: Iterable[int],
    candidates: list[Candidate],
) -> pd.DataFrame:
    """Build the inclusion list table from a solution.

    Args:
        triples: Variable index of the solved model
        selected: Selected column ids
        candidates: Candidate list the model was built from

    Returns:
        DataFrame with one row per selected variable, sorted by scan then variable

    """
    chosen = set(selected)
    rows = []
    for t in triples:
        if t.variable not in chosen:
            continue
        cand = candidates[t.candidate]
        rows.append({
            'candidate_index': t.candidate,
            'candidate_id': cand.candidate_id,
            'mz': cand.mz,
            'charge': cand.charge,
            'scan': t.scan,
            'variable': t.variable,
            'signal_weight': t.signal_weight,
            'rt_probability': t.rt_probability,
            'protein_accession': t.protein_accession,
        })

    df = pd.DataFrame(rows, columns=INCLUSION_LIST_COLUMNS)
    return df.sort_values(['scan', 'variable']).reset_index(drop=True)


def write_inclusion_list(df: pd.DataFrame, output_path: str | Path) -> Path:
    """Write the inclusion list as CSV, TSV or parquet, chosen by extension."""
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    suffix = output_path.suffix.lower()
    if suffix == '.csv':
        df.to_csv(output_path, index=False)
    elif suffix in ('.tsv', '.txt'):
        df.to_csv(output_path, sep='\t', index=False)
    elif suffix == '.parquet':
        pq.write_table(pa.Table.from_pandas(df, preserve_index=False), output_path)
    else:
        raise ConfigurationError(
            f"Unsupported output format: {suffix}. Supported formats: .csv, .tsv, .txt, .parquet"
        )

    logger.info(f"Wrote {len(df)} inclusion list entries to {output_path}")
    return output_path


def assemble_ranked_list(ranked: Iterable[IndexTriple], candidates: list[Candidate]) -> pd.DataFrame:
    """Table of a ranked assignment, keeping rank order (1 = best)."""
    rows = []
    for rank, t in enumerate(ranked, start=1):
        cand = candidates[t.candidate]
        rows.append({
            'rank': rank,
            'candidate_index': t.candidate,
            'candidate_id': cand.candidate_id,
            'mz': cand.mz,
            'charge': cand.charge,
            'scan': t.scan,
            'variable': t.variable,
            'signal_weight': t.signal_weight,
            'rt_probability': t.rt_probability,
            'protein_accession': t.protein_accession,
        })
    return pd.DataFrame(rows, columns=['rank'] + INCLUSION_LIST_COLUMNS)
