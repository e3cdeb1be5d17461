"""Candidate precursors and the preprocessed protein database.

Candidates are read-only inputs to model building. For the protein-based
inclusion list, the preprocessed database (protein -> peptides with
detectability and per-RT-bin probabilities) is expanded into one candidate
per (protein, peptide) pair so that a peptide shared by two proteins can
contribute to the coverage of each.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .signal import BoundaryPair

logger = logging.getLogger(__name__)


@dataclass
class Candidate:
    """A precursor ion eligible for MS2.

    ``mass_ranges`` holds consecutive boundary pairs into the raw data, one
    pair per scan the candidate elutes in (see ``signal.extract_signal_weights``).
    """

    candidate_id: str
    mz: float
    charge: int
    mass_ranges: list[BoundaryPair] = field(default_factory=list)
    protein_accession: str | None = None
    rt_probability: float = 1.0
    detectability: float = 1.0

    @property
    def scans(self) -> list[int]:
        """Scans spanned by the candidate, one per boundary pair."""
        return [self.mass_ranges[i][0] for i in range(0, len(self.mass_ranges), 2)]


@dataclass
class PeptideEntry:
    """One peptide of a protein in the preprocessed database."""

    sequence: str
    mz: float
    charge: int
    detectability: float
    # RT bin -> probability that the peptide elutes in that bin
    rt_probabilities: dict[int, float] = field(default_factory=dict)


@dataclass
class PreprocessedDatabase:
    """Protein-peptide relations with detectability and RT predictions."""

    proteins: dict[str, list[PeptideEntry]] = field(default_factory=dict)

    @property
    def n_rt_bins(self) -> int:
        """Number of RT bins referenced by any peptide."""
        max_bin = -1
        for peptides in self.proteins.values():
            for pep in peptides:
                if pep.rt_probabilities:
                    max_bin = max(max_bin, max(pep.rt_probabilities))
        return max_bin + 1

    def accessions(self) -> list[str]:
        return sorted(self.proteins)

    def proteins_for_peptide(self, sequence: str) -> set[str]:
        return {
            acc for acc, peptides in self.proteins.items()
            if any(p.sequence == sequence for p in peptides)
        }


@dataclass
class ProteinCandidate:
    """A (protein, peptide) pair expanded from the preprocessed database."""

    candidate: Candidate
    peptide: PeptideEntry


def expand_protein_candidates(database: PreprocessedDatabase) -> list[ProteinCandidate]:
    """Expand the database into one candidate per (protein, peptide) pair.

    Proteins are visited in ascending accession order and peptides in
    database order, so the expansion is deterministic.
    """
    expanded: list[ProteinCandidate] = []
    for acc in database.accessions():
        for pep in database.proteins[acc]:
            cand = Candidate(
                candidate_id=f"{acc}:{pep.sequence}_{pep.charge}",
                mz=pep.mz,
                charge=pep.charge,
                protein_accession=acc,
                detectability=pep.detectability,
            )
            expanded.append(ProteinCandidate(candidate=cand, peptide=pep))

    logger.debug(
        f"Expanded {len(database.proteins)} proteins into {len(expanded)} candidates"
    )
    return expanded
