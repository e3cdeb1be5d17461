"""Signal weight extraction from raw MS1 intensity traces.

Each candidate precursor is described by a list of boundary pairs into the
raw data: consecutive ``(scan, sample_index)`` pairs delimiting a contiguous
run of samples within one scan. Summing the intensities across each run gives
one weight per (candidate, scan); together they form the candidate's XIC.

Key concepts:
- The extractor only depends on ``SpectralDataSource.intensity(scan, index)``
- Weights are optionally max-normalized per candidate
- A candidate whose maximum weight is 0 keeps all-zero weights (no division)
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np
import pandas as pd

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

# A boundary pair: (scan index, sample index within that scan)
BoundaryPair = tuple[int, int]


class SpectralDataSource(ABC):
    """Read-only, random-access view of raw intensities."""

    @abstractmethod
    def intensity(self, scan: int, index: int) -> float:
        """Return the intensity of sample ``index`` in scan ``scan``."""
        pass

    @abstractmethod
    def __len__(self) -> int:
        """Number of scans (RT bins) in the source."""
        pass

    def range_sum(self, scan: int, start: int, end: int) -> float:
        """Sum of intensities for samples ``start..end`` (inclusive) of one scan."""
        return float(sum(self.intensity(scan, j) for j in range(start, end + 1)))


class ArraySignalSource(SpectralDataSource):
    """Signal source backed by one numpy intensity array per scan."""

    def __init__(self, spectra: Sequence[np.ndarray]):
        self._spectra = [np.asarray(s, dtype=float) for s in spectra]

    def __len__(self) -> int:
        return len(self._spectra)

    def intensity(self, scan: int, index: int) -> float:
        return float(self._spectra[scan][index])

    def range_sum(self, scan: int, start: int, end: int) -> float:
        return float(self._spectra[scan][start:end + 1].sum())

    @classmethod
    def from_long_table(
        cls,
        df: pd.DataFrame,
        scan_col: str = "scan",
        index_col: str = "sample_index",
        intensity_col: str = "intensity",
        n_scans: int | None = None,
    ) -> ArraySignalSource:
        """Build a source from a long table (one row per scan/sample).

        Scans missing from the table become empty spectra. Gaps in the sample
        index within a scan are filled with zero intensity.
        """
        missing = [c for c in (scan_col, index_col, intensity_col) if c not in df.columns]
        if missing:
            raise ConfigurationError(f"Missing signal columns: {missing}")

        if n_scans is None:
            n_scans = int(df[scan_col].max()) + 1 if len(df) else 0

        spectra = [np.zeros(0) for _ in range(n_scans)]
        for scan, group in df.groupby(scan_col, sort=True):
            idx = group[index_col].to_numpy(dtype=int)
            values = np.zeros(int(idx.max()) + 1 if len(idx) else 0)
            # Duplicate (scan, sample) rows are summed
            np.add.at(values, idx, group[intensity_col].to_numpy(dtype=float))
            spectra[int(scan)] = values

        logger.debug(f"Built signal source with {n_scans} scans from {len(df)} samples")
        return cls(spectra)


@dataclass
class SignalWeights:
    """Weights extracted for one candidate."""

    weights: list[float]
    scans: list[int]
    max_weight: float
    normalized: bool

    @property
    def is_silent(self) -> bool:
        """True when every region of the candidate had zero signal."""
        return self.max_weight <= 0.0


def extract_signal_weights(
    end_points: Sequence[BoundaryPair],
    source: SpectralDataSource,
    normalize: bool = True,
) -> SignalWeights:
    """Sum intensities within each boundary pair of one candidate.

    Args:
        end_points: Flat sequence of boundary pairs; entries ``2k`` and
            ``2k + 1`` delimit region k. Both must share the same scan.
        source: Raw intensity lookup
        normalize: Divide every weight by the largest one

    Returns:
        SignalWeights with one weight per region, in input order

    Raises:
        ConfigurationError: Odd number of boundaries, a region spanning scans
            or a scan outside the source

    """
    if len(end_points) % 2 != 0:
        raise ConfigurationError(
            f"Boundary list must contain pairs, got {len(end_points)} entries"
        )

    n_scans = len(source)
    weights: list[float] = []
    scans: list[int] = []
    max_weight = 0.0
    for i in range(0, len(end_points), 2):
        scan, start = end_points[i]
        end_scan, end = end_points[i + 1]
        if end_scan != scan:
            raise ConfigurationError(
                f"Region {i // 2} spans scans {scan} and {end_scan}"
            )
        if not 0 <= scan < n_scans:
            raise ConfigurationError(
                f"Region {i // 2} references scan {scan} outside [0, {n_scans})"
            )
        weight = source.range_sum(int(scan), int(start), int(end))
        if weight > max_weight:
            max_weight = weight
        weights.append(weight)
        scans.append(int(scan))

    normalized = False
    if normalize:
        if max_weight > 0.0:
            weights = [w / max_weight for w in weights]
            normalized = True
        elif weights:
            logger.debug(
                f"All {len(weights)} regions have zero signal; leaving weights at 0"
            )

    return SignalWeights(
        weights=weights, scans=scans, max_weight=max_weight, normalized=normalized
    )


def calculate_xics(
    mass_ranges: Sequence[Sequence[BoundaryPair]],
    source: SpectralDataSource,
    normalize: bool = True,
) -> list[SignalWeights]:
    """Extract signal weights for a whole candidate batch.

    Args:
        mass_ranges: One boundary list per candidate
        source: Raw intensity lookup
        normalize: Max-normalize each candidate's weights

    Returns:
        List of SignalWeights, index-aligned with ``mass_ranges``

    """
    xics = [extract_signal_weights(ranges, source, normalize) for ranges in mass_ranges]
    n_empty = sum(1 for x in xics if not x.weights)
    n_silent = sum(1 for x in xics if x.is_silent) - n_empty
    logger.info(f"Extracted XICs for {len(xics)} candidates")
    if n_empty:
        logger.warning(f"{n_empty} candidates have no mass ranges and get no variables")
    if n_silent and normalize:
        logger.warning(f"{n_silent} candidates have no signal; their weights stay at 0")
    return xics
