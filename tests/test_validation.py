"""Tests for schedule validation."""

import pandas as pd
import pytest

from precursor_selection.formulation import SchedulingParams
from precursor_selection.model import IndexTriple
from precursor_selection.validation import (
    count_precursors_in_bin,
    generate_schedule_report,
    validate_inclusion_list,
    validate_schedule,
)


@pytest.fixture
def triples():
    """Two candidates over two scans."""
    return [
        IndexTriple(candidate=0, scan=0, variable=0),
        IndexTriple(candidate=0, scan=1, variable=1),
        IndexTriple(candidate=1, scan=0, variable=2),
        IndexTriple(candidate=1, scan=1, variable=3),
    ]


class TestCountPrecursorsInBin:
    """Tests for bin occupancy queries."""

    def test_counts_selected_only(self, triples):
        assert count_precursors_in_bin(triples, [0, 2, 3], 0) == 2
        assert count_precursors_in_bin(triples, [0, 2, 3], 1) == 1
        assert count_precursors_in_bin(triples, [], 0) == 0

    def test_auxiliary_columns_ignored(self, triples):
        assert count_precursors_in_bin(triples, [0, 99], 0) == 1


class TestValidateSchedule:
    """Tests for validate_schedule."""

    def test_passes(self, triples):
        params = SchedulingParams(ms2_spectra_per_rt_bin=1)
        result = validate_schedule(triples, [0, 3], params)

        assert result.passed
        assert result.list_size == 2
        assert result.bin_counts == {0: 1, 1: 1}
        assert result.max_bin_occupancy == 1

    def test_capacity_violation(self, triples):
        params = SchedulingParams(ms2_spectra_per_rt_bin=1)
        result = validate_schedule(triples, [0, 2], params)

        assert not result.passed
        assert any("RT bin 0" in v for v in result.violations)

    def test_acquisition_violation(self, triples):
        params = SchedulingParams(number_of_msms_per_precursor=1)
        result = validate_schedule(triples, [0, 1], params)

        assert not result.passed
        assert any("Candidate 0" in v for v in result.violations)

    def test_disabled_limits_unchecked(self, triples):
        params = SchedulingParams(
            ms2_spectra_per_rt_bin=1,
            rt_bin_capacity=False,
            precursor_acquisition_cap=False,
        )
        result = validate_schedule(triples, [0, 1, 2, 3], params)

        assert result.passed
        assert result.ms2_spectra_per_rt_bin is None

    def test_list_size(self, triples):
        params = SchedulingParams(max_list_size=1)
        result = validate_schedule(triples, [0, 3], params)

        assert not result.passed
        assert any("List size" in v for v in result.violations)

    def test_empty_warns(self, triples):
        result = validate_schedule(triples, [], SchedulingParams())

        assert result.passed
        assert result.warnings == ["Schedule is empty"]


class TestValidateInclusionList:
    """Tests for checks on exported tables."""

    def test_table_checks(self):
        df = pd.DataFrame({
            'candidate_id': ['A', 'A', 'B'],
            'scan': [0, 1, 1],
        })

        ok = validate_inclusion_list(df, ms2_spectra_per_rt_bin=2)
        assert ok.passed
        assert ok.bin_counts == {0: 1, 1: 2}

        capped = validate_inclusion_list(df, number_of_msms_per_precursor=1)
        assert not capped.passed


class TestScheduleReport:
    """Tests for the HTML report."""

    def test_report_written(self, triples, tmp_path):
        result = validate_schedule(triples, [0, 3], SchedulingParams())
        path = tmp_path / 'report.html'

        generate_schedule_report(result, ['Built model', 'Solved model'], str(path))

        html = path.read_text()
        assert 'PASSED' in html
        assert '<li>Solved model</li>' in html
