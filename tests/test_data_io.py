"""Tests for data I/O module."""

import pandas as pd
import pytest

from precursor_selection.candidates import Candidate
from precursor_selection.data_io import (
    assemble_inclusion_list,
    assemble_ranked_list,
    load_candidates,
    load_protein_database,
    load_signal,
    read_table,
    write_inclusion_list,
)
from precursor_selection.exceptions import ConfigurationError
from precursor_selection.model import IndexTriple


@pytest.fixture
def candidate_table():
    return pd.DataFrame({
        'candidate_id': ['A', 'B'],
        'mz': [500.25, 612.3],
        'charge': [2, 3],
        'scan_start': [0, 2],
        'scan_end': [1, 2],
        'sample_start': [10, 4],
        'sample_end': [12, 6],
        'protein_accession': ['P1', None],
    })


class TestLoadCandidates:
    """Tests for candidate loading."""

    def test_boundary_pairs(self, candidate_table):
        """Each scan of a row becomes one boundary pair."""
        candidates = load_candidates(candidate_table)

        assert len(candidates) == 2
        assert candidates[0].mass_ranges == [(0, 10), (0, 12), (1, 10), (1, 12)]
        assert candidates[0].scans == [0, 1]
        assert candidates[1].mass_ranges == [(2, 4), (2, 6)]

    def test_optional_columns(self, candidate_table):
        candidates = load_candidates(candidate_table)

        assert candidates[0].protein_accession == 'P1'
        assert candidates[1].protein_accession is None
        assert candidates[0].rt_probability == 1.0

    def test_from_tsv(self, candidate_table, tmp_path):
        path = tmp_path / 'candidates.tsv'
        candidate_table.to_csv(path, sep='\t', index=False)

        candidates = load_candidates(path)
        assert [c.candidate_id for c in candidates] == ['A', 'B']
        assert candidates[1].charge == 3

    def test_missing_columns(self, candidate_table):
        with pytest.raises(ConfigurationError):
            load_candidates(candidate_table.drop(columns=['scan_end']))

    def test_reversed_scan_range(self, candidate_table):
        candidate_table.loc[0, 'scan_end'] = -1
        with pytest.raises(ConfigurationError):
            load_candidates(candidate_table)


class TestReadTable:
    """Tests for table reading."""

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            read_table(tmp_path / 'nope.csv')

    def test_unsupported_extension(self, tmp_path):
        path = tmp_path / 'data.xlsx'
        path.write_text('x')
        with pytest.raises(ConfigurationError):
            read_table(path)

    def test_parquet(self, tmp_path):
        df = pd.DataFrame({'scan': [0, 1], 'sample_index': [0, 0], 'intensity': [1.0, 2.0]})
        path = tmp_path / 'signal.parquet'
        df.to_parquet(path, index=False)

        signal = load_signal(path)
        assert len(signal) == 2
        assert signal.intensity(1, 0) == 2.0


class TestLoadProteinDatabase:
    """Tests for protein database loading."""

    def test_rows_grouped_per_peptide(self):
        df = pd.DataFrame({
            'protein_accession': ['P1', 'P1', 'P1', 'P2'],
            'peptide_sequence': ['PEPA', 'PEPA', 'PEPC', 'PEPA'],
            'mz': [500.0, 500.0, 550.0, 500.0],
            'charge': [2, 2, 3, 2],
            'detectability': [0.8, 0.8, 0.4, 0.8],
            'rt_bin': [0, 1, 3, 0],
            'rt_probability': [0.6, 0.4, 1.0, 0.6],
        })

        database = load_protein_database(df)

        assert database.accessions() == ['P1', 'P2']
        pepa = database.proteins['P1'][0]
        assert pepa.sequence == 'PEPA'
        assert pepa.rt_probabilities == {0: 0.6, 1: 0.4}
        assert database.n_rt_bins == 4
        assert database.proteins_for_peptide('PEPA') == {'P1', 'P2'}


class TestInclusionList:
    """Tests for inclusion list assembly and output."""

    @pytest.fixture
    def solved(self):
        candidates = [Candidate('A', 500.0, 2), Candidate('B', 600.0, 3, protein_accession='P9')]
        triples = [
            IndexTriple(candidate=0, scan=1, variable=0, signal_weight=1.0),
            IndexTriple(candidate=1, scan=0, variable=1, signal_weight=0.5, protein_accession='P9'),
            IndexTriple(candidate=1, scan=1, variable=2, signal_weight=0.7, protein_accession='P9'),
        ]
        return triples, [0, 1], candidates

    def test_assemble_sorted_by_scan(self, solved):
        triples, selected, candidates = solved
        df = assemble_inclusion_list(triples, selected, candidates)

        assert list(df['candidate_id']) == ['B', 'A']
        assert list(df['scan']) == [0, 1]
        assert df.loc[0, 'protein_accession'] == 'P9'

    def test_assemble_empty(self, solved):
        triples, _, candidates = solved
        df = assemble_inclusion_list(triples, [], candidates)
        assert df.empty
        assert 'mz' in df.columns

    def test_ranked_list(self, solved):
        triples, _, candidates = solved
        df = assemble_ranked_list([triples[2], triples[0]], candidates)

        assert list(df['rank']) == [1, 2]
        assert list(df['variable']) == [2, 0]

    @pytest.mark.parametrize('suffix', ['.csv', '.tsv', '.parquet'])
    def test_write_and_read_back(self, solved, tmp_path, suffix):
        triples, selected, candidates = solved
        df = assemble_inclusion_list(triples, selected, candidates)

        path = write_inclusion_list(df, tmp_path / 'out' / f'inclusion{suffix}')
        loaded = read_table(path)

        assert list(loaded['candidate_id']) == ['B', 'A']
        assert list(loaded['scan']) == [0, 1]

    def test_write_unsupported(self, solved, tmp_path):
        triples, selected, candidates = solved
        df = assemble_inclusion_list(triples, selected, candidates)
        with pytest.raises(ConfigurationError):
            write_inclusion_list(df, tmp_path / 'inclusion.json')
