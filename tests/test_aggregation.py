"""Tests for pseudobulk aggregation."""

import numpy as np
import pandas as pd
import pytest

from scdiffstate.exceptions import EmptyInput, InvalidGrouping
from scdiffstate.stats.aggregation import aggregate_data, pb_flatten


class TestAggregateData:
    """Partitioning and reducers."""

    def test_cluster_set(self, tiny_table):
        pb = aggregate_data(tiny_table)
        assert set(pb.clusters) == {'T', 'B'}

    def test_sample_columns_present_in_cluster(self, tiny_table):
        pb = aggregate_data(tiny_table)
        assert list(pb['T'].columns) == ['s1', 's2']
        assert list(pb['B'].columns) == ['s3']

    def test_empty_partitions_are_omitted(self, tiny_table):
        pb = aggregate_data(tiny_table)
        assert 's3' not in pb['T'].columns
        assert pb.n_cells.loc['T', 's3'] == 0
        assert pb.n_cells.loc['T', 's1'] == 2

    @pytest.mark.parametrize("fun, expected", [("sum", 8.0), ("mean", 4.0), ("median", 4.0)])
    def test_reducers(self, tiny_table, fun, expected):
        # G1 in (T, s1) has values [3, 5]
        pb = aggregate_data(tiny_table, fun=fun)
        assert pb['T'].loc['G1', 's1'] == expected

    def test_detection_reducers(self, tiny_table):
        # G2 in (B, s3) has values [2, 0]
        prop = aggregate_data(tiny_table, fun='prop.detected')
        num = aggregate_data(tiny_table, fun='num.detected')
        assert prop['B'].loc['G2', 's3'] == 0.5
        assert num['B'].loc['G2', 's3'] == 1.0

    def test_single_key_gives_one_table(self, tiny_table):
        pb = aggregate_data(tiny_table, by=['sample_id'])
        assert pb.clusters == ['all']
        assert pb['all'].loc['G1'].tolist() == [8.0, 0.0, 1.0]

    def test_provenance(self, tiny_table):
        pb = aggregate_data(tiny_table, fun='mean')
        assert pb.fun == 'mean'
        assert pb.assay == 'counts'
        assert pb.by == ('cluster_id', 'sample_id')

    def test_returned_frames_are_copies(self, tiny_table):
        pb = aggregate_data(tiny_table)
        frame = pb['T']
        frame.loc['G1', 's1'] = -1
        assert pb['T'].loc['G1', 's1'] == 8.0

    def test_input_not_modified(self, tiny_table):
        before = tiny_table.layer('counts').copy()
        aggregate_data(tiny_table)
        np.testing.assert_array_equal(tiny_table.layer('counts'), before)


class TestAggregateErrors:
    """Structural failures."""

    def test_missing_key(self, tiny_table):
        with pytest.raises(InvalidGrouping):
            aggregate_data(tiny_table, by=['cluster_id', 'patient'])

    def test_unknown_reducer(self, tiny_table):
        with pytest.raises(ValueError, match="reducer"):
            aggregate_data(tiny_table, fun='max')

    def test_unknown_layer(self, tiny_table):
        with pytest.raises(KeyError):
            aggregate_data(tiny_table, assay='logcounts')

    def test_zero_cells(self, tiny_table):
        empty = tiny_table.select_cells(np.zeros(tiny_table.n_cells, dtype=bool))
        with pytest.raises(EmptyInput):
            aggregate_data(empty)

    def test_empty_input_is_value_error(self, tiny_table):
        empty = tiny_table.select_genes(np.zeros(tiny_table.n_genes, dtype=bool))
        with pytest.raises(ValueError):
            aggregate_data(empty)


class TestFlatten:
    """pb_flatten."""

    def test_columns_cluster_then_sample(self, tiny_table):
        pb = aggregate_data(tiny_table)
        flat = pb_flatten(pb)
        assert isinstance(flat, pd.DataFrame)
        assert list(flat.columns) == ['B.s3', 'T.s1', 'T.s2']
        assert flat.loc['G1', 'T.s1'] == 8.0
