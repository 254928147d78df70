"""Tests for the ExpressionTable container."""

import numpy as np
import pandas as pd
import pytest

from scdiffstate.core.expression import ExpressionTable
from scdiffstate.exceptions import InvalidGrouping


class TestConstruction:
    """Validation performed by the constructor."""

    def test_labels_become_categorical(self, tiny_table):
        meta = tiny_table.cell_metadata
        for label in ('sample_id', 'cluster_id', 'group_id'):
            assert isinstance(meta[label].dtype, pd.CategoricalDtype)

    def test_layer_shape_mismatch(self):
        cells = pd.Index(["c1", "c2"])
        with pytest.raises(ValueError, match="shape"):
            ExpressionTable(
                layers={'counts': np.zeros((3, 3))},
                gene_ids=pd.Index(["G1", "G2", "G3"]),
                cell_ids=cells,
                cell_metadata=pd.DataFrame(index=cells),
            )

    def test_duplicate_gene_ids(self):
        cells = pd.Index(["c1"])
        with pytest.raises(ValueError, match="unique"):
            ExpressionTable(
                layers={'counts': np.zeros((2, 1))},
                gene_ids=pd.Index(["G1", "G1"]),
                cell_ids=cells,
                cell_metadata=pd.DataFrame(index=cells),
            )

    def test_metadata_index_must_match(self):
        with pytest.raises(ValueError, match="cell_metadata.index"):
            ExpressionTable(
                layers={'counts': np.zeros((1, 2))},
                gene_ids=pd.Index(["G1"]),
                cell_ids=pd.Index(["c1", "c2"]),
                cell_metadata=pd.DataFrame(index=pd.Index(["c2", "c3"])),
            )

    def test_wrong_container_type(self):
        with pytest.raises(TypeError):
            ExpressionTable(
                layers={'counts': np.zeros((1, 1))},
                gene_ids=["G1"],
                cell_ids=pd.Index(["c1"]),
                cell_metadata=pd.DataFrame(index=pd.Index(["c1"])),
            )

    def test_sample_in_two_groups_rejected(self, make_table):
        with pytest.raises(ValueError, match="more than one group"):
            make_table(
                counts=[[1, 2]],
                samples=['s1', 's1'],
                clusters=['T', 'T'],
                groups=['ctrl', 'stim'],
            )


class TestLabels:
    """DS label access."""

    def test_category_lists(self, tiny_table):
        assert tiny_table.samples == ['s1', 's2', 's3']
        assert tiny_table.clusters == ['B', 'T']
        assert tiny_table.groups == ['ctrl', 'stim']

    def test_missing_label_raises_invalid_grouping(self, tiny_table):
        with pytest.raises(InvalidGrouping):
            tiny_table.labels('batch')

    def test_invalid_grouping_is_key_error(self, tiny_table):
        with pytest.raises(KeyError):
            tiny_table.labels('batch')

    def test_validate_ds_labels_requires_all_three(self):
        cells = pd.Index(["c1", "c2"])
        table = ExpressionTable(
            layers={'counts': np.ones((1, 2))},
            gene_ids=pd.Index(["G1"]),
            cell_ids=cells,
            cell_metadata=pd.DataFrame({'sample_id': ['s1', 's2']}, index=cells),
        )
        with pytest.raises(InvalidGrouping, match="group_id|cluster_id"):
            table.validate_ds_labels()

    def test_sample_info(self, tiny_table):
        info = tiny_table.sample_info()
        assert list(info.columns) == ['sample_id', 'group_id', 'n_cells']
        assert info['sample_id'].astype(str).tolist() == ['s1', 's2', 's3']
        assert info['group_id'].astype(str).tolist() == ['ctrl', 'stim', 'stim']
        assert info['n_cells'].tolist() == [2, 1, 2]


class TestImmutability:
    """Subsetting and layer additions return new tables."""

    def test_select_cells_drops_unused_categories(self, tiny_table):
        sub = tiny_table.select_cells(tiny_table.labels('cluster_id') == 'T')
        assert sub.n_cells == 3
        assert sub.samples == ['s1', 's2']
        assert sub.clusters == ['T']
        assert tiny_table.n_cells == 5

    def test_select_genes(self, tiny_table):
        sub = tiny_table.select_genes(np.array([False, True]))
        assert list(sub.gene_ids) == ['G2']
        np.testing.assert_array_equal(sub.layer('counts'), [[0, 0, 1, 2, 0]])

    def test_with_layer_leaves_original(self, tiny_table):
        new = tiny_table.with_layer('double', tiny_table.layer('counts') * 2)
        assert 'double' in new.layer_names
        assert 'double' not in tiny_table.layer_names

    def test_layers_mapping_is_a_copy(self, tiny_table):
        layers = tiny_table.layers
        layers['other'] = np.zeros(tiny_table.shape)
        assert 'other' not in tiny_table.layer_names

    def test_unknown_layer(self, tiny_table):
        with pytest.raises(KeyError, match="logcounts"):
            tiny_table.layer('logcounts')

    def test_deep_copy_is_independent(self, tiny_table):
        copied = tiny_table.copy()
        copied.layer('counts')[0, 0] = 99
        assert tiny_table.layer('counts')[0, 0] == 3

    def test_to_frame(self, tiny_table):
        frame = tiny_table.to_frame()
        assert frame.shape == (2, 5)
        assert frame.loc['G1', 'c2'] == 5


class TestFromAnnData:
    """AnnData bridge."""

    def test_transposes_cells_by_genes(self):
        anndata = pytest.importorskip("anndata")

        obs = pd.DataFrame({
            'sample_id': ['s1', 's2', 's2'],
            'cluster_id': ['T', 'T', 'T'],
            'group_id': ['a', 'b', 'b'],
        }, index=pd.Index(['c1', 'c2', 'c3']))
        var = pd.DataFrame(index=pd.Index(['G1', 'G2']))
        adata = anndata.AnnData(X=np.array([[1.0, 0.0], [2.0, 3.0], [0.0, 4.0]]), obs=obs, var=var)

        table = ExpressionTable.from_anndata(adata)

        assert table.shape == (2, 3)
        np.testing.assert_array_equal(table.layer('counts')[:, 1], [2.0, 3.0])
        assert table.samples == ['s1', 's2']
