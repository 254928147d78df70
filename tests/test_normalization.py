"""Tests for size factors, log normalization and Pearson residuals."""

import numpy as np
import pytest

from scdiffstate.stats.normalization import (
    LogNormalize,
    PearsonResidualsVST,
    compute_size_factors,
    log_normalize,
    pearson_residuals,
)


class TestSizeFactors:

    def test_unit_mean_over_nonempty_cells(self):
        counts = np.array([[1.0, 3.0, 0.0], [1.0, 1.0, 0.0]])
        np.testing.assert_allclose(compute_size_factors(counts), [2 / 3, 4 / 3, 1.0])

    def test_all_empty(self):
        np.testing.assert_array_equal(compute_size_factors(np.zeros((2, 3))), [1.0, 1.0, 1.0])

    def test_log_normalize(self):
        counts = np.array([[1.0, 3.0], [1.0, 1.0]])
        # size factors 2/3 and 4/3
        expected = np.log2(np.array([[1.5, 2.25], [1.5, 0.75]]) + 1.0)
        np.testing.assert_allclose(log_normalize(counts), expected)


class TestPearsonResiduals:

    def test_formula(self):
        counts = np.array([[2.0, 0.0], [2.0, 4.0]])
        mu = np.outer([2.0, 6.0], [4.0, 4.0]) / 8.0
        expected = (counts - mu) / np.sqrt(mu + mu ** 2 / 100.0)
        np.testing.assert_allclose(pearson_residuals(counts, clip=np.inf), expected)

    def test_default_clip(self):
        rng = np.random.RandomState(0)
        counts = rng.poisson(1.0, size=(20, 16)).astype(float)
        counts[0, 0] = 500.0
        residuals = pearson_residuals(counts)
        assert residuals.max() == pytest.approx(4.0)

    def test_zero_gene_gives_zero_residuals(self):
        counts = np.array([[0.0, 0.0], [3.0, 1.0]])
        np.testing.assert_array_equal(pearson_residuals(counts)[0], [0.0, 0.0])

    def test_all_zero(self):
        np.testing.assert_array_equal(pearson_residuals(np.zeros((2, 2))), np.zeros((2, 2)))


class TestTransforms:

    def test_log_normalize_adds_layer(self, tiny_table):
        out = LogNormalize().apply(tiny_table)
        assert 'logcounts' in out.layer_names
        assert 'logcounts' not in tiny_table.layer_names
        np.testing.assert_allclose(
            out.layer('logcounts'), log_normalize(tiny_table.layer('counts'))
        )

    def test_negative_counts_rejected(self, tiny_table):
        table = tiny_table.with_layer('counts', -tiny_table.layer('counts'))
        with pytest.raises(ValueError, match="non-negative"):
            LogNormalize().apply(table)

    def test_missing_source(self, tiny_table):
        with pytest.raises(ValueError, match="not found"):
            LogNormalize(source='spliced').apply(tiny_table)

    def test_vst_layer(self, tiny_table):
        out = PearsonResidualsVST().apply(tiny_table)
        assert out.layer('vstresiduals').shape == tiny_table.shape

    def test_vst_invalid_theta(self, tiny_table):
        with pytest.raises(ValueError, match="theta"):
            PearsonResidualsVST(theta=0).apply(tiny_table)
