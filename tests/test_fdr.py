"""Tests for multiple testing correction and the shared result types."""

import numpy as np
import pandas as pd
import pytest

from scdiffstate.exceptions import ModelFitFailure
from scdiffstate.stats.differential import (
    DSResult,
    Exclusion,
    FitFailure,
    GeneFit,
    adjust_pvalues,
    fdr_correction,
    parallel_map,
    require_fit,
)


class TestFdrCorrection:

    def test_monotone_in_raw_p(self):
        rng = np.random.RandomState(0)
        p = rng.uniform(size=200) ** 2
        adj = fdr_correction(p)
        order = np.argsort(p)
        assert np.all(np.diff(adj[order]) >= -1e-12)

    def test_bounds(self):
        rng = np.random.RandomState(1)
        p = rng.uniform(size=100)
        adj = fdr_correction(p)
        assert np.all(adj >= p - 1e-12)
        assert np.all((adj >= 0) & (adj <= 1))

    def test_known_values(self):
        adj = fdr_correction(np.array([0.01, 0.04, 0.03, 0.5]))
        np.testing.assert_allclose(adj, [0.04, 0.16 / 3, 0.16 / 3, 0.5], rtol=1e-12)

    def test_nan_not_counted(self):
        adj = fdr_correction(np.array([0.01, np.nan, 0.02]))
        assert np.isnan(adj[1])
        np.testing.assert_allclose(adj[[0, 2]], [0.02, 0.02])

    def test_all_nan(self):
        assert np.all(np.isnan(fdr_correction(np.array([np.nan, np.nan]))))

    def test_bonferroni(self):
        adj = fdr_correction(np.array([0.01, 0.2]), method="bonferroni")
        np.testing.assert_allclose(adj, [0.02, 0.4])


class TestAdjustPvalues:

    def _tables(self):
        return {
            'B': {
                'c1': pd.DataFrame({'gene': ['a', 'b'], 'p_val': [0.01, 0.04]}),
                'c2': pd.DataFrame({'gene': ['a', 'b'], 'p_val': [0.02, 0.9]}),
            },
        }

    def test_local_within_cluster(self):
        out = adjust_pvalues(self._tables())
        np.testing.assert_allclose(out['B']['c1']['p_adj.loc'], [0.02, 0.04])
        np.testing.assert_allclose(out['B']['c2']['p_adj.loc'], [0.04, 0.9])

    def test_global_pools_clusters(self):
        out = adjust_pvalues(self._tables())
        pooled = fdr_correction(np.array([0.01, 0.04, 0.02, 0.9]))
        np.testing.assert_allclose(out['B']['c1']['p_adj.glb'], pooled[:2])
        np.testing.assert_allclose(out['B']['c2']['p_adj.glb'], pooled[2:])

    def test_comparisons_not_pooled(self):
        tables = self._tables()
        tables['C'] = {'c1': pd.DataFrame({'gene': ['a'], 'p_val': [0.5]})}
        out = adjust_pvalues(tables)
        assert out['C']['c1']['p_adj.glb'].iloc[0] == pytest.approx(0.5)

    def test_inputs_untouched(self):
        tables = self._tables()
        adjust_pvalues(tables)
        assert 'p_adj.loc' not in tables['B']['c1'].columns


class TestFitRecords:

    def test_gene_fit_contrast(self):
        fit = GeneFit(
            gene='g', coef=np.array([1.0, 2.0]),
            cov_unscaled=np.array([[1.0, 0.5], [0.5, 2.0]]),
            dispersion=1.0, df_residual=3.0,
        )
        estimate, var = fit.contrast(np.array([-1.0, 1.0]))
        assert estimate == 1.0
        assert var == pytest.approx(1.0 + 2.0 - 1.0)
        assert fit.converged

    def test_require_fit(self):
        failure = FitFailure(gene='g', reason='did not converge')
        assert not failure.converged
        with pytest.raises(ModelFitFailure, match="did not converge"):
            require_fit(failure)

    def test_exclusions_frame(self):
        result = DSResult(tables={}, exclusions=[
            Exclusion(cluster_id='c1', gene=None, comparison=None, stage='cluster', reason='few cells'),
        ])
        frame = result.exclusions_frame()
        assert frame.loc[0, 'stage'] == 'cluster'
        assert frame.loc[0, 'error'] == 'InsufficientData'

    def test_empty_exclusions_frame_has_columns(self):
        frame = DSResult(tables={}).exclusions_frame()
        assert 'stage' in frame.columns
        assert frame.empty


class TestParallelMap:

    def test_sequential(self):
        assert parallel_map(abs, [-1, 2, -3]) == [1, 2, 3]

    def test_parallel_keeps_order(self):
        assert parallel_map(abs, range(-5, 5), n_jobs=2) == [abs(x) for x in range(-5, 5)]
