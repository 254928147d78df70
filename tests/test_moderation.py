"""Tests for empirical Bayes variance moderation."""

import numpy as np
import pytest
from scipy import stats
from scipy.special import polygamma

from scdiffstate.stats.moderation import (
    fit_f_dist,
    moderated_t_test,
    squeeze_var,
    trigamma_inverse,
)


def _simulate_variances(n_genes=5000, d0=10.0, s0_sq=0.5, df=4.0, seed=0):
    """Sample variances whose true values follow a scaled inverse chi-square prior."""
    rng = np.random.RandomState(seed)
    sigma_sq = d0 * s0_sq / rng.chisquare(d0, size=n_genes)
    return sigma_sq * rng.chisquare(df, size=n_genes) / df


class TestTrigammaInverse:

    @pytest.mark.parametrize("y", [0.2, 1.0, 3.0, 25.0])
    def test_inverts_trigamma(self, y):
        assert trigamma_inverse(float(polygamma(1, y))) == pytest.approx(y, rel=1e-6)

    def test_non_positive_input(self):
        assert np.isinf(trigamma_inverse(0.0))


class TestFitFDist:

    def test_recovers_prior(self):
        s2 = _simulate_variances(d0=10.0, s0_sq=0.5, df=4.0)
        d0, s0_sq = fit_f_dist(s2, 4.0)
        assert 6.0 < d0 < 16.0
        assert s0_sq == pytest.approx(0.5, rel=0.1)

    def test_no_extra_dispersion_gives_infinite_d0(self):
        # all genes share one true variance
        rng = np.random.RandomState(1)
        s2 = rng.chisquare(4.0, size=5000) / 4.0
        d0, s0_sq = fit_f_dist(s2, 4.0)
        assert d0 > 50 or np.isinf(d0)
        assert s0_sq == pytest.approx(1.0, rel=0.1)

    def test_too_few_genes(self):
        d0, s0_sq = fit_f_dist(np.array([1.0, 2.0]), 3.0)
        assert np.isinf(d0)
        assert s0_sq == pytest.approx(1.5)

    def test_trended_prior_is_per_gene(self):
        rng = np.random.RandomState(2)
        n = 2000
        covariate = rng.uniform(0, 10, size=n)
        true_var = np.exp(-0.3 * covariate)
        s2 = true_var * rng.chisquare(4.0, size=n) / 4.0

        d0, s0_sq = fit_f_dist(s2, 4.0, covariate=covariate)

        assert np.shape(s0_sq) == (n,)
        low = s0_sq[covariate < 2].mean()
        high = s0_sq[covariate > 8].mean()
        assert low > 3 * high


class TestSqueezeVar:

    def test_weighted_average(self):
        s2_post, df_total = squeeze_var(np.array([1.0, 4.0]), 2.0, d0=2.0, s0_sq=2.0)
        np.testing.assert_allclose(s2_post, [1.5, 3.0])
        np.testing.assert_allclose(df_total, [4.0, 4.0])

    def test_infinite_prior_df(self):
        s2_post, df_total = squeeze_var(np.array([1.0, 4.0]), 2.0, d0=np.inf, s0_sq=2.0)
        np.testing.assert_allclose(s2_post, [2.0, 2.0])
        assert np.all(np.isinf(df_total))

    def test_shrinks_towards_prior(self):
        s2 = _simulate_variances(n_genes=500)
        d0, s0_sq = fit_f_dist(s2, 4.0)
        s2_post, _ = squeeze_var(s2, 4.0, d0, s0_sq)
        assert np.var(np.log(s2_post)) < np.var(np.log(s2))


class TestModeratedT:

    def test_unmoderated_is_ordinary_t(self):
        estimate = np.array([1.0, -2.0, 0.5])
        unscaled = np.array([0.5, 0.5, 0.5])
        s2 = np.array([0.8, 1.2, 2.0])

        out = moderated_t_test(estimate, unscaled, s2, 6.0, moderate=False)

        t = estimate / np.sqrt(s2 * unscaled)
        np.testing.assert_allclose(out['t'], t)
        np.testing.assert_allclose(out['df'], 6.0)
        np.testing.assert_allclose(out['p_value'], 2 * stats.t.sf(np.abs(t), 6.0))

    def test_moderated_df_adds_prior_df(self):
        s2 = _simulate_variances(n_genes=500)
        estimate = np.zeros_like(s2)
        out = moderated_t_test(estimate, np.full_like(s2, 0.5), s2, 4.0)
        d0 = out['d0'][0]
        assert np.isfinite(d0)
        np.testing.assert_allclose(out['df'], 4.0 + d0)

    def test_invalid_genes_get_nan(self):
        s2 = _simulate_variances(n_genes=50)
        estimate = np.ones_like(s2)
        estimate[3] = np.nan
        out = moderated_t_test(estimate, np.full_like(s2, 0.5), s2, 4.0)
        assert np.isnan(out['t'][3])
        assert np.isnan(out['p_value'][3])
        assert np.all(np.isfinite(np.delete(out['p_value'], 3)))

    def test_p_values_in_unit_interval(self):
        rng = np.random.RandomState(3)
        s2 = _simulate_variances(n_genes=200)
        estimate = rng.normal(size=200)
        out = moderated_t_test(estimate, np.full(200, 0.5), s2, 4.0)
        assert np.all((out['p_value'] >= 0) & (out['p_value'] <= 1))
