"""
Count GLMM families (Poisson / negative binomial) with a random sample intercept.

Model per gene, on the cells of one cluster:

    y_i | u ~ Poisson(mu_i)  or  NB(mu_i, phi)
    log mu_i = log(libsize_i) + x_i' beta + u_s(i),   u_s ~ N(0, tau^2)

The marginal likelihood of each sample integrates the random intercept out
by Gauss-Hermite quadrature:

    L_s = sum_k (w_k / sqrt(pi)) prod_{i in s} f(y_i | sqrt(2) tau t_k)

and is maximized over (beta, log tau[, log phi]) with scipy.optimize. The
covariance of the estimates is the inverse of the numerical Hessian of the
negative log-likelihood (statsmodels.tools.numdiff), and fixed effects are
tested with Wald z statistics.
"""

from __future__ import annotations

import logging
import warnings
from typing import Any

import numpy as np
from numpy.typing import NDArray
from scipy.special import gammaln, logsumexp

from scdiffstate.stats.differential import FitFailure, FitOutcome, GeneFit
from scdiffstate.stats.methods._base import MixedMethodName, _BaseMixedMethod

logger = logging.getLogger(__name__)

__all__ = ['glmm_negative_loglik', 'fit_count_glmm', 'PoissonGLMMMethod', 'NegBinGLMMMethod']

_MAX_LOG_COEF = 20.0


def glmm_negative_loglik(
    params: NDArray[np.float64],
    y: NDArray[np.float64],
    X: NDArray[np.float64],
    offset: NDArray[np.float64],
    membership: NDArray[np.float64],
    nodes: NDArray[np.float64],
    log_weights: NDArray[np.float64],
    family: str,
) -> float:
    """
    Negative marginal log-likelihood of a random-intercept count GLMM.

    Args:
        params: [beta..., log tau] (+ [log phi] for "nbinom")
        y: Counts (cells,)
        X: Fixed-effects design (cells × p)
        offset: log library size (cells,)
        membership: One-hot sample membership (samples × cells)
        nodes: Gauss-Hermite nodes t_k
        log_weights: log(w_k / sqrt(pi))
        family: "poisson" or "nbinom"
    """
    p = X.shape[1]
    beta = params[:p]
    tau = np.exp(params[p])

    eta = offset + X @ beta
    lin = eta[:, None] + np.sqrt(2.0) * tau * nodes[None, :]
    lin = np.clip(lin, -50.0, 50.0)
    mu = np.exp(lin)

    if family == 'poisson':
        ll = y[:, None] * lin - mu - gammaln(y + 1.0)[:, None]
    else:
        r = np.exp(-params[p + 1])
        ll = (
            gammaln(y + r)[:, None] - gammaln(r) - gammaln(y + 1.0)[:, None]
            + r * (np.log(r) - np.log(r + mu))
            + y[:, None] * (lin - np.log(r + mu))
        )

    per_sample = membership @ ll
    return float(-logsumexp(per_sample + log_weights[None, :], axis=1).sum())


def fit_count_glmm(
    gene: str,
    y: NDArray[np.float64],
    X: NDArray[np.float64],
    groups: NDArray[np.int_],
    offset: NDArray[np.float64],
    family: str = 'poisson',
    n_nodes: int = 20,
) -> FitOutcome:
    """
    Fit a Poisson or NB random-intercept GLMM for one gene.

    Starting values come from a fixed-effects Poisson GLM (statsmodels).

    Returns:
        GeneFit with natural-log coefficients and their covariance, the
        random-intercept variance in ``extra['tau2']`` (and NB dispersion in
        ``extra['phi']``), or FitFailure.
    """
    import statsmodels.api as sm
    from scipy.optimize import minimize
    from statsmodels.tools.numdiff import approx_hess

    n_obs, p = X.shape
    codes = np.unique(groups, return_inverse=True)[1]
    membership = np.zeros((codes.max() + 1, n_obs))
    membership[codes, np.arange(n_obs)] = 1.0

    t, w = np.polynomial.hermite.hermgauss(n_nodes)
    log_weights = np.log(w / np.sqrt(np.pi))

    try:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            start_fit = sm.GLM(y, X, family=sm.families.Poisson(), offset=offset).fit()
        beta0 = np.asarray(start_fit.params, dtype=np.float64)
    except Exception:
        beta0 = np.zeros(p)
        beta0[0] = np.log(max(y.sum(), 0.5) / np.exp(offset).sum())
    if not np.all(np.isfinite(beta0)):
        beta0 = np.zeros(p)

    start = np.concatenate([beta0, [np.log(0.5)]])
    if family == 'nbinom':
        start = np.concatenate([start, [np.log(0.1)]])

    args = (y, X, offset, membership, t, log_weights, family)

    try:
        with np.errstate(all='ignore'):
            res = minimize(glmm_negative_loglik, start, args=args, method='BFGS')
            hess = approx_hess(res.x, glmm_negative_loglik, args=args)
            cov = np.linalg.inv(hess)
    except (np.linalg.LinAlgError, ValueError) as e:
        return FitFailure(gene=gene, reason=f"GLMM failed: {type(e).__name__}: {e}")

    grad_ok = res.jac is not None and np.max(np.abs(res.jac)) < 1e-2
    if not (res.success or (np.isfinite(res.fun) and grad_ok)):
        return FitFailure(gene=gene, reason=f"GLMM did not converge: {res.message}")

    coef = res.x[:p]
    cov_beta = cov[:p, :p]
    if not np.all(np.isfinite(coef)) or not np.all(np.isfinite(cov_beta)):
        return FitFailure(gene=gene, reason="Non-finite fixed-effect estimates")
    if np.any(np.diag(cov_beta) <= 0):
        return FitFailure(gene=gene, reason="Hessian not positive definite")
    if np.any(np.abs(coef[1:]) > _MAX_LOG_COEF):
        return FitFailure(gene=gene, reason="Coefficient diverged (group with all-zero counts)")

    extra: dict[str, Any] = {'tau2': float(np.exp(2.0 * res.x[p]))}
    if family == 'nbinom':
        extra['phi'] = float(np.exp(res.x[p + 1]))

    return GeneFit(
        gene=gene,
        coef=coef,
        cov_unscaled=cov_beta,
        dispersion=1.0,
        df_residual=float(n_obs - p),
        extra=extra,
    )


class _BaseGLMMMethod(_BaseMixedMethod):
    """Count GLMM on raw counts with a log library-size offset."""

    layer = 'counts'
    log2_scale = 1.0 / np.log(2.0)
    family = 'poisson'

    def __init__(self, n_nodes: int = 20) -> None:
        self.n_nodes = n_nodes

    def cluster_inputs(self, values, counts, X):
        lib = counts.sum(axis=0)
        return {}, {'offset': np.log(np.where(lib > 0, lib, 1.0))}

    def fit_gene(
        self,
        gene: str,
        y: NDArray[np.float64],
        X: NDArray[np.float64],
        groups: NDArray[np.int_],
        comparisons: list[NDArray[np.float64]],
        offset: NDArray[np.float64] | None = None,
        **inputs: Any,
    ) -> FitOutcome:
        if offset is None:
            offset = np.zeros(len(y))
        fit = fit_count_glmm(
            gene, y, X, groups, offset, family=self.family, n_nodes=self.n_nodes
        )
        if isinstance(fit, GeneFit):
            fit.extra['df'] = [np.inf] * len(comparisons)
        return fit


class PoissonGLMMMethod(_BaseGLMMMethod):
    """Poisson GLMM with a random sample intercept."""

    family = 'poisson'

    @property
    def name(self) -> MixedMethodName:
        return MixedMethodName.POISSON


class NegBinGLMMMethod(_BaseGLMMMethod):
    """Negative binomial GLMM with a random sample intercept."""

    family = 'nbinom'

    @property
    def name(self) -> MixedMethodName:
        return MixedMethodName.NBINOM
