"""
Linear mixed model families for cell-level DS testing.

Model per gene, on the cells of one cluster:

    y_i = x_i' beta + u_s(i) + e_i,   u_s ~ N(0, tau^2),   e_i ~ N(0, sigma^2 / w_i)

fit by maximum likelihood (``reml=False``) with statsmodels ``MixedLM``.

Families:
    * dream - ``logcounts`` with voom-style precision weights w_i from a
      lowess trend of the residual standard deviation on average expression.
      statsmodels has no observation weights for MixedLM, so the model is fit
      on sqrt(w)-scaled response, fixed-effect design and random-intercept
      column, which is the same likelihood.
    * vst - ``vstresiduals`` (analytic Pearson residuals), w_i = 1.

Denominator degrees of freedom:
    satterthwaite   df = 2 V(theta)^2 / (g' A g)
                    V(theta) = c' (sum_s X_s' V_s^-1 X_s)^-1 c,  theta = (tau^2, sigma^2)
                    g = dV/dtheta (numerical gradient)
                    A = inverse Hessian of the beta-profiled negative ML
                        log-likelihood at theta_hat
    between-within  n_samples - p
    residual        n_obs - p

With a single random intercept V_s = D_s + tau^2 11' (D_s diagonal), so
V_s^-1 and log|V_s| follow from Sherman-Morrison and the profiled likelihood
costs O(n p^2) per evaluation.

References:
    - Satterthwaite (1946) Biometrics Bulletin 2(6):110-114
    - Kuznetsova et al. (2017) J Stat Softw 82(13) (lmerTest)
    - Hoffman & Roussos (2021) Bioinformatics 37(2):192-201 (dream)
    - Law et al. (2014) Genome Biology 15:R29 (voom)
"""

from __future__ import annotations

import logging
import warnings
from typing import Any

import numpy as np
from numpy.typing import NDArray

from scdiffstate.core.transform import Transform
from scdiffstate.stats.differential import FitFailure, FitOutcome, GeneFit
from scdiffstate.stats.methods._base import DDFMethod, MixedMethodName, _BaseMixedMethod

logger = logging.getLogger(__name__)

__all__ = [
    'voom_weights',
    'profiled_deviance',
    'contrast_variance',
    'satterthwaite_df',
    'between_within_df',
    'DreamMethod',
    'VstMethod',
]


def voom_weights(
    values: NDArray[np.float64],
    X: NDArray[np.float64],
    frac: float = 0.5,
) -> NDArray[np.float64]:
    """
    Per-observation precision weights from the mean-variance trend.

    Each gene is fit by least squares on the cell-level design. The square
    root of its residual standard deviation is smoothed (lowess) against the
    gene's average expression, and each observation's weight is the inverse
    of the predicted variance at its fitted value:

        w_gi = 1 / trend(fitted_gi)^4

    Args:
        values: Log-expression (genes × cells)
        X: Cell-level design (cells × coefficients)
        frac: lowess span

    Returns:
        Weights (genes × cells); all ones when fewer than 3 genes carry a
        usable variance.
    """
    from statsmodels.nonparametric.smoothers_lowess import lowess

    n_genes, n_cells = values.shape
    beta, _, rank, _ = np.linalg.lstsq(X, values.T, rcond=None)
    fitted = (X @ beta).T
    df = max(n_cells - rank, 1)

    sd = np.sqrt(((values - fitted) ** 2).sum(axis=1) / df)
    mean_expr = values.mean(axis=1)
    ok = np.isfinite(sd) & (sd > 0)

    if ok.sum() < 3:
        return np.ones_like(values)

    trend = lowess(np.sqrt(sd[ok]), mean_expr[ok], frac=frac, return_sorted=True)
    predicted = np.interp(fitted, trend[:, 0], trend[:, 1])
    predicted = np.maximum(predicted, 1e-4)
    return 1.0 / predicted ** 4


def _group_index(groups: NDArray[np.int_]) -> list[NDArray[np.int_]]:
    return [np.flatnonzero(groups == g) for g in np.unique(groups)]


def _gls_terms(
    theta: NDArray[np.float64],
    y: NDArray[np.float64],
    X: NDArray[np.float64],
    index: list[NDArray[np.int_]],
    w: NDArray[np.float64],
) -> tuple[NDArray[np.float64], NDArray[np.float64], float, float]:
    """X'V^-1X, X'V^-1y, y'V^-1y and log|V| for random-intercept V."""
    tau2, sigma2 = theta
    p = X.shape[1]
    xvx = np.zeros((p, p))
    xvy = np.zeros(p)
    yvy = 0.0
    logdet = 0.0

    for idx in index:
        d = w[idx] / sigma2
        Xs = X[idx]
        ys = y[idx]
        a = 1.0 + tau2 * d.sum()

        xd = Xs * d[:, None]
        yd = ys * d
        xd_sum = xd.sum(axis=0)
        yd_sum = yd.sum()

        xvx += Xs.T @ xd - tau2 * np.outer(xd_sum, xd_sum) / a
        xvy += Xs.T @ yd - tau2 * xd_sum * yd_sum / a
        yvy += float(ys @ yd) - tau2 * yd_sum ** 2 / a
        logdet += -np.log(d).sum() + np.log(a)

    return xvx, xvy, yvy, logdet


def profiled_deviance(
    theta: NDArray[np.float64],
    y: NDArray[np.float64],
    X: NDArray[np.float64],
    index: list[NDArray[np.int_]],
    w: NDArray[np.float64],
) -> float:
    """Negative ML log-likelihood with beta profiled out."""
    xvx, xvy, yvy, logdet = _gls_terms(theta, y, X, index, w)
    beta = np.linalg.solve(xvx, xvy)
    quad = yvy - float(xvy @ beta)
    return 0.5 * (logdet + quad + len(y) * np.log(2.0 * np.pi))


def contrast_variance(
    theta: NDArray[np.float64],
    vector: NDArray[np.float64],
    X: NDArray[np.float64],
    index: list[NDArray[np.int_]],
    w: NDArray[np.float64],
) -> float:
    """V(theta) = c' (X'V^-1X)^-1 c."""
    y = np.zeros(X.shape[0])
    xvx = _gls_terms(theta, y, X, index, w)[0]
    return float(vector @ np.linalg.solve(xvx, vector))


def between_within_df(n_groups: int, n_params: int) -> float:
    """Between-within df: number of samples minus fixed-effect parameters."""
    return float(max(n_groups - n_params, 1))


def satterthwaite_df(
    vector: NDArray[np.float64],
    y: NDArray[np.float64],
    X: NDArray[np.float64],
    groups: NDArray[np.int_],
    tau2: float,
    sigma2: float,
    weights: NDArray[np.float64] | None = None,
) -> float:
    """
    Satterthwaite degrees of freedom for the contrast c'beta.

    When the random-intercept variance sits on the boundary (tau^2 ~ 0) it
    is held fixed and only sigma^2 enters the approximation, which then
    reduces to the residual df.

    Args:
        vector: Contrast vector in coefficient space
        y: Response (cells,)
        X: Fixed-effects design (cells × coefficients)
        groups: Integer sample code per cell
        tau2: ML estimate of the random-intercept variance
        sigma2: ML estimate of the residual variance
        weights: Observation precision weights (default 1)

    Returns:
        df clipped to [1, n_obs - p]; the between-within df when the
        approximation is not finite.
    """
    from statsmodels.tools.numdiff import approx_fprime, approx_hess

    n_obs, p = X.shape
    w = np.ones(n_obs) if weights is None else np.asarray(weights, dtype=np.float64)
    index = _group_index(groups)
    fallback = between_within_df(len(index), p)
    upper = max(float(n_obs - p), 1.0)

    free_tau = tau2 > 1e-8 * max(sigma2, 1e-12)

    def _theta(params: NDArray[np.float64]) -> NDArray[np.float64]:
        if free_tau:
            return params
        return np.array([0.0, params[0]])

    start = np.array([tau2, sigma2]) if free_tau else np.array([sigma2])

    try:
        with np.errstate(all='ignore'):
            V = contrast_variance(_theta(start), vector, X, index, w)
            grad = approx_fprime(
                start, lambda t: contrast_variance(_theta(t), vector, X, index, w)
            )
            hess = approx_hess(start, lambda t: profiled_deviance(_theta(t), y, X, index, w))
            A = np.linalg.inv(np.atleast_2d(hess))
            denom = float(np.ravel(grad) @ A @ np.ravel(grad))
    except (np.linalg.LinAlgError, ValueError, FloatingPointError):
        return fallback

    if not np.isfinite(V) or not np.isfinite(denom) or denom <= 0:
        return fallback

    df = 2.0 * V ** 2 / denom
    if not np.isfinite(df):
        return fallback
    return float(np.clip(df, 1.0, upper))


class _BaseLMMMethod(_BaseMixedMethod):
    """Random-intercept LMM fit with statsmodels MixedLM (ML)."""

    def __init__(self, ddf: str | DDFMethod = DDFMethod.SATTERTHWAITE) -> None:
        self.ddf = ddf if isinstance(ddf, DDFMethod) else DDFMethod(ddf)

    def fit_gene(
        self,
        gene: str,
        y: NDArray[np.float64],
        X: NDArray[np.float64],
        groups: NDArray[np.int_],
        comparisons: list[NDArray[np.float64]],
        weights: NDArray[np.float64] | None = None,
        **inputs: Any,
    ) -> FitOutcome:
        from statsmodels.regression.mixed_linear_model import MixedLM

        n_obs, p = X.shape
        w = np.ones(n_obs) if weights is None else np.asarray(weights, dtype=np.float64)
        sw = np.sqrt(w)

        if np.allclose(y, y[0]):
            return FitFailure(gene=gene, reason="Constant response")

        try:
            with warnings.catch_warnings():
                warnings.simplefilter("ignore")
                model = MixedLM(y * sw, X * sw[:, None], groups=groups, exog_re=sw[:, None])
                result = model.fit(reml=False, method=['lbfgs', 'powell'])
        except Exception as e:
            return FitFailure(gene=gene, reason=f"MixedLM failed: {type(e).__name__}: {e}")

        if not result.converged:
            return FitFailure(gene=gene, reason="MixedLM did not converge")

        coef = np.asarray(result.fe_params, dtype=np.float64)
        cov = np.asarray(result.cov_params(), dtype=np.float64)[:p, :p]
        tau2 = float(np.asarray(result.cov_re)[0, 0])
        sigma2 = float(result.scale)

        if not np.all(np.isfinite(coef)) or not np.all(np.isfinite(cov)):
            return FitFailure(gene=gene, reason="Non-finite fixed-effect estimates")

        n_groups = len(np.unique(groups))
        if self.ddf is DDFMethod.SATTERTHWAITE:
            dfs = [
                satterthwaite_df(vec, y, X, groups, tau2, sigma2, weights=w)
                for vec in comparisons
            ]
        elif self.ddf is DDFMethod.BETWEEN_WITHIN:
            dfs = [between_within_df(n_groups, p)] * len(comparisons)
        else:
            dfs = [float(max(n_obs - p, 1))] * len(comparisons)

        return GeneFit(
            gene=gene,
            coef=coef,
            cov_unscaled=cov,
            dispersion=1.0,
            df_residual=float(n_obs - p),
            extra={'df': dfs, 'tau2': tau2, 'sigma2': sigma2},
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}(layer='{self.layer}', ddf='{self.ddf.value}')"


class DreamMethod(_BaseLMMMethod):
    """
    Precision-weighted LMM on log-normalized expression.

    Weights come from ``voom_weights`` computed once per cluster on the
    cell-level design; the missing ``logcounts`` layer is created with
    ``LogNormalize``.
    """

    layer = 'logcounts'
    log2_scale = 1.0

    def __init__(self, ddf: str | DDFMethod = DDFMethod.SATTERTHWAITE, frac: float = 0.5) -> None:
        super().__init__(ddf=ddf)
        self.frac = frac

    @property
    def name(self) -> MixedMethodName:
        return MixedMethodName.DREAM

    def layer_transform(self) -> Transform | None:
        from scdiffstate.stats.normalization import LogNormalize

        return LogNormalize(target=self.layer)

    def cluster_inputs(self, values, counts, X):
        return {'weights': voom_weights(values, X, frac=self.frac)}, {}


class VstMethod(_BaseLMMMethod):
    """Unweighted LMM on Pearson-residual expression."""

    layer = 'vstresiduals'
    log2_scale = None

    @property
    def name(self) -> MixedMethodName:
        return MixedMethodName.VST

    def layer_transform(self) -> Transform | None:
        from scdiffstate.stats.normalization import PearsonResidualsVST

        return PearsonResidualsVST(target=self.layer)
