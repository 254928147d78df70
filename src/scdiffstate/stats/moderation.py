"""
Empirical Bayes variance moderation (limma-style).

Per-gene variance estimates from a handful of pseudobulk samples are noisy.
Moderation assumes the true gene variances follow a scaled inverse-chi-square
prior and shrinks each sample variance towards the prior scale:

    s2_post = (d0 * s0^2 + d * s2) / (d0 + d)

The prior (d0, s0^2) is estimated from all genes of a cluster by the method
of moments on log(s2). Moderated statistics then use s2_post with d0 + d
degrees of freedom. For the quasi-likelihood count model the "variance" is
the quasi-likelihood dispersion; for the log-CPM linear model it is the
residual variance.

References:
    - Smyth (2004) Statistical Applications in Genetics and Molecular Biology 3(1)
    - Lund et al. (2012) Statistical Applications in Genetics and Molecular
      Biology 11(5) (quasi-likelihood moderation)
"""

from __future__ import annotations

import warnings

import numpy as np
from numpy.typing import NDArray
from scipy import stats as scipy_stats
from scipy.special import digamma, polygamma

__all__ = [
    'trigamma_inverse',
    'fit_f_dist',
    'squeeze_var',
    'moderated_t_test',
]


def trigamma_inverse(x: float, tol: float = 1e-8, max_iter: int = 50) -> float:
    """
    Solve trigamma(y) = x for y by Newton iteration.

    Follows limma's trigammaInverse: start at y = 0.5 + 1/x and iterate on
    1/trigamma(y), which is nearly linear in y.

    Args:
        x: Target value (> 0)

    Returns:
        y with trigamma(y) ~= x; np.inf for x <= 0
    """
    if x <= 0:
        return np.inf
    if x > 1e7:
        return 1.0 / np.sqrt(x)
    if x < 1e-6:
        return 1.0 / x

    y = 0.5 + 1.0 / x
    for _ in range(max_iter):
        tri = polygamma(1, y)
        delta = tri * (1.0 - tri / x) / polygamma(2, y)
        y = y + delta
        if -delta / y < tol:
            break
    return float(y)


def fit_f_dist(
    s2: NDArray[np.float64],
    df: float | NDArray[np.float64],
    covariate: NDArray[np.float64] | None = None,
    frac: float = 0.5,
) -> tuple[float, float | NDArray[np.float64]]:
    """
    Estimate the scaled inverse-chi-square prior for gene variances.

    Method of moments on z = log(s2) (limma fitFDist):
        e = z - digamma(df/2) + log(df/2)
        evar = var(e) - mean(trigamma(df/2))
        d0 = 2 * trigamma_inverse(evar)
        s0^2 = exp(mean(e) + digamma(d0/2) - log(d0/2))

    With a covariate (average expression, "limma-trend") mean(e) is replaced
    by a lowess trend of e against the covariate and evar is taken around that
    trend, so s0^2 becomes a per-gene value.

    Non-positive or non-finite variances are ignored for the estimation.

    Args:
        s2: Per-gene variance estimates
        df: Residual degrees of freedom (scalar or per gene)
        covariate: Optional per-gene covariate for a trended prior
        frac: lowess span for the trend

    Returns:
        (d0, s0_sq); d0 is np.inf when the variances are no more dispersed
        than expected from sampling alone (complete shrinkage). s0_sq is an
        array aligned with s2 when a covariate is given.
    """
    s2 = np.asarray(s2, dtype=np.float64)
    df_arr = np.broadcast_to(np.asarray(df, dtype=np.float64), s2.shape)

    ok = np.isfinite(s2) & (s2 > 0) & np.isfinite(df_arr) & (df_arr > 0)
    if ok.sum() < 3:
        fallback = float(np.median(s2[ok])) if ok.any() else 1.0
        return np.inf, fallback

    z = np.log(s2[ok])
    half_df = df_arr[ok] / 2.0
    e = z - digamma(half_df) + np.log(half_df)

    use_trend = covariate is not None and ok.sum() >= 10
    if use_trend:
        from statsmodels.nonparametric.smoothers_lowess import lowess

        cov = np.asarray(covariate, dtype=np.float64)
        cov_ok = cov[ok]
        trend_ok = lowess(e, cov_ok, frac=frac, return_sorted=False)
        # extend the trend to genes that did not enter the fit
        order = np.argsort(cov_ok)
        trend_all = np.interp(cov, cov_ok[order], trend_ok[order])
        resid = e - trend_ok
        evar = float(np.var(resid, ddof=1)) - float(np.mean(polygamma(1, half_df)))
        emean: float | NDArray[np.float64] = trend_all
    else:
        emean = float(np.mean(e))
        evar = float(np.var(e, ddof=1)) - float(np.mean(polygamma(1, half_df)))

    if evar <= 0:
        return np.inf, np.exp(emean) if use_trend else float(np.exp(emean))

    d0 = 2.0 * trigamma_inverse(evar)
    if not np.isfinite(d0) or d0 > 1e10:
        return np.inf, np.exp(emean) if use_trend else float(np.exp(emean))

    s0_sq = np.exp(emean + digamma(d0 / 2.0) - np.log(d0 / 2.0))
    return float(d0), s0_sq if use_trend else float(s0_sq)


def squeeze_var(
    s2: NDArray[np.float64],
    df: float | NDArray[np.float64],
    d0: float,
    s0_sq: float | NDArray[np.float64],
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """
    Shrink variances towards the prior (limma squeezeVar).

    Returns:
        (s2_post, df_total) as per-gene arrays. With d0 = inf every gene gets
        the prior scale s0_sq and infinite df.
    """
    s2 = np.asarray(s2, dtype=np.float64)
    df_arr = np.broadcast_to(np.asarray(df, dtype=np.float64), s2.shape).astype(np.float64)
    prior = np.broadcast_to(np.asarray(s0_sq, dtype=np.float64), s2.shape).astype(np.float64)

    if np.isinf(d0):
        return prior, np.full_like(s2, np.inf)

    s2_post = (d0 * prior + df_arr * s2) / (d0 + df_arr)
    return s2_post, d0 + df_arr


def moderated_t_test(
    estimate: NDArray[np.float64],
    unscaled_var: NDArray[np.float64],
    s2: NDArray[np.float64],
    df_residual: float | NDArray[np.float64],
    moderate: bool = True,
    covariate: NDArray[np.float64] | None = None,
) -> dict[str, NDArray[np.float64]]:
    """
    Moderated t-statistics for one comparison across genes.

    Formula:
        t = estimate / sqrt(s2_post * unscaled_var)
        p = 2 * P(T_{df_total} > |t|)

    Genes with non-finite inputs get NaN statistics and do not enter the
    prior estimation.

    Args:
        estimate: Contrast estimates (n_genes,)
        unscaled_var: c' (X'WX)^-1 c per gene (n_genes,)
        s2: Variance (or QL dispersion) estimates (n_genes,)
        df_residual: Residual df (scalar or per gene)
        moderate: If False, use the raw s2 and residual df
        covariate: Per-gene average expression for a trended prior

    Returns:
        Dict with keys t, df, p_value, s2_post, and the prior d0 / s0_sq
        broadcast to arrays.
    """
    estimate = np.asarray(estimate, dtype=np.float64)
    unscaled_var = np.asarray(unscaled_var, dtype=np.float64)
    s2 = np.asarray(s2, dtype=np.float64)
    df_arr = np.broadcast_to(np.asarray(df_residual, dtype=np.float64), s2.shape)

    valid = (
        np.isfinite(estimate) & np.isfinite(unscaled_var) & (unscaled_var > 0)
        & np.isfinite(s2) & (s2 >= 0)
    )

    d0 = np.inf
    prior = np.full_like(s2, np.nan)
    s2_post = s2.copy()
    df_total = df_arr.astype(np.float64).copy()

    if moderate:
        if valid.sum() >= 3:
            cov = None if covariate is None else np.asarray(covariate, dtype=np.float64)[valid]
            d0, s0_sq = fit_f_dist(s2[valid], df_arr[valid], covariate=cov)
            post, tot = squeeze_var(s2[valid], df_arr[valid], d0, s0_sq)
            s2_post[valid] = post
            df_total[valid] = tot
            prior[valid] = s0_sq
        else:
            warnings.warn(
                "Fewer than 3 genes with valid variance estimates; "
                "moderation disabled for this comparison"
            )

    se = np.sqrt(np.maximum(s2_post * unscaled_var, 1e-300))
    t = np.where(valid, estimate / se, np.nan)

    # infinite df is the normal limit
    p_value = np.where(
        np.isinf(df_total),
        2.0 * scipy_stats.norm.sf(np.abs(t)),
        2.0 * scipy_stats.t.sf(np.abs(t), np.where(np.isinf(df_total), 1.0, df_total)),
    )
    p_value = np.where(valid, p_value, np.nan)

    return {
        't': t,
        'df': np.where(valid, df_total, np.nan),
        'p_value': p_value,
        's2_post': s2_post,
        'd0': np.full_like(s2, d0),
        's0_sq': prior,
    }
