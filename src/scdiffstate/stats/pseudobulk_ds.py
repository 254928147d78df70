"""
Pseudobulk differential state testing.

For every cluster the summed-count pseudobulk table (genes × samples) is
tested against a sample-level design, one model per gene:

    1. Sample filter  - drop samples built from fewer than ``min_cells`` cells
    2. Gene filter    - keep genes detected in enough samples
    3. FitModel       - per-gene GLM (quasi-likelihood NB) or OLS (log-CPM)
    4. ApplyContrast  - c'beta and its unscaled variance c'(X'WX)^-1 c
    5. TestStatistic  - empirical Bayes moderated t
    6. AdjustPValues  - BH within cluster, and per comparison across clusters

Count model ("qlnb"):
    log E[y_gs] = log(libsize_s) + x_s' beta_g,   Var = mu + phi * mu^2

    phi is a common dispersion shared by all genes of the cluster, estimated
    by method of moments. Gene-specific extra variation is captured by the
    quasi-likelihood dispersion (Pearson chi2 / df_resid), which is moderated
    across genes exactly like a residual variance. Estimates are reported on
    the log2 scale.

Log-CPM model ("limma-trend"):
    logCPM_gs = log2((y_gs + 0.5) / (libsize_s + 1) * 1e6) = x_s' beta_g + e

    Residual variances are moderated towards a lowess trend on average
    log-CPM.

Per-gene fits are pure functions returning ``GeneFit`` or ``FitFailure``, so
a diverging gene is reported with missing statistics and the run continues.

References:
    - Lund et al. (2012) Stat Appl Genet Mol Biol 11(5) (QL F-tests)
    - Law et al. (2014) Genome Biology 15:R29 (limma-trend / voom)
    - Crowell et al. (2020) Nature Communications 11:6077
"""

from __future__ import annotations

import logging
import warnings
from enum import Enum
from functools import partial
from typing import Any, Callable, Mapping, Sequence

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from scdiffstate.exceptions import InvalidGrouping
from scdiffstate.stats.aggregation import PseudobulkTable
from scdiffstate.stats.design_matrix import (
    DesignSpecification,
    build_design_matrix,
    make_contrasts,
)
from scdiffstate.stats.differential import (
    DSResult,
    Exclusion,
    FitFailure,
    FitOutcome,
    GeneFit,
    adjust_pvalues,
    parallel_map,
)
from scdiffstate.stats.moderation import moderated_t_test

logger = logging.getLogger(__name__)

__all__ = [
    'PseudobulkMethod',
    'PSEUDOBULK_COLUMNS',
    'library_sizes',
    'log_cpm',
    'estimate_common_dispersion',
    'fit_nb_glm',
    'fit_linear_gene',
    'pseudobulk_ds',
]

PSEUDOBULK_COLUMNS = [
    'gene', 'cluster_id', 'logFC', 'logCPM', 't', 'F', 'df',
    'p_val', 'p_adj.loc', 'p_adj.glb', 'contrast',
]

# |log fold change| beyond this (natural log) means the IRLS fit ran off to
# infinity, typically because one group is all zero.
_MAX_LOG_COEF = 20.0

_MIN_DISPERSION = 1e-4


class PseudobulkMethod(Enum):
    """Available pseudobulk DS methods."""

    QLNB = "qlnb"
    LIMMA_TREND = "limma-trend"


def library_sizes(counts: pd.DataFrame) -> NDArray[np.float64]:
    """Column sums of a gene × sample count table; zero libraries become 1."""
    lib = counts.to_numpy(dtype=np.float64).sum(axis=0)
    return np.where(lib > 0, lib, 1.0)


def log_cpm(
    counts: NDArray[np.float64],
    lib_sizes: NDArray[np.float64],
    prior_count: float = 0.5,
) -> NDArray[np.float64]:
    """log2 counts-per-million with a prior count (voom convention)."""
    return np.log2((counts + prior_count) / (lib_sizes[None, :] + 1.0) * 1e6)


def _average_log_cpm(counts: NDArray[np.float64], lib_sizes: NDArray[np.float64]) -> NDArray[np.float64]:
    cpm = (counts + 0.5) / (lib_sizes[None, :] + 1.0) * 1e6
    return np.log2(cpm.mean(axis=1))


def estimate_common_dispersion(
    counts: NDArray[np.float64],
    X: NDArray[np.float64],
    lib_sizes: NDArray[np.float64],
) -> float:
    """
    Common NB dispersion by method of moments.

    Counts are scaled to a common library size, fitted by least squares on
    the design, and the residual variance of each gene is compared with the
    Poisson expectation:

        phi_g = (s2_g - m_g * mean(1 / sf)) / m_g^2

    The common dispersion is the median of phi_g over expressed genes,
    floored at a near-Poisson value.

    Args:
        counts: Count matrix (genes × samples)
        X: Design matrix (samples × coefficients)
        lib_sizes: Library size per sample

    Returns:
        Common dispersion phi (> 0)
    """
    n, p = X.shape
    if n <= p:
        return _MIN_DISPERSION

    sf = lib_sizes / lib_sizes.mean()
    normalized = counts / sf[None, :]

    hat = X @ np.linalg.pinv(X.T @ X) @ X.T
    residuals = normalized - normalized @ hat.T
    s2 = (residuals ** 2).sum(axis=1) / (n - p)
    means = normalized.mean(axis=1)

    expressed = means > 0
    if not np.any(expressed):
        return _MIN_DISPERSION

    poisson_var = means[expressed] * np.mean(1.0 / sf)
    phi = (s2[expressed] - poisson_var) / means[expressed] ** 2
    return float(max(np.median(phi), _MIN_DISPERSION))


def fit_nb_glm(
    gene: str,
    y: NDArray[np.float64],
    X: NDArray[np.float64],
    offset: NDArray[np.float64],
    dispersion: float,
) -> FitOutcome:
    """
    Fit a negative binomial GLM for one gene.

    Args:
        gene: Gene identifier
        y: Counts per sample
        X: Design matrix (samples × coefficients)
        offset: log library size per sample
        dispersion: Fixed NB dispersion (alpha)

    Returns:
        GeneFit with natural-log coefficients, unscaled covariance
        (X'WX)^-1 and the quasi-likelihood dispersion, or FitFailure.
    """
    import statsmodels.api as sm

    try:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            model = sm.GLM(
                y,
                X,
                family=sm.families.NegativeBinomial(alpha=dispersion),
                offset=offset,
            )
            result = model.fit(maxiter=100, scale=1.0)
    except Exception as e:
        return FitFailure(gene=gene, reason=f"GLM fit failed: {type(e).__name__}: {e}")

    if not getattr(result, 'converged', True):
        return FitFailure(gene=gene, reason="IRLS did not converge")

    coef = np.asarray(result.params, dtype=np.float64)
    cov = np.asarray(result.cov_params(), dtype=np.float64)

    if not np.all(np.isfinite(coef)) or not np.all(np.isfinite(cov)):
        return FitFailure(gene=gene, reason="Non-finite coefficient estimates")
    if np.any(np.abs(coef[1:]) > _MAX_LOG_COEF):
        return FitFailure(gene=gene, reason="Coefficient diverged (group with all-zero counts)")

    df_resid = float(result.df_resid)
    ql_dispersion = float(result.pearson_chi2) / df_resid if df_resid > 0 else np.nan

    return GeneFit(
        gene=gene,
        coef=coef,
        cov_unscaled=cov,
        dispersion=ql_dispersion,
        df_residual=df_resid,
    )


def fit_linear_gene(
    gene: str,
    y: NDArray[np.float64],
    X: NDArray[np.float64],
) -> FitOutcome:
    """Ordinary least squares for one gene on the log-CPM scale."""
    import statsmodels.api as sm

    try:
        result = sm.OLS(y, X).fit()
    except Exception as e:
        return FitFailure(gene=gene, reason=f"OLS fit failed: {type(e).__name__}: {e}")

    coef = np.asarray(result.params, dtype=np.float64)
    if not np.all(np.isfinite(coef)):
        return FitFailure(gene=gene, reason="Non-finite coefficient estimates")

    return GeneFit(
        gene=gene,
        coef=coef,
        cov_unscaled=np.asarray(result.normalized_cov_params, dtype=np.float64),
        dispersion=float(result.scale),
        df_residual=float(result.df_resid),
    )


def _fit_one(item: tuple[str, NDArray[np.float64]], fit_fn: Callable[..., FitOutcome], **kwargs: Any) -> FitOutcome:
    gene, y = item
    return fit_fn(gene, y, **kwargs)


def _resolve_design(
    pb: PseudobulkTable,
    design: DesignSpecification | pd.DataFrame | None,
    coef: str | Sequence[str] | None,
    contrast: pd.DataFrame | Mapping[str, Any] | None,
) -> DesignSpecification:
    if design is None:
        info = pb.sample_info
        if info.empty or 'group_id' not in info.columns or info['group_id'].isna().all():
            raise InvalidGrouping(
                "Pseudobulk table carries no sample -> group_id information; "
                "pass an explicit design"
            )
        design = build_design_matrix(info)

    if isinstance(design, DesignSpecification):
        if coef is None and contrast is None:
            return design
        design = design.design

    if contrast is not None and not isinstance(contrast, pd.DataFrame):
        contrast = make_contrasts(design, contrast)
    coef_tuple = (coef,) if isinstance(coef, str) else (tuple(coef) if coef is not None else None)
    return DesignSpecification(design=design, contrasts=contrast, coef=coef_tuple)


def _smallest_group(pb: PseudobulkTable, samples: Sequence[str]) -> int:
    info = pb.sample_info
    if info.empty or 'group_id' not in info.columns:
        return 1
    info = info.assign(sample_id=info['sample_id'].astype(str))
    groups = info.loc[info['sample_id'].isin(samples), 'group_id'].astype(str)
    if groups.empty:
        return 1
    return int(groups.value_counts().min())


def _test_cluster(
    cluster: str,
    counts: pd.DataFrame,
    n_cells: pd.Series,
    spec: DesignSpecification,
    method: PseudobulkMethod,
    min_cells: int,
    min_samples_expressed: int | None,
    pb: PseudobulkTable,
    n_jobs: int,
) -> tuple[dict[str, pd.DataFrame], list[Exclusion]]:
    """Run the full per-cluster state machine; returns raw tables and exclusions."""
    exclusions: list[Exclusion] = []

    keep_samples = []
    for sample in counts.columns:
        sample = str(sample)
        if sample not in spec.design.index:
            exclusions.append(Exclusion(
                cluster_id=cluster, gene=None, comparison=None, stage='samples',
                reason=f"Sample '{sample}' is not in the design",
            ))
        elif int(n_cells.get(sample, 0)) < min_cells:
            exclusions.append(Exclusion(
                cluster_id=cluster, gene=None, comparison=None, stage='samples',
                reason=f"Sample '{sample}' has {int(n_cells.get(sample, 0))} cells (< {min_cells})",
            ))
        else:
            keep_samples.append(sample)

    sub_spec = spec.subset(keep_samples)
    if not sub_spec.is_estimable():
        exclusions.append(Exclusion(
            cluster_id=cluster, gene=None, comparison=None, stage='cluster',
            reason=(
                f"Design not estimable with {len(keep_samples)} samples "
                f"and {sub_spec.n_params} coefficients"
            ),
            error='ModelFitFailure',
        ))
        logger.info(f"Cluster {cluster}: skipped, design not estimable")
        return {}, exclusions

    counts = counts[keep_samples]
    lib = library_sizes(counts)
    values = counts.to_numpy(dtype=np.float64)

    threshold = min_samples_expressed
    if threshold is None:
        threshold = _smallest_group(pb, keep_samples)
    detected = (values > 0).sum(axis=1)
    gene_mask = detected >= threshold

    n_filtered = int((~gene_mask).sum())
    if n_filtered:
        exclusions.append(Exclusion(
            cluster_id=cluster, gene=None, comparison=None, stage='gene_filter',
            reason=f"{n_filtered} genes detected in fewer than {threshold} samples",
        ))
    if not np.any(gene_mask):
        exclusions.append(Exclusion(
            cluster_id=cluster, gene=None, comparison=None, stage='cluster',
            reason="No genes passed the expression filter",
        ))
        return {}, exclusions

    genes = [str(g) for g in counts.index[gene_mask]]
    values = values[gene_mask]
    X = sub_spec.X
    ave_log_cpm = _average_log_cpm(values, lib)

    if method is PseudobulkMethod.QLNB:
        phi = estimate_common_dispersion(values, X, lib)
        logger.debug(f"Cluster {cluster}: common dispersion {phi:.4g}")
        fit_fn = partial(_fit_one, fit_fn=fit_nb_glm, X=X, offset=np.log(lib), dispersion=phi)
        response = values
        scale = np.log(2.0)
        trend = None
    else:
        fit_fn = partial(_fit_one, fit_fn=fit_linear_gene, X=X)
        response = log_cpm(values, lib)
        scale = 1.0
        trend = ave_log_cpm

    outcomes = parallel_map(fit_fn, zip(genes, response), n_jobs=n_jobs)

    for outcome in outcomes:
        if isinstance(outcome, FitFailure):
            logger.debug(f"Cluster {cluster}, gene {outcome.gene}: {outcome.reason}")
            exclusions.append(Exclusion(
                cluster_id=cluster, gene=outcome.gene, comparison=None, stage='fit',
                reason=outcome.reason, error=outcome.error,
            ))

    n_genes = len(genes)
    s2 = np.array([o.dispersion if isinstance(o, GeneFit) else np.nan for o in outcomes])
    df_resid = np.array([o.df_residual if isinstance(o, GeneFit) else np.nan for o in outcomes])

    tables: dict[str, pd.DataFrame] = {}
    for name, vector in sub_spec.comparisons():
        estimate = np.full(n_genes, np.nan)
        unscaled = np.full(n_genes, np.nan)
        for i, outcome in enumerate(outcomes):
            if isinstance(outcome, GeneFit):
                estimate[i], unscaled[i] = outcome.contrast(vector)

        stats = moderated_t_test(estimate, unscaled, s2, df_resid, covariate=trend)

        frame = pd.DataFrame({
            'gene': genes,
            'cluster_id': cluster,
            'logFC': estimate / scale,
            'logCPM': ave_log_cpm,
            't': stats['t'],
            'F': stats['t'] ** 2,
            'df': stats['df'],
            'p_val': stats['p_value'],
        })
        tables[name] = frame.sort_values('gene', kind='mergesort').reset_index(drop=True)

    n_failed = sum(1 for o in outcomes if isinstance(o, FitFailure))
    logger.info(
        f"Cluster {cluster}: tested {n_genes} genes in {len(keep_samples)} samples "
        f"({n_failed} failed fits, {n_filtered} filtered)"
    )
    return tables, exclusions


def pseudobulk_ds(
    pb: PseudobulkTable,
    design: DesignSpecification | pd.DataFrame | None = None,
    coef: str | Sequence[str] | None = None,
    contrast: pd.DataFrame | Mapping[str, Any] | None = None,
    method: str | PseudobulkMethod = "qlnb",
    min_cells: int = 10,
    min_samples_expressed: int | None = None,
    fdr_method: str = "BH",
    n_jobs: int = 1,
) -> DSResult:
    """
    Test every cluster of a pseudobulk table for differential state.

    Args:
        pb: Summed-count pseudobulk table from ``aggregate_data``
        design: Design specification or samples × coefficients DataFrame.
            Default: intercept + treatment-coded group_id from
            ``pb.sample_info`` (first group is the reference).
        coef: Coefficient name(s) to test; default is the last coefficient
        contrast: Contrast matrix (coefficients × comparisons) or a mapping
            accepted by ``make_contrasts``
        method: "qlnb" (quasi-likelihood negative binomial) or "limma-trend"
        min_cells: Samples built from fewer cells are dropped per cluster
        min_samples_expressed: Genes need a non-zero count in at least this
            many samples; default is the size of the smallest group
        fdr_method: "BH", "BY" or "bonferroni"
        n_jobs: Parallel workers for per-gene fits (joblib)

    Returns:
        DSResult with one table per comparison and cluster and every
        exclusion made on the way

    Raises:
        InvalidGrouping: If no design is given and group information is missing
        ValueError: For unknown methods or invalid designs/contrasts
    """
    method = PseudobulkMethod(method) if not isinstance(method, PseudobulkMethod) else method
    if min_cells < 0:
        raise ValueError(f"min_cells must be >= 0, got {min_cells}")

    spec = _resolve_design(pb, design, coef, contrast)
    if pb.fun != 'sum':
        warnings.warn(
            f"Pseudobulk table was aggregated with '{pb.fun}'; count models "
            f"expect summed counts"
        )

    comparisons = [name for name, _ in spec.comparisons()]
    raw: dict[str, dict[str, pd.DataFrame]] = {name: {} for name in comparisons}
    exclusions: list[Exclusion] = []
    n_cells = pb.n_cells

    logger.info(
        f"Pseudobulk DS ({method.value}): {len(pb)} clusters, "
        f"{len(comparisons)} comparison(s): {comparisons}"
    )

    for cluster, counts in pb.items():
        tables, cluster_exclusions = _test_cluster(
            cluster=cluster,
            counts=counts,
            n_cells=n_cells.loc[cluster],
            spec=spec,
            method=method,
            min_cells=min_cells,
            min_samples_expressed=min_samples_expressed,
            pb=pb,
            n_jobs=n_jobs,
        )
        exclusions.extend(cluster_exclusions)
        for name, frame in tables.items():
            raw[name][cluster] = frame

    adjusted = adjust_pvalues(raw, method=fdr_method)
    for name, by_cluster in adjusted.items():
        for cluster, frame in by_cluster.items():
            frame['contrast'] = name
            by_cluster[cluster] = frame[PSEUDOBULK_COLUMNS]

    return DSResult(
        tables=adjusted,
        exclusions=exclusions,
        method=method.value,
        params={
            'coef': list(spec.coef) if spec.coef is not None else None,
            'contrasts': list(spec.contrasts.columns) if spec.contrasts is not None else None,
            'min_cells': min_cells,
            'min_samples_expressed': min_samples_expressed,
            'fdr_method': fdr_method,
        },
    )
