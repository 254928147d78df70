"""
Shared building blocks for differential state testing.

Both DS paths (pseudobulk and mixed model) fit one model per gene and
cluster. Fits are pure functions whose outcome is a value, either a
``GeneFit`` or a ``FitFailure``, so a batch never aborts because a single
gene did not converge. Anything that is skipped is returned as an
``Exclusion`` record on the ``DSResult`` alongside the result tables.

Multiple testing correction runs in two scopes once every fit in the scope
has completed:

- local:  within one cluster and one comparison (``p_adj.loc``)
- global: pooled across all clusters of one comparison (``p_adj.glb``)

References:
    - Benjamini & Hochberg (1995) JRSS-B 57(1):289-300
    - Crowell et al. (2020) Nature Communications 11:6077 (DS analysis)
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Iterable, Literal, Sequence, TypeVar, Union

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from scdiffstate.exceptions import ModelFitFailure

logger = logging.getLogger(__name__)

__all__ = [
    'GeneFit',
    'FitFailure',
    'FitOutcome',
    'require_fit',
    'Exclusion',
    'DSResult',
    'fdr_correction',
    'adjust_pvalues',
    'parallel_map',
]

T = TypeVar('T')
R = TypeVar('R')


@dataclass(frozen=True)
class GeneFit:
    """Successful per-gene model fit.

    Attributes:
        gene: Gene identifier
        coef: Coefficient estimates (n_params,)
        cov_unscaled: Unscaled covariance of the estimates; multiplied by
            ``dispersion`` it gives Cov(coef)
        dispersion: Residual variance (linear model) or quasi-likelihood
            dispersion (count model)
        df_residual: Residual degrees of freedom
        extra: Method-specific values (average expression, variance
            components, ...)
    """

    gene: str
    coef: NDArray[np.float64]
    cov_unscaled: NDArray[np.float64]
    dispersion: float
    df_residual: float
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def converged(self) -> bool:
        return True

    def contrast(self, vector: NDArray[np.float64]) -> tuple[float, float]:
        """Return (estimate, unscaled variance) of c'beta."""
        estimate = float(vector @ self.coef)
        unscaled = float(vector @ self.cov_unscaled @ vector)
        return estimate, unscaled


@dataclass(frozen=True)
class FitFailure:
    """Failed per-gene model fit, carried as a value.

    Attributes:
        gene: Gene identifier
        reason: Human-readable failure description
        error: Name of the error class (e.g. "ModelFitFailure")
    """

    gene: str
    reason: str
    error: str = 'ModelFitFailure'

    @property
    def converged(self) -> bool:
        return False


FitOutcome = Union[GeneFit, FitFailure]


def require_fit(outcome: FitOutcome) -> GeneFit:
    """
    Unwrap a fit outcome for callers that need a successful fit.

    Raises:
        ModelFitFailure: If the outcome is a FitFailure
    """
    if isinstance(outcome, FitFailure):
        raise ModelFitFailure(f"Gene '{outcome.gene}': {outcome.reason}")
    return outcome


@dataclass(frozen=True)
class Exclusion:
    """Record of a gene, sample or cluster left out of a DS run.

    Attributes:
        cluster_id: Cluster the record belongs to
        gene: Gene id, or None for sample/cluster-level records
        comparison: Comparison name, or None if it applies to all
        stage: One of "samples", "cluster", "gene_filter", "fit"
        reason: Human-readable explanation
        error: Error class name from scdiffstate.exceptions
    """

    cluster_id: str
    gene: str | None
    comparison: str | None
    stage: str
    reason: str
    error: str = 'InsufficientData'

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class DSResult:
    """Complete differential state results.

    Attributes:
        tables: comparison -> cluster -> per-gene result DataFrame
        exclusions: Everything skipped during the run, with reasons
        method: DS method used ("qlnb", "limma-trend", "dream", ...)
        params: Parameters of the run (for provenance)
    """

    tables: dict[str, dict[str, pd.DataFrame]]
    exclusions: list[Exclusion] = field(default_factory=list)
    method: str = ''
    params: dict[str, Any] = field(default_factory=dict)

    @property
    def comparisons(self) -> list[str]:
        return list(self.tables)

    @property
    def clusters(self) -> list[str]:
        seen: dict[str, None] = {}
        for by_cluster in self.tables.values():
            for cluster in by_cluster:
                seen.setdefault(cluster, None)
        return list(seen)

    def table(self, comparison: str, cluster: str) -> pd.DataFrame:
        return self.tables[comparison][cluster].copy()

    def exclusions_frame(self) -> pd.DataFrame:
        """Exclusion records as a DataFrame (one row per record)."""
        columns = ['cluster_id', 'gene', 'comparison', 'stage', 'reason', 'error']
        if not self.exclusions:
            return pd.DataFrame(columns=columns)
        return pd.DataFrame([e.to_dict() for e in self.exclusions], columns=columns)

    def to_dataframe(self) -> pd.DataFrame:
        """All results as one long table (row-bound)."""
        from scdiffstate.stats.formatting import format_results

        return format_results(self, bind='row')

    def significant_genes(
        self,
        comparison: str | None = None,
        fdr_threshold: float = 0.05,
        scope: Literal['loc', 'glb'] = 'loc',
    ) -> dict[str, list[str]]:
        """Genes with adjusted p below the threshold, per cluster."""
        column = f"p_adj.{scope}"
        comparison = comparison or self.comparisons[0]
        out = {}
        for cluster, frame in self.tables[comparison].items():
            out[cluster] = frame.loc[frame[column] < fdr_threshold, 'gene'].tolist()
        return out


def fdr_correction(
    pvalues: NDArray[np.float64],
    method: Literal["BH", "BY", "bonferroni"] = "BH",
    alpha: float = 0.05,
) -> NDArray[np.float64]:
    """
    Apply multiple testing correction.

    NaN p-values stay NaN and are not counted as tests.

    Args:
        pvalues: Array of raw p-values.
        method: "BH" (Benjamini-Hochberg), "BY" (Benjamini-Yekutieli) or
            "bonferroni".
        alpha: Significance threshold (passed to multipletests).

    Returns:
        Array of adjusted p-values, same shape as pvalues.
    """
    from statsmodels.stats.multitest import multipletests

    pvalues = np.asarray(pvalues, dtype=np.float64)
    valid_mask = ~np.isnan(pvalues)
    adj_pvals = np.full_like(pvalues, np.nan)

    if not np.any(valid_mask):
        return adj_pvals

    method_map = {"BH": "fdr_bh", "BY": "fdr_by", "bonferroni": "bonferroni"}
    _, adj_pvals[valid_mask], _, _ = multipletests(
        pvalues[valid_mask],
        alpha=alpha,
        method=method_map.get(method, method),
    )
    return adj_pvals


def adjust_pvalues(
    tables: dict[str, dict[str, pd.DataFrame]],
    method: str = "BH",
    p_column: str = 'p_val',
) -> dict[str, dict[str, pd.DataFrame]]:
    """
    Add ``p_adj.loc`` and ``p_adj.glb`` columns.

    Local adjustment is applied within each (comparison, cluster) table;
    global adjustment pools the raw p-values of every cluster for one
    comparison. Comparisons are never pooled together.

    Returns:
        New tables (inputs are not modified).
    """
    adjusted: dict[str, dict[str, pd.DataFrame]] = {}

    for comparison, by_cluster in tables.items():
        frames = {c: f.copy() for c, f in by_cluster.items()}

        for frame in frames.values():
            frame['p_adj.loc'] = fdr_correction(frame[p_column].to_numpy(), method=method)

        if frames:
            pooled = np.concatenate([f[p_column].to_numpy(dtype=np.float64) for f in frames.values()])
            pooled_adj = fdr_correction(pooled, method=method)
            offset = 0
            for frame in frames.values():
                n = len(frame)
                frame['p_adj.glb'] = pooled_adj[offset:offset + n]
                offset += n

        adjusted[comparison] = frames

    return adjusted


def parallel_map(
    func: Callable[[T], R],
    items: Sequence[T] | Iterable[T],
    n_jobs: int = 1,
) -> list[R]:
    """
    Apply a pure function to every item, optionally in parallel.

    Order of the returned list follows the order of ``items`` regardless of
    execution order. ``n_jobs=1`` runs in the current process.
    """
    items = list(items)
    if n_jobs == 1 or len(items) < 2:
        return [func(item) for item in items]

    from joblib import Parallel, delayed

    return list(Parallel(n_jobs=n_jobs)(delayed(func)(item) for item in items))
