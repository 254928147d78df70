"""
Normalization layers for single-cell count data.

Two derived layers feed the mixed-model DS families:

- logcounts: library-size normalized, log2-transformed counts. Size factors
  are library sizes scaled to unit mean, so values stay on the scale of the
  raw counts (scater logNormCounts convention).
- vstresiduals: analytic Pearson residuals of a negative binomial null model
  in which every gene has a constant fraction of each cell's library. The
  residuals are approximately variance-stabilized and centered.

References:
    - Lun et al. (2016) Genome Biology 17:75 (pooled size factors)
    - Lause et al. (2021) Genome Biology 22:258 (analytic Pearson residuals)
"""

from __future__ import annotations

import logging

import numpy as np
from numpy.typing import NDArray

from scdiffstate.core.expression import ExpressionTable
from scdiffstate.core.transform import Transform

logger = logging.getLogger(__name__)

__all__ = [
    'compute_size_factors',
    'log_normalize',
    'pearson_residuals',
    'LogNormalize',
    'PearsonResidualsVST',
]


def compute_size_factors(counts: NDArray[np.float64]) -> NDArray[np.float64]:
    """
    Library-size factors centered to unit mean.

    Cells with zero library size get a factor of 1 so they remain finite
    (all their normalized values are zero anyway).

    Args:
        counts: Count matrix (genes × cells)

    Returns:
        Size factor per cell (n_cells,)
    """
    lib_sizes = counts.sum(axis=0).astype(np.float64)
    positive = lib_sizes > 0
    if not np.any(positive):
        return np.ones_like(lib_sizes)

    sf = np.ones_like(lib_sizes)
    sf[positive] = lib_sizes[positive] / lib_sizes[positive].mean()
    return sf


def log_normalize(
    counts: NDArray[np.float64],
    pseudocount: float = 1.0,
    base: float = 2.0,
) -> NDArray[np.float64]:
    """
    Size-factor normalize and log-transform counts.

    Formula:
        logcounts[g, c] = log_base(counts[g, c] / sf[c] + pseudocount)
    """
    sf = compute_size_factors(counts)
    normalized = counts / sf[None, :]
    return np.log(normalized + pseudocount) / np.log(base)


def pearson_residuals(
    counts: NDArray[np.float64],
    theta: float = 100.0,
    clip: float | None = None,
) -> NDArray[np.float64]:
    """
    Analytic Pearson residuals under a negative binomial null model.

    Formula:
        mu[g, c] = total[g] * libsize[c] / grand_total
        z[g, c] = (x[g, c] - mu[g, c]) / sqrt(mu[g, c] + mu[g, c]^2 / theta)

    Residuals are clipped to [-clip, clip]; the default clip is
    sqrt(n_cells). Genes or cells with zero totals produce zero residuals.

    Args:
        counts: Count matrix (genes × cells)
        theta: NB overdispersion parameter (large = close to Poisson)
        clip: Absolute clipping bound
    """
    counts = np.asarray(counts, dtype=np.float64)
    n_cells = counts.shape[1]

    gene_totals = counts.sum(axis=1)
    cell_totals = counts.sum(axis=0)
    grand_total = counts.sum()

    if grand_total <= 0:
        return np.zeros_like(counts)

    mu = np.outer(gene_totals, cell_totals) / grand_total
    denom = np.sqrt(mu + mu ** 2 / theta)

    with np.errstate(divide='ignore', invalid='ignore'):
        residuals = np.where(denom > 0, (counts - mu) / denom, 0.0)

    if clip is None:
        clip = np.sqrt(n_cells)
    return np.clip(residuals, -clip, clip)


class LogNormalize(Transform):
    """
    Add a ``logcounts`` layer computed from raw counts.

    Examples:
        >>> table = LogNormalize().apply(table)
        >>> table.layer("logcounts")
    """

    def __init__(
        self,
        pseudocount: float = 1.0,
        base: float = 2.0,
        source: str = 'counts',
        target: str = 'logcounts',
    ):
        super().__init__(
            name="LogNormalize",
            params={
                "pseudocount": pseudocount,
                "base": base,
                "source": source,
                "target": target,
            },
        )
        self.pseudocount = pseudocount
        self.base = base
        self.source = source
        self.target = target

    def validate(self, table: ExpressionTable) -> list[str]:
        errors = super().validate(table)
        if self.source not in table.layer_names:
            errors.append(f"Source layer '{self.source}' not found")
        elif np.any(table.layer(self.source) < 0):
            errors.append("Counts must be non-negative for log normalization")
        return errors

    def apply(self, table: ExpressionTable) -> ExpressionTable:
        errors = self.validate(table)
        if errors:
            raise ValueError(f"{self!r} cannot be applied: {'; '.join(errors)}")

        values = log_normalize(
            table.layer(self.source).astype(np.float64),
            pseudocount=self.pseudocount,
            base=self.base,
        )
        logger.debug(f"{self!r}: added layer '{self.target}'")
        return table.with_layer(self.target, values)


class PearsonResidualsVST(Transform):
    """Add a ``vstresiduals`` layer of clipped analytic Pearson residuals."""

    def __init__(
        self,
        theta: float = 100.0,
        clip: float | None = None,
        source: str = 'counts',
        target: str = 'vstresiduals',
    ):
        super().__init__(
            name="PearsonResidualsVST",
            params={"theta": theta, "clip": clip, "source": source, "target": target},
        )
        self.theta = theta
        self.clip = clip
        self.source = source
        self.target = target

    def validate(self, table: ExpressionTable) -> list[str]:
        errors = super().validate(table)
        if self.source not in table.layer_names:
            errors.append(f"Source layer '{self.source}' not found")
        if self.theta <= 0:
            errors.append(f"theta must be positive, got {self.theta}")
        return errors

    def apply(self, table: ExpressionTable) -> ExpressionTable:
        errors = self.validate(table)
        if errors:
            raise ValueError(f"{self!r} cannot be applied: {'; '.join(errors)}")

        values = pearson_residuals(
            table.layer(self.source), theta=self.theta, clip=self.clip
        )
        logger.debug(f"{self!r}: added layer '{self.target}'")
        return table.with_layer(self.target, values)
