"""
Shared base class for the mixed-model DS families.

Every family fits ``expression ~ 1 + group_id + (1 | sample_id)`` per gene on
the cells of one cluster. They differ in the layer they model, in optional
per-observation inputs (precision weights, offsets) and in how the fixed
effect is tested. This module holds the shared plumbing so the concrete
families only define their model fit.
"""

from __future__ import annotations

import abc
import logging
from enum import Enum
from typing import Any

import numpy as np
from numpy.typing import NDArray
from scipy import stats

from scdiffstate.core.expression import ExpressionTable
from scdiffstate.core.transform import Transform
from scdiffstate.stats.differential import FitOutcome, GeneFit

logger = logging.getLogger(__name__)


class MixedMethodName(Enum):
    """Available mixed-model families."""

    DREAM = "dream"
    VST = "vst"
    POISSON = "poisson"
    NBINOM = "nbinom"


class DDFMethod(Enum):
    """Denominator degrees of freedom for LMM tests."""

    SATTERTHWAITE = "satterthwaite"
    BETWEEN_WITHIN = "between-within"
    RESIDUAL = "residual"


class _BaseMixedMethod(abc.ABC):
    """
    Shared skeleton for mixed-model families.

    Subclasses implement:
        * ``name`` property (MixedMethodName)
        * ``fit_gene`` (one gene, returns GeneFit or FitFailure)

    and may override:
        * ``layer`` / ``layer_transform`` (modelled layer, how to create it)
        * ``cluster_inputs`` (per-gene and shared inputs for one cluster)
        * ``log2_scale`` (factor turning beta into a log2 fold change)
    """

    layer: str = 'counts'

    #: Multiplier from beta to log2 fold change; None if beta is not on a
    #: log scale.
    log2_scale: float | None = 1.0

    @property
    @abc.abstractmethod
    def name(self) -> MixedMethodName:  # pragma: no cover
        ...

    def layer_transform(self) -> Transform | None:
        """Transform that creates ``layer`` from counts, if any."""
        return None

    def prepare(self, table: ExpressionTable) -> ExpressionTable:
        """Return a table that carries the layer this family models."""
        if self.layer in table.layer_names:
            return table
        transform = self.layer_transform()
        if transform is None:
            raise KeyError(
                f"Layer '{self.layer}' required by method '{self.name.value}' not found. "
                f"Available: {table.layer_names}"
            )
        logger.info(f"Layer '{self.layer}' missing; computing it with {transform!r}")
        return transform.apply(table)

    def cluster_inputs(
        self,
        values: NDArray[np.float64],
        counts: NDArray[np.float64],
        X: NDArray[np.float64],
    ) -> tuple[dict[str, NDArray[np.float64]], dict[str, Any]]:
        """
        Inputs for the per-gene fits of one cluster.

        Args:
            values: Modelled layer restricted to the cluster (genes × cells)
            counts: Raw counts restricted to the cluster (genes × cells)
            X: Cell-level fixed-effects design (cells × coefficients)

        Returns:
            (per_gene, shared): per_gene maps names to gene × cell arrays whose
            rows are handed to each gene's fit; shared holds keyword
            arguments identical for every gene.
        """
        return {}, {}

    @abc.abstractmethod
    def fit_gene(
        self,
        gene: str,
        y: NDArray[np.float64],
        X: NDArray[np.float64],
        groups: NDArray[np.int_],
        comparisons: list[NDArray[np.float64]],
        **inputs: Any,
    ) -> FitOutcome:
        """
        Fit one gene.

        Returns:
            GeneFit whose ``cov_unscaled`` is the covariance of the fixed
            effects (``dispersion`` = 1) and whose ``extra['df']`` holds the
            test degrees of freedom per comparison (inf for Wald z tests),
            or FitFailure.
        """
        ...

    def test(self, fit: GeneFit, vector: NDArray[np.float64], index: int) -> dict[str, float]:
        """Test one comparison of a fitted gene."""
        beta, var = fit.contrast(vector)
        var *= fit.dispersion
        se = float(np.sqrt(var)) if var > 0 else np.nan
        stat = beta / se if np.isfinite(se) and se > 0 else np.nan
        df = float(fit.extra['df'][index])

        if not np.isfinite(stat):
            p_val = np.nan
        elif np.isinf(df):
            p_val = float(2.0 * stats.norm.sf(abs(stat)))
        else:
            p_val = float(2.0 * stats.t.sf(abs(stat), df))

        return {
            'beta': beta,
            'logFC': beta * self.log2_scale if self.log2_scale is not None else np.nan,
            'SE': se,
            'stat': stat,
            'df': df,
            'p_val': p_val,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(layer='{self.layer}')"
