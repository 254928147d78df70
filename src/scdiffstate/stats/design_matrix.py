"""
Sample-level design matrices and contrasts for differential state testing.

Design matrix structure (default, treatment coding):
    X = [const | group_id<level2> | group_id<level3> | ...]

The first group level is the reference and is absorbed by the intercept.
Comparisons are either coefficients of X (default: the last one, i.e. "is the
last group level different from the reference") or contrast vectors over the
coefficients:

    c = [0, 1, -1]   ->   level2 - level3

Rows of X correspond 1:1, in order, to the sample columns of the pseudobulk
table being tested. When a cluster lacks some samples the design is subset to
the remaining ones and re-checked for estimability.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Sequence

import numpy as np
import pandas as pd
from numpy.typing import NDArray

__all__ = [
    'DesignSpecification',
    'build_design_matrix',
    'make_contrasts',
]


@dataclass(frozen=True)
class DesignSpecification:
    """Design matrix plus the comparisons to test.

    Attributes:
        design: DataFrame (samples × coefficients); index = sample ids.
        contrasts: Optional DataFrame (coefficients × comparisons). Index must
            equal design.columns.
        coef: Optional coefficient names to test individually. Mutually
            exclusive with contrasts. When both are None the last coefficient
            is tested.
    """

    design: pd.DataFrame
    contrasts: pd.DataFrame | None = None
    coef: tuple[str, ...] | None = field(default=None)

    def __post_init__(self) -> None:
        if not isinstance(self.design, pd.DataFrame):
            raise TypeError(f"design must be pd.DataFrame, got {type(self.design)}")
        if self.design.shape[1] == 0:
            raise ValueError("design must have at least one coefficient")
        if not self.design.index.is_unique:
            raise ValueError("design rows (samples) must be unique")
        if self.contrasts is not None and self.coef is not None:
            raise ValueError("Specify either coef or contrasts, not both")

        if self.contrasts is not None:
            if list(self.contrasts.index) != list(self.design.columns):
                raise ValueError(
                    "contrasts index must match design columns: "
                    f"{list(self.contrasts.index)} vs {list(self.design.columns)}"
                )
            if self.contrasts.shape[1] == 0:
                raise ValueError("contrasts must define at least one comparison")

        if self.coef is not None:
            coef = (self.coef,) if isinstance(self.coef, str) else tuple(self.coef)
            unknown = [c for c in coef if c not in self.design.columns]
            if unknown:
                raise ValueError(
                    f"Unknown coefficients {unknown}. Design columns: "
                    f"{list(self.design.columns)}"
                )
            object.__setattr__(self, 'coef', coef)

    @property
    def samples(self) -> list[str]:
        return [str(s) for s in self.design.index]

    @property
    def n_params(self) -> int:
        return self.design.shape[1]

    @property
    def n_samples(self) -> int:
        return self.design.shape[0]

    @property
    def df_residual(self) -> int:
        return self.n_samples - self.n_params

    @property
    def X(self) -> NDArray[np.float64]:
        return self.design.to_numpy(dtype=np.float64)

    def comparisons(self) -> list[tuple[str, NDArray[np.float64]]]:
        """
        Comparisons as (name, vector in coefficient space) pairs.

        Returns:
            One pair per contrast column, per requested coefficient, or the
            last coefficient by default.
        """
        columns = list(self.design.columns)

        if self.contrasts is not None:
            return [
                (str(name), self.contrasts[name].to_numpy(dtype=np.float64))
                for name in self.contrasts.columns
            ]

        coefs = self.coef if self.coef is not None else (columns[-1],)
        out = []
        for name in coefs:
            vec = np.zeros(len(columns))
            vec[columns.index(name)] = 1.0
            out.append((str(name), vec))
        return out

    def subset(self, samples: Sequence[str]) -> DesignSpecification:
        """Restrict the design to the given samples, in the given order."""
        missing = [s for s in samples if s not in self.design.index]
        if missing:
            raise ValueError(f"Samples not in design: {missing}")
        return DesignSpecification(
            design=self.design.loc[list(samples)],
            contrasts=self.contrasts,
            coef=self.coef,
        )

    def is_estimable(self) -> bool:
        """True if the design has full column rank and residual df > 0."""
        X = self.X
        if X.shape[0] <= X.shape[1]:
            return False
        return int(np.linalg.matrix_rank(X)) == X.shape[1]


def build_design_matrix(
    sample_info: pd.DataFrame,
    column: str = 'group_id',
    reference: str | None = None,
    covariates: Sequence[str] | None = None,
) -> pd.DataFrame:
    """
    Build a treatment-coded design matrix from per-sample information.

    Categorical covariates are dummy-coded (drop_first=True); numeric
    covariates are standardized.

    Args:
        sample_info: One row per sample with a ``sample_id`` column (or
            index) and the design column(s).
        column: Column holding the experimental group.
        reference: Reference level; default is the first category.
        covariates: Extra sample-level columns to include as nuisance terms.

    Returns:
        DataFrame (samples × coefficients) with columns
        ``const``, ``{column}{level}`` for non-reference levels, then
        covariate columns.

    Raises:
        ValueError: If the column is missing, has < 2 levels, or the design
            is rank-deficient.
    """
    import statsmodels.api as sm

    info = sample_info.copy()
    if 'sample_id' in info.columns:
        info = info.set_index('sample_id')
    info.index = info.index.astype(str)

    if column not in info.columns:
        raise ValueError(f"Column '{column}' not found in sample info: {list(info.columns)}")

    values = info[column]
    if isinstance(values.dtype, pd.CategoricalDtype):
        levels = [str(c) for c in values.cat.categories if (values == c).any()]
    else:
        levels = sorted(values.dropna().astype(str).unique().tolist())

    if reference is not None:
        if reference not in levels:
            raise ValueError(f"Reference level '{reference}' not in {levels}")
        levels = [reference] + [lv for lv in levels if lv != reference]

    if len(levels) < 2:
        raise ValueError(f"Need at least 2 levels of '{column}', got {levels}")

    group = pd.Categorical(values.astype(str), categories=levels)
    dummies = pd.get_dummies(group, prefix=column, prefix_sep='', drop_first=True, dtype=float)
    dummies.index = info.index
    X = sm.add_constant(dummies, has_constant='add')

    for cov in covariates or []:
        if cov not in info.columns:
            raise ValueError(f"Covariate '{cov}' not found in sample info")
        series = info[cov]
        if not pd.api.types.is_numeric_dtype(series) or isinstance(series.dtype, pd.CategoricalDtype):
            cov_dummies = pd.get_dummies(
                series.astype(str), prefix=cov, prefix_sep='', drop_first=True, dtype=float
            )
            X = pd.concat([X, cov_dummies], axis=1)
        else:
            vals = series.astype(np.float64)
            sigma = vals.std(ddof=1)
            if not np.isfinite(sigma) or sigma < 1e-10:
                raise ValueError(f"Covariate '{cov}' has zero variance, cannot standardize")
            X[cov] = (vals - vals.mean()) / sigma

    rank = np.linalg.matrix_rank(X.to_numpy(dtype=np.float64))
    if rank < X.shape[1]:
        raise ValueError(
            f"Design matrix is rank-deficient: rank={rank}, n_params={X.shape[1]}. "
            f"Columns: {list(X.columns)}"
        )

    X.index.name = 'sample_id'
    X.attrs['reference'] = {column: levels[0]}
    return X


def make_contrasts(
    design: pd.DataFrame,
    contrasts: Mapping[str, Mapping[str, float] | tuple[str, str]],
    column: str = 'group_id',
    reference: str | None = None,
) -> pd.DataFrame:
    """
    Build a contrast matrix (coefficients × comparisons).

    Each contrast is either an explicit mapping of coefficient name to
    weight, or a ``(level_a, level_b)`` pair testing level_a - level_b on a
    treatment-coded design built by ``build_design_matrix``. The reference
    level has no coefficient, so it contributes a zero vector.

    Args:
        design: Samples × coefficients design
        contrasts: Comparison name -> level pair or coefficient weights
        column: Design column the levels belong to
        reference: Reference level of ``column``; default is the one
            recorded by ``build_design_matrix``

    Raises:
        ValueError: If a level is neither the reference nor a coefficient,
            or a contrast names unknown coefficients

    Examples:
        >>> make_contrasts(X, {"stim-ctrl": ("stim", "ctrl")})
        >>> make_contrasts(X, {"avg": {"group_idB": 0.5, "group_idC": 0.5}})
    """
    columns = list(design.columns)
    matrix = pd.DataFrame(0.0, index=columns, columns=list(contrasts))
    if reference is None:
        reference = design.attrs.get('reference', {}).get(column)

    def _level_vector(level: str) -> NDArray[np.float64]:
        vec = np.zeros(len(columns))
        name = f"{column}{level}"
        if name in columns:
            vec[columns.index(name)] = 1.0
        elif reference is None or str(level) != str(reference):
            levels = [c[len(column):] for c in columns if c.startswith(column)]
            raise ValueError(
                f"Unknown level '{level}' of '{column}'. "
                f"Reference: {reference!r}, other levels: {levels}"
            )
        return vec

    for name, spec in contrasts.items():
        if isinstance(spec, tuple):
            if len(spec) != 2:
                raise ValueError(f"Contrast '{name}' must be a (level_a, level_b) pair")
            a, b = spec
            matrix[name] = _level_vector(a) - _level_vector(b)
            if not matrix[name].any():
                raise ValueError(
                    f"Contrast '{name}' is zero: {spec} compares a level with itself"
                )
        else:
            unknown = [c for c in spec if c not in columns]
            if unknown:
                raise ValueError(f"Contrast '{name}' uses unknown coefficients {unknown}")
            for coef, weight in spec.items():
                matrix.loc[coef, name] = float(weight)

    return matrix
