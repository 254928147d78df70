"""
Base transformation framework for immutable table operations.

Transforms are pure functions: they take an ExpressionTable and return a new
one (typically with an added layer) without modifying the input.

Biological Context:
    Single-cell DS pipelines derive several expression layers from raw counts:
    1. Library-size normalization + log transform (logcounts)
    2. Variance stabilization (Pearson residuals)
    3. Subsetting of cells/genes

    Each step must be reproducible and auditable, so parameters are kept on
    the transform instance and printed by ``repr``.

Examples:
    >>> from scdiffstate.core.transform import Transform
    >>>
    >>> class Sqrt(Transform):
    ...     def __init__(self):
    ...         super().__init__(name="Sqrt", params={})
    ...
    ...     def apply(self, table):
    ...         import numpy as np
    ...         return table.with_layer("sqrt", np.sqrt(table.layer("counts")))
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, TYPE_CHECKING

if TYPE_CHECKING:
    from scdiffstate.core.expression import ExpressionTable

__all__ = ['Transform']


class Transform(ABC):
    """
    Abstract base class for all table transformations.

    Attributes:
        name: Human-readable transformation name (e.g., "LogNormalize")
        params: Parameters used for this transformation
        timestamp: When this transform instance was created (audit trail)
    """

    def __init__(self, name: str, params: dict[str, Any]) -> None:
        self.name = name
        self.params = params
        self.timestamp = datetime.now()

    @abstractmethod
    def apply(self, table: ExpressionTable) -> ExpressionTable:
        """
        Execute transformation and return a new table.

        Must never modify the input table.

        Raises:
            ValueError: If transformation cannot be applied (see validate())
        """

    def validate(self, table: ExpressionTable) -> list[str]:
        """
        Check preconditions before applying transformation.

        Subclasses should override and call super().validate() first.

        Returns:
            List of error messages (empty list = valid)
        """
        errors: list[str] = []

        if table.n_genes == 0 or table.n_cells == 0:
            errors.append("Cannot process empty table")

        return errors

    def __repr__(self) -> str:
        params_str = ", ".join(f"{k}={v}" for k, v in self.params.items())
        return f"{self.name}({params_str})"
