"""
Error taxonomy for differential state analysis.

Structural errors (missing annotation keys, empty inputs, incompatible result
schemas) are raised to the immediate caller. Per-unit errors (one gene, one
cluster) are captured as values by the batch functions and surface as
``Exclusion`` records on the returned ``DSResult``; the exception classes are
still used to label those records.
"""

from __future__ import annotations

__all__ = [
    'DSError',
    'InvalidGrouping',
    'EmptyInput',
    'ModelFitFailure',
    'SchemaMismatch',
    'InsufficientData',
]


class DSError(Exception):
    """Base class for all scdiffstate errors."""


class InvalidGrouping(DSError, KeyError):
    """A requested cell-annotation key is absent from the table."""

    def __str__(self) -> str:
        # KeyError quotes its message; keep it readable
        return str(self.args[0]) if self.args else ''


class EmptyInput(DSError, ValueError):
    """Zero cells or zero genes where at least one is required."""


class ModelFitFailure(DSError, RuntimeError):
    """A single gene/cluster model did not converge or could not be fitted."""


class SchemaMismatch(DSError, ValueError):
    """Result tables with incompatible gene/cluster keys were combined."""


class InsufficientData(DSError, ValueError):
    """A cluster or gene does not meet the minimum cell/sample/count thresholds."""
