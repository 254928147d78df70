"""
scdiffstate - Differential State Analysis for Multi-Sample scRNA-seq

Tests, per cell cluster, which genes change expression between groups of
biological samples, either on pseudobulk profiles (one per sample and
cluster) or on cells with a per-sample random effect.
"""

__version__ = "0.1.0"

from scdiffstate.core.expression import ExpressionTable
from scdiffstate.core.transform import Transform
from scdiffstate.stats.aggregation import aggregate_data
from scdiffstate.stats.formatting import format_results
from scdiffstate.stats.mixed_ds import mixed_model_ds
from scdiffstate.stats.pseudobulk_ds import pseudobulk_ds

__all__ = [
    "ExpressionTable",
    "Transform",
    "aggregate_data",
    "format_results",
    "mixed_model_ds",
    "pseudobulk_ds",
]
