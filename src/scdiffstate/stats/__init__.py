"""
Statistical core for differential state analysis.

Exports functions for:
- Pseudobulk aggregation of cell-level expression
- Pseudobulk DS tests (quasi-likelihood NB, limma-trend)
- Mixed-model DS tests on cells (dream, vst, Poisson / NB GLMM)
- Multiple testing correction (local and global FDR)
- Result formatting with expression frequencies and CPM
"""

from .aggregation import PseudobulkTable, aggregate_data, pb_flatten
from .design_matrix import DesignSpecification, build_design_matrix, make_contrasts
from .differential import DSResult, Exclusion, FitFailure, GeneFit, adjust_pvalues, fdr_correction
from .formatting import MergeMode, format_results
from .frequencies import calc_expr_freqs
from .mixed_ds import mixed_model_ds
from .normalization import LogNormalize, PearsonResidualsVST
from .pseudobulk_ds import PseudobulkMethod, pseudobulk_ds

__all__ = [
    "PseudobulkTable",
    "aggregate_data",
    "pb_flatten",
    "DesignSpecification",
    "build_design_matrix",
    "make_contrasts",
    "DSResult",
    "Exclusion",
    "FitFailure",
    "GeneFit",
    "adjust_pvalues",
    "fdr_correction",
    "MergeMode",
    "format_results",
    "calc_expr_freqs",
    "mixed_model_ds",
    "LogNormalize",
    "PearsonResidualsVST",
    "PseudobulkMethod",
    "pseudobulk_ds",
]
