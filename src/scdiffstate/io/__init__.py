"""
I/O for cell-level expression data and DS results.

Key Functions:
    - load_counts_csv: counts (genes × cells) + cell annotations from CSV/TSV
    - load_h5ad: AnnData bridge
    - write_results: DS results, one file per comparison + exclusions
    - write_pseudobulk: one table per cluster
"""

from scdiffstate.io.loaders import delimiter_for, load_counts_csv, load_h5ad
from scdiffstate.io.writers import write_pseudobulk, write_results

__all__ = [
    'delimiter_for',
    'load_counts_csv',
    'load_h5ad',
    'write_pseudobulk',
    'write_results',
]
