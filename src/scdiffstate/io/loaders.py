"""
Loaders for cell-level expression data.

Two on-disk layouts are supported:

1. Delimited text pair
   - counts file: genes × cells, first column = gene ids, header = cell ids
   - metadata file: one row per cell, first column = cell ids, with the
     sample / cluster / group annotations
   The delimiter is taken from the suffix (.tsv/.txt -> tab, otherwise comma).

2. AnnData (.h5ad), cells × genes, read with ``anndata.read_h5ad`` and
   transposed into an ExpressionTable.

Examples:
    >>> from pathlib import Path
    >>> from scdiffstate.io.loaders import load_counts_csv
    >>>
    >>> table = load_counts_csv(
    ...     Path("counts.csv"), Path("cells.csv"),
    ...     label_columns={"sample_id": "patient", "cluster_id": "celltype"},
    ... )
    >>> table.clusters
"""

from __future__ import annotations

import logging
import warnings
from pathlib import Path
from typing import Mapping

import numpy as np
import pandas as pd

from scdiffstate.core.expression import DS_LABELS, ExpressionTable

logger = logging.getLogger(__name__)

__all__ = ['delimiter_for', 'load_counts_csv', 'load_h5ad']


def delimiter_for(path: Path) -> str:
    """Tab for .tsv/.txt (optionally gzipped), comma otherwise."""
    suffixes = [s.lower() for s in Path(path).suffixes]
    if suffixes and suffixes[-1] == '.gz':
        suffixes = suffixes[:-1]
    return '\t' if suffixes and suffixes[-1] in ('.tsv', '.txt') else ','


def _read_table(path: Path, what: str) -> pd.DataFrame:
    if not path.exists():
        raise FileNotFoundError(f"{what} file not found: {path}")
    if not path.is_file():
        raise ValueError(f"Path is not a file: {path}")

    try:
        df = pd.read_csv(path, sep=delimiter_for(path), index_col=0)
    except pd.errors.EmptyDataError as e:
        raise ValueError(f"{what} file is empty: {path}") from e

    if df.empty:
        raise ValueError(f"{what} file contains no data: {path}")
    df.index = df.index.astype(str)
    return df


def load_counts_csv(
    counts_path: Path,
    metadata_path: Path,
    label_columns: Mapping[str, str] | None = None,
) -> ExpressionTable:
    """
    Load a genes × cells count matrix and its per-cell annotations.

    Args:
        counts_path: Delimited counts file (genes × cells)
        metadata_path: Delimited cell annotation file (cells × annotations)
        label_columns: Mapping of DS label -> metadata column to rename,
            e.g. ``{"sample_id": "patient"}``

    Returns:
        ExpressionTable with a ``counts`` layer

    Raises:
        FileNotFoundError: If a file does not exist
        ValueError: If a file is malformed, contains non-numeric counts, or
            the cells of the two files do not match
    """
    counts_path = Path(counts_path)
    metadata_path = Path(metadata_path)

    counts = _read_table(counts_path, "Counts")
    meta = _read_table(metadata_path, "Metadata")
    counts.columns = counts.columns.astype(str)

    if counts.index.duplicated().any():
        n_duplicates = int(counts.index.duplicated().sum())
        warnings.warn(
            f"Found {n_duplicates} duplicate gene IDs. Using first occurrence of each.",
            UserWarning,
        )
        counts = counts[~counts.index.duplicated(keep='first')]

    try:
        values = counts.to_numpy(dtype=np.float64)
    except ValueError as e:
        raise ValueError(f"Counts file contains non-numeric values: {counts_path}") from e
    if np.isnan(values).any():
        raise ValueError(f"Counts file contains {int(np.isnan(values).sum())} missing values")

    if label_columns:
        rename = {src: dst for dst, src in label_columns.items()}
        missing = [src for src in rename if src not in meta.columns]
        if missing:
            raise ValueError(f"Metadata columns not found: {missing}. Available: {list(meta.columns)}")
        meta = meta.rename(columns=rename)

    cells = pd.Index(counts.columns)
    missing_cells = cells.difference(meta.index)
    if len(missing_cells):
        raise ValueError(
            f"{len(missing_cells)} cells have no metadata, e.g. {missing_cells[:5].tolist()}"
        )
    meta = meta.loc[cells]

    absent = [label for label in DS_LABELS if label not in meta.columns]
    if absent:
        logger.warning(f"Metadata lacks DS labels {absent}; DS tests will need them")

    logger.info(f"Loaded {values.shape[0]} genes × {values.shape[1]} cells from {counts_path}")

    return ExpressionTable(
        layers={'counts': values},
        gene_ids=pd.Index(counts.index),
        cell_ids=cells,
        cell_metadata=meta,
    )


def load_h5ad(path: Path, layers: list[str] | None = None) -> ExpressionTable:
    """
    Load an AnnData file (cells × genes) as an ExpressionTable.

    Args:
        path: Path to a .h5ad file
        layers: AnnData layers to import ("X" = the main matrix, imported as
            ``counts``); default imports X and every layer
    """
    import anndata

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"h5ad file not found: {path}")

    adata = anndata.read_h5ad(path)
    logger.info(f"Loaded AnnData {adata.n_obs} cells × {adata.n_vars} genes from {path}")
    return ExpressionTable.from_anndata(adata, layers=layers)
