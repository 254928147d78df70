"""
Result formatting: reshape per-cluster, per-comparison tables into one table.

Two layouts, selected by ``MergeMode``:

    ROW  one row per (gene, cluster, comparison); tables are stacked in
         cluster order, then comparison order, genes sorted within a block.
         The ``contrast`` column identifies the comparison.

    COL  one row per (gene, cluster); every non-key column is repeated per
         comparison with a ``.{comparison}`` suffix. All comparisons must
         cover the same (gene, cluster) keys.

Optional annotations joined on (gene, cluster):
    - ``{sample}.frq`` / ``{group}.frq``: expression frequencies
    - ``{sample}.cpm``: counts-per-million of the summed pseudobulk

Formatting never modifies its inputs; the same call returns equal frames.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Mapping

import pandas as pd

from scdiffstate.core.expression import ExpressionTable
from scdiffstate.exceptions import SchemaMismatch
from scdiffstate.stats.aggregation import aggregate_data
from scdiffstate.stats.differential import DSResult
from scdiffstate.stats.frequencies import calc_expr_freqs

logger = logging.getLogger(__name__)

__all__ = ['MergeMode', 'format_results', 'calc_cpm']

KEY_COLUMNS = ['gene', 'cluster_id']


class MergeMode(Enum):
    """Layout of the unified result table."""

    ROW = "row"
    COL = "col"


def calc_cpm(table: ExpressionTable, layer: str = 'counts') -> dict[str, pd.DataFrame]:
    """Counts-per-million of the summed pseudobulk, per cluster (genes × samples)."""
    pb = aggregate_data(table, assay=layer, fun='sum')
    cpm = {}
    for cluster, frame in pb.items():
        lib = frame.sum(axis=0)
        cpm[cluster] = frame.div(lib.where(lib > 0, 1.0), axis=1) * 1e6
    return cpm


def _bind_rows(result: DSResult) -> pd.DataFrame:
    blocks = []
    for cluster in result.clusters:
        for comparison in result.comparisons:
            frame = result.tables[comparison].get(cluster)
            if frame is not None:
                blocks.append(frame.sort_values('gene', kind='mergesort'))
    if not blocks:
        return pd.DataFrame()
    return pd.concat(blocks, ignore_index=True)


def _bind_cols(result: DSResult) -> pd.DataFrame:
    comparisons = result.comparisons
    if not comparisons:
        return pd.DataFrame()

    cluster_sets = {c: set(result.tables[c]) for c in comparisons}
    reference = cluster_sets[comparisons[0]]
    for comparison, clusters in cluster_sets.items():
        if clusters != reference:
            raise SchemaMismatch(
                f"Comparison '{comparison}' covers clusters {sorted(clusters)}, "
                f"'{comparisons[0]}' covers {sorted(reference)}"
            )

    blocks = []
    for cluster in result.clusters:
        merged: pd.DataFrame | None = None
        genes: set[str] | None = None
        for comparison in comparisons:
            frame = result.tables[comparison][cluster]
            frame_genes = set(frame['gene'])
            if genes is None:
                genes = frame_genes
            elif frame_genes != genes:
                raise SchemaMismatch(
                    f"Cluster '{cluster}': comparison '{comparison}' has a different "
                    f"gene set ({len(frame_genes)} vs {len(genes)} genes)"
                )

            values = frame.drop(columns=['contrast'], errors='ignore')
            values = values.rename(columns={
                col: f"{col}.{comparison}" for col in values.columns if col not in KEY_COLUMNS
            })
            merged = values if merged is None else merged.merge(values, on=KEY_COLUMNS, how='inner')

        blocks.append(merged.sort_values('gene', kind='mergesort'))

    return pd.concat(blocks, ignore_index=True)


def _attach(
    frame: pd.DataFrame,
    annotations: Mapping[str, pd.DataFrame],
    suffix: str,
) -> pd.DataFrame:
    """Join per-cluster gene annotations onto result rows, columns suffixed."""
    if frame.empty:
        return frame

    pieces = []
    for cluster, values in annotations.items():
        piece = values.copy()
        piece.columns = [f"{col}.{suffix}" for col in piece.columns]
        piece.index = piece.index.astype(str)
        piece = piece.rename_axis('gene').reset_index()
        piece.insert(1, 'cluster_id', str(cluster))
        pieces.append(piece)
    if not pieces:
        return frame

    long = pd.concat(pieces, ignore_index=True)
    return frame.merge(long, on=KEY_COLUMNS, how='left')


def format_results(
    result: DSResult,
    bind: str | MergeMode = "row",
    table: ExpressionTable | None = None,
    frequencies: bool | Mapping[str, pd.DataFrame] = False,
    means: bool = False,
    threshold: float = 0.0,
    layer: str = 'counts',
    weighted: bool = True,
) -> pd.DataFrame:
    """
    Combine DS results into one table.

    Args:
        result: Output of ``pseudobulk_ds`` or ``mixed_model_ds``
        bind: "row" (long) or "col" (wide) layout
        table: Expression table used for frequencies and means
        frequencies: True to compute expression frequencies from ``table``,
            or a precomputed cluster -> frequency table mapping
            (``calc_expr_freqs``)
        means: Attach per-sample CPM of the summed counts (needs ``table``)
        threshold: Expression threshold for frequencies
        layer: Layer used for frequencies and means
        weighted: Cell-weighted group frequencies

    Returns:
        Unified result DataFrame

    Raises:
        SchemaMismatch: For "col" binding of comparisons with different
            (gene, cluster) keys
        ValueError: If frequencies/means are requested without a table
    """
    mode = bind if isinstance(bind, MergeMode) else MergeMode(bind)

    if mode is MergeMode.ROW:
        frame = _bind_rows(result)
    else:
        frame = _bind_cols(result)

    if frequencies is not False and frequencies is not None:
        if isinstance(frequencies, Mapping):
            freqs = frequencies
        else:
            if table is None:
                raise ValueError("frequencies=True requires the expression table")
            freqs = calc_expr_freqs(table, assay=layer, threshold=threshold, weighted=weighted)
        frame = _attach(frame, freqs, 'frq')

    if means:
        if table is None:
            raise ValueError("means=True requires the expression table")
        frame = _attach(frame, calc_cpm(table, layer=layer), 'cpm')

    logger.debug(f"Formatted {len(frame)} rows ({mode.value}-bound)")
    return frame
