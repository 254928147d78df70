"""
Expression frequencies: the fraction of cells expressing each gene.

For every cluster the result holds one column per sample (fraction of that
sample's cells in the cluster with expression above a threshold) and one per
group. Group frequencies are either cell-weighted (pooling the cells of all
samples in the group) or the plain mean of the group's sample frequencies.
"""

from __future__ import annotations

import logging

import numpy as np
import pandas as pd

from scdiffstate.core.expression import ExpressionTable
from scdiffstate.stats.aggregation import aggregate_data

logger = logging.getLogger(__name__)

__all__ = ['calc_expr_freqs']


def calc_expr_freqs(
    table: ExpressionTable,
    assay: str = 'counts',
    threshold: float = 0.0,
    weighted: bool = True,
) -> dict[str, pd.DataFrame]:
    """
    Per-cluster expression frequencies by sample and group.

    Args:
        table: Expression table with sample_id, cluster_id and group_id labels
        assay: Layer to threshold
        threshold: A cell expresses a gene if its value is > threshold
        weighted: Cell-weighted group frequencies (True) or unweighted mean
            of sample frequencies (False)

    Returns:
        cluster_id -> DataFrame (genes × [samples..., groups...])
    """
    table.validate_ds_labels()

    detected = (table.layer(assay) > threshold).astype(np.float64)
    flagged = table.with_layer('_detected', detected)
    pb = aggregate_data(flagged, assay='_detected', fun='mean')

    info = pb.sample_info
    sample_group = dict(zip(info['sample_id'].astype(str), info['group_id'].astype(str)))
    group_order = [str(g) for g in table.groups]
    n_cells = pb.n_cells

    freqs: dict[str, pd.DataFrame] = {}
    for cluster, frame in pb.items():
        sizes = n_cells.loc[cluster, frame.columns].astype(np.float64)
        group_cols: dict[str, pd.Series] = {}

        for group in group_order:
            members = [s for s in frame.columns if sample_group.get(str(s)) == group]
            if not members:
                continue
            if weighted:
                w = sizes[members].to_numpy()
                group_cols[group] = frame[members].mul(w, axis=1).sum(axis=1) / w.sum()
            else:
                group_cols[group] = frame[members].mean(axis=1)

        freqs[cluster] = pd.concat([frame, pd.DataFrame(group_cols, index=frame.index)], axis=1)

    logger.debug(f"Computed expression frequencies for {len(freqs)} clusters")
    return freqs
