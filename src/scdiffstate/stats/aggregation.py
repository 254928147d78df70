"""
Pseudobulk aggregation of cell-level expression.

Cells are partitioned by the cross product of two annotation keys (by
default cluster then sample) and each partition's expression is reduced to
one value per gene. The result is one gene × sample table per cluster: the
"pseudobulk" profiles on which sample-level differential state tests run.

Biological Context:
    Cells from the same sample are not independent replicates. Summing their
    counts within each cluster produces one profile per biological replicate,
    so downstream tests use the sample as the unit of replication and bulk
    RNA-seq count models apply directly.

Partitions with zero cells are omitted rather than zero-filled: a sample that
contributed no cells to a cluster simply has no column in that cluster's
table.

Examples:
    >>> from scdiffstate.stats.aggregation import aggregate_data
    >>> pb = aggregate_data(table, assay="counts", fun="sum")
    >>> pb.clusters
    ['B cells', 'T cells']
    >>> pb["T cells"].head()
"""

from __future__ import annotations

import logging
from typing import Callable, Iterator, Sequence

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from scdiffstate.core.expression import ExpressionTable
from scdiffstate.exceptions import EmptyInput, InvalidGrouping

logger = logging.getLogger(__name__)

__all__ = ['PseudobulkTable', 'aggregate_data', 'pb_flatten', 'REDUCERS']


def _prop_detected(x: NDArray[np.float64]) -> NDArray[np.float64]:
    return np.mean(x > 0, axis=1)


def _num_detected(x: NDArray[np.float64]) -> NDArray[np.float64]:
    return np.sum(x > 0, axis=1).astype(np.float64)


REDUCERS: dict[str, Callable[[NDArray[np.float64]], NDArray[np.float64]]] = {
    'sum': lambda x: np.sum(x, axis=1),
    'mean': lambda x: np.mean(x, axis=1),
    'median': lambda x: np.median(x, axis=1),
    'prop.detected': _prop_detected,
    'num.detected': _num_detected,
}


class PseudobulkTable:
    """
    Read-only mapping of cluster id -> gene × sample aggregate table.

    Attributes:
        n_cells: DataFrame (cluster × sample) of partition sizes, 0 where a
            sample contributed no cells to a cluster
        sample_info: Per-sample experiment info (sample_id, group_id, n_cells)
        assay: Name of the aggregated layer
        fun: Reducer name
        by: Grouping keys used
    """

    def __init__(
        self,
        tables: dict[str, pd.DataFrame],
        n_cells: pd.DataFrame,
        sample_info: pd.DataFrame,
        assay: str,
        fun: str,
        by: tuple[str, ...],
    ):
        self._tables = {k: v.copy() for k, v in tables.items()}
        self._n_cells = n_cells.copy()
        self._sample_info = sample_info.copy()
        self.assay = assay
        self.fun = fun
        self.by = by

    @property
    def clusters(self) -> list[str]:
        return list(self._tables)

    @property
    def n_cells(self) -> pd.DataFrame:
        return self._n_cells.copy()

    @property
    def sample_info(self) -> pd.DataFrame:
        return self._sample_info.copy()

    @property
    def gene_ids(self) -> pd.Index:
        first = next(iter(self._tables.values()))
        return first.index

    def __getitem__(self, cluster: str) -> pd.DataFrame:
        return self._tables[cluster].copy()

    def __contains__(self, cluster: object) -> bool:
        return cluster in self._tables

    def __iter__(self) -> Iterator[str]:
        return iter(self._tables)

    def __len__(self) -> int:
        return len(self._tables)

    def items(self) -> Iterator[tuple[str, pd.DataFrame]]:
        for cluster, frame in self._tables.items():
            yield cluster, frame.copy()

    def __repr__(self) -> str:
        n_genes = len(self.gene_ids) if self._tables else 0
        return (
            f"PseudobulkTable({len(self)} clusters, {n_genes} genes, "
            f"assay='{self.assay}', fun='{self.fun}')"
        )


def aggregate_data(
    table: ExpressionTable,
    assay: str = 'counts',
    fun: str = 'sum',
    by: Sequence[str] = ('cluster_id', 'sample_id'),
) -> PseudobulkTable:
    """
    Aggregate cell-level expression into pseudobulk profiles.

    Args:
        table: Expression table with the grouping annotations attached
        assay: Name of the layer to aggregate
        fun: Reducer: "sum", "mean", "median", "prop.detected", "num.detected"
        by: One or two annotation keys. With two keys the first splits
            tables (clusters) and the second forms columns (samples). With one
            key a single table keyed "all" is returned.

    Returns:
        PseudobulkTable with one gene × sample DataFrame per cluster

    Raises:
        EmptyInput: If the table has no cells or no genes
        InvalidGrouping: If a grouping key is not a cell annotation
        KeyError: If the layer does not exist
        ValueError: If the reducer or number of keys is not supported
    """
    if table.n_cells == 0:
        raise EmptyInput("Cannot aggregate a table with zero cells")
    if table.n_genes == 0:
        raise EmptyInput("Cannot aggregate a table with zero genes")

    by = tuple(by)
    if len(by) not in (1, 2):
        raise ValueError(f"by must contain one or two keys, got {by}")

    missing = [k for k in by if k not in table.cell_metadata.columns]
    if missing:
        raise InvalidGrouping(
            f"Grouping keys not found in cell annotations: {missing}. "
            f"Available: {list(table.cell_metadata.columns)}"
        )

    if fun not in REDUCERS:
        raise ValueError(f"Unknown reducer '{fun}'. Choose from {list(REDUCERS)}")
    reduce_fn = REDUCERS[fun]

    values = table.layer(assay).astype(np.float64)
    meta = table.cell_metadata

    def _as_categorical(key: str) -> pd.Categorical:
        column = meta[key]
        if isinstance(column.dtype, pd.CategoricalDtype):
            return pd.Categorical(column)
        return pd.Categorical(column.astype(str))

    if len(by) == 1:
        outer = pd.Categorical(['all'] * table.n_cells)
        inner = _as_categorical(by[0])
    else:
        outer = _as_categorical(by[0])
        inner = _as_categorical(by[1])

    outer_codes = np.asarray(outer.codes)
    inner_codes = np.asarray(inner.codes)

    tables: dict[str, pd.DataFrame] = {}
    n_cells = np.zeros((len(outer.categories), len(inner.categories)), dtype=int)

    for i, cluster in enumerate(outer.categories):
        in_cluster = outer_codes == i
        columns: dict[str, NDArray[np.float64]] = {}
        for j, sample in enumerate(inner.categories):
            idx = np.flatnonzero(in_cluster & (inner_codes == j))
            n_cells[i, j] = len(idx)
            if len(idx) == 0:
                continue
            columns[str(sample)] = reduce_fn(values[:, idx])

        if not columns:
            continue

        frame = pd.DataFrame(columns, index=table.gene_ids)
        frame.columns.name = by[-1]
        tables[str(cluster)] = frame

    n_cells_frame = pd.DataFrame(
        n_cells,
        index=pd.Index([str(c) for c in outer.categories], name=by[0] if len(by) == 2 else None),
        columns=pd.Index([str(s) for s in inner.categories], name=by[-1]),
    )
    n_cells_frame = n_cells_frame.loc[list(tables)]

    if table.has_labels('sample_id'):
        sample_info = table.sample_info()
    else:
        sample_info = pd.DataFrame(columns=['sample_id', 'group_id', 'n_cells'])

    logger.info(
        f"Aggregated {table.n_cells} cells into {len(tables)} "
        f"{by[0] if len(by) == 2 else 'table'}(s) using {fun}({assay})"
    )

    return PseudobulkTable(
        tables=tables,
        n_cells=n_cells_frame,
        sample_info=sample_info,
        assay=assay,
        fun=fun,
        by=by,
    )


def pb_flatten(pb: PseudobulkTable, sep: str = '.') -> pd.DataFrame:
    """
    Flatten a pseudobulk table into a single gene × (cluster.sample) frame.

    Columns are ordered cluster first, then sample within cluster.
    """
    if len(pb) == 0:
        raise EmptyInput("Cannot flatten an empty pseudobulk table")

    frames = []
    for cluster, frame in pb.items():
        frame = frame.copy()
        frame.columns = [f"{cluster}{sep}{sample}" for sample in frame.columns]
        frames.append(frame)
    return pd.concat(frames, axis=1)
