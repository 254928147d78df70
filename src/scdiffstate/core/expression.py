"""
Core data structure for single-cell expression tables.

ExpressionTable unifies one or more numeric expression layers (raw counts,
log-normalized values, variance-stabilized residuals) with per-cell
annotations. Differential state analysis needs three of those annotations on
every cell:

    - sample_id:  the biological replicate the cell came from
    - cluster_id: the cell subpopulation (cell type / cluster)
    - group_id:   the experimental condition of the sample

Biological Context:
    Single-cell matrices are much wider than bulk matrices (tens of thousands
    of cells) but the unit of replication is still the sample. The table
    therefore keeps the sample -> group mapping consistent: a sample belongs to
    exactly one experimental group, otherwise any sample-level test would be
    confounded.

Engineering Design:
    - Immutable: subsetting and layer additions return new instances
    - Validated: constructor checks shapes, unique ids and label consistency
    - Categorical labels: value sets are fixed once assigned

Examples:
    >>> import numpy as np
    >>> import pandas as pd
    >>> from scdiffstate.core.expression import ExpressionTable
    >>>
    >>> counts = np.array([[3, 5, 0], [1, 0, 2]])
    >>> cells = pd.Index(["c1", "c2", "c3"])
    >>> meta = pd.DataFrame({
    ...     'sample_id': ['s1', 's1', 's2'],
    ...     'cluster_id': ['T', 'T', 'T'],
    ...     'group_id': ['ctrl', 'ctrl', 'stim'],
    ... }, index=cells)
    >>> table = ExpressionTable(
    ...     layers={'counts': counts},
    ...     gene_ids=pd.Index(["G1", "G2"]),
    ...     cell_ids=cells,
    ...     cell_metadata=meta,
    ... )
    >>> table.sample_info()
"""

from __future__ import annotations

from typing import Mapping

import numpy as np
import pandas as pd

from scdiffstate.exceptions import InvalidGrouping

__all__ = ['ExpressionTable', 'DS_LABELS']

# Required per-cell annotations for differential state analysis
DS_LABELS = ('sample_id', 'cluster_id', 'group_id')


class ExpressionTable:
    """
    Immutable gene × cell container with named layers and cell annotations.

    Attributes:
        layers: Mapping of layer name -> array (genes × cells)
        gene_ids: Row identifiers (gene symbols / Ensembl ids)
        cell_ids: Column identifiers (cell barcodes)
        cell_metadata: Per-cell annotations indexed by cell_ids

    Shape Invariants:
        - every layer has shape (len(gene_ids), len(cell_ids))
        - cell_metadata.index equals cell_ids
        - gene_ids and cell_ids are unique
        - each sample_id maps to exactly one group_id
    """

    def __init__(
        self,
        layers: Mapping[str, np.ndarray],
        gene_ids: pd.Index,
        cell_ids: pd.Index,
        cell_metadata: pd.DataFrame,
    ):
        """
        Initialize ExpressionTable with validation.

        Args:
            layers: Mapping of layer name to a 2-D array (genes × cells).
                At least one layer is required.
            gene_ids: Unique gene identifiers (rows)
            cell_ids: Unique cell identifiers (columns)
            cell_metadata: DataFrame indexed by cell_ids. String columns
                named like the DS labels are converted to categoricals.

        Raises:
            TypeError: If container types are incorrect
            ValueError: If shapes, ids or the sample -> group mapping are
                inconsistent
        """
        if not isinstance(gene_ids, pd.Index):
            raise TypeError(f"gene_ids must be pd.Index, got {type(gene_ids)}")
        if not isinstance(cell_ids, pd.Index):
            raise TypeError(f"cell_ids must be pd.Index, got {type(cell_ids)}")
        if not isinstance(cell_metadata, pd.DataFrame):
            raise TypeError(f"cell_metadata must be pd.DataFrame, got {type(cell_metadata)}")
        if not layers:
            raise ValueError("At least one expression layer is required")

        if not gene_ids.is_unique:
            dupes = gene_ids[gene_ids.duplicated()].unique().tolist()[:5]
            raise ValueError(f"gene_ids must be unique, duplicated: {dupes}")
        if not cell_ids.is_unique:
            dupes = cell_ids[cell_ids.duplicated()].unique().tolist()[:5]
            raise ValueError(f"cell_ids must be unique, duplicated: {dupes}")

        n_genes, n_cells = len(gene_ids), len(cell_ids)
        checked: dict[str, np.ndarray] = {}
        for name, values in layers.items():
            if not isinstance(values, np.ndarray):
                raise TypeError(f"layer '{name}' must be np.ndarray, got {type(values)}")
            if values.ndim != 2:
                raise ValueError(f"layer '{name}' must be 2D, got shape {values.shape}")
            if values.shape != (n_genes, n_cells):
                raise ValueError(
                    f"layer '{name}' shape {values.shape} must match "
                    f"(n_genes, n_cells) = ({n_genes}, {n_cells})"
                )
            checked[str(name)] = values

        if not cell_metadata.index.equals(cell_ids):
            raise ValueError(
                "cell_metadata.index must match cell_ids exactly. "
                f"Got {len(cell_metadata.index)} metadata rows for {n_cells} cells."
            )

        metadata = cell_metadata.copy()
        for label in DS_LABELS:
            if label in metadata.columns and not isinstance(
                metadata[label].dtype, pd.CategoricalDtype
            ):
                metadata[label] = pd.Categorical(metadata[label].astype(str))

        _check_sample_groups(metadata)

        self._layers = checked
        self._gene_ids = gene_ids
        self._cell_ids = cell_ids
        self._cell_metadata = metadata

    @property
    def layers(self) -> dict[str, np.ndarray]:
        """Named expression layers (a shallow copy of the mapping)."""
        return dict(self._layers)

    @property
    def layer_names(self) -> list[str]:
        return list(self._layers)

    @property
    def gene_ids(self) -> pd.Index:
        return self._gene_ids

    @property
    def cell_ids(self) -> pd.Index:
        return self._cell_ids

    @property
    def cell_metadata(self) -> pd.DataFrame:
        return self._cell_metadata

    @property
    def shape(self) -> tuple[int, int]:
        """Table dimensions (n_genes, n_cells)."""
        return (len(self._gene_ids), len(self._cell_ids))

    @property
    def n_genes(self) -> int:
        return len(self._gene_ids)

    @property
    def n_cells(self) -> int:
        return len(self._cell_ids)

    def layer(self, name: str) -> np.ndarray:
        """
        Return an expression layer by name.

        Raises:
            KeyError: If the layer does not exist
        """
        if name not in self._layers:
            raise KeyError(
                f"Layer '{name}' not found. Available layers: {self.layer_names}"
            )
        return self._layers[name]

    def has_labels(self, *keys: str) -> bool:
        return all(k in self._cell_metadata.columns for k in keys)

    def labels(self, key: str) -> pd.Series:
        """
        Return a per-cell annotation column.

        Raises:
            InvalidGrouping: If the annotation is missing
        """
        if key not in self._cell_metadata.columns:
            raise InvalidGrouping(
                f"Cell annotation '{key}' not found. "
                f"Available: {list(self._cell_metadata.columns)}"
            )
        return self._cell_metadata[key]

    def validate_ds_labels(self) -> None:
        """
        Check that every cell carries sample, cluster and group labels.

        Raises:
            InvalidGrouping: If a label column is missing
            ValueError: If a label column has missing values
        """
        for label in DS_LABELS:
            values = self.labels(label)
            n_missing = int(values.isna().sum())
            if n_missing:
                raise ValueError(f"{n_missing} cells have no '{label}' label")

    @property
    def samples(self) -> list[str]:
        return list(self.labels('sample_id').cat.categories)

    @property
    def clusters(self) -> list[str]:
        return list(self.labels('cluster_id').cat.categories)

    @property
    def groups(self) -> list[str]:
        return list(self.labels('group_id').cat.categories)

    def sample_info(self) -> pd.DataFrame:
        """
        Per-sample experiment information.

        Returns:
            DataFrame with columns sample_id, group_id, n_cells; one row per
            sample in category order.
        """
        meta = self._cell_metadata
        sample = self.labels('sample_id')
        counts = sample.value_counts().reindex(sample.cat.categories, fill_value=0)

        if 'group_id' in meta.columns:
            groups = (
                meta[['sample_id', 'group_id']]
                .drop_duplicates('sample_id')
                .set_index('sample_id')['group_id']
                .reindex(sample.cat.categories)
            )
            group_values = pd.Categorical(
                groups.astype(object).values,
                categories=meta['group_id'].cat.categories,
            )
        else:
            group_values = pd.Categorical([np.nan] * len(counts))

        return pd.DataFrame({
            'sample_id': pd.Categorical(
                counts.index.astype(str), categories=sample.cat.categories
            ),
            'group_id': group_values,
            'n_cells': counts.values.astype(int),
        })

    def select_cells(self, mask: np.ndarray | pd.Series) -> ExpressionTable:
        """
        Subset by cells (columns), preserving annotations.

        Args:
            mask: Boolean array/Series (values are used, index ignored)

        Returns:
            New ExpressionTable; unused label categories are dropped
        """
        if isinstance(mask, pd.Series):
            mask = mask.values
        mask = np.asarray(mask, dtype=bool)
        if len(mask) != self.n_cells:
            raise ValueError(
                f"mask length ({len(mask)}) must match n_cells ({self.n_cells})"
            )

        metadata = self._cell_metadata.loc[mask].copy()
        for label in DS_LABELS:
            if label in metadata.columns:
                metadata[label] = metadata[label].cat.remove_unused_categories()

        return ExpressionTable(
            layers={k: v[:, mask] for k, v in self._layers.items()},
            gene_ids=self._gene_ids,
            cell_ids=self._cell_ids[mask],
            cell_metadata=metadata,
        )

    def select_genes(self, mask: np.ndarray | pd.Series) -> ExpressionTable:
        """Subset by genes (rows)."""
        if isinstance(mask, pd.Series):
            mask = mask.values
        mask = np.asarray(mask, dtype=bool)
        if len(mask) != self.n_genes:
            raise ValueError(
                f"mask length ({len(mask)}) must match n_genes ({self.n_genes})"
            )

        return ExpressionTable(
            layers={k: v[mask, :] for k, v in self._layers.items()},
            gene_ids=self._gene_ids[mask],
            cell_ids=self._cell_ids,
            cell_metadata=self._cell_metadata,
        )

    def with_layer(self, name: str, values: np.ndarray) -> ExpressionTable:
        """Return a new table with an added (or replaced) layer."""
        layers = dict(self._layers)
        layers[name] = values
        return ExpressionTable(
            layers=layers,
            gene_ids=self._gene_ids,
            cell_ids=self._cell_ids,
            cell_metadata=self._cell_metadata,
        )

    def to_frame(self, layer: str = 'counts') -> pd.DataFrame:
        """Layer as a gene × cell DataFrame."""
        return pd.DataFrame(
            self.layer(layer), index=self._gene_ids, columns=self._cell_ids
        )

    def copy(self, deep: bool = True) -> ExpressionTable:
        """
        Create a copy of this table.

        Args:
            deep: If True, copy all arrays. If False, share arrays.
        """
        if deep:
            return ExpressionTable(
                layers={k: v.copy() for k, v in self._layers.items()},
                gene_ids=self._gene_ids.copy(),
                cell_ids=self._cell_ids.copy(),
                cell_metadata=self._cell_metadata.copy(),
            )
        return ExpressionTable(
            layers=self._layers,
            gene_ids=self._gene_ids,
            cell_ids=self._cell_ids,
            cell_metadata=self._cell_metadata,
        )

    @classmethod
    def from_anndata(cls, adata, layers: list[str] | None = None) -> ExpressionTable:
        """
        Build a table from an AnnData object (cells × genes).

        ``adata.X`` becomes the ``counts`` layer unless ``layers`` names
        entries of ``adata.layers`` to import instead (``"X"`` refers to
        ``adata.X``). Sparse matrices are densified.

        Args:
            adata: anndata.AnnData
            layers: Layer names to import. Default: ``["X"]`` imported as
                ``counts`` plus every entry of ``adata.layers``.
        """
        import scipy.sparse as sp

        def _dense(matrix) -> np.ndarray:
            if sp.issparse(matrix):
                matrix = matrix.toarray()
            return np.asarray(matrix, dtype=np.float64).T

        if layers is None:
            imported = {'counts': _dense(adata.X)}
            for name in adata.layers.keys():
                imported[name] = _dense(adata.layers[name])
        else:
            imported = {}
            for name in layers:
                if name == 'X':
                    imported['counts'] = _dense(adata.X)
                else:
                    imported[name] = _dense(adata.layers[name])

        cell_ids = pd.Index(adata.obs_names.astype(str))
        obs = adata.obs.copy()
        obs.index = cell_ids

        return cls(
            layers=imported,
            gene_ids=pd.Index(adata.var_names.astype(str)),
            cell_ids=cell_ids,
            cell_metadata=obs,
        )

    def __repr__(self) -> str:
        labels = [c for c in DS_LABELS if c in self._cell_metadata.columns]
        return (
            f"ExpressionTable({self.n_genes} genes × {self.n_cells} cells)\n"
            f"  Layers: {self.layer_names}\n"
            f"  Labels: {labels}"
        )

    def __str__(self) -> str:
        return self.__repr__()


def _check_sample_groups(metadata: pd.DataFrame) -> None:
    """Raise ValueError if any sample maps to more than one group."""
    if 'sample_id' not in metadata.columns or 'group_id' not in metadata.columns:
        return

    n_groups = (
        metadata[['sample_id', 'group_id']]
        .dropna()
        .groupby('sample_id', observed=True)['group_id']
        .nunique()
    )
    inconsistent = n_groups[n_groups > 1].index.astype(str).tolist()
    if inconsistent:
        raise ValueError(
            f"Samples assigned to more than one group_id: {inconsistent[:10]}"
        )
