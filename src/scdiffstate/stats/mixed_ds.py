"""
Mixed-model differential state testing on cell-level data.

The pseudobulk path collapses cells to one profile per sample; this path
keeps every cell and accounts for their non-independence with a random
intercept per sample:

    expression ~ 1 + group_id + (1 | sample_id)

fit per gene on the cells of one cluster, by maximum likelihood. Cells are
the observations, samples the grouping factor, and the group effect is
tested with the family's statistic (t with approximate df for LMMs, Wald z
for count GLMMs).

Filtering (thresholds are inclusive):
    - a cluster is tested if at least ``n_samples`` samples contribute at
      least ``n_cells`` cells to it; only those samples are used
    - a gene is tested if at least ``min_cells`` of the cluster's cells have
      a count of at least ``min_count``; cells of samples dropped by the
      first filter still count

Clusters and genes failing a threshold, and genes whose model does not
converge, are returned as ``Exclusion`` records; they are absent from the
result tables.
"""

from __future__ import annotations

import logging
from functools import partial
from typing import Any, Sequence

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from scdiffstate.core.expression import ExpressionTable
from scdiffstate.exceptions import EmptyInput
from scdiffstate.stats.design_matrix import DesignSpecification, build_design_matrix
from scdiffstate.stats.differential import (
    DSResult,
    Exclusion,
    FitFailure,
    FitOutcome,
    GeneFit,
    adjust_pvalues,
    parallel_map,
)
from scdiffstate.stats.methods import get_method
from scdiffstate.stats.methods._base import _BaseMixedMethod

logger = logging.getLogger(__name__)

__all__ = ['MIXED_COLUMNS', 'filter_genes', 'mixed_model_ds']

MIXED_COLUMNS = [
    'gene', 'cluster_id', 'beta', 'logFC', 'SE', 'stat', 'df',
    'p_val', 'p_adj.loc', 'p_adj.glb', 'contrast',
]


def filter_genes(
    counts: NDArray[np.float64],
    min_count: float = 1,
    min_cells: int = 20,
) -> NDArray[np.bool_]:
    """Genes with a count >= min_count in at least min_cells cells."""
    return (counts >= min_count).sum(axis=1) >= min_cells


def _fit_task(
    item: tuple[str, NDArray[np.float64], dict[str, NDArray[np.float64]]],
    family: _BaseMixedMethod,
    **kwargs: Any,
) -> FitOutcome:
    gene, y, per_gene = item
    return family.fit_gene(gene, y, **kwargs, **per_gene)


def _test_cluster(
    cluster: str,
    table: ExpressionTable,
    family: _BaseMixedMethod,
    reference: str,
    coef: Sequence[str] | None,
    n_cells: int,
    n_samples: int,
    min_count: float,
    min_cells: int,
    n_jobs: int,
) -> tuple[dict[str, pd.DataFrame], list[Exclusion]]:
    exclusions: list[Exclusion] = []

    in_cluster = (table.labels('cluster_id').astype(str) == cluster).to_numpy()
    sub = table.select_cells(in_cluster)
    # genes are filtered on every cell of the cluster, before samples are dropped
    gene_mask = filter_genes(
        sub.layer('counts').astype(np.float64), min_count=min_count, min_cells=min_cells
    )

    cells_per_sample = sub.labels('sample_id').astype(str).value_counts()
    qualifying = cells_per_sample[cells_per_sample >= n_cells].index.tolist()
    if len(qualifying) < n_samples:
        exclusions.append(Exclusion(
            cluster_id=cluster, gene=None, comparison=None, stage='cluster',
            reason=(
                f"{len(qualifying)} samples with >= {n_cells} cells "
                f"(need {n_samples})"
            ),
        ))
        logger.info(f"Cluster {cluster}: skipped, insufficient samples")
        return {}, exclusions

    sub = sub.select_cells(sub.labels('sample_id').astype(str).isin(qualifying))
    meta = sub.cell_metadata

    try:
        design = build_design_matrix(meta[['group_id']], reference=reference)
        spec = DesignSpecification(design=design, coef=tuple(coef) if coef else None)
    except ValueError as e:
        exclusions.append(Exclusion(
            cluster_id=cluster, gene=None, comparison=None, stage='cluster',
            reason=f"Cell-level design not estimable: {e}",
            error='ModelFitFailure',
        ))
        logger.info(f"Cluster {cluster}: skipped, {e}")
        return {}, exclusions

    counts = sub.layer('counts').astype(np.float64)
    n_filtered = int((~gene_mask).sum())
    if n_filtered:
        exclusions.append(Exclusion(
            cluster_id=cluster, gene=None, comparison=None, stage='gene_filter',
            reason=(
                f"{n_filtered} genes with count >= {min_count} in fewer than "
                f"{min_cells} cells"
            ),
        ))
    if not np.any(gene_mask):
        exclusions.append(Exclusion(
            cluster_id=cluster, gene=None, comparison=None, stage='cluster',
            reason="No genes passed the expression filter",
        ))
        return {}, exclusions

    genes = [str(g) for g in sub.gene_ids[gene_mask]]
    values = sub.layer(family.layer)[gene_mask].astype(np.float64)
    X = spec.X
    groups = np.asarray(meta['sample_id'].cat.codes, dtype=int)
    comparisons = spec.comparisons()
    vectors = [vec for _, vec in comparisons]

    per_gene, shared = family.cluster_inputs(values, counts, X)
    items = [
        (gene, values[i], {name: arr[i] for name, arr in per_gene.items()})
        for i, gene in enumerate(genes)
    ]
    task = partial(_fit_task, family=family, X=X, groups=groups, comparisons=vectors, **shared)
    outcomes = parallel_map(task, items, n_jobs=n_jobs)

    fits: list[GeneFit] = []
    for outcome in outcomes:
        if isinstance(outcome, FitFailure):
            logger.debug(f"Cluster {cluster}, gene {outcome.gene}: {outcome.reason}")
            exclusions.append(Exclusion(
                cluster_id=cluster, gene=outcome.gene, comparison=None, stage='fit',
                reason=outcome.reason, error=outcome.error,
            ))
        else:
            fits.append(outcome)

    tables: dict[str, pd.DataFrame] = {}
    for k, (name, vector) in enumerate(comparisons):
        rows = [
            {'gene': fit.gene, 'cluster_id': cluster, **family.test(fit, vector, k)}
            for fit in fits
        ]
        frame = pd.DataFrame(
            rows, columns=['gene', 'cluster_id', 'beta', 'logFC', 'SE', 'stat', 'df', 'p_val']
        )
        tables[name] = frame.sort_values('gene', kind='mergesort').reset_index(drop=True)

    logger.info(
        f"Cluster {cluster}: {family.name.value} on {len(genes)} genes, "
        f"{sub.n_cells} cells, {len(qualifying)} samples "
        f"({len(genes) - len(fits)} failed fits, {n_filtered} filtered)"
    )
    return tables, exclusions


def mixed_model_ds(
    table: ExpressionTable,
    method: str = "dream",
    n_cells: int = 10,
    n_samples: int = 2,
    min_count: float = 1,
    min_cells: int = 20,
    ddf: str = "satterthwaite",
    coef: str | Sequence[str] | None = None,
    fdr_method: str = "BH",
    n_jobs: int = 1,
) -> DSResult:
    """
    Test every cluster for differential state with per-gene mixed models.

    Args:
        table: Cell-level expression table with sample_id, cluster_id and
            group_id labels and a ``counts`` layer
        method: "dream", "vst", "poisson" or "nbinom"
        n_cells: Minimum cells per sample within a cluster
        n_samples: Minimum number of samples meeting ``n_cells``
        min_count: Minimum count for a cell to count as expressing a gene
        min_cells: Minimum expressing cells for a gene to be tested
        ddf: "satterthwaite", "between-within" or "residual" (LMM families)
        coef: Coefficient(s) of the cell-level design to test; default is
            the last group coefficient
        fdr_method: "BH", "BY" or "bonferroni"
        n_jobs: Parallel workers for per-gene fits (joblib)

    Returns:
        DSResult with one table per comparison and cluster and every
        exclusion made on the way

    Raises:
        EmptyInput: If the table has no cells or genes
        InvalidGrouping: If a DS label is missing
        ValueError: For unknown methods or ddf options
    """
    if table.n_cells == 0 or table.n_genes == 0:
        raise EmptyInput(f"Cannot test a table of shape {table.shape}")
    table.validate_ds_labels()

    family = get_method(method, ddf=ddf)
    table = family.prepare(table)
    coef = [coef] if isinstance(coef, str) else (list(coef) if coef is not None else None)
    reference = table.groups[0]

    logger.info(
        f"Mixed-model DS ({family!r}): {len(table.clusters)} clusters, "
        f"{len(table.samples)} samples"
    )

    raw: dict[str, dict[str, pd.DataFrame]] = {}
    exclusions: list[Exclusion] = []

    for cluster in table.clusters:
        tables, cluster_exclusions = _test_cluster(
            cluster=str(cluster),
            table=table,
            family=family,
            reference=reference,
            coef=coef,
            n_cells=n_cells,
            n_samples=n_samples,
            min_count=min_count,
            min_cells=min_cells,
            n_jobs=n_jobs,
        )
        exclusions.extend(cluster_exclusions)
        for name, frame in tables.items():
            raw.setdefault(name, {})[str(cluster)] = frame

    adjusted = adjust_pvalues(raw, method=fdr_method)
    for name, by_cluster in adjusted.items():
        for cluster, frame in by_cluster.items():
            frame['contrast'] = name
            by_cluster[cluster] = frame[MIXED_COLUMNS]

    return DSResult(
        tables=adjusted,
        exclusions=exclusions,
        method=family.name.value,
        params={
            'n_cells': n_cells,
            'n_samples': n_samples,
            'min_count': min_count,
            'min_cells': min_cells,
            'ddf': ddf,
            'coef': coef,
            'fdr_method': fdr_method,
        },
    )
