"""
Synthetic multi-sample, multi-cluster single-cell count data.

Counts are negative binomial (gamma-Poisson) with

    mu[g, c] = base[g, k(c)] * libfactor[c] * exp(b[g, s(c)]) * fc[g, k(c), s(c)]

where ``base`` is a per-gene, per-cluster mean (log-normal), ``libfactor`` a
per-cell capture efficiency, ``b`` a per-sample random effect with standard
deviation ``sample_sd`` and ``fc`` the planted fold change, applied to the
samples of every group after the first for the requested (cluster, gene)
pairs.

Used by the test suite and by ``scdiffstate simulate``.
"""

from __future__ import annotations

import logging
from typing import Mapping, Sequence

import numpy as np
import pandas as pd

from scdiffstate.core.expression import ExpressionTable

logger = logging.getLogger(__name__)

__all__ = ['simulate_dataset']


def simulate_dataset(
    n_genes: int = 100,
    n_cells_per_sample: int = 50,
    n_samples_per_group: int = 2,
    n_clusters: int = 2,
    groups: Sequence[str] = ("A", "B"),
    de_genes: Mapping[str, Sequence[str]] | None = None,
    fold_change: float = 4.0,
    dispersion: float = 0.1,
    sample_sd: float = 0.1,
    seed: int = 42,
) -> ExpressionTable:
    """
    Generate a synthetic expression table with DS labels.

    Args:
        n_genes: Number of genes ("gene000", "gene001", ...)
        n_cells_per_sample: Cells each sample contributes to each cluster
        n_samples_per_group: Samples per group ("A1", "A2", "B1", ...)
        n_clusters: Number of clusters ("cluster1", "cluster2", ...)
        groups: Group labels; the first one is the reference
        de_genes: cluster -> genes with a planted fold change in every
            non-reference group
        fold_change: Multiplicative effect for planted genes
        dispersion: Cell-level NB dispersion
        sample_sd: Standard deviation of per-sample, per-gene log effects
        seed: Random seed for reproducibility

    Returns:
        ExpressionTable with a ``counts`` layer and sample_id / cluster_id /
        group_id labels
    """
    if n_genes < 1 or n_cells_per_sample < 1 or n_samples_per_group < 1 or n_clusters < 1:
        raise ValueError("All sizes must be >= 1")
    if len(groups) < 2:
        raise ValueError(f"Need at least two groups, got {list(groups)}")

    rng = np.random.RandomState(seed)

    gene_ids = pd.Index([f"gene{i:03d}" for i in range(n_genes)])
    clusters = [f"cluster{k + 1}" for k in range(n_clusters)]
    samples = [f"{g}{j + 1}" for g in groups for j in range(n_samples_per_group)]
    sample_group = {f"{g}{j + 1}": g for g in groups for j in range(n_samples_per_group)}

    de_genes = dict(de_genes or {})
    unknown = [g for genes in de_genes.values() for g in genes if g not in gene_ids]
    if unknown:
        raise ValueError(f"Unknown DE genes: {unknown}")
    unknown_clusters = [c for c in de_genes if c not in clusters]
    if unknown_clusters:
        raise ValueError(f"Unknown clusters: {unknown_clusters}. Available: {clusters}")

    base = rng.lognormal(mean=1.0, sigma=0.5, size=(n_genes, n_clusters))
    sample_effects = rng.normal(0.0, sample_sd, size=(n_genes, len(samples)))

    blocks = []
    cell_ids = []
    meta_rows = []

    for k, cluster in enumerate(clusters):
        planted = np.isin(gene_ids, list(de_genes.get(cluster, [])))
        for s, sample in enumerate(samples):
            group = sample_group[sample]
            fc = np.where(planted & (group != groups[0]), fold_change, 1.0)
            libfactor = rng.lognormal(mean=0.0, sigma=0.2, size=n_cells_per_sample)

            mu = (base[:, k] * np.exp(sample_effects[:, s]) * fc)[:, None] * libfactor[None, :]
            lam = rng.gamma(shape=1.0 / dispersion, scale=mu * dispersion)
            blocks.append(rng.poisson(lam))

            for c in range(n_cells_per_sample):
                cell_ids.append(f"{cluster}_{sample}_{c}")
                meta_rows.append((sample, cluster, group))

    counts = np.concatenate(blocks, axis=1).astype(np.float64)
    cell_index = pd.Index(cell_ids)
    meta = pd.DataFrame(meta_rows, columns=['sample_id', 'cluster_id', 'group_id'], index=cell_index)
    meta['sample_id'] = pd.Categorical(meta['sample_id'], categories=samples)
    meta['cluster_id'] = pd.Categorical(meta['cluster_id'], categories=clusters)
    meta['group_id'] = pd.Categorical(meta['group_id'], categories=list(groups))

    logger.info(
        f"Simulated {n_genes} genes × {len(cell_ids)} cells "
        f"({len(samples)} samples, {n_clusters} clusters)"
    )

    return ExpressionTable(
        layers={'counts': counts},
        gene_ids=gene_ids,
        cell_ids=cell_index,
        cell_metadata=meta,
    )
