"""
Pytest configuration and shared fixtures.

Provides small hand-built expression tables (exact values for reducer and
frequency checks) and simulated multi-sample, multi-cluster datasets for the
DS end-to-end tests.
"""

import numpy as np
import pandas as pd
import pytest

from scdiffstate.core.expression import ExpressionTable
from scdiffstate.simulation import simulate_dataset


def build_table(counts, samples, clusters, groups, gene_ids=None):
    """ExpressionTable from a genes × cells count list and per-cell labels."""
    counts = np.asarray(counts, dtype=np.float64)
    n_genes, n_cells = counts.shape
    cell_ids = pd.Index([f"c{i + 1}" for i in range(n_cells)])
    if gene_ids is None:
        gene_ids = [f"G{i + 1}" for i in range(n_genes)]
    meta = pd.DataFrame({
        'sample_id': samples,
        'cluster_id': clusters,
        'group_id': groups,
    }, index=cell_ids)
    return ExpressionTable(
        layers={'counts': counts},
        gene_ids=pd.Index(gene_ids),
        cell_ids=cell_ids,
        cell_metadata=meta,
    )


@pytest.fixture
def make_table():
    """Factory for hand-built tables."""
    return build_table


@pytest.fixture
def tiny_table():
    """
    Two genes, five cells, two clusters.

    cluster T: s1 (c1, c2, ctrl), s2 (c3, stim)
    cluster B: s3 (c4, c5, stim)
    """
    return build_table(
        counts=[
            [3, 5, 0, 1, 0],
            [0, 0, 1, 2, 0],
        ],
        samples=['s1', 's1', 's2', 's3', 's3'],
        clusters=['T', 'T', 'T', 'B', 'B'],
        groups=['ctrl', 'ctrl', 'stim', 'stim', 'stim'],
    )


@pytest.fixture(scope="module")
def sim_table():
    """2 clusters × 4 samples × 100 genes; gene005 up 4-fold in cluster1 group B."""
    return simulate_dataset(
        n_genes=100,
        n_cells_per_sample=50,
        n_samples_per_group=2,
        n_clusters=2,
        de_genes={"cluster1": ["gene005"]},
        fold_change=4.0,
        seed=42,
    )


@pytest.fixture(scope="module")
def small_sim_table():
    """Small cell-level dataset for the mixed-model families."""
    return simulate_dataset(
        n_genes=8,
        n_cells_per_sample=20,
        n_samples_per_group=3,
        n_clusters=1,
        de_genes={"cluster1": ["gene001"]},
        fold_change=4.0,
        sample_sd=0.2,
        seed=7,
    )
