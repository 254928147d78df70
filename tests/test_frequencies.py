"""Tests for expression frequencies."""

import numpy as np
import pytest

from scdiffstate.stats.frequencies import calc_expr_freqs


@pytest.fixture
def one_cluster(make_table):
    """ctrl: s1 (2 cells); stim: s2 (1 cell), s3 (2 cells)."""
    return make_table(
        counts=[
            [3, 5, 0, 1, 0],
            [0, 0, 1, 2, 0],
        ],
        samples=['s1', 's1', 's2', 's3', 's3'],
        clusters=['T'] * 5,
        groups=['ctrl', 'ctrl', 'stim', 'stim', 'stim'],
    )


def test_sample_and_group_columns(one_cluster):
    freqs = calc_expr_freqs(one_cluster)
    assert list(freqs) == ['T']
    assert list(freqs['T'].columns) == ['s1', 's2', 's3', 'ctrl', 'stim']


def test_sample_frequencies(one_cluster):
    frame = calc_expr_freqs(one_cluster)['T']
    np.testing.assert_allclose(frame.loc['G1', ['s1', 's2', 's3']], [1.0, 0.0, 0.5])
    np.testing.assert_allclose(frame.loc['G2', ['s1', 's2', 's3']], [0.0, 1.0, 0.5])


def test_weighted_group_frequencies_pool_cells(one_cluster):
    frame = calc_expr_freqs(one_cluster, weighted=True)['T']
    assert frame.loc['G1', 'stim'] == pytest.approx(1 / 3)
    assert frame.loc['G2', 'stim'] == pytest.approx(2 / 3)
    assert frame.loc['G1', 'ctrl'] == pytest.approx(1.0)


def test_unweighted_group_frequencies_average_samples(one_cluster):
    frame = calc_expr_freqs(one_cluster, weighted=False)['T']
    assert frame.loc['G1', 'stim'] == pytest.approx(0.25)
    assert frame.loc['G2', 'stim'] == pytest.approx(0.75)


def test_threshold_is_strict(one_cluster):
    frame = calc_expr_freqs(one_cluster, threshold=1)['T']
    assert frame.loc['G1', 's3'] == 0.0
    assert frame.loc['G2', 's3'] == 0.5


def test_clusters_only_list_contributing_samples(tiny_table):
    freqs = calc_expr_freqs(tiny_table)
    assert list(freqs['B'].columns) == ['s3', 'stim']
    assert list(freqs['T'].columns) == ['s1', 's2', 'ctrl', 'stim']
