"""
Tests for the similarity engine: correlation, adjacency and soft-threshold
selection.
"""

import warnings

import numpy as np
import pandas as pd
import pytest

from netpreserve.core.matrix import ExpressionMatrix
from netpreserve.exceptions import ThresholdSelectionWarning
from netpreserve.network.similarity import (
    AdjacencyType,
    compute_adjacency,
    compute_correlation_matrix_chunked,
    connectivity_by_power,
    correlation_to_adjacency,
    pick_soft_threshold,
    scale_free_fit,
    standardize_rows,
)


@pytest.fixture
def four_genes():
    """g2 is a linear function of g1; g3 and g4 are orthogonal patterns."""
    g1 = np.array([1, 2, 3, 4, 5, 6], dtype=float)
    data = np.vstack([
        g1,
        2 * g1 + 1,
        [1, -1, 1, -1, 1, -1],
        [1, 1, -1, -1, 0, 0],
    ])
    return ExpressionMatrix(
        data=data,
        gene_ids=pd.Index(["g1", "g2", "g3", "g4"]),
        sample_ids=pd.Index([f"s{j}" for j in range(6)]),
    )


class TestCorrelation:
    def test_matches_numpy(self):
        rng = np.random.default_rng(42)
        data = rng.standard_normal((40, 12))
        corr = compute_correlation_matrix_chunked(data, chunk_size=7)
        np.testing.assert_allclose(corr, np.corrcoef(data), atol=1e-10)

    def test_chunk_size_invariant(self):
        rng = np.random.default_rng(42)
        data = rng.standard_normal((25, 10))
        np.testing.assert_allclose(
            compute_correlation_matrix_chunked(data, chunk_size=3),
            compute_correlation_matrix_chunked(data, chunk_size=100),
        )

    def test_constant_row_correlates_zero(self):
        data = np.vstack([np.ones(5), np.arange(5, dtype=float)])
        corr = compute_correlation_matrix_chunked(data)
        assert corr[0, 1] == 0.0
        assert corr[0, 0] == 1.0

    def test_standardize_rows(self):
        z = standardize_rows(np.array([[1.0, 2.0, 3.0], [5.0, 5.0, 5.0]]))
        np.testing.assert_allclose(z[0].mean(), 0.0, atol=1e-12)
        np.testing.assert_allclose(z[0].std(), 1.0)
        np.testing.assert_array_equal(z[1], 0.0)


class TestAdjacency:
    def test_linear_pair_is_fully_adjacent(self, four_genes):
        adj = compute_adjacency(four_genes, power=6, adjacency_type="unsigned")
        assert adj.loc["g1", "g2"] == pytest.approx(1.0)
        assert adj.loc["g2", "g1"] == pytest.approx(1.0)

    def test_orthogonal_pair_is_not_adjacent(self, four_genes):
        adj = compute_adjacency(four_genes, power=6)
        # g3 and g4 have zero correlation
        assert adj.loc["g3", "g4"] == pytest.approx(0.0, abs=1e-12)

    def test_symmetric_bounded_zero_diagonal(self):
        rng = np.random.default_rng(42)
        data = rng.standard_normal((30, 15))
        for adjacency_type in AdjacencyType:
            corr = compute_correlation_matrix_chunked(data)
            adj = correlation_to_adjacency(corr, power=4, adjacency_type=adjacency_type)
            np.testing.assert_allclose(adj, adj.T)
            assert adj.min() >= 0.0
            assert adj.max() <= 1.0
            np.testing.assert_array_equal(np.diag(adj), 0.0)

    def test_signed_types_penalize_negative_correlation(self):
        corr = np.array([[1.0, -0.8], [-0.8, 1.0]])
        unsigned = correlation_to_adjacency(corr, power=1, adjacency_type="unsigned")
        signed = correlation_to_adjacency(corr, power=1, adjacency_type="signed")
        hybrid = correlation_to_adjacency(corr, power=1, adjacency_type="signed_hybrid")
        assert unsigned[0, 1] == pytest.approx(0.8)
        assert signed[0, 1] == pytest.approx(0.1)
        assert hybrid[0, 1] == 0.0

    def test_rejects_non_positive_power(self):
        with pytest.raises(ValueError, match="power"):
            correlation_to_adjacency(np.eye(2), power=0)

    def test_higher_power_lowers_connectivity(self):
        rng = np.random.default_rng(42)
        data = rng.standard_normal((30, 15))
        k = connectivity_by_power(data, powers=[1, 2, 6], chunk_size=8)
        assert (k[:, 0] >= k[:, 1]).all()
        assert (k[:, 1] >= k[:, 2]).all()


class TestSoftThreshold:
    def test_scale_free_fit_constant_connectivity(self):
        fit = scale_free_fit(np.full(20, 3.0))
        assert np.isnan(fit.r_squared)
        assert np.isnan(fit.signed_r_squared)

    def test_scale_free_fit_fills_empty_bins(self):
        # Connectivity clustered at both ends leaves the middle bins empty
        k = np.concatenate([np.full(30, 1.0), np.full(10, 2.0), [10.0, 10.0]])
        fit = scale_free_fit(k, n_breaks=10)
        assert np.isfinite(fit.r_squared)
        assert np.isfinite(fit.slope)
        assert 0.0 <= fit.r_squared <= 1.0

    def test_fit_table_covers_all_powers(self, module_matrix):
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", ThresholdSelectionWarning)
            result = pick_soft_threshold(module_matrix, powers=[1, 2, 4, 6])
        assert list(result.fit_table["power"]) == [1.0, 2.0, 4.0, 6.0]
        assert {"signed_r_squared", "mean_k"} <= set(result.fit_table.columns)
        assert result.power in {1.0, 2.0, 4.0, 6.0}

    def test_unreachable_target_warns(self, module_matrix):
        with pytest.warns(ThresholdSelectionWarning):
            result = pick_soft_threshold(
                module_matrix, powers=[1, 2, 3], mean_connectivity_floor=1e6
            )
        assert result.satisfied is False

    def test_reachable_target_picks_smallest(self, module_matrix):
        with warnings.catch_warnings():
            warnings.simplefilter("error", ThresholdSelectionWarning)
            result = pick_soft_threshold(
                module_matrix, powers=[1, 2, 3], r2_target=-1.0, mean_connectivity_floor=0.0
            )
        assert result.satisfied is True
        assert result.power == 1.0
