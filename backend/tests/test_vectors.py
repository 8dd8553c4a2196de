"""Tests for vector math helpers."""
import numpy as np
import pytest

from milkmobs.pipeline.vectors import (
    adaptive_k,
    as_matrix,
    centroid,
    connected_components,
    cosine_similarity_matrix,
    kmeans_labels,
    running_mean,
)


class TestSimilarity:
    """Tests for cosine similarity."""

    def test_identical_and_orthogonal(self):
        matrix = cosine_similarity_matrix(as_matrix([[1, 2, 3], [2, 4, 6], [-3, 0, 1]]))
        assert matrix[0, 1] == pytest.approx(1.0, abs=1e-6)
        assert matrix[1, 2] == pytest.approx(0.0, abs=1e-6)

    def test_matrix_is_symmetric_with_unit_diagonal(self):
        vectors = [[1, 0], [1, 1], [0, 1]]
        matrix = cosine_similarity_matrix(as_matrix(vectors))
        assert matrix.shape == (3, 3)
        assert matrix[0, 1] == pytest.approx(2 ** -0.5, abs=1e-6)
        assert np.allclose(matrix, matrix.T)
        assert np.allclose(np.diag(matrix), 1.0)

    def test_zero_vector_scores_zero(self):
        matrix = cosine_similarity_matrix(as_matrix([[0, 0], [1, 1]]))
        assert matrix[0, 1] == 0.0


class TestCentroids:
    """Tests for centroid helpers."""

    def test_centroid_is_mean(self):
        assert centroid([[0, 0], [2, 4]]) == pytest.approx([1.0, 2.0])
        assert centroid([]) == []

    def test_running_mean_matches_full_mean(self):
        first = [[1.0, 1.0], [3.0, 3.0]]
        second = [[5.0, 8.0]]
        folded = running_mean(centroid(first), len(first), second)
        assert folded == pytest.approx(centroid(first + second))

    def test_running_mean_starts_fresh(self):
        assert running_mean(None, 0, [[2.0, 4.0]]) == pytest.approx([2.0, 4.0])
        assert running_mean([9.0, 9.0], 0, [[2.0, 4.0]]) == pytest.approx([2.0, 4.0])

    def test_running_mean_no_new_vectors(self):
        assert running_mean([1.0, 2.0], 3, []) == [1.0, 2.0]

    def test_running_mean_restarts_on_dimension_change(self):
        assert running_mean([1.0, 2.0], 5, [[3.0, 3.0, 3.0]]) == pytest.approx([3.0, 3.0, 3.0])


class TestAdaptiveK:
    """Tests for the k-means cluster count."""

    @pytest.mark.parametrize(
        "n,expected",
        [(1, 1), (2, 1), (5, 2), (9, 4), (10, 3), (50, 5), (200, 10), (10000, 10)],
    )
    def test_adaptive_k(self, n, expected):
        assert adaptive_k(n) == expected


class TestKMeans:
    """Tests for k-means over raw embeddings."""

    def test_separates_obvious_groups(self):
        rng = np.random.default_rng(0)
        group_a = rng.normal(loc=0.0, scale=0.01, size=(10, 4)) + np.array([1, 0, 0, 0])
        group_b = rng.normal(loc=0.0, scale=0.01, size=(10, 4)) + np.array([0, 0, 0, 1])
        embeddings = np.vstack([group_a, group_b]).astype(np.float32)

        labels = kmeans_labels(embeddings, 2, seed=3)

        assert len(set(labels[:10].tolist())) == 1
        assert len(set(labels[10:].tolist())) == 1
        assert labels[0] != labels[10]

    def test_same_seed_same_labels(self):
        embeddings = np.random.default_rng(1).random((30, 8)).astype(np.float32)
        first = kmeans_labels(embeddings, 4, seed=11)
        second = kmeans_labels(embeddings, 4, seed=11)
        assert first.tolist() == second.tolist()

    def test_k_clamped_to_samples(self):
        labels = kmeans_labels(np.eye(2, dtype=np.float32), 5, seed=0)
        assert sorted(labels.tolist()) == [0, 1]

    def test_empty(self):
        assert kmeans_labels(np.zeros((0, 3), dtype=np.float32), 3).size == 0


class TestConnectedComponents:
    """Tests for graph components."""

    def test_components_ordered_by_lowest_node(self):
        components = connected_components(6, [(4, 1), (2, 5), (1, 0)])
        assert components == [[0, 1, 4], [2, 5], [3]]

    def test_no_edges_gives_singletons(self):
        assert connected_components(3, []) == [[0], [1], [2]]
