"""Vector math used by the raw-embedding clustering paths."""
from __future__ import annotations

import logging
from typing import Optional, Sequence

import numpy as np
from numpy.typing import NDArray

logger = logging.getLogger(__name__)


def as_matrix(embeddings: Sequence[Sequence[float]]) -> NDArray[np.float32]:
    """Stack embeddings into a (n, dim) float32 array."""
    if len(embeddings) == 0:
        return np.zeros((0, 0), dtype=np.float32)
    return np.asarray(embeddings, dtype=np.float32)


def cosine_similarity_matrix(embeddings: NDArray[np.float32]) -> NDArray[np.float32]:
    """Pairwise cosine similarity for all rows."""
    norms = np.linalg.norm(embeddings, axis=1, keepdims=True)
    norms = np.maximum(norms, 1e-12)
    normalized = embeddings / norms
    return normalized @ normalized.T


def centroid(embeddings: Sequence[Sequence[float]]) -> list[float]:
    """Arithmetic mean of member embeddings."""
    if len(embeddings) == 0:
        return []
    return as_matrix(embeddings).mean(axis=0).astype(float).tolist()


def running_mean(
    current: Optional[Sequence[float]],
    current_count: int,
    new_vectors: Sequence[Sequence[float]],
) -> list[float]:
    """
    Fold new member vectors into a running mean.

    Args:
        current: Existing centroid (None or empty when the community is new)
        current_count: Number of members the existing centroid averages over
        new_vectors: Embeddings of the members being added

    Returns:
        Updated centroid
    """
    if len(new_vectors) == 0:
        return list(current or [])
    added = as_matrix(new_vectors)
    if not current or current_count <= 0:
        return added.mean(axis=0).astype(float).tolist()

    existing = np.asarray(current, dtype=np.float64)
    if existing.shape[0] != added.shape[1]:
        logger.warning(
            f"Centroid dimension {existing.shape[0]} != embedding dimension "
            f"{added.shape[1]}; restarting running mean"
        )
        return added.mean(axis=0).astype(float).tolist()

    total = existing * current_count + added.sum(axis=0)
    return (total / (current_count + added.shape[0])).astype(float).tolist()


def adaptive_k(n: int) -> int:
    """Number of k-means clusters for a corpus of ``n`` items."""
    if n >= 10:
        return int(min(10, max(3, int(np.sqrt(n / 2)))))
    return max(1, n // 2)


def kmeans_labels(
    embeddings: NDArray[np.float32],
    k: int,
    max_iterations: int = 10,
    tolerance: float = 0.001,
    seed: Optional[int] = None,
) -> NDArray[np.int32]:
    """
    K-means over raw embeddings.

    Centroids are seeded from randomly chosen rows of the dataset. Each
    iteration runs one Lloyd step with scikit-learn and stops once no centroid
    moves more than ``tolerance`` in Euclidean distance.

    Args:
        embeddings: Array of shape (n_samples, embedding_dim)
        k: Number of clusters (clamped to n_samples)
        max_iterations: Iteration cap
        tolerance: Convergence threshold on centroid movement
        seed: Random seed for centroid seeding

    Returns:
        Cluster label per row
    """
    from sklearn.cluster import KMeans

    n_samples = embeddings.shape[0]
    if n_samples == 0:
        return np.zeros(0, dtype=np.int32)
    k = max(1, min(k, n_samples))

    rng = np.random.default_rng(seed)
    seed_rows = rng.choice(n_samples, size=k, replace=False)
    centers = embeddings[seed_rows].astype(np.float64)
    labels = np.zeros(n_samples, dtype=np.int32)

    for iteration in range(max_iterations):
        step = KMeans(n_clusters=k, init=centers, n_init=1, max_iter=1)
        step.fit(embeddings.astype(np.float64))
        labels = step.labels_.astype(np.int32)
        new_centers = step.cluster_centers_
        shift = float(np.max(np.linalg.norm(new_centers - centers, axis=1)))
        centers = new_centers
        if shift < tolerance:
            logger.debug(f"K-means converged after {iteration + 1} iterations")
            break

    return labels


def connected_components(
    n_nodes: int,
    edges: Sequence[tuple[int, int]],
) -> list[list[int]]:
    """
    Connected components of an undirected graph, via depth-first traversal.

    Components are returned in order of their lowest node index, members
    sorted ascending, so the result is deterministic for a given graph.
    """
    import networkx as nx

    graph = nx.Graph()
    graph.add_nodes_from(range(n_nodes))
    graph.add_edges_from(edges)

    visited: set[int] = set()
    components: list[list[int]] = []
    for node in range(n_nodes):
        if node in visited:
            continue
        members = sorted(nx.dfs_preorder_nodes(graph, source=node))
        visited.update(members)
        components.append(members)
    return components
