"""
K-means over cosine distance for insight embeddings.
"""

import math
from typing import List, Optional, Sequence

import numpy as np

from src.embedding.vector_math import cosine_similarity_matrix


def determine_optimal_clusters(insight_count: int) -> int:
    """Cluster count for a number of insights; small groups stay interpretable."""
    if insight_count <= 2:
        return 1
    if insight_count <= 5:
        return 2
    if insight_count <= 10:
        return 3
    if insight_count <= 20:
        return 4
    return min(5, math.floor(math.sqrt(insight_count)))


def cluster_embeddings(
    embeddings: Sequence[Sequence[float]],
    k: int = 3,
    max_iterations: int = 100,
    rng: Optional[np.random.Generator] = None,
) -> List[int]:
    """
    Assign every embedding to one of ``k`` clusters.

    Centroids start as ``k`` randomly sampled input vectors (sampling is with
    replacement, so two may coincide). Each iteration assigns vectors to the
    centroid with the smallest cosine distance, then moves each centroid to the
    mean of its members; a centroid without members stays where it is.

    Args:
        embeddings: Equal-length vectors
        k: Number of clusters
        max_iterations: Hard stop; convergence is not guaranteed
        rng: Random generator for centroid sampling (seed it for repeatable runs)

    Returns:
        Cluster index per embedding. Indices are only meaningful within one call.
    """
    if len(embeddings) < k:
        # Fewer insights than clusters, each gets its own cluster
        return list(range(len(embeddings)))

    rng = rng if rng is not None else np.random.default_rng()
    vectors = np.asarray(embeddings, dtype=float)

    initial = rng.integers(0, len(vectors), size=k)
    centroids = vectors[initial].copy()

    assignments = np.zeros(len(vectors), dtype=int)
    has_changed = True
    iterations = 0

    while has_changed and iterations < max_iterations:
        distances = 1.0 - cosine_similarity_matrix(vectors, centroids)
        # argmin keeps the lowest index on ties
        new_assignments = np.argmin(distances, axis=1)

        has_changed = bool(np.any(new_assignments != assignments))
        assignments = new_assignments

        for j in range(k):
            members = vectors[assignments == j]
            if len(members) > 0:
                centroids[j] = members.mean(axis=0)

        iterations += 1

    return assignments.tolist()
