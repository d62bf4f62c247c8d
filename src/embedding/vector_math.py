"""
Cosine similarity helpers shared by the clustering engine.
"""

from typing import Sequence

import numpy as np

from src.models.errors import DimensionMismatch


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity of two equal-length vectors.

    Args:
        a: First vector
        b: Second vector

    Returns:
        dot(a, b) / (|a| * |b|), a value in [-1, 1]

    Raises:
        DimensionMismatch: If the vectors have different lengths
    """
    if len(a) != len(b):
        raise DimensionMismatch(f"Embeddings must have the same length ({len(a)} != {len(b)})")

    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    return float(np.dot(va, vb) / (np.linalg.norm(va) * np.linalg.norm(vb)))


def cosine_similarity_matrix(vectors: np.ndarray, centroids: np.ndarray) -> np.ndarray:
    """
    Pairwise cosine similarity between every row of ``vectors`` and every row of ``centroids``.

    Rows with zero norm get similarity 0 against everything.

    Returns:
        Array of shape (len(vectors), len(centroids))
    """
    if vectors.shape[1] != centroids.shape[1]:
        raise DimensionMismatch(
            f"Embeddings must have the same length ({vectors.shape[1]} != {centroids.shape[1]})"
        )

    vector_norms = np.linalg.norm(vectors, axis=1, keepdims=True)
    centroid_norms = np.linalg.norm(centroids, axis=1, keepdims=True)
    denominator = vector_norms @ centroid_norms.T

    dots = vectors @ centroids.T
    with np.errstate(divide="ignore", invalid="ignore"):
        similarity = np.where(denominator > 0, dots / denominator, 0.0)
    return similarity
