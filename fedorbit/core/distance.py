"""
Distance Metrics over Weight Vectors
====================================
L1, L2 and cosine distance between flattened models, pairwise distance
matrices, and the mapping from distance to a [0, 1] similarity score.
"""

import logging

import numpy as np
from enum import Enum
from typing import Callable, Dict, Sequence, Union

from fedorbit.core.exceptions import DegenerateDistance

logger = logging.getLogger("FLDistance")

# Floor applied to vector norms so cosine distance stays total
EPSILON = 1e-12


class DistanceMetric(Enum):
    """Supported distance metrics."""
    L1 = "l1"
    L2 = "l2"
    COSINE = "cosine"

    @classmethod
    def parse(cls, value: Union[str, "DistanceMetric"]) -> "DistanceMetric":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValueError(
                f"Unknown distance metric: {value}. Available: {[m.value for m in cls]}"
            ) from None


def l1_distance(a: np.ndarray, b: np.ndarray) -> float:
    """Manhattan distance: sum |a_i - b_i|."""
    return float(np.sum(np.abs(a - b)))


def l2_distance(a: np.ndarray, b: np.ndarray) -> float:
    """Euclidean distance: ||a - b||_2."""
    return float(np.linalg.norm(a - b))


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """
    Cosine similarity with an epsilon floor on the norms.

    Two zero vectors are treated as identical (similarity 1); a zero vector
    against a non-zero one has similarity 0.
    """
    norm_a = float(np.linalg.norm(a))
    norm_b = float(np.linalg.norm(b))
    if norm_a < EPSILON or norm_b < EPSILON:
        logger.debug(str(DegenerateDistance("zero-norm vector in cosine distance")))
    if norm_a < EPSILON and norm_b < EPSILON:
        return 1.0
    similarity = float(np.dot(a, b)) / max(norm_a * norm_b, EPSILON)
    return float(np.clip(similarity, -1.0, 1.0))


def cosine_distance(a: np.ndarray, b: np.ndarray) -> float:
    """1 - cosine similarity, in [0, 2]."""
    return 1.0 - cosine_similarity(a, b)


_METRICS: Dict[DistanceMetric, Callable[[np.ndarray, np.ndarray], float]] = {
    DistanceMetric.L1: l1_distance,
    DistanceMetric.L2: l2_distance,
    DistanceMetric.COSINE: cosine_distance,
}


def compute_distance(a: np.ndarray,
                     b: np.ndarray,
                     metric: Union[str, DistanceMetric] = DistanceMetric.COSINE) -> float:
    """Distance between two flat vectors under the given metric."""
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    if a.shape != b.shape:
        raise ValueError(f"Vector shapes differ: {a.shape} vs {b.shape}")
    return _METRICS[DistanceMetric.parse(metric)](a, b)


def pairwise_distances(vectors: Sequence[np.ndarray],
                       metric: Union[str, DistanceMetric] = DistanceMetric.COSINE) -> np.ndarray:
    """Symmetric NxN distance matrix with a zero diagonal."""
    n = len(vectors)
    matrix = np.zeros((n, n))
    for i in range(n):
        for j in range(i + 1, n):
            d = compute_distance(vectors[i], vectors[j], metric)
            matrix[i, j] = d
            matrix[j, i] = d
    return matrix


def similarity_from_distance(distance: float,
                             metric: Union[str, DistanceMetric]) -> float:
    """
    Map a distance to a similarity in [0, 1].

    L1/L2: 1 / (1 + d). Cosine: the cosine similarity (1 - d) clipped to [0, 1].
    """
    metric = DistanceMetric.parse(metric)
    if metric is DistanceMetric.COSINE:
        return float(np.clip(1.0 - distance, 0.0, 1.0))
    return 1.0 / (1.0 + max(float(distance), 0.0))
