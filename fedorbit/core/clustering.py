"""
Clustering over Client Models
=============================
Groups flattened client weight vectors under a configurable distance metric
(l1, l2 or cosine). K-means uses deterministic k-means++ seeding and an
elbow rule for k. Louvain and agreement clustering partition a similarity
graph built from the same distances.
"""

import logging
from collections import deque
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
from sklearn.metrics import silhouette_score

from fedorbit.core.distance import DistanceMetric, compute_distance, pairwise_distances
from fedorbit.core.exceptions import ClusteringNonConvergence

logger = logging.getLogger("FLClustering")

MAX_AUTO_CLUSTERS = 10


@dataclass
class ClusteringResult:
    """
    Outcome of one clustering run.

    Attributes:
        labels: Cluster index per input vector, in input order.
        centroids: (k, d) array of cluster centres.
        iterations: Assignment passes performed.
        inertia: Sum of squared metric distances to the assigned centroid.
        converged: False when the iteration bound was hit first.
        agreement: Co-assignment counts, for agreement clustering.
    """
    labels: np.ndarray
    centroids: np.ndarray
    iterations: int
    inertia: float
    converged: bool
    agreement: Optional[np.ndarray] = None

    @property
    def k(self) -> int:
        return int(self.centroids.shape[0])

    def members(self) -> List[List[int]]:
        """Input indices per cluster, in cluster order."""
        return [np.flatnonzero(self.labels == c).tolist() for c in range(self.k)]


class KMeansClustering:
    """
    Deterministic k-means.

    Seeding is k-means++ drawn from ``np.random.default_rng(seed)``, so the
    same vectors and seed always produce the same labels. Assignment ties go to
    the lowest cluster index.
    """

    def __init__(self,
                 num_clusters: Optional[int] = None,
                 metric: Union[str, DistanceMetric] = DistanceMetric.COSINE,
                 max_iterations: int = 100,
                 seed: int = 42,
                 elbow_threshold: float = 0.2):
        """
        Args:
            num_clusters: Fixed k, clamped to the number of vectors. None
                selects k with ``determine_optimal_k``.
            metric: Distance used for seeding, assignment and inertia.
            max_iterations: Bound on assignment passes.
            seed: Seed for k-means++ initialization.
            elbow_threshold: Relative inertia drop below which automatic
                selection stops adding clusters.
        """
        self.num_clusters = num_clusters
        self.metric = DistanceMetric.parse(metric)
        self.max_iterations = max_iterations
        self.seed = seed
        self.elbow_threshold = elbow_threshold

    def fit(self, vectors: Sequence[np.ndarray]) -> ClusteringResult:
        """Cluster the given vectors."""
        X = _as_matrix(vectors)
        n = X.shape[0]
        if self.num_clusters is None:
            k = determine_optimal_k(
                X, metric=self.metric, max_iterations=self.max_iterations,
                seed=self.seed, threshold=self.elbow_threshold,
            )
        else:
            k = max(1, min(int(self.num_clusters), n))

        result = self._run(X, k)
        if not result.converged:
            logger.warning(str(ClusteringNonConvergence(self.max_iterations)))
        logger.info(f"K-means: {n} vectors -> k={result.k}, iterations={result.iterations}, "
                    f"inertia={result.inertia:.6f}")
        return result

    def _run(self, X: np.ndarray, k: int) -> ClusteringResult:
        n = X.shape[0]
        rng = np.random.default_rng(self.seed)
        centroids = self._seed_centroids(X, k, rng)

        labels: Optional[np.ndarray] = None
        converged = False
        iterations = 0
        for iterations in range(1, self.max_iterations + 1):
            distances = self._distances_to(X, centroids)
            new_labels = np.argmin(distances, axis=1)
            new_labels = self._reseed_empty(new_labels, distances, k)

            if labels is not None and np.array_equal(new_labels, labels):
                converged = True
                break
            labels = new_labels
            centroids = np.vstack([X[labels == c].mean(axis=0) for c in range(k)])

        distances = self._distances_to(X, centroids)
        inertia = float(np.sum(distances[np.arange(n), labels] ** 2))
        return ClusteringResult(
            labels=labels.astype(int),
            centroids=centroids,
            iterations=iterations,
            inertia=inertia,
            converged=converged,
        )

    def _seed_centroids(self, X: np.ndarray, k: int, rng: np.random.Generator) -> np.ndarray:
        """k-means++: first centre uniform, the rest proportional to D(x)^2."""
        n = X.shape[0]
        chosen = [int(rng.integers(n))]
        while len(chosen) < k:
            d2 = np.array([
                min(compute_distance(x, X[c], self.metric) for c in chosen) ** 2 for x in X
            ])
            total = d2.sum()
            if total <= 0:
                # All remaining points coincide with a centre
                chosen.append(int(rng.integers(n)))
            else:
                chosen.append(int(rng.choice(n, p=d2 / total)))
        return X[chosen].copy()

    def _distances_to(self, X: np.ndarray, centroids: np.ndarray) -> np.ndarray:
        return np.array([[compute_distance(x, c, self.metric) for c in centroids] for x in X])

    @staticmethod
    def _reseed_empty(labels: np.ndarray, distances: np.ndarray, k: int) -> np.ndarray:
        """Give each empty cluster the point farthest from its own centroid."""
        labels = labels.copy()
        n = labels.shape[0]
        for c in range(k):
            if np.any(labels == c):
                continue
            counts = np.bincount(labels, minlength=k)
            own = distances[np.arange(n), labels].copy()
            own[counts[labels] <= 1] = -np.inf
            labels[int(np.argmax(own))] = c
        return labels


def determine_optimal_k(vectors: Sequence[np.ndarray],
                        metric: Union[str, DistanceMetric] = DistanceMetric.COSINE,
                        max_iterations: int = 100,
                        seed: int = 42,
                        threshold: float = 0.2,
                        max_k: int = MAX_AUTO_CLUSTERS) -> int:
    """
    Elbow heuristic: smallest k whose inertia drop to k+1, relative to the
    one-cluster inertia, is below `threshold`.

    Bounded by min(max_k, number of vectors).
    """
    X = _as_matrix(vectors)
    upper = min(max_k, X.shape[0])
    if upper <= 1:
        return 1

    runner = KMeansClustering(metric=metric, max_iterations=max_iterations, seed=seed)
    inertias = [runner._run(X, k).inertia for k in range(1, upper + 1)]
    base = inertias[0]
    if base <= 0:
        return 1
    for k in range(1, upper):
        if (inertias[k - 1] - inertias[k]) / base < threshold:
            return k
    return upper


def silhouette(distance_matrix: np.ndarray, labels: Sequence[int]) -> Optional[float]:
    """
    Mean silhouette coefficient from a precomputed distance matrix.

    Returns None when it is undefined (fewer than 2 clusters, or every point in
    its own cluster).
    """
    labels = np.asarray(labels)
    n_labels = len(np.unique(labels))
    if n_labels < 2 or n_labels >= len(labels):
        return None
    return float(silhouette_score(distance_matrix, labels, metric="precomputed"))


def cluster_distance_matrix(vectors: Sequence[np.ndarray],
                            metric: Union[str, DistanceMetric]) -> np.ndarray:
    return pairwise_distances([np.asarray(v, dtype=np.float64) for v in vectors], metric)


def _as_matrix(vectors: Sequence[np.ndarray]) -> np.ndarray:
    if len(vectors) == 0:
        raise ValueError("Cannot cluster an empty set of vectors.")
    return np.vstack([np.asarray(v, dtype=np.float64).ravel() for v in vectors])


# ============================================================================
# COMMUNITY DETECTION (LOUVAIN & AGREEMENT)
# ============================================================================

# Resolution sweep and co-assignment threshold for the agreement method
AGREEMENT_RUNS = 20
AGREEMENT_RESOLUTIONS = (0.5, 2.5)
AGREEMENT_THRESHOLD = 0.6
AGREEMENT_SEED_OFFSET = 100000


def similarity_graph(distance_matrix: np.ndarray) -> np.ndarray:
    """
    Weighted adjacency exp(-d_ij / sigma) with sigma the mean off-diagonal
    distance (1 when that mean is 0). The diagonal is 0.
    """
    D = np.asarray(distance_matrix, dtype=np.float64)
    n = D.shape[0]
    upper = D[np.triu_indices(n, k=1)]
    sigma = float(upper.mean()) if upper.size else 0.0
    if sigma <= 0:
        sigma = 1.0
    adjacency = np.exp(-D / sigma)
    np.fill_diagonal(adjacency, 0.0)
    return adjacency


def louvain_partition(adjacency: np.ndarray,
                      resolution: float = 1.0,
                      rng: Optional[np.random.Generator] = None,
                      max_passes: int = 10) -> np.ndarray:
    """
    Local-move phase of Louvain modularity optimization.

    Nodes are visited in a random order drawn from `rng`; each moves to the
    neighbouring community with the largest positive modularity gain. Stops
    after a pass without moves or after `max_passes`. Labels are numbered in
    order of first appearance. A graph without edges leaves every node alone.
    """
    A = np.asarray(adjacency, dtype=np.float64)
    n = A.shape[0]
    degrees = A.sum(axis=1)
    m = degrees.sum() / 2.0
    if m <= 0:
        return np.arange(n)

    rng = rng if rng is not None else np.random.default_rng(0)
    community = np.arange(n)
    totals = degrees.copy()
    for _ in range(max_passes):
        moved = False
        for i in rng.permutation(n):
            current = community[i]
            links: Dict[int, float] = {}
            for j in np.flatnonzero(A[i] > 0):
                links[community[j]] = links.get(community[j], 0.0) + A[i, j]

            totals[current] -= degrees[i]
            best, best_gain = current, 0.0
            for c in sorted(links):
                gain = (links[c] - resolution * degrees[i] * totals[c] / (2 * m)) / (2 * m)
                if gain > best_gain:
                    best, best_gain = c, gain
            totals[best] += degrees[i]
            if best != current:
                community[i] = best
                moved = True
        if not moved:
            break
    return _first_appearance(community)


def refine_partition(adjacency: np.ndarray, labels: Sequence[int]) -> np.ndarray:
    """Move each node to its strongest neighbour's community when it is tied more strongly there."""
    A = np.asarray(adjacency, dtype=np.float64)
    labels = np.asarray(labels).copy()
    for i in range(A.shape[0]):
        row = A[i].copy()
        row[i] = 0.0
        if not np.any(row > 0):
            continue
        target = labels[int(np.argmax(row))]
        if target == labels[i]:
            continue
        internal = row[labels == labels[i]].sum()
        external = row[labels == target].sum()
        if external > internal:
            labels[i] = target
    return _first_appearance(labels)


def agreement_matrix(adjacency: np.ndarray,
                     runs: int = AGREEMENT_RUNS,
                     resolutions: Tuple[float, float] = AGREEMENT_RESOLUTIONS,
                     seed: int = 42) -> np.ndarray:
    """
    Co-assignment counts over `runs` Louvain partitions.

    Resolution sweeps linearly across `resolutions`. Entry (i, j) counts the
    runs that put i and j in the same community; the diagonal equals `runs`.
    """
    A = np.asarray(adjacency, dtype=np.float64)
    n = A.shape[0]
    rng = np.random.default_rng(seed + AGREEMENT_SEED_OFFSET)
    counts = np.zeros((n, n), dtype=int)
    low, high = resolutions
    for run in range(runs):
        resolution = low + (high - low) * run / max(runs - 1, 1)
        labels = louvain_partition(A, resolution=resolution, rng=rng)
        counts += (labels[:, None] == labels[None, :]).astype(int)
    return counts


def labels_from_agreement(counts: np.ndarray,
                          runs: int = AGREEMENT_RUNS,
                          threshold: float = AGREEMENT_THRESHOLD) -> np.ndarray:
    """Connected components of the graph linking pairs co-assigned in at least `threshold` of the runs."""
    counts = np.asarray(counts)
    n = counts.shape[0]
    linked = counts >= runs * threshold
    labels = np.full(n, -1, dtype=int)
    next_label = 0
    for start in range(n):
        if labels[start] >= 0:
            continue
        labels[start] = next_label
        queue = deque([start])
        while queue:
            i = queue.popleft()
            for j in np.flatnonzero(linked[i]):
                if labels[j] < 0:
                    labels[j] = next_label
                    queue.append(j)
        next_label += 1
    return labels


class CommunityClustering:
    """
    Graph clustering of client models.

    Builds a similarity graph from pairwise metric distances and partitions
    it with Louvain (plus a refinement pass), or, with ``consensus=True``,
    with the agreement of Louvain runs over a resolution sweep. The number
    of clusters is not fixed in advance.
    """

    def __init__(self,
                 metric: Union[str, DistanceMetric] = DistanceMetric.COSINE,
                 seed: int = 42,
                 resolution: float = 1.0,
                 consensus: bool = False):
        self.metric = DistanceMetric.parse(metric)
        self.seed = seed
        self.resolution = resolution
        self.consensus = consensus

    def fit(self, vectors: Sequence[np.ndarray]) -> ClusteringResult:
        X = _as_matrix(vectors)
        adjacency = similarity_graph(cluster_distance_matrix(X, self.metric))

        agreement = None
        if self.consensus:
            agreement = agreement_matrix(adjacency, seed=self.seed)
            labels = labels_from_agreement(agreement)
        else:
            labels = louvain_partition(adjacency, self.resolution, np.random.default_rng(self.seed))
            labels = refine_partition(adjacency, labels)

        k = int(labels.max()) + 1
        centroids = np.vstack([X[labels == c].mean(axis=0) for c in range(k)])
        inertia = float(sum(compute_distance(x, centroids[c], self.metric) ** 2 for x, c in zip(X, labels)))
        method = "agreement" if self.consensus else "louvain"
        logger.info(f"{method}: {X.shape[0]} vectors -> {k} communities")
        return ClusteringResult(
            labels=labels,
            centroids=centroids,
            iterations=1,
            inertia=inertia,
            converged=True,
            agreement=agreement,
        )


def _first_appearance(labels: np.ndarray) -> np.ndarray:
    mapping: Dict[int, int] = {}
    return np.array([mapping.setdefault(int(c), len(mapping)) for c in labels], dtype=int)
