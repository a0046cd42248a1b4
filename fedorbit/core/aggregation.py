"""
Aggregation Strategies
======================
Server-side aggregation of client models into the next global model.

Every strategy here is a convex combination of the client models: it computes
one coefficient per client and the base class applies them tensor by tensor.
Inputs are canonicalized by client id first, so results do not depend on the
order in which client updates arrived.

Server rules: FedAvg (also under the FedProx label), simple mean and
coordinate-wise median. Client strategies: 50/50 group blending (with
dynamic reassignment) and Gravity weighting over client clusters. The median
is the one rule that is not a convex combination; it overrides ``combine``.
"""

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from fedorbit.core.clustering import (
    ClusteringResult,
    CommunityClustering,
    KMeansClustering,
    cluster_distance_matrix,
    silhouette,
)
from fedorbit.core.config import (
    DynamicReassignment,
    FiftyFiftyParams,
    GravityParams,
    ServerConfig,
)
from fedorbit.core.distance import DistanceMetric, compute_distance
from fedorbit.core.exceptions import NoParticipants
from fedorbit.core.types import ClusterMetrics
from fedorbit.core.weights import ModelWeights, coordinate_median, flatten_weights, weighted_average

logger = logging.getLogger("FLAggregation")

# Floor on the cluster-to-global distance in the gravity law
GRAVITY_EPSILON = 1e-6


@dataclass
class ClientUpdate:
    """Model and metadata returned by one completed client."""
    client_id: str
    weights: ModelWeights
    data_size: int
    accuracy: float = 0.0


@dataclass
class AggregationResult:
    """
    Output of one aggregation step.

    Attributes:
        weights: New global model (version = previous version + 1).
        coefficients: Effective weight of each client in the new model.
        clusters: Client ids per cluster, when clustering ran.
        distance_matrix: Pairwise client distances in canonical id order.
        agreement_matrix: Louvain co-assignment counts (agreement clustering).
    """
    weights: ModelWeights
    coefficients: Dict[str, float] = field(default_factory=dict)
    cluster_metrics: Optional[List[ClusterMetrics]] = None
    clustering: Optional[ClusteringResult] = None
    clusters: Optional[List[List[str]]] = None
    distance_matrix: Optional[np.ndarray] = None
    silhouette: Optional[float] = None
    agreement_matrix: Optional[np.ndarray] = None


def canonical_order(updates: Sequence[ClientUpdate]) -> List[ClientUpdate]:
    return sorted(updates, key=lambda u: u.client_id)


def uniform_coefficients(updates: Sequence[ClientUpdate]) -> Dict[str, float]:
    return {u.client_id: 1.0 / len(updates) for u in updates}


def fedavg_coefficients(updates: Sequence[ClientUpdate]) -> Dict[str, float]:
    """n_k / n, falling back to uniform weights when no client reports data."""
    total = sum(u.data_size for u in updates)
    if total <= 0:
        return uniform_coefficients(updates)
    return {u.client_id: u.data_size / total for u in updates}


def apply_reassignment(clusters: List[List[str]],
                       dynamic: DynamicReassignment) -> List[List[str]]:
    """
    Move the dynamic client into the receiver's cluster.

    A no-op when either client is absent. Clusters left empty are dropped.
    """
    target = next((i for i, members in enumerate(clusters) if dynamic.receiver_client in members), None)
    source = next((i for i, members in enumerate(clusters) if dynamic.dynamic_client in members), None)
    if target is None or source is None or target == source:
        return [list(members) for members in clusters]

    moved = []
    for i, members in enumerate(clusters):
        members = [c for c in members if c != dynamic.dynamic_client]
        if i == target:
            members = sorted(members + [dynamic.dynamic_client])
        moved.append(members)
    return [members for members in moved if members]


# ============================================================================
# ABSTRACT BASE CLASS (Strategy Pattern)
# ============================================================================

class AggregationStrategy(ABC):
    """
    Abstract base class for aggregation strategies.

    Subclasses implement ``compute_coefficients``; ``aggregate`` handles
    canonical ordering, the empty-input check and versioning.
    """

    requires_clustering = False
    # Selectable through aggregationMethod; client strategies need their own parameters
    server_rule = True

    @abstractmethod
    def compute_coefficients(self,
                             updates: List[ClientUpdate],
                             global_weights: ModelWeights,
                             round_num: int,
                             clusters: Optional[List[List[str]]] = None) -> Dict[str, float]:
        """
        Compute the weight of each client in the new global model.

        Args:
            updates: Client updates sorted by client id.
            global_weights: Current global model.
            round_num: 0-based index of the round being aggregated.
            clusters: Client ids per cluster, for cluster-aware strategies.

        Returns:
            Dict mapping client_id to a coefficient; coefficients sum to 1.
        """
        pass

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the name of this strategy."""
        pass

    def combine(self,
                ordered: List[ClientUpdate],
                coefficients: Dict[str, float],
                version: int) -> ModelWeights:
        """Build the new global model from the canonically ordered updates."""
        return weighted_average(
            [u.weights for u in ordered],
            [coefficients[u.client_id] for u in ordered],
            version=version,
        )

    def aggregate(self,
                  updates: Sequence[ClientUpdate],
                  global_weights: ModelWeights,
                  round_num: int = 0,
                  clusters: Optional[List[List[str]]] = None) -> Tuple[ModelWeights, Dict[str, float]]:
        """
        Combine client models into the next global model.

        Raises:
            NoParticipants: if `updates` is empty.
        """
        if not updates:
            raise NoParticipants(round_num)
        ordered = canonical_order(updates)
        coefficients = self.compute_coefficients(ordered, global_weights, round_num, clusters)
        new_weights = self.combine(ordered, coefficients, global_weights.version + 1)
        return new_weights, coefficients


# ============================================================================
# STRATEGY REGISTRY (Factory Pattern)
# ============================================================================

class StrategyRegistry:
    """
    Aggregation strategies by name.

    Server rules are looked up by aggregationMethod; the client strategies
    ("50-50", "gravity") by clientAggregationMethod. Classes join with
    ``@StrategyRegistry.register(name, ...)``.
    """

    _strategies: Dict[str, type] = {}

    @classmethod
    def register(cls, *names: str):
        """Class decorator adding a strategy under one or more names."""
        def decorator(strategy_class: type) -> type:
            for name in names:
                cls._strategies[name.lower()] = strategy_class
            return strategy_class
        return decorator

    @classmethod
    def get(cls, name: str, **kwargs) -> AggregationStrategy:
        """Instantiate a registered strategy."""
        strategy_class = cls._strategies.get(name.lower())
        if strategy_class is None:
            raise ValueError(f"Unknown strategy: {name}. Available: {cls.names()}")
        return strategy_class(**kwargs)

    @classmethod
    def names(cls) -> List[str]:
        return sorted(cls._strategies)

    @classmethod
    def for_config(cls, config: ServerConfig) -> AggregationStrategy:
        """
        Strategy producing the global model for `config`.

        A client strategy other than "none" wins. Otherwise aggregationMethod
        names the server rule; labels that are not registered server rules
        ("clustered", free-form experiment names) fall back to FedAvg.
        """
        method = config.client_aggregation_method
        if method == "50-50":
            return cls.get(method, params=config.strategy)
        if method == "gravity":
            return cls.get(method, params=config.strategy, metric=config.distance_metric)

        strategy_class = cls._strategies.get(config.aggregation_method.lower())
        if strategy_class is None or not strategy_class.server_rule:
            if config.aggregation_method != "clustered":
                logger.debug(f"aggregationMethod '{config.aggregation_method}' is not a server rule; using FedAvg")
            return FedAvgStrategy()
        return strategy_class()


# ============================================================================
# SERVER RULES: FEDAVG, SIMPLE MEAN, MEDIAN
# ============================================================================

@StrategyRegistry.register("none", "fedavg", "fedprox")
class FedAvgStrategy(AggregationStrategy):
    """
    Federated Averaging (FedAvg) - McMahan et al., 2017

    w_{t+1} = Σ_k (n_k/n) * w_k^{t+1}

    FedProx differs only in the client objective, so on the server it
    aggregates exactly like FedAvg.
    """

    @property
    def name(self) -> str:
        return "FedAvg"

    def compute_coefficients(self, updates, global_weights, round_num, clusters=None):
        return fedavg_coefficients(updates)


@StrategyRegistry.register("simple")
class SimpleAverageStrategy(AggregationStrategy):
    """Unweighted mean of the client models; data sizes are ignored."""

    @property
    def name(self) -> str:
        return "Simple"

    def compute_coefficients(self, updates, global_weights, round_num, clusters=None):
        return uniform_coefficients(updates)


@StrategyRegistry.register("median")
class MedianStrategy(AggregationStrategy):
    """
    Coordinate-wise median of the client models.

    Every parameter is the median of that parameter across clients, the mean
    of the two middle values for an even count. A minority of outlying
    clients cannot drag the result. Reported coefficients are the uniform
    1/n; they describe participation, not the combination.
    """

    @property
    def name(self) -> str:
        return "Median"

    def compute_coefficients(self, updates, global_weights, round_num, clusters=None):
        return uniform_coefficients(updates)

    def combine(self, ordered, coefficients, version):
        return coordinate_median([u.weights for u in ordered], version=version)


# ============================================================================
# 50/50 GROUP BLENDING
# ============================================================================

@StrategyRegistry.register("50-50")
class FiftyFiftyStrategy(AggregationStrategy):
    """
    Blend two client groups equally: 0.5 * mean(A) + 0.5 * mean(B).

    Group means are unweighted. If one group has no completed clients the
    other group's mean is the result. With dynamic reassignment enabled, from
    ``change_round`` on the dynamic client joins the receiver's group.
    """

    server_rule = False

    def __init__(self, params: Optional[FiftyFiftyParams] = None):
        self.params = params or FiftyFiftyParams()

    @property
    def name(self) -> str:
        return "50-50"

    @property
    def configured(self) -> bool:
        return bool(self.params.group_a or self.params.group_b)

    def groups(self, client_ids: Sequence[str], round_num: int) -> Tuple[List[str], List[str]]:
        """
        Split participating ids into (group A, group B) for this round.

        With configured groups the receiver's side comes from the config, so
        the dynamic client follows it even in rounds the receiver misses.
        With the automatic half split, an absent receiver leaves the dynamic
        client where the split put it.
        """
        ids = sorted(client_ids)
        if self.configured:
            in_a = {c for c in ids if c in self.params.group_a}
        else:
            half = (len(ids) + 1) // 2
            in_a = set(ids[:half])

        dynamic = self.params.dynamic
        if dynamic is not None and dynamic.is_active(round_num) and dynamic.dynamic_client in ids:
            if self.configured:
                receiver_in_a = dynamic.receiver_client in self.params.group_a
            elif dynamic.receiver_client in ids:
                receiver_in_a = dynamic.receiver_client in in_a
            else:
                receiver_in_a = dynamic.dynamic_client in in_a
            if receiver_in_a:
                in_a.add(dynamic.dynamic_client)
            else:
                in_a.discard(dynamic.dynamic_client)

        group_a = [c for c in ids if c in in_a]
        group_b = [c for c in ids if c not in in_a]
        return group_a, group_b

    def compute_coefficients(self, updates, global_weights, round_num, clusters=None):
        group_a, group_b = self.groups([u.client_id for u in updates], round_num)
        non_empty = [g for g in (group_a, group_b) if g]
        share = 1.0 / len(non_empty)

        coefficients = {}
        for group in non_empty:
            for client_id in group:
                coefficients[client_id] = share / len(group)
        logger.debug(f"50-50 round {round_num}: A={group_a} B={group_b}")
        return coefficients


# ============================================================================
# GRAVITY AGGREGATION
# ============================================================================

@StrategyRegistry.register("gravity")
class GravityStrategy(AggregationStrategy):
    """
    Gravity aggregation over client clusters.

    Each cluster model (data-weighted mean of its members) pulls on the current
    global model with force F_k = G * m_k * m_g / max(d_k, ε)^2, where
    m_k = clusterWeight + clientWeight * |members_k| and
    m_g = clusterWeight + clientWeight * N. The new global model is the
    force-weighted mean of the cluster models. A single cluster reduces to
    FedAvg.
    """

    requires_clustering = True
    server_rule = False

    def __init__(self,
                 params: Optional[GravityParams] = None,
                 metric: DistanceMetric = DistanceMetric.COSINE):
        self.params = params or GravityParams()
        self.metric = DistanceMetric.parse(metric)

    @property
    def name(self) -> str:
        return "Gravity"

    def attractions(self,
                    updates: List[ClientUpdate],
                    global_weights: ModelWeights,
                    clusters: List[List[str]]) -> List[float]:
        """Gravitational pull of each cluster model on the global model."""
        by_id = {u.client_id: u for u in updates}
        global_vec = flatten_weights(global_weights)
        global_mass = self.params.cluster_weight + self.params.client_weight * len(updates)

        forces = []
        for members in clusters:
            member_updates = [by_id[c] for c in members]
            inner = fedavg_coefficients(member_updates)
            cluster_vec = sum(inner[u.client_id] * flatten_weights(u.weights) for u in member_updates)
            mass = self.params.cluster_weight + self.params.client_weight * len(members)
            d = max(compute_distance(cluster_vec, global_vec, self.metric), GRAVITY_EPSILON)
            forces.append(self.params.gravitation_constant * mass * global_mass / d ** 2)
        return forces

    def compute_coefficients(self, updates, global_weights, round_num, clusters=None):
        ids = {u.client_id for u in updates}
        if clusters:
            clusters = sorted(sorted(c for c in members if c in ids) for members in clusters)
            clusters = [members for members in clusters if members]
        if not clusters:
            clusters = [sorted(ids)]
        if len(clusters) == 1:
            return fedavg_coefficients(updates)

        forces = self.attractions(updates, global_weights, clusters)
        total_force = math.fsum(forces)
        by_id = {u.client_id: u for u in updates}

        coefficients = {}
        for members, force in zip(clusters, forces):
            inner = fedavg_coefficients([by_id[c] for c in members])
            for client_id in members:
                coefficients[client_id] = (force / total_force) * inner[client_id]
        logger.debug(f"Gravity round {round_num}: forces={[round(f, 4) for f in forces]}")
        return coefficients


# ============================================================================
# AGGREGATION ENGINE
# ============================================================================

class AggregationEngine:
    """
    Runs clustering (when the config asks for it) and the configured strategy.

    Clustering runs for gravity aggregation and whenever aggregationMethod is
    "clustered"; in the latter case it only feeds cluster metrics and the
    global model comes from FedAvg. clusteringMethod picks k-means, Louvain
    or agreement clustering.
    """

    def __init__(self, config: ServerConfig):
        self.config = config
        self.strategy = StrategyRegistry.for_config(config)

    def aggregate(self,
                  updates: Sequence[ClientUpdate],
                  global_weights: ModelWeights,
                  round_num: int) -> AggregationResult:
        """
        Aggregate one round of client updates.

        Raises:
            NoParticipants: if no client completed the round.
        """
        if not updates:
            raise NoParticipants(round_num)
        ordered = canonical_order(updates)

        result = AggregationResult(weights=global_weights)
        if self.config.needs_clustering:
            self._cluster(ordered, round_num, result)

        result.weights, result.coefficients = self.strategy.aggregate(
            ordered, global_weights, round_num, result.clusters
        )
        logger.info(
            f"Round {round_num}: {self.strategy.name} over {len(ordered)} clients -> "
            f"version {result.weights.version}"
        )
        return result

    def _fit_clusters(self, vectors: List[np.ndarray]) -> ClusteringResult:
        method = self.config.clustering_method
        metric = self.config.distance_metric
        if method == "kmeans":
            kmeans = self.config.kmeans
            return KMeansClustering(
                num_clusters=kmeans.num_clusters,
                metric=metric,
                max_iterations=kmeans.max_iterations,
                seed=kmeans.seed,
                elbow_threshold=kmeans.elbow_threshold,
            ).fit(vectors)
        return CommunityClustering(
            metric=metric, seed=self.config.seed, consensus=(method == "agreement")
        ).fit(vectors)

    def _cluster(self, ordered: List[ClientUpdate], round_num: int, result: AggregationResult):
        metric = self.config.distance_metric
        vectors = [flatten_weights(u.weights) for u in ordered]
        clustering = self._fit_clusters(vectors)

        clusters = [[ordered[i].client_id for i in members] for members in clustering.members()]
        clusters = [members for members in clusters if members]
        dynamic = self.config.dynamic
        if (self.config.client_aggregation_method == "gravity"
                and dynamic is not None and dynamic.is_active(round_num)):
            clusters = apply_reassignment(clusters, dynamic)

        index = {u.client_id: i for i, u in enumerate(ordered)}
        labels = np.zeros(len(ordered), dtype=int)
        for cluster_id, members in enumerate(clusters):
            for client_id in members:
                labels[index[client_id]] = cluster_id

        distance_matrix = cluster_distance_matrix(vectors, metric)
        by_id = {u.client_id: u for u in ordered}
        cluster_metrics = []
        for cluster_id, members in enumerate(clusters):
            inner = fedavg_coefficients([by_id[c] for c in members])
            accuracy = math.fsum(inner[c] * by_id[c].accuracy for c in members)
            cluster_metrics.append(ClusterMetrics(
                cluster_id=cluster_id,
                accuracy=accuracy,
                client_ids=list(members),
                approximate=not clustering.converged,
            ))

        result.clustering = clustering
        result.clusters = clusters
        result.distance_matrix = distance_matrix
        result.silhouette = silhouette(distance_matrix, labels)
        result.cluster_metrics = cluster_metrics
        result.agreement_matrix = clustering.agreement
