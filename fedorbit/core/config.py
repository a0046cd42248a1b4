"""
Server Configuration
====================
Immutable server configuration with one parameter variant per client
aggregation strategy ("none", "50-50", "gravity"), validated at construction.

The wire format (experiment files, CLI config files, UI patches) uses the
camelCase keys of the experiment file; ``apply_config`` merges a patch into
an existing config and re-validates the result.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from fedorbit.core.distance import DistanceMetric
from fedorbit.core.exceptions import ConfigError


MAX_CLUSTERS = 10

CLUSTERING_METHODS = ("kmeans", "louvain", "agreement")


# ============================================================================
# STRATEGY PARAMETER VARIANTS
# ============================================================================

@dataclass(frozen=True)
class DynamicReassignment:
    """Move `dynamic_client` into the group of `receiver_client` from `change_round` on."""
    dynamic_client: str
    receiver_client: str
    change_round: int

    def __post_init__(self):
        if not self.dynamic_client or not self.receiver_client:
            raise ConfigError("dynamicClient and receiverClient must be non-empty client ids.")
        if self.dynamic_client == self.receiver_client:
            raise ConfigError("dynamicClient and receiverClient must differ.")
        if int(self.change_round) < 0:
            raise ConfigError(f"changeRound must be >= 0, got {self.change_round}.")

    def is_active(self, round_num: int) -> bool:
        return round_num >= self.change_round

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dynamicData": True,
            "dynamicClient": self.dynamic_client,
            "receiverClient": self.receiver_client,
            "changeRound": self.change_round,
        }


@dataclass(frozen=True)
class NoneParams:
    """Plain aggregation; no client-level hyperparameters."""
    method = "none"
    section = None

    def to_dict(self) -> Dict[str, Any]:
        return {}


@dataclass(frozen=True)
class FiftyFiftyParams:
    """
    Two fixed client groups blended 0.5/0.5.

    Clients not listed in either group belong to group B. When both lists are
    empty the sorted participant ids are split in half.
    """
    group_a: Tuple[str, ...] = ()
    group_b: Tuple[str, ...] = ()
    dynamic: Optional[DynamicReassignment] = None
    method = "50-50"
    section = "fiftyFifty"

    def __post_init__(self):
        object.__setattr__(self, "group_a", tuple(self.group_a))
        object.__setattr__(self, "group_b", tuple(self.group_b))
        overlap = set(self.group_a) & set(self.group_b)
        if overlap:
            raise ConfigError(f"Clients {sorted(overlap)} are listed in both 50-50 groups.")

    def to_dict(self) -> Dict[str, Any]:
        data = {"groupA": list(self.group_a), "groupB": list(self.group_b), "dynamicData": False}
        if self.dynamic is not None:
            data.update(self.dynamic.to_dict())
        return data


@dataclass(frozen=True)
class GravityParams:
    """Masses and gravitation constant for gravity aggregation over clusters."""
    gravitation_constant: float = 9.8
    cluster_weight: float = 1e4
    client_weight: float = 10.0
    dynamic: Optional[DynamicReassignment] = None
    method = "gravity"
    section = "gravity"

    def __post_init__(self):
        if self.gravitation_constant <= 0:
            raise ConfigError("gravitationConstant must be > 0.")
        if self.cluster_weight < 0 or self.client_weight < 0:
            raise ConfigError("clusterWeight and clientWeight must be >= 0.")
        if self.cluster_weight + self.client_weight <= 0:
            raise ConfigError("clusterWeight and clientWeight cannot both be 0.")

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "gravitationConstant": self.gravitation_constant,
            "clusterWeight": self.cluster_weight,
            "clientWeight": self.client_weight,
            "dynamicData": False,
        }
        if self.dynamic is not None:
            data.update(self.dynamic.to_dict())
        return data


StrategyParams = Union[NoneParams, FiftyFiftyParams, GravityParams]

_VARIANTS = {cls.method: cls for cls in (NoneParams, FiftyFiftyParams, GravityParams)}


@dataclass(frozen=True)
class KMeansParams:
    """K-means hyperparameters. `num_clusters=None` selects k automatically."""
    num_clusters: Optional[int] = None
    max_iterations: int = 100
    seed: int = 42
    elbow_threshold: float = 0.2

    def __post_init__(self):
        if self.num_clusters is not None and not 1 <= self.num_clusters <= MAX_CLUSTERS:
            raise ConfigError(f"numClusters must be in 1..{MAX_CLUSTERS}, got {self.num_clusters}.")
        if self.max_iterations < 1:
            raise ConfigError("maxIterations must be >= 1.")
        if not 0 < self.elbow_threshold < 1:
            raise ConfigError("elbowThreshold must be in (0, 1).")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "numClusters": self.num_clusters,
            "maxIterations": self.max_iterations,
            "seed": self.seed,
            "elbowThreshold": self.elbow_threshold,
        }


# ============================================================================
# SERVER CONFIG
# ============================================================================

@dataclass(frozen=True)
class ServerConfig:
    """
    Configuration for one simulation run.

    Attributes:
        aggregation_method: Server aggregation rule used when no client
            strategy is set ("fedavg", "fedprox", "simple", "median"); any
            other label falls back to FedAvg. "clustered" also enables
            clustering and per-cluster metrics.
        strategy: Client aggregation variant; its type is the strategy tag.
        distance_metric: Metric used by clustering, gravity and comparisons.
        kmeans: K-means hyperparameters (required when clustering runs with
            clustering_method "kmeans").
        clustering_method: "kmeans", "louvain" or "agreement" (consensus of
            Louvain runs across resolutions).
    """
    aggregation_method: str = "fedavg"
    strategy: StrategyParams = field(default_factory=NoneParams)
    distance_metric: DistanceMetric = DistanceMetric.COSINE
    kmeans: Optional[KMeansParams] = None
    seed: int = 42
    clients_per_round: Optional[int] = None
    min_clients_required: int = 1
    total_rounds: int = 10
    clustering_method: str = "kmeans"

    def __post_init__(self):
        try:
            object.__setattr__(self, "distance_metric", DistanceMetric.parse(self.distance_metric))
        except ValueError as e:
            raise ConfigError(str(e)) from None
        if not isinstance(self.aggregation_method, str) or not self.aggregation_method:
            raise ConfigError("aggregationMethod must be a non-empty string.")
        if not isinstance(self.strategy, tuple(_VARIANTS.values())):
            raise ConfigError(f"Unsupported strategy parameters: {self.strategy!r}")
        if self.clustering_method not in CLUSTERING_METHODS:
            raise ConfigError(
                f"Unknown clusteringMethod: {self.clustering_method}. Available: {list(CLUSTERING_METHODS)}"
            )
        if self.needs_clustering and self.clustering_method == "kmeans" and self.kmeans is None:
            raise ConfigError(
                f"clientAggregationMethod '{self.client_aggregation_method}' with aggregationMethod "
                f"'{self.aggregation_method}' requires kmeans hyperparameters."
            )
        if self.clients_per_round is not None and self.clients_per_round < 1:
            raise ConfigError("clientsPerRound must be >= 1.")
        if self.min_clients_required < 0:
            raise ConfigError("minClientsRequired must be >= 0.")
        if self.total_rounds < 0:
            raise ConfigError("totalRounds must be >= 0.")

    @property
    def client_aggregation_method(self) -> str:
        return self.strategy.method

    @property
    def needs_clustering(self) -> bool:
        return self.client_aggregation_method == "gravity" or self.aggregation_method == "clustered"

    @property
    def dynamic(self) -> Optional[DynamicReassignment]:
        return getattr(self.strategy, "dynamic", None)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "aggregationMethod": self.aggregation_method,
            "clientAggregationMethod": self.client_aggregation_method,
            "distanceMetric": self.distance_metric.value,
            "kmeans": self.kmeans.to_dict() if self.kmeans is not None else None,
            "clusteringMethod": self.clustering_method,
            "seed": self.seed,
            "clientsPerRound": self.clients_per_round,
            "minClientsRequired": self.min_clients_required,
            "totalRounds": self.total_rounds,
        }
        if self.strategy.section is not None:
            data[self.strategy.section] = self.strategy.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ServerConfig":
        """
        Build a validated config from its wire form.

        Raises:
            ConfigError: on unknown keys, unknown enum values or invalid
                combinations.
        """
        if not isinstance(data, Mapping):
            raise ConfigError("serverConfig must be an object.")
        unknown = set(data) - _TOP_LEVEL_KEYS
        if unknown:
            raise ConfigError(f"Unknown serverConfig keys: {sorted(unknown)}")

        method = data.get("clientAggregationMethod", "none")
        if method not in _VARIANTS:
            raise ConfigError(
                f"Unknown clientAggregationMethod: {method}. Available: {list(_VARIANTS)}"
            )
        variant = _VARIANTS[method]
        section = data.get(variant.section, {}) if variant.section else {}
        strategy = _parse_strategy(variant, section or {})

        kmeans_data = data.get("kmeans")
        kmeans = _parse_kmeans(kmeans_data) if kmeans_data is not None else None

        return cls(
            aggregation_method=data.get("aggregationMethod", "fedavg"),
            strategy=strategy,
            distance_metric=data.get("distanceMetric", "cosine"),
            kmeans=kmeans,
            seed=_as_int(data.get("seed", 42), "seed"),
            clients_per_round=_optional_int(data.get("clientsPerRound"), "clientsPerRound"),
            min_clients_required=_as_int(data.get("minClientsRequired", 1), "minClientsRequired"),
            total_rounds=_as_int(data.get("totalRounds", 10), "totalRounds"),
            clustering_method=data.get("clusteringMethod", "kmeans"),
        )


_TOP_LEVEL_KEYS = {
    "aggregationMethod", "clientAggregationMethod", "distanceMetric", "kmeans", "clusteringMethod", "seed",
    "clientsPerRound", "minClientsRequired", "totalRounds", "fiftyFifty", "gravity",
}

_SECTION_KEYS = {"fiftyFifty", "gravity", "kmeans"}


def apply_config(current: ServerConfig, patch: Mapping[str, Any]) -> ServerConfig:
    """
    Return a new config with `patch` merged into `current`.

    Nested sections (fiftyFifty, gravity, kmeans) merge key by key; every
    other key replaces the current value. The input config is not modified.

    Raises:
        ConfigError: if the merged config is invalid.
    """
    merged = current.to_dict()
    for key, value in patch.items():
        if key in _SECTION_KEYS and isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return ServerConfig.from_dict(merged)


# ============================================================================
# PARSING HELPERS
# ============================================================================

def _as_int(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or int(value) != value:
        raise ConfigError(f"{name} must be an integer, got {value!r}.")
    return int(value)


def _optional_int(value: Any, name: str) -> Optional[int]:
    return None if value is None else _as_int(value, name)


def _as_float(value: Any, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{name} must be a number, got {value!r}.")
    return float(value)


def _parse_dynamic(section: Mapping[str, Any]) -> Optional[DynamicReassignment]:
    if not section.get("dynamicData"):
        return None
    for key in ("dynamicClient", "receiverClient", "changeRound"):
        if section.get(key) is None:
            raise ConfigError(f"dynamicData is set but {key} is missing.")
    return DynamicReassignment(
        dynamic_client=str(section["dynamicClient"]),
        receiver_client=str(section["receiverClient"]),
        change_round=_as_int(section["changeRound"], "changeRound"),
    )


def _parse_strategy(variant: type, section: Mapping[str, Any]) -> StrategyParams:
    if not isinstance(section, Mapping):
        raise ConfigError(f"{variant.section} must be an object.")
    if variant is FiftyFiftyParams:
        return FiftyFiftyParams(
            group_a=tuple(str(c) for c in section.get("groupA", ())),
            group_b=tuple(str(c) for c in section.get("groupB", ())),
            dynamic=_parse_dynamic(section),
        )
    if variant is GravityParams:
        return GravityParams(
            gravitation_constant=_as_float(section.get("gravitationConstant", 9.8), "gravitationConstant"),
            cluster_weight=_as_float(section.get("clusterWeight", 1e4), "clusterWeight"),
            client_weight=_as_float(section.get("clientWeight", 10.0), "clientWeight"),
            dynamic=_parse_dynamic(section),
        )
    return NoneParams()


def _parse_kmeans(section: Any) -> KMeansParams:
    if not isinstance(section, Mapping):
        raise ConfigError("kmeans must be an object or null.")
    return KMeansParams(
        num_clusters=_optional_int(section.get("numClusters"), "numClusters"),
        max_iterations=_as_int(section.get("maxIterations", 100), "maxIterations"),
        seed=_as_int(section.get("seed", 42), "seed"),
        elbow_threshold=_as_float(section.get("elbowThreshold", 0.2), "elbowThreshold"),
    )
