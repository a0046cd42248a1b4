import pytest

from fedorbit.core.config import (
    DynamicReassignment,
    FiftyFiftyParams,
    GravityParams,
    KMeansParams,
    NoneParams,
    ServerConfig,
    apply_config,
)
from fedorbit.core.distance import DistanceMetric
from fedorbit.core.exceptions import ConfigError


def test_defaults():
    config = ServerConfig()

    assert config.client_aggregation_method == "none"
    assert isinstance(config.strategy, NoneParams)
    assert config.distance_metric is DistanceMetric.COSINE
    assert config.seed == 42
    assert not config.needs_clustering


def test_wire_round_trip_with_dynamic_gravity():
    config = ServerConfig(
        aggregation_method="clustered",
        strategy=GravityParams(
            gravitation_constant=3.0,
            dynamic=DynamicReassignment(dynamic_client="client_1", receiver_client="client_4", change_round=5),
        ),
        distance_metric="l1",
        kmeans=KMeansParams(num_clusters=3, max_iterations=50, seed=7),
        clients_per_round=4,
        total_rounds=20,
    )

    data = config.to_dict()

    assert data["clientAggregationMethod"] == "gravity"
    assert data["gravity"]["dynamicClient"] == "client_1"
    assert ServerConfig.from_dict(data) == config


def test_apply_config_is_pure():
    current = ServerConfig()

    updated = apply_config(current, {"distanceMetric": "l2", "totalRounds": 3})

    assert updated.distance_metric is DistanceMetric.L2
    assert updated.total_rounds == 3
    assert current.distance_metric is DistanceMetric.COSINE


def test_switch_to_gravity_requires_kmeans():
    with pytest.raises(ConfigError, match="kmeans"):
        apply_config(ServerConfig(), {"clientAggregationMethod": "gravity"})

    config = apply_config(ServerConfig(), {"clientAggregationMethod": "gravity", "kmeans": {"numClusters": 3}})
    assert config.strategy == GravityParams()
    assert config.kmeans.num_clusters == 3


def test_clustered_label_requires_kmeans():
    with pytest.raises(ConfigError):
        ServerConfig(aggregation_method="clustered")


def test_graph_clustering_needs_no_kmeans():
    config = apply_config(ServerConfig(), {"clientAggregationMethod": "gravity", "clusteringMethod": "louvain"})

    assert config.kmeans is None
    assert config.to_dict()["clusteringMethod"] == "louvain"
    assert ServerConfig.from_dict(config.to_dict()) == config


def test_nested_sections_merge_key_by_key():
    config = ServerConfig(strategy=GravityParams(gravitation_constant=2.0), kmeans=KMeansParams())

    updated = apply_config(config, {"gravity": {"clusterWeight": 5}})

    assert updated.strategy.cluster_weight == 5.0
    assert updated.strategy.gravitation_constant == 2.0


def test_fifty_fifty_section():
    config = apply_config(ServerConfig(), {
        "clientAggregationMethod": "50-50",
        "fiftyFifty": {
            "groupA": ["C1"], "groupB": ["C2", "C3"],
            "dynamicData": True, "dynamicClient": "C1", "receiverClient": "C3", "changeRound": 5,
        },
    })

    assert config.strategy == FiftyFiftyParams(
        group_a=("C1",), group_b=("C2", "C3"),
        dynamic=DynamicReassignment("C1", "C3", 5),
    )


@pytest.mark.parametrize("patch", [
    {"unknownKey": 1},
    {"clientAggregationMethod": "fedyogi"},
    {"distanceMetric": "manhattan"},
    {"kmeans": {"numClusters": 11}},
    {"totalRounds": "ten"},
    {"clusteringMethod": "spectral"},
    {"clientAggregationMethod": "50-50", "fiftyFifty": {"groupA": ["C1"], "groupB": ["C1"]}},
    {"clientAggregationMethod": "50-50", "fiftyFifty": {"dynamicData": True, "dynamicClient": "C1"}},
])
def test_invalid_patches_raise(patch):
    with pytest.raises(ConfigError):
        apply_config(ServerConfig(kmeans=KMeansParams()), patch)


def test_gravity_parameter_validation():
    with pytest.raises(ConfigError):
        GravityParams(gravitation_constant=0)
    with pytest.raises(ConfigError):
        GravityParams(cluster_weight=0, client_weight=0)


def test_reassignment_is_active_from_change_round():
    dynamic = DynamicReassignment("C1", "C4", 5)

    assert not dynamic.is_active(4)
    assert dynamic.is_active(5)
    assert dynamic.is_active(12)
