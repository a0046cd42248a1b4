import random

import numpy as np
import pytest

from fedorbit.core.aggregation import (
    AggregationEngine,
    FedAvgStrategy,
    FiftyFiftyStrategy,
    GravityStrategy,
    MedianStrategy,
    SimpleAverageStrategy,
    StrategyRegistry,
    apply_reassignment,
)
from fedorbit.core.config import (
    DynamicReassignment,
    FiftyFiftyParams,
    GravityParams,
    KMeansParams,
    ServerConfig,
)
from fedorbit.core.exceptions import NoParticipants
from fedorbit.core.weights import flatten_weights


# ============================================================================
# FEDAVG
# ============================================================================

def test_fedavg_weights_by_data_size(make_update, make_weights):
    updates = [
        make_update("C1", 1.0, data_size=100),
        make_update("C2", 2.0, data_size=200),
        make_update("C3", 3.0, data_size=700),
    ]
    global_weights = make_weights(0.0, version=3)

    new_weights, coefficients = FedAvgStrategy().aggregate(updates, global_weights)

    assert coefficients["C3"] == pytest.approx(0.7)
    assert sum(coefficients.values()) == pytest.approx(1.0)
    np.testing.assert_allclose(flatten_weights(new_weights), 0.1 * 1 + 0.2 * 2 + 0.7 * 3)
    assert new_weights.version == 4


def test_fedavg_single_client_is_identity(make_update, make_weights):
    update = make_update("C1", np.linspace(-1, 1, 9), data_size=42)

    new_weights, _ = FedAvgStrategy().aggregate([update], make_weights(0.0))

    for name in update.weights:
        np.testing.assert_array_equal(new_weights[name], update.weights[name])


def test_no_participants_raises(make_weights):
    with pytest.raises(NoParticipants):
        FedAvgStrategy().aggregate([], make_weights(0.0), round_num=3)


# ============================================================================
# 50/50
# ============================================================================

def four_clients(make_update):
    return [make_update(f"C{i}", float(i), data_size=100 * i) for i in range(1, 5)]


def test_fifty_fifty_unequal_group_sizes(make_update, make_weights):
    strategy = FiftyFiftyStrategy(FiftyFiftyParams(group_a=("C1",), group_b=("C2", "C3", "C4")))

    new_weights, coefficients = strategy.aggregate(four_clients(make_update), make_weights(0.0))

    assert coefficients["C1"] == pytest.approx(0.5)
    assert coefficients["C2"] == pytest.approx(1 / 6)
    np.testing.assert_allclose(flatten_weights(new_weights), 0.5 * 1.0 + 0.5 * 3.0)


def test_fifty_fifty_unlisted_clients_join_group_b(make_update):
    strategy = FiftyFiftyStrategy(FiftyFiftyParams(group_a=("C1",)))

    assert strategy.groups(["C3", "C1", "C2"], round_num=0) == (["C1"], ["C2", "C3"])


def test_fifty_fifty_splits_sorted_ids_when_unconfigured():
    assert FiftyFiftyStrategy().groups(["C4", "C2", "C3", "C1"], 0) == (["C1", "C2"], ["C3", "C4"])


def test_fifty_fifty_empty_group_uses_other_mean(make_update, make_weights):
    strategy = FiftyFiftyStrategy(FiftyFiftyParams(group_a=("C9",)))

    new_weights, _ = strategy.aggregate(four_clients(make_update), make_weights(0.0))

    np.testing.assert_allclose(flatten_weights(new_weights), 2.5)


def test_dynamic_reassignment_from_change_round(make_update, make_weights):
    params = FiftyFiftyParams(
        group_a=("C1", "C2"),
        group_b=("C3", "C4"),
        dynamic=DynamicReassignment(dynamic_client="C1", receiver_client="C4", change_round=5),
    )
    strategy = FiftyFiftyStrategy(params)
    ids = ["C1", "C2", "C3", "C4"]

    assert strategy.groups(ids, 4) == (["C1", "C2"], ["C3", "C4"])
    assert strategy.groups(ids, 5) == (["C2"], ["C1", "C3", "C4"])
    assert strategy.groups(ids, 9) == (["C2"], ["C1", "C3", "C4"])

    new_weights, coefficients = strategy.aggregate(four_clients(make_update), make_weights(0.0), round_num=5)
    assert coefficients["C2"] == pytest.approx(0.5)
    assert coefficients["C1"] == pytest.approx(1 / 6)
    np.testing.assert_allclose(flatten_weights(new_weights), 0.5 * 2.0 + 0.5 * (1 + 3 + 4) / 3)


def test_dynamic_client_follows_configured_receiver_group_when_receiver_absent():
    params = FiftyFiftyParams(
        group_a=("C1", "C2", "C4"),
        group_b=("C3", "C5"),
        dynamic=DynamicReassignment(dynamic_client="C1", receiver_client="C4", change_round=5),
    )
    strategy = FiftyFiftyStrategy(params)

    assert strategy.groups(["C1", "C2", "C3", "C5"], 6) == (["C1", "C2"], ["C3", "C5"])


def test_dynamic_client_moves_to_absent_receiver_in_group_b():
    params = FiftyFiftyParams(
        group_a=("C1", "C2"),
        group_b=("C3", "C4"),
        dynamic=DynamicReassignment(dynamic_client="C1", receiver_client="C4", change_round=0),
    )

    assert FiftyFiftyStrategy(params).groups(["C1", "C2", "C3"], 1) == (["C2"], ["C1", "C3"])


def test_absent_dynamic_client_changes_nothing():
    params = FiftyFiftyParams(
        group_a=("C1", "C2"),
        group_b=("C3", "C4"),
        dynamic=DynamicReassignment(dynamic_client="C1", receiver_client="C4", change_round=0),
    )

    assert FiftyFiftyStrategy(params).groups(["C2", "C3", "C4"], 3) == (["C2"], ["C3", "C4"])


def test_half_split_shifts_with_participants():
    strategy = FiftyFiftyStrategy()

    assert strategy.groups(["C1", "C2", "C3", "C4"], 0) == (["C1", "C2"], ["C3", "C4"])
    # C2 failed: the odd count puts the extra client in group A
    assert strategy.groups(["C1", "C3", "C4"], 1) == (["C1", "C3"], ["C4"])


def test_half_split_dynamic_with_absent_receiver_keeps_split():
    params = FiftyFiftyParams(dynamic=DynamicReassignment(dynamic_client="C1", receiver_client="C4", change_round=0))
    strategy = FiftyFiftyStrategy(params)

    assert strategy.groups(["C1", "C2", "C3", "C4"], 0) == (["C2"], ["C1", "C3", "C4"])
    assert strategy.groups(["C1", "C2", "C3"], 0) == (["C1", "C2"], ["C3"])


# ============================================================================
# GRAVITY
# ============================================================================

def test_gravity_single_cluster_equals_fedavg(make_update, make_weights):
    updates = four_clients(make_update)
    global_weights = make_weights(0.5)

    gravity, _ = GravityStrategy(metric="l2").aggregate(
        updates, global_weights, clusters=[["C1", "C2", "C3", "C4"]]
    )
    fedavg, _ = FedAvgStrategy().aggregate(updates, global_weights)

    assert gravity == fedavg


def test_gravity_mass_splits_equidistant_clusters(make_update, make_weights):
    updates = [make_update("A1", 1.0)] + [make_update(f"B{i}", -1.0) for i in range(3)]
    strategy = GravityStrategy(GravityParams(cluster_weight=0.0, client_weight=1.0), metric="l2")

    new_weights, coefficients = strategy.aggregate(
        updates, make_weights(0.0), clusters=[["A1"], ["B0", "B1", "B2"]]
    )

    assert coefficients["A1"] == pytest.approx(0.25)
    np.testing.assert_allclose(flatten_weights(new_weights), 0.25 * 1.0 - 0.75 * 1.0)


def test_gravity_pulls_toward_nearest_cluster(make_update, make_weights):
    updates = [make_update("A1", 1.0), make_update("A2", 1.0), make_update("B1", 5.0)]

    new_weights, _ = GravityStrategy(metric="l2").aggregate(
        updates, make_weights(1.0), clusters=[["A1", "A2"], ["B1"]]
    )

    np.testing.assert_allclose(flatten_weights(new_weights), 1.0, atol=1e-9)


@pytest.mark.parametrize("strategy", [
    FiftyFiftyStrategy(FiftyFiftyParams(group_a=("C1", "C3"))),
    GravityStrategy(metric="cosine"),
])
def test_output_is_independent_of_input_order(strategy, make_update, make_weights):
    rng = np.random.default_rng(4)
    updates = [make_update(f"C{i}", rng.normal(size=9), data_size=50 + 10 * i) for i in range(1, 7)]
    clusters = [["C1", "C2", "C3"], ["C4", "C5", "C6"]]
    shuffled = list(updates)
    random.Random(1).shuffle(shuffled)
    global_weights = make_weights(0.1)

    first, _ = strategy.aggregate(updates, global_weights, 2, [list(c) for c in clusters])
    second, _ = strategy.aggregate(shuffled, global_weights, 2, [list(reversed(c)) for c in clusters])

    assert first == second


def test_apply_reassignment_moves_and_drops_empty():
    dynamic = DynamicReassignment(dynamic_client="C1", receiver_client="C3", change_round=0)

    assert apply_reassignment([["C1"], ["C2", "C3"]], dynamic) == [["C1", "C2", "C3"]]
    assert apply_reassignment([["C2"], ["C3"]], dynamic) == [["C2"], ["C3"]]


# ============================================================================
# ENGINE & REGISTRY
# ============================================================================

def clustered_updates(make_update):
    return [
        make_update("C1", 3.0, data_size=100, accuracy=0.9),
        make_update("C2", 3.1, data_size=300, accuracy=0.6),
        make_update("C3", -3.0, data_size=200, accuracy=0.4),
        make_update("C4", -3.1, data_size=200, accuracy=0.2),
    ]


def test_engine_gravity_clusters_and_reports_metrics(make_update, make_weights):
    config = ServerConfig(strategy=GravityParams(), distance_metric="l2", kmeans=KMeansParams(num_clusters=2))

    result = AggregationEngine(config).aggregate(clustered_updates(make_update), make_weights(0.0), round_num=0)

    assert {frozenset(c) for c in result.clusters} == {frozenset({"C1", "C2"}), frozenset({"C3", "C4"})}
    accuracies = {frozenset(m.client_ids): m.accuracy for m in result.cluster_metrics}
    assert accuracies[frozenset({"C1", "C2"})] == pytest.approx(0.25 * 0.9 + 0.75 * 0.6)
    assert accuracies[frozenset({"C3", "C4"})] == pytest.approx(0.3)
    assert result.distance_matrix.shape == (4, 4)
    assert result.silhouette > 0.9
    assert sum(result.coefficients.values()) == pytest.approx(1.0)


def test_engine_gravity_dynamic_reassignment(make_update, make_weights):
    config = ServerConfig(
        strategy=GravityParams(dynamic=DynamicReassignment("C1", "C3", change_round=2)),
        distance_metric="l2",
        kmeans=KMeansParams(num_clusters=2),
    )
    engine = AggregationEngine(config)

    before = engine.aggregate(clustered_updates(make_update), make_weights(0.0), round_num=1)
    after = engine.aggregate(clustered_updates(make_update), make_weights(0.0), round_num=2)

    assert {frozenset(c) for c in before.clusters} == {frozenset({"C1", "C2"}), frozenset({"C3", "C4"})}
    assert {frozenset(c) for c in after.clusters} == {frozenset({"C2"}), frozenset({"C1", "C3", "C4"})}


def test_engine_clustered_label_keeps_fedavg_global(make_update, make_weights):
    config = ServerConfig(aggregation_method="clustered", distance_metric="l2", kmeans=KMeansParams(num_clusters=2))
    updates = clustered_updates(make_update)

    result = AggregationEngine(config).aggregate(updates, make_weights(0.0), round_num=0)
    fedavg, _ = FedAvgStrategy().aggregate(updates, make_weights(0.0))

    assert result.cluster_metrics is not None
    assert result.weights == fedavg


def test_engine_plain_config_skips_clustering(make_update, make_weights):
    result = AggregationEngine(ServerConfig()).aggregate(clustered_updates(make_update), make_weights(0.0), 0)

    assert result.cluster_metrics is None
    assert result.clusters is None


def test_engine_without_updates_raises(make_weights):
    with pytest.raises(NoParticipants):
        AggregationEngine(ServerConfig()).aggregate([], make_weights(0.0), 0)


# ============================================================================
# SERVER RULES
# ============================================================================

def test_simple_average_ignores_data_size(make_update, make_weights):
    new_weights, coefficients = SimpleAverageStrategy().aggregate(four_clients(make_update), make_weights(0.0))

    assert all(c == pytest.approx(0.25) for c in coefficients.values())
    np.testing.assert_allclose(flatten_weights(new_weights), 2.5)


def test_median_odd_count_ignores_outlier(make_update, make_weights):
    updates = [make_update("C1", 1.0), make_update("C2", 2.0), make_update("C3", 1000.0)]

    new_weights, _ = MedianStrategy().aggregate(updates, make_weights(0.0, version=2))

    np.testing.assert_allclose(flatten_weights(new_weights), 2.0)
    assert new_weights.version == 3


def test_median_even_count_averages_middle_values(make_update, make_weights):
    updates = [make_update("C1", np.arange(9.0)), make_update("C2", np.full(9, 4.0))]
    updates += [make_update("C3", -np.arange(9.0)), make_update("C4", np.full(9, 10.0))]

    new_weights, _ = MedianStrategy().aggregate(updates, make_weights(0.0))

    expected = [np.median([i, 4.0, -i, 10.0]) for i in range(9)]
    np.testing.assert_allclose(flatten_weights(new_weights), expected)
    assert expected[0] == pytest.approx(2.0)


def test_fedprox_aggregates_like_fedavg(make_update, make_weights):
    updates = four_clients(make_update)

    fedprox, _ = StrategyRegistry.get("fedprox").aggregate(updates, make_weights(0.0))
    fedavg, _ = FedAvgStrategy().aggregate(updates, make_weights(0.0))

    assert fedprox == fedavg


@pytest.mark.parametrize("label, expected", [
    ("fedavg", FedAvgStrategy),
    ("fedprox", FedAvgStrategy),
    ("simple", SimpleAverageStrategy),
    ("median", MedianStrategy),
    ("Median", MedianStrategy),
    ("my-experiment", FedAvgStrategy),
    ("gravity", FedAvgStrategy),
])
def test_aggregation_method_selects_server_rule(label, expected):
    assert type(StrategyRegistry.for_config(ServerConfig(aggregation_method=label))) is expected


def test_client_strategy_takes_precedence_over_server_rule():
    config = ServerConfig(aggregation_method="median", strategy=FiftyFiftyParams(group_a=("C1",)))

    assert isinstance(StrategyRegistry.for_config(config), FiftyFiftyStrategy)


def test_engine_median_rule(make_update, make_weights):
    updates = clustered_updates(make_update)

    result = AggregationEngine(ServerConfig(aggregation_method="median")).aggregate(updates, make_weights(0.0), 0)

    np.testing.assert_allclose(flatten_weights(result.weights), 0.0, atol=1e-12)
    assert result.cluster_metrics is None


def test_engine_louvain_clustering(make_update, make_weights):
    config = ServerConfig(strategy=GravityParams(), distance_metric="l2", clustering_method="louvain")

    result = AggregationEngine(config).aggregate(clustered_updates(make_update), make_weights(0.0), round_num=0)

    assert {frozenset(c) for c in result.clusters} == {frozenset({"C1", "C2"}), frozenset({"C3", "C4"})}
    assert result.agreement_matrix is None
    assert all(not m.approximate for m in result.cluster_metrics)


def test_engine_agreement_clustering(make_update, make_weights):
    config = ServerConfig(aggregation_method="clustered", distance_metric="l2", clustering_method="agreement")

    result = AggregationEngine(config).aggregate(clustered_updates(make_update), make_weights(0.0), round_num=0)

    assert {frozenset(c) for c in result.clusters} == {frozenset({"C1", "C2"}), frozenset({"C3", "C4"})}
    assert result.agreement_matrix.shape == (4, 4)
    np.testing.assert_array_equal(np.diag(result.agreement_matrix), 20)


def test_registry():
    assert isinstance(StrategyRegistry.get("gravity"), GravityStrategy)
    assert {"50-50", "fedavg", "fedprox", "median", "simple"} <= set(StrategyRegistry.names())
    with pytest.raises(ValueError, match="Unknown strategy"):
        StrategyRegistry.get("fedyogi")


def test_registered_rule_is_selectable_by_label(monkeypatch, make_update, make_weights):
    monkeypatch.setattr(StrategyRegistry, "_strategies", dict(StrategyRegistry._strategies))

    @StrategyRegistry.register("first-client", "FIRST")
    class FirstClientStrategy(FedAvgStrategy):
        @property
        def name(self):
            return "FirstClient"

        def compute_coefficients(self, updates, global_weights, round_num, clusters=None):
            return {u.client_id: float(i == 0) for i, u in enumerate(updates)}

    engine = AggregationEngine(ServerConfig(aggregation_method="first"))
    result = engine.aggregate(four_clients(make_update), make_weights(0.0), 0)

    assert engine.strategy.name == "FirstClient"
    np.testing.assert_allclose(flatten_weights(result.weights), 1.0)
