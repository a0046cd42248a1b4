import logging

import numpy as np
import pytest

from fedorbit.core.clustering import (
    CommunityClustering,
    KMeansClustering,
    agreement_matrix,
    cluster_distance_matrix,
    determine_optimal_k,
    labels_from_agreement,
    louvain_partition,
    refine_partition,
    similarity_graph,
    silhouette,
)
from fedorbit.core.distance import DistanceMetric


def two_groups(noise=0.05, per_group=3, seed=0):
    rng = np.random.default_rng(seed)
    a = [np.array([10.0, 10.0, 0.0]) + rng.normal(0, noise, 3) for _ in range(per_group)]
    b = [np.array([-10.0, -10.0, 0.0]) + rng.normal(0, noise, 3) for _ in range(per_group)]
    return a + b


@pytest.mark.parametrize("metric", list(DistanceMetric))
def test_single_cluster_for_every_metric(metric):
    result = KMeansClustering(num_clusters=1, metric=metric).fit(two_groups())

    assert result.k == 1
    assert set(result.labels.tolist()) == {0}
    assert result.members() == [list(range(6))]


@pytest.mark.parametrize("metric", list(DistanceMetric))
def test_separated_groups_are_recovered(metric):
    result = KMeansClustering(num_clusters=2, metric=metric, seed=5).fit(two_groups())

    groups = {frozenset(m) for m in result.members()}
    assert groups == {frozenset({0, 1, 2}), frozenset({3, 4, 5})}
    assert result.converged


def test_same_seed_same_labels():
    rng = np.random.default_rng(9)
    vectors = [rng.normal(size=4) for _ in range(12)]

    first = KMeansClustering(num_clusters=3, seed=11).fit(vectors)
    second = KMeansClustering(num_clusters=3, seed=11).fit(vectors)

    np.testing.assert_array_equal(first.labels, second.labels)
    np.testing.assert_array_equal(first.centroids, second.centroids)


def test_k_is_clamped_to_number_of_vectors():
    vectors = [np.array([0.0, 1.0]), np.array([5.0, 1.0]), np.array([9.0, -3.0])]

    result = KMeansClustering(num_clusters=5, metric="l2").fit(vectors)

    assert result.k == 3
    assert sorted(result.labels.tolist()) == [0, 1, 2]
    assert result.inertia == pytest.approx(0.0)


def test_identical_points_never_leave_a_cluster_empty():
    vectors = [np.ones(3)] * 3

    result = KMeansClustering(num_clusters=3, metric="l2").fit(vectors)

    assert sorted(result.labels.tolist()) == [0, 1, 2]


def test_non_convergence_is_flagged_and_logged(caplog):
    with caplog.at_level(logging.WARNING, logger="FLClustering"):
        result = KMeansClustering(num_clusters=2, metric="l2", max_iterations=1).fit(two_groups())

    assert result.converged is False
    assert result.iterations == 1
    assert "did not converge" in caplog.text


def test_elbow_picks_two_for_two_groups():
    assert determine_optimal_k(two_groups(), metric="l2") == 2


def test_elbow_single_vector():
    assert determine_optimal_k([np.zeros(3)]) == 1


def test_automatic_k_through_fit():
    result = KMeansClustering(num_clusters=None, metric="l2").fit(two_groups())

    assert result.k == 2


def test_silhouette():
    vectors = two_groups()
    matrix = cluster_distance_matrix(vectors, "l2")

    assert silhouette(matrix, [0] * 6) is None
    assert silhouette(matrix, [0, 1, 2, 3, 4, 5]) is None
    assert silhouette(matrix, [0, 0, 0, 1, 1, 1]) > 0.9


def test_empty_input_rejected():
    with pytest.raises(ValueError):
        KMeansClustering(num_clusters=1).fit([])


# ============================================================================
# LOUVAIN & AGREEMENT
# ============================================================================

def test_similarity_graph():
    adjacency = similarity_graph(np.array([[0.0, 1.0, 3.0], [1.0, 0.0, 2.0], [3.0, 2.0, 0.0]]))

    np.testing.assert_array_equal(np.diag(adjacency), 0.0)
    assert adjacency[0, 1] == pytest.approx(np.exp(-0.5))
    assert adjacency[0, 2] == pytest.approx(np.exp(-1.5))
    np.testing.assert_allclose(adjacency, adjacency.T)


def test_louvain_without_edges_keeps_singletons():
    np.testing.assert_array_equal(louvain_partition(np.zeros((3, 3))), [0, 1, 2])


@pytest.mark.parametrize("metric", list(DistanceMetric))
@pytest.mark.parametrize("consensus", [False, True])
def test_community_clustering_recovers_groups(metric, consensus):
    result = CommunityClustering(metric=metric, seed=3, consensus=consensus).fit(two_groups())

    assert result.k == 2
    assert sorted(result.members()) == [[0, 1, 2], [3, 4, 5]]
    assert result.converged
    assert (result.agreement is not None) == consensus


def test_refine_moves_node_to_stronger_community():
    adjacency = np.array([
        [0.0, 1.0, 0.1, 0.0],
        [1.0, 0.0, 0.1, 0.0],
        [0.1, 0.1, 0.0, 5.0],
        [0.0, 0.0, 5.0, 0.0],
    ])

    np.testing.assert_array_equal(refine_partition(adjacency, [0, 0, 0, 1]), [0, 0, 1, 1])


def test_agreement_counts():
    adjacency = similarity_graph(cluster_distance_matrix(two_groups(), "l2"))

    counts = agreement_matrix(adjacency, runs=10, seed=1)

    np.testing.assert_array_equal(np.diag(counts), 10)
    np.testing.assert_array_equal(counts, counts.T)
    assert counts[0, 3] == 0
    np.testing.assert_array_equal(agreement_matrix(adjacency, runs=10, seed=1), counts)


def test_labels_from_agreement_links_transitively():
    np.testing.assert_array_equal(
        labels_from_agreement(np.array([[20, 15, 2], [15, 20, 3], [2, 3, 20]])), [0, 0, 1]
    )
    np.testing.assert_array_equal(
        labels_from_agreement(np.array([[20, 12, 0], [12, 20, 12], [0, 12, 20]])), [0, 0, 0]
    )
