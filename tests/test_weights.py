import numpy as np
import pytest

from fedorbit.core.weights import (
    ModelWeights,
    WeightLayout,
    compute_weights_snapshot,
    flatten_weights,
    initialize_mlp_weights,
    unflatten_weights,
    weighted_average,
)


def test_flatten_then_unflatten_is_exact():
    layout = WeightLayout.mlp()
    weights = initialize_mlp_weights(layout, np.random.default_rng(0)).with_version(4)

    restored = unflatten_weights(flatten_weights(weights), weights.layout, version=4)

    assert restored == weights
    assert restored.layout == layout


def test_flatten_follows_layout_then_c_order():
    weights = ModelWeights({"W": [[1.0, 2.0], [3.0, 4.0]], "b": [5.0]})

    np.testing.assert_array_equal(flatten_weights(weights), [1.0, 2.0, 3.0, 4.0, 5.0])


def test_unflatten_rejects_wrong_length(small_layout):
    with pytest.raises(ValueError):
        unflatten_weights(np.zeros(small_layout.size + 1), small_layout)


def test_mlp_layout_size():
    layout = WeightLayout.mlp(input_size=16, hidden_size=8, output_size=4)

    assert layout.names == ["W1", "b1", "W2", "b2"]
    assert layout.size == 16 * 8 + 8 + 8 * 4 + 4


def test_equality_is_exact_but_allclose_tolerates_noise(make_weights):
    a = make_weights(1.0)
    b = make_weights(1.0 + 1e-12)

    assert a != b
    assert a.allclose(b)
    assert a != a.with_version(1)
    assert a == a.copy()


def test_dict_codec_preserves_shapes_and_version(make_weights):
    weights = make_weights(np.arange(9.0), version=7)

    restored = ModelWeights.from_dict(weights.to_dict())

    assert restored == weights
    assert restored["W"].shape == (2, 3)


def test_weighted_average_defaults_to_highest_version(make_weights):
    a = make_weights(1.0, version=2)
    b = make_weights(3.0, version=5)

    avg = weighted_average([a, b], [0.25, 0.75])

    assert avg.version == 5
    np.testing.assert_allclose(flatten_weights(avg), 2.5)


def test_weights_snapshot_reports_mean_and_std():
    weights = ModelWeights({"W": [[0.0, 2.0], [4.0, 6.0]], "b": [1.0, 1.0]})

    snapshot = compute_weights_snapshot(weights)

    assert snapshot["W"]["mean"] == pytest.approx(3.0)
    assert snapshot["W"]["std"] == pytest.approx(np.std([0, 2, 4, 6]))
    assert snapshot["b"] == {"mean": 1.0, "std": 0.0}


def test_xavier_init_zeroes_biases():
    weights = initialize_mlp_weights(WeightLayout.mlp(), np.random.default_rng(1))

    assert not np.any(weights["b1"])
    assert np.abs(weights["W1"]).max() <= np.sqrt(2.0 / (16 + 8))
