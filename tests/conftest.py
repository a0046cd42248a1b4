import numpy as np
import pytest

from fedorbit.core.aggregation import ClientUpdate
from fedorbit.core.client import ClientManager, ClientNode
from fedorbit.core.weights import ModelWeights, WeightLayout, unflatten_weights


SMALL_LAYOUT = WeightLayout(entries=(("W", (2, 3)), ("b", (3,))))


def _make_weights(fill, version=0, layout=SMALL_LAYOUT) -> ModelWeights:
    vector = np.broadcast_to(np.asarray(fill, dtype=np.float64), (layout.size,)).copy()
    return unflatten_weights(vector, layout, version=version)


def _make_update(client_id, fill, data_size=100, accuracy=0.5, layout=SMALL_LAYOUT) -> ClientUpdate:
    return ClientUpdate(
        client_id=client_id,
        weights=_make_weights(fill, layout=layout),
        data_size=data_size,
        accuracy=accuracy,
    )


@pytest.fixture
def small_layout():
    return SMALL_LAYOUT


@pytest.fixture
def make_weights():
    return _make_weights


@pytest.fixture
def make_update():
    return _make_update


@pytest.fixture
def tiny_mlp():
    return WeightLayout.mlp(input_size=4, hidden_size=3, output_size=2)


@pytest.fixture
def make_manager(tiny_mlp):
    """Factory for a small deterministic client pool; failure rates per client id."""

    def factory(num_clients=4, failure_rates=None, seed=3):
        rng = np.random.default_rng(seed)
        centres = rng.normal(0.0, 1.0, (2, tiny_mlp.size))
        failure_rates = failure_rates or {}
        nodes = []
        for i in range(num_clients):
            client_id = f"C{i + 1}"
            nodes.append(ClientNode(
                client_id=client_id,
                data_size=100 * (i + 1),
                layout=tiny_mlp,
                centre=centres[i % 2],
                local_epochs=2,
                failure_rate=failure_rates.get(client_id, 0.0),
                seed=seed + i,
            ))
        return ClientManager.from_nodes(nodes)

    return factory
