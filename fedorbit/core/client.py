"""
Client Simulator for Federated Learning
========================================
Simulated client nodes with a private data partition stand-in, local noisy
gradient descent and the per-client lifecycle state machine.
"""

import logging
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np

from fedorbit.core.exceptions import ClientTrainingFailure, InvalidTransition
from fedorbit.core.weights import (
    ModelWeights,
    WeightLayout,
    flatten_weights,
    initialize_mlp_weights,
    unflatten_weights,
)

logger = logging.getLogger("FedClient")


# ============================================================================
# CLIENT LIFECYCLE
# ============================================================================

class ClientStatus(Enum):
    """Phases a client moves through during one round."""
    IDLE = "idle"
    RECEIVING = "receiving"
    TRAINING = "training"
    SENDING = "sending"
    EVALUATING = "evaluating"
    COMPLETED = "completed"
    ERROR = "error"


_TRANSITIONS: Dict[ClientStatus, Tuple[ClientStatus, ...]] = {
    ClientStatus.IDLE: (ClientStatus.RECEIVING, ClientStatus.ERROR),
    ClientStatus.RECEIVING: (ClientStatus.TRAINING, ClientStatus.ERROR),
    ClientStatus.TRAINING: (ClientStatus.SENDING, ClientStatus.ERROR),
    ClientStatus.SENDING: (ClientStatus.EVALUATING, ClientStatus.ERROR),
    ClientStatus.EVALUATING: (ClientStatus.COMPLETED, ClientStatus.ERROR),
    ClientStatus.COMPLETED: (ClientStatus.IDLE,),
    ClientStatus.ERROR: (ClientStatus.IDLE,),
}

TERMINAL_STATUSES = (ClientStatus.COMPLETED, ClientStatus.ERROR)


@dataclass
class ClientState:
    """
    Observable state of one client.

    Mutated only by the round orchestrator; subscribers receive copies.
    """
    id: str
    name: str
    data_size: int
    status: ClientStatus = ClientStatus.IDLE
    progress: float = 0.0
    local_loss: float = 0.0
    local_accuracy: float = 0.0
    local_test_accuracy: float = 0.0
    rounds_participated: int = 0
    last_update: float = field(default_factory=time.time)

    def transition(self, target: ClientStatus) -> None:
        """
        Move to `target`, resetting progress.

        Raises:
            InvalidTransition: if the lifecycle has no such edge.
        """
        if target not in _TRANSITIONS[self.status]:
            raise InvalidTransition(self.id, self.status.value, target.value)
        self.status = target
        self.progress = 0.0
        self.last_update = time.time()

    def set_progress(self, progress: float) -> None:
        """Progress never decreases within a phase."""
        self.progress = max(self.progress, min(100.0, float(progress)))
        self.last_update = time.time()

    def force_idle(self) -> None:
        """Abandon the current round regardless of phase."""
        self.status = ClientStatus.IDLE
        self.progress = 0.0
        self.last_update = time.time()

    def copy(self) -> "ClientState":
        return replace(self)


# ============================================================================
# CLIENT NODE
# ============================================================================

class ClientNode:
    """
    A simulated client node.

    The private partition is modelled by an optimum weight vector drawn around
    a latent group centre; loss is the mean squared distance to it and
    accuracy is exp(-loss). A second, held-out optimum gives test accuracy.
    """

    def __init__(self,
                 client_id: str,
                 data_size: int,
                 layout: WeightLayout,
                 centre: np.ndarray,
                 name: Optional[str] = None,
                 local_epochs: int = 3,
                 learning_rate: float = 0.3,
                 heterogeneity: float = 0.2,
                 noise_scale: float = 0.02,
                 failure_rate: float = 0.0,
                 seed: Optional[int] = None):
        """
        Initialize a client node.

        Args:
            client_id: Unique identifier for this client.
            data_size: Number of local samples (aggregation weight).
            layout: Model layout shared with the server.
            centre: Latent group centre the local optimum is drawn around.
            local_epochs: Gradient steps per round.
            learning_rate: Step size of the local update.
            heterogeneity: Spread of the local optimum around the centre.
            noise_scale: Gradient noise at 100 samples; scales with 1/sqrt(n).
            failure_rate: Probability of failing a round.
            seed: Random seed for reproducibility.
        """
        self.client_id = client_id
        self.name = name or client_id
        self.data_size = int(data_size)
        self.layout = layout
        self.local_epochs = local_epochs
        self.learning_rate = learning_rate
        self.noise_scale = noise_scale
        self.failure_rate = failure_rate
        self.rng = np.random.default_rng(seed)

        centre = np.asarray(centre, dtype=np.float64)
        if centre.shape != (layout.size,):
            raise ValueError(f"Centre must have shape ({layout.size},), got {centre.shape}.")
        self.optimum = centre + self.rng.normal(0.0, heterogeneity, layout.size)
        self.test_optimum = self.optimum + self.rng.normal(0.0, heterogeneity / 2, layout.size)

        self.local_weights: Optional[ModelWeights] = None
        self.epoch_losses: List[float] = []

    def local_train(self,
                    global_weights: ModelWeights,
                    progress: Optional[Callable[[float], None]] = None) -> ModelWeights:
        """
        Run local epochs starting from the global model.

        Args:
            global_weights: Model broadcast by the server.
            progress: Called with percent complete after each epoch.

        Returns:
            Updated local weights (same version as the global model).

        Raises:
            ClientTrainingFailure: on a simulated device failure.
        """
        if self.failure_rate > 0 and self.rng.random() < self.failure_rate:
            raise ClientTrainingFailure(self.client_id, "simulated device dropout")

        w = flatten_weights(global_weights)
        noise_std = self.noise_scale * np.sqrt(100.0 / max(self.data_size, 1))
        self.epoch_losses = []
        for epoch in range(self.local_epochs):
            # Gradient of 0.5 * ||w - optimum||^2 plus sampling noise
            gradient = (w - self.optimum) + self.rng.normal(0.0, noise_std, w.shape)
            w = w - self.learning_rate * gradient
            self.epoch_losses.append(self._loss(w, self.optimum))
            if progress is not None:
                progress(100.0 * (epoch + 1) / self.local_epochs)

        self.local_weights = unflatten_weights(w, self.layout, version=global_weights.version)
        logger.debug(f"[{self.client_id}] Local training done after {self.local_epochs} epochs.")
        return self.local_weights

    def evaluate(self, weights: ModelWeights) -> Tuple[float, float]:
        """(loss, accuracy) of `weights` on the local training partition."""
        loss = self._loss(flatten_weights(weights), self.optimum)
        return loss, float(np.exp(-loss))

    def test_accuracy(self, weights: ModelWeights) -> float:
        """Accuracy of `weights` on the held-out partition."""
        return float(np.exp(-self._loss(flatten_weights(weights), self.test_optimum)))

    @staticmethod
    def _loss(w: np.ndarray, optimum: np.ndarray) -> float:
        return float(np.mean((w - optimum) ** 2))


# ============================================================================
# CLIENT MANAGER
# ============================================================================

class ClientManager:
    """
    Builds and owns the pool of simulated clients.

    Data sizes follow a Dirichlet split of `total_samples`; clients are spread
    round-robin over `num_groups` latent groups so their models cluster.
    Pass `nodes` to wrap pre-built clients instead.
    """

    def __init__(self,
                 num_clients: int = 10,
                 num_groups: int = 3,
                 layout: Optional[WeightLayout] = None,
                 dirichlet_alpha: float = 1.0,
                 total_samples: int = 10000,
                 min_samples: int = 10,
                 local_epochs: int = 3,
                 learning_rate: float = 0.3,
                 failure_rate: float = 0.0,
                 seed: Optional[int] = None,
                 nodes: Optional[List[ClientNode]] = None):
        self.rng = np.random.default_rng(seed)
        self.clients: Dict[str, ClientNode] = {}

        if nodes:
            self.layout = nodes[0].layout
            for node in nodes:
                if node.layout != self.layout:
                    raise ValueError(f"Client '{node.client_id}' uses a different weight layout.")
                self.clients[node.client_id] = node
            return

        if num_clients < 1:
            raise ValueError("num_clients must be >= 1.")
        self.layout = layout or WeightLayout.mlp()
        proportions = self.rng.dirichlet([dirichlet_alpha] * num_clients)
        data_sizes = np.maximum((proportions * total_samples).astype(int), min_samples)
        centres = self.rng.normal(0.0, 1.0, (max(num_groups, 1), self.layout.size))

        for i in range(num_clients):
            client_id = f"client_{i + 1}"
            self.clients[client_id] = ClientNode(
                client_id=client_id,
                name=f"Client {i + 1}",
                data_size=int(data_sizes[i]),
                layout=self.layout,
                centre=centres[i % len(centres)],
                local_epochs=local_epochs,
                learning_rate=learning_rate,
                failure_rate=failure_rate,
                seed=int(self.rng.integers(2 ** 31)),
            )
        logger.info(f"Created {num_clients} clients across {len(centres)} groups.")

    @classmethod
    def from_nodes(cls, nodes: List[ClientNode]) -> "ClientManager":
        """Wrap pre-built client nodes (all sharing one layout)."""
        if not nodes:
            raise ValueError("At least one client node is required.")
        return cls(nodes=nodes)

    @property
    def client_ids(self) -> List[str]:
        return list(self.clients)

    def get(self, client_id: str) -> ClientNode:
        return self.clients[client_id]

    def initial_states(self) -> Dict[str, ClientState]:
        return {
            cid: ClientState(id=cid, name=node.name, data_size=node.data_size)
            for cid, node in self.clients.items()
        }

    def initial_weights(self, seed: Optional[int] = None) -> ModelWeights:
        """Fresh global model for this pool's layout."""
        return initialize_mlp_weights(self.layout, np.random.default_rng(seed))
