"""
Round Orchestrator for Federated Learning
=========================================
Drives synchronous training rounds: broadcasts the global model, runs every
selected client through its lifecycle on a thread pool, waits for all of them
(barrier), aggregates the completed updates and records the round.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

import numpy as np

from fedorbit.core.aggregation import AggregationEngine, AggregationResult, ClientUpdate
from fedorbit.core.client import ClientManager, ClientState, ClientStatus, TERMINAL_STATUSES
from fedorbit.core.config import ServerConfig, apply_config
from fedorbit.core.exceptions import ClientTrainingFailure, InsufficientClients, NoParticipants
from fedorbit.core.types import (
    ClientRoundMetrics,
    ExperimentData,
    Model3DPosition,
    RoundMetrics,
    SimulationSnapshot,
)
from fedorbit.core.weights import ModelWeights, compute_weights_snapshot, flatten_weights
from fedorbit.utils.projection import GLOBAL_ENTITY, PCAReducer
from fedorbit.utils.storage import ExperimentStore

logger = logging.getLogger("FedServer")

RoundCallback = Callable[[List[ClientState], RoundMetrics], None]


class SimulationPhase(Enum):
    """Phases of the server during a round."""
    IDLE = "idle"
    BROADCAST = "broadcast"
    TRAINING = "training"
    AGGREGATING = "aggregating"
    EVALUATING = "evaluating"


@dataclass
class SimulationState:
    """
    Global model and round history of one simulation run.

    Attributes:
        round: Index of the next round to run (== len(history)).
        global_weights: Current global model.
        history: Append-only list of completed rounds.
        client_models: Last local model of each client that completed a round.
        phase: Current server phase.
        logs: Last 100 structured log entries for UI consumption.
    """
    global_weights: ModelWeights
    round: int = 0
    history: List[RoundMetrics] = field(default_factory=list)
    client_models: Dict[str, ModelWeights] = field(default_factory=dict)
    phase: SimulationPhase = SimulationPhase.IDLE
    logs: List[Dict[str, Any]] = field(default_factory=list)
    initial_weights: Optional[ModelWeights] = None

    def __post_init__(self):
        if self.initial_weights is None:
            self.initial_weights = self.global_weights.copy()

    def add_log(self, message: str, level: str = "INFO"):
        """Add a log entry with timestamp."""
        entry = {
            "timestamp": time.strftime("%H:%M:%S"),
            "round": self.round,
            "phase": self.phase.value,
            "level": level,
            "message": message
        }
        self.logs.append(entry)
        if len(self.logs) > 100:
            self.logs.pop(0)  # Keep last 100 logs
        logger.log(getattr(logging, level, logging.INFO), f"[Round {self.round}] {message}")

    def advance_round(self,
                      weights: ModelWeights,
                      metrics: RoundMetrics,
                      client_models: Mapping[str, ModelWeights]) -> None:
        """Commit one round: the only writer of the global model and history."""
        if metrics.round != len(self.history):
            raise ValueError(f"Round {metrics.round} cannot follow {len(self.history)} recorded rounds.")
        self.global_weights = weights
        self.history.append(metrics)
        self.client_models.update(client_models)
        self.round = len(self.history)
        self.phase = SimulationPhase.IDLE

    def cancel_round(self) -> None:
        self.phase = SimulationPhase.IDLE
        self.add_log("Round cancelled; global model unchanged.", level="WARNING")

    def reset(self) -> None:
        self.global_weights = self.initial_weights.copy()
        self.history = []
        self.client_models = {}
        self.round = 0
        self.phase = SimulationPhase.IDLE
        self.logs = []

    def snapshot(self) -> SimulationSnapshot:
        return SimulationSnapshot(
            round=self.round,
            global_weights=self.global_weights.copy(),
            round_history=list(self.history),
            client_models={cid: w.copy() for cid, w in self.client_models.items()},
        )


class RoundOrchestrator:
    """
    Central coordinator of the federated simulation.

    Client states are mutated only here, under a lock, along the lifecycle
    idle -> receiving -> training -> sending -> evaluating -> completed,
    with error reachable from any non-terminal state.
    """

    def __init__(self,
                 config: ServerConfig,
                 clients: ClientManager,
                 initial_weights: Optional[ModelWeights] = None,
                 max_workers: Optional[int] = None,
                 reducer: Optional[PCAReducer] = None):
        """
        Initialize the orchestrator.

        Args:
            config: Server configuration.
            clients: Pool of simulated clients.
            initial_weights: Starting global model; drawn from the config seed
                when omitted.
            max_workers: Thread pool size for client tasks.
            reducer: PCA reducer fed with every round's models.
        """
        self.config = config
        self.clients = clients
        self.engine = AggregationEngine(config)
        self.max_workers = max_workers
        self.reducer = reducer or PCAReducer()

        weights = initial_weights if initial_weights is not None else clients.initial_weights(config.seed)
        self.state = SimulationState(global_weights=weights.copy())
        self.client_states: Dict[str, ClientState] = clients.initial_states()

        self._lock = threading.Lock()
        self._cancel = threading.Event()
        self._subscribers: List[RoundCallback] = []
        self._sampler = np.random.default_rng(config.seed)

        self.state.add_log(
            f"Server initialized with {len(self.client_states)} clients, "
            f"strategy '{self.engine.strategy.name}'."
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def global_weights(self) -> ModelWeights:
        return self.state.global_weights.copy()

    @property
    def history(self) -> List[RoundMetrics]:
        return list(self.state.history)

    def get_client_states(self) -> List[ClientState]:
        with self._lock:
            return [s.copy() for s in self.client_states.values()]

    def subscribe(self, callback: RoundCallback) -> Callable[[], None]:
        """Register a callback for completed rounds; returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def update_config(self, patch: Mapping[str, Any]) -> ServerConfig:
        """
        Apply a config patch between rounds.

        Raises:
            ConfigError: if the merged config is invalid; the current config
                is kept.
        """
        config = apply_config(self.config, patch)
        engine = AggregationEngine(config)
        self.config, self.engine = config, engine
        self.state.add_log(f"Config updated: {dict(patch)}")
        return config

    def cancel_round(self) -> None:
        """Abandon the running round; no metrics are recorded for it."""
        self._cancel.set()

    def reset(self) -> None:
        """Back to round 0 with the initial global model."""
        self._cancel.clear()
        with self._lock:
            for cid, fresh in self.clients.initial_states().items():
                self.client_states[cid] = fresh
        self.state.reset()
        self.reducer.reset()
        self._sampler = np.random.default_rng(self.config.seed)
        self.state.add_log("Simulation reset.")

    def run(self, num_rounds: Optional[int] = None) -> List[RoundMetrics]:
        """Run rounds sequentially; stops early if a round is cancelled."""
        rounds = self.config.total_rounds if num_rounds is None else num_rounds
        completed = []
        for _ in range(rounds):
            metrics = self.run_round()
            if metrics is None:
                break
            completed.append(metrics)
        return completed

    def run_round(self) -> Optional[RoundMetrics]:
        """
        Run one full round.

        Returns:
            The recorded RoundMetrics, or None if the round was cancelled.

        Raises:
            InsufficientClients: if fewer clients are available than
                minClientsRequired.

        Selected clients are back to idle when this returns or raises.
        Subscriber errors are logged and do not abort the round.
        """
        round_num = self.state.round
        self._cancel.clear()
        selected = self._select_clients()
        try:
            return self._execute_round(round_num, selected)
        finally:
            self._release(selected)

    def _execute_round(self, round_num: int, selected: List[str]) -> Optional[RoundMetrics]:
        self.state.phase = SimulationPhase.BROADCAST
        self.state.add_log(f"Broadcasting global model v{self.state.global_weights.version} to {len(selected)} clients.")
        broadcast = self.state.global_weights.copy()

        self.state.phase = SimulationPhase.TRAINING
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures = [pool.submit(self._run_client, cid, broadcast) for cid in selected]
            wait(futures)
        outcomes = [f.result() for f in futures]

        if self._cancel.is_set():
            self._abandon(selected)
            return None

        updates = [o[0] for o in outcomes if o is not None]
        client_metrics = [o[1] for o in outcomes if o is not None]
        with self._lock:
            failed = [cid for cid in selected if self.client_states[cid].status is ClientStatus.ERROR]

        self.state.phase = SimulationPhase.AGGREGATING
        start = time.perf_counter()
        result: Optional[AggregationResult] = None
        try:
            result = self.engine.aggregate(updates, self.state.global_weights, round_num)
            new_weights = result.weights
        except NoParticipants as e:
            self.state.add_log(str(e), level="WARNING")
            new_weights = self.state.global_weights
        aggregation_ms = (time.perf_counter() - start) * 1000.0

        self.state.phase = SimulationPhase.EVALUATING
        global_loss, global_accuracy = self._evaluate_global(new_weights, selected)

        metrics = RoundMetrics(
            round=round_num,
            timestamp=datetime.now(timezone.utc).isoformat(),
            global_loss=global_loss,
            global_accuracy=global_accuracy,
            aggregation_time=aggregation_ms,
            participating_clients=list(selected),
            cluster_metrics=result.cluster_metrics if result is not None else None,
            weights_snapshot=compute_weights_snapshot(new_weights),
            failed_clients=failed,
            skipped=result is None,
            client_metrics=client_metrics or None,
            distance_matrix=(
                result.distance_matrix.tolist()
                if result is not None and result.distance_matrix is not None else None
            ),
            clusters=result.clusters if result is not None else None,
            silhouette_avg=result.silhouette if result is not None else None,
            agreement_matrix=(
                result.agreement_matrix.tolist()
                if result is not None and result.agreement_matrix is not None else None
            ),
        )
        self.state.advance_round(new_weights, metrics, {u.client_id: u.weights for u in updates})
        self._observe(round_num, updates, new_weights)
        self.state.add_log(
            f"Round {round_num} complete: loss={global_loss:.4f}, accuracy={global_accuracy:.4f}, "
            f"{len(updates)}/{len(selected)} clients."
        )

        with self._lock:
            for update in updates:
                self.client_states[update.client_id].rounds_participated += 1

        self._notify(metrics)
        return metrics

    def get_experiment_data(self) -> ExperimentData:
        """Materialize the current run for saving."""
        return ExperimentStore.save(self.state.snapshot(), None, self.config)

    def load_experiment(self, raw: bytes) -> ExperimentData:
        """
        Restore a saved run. The file is fully validated before any state
        changes.

        Raises:
            InvalidExperimentFile: if the file is malformed.
        """
        data = ExperimentStore.load(raw)
        self.restore(data)
        return data

    def restore(self, data: ExperimentData) -> None:
        """Replace config, history and models with those of `data`."""
        self.config = data.server_config
        self.engine = AggregationEngine(data.server_config)
        self.state.reset()
        self.reducer.reset()

        models = {m.client_id: m.weights.copy() for m in data.client_models}
        if data.global_model is not None:
            self.state.global_weights = data.global_model.copy()
        self.state.history = list(data.round_history)
        self.state.round = len(self.state.history)
        self.state.client_models = models

        with self._lock:
            for cid, client_state in self.client_states.items():
                client_state.force_idle()
                client_state.rounds_participated = sum(
                    1 for r in data.round_history
                    if cid in r.participating_clients and cid not in r.failed_clients
                )
        last_round = max(self.state.round - 1, 0)
        for cid, weights in models.items():
            self.reducer.observe(last_round, cid, flatten_weights(weights))
        self.reducer.observe(last_round, GLOBAL_ENTITY, flatten_weights(self.state.global_weights))
        self.state.add_log(f"Restored experiment saved at {data.saved_at} ({self.state.round} rounds).")

    def positions_3d(self) -> List[Model3DPosition]:
        """PCA projection of every recorded client and global model."""
        return self.reducer.project()

    # ------------------------------------------------------------------
    # Round internals
    # ------------------------------------------------------------------

    def _select_clients(self) -> List[str]:
        available = self.clients.client_ids
        required = self.config.min_clients_required
        if len(available) < required:
            raise InsufficientClients(required, len(available))

        per_round = self.config.clients_per_round
        if per_round is None or per_round >= len(available):
            selected = list(available)
        else:
            picked = set(self._sampler.choice(len(available), size=per_round, replace=False).tolist())
            selected = [cid for i, cid in enumerate(available) if i in picked]

        if len(selected) < required:
            raise InsufficientClients(required, len(selected))
        return selected

    def _transition(self, client_id: str, target: ClientStatus) -> None:
        with self._lock:
            self.client_states[client_id].transition(target)

    def _set_progress(self, client_id: str, progress: float) -> None:
        with self._lock:
            self.client_states[client_id].set_progress(progress)

    def _run_client(self, client_id: str, broadcast: ModelWeights):
        """
        One client's round: receive, train, send, evaluate.

        Returns (ClientUpdate, ClientRoundMetrics), or None if the client
        failed or the round was cancelled.
        """
        node = self.clients.get(client_id)
        try:
            self._transition(client_id, ClientStatus.RECEIVING)
            self._set_progress(client_id, 100.0)
            if self._cancel.is_set():
                return None

            self._transition(client_id, ClientStatus.TRAINING)
            local = node.local_train(broadcast, progress=lambda p: self._set_progress(client_id, p))
            if self._cancel.is_set():
                return None

            self._transition(client_id, ClientStatus.SENDING)
            self._set_progress(client_id, 100.0)
            self._transition(client_id, ClientStatus.EVALUATING)
            loss, accuracy = node.evaluate(local)
            test_accuracy = node.test_accuracy(local)
        except ClientTrainingFailure as e:
            self._transition(client_id, ClientStatus.ERROR)
            logger.warning(str(e))
            return None

        with self._lock:
            client_state = self.client_states[client_id]
            client_state.transition(ClientStatus.COMPLETED)
            client_state.progress = 100.0
            client_state.local_loss = loss
            client_state.local_accuracy = accuracy
            client_state.local_test_accuracy = test_accuracy

        update = ClientUpdate(client_id=client_id, weights=local, data_size=node.data_size, accuracy=accuracy)
        metrics = ClientRoundMetrics(
            client_id=client_id,
            loss=loss,
            accuracy=accuracy,
            test_accuracy=test_accuracy,
            data_size=node.data_size,
        )
        return update, metrics

    def _abandon(self, selected: List[str]) -> None:
        with self._lock:
            for cid in selected:
                self.client_states[cid].force_idle()
        self.state.cancel_round()

    def _release(self, selected: List[str]) -> None:
        """Return every selected client to idle, however the round ended."""
        with self._lock:
            for cid in selected:
                state = self.client_states[cid]
                if state.status in TERMINAL_STATUSES:
                    state.transition(ClientStatus.IDLE)
                elif state.status is not ClientStatus.IDLE:
                    state.force_idle()
        self.state.phase = SimulationPhase.IDLE

    def _evaluate_global(self, weights: ModelWeights, client_ids: List[str]):
        """Data-weighted mean of each selected client's evaluation of `weights`."""
        nodes = [self.clients.get(cid) for cid in client_ids]
        total = sum(n.data_size for n in nodes)
        results = [n.evaluate(weights) for n in nodes]
        if total <= 0:
            return (float(np.mean([r[0] for r in results])), float(np.mean([r[1] for r in results])))
        loss = sum(n.data_size * r[0] for n, r in zip(nodes, results)) / total
        accuracy = sum(n.data_size * r[1] for n, r in zip(nodes, results)) / total
        return float(loss), float(accuracy)

    def _observe(self, round_num: int, updates: List[ClientUpdate], weights: ModelWeights) -> None:
        for u in updates:
            self.reducer.observe(round_num, u.client_id, flatten_weights(u.weights))
        self.reducer.observe(round_num, GLOBAL_ENTITY, flatten_weights(weights))

    def _notify(self, metrics: RoundMetrics) -> None:
        states = self.get_client_states()
        for callback in list(self._subscribers):
            try:
                callback(states, metrics)
            except Exception as e:
                logger.error(f"Round {metrics.round} subscriber error: {e}")


# Example usage
if __name__ == "__main__":
    from fedorbit.utils.logging_utils import init_logging

    init_logging("INFO")
    manager = ClientManager(num_clients=6, num_groups=2, seed=7)
    orchestrator = RoundOrchestrator(ServerConfig(total_rounds=5), manager)

    for m in orchestrator.run():
        print(f"Round {m.round}: loss={m.global_loss:.4f} acc={m.global_accuracy:.4f}")

    print("\n--- Server Logs ---")
    for log in orchestrator.state.logs:
        print(f"[{log['timestamp']}] {log['message']}")
