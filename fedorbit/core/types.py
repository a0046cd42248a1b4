"""
Simulation Records
==================
Per-round metrics, experiment snapshots and derived 3D positions.

Python attributes are snake_case; ``to_dict``/``from_dict`` translate to the
camelCase keys of the experiment file.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from fedorbit.core.config import ServerConfig
from fedorbit.core.weights import ModelWeights


EXPERIMENT_FORMAT_VERSION = "1.0"


@dataclass(frozen=True)
class ClusterMetrics:
    """Accuracy of one cluster (data-weighted mean of its members)."""
    cluster_id: int
    accuracy: float
    client_ids: List[str] = field(default_factory=list)
    approximate: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "clusterId": self.cluster_id,
            "accuracy": self.accuracy,
            "clientIds": list(self.client_ids),
            "approximate": self.approximate,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClusterMetrics":
        return cls(
            cluster_id=int(data["clusterId"]),
            accuracy=float(data["accuracy"]),
            client_ids=[str(c) for c in data.get("clientIds", [])],
            approximate=bool(data.get("approximate", False)),
        )


@dataclass(frozen=True)
class ClientRoundMetrics:
    """Local results reported by one completed client."""
    client_id: str
    loss: float
    accuracy: float
    test_accuracy: float
    data_size: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "clientId": self.client_id,
            "loss": self.loss,
            "accuracy": self.accuracy,
            "testAccuracy": self.test_accuracy,
            "dataSize": self.data_size,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClientRoundMetrics":
        return cls(
            client_id=str(data["clientId"]),
            loss=float(data["loss"]),
            accuracy=float(data["accuracy"]),
            test_accuracy=float(data["testAccuracy"]),
            data_size=int(data["dataSize"]),
        )


@dataclass(frozen=True)
class RoundMetrics:
    """
    Immutable record of one completed round.

    Attributes:
        round: 0-based round index; equals its position in the history.
        timestamp: ISO-8601 completion time.
        aggregation_time: Wall time of the aggregation step in milliseconds.
        participating_clients: Ids selected for the round, in selection order.
        failed_clients: Selected ids that ended the round in the error state.
        skipped: True when no client completed and the global model was kept.
        agreement_matrix: Louvain co-assignment counts when agreement
            clustering ran.
    """
    round: int
    timestamp: str
    global_loss: float
    global_accuracy: float
    aggregation_time: float
    participating_clients: List[str] = field(default_factory=list)
    cluster_metrics: Optional[List[ClusterMetrics]] = None
    weights_snapshot: Optional[Dict[str, Dict[str, float]]] = None
    failed_clients: List[str] = field(default_factory=list)
    skipped: bool = False
    client_metrics: Optional[List[ClientRoundMetrics]] = None
    distance_matrix: Optional[List[List[float]]] = None
    clusters: Optional[List[List[str]]] = None
    silhouette_avg: Optional[float] = None
    agreement_matrix: Optional[List[List[int]]] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "round": self.round,
            "timestamp": self.timestamp,
            "globalLoss": self.global_loss,
            "globalAccuracy": self.global_accuracy,
            "aggregationTime": self.aggregation_time,
            "participatingClients": list(self.participating_clients),
            "failedClients": list(self.failed_clients),
            "skipped": self.skipped,
        }
        if self.cluster_metrics is not None:
            data["clusterMetrics"] = [c.to_dict() for c in self.cluster_metrics]
        if self.weights_snapshot is not None:
            data["weightsSnapshot"] = {k: dict(v) for k, v in self.weights_snapshot.items()}
        if self.client_metrics is not None:
            data["clientMetrics"] = [c.to_dict() for c in self.client_metrics]
        if self.distance_matrix is not None:
            data["distanceMatrix"] = [list(row) for row in self.distance_matrix]
        if self.clusters is not None:
            data["clusters"] = [list(members) for members in self.clusters]
        if self.silhouette_avg is not None:
            data["silhouetteAvg"] = self.silhouette_avg
        if self.agreement_matrix is not None:
            data["agreementMatrix"] = [list(row) for row in self.agreement_matrix]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RoundMetrics":
        cluster_metrics = data.get("clusterMetrics")
        client_metrics = data.get("clientMetrics")
        snapshot = data.get("weightsSnapshot")
        matrix = data.get("distanceMatrix")
        clusters = data.get("clusters")
        silhouette = data.get("silhouetteAvg")
        agreement = data.get("agreementMatrix")
        return cls(
            round=int(data["round"]),
            timestamp=str(data["timestamp"]),
            global_loss=float(data["globalLoss"]),
            global_accuracy=float(data["globalAccuracy"]),
            aggregation_time=float(data["aggregationTime"]),
            participating_clients=[str(c) for c in data.get("participatingClients", [])],
            cluster_metrics=(
                [ClusterMetrics.from_dict(c) for c in cluster_metrics]
                if cluster_metrics is not None else None
            ),
            weights_snapshot=(
                {k: {"mean": float(v["mean"]), "std": float(v["std"])} for k, v in snapshot.items()}
                if snapshot is not None else None
            ),
            failed_clients=[str(c) for c in data.get("failedClients", [])],
            skipped=bool(data.get("skipped", False)),
            client_metrics=(
                [ClientRoundMetrics.from_dict(c) for c in client_metrics]
                if client_metrics is not None else None
            ),
            distance_matrix=(
                [[float(x) for x in row] for row in matrix] if matrix is not None else None
            ),
            clusters=[[str(c) for c in members] for members in clusters] if clusters is not None else None,
            silhouette_avg=float(silhouette) if silhouette is not None else None,
            agreement_matrix=(
                [[int(x) for x in row] for row in agreement] if agreement is not None else None
            ),
        )


@dataclass
class ClientModel:
    """Last local model of one client."""
    client_id: str
    weights: ModelWeights

    def to_dict(self) -> Dict[str, Any]:
        return {"clientId": self.client_id, "weights": self.weights.to_dict()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClientModel":
        return cls(client_id=str(data["clientId"]), weights=ModelWeights.from_dict(data["weights"]))


@dataclass
class ExperimentData:
    """Everything needed to reload or compare a run."""
    round_history: List[RoundMetrics]
    client_models: List[ClientModel]
    server_config: ServerConfig
    saved_at: str
    global_model: Optional[ModelWeights] = None
    version: str = EXPERIMENT_FORMAT_VERSION

    @property
    def client_ids(self) -> List[str]:
        return [m.client_id for m in self.client_models]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "savedAt": self.saved_at,
            "serverConfig": self.server_config.to_dict(),
            "globalModel": self.global_model.to_dict() if self.global_model is not None else None,
            "roundHistory": [r.to_dict() for r in self.round_history],
            "clientModels": [m.to_dict() for m in self.client_models],
        }


@dataclass(frozen=True)
class Model3DPosition:
    """PCA coordinates of one model (a client or "global") at one round."""
    round: int
    entity_id: str
    x: float
    y: float
    z: float


@dataclass(frozen=True)
class SimulationSnapshot:
    """Read-only copy of the simulation state between rounds."""
    round: int
    global_weights: ModelWeights
    round_history: List[RoundMetrics]
    client_models: Dict[str, ModelWeights]
