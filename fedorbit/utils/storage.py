"""
Experiment Persistence
======================
Serialize a finished (or paused) simulation to a single UTF-8 JSON document
and load it back with field-level validation.
"""

import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Union

from fedorbit.core.config import ServerConfig
from fedorbit.core.exceptions import ConfigError, InvalidExperimentFile
from fedorbit.core.types import (
    EXPERIMENT_FORMAT_VERSION,
    ClientModel,
    ExperimentData,
    RoundMetrics,
    SimulationSnapshot,
)
from fedorbit.core.weights import ModelWeights

logger = logging.getLogger("FLStorage")

FILENAME_PREFIX = "federated-experiment"


class ExperimentStore:
    """
    Save and load experiment files.

    Layout of a file:
        {"version", "savedAt", "serverConfig", "globalModel",
         "roundHistory": [RoundMetrics...], "clientModels": [{clientId, weights}...]}
    """

    @staticmethod
    def save(snapshot: SimulationSnapshot,
             client_models: Optional[Mapping[str, ModelWeights]],
             config: ServerConfig,
             saved_at: Optional[str] = None) -> ExperimentData:
        """
        Build an ExperimentData from a state snapshot. Pure: nothing is written.

        Args:
            snapshot: State snapshot taken between rounds.
            client_models: Last local model per client; defaults to the
                snapshot's.
            config: Config the run used.
            saved_at: ISO-8601 timestamp; defaults to now (UTC).
        """
        models = snapshot.client_models if client_models is None else client_models
        return ExperimentData(
            round_history=list(snapshot.round_history),
            client_models=[ClientModel(client_id=cid, weights=w.copy()) for cid, w in models.items()],
            server_config=config,
            saved_at=saved_at or datetime.now(timezone.utc).isoformat(),
            global_model=snapshot.global_weights.copy(),
        )

    @staticmethod
    def dumps(data: ExperimentData) -> bytes:
        return json.dumps(data.to_dict(), indent=2).encode("utf-8")

    @staticmethod
    def load(raw: Union[bytes, str]) -> ExperimentData:
        """
        Parse and validate an experiment file.

        Raises:
            InvalidExperimentFile: naming the first offending field path,
                e.g. ``roundHistory[2].globalLoss``.
        """
        try:
            text = raw.decode("utf-8") if isinstance(raw, (bytes, bytearray)) else raw
            document = json.loads(text)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise InvalidExperimentFile(None, f"not valid UTF-8 JSON ({e})") from e

        if not isinstance(document, dict):
            raise InvalidExperimentFile(None, "top level must be an object")

        _require(document, "roundHistory", list, "must be an array")
        _require(document, "clientModels", list, "must be an array")
        _require(document, "serverConfig", dict, "must be an object")
        _require(document, "savedAt", str, "must be a string")

        version = document.get("version", EXPERIMENT_FORMAT_VERSION)
        if not isinstance(version, str):
            raise InvalidExperimentFile("version", "must be a string")

        rounds = [_parse_round(entry, i) for i, entry in enumerate(document["roundHistory"])]
        models = [_parse_client_model(entry, j) for j, entry in enumerate(document["clientModels"])]

        try:
            config = ServerConfig.from_dict(document["serverConfig"])
        except ConfigError as e:
            raise InvalidExperimentFile("serverConfig", str(e)) from e

        global_model = None
        if document.get("globalModel") is not None:
            global_model = _parse_weights(document["globalModel"], "globalModel")

        return ExperimentData(
            round_history=rounds,
            client_models=models,
            server_config=config,
            saved_at=document["savedAt"],
            global_model=global_model,
            version=version,
        )

    @classmethod
    def save_to_path(cls, data: ExperimentData, directory: str = ".") -> str:
        """Write `data` to a timestamped file in `directory` and return its path."""
        os.makedirs(directory, exist_ok=True)
        stamp = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
        path = os.path.join(directory, f"{FILENAME_PREFIX}-{stamp}.json")
        with open(path, "wb") as f:
            f.write(cls.dumps(data))
        logger.info(f"Saved experiment ({len(data.round_history)} rounds) to {path}")
        return path

    @classmethod
    def load_from_path(cls, path: str) -> ExperimentData:
        with open(path, "rb") as f:
            data = cls.load(f.read())
        logger.info(f"Loaded experiment ({len(data.round_history)} rounds) from {path}")
        return data


# ============================================================================
# VALIDATION HELPERS
# ============================================================================

_NUMBER_FIELDS = ("globalLoss", "globalAccuracy", "aggregationTime")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_integer(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _require(document: Dict[str, Any], key: str, kind: type, message: str):
    if key not in document:
        raise InvalidExperimentFile(key, "is missing")
    if not isinstance(document[key], kind):
        raise InvalidExperimentFile(key, message)


def _check_ids(value: Any, field: str):
    if not isinstance(value, list) or not all(isinstance(c, str) for c in value):
        raise InvalidExperimentFile(field, "must be an array of client ids")


def _check_matrix(value: Any, field: str, integers: bool = False):
    is_entry = _is_integer if integers else _is_number
    if not isinstance(value, list):
        raise InvalidExperimentFile(field, "must be an array of rows")
    for i, row in enumerate(value):
        if not isinstance(row, list) or len(row) != len(value) or not all(is_entry(x) for x in row):
            kind = "integers" if integers else "numbers"
            raise InvalidExperimentFile(f"{field}[{i}]", f"must be a row of {len(value)} {kind}")


def _parse_round(entry: Any, index: int) -> RoundMetrics:
    path = f"roundHistory[{index}]"
    if not isinstance(entry, dict):
        raise InvalidExperimentFile(path, "must be an object")

    round_num = entry.get("round")
    if not _is_integer(round_num):
        raise InvalidExperimentFile(f"{path}.round", "must be an integer")
    if round_num != index:
        raise InvalidExperimentFile(f"{path}.round", f"must equal {index}")
    if not isinstance(entry.get("timestamp"), str):
        raise InvalidExperimentFile(f"{path}.timestamp", "must be a string")
    for key in _NUMBER_FIELDS:
        if not _is_number(entry.get(key)):
            raise InvalidExperimentFile(f"{path}.{key}", "must be a number")
    if not isinstance(entry.get("skipped", False), bool):
        raise InvalidExperimentFile(f"{path}.skipped", "must be a boolean")
    silhouette = entry.get("silhouetteAvg")
    if silhouette is not None and not _is_number(silhouette):
        raise InvalidExperimentFile(f"{path}.silhouetteAvg", "must be a number or null")

    for key in ("participatingClients", "failedClients"):
        _check_ids(entry.get(key, []), f"{path}.{key}")

    clusters = entry.get("clusters")
    if clusters is not None:
        if not isinstance(clusters, list):
            raise InvalidExperimentFile(f"{path}.clusters", "must be an array")
        for k, members in enumerate(clusters):
            _check_ids(members, f"{path}.clusters[{k}]")
    for key, integers in (("distanceMatrix", False), ("agreementMatrix", True)):
        if entry.get(key) is not None:
            _check_matrix(entry[key], f"{path}.{key}", integers)

    cluster_metrics = entry.get("clusterMetrics")
    if cluster_metrics is not None:
        if not isinstance(cluster_metrics, list):
            raise InvalidExperimentFile(f"{path}.clusterMetrics", "must be an array")
        for k, cluster in enumerate(cluster_metrics):
            field = f"{path}.clusterMetrics[{k}]"
            if not isinstance(cluster, dict):
                raise InvalidExperimentFile(field, "must be an object")
            if not _is_number(cluster.get("accuracy")):
                raise InvalidExperimentFile(f"{field}.accuracy", "must be a number")
            if not _is_integer(cluster.get("clusterId")):
                raise InvalidExperimentFile(f"{field}.clusterId", "must be an integer")
            _check_ids(cluster.get("clientIds", []), f"{field}.clientIds")
            if not isinstance(cluster.get("approximate", False), bool):
                raise InvalidExperimentFile(f"{field}.approximate", "must be a boolean")

    snapshot = entry.get("weightsSnapshot")
    if snapshot is not None:
        if not isinstance(snapshot, dict):
            raise InvalidExperimentFile(f"{path}.weightsSnapshot", "must be an object")
        for name, stats in snapshot.items():
            if not isinstance(stats, dict) or not all(_is_number(stats.get(s)) for s in ("mean", "std")):
                raise InvalidExperimentFile(f"{path}.weightsSnapshot.{name}", "must hold numeric mean and std")

    client_metrics = entry.get("clientMetrics")
    if client_metrics is not None:
        if not isinstance(client_metrics, list):
            raise InvalidExperimentFile(f"{path}.clientMetrics", "must be an array")
        for k, metrics in enumerate(client_metrics):
            field = f"{path}.clientMetrics[{k}]"
            if not isinstance(metrics, dict):
                raise InvalidExperimentFile(field, "must be an object")
            if not isinstance(metrics.get("clientId"), str):
                raise InvalidExperimentFile(f"{field}.clientId", "must be a string")
            for key in ("loss", "accuracy", "testAccuracy"):
                if not _is_number(metrics.get(key)):
                    raise InvalidExperimentFile(f"{field}.{key}", "must be a number")
            if not _is_integer(metrics.get("dataSize")):
                raise InvalidExperimentFile(f"{field}.dataSize", "must be an integer")

    return RoundMetrics.from_dict(entry)


def _parse_weights(entry: Any, path: str) -> ModelWeights:
    if not isinstance(entry, dict) or not isinstance(entry.get("tensors"), dict) or not entry["tensors"]:
        raise InvalidExperimentFile(f"{path}.tensors", "must be a non-empty object")
    for name, tensor in entry["tensors"].items():
        tensor_path = f"{path}.tensors.{name}"
        if not isinstance(tensor, dict):
            raise InvalidExperimentFile(tensor_path, "must be an object")
        shape: List[Any] = tensor.get("shape")
        values: List[Any] = tensor.get("values")
        if not isinstance(shape, list) or not all(isinstance(d, int) and d >= 0 for d in shape):
            raise InvalidExperimentFile(f"{tensor_path}.shape", "must be an array of non-negative integers")
        if not isinstance(values, list) or not all(_is_number(v) for v in values):
            raise InvalidExperimentFile(f"{tensor_path}.values", "must be an array of numbers")
        expected = 1
        for d in shape:
            expected *= d
        if len(values) != expected:
            raise InvalidExperimentFile(
                f"{tensor_path}.values", f"has {len(values)} entries, shape needs {expected}"
            )
    if not isinstance(entry.get("version", 0), int):
        raise InvalidExperimentFile(f"{path}.version", "must be an integer")
    return ModelWeights.from_dict(entry)


def _parse_client_model(entry: Any, index: int) -> ClientModel:
    path = f"clientModels[{index}]"
    if not isinstance(entry, dict):
        raise InvalidExperimentFile(path, "must be an object")
    if not isinstance(entry.get("clientId"), str):
        raise InvalidExperimentFile(f"{path}.clientId", "must be a string")
    return ClientModel(client_id=entry["clientId"], weights=_parse_weights(entry.get("weights"), f"{path}.weights"))
