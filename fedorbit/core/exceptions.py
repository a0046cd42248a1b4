"""
Error Taxonomy for the Federated Simulation
============================================
Every error raised by the engine derives from FederatedError so callers can
catch the whole family at the simulation boundary.
"""

from typing import Optional


class FederatedError(Exception):
    """Base class for all simulation errors."""


class ConfigError(FederatedError):
    """Raised when a ServerConfig or a config patch is invalid."""


class InvalidTransition(FederatedError):
    """Raised when a client is moved along an edge the lifecycle does not allow."""

    def __init__(self, client_id: str, current: str, target: str):
        self.client_id = client_id
        self.current = current
        self.target = target
        super().__init__(f"Client '{client_id}' cannot move from '{current}' to '{target}'.")


class InsufficientClients(FederatedError):
    """Raised when fewer clients are available than the round requires."""

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(
            f"Not enough clients available. Required: {required}, Available: {available}"
        )


class NoParticipants(FederatedError):
    """
    Aggregation was attempted with zero successfully completed clients.

    Not fatal: the orchestrator records the round as a no-op and keeps the
    previous global model.
    """

    def __init__(self, round_num: int):
        self.round_num = round_num
        super().__init__(f"No client completed round {round_num}; aggregation skipped.")


class ClientTrainingFailure(FederatedError):
    """A client failed during its local step and moves to the error state."""

    def __init__(self, client_id: str, reason: str = "local training failed"):
        self.client_id = client_id
        self.reason = reason
        super().__init__(f"Client '{client_id}': {reason}")


class DegenerateDistance(FederatedError):
    """
    Zero-vector or identical-vector input to a distance metric.

    The distance functions resolve this case with an epsilon floor and never
    raise it; the class names the condition for log messages.
    """


class ClusteringNonConvergence(FederatedError):
    """K-means hit its iteration bound. Reported as a warning, never raised."""

    def __init__(self, iterations: int):
        self.iterations = iterations
        super().__init__(f"K-means did not converge within {iterations} iterations.")


class InvalidExperimentFile(FederatedError):
    """Malformed or schema-violating experiment file."""

    def __init__(self, field: Optional[str], message: str):
        self.field = field
        self.message = message
        if field:
            super().__init__(f"Invalid experiment file: '{field}' {message}")
        else:
            super().__init__(f"Invalid experiment file: {message}")
