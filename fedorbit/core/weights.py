"""
Model Weight Codec
==================
Structured model parameters (named tensors) and the flat-vector codec used by
clustering, PCA and the distance metrics.

Flatten order is the layout order, each tensor in C order, so
unflatten(flatten(w), layout) reproduces w exactly.
"""

import numpy as np
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Sequence, Tuple, Any


# Default MLP shape used by the simulator (small, so PCA and k-means stay fast)
DEFAULT_INPUT_SIZE = 16
DEFAULT_HIDDEN_SIZE = 8
DEFAULT_OUTPUT_SIZE = 4


@dataclass(frozen=True)
class WeightLayout:
    """Ordered tensor names and shapes describing a flat weight vector."""
    entries: Tuple[Tuple[str, Tuple[int, ...]], ...]

    @classmethod
    def mlp(cls,
            input_size: int = DEFAULT_INPUT_SIZE,
            hidden_size: int = DEFAULT_HIDDEN_SIZE,
            output_size: int = DEFAULT_OUTPUT_SIZE) -> "WeightLayout":
        """Two weight matrices and two bias vectors."""
        return cls(entries=(
            ("W1", (input_size, hidden_size)),
            ("b1", (hidden_size,)),
            ("W2", (hidden_size, output_size)),
            ("b2", (output_size,)),
        ))

    @property
    def names(self) -> List[str]:
        return [name for name, _ in self.entries]

    @property
    def size(self) -> int:
        """Length of the flattened vector."""
        return int(sum(int(np.prod(shape)) for _, shape in self.entries))

    def slices(self) -> Iterator[Tuple[str, Tuple[int, ...], slice]]:
        """Yield (name, shape, slice into the flat vector) in layout order."""
        offset = 0
        for name, shape in self.entries:
            count = int(np.prod(shape))
            yield name, shape, slice(offset, offset + count)
            offset += count


class ModelWeights:
    """
    Named model tensors plus a version counter.

    Equality is exact: same version, same tensor names in the same order, and
    bitwise-equal float64 values.
    """

    def __init__(self, tensors: Dict[str, np.ndarray], version: int = 0):
        if not tensors:
            raise ValueError("ModelWeights needs at least one tensor.")
        self.tensors: Dict[str, np.ndarray] = {
            name: np.array(value, dtype=np.float64) for name, value in tensors.items()
        }
        self.version = int(version)

    @property
    def layout(self) -> WeightLayout:
        return WeightLayout(entries=tuple(
            (name, tuple(int(d) for d in value.shape)) for name, value in self.tensors.items()
        ))

    def __getitem__(self, name: str) -> np.ndarray:
        return self.tensors[name]

    def __iter__(self):
        return iter(self.tensors)

    def items(self):
        return self.tensors.items()

    def copy(self) -> "ModelWeights":
        return ModelWeights({k: v.copy() for k, v in self.tensors.items()}, version=self.version)

    def with_version(self, version: int) -> "ModelWeights":
        clone = self.copy()
        clone.version = int(version)
        return clone

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ModelWeights):
            return NotImplemented
        if self.version != other.version:
            return False
        if list(self.tensors) != list(other.tensors):
            return False
        return all(np.array_equal(self.tensors[k], other.tensors[k]) for k in self.tensors)

    __hash__ = None

    def allclose(self, other: "ModelWeights", atol: float = 1e-9) -> bool:
        """Value comparison up to floating-point tolerance (version ignored)."""
        if list(self.tensors) != list(other.tensors):
            return False
        return all(
            self.tensors[k].shape == other.tensors[k].shape
            and np.allclose(self.tensors[k], other.tensors[k], atol=atol)
            for k in self.tensors
        )

    def __repr__(self) -> str:
        shapes = ", ".join(f"{k}{tuple(v.shape)}" for k, v in self.tensors.items())
        return f"ModelWeights(version={self.version}, {shapes})"

    def to_dict(self) -> Dict[str, Any]:
        """JSON-compatible representation."""
        return {
            "version": self.version,
            "tensors": {
                name: {"shape": list(value.shape), "values": value.ravel().tolist()}
                for name, value in self.tensors.items()
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ModelWeights":
        tensors = {}
        for name, entry in data["tensors"].items():
            values = np.asarray(entry["values"], dtype=np.float64)
            tensors[name] = values.reshape(tuple(entry["shape"]))
        return cls(tensors, version=data.get("version", 0))


# ============================================================================
# FLAT VECTOR CODEC
# ============================================================================

def flatten_weights(weights: ModelWeights) -> np.ndarray:
    """Flatten all tensors into a single float64 vector in layout order."""
    return np.concatenate([w.ravel() for w in weights.tensors.values()]).astype(np.float64)


def unflatten_weights(vector: np.ndarray,
                      layout: WeightLayout,
                      version: int = 0) -> ModelWeights:
    """
    Restore structured weights from a flat vector.

    Raises:
        ValueError: if the vector length does not match the layout.
    """
    vector = np.asarray(vector, dtype=np.float64)
    if vector.ndim != 1 or vector.size != layout.size:
        raise ValueError(
            f"Vector of shape {vector.shape} does not match layout size {layout.size}."
        )
    tensors = {name: vector[s].reshape(shape).copy() for name, shape, s in layout.slices()}
    return ModelWeights(tensors, version=version)


def weighted_average(weights_list: Sequence[ModelWeights],
                     coefficients: Sequence[float],
                     version: Optional[int] = None) -> ModelWeights:
    """
    Combine models tensor by tensor: sum_i c_i * w_i.

    Coefficients are used as given; callers normalize them.
    """
    if not weights_list:
        raise ValueError("Cannot average an empty list of models.")
    if len(weights_list) != len(coefficients):
        raise ValueError("One coefficient per model is required.")

    reference = weights_list[0]
    aggregated = {name: np.zeros_like(value) for name, value in reference.items()}
    for weights, coef in zip(weights_list, coefficients):
        for name in aggregated:
            aggregated[name] += coef * weights[name]

    if version is None:
        version = max(w.version for w in weights_list)
    return ModelWeights(aggregated, version=version)


def coordinate_median(weights_list: Sequence[ModelWeights],
                      version: Optional[int] = None) -> ModelWeights:
    """Element-wise median per tensor; an even count averages the two middle values."""
    if not weights_list:
        raise ValueError("Cannot take the median of an empty list of models.")
    reference = weights_list[0]
    median = {
        name: np.median(np.stack([w[name] for w in weights_list]), axis=0)
        for name in reference
    }
    if version is None:
        version = max(w.version for w in weights_list)
    return ModelWeights(median, version=version)


def compute_weights_snapshot(weights: ModelWeights) -> Dict[str, Dict[str, float]]:
    """Mean and standard deviation per tensor, for trend charts."""
    return {
        name: {"mean": float(np.mean(value)), "std": float(np.std(value))}
        for name, value in weights.items()
    }


def initialize_mlp_weights(layout: WeightLayout,
                           rng: np.random.Generator) -> ModelWeights:
    """
    Xavier-style uniform initialization for weight matrices, zeros for biases.
    """
    tensors = {}
    for name, shape in layout.entries:
        if len(shape) == 2:
            limit = np.sqrt(2.0 / (shape[0] + shape[1]))
            tensors[name] = (rng.random(shape) - 0.5) * 2 * limit
        else:
            tensors[name] = np.zeros(shape)
    return ModelWeights(tensors, version=0)
