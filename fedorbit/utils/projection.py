"""
3D Projection of Model Trajectories
===================================
Records flattened model vectors as rounds complete and projects them to 3D
with PCA for the trajectory view.
"""

import logging
import threading
from typing import List, Optional, Tuple

import numpy as np
from sklearn.decomposition import PCA

from fedorbit.core.types import Model3DPosition

logger = logging.getLogger("FLProjection")

GLOBAL_ENTITY = "global"


class PCAReducer:
    """
    PCA reducer over every observed vector.

    Components keep a stable orientation across refits: each component is
    flipped so that its dot product with the previously emitted component is
    non-negative. On the first fit the largest-magnitude loading of each
    component is made positive.
    """

    def __init__(self):
        self._observations: List[Tuple[int, str, np.ndarray]] = []
        self._components: Optional[np.ndarray] = None
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._observations)

    def observe(self, round_num: int, entity_id: str, vector: np.ndarray) -> None:
        """Record one model vector (a client's or the global one) for a round."""
        vector = np.asarray(vector, dtype=np.float64).ravel()
        with self._lock:
            if self._observations and self._observations[0][2].shape != vector.shape:
                raise ValueError(
                    f"Vector of length {vector.size} does not match observed length "
                    f"{self._observations[0][2].size}."
                )
            self._observations.append((int(round_num), str(entity_id), vector.copy()))

    def reset(self) -> None:
        with self._lock:
            self._observations = []
            self._components = None

    def project(self) -> List[Model3DPosition]:
        """Fit PCA on all observations and return one position per observation."""
        with self._lock:
            observations = list(self._observations)
        if not observations:
            return []

        X = np.vstack([v for _, _, v in observations])
        n_samples, n_features = X.shape
        n_components = min(3, n_samples, n_features)

        coords = np.zeros((n_samples, 3))
        if n_samples >= 2:
            pca = PCA(n_components=n_components)
            projected = pca.fit_transform(X)
            components = pca.components_.copy()
            for i in range(n_components):
                if self._should_flip(i, components[i]):
                    components[i] = -components[i]
                    projected[:, i] = -projected[:, i]
            coords[:, :n_components] = projected
            with self._lock:
                self._components = components
            logger.debug(
                f"PCA on {n_samples} vectors, explained variance "
                f"{np.round(pca.explained_variance_ratio_, 4).tolist()}"
            )

        return [
            Model3DPosition(round=r, entity_id=e, x=float(c[0]), y=float(c[1]), z=float(c[2]))
            for (r, e, _), c in zip(observations, coords)
        ]

    def _should_flip(self, index: int, component: np.ndarray) -> bool:
        previous = self._components
        if previous is not None and index < previous.shape[0]:
            return float(np.dot(component, previous[index])) < 0
        return component[int(np.argmax(np.abs(component)))] < 0
