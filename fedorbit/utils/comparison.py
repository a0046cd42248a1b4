"""
Cross-Experiment Comparison
===========================
Aligns metrics of several saved experiments by round and scores how similar
their client models are.
"""

import logging
from collections import defaultdict
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from fedorbit.core.distance import DistanceMetric, compute_distance, similarity_from_distance
from fedorbit.core.types import ExperimentData
from fedorbit.core.weights import flatten_weights

logger = logging.getLogger("FLComparison")


class ComparisonEngine:
    """
    Read-only comparison over N >= 1 experiments.

    Experiments are referred to by their position in the input list.
    """

    def __init__(self,
                 experiments: Sequence[ExperimentData],
                 metric: Optional[Union[str, DistanceMetric]] = None):
        """
        Args:
            experiments: Loaded experiments, in display order.
            metric: Metric for model similarity; defaults to the first
                experiment's configured distance metric.
        """
        if not experiments:
            raise ValueError("ComparisonEngine needs at least one experiment.")
        self.experiments = list(experiments)
        self.metric = (
            DistanceMetric.parse(metric) if metric is not None
            else self.experiments[0].server_config.distance_metric
        )

    @property
    def num_rounds(self) -> int:
        """Length of the longest round history."""
        return max(len(e.round_history) for e in self.experiments)

    def _round_index(self) -> pd.RangeIndex:
        return pd.RangeIndex(self.num_rounds, name="round")

    def labels(self) -> List[str]:
        """aggregationMethod of each experiment."""
        return [e.server_config.aggregation_method for e in self.experiments]

    # ------------------------------------------------------------------
    # Round-aligned series
    # ------------------------------------------------------------------

    def global_series(self) -> pd.DataFrame:
        """
        Global loss and accuracy per round.

        Columns are (experiment index, "loss" | "accuracy"); rounds an
        experiment did not reach are NaN.
        """
        columns = pd.MultiIndex.from_product(
            [range(len(self.experiments)), ["loss", "accuracy"]],
            names=["experiment", "metric"],
        )
        frame = pd.DataFrame(np.nan, index=self._round_index(), columns=columns)
        for i, experiment in enumerate(self.experiments):
            for metrics in experiment.round_history:
                frame.loc[metrics.round, (i, "loss")] = metrics.global_loss
                frame.loc[metrics.round, (i, "accuracy")] = metrics.global_accuracy
        return frame

    def cluster_accuracy_series(self) -> pd.DataFrame:
        """Per-cluster accuracy per round, columns (experiment index, clusterId)."""
        series: Dict[Tuple[int, int], Dict[int, float]] = defaultdict(dict)
        for i, experiment in enumerate(self.experiments):
            for metrics in experiment.round_history:
                for cluster in metrics.cluster_metrics or []:
                    series[(i, cluster.cluster_id)][metrics.round] = cluster.accuracy

        index = self._round_index()
        if not series:
            return pd.DataFrame(index=index)
        frame = pd.DataFrame(
            {key: pd.Series(values, dtype=float) for key, values in sorted(series.items())}
        ).reindex(index)
        frame.columns = pd.MultiIndex.from_tuples(frame.columns, names=["experiment", "clusterId"])
        return frame

    def cluster_summary(self) -> pd.DataFrame:
        """Mean and std of cluster accuracies per round, columns (experiment, "mean" | "std")."""
        return self._summary(
            lambda metrics: [c.accuracy for c in metrics.cluster_metrics or []]
        )

    def client_summary(self) -> pd.DataFrame:
        """Mean and std of client accuracies per round, columns (experiment, "mean" | "std")."""
        return self._summary(
            lambda metrics: [c.accuracy for c in metrics.client_metrics or []]
        )

    def _summary(self, values_of) -> pd.DataFrame:
        columns = pd.MultiIndex.from_product(
            [range(len(self.experiments)), ["mean", "std"]],
            names=["experiment", "statistic"],
        )
        frame = pd.DataFrame(np.nan, index=self._round_index(), columns=columns)
        for i, experiment in enumerate(self.experiments):
            for metrics in experiment.round_history:
                values = values_of(metrics)
                if values:
                    frame.loc[metrics.round, (i, "mean")] = float(np.mean(values))
                    frame.loc[metrics.round, (i, "std")] = float(np.std(values))
        return frame

    # ------------------------------------------------------------------
    # Model similarity
    # ------------------------------------------------------------------

    def pairwise_similarity(self, a: ExperimentData, b: ExperimentData) -> float:
        """
        Similarity of two experiments' client models, in [0, 1].

        Mean per-client similarity over shared client ids; when no ids are
        shared, the similarity of the mean client vectors. 0 if either
        experiment has no client models.
        """
        if not a.client_models or not b.client_models:
            return 0.0
        vectors_a = {m.client_id: flatten_weights(m.weights) for m in a.client_models}
        vectors_b = {m.client_id: flatten_weights(m.weights) for m in b.client_models}

        shared = sorted(set(vectors_a) & set(vectors_b))
        if shared:
            scores = [
                similarity_from_distance(compute_distance(vectors_a[c], vectors_b[c], self.metric), self.metric)
                for c in shared
            ]
            score = float(np.mean(scores))
        else:
            mean_a = np.mean(list(vectors_a.values()), axis=0)
            mean_b = np.mean(list(vectors_b.values()), axis=0)
            score = similarity_from_distance(compute_distance(mean_a, mean_b, self.metric), self.metric)
        return float(np.clip(score, 0.0, 1.0))

    def similarity_matrix(self) -> np.ndarray:
        """Symmetric NxN matrix with unit diagonal."""
        n = len(self.experiments)
        matrix = np.eye(n)
        for i in range(n):
            for j in range(i + 1, n):
                score = self.pairwise_similarity(self.experiments[i], self.experiments[j])
                matrix[i, j] = score
                matrix[j, i] = score
        logger.info(f"Similarity matrix over {n} experiments ({self.metric.value}).")
        return matrix
