import argparse
import json
import os
from typing import Any, Dict

from fedorbit.core.client import ClientManager
from fedorbit.core.config import ServerConfig, apply_config
from fedorbit.core.server import RoundOrchestrator
from fedorbit.utils.charts import write_figures
from fedorbit.utils.comparison import ComparisonEngine
from fedorbit.utils.logging_utils import get_logger, init_logging
from fedorbit.utils.storage import ExperimentStore


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run a federated learning simulation and save the experiment file."
    )

    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to a JSON serverConfig file (camelCase keys).",
    )
    parser.add_argument(
        "--strategy",
        type=str,
        default=None,
        choices=["none", "50-50", "gravity"],
        help="Override: clientAggregationMethod.",
    )
    parser.add_argument(
        "--aggregation",
        type=str,
        default=None,
        help="Override: aggregationMethod (fedavg, fedprox, simple, median; 'clustered' enables clustering).",
    )
    parser.add_argument(
        "--clustering",
        type=str,
        default=None,
        choices=["kmeans", "louvain", "agreement"],
        help="Override: clusteringMethod.",
    )
    parser.add_argument(
        "--metric",
        type=str,
        default=None,
        choices=["l1", "l2", "cosine"],
        help="Override: distance metric.",
    )
    parser.add_argument(
        "--clusters",
        type=int,
        default=None,
        help="Override: k-means numClusters (omit for automatic).",
    )
    parser.add_argument(
        "--rounds",
        type=int,
        default=None,
        help="Override: number of rounds.",
    )
    parser.add_argument(
        "--clients",
        type=int,
        default=10,
        help="Number of simulated clients.",
    )
    parser.add_argument(
        "--groups",
        type=int,
        default=3,
        help="Number of latent client groups.",
    )
    parser.add_argument(
        "--failure-rate",
        type=float,
        default=0.0,
        dest="failure_rate",
        help="Per-round client failure probability.",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Override: random seed.",
    )
    parser.add_argument(
        "--output-dir",
        type=str,
        default="experiments",
        dest="output_dir",
        help="Directory for the experiment file.",
    )
    parser.add_argument(
        "--compare",
        type=str,
        nargs="*",
        default=None,
        help="Experiment files to compare with the new run.",
    )
    parser.add_argument(
        "--plot",
        action="store_true",
        help="Write the trajectory (and comparison) figures as HTML next to the experiment file.",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        dest="log_level",
    )
    parser.add_argument(
        "--log-file",
        type=str,
        default=None,
        dest="log_file",
    )

    return parser.parse_args()


def build_config(args: argparse.Namespace) -> ServerConfig:
    config = ServerConfig()
    if args.config is not None:
        with open(args.config, "r", encoding="utf-8") as f:
            config = ServerConfig.from_dict(json.load(f))

    overrides: Dict[str, Any] = {}
    if args.strategy is not None:
        overrides["clientAggregationMethod"] = args.strategy
    if args.aggregation is not None:
        overrides["aggregationMethod"] = args.aggregation
    if args.metric is not None:
        overrides["distanceMetric"] = args.metric
    if args.rounds is not None:
        overrides["totalRounds"] = args.rounds
    if args.seed is not None:
        overrides["seed"] = args.seed
    if args.clusters is not None:
        overrides["kmeans"] = {"numClusters": args.clusters}
    if args.clustering is not None:
        overrides["clusteringMethod"] = args.clustering
    clustering = args.clustering or config.clustering_method
    needs_kmeans = clustering == "kmeans" and (args.strategy == "gravity" or args.aggregation == "clustered")
    if needs_kmeans and config.kmeans is None and "kmeans" not in overrides:
        overrides["kmeans"] = {"numClusters": None}

    return apply_config(config, overrides) if overrides else config


def main() -> None:
    args = parse_args()
    init_logging(log_level=args.log_level, log_file=args.log_file)
    logger = get_logger("FedRunner")

    config = build_config(args)
    logger.info(f"Resolved configuration: {config.to_dict()}")

    clients = ClientManager(
        num_clients=args.clients,
        num_groups=args.groups,
        failure_rate=args.failure_rate,
        seed=config.seed,
    )
    orchestrator = RoundOrchestrator(config, clients)
    orchestrator.subscribe(
        lambda states, m: logger.info(
            f"Round {m.round}: loss={m.global_loss:.4f} acc={m.global_accuracy:.4f} "
            f"failed={len(m.failed_clients)}"
        )
    )
    orchestrator.run()

    data = orchestrator.get_experiment_data()
    path = ExperimentStore.save_to_path(data, args.output_dir)
    logger.info(f"Experiment saved to {path}")

    engine = None
    if args.compare:
        experiments = [data] + [ExperimentStore.load_from_path(p) for p in args.compare]
        engine = ComparisonEngine(experiments)
        logger.info(f"Labels: {engine.labels()}")
        logger.info(f"Similarity matrix:\n{engine.similarity_matrix()}")
        logger.info(f"Global series:\n{engine.global_series()}")

    if args.plot:
        prefix = os.path.splitext(os.path.basename(path))[0]
        for figure_path in write_figures(args.output_dir, orchestrator.positions_3d(), engine, prefix=prefix):
            logger.info(f"Figure written to {figure_path}")


if __name__ == "__main__":
    main()
