"""
Chart Builders
==============
Plotly figures for the 3D model trajectories, cross-experiment comparison and
similarity heatmap. ``write_figures`` saves them as standalone HTML pages;
other rendering is left to the caller.
"""

import logging
import os
from collections import defaultdict
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
import plotly.graph_objects as go

from fedorbit.core.types import Model3DPosition
from fedorbit.utils.comparison import ComparisonEngine
from fedorbit.utils.projection import GLOBAL_ENTITY

logger = logging.getLogger("FLCharts")

_PALETTE = ["#00d4ff", "#ff00ff", "#ffff00", "#00ff88", "#ff8800", "#8888ff", "#ff4466", "#44ffcc"]


def _dark_layout(fig: go.Figure, title: str, height: int = 400) -> go.Figure:
    fig.update_layout(
        title=dict(text=title, font=dict(color="#fff")),
        template="plotly_dark",
        plot_bgcolor='rgba(0,0,0,0)',
        paper_bgcolor='rgba(0,0,0,0)',
        margin=dict(l=10, r=10, t=40, b=10),
        height=height
    )
    return fig


def create_trajectory_figure(positions: Sequence[Model3DPosition],
                             title: str = "Model Trajectories (PCA)") -> go.Figure:
    """
    Create a 3D trajectory plot with one trace per entity.

    Args:
        positions: Output of the PCA reducer.
        title: Chart title.

    Returns:
        Plotly figure.
    """
    tracks: Dict[str, List[Model3DPosition]] = defaultdict(list)
    for p in positions:
        tracks[p.entity_id].append(p)

    fig = go.Figure()
    clients = sorted(e for e in tracks if e != GLOBAL_ENTITY)
    for i, entity in enumerate(clients):
        track = sorted(tracks[entity], key=lambda p: p.round)
        fig.add_trace(go.Scatter3d(
            x=[p.x for p in track], y=[p.y for p in track], z=[p.z for p in track],
            mode='lines+markers',
            line=dict(width=2, color=_PALETTE[i % len(_PALETTE)]),
            marker=dict(size=3),
            text=[f"{entity} r{p.round}" for p in track],
            hoverinfo="text",
            name=entity
        ))

    if GLOBAL_ENTITY in tracks:
        track = sorted(tracks[GLOBAL_ENTITY], key=lambda p: p.round)
        fig.add_trace(go.Scatter3d(
            x=[p.x for p in track], y=[p.y for p in track], z=[p.z for p in track],
            mode='lines+markers',
            line=dict(width=6, color="#ffffff"),
            marker=dict(size=6, symbol='diamond', color="#ffffff"),
            text=[f"global r{p.round}" for p in track],
            hoverinfo="text",
            name="Global"
        ))

    return _dark_layout(fig, title, height=600)


def create_comparison_figure(series: pd.DataFrame,
                             labels: Sequence[str],
                             metric: str = "accuracy",
                             title: Optional[str] = None) -> go.Figure:
    """
    Line chart of one global metric across experiments.

    Args:
        series: Output of ComparisonEngine.global_series().
        labels: Display label per experiment index.
        metric: "loss" or "accuracy".
    """
    fig = go.Figure()
    for i, label in enumerate(labels):
        values = series[(i, metric)]
        fig.add_trace(go.Scatter(
            x=list(series.index), y=values.tolist(),
            mode='lines+markers',
            line=dict(color=_PALETTE[i % len(_PALETTE)], width=3),
            marker=dict(size=6),
            name=f"#{i + 1} {label}",
            connectgaps=False
        ))
    fig.update_xaxes(title_text="Round")
    fig.update_yaxes(title_text=metric.capitalize())
    return _dark_layout(fig, title or f"Global {metric} by round")


def create_summary_figure(summary: pd.DataFrame,
                          labels: Sequence[str],
                          title: str = "Accuracy mean ± std") -> go.Figure:
    """Mean line with a ±std error band per experiment (cluster or client summary)."""
    fig = go.Figure()
    for i, label in enumerate(labels):
        mean = summary[(i, "mean")]
        std = summary[(i, "std")]
        fig.add_trace(go.Scatter(
            x=list(summary.index), y=mean.tolist(),
            error_y=dict(type='data', array=std.fillna(0).tolist(), visible=True),
            mode='lines+markers',
            line=dict(color=_PALETTE[i % len(_PALETTE)], width=2),
            name=f"#{i + 1} {label}"
        ))
    fig.update_xaxes(title_text="Round")
    return _dark_layout(fig, title)


def create_similarity_heatmap(matrix: np.ndarray,
                              labels: Sequence[str],
                              title: str = "Model similarity") -> go.Figure:
    """Heatmap of the experiment similarity matrix (values in [0, 1])."""
    names = [f"#{i + 1} {label}" for i, label in enumerate(labels)]
    fig = go.Figure(go.Heatmap(
        z=np.asarray(matrix).tolist(),
        x=names,
        y=names,
        zmin=0.0,
        zmax=1.0,
        colorscale="Viridis",
        text=[[f"{v:.3f}" for v in row] for row in np.asarray(matrix)],
        texttemplate="%{text}"
    ))
    return _dark_layout(fig, title)


def write_figures(directory: str,
                  positions: Sequence[Model3DPosition],
                  engine: Optional[ComparisonEngine] = None,
                  prefix: str = "experiment") -> List[str]:
    """
    Save the trajectory figure, plus the comparison figures when `engine` is
    given, as HTML files named ``<prefix>-<figure>.html``.

    Returns:
        Paths written, trajectory first.
    """
    os.makedirs(directory, exist_ok=True)
    figures = {"trajectory": create_trajectory_figure(positions)}
    if engine is not None:
        labels = engine.labels()
        series = engine.global_series()
        figures["accuracy"] = create_comparison_figure(series, labels, metric="accuracy")
        figures["loss"] = create_comparison_figure(series, labels, metric="loss")
        figures["clients"] = create_summary_figure(engine.client_summary(), labels,
                                                   title="Client accuracy mean ± std")
        figures["similarity"] = create_similarity_heatmap(engine.similarity_matrix(), labels)

    paths = []
    for name, fig in figures.items():
        path = os.path.join(directory, f"{prefix}-{name}.html")
        fig.write_html(path, include_plotlyjs="cdn")
        paths.append(path)
    logger.info(f"Wrote {len(paths)} figures to {directory}")
    return paths
