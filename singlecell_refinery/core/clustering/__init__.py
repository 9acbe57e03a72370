"""Clustering module: SNN graphs, Leiden clustering, UMAP and markers.

Example Usage
-------------
>>> from singlecell_refinery.core.clustering import (
...     ClusteringEngine, ClusteringConfig, MarkerFinder, MarkerConfig,
... )
>>> engine = ClusteringEngine(ClusteringConfig(k=20))
>>> ds = engine.build_graph(dataset, reduction="pca", n_dims=15)
>>> sweep = engine.sweep(ds, [0.2, 0.5, 1.0])
>>> markers = MarkerFinder(MarkerConfig()).find_all_markers(sweep.dataset, "snn_res.0.5")
"""

from .config import ClusteringConfig, EmbeddingConfig, MarkerConfig
from .engine import (
    ClusteringEngine,
    ClusteringResult,
    SweepResult,
    cluster_key,
    shared_neighbor_graph,
)
from .embedding import NonlinearEmbedder, EmbeddingResult
from .de import MarkerFinder, MarkerResult, MARKER_COLUMNS

__all__ = [
    "ClusteringConfig",
    "EmbeddingConfig",
    "MarkerConfig",
    "ClusteringEngine",
    "ClusteringResult",
    "SweepResult",
    "cluster_key",
    "shared_neighbor_graph",
    "NonlinearEmbedder",
    "EmbeddingResult",
    "MarkerFinder",
    "MarkerResult",
    "MARKER_COLUMNS",
]
