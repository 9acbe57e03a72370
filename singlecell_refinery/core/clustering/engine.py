"""Graph-based clustering (Stage G).

Builds a shared-nearest-neighbor graph over the first PCNum dimensions of a
reduction and partitions it with the Leiden algorithm. Each resolution
writes its own ``snn_res.<resolution>`` column, so sweeps never overwrite
earlier results.
"""

from dataclasses import dataclass, field
import logging
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from scipy import sparse
from sklearn.neighbors import NearestNeighbors

from ..dataset import CellDataset, NeighborGraph
from ..reduction.selection import validate_pc_num
from .config import ClusteringConfig


DEFAULT_GRAPH = "snn"


def cluster_key(resolution: float) -> str:
    """Metadata column for a resolution, e.g. ``snn_res.0.8``."""
    return f"snn_res.{float(resolution):g}"


@dataclass
class ClusteringResult:
    """Result from clustering at one resolution.

    Attributes
    ----------
    dataset : CellDataset
        Dataset with the new cluster column
    resolution : float
        Leiden resolution
    cluster_key : str
        Column in cell metadata holding the assignments
    n_clusters : int
        Number of clusters found
    cluster_sizes : Dict[str, int]
        Map of cluster ID to cell count
    """

    dataset: Optional[CellDataset] = None
    resolution: float = 0.0
    cluster_key: str = ""
    n_clusters: int = 0
    cluster_sizes: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resolution": self.resolution,
            "cluster_key": self.cluster_key,
            "n_clusters": self.n_clusters,
        }


@dataclass
class SweepResult:
    """Result from clustering at several resolutions on one graph."""

    dataset: Optional[CellDataset] = None
    results: List[ClusteringResult] = field(default_factory=list)

    @property
    def summary(self) -> pd.DataFrame:
        """One row per resolution with its column and cluster count."""
        return pd.DataFrame([r.to_dict() for r in self.results])

    def to_dict(self) -> Dict[str, Any]:
        return {"resolutions": [r.to_dict() for r in self.results]}


def shared_neighbor_graph(knn: sparse.csr_matrix, prune: float) -> sparse.csr_matrix:
    """Jaccard overlap of kNN sets, with weights below ``prune`` removed.

    Parameters
    ----------
    knn : sparse.csr_matrix
        Binary (cells x cells) kNN membership, each row containing the cell
        itself and its k-1 neighbors
    prune : float
        Minimum Jaccard weight kept

    Returns
    -------
    sparse.csr_matrix
        Symmetric SNN adjacency
    """
    knn = sparse.csr_matrix(knn, dtype=np.float64)
    shared = (knn @ knn.T).tocoo()
    k_row = np.asarray(knn.sum(axis=1)).ravel()
    union = k_row[shared.row] + k_row[shared.col] - shared.data
    jaccard = shared.data / union
    keep = jaccard >= prune
    snn = sparse.csr_matrix(
        (jaccard[keep], (shared.row[keep], shared.col[keep])), shape=knn.shape
    )
    snn.eliminate_zeros()
    return snn


class ClusteringEngine:
    """SNN graph construction and Leiden clustering.

    Parameters
    ----------
    config : ClusteringConfig, optional
        Clustering configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> from singlecell_refinery.core.clustering import ClusteringEngine
    >>> engine = ClusteringEngine()
    >>> ds = engine.build_graph(dataset, reduction="pca", n_dims=12)
    >>> result = engine.cluster(ds, resolution=0.5)
    >>> result.cluster_key
    'snn_res.0.5'
    """

    def __init__(
        self,
        config: Optional[ClusteringConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or ClusteringConfig()
        self.logger = logger or logging.getLogger(__name__)

    def build_graph(
        self,
        dataset: CellDataset,
        reduction: Optional[str] = None,
        n_dims: Optional[int] = None,
        k: Optional[int] = None,
        prune: Optional[float] = None,
        name: str = DEFAULT_GRAPH,
    ) -> CellDataset:
        """Build kNN and SNN graphs over the first ``n_dims`` dimensions.

        Parameters
        ----------
        dataset : CellDataset
            Input dataset (not modified)
        reduction : str, optional
            Reduction name. Uses config default if None.
        n_dims : int, optional
            PCNum; defaults to the stored dimension selection, else all dims
        k : int, optional
            Neighbors per cell including itself. Uses config default if None.
        prune : float, optional
            Jaccard pruning cutoff. Uses config default if None.
        name : str
            Graph name

        Returns
        -------
        CellDataset
            New dataset version holding the graph

        Raises
        ------
        DimensionMismatchError
            If ``n_dims`` exceeds the reduction's dimensionality
        """
        cfg = self.config
        reduction = reduction or cfg.reduction
        k = k if k is not None else cfg.k
        prune = prune if prune is not None else cfg.prune

        out = dataset.copy()
        red = out.get_reduction(reduction)
        if n_dims is None:
            selection = out.adata.uns.get("dimension_selection", {}).get(reduction)
            n_dims = int(selection["pc_num"]) if selection is not None else red.k
        coords = validate_pc_num(red, n_dims)

        k_eff = max(1, min(k, out.n_cells))
        if k_eff < k:
            self.logger.warning("k=%d exceeds the number of cells; using k=%d", k, k_eff)

        nn = NearestNeighbors(n_neighbors=k_eff, metric="euclidean")
        nn.fit(coords)
        knn = nn.kneighbors_graph(coords, mode="connectivity").tocsr()
        knn.setdiag(1.0)
        snn = shared_neighbor_graph(knn, prune)

        out.add_graph(name, knn, snn, reduction=reduction, n_dims=n_dims, k=k_eff)
        self.logger.info(
            "Built SNN graph '%s' on %s[:%d] (k=%d, prune=%.4f): %d edges",
            name,
            reduction,
            n_dims,
            k_eff,
            prune,
            snn.nnz,
        )
        return out

    def _leiden(self, dataset: CellDataset, graph: NeighborGraph, resolution: float) -> np.ndarray:
        import anndata as ad
        import scanpy as sc

        work = ad.AnnData(
            X=np.zeros((dataset.n_cells, 1), dtype=np.float32),
            obs=pd.DataFrame(index=dataset.cell_ids.copy()),
        )
        sc.tl.leiden(
            work,
            resolution=resolution,
            adjacency=graph.snn,
            random_state=self.config.random_seed,
            key_added="leiden",
            flavor="igraph",
            n_iterations=self.config.n_iterations,
            directed=False,
        )
        return work.obs["leiden"].astype(str).to_numpy()

    def cluster(
        self,
        dataset: CellDataset,
        resolution: Optional[float] = None,
        graph: str = DEFAULT_GRAPH,
    ) -> ClusteringResult:
        """Partition a stored SNN graph at ``resolution``.

        Resolution 0 puts every cell in cluster '0'.

        Parameters
        ----------
        dataset : CellDataset
            Dataset with a graph from :meth:`build_graph` (not modified)
        resolution : float, optional
            Leiden resolution. Uses config default if None.
        graph : str
            Graph name

        Returns
        -------
        ClusteringResult
            New dataset version with column ``snn_res.<resolution>``
        """
        resolution = float(resolution if resolution is not None else self.config.resolution)
        if resolution < 0:
            raise ValueError(f"resolution must be >= 0, got {resolution}")

        out = dataset.copy()
        snn = out.get_graph(graph)
        if resolution == 0:
            labels = np.full(out.n_cells, "0", dtype=object)
        else:
            labels = self._leiden(out, snn, resolution)

        key = cluster_key(resolution)
        categories = sorted(pd.unique(labels), key=lambda c: (len(c), c))
        out.obs[key] = pd.Categorical(labels, categories=categories)

        sizes = out.obs[key].value_counts().to_dict()
        result = ClusteringResult(
            dataset=out,
            resolution=resolution,
            cluster_key=key,
            n_clusters=int(out.obs[key].nunique()),
            cluster_sizes={str(c): int(n) for c, n in sizes.items()},
        )
        self.logger.info(
            "Leiden at resolution %g: %d clusters -> obs['%s']",
            resolution,
            result.n_clusters,
            key,
        )
        return result

    def sweep(
        self,
        dataset: CellDataset,
        resolutions: Optional[Sequence[float]] = None,
        graph: str = DEFAULT_GRAPH,
    ) -> SweepResult:
        """Cluster independently at each resolution, one column per resolution."""
        resolutions = list(resolutions if resolutions is not None else self.config.resolutions)
        current = dataset
        results = []
        for resolution in resolutions:
            result = self.cluster(current, resolution, graph=graph)
            current = result.dataset
            results.append(result)
        for result in results:
            result.dataset = current
        return SweepResult(dataset=current, results=results)
