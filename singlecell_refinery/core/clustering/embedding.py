"""UMAP embedding for visualization (Stage H)."""

from dataclasses import dataclass
import logging
from typing import Any, Dict, Optional

import numpy as np
import scanpy as sc

from ..dataset import CellDataset
from ..reduction.selection import validate_pc_num
from .config import EmbeddingConfig


@dataclass
class EmbeddingResult:
    """Result from computing a UMAP embedding."""

    dataset: Optional[CellDataset] = None
    reduction: str = "pca"
    n_dims: int = 0
    n_components: int = 2

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reduction": self.reduction,
            "n_dims": self.n_dims,
            "n_components": self.n_components,
        }


class NonlinearEmbedder:
    """UMAP over the same first PCNum dimensions used for clustering.

    Parameters
    ----------
    config : EmbeddingConfig
        Embedding configuration
    logger : logging.Logger, optional
        Logger instance
    """

    def __init__(
        self,
        config: Optional[EmbeddingConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or EmbeddingConfig()
        self.logger = logger or logging.getLogger(__name__)

    def run(
        self,
        dataset: CellDataset,
        reduction: str = "pca",
        n_dims: Optional[int] = None,
        n_components: Optional[int] = None,
    ) -> EmbeddingResult:
        """Embed cells and store the coordinates as reduction 'umap'.

        Raises
        ------
        DimensionMismatchError
            If ``n_dims`` exceeds the reduction's dimensionality
        """
        import anndata as ad

        cfg = self.config
        n_components = n_components or cfg.n_components
        out = dataset.copy()
        red = out.get_reduction(reduction)
        if n_dims is None:
            selection = out.adata.uns.get("dimension_selection", {}).get(reduction)
            n_dims = int(selection["pc_num"]) if selection is not None else red.k
        coords = validate_pc_num(red, n_dims)

        work = ad.AnnData(X=np.zeros((out.n_cells, 1), dtype=np.float32))
        work.obsm["X_input"] = np.ascontiguousarray(coords)
        n_neighbors = max(2, min(cfg.n_neighbors, out.n_cells - 1))
        sc.pp.neighbors(
            work,
            n_neighbors=n_neighbors,
            use_rep="X_input",
            random_state=cfg.random_seed,
        )
        sc.tl.umap(
            work,
            n_components=n_components,
            min_dist=cfg.min_dist,
            random_state=cfg.random_seed,
        )

        out.add_reduction(
            "umap",
            work.obsm["X_umap"],
            source=reduction,
            n_dims=n_dims,
        )
        self.logger.info(
            "UMAP (%d components) from %s[:%d], n_neighbors=%d",
            n_components,
            reduction,
            n_dims,
            n_neighbors,
        )
        return EmbeddingResult(
            dataset=out, reduction=reduction, n_dims=n_dims, n_components=n_components
        )
