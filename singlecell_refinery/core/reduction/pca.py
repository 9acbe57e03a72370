"""Principal component analysis over variable features (Stage E)."""

from dataclasses import dataclass
import logging
from typing import Any, Dict, Optional

import numpy as np
import scanpy as sc

from ...utils.stats import to_dense
from ..dataset import CellDataset
from ..errors import EmptyDatasetError
from .config import ReductionConfig


@dataclass
class PCAResult:
    """Result from running PCA.

    Attributes
    ----------
    dataset : CellDataset
        Dataset with the new reduction
    name : str
        Reduction name
    k : int
        Number of components computed
    clamped : bool
        Whether ``k_max`` was reduced to fit the data
    scaled : bool
        Whether features were scaled to unit variance before PCA
    """

    dataset: Optional[CellDataset] = None
    name: str = "pca"
    k: int = 0
    clamped: bool = False
    scaled: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "k": self.k, "clamped": self.clamped, "scaled": self.scaled}


class DimensionalityReducer:
    """PCA on an explicit expression layer.

    Log-normalized layers are scaled per feature and clipped at
    ``scale_clip``; variance-stabilized residuals are only centered.

    Parameters
    ----------
    config : ReductionConfig
        Reduction configuration
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> from singlecell_refinery.core.reduction import DimensionalityReducer, ReductionConfig
    >>> result = DimensionalityReducer(ReductionConfig(k_max=50)).run_pca(dataset, layer="lognorm")
    >>> result.dataset.get_reduction("pca").k
    50
    """

    def __init__(
        self,
        config: Optional[ReductionConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or ReductionConfig()
        self.logger = logger or logging.getLogger(__name__)

    def run_pca(
        self,
        dataset: CellDataset,
        layer: Optional[str] = None,
        k_max: Optional[int] = None,
        name: str = "pca",
    ) -> PCAResult:
        """Compute principal components of the variable features of ``layer``.

        Parameters
        ----------
        dataset : CellDataset
            Input dataset (not modified)
        layer : str, optional
            Expression layer. Uses config default if None.
        k_max : int, optional
            Components to compute. Uses config default if None.
        name : str
            Name of the stored reduction

        Returns
        -------
        PCAResult
            New dataset version with the reduction

        Raises
        ------
        EmptyDatasetError
            If no variable features are selected or the data is too small
        KeyError
            If ``layer`` does not exist
        """
        import anndata as ad

        cfg = self.config
        layer = layer or cfg.layer
        k_max = k_max if k_max is not None else cfg.k_max

        out = dataset.copy()
        features = out.variable_features
        if not features:
            raise EmptyDatasetError("No variable features selected; run normalization first")

        gene_idx = out.gene_ids.get_indexer(features)
        matrix = to_dense(out.layer(layer)[:, gene_idx]).astype(np.float64)

        limit = min(out.n_cells, len(features)) - 1
        if limit < 1:
            raise EmptyDatasetError(
                f"PCA needs at least 2 cells and 2 features, got {out.n_cells} x {len(features)}"
            )
        k = min(k_max, limit)
        clamped = k < k_max
        if clamped:
            self.logger.warning(
                "Requested %d components but data is %d x %d; computing %d",
                k_max,
                out.n_cells,
                len(features),
                k,
            )

        method = out.layer_method(layer)
        scaled = not method.startswith("sctransform")

        work = ad.AnnData(X=matrix)
        if scaled:
            sc.pp.scale(work, zero_center=True, max_value=cfg.scale_clip)
        sc.pp.pca(work, n_comps=k, zero_center=True, svd_solver="arpack", random_state=cfg.random_seed)

        variance = np.asarray(work.uns["pca"]["variance"], dtype=np.float64)
        out.add_reduction(
            name,
            work.obsm["X_pca"],
            variance=variance,
            source=layer,
            n_features=len(features),
            scaled=scaled,
        )
        if name == "pca":
            loadings = np.zeros((out.n_genes, k))
            loadings[gene_idx] = work.varm["PCs"]
            out.adata.varm["PCs"] = loadings

        self.logger.info(
            "PCA on layer '%s' (%s, %d features): %d components, %.1f%% variance in PC1",
            layer,
            "scaled" if scaled else "centered",
            len(features),
            k,
            100 * float(work.uns["pca"]["variance_ratio"][0]),
        )
        return PCAResult(dataset=out, name=name, k=k, clamped=clamped, scaled=scaled)
