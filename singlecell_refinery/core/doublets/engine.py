"""Artificial-doublet detection (Stage I).

Artificial doublets are made by averaging the raw counts of random pairs of
real cells. Real and artificial cells are log-normalized, scaled and
projected together, and every real cell is scored by the proportion of its
nearest neighbors that are artificial (pANN). The ``nExp`` real cells with
the highest pANN are called doublets.
"""

from dataclasses import asdict, dataclass
import logging
from typing import Any, Dict, Optional

import numpy as np
import pandas as pd
import scanpy as sc
from scipy import sparse
from sklearn.neighbors import NearestNeighbors

from ...utils.stats import to_dense
from ..dataset import COUNTS_LAYER, CellDataset
from ..errors import EmptyDatasetError
from ..preprocessing.normalization import log_normalize
from .config import DoubletConfig


DOUBLET = "doublet"
SINGLET = "singlet"


@dataclass
class DoubletResult:
    """Result from doublet detection.

    Attributes
    ----------
    dataset : CellDataset
        Dataset with pANN and doublet_class columns
    n_artificial : int
        Artificial doublets simulated
    k : int
        Neighbors per real cell
    n_dims : int
        Principal components used
    n_exp : int
        Number of cells called doublets
    homotypic_proportion : float
        Estimated homotypic proportion (0 unless adjusted)
    """

    dataset: Optional[CellDataset] = None
    n_artificial: int = 0
    k: int = 0
    n_dims: int = 0
    n_exp: int = 0
    homotypic_proportion: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "n_artificial": self.n_artificial,
            "k": self.k,
            "n_dims": self.n_dims,
            "n_exp": self.n_exp,
            "homotypic_proportion": round(self.homotypic_proportion, 4),
        }


def homotypic_proportion(labels: pd.Series) -> float:
    """Probability that two random cells share an annotation: sum of squared frequencies."""
    freq = labels.astype(str).value_counts(normalize=True).to_numpy()
    return float(np.sum(freq ** 2))


class DoubletDetector:
    """Doublet caller based on the proportion of artificial nearest neighbors.

    Parameters
    ----------
    config : DoubletConfig
        Detector configuration
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> from singlecell_refinery.core.doublets import DoubletDetector, DoubletConfig
    >>> result = DoubletDetector(DoubletConfig(pK=0.01)).run(dataset, n_dims=12)
    >>> (result.dataset.obs["doublet_class"] == "doublet").sum()
    """

    def __init__(
        self,
        config: Optional[DoubletConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or DoubletConfig()
        self.logger = logger or logging.getLogger(__name__)
        if not 0.0 < self.config.pN < 1.0:
            raise ValueError(f"pN must be in (0, 1), got {self.config.pN}")
        if self.config.pK <= 0:
            raise ValueError(f"pK must be > 0, got {self.config.pK}")

    def expected_doublets(self, dataset: CellDataset) -> tuple:
        """Return (nExp, homotypic proportion) for ``dataset``."""
        cfg = self.config
        n_cells = dataset.n_cells
        if cfg.n_exp is not None:
            n_exp = int(cfg.n_exp)
        else:
            n_exp = int(round(cfg.doublet_rate * n_cells))

        homotypic = 0.0
        if cfg.homotypic_adjust:
            if not cfg.homotypic_column:
                raise ValueError("homotypic_adjust requires homotypic_column")
            if cfg.homotypic_column not in dataset.obs.columns:
                raise KeyError(f"Column '{cfg.homotypic_column}' not found in cell metadata")
            homotypic = homotypic_proportion(dataset.obs[cfg.homotypic_column])
            n_exp = int(round(n_exp * (1.0 - homotypic)))

        return max(0, min(n_exp, n_cells)), homotypic

    def simulate(self, counts: sparse.csr_matrix, n_artificial: int, rng: np.random.Generator) -> sparse.csr_matrix:
        """Average the counts of ``n_artificial`` random cell pairs."""
        n_cells = counts.shape[0]
        first = rng.integers(0, n_cells, size=n_artificial)
        second = rng.integers(0, n_cells, size=n_artificial)
        return sparse.csr_matrix((counts[first] + counts[second]) / 2.0)

    def pann(self, coords: np.ndarray, n_real: int, k: int) -> np.ndarray:
        """Fraction of artificial cells among each real cell's ``k`` nearest neighbors."""
        n_query = min(k + 1, coords.shape[0])
        nn = NearestNeighbors(n_neighbors=n_query, metric="euclidean")
        nn.fit(coords)
        idx = nn.kneighbors(coords[:n_real], return_distance=False)

        # Drop each cell itself, wherever ties placed it
        is_self = idx == np.arange(n_real)[:, None]
        order = np.argsort(is_self, axis=1, kind="stable")
        neighbors = np.take_along_axis(idx, order, axis=1)[:, : n_query - 1]
        if neighbors.shape[1] == 0:
            return np.zeros(n_real)
        return (neighbors >= n_real).mean(axis=1)

    def run(self, dataset: CellDataset, n_dims: Optional[int] = None) -> DoubletResult:
        """Score and classify every cell of ``dataset``.

        Parameters
        ----------
        dataset : CellDataset
            Dataset with raw counts and selected variable features (not modified)
        n_dims : int, optional
            Principal components for the neighbor search; defaults to the
            stored PCNum of ``config.reduction``, else ``config.n_dims``

        Returns
        -------
        DoubletResult
            New dataset version with obs['pANN'] and obs['doublet_class']

        Raises
        ------
        EmptyDatasetError
            If no variable features are selected
        """
        import anndata as ad

        cfg = self.config
        out = dataset.copy()
        features = out.variable_features
        if not features:
            raise EmptyDatasetError("Doublet detection needs variable features; run normalization first")
        if n_dims is None:
            selection = out.adata.uns.get("dimension_selection", {}).get(cfg.reduction)
            n_dims = int(selection["pc_num"]) if selection is not None else cfg.n_dims

        rng = np.random.default_rng(cfg.random_seed)
        n_real = out.n_cells
        n_artificial = int(round(n_real * cfg.pN / (1.0 - cfg.pN)))
        if n_artificial == 0:
            raise ValueError(
                f"pN={cfg.pN} yields no artificial doublets for {n_real} cells; increase pN"
            )
        counts = sparse.csr_matrix(out.layer(COUNTS_LAYER), dtype=np.float64)
        artificial = self.simulate(counts, n_artificial, rng)
        merged = sparse.vstack([counts, artificial], format="csr")
        n_merged = merged.shape[0]

        gene_idx = out.gene_ids.get_indexer(features)
        lognorm = log_normalize(merged, cfg.scale_factor)[:, gene_idx]
        work = ad.AnnData(X=to_dense(lognorm).astype(np.float64))
        sc.pp.scale(work, zero_center=True, max_value=cfg.scale_clip)
        n_comps = max(1, min(n_dims, n_merged - 1, len(features) - 1))
        if n_comps < n_dims:
            self.logger.warning("Using %d components instead of %d for doublet PCA", n_comps, n_dims)
        sc.pp.pca(work, n_comps=n_comps, svd_solver="arpack", random_state=cfg.random_seed)

        k = max(1, int(round(cfg.pK * n_merged)))
        pann = self.pann(work.obsm["X_pca"], n_real, k)
        n_exp, homotypic = self.expected_doublets(out)

        ranking = np.argsort(-pann, kind="stable")
        calls = np.full(n_real, SINGLET, dtype=object)
        calls[ranking[:n_exp]] = DOUBLET

        out.obs["pANN"] = pann
        out.obs["doublet_class"] = pd.Categorical(calls, categories=[SINGLET, DOUBLET])
        params = asdict(cfg)
        params.update({"n_artificial": n_artificial, "k": k, "n_dims_used": n_comps, "n_exp_called": n_exp})
        out.record_step("doublets", params)

        self.logger.info(
            "Doublets: %d artificial (pN=%s), k=%d (pK=%s), %d PCs -> %d/%d cells called",
            n_artificial,
            cfg.pN,
            k,
            cfg.pK,
            n_comps,
            n_exp,
            n_real,
        )
        return DoubletResult(
            dataset=out,
            n_artificial=n_artificial,
            k=k,
            n_dims=n_comps,
            n_exp=n_exp,
            homotypic_proportion=homotypic,
        )
