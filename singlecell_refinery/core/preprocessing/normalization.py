"""Log-normalization and variable feature selection (Stage C).

Counts are scaled to a common per-cell total and log1p-transformed into the
``lognorm`` layer. Variable features are ranked either by standardized
variance around a loess mean-variance trend ('vst') or by binned normalized
dispersion ('dispersion').
"""

from dataclasses import asdict, dataclass
import logging
from typing import Any, Dict, Optional

import numpy as np
import pandas as pd
import scanpy as sc
from scipy import sparse
from statsmodels.nonparametric.smoothers_lowess import lowess

from ...utils.stats import axis_mean, axis_var
from ..dataset import COUNTS_LAYER, CellDataset
from ..errors import DataQualityWarning, EmptyDatasetError, emit_warning
from .config import NormalizationConfig


FLAVORS = ("vst", "dispersion")


@dataclass
class NormalizationResult:
    """Result from normalizing a single dataset.

    Attributes
    ----------
    dataset : CellDataset
        Dataset with the log-normalized layer and variable features
    flavor : str
        Feature selection method used
    n_variable : int
        Number of selected features
    selected_all : bool
        Whether fewer genes than requested existed and all were selected
    feature_stats : pd.DataFrame
        Per-gene statistics used for ranking
    """

    dataset: Optional[CellDataset] = None
    flavor: str = "vst"
    n_variable: int = 0
    selected_all: bool = False
    feature_stats: Optional[pd.DataFrame] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for reporting."""
        return {
            "flavor": self.flavor,
            "n_variable": self.n_variable,
            "selected_all": self.selected_all,
        }


def log_normalize(counts: Any, scale_factor: float) -> sparse.csr_matrix:
    """Scale each cell to ``scale_factor`` total counts and apply natural log1p."""
    normalized = sc.pp.normalize_total(
        _matrix_adata(counts), target_sum=scale_factor, inplace=False
    )["X"]
    matrix = sparse.csr_matrix(normalized, dtype=np.float32)
    matrix.data = np.log1p(matrix.data)
    return matrix


def _matrix_adata(matrix: Any, var_names: Optional[pd.Index] = None) -> Any:
    import anndata as ad

    adata = ad.AnnData(X=sparse.csr_matrix(matrix, dtype=np.float32))
    if var_names is not None:
        adata.var_names = var_names
    return adata


class Normalizer:
    """Log-normalizer and variable feature selector.

    Parameters
    ----------
    config : NormalizationConfig
        Normalization configuration
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> from singlecell_refinery.core.preprocessing import Normalizer, NormalizationConfig
    >>> result = Normalizer(NormalizationConfig(nfeatures=2000)).run(dataset)
    >>> len(result.dataset.variable_features)
    2000
    """

    def __init__(
        self,
        config: Optional[NormalizationConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or NormalizationConfig()
        self.logger = logger or logging.getLogger(__name__)
        if self.config.flavor not in FLAVORS:
            raise ValueError(f"Unknown flavor '{self.config.flavor}' (expected one of {FLAVORS})")

    def vst_stats(self, counts: Any, gene_ids: pd.Index) -> pd.DataFrame:
        """Standardized variance of counts around a loess mean-variance fit.

        Each gene's counts are standardized with its mean and the variance
        predicted by the trend, clipped at sqrt(n_cells), and the variance of
        the clipped values is the ranking score.
        """
        counts = sparse.csc_matrix(counts, dtype=np.float64)
        n_cells = counts.shape[0]
        mean = axis_mean(counts, axis=0)
        variance = axis_var(counts, axis=0)

        expected = np.zeros_like(variance)
        fit_mask = (variance > 0) & (mean > 0)
        if fit_mask.sum() >= 3:
            fitted = lowess(
                np.log10(variance[fit_mask]),
                np.log10(mean[fit_mask]),
                frac=self.config.loess_span,
                return_sorted=False,
            )
            expected[fit_mask] = 10 ** fitted
        else:
            expected[fit_mask] = variance[fit_mask]

        standardized = np.zeros_like(variance)
        ok = expected > 0
        sd = np.sqrt(expected[ok])
        clip = np.sqrt(n_cells)

        coo = counts[:, ok].tocoo()
        z_nonzero = np.minimum((coo.data - mean[ok][coo.col]) / sd[coo.col], clip)
        nnz = np.bincount(coo.col, minlength=sd.shape[0])
        z_zero = np.minimum(-mean[ok] / sd, clip)
        n_zero = n_cells - nnz
        sum_z = np.bincount(coo.col, weights=z_nonzero, minlength=sd.shape[0]) + n_zero * z_zero
        sum_z2 = (
            np.bincount(coo.col, weights=z_nonzero ** 2, minlength=sd.shape[0])
            + n_zero * z_zero ** 2
        )
        standardized[ok] = (sum_z2 - sum_z ** 2 / n_cells) / max(n_cells - 1, 1)

        return pd.DataFrame(
            {
                "mean": mean,
                "variance": variance,
                "variance_expected": expected,
                "score": standardized,
            },
            index=gene_ids,
        )

    def dispersion_stats(self, lognorm: Any, gene_ids: pd.Index) -> pd.DataFrame:
        """Binned normalized dispersion on the log-normalized layer."""
        hvg = sc.pp.highly_variable_genes(
            _matrix_adata(lognorm, gene_ids),
            flavor="seurat",
            n_top_genes=min(self.config.nfeatures, len(gene_ids)),
            inplace=False,
        )
        hvg.index = gene_ids
        return pd.DataFrame(
            {
                "mean": hvg["means"].to_numpy(),
                "dispersion": hvg["dispersions"].to_numpy(),
                "score": hvg["dispersions_norm"].fillna(-np.inf).to_numpy(),
            },
            index=gene_ids,
        )

    def run(self, dataset: CellDataset) -> NormalizationResult:
        """Log-normalize counts and select variable features.

        Parameters
        ----------
        dataset : CellDataset
            Input dataset (not modified)

        Returns
        -------
        NormalizationResult
            New dataset version with layer ``config.layer`` and variable features

        Raises
        ------
        EmptyDatasetError
            If the dataset has no genes, or fewer than ``nfeatures`` genes
            with ``strict_nfeatures`` set
        """
        cfg = self.config
        out = dataset.copy()
        n_genes = out.n_genes
        if n_genes == 0:
            raise EmptyDatasetError("Cannot select variable features from zero genes")
        if n_genes < cfg.nfeatures and cfg.strict_nfeatures:
            raise EmptyDatasetError(
                f"Only {n_genes} genes available, {cfg.nfeatures} variable features requested"
            )

        lognorm = log_normalize(out.layer(COUNTS_LAYER), cfg.scale_factor)
        out.add_layer(cfg.layer, lognorm, method="log_normalize")

        if cfg.flavor == "vst":
            stats = self.vst_stats(out.layer(COUNTS_LAYER), out.gene_ids)
        else:
            stats = self.dispersion_stats(lognorm, out.gene_ids)

        order = np.argsort(-stats["score"].to_numpy(), kind="stable")
        ranks = np.empty(n_genes, dtype=np.int64)
        ranks[order] = np.arange(1, n_genes + 1)
        stats["rank"] = ranks

        selected_all = n_genes <= cfg.nfeatures
        n_select = min(cfg.nfeatures, n_genes)
        top = out.gene_ids[order[:n_select]]

        for column in stats.columns:
            out.var[f"{cfg.flavor}_{column}"] = stats[column].to_numpy()
        out.var["variable_rank"] = ranks
        out.set_variable_features(list(top), source=f"{cfg.layer}:{cfg.flavor}")

        if n_genes < cfg.nfeatures:
            emit_warning(
                out,
                DataQualityWarning,
                "normalize",
                f"Only {n_genes} genes available; all selected as variable features "
                f"({cfg.nfeatures} requested)",
                self.logger,
            )

        out.record_step("normalize", asdict(cfg))
        self.logger.info(
            "Log-normalized to layer '%s' (scale_factor=%g); %d variable features (%s)",
            cfg.layer,
            cfg.scale_factor,
            n_select,
            cfg.flavor,
        )
        return NormalizationResult(
            dataset=out,
            flavor=cfg.flavor,
            n_variable=n_select,
            selected_all=selected_all,
            feature_stats=stats,
        )
