"""Empty-droplet filtering (Stage A).

Separates cell-containing droplets from ambient-only droplets. Droplets with
few counts define an ambient RNA profile; every other droplet is tested for
deviation from that profile with a Monte-Carlo multinomial test, and the
p-values are corrected with Benjamini-Hochberg.
"""

from dataclasses import asdict, dataclass
import logging
from typing import Any, Dict, Optional

import numpy as np
import pandas as pd
from scipy import sparse

from ...utils.stats import axis_sum, benjamini_hochberg, detected_counts, multinomial_log_prob
from ..dataset import COUNTS_LAYER, CellDataset
from ..errors import EmptyDatasetError, InsufficientBackgroundError
from .config import IngestConfig


@dataclass
class IngestResult:
    """Result from filtering one raw droplet matrix.

    Attributes
    ----------
    dataset : CellDataset
        Retained cells and genes
    droplet_stats : pd.DataFrame
        Per-droplet table: total, log_prob, pvalue, fdr, is_cell
    n_droplets : int
        Droplets in the raw matrix
    n_ambient : int
        Droplets below ``lower``
    n_tested : int
        Droplets at or above ``lower``
    n_called : int
        Droplets with FDR below the cutoff
    n_cells : int
        Cells retained after the detected-gene filter
    n_genes : int
        Genes retained after the detected-cell filter
    """

    dataset: Optional[CellDataset] = None
    droplet_stats: Optional[pd.DataFrame] = None
    n_droplets: int = 0
    n_ambient: int = 0
    n_tested: int = 0
    n_called: int = 0
    n_cells: int = 0
    n_genes: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for reporting."""
        return {
            "n_droplets": self.n_droplets,
            "n_ambient": self.n_ambient,
            "n_tested": self.n_tested,
            "n_called": self.n_called,
            "n_cells": self.n_cells,
            "n_genes": self.n_genes,
        }


class EmptyDropletFilter:
    """Ambient-profile test for cell-containing droplets.

    Parameters
    ----------
    config : IngestConfig
        Ingest configuration
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> from singlecell_refinery.core.preprocessing import EmptyDropletFilter, IngestConfig
    >>> result = EmptyDropletFilter(IngestConfig(lower=100)).run(raw_adata)
    >>> result.dataset.n_cells
    """

    def __init__(
        self,
        config: Optional[IngestConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or IngestConfig()
        self.logger = logger or logging.getLogger(__name__)

    def ambient_profile(self, counts: sparse.csr_matrix, ambient_mask: np.ndarray) -> np.ndarray:
        """Smoothed gene proportions of all counts in ambient droplets.

        Raises
        ------
        InsufficientBackgroundError
            If there are too few ambient droplets or they hold no counts
        """
        cfg = self.config
        n_ambient = int(ambient_mask.sum())
        if n_ambient < cfg.min_ambient_droplets:
            raise InsufficientBackgroundError(n_ambient, cfg.min_ambient_droplets, cfg.lower)

        ambient_counts = axis_sum(counts[ambient_mask], axis=0)
        if ambient_counts.sum() <= 0:
            raise InsufficientBackgroundError(
                n_ambient,
                cfg.min_ambient_droplets,
                cfg.lower,
                message=f"The {n_ambient} droplets with total counts < {cfg.lower} contain no counts",
            )
        smoothed = ambient_counts + cfg.ambient_pseudocount
        return smoothed / smoothed.sum()

    def simulate_null(
        self,
        log_prop: np.ndarray,
        totals: np.ndarray,
        rng: np.random.Generator,
    ) -> np.ndarray:
        """Monte-Carlo log-probabilities of ambient droplets at each total.

        Ambient droplets are grown one count at a time, all iterations in
        parallel. Adding a count to gene g of a droplet with total t-1 and
        count c_g changes the multinomial log-probability by
        ``log t - log(c_g + 1) + log p_g``, so the log-probability at every
        required total is recorded along the way.

        Parameters
        ----------
        log_prop : np.ndarray
            Log ambient proportions
        totals : np.ndarray
            Sorted unique integer totals that need a null distribution
        rng : np.random.Generator
            Random generator

        Returns
        -------
        np.ndarray
            Array of shape (len(totals), n_iter)
        """
        n_iter = self.config.n_iter
        n_genes = log_prop.shape[0]
        cdf = np.cumsum(np.exp(log_prop))
        cdf /= cdf[-1]

        null = np.empty((totals.shape[0], n_iter))
        gene_counts = np.zeros((n_iter, n_genes), dtype=np.int32)
        log_prob = np.zeros(n_iter)
        rows = np.arange(n_iter)
        cursor = 0

        for t in range(1, int(totals[-1]) + 1):
            genes = np.minimum(np.searchsorted(cdf, rng.random(n_iter), side="right"), n_genes - 1)
            current = gene_counts[rows, genes]
            log_prob += np.log(t) - np.log(current + 1.0) + log_prop[genes]
            gene_counts[rows, genes] = current + 1
            while cursor < totals.shape[0] and totals[cursor] == t:
                null[cursor] = log_prob
                cursor += 1

        return null

    def test_droplets(self, counts: sparse.csr_matrix) -> pd.DataFrame:
        """Compute per-droplet ambient-test statistics.

        Parameters
        ----------
        counts : sparse.csr_matrix
            Droplets x genes raw counts

        Returns
        -------
        pd.DataFrame
            Columns total, log_prob, pvalue, fdr, is_cell (positional index)
        """
        cfg = self.config
        totals = np.rint(axis_sum(counts, axis=1)).astype(np.int64)
        ambient_mask = totals < cfg.lower
        prop = self.ambient_profile(counts, ambient_mask)
        log_prop = np.log(prop)

        tested = np.flatnonzero(~ambient_mask)
        log_prob = np.full(totals.shape[0], np.nan)
        pvalues = np.full(totals.shape[0], np.nan)

        if tested.size:
            log_prob[tested] = multinomial_log_prob(counts[tested], log_prop)
            needs_null = tested
            if cfg.retain is not None:
                retained = totals[tested] >= cfg.retain
                pvalues[tested[retained]] = 0.0
                needs_null = tested[~retained]

            if needs_null.size:
                unique_totals, inverse = np.unique(totals[needs_null], return_inverse=True)
                self.logger.info(
                    "Simulating %d ambient droplets up to %d counts (%d distinct totals)",
                    cfg.n_iter,
                    int(unique_totals[-1]),
                    unique_totals.shape[0],
                )
                rng = np.random.default_rng(cfg.random_seed)
                null = self.simulate_null(log_prop, unique_totals, rng)
                observed = log_prob[needs_null]
                n_below = np.count_nonzero(null[inverse] <= observed[:, None], axis=1)
                pvalues[needs_null] = (1.0 + n_below) / (cfg.n_iter + 1.0)

        fdr = benjamini_hochberg(pvalues)
        fdr[np.isnan(fdr)] = 1.0

        return pd.DataFrame(
            {
                "total": totals,
                "log_prob": log_prob,
                "pvalue": pvalues,
                "fdr": fdr,
                "is_cell": fdr < cfg.fdr_cutoff,
            }
        )

    def run(self, raw: Any) -> IngestResult:
        """Filter a raw droplet matrix down to cell-containing droplets.

        Parameters
        ----------
        raw : AnnData
            Droplets x genes raw counts, from ``layers["counts"]`` or ``X``

        Returns
        -------
        IngestResult
            Retained dataset and per-droplet statistics

        Raises
        ------
        InsufficientBackgroundError
            If the ambient profile cannot be estimated
        EmptyDatasetError
            If no droplet passes the test and the detection filters
        """
        cfg = self.config
        matrix = raw.layers[COUNTS_LAYER] if COUNTS_LAYER in raw.layers else raw.X
        counts = sparse.csr_matrix(matrix)

        stats = self.test_droplets(counts)
        stats.index = raw.obs_names.copy()
        result = IngestResult(
            droplet_stats=stats,
            n_droplets=int(stats.shape[0]),
            n_ambient=int(stats["pvalue"].isna().sum()),
            n_tested=int(stats["pvalue"].notna().sum()),
            n_called=int(stats["is_cell"].sum()),
        )
        self.logger.info(
            "Droplets: %d total, %d ambient, %d tested, %d called at FDR < %s",
            result.n_droplets,
            result.n_ambient,
            result.n_tested,
            result.n_called,
            cfg.fdr_cutoff,
        )

        cell_mask = stats["is_cell"].to_numpy()
        if not cell_mask.any():
            raise EmptyDatasetError("No droplet passed the ambient test")

        called = counts[cell_mask]
        gene_mask = detected_counts(called, axis=0) >= cfg.min_cells
        if not gene_mask.any():
            raise EmptyDatasetError(f"No gene detected in at least {cfg.min_cells} cells")
        called = called[:, gene_mask]
        keep_cells = detected_counts(called, axis=1) >= cfg.min_features
        if not keep_cells.any():
            raise EmptyDatasetError(f"No cell has at least {cfg.min_features} detected genes")

        cell_idx = np.flatnonzero(cell_mask)[keep_cells]
        adata = raw[cell_idx, :][:, np.flatnonzero(gene_mask)].copy()
        adata.layers[COUNTS_LAYER] = sparse.csr_matrix(called[keep_cells])
        adata.X = adata.layers[COUNTS_LAYER].astype(np.float32)
        adata.obs["droplet_total"] = stats["total"].to_numpy()[cell_idx]
        adata.obs["droplet_fdr"] = stats["fdr"].to_numpy()[cell_idx]

        dataset = CellDataset(adata, copy=False)
        dataset.record_step("ingest", asdict(cfg))

        result.dataset = dataset
        result.n_cells = dataset.n_cells
        result.n_genes = dataset.n_genes
        self.logger.info(
            "Retained %d cells x %d genes (min_cells=%d, min_features=%d)",
            result.n_cells,
            result.n_genes,
            cfg.min_cells,
            cfg.min_features,
        )
        return result
