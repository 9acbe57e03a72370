"""One-vs-rest marker detection (Stage J).

For each group of a metadata column, genes are prefiltered by detection
fraction and fold change, tested against all other cells with
``scanpy.tl.rank_genes_groups``, and Benjamini-Hochberg adjusted.
"""

from dataclasses import dataclass, field
import logging
import time
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd
from scipy import sparse

from ...utils.stats import axis_mean, benjamini_hochberg, detected_counts
from ..dataset import CellDataset
from ..preprocessing.sctransform import CORRECTED_LAYER, MODEL_KEY, SCTModel, VarianceStabilizer
from .config import MarkerConfig


MARKER_COLUMNS = ["group", "gene", "avg_log2FC", "pct_1", "pct_2", "p_val", "p_val_adj"]
MIN_CELLS_GROUP = 3
METHODS = ("wilcoxon", "t-test")

# Layers holding log1p values; fold changes are computed on expm1 means
LOG1P_METHODS = ("log_normalize", "sctransform_corrected")


@dataclass
class MarkerResult:
    """Result from marker detection.

    Attributes
    ----------
    markers : pd.DataFrame
        Tidy table with columns group, gene, avg_log2FC, pct_1, pct_2,
        p_val, p_val_adj
    group_by : str
        Grouping column
    layer : str
        Layer tested
    method : str
        Statistical test
    recorrected : bool
        Whether SCT corrected counts were recomputed before testing
    is_subset : bool
        Whether the dataset holds fewer cells than the SCT model was fitted on
    skipped_groups : List[str]
        Groups with too few cells to test
    elapsed_seconds : float
        Time taken for testing
    """

    markers: pd.DataFrame = field(default_factory=lambda: pd.DataFrame(columns=MARKER_COLUMNS))
    group_by: str = ""
    layer: str = ""
    method: str = "wilcoxon"
    recorrected: bool = False
    is_subset: bool = False
    skipped_groups: List[str] = field(default_factory=list)
    elapsed_seconds: float = 0.0

    def top(self, n: int = 10) -> pd.DataFrame:
        """Top ``n`` genes per group by adjusted p-value then fold change."""
        ordered = self.markers.sort_values(
            ["group", "p_val_adj", "avg_log2FC"], ascending=[True, True, False]
        )
        return ordered.groupby("group", sort=False).head(n).reset_index(drop=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "group_by": self.group_by,
            "layer": self.layer,
            "method": self.method,
            "recorrected": self.recorrected,
            "is_subset": self.is_subset,
            "n_markers": int(self.markers.shape[0]),
            "skipped_groups": list(self.skipped_groups),
        }


class MarkerFinder:
    """One-vs-rest differential expression on an explicit layer.

    Parameters
    ----------
    config : MarkerConfig, optional
        Marker configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> from singlecell_refinery.core.clustering import MarkerFinder, MarkerConfig
    >>> finder = MarkerFinder(MarkerConfig(only_pos=True))
    >>> result = finder.find_all_markers(dataset, group_by="snn_res.0.8")
    >>> result.top(5)
    """

    def __init__(
        self,
        config: Optional[MarkerConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or MarkerConfig()
        self.logger = logger or logging.getLogger(__name__)
        if self.config.method not in METHODS:
            raise ValueError(f"Unknown method '{self.config.method}' (expected one of {METHODS})")

    def _prepare(self, dataset: CellDataset, layer: str) -> tuple:
        """Recorrect SCT values if requested; returns (dataset, recorrected, is_subset)."""
        is_subset = False
        if MODEL_KEY in dataset.adata.uns:
            model = SCTModel.from_dataset(dataset)
            is_subset = dataset.n_cells < model.n_cells_at_fit

        derives_from_sct = dataset.layer_method(layer).startswith("sctransform")
        if not (derives_from_sct and self.config.recorrect_umi):
            if derives_from_sct and is_subset:
                self.logger.info(
                    "Dataset is a subset of the fitted cells; reusing stored corrected values"
                )
            return dataset, False, is_subset

        if layer != CORRECTED_LAYER:
            self.logger.warning(
                "recorrect_umi only affects layer '%s'; testing '%s' unchanged",
                CORRECTED_LAYER,
                layer,
            )
            return dataset, False, is_subset

        recorrected = VarianceStabilizer(logger=self.logger).recorrect(dataset)
        return recorrected, True, is_subset

    @staticmethod
    def _fold_change(in_mean: np.ndarray, out_mean: np.ndarray, log1p_layer: bool) -> np.ndarray:
        if log1p_layer:
            return np.log2(in_mean + 1.0) - np.log2(out_mean + 1.0)
        return in_mean - out_mean

    def find_all_markers(
        self,
        dataset: CellDataset,
        group_by: str,
        layer: Optional[str] = None,
    ) -> MarkerResult:
        """Find markers for every group of ``group_by``.

        Parameters
        ----------
        dataset : CellDataset
            Input dataset (not modified)
        group_by : str
            Cell metadata column with group labels
        layer : str, optional
            Expression layer. Uses config default if None.

        Returns
        -------
        MarkerResult
            Tidy marker table plus recorrection bookkeeping

        Raises
        ------
        KeyError
            If ``group_by`` or ``layer`` does not exist
        """
        import anndata as ad
        import scanpy as sc

        cfg = self.config
        layer = layer or cfg.layer
        if group_by not in dataset.obs.columns:
            raise KeyError(f"Grouping column '{group_by}' not found in cell metadata")
        dataset.layer(layer)

        work_ds, recorrected, is_subset = self._prepare(dataset, layer)
        log1p_layer = work_ds.layer_method(layer) in LOG1P_METHODS

        matrix = work_ds.layer(layer)
        matrix = sparse.csr_matrix(matrix) if sparse.issparse(matrix) else np.asarray(matrix)
        values = matrix.copy()
        if log1p_layer:
            if sparse.issparse(values):
                values.data = np.expm1(values.data)
            else:
                values = np.expm1(values)

        labels = work_ds.obs[group_by].astype(str).to_numpy()
        groups = sorted(pd.unique(labels), key=lambda g: (len(g), g))
        genes = work_ds.gene_ids

        self.logger.info(
            "Finding markers for %d groups of '%s' on layer '%s' (method=%s, only_pos=%s)",
            len(groups),
            group_by,
            layer,
            cfg.method,
            cfg.only_pos,
        )
        start = time.time()
        frames = []
        skipped = []

        for group in groups:
            in_mask = labels == group
            n_in, n_out = int(in_mask.sum()), int((~in_mask).sum())
            if n_in < MIN_CELLS_GROUP or n_out < MIN_CELLS_GROUP:
                self.logger.warning(
                    "Skipping group '%s' (%d cells vs %d rest; need %d each)",
                    group,
                    n_in,
                    n_out,
                    MIN_CELLS_GROUP,
                )
                skipped.append(group)
                continue

            pct_1 = detected_counts(matrix[in_mask], axis=0) / n_in
            pct_2 = detected_counts(matrix[~in_mask], axis=0) / n_out
            lfc = self._fold_change(
                axis_mean(values[in_mask], axis=0),
                axis_mean(values[~in_mask], axis=0),
                log1p_layer,
            )

            candidates = np.maximum(pct_1, pct_2) >= cfg.min_pct
            if cfg.only_pos:
                candidates &= lfc >= cfg.logfc_threshold
            else:
                candidates &= np.abs(lfc) >= cfg.logfc_threshold
            cand_idx = np.flatnonzero(candidates)
            if cand_idx.size == 0:
                self.logger.debug("Group '%s': no genes pass the prefilter", group)
                continue

            work = ad.AnnData(
                X=matrix[:, cand_idx],
                obs=pd.DataFrame(
                    {"group": pd.Categorical(in_mask.astype(int).astype(str))},
                    index=work_ds.cell_ids.copy(),
                ),
            )
            work.var_names = genes[cand_idx].astype(str)
            sc.tl.rank_genes_groups(
                work,
                groupby="group",
                groups=["1"],
                reference="0",
                method=cfg.method,
                n_genes=cand_idx.size,
                use_raw=False,
                tie_correct=cfg.tie_correct,
            )
            tested = sc.get.rank_genes_groups_df(work, group="1")
            pvals = pd.Series(tested["pvals"].to_numpy(), index=tested["names"].astype(str))
            pvals = pvals.reindex(genes[cand_idx].astype(str)).to_numpy(dtype=float)

            frame = pd.DataFrame(
                {
                    "group": group,
                    "gene": genes[cand_idx].astype(str),
                    "avg_log2FC": lfc[cand_idx],
                    "pct_1": np.round(pct_1[cand_idx], 3),
                    "pct_2": np.round(pct_2[cand_idx], 3),
                    "p_val": pvals,
                    "p_val_adj": benjamini_hochberg(pvals),
                }
            )
            if cfg.only_pos:
                frame = frame[frame["avg_log2FC"] > 0]
            frames.append(frame.sort_values(["p_val", "avg_log2FC"], ascending=[True, False]))

        markers = (
            pd.concat(frames, ignore_index=True)
            if frames
            else pd.DataFrame(columns=MARKER_COLUMNS)
        )
        elapsed = time.time() - start
        self.logger.info(
            "Marker detection completed in %.1f seconds: %d gene-group rows",
            elapsed,
            markers.shape[0],
        )
        return MarkerResult(
            markers=markers[MARKER_COLUMNS],
            group_by=group_by,
            layer=layer,
            method=cfg.method,
            recorrected=recorrected,
            is_subset=is_subset,
            skipped_groups=skipped,
            elapsed_seconds=elapsed,
        )
