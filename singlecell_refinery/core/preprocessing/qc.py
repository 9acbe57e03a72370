"""Cell-level quality control (Stage B).

Computes per-cell metrics (detected genes, total counts, mitochondrial
percentage) and removes cells outside configured bounds.
"""

from dataclasses import asdict, dataclass, field
import logging
from typing import Any, Dict, Optional

import numpy as np
import pandas as pd
import scanpy as sc

from ..dataset import COUNTS_LAYER, CellDataset
from ..errors import EmptyDatasetError
from .config import QCConfig


# Reason columns for tracking removal causes
REASON_COLUMNS = [
    "low_features",
    "high_features",
    "high_pct_mito",
]


@dataclass
class QCResult:
    """Result from QC filtering a single dataset.

    Attributes
    ----------
    dataset : CellDataset
        Dataset restricted to passing cells
    cells_total : int
        Total cells before filtering
    cells_removed : int
        Number of cells removed
    removal_fraction : float
        Fraction of cells removed
    reason_counts : Dict[str, int]
        Counts per removal reason (a cell can fail several bounds)
    flags : pd.DataFrame
        Boolean reason columns for every input cell
    """

    dataset: Optional[CellDataset] = None
    cells_total: int = 0
    cells_removed: int = 0
    removal_fraction: float = 0.0
    reason_counts: Dict[str, int] = field(default_factory=dict)
    flags: Optional[pd.DataFrame] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for reporting."""
        result = {
            "cells_total": self.cells_total,
            "cells_removed": self.cells_removed,
            "removal_fraction": round(self.removal_fraction, 4),
        }
        for reason in REASON_COLUMNS:
            result[f"removed_{reason}"] = self.reason_counts.get(reason, 0)
        return result


class CellQC:
    """Per-cell metric computation and bound filtering.

    Parameters
    ----------
    config : QCConfig
        QC configuration
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> from singlecell_refinery.core.preprocessing import CellQC, QCConfig
    >>> qc = CellQC(QCConfig(min_features=200, max_features=2500, max_pct_mito=5))
    >>> result = qc.filter(dataset)
    """

    def __init__(
        self,
        config: Optional[QCConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or QCConfig()
        self.logger = logger or logging.getLogger(__name__)

    def mito_mask(self, dataset: CellDataset) -> np.ndarray:
        prefix = self.config.mito_prefix.upper()
        return np.asarray(dataset.gene_ids.str.upper().str.startswith(prefix), dtype=bool)

    def compute_metrics(self, dataset: CellDataset) -> CellDataset:
        """Return a copy of ``dataset`` with n_features, total_counts and pct_mito in obs."""
        out = dataset.copy()
        adata = out.adata
        adata.var["mito"] = self.mito_mask(out)
        obs_metrics, _ = sc.pp.calculate_qc_metrics(
            adata,
            qc_vars=["mito"],
            layer=COUNTS_LAYER,
            percent_top=None,
            log1p=False,
            inplace=False,
        )
        adata.obs["n_features"] = obs_metrics["n_genes_by_counts"].to_numpy()
        adata.obs["total_counts"] = obs_metrics["total_counts"].to_numpy()
        adata.obs["pct_mito"] = obs_metrics["pct_counts_mito"].fillna(0.0).to_numpy()

        n_mito = int(adata.var["mito"].sum())
        if n_mito == 0:
            self.logger.warning(
                "No genes match mitochondrial prefix '%s'; pct_mito is 0 for all cells",
                self.config.mito_prefix,
            )
        return out

    def flag_cells(self, obs: pd.DataFrame) -> pd.DataFrame:
        """Boolean failure flags per reason; bounds are strict."""
        cfg = self.config
        n_features = obs["n_features"].to_numpy()
        pct_mito = obs["pct_mito"].to_numpy()
        flags = pd.DataFrame(False, index=obs.index, columns=REASON_COLUMNS)
        if cfg.min_features is not None:
            flags["low_features"] = ~(n_features > cfg.min_features)
        if cfg.max_features is not None:
            flags["high_features"] = ~(n_features < cfg.max_features)
        if cfg.max_pct_mito is not None:
            flags["high_pct_mito"] = ~(pct_mito < cfg.max_pct_mito)
        return flags

    def filter(self, dataset: CellDataset) -> QCResult:
        """Compute metrics and remove cells outside the configured bounds.

        Parameters
        ----------
        dataset : CellDataset
            Input dataset (not modified)

        Returns
        -------
        QCResult
            Filtered dataset with removal counts

        Raises
        ------
        EmptyDatasetError
            If every cell fails at least one bound
        """
        annotated = self.compute_metrics(dataset)
        flags = self.flag_cells(annotated.obs)
        keep = ~flags.any(axis=1).to_numpy()

        result = QCResult(
            cells_total=annotated.n_cells,
            cells_removed=int((~keep).sum()),
            reason_counts={reason: int(flags[reason].sum()) for reason in REASON_COLUMNS},
            flags=flags,
        )
        result.removal_fraction = (
            result.cells_removed / result.cells_total if result.cells_total else 0.0
        )

        if not keep.any():
            raise EmptyDatasetError(
                f"QC removed all {result.cells_total} cells "
                f"({', '.join(f'{k}={v}' for k, v in result.reason_counts.items())})"
            )

        filtered = annotated.subset(cells=keep) if not keep.all() else annotated
        filtered.record_step("qc", asdict(self.config))
        result.dataset = filtered

        self.logger.info(
            "QC removed %d/%d cells (%.1f%%): %s",
            result.cells_removed,
            result.cells_total,
            100 * result.removal_fraction,
            result.reason_counts,
        )
        return result
