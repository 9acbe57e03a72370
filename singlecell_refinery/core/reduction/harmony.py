"""Harmony batch correction of a reduced space.

Wraps ``harmonypy``: soft k-means clustering with a diversity penalty that
favors clusters mixing all batches, alternated with a per-cluster ridge
correction of the embedding.
"""

from dataclasses import dataclass, field
import logging
from typing import Any, Dict, List, Optional

import harmonypy
import numpy as np
import pandas as pd

from ..dataset import CellDataset
from ..errors import ConvergenceWarning, emit_warning
from .config import HarmonyConfig


@dataclass
class HarmonyResult:
    """Result from Harmony correction.

    Attributes
    ----------
    dataset : CellDataset
        Dataset with the 'harmony' reduction
    converged : bool
        Whether the outer objective stabilized before the iteration cap
    n_iter : int
        Outer iterations run
    objective : List[float]
        Objective value after initialization and each outer iteration
    """

    dataset: Optional[CellDataset] = None
    converged: bool = False
    n_iter: int = 0
    objective: List[float] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "converged": self.converged,
            "n_iter": self.n_iter,
            "final_objective": self.objective[-1] if self.objective else None,
        }


class HarmonyCorrector:
    """Batch correction of a reduction with the Harmony algorithm.

    Parameters
    ----------
    config : HarmonyConfig
        Harmony configuration
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> from singlecell_refinery.core.reduction import HarmonyCorrector, HarmonyConfig
    >>> result = HarmonyCorrector(HarmonyConfig(group_by=["orig.ident"])).run(dataset)
    >>> result.converged, result.n_iter
    """

    def __init__(
        self,
        config: Optional[HarmonyConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or HarmonyConfig()
        self.logger = logger or logging.getLogger(__name__)

    def _batch_metadata(self, obs: pd.DataFrame) -> pd.DataFrame:
        """Batch columns as strings, one per ``group_by`` entry."""
        missing = [c for c in self.config.group_by if c not in obs.columns]
        if missing:
            raise KeyError(f"Batch column '{missing[0]}' not found in cell metadata")
        return obs[self.config.group_by].astype(str)

    def run(
        self,
        dataset: CellDataset,
        reduction: str = "pca",
        n_dims: Optional[int] = None,
        name: str = "harmony",
    ) -> HarmonyResult:
        """Correct ``reduction`` for the batches in ``config.group_by``.

        Parameters
        ----------
        dataset : CellDataset
            Input dataset (not modified)
        reduction : str
            Reduction to correct
        n_dims : int, optional
            Use only the first ``n_dims`` dimensions (default: all)
        name : str
            Name of the stored reduction

        Returns
        -------
        HarmonyResult
            New dataset version plus convergence information
        """
        cfg = self.config
        out = dataset.copy()
        red = out.get_reduction(reduction)
        coords = red.take(n_dims if n_dims is not None else red.k)

        meta = self._batch_metadata(out.obs)
        n_batches = int(sum(meta[c].nunique() for c in cfg.group_by))
        n_cells = out.n_cells
        n_clusters = cfg.n_clusters or min(int(round(n_cells / 30.0)), 100)
        n_clusters = max(1, min(n_clusters, n_cells))

        self.logger.info(
            "Harmony on '%s' (%d dims, %d cells, %d batches, %d clusters)",
            reduction,
            coords.shape[1],
            n_cells,
            n_batches,
            n_clusters,
        )
        ho = harmonypy.run_harmony(
            np.asarray(coords, dtype=np.float64),
            meta,
            list(cfg.group_by),
            theta=[cfg.theta] * len(cfg.group_by),
            lamb=[cfg.lamb] * len(cfg.group_by),
            sigma=cfg.sigma,
            nclust=n_clusters,
            block_size=cfg.block_size,
            max_iter_harmony=cfg.max_iter_harmony,
            max_iter_kmeans=cfg.max_iter_kmeans,
            epsilon_cluster=cfg.epsilon_kmeans,
            epsilon_harmony=cfg.epsilon_harmony,
            random_state=cfg.random_seed,
            verbose=False,
        )

        # objective_harmony holds the initial value plus one entry per outer iteration
        objective = [float(v) for v in ho.objective_harmony]
        n_iter = max(len(objective) - 1, 0)
        converged = n_iter > 0 and bool(ho.check_convergence(1))
        for i, value in enumerate(objective[1:], start=1):
            self.logger.debug("Harmony iteration %d: objective %.4f", i, value)

        out.add_reduction(
            name,
            np.asarray(ho.Z_corr).T,
            source=reduction,
            converged=converged,
            n_iter=n_iter,
            group_by=",".join(cfg.group_by),
        )
        if converged:
            self.logger.info("Harmony converged after %d iterations", n_iter)
        else:
            emit_warning(
                out,
                ConvergenceWarning,
                "harmony",
                f"Harmony did not converge after {n_iter} iterations",
                self.logger,
            )
        return HarmonyResult(
            dataset=out,
            converged=converged,
            n_iter=n_iter,
            objective=objective,
        )
