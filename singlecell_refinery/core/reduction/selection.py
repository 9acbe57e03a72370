"""Adaptive choice of the number of retained dimensions (Stage F)."""

from dataclasses import dataclass
import logging
from typing import Any, Dict, Optional, Sequence, Tuple
import warnings

import numpy as np

from ..dataset import CellDataset, Reduction
from ..errors import LowVarianceWarning, emit_warning
from .config import ReductionConfig


def _first_crossing(variance: Sequence[float], threshold: float) -> Tuple[int, bool, np.ndarray]:
    if not 0.0 < threshold <= 1.0:
        raise ValueError(f"threshold must be in (0, 1], got {threshold}")
    var = np.asarray(variance, dtype=float)
    if var.ndim != 1 or var.size == 0:
        raise ValueError("variance must be a non-empty 1-D sequence")
    total = var.sum()
    if total <= 0:
        return var.size, False, np.zeros_like(var)
    cumulative = np.cumsum(var) / total
    above = np.flatnonzero(cumulative > threshold)
    if above.size == 0:
        return var.size, False, cumulative
    return int(above[0]) + 1, True, cumulative


def select_pc_num(variance: Sequence[float], threshold: float = 0.9) -> int:
    """Smallest n with sum(variance[:n]) / sum(variance) > threshold.

    Parameters
    ----------
    variance : Sequence[float]
        Per-dimension variance, in component order
    threshold : float
        Cumulative fraction to exceed, in (0, 1]

    Returns
    -------
    int
        Number of dimensions to keep; the full length with a
        LowVarianceWarning if the threshold is never exceeded

    Examples
    --------
    >>> select_pc_num([50, 30, 15, 5], 0.9)
    3
    """
    pc_num, crossed, _ = _first_crossing(variance, threshold)
    if not crossed:
        warnings.warn(
            f"Cumulative variance never exceeds {threshold}; keeping all {pc_num} dimensions",
            LowVarianceWarning,
            stacklevel=2,
        )
    return pc_num


def validate_pc_num(reduction: Reduction, pc_num: int) -> np.ndarray:
    """Return the first ``pc_num`` dimensions of ``reduction``.

    Raises
    ------
    DimensionMismatchError
        If ``pc_num`` exceeds the reduction's dimensionality
    """
    return reduction.take(pc_num)


@dataclass
class SelectionResult:
    """Result from dimension selection.

    Attributes
    ----------
    dataset : CellDataset
        Dataset with the selection recorded
    reduction : str
        Reduction the variance came from
    pc_num : int
        Selected number of dimensions
    threshold : float
        Cumulative variance threshold
    crossed : bool
        Whether the threshold was exceeded before the last dimension
    cumulative_variance : np.ndarray
        Cumulative variance fraction per dimension
    """

    dataset: Optional[CellDataset] = None
    reduction: str = "pca"
    pc_num: int = 0
    threshold: float = 0.9
    crossed: bool = True
    cumulative_variance: Optional[np.ndarray] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reduction": self.reduction,
            "pc_num": self.pc_num,
            "threshold": self.threshold,
            "crossed": self.crossed,
        }


class DimensionSelector:
    """Choose PCNum from a stored reduction's variance.

    Parameters
    ----------
    config : ReductionConfig
        Reduction configuration (``variance_threshold``)
    logger : logging.Logger, optional
        Logger instance
    """

    def __init__(
        self,
        config: Optional[ReductionConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or ReductionConfig()
        self.logger = logger or logging.getLogger(__name__)

    def run(
        self,
        dataset: CellDataset,
        reduction: str = "pca",
        threshold: Optional[float] = None,
    ) -> SelectionResult:
        """Select and record PCNum for ``reduction``.

        The choice is stored under ``uns["dimension_selection"][reduction]``;
        a never-crossed threshold attaches a LowVarianceWarning.
        """
        threshold = threshold if threshold is not None else self.config.variance_threshold
        out = dataset.copy()
        red = out.get_reduction(reduction)
        pc_num, crossed, cumulative = _first_crossing(red.variance, threshold)

        if not crossed:
            emit_warning(
                out,
                LowVarianceWarning,
                "select_dims",
                f"Cumulative variance of '{reduction}' never exceeds {threshold}; "
                f"keeping all {pc_num} dimensions",
                self.logger,
            )
        else:
            self.logger.info(
                "Selected %d/%d dimensions of '%s' (cumulative variance %.3f > %s)",
                pc_num,
                red.k,
                reduction,
                float(cumulative[pc_num - 1]),
                threshold,
            )

        selections = out.adata.uns.setdefault("dimension_selection", {})
        selections[reduction] = {
            "pc_num": pc_num,
            "threshold": float(threshold),
            "crossed": bool(crossed),
        }
        return SelectionResult(
            dataset=out,
            reduction=reduction,
            pc_num=pc_num,
            threshold=threshold,
            crossed=crossed,
            cumulative_variance=cumulative,
        )
