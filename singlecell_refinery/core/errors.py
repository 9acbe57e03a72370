"""Error and warning taxonomy shared by all pipeline stages.

Fatal conditions are exceptions and abort the run. Data-quality conditions
are warnings: they are emitted through :mod:`warnings`, logged, and recorded
on the dataset so they survive persistence.
"""

import logging
import warnings
from typing import Any, Optional, Tuple, Type


class RefineryError(Exception):
    """Base class for fatal pipeline errors."""

    pass


class InsufficientBackgroundError(RefineryError):
    """Raised when too few empty droplets exist to estimate the ambient profile."""

    def __init__(
        self, n_ambient: int, required: int, lower: float, message: Optional[str] = None
    ):
        self.n_ambient = n_ambient
        self.required = required
        self.lower = lower
        super().__init__(
            message or f"Only {n_ambient} droplets with total counts < {lower} "
            f"(need at least {required}); ambient profile cannot be estimated"
        )


class EmptyDatasetError(RefineryError):
    """Raised when filtering leaves too little data for a stage to proceed."""

    pass


class NoAnchorsFoundError(RefineryError):
    """Raised when no reliable anchors link a pair of datasets."""

    def __init__(self, pair: Tuple[str, str], message: Optional[str] = None):
        self.pair = pair
        super().__init__(
            message or f"No anchors found between datasets '{pair[0]}' and '{pair[1]}'"
        )


class DimensionMismatchError(RefineryError, ValueError):
    """Raised when a reduction has fewer dimensions than requested."""

    def __init__(self, reduction: str, k: int, requested: int):
        self.reduction = reduction
        self.k = k
        self.requested = requested
        super().__init__(
            f"Reduction '{reduction}' has {k} dimensions but {requested} were requested"
        )


class DataQualityWarning(UserWarning):
    """Base class for non-fatal data-quality warnings."""

    pass


class ConvergenceWarning(DataQualityWarning):
    """An iterative fit stopped at its iteration cap without stabilizing."""

    pass


class LowVarianceWarning(DataQualityWarning):
    """The cumulative-variance threshold was never exceeded."""

    pass


def emit_warning(
    dataset: Any,
    category: Type[DataQualityWarning],
    stage: str,
    message: str,
    logger: Optional[logging.Logger] = None,
) -> None:
    """Emit a data-quality warning and attach it to ``dataset``.

    Parameters
    ----------
    dataset : CellDataset or None
        Dataset version that carries the warning. Skipped when None.
    category : type
        Warning class (ConvergenceWarning, LowVarianceWarning, ...)
    stage : str
        Stage name reported with the warning
    message : str
        Human-readable message
    logger : logging.Logger, optional
        Logger that also receives the message
    """
    warnings.warn(message, category, stacklevel=3)
    if logger is not None:
        logger.warning("[%s] %s", stage, message)
    if dataset is not None:
        dataset.add_warning(category.__name__, stage, message)
