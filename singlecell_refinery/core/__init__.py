"""Core analysis modules for Singlecell-Refinery.

Submodules
----------
- preprocessing: Droplet calling, QC, normalization, variance stabilization
- reduction: PCA, Harmony correction, PCNum selection
- clustering: SNN graphs, Leiden clustering, UMAP, marker detection
- doublets: Artificial-doublet detection
- integration: Anchor-based multi-sample integration
"""

from .dataset import CellDataset, NeighborGraph, Reduction, COUNTS_LAYER
from .errors import (
    RefineryError,
    InsufficientBackgroundError,
    EmptyDatasetError,
    NoAnchorsFoundError,
    DimensionMismatchError,
    DataQualityWarning,
    ConvergenceWarning,
    LowVarianceWarning,
)

__all__ = [
    "CellDataset",
    "NeighborGraph",
    "Reduction",
    "COUNTS_LAYER",
    "RefineryError",
    "InsufficientBackgroundError",
    "EmptyDatasetError",
    "NoAnchorsFoundError",
    "DimensionMismatchError",
    "DataQualityWarning",
    "ConvergenceWarning",
    "LowVarianceWarning",
]
