"""Dimensionality reduction: PCA, Harmony correction and PCNum selection.

Example Usage
-------------
>>> from singlecell_refinery.core.reduction import (
...     DimensionalityReducer, DimensionSelector, ReductionConfig,
... )
>>> pca = DimensionalityReducer(ReductionConfig()).run_pca(dataset, layer="lognorm")
>>> selection = DimensionSelector().run(pca.dataset)
>>> selection.pc_num
"""

from .config import ReductionConfig, HarmonyConfig
from .pca import DimensionalityReducer, PCAResult
from .harmony import HarmonyCorrector, HarmonyResult
from .selection import (
    DimensionSelector,
    SelectionResult,
    select_pc_num,
    validate_pc_num,
)

__all__ = [
    "ReductionConfig",
    "HarmonyConfig",
    "DimensionalityReducer",
    "PCAResult",
    "HarmonyCorrector",
    "HarmonyResult",
    "DimensionSelector",
    "SelectionResult",
    "select_pc_num",
    "validate_pc_num",
]
