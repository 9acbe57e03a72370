"""Doublet detection via artificial nearest-neighbor proportions."""

from .config import DoubletConfig
from .engine import (
    DoubletDetector,
    DoubletResult,
    homotypic_proportion,
    DOUBLET,
    SINGLET,
)

__all__ = [
    "DoubletConfig",
    "DoubletDetector",
    "DoubletResult",
    "homotypic_proportion",
    "DOUBLET",
    "SINGLET",
]
