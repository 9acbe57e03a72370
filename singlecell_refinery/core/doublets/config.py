"""Configuration for artificial-doublet detection."""

from dataclasses import dataclass
from typing import Optional


@dataclass
class DoubletConfig:
    """Configuration for the doublet detector (Stage I).

    Attributes
    ----------
    pN : float
        Fraction of artificial doublets in the merged real + artificial
        population
    pK : float
        Neighborhood size as a fraction of the merged population
    doublet_rate : float
        Expected doublet fraction; nExp = round(doublet_rate * n_cells)
    n_exp : int, optional
        Explicit number of doublets to call, overriding ``doublet_rate``
    homotypic_adjust : bool
        Reduce nExp by the expected proportion of homotypic doublets
    homotypic_column : str, optional
        Cell metadata column (e.g. clusters) used for the homotypic estimate
    n_dims : int
        Principal components used for the neighbor search
    reduction : str
        Reduction whose stored PCNum is used when ``n_dims`` is not given
    scale_factor : float
        Log-normalization scale factor for the merged population
    scale_clip : float
        Value clipping after scaling
    random_seed : int
        Random seed for pairing cells
    """

    pN: float = 0.25
    pK: float = 0.005
    doublet_rate: float = 0.05
    n_exp: Optional[int] = None
    homotypic_adjust: bool = False
    homotypic_column: Optional[str] = None
    n_dims: int = 10
    reduction: str = "pca"
    scale_factor: float = 10000.0
    scale_clip: float = 10.0
    random_seed: int = 0
