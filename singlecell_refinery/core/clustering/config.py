"""Configuration classes for clustering, embedding and marker detection."""

from dataclasses import dataclass, field
from typing import List


@dataclass
class ClusteringConfig:
    """Configuration for SNN graph construction and Leiden clustering.

    Attributes
    ----------
    reduction : str
        Reduction the neighbor graph is built from
    k : int
        Neighbors per cell (the cell itself included)
    prune : float
        SNN edges with Jaccard overlap below this are removed
    resolution : float
        Leiden resolution
    resolutions : List[float]
        Resolutions for a sweep
    n_iterations : int
        Leiden iterations
    random_seed : int
        Random seed for reproducibility
    """

    reduction: str = "pca"
    k: int = 20
    prune: float = 1.0 / 15.0
    resolution: float = 0.8
    resolutions: List[float] = field(default_factory=lambda: [0.2, 0.4, 0.6, 0.8, 1.0])
    n_iterations: int = 2
    random_seed: int = 0


@dataclass
class EmbeddingConfig:
    """Configuration for UMAP embedding.

    Attributes
    ----------
    n_neighbors : int
        Neighbors for the UMAP graph
    n_components : int
        Embedding dimensions
    min_dist : float
        UMAP minimum distance
    random_seed : int
        Random seed for reproducibility
    """

    n_neighbors: int = 30
    n_components: int = 2
    min_dist: float = 0.3
    random_seed: int = 42


@dataclass
class MarkerConfig:
    """Configuration for one-vs-rest marker detection.

    Attributes
    ----------
    method : str
        Test: 'wilcoxon' or 't-test'
    layer : str
        Expression layer tested
    only_pos : bool
        Keep only genes higher in the group than in the rest
    logfc_threshold : float
        Minimum absolute log2 fold change to test a gene
    min_pct : float
        Minimum detection fraction in either group to test a gene
    recorrect_umi : bool
        Recompute SCT corrected counts at the subset's median depth
    tie_correct : bool
        Apply tie correction for the Wilcoxon test
    """

    method: str = "wilcoxon"
    layer: str = "lognorm"
    only_pos: bool = False
    logfc_threshold: float = 0.25
    min_pct: float = 0.1
    recorrect_umi: bool = False
    tie_correct: bool = True
