"""Configuration classes for dimensionality reduction."""

from dataclasses import dataclass, field
from typing import List


@dataclass
class ReductionConfig:
    """Configuration for PCA and dimension selection (Stages E-F).

    Attributes
    ----------
    layer : str
        Expression layer the PCA reads
    k_max : int
        Number of principal components computed
    scale_clip : float
        Value clipping after scaling log-normalized data
    variance_threshold : float
        Cumulative variance fraction that must be exceeded to choose PCNum
    random_seed : int
        Random seed for the arpack solver
    """

    layer: str = "lognorm"
    k_max: int = 50
    scale_clip: float = 10.0
    variance_threshold: float = 0.9
    random_seed: int = 42


@dataclass
class HarmonyConfig:
    """Configuration for Harmony batch correction.

    Attributes
    ----------
    group_by : List[str]
        Cell metadata columns defining batches
    theta : float
        Diversity penalty per batch variable
    sigma : float
        Soft k-means bandwidth
    lamb : float
        Ridge penalty for the mixture-of-experts correction
    n_clusters : int, optional
        Number of soft clusters; default min(round(N / 30), 100)
    max_iter_harmony : int
        Outer iteration cap
    max_iter_kmeans : int
        Inner clustering iteration cap
    epsilon_kmeans : float
        Inner convergence threshold on the objective
    epsilon_harmony : float
        Outer convergence threshold on the objective
    block_size : float
        Fraction of cells updated per block
    random_seed : int
        Random seed for initialization
    """

    group_by: List[str] = field(default_factory=lambda: ["orig.ident"])
    theta: float = 2.0
    sigma: float = 0.1
    lamb: float = 1.0
    n_clusters: int = 0
    max_iter_harmony: int = 10
    max_iter_kmeans: int = 20
    epsilon_kmeans: float = 1e-5
    epsilon_harmony: float = 1e-4
    block_size: float = 0.05
    random_seed: int = 0
