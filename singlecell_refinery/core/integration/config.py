"""Configuration for anchor-based multi-sample integration."""

from dataclasses import dataclass


@dataclass
class IntegrationConfig:
    """Configuration for the integrator (Stage K).

    Attributes
    ----------
    nfeatures : int
        Integration features shared across datasets
    normalization_method : str
        'lognorm' or 'sct'; how each dataset is re-fitted on shared features
    n_dims : int
        Dimensions of the joint space used to find anchors
    k_anchor : int
        Neighbors searched in the other dataset for mutual pairs
    k_filter : int
        Anchors whose query cell is not among the reference cell's k_filter
        nearest query cells in feature space are dropped; 0 disables
    k_score : int
        Neighborhood size used to score anchors
    min_anchor_score : float
        Anchors with a rescaled score at or below this are dropped
    k_weight : int
        Nearest anchors used to correct each query cell
    sd_weight : float
        Gaussian kernel bandwidth for anchor weights
    scale_clip : float
        Value clipping after scaling
    batch_key : str
        Cell metadata column receiving each dataset's label
    random_seed : int
        Random seed for the joint PCA
    """

    nfeatures: int = 2000
    normalization_method: str = "lognorm"
    n_dims: int = 30
    k_anchor: int = 5
    k_filter: int = 200
    k_score: int = 30
    min_anchor_score: float = 0.0
    k_weight: int = 100
    sd_weight: float = 1.0
    scale_clip: float = 10.0
    batch_key: str = "orig.ident"
    random_seed: int = 42
