"""Configuration classes for preprocessing stages.

All preprocessing parameters are configurable via YAML so thresholds chosen
after inspecting diagnostics can be replayed without code changes.
"""

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml


@dataclass
class IngestConfig:
    """Configuration for empty-droplet filtering (Stage A).

    Attributes
    ----------
    lower : float
        Droplets with total counts below lower form the ambient profile and
        are never tested
    fdr_cutoff : float
        Droplets with FDR below this value are kept as cells
    n_iter : int
        Monte-Carlo iterations for the ambient null distribution
    retain : int, optional
        Droplets with total counts >= retain are kept unconditionally
    min_ambient_droplets : int
        Minimum number of droplets below ``lower``
    ambient_pseudocount : float
        Per-gene pseudocount added to the ambient profile
    min_cells : int
        Drop genes detected in fewer retained cells
    min_features : int
        Drop retained cells with fewer detected genes
    random_seed : int
        Random seed for the Monte-Carlo simulation
    """

    lower: float = 100
    fdr_cutoff: float = 0.01
    n_iter: int = 1000
    retain: Optional[int] = None
    min_ambient_droplets: int = 10
    ambient_pseudocount: float = 1e-4
    min_cells: int = 3
    min_features: int = 200
    random_seed: int = 100


@dataclass
class QCConfig:
    """Configuration for cell QC (Stage B).

    Each bound is optional; ``None`` means no bound on that metric.

    Attributes
    ----------
    min_features : int, optional
        Keep cells with more detected genes than this
    max_features : int, optional
        Keep cells with fewer detected genes than this
    max_pct_mito : float, optional
        Keep cells whose mitochondrial percentage is below this
    mito_prefix : str
        Gene-name prefix identifying mitochondrial genes
    """

    min_features: Optional[int] = None
    max_features: Optional[int] = None
    max_pct_mito: Optional[float] = None
    mito_prefix: str = "MT-"


@dataclass
class NormalizationConfig:
    """Configuration for log-normalization and feature selection (Stage C).

    Attributes
    ----------
    scale_factor : float
        Per-cell target total before log1p
    nfeatures : int
        Number of variable features to select
    flavor : str
        Feature selection method: 'vst' (mean-variance loess) or
        'dispersion' (binned normalized dispersion)
    loess_span : float
        Fraction of genes used for each local fit in 'vst'
    strict_nfeatures : bool
        Raise instead of selecting all genes when fewer than ``nfeatures`` exist
    layer : str
        Name of the output layer
    """

    scale_factor: float = 10000.0
    nfeatures: int = 5000
    flavor: str = "vst"
    loess_span: float = 0.3
    strict_nfeatures: bool = False
    layer: str = "lognorm"


@dataclass
class SCTConfig:
    """Configuration for regularized variance stabilization (Stage D).

    Attributes
    ----------
    regress_covariates : List[str]
        Cell metadata columns added to the per-gene model
    n_genes_fit : int
        Genes used to fit the per-gene models before regularization
    n_cells_fit : int, optional
        Cells subsampled for fitting; None uses every cell
    min_cells_fit : int
        Genes detected in fewer cells are not used for fitting
    bandwidth : float
        Lowess span used to regularize parameters across genes
    max_iter : int
        IRLS iteration cap
    tol : float
        IRLS convergence tolerance on the coefficient change
    clip : float, optional
        Residual clip value; default sqrt(n_cells / 30)
    nfeatures : int
        Variable features selected by residual variance
    random_seed : int
        Seed for gene subsampling
    """

    regress_covariates: List[str] = field(default_factory=list)
    n_genes_fit: int = 2000
    n_cells_fit: Optional[int] = 5000
    min_cells_fit: int = 5
    bandwidth: float = 0.3
    max_iter: int = 25
    tol: float = 1e-6
    clip: Optional[float] = None
    nfeatures: int = 3000
    random_seed: int = 1448145


@dataclass
class PreprocessingConfig:
    """Master configuration for stages A-D.

    Attributes
    ----------
    ingest : IngestConfig
        Stage A configuration
    qc : QCConfig
        Stage B configuration
    normalization : NormalizationConfig
        Stage C configuration
    sct : SCTConfig
        Stage D configuration
    use_sct : bool
        Run variance stabilization after log-normalization
    """

    ingest: IngestConfig = field(default_factory=IngestConfig)
    qc: QCConfig = field(default_factory=QCConfig)
    normalization: NormalizationConfig = field(default_factory=NormalizationConfig)
    sct: SCTConfig = field(default_factory=SCTConfig)
    use_sct: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PreprocessingConfig":
        return cls(
            ingest=IngestConfig(**data.get("ingest", {})),
            qc=QCConfig(**data.get("qc", {})),
            normalization=NormalizationConfig(**data.get("normalization", {})),
            sct=SCTConfig(**data.get("sct", {})),
            use_sct=bool(data.get("use_sct", False)),
        )

    @classmethod
    def from_yaml(cls, path: Path) -> "PreprocessingConfig":
        """Load configuration from YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}

        # Handle nested preprocessing section
        if "preprocessing" in data:
            data = data["preprocessing"]

        return cls.from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
