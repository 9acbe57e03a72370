"""Preprocessing module: droplet calling, QC and normalization.

Pipeline Stages
---------------
- Stage A (Ingest): Empty-droplet filtering against an ambient profile
- Stage B (QC): Cell-level quality control
- Stage C (Normalization): Log-normalization and variable feature selection
- Stage D (SCTransform): Regularized variance stabilization

Example Usage
-------------
>>> from singlecell_refinery.core.preprocessing import (
...     EmptyDropletFilter, IngestConfig,
...     CellQC, QCConfig,
...     Normalizer, NormalizationConfig,
... )
>>> ingest = EmptyDropletFilter(IngestConfig()).run(raw_adata)
>>> qc = CellQC(QCConfig(min_features=200, max_pct_mito=5)).filter(ingest.dataset)
>>> norm = Normalizer(NormalizationConfig()).run(qc.dataset)
"""

# Configuration classes
from .config import (
    IngestConfig,
    QCConfig,
    NormalizationConfig,
    SCTConfig,
    PreprocessingConfig,
)

# Stage A: Ingest
from .ingest import (
    EmptyDropletFilter,
    IngestResult,
)

# Stage B: Cell QC
from .qc import (
    CellQC,
    QCResult,
    REASON_COLUMNS,
)

# Stage C: Normalization
from .normalization import (
    Normalizer,
    NormalizationResult,
    log_normalize,
)

# Stage D: Variance stabilization
from .sctransform import (
    VarianceStabilizer,
    SCTResult,
    SCTModel,
    RESIDUALS_LAYER,
    CORRECTED_LAYER,
)

__all__ = [
    # Config
    "IngestConfig",
    "QCConfig",
    "NormalizationConfig",
    "SCTConfig",
    "PreprocessingConfig",
    # Stage A: Ingest
    "EmptyDropletFilter",
    "IngestResult",
    # Stage B: QC
    "CellQC",
    "QCResult",
    "REASON_COLUMNS",
    # Stage C: Normalization
    "Normalizer",
    "NormalizationResult",
    "log_normalize",
    # Stage D: SCTransform
    "VarianceStabilizer",
    "SCTResult",
    "SCTModel",
    "RESIDUALS_LAYER",
    "CORRECTED_LAYER",
]
