"""Multi-sample integration with anchor-based batch correction."""

from .config import IntegrationConfig
from .features import feature_ranks, select_integration_features
from .anchors import AnchorSet, find_anchors
from .engine import Integrator, IntegrationResult, INTEGRATED_LAYER

__all__ = [
    "IntegrationConfig",
    "feature_ranks",
    "select_integration_features",
    "AnchorSet",
    "find_anchors",
    "Integrator",
    "IntegrationResult",
    "INTEGRATED_LAYER",
]
