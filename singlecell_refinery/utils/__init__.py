"""Utility functions for Singlecell-Refinery.

Provides statistical helpers shared across stages.
"""

from .stats import (
    benjamini_hochberg,
    axis_sum,
    axis_mean,
    axis_var,
    detected_counts,
    to_dense,
    multinomial_log_prob,
)

__all__ = [
    "benjamini_hochberg",
    "axis_sum",
    "axis_mean",
    "axis_var",
    "detected_counts",
    "to_dense",
    "multinomial_log_prob",
]
