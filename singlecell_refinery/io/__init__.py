"""I/O utilities for Singlecell-Refinery.

Provides logging, structured summaries, raw count loading and h5ad persistence.
"""

from .logging import get_logger, timestamped_path, log_json, log_yaml, log_stage_summary
from .h5ad import load_raw_counts, save_dataset, load_dataset

__all__ = [
    # Logging
    "get_logger",
    "timestamped_path",
    "log_json",
    "log_yaml",
    "log_stage_summary",
    # Data
    "load_raw_counts",
    "save_dataset",
    "load_dataset",
]
