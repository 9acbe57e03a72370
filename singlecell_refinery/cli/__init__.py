"""Command-line interface for Singlecell-Refinery.

Example Usage
-------------
    # From command line:
    singlecell-refinery --help
    singlecell-refinery run --input raw/ --out results/ --sample-id donor1
    singlecell-refinery select-dims --input results/donor1.h5ad
    singlecell-refinery pipeline --config pipeline.yaml
"""

from .main import cli, main

__all__ = [
    "cli",
    "main",
]
