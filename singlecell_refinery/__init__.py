"""Singlecell-Refinery: droplet-to-cluster analysis for single-cell RNA-seq.

This package provides tools for:
- Empty-droplet filtering against an ambient RNA profile
- Cell QC, log-normalization and regularized variance stabilization
- PCA, Harmony-style batch correction and variance-based dimension selection
- Shared-nearest-neighbor Leiden clustering with resolution sweeps
- Artificial-doublet detection and one-vs-rest marker finding
- Anchor-based integration of independently processed samples

Every stage takes a ``CellDataset`` and returns a new version of it, so
stages can be tested in isolation and run per sample in parallel.

Example usage:
    >>> from singlecell_refinery.core.dataset import CellDataset
    >>> from singlecell_refinery.core.preprocessing import EmptyDropletFilter, CellQC
    >>>
    >>> result = EmptyDropletFilter().run(raw_adata)
    >>> qc = CellQC().filter(result.dataset)
    >>> dataset = qc.dataset
"""

__version__ = "0.1.0"
