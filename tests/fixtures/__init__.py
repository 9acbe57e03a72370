"""Test fixtures for Singlecell-Refinery.

Provides synthetic droplet and count generators.
"""

from .mock_adata import (
    MITO_GENES,
    make_gene_names,
    cell_type_profiles,
    marker_genes,
    create_raw_droplets,
    create_count_adata,
    create_batch_pair,
)

__all__ = [
    "MITO_GENES",
    "make_gene_names",
    "cell_type_profiles",
    "marker_genes",
    "create_raw_droplets",
    "create_count_adata",
    "create_batch_pair",
]
