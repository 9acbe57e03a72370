"""Raw count loading and dataset persistence."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Union

import anndata as ad
import scanpy as sc

from ..core.dataset import CellDataset

PathLike = Union[str, Path]

logger = logging.getLogger(__name__)


def load_raw_counts(path: PathLike, genome: str | None = None) -> Any:
    """Load a raw droplet x gene count matrix.

    Dispatches on the path: a directory is read as 10x MTX output, ``.h5``
    as a 10x HDF5 file and ``.h5ad`` as AnnData.

    Parameters
    ----------
    path : PathLike
        Input file or directory
    genome : str, optional
        Genome to read from a multi-genome 10x HDF5 file

    Returns
    -------
    AnnData
        Droplets x genes, unique gene names
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Raw counts not found: {path}")

    if path.is_dir():
        adata = sc.read_10x_mtx(path, var_names="gene_symbols", cache=False)
    elif path.suffix == ".h5":
        adata = sc.read_10x_h5(path, genome=genome)
    elif path.suffix == ".h5ad":
        adata = ad.read_h5ad(path)
    else:
        raise ValueError(f"Unsupported raw count format: {path}")

    adata.var_names_make_unique()
    logger.info("Loaded %d droplets x %d genes from %s", adata.n_obs, adata.n_vars, path)
    return adata


def save_dataset(dataset: CellDataset, path: PathLike, compression: str | None = "gzip") -> Path:
    """Write ``dataset`` to an h5ad file, creating parent directories."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    dataset.check_alignment()
    dataset.adata.write_h5ad(path, compression=compression)
    logger.info("Saved %r to %s", dataset, path)
    return path


def load_dataset(path: PathLike) -> CellDataset:
    """Read a dataset written by :func:`save_dataset`."""
    adata = ad.read_h5ad(Path(path))
    return CellDataset(adata, copy=False)
