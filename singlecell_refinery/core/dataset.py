"""Cell dataset: the object threaded through every pipeline stage.

Wraps an ``AnnData`` (cells x genes) and keeps the bookkeeping the stages
rely on: method-tagged expression layers, reductions with per-dimension
variance, neighbor graphs tied to the reduction they came from, and
attached data-quality warnings. Stages never mutate their input; they call
:meth:`CellDataset.copy` and return the new version.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Union
import hashlib
import logging

import numpy as np
import pandas as pd
from scipy import sparse

from .errors import DimensionMismatchError, EmptyDatasetError

COUNTS_LAYER = "counts"

Selector = Union[None, Sequence[str], Sequence[int], Sequence[bool], np.ndarray, pd.Index]

logger = logging.getLogger(__name__)


@dataclass
class Reduction:
    """A named (cell x k) coordinate matrix with per-dimension variance.

    Attributes
    ----------
    name : str
        Reduction name (pca, harmony, umap, ...)
    coords : np.ndarray
        Cell coordinates, shape (n_cells, k)
    variance : np.ndarray
        Variance explained by each dimension, length k
    source : str
        Layer or parent reduction the coordinates were derived from
    """

    name: str
    coords: np.ndarray
    variance: np.ndarray
    source: str = ""

    @property
    def k(self) -> int:
        return int(self.coords.shape[1])

    @property
    def stdev(self) -> np.ndarray:
        return np.sqrt(np.clip(self.variance, 0.0, None))

    def take(self, n_dims: int) -> np.ndarray:
        """Return the first ``n_dims`` dimensions, refusing to truncate silently.

        Raises
        ------
        DimensionMismatchError
            If ``n_dims`` exceeds the reduction's dimensionality
        """
        if n_dims < 1:
            raise ValueError(f"n_dims must be >= 1, got {n_dims}")
        if n_dims > self.k:
            raise DimensionMismatchError(self.name, self.k, n_dims)
        return self.coords[:, :n_dims]


@dataclass
class NeighborGraph:
    """kNN and SNN adjacency built from a reduction."""

    name: str
    knn: sparse.csr_matrix
    snn: sparse.csr_matrix
    reduction: str
    n_dims: int
    k: int


class CellDataset:
    """Copy-on-write wrapper around an AnnData object.

    Parameters
    ----------
    adata : AnnData
        Cells x genes data. ``layers["counts"]`` holds raw counts; if it is
        missing, ``adata.X`` is taken as the raw counts.
    copy : bool
        Copy ``adata`` instead of wrapping it

    Example
    -------
    >>> ds = CellDataset(adata)
    >>> ds2 = ds.copy()
    >>> ds2.add_layer("lognorm", matrix, method="log_normalize")
    >>> ds.has_layer("lognorm")
    False
    """

    def __init__(self, adata: Any, copy: bool = True):
        self._adata = adata.copy() if copy else adata
        if COUNTS_LAYER not in self._adata.layers:
            self._adata.layers[COUNTS_LAYER] = sparse.csr_matrix(self._adata.X)
        uns = self._adata.uns
        for key in ("layer_methods", "reductions", "graphs", "warnings", "history"):
            if key not in uns:
                uns[key] = {}

    # ------------------------------------------------------------------
    # Construction and basic access
    # ------------------------------------------------------------------

    @classmethod
    def from_anndata(cls, adata: Any, copy: bool = True) -> "CellDataset":
        return cls(adata, copy=copy)

    @classmethod
    def from_counts(
        cls,
        counts: Any,
        cell_ids: Sequence[str],
        gene_ids: Sequence[str],
        obs: Optional[pd.DataFrame] = None,
    ) -> "CellDataset":
        """Build a dataset from a cells x genes count matrix."""
        import anndata as ad

        matrix = sparse.csr_matrix(counts)
        obs_df = obs.copy() if obs is not None else pd.DataFrame(index=pd.Index(cell_ids))
        obs_df.index = pd.Index([str(c) for c in cell_ids])
        var_df = pd.DataFrame(index=pd.Index([str(g) for g in gene_ids]))
        adata = ad.AnnData(X=matrix.astype(np.float32), obs=obs_df, var=var_df)
        adata.layers[COUNTS_LAYER] = matrix
        return cls(adata, copy=False)

    @property
    def adata(self) -> Any:
        return self._adata

    @property
    def obs(self) -> pd.DataFrame:
        return self._adata.obs

    @property
    def var(self) -> pd.DataFrame:
        return self._adata.var

    @property
    def n_cells(self) -> int:
        return int(self._adata.n_obs)

    @property
    def n_genes(self) -> int:
        return int(self._adata.n_vars)

    @property
    def cell_ids(self) -> pd.Index:
        return self._adata.obs_names

    @property
    def gene_ids(self) -> pd.Index:
        return self._adata.var_names

    @property
    def counts(self) -> sparse.csr_matrix:
        return self._adata.layers[COUNTS_LAYER]

    def copy(self) -> "CellDataset":
        return CellDataset(self._adata, copy=True)

    def __repr__(self) -> str:
        return (
            f"CellDataset(n_cells={self.n_cells}, n_genes={self.n_genes}, "
            f"layers={sorted(self._adata.layers.keys())}, "
            f"reductions={sorted(self.reduction_names)})"
        )

    # ------------------------------------------------------------------
    # Layers
    # ------------------------------------------------------------------

    def has_layer(self, name: str) -> bool:
        return name in self._adata.layers

    def layer(self, name: str) -> Any:
        """Return expression layer ``name``.

        Raises
        ------
        KeyError
            If the layer does not exist
        """
        if name not in self._adata.layers:
            raise KeyError(
                f"Layer '{name}' not found (available: {sorted(self._adata.layers.keys())})"
            )
        return self._adata.layers[name]

    def layer_method(self, name: str) -> str:
        """Return the derivation method a layer was tagged with."""
        if name == COUNTS_LAYER:
            return "raw"
        self.layer(name)
        return str(self._adata.uns["layer_methods"].get(name, "unknown"))

    def add_layer(self, name: str, matrix: Any, method: str) -> None:
        """Store a derived expression layer and drop reductions built from it."""
        if name == COUNTS_LAYER:
            raise ValueError("The raw counts layer is immutable")
        if matrix.shape != (self.n_cells, self.n_genes):
            raise ValueError(
                f"Layer '{name}' has shape {matrix.shape}, "
                f"expected {(self.n_cells, self.n_genes)}"
            )
        replacing = name in self._adata.layers
        self._adata.layers[name] = matrix
        self._adata.uns["layer_methods"][name] = method
        if replacing:
            self._invalidate_from(name)

    # ------------------------------------------------------------------
    # Variable features
    # ------------------------------------------------------------------

    @property
    def variable_features(self) -> List[str]:
        if "variable" not in self._adata.var:
            return []
        mask = self._adata.var["variable"].to_numpy(dtype=bool)
        return self._adata.var_names[mask].tolist()

    def set_variable_features(self, genes: Sequence[str], source: str) -> None:
        """Flag ``genes`` as the selected features; existing reductions are dropped."""
        missing = set(genes) - set(self._adata.var_names)
        if missing:
            raise KeyError(f"{len(missing)} variable features not in dataset, e.g. {sorted(missing)[:5]}")
        self._adata.var["variable"] = self._adata.var_names.isin(list(genes))
        self._adata.uns["variable_features_source"] = source
        for name in list(self.reduction_names):
            self.drop_reduction(name)

    def features_hash(self) -> str:
        """Short digest of the current variable-feature set."""
        joined = "\n".join(sorted(self.variable_features))
        return hashlib.sha1(joined.encode("utf-8")).hexdigest()[:12]

    # ------------------------------------------------------------------
    # Reductions
    # ------------------------------------------------------------------

    @property
    def reduction_names(self) -> List[str]:
        return list(self._adata.uns["reductions"].keys())

    def has_reduction(self, name: str) -> bool:
        return name in self._adata.uns["reductions"]

    def add_reduction(
        self,
        name: str,
        coords: np.ndarray,
        variance: Optional[np.ndarray] = None,
        source: str = "",
        **extra: Any,
    ) -> Reduction:
        """Store a reduction; any previous one of the same name is replaced."""
        coords = np.asarray(coords, dtype=np.float64)
        if coords.ndim != 2 or coords.shape[0] != self.n_cells:
            raise ValueError(
                f"Reduction '{name}' must have shape (n_cells, k); got {coords.shape}"
            )
        if variance is None:
            variance = np.var(coords, axis=0, ddof=1) if self.n_cells > 1 else np.zeros(coords.shape[1])
        variance = np.asarray(variance, dtype=np.float64)
        if variance.shape[0] != coords.shape[1]:
            raise ValueError("Variance vector length must equal the number of dimensions")

        if self.has_reduction(name):
            self.drop_reduction(name)

        total = float(variance.sum())
        self._adata.obsm[f"X_{name}"] = coords
        record = {
            "variance": variance,
            "variance_ratio": variance / total if total > 0 else np.zeros_like(variance),
            "stdev": np.sqrt(np.clip(variance, 0.0, None)),
            "k": int(coords.shape[1]),
            "source": source,
            "features_hash": self.features_hash(),
        }
        record.update(extra)
        self._adata.uns["reductions"][name] = record
        return Reduction(name=name, coords=coords, variance=variance, source=source)

    def get_reduction(self, name: str) -> Reduction:
        """Return reduction ``name``.

        Raises
        ------
        KeyError
            If the reduction has not been computed (or was invalidated)
        """
        if not self.has_reduction(name):
            raise KeyError(
                f"Reduction '{name}' not found (available: {sorted(self.reduction_names)})"
            )
        record = self._adata.uns["reductions"][name]
        return Reduction(
            name=name,
            coords=np.asarray(self._adata.obsm[f"X_{name}"]),
            variance=np.asarray(record["variance"], dtype=np.float64),
            source=str(record.get("source", "")),
        )

    def reduction_info(self, name: str) -> Dict[str, Any]:
        self.get_reduction(name)
        return dict(self._adata.uns["reductions"][name])

    def drop_reduction(self, name: str) -> None:
        """Remove a reduction and everything derived from it."""
        if not self.has_reduction(name):
            return
        del self._adata.uns["reductions"][name]
        self._adata.obsm.pop(f"X_{name}", None)
        if name == "pca" and "PCs" in self._adata.varm:
            del self._adata.varm["PCs"]
        self._adata.uns.get("dimension_selection", {}).pop(name, None)
        self._invalidate_from(name)

    def _invalidate_from(self, source: str) -> None:
        for graph_name, record in list(self._adata.uns["graphs"].items()):
            if record.get("reduction") == source:
                self.drop_graph(graph_name)
        for red_name, record in list(self._adata.uns["reductions"].items()):
            if record.get("source") == source:
                logger.debug("Invalidating reduction '%s' (source '%s' changed)", red_name, source)
                self.drop_reduction(red_name)

    # ------------------------------------------------------------------
    # Graphs
    # ------------------------------------------------------------------

    def add_graph(
        self,
        name: str,
        knn: sparse.spmatrix,
        snn: sparse.spmatrix,
        reduction: str,
        n_dims: int,
        k: int,
    ) -> NeighborGraph:
        self.get_reduction(reduction)
        self._adata.obsp[f"{name}_knn"] = sparse.csr_matrix(knn)
        self._adata.obsp[f"{name}_snn"] = sparse.csr_matrix(snn)
        self._adata.uns["graphs"][name] = {
            "reduction": reduction,
            "n_dims": int(n_dims),
            "k": int(k),
        }
        return self.get_graph(name)

    def has_graph(self, name: str) -> bool:
        return name in self._adata.uns["graphs"]

    def get_graph(self, name: str) -> NeighborGraph:
        if not self.has_graph(name):
            raise KeyError(f"Graph '{name}' not found (available: {sorted(self._adata.uns['graphs'])})")
        record = self._adata.uns["graphs"][name]
        return NeighborGraph(
            name=name,
            knn=sparse.csr_matrix(self._adata.obsp[f"{name}_knn"]),
            snn=sparse.csr_matrix(self._adata.obsp[f"{name}_snn"]),
            reduction=str(record["reduction"]),
            n_dims=int(record["n_dims"]),
            k=int(record["k"]),
        )

    def drop_graph(self, name: str) -> None:
        self._adata.uns["graphs"].pop(name, None)
        self._adata.obsp.pop(f"{name}_knn", None)
        self._adata.obsp.pop(f"{name}_snn", None)

    # ------------------------------------------------------------------
    # Subsetting
    # ------------------------------------------------------------------

    def _resolve(self, selector: Selector, index: pd.Index, what: str) -> np.ndarray:
        if selector is None:
            return np.arange(len(index))
        values = np.asarray(selector)
        if values.dtype == bool:
            if values.shape[0] != len(index):
                raise ValueError(f"Boolean {what} mask has length {values.shape[0]}, expected {len(index)}")
            return np.flatnonzero(values)
        if np.issubdtype(values.dtype, np.integer):
            return values.astype(np.int64)
        positions = index.get_indexer([str(v) for v in values])
        if (positions < 0).any():
            missing = [str(v) for v, p in zip(values, positions) if p < 0]
            raise KeyError(f"Unknown {what} ids: {missing[:5]}")
        return positions

    def subset(self, cells: Selector = None, genes: Selector = None) -> "CellDataset":
        """Return a new dataset restricted to ``cells`` and ``genes``.

        Cells are subset atomically across counts, layers, metadata,
        reductions and graphs. Subsetting genes drops all reductions because
        the feature space they were computed on changes.

        Raises
        ------
        EmptyDatasetError
            If the selection leaves no cells or no genes
        """
        cell_idx = self._resolve(cells, self.cell_ids, "cell")
        gene_idx = self._resolve(genes, self.gene_ids, "gene")
        if cell_idx.size == 0:
            raise EmptyDatasetError("Subset removed all cells")
        if gene_idx.size == 0:
            raise EmptyDatasetError("Subset removed all genes")

        new = CellDataset(self._adata[cell_idx, :][:, gene_idx].copy(), copy=False)
        if genes is not None and gene_idx.size != self.n_genes:
            for name in list(new.reduction_names):
                new.drop_reduction(name)
        new.check_alignment()
        return new

    def check_alignment(self) -> None:
        """Raise ValueError unless every per-cell member has one row per cell."""
        n = self.n_cells
        for name, layer in self._adata.layers.items():
            if layer.shape[0] != n:
                raise ValueError(f"layer '{name}' misaligned")
        for name in self.reduction_names:
            if self._adata.obsm[f"X_{name}"].shape[0] != n:
                raise ValueError(f"reduction '{name}' misaligned")
        for key in self._adata.obsp.keys():
            if self._adata.obsp[key].shape != (n, n):
                raise ValueError(f"graph '{key}' misaligned")
        if self._adata.obs.shape[0] != n:
            raise ValueError("cell metadata misaligned")

    # ------------------------------------------------------------------
    # Warnings and history
    # ------------------------------------------------------------------

    def add_warning(self, category: str, stage: str, message: str) -> None:
        store = self._adata.uns["warnings"]
        store[f"{len(store):04d}"] = {
            "category": category,
            "stage": stage,
            "message": message,
        }

    def list_warnings(self, category: Optional[str] = None) -> List[Dict[str, str]]:
        records = [
            {k: str(v) for k, v in record.items()}
            for _, record in sorted(self._adata.uns["warnings"].items())
        ]
        if category is not None:
            records = [r for r in records if r["category"] == category]
        return records

    def record_step(self, step: str, params: Dict[str, Any]) -> None:
        """Remember the parameters a stage ran with (h5ad-safe values only)."""
        self._adata.uns["history"][step] = {
            key: _uns_safe(value) for key, value in params.items() if value is not None
        }

    def history(self, step: str) -> Dict[str, Any]:
        return dict(self._adata.uns["history"].get(step, {}))


def _uns_safe(value: Any) -> Any:
    if isinstance(value, (str, bool, int, float, np.integer, np.floating, np.bool_)):
        return value
    if isinstance(value, (list, tuple, np.ndarray)):
        if len(value) == 0:
            return np.zeros(0, dtype=float)
        arr = np.asarray(value)
        if arr.dtype.kind in "biuf":
            return arr
        return [str(v) for v in value]
    return str(value)
