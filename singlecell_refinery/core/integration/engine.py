"""Anchor-based multi-sample integration (Stage K).

Datasets are merged progressively onto the first one. For each query, anchors
to the current integrated reference are found in a joint space, and every
query cell is moved by a weighted average of the anchor difference vectors of
its nearest anchors.
"""

from dataclasses import dataclass, field
import logging
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from scipy import sparse
from sklearn.neighbors import NearestNeighbors

from ...utils.stats import to_dense
from ..dataset import COUNTS_LAYER, CellDataset
from ..errors import NoAnchorsFoundError
from ..preprocessing.config import NormalizationConfig, SCTConfig
from ..preprocessing.normalization import Normalizer, log_normalize
from ..preprocessing.sctransform import RESIDUALS_LAYER, VarianceStabilizer
from .anchors import AnchorSet, find_anchors
from .config import IntegrationConfig
from .features import select_integration_features


INTEGRATED_LAYER = "integrated"
METHODS = ("lognorm", "sct")


@dataclass
class IntegrationResult:
    """Result from integrating several datasets.

    Attributes
    ----------
    dataset : CellDataset
        Merged dataset with the 'integrated' layer
    features : List[str]
        Integration features
    labels : List[str]
        Dataset labels in merge order
    anchor_counts : Dict[str, int]
        Anchors used for each merge step, keyed '<reference>+<query>'
    """

    dataset: Optional[CellDataset] = None
    features: List[str] = field(default_factory=list)
    labels: List[str] = field(default_factory=list)
    anchor_counts: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "n_cells": self.dataset.n_cells if self.dataset is not None else 0,
            "n_features": len(self.features),
            "labels": list(self.labels),
            "anchor_counts": dict(self.anchor_counts),
        }


def scale_matrix(matrix: np.ndarray, clip: float) -> np.ndarray:
    """Center and scale columns to unit variance, clipping at ``clip``."""
    mean = matrix.mean(axis=0)
    std = matrix.std(axis=0, ddof=1) if matrix.shape[0] > 1 else np.zeros(matrix.shape[1])
    std[std == 0] = 1.0
    return np.clip((matrix - mean) / std, -np.inf, clip)


def anchor_weights(
    query_emb: np.ndarray,
    anchor_emb: np.ndarray,
    scores: np.ndarray,
    k_weight: int,
    sd_weight: float,
) -> sparse.csr_matrix:
    """Row-normalized (query cells x anchors) Gaussian weights over the nearest anchors."""
    k = max(1, min(k_weight, anchor_emb.shape[0]))
    nn = NearestNeighbors(n_neighbors=k, metric="euclidean").fit(anchor_emb)
    dist, idx = nn.kneighbors(query_emb)

    max_dist = dist[:, -1:].copy()
    max_dist[max_dist == 0] = 1.0
    closeness = (1.0 - dist / max_dist) * scores[idx]
    weights = 1.0 - np.exp(-closeness / (2.0 / sd_weight) ** 2)
    totals = weights.sum(axis=1, keepdims=True)
    uniform = np.full_like(weights, 1.0 / k)
    weights = np.where(totals > 0, weights / np.where(totals > 0, totals, 1.0), uniform)

    n_query = query_emb.shape[0]
    return sparse.csr_matrix(
        (weights.ravel(), (np.repeat(np.arange(n_query), k), idx.ravel())),
        shape=(n_query, anchor_emb.shape[0]),
    )


class Integrator:
    """Progressive anchor-based integration of multiple datasets.

    Parameters
    ----------
    config : IntegrationConfig
        Integration configuration
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> from singlecell_refinery.core.integration import Integrator, IntegrationConfig
    >>> result = Integrator(IntegrationConfig(nfeatures=2000)).integrate(
    ...     [ds_a, ds_b], labels=["ctrl", "stim"]
    ... )
    >>> result.dataset.obs["orig.ident"].value_counts()
    """

    def __init__(
        self,
        config: Optional[IntegrationConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or IntegrationConfig()
        self.logger = logger or logging.getLogger(__name__)
        if self.config.normalization_method not in METHODS:
            raise ValueError(
                f"Unknown normalization_method '{self.config.normalization_method}' "
                f"(expected one of {METHODS})"
            )

    def _with_variable_features(self, dataset: CellDataset) -> CellDataset:
        if dataset.variable_features:
            return dataset
        return Normalizer(NormalizationConfig(nfeatures=self.config.nfeatures), logger=self.logger).run(
            dataset
        ).dataset

    def _expression(self, dataset: CellDataset, features: List[str]) -> np.ndarray:
        """Re-fit one dataset and return its (cells x features) expression values."""
        if self.config.normalization_method == "sct":
            fitted = VarianceStabilizer(SCTConfig(nfeatures=len(features)), logger=self.logger).run(
                dataset
            ).dataset
            values = fitted.layer(RESIDUALS_LAYER)
        else:
            values = log_normalize(dataset.layer(COUNTS_LAYER), NormalizationConfig().scale_factor)
        gene_idx = dataset.gene_ids.get_indexer(features)
        return to_dense(values[:, gene_idx]).astype(np.float64)

    def correct(
        self, reference: np.ndarray, query: np.ndarray, anchor_set: AnchorSet
    ) -> np.ndarray:
        """Move ``query`` toward ``reference`` using anchor difference vectors."""
        cfg = self.config
        anchors = anchor_set.anchors
        ref_idx = anchors["ref"].to_numpy(dtype=np.int64)
        query_idx = anchors["query"].to_numpy(dtype=np.int64)
        differences = query[query_idx] - reference[ref_idx]
        weights = anchor_weights(
            anchor_set.query_embedding,
            anchor_set.query_embedding[query_idx],
            anchors["score"].to_numpy(dtype=float),
            cfg.k_weight,
            cfg.sd_weight,
        )
        return query - weights @ differences

    def integrate(
        self,
        datasets: Sequence[CellDataset],
        labels: Sequence[str],
    ) -> IntegrationResult:
        """Integrate ``datasets`` in order onto the first one.

        Parameters
        ----------
        datasets : Sequence[CellDataset]
            Per-sample datasets with raw counts (not modified)
        labels : Sequence[str]
            Provenance label per dataset; becomes ``obs[batch_key]`` and the
            cell id prefix

        Returns
        -------
        IntegrationResult
            Merged dataset and anchor statistics

        Raises
        ------
        NoAnchorsFoundError
            If a merge step finds no anchors
        ValueError
            If fewer than two datasets are given or labels are not unique
        """
        import anndata as ad

        cfg = self.config
        labels = [str(label) for label in labels]
        if len(datasets) < 2:
            raise ValueError("Integration needs at least two datasets")
        if len(labels) != len(datasets) or len(set(labels)) != len(labels):
            raise ValueError("labels must be unique and one per dataset")

        prepared = [self._with_variable_features(ds) for ds in datasets]
        features = select_integration_features(prepared, cfg.nfeatures)
        if not features:
            raise NoAnchorsFoundError(
                (labels[0], labels[1]), "No shared variable features between datasets"
            )
        self.logger.info(
            "Integrating %d datasets on %d shared features (%s)",
            len(datasets),
            len(features),
            cfg.normalization_method,
        )

        expression = [self._expression(ds, features) for ds in prepared]
        integrated = expression[0]
        merged_label = labels[0]
        anchor_counts: Dict[str, int] = {}

        for label, query in zip(labels[1:], expression[1:]):
            anchor_set = find_anchors(
                scale_matrix(integrated, cfg.scale_clip),
                scale_matrix(query, cfg.scale_clip),
                cfg,
            )
            if anchor_set.n_anchors == 0:
                raise NoAnchorsFoundError((merged_label, label))
            anchor_counts[f"{merged_label}+{label}"] = anchor_set.n_anchors
            self.logger.info(
                "Merging '%s' onto '%s' with %d anchors",
                label,
                merged_label,
                anchor_set.n_anchors,
            )
            corrected = self.correct(integrated, query, anchor_set)
            integrated = np.vstack([integrated, corrected])
            merged_label = f"{merged_label}+{label}"

        parts = []
        for label, ds in zip(labels, prepared):
            part = ad.AnnData(
                X=sparse.csr_matrix(ds.layer(COUNTS_LAYER)),
                obs=ds.obs.copy(),
                var=pd.DataFrame(index=ds.gene_ids.copy()),
            )
            part.obs_names = [f"{label}_{cell}" for cell in ds.cell_ids]
            part.obs[cfg.batch_key] = label
            parts.append(part)
        merged = ad.concat(parts, join="outer", fill_value=0, merge=None)
        merged.X = sparse.csr_matrix(merged.X)
        merged.obs[cfg.batch_key] = pd.Categorical(merged.obs[cfg.batch_key], categories=labels)
        merged.layers[COUNTS_LAYER] = merged.X.copy()

        out = CellDataset(merged, copy=False)
        out.add_layer(
            "lognorm", log_normalize(out.layer(COUNTS_LAYER), NormalizationConfig().scale_factor),
            method="log_normalize",
        )
        feature_idx = out.gene_ids.get_indexer(features)
        layer = sparse.csr_matrix(
            (
                integrated.astype(np.float32).ravel(),
                (
                    np.repeat(np.arange(out.n_cells), len(features)),
                    np.tile(feature_idx, out.n_cells),
                ),
            ),
            shape=(out.n_cells, out.n_genes),
        )
        out.add_layer(INTEGRATED_LAYER, layer, method="anchor_integration")
        out.var["integration_feature"] = out.gene_ids.isin(features)
        out.set_variable_features(features, source=INTEGRATED_LAYER)
        out.record_step(
            "integrate",
            {
                "labels": labels,
                "nfeatures": cfg.nfeatures,
                "normalization_method": cfg.normalization_method,
                "n_dims": cfg.n_dims,
                "k_anchor": cfg.k_anchor,
                "k_filter": cfg.k_filter,
                "k_score": cfg.k_score,
                "k_weight": cfg.k_weight,
                "sd_weight": cfg.sd_weight,
            },
        )
        out.check_alignment()

        self.logger.info(
            "Integrated dataset: %d cells x %d genes (%d integration features)",
            out.n_cells,
            out.n_genes,
            len(features),
        )
        return IntegrationResult(
            dataset=out, features=features, labels=labels, anchor_counts=anchor_counts
        )
