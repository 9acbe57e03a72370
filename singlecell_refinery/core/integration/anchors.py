"""Anchor finding between a reference and a query dataset.

Anchors are mutual nearest neighbors between two datasets in a joint,
L2-normalized principal component space. Each anchor is scored by the
overlap of the two cells' neighborhoods, which down-weights pairs that are
mutual neighbors by chance.
"""

from dataclasses import dataclass
import logging
from typing import Optional, Tuple

import numpy as np
import pandas as pd
import scanpy as sc
from scipy import sparse
from sklearn.neighbors import NearestNeighbors

from .config import IntegrationConfig

logger = logging.getLogger(__name__)

SCORE_QUANTILES = (0.01, 0.9)


@dataclass
class AnchorSet:
    """Anchors between one reference and one query.

    Attributes
    ----------
    anchors : pd.DataFrame
        Columns ref, query (row positions) and score in [0, 1]
    ref_embedding : np.ndarray
        Reference cells in the joint space
    query_embedding : np.ndarray
        Query cells in the joint space
    """

    anchors: pd.DataFrame
    ref_embedding: np.ndarray
    query_embedding: np.ndarray

    @property
    def n_anchors(self) -> int:
        return int(self.anchors.shape[0])


def l2_normalize(matrix: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return matrix / norms


def _neighbors(data: np.ndarray, query: np.ndarray, k: int) -> np.ndarray:
    k = max(1, min(k, data.shape[0]))
    nn = NearestNeighbors(n_neighbors=k, metric="euclidean").fit(data)
    return nn.kneighbors(query, return_distance=False)


def joint_embedding(
    ref_scaled: np.ndarray, query_scaled: np.ndarray, n_dims: int, random_seed: int = 42
) -> Tuple[np.ndarray, np.ndarray]:
    """PCA of the concatenated scaled matrices, rows L2-normalized."""
    joint = np.vstack([ref_scaled, query_scaled])
    n_comps = max(1, min(n_dims, min(joint.shape) - 1))
    coords = sc.pp.pca(joint, n_comps=n_comps, svd_solver="arpack", random_state=random_seed)
    coords = l2_normalize(np.asarray(coords))
    n_ref = ref_scaled.shape[0]
    return coords[:n_ref], coords[n_ref:]


def mutual_nearest_neighbors(
    ref_emb: np.ndarray, query_emb: np.ndarray, k: int
) -> np.ndarray:
    """(ref, query) position pairs that are within each other's k nearest cross-neighbors."""
    ref_to_query = _neighbors(query_emb, ref_emb, k)
    query_to_ref = _neighbors(ref_emb, query_emb, k)

    n_ref, n_query = ref_emb.shape[0], query_emb.shape[0]
    forward = sparse.csr_matrix(
        (
            np.ones(ref_to_query.size),
            (np.repeat(np.arange(n_ref), ref_to_query.shape[1]), ref_to_query.ravel()),
        ),
        shape=(n_ref, n_query),
    )
    backward = sparse.csr_matrix(
        (
            np.ones(query_to_ref.size),
            (query_to_ref.ravel(), np.repeat(np.arange(n_query), query_to_ref.shape[1])),
        ),
        shape=(n_ref, n_query),
    )
    mutual = forward.multiply(backward).tocoo()
    return np.column_stack([mutual.row, mutual.col]).astype(np.int64)


def filter_anchors(
    pairs: np.ndarray, ref_features: np.ndarray, query_features: np.ndarray, k_filter: int
) -> np.ndarray:
    """Keep pairs whose query cell is among the reference cell's k_filter nearest query cells."""
    if k_filter <= 0 or k_filter >= query_features.shape[0] or pairs.shape[0] == 0:
        return pairs
    ref_norm = l2_normalize(ref_features)
    query_norm = l2_normalize(query_features)
    unique_ref, inverse = np.unique(pairs[:, 0], return_inverse=True)
    neighbors = _neighbors(query_norm, ref_norm[unique_ref], k_filter)
    keep = (neighbors[inverse] == pairs[:, 1][:, None]).any(axis=1)
    return pairs[keep]


def score_anchors(
    pairs: np.ndarray, ref_emb: np.ndarray, query_emb: np.ndarray, k_score: int
) -> np.ndarray:
    """Shared-neighborhood overlap of each pair, rescaled to [0, 1] by quantiles.

    Each cell's neighborhood is its k_score nearest cells in its own dataset
    plus its k_score nearest cells in the other dataset.
    """
    n_ref, n_query = ref_emb.shape[0], query_emb.shape[0]
    n_total = n_ref + n_query
    blocks = [
        (_neighbors(ref_emb, ref_emb, k_score), 0, 0),
        (_neighbors(query_emb, ref_emb, k_score), 0, n_ref),
        (_neighbors(query_emb, query_emb, k_score), n_ref, n_ref),
        (_neighbors(ref_emb, query_emb, k_score), n_ref, 0),
    ]
    rows, cols = [], []
    for idx, row_offset, col_offset in blocks:
        rows.append(np.repeat(np.arange(idx.shape[0]) + row_offset, idx.shape[1]))
        cols.append(idx.ravel() + col_offset)
    membership = sparse.csr_matrix(
        (np.ones(sum(r.size for r in rows)), (np.concatenate(rows), np.concatenate(cols))),
        shape=(n_total, n_total),
    )
    membership.data[:] = 1.0

    overlap = np.asarray(
        membership[pairs[:, 0]].multiply(membership[pairs[:, 1] + n_ref]).sum(axis=1)
    ).ravel()
    low, high = np.quantile(overlap, SCORE_QUANTILES)
    if high <= low:
        return np.ones_like(overlap, dtype=float)
    return np.clip((overlap - low) / (high - low), 0.0, 1.0)


def find_anchors(
    ref_scaled: np.ndarray,
    query_scaled: np.ndarray,
    config: Optional[IntegrationConfig] = None,
) -> AnchorSet:
    """Find and score anchors between two scaled feature matrices.

    Parameters
    ----------
    ref_scaled : np.ndarray
        Reference cells x integration features, scaled
    query_scaled : np.ndarray
        Query cells x integration features, scaled
    config : IntegrationConfig, optional
        Integration configuration

    Returns
    -------
    AnchorSet
        Anchors (possibly empty) plus both joint embeddings
    """
    cfg = config or IntegrationConfig()
    ref_emb, query_emb = joint_embedding(ref_scaled, query_scaled, cfg.n_dims, cfg.random_seed)

    pairs = mutual_nearest_neighbors(ref_emb, query_emb, cfg.k_anchor)
    n_mutual = pairs.shape[0]
    pairs = filter_anchors(pairs, ref_scaled, query_scaled, cfg.k_filter)
    logger.debug("Anchors: %d mutual pairs, %d after filtering", n_mutual, pairs.shape[0])

    if pairs.shape[0] == 0:
        anchors = pd.DataFrame({"ref": [], "query": [], "score": []})
    else:
        scores = score_anchors(pairs, ref_emb, query_emb, cfg.k_score)
        keep = scores > cfg.min_anchor_score
        anchors = pd.DataFrame(
            {"ref": pairs[keep, 0], "query": pairs[keep, 1], "score": scores[keep]}
        )
    return AnchorSet(anchors=anchors, ref_embedding=ref_emb, query_embedding=query_emb)
