"""Statistical utilities for Singlecell-Refinery.

Provides multiple-testing correction, sparse-aware per-row/column summaries
and the multinomial likelihood used by empty-droplet testing.
"""

from __future__ import annotations

from typing import Union

import numpy as np
from scipy import sparse
from scipy.special import gammaln
from statsmodels.stats.multitest import multipletests

MatrixLike = Union[np.ndarray, sparse.spmatrix]


def benjamini_hochberg(pvalues: np.ndarray) -> np.ndarray:
    """Benjamini-Hochberg adjusted p-values, leaving NaN entries as NaN.

    Parameters
    ----------
    pvalues : np.ndarray
        Raw p-values; NaN marks untested entries.

    Returns
    -------
    np.ndarray
        Adjusted p-values with the same shape as the input.
    """
    pvalues = np.asarray(pvalues, dtype=float)
    adjusted = np.full_like(pvalues, np.nan)
    mask = np.isfinite(pvalues)
    if mask.any():
        adjusted[mask] = multipletests(pvalues[mask], method="fdr_bh")[1]
    return adjusted


def axis_sum(matrix: MatrixLike, axis: int) -> np.ndarray:
    """Sum along ``axis`` as a flat float array for dense or sparse input."""
    return np.asarray(matrix.sum(axis=axis), dtype=float).ravel()


def axis_mean(matrix: MatrixLike, axis: int) -> np.ndarray:
    return np.asarray(matrix.mean(axis=axis), dtype=float).ravel()


def axis_var(matrix: MatrixLike, axis: int, ddof: int = 1) -> np.ndarray:
    """Variance along ``axis`` without densifying sparse input."""
    n = matrix.shape[axis]
    mean = axis_mean(matrix, axis)
    if sparse.issparse(matrix):
        sq_mean = axis_mean(matrix.multiply(matrix), axis)
    else:
        sq_mean = np.mean(np.asarray(matrix, dtype=float) ** 2, axis=axis)
    var = (sq_mean - mean ** 2) * n / max(n - ddof, 1)
    return np.clip(var, 0.0, None)


def detected_counts(matrix: MatrixLike, axis: int) -> np.ndarray:
    """Number of non-zero entries along ``axis``."""
    if sparse.issparse(matrix):
        return np.asarray((matrix > 0).sum(axis=axis)).ravel()
    return np.count_nonzero(np.asarray(matrix) > 0, axis=axis)


def to_dense(matrix: MatrixLike) -> np.ndarray:
    if sparse.issparse(matrix):
        return matrix.toarray()
    return np.asarray(matrix)


def multinomial_log_prob(counts: MatrixLike, log_prop: np.ndarray) -> np.ndarray:
    """Log-probability of each row of ``counts`` under a multinomial profile.

    ``log T! - sum(log x_g!) + sum(x_g log p_g)`` where ``T`` is the row total.
    This is the likelihood of independent Poisson counts conditioned on the
    row total.

    Parameters
    ----------
    counts : MatrixLike
        Droplets x genes integer counts
    log_prop : np.ndarray
        Log of the (strictly positive) profile proportions, one per gene

    Returns
    -------
    np.ndarray
        Log-probability per row
    """
    totals = axis_sum(counts, axis=1)
    if sparse.issparse(counts):
        csr = sparse.csr_matrix(counts, dtype=float)
        weighted = np.asarray(csr @ log_prop).ravel()
        log_fact = csr.copy()
        log_fact.data = gammaln(log_fact.data + 1)
        log_fact_sum = axis_sum(log_fact, axis=1)
    else:
        dense = np.asarray(counts, dtype=float)
        weighted = dense @ log_prop
        log_fact_sum = gammaln(dense + 1).sum(axis=1)
    return gammaln(totals + 1) - log_fact_sum + weighted
