"""Regularized variance stabilization (Stage D).

Fits a per-gene Poisson GLM of counts on log10 sequencing depth (plus any
cell covariates) for a subsample of genes, estimates negative binomial
overdispersion by moments, smooths all parameters across genes as a
function of gene mean, and derives for every gene:

- Pearson residuals, clipped at +/- sqrt(n_cells / 30), in ``sct_residuals``
- depth-corrected counts at the median depth, log1p, in ``sct_data``

Per-gene parameters are kept in ``var`` so corrected counts can be
recomputed later for a subset of cells.
"""

from dataclasses import asdict, dataclass, field
import logging
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
from scipy import sparse
from statsmodels.nonparametric.smoothers_lowess import lowess

from ...utils.stats import axis_mean, axis_sum, detected_counts
from ..dataset import COUNTS_LAYER, CellDataset
from ..errors import ConvergenceWarning, DataQualityWarning, EmptyDatasetError, emit_warning
from .config import SCTConfig


RESIDUALS_LAYER = "sct_residuals"
CORRECTED_LAYER = "sct_data"
MODEL_KEY = "sct_model"

THETA_BOUNDS = (1e-3, 1e5)
GENE_CHUNK = 512


@dataclass
class SCTModel:
    """Dataset-level record of a variance-stabilization fit.

    Attributes
    ----------
    covariates : List[str]
        Cell metadata columns regressed besides log10 depth
    covariate_medians : Dict[str, float]
        Covariate values used when computing corrected counts
    median_umi : float
        Depth corrected counts are scaled to
    n_cells_at_fit : int
        Cells in the dataset the model was fitted on
    n_cells_fit : int
        Cells used by the per-gene regressions
    n_genes_fit : int
        Genes used by the per-gene regressions
    clip : float
        Residual clip value
    n_not_converged : int
        Fitted genes whose IRLS hit the iteration cap
    """

    covariates: List[str] = field(default_factory=list)
    covariate_medians: Dict[str, float] = field(default_factory=dict)
    median_umi: float = 0.0
    n_cells_at_fit: int = 0
    n_cells_fit: int = 0
    n_genes_fit: int = 0
    clip: float = 0.0
    n_not_converged: int = 0

    @property
    def param_columns(self) -> List[str]:
        return ["sct_intercept", "sct_log_umi"] + [f"sct_{c}" for c in self.covariates]

    def to_uns(self) -> Dict[str, Any]:
        record = asdict(self)
        record["covariates"] = ";".join(self.covariates)
        return record

    @classmethod
    def from_uns(cls, record: Dict[str, Any]) -> "SCTModel":
        covariates = str(record.get("covariates", ""))
        return cls(
            covariates=[c for c in covariates.split(";") if c],
            covariate_medians={
                str(k): float(v) for k, v in dict(record.get("covariate_medians", {})).items()
            },
            median_umi=float(record["median_umi"]),
            n_cells_at_fit=int(record["n_cells_at_fit"]),
            n_cells_fit=int(record.get("n_cells_fit", 0)),
            n_genes_fit=int(record.get("n_genes_fit", 0)),
            clip=float(record["clip"]),
            n_not_converged=int(record.get("n_not_converged", 0)),
        )

    @classmethod
    def from_dataset(cls, dataset: CellDataset) -> "SCTModel":
        """Read the model stored on ``dataset``.

        Raises
        ------
        KeyError
            If the dataset was never variance-stabilized
        """
        if MODEL_KEY not in dataset.adata.uns:
            raise KeyError("Dataset has no variance-stabilization model (run VarianceStabilizer first)")
        return cls.from_uns(dataset.adata.uns[MODEL_KEY])


@dataclass
class SCTResult:
    """Result from variance-stabilizing a single dataset.

    Attributes
    ----------
    dataset : CellDataset
        Dataset with sct_residuals and sct_data layers
    model : SCTModel
        Fit summary
    n_variable : int
        Number of selected features
    """

    dataset: Optional[CellDataset] = None
    model: Optional[SCTModel] = None
    n_variable: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for reporting."""
        result = {"n_variable": self.n_variable}
        if self.model is not None:
            result.update(self.model.to_uns())
        return result


def cell_design(
    obs: pd.DataFrame, umi: np.ndarray, covariates: List[str]
) -> np.ndarray:
    """Design matrix [1, log10(umi), covariates...] with one row per cell."""
    columns = [np.ones(umi.shape[0]), np.log10(np.maximum(umi, 1.0))]
    for name in covariates:
        if name not in obs.columns:
            raise KeyError(f"Covariate '{name}' not found in cell metadata")
        columns.append(pd.to_numeric(obs[name], errors="raise").to_numpy(dtype=float))
    return np.column_stack(columns)


def fit_poisson_irls(
    y: np.ndarray,
    design: np.ndarray,
    max_iter: int = 25,
    tol: float = 1e-6,
) -> Tuple[np.ndarray, np.ndarray, int]:
    """Fit Poisson GLMs with a log link for many genes sharing one design.

    Parameters
    ----------
    y : np.ndarray
        Counts, shape (n_cells, n_genes)
    design : np.ndarray
        Design matrix, shape (n_cells, n_params)
    max_iter : int
        Iteration cap
    tol : float
        Convergence threshold on the largest coefficient change

    Returns
    -------
    Tuple[np.ndarray, np.ndarray, int]
        (coefficients of shape (n_genes, n_params), converged mask, iterations)
    """
    n_cells, n_genes = y.shape
    n_params = design.shape[1]
    beta = np.zeros((n_genes, n_params))
    beta[:, 0] = np.log(np.maximum(y.mean(axis=0), 1e-8))
    converged = np.zeros(n_genes, dtype=bool)
    ridge = 1e-8 * np.eye(n_params)
    pairs = [(i, j) for i in range(n_params) for j in range(i, n_params)]

    n_iter = 0
    for n_iter in range(1, max_iter + 1):
        eta = np.clip(design @ beta.T, -30.0, 30.0)
        mu = np.exp(eta)
        working = mu * eta + (y - mu)

        xtwx = np.empty((n_genes, n_params, n_params))
        for i, j in pairs:
            xtwx[:, i, j] = mu.T @ (design[:, i] * design[:, j])
            xtwx[:, j, i] = xtwx[:, i, j]
        xtwz = working.T @ design

        updated = np.linalg.solve(xtwx + ridge, xtwz[..., None])[..., 0]
        change = np.max(np.abs(updated - beta), axis=1)
        beta = np.where(converged[:, None], beta, updated)
        converged |= change < tol * (1.0 + np.max(np.abs(beta), axis=1))
        if converged.all():
            break

    return beta, converged, n_iter


def estimate_theta(y: np.ndarray, mu: np.ndarray) -> np.ndarray:
    """Moment estimate of NB overdispersion per gene: sum(mu^2) / sum((y-mu)^2 - y)."""
    excess = np.sum((y - mu) ** 2 - y, axis=0)
    theta = np.full(y.shape[1], THETA_BOUNDS[1])
    positive = excess > 0
    theta[positive] = np.sum(mu[:, positive] ** 2, axis=0) / excess[positive]
    return np.clip(theta, *THETA_BOUNDS)


def regularize(
    x_fit: np.ndarray, values: np.ndarray, x_all: np.ndarray, bandwidth: float
) -> np.ndarray:
    """Lowess-smooth ``values`` against ``x_fit`` and interpolate onto ``x_all``."""
    if x_fit.shape[0] >= 10:
        smoothed = lowess(values, x_fit, frac=bandwidth, return_sorted=True)
        xs, ys = smoothed[:, 0], smoothed[:, 1]
    else:
        order = np.argsort(x_fit)
        xs, ys = x_fit[order], values[order]
    xs, first = np.unique(xs, return_index=True)
    return np.interp(x_all, xs, ys[first])


def _transform_genes(
    counts: sparse.csc_matrix,
    design: np.ndarray,
    target_design: np.ndarray,
    coefs: np.ndarray,
    theta: np.ndarray,
    clip: float,
    want_residuals: bool = True,
) -> Tuple[Optional[np.ndarray], sparse.csr_matrix, np.ndarray]:
    """Pearson residuals and corrected counts, processed in gene chunks."""
    n_cells, n_genes = counts.shape
    residuals = np.zeros((n_cells, n_genes), dtype=np.float32) if want_residuals else None
    residual_var = np.zeros(n_genes)
    corrected_blocks = []
    valid = np.isfinite(coefs).all(axis=1) & np.isfinite(theta)

    for start in range(0, n_genes, GENE_CHUNK):
        stop = min(start + GENE_CHUNK, n_genes)
        block = np.zeros((n_cells, stop - start))
        idx = np.flatnonzero(valid[start:stop])
        if idx.size:
            genes = start + idx
            y = counts[:, genes].toarray()
            mu = np.exp(np.clip(design @ coefs[genes].T, -30.0, 30.0))
            th = theta[genes]
            pearson = (y - mu) / np.sqrt(mu + mu ** 2 / th)

            clipped = np.clip(pearson, -clip, clip)
            if want_residuals:
                residuals[:, genes] = clipped
            residual_var[genes] = clipped.var(axis=0, ddof=1) if n_cells > 1 else 0.0

            mu_target = np.exp(np.clip(target_design @ coefs[genes].T, -30.0, 30.0))
            block[:, idx] = np.maximum(
                np.rint(mu_target + pearson * np.sqrt(mu_target + mu_target ** 2 / th)), 0.0
            )
        corrected_blocks.append(sparse.csc_matrix(block))

    corrected = sparse.hstack(corrected_blocks, format="csr").astype(np.float32)
    return residuals, corrected, residual_var


class VarianceStabilizer:
    """Regularized negative binomial variance stabilization.

    Parameters
    ----------
    config : SCTConfig
        Model configuration
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> from singlecell_refinery.core.preprocessing import VarianceStabilizer, SCTConfig
    >>> result = VarianceStabilizer(SCTConfig(regress_covariates=["pct_mito"])).run(dataset)
    >>> result.dataset.layer("sct_residuals").shape
    """

    def __init__(
        self,
        config: Optional[SCTConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or SCTConfig()
        self.logger = logger or logging.getLogger(__name__)

    def _sample_genes(
        self, candidates: np.ndarray, log_mean: np.ndarray, rng: np.random.Generator
    ) -> np.ndarray:
        """Sample fitting genes evenly across the range of log gene means."""
        n_fit = self.config.n_genes_fit
        if candidates.size <= n_fit:
            return candidates
        values = log_mean[candidates]
        density, edges = np.histogram(values, bins=50)
        bins = np.clip(np.searchsorted(edges, values, side="right") - 1, 0, density.size - 1)
        weights = 1.0 / density[bins]
        chosen = rng.choice(candidates.size, size=n_fit, replace=False, p=weights / weights.sum())
        return np.sort(candidates[chosen])

    def run(self, dataset: CellDataset) -> SCTResult:
        """Fit the regularized model and write residual and corrected layers.

        Parameters
        ----------
        dataset : CellDataset
            Input dataset with raw counts (not modified)

        Returns
        -------
        SCTResult
            New dataset version, model summary and variable feature count

        Raises
        ------
        KeyError
            If a regressed covariate is missing from cell metadata
        EmptyDatasetError
            If no gene is detected in enough cells to fit
        """
        cfg = self.config
        out = dataset.copy()
        counts = sparse.csc_matrix(out.layer(COUNTS_LAYER), dtype=np.float64)
        n_cells, n_genes = counts.shape
        rng = np.random.default_rng(cfg.random_seed)

        umi = axis_sum(counts, axis=1)
        design = cell_design(out.obs, umi, cfg.regress_covariates)
        gene_mean = axis_mean(counts, axis=0)
        expressed = gene_mean > 0
        log_mean = np.full(n_genes, np.nan)
        log_mean[expressed] = np.log10(gene_mean[expressed])

        candidates = np.flatnonzero(detected_counts(counts, axis=0) >= cfg.min_cells_fit)
        if candidates.size == 0:
            raise EmptyDatasetError(
                f"No gene detected in at least {cfg.min_cells_fit} cells; cannot fit model"
            )
        fit_genes = self._sample_genes(candidates, log_mean, rng)
        if cfg.n_cells_fit is not None and n_cells > cfg.n_cells_fit:
            fit_cells = np.sort(rng.choice(n_cells, size=cfg.n_cells_fit, replace=False))
        else:
            fit_cells = np.arange(n_cells)

        self.logger.info(
            "Fitting %d genes on %d cells (covariates: %s)",
            fit_genes.size,
            fit_cells.size,
            ["log_umi"] + list(cfg.regress_covariates),
        )
        y_fit = counts[fit_cells][:, fit_genes].toarray()
        x_fit = design[fit_cells]
        coefs_fit, converged, n_iter = fit_poisson_irls(y_fit, x_fit, cfg.max_iter, cfg.tol)
        mu_fit = np.exp(np.clip(x_fit @ coefs_fit.T, -30.0, 30.0))
        theta_fit = estimate_theta(y_fit, mu_fit)

        # Regularize every parameter against log10 gene mean
        coefs = np.full((n_genes, design.shape[1]), np.nan)
        theta = np.full(n_genes, np.nan)
        x_reg = log_mean[fit_genes]
        for j in range(design.shape[1]):
            coefs[expressed, j] = regularize(
                x_reg, coefs_fit[:, j], log_mean[expressed], cfg.bandwidth
            )
        theta[expressed] = 10 ** regularize(
            x_reg, np.log10(theta_fit), log_mean[expressed], cfg.bandwidth
        )
        theta = np.clip(theta, *THETA_BOUNDS)

        model = SCTModel(
            covariates=list(cfg.regress_covariates),
            covariate_medians={
                c: float(np.median(design[:, 2 + i])) for i, c in enumerate(cfg.regress_covariates)
            },
            median_umi=float(np.median(umi)),
            n_cells_at_fit=n_cells,
            n_cells_fit=int(fit_cells.size),
            n_genes_fit=int(fit_genes.size),
            clip=float(cfg.clip) if cfg.clip is not None else float(np.sqrt(n_cells / 30.0)),
            n_not_converged=int((~converged).sum()),
        )

        target = self._target_design(model, n_cells)
        residuals, corrected, residual_var = _transform_genes(
            counts, design, target, coefs, theta, model.clip
        )
        corrected.data = np.log1p(corrected.data)

        out.add_layer(RESIDUALS_LAYER, residuals, method="sctransform")
        out.add_layer(CORRECTED_LAYER, corrected, method="sctransform_corrected")
        for j, column in enumerate(model.param_columns):
            out.var[column] = coefs[:, j]
        out.var["sct_theta"] = theta
        out.var["sct_gene_mean"] = gene_mean
        out.var["sct_residual_variance"] = residual_var
        out.adata.uns[MODEL_KEY] = model.to_uns()

        n_select = min(cfg.nfeatures, n_genes)
        order = np.argsort(-residual_var, kind="stable")
        out.set_variable_features(list(out.gene_ids[order[:n_select]]), source=RESIDUALS_LAYER)
        if n_genes < cfg.nfeatures:
            emit_warning(
                out,
                DataQualityWarning,
                "sctransform",
                f"Only {n_genes} genes available; all selected as variable features "
                f"({cfg.nfeatures} requested)",
                self.logger,
            )

        if model.n_not_converged:
            emit_warning(
                out,
                ConvergenceWarning,
                "sctransform",
                f"IRLS did not converge for {model.n_not_converged}/{fit_genes.size} genes "
                f"after {n_iter} iterations",
                self.logger,
            )

        out.record_step("sctransform", asdict(cfg))
        self.logger.info(
            "Variance stabilization done: median umi %.0f, clip %.2f, %d variable features",
            model.median_umi,
            model.clip,
            n_select,
        )
        return SCTResult(dataset=out, model=model, n_variable=n_select)

    @staticmethod
    def _target_design(model: SCTModel, n_cells: int, median_umi: Optional[float] = None) -> np.ndarray:
        depth = model.median_umi if median_umi is None else median_umi
        row = [1.0, np.log10(max(depth, 1.0))] + [model.covariate_medians[c] for c in model.covariates]
        return np.tile(np.asarray(row, dtype=float), (n_cells, 1))

    def recorrect(self, dataset: CellDataset, median_umi: Optional[float] = None) -> CellDataset:
        """Recompute ``sct_data`` from the stored per-gene model.

        Corrected counts are rebuilt at ``median_umi`` (default: the median
        depth of ``dataset`` itself), which is how corrected values are made
        comparable after subsetting cells.

        Parameters
        ----------
        dataset : CellDataset
            Dataset carrying a fitted model (not modified)
        median_umi : float, optional
            Target depth

        Returns
        -------
        CellDataset
            New dataset version with a replaced ``sct_data`` layer
        """
        model = SCTModel.from_dataset(dataset)
        out = dataset.copy()
        counts = sparse.csc_matrix(out.layer(COUNTS_LAYER), dtype=np.float64)
        umi = axis_sum(counts, axis=1)
        target_umi = float(np.median(umi)) if median_umi is None else float(median_umi)

        design = cell_design(out.obs, umi, model.covariates)
        coefs = out.var[model.param_columns].to_numpy(dtype=float)
        theta = out.var["sct_theta"].to_numpy(dtype=float)
        target = self._target_design(model, out.n_cells, target_umi)

        _, corrected, _ = _transform_genes(
            counts, design, target, coefs, theta, model.clip, want_residuals=False
        )
        corrected.data = np.log1p(corrected.data)
        out.add_layer(CORRECTED_LAYER, corrected, method="sctransform_corrected")
        out.adata.uns[MODEL_KEY]["recorrected_median_umi"] = target_umi
        self.logger.info("Recomputed corrected counts at median umi %.0f", target_umi)
        return out
