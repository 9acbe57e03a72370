"""Unit tests for empty-droplet filtering (Stage A)."""

import pytest
import numpy as np
from scipy import sparse

from singlecell_refinery.core.errors import EmptyDatasetError, InsufficientBackgroundError
from singlecell_refinery.core.preprocessing import EmptyDropletFilter, IngestConfig, IngestResult
from singlecell_refinery.utils.stats import benjamini_hochberg, multinomial_log_prob

from tests.fixtures import create_raw_droplets


class TestIngestConfig:
    """Tests for IngestConfig dataclass."""

    def test_default_values(self):
        """Test default configuration values."""
        config = IngestConfig()
        assert config.lower == 100
        assert config.fdr_cutoff == 0.01
        assert config.retain is None
        assert config.min_cells == 3
        assert config.min_features == 200


class TestStatsHelpers:
    """Tests for the statistics used by droplet testing."""

    def test_benjamini_hochberg_keeps_nan(self):
        """Test NaN entries stay NaN and the rest are adjusted."""
        adjusted = benjamini_hochberg(np.array([0.01, np.nan, 0.04]))
        assert np.isnan(adjusted[1])
        assert np.allclose(adjusted[[0, 2]], [0.02, 0.04])

    def test_multinomial_log_prob(self):
        """Test the multinomial log-probability against a hand computation."""
        counts = sparse.csr_matrix(np.array([[2, 0], [1, 1]]))
        log_prop = np.log(np.array([0.5, 0.5]))
        # P(2,0) = 0.25, P(1,1) = 0.5
        assert np.allclose(multinomial_log_prob(counts, log_prop), np.log([0.25, 0.5]))


class TestEmptyDropletFilter:
    """Tests for EmptyDropletFilter."""

    @pytest.fixture
    def result(self, raw_droplets) -> IngestResult:
        return EmptyDropletFilter(IngestConfig(n_iter=200)).run(raw_droplets)

    def test_cells_called(self, result, raw_droplets):
        """Test every cell-containing droplet is called and no empty one is."""
        truth = raw_droplets.obs["truth"].to_numpy()
        called = result.droplet_stats["is_cell"].to_numpy()
        assert (called == (truth == "cell")).all()
        assert result.n_called == 200
        assert result.n_droplets == 1000

    def test_ambient_droplets_untested(self, result):
        """Test droplets below lower get no p-value and FDR 1."""
        stats = result.droplet_stats
        ambient = stats["total"] < 100
        assert ambient.sum() == 800
        assert stats.loc[ambient, "pvalue"].isna().all()
        assert (stats.loc[ambient, "fdr"] == 1.0).all()
        assert result.n_ambient == 800
        assert result.n_tested == 200

    def test_pvalue_bounds(self, result):
        """Test Monte-Carlo p-values lie in [1/(n_iter+1), 1]."""
        pvalues = result.droplet_stats["pvalue"].dropna()
        assert (pvalues >= 1.0 / 201).all()
        assert (pvalues <= 1.0).all()

    def test_dataset_annotated(self, result):
        """Test retained cells carry droplet totals and FDR."""
        ds = result.dataset
        assert ds.n_cells == result.n_cells
        assert (ds.obs["droplet_fdr"] < 0.01).all()
        assert (ds.obs["droplet_total"] > 100).all()
        assert ds.history("ingest")["lower"] == 100
        assert (ds.obs["truth"] == "cell").all()

    def test_gene_and_cell_filters(self, result):
        """Test retained genes and cells pass the detection filters."""
        counts = result.dataset.counts
        assert ((counts > 0).sum(axis=0) >= 3).all()
        assert ((counts > 0).sum(axis=1) >= 200).all()

    def test_to_dict(self, result):
        """Test result summary."""
        d = result.to_dict()
        assert d["n_called"] == 200
        assert d["n_cells"] == result.dataset.n_cells

    def test_lower_boundary_is_tested(self):
        """Test a droplet with exactly lower counts is tested and one below is ambient."""
        rng = np.random.default_rng(3)
        ambient = rng.multinomial(10, np.full(50, 0.02), size=30)
        at_lower = rng.multinomial(100, np.full(50, 0.02))
        below = rng.multinomial(99, np.full(50, 0.02))
        counts = sparse.csr_matrix(np.vstack([ambient, at_lower, below]))
        stats = EmptyDropletFilter(IngestConfig(n_iter=20)).test_droplets(counts)
        assert stats["total"].iloc[30] == 100
        assert np.isfinite(stats["pvalue"].iloc[30])
        assert np.isnan(stats["pvalue"].iloc[31])
        assert stats["fdr"].iloc[31] == 1.0

    def test_retain_forces_cells(self, raw_droplets):
        """Test droplets at or above retain are kept with p-value 0."""
        result = EmptyDropletFilter(IngestConfig(n_iter=50, retain=1000)).run(raw_droplets)
        stats = result.droplet_stats
        big = stats["total"] >= 1000
        assert (stats.loc[big, "pvalue"] == 0.0).all()
        assert stats.loc[big, "is_cell"].all()

    def test_insufficient_background(self):
        """Test too few ambient droplets raises InsufficientBackgroundError."""
        raw = create_raw_droplets(n_empty=5)
        with pytest.raises(InsufficientBackgroundError) as excinfo:
            EmptyDropletFilter(IngestConfig(n_iter=50)).run(raw)
        assert excinfo.value.n_ambient == 5
        assert excinfo.value.required == 10

    def test_no_cells(self):
        """Test input with only ambient droplets raises EmptyDatasetError."""
        raw = create_raw_droplets(n_cells=0, n_empty=200)
        with pytest.raises(EmptyDatasetError):
            EmptyDropletFilter(IngestConfig(n_iter=50)).run(raw)

    def test_input_unchanged(self, raw_droplets):
        """Test the raw AnnData is not modified."""
        n_obs = raw_droplets.n_obs
        EmptyDropletFilter(IngestConfig(n_iter=50)).run(raw_droplets)
        assert raw_droplets.n_obs == n_obs
        assert "droplet_fdr" not in raw_droplets.obs.columns
