"""Unit tests for PCA, dimension selection and Harmony (Stages E-F)."""

import pytest
import numpy as np

from singlecell_refinery.core.dataset import CellDataset
from singlecell_refinery.core.errors import (
    DimensionMismatchError,
    EmptyDatasetError,
    LowVarianceWarning,
)
from singlecell_refinery.core.preprocessing import SCTConfig, VarianceStabilizer
from singlecell_refinery.core.reduction import (
    DimensionalityReducer,
    DimensionSelector,
    HarmonyConfig,
    HarmonyCorrector,
    ReductionConfig,
    select_pc_num,
    validate_pc_num,
)


class TestReductionConfig:
    """Tests for ReductionConfig dataclass."""

    def test_default_values(self):
        """Test default configuration values."""
        config = ReductionConfig()
        assert config.layer == "lognorm"
        assert config.k_max == 50
        assert config.variance_threshold == 0.9


class TestPCA:
    """Tests for DimensionalityReducer."""

    def test_pca_stored(self, pca_dataset):
        """Test PCA coordinates, loadings and variance are stored."""
        red = pca_dataset.get_reduction("pca")
        assert red.coords.shape == (300, 20)
        assert red.source == "lognorm"
        assert pca_dataset.adata.varm["PCs"].shape == (400, 20)
        assert np.all(np.diff(red.variance) <= 1e-8)

    def test_loadings_zero_outside_features(self, pca_dataset):
        """Test genes that are not variable features have zero loadings."""
        var = pca_dataset.var
        loadings = pca_dataset.adata.varm["PCs"]
        assert np.allclose(loadings[~var["variable"].to_numpy()], 0.0)

    def test_k_clamped(self, normalized_dataset):
        """Test k_max is reduced to fit a small dataset."""
        small = normalized_dataset.subset(cells=np.arange(30))
        result = DimensionalityReducer(ReductionConfig(k_max=50)).run_pca(small)
        assert result.clamped
        assert result.k == 29
        assert result.dataset.get_reduction("pca").k == 29

    def test_no_variable_features(self, count_dataset):
        """Test PCA without variable features raises EmptyDatasetError."""
        with pytest.raises(EmptyDatasetError):
            DimensionalityReducer().run_pca(count_dataset, layer="counts")

    def test_missing_layer(self, normalized_dataset):
        """Test PCA on a missing layer raises KeyError."""
        with pytest.raises(KeyError):
            DimensionalityReducer().run_pca(normalized_dataset, layer="sct_residuals")

    def test_residuals_not_scaled(self, count_dataset):
        """Test variance-stabilized residuals are centered but not scaled."""
        sct = VarianceStabilizer(SCTConfig(nfeatures=200)).run(count_dataset).dataset
        result = DimensionalityReducer(ReductionConfig(k_max=10)).run_pca(sct, layer="sct_residuals")
        assert not result.scaled
        assert result.dataset.reduction_info("pca")["source"] == "sct_residuals"

    def test_named_reduction(self, normalized_dataset):
        """Test a custom name leaves the pca loadings alone."""
        result = DimensionalityReducer(ReductionConfig(k_max=5)).run_pca(normalized_dataset, name="pca_alt")
        assert result.dataset.has_reduction("pca_alt")
        assert "PCs" not in result.dataset.adata.varm


class TestSelectPcNum:
    """Tests for select_pc_num."""

    def test_equal_variance(self):
        """Test equal variances need every dimension to pass 0.9."""
        assert select_pc_num([100, 100, 100, 100], 0.9) == 4

    def test_decreasing_variance(self):
        """Test 50+30+15 = 95% is the first to exceed 90%."""
        assert select_pc_num([50, 30, 15, 5], 0.9) == 3

    def test_strictly_greater(self):
        """Test reaching the threshold exactly is not enough."""
        assert select_pc_num([50, 40, 10], 0.9) == 3

    def test_monotone_in_threshold(self):
        """Test a larger threshold never selects fewer dimensions."""
        variance = np.array([40.0, 20, 10, 8, 6, 5, 4, 3, 2, 2])
        picks = [select_pc_num(variance, t) for t in [0.5, 0.6, 0.7, 0.8, 0.9, 0.95]]
        assert picks == sorted(picks)

    def test_never_crossed(self):
        """Test a threshold of 1.0 keeps everything with a warning."""
        with pytest.warns(LowVarianceWarning):
            assert select_pc_num([1, 1, 1, 1], 1.0) == 4

    @pytest.mark.parametrize("threshold", [0.0, -0.1, 1.5])
    def test_invalid_threshold(self, threshold):
        """Test thresholds outside (0, 1] are rejected."""
        with pytest.raises(ValueError):
            select_pc_num([1, 2, 3], threshold)

    def test_validate_pc_num(self, pca_dataset):
        """Test asking for more dimensions than computed raises."""
        red = pca_dataset.get_reduction("pca")
        assert validate_pc_num(red, 5).shape == (300, 5)
        with pytest.raises(DimensionMismatchError):
            validate_pc_num(red, 21)


class TestDimensionSelector:
    """Tests for DimensionSelector."""

    def test_selection_recorded(self, pca_dataset):
        """Test PCNum is stored on the output dataset."""
        result = DimensionSelector().run(pca_dataset, threshold=0.9)
        assert 1 <= result.pc_num <= 20
        assert result.crossed
        record = result.dataset.adata.uns["dimension_selection"]["pca"]
        assert record["pc_num"] == result.pc_num
        assert "dimension_selection" not in pca_dataset.adata.uns

    def test_selection_matches_function(self, pca_dataset):
        """Test the selector agrees with select_pc_num on the stored variance."""
        variance = pca_dataset.get_reduction("pca").variance
        result = DimensionSelector().run(pca_dataset, threshold=0.8)
        assert result.pc_num == select_pc_num(variance, 0.8)

    def test_low_variance_attached(self, count_dataset):
        """Test a never-crossed threshold is attached to the dataset."""
        count_dataset.add_reduction("flat", np.ones((300, 3)), variance=np.ones(3))
        with pytest.warns(LowVarianceWarning):
            result = DimensionSelector().run(count_dataset, reduction="flat", threshold=1.0)
        assert not result.crossed
        assert result.pc_num == 3
        assert len(result.dataset.list_warnings("LowVarianceWarning")) == 1

    def test_missing_reduction(self, count_dataset):
        """Test selecting on a missing reduction raises KeyError."""
        with pytest.raises(KeyError):
            DimensionSelector().run(count_dataset, reduction="pca")

    def test_recomputed_pca_clears_selection(self, pca_dataset):
        """Test replacing PCA discards the PCNum chosen for the old one."""
        from singlecell_refinery.core.clustering import ClusteringEngine

        selected = pca_dataset.copy()
        selected.adata.uns["dimension_selection"] = {
            "pca": {"pc_num": 15, "threshold": 0.9, "crossed": True}
        }
        recomputed = DimensionalityReducer(ReductionConfig(k_max=5)).run_pca(selected).dataset
        assert "pca" not in recomputed.adata.uns["dimension_selection"]
        graph = ClusteringEngine().build_graph(recomputed)
        assert graph.get_graph("snn").n_dims == 5

    def test_drop_reduction_clears_selection(self, pca_dataset):
        """Test dropping a reduction removes its recorded PCNum."""
        ds = DimensionSelector().run(pca_dataset).dataset
        ds.drop_reduction("pca")
        assert ds.adata.uns["dimension_selection"] == {}


class TestHarmony:
    """Tests for HarmonyCorrector."""

    @pytest.fixture
    def batched(self, pca_dataset) -> CellDataset:
        ds = pca_dataset.copy()
        ds.obs["batch"] = np.where(np.arange(ds.n_cells) < 150, "b1", "b2")
        return ds

    def test_corrected_reduction(self, batched):
        """Test the corrected embedding has the input shape and lineage."""
        config = HarmonyConfig(group_by=["batch"], max_iter_harmony=3)
        result = HarmonyCorrector(config).run(batched, reduction="pca", n_dims=10)
        red = result.dataset.get_reduction("harmony")
        assert red.coords.shape == (300, 10)
        assert red.source == "pca"
        assert 1 <= result.n_iter <= 3
        assert np.isfinite(red.coords).all()

    def test_not_converged_warns(self, batched):
        """Test hitting the iteration cap is reported."""
        config = HarmonyConfig(group_by=["batch"], max_iter_harmony=1, epsilon_harmony=float("-inf"))
        result = HarmonyCorrector(config).run(batched, n_dims=5)
        assert not result.converged
        assert len(result.dataset.list_warnings("ConvergenceWarning")) == 1

    def test_objective_per_iteration(self, batched):
        """Test the objective trace holds the initial value plus one entry per iteration."""
        config = HarmonyConfig(group_by=["batch"], max_iter_harmony=2, epsilon_harmony=float("-inf"))
        result = HarmonyCorrector(config).run(batched, n_dims=10)
        assert result.n_iter == 2
        assert len(result.objective) == 3
        info = result.dataset.reduction_info("harmony")
        assert info["n_iter"] == 2
        assert not info["converged"]

    def test_missing_batch_column(self, pca_dataset):
        """Test a missing batch column raises KeyError."""
        with pytest.raises(KeyError, match="orig.ident"):
            HarmonyCorrector(HarmonyConfig()).run(pca_dataset)

    def test_dropping_pca_drops_harmony(self, batched):
        """Test the corrected embedding is invalidated with its source."""
        ds = HarmonyCorrector(HarmonyConfig(group_by=["batch"], max_iter_harmony=2)).run(batched).dataset
        ds.drop_reduction("pca")
        assert not ds.has_reduction("harmony")
