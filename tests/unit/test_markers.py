"""Unit tests for one-vs-rest marker detection (Stage J)."""

import pytest
import numpy as np

from singlecell_refinery.core.clustering import MARKER_COLUMNS, MarkerConfig, MarkerFinder
from singlecell_refinery.core.preprocessing import CORRECTED_LAYER, SCTConfig, VarianceStabilizer

from tests.fixtures import marker_genes


@pytest.fixture
def sct_subset(count_dataset):
    """First 150 variance-stabilized cells, fewer than the model was fitted on."""
    ds = VarianceStabilizer(SCTConfig(nfeatures=200)).run(count_dataset).dataset
    return ds.subset(cells=np.arange(150))


class TestMarkerConfig:
    """Tests for MarkerConfig dataclass."""

    def test_default_values(self):
        """Test default configuration values."""
        config = MarkerConfig()
        assert config.method == "wilcoxon"
        assert config.layer == "lognorm"
        assert config.logfc_threshold == 0.25
        assert config.min_pct == 0.1
        assert not config.only_pos
        assert not config.recorrect_umi

    def test_invalid_method(self):
        """Test an unknown test is rejected."""
        with pytest.raises(ValueError, match="method"):
            MarkerFinder(MarkerConfig(method="bimod"))


class TestMarkerFinder:
    """Tests for MarkerFinder.find_all_markers."""

    def test_known_markers_found(self, normalized_dataset):
        """Test the top genes of each type are its boosted genes."""
        result = MarkerFinder(MarkerConfig(only_pos=True)).find_all_markers(
            normalized_dataset, group_by="cell_type"
        )
        top = result.top(10)
        for t in range(3):
            genes = set(top.loc[top["group"] == f"type_{t}", "gene"])
            assert len(genes) == 10
            assert genes <= set(marker_genes(t))

    def test_columns_and_bounds(self, normalized_dataset):
        """Test the table layout and value ranges."""
        result = MarkerFinder().find_all_markers(normalized_dataset, group_by="cell_type")
        markers = result.markers
        assert list(markers.columns) == MARKER_COLUMNS
        assert markers["pct_1"].between(0, 1).all()
        assert markers["pct_2"].between(0, 1).all()
        assert (markers["p_val_adj"] >= markers["p_val"] - 1e-12).all()
        assert (markers["avg_log2FC"].abs() >= 0.25).all()

    def test_only_pos(self, normalized_dataset):
        """Test only_pos drops genes lower in the group."""
        result = MarkerFinder(MarkerConfig(only_pos=True)).find_all_markers(
            normalized_dataset, group_by="cell_type"
        )
        assert (result.markers["avg_log2FC"] > 0).all()

    def test_small_group_skipped(self, normalized_dataset):
        """Test a group with fewer than three cells is skipped."""
        normalized_dataset.obs["label"] = normalized_dataset.obs["cell_type"].astype(str)
        normalized_dataset.obs.iloc[:2, normalized_dataset.obs.columns.get_loc("label")] = "rare"
        result = MarkerFinder(MarkerConfig(only_pos=True)).find_all_markers(
            normalized_dataset, group_by="label"
        )
        assert result.skipped_groups == ["rare"]
        assert "rare" not in set(result.markers["group"])

    def test_missing_column(self, normalized_dataset):
        """Test a missing grouping column raises KeyError."""
        with pytest.raises(KeyError, match="seurat_clusters"):
            MarkerFinder().find_all_markers(normalized_dataset, group_by="seurat_clusters")

    def test_missing_layer(self, normalized_dataset):
        """Test a missing layer raises KeyError."""
        with pytest.raises(KeyError):
            MarkerFinder().find_all_markers(normalized_dataset, group_by="cell_type", layer="sct_data")

    def test_t_test(self, normalized_dataset):
        """Test the t-test method produces the same layout."""
        result = MarkerFinder(MarkerConfig(method="t-test", only_pos=True)).find_all_markers(
            normalized_dataset, group_by="cell_type"
        )
        assert result.method == "t-test"
        assert result.markers.shape[0] > 0

    def test_to_dict(self, normalized_dataset):
        """Test result summary."""
        d = MarkerFinder().find_all_markers(normalized_dataset, group_by="cell_type").to_dict()
        assert d["group_by"] == "cell_type"
        assert d["layer"] == "lognorm"
        assert d["n_markers"] > 0
        assert not d["is_subset"]


class TestRecorrection:
    """Tests for marker detection on variance-stabilized subsets."""

    def test_subset_recorrected(self, sct_subset):
        """Test corrected values are rebuilt when requested."""
        finder = MarkerFinder(MarkerConfig(recorrect_umi=True, only_pos=True))
        result = finder.find_all_markers(sct_subset, group_by="cell_type", layer=CORRECTED_LAYER)
        assert result.recorrected
        assert result.is_subset
        assert result.markers.shape[0] > 0
        assert "recorrected_median_umi" not in sct_subset.adata.uns["sct_model"]

    def test_subset_not_recorrected(self, sct_subset):
        """Test stored corrected values are reused when not requested."""
        finder = MarkerFinder(MarkerConfig(recorrect_umi=False, only_pos=True))
        result = finder.find_all_markers(sct_subset, group_by="cell_type", layer=CORRECTED_LAYER)
        assert not result.recorrected
        assert result.is_subset

    def test_recorrect_ignored_for_lognorm(self, normalized_dataset):
        """Test recorrection does nothing on a non-SCT layer."""
        finder = MarkerFinder(MarkerConfig(recorrect_umi=True))
        result = finder.find_all_markers(normalized_dataset, group_by="cell_type")
        assert not result.recorrected
