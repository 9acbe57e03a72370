"""Unit tests for cell QC (Stage B)."""

import pytest
import numpy as np

from singlecell_refinery.core.dataset import CellDataset
from singlecell_refinery.core.errors import EmptyDatasetError
from singlecell_refinery.core.preprocessing import CellQC, QCConfig, REASON_COLUMNS


@pytest.fixture
def tiny_dataset() -> CellDataset:
    """Three cells with hand-checkable metrics.

    cell0: 3 genes, 4 counts, 50% mito
    cell1: 2 genes, 10 counts, 0% mito
    cell2: 3 genes, 4 counts, 50% mito
    """
    counts = np.array(
        [
            [1, 1, 2, 0],
            [0, 0, 5, 5],
            [2, 0, 1, 1],
        ]
    )
    return CellDataset.from_counts(
        counts, ["cell0", "cell1", "cell2"], ["MT-CO1", "mt-nd1", "GeneA", "GeneB"]
    )


class TestQCConfig:
    """Tests for QCConfig dataclass."""

    def test_default_values(self):
        """Test defaults leave every bound open."""
        config = QCConfig()
        assert config.min_features is None
        assert config.max_features is None
        assert config.max_pct_mito is None
        assert config.mito_prefix == "MT-"


class TestCellQC:
    """Tests for CellQC."""

    def test_metrics(self, tiny_dataset):
        """Test per-cell metrics including lower-case mito genes."""
        annotated = CellQC().compute_metrics(tiny_dataset)
        obs = annotated.obs
        assert obs["n_features"].tolist() == [3, 2, 3]
        assert obs["total_counts"].tolist() == [4, 10, 4]
        assert np.allclose(obs["pct_mito"], [50.0, 0.0, 50.0])
        assert "n_features" not in tiny_dataset.obs.columns

    def test_no_bounds_keeps_all(self, tiny_dataset):
        """Test QC with no bounds removes nothing."""
        result = CellQC().filter(tiny_dataset)
        assert result.cells_removed == 0
        assert result.dataset.n_cells == 3

    def test_min_features_strict(self, tiny_dataset):
        """Test a cell exactly at min_features is removed."""
        result = CellQC(QCConfig(min_features=2)).filter(tiny_dataset)
        assert list(result.dataset.cell_ids) == ["cell0", "cell2"]
        assert result.reason_counts["low_features"] == 1

    def test_max_features_strict(self, tiny_dataset):
        """Test a cell exactly at max_features is removed."""
        result = CellQC(QCConfig(max_features=3)).filter(tiny_dataset)
        assert list(result.dataset.cell_ids) == ["cell1"]
        assert result.reason_counts["high_features"] == 2

    def test_max_pct_mito_strict(self, tiny_dataset):
        """Test a cell exactly at max_pct_mito is removed."""
        result = CellQC(QCConfig(max_pct_mito=50)).filter(tiny_dataset)
        assert list(result.dataset.cell_ids) == ["cell1"]
        assert result.removal_fraction == pytest.approx(2 / 3)

    def test_combined_reasons(self, tiny_dataset):
        """Test flags carry one column per reason for every input cell."""
        result = CellQC(QCConfig(min_features=2, max_pct_mito=60)).filter(tiny_dataset)
        assert result.cells_removed == 1
        assert result.flags.loc["cell1", "low_features"]
        assert set(result.flags.columns) == set(REASON_COLUMNS)

    def test_all_removed(self, tiny_dataset):
        """Test removing every cell raises EmptyDatasetError."""
        with pytest.raises(EmptyDatasetError):
            CellQC(QCConfig(min_features=10)).filter(tiny_dataset)

    def test_history_recorded(self, tiny_dataset):
        """Test the bounds used are recorded on the output."""
        result = CellQC(QCConfig(min_features=1)).filter(tiny_dataset)
        assert result.dataset.history("qc")["min_features"] == 1

    def test_to_dict(self, tiny_dataset):
        """Test result summary has one entry per reason."""
        d = CellQC(QCConfig(max_pct_mito=50)).filter(tiny_dataset).to_dict()
        assert d["cells_total"] == 3
        assert d["cells_removed"] == 2
        assert d["removed_high_pct_mito"] == 2
        assert d["removed_low_features"] == 0

    def test_no_mito_genes(self, count_dataset):
        """Test an unmatched prefix gives zero mito percentage."""
        annotated = CellQC(QCConfig(mito_prefix="CHRM-")).compute_metrics(count_dataset)
        assert (annotated.obs["pct_mito"] == 0).all()

    def test_fixture_mito_detected(self, count_dataset):
        """Test mito genes of the synthetic data are picked up."""
        annotated = CellQC().compute_metrics(count_dataset)
        assert (annotated.obs["pct_mito"] > 0).all()
        assert annotated.var["mito"].sum() == 5
