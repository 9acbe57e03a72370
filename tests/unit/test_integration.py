"""Unit tests for anchor-based integration (Stage K)."""

import pytest
import numpy as np
import pandas as pd

from singlecell_refinery.core.dataset import CellDataset
from singlecell_refinery.core.errors import NoAnchorsFoundError
from singlecell_refinery.core.integration import (
    INTEGRATED_LAYER,
    IntegrationConfig,
    Integrator,
    feature_ranks,
    select_integration_features,
)
from singlecell_refinery.utils.stats import to_dense


SMALL_CONFIG = dict(nfeatures=200, n_dims=10, k_filter=50, k_score=10, k_weight=20)


@pytest.fixture
def pair_datasets(batch_pair):
    """The batch pair wrapped as datasets."""
    first, second = batch_pair
    return CellDataset(first), CellDataset(second)


@pytest.fixture
def integration_result(pair_datasets):
    """Integrated ctrl + stim datasets."""
    return Integrator(IntegrationConfig(**SMALL_CONFIG)).integrate(
        list(pair_datasets), labels=["ctrl", "stim"]
    )


def _ranked_dataset(genes, variable, ranks) -> CellDataset:
    ds = CellDataset.from_counts(np.ones((3, len(genes))), ["c0", "c1", "c2"], genes)
    ds.set_variable_features(variable, source="lognorm:vst")
    ds.var["variable_rank"] = np.nan
    ds.var.loc[variable, "variable_rank"] = ranks
    return ds


class TestIntegrationConfig:
    """Tests for IntegrationConfig dataclass."""

    def test_default_values(self):
        """Test default configuration values."""
        config = IntegrationConfig()
        assert config.nfeatures == 2000
        assert config.normalization_method == "lognorm"
        assert config.n_dims == 30
        assert config.batch_key == "orig.ident"

    def test_invalid_method(self):
        """Test an unknown normalization method is rejected."""
        with pytest.raises(ValueError, match="normalization_method"):
            Integrator(IntegrationConfig(normalization_method="scran"))


class TestFeatureSelection:
    """Tests for select_integration_features."""

    @pytest.fixture
    def ranked_pair(self):
        first = _ranked_dataset(["g1", "g2", "g3", "g4", "g5"], ["g1", "g2", "g3"], [1, 2, 3])
        second = _ranked_dataset(
            ["g1", "g2", "g3", "g4", "g5", "g6"], ["g2", "g3", "g6"], [1, 2, 3]
        )
        return first, second

    def test_feature_ranks(self, ranked_pair):
        """Test ranks follow variable_rank."""
        ranks = feature_ranks(ranked_pair[1])
        assert ranks.to_dict() == {"g2": 1.0, "g3": 2.0, "g6": 3.0}

    def test_shared_genes_first(self, ranked_pair):
        """Test genes variable in both datasets win, ordered by median rank."""
        assert select_integration_features(list(ranked_pair), nfeatures=2) == ["g2", "g3"]

    def test_single_dataset_genes_follow(self, ranked_pair):
        """Test genes variable in one dataset come next; absent genes are excluded."""
        features = select_integration_features(list(ranked_pair), nfeatures=10)
        assert features == ["g2", "g3", "g1"]
        assert "g6" not in features


class TestIntegrator:
    """Tests for Integrator.integrate."""

    def test_merged_cells(self, integration_result):
        """Test every cell is kept with a labelled, prefixed id."""
        ds = integration_result.dataset
        assert ds.n_cells == 400
        ids = pd.Index(ds.cell_ids)
        assert ids.str.startswith("ctrl_").sum() == 200
        assert ids.str.startswith("stim_").sum() == 200
        assert ids.is_unique

    def test_batch_column(self, integration_result):
        """Test the provenance column is categorical in merge order."""
        batch = integration_result.dataset.obs["orig.ident"]
        assert isinstance(batch.dtype, pd.CategoricalDtype)
        assert list(batch.cat.categories) == ["ctrl", "stim"]
        assert batch.value_counts().to_dict() == {"ctrl": 200, "stim": 200}

    def test_layers_and_features(self, integration_result):
        """Test integrated and lognorm layers plus integration features."""
        ds = integration_result.dataset
        assert ds.has_layer(INTEGRATED_LAYER)
        assert ds.has_layer("lognorm")
        assert ds.layer(INTEGRATED_LAYER).shape == (400, 400)
        assert len(integration_result.features) == 200
        assert set(ds.variable_features) == set(integration_result.features)
        assert ds.var["integration_feature"].sum() == 200
        assert ds.adata.uns["variable_features_source"] == INTEGRATED_LAYER

    def test_integrated_values_only_on_features(self, integration_result):
        """Test non-feature genes have no integrated values."""
        ds = integration_result.dataset
        matrix = ds.layer(INTEGRATED_LAYER).toarray()
        off = ~ds.var["integration_feature"].to_numpy()
        assert np.all(matrix[:, off] == 0)

    def test_anchor_counts(self, integration_result):
        """Test anchors were used for the merge step."""
        assert integration_result.anchor_counts["ctrl+stim"] > 0
        assert integration_result.labels == ["ctrl", "stim"]
        assert integration_result.to_dict()["n_cells"] == 400

    def test_inputs_unchanged(self, pair_datasets, integration_result):
        """Test the per-sample datasets are not modified."""
        assert not pair_datasets[0].has_layer("lognorm")
        assert pair_datasets[1].n_cells == 200

    def test_gene_union(self, pair_datasets):
        """Test genes missing from one dataset are filled with zeros."""
        first, second = pair_datasets
        second = second.subset(genes=np.arange(390))
        result = Integrator(IntegrationConfig(**SMALL_CONFIG)).integrate(
            [first, second], labels=["ctrl", "stim"]
        )
        ds = result.dataset
        assert ds.n_genes == 400
        dropped = [g for g in first.gene_ids if g not in set(second.gene_ids)]
        stim = ds.obs["orig.ident"].to_numpy() == "stim"
        counts = ds.counts[stim][:, ds.gene_ids.get_indexer(dropped)]
        assert counts.sum() == 0
        assert not set(dropped) & set(result.features)

    def test_sct_method(self, pair_datasets):
        """Test integration on variance-stabilized residuals."""
        config = IntegrationConfig(normalization_method="sct", **SMALL_CONFIG)
        result = Integrator(config).integrate(list(pair_datasets), labels=["a", "b"])
        assert result.dataset.n_cells == 400
        assert result.dataset.history("integrate")["normalization_method"] == "sct"

    def test_disjoint_genes(self, pair_datasets):
        """Test datasets without shared genes raise NoAnchorsFoundError."""
        first, second = pair_datasets
        adata = second.adata.copy()
        adata.var_names = [f"other_{g}" for g in adata.var_names]
        with pytest.raises(NoAnchorsFoundError):
            Integrator(IntegrationConfig(**SMALL_CONFIG)).integrate(
                [first, CellDataset(adata)], labels=["ctrl", "stim"]
            )

    def test_correction_reduces_batch_offset(self, integration_result):
        """Test the stim centroid moves toward the ctrl centroid on integration features."""
        ds = integration_result.dataset
        gene_idx = ds.gene_ids.get_indexer(integration_result.features)
        stim = ds.obs["orig.ident"].to_numpy() == "stim"

        def offset(matrix):
            values = to_dense(matrix[:, gene_idx])
            return np.linalg.norm(values[stim].mean(axis=0) - values[~stim].mean(axis=0))

        before = offset(ds.layer("lognorm"))
        after = offset(ds.layer(INTEGRATED_LAYER))
        assert after < 0.75 * before

    def test_no_anchors_with_shared_genes(self, pair_datasets):
        """Test anchors removed by scoring raise NoAnchorsFoundError for the pair."""
        config = IntegrationConfig(min_anchor_score=1.0, **SMALL_CONFIG)
        with pytest.raises(NoAnchorsFoundError) as excinfo:
            Integrator(config).integrate(list(pair_datasets), labels=["ctrl", "stim"])
        assert excinfo.value.pair == ("ctrl", "stim")

    def test_needs_two_datasets(self, pair_datasets):
        """Test a single dataset is rejected."""
        with pytest.raises(ValueError):
            Integrator().integrate([pair_datasets[0]], labels=["ctrl"])

    def test_duplicate_labels(self, pair_datasets):
        """Test duplicate labels are rejected."""
        with pytest.raises(ValueError):
            Integrator().integrate(list(pair_datasets), labels=["ctrl", "ctrl"])
